"""Turn raw coding-agent output into coarse progress messages.

The agent prints free text. We only want a human watching the status poll
to see roughly what it is doing, so this is a lossy keyword filter. It sits
behind the ``ProgressClassifier`` protocol so a parser for structured agent
output can replace it without touching the pipelines.
"""

import re
from typing import Protocol, Tuple

MIN_LENGTH = 3
MAX_LENGTH = 120
ELLIPSIS = "..."

PROGRESS_VERBS = (
    "Analyzing",
    "Reading",
    "Processing",
    "Generating",
    "Creating",
    "Editing",
    "Writing",
    "Updating",
    "Searching",
    "Found",
    "Suggesting",
    "Applying",
    "Running",
    "Executing",
    "Checking",
    "Validating",
    "Building",
    "Testing",
)

STATUS_GLYPHS = ("✓", "✗", "●", "○", "→")

# ESC followed by anything up to and including the next ASCII letter
_ESCAPE_PATTERN = re.compile(r"\x1b[^A-Za-z]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences."""
    return _ESCAPE_PATTERN.sub("", text)


class ProgressClassifier(Protocol):
    """Decides whether a line of agent output is worth showing."""

    def classify(self, line: str) -> Tuple[str, bool]:
        """Return ``(cleaned_message, is_meaningful)``."""
        ...


class KeywordProgressClassifier:
    """Matches a fixed vocabulary of progress verbs and status glyphs."""

    def __init__(
        self,
        verbs: Tuple[str, ...] = PROGRESS_VERBS,
        glyphs: Tuple[str, ...] = STATUS_GLYPHS,
        max_length: int = MAX_LENGTH,
    ) -> None:
        self.markers = verbs + glyphs
        self.max_length = max_length

    def is_meaningful(self, text: str) -> bool:
        if any(m in text for m in self.markers):
            return True
        return "?" in text or text.endswith(":")

    def classify(self, line: str) -> Tuple[str, bool]:
        text = strip_ansi(line).strip()
        if len(text) < MIN_LENGTH:
            return text, False
        if not self.is_meaningful(text):
            return text, False
        if len(text) > self.max_length:
            text = text[: self.max_length - len(ELLIPSIS)] + ELLIPSIS
        return text, True


default_classifier: ProgressClassifier = KeywordProgressClassifier()


def extract_progress(line: str) -> Tuple[str, bool]:
    """Classify one line with the default classifier."""
    return default_classifier.classify(line)
