"""Pull request review comments and the deletion shortcut.

Reviewers often ask for a file to be deleted. That's a change we can make
directly instead of paying for a coding-agent run, so comments that carry a
file path and read as a deletion request are applied here and dropped from
the agent prompt.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from pydantic import BaseModel

log = logging.getLogger("airgit.comments")


class ReviewComment(BaseModel):
    """A single review comment, optionally anchored to a file."""

    body: str
    path: Optional[str] = None
    line: Optional[int] = None


class DeletionIntentClassifier(Protocol):
    """Decides whether a review comment asks for its file to be deleted."""

    def wants_deletion(self, comment: ReviewComment) -> bool:
        ...


# English needs both a verb and the word "file"; other languages use a
# single unambiguous term.
_ENGLISH_VERB = re.compile(r"\b(delete|remove)\b", re.IGNORECASE)
_ENGLISH_NOUN = re.compile(r"\bfiles?\b", re.IGNORECASE)
DELETION_TERMS = (
    "削除",  # Japanese
    "删除",  # Chinese
    "löschen",
    "eliminar",
    "supprimer",
)


class KeywordDeletionClassifier:
    """Multilingual keyword match on the comment body."""

    def __init__(self, terms: Sequence[str] = DELETION_TERMS) -> None:
        self.terms = tuple(t.lower() for t in terms)

    def wants_deletion(self, comment: ReviewComment) -> bool:
        if not comment.path:
            return False
        body = comment.body
        if _ENGLISH_VERB.search(body) and _ENGLISH_NOUN.search(body):
            return True
        lowered = body.lower()
        return any(term in lowered for term in self.terms)


@dataclass
class DeletionReport:
    """What happened to the deletion requests in a batch of comments."""

    deleted: List[str] = field(default_factory=list)
    already_absent: List[str] = field(default_factory=list)
    remaining: List[ReviewComment] = field(default_factory=list)

    @property
    def requested(self) -> int:
        return len(self.deleted) + len(self.already_absent)

    @property
    def all_already_applied(self) -> bool:
        """Every comment was a deletion request for a file that's already gone."""
        return bool(self.already_absent) and not self.deleted and not self.remaining


def _resolve_inside(root: Path, relative: str) -> Optional[Path]:
    """Path of ``relative`` under ``root``, or None if it escapes root."""
    root = root.resolve()
    candidate = root / relative.lstrip("/")
    if candidate.name in ("", ".", ".."):
        return None
    parent = candidate.parent.resolve()
    if parent != root and root not in parent.parents:
        return None
    return parent / candidate.name


def apply_deletions(
    worktree: Path,
    comments: Sequence[ReviewComment],
    classifier: Optional[DeletionIntentClassifier] = None,
) -> DeletionReport:
    """Delete files that review comments ask to delete.

    Comments that are not deletion requests, or whose path points outside the
    worktree, are returned in ``remaining`` for the coding agent.
    """
    if classifier is None:
        classifier = KeywordDeletionClassifier()

    report = DeletionReport()
    for comment in comments:
        if not classifier.wants_deletion(comment):
            report.remaining.append(comment)
            continue

        target = _resolve_inside(worktree, comment.path or "")
        if target is None:
            log.warning("Ignoring deletion outside worktree: %s", comment.path)
            report.remaining.append(comment)
            continue

        if not target.exists() and not target.is_symlink():
            log.info("Requested deletion of %s: already absent", comment.path)
            report.already_absent.append(str(comment.path))
            continue

        if target.is_dir() and not target.is_symlink():
            log.warning("Requested deletion of directory %s, leaving it to the agent", comment.path)
            report.remaining.append(comment)
            continue

        target.unlink()
        log.info("Deleted %s as requested in review", comment.path)
        report.deleted.append(str(comment.path))

    return report
