"""AirGit: mobile-friendly Git web GUI with an issue-to-PR coding agent."""

__version__ = "1.0.0"
