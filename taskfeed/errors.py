from __future__ import annotations


class TaskfeedError(Exception):
    """Base class for errors surfaced to callers of the import and sync paths."""


class FormatError(TaskfeedError):
    """The feed text is not a calendar document."""


class FetchError(TaskfeedError):
    """A feed could not be downloaded."""

    def __init__(self, message: str, *, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class RemoteError(TaskfeedError):
    """Reading, writing or listening to the shared remote record failed."""
