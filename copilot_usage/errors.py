"""Error taxonomy for the usage scanning and analytics core."""
from __future__ import annotations

from pathlib import Path


class UsageCoreError(Exception):
    """Base class for all copilot_usage errors."""


class InvalidFormatError(UsageCoreError, ValueError):
    """A value did not match the producer's fixed textual format."""

    def __init__(self, value: str, expected: str) -> None:
        self.value = value
        self.expected = expected
        super().__init__(f"Invalid format {value!r}, expected {expected}")


class IOFailure(UsageCoreError):
    """A filesystem operation failed for a specific path."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"I/O failure on {self.path}: {reason}")


class NotInitializedError(UsageCoreError):
    """Queried a service before its initial scan ran."""


class StorageRootsUnavailableError(UsageCoreError):
    """None of the configured storage roots could be enumerated."""

    def __init__(self, roots: list[Path]) -> None:
        self.roots = list(roots)
        joined = ", ".join(str(root) for root in self.roots) or "<none configured>"
        super().__init__(f"No readable storage roots: {joined}")


class WatcherSetupError(UsageCoreError):
    """A file watcher could not be started."""
