from __future__ import annotations

from typing import Optional


class EpubError(Exception):
    pass


class EpubIOError(EpubError):
    """The archive itself could not be opened or read."""

    def __init__(self, message: str, reason: str = "unknown", code: Optional[int] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.code = code


class StructureError(EpubError):
    pass


class NotFoundError(EpubError):
    pass


class InvalidInputError(EpubError, ValueError):
    pass


class ConfigurationError(EpubError):
    pass
