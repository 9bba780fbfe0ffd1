"""Error taxonomy shared by the core and adapters."""

from __future__ import annotations

from typing import Optional


class SourceError(RuntimeError):
    """Source collaborator could not provide what the core asked for."""


class TargetError(RuntimeError):
    """Target collaborator rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AttachmentsProcessingError(TargetError):
    """Uploaded attachments are not processed yet; publishing may succeed later."""


class TargetNotFoundError(TargetError):
    """Target post does not exist (already deleted)."""
