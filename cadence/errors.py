from __future__ import annotations

from typing import Any


class CadenceError(RuntimeError):
    """
    Base error for engine components. Carries metadata for structured logging.
    """

    category: str = "runtime"

    def __init__(self, message: str, *, metadata: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.metadata = metadata or {}


class NotFoundError(CadenceError):
    """Raised when a referenced entity does not exist. Never retried."""

    category = "not_found"


class SprintNotFoundError(NotFoundError):
    def __init__(self, sprint_id: str) -> None:
        super().__init__(f"Sprint {sprint_id} not found", metadata={"sprint_id": sprint_id})
        self.sprint_id = sprint_id


class WebhookSignatureError(CadenceError):
    """Raised when a webhook delivery fails signature verification."""

    category = "webhook"


class ConfigError(CadenceError):
    """Raised when configuration is invalid or missing."""

    category = "config"
