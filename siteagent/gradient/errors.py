"""
Platform API errors. Error bodies carry an ``id``/``message`` pair which is
used for narrow-cased handling instead of string-matching the whole payload.
"""
from typing import Any, Dict

import httpx

INDEXING_CONFLICT_MARKER = "already has an indexing job running"


class GradientAPIError(Exception):
    """Non-2xx response from the platform API (after retries were exhausted)."""

    def __init__(
        self,
        status_code: int,
        message: str,
        error_id: str = "",
        request_id: str = "",
        context: str = "",
    ):
        self.status_code = status_code
        self.message = message
        self.error_id = error_id
        self.request_id = request_id
        self.context = context
        prefix = f"{context}: " if context else ""
        super().__init__(f"{prefix}[{status_code}] {error_id or 'error'}: {message}")

    @classmethod
    def from_response(cls, response: httpx.Response, context: str = "") -> "GradientAPIError":
        body: Dict[str, Any] = {}
        try:
            parsed = response.json()
            if isinstance(parsed, dict):
                body = parsed
        except ValueError:
            pass
        message = body.get("message") or response.text or response.reason_phrase
        return cls(
            status_code=response.status_code,
            message=str(message),
            error_id=str(body.get("id") or ""),
            request_id=str(body.get("request_id") or ""),
            context=context,
        )

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or self.error_id == "not_found"

    @property
    def is_database_not_found(self) -> bool:
        return self.error_id == "not_found" and "vector database" in self.message.lower()

    @property
    def is_indexing_conflict(self) -> bool:
        """An indexing job is already running: benign, the caller wanted one running anyway."""
        return INDEXING_CONFLICT_MARKER in self.message

    @property
    def is_permission_denied(self) -> bool:
        return (
            self.status_code == 403
            or self.error_id == "forbidden"
            or "PermissionDenied" in self.message
        )


def raise_for_error(response: httpx.Response, context: str = "") -> None:
    """Raise GradientAPIError for any non-2xx response."""
    if response.is_success:
        return
    raise GradientAPIError.from_response(response, context=context)
