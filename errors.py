"""Exception taxonomy for the chat relay."""

from __future__ import annotations


class ChatRelayError(Exception):
    """Base class for every error the chat path raises on purpose."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputError(ChatRelayError):
    """Request carries nothing usable (no text, no decodable image)."""

    status_code = 400


class UpstreamError(ChatRelayError):
    """Every candidate model failed; carries the last recorded failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        model_id: str = "",
        kind: str = "status",
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.upstream_status = status_code
        self.model_id = model_id
        self.kind = kind
        self.attempts = attempts

    @property
    def rate_limited(self) -> bool:
        """True when the upstream reported quota/rate exhaustion."""
        if self.upstream_status == 429:
            return True
        return "RESOURCE_EXHAUSTED" in (self.message or "")

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 429 if self.rate_limited else 500


class EnvelopeError(ChatRelayError):
    """Success envelope did not carry any usable reply."""


class StreamDecodeError(ChatRelayError):
    """Stream failed before any text fragment was produced."""
