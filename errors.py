"""Relay failure types."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class for failures surfaced by the relay pipelines."""

    def __init__(
        self,
        message: str,
        type: Optional[str] = None,
        param: Optional[str] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.type = type
        self.param = param
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        """Render as a provider-style error body."""
        return {
            "error": {
                "message": self.message,
                "type": self.type,
                "param": self.param,
                "code": self.code,
            }
        }


class TransportError(RelayError):
    """Upstream answered with a non-200 status."""

    def __init__(
        self,
        message: str,
        type: Optional[str] = None,
        param: Optional[str] = None,
        code: Optional[str] = None,
        *,
        status_code: int = 0,
        structured: bool = False,
    ) -> None:
        super().__init__(message, type, param, code)
        self.status_code = status_code
        # True when the fields came from the provider's own `error` object
        self.structured = structured

    @classmethod
    def from_body(
        cls,
        status_code: int,
        body: bytes,
        reason: str = "",
        prefix: str = "API returned an error",
    ) -> TransportError:
        """
        Build from an upstream error response.

        Tries the provider `{"error": {message, type, param, code}}` shape first and
        falls back to the decoded body text, then to the status reason phrase.
        """
        text = body.decode("utf-8", errors="replace") if body else ""
        try:
            payload = json.loads(text) if text else None
        except json.JSONDecodeError:
            payload = None

        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            err = payload["error"]
            return cls(
                str(err.get("message") or ""),
                _opt_str(err.get("type")),
                _opt_str(err.get("param")),
                _opt_str(err.get("code")),
                status_code=status_code,
                structured=True,
            )

        detail = text.strip() or reason or f"HTTP {status_code}"
        return cls(f"{prefix}: {detail}", status_code=status_code)


class DecodeError(RelayError):
    """An event payload could not be decoded into the expected shape."""

    def __init__(self, message: str, payload: str = "") -> None:
        super().__init__(message, type="decode_error")
        self.payload = payload


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    return v if isinstance(v, str) else str(v)
