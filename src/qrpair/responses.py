"""Decoding of pairing server responses.

Both the exchange and the verify call read the body as text first and only
then try JSON. A body that is not a JSON object is reported as
``INVALID_RESPONSE_BODY`` even when the status code already signals an
error, so the server's raw output is what the user sees.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Diagnostics never carry more than this many characters of a body
PREVIEW_LENGTH = 100


class ExchangeError(Enum):
    """Failure of an exchange or verify call."""

    INVALID_RESPONSE_BODY = auto()
    REJECTED = auto()
    INCOMPLETE_CREDENTIAL = auto()
    NETWORK_FAILURE = auto()
    UNAUTHORIZED = auto()
    NOT_AUTHENTICATED = auto()
    STORAGE_FAILURE = auto()


@dataclass(frozen=True)
class DecodedResponse:
    """A response body decoded into a JSON object, or the reason it wasn't."""

    status: int
    data: Optional[dict[str, Any]] = None
    error: Optional[ExchangeError] = None
    message: Optional[str] = None
    preview: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def preview(text: str) -> str:
    """Bounded prefix of a response body for logs and error messages."""
    return text[:PREVIEW_LENGTH]


def is_success(status: int) -> bool:
    return 200 <= status < 300


def decode_response(status: int, text: str, action: str = "Request") -> DecodedResponse:
    """Decode a response body.

    Args:
        status: HTTP status code.
        text: Raw response body.
        action: Name of the call, used in fallback messages.

    Returns:
        DecodedResponse with ``data`` on success.
    """
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        data = None

    if not isinstance(data, dict):
        head = preview(text)
        logger.warning(f"{action} returned a non-JSON body (HTTP {status}): {head!r}")
        return DecodedResponse(
            status=status,
            error=ExchangeError.INVALID_RESPONSE_BODY,
            message=f"Server returned invalid JSON. Response: {head}...",
            preview=head,
        )

    if not is_success(status):
        reason = data.get("error") or data.get("message")
        if reason is None:
            reason = f"{action} failed with status: {status}"
        logger.warning(f"{action} rejected (HTTP {status}): {reason}")
        return DecodedResponse(
            status=status,
            data=data,
            error=ExchangeError.REJECTED,
            message=str(reason),
        )

    return DecodedResponse(status=status, data=data)


def non_empty_str(data: dict[str, Any], key: str) -> Optional[str]:
    """Return ``data[key]`` if it is a non-empty string, else None."""
    value = data.get(key)
    if isinstance(value, str) and value:
        return value
    return None
