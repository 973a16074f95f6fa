"""Pairing ticket parsing and validation.

A pairing ticket is the JSON document encoded in the QR code shown by the
web application:

    {"pairingCode": "...", "deviceSessionId": "...",
     "apiUrl": "https://app.example", "endpoint": "/api/devices/validate",
     "expiresAt": "2025-01-27T10:30:45Z"}

Parsing is purely structural. Expiry is checked separately with
:meth:`PairingTicket.is_expired` so a stale ticket can be reported
differently from a damaged one.

The scanned text is attacker controlled: every failure is returned as a
:class:`ParseResult`, nothing is raised.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Optional

# JSON key -> PairingTicket attribute
REQUIRED_FIELDS = {
    "pairingCode": "pairing_code",
    "deviceSessionId": "device_session_id",
    "apiUrl": "api_url",
    "endpoint": "endpoint",
}
EXPIRES_AT_FIELD = "expiresAt"


class RejectionReason(Enum):
    """Why scanned text is not a usable pairing ticket."""

    MALFORMED_PAYLOAD = auto()
    MISSING_FIELDS = auto()


REJECTION_MESSAGES = {
    RejectionReason.MALFORMED_PAYLOAD: (
        "Invalid QR code. Please scan a valid pairing code."
    ),
    RejectionReason.MISSING_FIELDS: (
        "Invalid QR code format. Missing required fields. "
        "Please scan a valid pairing code."
    ),
}


@dataclass(frozen=True)
class PairingTicket:
    """Short-lived pairing request read from a QR code.

    Attributes:
        pairing_code: One-time code issued by the web application.
        device_session_id: Web session waiting for this device.
        api_url: Server origin, no trailing slash expected.
        endpoint: Path appended verbatim to ``api_url`` for the exchange.
        expires_at: Timezone-aware expiry, or None if the ticket never expires.
    """

    pairing_code: str
    device_session_id: str
    api_url: str
    endpoint: str
    expires_at: Optional[datetime] = None

    @property
    def exchange_url(self) -> str:
        """Exchange target. No slash normalization is applied."""
        return f"{self.api_url}{self.endpoint}"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the ticket expired.

        Args:
            now: Current time (defaults to UTC wall clock). Naive values are
                read as UTC.

        Returns:
            True if ``now`` is strictly after ``expires_at``.
        """
        if self.expires_at is None:
            return False
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now > self.expires_at


@dataclass(frozen=True)
class ParseResult:
    """Result of parsing scanned text."""

    ticket: Optional[PairingTicket] = None
    rejection: Optional[RejectionReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.ticket is not None

    @property
    def message(self) -> Optional[str]:
        """User-facing warning for a rejected scan."""
        if self.rejection is None:
            return None
        return REJECTION_MESSAGES[self.rejection]


def _reject(reason: RejectionReason, detail: str) -> ParseResult:
    return ParseResult(rejection=reason, detail=detail)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Accepts a trailing ``Z``. Naive timestamps are read as UTC.

    Raises:
        ValueError: If the string is not ISO-8601.
    """
    ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def parse_ticket(raw: Any) -> ParseResult:
    """Parse scanned QR text into a pairing ticket.

    Args:
        raw: Text produced by the scanner.

    Returns:
        ParseResult holding either the ticket or a rejection reason.
    """
    if not isinstance(raw, str):
        return _reject(RejectionReason.MALFORMED_PAYLOAD, "payload is not text")

    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError is a ValueError; very deep nesting hits the recursion limit
        return _reject(RejectionReason.MALFORMED_PAYLOAD, f"not JSON: {type(e).__name__}")

    if not isinstance(data, dict):
        return _reject(RejectionReason.MALFORMED_PAYLOAD, "payload is not a JSON object")

    missing = [key for key in REQUIRED_FIELDS if _is_blank(data.get(key))]
    if missing:
        return _reject(RejectionReason.MISSING_FIELDS, f"missing: {', '.join(missing)}")

    wrong_type = [key for key in REQUIRED_FIELDS if not isinstance(data[key], str)]
    if wrong_type:
        return _reject(
            RejectionReason.MALFORMED_PAYLOAD, f"not a string: {', '.join(wrong_type)}"
        )

    expires_at = None
    raw_expiry = data.get(EXPIRES_AT_FIELD)
    if raw_expiry is not None:
        if not isinstance(raw_expiry, str):
            return _reject(RejectionReason.MALFORMED_PAYLOAD, "expiresAt is not a string")
        try:
            expires_at = parse_timestamp(raw_expiry)
        except ValueError:
            return _reject(RejectionReason.MALFORMED_PAYLOAD, "expiresAt is not ISO-8601")

    fields = {attr: data[key] for key, attr in REQUIRED_FIELDS.items()}
    return ParseResult(ticket=PairingTicket(expires_at=expires_at, **fields))
