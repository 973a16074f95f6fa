"""Exchange of a pairing ticket for device credentials."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from qrpair.credential_store import CORE_FIELDS, Credential
from qrpair.responses import ExchangeError, decode_response, non_empty_str
from qrpair.ticket import PairingTicket

logger = logging.getLogger(__name__)

JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


@dataclass(frozen=True)
class ExchangeResult:
    """Outcome of a single exchange attempt."""

    credential: Optional[Credential] = None
    error: Optional[ExchangeError] = None
    message: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.credential is not None


class PairingClient:
    """Trades a pairing ticket for credentials with one POST request.

    There is no retry: a failed exchange needs a new scan.
    """

    REQUEST_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        device_name: str,
        request_timeout: float = REQUEST_TIMEOUT,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize pairing client.

        Args:
            device_name: Name shown for this device in the web application.
            request_timeout: Total timeout for the exchange in seconds.
            http_session: Optional aiohttp session (for testing).
        """
        self._device_name = device_name
        self._timeout = request_timeout
        self._session = http_session
        self._owns_session = http_session is None

    async def __aenter__(self):
        """Enter async context, creating session if needed."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *args):
        """Exit async context, closing owned session."""
        await self.close()

    @property
    def device_name(self) -> str:
        return self._device_name

    async def exchange(self, ticket: PairingTicket) -> ExchangeResult:
        """Exchange the ticket for credentials.

        Args:
            ticket: Validated, unexpired pairing ticket.

        Returns:
            ExchangeResult with the new credential or the failure reason.
        """
        if self._session is None:
            raise RuntimeError("Pairing client not initialized - use async context manager")

        url = ticket.exchange_url
        payload = {
            "pairingCode": ticket.pairing_code,
            "deviceSessionId": ticket.device_session_id,
            "deviceName": self._device_name,
        }
        logger.info(f"Authenticating with {url}")

        try:
            async with self._session.post(
                url,
                json=payload,
                headers=JSON_HEADERS,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                status = resp.status
                text = await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Exchange request failed: {e!r}")
            return ExchangeResult(
                error=ExchangeError.NETWORK_FAILURE,
                message=f"Could not reach {ticket.api_url}: {str(e) or type(e).__name__}",
            )

        logger.debug(f"Exchange response status: {status}")

        decoded = decode_response(status, text, action="Authentication")
        if not decoded.ok:
            return ExchangeResult(
                error=decoded.error, message=decoded.message, detail=decoded.preview
            )

        data = decoded.data
        device_id = non_empty_str(data, "deviceId")
        refresh_token = non_empty_str(data, "refreshToken")
        if device_id is None or refresh_token is None:
            logger.warning("Exchange succeeded without deviceId/refreshToken")
            return ExchangeResult(
                error=ExchangeError.INCOMPLETE_CREDENTIAL,
                message="Server response did not include device credentials.",
            )

        credential = Credential(
            device_id=device_id,
            refresh_token=refresh_token,
            api_url=ticket.api_url,
            extras={k: v for k, v in data.items() if k not in CORE_FIELDS},
        )
        logger.info(f"Device paired as {device_id}")
        return ExchangeResult(credential=credential)

    async def close(self) -> None:
        """Close the HTTP session if owned."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None
