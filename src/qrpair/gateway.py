"""Authenticated access to the paired server.

The gateway owns at most one :class:`AuthenticatedClient`, built lazily from
the stored credential. Any 401 response seen by that client logs the device
out: the credential store is cleared, the cached client is dropped and
registered listeners are notified before :class:`UnauthorizedError` reaches
the caller.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from qrpair.config import DEFAULT_VERIFY_PATH
from qrpair.credential_store import CORE_FIELDS, Credential, CredentialStore
from qrpair.errors import NotAuthenticatedError, StorageError, UnauthorizedError
from qrpair.responses import ExchangeError, decode_response, non_empty_str

logger = logging.getLogger(__name__)

LogoutListener = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ApiResponse:
    """A fully read response."""

    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            ValueError: If the body is not JSON.
        """
        return json.loads(self.text)


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a verify call."""

    credential: Optional[Credential] = None
    rotated: bool = False
    error: Optional[ExchangeError] = None
    message: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AuthenticatedClient:
    """HTTP client bound to one credential snapshot.

    Every request carries ``X-Device-ID`` and a bearer token, and is sent to
    ``api_url`` + path.
    """

    def __init__(
        self,
        credential: Credential,
        on_unauthorized: Callable[[], Awaitable[None]],
        request_timeout: float = 10.0,
    ):
        self._credential = credential
        self._on_unauthorized = on_unauthorized
        self._session = aiohttp.ClientSession(
            headers=self.headers,
            timeout=aiohttp.ClientTimeout(total=request_timeout),
        )

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def base_url(self) -> str:
        return self._credential.api_url

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Device-ID": self._credential.device_id,
            "Authorization": f"Bearer {self._credential.refresh_token}",
        }

    @property
    def closed(self) -> bool:
        return self._session.closed

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        **kwargs: Any,
    ) -> ApiResponse:
        """Send a request relative to the server origin.

        Args:
            method: HTTP method.
            path: Path appended to ``api_url``.
            json: Optional JSON body.
            **kwargs: Passed through to aiohttp.

        Returns:
            The response, whatever its status unless 401.

        Raises:
            UnauthorizedError: On HTTP 401, after the device was logged out.
            aiohttp.ClientError: On transport failures.
        """
        url = f"{self.base_url}{path}"
        async with self._session.request(method, url, json=json, **kwargs) as resp:
            status = resp.status
            text = await resp.text(errors="replace")

        logger.debug(f"{method} {path} -> {status}")
        if status == 401:
            logger.warning(f"{method} {path} was rejected with 401, logging out")
            await self._on_unauthorized()
            raise UnauthorizedError(f"{method} {path} returned 401")
        return ApiResponse(status=status, text=text)

    async def get(self, path: str, **kwargs: Any) -> ApiResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> ApiResponse:
        return await self.request("POST", path, json=json, **kwargs)

    async def close(self) -> None:
        if not self._session.closed:
            await self._session.close()


class Gateway:
    """Builds authenticated clients and enforces logout on 401.

    Owned by the caller: independent gateways over independent stores do
    not share state.
    """

    def __init__(
        self,
        store: CredentialStore,
        request_timeout: float = 10.0,
        verify_path: str = DEFAULT_VERIFY_PATH,
    ):
        """Initialize gateway.

        Args:
            store: Credential store to read from and clear.
            request_timeout: Total timeout per request in seconds.
            verify_path: Path of the verify endpoint under ``api_url``.
        """
        self._store = store
        self._request_timeout = request_timeout
        self._verify_path = verify_path
        self._client: Optional[AuthenticatedClient] = None
        self._lock = asyncio.Lock()
        self._logout_listeners: list[LogoutListener] = []

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def has_client(self) -> bool:
        return self._client is not None

    def add_logout_listener(self, listener: LogoutListener) -> None:
        """Register a coroutine called whenever credentials are cleared."""
        self._logout_listeners.append(listener)

    async def get_client(self) -> AuthenticatedClient:
        """Get the cached client, creating it from stored credentials.

        Raises:
            NotAuthenticatedError: If no complete credential is stored.
        """
        async with self._lock:
            if self._client is not None:
                return self._client

            credential = await self._store.get_auth_data()
            if credential is None:
                raise NotAuthenticatedError("Not authenticated")

            self._client = AuthenticatedClient(
                credential,
                on_unauthorized=self._handle_unauthorized,
                request_timeout=self._request_timeout,
            )
            logger.debug(f"Created client for {credential.api_url}")
            return self._client

    async def reset_client(self) -> None:
        """Drop the cached client so the next one uses fresh credentials."""
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    async def request(
        self, method: str, path: str, json: Any = None, **kwargs: Any
    ) -> ApiResponse:
        """Send an authenticated request through the cached client."""
        client = await self.get_client()
        return await client.request(method, path, json=json, **kwargs)

    async def _handle_unauthorized(self) -> None:
        await self._store.clear()
        await self.reset_client()
        await self._notify_logout()

    async def _notify_logout(self) -> None:
        for listener in list(self._logout_listeners):
            try:
                await listener()
            except Exception as e:
                logger.error(f"Logout listener failed: {e}")

    async def logout(self) -> None:
        """Clear stored credentials and drop the client."""
        await self._store.clear()
        await self.reset_client()
        await self._notify_logout()
        logger.info("Logged out")

    async def verify(self) -> VerifyResult:
        """Confirm the stored credential with the server.

        A rotated ``refreshToken`` in the response is merged into the stored
        credential together with any extra fields; ``deviceId`` and
        ``apiUrl`` are kept.

        Returns:
            VerifyResult with the credential now stored, or the failure.
        """
        try:
            client = await self.get_client()
        except NotAuthenticatedError:
            return VerifyResult(
                error=ExchangeError.NOT_AUTHENTICATED,
                message="No valid token to verify",
            )

        credential = client.credential
        body = {
            "refreshToken": credential.refresh_token,
            "deviceId": credential.device_id,
        }
        logger.info(f"Verifying token with {credential.api_url}{self._verify_path}")

        try:
            resp = await client.post(self._verify_path, json=body)
        except UnauthorizedError:
            return VerifyResult(
                error=ExchangeError.UNAUTHORIZED,
                message="This device is no longer authorized. Please pair again.",
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Verify request failed: {e!r}")
            return VerifyResult(
                error=ExchangeError.NETWORK_FAILURE,
                message=f"Could not reach {credential.api_url}: {str(e) or type(e).__name__}",
            )

        decoded = decode_response(resp.status, resp.text, action="Token verification")
        if not decoded.ok:
            return VerifyResult(
                error=decoded.error, message=decoded.message, detail=decoded.preview
            )

        new_token = non_empty_str(decoded.data, "refreshToken")
        if new_token is None:
            logger.info("Token verification successful")
            return VerifyResult(credential=credential)

        extras = {k: v for k, v in decoded.data.items() if k not in CORE_FIELDS}
        try:
            updated = await self._store.merge(refresh_token=new_token, extras=extras)
        except NotAuthenticatedError:
            return VerifyResult(
                error=ExchangeError.NOT_AUTHENTICATED,
                message="Credentials were removed during verification",
            )
        except StorageError as e:
            logger.error(f"Could not store rotated token: {e}")
            return VerifyResult(
                error=ExchangeError.STORAGE_FAILURE,
                message=f"Could not store credentials: {e}",
            )
        await self.reset_client()

        logger.info("Token verification successful")
        return VerifyResult(
            credential=updated,
            rotated=updated.refresh_token != credential.refresh_token,
        )

    async def close(self) -> None:
        """Release the cached client."""
        await self.reset_client()
