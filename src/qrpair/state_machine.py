"""Pairing state machine.

Drives scan -> validate -> authenticate -> persist -> ready and exposes the
state the presentation layer renders:

    IDLE -> SCANNING -> VALIDATING_TICKET -> AUTHENTICATING -> AUTHENTICATED
                ^              |                   |               |
                +--- invalid --+                   +--> FAILED <---+ (verify)

Malformed scans loop back to SCANNING with a warning. An expired ticket,
a failed exchange or a failed verify end in FAILED, from which the user
retries (SCANNING) or resets (IDLE).
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional, Protocol

from qrpair.credential_store import Credential, CredentialStore
from qrpair.errors import StorageError
from qrpair.gateway import Gateway, VerifyResult
from qrpair.pairing_client import ExchangeResult
from qrpair.responses import ExchangeError
from qrpair.ticket import PairingTicket, parse_ticket

logger = logging.getLogger(__name__)


class AuthState(Enum):
    """Pairing states."""

    IDLE = auto()
    SCANNING = auto()
    VALIDATING_TICKET = auto()
    AUTHENTICATING = auto()
    AUTHENTICATED = auto()
    FAILED = auto()


class FailureReason(Enum):
    """Reason carried by the FAILED state."""

    EXPIRED = auto()
    INVALID_RESPONSE_BODY = auto()
    REJECTED = auto()
    INCOMPLETE_CREDENTIAL = auto()
    NETWORK_FAILURE = auto()
    STORAGE_FAILURE = auto()
    VERIFY_FAILED = auto()
    UNAUTHORIZED = auto()


EXCHANGE_FAILURES = {
    ExchangeError.INVALID_RESPONSE_BODY: FailureReason.INVALID_RESPONSE_BODY,
    ExchangeError.REJECTED: FailureReason.REJECTED,
    ExchangeError.INCOMPLETE_CREDENTIAL: FailureReason.INCOMPLETE_CREDENTIAL,
    ExchangeError.NETWORK_FAILURE: FailureReason.NETWORK_FAILURE,
}

EXPIRED_MESSAGE = (
    "This QR code has expired. Please request a new one from the web application."
)


@dataclass(frozen=True)
class Failure:
    """Why pairing or verification failed.

    Attributes:
        reason: Failure category.
        message: Human-readable message for the user.
        detail: Bounded raw server output, if any.
        cause: Underlying exchange/verify error, if any.
    """

    reason: FailureReason
    message: str
    detail: Optional[str] = None
    cause: Optional[ExchangeError] = None


VALID_TRANSITIONS = {
    AuthState.IDLE: {AuthState.SCANNING, AuthState.AUTHENTICATED},
    AuthState.SCANNING: {AuthState.VALIDATING_TICKET, AuthState.IDLE},
    AuthState.VALIDATING_TICKET: {
        AuthState.SCANNING,
        AuthState.AUTHENTICATING,
        AuthState.FAILED,
        AuthState.IDLE,
    },
    AuthState.AUTHENTICATING: {
        AuthState.AUTHENTICATED,
        AuthState.FAILED,
        AuthState.IDLE,
    },
    AuthState.AUTHENTICATED: {AuthState.AUTHENTICATING, AuthState.IDLE},
    AuthState.FAILED: {AuthState.SCANNING, AuthState.IDLE},
}


class Exchanger(Protocol):
    """Protocol for the pairing client."""

    async def exchange(self, ticket: PairingTicket) -> ExchangeResult:
        """Exchange a ticket for credentials."""
        ...


StateCallback = Callable[[AuthState, "PairingStateMachine"], None]
WarningCallback = Callable[[str], None]


class PairingStateMachine:
    """Orchestrates pairing and the local credential lifecycle.

    At most one exchange or verify is in flight: scans are only accepted in
    SCANNING and verify only in AUTHENTICATED.
    """

    def __init__(
        self,
        store: CredentialStore,
        gateway: Gateway,
        pairing_client: Optional[Exchanger] = None,
    ):
        """Initialize state machine.

        Args:
            store: Credential store written on successful pairing.
            gateway: Gateway used for verify and logout.
            pairing_client: Client performing the exchange. Only needed
                for scanning; verify and logout work without it.
        """
        self._store = store
        self._gateway = gateway
        self._pairing_client = pairing_client

        self._state = AuthState.IDLE
        self._credential: Optional[Credential] = None
        self._failure: Optional[Failure] = None
        self._ticket: Optional[PairingTicket] = None
        self._scanned = False
        # Bumped whenever the user navigates away; results from older epochs are dropped
        self._epoch = 0

        self._on_state_change: Optional[StateCallback] = None
        self._on_scan_warning: Optional[WarningCallback] = None

        gateway.add_logout_listener(self._handle_logout)

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        """Credential while AUTHENTICATED (or the one kept after a failed verify)."""
        return self._credential

    @property
    def failure(self) -> Optional[Failure]:
        return self._failure

    @property
    def ticket(self) -> Optional[PairingTicket]:
        """Ticket of the current scan attempt."""
        return self._ticket

    @property
    def has_scanned(self) -> bool:
        """True once a payload was accepted for the current scan attempt."""
        return self._scanned

    def on_state_change(self, callback: Optional[StateCallback]) -> None:
        self._on_state_change = callback

    def on_scan_warning(self, callback: Optional[WarningCallback]) -> None:
        self._on_scan_warning = callback

    def _transition_to(self, new_state: AuthState) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is not valid from current state.
        """
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise ValueError(f"Invalid transition: {self._state} -> {new_state}")

        logger.debug(f"Pairing state: {self._state.name} -> {new_state.name}")
        self._state = new_state
        if new_state != AuthState.FAILED:
            self._failure = None
        if self._on_state_change is not None:
            self._on_state_change(new_state, self)

    def _fail(self, failure: Failure) -> None:
        logger.warning(f"Pairing failed ({failure.reason.name}): {failure.message}")
        self._failure = failure
        self._transition_to(AuthState.FAILED)

    def _warn(self, message: str) -> None:
        if self._on_scan_warning is not None:
            self._on_scan_warning(message)

    async def restore(self) -> AuthState:
        """Recompute the state from the credential store at start-up.

        Only valid while IDLE.
        """
        if self._state != AuthState.IDLE:
            raise ValueError(f"Cannot restore from {self._state}")

        credential = await self._store.get_auth_data()
        if credential is not None:
            self._credential = credential
            self._transition_to(AuthState.AUTHENTICATED)
            logger.info(f"Restored credentials for device {credential.device_id}")
        return self._state

    def start(self) -> None:
        """Open the scanner (IDLE -> SCANNING)."""
        if self._state != AuthState.IDLE:
            raise ValueError(f"Cannot start scanning from {self._state}")
        self._begin_scan()

    def retry(self) -> None:
        """Scan again after a failure (FAILED -> SCANNING)."""
        if self._state != AuthState.FAILED:
            raise ValueError(f"Cannot retry from {self._state}")
        self._begin_scan()

    def _begin_scan(self) -> None:
        if self._pairing_client is None:
            raise RuntimeError("No pairing client configured")
        self._ticket = None
        self._scanned = False
        self._transition_to(AuthState.SCANNING)

    def cancel_scanning(self) -> None:
        """Close the scanner (SCANNING -> IDLE)."""
        if self._state != AuthState.SCANNING:
            raise ValueError(f"Cannot cancel scanning from {self._state}")
        self._epoch += 1
        self._transition_to(AuthState.IDLE)

    def reset(self) -> None:
        """Return to the entry screen, discarding the ticket.

        Stored credentials are kept. Any in-flight exchange or verify is
        ignored when it completes.
        """
        if self._state == AuthState.IDLE:
            return
        if AuthState.IDLE not in VALID_TRANSITIONS[self._state]:
            raise ValueError(f"Cannot reset from {self._state}")
        self._epoch += 1
        self._ticket = None
        self._scanned = False
        self._transition_to(AuthState.IDLE)

    async def scanned(self, raw: str) -> bool:
        """Handle text produced by the scanner.

        Args:
            raw: Scanned QR text.

        Returns:
            True if the payload was accepted for validation, False if it
            was ignored because no scan is expected right now.
        """
        if self._state != AuthState.SCANNING or self._scanned:
            logger.debug(f"Ignoring scan in state {self._state.name}")
            return False

        self._scanned = True
        self._transition_to(AuthState.VALIDATING_TICKET)

        result = parse_ticket(raw)
        if not result.ok:
            logger.info(f"Rejected QR payload ({result.rejection.name}): {result.detail}")
            self._scanned = False
            self._transition_to(AuthState.SCANNING)
            self._warn(result.message)
            return True

        ticket = result.ticket
        self._ticket = ticket

        if ticket.is_expired():
            self._fail(Failure(reason=FailureReason.EXPIRED, message=EXPIRED_MESSAGE))
            return True

        self._transition_to(AuthState.AUTHENTICATING)
        await self._authenticate(ticket)
        return True

    async def _authenticate(self, ticket: PairingTicket) -> None:
        epoch = self._epoch
        result = await self._pairing_client.exchange(ticket)

        if epoch != self._epoch or self._state != AuthState.AUTHENTICATING:
            logger.info("Discarding exchange result after navigation")
            return

        if not result.ok:
            self._fail(
                Failure(
                    reason=EXCHANGE_FAILURES.get(result.error, FailureReason.NETWORK_FAILURE),
                    message=result.message or "Authentication failed. Please try again.",
                    detail=result.detail,
                    cause=result.error,
                )
            )
            return

        try:
            await self._store.save_auth_data(result.credential)
        except StorageError as e:
            self._fail(
                Failure(
                    reason=FailureReason.STORAGE_FAILURE,
                    message=f"Could not store credentials: {e}",
                )
            )
            return

        await self._gateway.reset_client()
        self._credential = result.credential
        self._transition_to(AuthState.AUTHENTICATED)

    async def verify(self) -> VerifyResult:
        """Re-verify the stored credential (AUTHENTICATED -> AUTHENTICATING).

        On failure the stored credential is left alone; only a 401, handled
        by the gateway, removes it.
        """
        if self._state != AuthState.AUTHENTICATED:
            raise ValueError(f"Cannot verify from {self._state}")

        epoch = self._epoch
        self._transition_to(AuthState.AUTHENTICATING)
        result = await self._gateway.verify()

        if epoch != self._epoch or self._state != AuthState.AUTHENTICATING:
            logger.info("Discarding verify result after navigation")
            return result

        if result.ok:
            self._credential = result.credential
            self._transition_to(AuthState.AUTHENTICATED)
            return result

        if result.error == ExchangeError.UNAUTHORIZED:
            self._credential = None
            reason = FailureReason.UNAUTHORIZED
        elif result.error == ExchangeError.STORAGE_FAILURE:
            reason = FailureReason.STORAGE_FAILURE
        else:
            reason = FailureReason.VERIFY_FAILED
        self._fail(
            Failure(
                reason=reason,
                message=result.message
                or "Token verification failed. Your token may have expired.",
                detail=result.detail,
                cause=result.error,
            )
        )
        return result

    async def logout(self) -> None:
        """Explicitly log out and return to IDLE."""
        self._epoch += 1
        await self._gateway.logout()
        self._credential = None
        self._ticket = None
        self._scanned = False
        if self._state != AuthState.IDLE:
            self._transition_to(AuthState.IDLE)

    async def _handle_logout(self) -> None:
        """Gateway cleared the credentials."""
        self._credential = None
        if self._state == AuthState.AUTHENTICATED:
            logger.info("Credentials revoked by server, returning to idle")
            self._transition_to(AuthState.IDLE)
