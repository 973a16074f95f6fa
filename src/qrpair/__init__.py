"""qrpair - pair a device with a web application by scanning a QR code.

Provides:
- Pairing ticket parsing and expiry checks
- Ticket-for-credential exchange
- Encrypted credential storage
- Authenticated request gateway with logout on 401
- Pairing state machine
"""

__version__ = "0.1.0"

from .credential_store import Credential, CredentialStore
from .gateway import AuthenticatedClient, Gateway, VerifyResult
from .pairing_client import ExchangeResult, PairingClient
from .responses import ExchangeError
from .state_machine import AuthState, Failure, FailureReason, PairingStateMachine
from .ticket import PairingTicket, ParseResult, RejectionReason, parse_ticket

__all__ = [
    "AuthState",
    "AuthenticatedClient",
    "Credential",
    "CredentialStore",
    "ExchangeError",
    "ExchangeResult",
    "Failure",
    "FailureReason",
    "Gateway",
    "PairingClient",
    "PairingStateMachine",
    "PairingTicket",
    "ParseResult",
    "RejectionReason",
    "VerifyResult",
    "parse_ticket",
]
