"""Base exceptions for qrpair."""


class QrPairError(Exception):
    """Base exception for all qrpair errors."""

    pass


class CryptoError(QrPairError):
    """Cryptographic operation failed."""

    pass


class StorageError(QrPairError):
    """Credential storage operation error."""

    pass


class AuthError(QrPairError):
    """Authentication error."""

    pass


class NotAuthenticatedError(AuthError):
    """No complete credential is stored."""

    pass


class UnauthorizedError(AuthError):
    """Server rejected the stored credential (HTTP 401).

    Raised after the stored credential has already been cleared.
    """

    def __init__(self, message: str = "Unauthorized", status: int = 401):
        super().__init__(message)
        self.status = status
