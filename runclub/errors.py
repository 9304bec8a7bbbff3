"""
Exception hierarchy shared by the credential store, the legacy registry,
the migration coordinator and the token lifecycle manager.
"""


class RunClubError(Exception):
    """Base exception for all run club errors."""

    pass


class ValidationError(RunClubError):
    """Raised when input data is malformed."""

    pass


class ConflictError(RunClubError):
    """
    Raised when an operation would break an identity invariant.

    The ``code`` attribute names the violated invariant, e.g.
    ``"DuplicateLocalId"`` or ``"DuplicateActiveExternalId"``.
    """

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        super().__init__(message or code)


class CryptoError(RunClubError):
    """Raised internally when encryption or decryption fails."""

    pass


class StorageError(RunClubError):
    """Raised when a store cannot read or write its backing storage."""

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message)


class UpstreamError(RunClubError):
    """Transient failure talking to the OAuth provider (network, 429, 5xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class UpstreamAuthError(UpstreamError):
    """The OAuth provider confirmed the refresh token is revoked."""

    pass
