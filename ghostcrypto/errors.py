"""
Error taxonomy shared by the core, the relay and the client.

Every error carries a stable ``code`` (used on the wire by the relay) and a
``retryable`` flag. Messages never include passphrases, key material or
plaintext.
"""


class GhostError(Exception):
    """Base class for all Ghost Network errors"""
    code = "error"
    retryable = False

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.__class__.__doc__)
        self.detail = detail or self.__class__.__doc__


class ValidationError(GhostError):
    """Malformed alias, passphrase, key or message"""
    code = "validation_error"


class CryptoError(GhostError):
    """Base exception for cryptographic errors"""
    code = "crypto_error"


class AuthenticationFailure(CryptoError):
    """Unable to unseal key material"""
    code = "authentication_failure"


class DecryptionFailure(CryptoError):
    """Message could not be decrypted"""
    code = "decryption_failure"


class PeerNotReady(GhostError):
    """Peer has not published an encryption key yet"""
    code = "peer_not_ready"
    retryable = True


class HandshakeNotFound(GhostError):
    """Handshake not found"""
    code = "handshake_not_found"


class Unauthorized(GhostError):
    """Caller is not allowed to perform this operation"""
    code = "unauthorized"


class NotPending(GhostError):
    """Handshake is not pending"""
    code = "not_pending"


class HandshakeExpired(NotPending):
    """Handshake has expired"""
    code = "handshake_expired"


class StorageUnavailable(GhostError):
    """Relay or storage backend is unavailable"""
    code = "storage_unavailable"
    retryable = True


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        CryptoError,
        AuthenticationFailure,
        DecryptionFailure,
        PeerNotReady,
        HandshakeNotFound,
        Unauthorized,
        NotPending,
        HandshakeExpired,
        StorageUnavailable,
    )
}


def error_from_code(code: str, detail: str = "") -> GhostError:
    """Rebuild an exception from its wire code (unknown codes become StorageUnavailable)"""
    cls = ERRORS_BY_CODE.get(code, StorageUnavailable)
    return cls(detail)
