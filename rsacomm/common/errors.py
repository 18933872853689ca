class RSACommError(Exception):
    """Base class for every error raised by rsacomm."""


class ProtocolError(RSACommError, ValueError):
    """Raised when a frame cannot be decoded into a Message."""


class CryptoError(RSACommError):
    """Raised when a payload cannot be encrypted or decrypted."""


class KeyLengthError(CryptoError):
    """Raised when decrypted key material does not fit the symmetric key size."""


class LoginRejectedError(RSACommError):
    """Raised when the server refuses a login because the name is taken or invalid."""


class UnknownPeerError(RSACommError, KeyError):
    """Raised when sending encrypted data to a peer with no known public key."""
