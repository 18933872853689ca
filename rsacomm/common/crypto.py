import base64, os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import RSA_BITS, KEY_SIZE
from .errors import CryptoError, KeyLengthError

NONCE_SIZE = 12   # 96-bit GCM nonce
TAG_SIZE = 16

# OAEP(SHA-256) overhead: 2 * digest size + 2
_OAEP_OVERHEAD = 2 * hashes.SHA256.digest_size + 2

PublicKeyLike = Union[RSAPublicKey, str, bytes]


def _oaep() -> padding.OAEP:
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()),
                        algorithm=hashes.SHA256(),
                        label=None)


def rsa_generate(bits: int = RSA_BITS) -> RSAPrivateKey:
    '''
    The function generates an RSA private key.
        Input: key size in bits (default 2048)
        Output: private key object
    '''
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


def rsa_public_pem(key: Union[RSAPrivateKey, RSAPublicKey]) -> str:
    '''
    The function returns the public key of a key pair as PEM text.
        Input:
            - RSA private key object (or the public key itself)
        Output:
            - PEM string of the public key
    '''
    pub = key.public_key() if isinstance(key, RSAPrivateKey) else key
    pem = pub.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return pem.decode()


def load_public_pem(pem: Union[str, bytes]) -> RSAPublicKey:
    ''' This function loads an RSA public key from PEM text '''
    if isinstance(pem, str):
        pem = pem.encode()
    try:
        pub = serialization.load_pem_public_key(pem)
    except ValueError as e:
        raise CryptoError(f"invalid public key: {e}") from e
    if not isinstance(pub, RSAPublicKey):
        raise CryptoError("provided key is not an RSA public key")
    return pub


def aes_key() -> bytes:
    '''This function generates a random 256-bit AES key'''
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def fit_key(raw: bytes) -> bytes:
    '''
    Copy decrypted key material into a key of exactly KEY_SIZE bytes.
    Extra bytes are only tolerated when they are leading zeros (the
    least-significant KEY_SIZE bytes are kept). Short input is rejected.
    '''
    if len(raw) == KEY_SIZE:
        return bytes(raw)
    if len(raw) > KEY_SIZE and not any(raw[:-KEY_SIZE]):
        return bytes(raw[-KEY_SIZE:])
    raise KeyLengthError(f"expected a {KEY_SIZE}-byte key, got {len(raw)} bytes")


class Cipher:
    ''' Encrypt/decrypt capability shared by the asymmetric and symmetric ciphers. '''

    def encrypt(self, plaintext: bytes, key) -> bytes:
        raise NotImplementedError

    def decrypt(self, ciphertext: bytes, key) -> bytes:
        raise NotImplementedError


class RSACipher(Cipher):
    '''
    RSA-OAEP(SHA-256). Plaintexts longer than one OAEP block are cut into
    blocks; the ciphertext is the concatenation of key-size blocks.
    '''

    def encrypt(self, plaintext: bytes, key: PublicKeyLike) -> bytes:
        pub = key if isinstance(key, RSAPublicKey) else load_public_pem(key)
        block = pub.key_size // 8 - _OAEP_OVERHEAD
        chunks = [plaintext[i:i + block] for i in range(0, len(plaintext), block)] or [b""]
        return b"".join(pub.encrypt(chunk, _oaep()) for chunk in chunks)

    def decrypt(self, ciphertext: bytes, key: RSAPrivateKey) -> bytes:
        size = key.key_size // 8
        if not ciphertext or len(ciphertext) % size:
            raise CryptoError(f"ciphertext is not a multiple of {size} bytes")
        try:
            return b"".join(key.decrypt(ciphertext[i:i + size], _oaep())
                            for i in range(0, len(ciphertext), size))
        except ValueError as e:
            raise CryptoError("RSA decryption failed") from e


class AESCipher(Cipher):
    ''' AES-256-GCM; the ciphertext carries nonce || ct || tag as one blob. '''

    def encrypt(self, plaintext: bytes, key: bytes) -> bytes:
        if len(key) != KEY_SIZE:
            raise KeyLengthError(f"expected a {KEY_SIZE}-byte key, got {len(key)} bytes")
        nonce = os.urandom(NONCE_SIZE)  # random 96-bit nonce
        return nonce + AESGCM(key).encrypt(nonce, plaintext, None)  # ct||tag

    def decrypt(self, ciphertext: bytes, key: bytes) -> bytes:
        if len(key) != KEY_SIZE:
            raise KeyLengthError(f"expected a {KEY_SIZE}-byte key, got {len(key)} bytes")
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("ciphertext too short")
        nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            return AESGCM(key).decrypt(nonce, body, None)
        except InvalidTag as e:
            raise CryptoError("AES-GCM authentication failed") from e


def b64(b: bytes) -> str:
    ''' This function encodes bytes to a Base64 string '''
    return base64.b64encode(b).decode()


def b64d(s: str) -> bytes:
    ''' This function decodes a Base64 string to bytes '''
    return base64.b64decode(s.encode(), validate=True)
