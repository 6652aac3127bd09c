"""
Cryptographic operations for keyhold

secp256k1 keys with BIP-340 Schnorr signatures over event ids, plus the
bech32 ``nsec``/``npub`` encodings used to back up and share keys.
"""

from typing import Optional, Union
import logging

from bech32 import bech32_decode, bech32_encode, convertbits
from coincurve.keys import PrivateKey, PublicKeyXOnly

from .errors import InvalidSecretKey
from .events import SignedEvent, UnsignedEvent, compute_id
from .vault import zeroize

logger = logging.getLogger("keyhold.crypto")

SECRET_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64

NSEC_PREFIX = "nsec"
NPUB_PREFIX = "npub"

# Zero auxiliary randomness makes BIP-340 signing deterministic
_AUX_RANDOMNESS = bytes(32)


class KeyPair:
    """secp256k1 key pair for signing event ids"""

    def __init__(self, secret: Optional[bytes] = None):
        try:
            self._private_key = PrivateKey(bytes(secret)) if secret is not None else PrivateKey()
        except ValueError as e:
            raise InvalidSecretKey(f"Secret key is out of range: {e}") from e
        self.public_key = self._private_key.public_key_xonly

    def sign(self, message: bytes) -> bytes:
        """Sign a 32-byte message and return the 64-byte signature"""
        if len(message) != 32:
            raise ValueError("Schnorr signatures are computed over 32-byte messages")
        return self._private_key.sign_schnorr(message, _AUX_RANDOMNESS)

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Verify signature against message using this keypair's public key"""
        return schnorr_verify(signature, message, self.public_key_bytes())

    def public_key_bytes(self) -> bytes:
        """Get x-only public key as raw bytes"""
        return self.public_key.format()

    def public_key_hex(self) -> str:
        return self.public_key_bytes().hex()

    def secret_bytes(self) -> bytearray:
        """Get a mutable copy of the secret key; zeroize it when done"""
        return bytearray(self._private_key.secret)

    @classmethod
    def from_secret(cls, secret: Union[bytes, bytearray]) -> 'KeyPair':
        if len(secret) != SECRET_KEY_SIZE:
            raise InvalidSecretKey(f"Secret key must be {SECRET_KEY_SIZE} bytes")
        return cls(bytes(secret))


def generate_secret() -> bytearray:
    """Generate a fresh random secret key"""
    return KeyPair().secret_bytes()


def public_key_from_secret(secret: Union[bytes, bytearray]) -> bytes:
    """Derive the 32-byte x-only public key"""
    return KeyPair.from_secret(secret).public_key_bytes()


def is_valid_public_key(public_key: bytes) -> bool:
    """Check that bytes encode an x-only point on the curve"""
    if len(public_key) != PUBLIC_KEY_SIZE:
        return False
    try:
        PublicKeyXOnly(bytes(public_key))
    except ValueError:
        return False
    return True


def schnorr_sign(secret: Union[bytes, bytearray], message: bytes) -> bytes:
    """Deterministic BIP-340 signature over a 32-byte message"""
    return KeyPair.from_secret(secret).sign(message)


def schnorr_verify(signature: bytes, message: bytes, public_key: bytes) -> bool:
    """
    Verify a BIP-340 signature

    Returns False instead of raising for malformed keys or signatures.
    """
    if len(signature) != SIGNATURE_SIZE or len(message) != 32 or len(public_key) != PUBLIC_KEY_SIZE:
        return False
    try:
        return PublicKeyXOnly(public_key).verify(signature, message)
    except (ValueError, TypeError):
        return False


# bech32 encodings

def _bech32_to_bytes(expected_hrp: str, text: str) -> bytes:
    hrp, data = bech32_decode(text.strip().lower())
    if hrp != expected_hrp or data is None:
        raise InvalidSecretKey(f"Not a valid {expected_hrp} string")
    decoded = convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise InvalidSecretKey(f"{expected_hrp} payload must be 32 bytes")
    return bytes(decoded)


def _bytes_to_bech32(hrp: str, payload: bytes) -> str:
    return bech32_encode(hrp, convertbits(payload, 8, 5))


def encode_nsec(secret: Union[bytes, bytearray]) -> str:
    """Encode a secret key for backup display"""
    return _bytes_to_bech32(NSEC_PREFIX, bytes(secret))


def encode_npub(public_key: bytes) -> str:
    return _bytes_to_bech32(NPUB_PREFIX, public_key)


def decode_npub(npub: str) -> bytes:
    return _bech32_to_bytes(NPUB_PREFIX, npub)


def parse_secret_key(value: Union[str, bytes, bytearray]) -> bytearray:
    """
    Parse and validate a secret key

    Accepts 32 raw bytes, 64 hex characters or an ``nsec1...`` string.
    Raises InvalidSecretKey for anything else, including scalars outside
    the curve order.
    """
    if isinstance(value, (bytes, bytearray)):
        secret = bytearray(value)
    else:
        text = value.strip()
        if text.lower().startswith(NSEC_PREFIX + "1"):
            secret = bytearray(_bech32_to_bytes(NSEC_PREFIX, text))
        elif len(text) == 2 * SECRET_KEY_SIZE:
            try:
                secret = bytearray(bytes.fromhex(text))
            except ValueError:
                raise InvalidSecretKey("Secret key must be hex or nsec encoded") from None
        else:
            raise InvalidSecretKey("Secret key must be 64 hex characters or an nsec string")

    if len(secret) != SECRET_KEY_SIZE:
        zeroize(secret)
        raise InvalidSecretKey(f"Secret key must be {SECRET_KEY_SIZE} bytes")
    try:
        KeyPair.from_secret(secret)
    except InvalidSecretKey:
        zeroize(secret)
        raise
    return secret


# Event signing

def sign_event(event: UnsignedEvent, secret: Union[bytes, bytearray]) -> SignedEvent:
    """
    Sign an event with a raw secret key

    The event's pubkey must belong to the secret.
    """
    keypair = KeyPair.from_secret(secret)
    if keypair.public_key_hex() != event.pubkey:
        raise ValueError("Event pubkey does not match the signing key")

    event_id = compute_id(event)
    signature = keypair.sign(event_id)
    return SignedEvent(
        kind=event.kind,
        created_at=event.created_at,
        tags=event.tags,
        content=event.content,
        pubkey=event.pubkey,
        id=event_id.hex(),
        sig=signature.hex(),
    )


def attach_signature(event: UnsignedEvent, event_id: bytes, signature: bytes) -> SignedEvent:
    """Build a SignedEvent from an externally produced signature"""
    return SignedEvent(
        kind=event.kind,
        created_at=event.created_at,
        tags=event.tags,
        content=event.content,
        pubkey=event.pubkey,
        id=event_id.hex(),
        sig=signature.hex(),
    )


def verify_event(event: SignedEvent) -> bool:
    """
    Verify an event's id and signature

    Returns True only if the id matches the canonical serialization and
    the signature verifies against it under the event's pubkey.
    """
    if not event.has_valid_id():
        return False
    return schnorr_verify(event.sig_bytes, event.id_bytes, event.pubkey_bytes)


__all__ = [
    'KeyPair',
    'generate_secret',
    'public_key_from_secret',
    'is_valid_public_key',
    'schnorr_sign',
    'schnorr_verify',
    'encode_nsec',
    'encode_npub',
    'decode_npub',
    'parse_secret_key',
    'sign_event',
    'attach_signature',
    'verify_event',
    'zeroize',
]
