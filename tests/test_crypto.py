"""Tests for keys, Schnorr signatures and bech32 encodings."""

from __future__ import annotations

import pytest

from keyhold.core.crypto import (
    KeyPair,
    attach_signature,
    decode_npub,
    encode_npub,
    encode_nsec,
    generate_secret,
    is_valid_public_key,
    parse_secret_key,
    public_key_from_secret,
    schnorr_sign,
    schnorr_verify,
    sign_event,
    verify_event,
)
from keyhold.core.errors import InvalidSecretKey
from keyhold.core.events import SignedEvent, compute_id, create_text_note

# BIP-340 test vector 0
SECRET_HEX = "0000000000000000000000000000000000000000000000000000000000000003"
VECTOR_PUBKEY = "F9308A019258C31049344F85F89D5229B531C845836F99B08601F113BCE036F9"
VECTOR_SIG = (
    "E907831F80848D1069A5371B402410364BDF1C5F8307B0084C55F1CE2DCA8215"
    "25F66A4A85EA8B71E482A74F382D2CE5EBEEE8FDB2172F477DF4900D310536C0"
)
CURVE_ORDER_HEX = "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141"


# ---------------------------------------------------------------------------
# Schnorr
# ---------------------------------------------------------------------------


class TestSchnorr:
    """Tests for BIP-340 signing and verification."""

    def test_vector_public_key(self) -> None:
        assert public_key_from_secret(bytes.fromhex(SECRET_HEX)).hex() == VECTOR_PUBKEY.lower()

    def test_vector_signature(self) -> None:
        """Zero aux randomness reproduces the reference signature."""
        sig = schnorr_sign(bytes.fromhex(SECRET_HEX), bytes(32))
        assert sig.hex() == VECTOR_SIG.lower()

    def test_vector_verifies(self) -> None:
        assert schnorr_verify(bytes.fromhex(VECTOR_SIG), bytes(32), bytes.fromhex(VECTOR_PUBKEY))

    def test_signing_is_deterministic(self, keypair: KeyPair) -> None:
        message = bytes(range(32))
        assert keypair.sign(message) == keypair.sign(message)

    def test_wrong_message_fails(self, keypair: KeyPair) -> None:
        sig = keypair.sign(bytes(32))
        assert not keypair.verify(b"\x01" + bytes(31), sig)

    def test_malformed_inputs_return_false(self, keypair: KeyPair) -> None:
        sig = keypair.sign(bytes(32))
        assert not schnorr_verify(sig[:63], bytes(32), keypair.public_key_bytes())
        assert not schnorr_verify(sig, bytes(31), keypair.public_key_bytes())
        assert not schnorr_verify(sig, bytes(32), b"\x00" * 31)

    def test_message_must_be_32_bytes(self, keypair: KeyPair) -> None:
        with pytest.raises(ValueError):
            keypair.sign(b"short")


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestKeys:
    """Tests for key generation and parsing."""

    def test_generate_secret(self) -> None:
        a, b = generate_secret(), generate_secret()
        assert len(a) == 32
        assert a != b
        assert isinstance(a, bytearray)

    def test_zero_secret_rejected(self) -> None:
        with pytest.raises(InvalidSecretKey):
            KeyPair.from_secret(bytes(32))

    def test_secret_at_curve_order_rejected(self) -> None:
        with pytest.raises(InvalidSecretKey):
            parse_secret_key(CURVE_ORDER_HEX.lower())

    def test_wrong_length_rejected(self) -> None:
        with pytest.raises(InvalidSecretKey):
            parse_secret_key(b"\x01" * 31)
        with pytest.raises(InvalidSecretKey):
            parse_secret_key("abc")

    def test_parse_hex(self) -> None:
        assert parse_secret_key(SECRET_HEX) == bytearray.fromhex(SECRET_HEX)
        assert parse_secret_key(SECRET_HEX.upper()) == bytearray.fromhex(SECRET_HEX)

    def test_non_hex_rejected(self) -> None:
        with pytest.raises(InvalidSecretKey):
            parse_secret_key("g" * 64)

    def test_nsec_matches_hex(self) -> None:
        nsec = encode_nsec(bytes.fromhex(SECRET_HEX))
        assert nsec.startswith("nsec1")
        assert parse_secret_key(nsec) == bytearray.fromhex(SECRET_HEX)

    def test_corrupted_nsec_rejected(self) -> None:
        nsec = encode_nsec(bytes.fromhex(SECRET_HEX))
        broken = nsec[:-1] + ("q" if nsec[-1] != "q" else "p")
        with pytest.raises(InvalidSecretKey):
            parse_secret_key(broken)

    def test_npub_roundtrip_prefix(self, keypair: KeyPair) -> None:
        npub = encode_npub(keypair.public_key_bytes())
        assert npub.startswith("npub1")
        assert decode_npub(npub) == keypair.public_key_bytes()

    def test_npub_is_not_nsec(self, keypair: KeyPair) -> None:
        with pytest.raises(InvalidSecretKey):
            parse_secret_key(encode_npub(keypair.public_key_bytes()))

    def test_is_valid_public_key(self, keypair: KeyPair) -> None:
        assert is_valid_public_key(keypair.public_key_bytes())
        assert not is_valid_public_key(b"\x01" * 31)
        # x coordinate at the field prime is not on the curve
        assert not is_valid_public_key(b"\xff" * 32)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEventSignatures:
    """Tests for signing and verifying events."""

    def test_signed_event_verifies(self, signed_event: SignedEvent) -> None:
        assert verify_event(signed_event)

    def test_tampered_content_fails(self, signed_event: SignedEvent) -> None:
        assert not verify_event(signed_event.model_copy(update={'content': "tampered"}))

    def test_recomputed_id_with_old_sig_fails(self, signed_event: SignedEvent) -> None:
        """Fixing up the id does not make a stolen signature valid."""
        edited = signed_event.unsigned().model_copy(update={'content': "tampered"})
        forged = attach_signature(edited, compute_id(edited), signed_event.sig_bytes)
        assert forged.has_valid_id()
        assert not verify_event(forged)

    def test_other_key_fails(self, signed_event: SignedEvent) -> None:
        other = KeyPair()
        forged = signed_event.model_copy(update={'pubkey': other.public_key_hex()})
        assert not verify_event(forged)

    def test_sign_event_is_deterministic(self, keypair: KeyPair) -> None:
        event = create_text_note(keypair.public_key_hex(), "same", created_at=1)
        assert sign_event(event, keypair.secret_bytes()) == sign_event(event, keypair.secret_bytes())

    def test_sign_event_pubkey_mismatch(self, keypair: KeyPair) -> None:
        event = create_text_note("a" * 64, "x", created_at=1)
        with pytest.raises(ValueError):
            sign_event(event, keypair.secret_bytes())
