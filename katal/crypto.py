"""
crypto.py — secp256k1 helpers for the bot identity.

Why this exists:
- Keep all key handling in one place so the rest of the code can call
  `encrypt/decrypt/sign/verify` without caring about curves or padding.
- Accept the two identity formats people actually paste into a .env file:
  64-char hex and bech32 `nsec1...`.

Notes:
- Direct messages use NIP-04: ECDH shared X coordinate as an AES-256-CBC key,
  payload rendered as `base64(ciphertext)?iv=base64(iv)`.
- Signatures are BIP-340 Schnorr over the 32-byte event id.
- Public keys travel as 32-byte x-only hex strings.
"""

import base64
import os
import secrets
from dataclasses import dataclass
from typing import Tuple

import bech32
import coincurve
from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import ConfigError, DecryptError

CURVE = ec.SECP256K1()
IV_SEPARATOR = "?iv="

# -----------------------------
# bech32 helpers (nsec / npub)
# -----------------------------


def bech32_encode_bytes(hrp: str, data: bytes) -> str:
    """Encode raw bytes under a human-readable prefix (e.g. 'npub')."""
    words = bech32.convertbits(data, 8, 5, True)
    return bech32.bech32_encode(hrp, words)


def bech32_decode_bytes(value: str) -> Tuple[str, bytes]:
    """Inverse of bech32_encode_bytes(). Raises ValueError on bad input."""
    hrp, words = bech32.bech32_decode(value.lower())
    if hrp is None or words is None:
        raise ValueError("invalid bech32 string")
    data = bech32.convertbits(words, 5, 8, False)
    if data is None:
        raise ValueError("invalid bech32 payload")
    return hrp, bytes(data)


def npub_encode(pubkey_hex: str) -> str:
    return bech32_encode_bytes("npub", bytes.fromhex(pubkey_hex))


def nsec_encode(secret: bytes) -> str:
    return bech32_encode_bytes("nsec", secret)


# -------------
# Key utilities
# -------------


def generate_secret() -> bytes:
    """Fresh 32-byte secp256k1 secret (retries the astronomically rare invalid scalar)."""
    while True:
        candidate = secrets.token_bytes(32)
        try:
            _private_key(candidate)
            return candidate
        except ValueError:
            continue


def _private_key(secret: bytes) -> ec.EllipticCurvePrivateKey:
    return ec.derive_private_key(int.from_bytes(secret, "big"), CURVE)


def _public_key(pubkey_hex: str) -> ec.EllipticCurvePublicKey:
    """
    Lift an x-only key to a full point. BIP-340 keys always use the even-Y
    point, which is the 0x02 compressed encoding.
    """
    raw = bytes.fromhex(pubkey_hex)
    if len(raw) != 32:
        raise ValueError("public key must be 32 bytes")
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, b"\x02" + raw)


def derive_pubkey(secret: bytes) -> str:
    """x-only public key (hex) for a secret."""
    compressed = _private_key(secret).public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )
    return compressed[1:].hex()


def parse_secret(value: str) -> bytes:
    """
    Turn a configured identity secret (64-hex or nsec) into 32 raw bytes.

    Raises:
        ConfigError: if the value is in neither format or is not a valid scalar.
    """
    value = (value or "").strip()
    if value[:4].lower() == "nsec":
        try:
            hrp, data = bech32_decode_bytes(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid nsec private key: {exc}") from exc
        if hrp != "nsec" or len(data) != 32:
            raise ConfigError("Invalid nsec private key.")
        secret = data
    elif len(value) == 64:
        try:
            secret = bytes.fromhex(value)
        except ValueError as exc:
            raise ConfigError("Invalid hex private key.") from exc
    else:
        raise ConfigError("Invalid private key format. Provide nsec or 64-hex private key.")

    try:
        _private_key(secret)
    except ValueError as exc:
        raise ConfigError("Private key is out of range for secp256k1.") from exc
    return secret


@dataclass(frozen=True)
class Identity:
    """The bot's keypair in every format the rest of the code wants."""

    secret: bytes
    pubkey: str

    @classmethod
    def from_secret(cls, secret: bytes) -> "Identity":
        return cls(secret=secret, pubkey=derive_pubkey(secret))

    @classmethod
    def generate(cls) -> "Identity":
        return cls.from_secret(generate_secret())

    @property
    def secret_hex(self) -> str:
        return self.secret.hex()

    @property
    def nsec(self) -> str:
        return nsec_encode(self.secret)

    @property
    def npub(self) -> str:
        return npub_encode(self.pubkey)

    def __repr__(self) -> str:
        # Never print the secret by accident.
        return f"Identity(pubkey={self.pubkey!r})"


# ---------------------------
# Encryption & Decryption API
# ---------------------------


def shared_secret(secret: bytes, peer_pubkey_hex: str) -> bytes:
    """Raw ECDH X coordinate, which NIP-04 uses directly as the AES key."""
    return _private_key(secret).exchange(ec.ECDH(), _public_key(peer_pubkey_hex))


def nip04_encrypt(secret: bytes, peer_pubkey_hex: str, plaintext: str) -> str:
    """Encrypt a UTF-8 string to a peer. Returns `ct_b64?iv=iv_b64`."""
    key = shared_secret(secret, peer_pubkey_hex)
    iv = os.urandom(16)

    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ct = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(ct).decode("ascii") + IV_SEPARATOR + base64.b64encode(iv).decode("ascii")


def nip04_decrypt(secret: bytes, peer_pubkey_hex: str, payload: str) -> str:
    """
    Reverse of nip04_encrypt().

    Raises:
        DecryptError: malformed payload, wrong key, or bad padding.
    """
    if not isinstance(payload, str) or IV_SEPARATOR not in payload:
        raise DecryptError("payload is not NIP-04 ciphertext")
    ct_b64, iv_b64 = payload.split(IV_SEPARATOR, 1)
    try:
        ct = base64.b64decode(ct_b64, validate=True)
        iv = base64.b64decode(iv_b64, validate=True)
        key = shared_secret(secret, peer_pubkey_hex)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ct) + decryptor.finalize()

        unpadder = padding.PKCS7(128).unpadder()
        raw = unpadder.update(padded) + unpadder.finalize()
        return raw.decode("utf-8")
    except (ValueError, TypeError, UnicodeDecodeError) as exc:
        # binascii.Error is a ValueError; so are bad IV sizes and bad padding.
        raise DecryptError(str(exc) or "decryption failed") from exc


# -------------------------
# Signing & Verification API
# -------------------------


def sign(secret: bytes, digest: bytes) -> str:
    """
    Schnorr-sign a 32-byte digest. Returns the 64-byte signature as hex.

    Fresh auxiliary randomness per call, so signatures differ each time even
    for the same input; that's expected.
    """
    if len(digest) != 32:
        raise ValueError("Schnorr signing needs a 32-byte digest")
    sig = coincurve.PrivateKey(secret).sign_schnorr(digest, os.urandom(32))
    return sig.hex()


def verify(pubkey_hex: str, digest: bytes, sig_hex: str) -> bool:
    """
    Verify a hex signature produced by `sign()`.
    Returns True on success, False on any failure (bad key, wrong data, etc.).
    """
    try:
        pub = coincurve.PublicKeyXOnly(bytes.fromhex(pubkey_hex))
        return bool(pub.verify(bytes.fromhex(sig_hex), digest))
    except Exception:
        # Callers only need a yes/no; they never see verify errors.
        return False
