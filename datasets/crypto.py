# datasets/crypto.py
"""
Crypto primitives for the dataset envelope.

Dataset bytes are sealed with AES-256-GCM under a per-dataset content key.
The content key is wrapped toward each reader's secp256k1 public key (ECIES:
ephemeral ECDH + HKDF-SHA256 + AES-GCM), so the same key pair that signs
wallet messages is the one that unwraps content keys. Private keys only ever
live client-side in a PrincipalKey.
"""
import hashlib
import json
import os
import re
import time

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from .errors import BadKey, BadRecipient, BadRequest

MESSAGE_PREFIX = 'synergy:v1:'
CONTENT_KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

WRAP_VERSION = b'\x01'
WRAP_INFO = b'synergy:v1:wrap'
_POINT_BYTES = 65
WRAPPED_KEY_BYTES = 1 + _POINT_BYTES + NONCE_BYTES + CONTENT_KEY_BYTES + TAG_BYTES

_ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
_CURVE = ec.SECP256K1()


# --- encoding helpers ---

def to_hex(data):
    return '0x' + bytes(data).hex()


def from_hex(value, field='value'):
    """Decode a 0x-prefixed (or bare) hex string, raising BadRequest when malformed."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str):
        raise BadRequest(f'{field} must be a hex string')
    text = value[2:] if value.startswith(('0x', '0X')) else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise BadRequest(f'{field} is not valid hex') from None


def canonical_json(value):
    return json.dumps(value, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def content_hash(data):
    """Content id of a byte string: lowercase hex SHA-256."""
    return hashlib.sha256(bytes(data)).hexdigest()


def normalize_address(address):
    """Lowercase an address after validating its shape (and checksum if mixed-case)."""
    if not isinstance(address, str) or not _ADDRESS_RE.match(address):
        raise BadRequest(f'Malformed address: {address!r}')
    body = address[2:]
    if body != body.lower() and body != body.upper() and not Web3.is_checksum_address(address):
        raise BadRequest(f'Address checksum mismatch: {address}')
    return address.lower()


# --- symmetric envelope ---

def generate_content_key():
    return AESGCM.generate_key(bit_length=256)


def _aead(key):
    if not isinstance(key, (bytes, bytearray)) or len(key) != CONTENT_KEY_BYTES:
        raise BadKey('Content key must be 32 bytes')
    return AESGCM(bytes(key))


def encrypt_stream(key, plaintext):
    """
    Seal `plaintext` (bytes or an iterable of byte chunks) under `key`.
    Output layout: nonce(12) || ciphertext || tag(16).
    """
    if not isinstance(plaintext, (bytes, bytearray, memoryview)):
        plaintext = b''.join(plaintext)
    nonce = os.urandom(NONCE_BYTES)
    return nonce + _aead(key).encrypt(nonce, bytes(plaintext), None)


def decrypt_stream(key, ciphertext):
    aead = _aead(key)
    ciphertext = bytes(ciphertext)
    if len(ciphertext) < NONCE_BYTES + TAG_BYTES:
        raise BadKey('Ciphertext is truncated')
    try:
        return aead.decrypt(ciphertext[:NONCE_BYTES], ciphertext[NONCE_BYTES:], None)
    except InvalidTag:
        raise BadKey('Ciphertext does not authenticate under this key') from None


# --- key wrapping ---

def load_public_key(public_key):
    """
    Accept a secp256k1 public key as bytes or hex: 64 raw bytes (wallet
    style), 65 bytes uncompressed or 33 bytes compressed.
    """
    try:
        raw = from_hex(public_key, 'public key')
    except BadRequest as exc:
        raise BadRecipient(exc.message) from None
    if len(raw) == 64:
        raw = b'\x04' + raw
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, raw)
    except ValueError:
        raise BadRecipient('Malformed recipient public key') from None


def _uncompressed(public_key):
    return public_key.public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )


def _wrapping_key(shared_secret):
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=WRAP_INFO).derive(shared_secret)


def wrap_key(content_key, recipient_public_key):
    if not isinstance(content_key, (bytes, bytearray)) or len(content_key) != CONTENT_KEY_BYTES:
        raise BadKey('Content key must be 32 bytes')
    recipient = load_public_key(recipient_public_key)
    ephemeral = ec.generate_private_key(_CURVE)
    ephemeral_point = _uncompressed(ephemeral.public_key())
    kek = _wrapping_key(ephemeral.exchange(ec.ECDH(), recipient))
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(kek).encrypt(nonce, bytes(content_key), ephemeral_point)
    return WRAP_VERSION + ephemeral_point + nonce + sealed


def _load_private_key(private_key):
    try:
        raw = from_hex(private_key, 'private key')
    except BadRequest as exc:
        raise BadKey(exc.message) from None
    if len(raw) != 32:
        raise BadKey('Private key must be 32 bytes')
    try:
        return ec.derive_private_key(int.from_bytes(raw, 'big'), _CURVE)
    except ValueError:
        raise BadKey('Private key is out of range') from None


def unwrap_key(wrapped, recipient_private_key):
    wrapped = bytes(wrapped)
    if len(wrapped) != WRAPPED_KEY_BYTES or wrapped[:1] != WRAP_VERSION:
        raise BadKey('Malformed wrapped key')
    ephemeral_point = wrapped[1:1 + _POINT_BYTES]
    nonce = wrapped[1 + _POINT_BYTES:1 + _POINT_BYTES + NONCE_BYTES]
    sealed = wrapped[1 + _POINT_BYTES + NONCE_BYTES:]
    private_key = _load_private_key(recipient_private_key)
    try:
        ephemeral = ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, ephemeral_point)
    except ValueError:
        raise BadKey('Malformed wrapped key') from None
    kek = _wrapping_key(private_key.exchange(ec.ECDH(), ephemeral))
    try:
        return AESGCM(kek).decrypt(nonce, sealed, ephemeral_point)
    except InvalidTag:
        raise BadKey('Wrapped key was not sealed for this recipient') from None


# --- principal identity & signatures ---

def address_from_public_key(public_key):
    return _point_address(_uncompressed(load_public_key(public_key)))


def _point_address(point):
    return to_hex(bytes(Web3.keccak(point[1:]))[-20:])


def canonical_message(action, args, timestamp):
    return f'{MESSAGE_PREFIX}{action}:{canonical_json(args)}:{int(timestamp)}'


def sign(private_key, message):
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return to_hex(signed.signature)


def verify(address, message, signature):
    """True iff `signature` over `message` recovers to `address`. Never raises."""
    try:
        expected = normalize_address(address)
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception:
        return False
    return recovered.lower() == expected


class PrincipalKey:
    """
    Client-side key pair of a principal. The gateway never builds one of
    these for a user; it only sees addresses, public keys and signatures.
    """

    def __init__(self, private_key):
        self._private_key = _load_private_key(private_key)
        self._private_bytes = self._private_key.private_numbers().private_value.to_bytes(32, 'big')
        point = _uncompressed(self._private_key.public_key())
        self.public_key = to_hex(point[1:])
        self.address = _point_address(point)

    @classmethod
    def generate(cls):
        key = ec.generate_private_key(_CURVE)
        return cls(key.private_numbers().private_value.to_bytes(32, 'big'))

    def sign(self, message):
        return sign(self._private_bytes, message)

    def sign_request(self, action, args, timestamp=None):
        """Return the auth fields the gateway expects alongside `args`."""
        timestamp = int(time.time()) if timestamp is None else int(timestamp)
        return {
            'address': self.address,
            'timestamp': timestamp,
            'signature': self.sign(canonical_message(action, args, timestamp)),
        }

    def unwrap(self, wrapped):
        return unwrap_key(wrapped, self._private_bytes)

    def __repr__(self):
        return f'PrincipalKey({self.address})'
