"""Ed25519 node identity keys in the peer-to-peer key encoding."""

from __future__ import annotations

import logging
import os

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .config import Config

log = logging.getLogger(__name__)

_ED25519 = 1
_B58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
KEY_FILE = "priv.key"


class KeyError_(ValueError):
    """Raised when key data cannot be decoded."""


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = shift = 0
    while True:
        if pos >= len(data):
            raise KeyError_("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def _encode_key(data: bytes) -> bytes:
    return b"\x08" + _varint(_ED25519) + b"\x12" + _varint(len(data)) + data


def _decode_key(blob: bytes) -> tuple[int, bytes]:
    key_type, payload, pos = None, None, 0
    while pos < len(blob):
        tag, pos = _read_varint(blob, pos)
        number, wire = tag >> 3, tag & 7
        if wire == 0:
            value, pos = _read_varint(blob, pos)
            if number == 1:
                key_type = value
        elif wire == 2:
            length, pos = _read_varint(blob, pos)
            if pos + length > len(blob):
                raise KeyError_("truncated key data")
            if number == 2:
                payload = blob[pos:pos + length]
            pos += length
        else:
            raise KeyError_(f"unexpected wire type {wire}")
    if key_type is None or payload is None:
        raise KeyError_("incomplete key message")
    return key_type, payload


def _base58(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    chars = []
    while number:
        number, rem = divmod(number, 58)
        chars.append(_B58[rem])
    zeros = len(data) - len(data.lstrip(b"\0"))
    return "1" * zeros + "".join(reversed(chars))


def _raw_public(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def marshal_private_key(key: Ed25519PrivateKey) -> bytes:
    """Encode a private key as key type plus seed and public key."""
    seed = key.private_bytes(serialization.Encoding.Raw, serialization.PrivateFormat.Raw,
                             serialization.NoEncryption())
    return _encode_key(seed + _raw_public(key.public_key()))


def unmarshal_private_key(data: bytes) -> Ed25519PrivateKey:
    """Decode a private key written by marshal_private_key."""
    key_type, payload = _decode_key(data)
    if key_type != _ED25519:
        raise KeyError_(f"unsupported key type {key_type}")
    if len(payload) == 96:
        if payload[64:] != payload[32:64]:
            raise KeyError_("redundant public key does not match")
        payload = payload[:64]
    if len(payload) != 64:
        raise KeyError_(f"expected ed25519 data size to be 64, got {len(payload)}")
    key = Ed25519PrivateKey.from_private_bytes(payload[:32])
    if _raw_public(key.public_key()) != payload[32:]:
        raise KeyError_("public key does not match private key")
    return key


def peer_id(key: Ed25519PrivateKey | Ed25519PublicKey) -> str:
    """Return the base58 peer identifier of a key."""
    public = key.public_key() if isinstance(key, Ed25519PrivateKey) else key
    encoded = _encode_key(_raw_public(public))
    return _base58(b"\x00" + _varint(len(encoded)) + encoded)


def fetch_private_key(config: Config) -> Ed25519PrivateKey:
    """Load the node key from the data directory, creating it if absent."""
    path = config.data_path(KEY_FILE)
    try:
        with open(path, "rb") as fh:
            return unmarshal_private_key(fh.read())
    except FileNotFoundError:
        pass
    key = Ed25519PrivateKey.generate()
    os.makedirs(config.data_dir, exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(marshal_private_key(key))
    log.info("Generated private key")
    return key