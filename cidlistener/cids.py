"""Content identifiers: a small, self-contained CID and multihash model."""

from __future__ import annotations

import base64
from dataclasses import dataclass

RAW = 0x55
DAG_PB = 0x70
IDENTITY = 0x00
SHA2_256 = 0x12

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {ch: i for i, ch in enumerate(_B58_ALPHABET)}


def _encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varint cannot be negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def _check_multihash(mh: bytes) -> None:
    _, pos = _decode_varint(mh, 0)
    length, pos = _decode_varint(mh, pos)
    if len(mh) - pos != length:
        raise ValueError("multihash digest length does not match its header")


def _b58encode(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    chars = []
    while number:
        number, rem = divmod(number, 58)
        chars.append(_B58_ALPHABET[rem])
    leading = len(data) - len(data.lstrip(b"\x00"))
    return "1" * leading + "".join(reversed(chars))


def _b58decode(text: str) -> bytes:
    number = 0
    for ch in text:
        try:
            number = number * 58 + _B58_INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character {ch!r}") from None
    leading = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\x00" * leading + body


def _b32encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").rstrip("=").lower()


def _b32decode(text: str) -> bytes:
    padded = text.upper() + "=" * (-len(text) % 8)
    try:
        return base64.b32decode(padded)
    except ValueError as exc:
        raise ValueError(f"invalid base32 text: {exc}") from None


@dataclass(frozen=True)
class Cid:
    """A content identifier: version, content codec and multihash."""

    version: int
    codec: int
    multihash: bytes

    def __post_init__(self) -> None:
        if self.version not in (0, 1):
            raise ValueError(f"unsupported CID version {self.version}")
        if self.version == 0 and self.codec != DAG_PB:
            raise ValueError("CIDv0 only supports the dag-pb codec")
        _check_multihash(self.multihash)

    @property
    def hash(self) -> bytes:
        return self.multihash

    def to_bytes(self) -> bytes:
        if self.version == 0:
            return self.multihash
        return _encode_varint(1) + _encode_varint(self.codec) + self.multihash

    def encode(self) -> str:
        """Return the canonical string form (base58 for v0, base32 for v1)."""
        if self.version == 0:
            return _b58encode(self.multihash)
        return "b" + _b32encode(self.to_bytes())

    def __str__(self) -> str:
        return self.encode()


def _cid_from_bytes(data: bytes) -> Cid:
    version, pos = _decode_varint(data, 0)
    if version != 1:
        raise ValueError(f"unsupported CID version {version}")
    codec, pos = _decode_varint(data, pos)
    return Cid(1, codec, data[pos:])


def parse_cid(text: str) -> Cid:
    """Parse a CID from its string form; raises ValueError when malformed."""
    if not text:
        raise ValueError("empty CID string")
    if len(text) == 46 and text.startswith("Qm"):
        return Cid(0, DAG_PB, _b58decode(text))
    prefix, body = text[0], text[1:]
    if not body:
        raise ValueError("CID string has no payload")
    if prefix in ("b", "B"):
        return _cid_from_bytes(_b32decode(body))
    if prefix == "z":
        return _cid_from_bytes(_b58decode(body))
    raise ValueError(f"unsupported multibase prefix {prefix!r}")


def make_cid(codec: int, multihash: bytes) -> Cid:
    """Build a version 1 CID."""
    return Cid(1, codec, bytes(multihash))


def identity_multihash(data: bytes) -> bytes:
    """Wrap data in an identity multihash."""
    data = bytes(data)
    return _encode_varint(IDENTITY) + _encode_varint(len(data)) + data