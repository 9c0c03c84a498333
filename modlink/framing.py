"""Modbus TCP (MBAP) and RTU framing."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from modlink.errors import DecodeError, DecodeErrorKind, EncodeError

__all__ = [
    "MBAP_HEADER_LEN",
    "MAX_PDU_LEN",
    "MbapHeader",
    "encode_tcp_frame",
    "crc16",
    "encode_rtu_frame",
    "decode_rtu_frame",
    "find_rtu_frame",
]

MBAP_HEADER_LEN = 7
MAX_PDU_LEN = 253
_MIN_RTU_FRAME_LEN = 4

_MBAP = struct.Struct(">HHHB")


def _build_crc_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _build_crc_table()


def _check_range(value: int, maximum: int) -> None:
    if not 0 <= value <= maximum:
        raise EncodeError("value out of range")


def _check_pdu(pdu: bytes) -> None:
    if not 1 <= len(pdu) <= MAX_PDU_LEN:
        raise EncodeError("invalid pdu length")


@dataclass(frozen=True)
class MbapHeader:
    """The seven-byte header that precedes every Modbus TCP PDU."""

    transaction_id: int
    protocol_id: int
    length: int
    unit_id: int

    def encode(self) -> bytes:
        """Return the header in wire order."""
        for value, maximum in (
            (self.transaction_id, 0xFFFF),
            (self.protocol_id, 0xFFFF),
            (self.length, 0xFFFF),
            (self.unit_id, 0xFF),
        ):
            _check_range(value, maximum)
        return _MBAP.pack(self.transaction_id, self.protocol_id, self.length, self.unit_id)

    @classmethod
    def decode(cls, data: bytes) -> MbapHeader:
        """Parse a header from the first seven bytes of ``data``."""
        if len(data) < MBAP_HEADER_LEN:
            raise DecodeError(DecodeErrorKind.UNEXPECTED_EOF)
        transaction_id, protocol_id, length, unit_id = _MBAP.unpack_from(data)
        if protocol_id != 0:
            raise DecodeError(DecodeErrorKind.INVALID_VALUE, "non-modbus protocol id")
        return cls(transaction_id, protocol_id, length, unit_id)


def encode_tcp_frame(transaction_id: int, unit_id: int, pdu: bytes) -> bytes:
    """Prefix ``pdu`` with an MBAP header."""
    pdu = bytes(pdu)
    _check_pdu(pdu)
    header = MbapHeader(transaction_id, 0, len(pdu) + 1, unit_id)
    return header.encode() + pdu


def crc16(data: bytes) -> int:
    """Modbus CRC-16 of ``data``."""
    crc = 0xFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return crc


def encode_rtu_frame(unit_id: int, pdu: bytes) -> bytes:
    """Build an RTU frame: address, PDU, then CRC low byte first."""
    pdu = bytes(pdu)
    _check_range(unit_id, 0xFF)
    _check_pdu(pdu)
    body = bytes([unit_id]) + pdu
    return body + crc16(body).to_bytes(2, "little")


def decode_rtu_frame(frame: bytes) -> tuple[int, bytes]:
    """Check the CRC of a whole RTU frame and return ``(unit_id, pdu)``."""
    if len(frame) < _MIN_RTU_FRAME_LEN:
        raise DecodeError(DecodeErrorKind.UNEXPECTED_EOF)
    body, checksum = frame[:-2], frame[-2:]
    if crc16(body) != int.from_bytes(checksum, "little"):
        raise DecodeError(DecodeErrorKind.INVALID_CRC)
    return body[0], bytes(body[1:])


def find_rtu_frame(buffer: bytes) -> tuple[int, int, bytes] | None:
    """Find the first offset at which the rest of ``buffer`` is a valid frame.

    Returns ``(offset, unit_id, pdu)`` or ``None``; leading noise is skipped.
    """
    for start in range(len(buffer) - _MIN_RTU_FRAME_LEN + 1):
        try:
            unit_id, pdu = decode_rtu_frame(buffer[start:])
        except DecodeError:
            continue
        return start, unit_id, pdu
    return None