"""Modbus function and exception codes, and decoding of request PDUs."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Callable, Union

from modlink.errors import DecodeError, DecodeErrorKind, EncodeError

__all__ = [
    "FunctionCode",
    "ExceptionCode",
    "ReadRequest",
    "WriteSingleCoilRequest",
    "WriteSingleRegisterRequest",
    "WriteMultipleCoilsRequest",
    "WriteMultipleRegistersRequest",
    "MaskWriteRegisterRequest",
    "ReadWriteMultipleRegistersRequest",
    "CustomRequest",
    "Request",
    "decode_request",
    "exception_response",
    "exception_for_decode_error",
]

_EXCEPTION_FLAG = 0x80
_COIL_ON = 0xFF00
_COIL_OFF = 0x0000

_MAX_READ_BITS = 2000
_MAX_READ_REGISTERS = 125
_MAX_WRITE_COILS = 1968
_MAX_WRITE_REGISTERS = 123
_MAX_RW_WRITE_REGISTERS = 121


class FunctionCode(enum.IntEnum):
    """Function codes with a dedicated request layout."""

    READ_COILS = 0x01
    READ_DISCRETE_INPUTS = 0x02
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06
    WRITE_MULTIPLE_COILS = 0x0F
    WRITE_MULTIPLE_REGISTERS = 0x10
    MASK_WRITE_REGISTER = 0x16
    READ_WRITE_MULTIPLE_REGISTERS = 0x17


class ExceptionCode(enum.IntEnum):
    """Exception codes a server may answer with."""

    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SERVER_DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SERVER_DEVICE_BUSY = 0x06
    MEMORY_PARITY_ERROR = 0x08
    GATEWAY_PATH_UNAVAILABLE = 0x0A
    GATEWAY_TARGET_DEVICE_FAILED = 0x0B


@dataclass(frozen=True)
class ReadRequest:
    """A read of coils, discrete inputs, holding or input registers."""

    function_code: FunctionCode
    start_address: int
    quantity: int


@dataclass(frozen=True)
class WriteSingleCoilRequest:
    """FC05: set one coil."""

    address: int
    value: bool

    @property
    def function_code(self) -> FunctionCode:
        return FunctionCode.WRITE_SINGLE_COIL


@dataclass(frozen=True)
class WriteSingleRegisterRequest:
    """FC06: set one holding register."""

    address: int
    value: int

    @property
    def function_code(self) -> FunctionCode:
        return FunctionCode.WRITE_SINGLE_REGISTER


@dataclass(frozen=True)
class WriteMultipleCoilsRequest:
    """FC15: set a run of coils from packed bits, least significant bit first."""

    start_address: int
    quantity: int
    packed: bytes

    @property
    def function_code(self) -> FunctionCode:
        return FunctionCode.WRITE_MULTIPLE_COILS

    def coil(self, index: int) -> bool | None:
        """Value of the ``index``-th coil written, or ``None`` past the end."""
        if not 0 <= index < self.quantity:
            return None
        byte_index, bit = divmod(index, 8)
        if byte_index >= len(self.packed):
            return None
        return bool(self.packed[byte_index] >> bit & 1)


@dataclass(frozen=True)
class WriteMultipleRegistersRequest:
    """FC16: set a run of holding registers."""

    start_address: int
    values: tuple[int, ...]

    @property
    def function_code(self) -> FunctionCode:
        return FunctionCode.WRITE_MULTIPLE_REGISTERS

    @property
    def quantity(self) -> int:
        return len(self.values)

    def register(self, index: int) -> int | None:
        """Value of the ``index``-th register written, or ``None`` past the end."""
        return self.values[index] if 0 <= index < len(self.values) else None


@dataclass(frozen=True)
class MaskWriteRegisterRequest:
    """FC22: combine a holding register with AND and OR masks."""

    address: int
    and_mask: int
    or_mask: int

    @property
    def function_code(self) -> FunctionCode:
        return FunctionCode.MASK_WRITE_REGISTER


@dataclass(frozen=True)
class ReadWriteMultipleRegistersRequest:
    """FC23: write a run of holding registers, then read another."""

    read_start_address: int
    read_quantity: int
    write_start_address: int
    values: tuple[int, ...]

    @property
    def function_code(self) -> FunctionCode:
        return FunctionCode.READ_WRITE_MULTIPLE_REGISTERS

    @property
    def write_quantity(self) -> int:
        return len(self.values)

    def register(self, index: int) -> int | None:
        """Value of the ``index``-th register written, or ``None`` past the end."""
        return self.values[index] if 0 <= index < len(self.values) else None


@dataclass(frozen=True)
class CustomRequest:
    """Any other function code, with its payload left undecoded."""

    function_code: int
    data: bytes


Request = Union[
    ReadRequest,
    WriteSingleCoilRequest,
    WriteSingleRegisterRequest,
    WriteMultipleCoilsRequest,
    WriteMultipleRegistersRequest,
    MaskWriteRegisterRequest,
    ReadWriteMultipleRegistersRequest,
    CustomRequest,
]


class _Cursor:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def take(self, count: int) -> bytes:
        if count > self.remaining:
            raise DecodeError(DecodeErrorKind.UNEXPECTED_EOF)
        chunk = self._data[self._pos : self._pos + count]
        self._pos += count
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "big")

    def rest(self) -> bytes:
        return self.take(self.remaining)


def _check_quantity(quantity: int, maximum: int) -> None:
    if not 1 <= quantity <= maximum:
        raise DecodeError(DecodeErrorKind.INVALID_VALUE, "quantity out of range")


def _registers(raw: bytes) -> tuple[int, ...]:
    return struct.unpack(f">{len(raw) // 2}H", raw)


def _decode_read(code: FunctionCode, cursor: _Cursor) -> ReadRequest:
    start, quantity = cursor.u16(), cursor.u16()
    limit = (
        _MAX_READ_BITS
        if code in (FunctionCode.READ_COILS, FunctionCode.READ_DISCRETE_INPUTS)
        else _MAX_READ_REGISTERS
    )
    _check_quantity(quantity, limit)
    return ReadRequest(code, start, quantity)


def _decode_write_single_coil(_code: FunctionCode, cursor: _Cursor) -> WriteSingleCoilRequest:
    address, raw = cursor.u16(), cursor.u16()
    if raw not in (_COIL_ON, _COIL_OFF):
        raise DecodeError(DecodeErrorKind.INVALID_VALUE, "coil value must be 0xFF00 or 0x0000")
    return WriteSingleCoilRequest(address, raw == _COIL_ON)


def _decode_write_single_register(
    _code: FunctionCode, cursor: _Cursor
) -> WriteSingleRegisterRequest:
    return WriteSingleRegisterRequest(cursor.u16(), cursor.u16())


def _decode_write_multiple_coils(
    _code: FunctionCode, cursor: _Cursor
) -> WriteMultipleCoilsRequest:
    start, quantity = cursor.u16(), cursor.u16()
    _check_quantity(quantity, _MAX_WRITE_COILS)
    byte_count = cursor.u8()
    if byte_count != (quantity + 7) // 8:
        raise DecodeError(DecodeErrorKind.INVALID_LENGTH, "coil byte count mismatch")
    return WriteMultipleCoilsRequest(start, quantity, cursor.take(byte_count))


def _decode_write_multiple_registers(
    _code: FunctionCode, cursor: _Cursor
) -> WriteMultipleRegistersRequest:
    start, quantity = cursor.u16(), cursor.u16()
    _check_quantity(quantity, _MAX_WRITE_REGISTERS)
    byte_count = cursor.u8()
    if byte_count != quantity * 2:
        raise DecodeError(DecodeErrorKind.INVALID_LENGTH, "register byte count mismatch")
    return WriteMultipleRegistersRequest(start, _registers(cursor.take(byte_count)))


def _decode_mask_write(_code: FunctionCode, cursor: _Cursor) -> MaskWriteRegisterRequest:
    return MaskWriteRegisterRequest(cursor.u16(), cursor.u16(), cursor.u16())


def _decode_read_write(
    _code: FunctionCode, cursor: _Cursor
) -> ReadWriteMultipleRegistersRequest:
    read_start, read_quantity = cursor.u16(), cursor.u16()
    write_start, write_quantity = cursor.u16(), cursor.u16()
    _check_quantity(read_quantity, _MAX_READ_REGISTERS)
    _check_quantity(write_quantity, _MAX_RW_WRITE_REGISTERS)
    byte_count = cursor.u8()
    if byte_count != write_quantity * 2:
        raise DecodeError(DecodeErrorKind.INVALID_LENGTH, "register byte count mismatch")
    return ReadWriteMultipleRegistersRequest(
        read_start, read_quantity, write_start, _registers(cursor.take(byte_count))
    )


_DECODERS: dict[FunctionCode, Callable[[FunctionCode, _Cursor], Request]] = {
    FunctionCode.READ_COILS: _decode_read,
    FunctionCode.READ_DISCRETE_INPUTS: _decode_read,
    FunctionCode.READ_HOLDING_REGISTERS: _decode_read,
    FunctionCode.READ_INPUT_REGISTERS: _decode_read,
    FunctionCode.WRITE_SINGLE_COIL: _decode_write_single_coil,
    FunctionCode.WRITE_SINGLE_REGISTER: _decode_write_single_register,
    FunctionCode.WRITE_MULTIPLE_COILS: _decode_write_multiple_coils,
    FunctionCode.WRITE_MULTIPLE_REGISTERS: _decode_write_multiple_registers,
    FunctionCode.MASK_WRITE_REGISTER: _decode_mask_write,
    FunctionCode.READ_WRITE_MULTIPLE_REGISTERS: _decode_read_write,
}


def decode_request(pdu: bytes) -> Request:
    """Decode a whole request PDU; trailing bytes are an error."""
    cursor = _Cursor(bytes(pdu))
    code = cursor.u8()
    if code == 0 or code & _EXCEPTION_FLAG:
        raise DecodeError(DecodeErrorKind.INVALID_FUNCTION_CODE)
    try:
        known = FunctionCode(code)
    except ValueError:
        return CustomRequest(code, cursor.rest())
    request = _DECODERS[known](known, cursor)
    if cursor.remaining:
        raise DecodeError(DecodeErrorKind.INVALID_LENGTH, "trailing bytes after request")
    return request


def exception_response(function_code: int, exception_code: ExceptionCode | int) -> bytes:
    """Encode an exception response PDU for ``function_code``."""
    if not 0 <= function_code < _EXCEPTION_FLAG or not 0 <= int(exception_code) <= 0xFF:
        raise EncodeError("value out of range")
    return bytes([function_code | _EXCEPTION_FLAG, int(exception_code)])


def exception_for_decode_error(error: DecodeError) -> ExceptionCode:
    """The exception code a server answers with when a request fails to decode."""
    if error.kind is DecodeErrorKind.INVALID_FUNCTION_CODE:
        return ExceptionCode.ILLEGAL_FUNCTION
    if error.kind in (
        DecodeErrorKind.INVALID_LENGTH,
        DecodeErrorKind.INVALID_VALUE,
        DecodeErrorKind.UNEXPECTED_EOF,
    ):
        return ExceptionCode.ILLEGAL_DATA_VALUE
    return ExceptionCode.SERVER_DEVICE_FAILURE