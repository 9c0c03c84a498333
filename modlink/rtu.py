"""Modbus RTU client transport over a serial line or any byte stream."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field

import serial

from modlink.errors import (
    ConnectionClosedError,
    InvalidResponseError,
    ResponseBufferTooSmallError,
    ResponseTimeoutError,
)
from modlink.framing import MAX_PDU_LEN, encode_rtu_frame, find_rtu_frame
from modlink.transport import DataLink

__all__ = ["FlowControl", "ModbusRtuConfig", "ModbusRtuTransport"]

log = logging.getLogger(__name__)

_MIN_FRAME_LEN = 4
_POLL_INTERVAL = 0.05


class FlowControl(enum.Enum):
    """Serial flow control."""

    NONE = "none"
    SOFTWARE = "software"
    HARDWARE = "hardware"


@dataclass
class ModbusRtuConfig:
    """Line settings and limits of an RTU client."""

    response_timeout: float = 0.5
    max_frame_len: int = 256
    parity: str = serial.PARITY_NONE
    data_bits: int = serial.EIGHTBITS
    stop_bits: float = serial.STOPBITS_ONE
    flow_control: FlowControl = field(default=FlowControl.NONE)


class _SerialStream:
    """Presents a blocking serial port as an async reader and writer."""

    def __init__(self, port: serial.Serial) -> None:
        self._port = port
        self._pending = bytearray()

    async def read(self, count: int) -> bytes:
        while True:
            data = await asyncio.to_thread(self._port.read, count)
            if data:
                return data

    def write(self, data: bytes) -> None:
        self._pending += data

    async def drain(self) -> None:
        data = bytes(self._pending)
        self._pending.clear()
        await asyncio.to_thread(self._write_all, data)

    def _write_all(self, data: bytes) -> None:
        self._port.write(data)
        self._port.flush()

    def close(self) -> None:
        self._port.close()


def _open_serial(
    path: str,
    baud_rate: int,
    *,
    parity: str,
    data_bits: int,
    stop_bits: float,
    flow_control: FlowControl,
) -> _SerialStream:
    try:
        port = serial.Serial(
            port=path,
            baudrate=baud_rate,
            bytesize=data_bits,
            parity=parity,
            stopbits=stop_bits,
            xonxoff=flow_control is FlowControl.SOFTWARE,
            rtscts=flow_control is FlowControl.HARDWARE,
            timeout=_POLL_INTERVAL,
        )
    except (serial.SerialException, ValueError) as err:
        raise OSError(f"failed to open serial port '{path}': {err}") from err
    return _SerialStream(port)


class ModbusRtuTransport(DataLink):
    """RTU client: frames requests with a CRC and hunts for the reply in the byte stream."""

    def __init__(self, reader, writer, config: ModbusRtuConfig | None = None) -> None:
        self._reader = reader
        self._writer = writer
        self.config = config if config is not None else ModbusRtuConfig()
        self._lock = asyncio.Lock()

    @classmethod
    def open(
        cls, path: str, baud_rate: int, config: ModbusRtuConfig | None = None
    ) -> ModbusRtuTransport:
        """Open the serial port at ``path``."""
        config = config if config is not None else ModbusRtuConfig()
        stream = _open_serial(
            path,
            baud_rate,
            parity=config.parity,
            data_bits=config.data_bits,
            stop_bits=config.stop_bits,
            flow_control=config.flow_control,
        )
        return cls(stream, stream, config)

    async def exchange(
        self, unit_id: int, request_pdu: bytes, max_response_len: int = MAX_PDU_LEN
    ) -> bytes:
        max_frame_len = self.config.max_frame_len
        if max_frame_len < _MIN_FRAME_LEN:
            raise InvalidResponseError("rtu max frame length must be at least 4 bytes")
        request_pdu = bytes(request_pdu)
        if not request_pdu:
            raise InvalidResponseError("empty request pdu")

        frame = encode_rtu_frame(unit_id, request_pdu)
        loop = asyncio.get_running_loop()

        async with self._lock:
            log.debug("sending modbus rtu request unit=%d pdu_len=%d", unit_id, len(request_pdu))
            self._writer.write(frame)
            await self._writer.drain()

            deadline = loop.time() + self.config.response_timeout
            buffer = bytearray()
            while True:
                if len(buffer) == max_frame_len:
                    # Drop the oldest byte so noise cannot wedge the scan.
                    del buffer[0]
                remaining = deadline - loop.time()
                if remaining < 0:
                    raise ResponseTimeoutError()
                try:
                    chunk = await asyncio.wait_for(self._reader.read(1), remaining)
                except asyncio.TimeoutError as err:
                    raise ResponseTimeoutError() from err
                if not chunk:
                    raise ConnectionClosedError()
                buffer += chunk

                found = find_rtu_frame(buffer)
                if found is None:
                    continue
                _, address, pdu = found
                if address == unit_id:
                    if len(pdu) > max_response_len:
                        raise ResponseBufferTooSmallError(len(pdu), max_response_len)
                    log.debug("received modbus rtu response unit=%d pdu_len=%d", unit_id, len(pdu))
                    return pdu
                # A frame for another unit: keep waiting for ours.
                buffer.clear()

    async def close(self) -> None:
        """Close the underlying stream."""
        self._writer.close()