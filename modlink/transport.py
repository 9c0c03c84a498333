"""Client side of a Modbus data link, and its TCP (MBAP) implementation."""

from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import suppress

from modlink.errors import (
    ConnectionClosedError,
    InvalidResponseError,
    MismatchedTransactionIdError,
    ResponseBufferTooSmallError,
)
from modlink.framing import MAX_PDU_LEN, MBAP_HEADER_LEN, MbapHeader, encode_tcp_frame

__all__ = ["DataLink", "ModbusTcpTransport"]

log = logging.getLogger(__name__)


class DataLink(abc.ABC):
    """Something that carries a request PDU to a unit and brings its response back."""

    @abc.abstractmethod
    async def exchange(
        self, unit_id: int, request_pdu: bytes, max_response_len: int = MAX_PDU_LEN
    ) -> bytes:
        """Send ``request_pdu`` to ``unit_id`` and return the response PDU.

        A response longer than ``max_response_len`` raises
        :class:`ResponseBufferTooSmallError`.
        """


async def _read_exact(reader: asyncio.StreamReader, count: int) -> bytes:
    try:
        return await reader.readexactly(count)
    except asyncio.IncompleteReadError as err:
        raise ConnectionClosedError() from err


def _check_identity(header: MbapHeader, transaction_id: int, unit_id: int) -> None:
    if header.transaction_id != transaction_id:
        raise MismatchedTransactionIdError(transaction_id, header.transaction_id)
    if header.unit_id != unit_id:
        raise InvalidResponseError("unit id mismatch")


class ModbusTcpTransport(DataLink):
    """Modbus TCP client over one stream connection; requests are serialised."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._lock = asyncio.Lock()
        self._next_transaction_id = 1

    @classmethod
    async def connect(cls, host: str, port: int) -> ModbusTcpTransport:
        """Open a TCP connection to ``host:port``."""
        reader, writer = await asyncio.open_connection(host, port)
        return cls(reader, writer)

    def _take_transaction_id(self) -> int:
        transaction_id = self._next_transaction_id
        self._next_transaction_id = (transaction_id + 1) & 0xFFFF
        return transaction_id

    async def exchange(
        self, unit_id: int, request_pdu: bytes, max_response_len: int = MAX_PDU_LEN
    ) -> bytes:
        request_pdu = bytes(request_pdu)
        if not request_pdu:
            raise InvalidResponseError("empty request pdu")

        transaction_id = self._take_transaction_id()
        frame = encode_tcp_frame(transaction_id, unit_id, request_pdu)

        async with self._lock:
            log.debug(
                "sending modbus tcp request tid=%d unit=%d pdu_len=%d",
                transaction_id,
                unit_id,
                len(request_pdu),
            )
            self._writer.write(frame)
            await self._writer.drain()

            header = MbapHeader.decode(await _read_exact(self._reader, MBAP_HEADER_LEN))
            if header.length == 0:
                raise InvalidResponseError("invalid mbap length")
            pdu_len = header.length - 1
            if pdu_len == 0:
                raise InvalidResponseError("empty response pdu")

            if pdu_len > MAX_PDU_LEN or pdu_len > max_response_len:
                # Consume the body so the stream stays aligned for the next request.
                await _read_exact(self._reader, pdu_len)
                _check_identity(header, transaction_id, unit_id)
                if pdu_len > MAX_PDU_LEN:
                    raise InvalidResponseError("response pdu too large")
                raise ResponseBufferTooSmallError(pdu_len, max_response_len)

            pdu = await _read_exact(self._reader, pdu_len)
            _check_identity(header, transaction_id, unit_id)
            log.debug(
                "received modbus tcp response tid=%d unit=%d pdu_len=%d",
                transaction_id,
                unit_id,
                pdu_len,
            )
            return pdu

    async def close(self) -> None:
        """Close the connection."""
        self._writer.close()
        with suppress(OSError):
            await self._writer.wait_closed()

    async def __aenter__(self) -> ModbusTcpTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()