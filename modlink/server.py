"""Modbus TCP and RTU-over-TCP servers that hand decoded requests to a service."""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
from dataclasses import dataclass

from modlink.errors import (
    ConnectionClosedError,
    DataLinkError,
    DecodeError,
    InvalidRequestError,
    InvalidResponseError,
    ServiceError,
    ServiceException,
)
from modlink.framing import (
    MAX_PDU_LEN,
    MBAP_HEADER_LEN,
    MbapHeader,
    encode_rtu_frame,
    encode_tcp_frame,
    find_rtu_frame,
)
from modlink.pdu import (
    ExceptionCode,
    Request,
    decode_request,
    exception_for_decode_error,
    exception_response,
)

__all__ = [
    "ModbusService",
    "ServerMetrics",
    "process_request",
    "ModbusTcpServer",
    "ModbusRtuOverTcpServer",
]

log = logging.getLogger(__name__)

DEFAULT_MAX_RTU_FRAME_LEN = 256
_MIN_RTU_FRAME_LEN = 4


class ModbusService(abc.ABC):
    """Answers decoded requests addressed to a unit."""

    @abc.abstractmethod
    def handle(self, unit_id: int, request: Request) -> bytes:
        """Return the response PDU (function code and payload).

        Raise :class:`ServiceException` to answer with a Modbus exception,
        :class:`InvalidRequestError` or another :class:`ServiceError` otherwise.
        """


@dataclass
class ServerMetrics:
    """Counters kept by a server across all its connections."""

    requests_total: int = 0
    responses_ok: int = 0
    exceptions_sent: int = 0
    decode_errors: int = 0
    internal_errors: int = 0

    def snapshot(self) -> ServerMetrics:
        """A copy of the counters as they are now."""
        return dataclasses.replace(self)


def process_request(
    service: ModbusService,
    unit_id: int,
    request_pdu: bytes,
    max_pdu_len: int = MAX_PDU_LEN,
    metrics: ServerMetrics | None = None,
) -> bytes:
    """Decode ``request_pdu``, run it through ``service`` and return the reply PDU.

    Every failure is turned into an exception response PDU.
    """
    metrics = metrics if metrics is not None else ServerMetrics()
    metrics.requests_total += 1
    pdu = bytes(request_pdu)

    if not pdu or len(pdu) > max_pdu_len:
        metrics.decode_errors += 1
        metrics.exceptions_sent += 1
        return exception_response(0, ExceptionCode.ILLEGAL_DATA_VALUE)

    try:
        request = decode_request(pdu)
    except DecodeError as err:
        metrics.decode_errors += 1
        metrics.exceptions_sent += 1
        return exception_response(pdu[0] & 0x7F, exception_for_decode_error(err))

    function = int(request.function_code)
    log.debug("handling request unit=%d function=%d pdu_len=%d", unit_id, function, len(pdu))

    try:
        response = bytes(service.handle(unit_id, request))
    except ServiceException as exc:
        metrics.exceptions_sent += 1
        return exception_response(function, exc.code)
    except InvalidRequestError:
        metrics.exceptions_sent += 1
        return exception_response(function, ExceptionCode.ILLEGAL_DATA_VALUE)
    except ServiceError:
        metrics.internal_errors += 1
        metrics.exceptions_sent += 1
        return exception_response(function, ExceptionCode.SERVER_DEVICE_FAILURE)

    if not response or len(response) > max_pdu_len:
        metrics.internal_errors += 1
        metrics.exceptions_sent += 1
        return exception_response(function, ExceptionCode.SERVER_DEVICE_FAILURE)

    metrics.responses_ok += 1
    return response


class _StreamServer(abc.ABC):
    """Listening socket plumbing shared by the TCP-based servers."""

    _label = "modbus"

    def __init__(self, service: ModbusService) -> None:
        self.service = service
        self.max_pdu_len = MAX_PDU_LEN
        self.metrics = ServerMetrics()
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def _start(self, host: str, port: int) -> None:
        self._server = await asyncio.start_server(self._on_connection, host, port)

    @property
    def _listener(self) -> asyncio.AbstractServer:
        if self._server is None:
            raise RuntimeError("server is not bound")
        return self._server

    def _address(self) -> tuple[str, int]:
        host, port = self._listener.sockets[0].getsockname()[:2]
        return host, port

    async def _serve_forever(self) -> None:
        await self._listener.serve_forever()

    async def _shutdown(self) -> None:
        for writer in list(self._writers):
            writer.close()
        listener = self._listener
        listener.close()
        await listener.wait_closed()

    async def _on_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        self._writers.add(writer)
        try:
            await self._serve(reader, writer)
        except (DataLinkError, OSError) as err:
            log.warning("%s connection from %s ended with error: %s", self._label, peer, err)
        finally:
            self._writers.discard(writer)
            writer.close()

    @abc.abstractmethod
    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Handle requests on one connection until the peer goes away."""


class ModbusTcpServer(_StreamServer):
    """Modbus TCP server: MBAP-framed requests on each connection."""

    _label = "modbus tcp"

    @classmethod
    async def bind(cls, host: str, port: int, service: ModbusService) -> ModbusTcpServer:
        """Listen on ``host:port``; use port 0 for any free port."""
        instance = cls(service)
        await instance._start(host, port)
        return instance

    def local_addr(self) -> tuple[str, int]:
        """The ``(host, port)`` the server listens on."""
        return self._address()

    def with_max_pdu_len(self, max_pdu_len: int) -> ModbusTcpServer:
        self.max_pdu_len = max_pdu_len
        return self

    def metrics_snapshot(self) -> ServerMetrics:
        return self.metrics.snapshot()

    async def run(self) -> None:
        """Serve connections until cancelled or closed."""
        await self._serve_forever()

    async def close(self) -> None:
        """Drop open connections and stop listening."""
        await self._shutdown()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while True:
            try:
                head = await reader.readexactly(MBAP_HEADER_LEN)
            except asyncio.IncompleteReadError:
                return
            header = MbapHeader.decode(head)
            if header.length == 0:
                raise InvalidResponseError("invalid mbap length")
            pdu_len = header.length - 1
            if pdu_len == 0 or pdu_len > self.max_pdu_len:
                raise InvalidResponseError("invalid request pdu length")
            try:
                pdu = await reader.readexactly(pdu_len)
            except asyncio.IncompleteReadError as err:
                raise ConnectionClosedError() from err

            response = process_request(
                self.service, header.unit_id, pdu, self.max_pdu_len, self.metrics
            )
            log.debug(
                "sending modbus tcp server response tid=%d unit=%d pdu_len=%d",
                header.transaction_id,
                header.unit_id,
                len(response),
            )
            writer.write(encode_tcp_frame(header.transaction_id, header.unit_id, response))
            await writer.drain()


class ModbusRtuOverTcpServer(_StreamServer):
    """Server for RTU frames (address, PDU, CRC) carried over TCP."""

    _label = "modbus rtu-over-tcp"

    def __init__(self, service: ModbusService) -> None:
        super().__init__(service)
        self.max_frame_len = DEFAULT_MAX_RTU_FRAME_LEN

    @classmethod
    async def bind(
        cls, host: str, port: int, service: ModbusService
    ) -> ModbusRtuOverTcpServer:
        """Listen on ``host:port``; use port 0 for any free port."""
        instance = cls(service)
        await instance._start(host, port)
        return instance

    def local_addr(self) -> tuple[str, int]:
        """The ``(host, port)`` the server listens on."""
        return self._address()

    def with_max_pdu_len(self, max_pdu_len: int) -> ModbusRtuOverTcpServer:
        self.max_pdu_len = max_pdu_len
        return self

    def with_max_frame_len(self, max_frame_len: int) -> ModbusRtuOverTcpServer:
        self.max_frame_len = max_frame_len
        return self

    def metrics_snapshot(self) -> ServerMetrics:
        return self.metrics.snapshot()

    async def run(self) -> None:
        """Serve connections until cancelled or closed."""
        await self._serve_forever()

    async def close(self) -> None:
        """Drop open connections and stop listening."""
        await self._shutdown()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.max_frame_len < _MIN_RTU_FRAME_LEN:
            raise InvalidResponseError("rtu frame length must be at least 4 bytes")

        buffer = bytearray()
        while True:
            if len(buffer) == self.max_frame_len:
                # Drop the oldest byte so the scan can find a later frame boundary.
                del buffer[0]
            chunk = await reader.read(1)
            if not chunk:
                return
            buffer += chunk

            found = find_rtu_frame(buffer)
            if found is None:
                continue
            buffer.clear()
            _, unit_id, pdu = found

            response = process_request(self.service, unit_id, pdu, self.max_pdu_len, self.metrics)
            writer.write(encode_rtu_frame(unit_id, response))
            await writer.drain()