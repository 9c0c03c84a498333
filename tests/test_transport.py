import asyncio
from contextlib import asynccontextmanager

import pytest

from modlink.errors import (
    ConnectionClosedError,
    InvalidResponseError,
    MismatchedTransactionIdError,
    ResponseBufferTooSmallError,
)
from modlink.framing import MBAP_HEADER_LEN, MbapHeader, encode_tcp_frame
from modlink.transport import ModbusTcpTransport

READ_ONE = bytes([0x03, 0x00, 0x00, 0x00, 0x01])
OK_PDU = bytes([0x03, 0x02, 0x00, 0x2A])


@asynccontextmanager
async def scripted(replies):
    """Serve one connection answering each request with the next scripted reply."""
    received = []

    async def handle(reader, writer):
        try:
            for reply in replies:
                head = await reader.readexactly(MBAP_HEADER_LEN)
                header = MbapHeader.decode(head)
                body = await reader.readexactly(header.length - 1)
                received.append(head + body)
                if reply is None:
                    break
                writer.write(reply)
                await writer.drain()
        except asyncio.IncompleteReadError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    transport = await ModbusTcpTransport.connect("127.0.0.1", port)
    try:
        yield transport, received
    finally:
        await transport.close()
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_exchange_roundtrip_over_tcp():
    response = bytes([0x03, 0x06, 0x02, 0x2B, 0x00, 0x00, 0x00, 0x64])
    request = bytes([0x03, 0x00, 0x6B, 0x00, 0x03])
    async with scripted([encode_tcp_frame(1, 1, response)]) as (transport, received):
        result = await transport.exchange(1, request, 256)
    assert result == response
    assert received[0][MBAP_HEADER_LEN:] == request


@pytest.mark.asyncio
async def test_exchange_rejects_mismatched_transaction_id():
    async with scripted([encode_tcp_frame(2, 1, b"\x83\x02")]) as (transport, _):
        with pytest.raises(MismatchedTransactionIdError) as info:
            await transport.exchange(1, READ_ONE, 16)
    assert info.value.expected == 1
    assert info.value.got == 2


@pytest.mark.asyncio
async def test_exchange_drains_pdu_on_transaction_mismatch():
    replies = [encode_tcp_frame(2, 1, b"\x83\x02"), encode_tcp_frame(2, 1, OK_PDU)]
    async with scripted(replies) as (transport, _):
        with pytest.raises(MismatchedTransactionIdError):
            await transport.exchange(1, READ_ONE, 16)
        result = await transport.exchange(1, READ_ONE, 16)
    assert result == OK_PDU


@pytest.mark.asyncio
async def test_exchange_rejects_and_drains_oversized_response_pdu():
    oversized = MbapHeader(1, 0, 255, 1).encode() + b"\x03" + bytes(253)
    replies = [oversized, encode_tcp_frame(2, 1, OK_PDU)]
    async with scripted(replies) as (transport, _):
        with pytest.raises(InvalidResponseError) as info:
            await transport.exchange(1, READ_ONE, 260)
        result = await transport.exchange(1, READ_ONE, 260)
    assert info.value.reason == "response pdu too large"
    assert result == OK_PDU


@pytest.mark.asyncio
async def test_exchange_reports_small_buffer_and_stays_aligned():
    replies = [encode_tcp_frame(1, 1, OK_PDU), encode_tcp_frame(2, 1, OK_PDU)]
    async with scripted(replies) as (transport, _):
        with pytest.raises(ResponseBufferTooSmallError) as info:
            await transport.exchange(1, READ_ONE, 2)
        result = await transport.exchange(1, READ_ONE, 16)
    assert (info.value.needed, info.value.available) == (len(OK_PDU), 2)
    assert result == OK_PDU


@pytest.mark.asyncio
async def test_exchange_rejects_unit_mismatch():
    async with scripted([encode_tcp_frame(1, 9, OK_PDU)]) as (transport, _):
        with pytest.raises(InvalidResponseError) as info:
            await transport.exchange(1, READ_ONE)
    assert info.value.reason == "unit id mismatch"


@pytest.mark.asyncio
async def test_exchange_reports_closed_connection():
    async with scripted([None]) as (transport, received):
        with pytest.raises(ConnectionClosedError):
            await transport.exchange(1, READ_ONE)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_exchange_rejects_empty_request():
    async with scripted([]) as (transport, received):
        with pytest.raises(InvalidResponseError) as info:
            await transport.exchange(1, b"")
    assert info.value.reason == "empty request pdu"
    assert received == []


@pytest.mark.asyncio
async def test_transaction_ids_increase_per_request():
    replies = [encode_tcp_frame(1, 1, OK_PDU), encode_tcp_frame(2, 1, OK_PDU)]
    async with scripted(replies) as (transport, received):
        await transport.exchange(1, READ_ONE)
        await transport.exchange(1, READ_ONE)
    tids = [MbapHeader.decode(frame).transaction_id for frame in received]
    assert tids == [1, 2]