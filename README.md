# modlink

Asyncio building blocks for talking Modbus over TCP and serial lines.

- `modlink.transport.ModbusTcpTransport`: a Modbus TCP client. It adds an MBAP
  header to each request PDU, checks the transaction and unit ids of the
  reply and returns the response PDU. Requests on one connection are
  serialised.
- `modlink.rtu.ModbusRtuTransport`: the same over a serial port (through
  `pyserial`) or any async byte stream. It uses RTU framing with a CRC-16
  check, skips line noise while it looks for the reply, ignores frames for
  other units and gives up after `ModbusRtuConfig.response_timeout`.
- `modlink.server.ModbusTcpServer` and `modlink.server.ModbusRtuOverTcpServer`:
  servers that decode each request and pass it to a `ModbusService`. A
  request that cannot be served gets a Modbus exception response. Each server
  counts requests in a `ServerMetrics` object, which you can read with
  `metrics_snapshot()`.
- `modlink.server.process_request`: the request handling the servers use,
  with no transport attached.
- `modlink.pdu`: function and exception codes, `decode_request`,
  `exception_response` and `exception_for_decode_error`.
- `modlink.framing`: `MbapHeader`, `encode_tcp_frame`, `crc16`,
  `encode_rtu_frame`, `decode_rtu_frame` and `find_rtu_frame`.

## Installation

```
pip install modlink
```

## Serving requests

A service subclasses `ModbusService` and returns the response PDU for each
decoded request:

```python
import asyncio

from modlink.errors import ServiceException
from modlink.pdu import ExceptionCode, FunctionCode, ReadRequest
from modlink.server import ModbusService, ModbusTcpServer
from modlink.transport import ModbusTcpTransport


class Constant(ModbusService):
    def handle(self, unit_id, request):
        if (
            isinstance(request, ReadRequest)
            and request.function_code == FunctionCode.READ_HOLDING_REGISTERS
        ):
            return bytes([0x03, request.quantity * 2]) + b"\x04\xd2" * request.quantity
        raise ServiceException(ExceptionCode.ILLEGAL_FUNCTION)


async def demo():
    server = await ModbusTcpServer.bind("127.0.0.1", 0, Constant())
    host, port = server.local_addr()
    task = asyncio.create_task(server.run())

    client = await ModbusTcpTransport.connect(host, port)
    response = await client.exchange(1, bytes([0x03, 0x00, 0x00, 0x00, 0x01]))
    print(response.hex())  # 030204d2

    await client.close()
    task.cancel()
    await server.close()


asyncio.run(demo())
```

`exchange` takes an optional `max_response_len`, which is the largest PDU
length it accepts (253 by default).

## Errors

Transport failures raise subclasses of `modlink.errors.DataLinkError`, such as
`ConnectionClosedError`, `ResponseTimeoutError`, `InvalidResponseError`,
`MismatchedTransactionIdError`, `ResponseBufferTooSmallError`, `DecodeError`
and `EncodeError`. A service reports a failed request by raising one of these:

- `ServiceException`, with an `ExceptionCode`; the server sends that code.
- `InvalidRequestError`; the server sends ILLEGAL_DATA_VALUE.
- `InternalServiceError`; the server sends SERVER_DEVICE_FAILURE.

## Helpers

`modlink.common.parse_bool` accepts `1/0`, `true/false`, `on/off` and
`yes/no` in any case, with surrounding whitespace ignored. It raises
`ValueError` for anything else.

## What it does not do

- The package does not include a simulated device. You write your own
  `ModbusService`.
- It has no server that listens on a serial line. RTU frames are served only
  over TCP, by `ModbusRtuOverTcpServer`.
- It installs no command-line tools.