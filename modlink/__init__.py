"""Asyncio Modbus TCP and RTU client transports, framing, PDU decoding and TCP-based servers."""

__version__ = "0.1.0"