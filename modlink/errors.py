"""Exception hierarchy shared by the transports, servers and services."""

from __future__ import annotations

import enum
from typing import Any

__all__ = [
    "DataLinkError",
    "ConnectionClosedError",
    "ResponseTimeoutError",
    "InvalidResponseError",
    "MismatchedTransactionIdError",
    "ResponseBufferTooSmallError",
    "DecodeErrorKind",
    "DecodeError",
    "EncodeError",
    "ServiceError",
    "ServiceException",
    "InvalidRequestError",
    "InternalServiceError",
]


class DataLinkError(Exception):
    """Base class for every failure raised by a Modbus data link."""


class ConnectionClosedError(DataLinkError):
    """The peer closed the connection before a full frame arrived."""

    def __init__(self) -> None:
        super().__init__("connection closed")


class ResponseTimeoutError(DataLinkError):
    """No complete response arrived before the deadline."""

    def __init__(self) -> None:
        super().__init__("request timed out")


class InvalidResponseError(DataLinkError):
    """A frame or request was malformed in a way the link cannot accept."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"invalid response: {reason}")
        self.reason = reason


class MismatchedTransactionIdError(DataLinkError):
    """A TCP response carried a transaction id other than the one sent."""

    def __init__(self, expected: int, got: int) -> None:
        super().__init__(f"transaction id mismatch: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class ResponseBufferTooSmallError(DataLinkError):
    """The response PDU is larger than the caller allowed."""

    def __init__(self, needed: int, available: int) -> None:
        super().__init__(
            f"response buffer too small (needed {needed}, available {available})"
        )
        self.needed = needed
        self.available = available


class DecodeErrorKind(enum.Enum):
    """Why a frame or PDU could not be decoded."""

    INVALID_FUNCTION_CODE = "invalid function code"
    INVALID_LENGTH = "invalid length"
    INVALID_VALUE = "invalid value"
    UNEXPECTED_EOF = "unexpected end of input"
    INVALID_CRC = "invalid crc"
    UNSUPPORTED = "unsupported"
    MESSAGE = "message"


class DecodeError(DataLinkError):
    """Bytes on the wire could not be decoded."""

    def __init__(self, kind: DecodeErrorKind, detail: str | None = None) -> None:
        description = kind.value if detail is None else f"{kind.value}: {detail}"
        super().__init__(f"decode error: {description}")
        self.kind = kind
        self.detail = detail


class EncodeError(DataLinkError):
    """A value could not be encoded into a frame or PDU."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"encode error: {reason}")
        self.reason = reason


class ServiceError(Exception):
    """Base class for failures reported by a request handler."""


class ServiceException(ServiceError):
    """The handler answers with a Modbus exception code."""

    def __init__(self, code: Any) -> None:
        label = getattr(code, "name", code)
        super().__init__(f"modbus exception: {label}")
        self.code = code


class InvalidRequestError(ServiceError):
    """The request was well formed but cannot be carried out."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"invalid request: {reason}")
        self.reason = reason


class InternalServiceError(ServiceError):
    """The handler failed for a reason of its own."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"internal error: {reason}")
        self.reason = reason