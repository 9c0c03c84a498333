import pytest

from modlink.errors import DecodeError, DecodeErrorKind, EncodeError
from modlink.pdu import (
    CustomRequest,
    ExceptionCode,
    FunctionCode,
    MaskWriteRegisterRequest,
    ReadRequest,
    ReadWriteMultipleRegistersRequest,
    WriteMultipleCoilsRequest,
    WriteMultipleRegistersRequest,
    WriteSingleCoilRequest,
    WriteSingleRegisterRequest,
    decode_request,
    exception_for_decode_error,
    exception_response,
)


def test_function_codes_in_exception_responses():
    assert exception_response(
        FunctionCode.READ_HOLDING_REGISTERS, ExceptionCode.ILLEGAL_DATA_ADDRESS
    ) == bytes([0x83, 0x02])
    assert exception_response(
        FunctionCode.WRITE_MULTIPLE_REGISTERS, ExceptionCode.ILLEGAL_DATA_VALUE
    ) == bytes([0x90, 0x03])
    assert exception_response(
        FunctionCode.MASK_WRITE_REGISTER, ExceptionCode.ILLEGAL_FUNCTION
    ) == bytes([0x96, 0x01])
    assert exception_response(
        FunctionCode.READ_WRITE_MULTIPLE_REGISTERS, ExceptionCode.SERVER_DEVICE_FAILURE
    ) == bytes([0x97, 0x04])


def test_decode_read_holding_registers():
    request = decode_request(bytes([0x03, 0x00, 0x6B, 0x00, 0x03]))
    assert request == ReadRequest(FunctionCode.READ_HOLDING_REGISTERS, 0x6B, 3)
    assert request.function_code == 0x03


@pytest.mark.parametrize("code", [0x01, 0x02, 0x03, 0x04])
def test_decode_all_read_kinds(code):
    request = decode_request(bytes([code, 0x00, 0x00, 0x00, 0x01]))
    assert request.function_code == code
    assert (request.start_address, request.quantity) == (0, 1)


def test_decode_read_rejects_zero_quantity():
    with pytest.raises(DecodeError) as info:
        decode_request(bytes([0x03, 0x00, 0x00, 0x00, 0x00]))
    assert info.value.kind is DecodeErrorKind.INVALID_VALUE


def test_decode_read_rejects_too_many_registers():
    with pytest.raises(DecodeError):
        decode_request(bytes([0x03, 0x00, 0x00, 0x00, 126]))


def test_decode_write_single_register():
    request = decode_request(bytes([0x06, 0x00, 0x01, 0x12, 0x34]))
    assert request == WriteSingleRegisterRequest(1, 0x1234)
    assert request.function_code is FunctionCode.WRITE_SINGLE_REGISTER


def test_decode_write_single_coil_on_and_off():
    assert decode_request(bytes([0x05, 0x00, 0x02, 0xFF, 0x00])) == WriteSingleCoilRequest(2, True)
    assert decode_request(bytes([0x05, 0x00, 0x02, 0x00, 0x00])) == WriteSingleCoilRequest(2, False)


def test_decode_write_single_coil_rejects_other_values():
    with pytest.raises(DecodeError) as info:
        decode_request(bytes([0x05, 0x00, 0x02, 0x12, 0x34]))
    assert exception_for_decode_error(info.value) is ExceptionCode.ILLEGAL_DATA_VALUE


def test_decode_mask_write_register():
    request = decode_request(bytes([0x16, 0x00, 0x01, 0xFF, 0x00, 0x00, 0x12]))
    assert request == MaskWriteRegisterRequest(1, 0xFF00, 0x0012)


def test_decode_read_write_multiple_registers():
    request = decode_request(
        bytes([0x17, 0x00, 0x00, 0x00, 0x02, 0x00, 0x00, 0x00, 0x02, 0x04, 0xBE, 0xEF, 0xCA, 0xFE])
    )
    assert isinstance(request, ReadWriteMultipleRegistersRequest)
    assert request.read_quantity == 2
    assert request.write_quantity == 2
    assert request.register(0) == 0xBEEF
    assert request.register(1) == 0xCAFE
    assert request.register(2) is None


def test_decode_write_multiple_registers_roundtrip_values():
    request = decode_request(bytes([0x10, 0x00, 0x05, 0x00, 0x02, 0x04, 0xBE, 0xEF, 0xCA, 0xFE]))
    assert isinstance(request, WriteMultipleRegistersRequest)
    assert request.start_address == 5
    assert request.quantity == 2
    assert [request.register(i) for i in range(3)] == [0xBEEF, 0xCAFE, None]


def test_decode_write_multiple_coils_unpacks_lsb_first():
    request = decode_request(bytes([0x0F, 0x00, 0x00, 0x00, 0x03, 0x01, 0x05]))
    assert isinstance(request, WriteMultipleCoilsRequest)
    assert [request.coil(i) for i in range(3)] == [True, False, True]
    assert request.coil(3) is None


def test_byte_count_mismatch_maps_to_illegal_data_value():
    pdu = bytes([0x10, 0x00, 0x00, 0x00, 0x02, 0x03, 0x12, 0x34, 0x56])
    with pytest.raises(DecodeError) as info:
        decode_request(pdu)
    code = exception_for_decode_error(info.value)
    assert code is ExceptionCode.ILLEGAL_DATA_VALUE
    assert exception_response(pdu[0] & 0x7F, code) == bytes([0x90, 0x03])


def test_decode_report_server_id_is_custom():
    assert decode_request(bytes([0x11])) == CustomRequest(0x11, b"")


def test_decode_device_identification_is_custom():
    request = decode_request(bytes([0x2B, 0x0E, 0x01, 0x00]))
    assert request == CustomRequest(0x2B, bytes([0x0E, 0x01, 0x00]))


def test_trailing_bytes_are_rejected():
    with pytest.raises(DecodeError) as info:
        decode_request(bytes([0x03, 0x00, 0x00, 0x00, 0x01, 0x00]))
    assert exception_for_decode_error(info.value) is ExceptionCode.ILLEGAL_DATA_VALUE


def test_truncated_request_is_unexpected_eof():
    with pytest.raises(DecodeError) as info:
        decode_request(bytes([0x03, 0x00]))
    assert info.value.kind is DecodeErrorKind.UNEXPECTED_EOF


def test_empty_request_is_unexpected_eof():
    with pytest.raises(DecodeError) as info:
        decode_request(b"")
    assert info.value.kind is DecodeErrorKind.UNEXPECTED_EOF


@pytest.mark.parametrize("code", [0x00, 0x83, 0xFF])
def test_invalid_function_code(code):
    with pytest.raises(DecodeError) as info:
        decode_request(bytes([code, 0x00]))
    assert info.value.kind is DecodeErrorKind.INVALID_FUNCTION_CODE
    assert exception_for_decode_error(info.value) is ExceptionCode.ILLEGAL_FUNCTION


@pytest.mark.parametrize(
    "kind", [DecodeErrorKind.INVALID_CRC, DecodeErrorKind.UNSUPPORTED, DecodeErrorKind.MESSAGE]
)
def test_other_decode_errors_map_to_device_failure(kind):
    assert exception_for_decode_error(DecodeError(kind)) is ExceptionCode.SERVER_DEVICE_FAILURE


def test_exception_response_sets_high_bit():
    assert exception_response(0x03, ExceptionCode.ILLEGAL_DATA_ADDRESS) == bytes([0x83, 0x02])
    assert exception_response(0, ExceptionCode.ILLEGAL_DATA_VALUE) == bytes([0x80, 0x03])


def test_exception_response_rejects_out_of_range_function_code():
    with pytest.raises(EncodeError):
        exception_response(0x80, ExceptionCode.ILLEGAL_FUNCTION)