import pytest

from beepserver.responses import (
    ApiResponse,
    handle_error,
    handle_error_code,
    handle_result,
    page_info,
    param_int,
    probe_error,
    query_int,
    response_error_code,
    response_ok,
)


def test_response_ok_uses_http_status_as_error_code():
    body, status = response_ok({"message": "pong"})
    assert status == 200
    assert body == {
        "success": True,
        "errorCode": 200,
        "errorMsg": "",
        "data": {"message": "pong"},
    }


def test_handle_result_without_data_omits_data():
    body, status = handle_result(None)
    assert status == 200
    assert body == {"success": True, "errorCode": 0, "errorMsg": ""}


def test_handle_result_keeps_empty_mapping():
    body, _ = handle_result({})
    assert body["data"] == {}


def test_handle_error_shape():
    body, status = handle_error("boom")
    assert status == 200
    assert body == {"success": False, "errorCode": 500, "errorMsg": "boom", "data": ""}


def test_handle_error_code_uses_given_code():
    body, status = handle_error_code(42, "odd")
    assert status == 200
    assert body["errorCode"] == 42
    assert body["errorMsg"] == "odd"
    assert body["success"] is False


def test_response_error_code_with_http_code():
    body, status = response_error_code(7, "bad", 403)
    assert status == 403
    assert body == {"success": False, "errorCode": 7, "errorMsg": "bad"}


def test_response_error_code_defaults_to_200():
    _, status = response_error_code(7, "bad")
    assert status == 200


def test_probe_error():
    body, status = probe_error("server not ready")
    assert status == 400
    assert body["errorCode"] == 0
    assert body["errorMsg"] == "server not ready"
    assert body["data"] == ""


def test_api_response_keeps_empty_string_data():
    assert ApiResponse(False, 1, "x", "").to_dict()["data"] == ""
    assert "data" not in ApiResponse(True, 0).to_dict()


@pytest.mark.parametrize(
    "raw, expected",
    [("42", 42), ("-7", -7), ("+3", 3), ("abc", 0), ("", 0), (None, 0), ("1.5", 0), (" 4", 0)],
)
def test_param_int(raw, expected):
    assert param_int(raw) == expected


def test_param_int_clamps_to_64_bits():
    assert param_int("9" * 30) == 2**63 - 1
    assert param_int("-" + "9" * 30) == -(2**63)


def test_query_int_default_and_present():
    assert query_int({}, "clusterId", "-1") == -1
    assert query_int({"clusterId": "5"}, "clusterId", "-1") == 5
    assert query_int({"clusterId": ""}, "clusterId", "-1") == 0


def test_page_info_defaults_and_values():
    assert page_info({}) == (0, 1)
    assert page_info({"pageSize": "20", "pageNum": "3"}) == (20, 3)