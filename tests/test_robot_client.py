#!/usr/bin/env python3
"""
Tests for the Robot webservice client. The requests session is a Mock, so
no HTTP traffic is produced.
"""

import json
import os
import sys
from unittest.mock import Mock

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from hrobot_provisioner.errors import RobotAPIError  # noqa: E402
from hrobot_provisioner.robot_client import RobotClient, Transaction, VSwitch  # noqa: E402


def make_response(status_code=200, body=None, text=None):
    response = Mock()
    response.status_code = status_code
    if body is not None:
        response.text = json.dumps(body)
        response.json.return_value = body
    else:
        response.text = text or ""
        response.json.side_effect = ValueError("No JSON object could be decoded")
    response.content = response.text.encode("utf-8")
    return response


@pytest.fixture
def http_session() -> Mock:
    return Mock()


@pytest.fixture
def client(http_session, mock_printer) -> RobotClient:
    return RobotClient("robot-user", "robot-pass", session=http_session, printer=mock_printer)


class TestRequest:
    """Authentication, form encoding and error decoding."""

    def test_basic_auth_and_timeout(self, client, http_session) -> None:
        http_session.request.return_value = make_response(200, {"server": []})

        client.list_all_servers()

        assert http_session.auth == ("robot-user", "robot-pass")
        http_session.request.assert_called_once_with(
            "GET", "https://robot-ws.your-server.de/server", data=None, timeout=30
        )

    def test_structured_error_body(self, client, http_session) -> None:
        http_session.request.return_value = make_response(
            404, {"error": {"status": 404, "code": "SERVER_NOT_FOUND", "message": "Server not found"}}
        )

        with pytest.raises(RobotAPIError) as exc_info:
            client.set_server_name(321, "worker")

        error = exc_info.value
        assert error.status_code == 404
        assert error.code == "SERVER_NOT_FOUND"
        assert error.not_found
        assert str(error) == "robot: SERVER_NOT_FOUND: Server not found"

    def test_unstructured_error_body(self, client, http_session) -> None:
        http_session.request.return_value = make_response(503, text="Service Unavailable")

        with pytest.raises(RobotAPIError) as exc_info:
            client.reset(321)

        assert exc_info.value.status_code == 503
        assert exc_info.value.code == ""
        assert str(exc_info.value) == "robot: unexpected 503: Service Unavailable"
        assert not exc_info.value.not_found

    def test_transport_failure(self, client, http_session) -> None:
        http_session.request.side_effect = requests.ConnectionError("connection reset")

        with pytest.raises(RobotAPIError) as exc_info:
            client.list_vswitches()

        assert exc_info.value.status_code == 0
        assert "connection reset" in str(exc_info.value)

    def test_not_found_by_code_only(self) -> None:
        assert RobotAPIError(400, "TRANSACTION_NOT_FOUND", "gone").not_found
        assert not RobotAPIError(409, "CONFLICT", "busy").not_found


class TestOrders:
    def test_order_form_fields(self, client, http_session) -> None:
        http_session.request.return_value = make_response(
            201, {"transaction": {"id": "B20150121-344958-251479", "status": "in process", "product": {"id": "EX44"}}}
        )

        transaction = client.order_server(
            "EX44", dist="Rescue system", location="FSN1", keys=["aa:bb", "cc:dd"], addons=["primary_ipv4"], test=True
        )

        assert transaction.id == "B20150121-344958-251479"
        assert transaction.in_process
        assert transaction.product_id == "EX44"
        method, url = http_session.request.call_args[0]
        assert (method, url) == ("POST", "https://robot-ws.your-server.de/order/server/transaction")
        assert http_session.request.call_args[1]["data"] == [
            ("product_id", "EX44"),
            ("dist", "Rescue system"),
            ("location", "FSN1"),
            ("authorized_key[]", "aa:bb"),
            ("authorized_key[]", "cc:dd"),
            ("addon[]", "primary_ipv4"),
            ("test", "true"),
        ]

    def test_market_transaction_path_is_quoted(self, client, http_session) -> None:
        http_session.request.return_value = make_response(
            200, {"transaction": {"id": "B1/2", "status": "ready", "server_number": "123456", "product": 1234}}
        )

        transaction = client.get_market_order_transaction("B1/2")

        assert http_session.request.call_args[0][1].endswith("/order/server_market/transaction/B1%2F2")
        assert transaction.server_number == 123456
        assert transaction.product_id == 1234
        assert transaction.product is None

    def test_transaction_to_dict_flattens_bare_product(self) -> None:
        transaction = Transaction.from_api({"id": "T1", "status": "ready", "product": 99})

        data = transaction.to_dict()

        assert data["product"] == 99
        assert "product_id" not in data


class TestServersAndRescue:
    def test_activate_rescue_form(self, client, http_session) -> None:
        http_session.request.return_value = make_response(
            200,
            {
                "rescue": {
                    "server_ip": "203.0.113.10",
                    "active": True,
                    "password": "rescuepw",
                    "authorized_key": [{"key": {"fingerprint": "aa:bb"}}],
                }
            },
        )

        rescue = client.activate_rescue(321, ["aa:bb"])

        assert http_session.request.call_args[1]["data"] == [("os", "linux"), ("authorized_key[]", "aa:bb")]
        assert rescue.active
        assert rescue.authorized_key_fingerprints == ["aa:bb"]
        assert "rescuepw" not in repr(rescue)

    def test_list_all_servers_envelopes(self, client, http_session) -> None:
        http_session.request.return_value = make_response(
            200,
            [
                {"server": {"server_number": 321, "server_name": "a", "server_ip": "203.0.113.10", "dc": "FSN1-DC1"}},
                {"server": {"server_number": 654, "server_name": "b", "server_ip": "203.0.113.11"}},
            ],
        )

        servers = client.list_all_servers()

        assert [server.server_number for server in servers] == [321, 654]
        assert servers[0].location == "FSN1-DC1"

    def test_cancel_server_without_date_sends_no_form(self, client, http_session) -> None:
        http_session.request.return_value = make_response(200, text="")

        client.cancel_server(321)

        assert http_session.request.call_args[0] == ("DELETE", "https://robot-ws.your-server.de/server/321/cancellation")
        assert http_session.request.call_args[1]["data"] is None


class TestVSwitches:
    def test_create_falls_back_to_sent_values(self, client, http_session) -> None:
        http_session.request.return_value = make_response(201, {"id": 4321})

        vswitch = client.create_vswitch(4001, "private")

        assert vswitch == VSwitch(id=4321, vlan=4001, name="private", cancelled=False)

    def test_get_accepts_wrapped_response(self, client, http_session) -> None:
        http_session.request.return_value = make_response(
            200, {"vswitch": {"id": 4321, "vlan": 4001, "name": "private", "cancelled": True}}
        )

        vswitch = client.get_vswitch(4321)

        assert vswitch.cancelled

    def test_delete_cancels_immediately(self, client, http_session) -> None:
        http_session.request.return_value = make_response(200, text="")

        client.delete_vswitch(4321)

        assert http_session.request.call_args[0][1].endswith("/vswitch/4321?cancellation_date=now")

    def test_add_server(self, client, http_session) -> None:
        http_session.request.return_value = make_response(201, text="")

        client.add_server_to_vswitch(4321, "203.0.113.10")

        assert http_session.request.call_args[1]["data"] == [("server[]", "203.0.113.10")]
