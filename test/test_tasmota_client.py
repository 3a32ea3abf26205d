from unittest.mock import MagicMock

import pytest
import requests

from core.errors import ActuatorError
from storage.tasmota_client import TasmotaClient


def response(payload=None, status=200, json_error=False):
    resp = MagicMock()
    resp.status_code = status
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} Error")
    if json_error:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = payload
    return resp


def make_client(*responses):
    session = MagicMock()
    session.get.side_effect = list(responses)
    return TasmotaClient(timeout=2.5, session=session), session


def test_read_state_sends_power_command():
    client, session = make_client(response({"POWER": "ON"}))

    assert client.read_state("192.168.1.50") == {"on": True}
    session.get.assert_called_once_with(
        "http://192.168.1.50/cm",
        params={"cmnd": "Power"},
        headers={},
        timeout=2.5,
    )


def test_set_state_uses_bearer_key():
    client, session = make_client(response({"POWER": "OFF"}))

    assert client.set_state("relay.local", False, key="abc") == {"POWER": "OFF"}
    _, kwargs = session.get.call_args
    assert kwargs["params"] == {"cmnd": "Power Off"}
    assert kwargs["headers"] == {"Authorization": "Bearer abc"}


def test_toggle_flips_current_state():
    client, session = make_client(response({"POWER": "OFF"}), response({"POWER": "ON"}))

    assert client.toggle("relay.local") == {"POWER": "ON"}
    commands = [call.kwargs["params"]["cmnd"] for call in session.get.call_args_list]
    assert commands == ["Power", "Power On"]


def test_transport_failure_raises_actuator_error():
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError("refused")
    client = TasmotaClient(session=session)

    with pytest.raises(ActuatorError) as exc:
        client.read_state("10.0.0.9")
    assert exc.value.address == "10.0.0.9"


def test_http_error_raises_actuator_error():
    client, _ = make_client(response(status=401))
    with pytest.raises(ActuatorError):
        client.set_state("10.0.0.9", True)


@pytest.mark.parametrize("payload", [{"POWER": "maybe"}, {}, ["ON"]])
def test_unexpected_state_payload(payload):
    client, _ = make_client(response(payload))
    with pytest.raises(ActuatorError):
        client.read_state("10.0.0.9")


def test_non_json_body():
    client, _ = make_client(response(json_error=True))
    with pytest.raises(ActuatorError):
        client.read_state("10.0.0.9")
