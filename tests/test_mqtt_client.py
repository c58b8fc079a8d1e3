from __future__ import annotations

from types import SimpleNamespace

import pytest

from nea_smart_mqtt.app.errors import BusDisconnected
from nea_smart_mqtt.app.mqtt_client import MqttClient, encode_payload


class _Recorder:
    def __init__(self):
        self.subscribed: list[tuple[str, int]] = []

    def subscribe(self, topic, qos=0):
        self.subscribed.append((topic, qos))


def _client() -> MqttClient:
    return MqttClient(host="broker", port=1883, username="", password="", client_id="nea-test", will_topic="nea/availability")


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"a": 1, "b": "ü"}, '{"a":1,"b":"ü"}'),
        ([1, 2], "[1,2]"),
        (None, ""),
        (True, "ON"),
        (False, "OFF"),
        (21.5, "21.5"),
        ("online", "online"),
    ],
)
def test_encode_payload(payload, expected) -> None:
    assert encode_payload(payload) == expected


def test_publish_while_disconnected_raises() -> None:
    c = _client()
    assert not c.connected
    with pytest.raises(BusDisconnected):
        c.publish("nea/zones/z1/mode", "heat")


def test_connect_replays_subscriptions_and_notifies() -> None:
    c = _client()
    c.subscribe("nea/zones/+/+/set")
    c.subscribe("nea/push/channel/+", qos=1)
    calls: list[bool] = []
    c.set_connect_handler(lambda: calls.append(True))

    rec = _Recorder()
    c._on_connect(rec, None, {}, SimpleNamespace(is_failure=False))
    assert c.connected
    assert rec.subscribed == [("nea/zones/+/+/set", 0), ("nea/push/channel/+", 1)]
    assert calls == [True]

    c._on_disconnect(rec, None, {}, SimpleNamespace(value=7))
    status = c.status()
    assert status.connected is False
    assert "7" in status.last_error


def test_refused_connect_is_reported() -> None:
    c = _client()
    calls: list[bool] = []
    c.set_connect_handler(lambda: calls.append(True))
    c._on_connect(_Recorder(), None, {}, SimpleNamespace(is_failure=True))
    assert not c.connected
    assert c.status().last_error is not None
    assert calls == []


def test_messages_reach_handler() -> None:
    c = _client()
    seen: list[tuple[str, str]] = []
    c.set_message_handler(lambda t, p: seen.append((t, p)))
    c._on_message(None, None, SimpleNamespace(topic="nea/zones/z1/mode/set", payload=b"off"))

    def broken(t, p):
        raise RuntimeError("boom")

    # a failing handler must not take the network thread down
    c.set_message_handler(broken)
    c._on_message(None, None, SimpleNamespace(topic="x", payload=b"\xff"))
    assert seen == [("nea/zones/z1/mode/set", "off")]
