from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .errors import BusDisconnected

_LOGGER = logging.getLogger("nea_mqtt")


@dataclass(frozen=True)
class MqttStatus:
    connected: bool
    last_error: str | None


def encode_payload(payload: Any) -> str:
    if isinstance(payload, (dict, list)):
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    if payload is None:
        return ""
    if isinstance(payload, bool):
        return "ON" if payload else "OFF"
    return str(payload)


class MqttClient:
    """paho client running its own network thread.

    Callbacks fire on that thread; the bridge marshals them back onto the
    event loop. Subscriptions are remembered and replayed on every connect.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        client_id: str,
        will_topic: str | None = None,
    ):
        self._host = host
        self._port = port
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if username:
            self._client.username_pw_set(username, password)
        if will_topic:
            self._client.will_set(will_topic, "offline", qos=1, retain=True)

        self._lock = threading.Lock()
        self._connected = False
        self._last_error: str | None = None
        self._subscriptions: dict[str, int] = {}

        self._on_message_user: Callable[[str, str], None] | None = None
        self._on_connect_user: Callable[[], None] | None = None
        self._on_disconnect_user: Callable[[], None] | None = None

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            with self._lock:
                self._connected = False
                self._last_error = f"connect refused reason_code={reason_code}"
            _LOGGER.error("MQTT connect refused by %s:%s: %s", self._host, self._port, reason_code)
            return
        subs: list[tuple[str, int]]
        on_connect_user: Callable[[], None] | None
        with self._lock:
            self._connected = True
            self._last_error = None
            subs = list(self._subscriptions.items())
            on_connect_user = self._on_connect_user
        _LOGGER.info("MQTT connected to %s:%s", self._host, self._port)
        for topic, qos in subs:
            try:
                client.subscribe(topic, qos=qos)
            except Exception:
                # keep the network thread alive; status reports the disconnect
                _LOGGER.exception("MQTT resubscribe to %s failed", topic)
        if on_connect_user is not None:
            try:
                on_connect_user()
            except Exception:
                _LOGGER.exception("MQTT connect handler failed")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        with self._lock:
            self._connected = False
            if getattr(reason_code, "value", reason_code) != 0:
                self._last_error = f"disconnect reason_code={reason_code}"
            handler = self._on_disconnect_user
        _LOGGER.warning("MQTT disconnected: %s", reason_code)
        if handler is not None:
            try:
                handler()
            except Exception:
                _LOGGER.exception("MQTT disconnect handler failed")

    def _on_message(self, client, userdata, msg):
        handler = self._on_message_user
        if handler is None:
            return
        payload = msg.payload.decode("utf-8", errors="replace")
        try:
            handler(str(msg.topic), payload)
        except Exception:
            _LOGGER.exception("MQTT message handler failed for %s", msg.topic)

    def set_message_handler(self, handler: Callable[[str, str], None] | None) -> None:
        self._on_message_user = handler

    def set_connect_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_connect_user = handler

    def set_disconnect_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_disconnect_user = handler

    def connect(self) -> None:
        try:
            # reconnects go through on_connect, which replays subscriptions
            self._client.reconnect_delay_set(min_delay=1, max_delay=30)
            self._client.connect_async(self._host, self._port, keepalive=30)
            self._client.loop_start()
        except Exception as e:
            with self._lock:
                self._connected = False
                self._last_error = str(e)
            _LOGGER.error("MQTT connect to %s:%s failed: %s", self._host, self._port, e)

    def disconnect(self) -> None:
        try:
            self._client.disconnect()
            self._client.loop_stop()
        finally:
            with self._lock:
                self._connected = False

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._connected

    def status(self) -> MqttStatus:
        with self._lock:
            return MqttStatus(connected=self._connected, last_error=self._last_error)

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> None:
        if not self.connected:
            raise BusDisconnected(f"not connected, dropping publish to {topic}")
        self._client.publish(topic, encode_payload(payload), qos=qos, retain=retain)

    def subscribe(self, topic: str, *, qos: int = 0) -> None:
        with self._lock:
            self._subscriptions[topic] = qos
            connected = self._connected
        if connected:
            self._client.subscribe(topic, qos=qos)
