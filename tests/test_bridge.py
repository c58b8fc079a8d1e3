from __future__ import annotations

import asyncio
import json
import logging

import pytest
from conftest import INSTALL, FakeBus, FakeClock, FakeCloud, raw_channel, raw_install, raw_user, raw_zone

from nea_smart_mqtt.app.bridge import Bridge, format_value
from nea_smart_mqtt.app.errors import AuthError, ParseError
from nea_smart_mqtt.app.settings import load_settings

CLIMATE_CONFIG = "homeassistant/climate/nea_smart_inst1/z1/config"
TARGET = "nea/zones/z1/target_temperature"
CURRENT = "nea/zones/z1/current_temperature"


async def _wait_for(cond, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not cond():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _run(settings, scenario, *, cloud: FakeCloud | None = None, bus: FakeBus | None = None, exits: list | None = None):
    """Start a bridge against fakes, wait for the first poll, run ``scenario``."""
    cloud = cloud or FakeCloud()
    bus = bus or FakeBus()
    exits = exits if exits is not None else []

    async def _main():
        bridge = Bridge(settings, client=cloud, bus=bus, clock=FakeClock(), exit_process=lambda: exits.append(True))
        await bridge.start()
        await _wait_for(lambda: bridge.poll_count >= 1 or bridge.fatal_error is not None or bridge.last_poll_error)
        try:
            await scenario(bridge, cloud, bus)
        finally:
            await bridge.stop()

    asyncio.run(_main())
    return cloud, bus


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, ""), (True, "ON"), (False, "OFF"), (21.0, "21.0"), (21.55, "21.6"), (45, "45"), ("heat", "heat")],
)
def test_format_value(value, expected) -> None:
    assert format_value(value) == expected


def test_first_poll_publishes_discovery_and_state(settings) -> None:
    async def scenario(bridge, cloud, bus):
        assert bus.on(TARGET) == ["22.0"]
        assert bus.on(CURRENT) == ["22.0"]
        assert bus.on("nea/zones/z1/mode") == ["heat"]
        assert bus.on("nea/zones/z1/preset") == ["comfort"]
        assert bus.on("nea/zones/z1/availability") == ["online"]
        assert bus.on("nea/installations/INST1/outside_temperature") == ["10.0"]
        assert bus.on("nea/installations/INST1/online") == ["ON"]

        config = json.loads(bus.on(CLIMATE_CONFIG)[0])
        assert config["unique_id"] == "nea_smart_inst1_z1_climate"
        assert config["temperature_command_topic"] == "nea/zones/z1/target_temperature/set"
        assert config["preset_modes"] == ["comfort", "reduced", "standby"]
        assert config["device"]["identifiers"] == ["nea_smart:zone:z1"]

        attrs = json.loads(bus.on("nea/zones/z1/attributes")[0])
        assert attrs["installation"] == INSTALL
        assert attrs["channels"][0]["id"] == "ch-z1"

        # every state and config message is retained
        assert all(retain for _, _, retain in bus.published)
        assert "nea/zones/+/+/set" in bus.subscriptions
        assert "nea/push/channel/+" in bus.subscriptions

    _, bus = _run(settings, scenario)
    assert bus.connect_calls == 1
    assert bus.disconnect_calls == 1
    assert bus.on("nea/availability") == ["offline"]


def test_identical_poll_publishes_nothing(settings) -> None:
    async def scenario(bridge, cloud, bus):
        bus.clear()
        await bridge.poll()
        assert bus.published == []
        assert bridge.poll_count == 2
        assert cloud.installation_fetches == 2

    _run(settings, scenario)


def test_changed_poll_publishes_only_the_change(settings) -> None:
    cloud = FakeCloud()

    async def scenario(bridge, cloud, bus):
        bus.clear()
        cloud.install_payload = raw_install([raw_zone("z1", channels=[raw_channel("ch-z1", temp=707)])])
        await bridge.poll()
        assert [t for t, _, _ in bus.published] == [CURRENT]
        assert bus.on(CURRENT) == ["21.5"]

    _run(settings, scenario, cloud=cloud)


def test_command_over_mqtt(settings) -> None:
    async def scenario(bridge, cloud, bus):
        bus.clear()
        await bridge.handle_message("nea/zones/z1/target_temperature/set", "21")
        assert bus.on(TARGET) == ["21.0"]
        await bridge.commands.drain()
        assert cloud.commands == [(INSTALL, "ch-z1", {"setpoint_h_normal": 698})]

        # confirmed by the next poll: nothing republished
        cloud.install_payload = raw_install([raw_zone("z1", channels=[raw_channel("ch-z1", setpoint=698)])])
        bus.clear()
        await bridge.poll()
        assert bus.on(TARGET) == []
        assert not bridge.store.get("z1").state.pending

    _run(settings, scenario)


def test_bad_commands_are_dropped(settings) -> None:
    async def scenario(bridge, cloud, bus):
        bus.clear()
        await bridge.handle_message("nea/zones/ghost/mode/set", "off")
        await bridge.handle_message("nea/zones/z1/target_temperature/set", "99")
        await bridge.handle_message("nea/zones/z1/humidity/set", "40")
        await bridge.handle_message("nea/something/else", "x")
        await bridge.commands.drain()
        assert bus.published == []
        assert cloud.commands == []

    _run(settings, scenario)


def test_push_updates_only_pushed_fields(settings) -> None:
    async def scenario(bridge, cloud, bus):
        bus.clear()
        await bridge.handle_message("nea/push/channel/ch-z1", json.dumps({"data": {"temp_zone": 707}}))
        assert bus.on(CURRENT) == ["21.5"]
        assert bus.on(TARGET) == []

        await bridge.handle_message("nea/push/channel/ch-z1", json.dumps({"cc_config_bits": {"lock": True}}))
        assert bus.on("nea/zones/z1/locked") == ["ON"]

    _run(settings, scenario)


def test_bad_pushes_are_ignored(settings) -> None:
    async def scenario(bridge, cloud, bus):
        bus.clear()
        await bridge.handle_message("nea/push/channel/ch-z1", "not json")
        await bridge.handle_message("nea/push/channel/ch-z1", "[1, 2]")
        await bridge.handle_message("nea/push/channel/unknown", json.dumps({"temp_zone": 600}))
        assert bus.published == []

    _run(settings, scenario)


def test_vanished_zone_goes_offline_then_is_removed(settings) -> None:
    async def scenario(bridge, cloud, bus):
        cloud.install_payload = raw_install([])
        bus.clear()
        await bridge.poll()
        assert bus.on("nea/zones/z1/availability") == ["offline"]
        assert "z1" in bridge.store

        await bridge.poll()
        await bridge.poll()
        assert "z1" not in bridge.store
        assert bus.on(CLIMATE_CONFIG) == [""]
        assert bus.on(TARGET) == [""]
        assert bus.on("nea/zones/z1/availability")[-1] == ""

    _run(settings, scenario)


def test_republish_on_reconnect(settings) -> None:
    async def scenario(bridge, cloud, bus):
        bus.clear()
        bus.connect_handler()
        await _wait_for(lambda: bus.on("nea/availability"))
        assert bus.on("nea/availability") == ["online"]
        assert bus.on(TARGET) == ["22.0"]
        assert len(bus.on(CLIMATE_CONFIG)) == 1
        assert bus.on("nea/installations/INST1/outside_temperature") == ["10.0"]

    _run(settings, scenario)


def test_broker_outage_does_not_lose_state(settings) -> None:
    async def scenario(bridge, cloud, bus):
        bus.connected = False
        await bridge.handle_message("nea/zones/z1/target_temperature/set", "20")
        await bridge.poll()
        await bridge.commands.drain()
        assert bridge.store.get("z1").state.value("target_temperature") == 20.0
        assert len(cloud.commands) == 1

        bus.connected = True
        bus.clear()
        await bridge.republish_all()
        assert bus.on(TARGET) == ["20.0"]

    _run(settings, scenario)


def test_rejected_login_stops_bridge(settings) -> None:
    cloud = FakeCloud()
    cloud.login_error = AuthError("invalid credentials")
    exits: list = []

    async def scenario(bridge, cloud, bus):
        await _wait_for(lambda: exits)
        await asyncio.sleep(0.02)
        assert bridge.fatal_error == "invalid credentials"
        assert not bridge.commands.accepting

    _, bus = _run(settings, scenario, cloud=cloud, exits=exits)
    assert exits == [True]
    assert bus.on("nea/availability") == ["offline"]
    assert bus.disconnect_calls == 1


def test_unknown_installation_fails_poll() -> None:
    settings = load_settings(
        {"email": "someone@example.com", "password": "pw", "installation": "OTHER", "mqtt": {"base_topic": "nea"}}
    )

    async def scenario(bridge, cloud, bus):
        with pytest.raises(ParseError):
            await bridge.poll()
        assert "OTHER" in bridge.last_poll_error
        assert cloud.installation_fetches == 0

    _run(settings, scenario)


def test_installation_selected_by_name(settings) -> None:
    settings = load_settings(
        {"email": "someone@example.com", "password": "pw", "installation": "Home", "mqtt": {"base_topic": "nea"}}
    )

    async def scenario(bridge, cloud, bus):
        assert bridge.poll_count == 1
        assert list(bridge.installations) == [INSTALL]

    _run(settings, scenario)


def test_status_and_zones(settings) -> None:
    async def scenario(bridge, cloud, bus):
        status = bridge.status()
        assert status["mqtt"]["connected"] is True
        assert status["session"] == "authenticated"
        assert status["installations"] == [INSTALL]
        assert status["zones"] == 1
        assert status["poll_count"] == 1
        assert status["referentials_version"] == "builtin"
        assert {t["name"] for t in status["timers"]} == {
            "poll",
            "live_data",
            "referentials",
            "token_refresh",
            "pending_sweep",
        }

        zones = bridge.zones()
        assert [z["zone_id"] for z in zones] == ["z1"]
        assert zones[0]["state"]["target_temperature"] == 22.0

    _run(settings, scenario)


class SlowCloud(FakeCloud):
    def __init__(self):
        super().__init__()
        self.fetch_started = False
        self.fetch_finished = False

    async def fetch_installation(self, session, unique: str):
        self.fetch_started = True
        await asyncio.sleep(0.1)
        snap = await super().fetch_installation(session, unique)
        self.fetch_finished = True
        return snap


def test_shutdown_lets_running_poll_finish(settings) -> None:
    cloud = SlowCloud()
    bus = FakeBus()

    async def _main():
        bridge = Bridge(settings, client=cloud, bus=bus, clock=FakeClock(), exit_process=lambda: None)
        await bridge.start()
        await _wait_for(lambda: cloud.fetch_started)
        await bridge.stop()
        return bridge

    bridge = asyncio.run(_main())
    assert cloud.fetch_finished
    assert cloud.installation_fetches == 1
    assert bridge.poll_count == 1
    assert bus.on(TARGET) == ["22.0"]
    assert bus.on("nea/availability")[-1] == "offline"


def test_delisted_installation_zones_are_removed(settings) -> None:
    async def scenario(bridge, cloud, bus):
        cloud.user_payload = raw_user(("OTHER",))
        cloud.install_payload = raw_install([], unique="OTHER")
        bus.clear()
        await bridge.poll()
        assert bus.on("nea/zones/z1/availability") == ["offline"]
        assert "z1" in bridge.store

        await bridge.poll()
        await bridge.poll()
        assert "z1" not in bridge.store
        assert bus.on(CLIMATE_CONFIG) == [""]
        assert list(bridge.installations) == ["OTHER"]

    _run(settings, scenario)


def test_failing_bus_callback_is_logged(settings, caplog) -> None:
    caplog.set_level(logging.ERROR)

    async def scenario(bridge, cloud, bus):
        async def broken(topic, payload):
            raise RuntimeError("boom")

        bridge.handle_message = broken
        bus.message_handler("nea/zones/z1/mode/set", "off")
        await _wait_for(lambda: "boom" in caplog.text)
        assert "MQTT callback handling failed" in caplog.text

    _run(settings, scenario)
