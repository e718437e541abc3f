import pytest
from unittest.mock import AsyncMock, MagicMock

from prometheus_client import CollectorRegistry, generate_latest

from shelly_prom_exporter.connection import PollResult, ShellyPlugConnection
from shelly_prom_exporter.exporter import ShellyMetricsPublisher
from shelly_prom_exporter.main import _run_poll_cycle, build_targets, load_config


def test_build_targets_applies_passwords_and_ignore_lists() -> None:
    targets = build_targets(
        ["kitchen=http://10.0.0.5", "office=10.0.0.6"],
        ["kitchen=s3cr3t"],
        ["office=voltage, current", "office=relay_state"],
    )

    kitchen, office = targets
    assert kitchen.name == "kitchen"
    assert kitchen.url == "http://10.0.0.5"
    assert kitchen.requires_authentication() is True
    assert office.requires_authentication() is False
    assert office.ignore_voltage is True
    assert office.ignore_current is True
    assert office.ignore_relay_state is True
    assert office.ignore_power is False
    assert office.ignore_temperature is False


@pytest.mark.parametrize(
    ("targets", "passwords", "ignores"),
    [
        (["kitchen"], [], []),
        (["kitchen=http://a", "kitchen=http://b"], [], []),
        (["kitchen=http://a"], ["office=secret"], []),
        (["kitchen=http://a"], [], ["kitchen=humidity"]),
        (["kitchen=http://a"], [], ["office=power"]),
    ],
)
def test_build_targets_rejects_invalid_specs(targets, passwords, ignores) -> None:
    with pytest.raises(ValueError):
        build_targets(targets, passwords, ignores)


def test_load_config_from_arguments() -> None:
    config = load_config(
        [
            "--target",
            "kitchen=http://10.0.0.5",
            "--password",
            "kitchen=s3cr3t",
            "--poll-interval-seconds",
            "2.5",
            "--listen-port",
            "9000",
            "--once",
        ]
    )
    assert [target.name for target in config.targets] == ["kitchen"]
    assert config.targets[0].password == "s3cr3t"
    assert config.poll_interval_seconds == 2.5
    assert config.minimum_request_interval_seconds == 0.8
    assert config.connect_timeout_seconds == 3.0
    assert config.listen_port == 9000
    assert config.run_once is True


def test_load_config_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("SHELLY_TARGETS", "kitchen=http://10.0.0.5; office=http://10.0.0.6")
    monkeypatch.setenv("SHELLY_IGNORE", "office=temperature")
    monkeypatch.setenv("SHELLY_CONNECT_TIMEOUT_SECONDS", "1.5")

    config = load_config([])
    assert [target.name for target in config.targets] == ["kitchen", "office"]
    assert config.targets[1].ignore_temperature is True
    assert config.connect_timeout_seconds == 1.5


def test_load_config_requires_a_target(monkeypatch) -> None:
    monkeypatch.delenv("SHELLY_TARGETS", raising=False)
    with pytest.raises(SystemExit):
        load_config([])


def test_load_config_reports_malformed_target() -> None:
    with pytest.raises(SystemExit):
        load_config(["--target", "no-url-here"])


@pytest.mark.asyncio
async def test_poll_cycle_publishes_each_target(caplog) -> None:
    healthy = MagicMock(spec=ShellyPlugConnection)
    healthy.get_target_name.return_value = "kitchen"
    healthy.poll = AsyncMock(
        return_value=PollResult(success=True, observed_at=1.0, poll_duration_seconds=0.1, values={"power": "5.00"})
    )
    failing = MagicMock(spec=ShellyPlugConnection)
    failing.get_target_name.return_value = "office"
    failing.poll = AsyncMock(return_value=PollResult(success=False, poll_duration_seconds=0.2, error="empty response"))

    registry = CollectorRegistry()
    results = await _run_poll_cycle(connections=[healthy, failing], metrics=ShellyMetricsPublisher(registry=registry))

    assert [result.success for result in results] == [True, False]
    rendered = generate_latest(registry).decode("utf-8")
    assert 'shelly_plug_power_watts{target="kitchen"} 5.0' in rendered
    assert 'shelly_poll_success{target="office"} 0.0' in rendered
    assert "office: telemetry poll failed: empty response" in caplog.text
