from prometheus_client import CollectorRegistry, generate_latest

from shelly_prom_exporter.connection import PollResult
from shelly_prom_exporter.exporter import ShellyMetricsPublisher


def test_metrics_publisher_exports_formatted_readings() -> None:
    registry = CollectorRegistry()
    publisher = ShellyMetricsPublisher(registry=registry)

    publisher.apply_poll_result(
        target="plug01",
        result=PollResult(
            success=True,
            observed_at=1700000000.0,
            poll_duration_seconds=0.05,
            values={
                "power": "12.34",
                "voltage": "229.90",
                "current": "0.057",
                "temperature": "41.30",
                "relay_state": "1",
            },
        ),
    )

    rendered = generate_latest(registry).decode("utf-8")
    assert 'shelly_poll_success{target="plug01"} 1.0' in rendered
    assert 'shelly_poll_duration_seconds{target="plug01"} 0.05' in rendered
    assert 'shelly_plug_power_watts{target="plug01"} 12.34' in rendered
    assert 'shelly_plug_voltage_volts{target="plug01"} 229.9' in rendered
    assert 'shelly_plug_current_amperes{target="plug01"} 0.057' in rendered
    assert 'shelly_plug_temperature_celsius{target="plug01"} 41.3' in rendered
    assert 'shelly_plug_relay_on{target="plug01"} 1.0' in rendered


def test_metrics_publisher_keeps_last_values_on_failed_poll() -> None:
    registry = CollectorRegistry()
    publisher = ShellyMetricsPublisher(registry=registry)

    publisher.apply_poll_result(
        target="plug01",
        result=PollResult(
            success=True,
            observed_at=1700000000.0,
            poll_duration_seconds=0.05,
            values={"power": "12.34", "relay_state": "0"},
        ),
    )
    publisher.apply_poll_result(
        target="plug01",
        result=PollResult(success=False, poll_duration_seconds=3.1, error="empty response"),
    )

    rendered = generate_latest(registry).decode("utf-8")
    assert 'shelly_poll_success{target="plug01"} 0.0' in rendered
    assert 'shelly_poll_duration_seconds{target="plug01"} 3.1' in rendered
    assert 'shelly_plug_power_watts{target="plug01"} 12.34' in rendered
    assert 'shelly_plug_relay_on{target="plug01"} 0.0' in rendered


def test_metrics_publisher_skips_metrics_missing_from_result() -> None:
    registry = CollectorRegistry()
    publisher = ShellyMetricsPublisher(registry=registry)

    publisher.apply_poll_result(
        target="plug02",
        result=PollResult(success=True, observed_at=1700000000.0, values={"power": "3.00"}),
    )

    rendered = generate_latest(registry).decode("utf-8")
    assert 'shelly_plug_power_watts{target="plug02"} 3.0' in rendered
    assert 'shelly_plug_voltage_volts{target="plug02"}' not in rendered
    assert 'shelly_plug_temperature_celsius{target="plug02"}' not in rendered
