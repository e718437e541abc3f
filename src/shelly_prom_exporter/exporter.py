from __future__ import annotations

from prometheus_client import CollectorRegistry, Gauge

from shelly_prom_exporter.connection import (
    METRIC_CURRENT,
    METRIC_POWER,
    METRIC_RELAY_STATE,
    METRIC_TEMPERATURE,
    METRIC_VOLTAGE,
    PollResult,
)


class ShellyMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.poll_success = Gauge(
            "shelly_poll_success",
            "Latest poll status (1=success, 0=failure)",
            ["target"],
            registry=self.registry,
        )
        self.poll_duration_seconds = Gauge(
            "shelly_poll_duration_seconds",
            "Duration of the last Shelly RPC poll in seconds",
            ["target"],
            registry=self.registry,
        )
        self.poll_timestamp_seconds = Gauge(
            "shelly_poll_timestamp_seconds",
            "Unix timestamp of the last successful RPC poll",
            ["target"],
            registry=self.registry,
        )
        self.power_watts = Gauge(
            "shelly_plug_power_watts",
            "Active power currently drawn through the plug",
            ["target"],
            registry=self.registry,
        )
        self.voltage_volts = Gauge(
            "shelly_plug_voltage_volts",
            "Supply voltage measured by the plug",
            ["target"],
            registry=self.registry,
        )
        self.current_amperes = Gauge(
            "shelly_plug_current_amperes",
            "Current flowing through the plug",
            ["target"],
            registry=self.registry,
        )
        self.temperature_celsius = Gauge(
            "shelly_plug_temperature_celsius",
            "Internal temperature of the plug",
            ["target"],
            registry=self.registry,
        )
        self.relay_on = Gauge(
            "shelly_plug_relay_on",
            "Relay output state (1=on, 0=off)",
            ["target"],
            registry=self.registry,
        )
        self._value_gauges: dict[str, Gauge] = {
            METRIC_POWER: self.power_watts,
            METRIC_VOLTAGE: self.voltage_volts,
            METRIC_CURRENT: self.current_amperes,
            METRIC_TEMPERATURE: self.temperature_celsius,
            METRIC_RELAY_STATE: self.relay_on,
        }

    def apply_poll_result(self, *, target: str, result: PollResult) -> None:
        self.poll_success.labels(target=target).set(1.0 if result.success else 0.0)
        if result.poll_duration_seconds is not None:
            self.poll_duration_seconds.labels(target=target).set(result.poll_duration_seconds)
        if not result.success:
            return
        if result.observed_at is not None:
            self.poll_timestamp_seconds.labels(target=target).set(result.observed_at)

        # Values arrive pre-formatted so the exported precision matches the
        # device readings as rendered by the connection.
        for metric_name, formatted_value in result.values.items():
            gauge = self._value_gauges.get(metric_name)
            if gauge is None:
                continue
            gauge.labels(target=target).set(float(formatted_value))
