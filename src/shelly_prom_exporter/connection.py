from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from shelly_prom_exporter.websocket_handler import WebSocketHandler
from shelly_prom_exporter.ws import DEFAULT_CONNECT_TIMEOUT_SECONDS


LOGGER = logging.getLogger("shelly_prom_exporter.connection")
_V = TypeVar("_V")
# The plug refreshes its readings once per second; leave headroom for the
# round trip and the scrape itself.
DEFAULT_MINIMUM_REQUEST_INTERVAL_SECONDS = 0.8

METRIC_POWER = "power"
METRIC_VOLTAGE = "voltage"
METRIC_CURRENT = "current"
METRIC_TEMPERATURE = "temperature"
METRIC_RELAY_STATE = "relay_state"
METRIC_NAMES: tuple[str, ...] = (
    METRIC_POWER,
    METRIC_VOLTAGE,
    METRIC_CURRENT,
    METRIC_TEMPERATURE,
    METRIC_RELAY_STATE,
)


@dataclass(frozen=True)
class TargetDevice:
    name: str
    url: str
    password: str | None = None
    ignore_power: bool = False
    ignore_voltage: bool = False
    ignore_current: bool = False
    ignore_temperature: bool = False
    ignore_relay_state: bool = False

    def requires_authentication(self) -> bool:
        return bool(self.password)

    def rpc_url(self) -> str:
        return self.url.rstrip("/") + "/rpc"


@dataclass(frozen=True)
class PollResult:
    success: bool
    observed_at: float | None = None
    poll_duration_seconds: float | None = None
    values: dict[str, str] = field(default_factory=dict)
    error: str | None = None


def _format_decimal(value: float, places: int) -> str:
    return f"{value:.{places}f}"


def _as_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected a number, got {value!r}")
    return float(value)


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected a boolean, got {value!r}")
    return value


class ShellyPlugConnection:
    def __init__(
        self,
        target: TargetDevice,
        *,
        handler: WebSocketHandler | None = None,
        minimum_request_interval: float = DEFAULT_MINIMUM_REQUEST_INTERVAL_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._target = target
        self._minimum_request_interval = minimum_request_interval
        self._clock = clock
        self._last_request_at: float | None = None
        self._last_error: str | None = None
        self._last_observed_at: float | None = None

        self._power = 0.0
        self._voltage = 0.0
        self._current = 0.0
        self._temperature = 0.0
        self._relay_on = False

        if handler is None:
            handler = WebSocketHandler(target.rpc_url(), connect_timeout=connect_timeout)
        self._handler = handler
        if target.requires_authentication():
            self._handler.set_auth(target.password or "")

    @property
    def target(self) -> TargetDevice:
        return self._target

    @property
    def handler(self) -> WebSocketHandler:
        return self._handler

    def get_target_name(self) -> str:
        return self._target.name

    def get_target_url(self) -> str:
        return self._target.rpc_url()

    async def start(self) -> bool:
        return await self._handler.connect()

    async def close(self) -> None:
        await self._handler.close()

    def is_power_ignored(self) -> bool:
        return self._target.ignore_power

    def is_voltage_ignored(self) -> bool:
        return self._target.ignore_voltage

    def is_current_ignored(self) -> bool:
        return self._target.ignore_current

    def is_temperature_ignored(self) -> bool:
        return self._target.ignore_temperature

    def is_relay_state_ignored(self) -> bool:
        return self._target.ignore_relay_state

    async def get_current_power_as_string(self) -> str:
        await self.update_metrics_if_necessary()
        return _format_decimal(self._power, 2)

    async def get_voltage_as_string(self) -> str:
        await self.update_metrics_if_necessary()
        return _format_decimal(self._voltage, 2)

    async def get_current_as_string(self) -> str:
        await self.update_metrics_if_necessary()
        return _format_decimal(self._current, 3)

    async def get_temperature_as_string(self) -> str:
        await self.update_metrics_if_necessary()
        return _format_decimal(self._temperature, 2)

    async def is_relay_on_as_string(self) -> str:
        await self.update_metrics_if_necessary()
        return "1" if self._relay_on else "0"

    def formatted_values(self) -> dict[str, str]:
        values: dict[str, str] = {}
        if not self.is_power_ignored():
            values[METRIC_POWER] = _format_decimal(self._power, 2)
        if not self.is_voltage_ignored():
            values[METRIC_VOLTAGE] = _format_decimal(self._voltage, 2)
        if not self.is_current_ignored():
            values[METRIC_CURRENT] = _format_decimal(self._current, 3)
        if not self.is_temperature_ignored():
            values[METRIC_TEMPERATURE] = _format_decimal(self._temperature, 2)
        if not self.is_relay_state_ignored():
            values[METRIC_RELAY_STATE] = "1" if self._relay_on else "0"
        return values

    async def poll(self) -> PollResult:
        monotonic_start = time.monotonic()
        updated = await self.update_metrics_if_necessary()
        duration = time.monotonic() - monotonic_start
        if not updated:
            return PollResult(success=False, poll_duration_seconds=duration, error=self._last_error)
        return PollResult(
            success=True,
            observed_at=self._last_observed_at,
            poll_duration_seconds=duration,
            values=self.formatted_values(),
        )

    async def update_metrics_if_necessary(self) -> bool:
        """Refresh cached readings unless the last request is still fresh.

        Returns whether the most recent request produced usable data; a call
        skipped by the time gate repeats that outcome. Cached values are left
        as they were when a request fails.
        """
        now = self._clock()
        if self._last_request_at is not None and now - self._last_request_at < self._minimum_request_interval:
            return self._last_error is None
        self._last_request_at = now
        requested_at = time.time()

        response = await self._handler.request()
        if not response:
            LOGGER.warning("%s: request response null or empty, could not update metrics", self._target.name)
            self._last_error = "empty response"
            return False

        try:
            payload = json.loads(response)
            result = payload["result"]
            if not isinstance(result, dict):
                raise TypeError("result is not an object")
        except (ValueError, KeyError, TypeError) as error:
            LOGGER.warning("%s: failed to parse response: %s", self._target.name, error)
            self._last_error = f"unparseable response: {error}"
            return False

        self._apply_result(result)
        self._last_error = None
        self._last_observed_at = requested_at
        return True

    def _apply_result(self, result: dict[str, Any]) -> None:
        if not self.is_power_ignored():
            power = self._read_field(result, ("apower",), _as_float)
            if power is not None:
                self._power = power
        if not self.is_voltage_ignored():
            voltage = self._read_field(result, ("voltage",), _as_float)
            if voltage is not None:
                self._voltage = voltage
        if not self.is_current_ignored():
            current = self._read_field(result, ("current",), _as_float)
            if current is not None:
                self._current = current
        if not self.is_temperature_ignored():
            temperature = self._read_field(result, ("temperature", "tC"), _as_float)
            if temperature is not None:
                self._temperature = temperature
        if not self.is_relay_state_ignored():
            relay_on = self._read_field(result, ("output",), _as_bool)
            if relay_on is not None:
                self._relay_on = relay_on

    def _read_field(self, result: dict[str, Any], path: tuple[str, ...], convert: Callable[[Any], _V]) -> _V | None:
        try:
            value: Any = result
            for key in path:
                value = value[key]
            return convert(value)
        except (KeyError, TypeError) as error:
            LOGGER.warning(
                "%s: failed to read %s from response: %s",
                self._target.name,
                ".".join(path),
                error,
            )
            return None
