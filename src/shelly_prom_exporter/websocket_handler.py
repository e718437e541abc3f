from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from enum import Enum
from typing import TypeVar

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import WebSocketException

from shelly_prom_exporter.credentials import AuthCredentials
from shelly_prom_exporter.errors import (
    ShellyAuthenticationError,
    ShellyCancelledError,
    ShellyClientError,
    ShellyTimeout,
)
from shelly_prom_exporter.protocol import (
    ResponseDisposition,
    RpcRequest,
    classify_response,
    normalize_websocket_url,
    parse_challenge,
)
from shelly_prom_exporter.ws import DEFAULT_CONNECT_TIMEOUT_SECONDS, connect_websocket


LOGGER = logging.getLogger("shelly_prom_exporter.websocket")
MAX_SEND_ATTEMPTS = 3
MAX_AUTH_RETRIES = 1

_T = TypeVar("_T")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"


class AttemptOutcome(Enum):
    DONE = "done"
    FAILED = "failed"
    RETRY = "retry"


class WebSocketHandler:
    """Single-request RPC channel to one device websocket.

    Only one logical request may be in flight at a time; callers serialise
    their own calls. Transport failures are retried by reconnecting, and an
    in-band 401 error triggers exactly one re-authenticated retry. None of the
    public operations raise: failures surface as ``False`` or ``None``.
    """

    def __init__(
        self,
        target_url: str,
        request: RpcRequest | None = None,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    ) -> None:
        self._url = normalize_websocket_url(target_url)
        self._request = request if request is not None else RpcRequest()
        self._connect_timeout = connect_timeout
        self._websocket: ClientConnection | None = None
        self._state = ConnectionState.DISCONNECTED
        self._connect_lock = asyncio.Lock()
        self._cancel_scope = asyncio.Event()
        self._background_tasks: set[asyncio.Task[bool]] = set()
        self._password: str | None = None
        self._credentials: AuthCredentials | None = None
        self._request_json = ""
        self._update_request_json()

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def credentials(self) -> AuthCredentials | None:
        return self._credentials

    @property
    def request_json(self) -> str:
        return self._request_json

    @property
    def is_connecting(self) -> bool:
        return self._connect_lock.locked()

    def set_auth(self, password: str) -> None:
        self._password = password

    async def request(self) -> str | None:
        try:
            for attempt in range(MAX_AUTH_RETRIES + 1):
                outcome, response = await self._attempt_request(is_retry=attempt > 0)
                if outcome is not AttemptOutcome.RETRY:
                    return response
            return None
        except Exception:
            LOGGER.exception("exception during websocket request to %s", self._url)
            return None

    async def _attempt_request(self, *, is_retry: bool) -> tuple[AttemptOutcome, str | None]:
        if not await self.send(self._request_json):
            LOGGER.warning("send to %s failed, failing request", self._url)
            return AttemptOutcome.FAILED, None

        response = await self._receive()
        disposition = classify_response(response)
        if disposition is ResponseDisposition.DELIVER:
            return AttemptOutcome.DONE, response
        if is_retry:
            LOGGER.error("request to %s still failing after authentication update", self._url)
            return AttemptOutcome.FAILED, None
        if disposition is ResponseDisposition.ERROR:
            return AttemptOutcome.DONE, response

        if not self.update_authentication(response):
            LOGGER.error("failed to update authentication for %s", self._url)
            return AttemptOutcome.FAILED, None
        return AttemptOutcome.RETRY, None

    async def _receive(self) -> str:
        websocket = self._websocket
        if websocket is None:
            raise ShellyCancelledError(f"websocket to {self._url} was discarded before receive")
        frame = await self._cancellable(websocket.recv())
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def connect(self) -> bool:
        if self._connect_lock.locked():
            LOGGER.warning("already connecting to %s, ignoring connect call", self._url)
            return False

        async with self._connect_lock:
            LOGGER.info("connecting websocket to %s", self._url)
            self._state = ConnectionState.CONNECTING
            await self._discard_websocket()
            try:
                websocket = await self._cancellable(
                    connect_websocket(self._url, timeout=self._connect_timeout)
                )
            except ShellyTimeout:
                LOGGER.error("websocket connection to %s timed out", self._url)
                self._state = ConnectionState.DISCONNECTED
                return False
            except ShellyClientError as error:
                LOGGER.error("failed to connect websocket to %s: %s", self._url, error)
                self._state = ConnectionState.DISCONNECTED
                return False
            except Exception:
                LOGGER.exception("unexpected error while connecting websocket to %s", self._url)
                self._state = ConnectionState.DISCONNECTED
                return False

            self._websocket = websocket
            self._state = ConnectionState.OPEN
            LOGGER.info("connected websocket to %s", self._url)
            return True

    async def send(self, message: str) -> bool:
        if self._websocket is None:
            LOGGER.error("cannot send on missing websocket to %s", self._url)
            if not self._connect_lock.locked():
                LOGGER.info("triggering reconnection attempt to %s", self._url)
                self._spawn_connect()
            return False

        attempts = 0
        while True:
            if attempts >= MAX_SEND_ATTEMPTS:
                LOGGER.error("send attempts to %s exhausted, failing send", self._url)
                return False
            attempts += 1

            websocket = self._websocket
            if websocket is None:
                LOGGER.error("websocket to %s was discarded, failing send", self._url)
                return False
            try:
                await self._cancellable(websocket.send(message))
                return True
            except (OSError, WebSocketException) as error:
                LOGGER.warning(
                    "send to %s failed (attempt %d/%d): %s",
                    self._url,
                    attempts,
                    MAX_SEND_ATTEMPTS,
                    error,
                )
                self._state = ConnectionState.DISCONNECTED
                LOGGER.info("attempting reconnect to %s", self._url)
                if not await self.connect():
                    LOGGER.error("failed to reconnect to %s, failing send", self._url)
                    return False
            except ShellyCancelledError:
                LOGGER.warning("send to %s cancelled", self._url)
                return False

    def update_authentication(self, response: str) -> bool:
        if not self._password:
            LOGGER.error("cannot authenticate with %s without a password", self._url)
            return False

        try:
            challenge = parse_challenge(response)
        except ShellyAuthenticationError as error:
            LOGGER.error("failed to authenticate with %s: %s", self._url, error)
            return False

        self._credentials = AuthCredentials(
            password=self._password,
            realm=challenge.realm,
            nonce=challenge.nonce,
            cnonce=0,
            nc=challenge.nc,
        )
        self._update_request_json()
        LOGGER.debug("updated credentials for %s in realm %s", self._url, challenge.realm)
        return True

    async def cancel(self) -> None:
        scope, self._cancel_scope = self._cancel_scope, asyncio.Event()
        scope.set()
        await self._discard_websocket()
        self._state = ConnectionState.DISCONNECTED

    async def close(self) -> None:
        await self.cancel()
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn_connect(self) -> None:
        task = asyncio.create_task(self.connect())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _cancellable(self, awaitable: Awaitable[_T]) -> _T:
        # cancel() swaps in a fresh scope, so an operation started after it is unaffected.
        operation = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._cancel_scope.wait())
        try:
            done, _ = await asyncio.wait({operation, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not operation.done():
                operation.cancel()
        if operation in done:
            return operation.result()
        raise ShellyCancelledError(f"operation on {self._url} cancelled")

    async def _discard_websocket(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except (OSError, WebSocketException) as error:
            LOGGER.debug("error while closing websocket to %s: %s", self._url, error)

    def _update_request_json(self) -> None:
        self._request_json = self._request.to_json(self._credentials)
