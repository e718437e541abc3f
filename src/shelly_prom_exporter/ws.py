from __future__ import annotations

import asyncio

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import InvalidHandshake, InvalidURI, WebSocketException

from shelly_prom_exporter.errors import ShellyConnectionError, ShellyHandshakeError, ShellyTimeout


DEFAULT_CONNECT_TIMEOUT_SECONDS = 3.0
MAX_FRAME_BYTES = 1024 * 1024


async def connect_websocket(url: str, *, timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS) -> ClientConnection:
    """Open the device websocket, bounding the whole handshake by ``timeout``."""
    try:
        return await asyncio.wait_for(
            connect(
                url,
                open_timeout=None,
                close_timeout=2,
                max_size=MAX_FRAME_BYTES,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise ShellyTimeout(f"websocket connection to {url} timed out") from err
    except (InvalidHandshake, InvalidURI, ValueError) as err:
        raise ShellyHandshakeError(f"websocket handshake with {url} failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise ShellyConnectionError(f"websocket connection to {url} failed: {err}") from err
