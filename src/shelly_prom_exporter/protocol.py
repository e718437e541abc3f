from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shelly_prom_exporter.credentials import AuthCredentials
from shelly_prom_exporter.errors import ShellyAuthenticationError


AUTH_REQUIRED_CODE = 401
DEFAULT_SOURCE = "shelly-prom-exporter"
SWITCH_STATUS_METHOD = "Switch.GetStatus"


class ResponseDisposition(Enum):
    DELIVER = "deliver"
    ERROR = "error"
    AUTH_REQUIRED = "auth_required"


@dataclass(frozen=True)
class RpcRequest:
    id: int = 1
    src: str = DEFAULT_SOURCE
    method: str = SWITCH_STATUS_METHOD
    params: dict[str, Any] = field(default_factory=lambda: {"id": 0})

    def to_payload(self, credentials: AuthCredentials | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "src": self.src,
            "method": self.method,
            "params": dict(self.params),
        }
        if credentials is not None:
            payload["auth"] = credentials.to_payload()
        return payload

    def to_json(self, credentials: AuthCredentials | None = None) -> str:
        return json.dumps(self.to_payload(credentials))


@dataclass(frozen=True)
class AuthChallenge:
    realm: str
    nonce: int
    nc: int


def normalize_websocket_url(url: str) -> str:
    """Map an http(s) or bare-host target onto the matching websocket scheme."""
    stripped = url.strip()
    lowered = stripped.lower()
    if lowered.startswith(("ws://", "wss://")):
        return stripped
    if lowered.startswith("https://"):
        return "wss://" + stripped[len("https://") :]
    if lowered.startswith("http://"):
        return "ws://" + stripped[len("http://") :]
    return "ws://" + stripped


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def classify_response(response: str) -> ResponseDisposition:
    """Decide how the connection handler treats one inbound frame.

    Anything that is not a JSON object carrying an ``error`` member is handed
    back untouched. Errors are only special-cased when their integer ``code``
    asks for authentication.
    """
    try:
        payload = json.loads(response)
    except ValueError:
        return ResponseDisposition.DELIVER
    if not isinstance(payload, dict) or "error" not in payload:
        return ResponseDisposition.DELIVER

    error = payload["error"]
    if not isinstance(error, dict):
        return ResponseDisposition.ERROR
    code = error.get("code")
    if _is_int(code) and code == AUTH_REQUIRED_CODE:
        return ResponseDisposition.AUTH_REQUIRED
    return ResponseDisposition.ERROR


def parse_challenge(response: str) -> AuthChallenge:
    try:
        payload = json.loads(response)
        message = payload["error"]["message"]
        if not isinstance(message, str):
            raise TypeError("challenge message is not a string")
        challenge = json.loads(message)
        realm = challenge["realm"]
        nonce = challenge["nonce"]
        nc = challenge["nc"]
    except (ValueError, KeyError, TypeError) as error:
        raise ShellyAuthenticationError(f"malformed authentication challenge: {error}") from error

    if not isinstance(realm, str):
        raise ShellyAuthenticationError("challenge realm is not a string")
    if not _is_int(nonce) or not _is_int(nc):
        raise ShellyAuthenticationError("challenge nonce/nc are not integers")
    return AuthChallenge(realm=realm, nonce=nonce, nc=nc)
