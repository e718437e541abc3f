from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any


DEFAULT_USERNAME = "admin"
DIGEST_ALGORITHM = "SHA-256"
_HA2_SOURCE = "dummy_method:dummy_uri"


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass
class AuthCredentials:
    """Digest parameters derived from the device's last authentication challenge."""

    password: str
    realm: str
    nonce: int = 0
    cnonce: int = 0
    nc: int = 1
    username: str = DEFAULT_USERNAME

    def __repr__(self) -> str:
        return (
            f"AuthCredentials(realm={self.realm!r}, username={self.username!r}, "
            f"nonce={self.nonce}, cnonce={self.cnonce}, nc={self.nc})"
        )

    def response_digest(self) -> str:
        ha1 = _sha256_hex(f"{self.username}:{self.realm}:{self.password}")
        ha2 = _sha256_hex(_HA2_SOURCE)
        return _sha256_hex(f"{ha1}:{self.nonce}:{self.nc}:{self.cnonce}:auth:{ha2}")

    def to_payload(self) -> dict[str, Any]:
        return {
            "realm": self.realm,
            "username": self.username,
            "nonce": self.nonce,
            "cnonce": self.cnonce,
            "response": self.response_digest(),
            "algorithm": DIGEST_ALGORITHM,
        }
