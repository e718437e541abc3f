import hashlib

from shelly_prom_exporter.credentials import AuthCredentials


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def test_payload_contains_digest_fields_but_not_password() -> None:
    credentials = AuthCredentials(password="secret", realm="shellyplusplugs-abc", nonce=1700000000, nc=1)
    payload = credentials.to_payload()

    assert payload["realm"] == "shellyplusplugs-abc"
    assert payload["username"] == "admin"
    assert payload["nonce"] == 1700000000
    assert payload["cnonce"] == 0
    assert payload["algorithm"] == "SHA-256"
    assert "secret" not in payload.values()
    assert "password" not in payload


def test_response_digest_follows_shelly_scheme() -> None:
    credentials = AuthCredentials(password="secret", realm="realm1", nonce=10, cnonce=7, nc=2)
    ha1 = _sha256("admin:realm1:secret")
    ha2 = _sha256("dummy_method:dummy_uri")
    assert credentials.response_digest() == _sha256(f"{ha1}:10:2:7:auth:{ha2}")


def test_digest_changes_with_nonce() -> None:
    first = AuthCredentials(password="secret", realm="realm1", nonce=1)
    second = AuthCredentials(password="secret", realm="realm1", nonce=2)
    assert first.response_digest() != second.response_digest()


def test_repr_hides_password() -> None:
    assert "secret" not in repr(AuthCredentials(password="secret", realm="realm1"))
