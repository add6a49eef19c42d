from __future__ import annotations

import base64

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from testflight_pm.config import AppStoreSettings, ConfigError
from testflight_pm.sources import AppStoreConnectAuth
from testflight_pm.sources.auth import REFRESH_MARGIN_SECONDS, TOKEN_LIFETIME_SECONDS, normalize_private_key


class Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture(scope="module")
def key_pair() -> tuple[str, ec.EllipticCurvePublicKey]:
    private_key = ec.generate_private_key(ec.SECP256R1())
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    return pem, private_key.public_key()


def _settings(private_key: str) -> AppStoreSettings:
    return AppStoreSettings(issuer_id="issuer-1", key_id="KEY123", private_key=private_key, app_id="app-1")


def test_token_is_es256_with_key_id(key_pair) -> None:
    pem, public_key = key_pair
    auth = AppStoreConnectAuth(_settings(pem), clock=Clock(1_700_000_000))

    token = auth.get_token()

    header = jwt.get_unverified_header(token)
    assert header["alg"] == "ES256"
    assert header["kid"] == "KEY123"
    claims = jwt.decode(
        token,
        public_key,
        algorithms=["ES256"],
        audience="appstoreconnect-v1",
        options={"verify_exp": False},
    )
    assert claims["iss"] == "issuer-1"
    assert claims["exp"] - claims["iat"] == TOKEN_LIFETIME_SECONDS


def test_token_is_reused_until_refresh_margin(key_pair) -> None:
    pem, _ = key_pair
    clock = Clock(1_700_000_000)
    auth = AppStoreConnectAuth(_settings(pem), clock=clock)

    first = auth.get_token()
    clock.now += TOKEN_LIFETIME_SECONDS - REFRESH_MARGIN_SECONDS - 1
    assert auth.get_token() == first

    clock.now += 1
    assert auth.get_token() != first


def test_escaped_and_base64_keys_are_accepted(key_pair) -> None:
    pem, _ = key_pair
    escaped = pem.strip().replace("\n", "\\n")
    encoded = base64.b64encode(pem.encode("utf-8")).decode("ascii")

    assert normalize_private_key(escaped) == pem.strip()
    assert normalize_private_key(encoded) == pem.strip()


def test_garbage_key_is_a_config_error() -> None:
    with pytest.raises(ConfigError):
        normalize_private_key("not a key")


def test_missing_credentials_are_listed() -> None:
    with pytest.raises(ConfigError, match="issuer_id, key_id"):
        AppStoreConnectAuth(AppStoreSettings(private_key="x"))
