from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Callable

import jwt

from testflight_pm.config import AppStoreSettings, ConfigError

logger = logging.getLogger(__name__)

TOKEN_LIFETIME_SECONDS = 20 * 60
REFRESH_MARGIN_SECONDS = 2 * 60
_AUDIENCE = "appstoreconnect-v1"


def normalize_private_key(raw: str) -> str:
    """Accept a PEM ``.p8`` key as-is, with escaped newlines, or base64-encoded."""
    key = raw.strip().replace("\\n", "\n")
    if "-----BEGIN" in key:
        return key
    try:
        decoded = base64.b64decode(key, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ConfigError("App Store Connect private key is neither PEM nor base64-encoded PEM") from exc
    if "-----BEGIN" not in decoded:
        raise ConfigError("App Store Connect private key is neither PEM nor base64-encoded PEM")
    return decoded.strip()


class AppStoreConnectAuth:
    """ES256 bearer tokens for the App Store Connect API, reused until shortly before expiry."""

    def __init__(
        self,
        settings: AppStoreSettings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        missing = [name for name in ("issuer_id", "key_id", "private_key") if not getattr(settings, name)]
        if missing:
            raise ConfigError(f"App Store Connect credentials are missing: {', '.join(missing)}")

        self.issuer_id = settings.issuer_id
        self.key_id = settings.key_id
        self._private_key = normalize_private_key(settings.private_key)
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0

    def get_token(self) -> str:
        if self._token is not None and self._clock() < self._expires_at - REFRESH_MARGIN_SECONDS:
            return self._token
        return self.refresh_token()

    def refresh_token(self) -> str:
        issued_at = int(self._clock())
        expires_at = issued_at + TOKEN_LIFETIME_SECONDS
        token = jwt.encode(
            {"iss": self.issuer_id, "iat": issued_at, "exp": expires_at, "aud": _AUDIENCE},
            self._private_key,
            algorithm="ES256",
            headers={"kid": self.key_id, "typ": "JWT"},
        )
        self._token = token
        self._expires_at = expires_at
        logger.debug("Generated App Store Connect token valid until %d", expires_at)
        return token
