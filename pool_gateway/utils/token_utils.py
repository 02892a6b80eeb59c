from __future__ import annotations

import time
from typing import Any

import jwt
from jwt import InvalidTokenError


class TokenMetadataParser:
    @staticmethod
    def is_token_expiring(
        expires_at: float | None,
        margin_seconds: float = 300,
        now: float | None = None,
    ) -> bool:
        # No recorded expiry means the credential cannot be trusted.
        if expires_at is None:
            return True
        current = time.time() if now is None else now
        return current >= expires_at - margin_seconds

    @staticmethod
    def extract_expires_at(
        token_response: dict[str, Any], now: float | None = None
    ) -> float | None:
        current = time.time() if now is None else now

        raw_expires_in = token_response.get("expires_in")
        if raw_expires_in is not None:
            try:
                return current + float(raw_expires_in)
            except (TypeError, ValueError):
                pass

        raw_expires_at = token_response.get("expires_at")
        if raw_expires_at is not None:
            try:
                return float(raw_expires_at)
            except (TypeError, ValueError):
                pass

        return None

    @staticmethod
    def extract_email(id_token: str | None) -> str | None:
        """Read the email claim from an id_token without verifying it.

        The token arrives directly from the provider's token endpoint over TLS,
        so it is only used as a display label for the account.
        """
        if not id_token:
            return None
        try:
            claims = jwt.decode(id_token, options={"verify_signature": False})
        except InvalidTokenError:
            return None
        email = claims.get("email")
        if isinstance(email, str) and email.strip():
            return email.strip()
        return None
