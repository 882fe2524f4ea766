"""TOTP codes for login pages that ask for a second factor."""

from __future__ import annotations

import binascii
from datetime import datetime

import pyotp

from replayengine.exceptions import InvalidTotpSecret


def normalize_secret(secret: str) -> str:
    """Strip spaces and uppercase, as authenticator apps display secrets."""
    return secret.replace(" ", "").upper()


def generate_totp(
    secret: str,
    for_time: datetime | int | None = None,
    digits: int = 6,
    interval: int = 30,
) -> str:
    """Current (or ``for_time``) code for a base32 secret.

    Raises:
        InvalidTotpSecret: If the secret is empty or not valid base32.
    """
    clean = normalize_secret(secret)
    if not clean:
        raise InvalidTotpSecret("secret is empty")
    totp = pyotp.TOTP(clean, digits=digits, interval=interval)
    try:
        return totp.now() if for_time is None else totp.at(for_time)
    except (binascii.Error, ValueError) as exc:
        raise InvalidTotpSecret(f"invalid base32 secret: {exc}") from exc
