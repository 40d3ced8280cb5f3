from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import time
from typing import Callable, Dict, Optional
from urllib.parse import quote

from tenantauth.logging import get_logger
from tenantauth.storage.models import MfaFactor, SmsFactor, TotpFactor

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1


def generate_secret() -> str:
    """160-bit base32 shared secret, unpadded."""
    return base64.b32encode(os.urandom(20)).decode("ascii").rstrip("=")


def generate_sms_code(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


def build_otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe="@:")
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def is_numeric_code(code: Optional[str]) -> bool:
    """True for a non-empty run of ASCII digits (fullwidth and other scripts excluded)."""
    return isinstance(code, str) and code.isascii() and code.isdigit()


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    candidate = code.strip() if isinstance(code, str) else ""
    if not is_numeric_code(candidate):
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated.encode(), candidate.encode()):
            return True
    return False


def _verify_totp_factor(factor: TotpFactor, code: str, at: Optional[float]) -> bool:
    return verify_totp(factor.secret, code, at=at)


def _verify_sms_factor(factor: SmsFactor, code: str, at: Optional[float]) -> bool:
    candidate = code.strip() if isinstance(code, str) else ""
    if not factor.pending_code or not is_numeric_code(candidate):
        return False
    return hmac.compare_digest(factor.pending_code.encode(), candidate.encode())


_VERIFIERS: Dict[str, Callable[..., bool]] = {
    "totp": _verify_totp_factor,
    "sms": _verify_sms_factor,
}


def verify_mfa_code(factor: MfaFactor, code: str, *, at: Optional[float] = None) -> bool:
    """Check ``code`` with the verifier registered for the factor's kind."""
    verifier = _VERIFIERS.get(factor.kind)
    if verifier is None:
        logger.warning("mfa_factor_unsupported", kind=factor.kind)
        return False
    return verifier(factor, code, at)
