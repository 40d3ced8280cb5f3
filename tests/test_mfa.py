"""TOTP primitives and per-factor verification."""

from urllib.parse import parse_qs, urlparse

from tenantauth.service.mfa import (
    build_otpauth_uri,
    generate_secret,
    generate_totp,
    is_numeric_code,
    verify_mfa_code,
    verify_totp,
)
from tenantauth.storage.models import SmsFactor, TotpFactor, User

# RFC 6238 appendix B seed "12345678901234567890", base32 encoded
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestTotp:
    def test_rfc6238_sha1_vector(self):
        """T=59 yields 94287082; the 6-digit form is 287082."""
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 59, digits=8) == "94287082"

    def test_window_accepts_adjacent_step(self):
        code = generate_totp(RFC_SECRET, 1_000_000)
        assert verify_totp(RFC_SECRET, code, at=1_000_000 + 30)
        assert verify_totp(RFC_SECRET, code, at=1_000_000 - 30)
        assert not verify_totp(RFC_SECRET, code, at=1_000_000 + 90)

    def test_bad_secret_never_verifies(self):
        assert generate_totp("not base32!!", 59) == ""
        assert not verify_totp("not base32!!", "000000", at=59)

    def test_generated_secret_is_160_bit_base32(self):
        secret = generate_secret()
        assert len(secret) == 32
        assert generate_totp(secret, 59)

    def test_otpauth_uri(self):
        uri = build_otpauth_uri("ABC", "u@example.com", "TenantAuth")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert parsed.path == "/TenantAuth:u@example.com"
        assert parse_qs(parsed.query) == {"secret": ["ABC"], "issuer": ["TenantAuth"]}


class TestFactorDispatch:
    """Verification is selected by the factor's kind."""

    def test_totp_factor(self):
        code = generate_totp(RFC_SECRET, 59)
        assert verify_mfa_code(TotpFactor(secret=RFC_SECRET), code, at=59)
        assert not verify_mfa_code(TotpFactor(secret=RFC_SECRET), "000000", at=59)

    def test_sms_factor_compares_pending_code(self):
        assert verify_mfa_code(SmsFactor(phone="+15550100", pending_code="123456"), " 123456 ")
        assert not verify_mfa_code(SmsFactor(phone="+15550100", pending_code="123456"), "654321")
        assert not verify_mfa_code(SmsFactor(phone="+15550100"), "123456")

    def test_user_builds_factor_from_fields(self):
        user = User(id="u", email="e@x.io", password_hash="h", mfa_type="sms", mfa_secret="+1555", sms_mfa_code="42")
        factor = user.mfa_factor()
        assert isinstance(factor, SmsFactor)
        assert factor.pending_code == "42"
        assert User(id="u", email="e@x.io", password_hash="h").mfa_factor() is None


class TestNonAsciiCodes:
    """Codes outside ascii digits are rejected, never compared."""

    def test_fullwidth_and_accented_codes(self):
        code = generate_totp(RFC_SECRET, 59)
        fullwidth = code.translate({ord(d): 0xFF10 + int(d) for d in "0123456789"})
        assert not verify_totp(RFC_SECRET, fullwidth, at=59)
        assert not verify_totp(RFC_SECRET, "éééééé", at=59)
        sms = SmsFactor(phone="+15550100", pending_code="123456")
        assert not verify_mfa_code(sms, "１２３４５６")
        assert not verify_mfa_code(TotpFactor(secret=RFC_SECRET), "éééééé", at=59)

    def test_is_numeric_code(self):
        assert is_numeric_code("012345")
        assert not is_numeric_code("١٢٣٤٥٦")
        assert not is_numeric_code("")
        assert not is_numeric_code(None)
