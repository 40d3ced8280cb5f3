from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from tenantauth.config import AuthConfig
from tenantauth.logging import get_logger, redact_email
from tenantauth.service.audit import AuditLog
from tenantauth.service.credentials import CredentialService
from tenantauth.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    EmailAlreadyRegisteredError,
    InvalidCredentialsError,
    InvalidMfaError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    MfaRequiredError,
    NotFoundError,
    PasswordReuseError,
    RefreshTokenExpiredError,
    RefreshTokenInvalidError,
    SessionInvalidError,
    ValidationError,
)
from tenantauth.service.mfa import (
    build_otpauth_uri,
    generate_secret,
    generate_sms_code,
    is_numeric_code,
    verify_mfa_code,
)
from tenantauth.service.notifications import NotificationService
from tenantauth.service.password_history import PasswordHistoryGuard
from tenantauth.service.sessions import SessionService
from tenantauth.service.store import AuthStore
from tenantauth.service.tenants import TenantMembershipResolver
from tenantauth.service.tokens import (
    ACCESS,
    AccessClaims,
    TokenPair,
    TokenService,
    hash_refresh_token,
    user_summary,
)
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import DeviceInfo, SmsFactor, User
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_PENDING_TOKEN_FIELDS = {
    "reset_token": None,
    "reset_token_expires_at": None,
    "reset_otp": None,
    "reset_otp_expires_at": None,
    "recovery_token": None,
    "recovery_token_expires_at": None,
}


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    tenant_id: Optional[str]
    tenant_access: Optional[List[str]]
    session_id: Optional[str]
    claims: AccessClaims


class AuthService:
    """Login, registration, refresh, recovery and MFA flows.

    Composes the credential, session, token, history and membership
    components around one store. Notifications and audit events are
    side effects: their failures are logged and never fail the flow.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        config: AuthConfig,
        *,
        notifications: Optional[NotificationService] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.config = config
        self.notifications = notifications or NotificationService()
        self.audit = audit or AuditLog()
        self.credentials = CredentialService(store, config)
        self.password_history = PasswordHistoryGuard(store, self.credentials, config)
        self.sessions = SessionService(store, config, cache)
        self.memberships = TenantMembershipResolver(store)
        self.tokens = TokenService(
            store, config, self.sessions, self.memberships, cache=cache, audit=self.audit
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _notify(self, kind: str, *args: Any) -> None:
        try:
            getattr(self.notifications, kind)(*args)
        except Exception as exc:
            logger.warning("notification_failed", kind=kind, error=str(exc))

    def _audit(self, event: str, **fields: Any) -> None:
        try:
            self.audit.record(event, **fields)
        except Exception as exc:
            logger.warning("audit_record_failed", audit_event=event, error=str(exc))

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    # credentials

    def validate_user(self, email: str, password: str) -> User:
        """Check email and password; wrong-password attempts count toward lockout."""
        user = self.store.get_user_by_email(email)
        if not user:
            self._audit("login_failure", email=redact_email(email), reason="unknown_user")
            raise InvalidCredentialsError()
        now = self._now()
        if user.is_locked(now):
            self._audit("login_failure", user_id=user.id, reason="account_locked")
            raise AccountLockedError()
        if not self.credentials.verify_user_password(user, password):
            updated = self.credentials.record_failed_login(user.id, now)
            self._audit(
                "login_failure",
                user_id=user.id,
                reason="bad_password",
                attempts=updated.failed_login_attempts,
            )
            if updated.is_locked(now):
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    locked_until=updated.locked_until.isoformat(),
                )
                self._audit("account_locked", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self._audit("login_failure", user_id=user.id, reason="inactive")
            raise AccountInactiveError()
        return user

    async def login(
        self, email: str, password: str, device: Optional[DeviceInfo] = None
    ) -> TokenPair:
        user = self.validate_user(email, password)
        self.credentials.record_successful_login(user.id, self._now())
        pair = await self.tokens.issue_token_pair(user.id, device)
        self._audit("login_success", user_id=user.id, session_id=pair.session_id)
        return pair

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        organization_name: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> TokenPair:
        email = (email or "").strip()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("Password is required", detail={"field": "password"})
        if self.store.get_user_by_email(email):
            raise EmailAlreadyRegisteredError()
        password_hash = self.credentials.hash_password(password)
        now = self._now()
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            email_verification_token=self.credentials.generate_single_use_token(),
            created_at=now,
            updated_at=now,
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            if exc.constraint == "user_email":
                raise EmailAlreadyRegisteredError() from exc
            raise
        if organization_name and organization_name.strip():
            tenant = self.memberships.create_tenant(organization_name.strip())
            self.memberships.add_user_to_tenant(user.id, tenant.id, "admin")
        self.password_history.add_to_history(user.id, password_hash)
        logger.info("user_registered", user_id=user.id)
        self._notify("send_email_verification", user.email, user.email_verification_token)
        return await self.tokens.issue_token_pair(user.id, device)

    # refresh and logout

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate ``refresh_token`` and return a new pair for the same session."""
        claims = self.tokens.decode_refresh(refresh_token)
        if claims is None or not claims.session_id:
            raise RefreshTokenInvalidError()
        row = self.store.get_refresh_token(hash_refresh_token(refresh_token))
        if row is None or row.user_id != claims.sub or row.session_id != claims.session_id:
            raise RefreshTokenInvalidError()
        if row.revoked:
            await self.tokens.reject_revoked(row)
        if not await self.tokens.verify_refresh_token_validity(refresh_token):
            if row.expires_at <= self._now():
                raise RefreshTokenExpiredError()
            raise RefreshTokenInvalidError()
        if not await self.sessions.is_session_valid(claims.sub, claims.session_id):
            # session state wins over a live-looking refresh row
            await self.tokens.revoke_refresh_token(
                refresh_token, revoked_by=claims.sub, reason="session_invalid"
            )
            raise SessionInvalidError()
        user = self.store.get_user(claims.sub)
        if not user or not user.is_active:
            await self.tokens.revoke_refresh_token(
                refresh_token, revoked_by=claims.sub, reason="user_inactive"
            )
            raise RefreshTokenInvalidError()
        new_refresh = await self.tokens.rotate_refresh_token(
            refresh_token, user.id, claims.session_id
        )
        new_row = self.store.get_refresh_token(hash_refresh_token(new_refresh))
        access_token, access_claims = self.tokens.issue_access_token(user, claims.session_id)
        await self.sessions.update_session_activity(claims.session_id)
        self._audit("token_refreshed", user_id=user.id, session_id=claims.session_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            session_id=claims.session_id,
            user=user_summary(user),
            access_expires_at=datetime.fromtimestamp(access_claims.exp, timezone.utc),
            refresh_expires_at=new_row.expires_at,
        )

    async def logout(self, user_id: str, session_id: str) -> bool:
        revoked = await self.tokens.revoke_session(
            session_id, revoked_by=user_id, reason="User logout"
        )
        self._audit("logout", user_id=user_id, session_id=session_id)
        return revoked

    async def logout_other_sessions(self, user_id: str, current_session_id: str) -> List[str]:
        revoked = await self.sessions.revoke_all_user_sessions(
            user_id,
            except_session_id=current_session_id,
            revoked_by=user_id,
            reason="Logout other sessions",
        )
        self._audit("logout", user_id=user_id, scope="others", count=len(revoked))
        return revoked

    async def revoke_user_session(self, user_id: str, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if not session or session.user_id != user_id:
            raise NotFoundError("Session not found", detail={"session_id": session_id})
        revoked = await self.tokens.revoke_session(
            session_id, revoked_by=user_id, reason="Revoked by user"
        )
        self._audit("logout", user_id=user_id, session_id=session_id, scope="single")
        return revoked

    async def get_session_status(self, user_id: str, session_id: str) -> Dict[str, Any]:
        return await self.sessions.get_session_status(user_id, session_id)

    def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            self.sessions.describe_session(s)
            for s in self.sessions.list_active_sessions(user_id)
        ]

    async def authenticate_access_token(self, token: str) -> AuthContext:
        """Resolve a bearer token to its caller, requiring a live session."""
        claims = self.tokens.validate_token(token, ACCESS)
        user = self.store.get_user(claims.sub)
        if not user or not user.is_active:
            raise InvalidTokenError()
        if claims.session_id:
            if not await self.sessions.is_session_valid(user.id, claims.session_id):
                raise SessionInvalidError()
            await self.sessions.update_session_activity(claims.session_id)
        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            tenant_id=claims.tenant_id,
            tenant_access=claims.tenant_access,
            session_id=claims.session_id,
            claims=claims,
        )

    # revoke everywhere

    async def _revoke_everywhere(self, user_id: str, reason: str) -> None:
        await self.sessions.revoke_all_user_sessions(user_id, reason=reason)
        self.tokens.revoke_all_user_tokens(user_id, reason=reason)

    def _set_password(self, user: User, new_password: str, **extra: Any) -> User:
        password_hash = self.credentials.hash_password(new_password)
        updated = self.store.update_user(user.id, password_hash=password_hash, **extra)
        self.password_history.add_to_history(user.id, password_hash)
        return updated

    # password reset

    def request_password_reset(self, email: str) -> Optional[str]:
        """Store a reset token and OTP; the OTP goes out through notifications.

        Returns the token for out-of-band delivery, or None for an unknown
        email (the caller must not reveal which).
        """
        user = self.store.get_user_by_email(email)
        if not user:
            self._audit("password_reset_requested", email=redact_email(email), account_exists=False)
            return None
        now = self._now()
        token = self.credentials.generate_single_use_token()
        otp = self.credentials.generate_otp()
        self.store.update_user(
            user.id,
            reset_token=token,
            reset_token_expires_at=now + timedelta(hours=self.config.reset_token_ttl_hours),
            reset_otp=otp,
            reset_otp_expires_at=now + timedelta(minutes=self.config.reset_otp_ttl_minutes),
        )
        self._audit("password_reset_requested", user_id=user.id, account_exists=True)
        self._notify("send_password_reset_otp", user.email, otp)
        return token

    def _reset_failure(self, reason: str, user_id: Optional[str] = None) -> InvalidOrExpiredTokenError:
        self._audit("password_reset_failure", reason=reason, user_id=user_id)
        return InvalidOrExpiredTokenError()

    async def reset_password(
        self, token: str, new_password: str, otp: Optional[str] = None
    ) -> User:
        user = self.store.get_user_by_token("reset", token)
        if not user:
            raise self._reset_failure("unknown_token")
        now = self._now()
        if not user.reset_token_expires_at or user.reset_token_expires_at <= now:
            raise self._reset_failure("token_expired", user.id)
        if user.reset_otp:
            candidate = otp.strip() if otp else ""
            if not is_numeric_code(candidate) or not hmac.compare_digest(
                candidate.encode(), user.reset_otp.encode()
            ):
                raise self._reset_failure("otp_mismatch", user.id)
            if not user.reset_otp_expires_at or user.reset_otp_expires_at <= now:
                raise self._reset_failure("otp_expired", user.id)
        if not user.is_active:
            self._audit("password_reset_failure", reason="inactive", user_id=user.id)
            raise AccountInactiveError()
        if user.is_locked(now):
            self._audit("password_reset_failure", reason="locked", user_id=user.id)
            raise AccountLockedError()
        self.password_history.ensure_not_reused(user.id, new_password)
        updated = self._set_password(
            user,
            new_password,
            failed_login_attempts=0,
            locked_until=None,
            **_PENDING_TOKEN_FIELDS,
        )
        await self._revoke_everywhere(user.id, "password_reset")
        self._audit("password_reset_success", user_id=user.id)
        self._notify("send_password_reset_success", user.email)
        return updated

    # account recovery

    def request_account_recovery(self, email: str) -> Dict[str, Any]:
        user = self.store.get_user_by_email(email)
        token: Optional[str] = None
        if user:
            token = self.credentials.generate_single_use_token()
            self.store.update_user(
                user.id,
                recovery_token=token,
                recovery_token_expires_at=self._now()
                + timedelta(hours=self.config.recovery_token_ttl_hours),
            )
            self._audit("account_recovery_requested", user_id=user.id)
        else:
            self._audit(
                "account_recovery_requested", email=redact_email(email), account_exists=False
            )
        self._notify("send_recovery_notification", email, token, user is not None)
        response: Dict[str, Any] = {
            "success": True,
            "message": "If an account exists, recovery instructions have been sent",
        }
        if token and not self.config.is_production:
            response["recovery_token"] = token
        return response

    def _check_mfa(self, user: User, code: Optional[str], event: str) -> None:
        factor = user.mfa_factor()
        if not code:
            raise MfaRequiredError()
        if factor is None or not verify_mfa_code(factor, code):
            self._audit(event, user_id=user.id)
            raise InvalidMfaError()
        if isinstance(factor, SmsFactor):
            # sms codes are single use
            self.store.update_user(user.id, sms_mfa_code=None)

    async def complete_account_recovery(
        self, token: str, new_password: str, mfa_code: Optional[str] = None
    ) -> Dict[str, Any]:
        user = self.store.get_user_by_token("recovery", token)
        if not user:
            self._audit("account_recovery_failure", reason="unknown_token")
            raise InvalidOrExpiredTokenError()
        if not user.recovery_token_expires_at or user.recovery_token_expires_at <= self._now():
            self._audit("account_recovery_failure", reason="token_expired", user_id=user.id)
            raise InvalidOrExpiredTokenError()
        if user.mfa_enabled and self.config.mfa_enforced:
            self._check_mfa(user, mfa_code, "account_recovery_mfa_failed")
        self.password_history.ensure_not_reused(user.id, new_password)
        self._set_password(
            user,
            new_password,
            failed_login_attempts=0,
            locked_until=None,
            **_PENDING_TOKEN_FIELDS,
        )
        await self._revoke_everywhere(user.id, "account_recovery")
        self._audit("account_recovery_success", user_id=user.id)
        self._notify("send_account_recovery_success", user.email)
        return {"success": True}

    # change password

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> Dict[str, str]:
        user = self._require_user(user_id)
        if not self.credentials.verify_user_password(user, old_password):
            self._audit("password_change_failed", user_id=user_id, reason="incorrect_old_password")
            raise InvalidCredentialsError("Old password is incorrect")
        try:
            self.password_history.ensure_not_reused(user_id, new_password)
        except PasswordReuseError:
            self._audit("password_change_failed", user_id=user_id, reason="password_reuse")
            raise
        self._set_password(user, new_password)
        await self._revoke_everywhere(user_id, "password_change")
        self._audit("password_changed", user_id=user_id)
        return {"message": "Password changed successfully"}

    # mfa

    def enroll_mfa(self, user_id: str) -> Dict[str, str]:
        """Store a new TOTP secret without enabling MFA yet."""
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        secret = generate_secret()
        self.store.update_user(user_id, mfa_type="totp", mfa_secret=secret, mfa_enabled=False)
        return {
            "secret": secret,
            "otpauth_url": build_otpauth_uri(secret, user.email, self.config.mfa_issuer),
        }

    def enroll_sms_mfa(self, user_id: str, phone: str) -> None:
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        if not phone or not phone.strip():
            raise ValidationError("A phone number is required", detail={"field": "phone"})
        self.store.update_user(user_id, mfa_type="sms", mfa_secret=phone.strip(), mfa_enabled=False)
        self.send_sms_mfa_code(user_id)

    def verify_mfa_enrollment(self, user_id: str, code: str) -> bool:
        user = self._require_user(user_id)
        factor = user.mfa_factor()
        if factor is None:
            raise ValidationError("MFA enrollment has not been started")
        if not verify_mfa_code(factor, code):
            self._audit("mfa_enrollment_failed", user_id=user_id)
            raise InvalidMfaError()
        self.store.update_user(user_id, mfa_enabled=True, sms_mfa_code=None)
        self._audit("mfa_enabled", user_id=user_id, mfa_type=factor.kind)
        return True

    def disable_mfa(self, user_id: str, password: str) -> None:
        user = self._require_user(user_id)
        if not self.credentials.verify_user_password(user, password):
            raise InvalidCredentialsError()
        self.store.update_user(
            user_id, mfa_enabled=False, mfa_type=None, mfa_secret=None, sms_mfa_code=None
        )
        self._audit("mfa_disabled", user_id=user_id)

    def send_sms_mfa_code(self, user_id: str) -> None:
        user = self._require_user(user_id)
        if user.mfa_type != "sms" or not user.mfa_secret:
            raise ValidationError("SMS MFA is not configured for this account")
        code = generate_sms_code()
        self.store.update_user(user_id, sms_mfa_code=code)
        self._notify("send_mfa_code", user.mfa_secret, code)

    # email verification

    def verify_email(self, token: str) -> User:
        user = self.store.get_user_by_token("email_verification", token)
        if not user:
            raise InvalidOrExpiredTokenError()
        updated = self.store.update_user(
            user.id, email_verified=True, email_verification_token=None
        )
        self._audit("email_verified", user_id=user.id)
        return updated

    def resend_email_verification(self, user_id: str) -> str:
        user = self._require_user(user_id)
        if user.email_verified:
            raise ConflictError("Email is already verified")
        token = self.credentials.generate_single_use_token()
        self.store.update_user(user_id, email_verification_token=token)
        self._notify("send_email_verification", user.email, token)
        return token
