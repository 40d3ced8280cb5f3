from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from tenantauth.config import AuthConfig, parse_positive_int
from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    InvalidTokenError,
    NotFoundError,
    RefreshTokenInvalidError,
    RefreshTokenReuseError,
    RefreshTokenRevokedError,
)
from tenantauth.service.sessions import SessionService
from tenantauth.service.store import AuthStore
from tenantauth.service.tenants import TenantMembershipResolver
from tenantauth.storage.models import DeviceInfo, RefreshToken, User
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class _ClaimsBase:
    sub: str
    email: str
    role: str
    tenant_id: Optional[str]
    tenant_access: Optional[List[str]]
    session_id: Optional[str]
    iat: int
    exp: int
    jti: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class AccessClaims(_ClaimsBase):
    type: Literal["access"] = ACCESS


@dataclass(frozen=True)
class RefreshClaims(_ClaimsBase):
    type: Literal["refresh"] = REFRESH


TokenClaims = Union[AccessClaims, RefreshClaims]
_CLAIM_TYPES = {ACCESS: AccessClaims, REFRESH: RefreshClaims}


def claims_to_payload(claims: TokenClaims) -> Dict[str, Any]:
    """Wire form of the claims; field names are a cross-service contract."""
    return {
        "sub": claims.sub,
        "email": claims.email,
        "role": claims.role,
        "tenantId": claims.tenant_id,
        "tenantAccess": claims.tenant_access,
        "sessionId": claims.session_id,
        "type": claims.type,
        "iat": claims.iat,
        "exp": claims.exp,
        "jti": claims.jti,
    }


def claims_from_payload(payload: Dict[str, Any]) -> Optional[TokenClaims]:
    model = _CLAIM_TYPES.get(payload.get("type"))
    if model is None:
        return None
    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub:
        return None
    tenant_access = payload.get("tenantAccess")
    if not isinstance(tenant_access, list):
        # stale or foreign claim shape; the guard rejects these
        tenant_access = None
    try:
        return model(
            sub=sub,
            email=payload.get("email") or "",
            role=payload.get("role") or "user",
            tenant_id=payload.get("tenantId"),
            tenant_access=tenant_access,
            session_id=payload.get("sessionId"),
            iat=int(payload.get("iat") or 0),
            exp=int(payload["exp"]),
            jti=str(payload.get("jti") or ""),
        )
    except (KeyError, TypeError, ValueError):
        return None


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class JwtCodec:
    """HS256 JWT encode/decode. ``decode`` returns None instead of raising."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        *,
        leeway: timedelta = timedelta(seconds=120),
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        # allowance for clock skew across nodes
        self.leeway = leeway

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        body = {**payload, "iss": self.issuer, "aud": self.audience}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(body, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # reject alg confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        # compare_digest only takes ascii str; anything else cannot be a valid signature
        if not sig_b64.isascii():
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway.total_seconds():
            return None
        return payload


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    user: Dict[str, Any]
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "session_id": self.session_id,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "user": self.user,
        }


def user_summary(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email_verified": user.email_verified,
        "mfa_enabled": user.mfa_enabled,
    }


class TokenService:
    """Issues stateless access tokens and rotating, persisted refresh tokens.

    Refresh rows are stored under the SHA-256 of the token. Rotation revokes
    the presented row with a conditional write that records its successor;
    losing that write means the token was already used, which revokes the
    successor chain and the session.
    """

    def __init__(
        self,
        store: AuthStore,
        config: AuthConfig,
        sessions: SessionService,
        memberships: TenantMembershipResolver,
        *,
        cache: Optional[RedisCache] = None,
        audit=None,
    ) -> None:
        self.store = store
        self.config = config
        self.sessions = sessions
        self.memberships = memberships
        self.cache = cache
        self.audit = audit
        self.codec = JwtCodec(config.jwt_secret, config.jwt_issuer, config.jwt_audience)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _ttls(self) -> tuple[int, int]:
        # re-checked at issuance; a bad TTL must never produce a token
        return (
            parse_positive_int(self.config.access_token_ttl_seconds, "access_token_ttl_seconds"),
            parse_positive_int(self.config.refresh_token_ttl_seconds, "refresh_token_ttl_seconds"),
        )

    def _build_claims(
        self, user: User, session_id: str, token_type: str, ttl_seconds: int, now: datetime
    ) -> TokenClaims:
        default_tenant, tenant_access = self.memberships.tenant_claims(user.id)
        issued_at = int(now.timestamp())
        return _CLAIM_TYPES[token_type](
            sub=user.id,
            email=user.email,
            role=user.role,
            tenant_id=default_tenant,
            tenant_access=tenant_access,
            session_id=session_id,
            iat=issued_at,
            exp=issued_at + ttl_seconds,
        )

    def issue_access_token(self, user: User, session_id: str) -> tuple[str, AccessClaims]:
        access_ttl, _ = self._ttls()
        claims = self._build_claims(user, session_id, ACCESS, access_ttl, self._now())
        return self.codec.encode(claims_to_payload(claims)), claims

    def _mint_refresh(self, user: User, session_id: str) -> tuple[str, RefreshClaims]:
        _, refresh_ttl = self._ttls()
        claims = self._build_claims(user, session_id, REFRESH, refresh_ttl, self._now())
        return self.codec.encode(claims_to_payload(claims)), claims

    def _persist_refresh(self, token: str, user_id: str, session_id: str) -> RefreshToken:
        _, refresh_ttl = self._ttls()
        return self.store.create_refresh_token(
            RefreshToken.new(hash_refresh_token(token), user_id, session_id, refresh_ttl)
        )

    async def issue_token_pair(
        self, user_id: str, device: Optional[DeviceInfo] = None
    ) -> TokenPair:
        """Open a new session for ``device`` and issue its first token pair."""
        self._ttls()
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        session = await self.sessions.create_session(user.id, device)
        return self.issue_tokens_for_session(user, session.id)

    def issue_tokens_for_session(self, user: User, session_id: str) -> TokenPair:
        access_token, access_claims = self.issue_access_token(user, session_id)
        refresh_token, refresh_claims = self._mint_refresh(user, session_id)
        row = self._persist_refresh(refresh_token, user.id, session_id)
        logger.info("tokens_issued", user_id=user.id, session_id=session_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            user=user_summary(user),
            access_expires_at=datetime.fromtimestamp(access_claims.exp, timezone.utc),
            refresh_expires_at=row.expires_at,
        )

    def decode_refresh(self, token: str) -> Optional[RefreshClaims]:
        payload = self.codec.decode(token)
        claims = claims_from_payload(payload) if payload else None
        return claims if isinstance(claims, RefreshClaims) else None

    def get_token_payload(self, token: str) -> Optional[TokenClaims]:
        payload = self.codec.decode(token)
        return claims_from_payload(payload) if payload else None

    def validate_token(self, token: str, expected_type: str = ACCESS) -> TokenClaims:
        claims = self.get_token_payload(token)
        if claims is None or claims.type != expected_type:
            if expected_type == REFRESH:
                raise RefreshTokenInvalidError()
            raise InvalidTokenError()
        return claims

    async def _cache_says_revoked(self, token_hash: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_refresh_revoked(token_hash)
        except Exception as exc:
            # cache failures read as revoked
            logger.warning(
                "check_revoked_refresh_token_failed_defaulting_to_revoked",
                error=str(exc),
            )
            return True

    async def _mark_revoked_in_cache(self, token_hash: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.mark_refresh_revoked(
                token_hash, self.config.refresh_token_ttl_seconds
            )
        except Exception as exc:
            logger.warning("cache_revoked_refresh_token_failed", error=str(exc))

    async def verify_refresh_token_validity(self, token: str) -> bool:
        """Signature verifies, a live row exists and has not expired.

        An expired row found here is revoked on the way out.
        """
        if self.decode_refresh(token) is None:
            return False
        token_hash = hash_refresh_token(token)
        if await self._cache_says_revoked(token_hash):
            return False
        row = self.store.get_refresh_token(token_hash)
        if not row or row.revoked:
            return False
        now = self._now()
        if row.expires_at <= now:
            self.store.revoke_refresh_token(
                token_hash, revoked_by=None, reason="expired", now=now
            )
            await self._mark_revoked_in_cache(token_hash)
            return False
        return True

    async def handle_refresh_reuse(self, row: RefreshToken) -> None:
        """Revoke every successor of ``row`` and its session, then raise."""
        now = self._now()
        revoked_chain = 0
        seen = {row.token_hash}
        successor = row.replaced_by_token
        while successor and successor not in seen:
            seen.add(successor)
            if self.store.revoke_refresh_token(
                successor, revoked_by=None, reason="reuse_detected", now=now
            ):
                revoked_chain += 1
            await self._mark_revoked_in_cache(successor)
            next_row = self.store.get_refresh_token(successor)
            successor = next_row.replaced_by_token if next_row else None
        await self.sessions.revoke_session(row.session_id, reason="refresh_token_reuse")
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=row.user_id,
            session_id=row.session_id,
            revoked_descendants=revoked_chain,
        )
        if self.audit:
            self.audit.record(
                "refresh_token_reuse_detected",
                user_id=row.user_id,
                session_id=row.session_id,
            )
        raise RefreshTokenReuseError()

    async def reject_revoked(self, row: RefreshToken) -> None:
        """Raise for a revoked row: reuse when it was rotated, plain revoked otherwise."""
        if row.replaced_by_token:
            await self.handle_refresh_reuse(row)
        raise RefreshTokenRevokedError()

    async def rotate_refresh_token(self, old_token: str, user_id: str, session_id: str) -> str:
        """Revoke ``old_token`` and return its replacement for the same session."""
        claims = self.decode_refresh(old_token)
        if claims is None or claims.sub != user_id or claims.session_id != session_id:
            raise RefreshTokenInvalidError()
        user = self.store.get_user(user_id)
        if not user:
            raise RefreshTokenInvalidError()
        old_hash = hash_refresh_token(old_token)
        new_token, _ = self._mint_refresh(user, session_id)
        new_hash = hash_refresh_token(new_token)
        won = self.store.revoke_refresh_token(
            old_hash,
            revoked_by=user_id,
            reason="rotated",
            now=self._now(),
            replaced_by=new_hash,
        )
        if not won:
            row = self.store.get_refresh_token(old_hash)
            if row is None:
                raise RefreshTokenInvalidError()
            # a concurrent refresh already rotated this token
            await self.reject_revoked(row)
        await self._mark_revoked_in_cache(old_hash)
        self._persist_refresh(new_token, user_id, session_id)
        return new_token

    async def revoke_refresh_token(
        self, token: str, revoked_by: Optional[str] = None, reason: Optional[str] = None
    ) -> bool:
        token_hash = hash_refresh_token(token)
        changed = self.store.revoke_refresh_token(
            token_hash, revoked_by=revoked_by, reason=reason or "revoked", now=self._now()
        )
        await self._mark_revoked_in_cache(token_hash)
        return changed

    async def revoke_session(
        self, session_id: str, revoked_by: Optional[str] = None, reason: Optional[str] = None
    ) -> bool:
        """Revoke a session together with all of its refresh tokens."""
        return await self.sessions.revoke_session(
            session_id, revoked_by=revoked_by, reason=reason or "revoked"
        )

    def revoke_all_user_tokens(self, user_id: str, reason: str = "user_revocation") -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, reason=reason, now=self._now())
        logger.info("user_refresh_tokens_revoked", user_id=user_id, count=count, reason=reason)
        return count
