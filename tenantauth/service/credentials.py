from __future__ import annotations

import secrets
from datetime import datetime

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.config import AuthConfig
from tenantauth.logging import get_logger
from tenantauth.service.store import AuthStore
from tenantauth.storage.models import User

logger = get_logger(__name__)


class CredentialService:
    """Password hashing, lockout bookkeeping and single-use token minting."""

    def __init__(self, store: AuthStore, config: AuthConfig) -> None:
        self.store = store
        self.config = config
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_user_password(self, user: User, password: str) -> bool:
        return self.verify_password(user.password_hash, password)

    def record_failed_login(self, user_id: str, now: datetime) -> User:
        """Atomically count a bad password and lock the account at the threshold."""
        return self.store.record_failed_login(
            user_id,
            max_attempts=self.config.max_failed_attempts,
            lock_minutes=self.config.lock_duration_minutes,
            now=now,
        )

    def record_successful_login(self, user_id: str, now: datetime) -> User:
        return self.store.reset_failed_logins(user_id, last_login_at=now)

    @staticmethod
    def generate_single_use_token() -> str:
        # 32 random bytes, hex encoded
        return secrets.token_hex(32)

    @staticmethod
    def generate_otp(digits: int = 6) -> str:
        return str(secrets.randbelow(10**digits)).zfill(digits)
