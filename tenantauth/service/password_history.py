from __future__ import annotations

import uuid
from typing import Optional

from tenantauth.config import AuthConfig
from tenantauth.logging import get_logger
from tenantauth.service.credentials import CredentialService
from tenantauth.service.errors import PasswordReuseError
from tenantauth.service.store import AuthStore
from tenantauth.storage.models import PasswordHistoryEntry

logger = get_logger(__name__)


class PasswordHistoryGuard:
    """Rejects a new password that matches any of the user's last N hashes.

    Hashes are salted, so reuse is detected by verifying the plaintext
    against each stored hash rather than comparing digests.
    """

    def __init__(
        self, store: AuthStore, credentials: CredentialService, config: AuthConfig
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.config = config

    @property
    def depth(self) -> int:
        return self.config.password_history_count

    def add_to_history(self, user_id: str, password_hash: str) -> PasswordHistoryEntry:
        entry = self.store.add_password_history(
            PasswordHistoryEntry(
                id=str(uuid.uuid4()), user_id=user_id, password_hash=password_hash
            )
        )
        self.prune_history(user_id)
        return entry

    def is_password_in_history(
        self, user_id: str, password: str, count: Optional[int] = None
    ) -> bool:
        limit = count or self.depth
        for entry in self.store.list_password_history(user_id, limit):
            if self.credentials.verify_password(entry.password_hash, password):
                return True
        return False

    def ensure_not_reused(self, user_id: str, password: str) -> None:
        if self.is_password_in_history(user_id, password):
            logger.info("password_reuse_rejected", user_id=user_id, depth=self.depth)
            raise PasswordReuseError(
                f"Cannot reuse any of your last {self.depth} passwords"
            )

    def prune_history(self, user_id: str, keep: Optional[int] = None) -> int:
        removed = self.store.prune_password_history(user_id, keep or self.depth)
        if removed:
            logger.debug("password_history_pruned", user_id=user_id, removed=removed)
        return removed
