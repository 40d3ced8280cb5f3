from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tenantauth.logging import get_logger, redact_email

logger = get_logger(__name__)


@dataclass
class Notification:
    kind: str
    recipient: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationService:
    """Outbound notices for auth flows.

    Delivery is log-only: secrets never reach the log, only the redacted
    recipient and the notice kind. With ``keep_outbox`` the notices are also
    kept in memory so local tooling can read the codes back.
    """

    def __init__(self, *, keep_outbox: bool = False) -> None:
        self.keep_outbox = keep_outbox
        self.outbox: List[Notification] = []

    def _deliver(self, kind: str, recipient: str, **payload: Any) -> bool:
        logger.info(
            "notification_dev_mode",
            kind=kind,
            to=redact_email(recipient) if "@" in recipient else "redacted",
        )
        if self.keep_outbox:
            self.outbox.append(Notification(kind=kind, recipient=recipient, payload=payload))
        return True

    def last(self, kind: str, recipient: Optional[str] = None) -> Optional[Notification]:
        for notice in reversed(self.outbox):
            if notice.kind == kind and (recipient is None or notice.recipient == recipient):
                return notice
        return None

    def send_password_reset_otp(self, email: str, otp: str) -> bool:
        return self._deliver("password_reset_otp", email, otp=otp)

    def send_recovery_notification(
        self, email: str, token: Optional[str], account_exists: bool
    ) -> bool:
        return self._deliver(
            "account_recovery", email, token=token, account_exists=account_exists
        )

    def send_password_reset_success(self, email: str) -> bool:
        return self._deliver("password_reset_success", email)

    def send_account_recovery_success(self, email: str) -> bool:
        return self._deliver("account_recovery_success", email)

    def send_email_verification(self, email: str, token: str) -> bool:
        return self._deliver("email_verification", email, token=token)

    def send_mfa_code(self, phone: str, code: str) -> bool:
        return self._deliver("mfa_code", phone, code=code)
