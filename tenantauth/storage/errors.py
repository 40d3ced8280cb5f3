from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule rejected the write.

    ``constraint`` names the violated rule (``user_email``, ``tenant_slug``,
    ``membership_user_tenant``...) so services can translate expected
    violations into domain errors without string matching.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


class RecordNotFound(ConstraintViolation):
    """An update targeted a row that does not exist (or is soft-deleted)."""


__all__ = ["ConstraintViolation", "RecordNotFound"]
