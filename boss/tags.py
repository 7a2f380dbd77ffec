"""Fixed tags the assistant keeps its long-term memory and audit trail under."""

from __future__ import annotations

from .storage import Storage


CORE_TAG = "Core"
CORE_ALIASES = ("持久记忆", "core memory")
AUDIT_TAG = "AuditLog"
AUDIT_ALIASES = ("audit", "audit log", "审计")


def ensure_core_tag(storage: Storage) -> str:
    return storage.ensure_tag(CORE_TAG, aliases=CORE_ALIASES, color="#0A84FF", icon="brain.head.profile")


def ensure_audit_tag(storage: Storage) -> str:
    return storage.ensure_tag(AUDIT_TAG, aliases=AUDIT_ALIASES, color="#FF9F0A", icon="doc.text.magnifyingglass")
