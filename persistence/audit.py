"""
Audit trail for persistence-layer control actions (backend switches, migrations).

Entries are always logged; when enabled they are also written to the
Firestore audit collection.
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from .config import AuditConfig, get_config
from .errors import PersistenceError

logger = logging.getLogger("syndatagen.audit")

SYSTEM_ACTOR = "system"


class AuditTrail:
    def __init__(self, access: Any = None, config: Optional[AuditConfig] = None):
        self.config = config or get_config().audit
        self.access = access
        self._recent: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.access is not None

    def record(
        self,
        action: str,
        resource: str,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Record one audit entry.

        Args:
            action: What happened, e.g. "backend.set"
            resource: What it happened to, e.g. "customers"
            actor: Opaque identity of whoever asked for it
            metadata: Extra JSON-serialisable details

        Returns:
            The stored entry
        """
        entry = {
            "id": str(uuid.uuid4()),
            "action": action,
            "resource": resource,
            "actor": actor or SYSTEM_ACTOR,
            "timestamp": time.time(),
            "metadata": metadata or {},
        }
        logger.info(f"{entry['actor']} {action} {resource} {entry['metadata']}")
        self._recent.append(entry)
        del self._recent[:-100]

        if self.enabled:
            try:
                self.access.set_document(self.config.collection, entry["id"], entry)
            except PersistenceError as e:
                # The audited action has already been applied.
                logger.error(f"Failed to store audit entry {entry['id']}: {e}")
        return entry

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self._recent[-limit:])
