"""
Syndatagen Backend Router

Decides, per logical collection, whether reads and writes go to MongoDB,
Firestore, or both, and applies that decision to single-document operations.

Mode `both` (dual-write):
- reads try Firestore first and fall back to MongoDB when the document is missing
- writes go to Firestore first; MongoDB is best-effort and its failure is
  reported as a PartialDualWrite warning, not an error
"""

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from dotenv import dotenv_values

from .audit import AuditTrail
from .checkpoint import atomic_write_text
from .config import get_config
from .errors import DocumentNotFound, InvalidBackendMode, PartialDualWrite, PersistenceError, UnknownCollection
from .firestore_access import normalize_order
from .models import BackendMode, CollectionName, Document, SourceRecord, WriteResult
from .transformers import transform

logger = logging.getLogger("syndatagen.router")

DEFAULT_BACKEND_KEY = "DEFAULT_COLLECTION_BACKEND"
GCP_FEATURES_KEY = "NEXT_PUBLIC_ENABLE_GCP_FEATURES"
ALL_COLLECTIONS = "all"


@dataclass
class RouterConfig:
    """Routing table: a global default plus per-collection overrides."""
    default_mode: BackendMode = BackendMode.MONGODB
    overrides: Dict[CollectionName, BackendMode] = field(default_factory=dict)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        path: Optional[Union[str, Path]] = None,
    ) -> "RouterConfig":
        """
        Build the routing table from a settings file and the environment.

        Environment values take precedence over the file. An explicit
        DEFAULT_COLLECTION_BACKEND wins over the GCP feature toggle.
        """
        values: Dict[str, str] = {}
        if path is not None and Path(path).exists():
            values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
        values.update(os.environ if environ is None else environ)

        default_mode = BackendMode.MONGODB
        if values.get(DEFAULT_BACKEND_KEY):
            default_mode = _parse_or_warn(values[DEFAULT_BACKEND_KEY], DEFAULT_BACKEND_KEY) or default_mode
        elif values.get(GCP_FEATURES_KEY, "").strip().lower() == "true":
            default_mode = BackendMode.FIRESTORE

        overrides = {}
        for collection in CollectionName:
            raw = values.get(collection.env_key)
            if raw:
                mode = _parse_or_warn(raw, collection.env_key)
                if mode is not None:
                    overrides[collection] = mode

        return cls(default_mode=default_mode, overrides=overrides)


def _parse_or_warn(raw: str, key: str) -> Optional[BackendMode]:
    try:
        return BackendMode.parse(raw)
    except InvalidBackendMode:
        logger.warning(f"Ignoring {key}={raw!r}: not one of mongodb, firestore, both")
        return None


class BackendSettingsFile:
    """
    dotenv-style settings file holding persisted backend selections.

    Updates rewrite the whole file atomically and keep unrelated lines as they were.
    """

    _line_lock = threading.Lock()

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        return {k: v for k, v in dotenv_values(self.path).items() if v is not None}

    def update(self, values: Mapping[str, str]) -> None:
        with self._line_lock:
            lines = self.path.read_text(encoding="utf-8").splitlines() if self.path.exists() else []
            pending = dict(values)

            for i, line in enumerate(lines):
                match = re.match(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=", line)
                if match and match.group(1) in pending:
                    key = match.group(1)
                    lines[i] = f"{key}={pending.pop(key)}"

            lines.extend(f"{key}={value}" for key, value in pending.items())
            atomic_write_text(self.path, "\n".join(lines) + "\n")
        logger.info(f"Persisted {', '.join(values)} to {self.path}")


class BackendRouter:
    """
    Per-collection backend selection and routed document access.

    Args:
        config: Initial routing table (defaults to RouterConfig.from_env())
        firestore: FirestoreAccessLayer for Firestore-backed collections
        mongo: MongoStore for MongoDB-backed collections
        settings_file: Where persist=True writes go
        audit: Audit trail for configuration changes
    """

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        firestore: Any = None,
        mongo: Any = None,
        settings_file: Optional[BackendSettingsFile] = None,
        audit: Optional[AuditTrail] = None,
    ):
        if config is None or settings_file is None:
            config_path = get_config().router.config_path
            config = config or RouterConfig.from_env(path=config_path)
            settings_file = settings_file or BackendSettingsFile(config_path)
        self._default = config.default_mode
        self._overrides: Dict[CollectionName, BackendMode] = dict(config.overrides)
        self._lock = threading.Lock()
        self.settings = settings_file
        self.firestore = firestore
        self.mongo = mongo
        self.audit = audit or AuditTrail(access=firestore)

    # ==================== Configuration ====================

    def get_backend(self, collection: Any) -> BackendMode:
        """Effective mode for a collection: its override, else the global default."""
        try:
            name = CollectionName.parse(collection)
        except UnknownCollection:
            return self._default
        with self._lock:
            return self._overrides.get(name, self._default)

    def set_backend(
        self,
        collection: Any,
        mode: Any,
        persist: bool = False,
        actor: Optional[str] = None,
    ) -> List[CollectionName]:
        """
        Route a collection (or "all") to a backend mode.

        Returns:
            The collections that were updated
        """
        backend = BackendMode.parse(mode)
        if isinstance(collection, str) and collection.strip().lower() == ALL_COLLECTIONS:
            targets = list(CollectionName)
        else:
            targets = [CollectionName.parse(collection)]

        with self._lock:
            previous = {c.value: self._overrides.get(c, self._default).value for c in targets}
            for target in targets:
                self._overrides[target] = backend

        if persist:
            self.settings.update({target.env_key: backend.value for target in targets})

        for target in targets:
            logger.info(f"{target.value} now served by {backend.value}")
        self.audit.record(
            "backend.set",
            ALL_COLLECTIONS if len(targets) > 1 else targets[0].value,
            actor=actor,
            metadata={"mode": backend.value, "previous": previous, "persisted": persist},
        )
        return targets

    def set_global_default(self, mode: Any, persist: bool = False, actor: Optional[str] = None) -> None:
        """Change the mode used by collections without an override."""
        backend = BackendMode.parse(mode)
        with self._lock:
            previous = self._default
            self._default = backend

        if persist:
            values = {DEFAULT_BACKEND_KEY: backend.value}
            if backend != BackendMode.BOTH:
                values[GCP_FEATURES_KEY] = "true" if backend == BackendMode.FIRESTORE else "false"
            self.settings.update(values)

        logger.info(f"Global default backend: {previous.value} -> {backend.value}")
        self.audit.record(
            "backend.default",
            "*",
            actor=actor,
            metadata={"mode": backend.value, "previous": previous.value, "persisted": persist},
        )

    @property
    def default_mode(self) -> BackendMode:
        with self._lock:
            return self._default

    def status(self) -> Dict[CollectionName, BackendMode]:
        """Snapshot of the effective mode of every collection."""
        with self._lock:
            return {c: self._overrides.get(c, self._default) for c in CollectionName}

    # ==================== Routed access ====================

    def read_document(self, collection: Any, document_id: str) -> Document:
        """Read one document from the collection's backend(s). Raises DocumentNotFound."""
        name = CollectionName.parse(collection)
        mode = self.get_backend(name)

        if mode == BackendMode.MONGODB:
            return self._read_mongo(name, document_id)
        if mode == BackendMode.FIRESTORE:
            return self._require_firestore().get(name, document_id)

        try:
            return self._require_firestore().get(name, document_id)
        except DocumentNotFound:
            logger.debug(f"{name.value}/{document_id} not in Firestore, falling back to MongoDB")
            return self._read_mongo(name, document_id)

    def list_documents(
        self,
        collection: Any,
        filters: Optional[Iterable] = None,
        order_by: Optional[Iterable] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """List query against the collection's primary backend (Firestore in mode `both`)."""
        name = CollectionName.parse(collection)
        if self.get_backend(name) == BackendMode.MONGODB:
            raw = self._require_mongo().find(
                name, filters=filters, order_by=normalize_order(order_by), limit=limit
            )
            return [self._from_mongo(name, doc) for doc in raw]
        return self._require_firestore().query(name, filters=filters, order_by=order_by, limit=limit)

    def write_document(
        self,
        collection: Any,
        document_id: str,
        data: Dict[str, Any],
        merge: bool = False,
    ) -> WriteResult:
        """Write one document. In mode `both` only a Firestore failure raises."""
        name = CollectionName.parse(collection)
        mode = self.get_backend(name)
        result = WriteResult(collection=name, document_id=document_id)

        if mode == BackendMode.MONGODB:
            self._require_mongo().upsert_document(name, document_id, data, merge=merge)
            result.backends.append(BackendMode.MONGODB)
            return result

        self._require_firestore().set_document(name, document_id, data, merge=merge)
        result.backends.append(BackendMode.FIRESTORE)

        if mode == BackendMode.BOTH:
            try:
                self._require_mongo().upsert_document(name, document_id, data, merge=merge)
                result.backends.append(BackendMode.MONGODB)
            except PersistenceError as e:
                warning = PartialDualWrite(name.value, document_id, e)
                logger.warning(str(warning))
                result.warnings.append(warning)
        return result

    def delete_document(self, collection: Any, document_id: str) -> WriteResult:
        name = CollectionName.parse(collection)
        mode = self.get_backend(name)
        result = WriteResult(collection=name, document_id=document_id)

        if mode == BackendMode.MONGODB:
            self._require_mongo().delete_document(name, document_id)
            result.backends.append(BackendMode.MONGODB)
            return result

        self._require_firestore().delete_document(name, document_id)
        result.backends.append(BackendMode.FIRESTORE)

        if mode == BackendMode.BOTH:
            try:
                self._require_mongo().delete_document(name, document_id)
                result.backends.append(BackendMode.MONGODB)
            except PersistenceError as e:
                warning = PartialDualWrite(name.value, document_id, e)
                logger.warning(str(warning))
                result.warnings.append(warning)
        return result

    def _read_mongo(self, name: CollectionName, document_id: str) -> Document:
        raw = self._require_mongo().get_document(name, document_id)
        if raw is None:
            raise DocumentNotFound(f"{name.value}/{document_id}")
        return self._from_mongo(name, raw)

    @staticmethod
    def _from_mongo(name: CollectionName, raw: Dict[str, Any]) -> Document:
        target = transform(SourceRecord(collection=name, data=raw))
        return Document(id=target.document_id, collection=name.value, data=target.data)

    def _require_firestore(self):
        if self.firestore is None:
            raise RuntimeError("Firestore access layer not configured")
        return self.firestore

    def _require_mongo(self):
        if self.mongo is None:
            raise RuntimeError("MongoDB store not configured")
        return self.mongo
