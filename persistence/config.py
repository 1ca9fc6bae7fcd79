"""
Syndatagen Persistence Configuration
Central configuration for the store adapters, cache, router and migration pipeline.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


# Logical collection -> default physical collection name in MongoDB.
# The Mongo side still carries the legacy "dataJobs" name.
DEFAULT_MONGO_COLLECTIONS = {
    "customers": "customers",
    "waitlist": "waitlist",
    "projects": "projects",
    "dataGenerationJobs": "dataJobs",
}

DEFAULT_FIRESTORE_COLLECTIONS = {
    "customers": "customers",
    "waitlist": "waitlist",
    "projects": "projects",
    "dataGenerationJobs": "dataGenerationJobs",
}

# Environment suffixes for the per-collection name overrides.
_COLLECTION_ENV_KEYS = {
    "customers": "CUSTOMERS",
    "waitlist": "WAITLIST",
    "projects": "PROJECTS",
    "dataGenerationJobs": "JOBS",
}


@dataclass(frozen=True)
class MongoConfig:
    """MongoDB connection configuration."""
    uri: str
    db_name: str = "syndatagen"
    timeout_seconds: float = 30.0
    collections: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MONGO_COLLECTIONS))


@dataclass(frozen=True)
class FirestoreConfig:
    """Firestore database configuration."""
    project_id: str
    database_id: str = "(default)"
    timeout_seconds: float = 30.0
    collections: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FIRESTORE_COLLECTIONS))


@dataclass(frozen=True)
class CacheConfig:
    """In-process query cache configuration."""
    enabled: bool = True
    ttl_seconds: float = 60.0
    max_entries: int = 1000


@dataclass(frozen=True)
class MigrationConfig:
    """Migration pipeline defaults."""
    checkpoint_dir: Path
    batch_size: int = 500
    max_workers: int = 4
    verify_sample_size: int = 10


@dataclass(frozen=True)
class RouterSettings:
    """Where persisted backend selections live."""
    config_path: Path


@dataclass(frozen=True)
class AuditConfig:
    """Audit trail configuration."""
    enabled: bool = False
    collection: str = "audit_logs"


class Config:
    """
    Main configuration class that loads and validates all settings.
    """

    def __init__(self):
        self._validate_recommended_env_vars()

        self.base_dir = Path.cwd()
        timeout = float(os.getenv("STORE_CALL_TIMEOUT_SECONDS", "30"))

        self.mongo = MongoConfig(
            uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            db_name=os.getenv("MONGODB_DB_NAME", "syndatagen"),
            timeout_seconds=timeout,
            collections=self._collection_names("MONGO", DEFAULT_MONGO_COLLECTIONS),
        )

        self.firestore = FirestoreConfig(
            project_id=os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GCP_PROJECT_ID", ""),
            database_id=os.getenv("FIRESTORE_DATABASE_ID", "(default)"),
            timeout_seconds=timeout,
            collections=self._collection_names("FIRESTORE", DEFAULT_FIRESTORE_COLLECTIONS),
        )

        self.cache = CacheConfig(
            enabled=os.getenv("QUERY_CACHE_ENABLED", "true").lower() == "true",
            ttl_seconds=float(os.getenv("QUERY_CACHE_TTL_SECONDS", "60")),
            max_entries=int(os.getenv("QUERY_CACHE_MAX_ENTRIES", "1000")),
        )

        self.migration = MigrationConfig(
            checkpoint_dir=Path(
                os.getenv("MIGRATION_CHECKPOINT_DIR", str(self.base_dir / "migration-jobs"))
            ),
            batch_size=int(os.getenv("MIGRATION_BATCH_SIZE", "500")),
            max_workers=int(os.getenv("MIGRATION_MAX_WORKERS", "4")),
            verify_sample_size=int(os.getenv("MIGRATION_VERIFY_SAMPLE_SIZE", "10")),
        )

        self.router = RouterSettings(
            config_path=Path(os.getenv("BACKEND_CONFIG_PATH", str(self.base_dir / ".env"))),
        )

        self.audit = AuditConfig(
            enabled=os.getenv("AUDIT_LOG_ENABLED", "").lower() == "true",
            collection=os.getenv("AUDIT_LOG_COLLECTION", "audit_logs"),
        )

    @staticmethod
    def _collection_names(prefix: str, defaults: Dict[str, str]) -> Dict[str, str]:
        """Resolve physical collection names, e.g. MONGO_JOBS_COLLECTION=dataJobs."""
        names = {}
        for logical, default in defaults.items():
            env_key = f"{prefix}_{_COLLECTION_ENV_KEYS[logical]}_COLLECTION"
            names[logical] = os.getenv(env_key, default)
        return names

    def _validate_recommended_env_vars(self) -> None:
        """Warn about variables the stores will most likely need."""
        recommended = ["MONGODB_URI"]
        missing = [var for var in recommended if not os.getenv(var)]
        if not (os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GCP_PROJECT_ID")):
            missing.append("FIREBASE_PROJECT_ID")

        if missing:
            import warnings
            warnings.warn(
                f"Missing recommended environment variables: {', '.join(missing)}. "
                "Store connections fall back to defaults."
            )

    @property
    def has_firestore(self) -> bool:
        """Check if Firestore is configured."""
        return bool(self.firestore.project_id) or bool(os.getenv("FIRESTORE_EMULATOR_HOST"))


# Singleton instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the singleton configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _config
    _config = None
