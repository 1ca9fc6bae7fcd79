"""
Syndatagen Firestore Store Client
Connection lifecycle for Cloud Firestore and logical -> physical collection mapping.
"""

import logging
from typing import Any, Optional

from google.cloud import firestore

from .config import FirestoreConfig, get_config
from .models import CollectionName

logger = logging.getLogger("syndatagen.firestore")


class FirestoreStore:
    """
    Thin wrapper around google.cloud.firestore.Client.

    Pass `client` to reuse an existing client (tests use an in-memory double).
    """

    def __init__(self, config: Optional[FirestoreConfig] = None, client: Any = None):
        self.config = config or get_config().firestore
        self._client = client

        if self._client is None:
            self._init_firestore()

    def _init_firestore(self) -> None:
        """Initialize Firestore client."""
        try:
            if self.config.project_id:
                self._client = firestore.Client(
                    project=self.config.project_id,
                    database=self.config.database_id,
                )
            else:
                # Use default credentials (Cloud Run, emulator)
                self._client = firestore.Client(database=self.config.database_id)

            logger.info(f"Connected to Firestore: {self.config.project_id or 'default'}")
        except Exception as e:
            logger.error(f"Failed to initialize Firestore: {e}")
            self._client = None

    @property
    def is_ready(self) -> bool:
        """Check if Firestore is ready."""
        return self._client is not None

    @property
    def client(self) -> Any:
        if not self._client:
            raise RuntimeError("Firestore client not initialized")
        return self._client

    @property
    def timeout(self) -> float:
        return self.config.timeout_seconds

    def collection_name(self, collection: Any) -> str:
        """Physical Firestore collection for a logical name; unknown names pass through."""
        key = collection.value if isinstance(collection, CollectionName) else str(collection)
        return self.config.collections.get(key, key)

    def col(self, collection: Any):
        """Get a collection reference."""
        return self.client.collection(self.collection_name(collection))

    def doc(self, collection: Any, document_id: str):
        return self.col(collection).document(document_id)

    def close(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            self._client.close()
        self._client = None
