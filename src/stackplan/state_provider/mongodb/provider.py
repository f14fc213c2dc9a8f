"""
Async MongoDB backend for committed state, using Motor for non-blocking I/O.

Each resource is one document keyed by ``"<stack>:<name>"`` so several
stacks can share a collection.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from ...provisioning.state import ResourceState

logger = logging.getLogger(__name__)


@dataclass
class MongoDBConfig:
    """Connection settings for the MongoDB state backend."""
    uri: str
    db_name: str = "stackplan"
    collection_name: str = "committed_state"
    stack: str = "default"


class MongoDBStateBackend:
    """
    Committed state stored in MongoDB.

    Writes use majority write concern, so a commit is durable before the
    recorder makes it visible.

    Example:
        ```python
        config = MongoDBConfig(uri="mongodb://localhost:27017", stack="prod-gke")
        backend = MongoDBStateBackend(config)
        engine = ProvisioningEngine(provider, backend)
        ```
    """

    def __init__(self, config: MongoDBConfig, collection: Optional[Any] = None):
        """
        Initialize the backend.

        Parameters:
        -----------
        config : MongoDBConfig
            Configuration containing MongoDB URI, database and stack name
        collection : optional
            Pre-built async collection (used instead of opening a client)
        """
        self.config = config
        self.client = None

        if collection is None:
            self.client = AsyncIOMotorClient(
                config.uri,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                socketTimeoutMS=20000,
                retryWrites=True,
                retryReads=True,
                w="majority",
                appname='stackplan-state'
            )
            collection = self.client[config.db_name][config.collection_name]

        self.collection = collection
        logger.info(
            f"MongoDBStateBackend initialized for stack {config.stack!r} "
            f"({config.db_name}.{config.collection_name})"
        )

    def _doc_id(self, name: str) -> str:
        return f"{self.config.stack}:{name}"

    async def load(self) -> Dict[str, ResourceState]:
        cursor = self.collection.find({"stack": self.config.stack}).sort("created_at", 1)
        documents = await cursor.to_list(length=None)
        return {doc["name"]: ResourceState.from_dict(doc) for doc in documents}

    async def put(self, state: ResourceState) -> None:
        document = state.to_dict()
        document["stack"] = self.config.stack
        await self.collection.replace_one({"_id": self._doc_id(state.name)}, document, upsert=True)

    async def delete(self, name: str) -> None:
        await self.collection.delete_one({"_id": self._doc_id(name)})

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
