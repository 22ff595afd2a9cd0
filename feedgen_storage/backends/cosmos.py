"""
Cosmos DB storage backend.

Document engine through the azure-cosmos async client. The client keeps its
own HTTP connection pool, owned by this backend instance.

Document layout:
- posts container: one document per post, partitioned by /id
- sub_state container: one document per ingestion service
- schema_migration container: migration ledger

Cosmos ids may not contain '/', which every post uri does, so document ids
are the sha256 hex digest of the natural key. The natural key is kept in
its own field (uri / service) for queries.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import (
    CosmosHttpResponseError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)
from azure.identity.aio import DefaultAzureCredential

from ..config import CosmosConfig
from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
    DuplicateKeyError,
    StorageConnectionError,
    StorageIOError,
)
from ..migrations import MigrationLedger, MigrationStep
from ..models import FindPostsCriteria, Post, SubscriptionState, utc_now
from .base import POST_COLUMNS, StorageBackend, format_timestamp, post_from_row

logger = logging.getLogger(__name__)

POSTS_CONTAINER = "posts"
SUB_STATE_CONTAINER = "sub_state"
LEDGER_CONTAINER = "schema_migration"

# Auth methods
AUTH_KEY = "key"
AUTH_DEFAULT_CREDENTIAL = "default_credential"

POST_PROJECTION = ", ".join(f"c.{column}" for column in POST_COLUMNS)

# ORDER BY over two properties needs a matching composite index
POSTS_INDEXING_POLICY: dict[str, Any] = {
    "indexingMode": "consistent",
    "automatic": True,
    "includedPaths": [
        {"path": "/uri/?"},
        {"path": "/author_id/?"},
        {"path": "/indexed_at/?"},
    ],
    "excludedPaths": [
        {"path": "/payload/?"},  # Full record text is never queried
        {"path": "/*"},
    ],
    "compositeIndexes": [
        [
            {"path": "/indexed_at", "order": "descending"},
            {"path": "/uri", "order": "descending"},
        ],
        [
            {"path": "/author_id", "order": "ascending"},
            {"path": "/indexed_at", "order": "descending"},
            {"path": "/uri", "order": "descending"},
        ],
    ],
}


def document_id(key: str) -> str:
    """Cosmos-safe document id for a natural key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class _CosmosLedger(MigrationLedger):
    def __init__(self, backend: CosmosBackend):
        self._backend = backend
        self._container: ContainerProxy | None = None

    async def ensure(self) -> None:
        self._container = await self._backend.database.create_container_if_not_exists(
            id=LEDGER_CONTAINER,
            partition_key=PartitionKey(path="/id"),
        )

    def _ledger(self) -> ContainerProxy:
        if self._container is None:
            raise StorageIOError("migration ledger", LEDGER_CONTAINER)
        return self._container

    async def applied(self) -> set[str]:
        names: set[str] = set()
        async for doc in self._ledger().query_items(query="SELECT c.id FROM c"):
            names.add(doc["id"])
        return names

    async def record(self, name: str) -> None:
        await self._ledger().create_item(
            body={"id": name, "applied_at": format_timestamp(utc_now())}
        )


class CosmosBackend(StorageBackend):
    """
    Cosmos DB storage backend.

    Features:
    - Key or DefaultAzureCredential authentication
    - Point reads and deletes by hashed uri
    - Cross-partition ordered queries backed by a composite index
    """

    backend_type = "cosmos"

    def __init__(self, config: CosmosConfig):
        self.config = config
        self._client: CosmosClient | None = None
        self._credential: DefaultAzureCredential | None = None
        self._database: DatabaseProxy | None = None

    @classmethod
    async def create(cls, config: CosmosConfig | None = None) -> CosmosBackend:
        """Create, connect and migrate a Cosmos backend."""
        if config is None:
            config = CosmosConfig.from_env()

        backend = cls(config)
        await backend.connect()
        await backend.migrate()
        return backend

    @property
    def endpoint(self) -> str:
        return self.config.endpoint

    @property
    def database(self) -> DatabaseProxy:
        if self._database is None:
            raise StorageIOError("database", cause=RuntimeError("Database not initialized"))
        return self._database

    def _container(self, name: str) -> ContainerProxy:
        return self.database.get_container_client(name)

    # =========================================================================
    # Lifecycle hooks
    # =========================================================================

    async def _open(self) -> None:
        if self.config.auth_method == AUTH_KEY:
            if not self.config.key:
                raise ConfigurationError("cosmos.key", "required for key auth")
            credential: Any = self.config.key
        else:
            self._credential = DefaultAzureCredential()
            credential = self._credential

        self._client = CosmosClient(
            self.config.endpoint,
            credential=credential,
            connection_verify=self.config.verify_ssl,
        )

        try:
            self._database = await self._client.create_database_if_not_exists(
                id=self.config.database_name
            )
        except CosmosHttpResponseError as e:
            if e.status_code in (401, 403):
                raise AuthenticationError(self.endpoint, str(e)) from e
            raise StorageConnectionError(self.endpoint, e) from e

    async def _close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None

        if self._credential:
            await self._credential.close()
            self._credential = None

        self._database = None

    async def _ping(self) -> None:
        await self.database.read()

    def _migration_ledger(self) -> MigrationLedger:
        return _CosmosLedger(self)

    def _migration_steps(self) -> list[MigrationStep]:
        return [
            MigrationStep(
                "001",
                self._create_initial_containers,
                "Create posts and subscription state containers",
            ),
        ]

    async def _create_initial_containers(self) -> None:
        await self.database.create_container_if_not_exists(
            id=POSTS_CONTAINER,
            partition_key=PartitionKey(path="/id"),
            indexing_policy=POSTS_INDEXING_POLICY,
        )
        await self.database.create_container_if_not_exists(
            id=SUB_STATE_CONTAINER,
            partition_key=PartitionKey(path="/id"),
        )
        logger.info(
            "Containers created/verified",
            extra={"containers": [POSTS_CONTAINER, SUB_STATE_CONTAINER]},
        )

    @contextmanager
    def _translate_errors(self, operation: str, key: str | None = None) -> Iterator[None]:
        """Map azure-cosmos failures onto the storage exception taxonomy."""
        try:
            yield
        except (ServiceRequestError, ServiceResponseError) as e:
            raise StorageConnectionError(self.endpoint, e) from e
        except CosmosHttpResponseError as e:
            if e.status_code in (401, 403):
                raise AuthenticationError(self.endpoint, str(e)) from e
            raise StorageIOError(operation, key, e) from e

    # =========================================================================
    # Post Operations
    # =========================================================================

    async def create_post(self, post: Post) -> Post:
        """Insert a new post."""
        self._require_connection("create_post")

        doc = {
            "id": document_id(post.uri),
            "uri": post.uri,
            "content_hash": post.content_hash,
            "reply_parent": post.reply_parent,
            "reply_root": post.reply_root,
            "author_id": post.author_id,
            "payload": post.payload,
            "indexed_at": format_timestamp(post.indexed_at),
        }

        with self._translate_errors("create_post", post.uri):
            try:
                await self._container(POSTS_CONTAINER).create_item(body=doc)
            except CosmosResourceExistsError as e:
                raise DuplicateKeyError(post.uri) from e
        return post

    async def find_post_by_uri(self, uri: str) -> Post | None:
        """Get a post by uri."""
        self._require_connection("find_post_by_uri")

        doc_id = document_id(uri)
        with self._translate_errors("find_post_by_uri", uri):
            try:
                doc = await self._container(POSTS_CONTAINER).read_item(
                    item=doc_id, partition_key=doc_id
                )
            except CosmosResourceNotFoundError:
                return None
        return post_from_row(doc)

    async def delete_post_by_uri(self, uri: str) -> bool:
        """Delete a post by uri."""
        self._require_connection("delete_post_by_uri")

        doc_id = document_id(uri)
        with self._translate_errors("delete_post_by_uri", uri):
            try:
                await self._container(POSTS_CONTAINER).delete_item(
                    item=doc_id, partition_key=doc_id
                )
            except CosmosResourceNotFoundError:
                return False
        return True

    async def find_posts(self, criteria: FindPostsCriteria) -> list[Post]:
        """Keyset-paginated listing ordered by (indexed_at DESC, uri DESC)."""
        self._require_connection("find_posts")

        query_parts = [f"SELECT {POST_PROJECTION} FROM c"]
        conditions: list[str] = []
        params: list[dict[str, object]] = []

        if criteria.author_id:
            conditions.append("c.author_id = @author_id")
            params.append({"name": "@author_id", "value": criteria.author_id})

        if criteria.cursor is not None:
            params.append(
                {"name": "@indexed_at", "value": format_timestamp(criteria.cursor.indexed_at)}
            )
            if criteria.cursor.uri is None:
                conditions.append("c.indexed_at < @indexed_at")
            else:
                conditions.append(
                    "(c.indexed_at < @indexed_at"
                    " OR (c.indexed_at = @indexed_at AND c.uri < @uri))"
                )
                params.append({"name": "@uri", "value": criteria.cursor.uri})

        if conditions:
            query_parts.append("WHERE " + " AND ".join(conditions))
        query_parts.append("ORDER BY c.indexed_at DESC, c.uri DESC")

        if criteria.limit is not None:
            query_parts.append("OFFSET 0 LIMIT @limit")
            params.append({"name": "@limit", "value": criteria.limit})

        results: list[Post] = []
        with self._translate_errors("find_posts"):
            async for item in self._container(POSTS_CONTAINER).query_items(
                query=" ".join(query_parts),
                parameters=params,  # type: ignore
            ):
                results.append(post_from_row(item))
                if criteria.limit is not None and len(results) >= criteria.limit:
                    break
        return results

    # =========================================================================
    # Subscription State Operations
    # =========================================================================

    async def get_subscription_state(self, service: str) -> SubscriptionState | None:
        """Get the stored cursor for a service."""
        self._require_connection("get_subscription_state")

        doc_id = document_id(service)
        with self._translate_errors("get_subscription_state", service):
            try:
                doc = await self._container(SUB_STATE_CONTAINER).read_item(
                    item=doc_id, partition_key=doc_id
                )
            except CosmosResourceNotFoundError:
                return None
        return SubscriptionState(service=doc["service"], cursor=int(doc["cursor"]))

    async def update_subscription_state(self, service: str, cursor: int) -> None:
        """Upsert the cursor for a service."""
        self._require_connection("update_subscription_state")

        with self._translate_errors("update_subscription_state", service):
            await self._container(SUB_STATE_CONTAINER).upsert_item(
                body={"id": document_id(service), "service": service, "cursor": cursor}
            )
