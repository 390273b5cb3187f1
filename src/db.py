"""
Database Manager - PostgreSQL schema and operations.

Stores secret store declarations, external secret declarations and their
reconcile status, credential records and the target secret records the
controller writes.
"""

import asyncpg
import base64
import hashlib
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from events import (
    KIND_CLUSTER_SECRET_STORE,
    KIND_CREDENTIAL_RECORD,
    KIND_SECRET_STORE,
    EventBus,
    EventType,
    ResourceEvent,
)
from migrate import run_migrations

logger = logging.getLogger(__name__)

# Cluster-scoped stores are kept under the empty namespace so the
# (namespace, name) uniqueness constraint still applies to them.
CLUSTER_NAMESPACE = ""


class ResourceStatus(Enum):
    """Status of an external secret declaration."""

    PENDING = "pending"
    RECONCILING = "reconciling"
    READY = "ready"
    RETRYING = "retrying"
    FAILED = "failed"


class WriteOutcome(Enum):
    """Outcome of a guarded target secret write."""

    WRITTEN = "written"
    CONFLICT = "conflict"
    SUPERSEDED = "superseded"


def encode_data(data: Dict[str, bytes]) -> str:
    """Serialize a byte map as a JSON object of base64 strings."""
    return json.dumps(
        {key: base64.b64encode(value).decode("ascii") for key, value in data.items()},
        sort_keys=True,
    )


def decode_data(raw: Any) -> Dict[str, bytes]:
    """Inverse of encode_data. Accepts the JSON text or an already parsed dict."""
    if not raw:
        return {}
    if isinstance(raw, str):
        raw = json.loads(raw)
    return {key: base64.b64decode(value) for key, value in raw.items()}


class DatabaseManager:
    """
    Manages PostgreSQL database operations for the controller.

    When an event bus is set, every change to a store, credential record or
    external secret is published on it so the controller can react.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._event_bus: Optional[EventBus] = None

    def set_event_bus(self, event_bus: Optional[EventBus]) -> None:
        """Set the event bus change notifications are published on."""
        self._event_bus = event_bus

    async def _publish(self, event: ResourceEvent) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event)

    @staticmethod
    def _store_kind(namespace: Optional[str]) -> str:
        return KIND_SECRET_STORE if namespace else KIND_CLUSTER_SECRET_STORE

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    async def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    # ==================== Secret Store Methods ====================

    async def upsert_secret_store(
        self,
        name: str,
        namespace: Optional[str],
        spec: Dict[str, Any],
    ) -> int:
        """
        Create or replace a secret store declaration.

        Args:
            name: Store name
            namespace: Store namespace, or None for a cluster-scoped store
            spec: Store specification (controller, provider, auth)

        Returns:
            The store's generation after the write
        """
        spec_hash = self._calculate_spec_hash(spec)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO secret_stores (namespace, name, spec, spec_hash)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (namespace, name) DO UPDATE
                SET spec = EXCLUDED.spec,
                    spec_hash = EXCLUDED.spec_hash,
                    generation = CASE
                        WHEN secret_stores.spec_hash = EXCLUDED.spec_hash
                        THEN secret_stores.generation
                        ELSE secret_stores.generation + 1
                    END,
                    updated_at = NOW()
                RETURNING generation, (xmax = 0) AS created
                """,
                namespace or CLUSTER_NAMESPACE,
                name,
                json.dumps(spec),
                spec_hash,
            )

        generation = row["generation"]
        scope = namespace or "cluster"
        logger.info(f"Stored secret store {scope}/{name} (generation {generation})")
        await self._publish(
            ResourceEvent(
                event_type=EventType.CREATED if row["created"] else EventType.MODIFIED,
                kind=self._store_kind(namespace),
                namespace=namespace,
                name=name,
                data={"generation": generation},
            )
        )
        return generation

    async def get_secret_store(
        self, namespace: Optional[str], name: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get a secret store by namespace and name.

        A namespace of None looks up a cluster-scoped store.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM secret_stores WHERE namespace = $1 AND name = $2",
                namespace or CLUSTER_NAMESPACE,
                name,
            )
            if not row:
                return None

            return self._parse_store_row(row)

    async def list_secret_stores(
        self, namespace: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List secret stores, optionally limited to one namespace."""
        async with self.pool.acquire() as conn:
            if namespace is None:
                rows = await conn.fetch(
                    "SELECT * FROM secret_stores ORDER BY namespace, name"
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM secret_stores WHERE namespace = $1 ORDER BY name",
                    namespace,
                )
            return [self._parse_store_row(row) for row in rows]

    async def delete_secret_store(self, namespace: Optional[str], name: str) -> bool:
        """Delete a secret store. Returns True if a row was removed."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM secret_stores WHERE namespace = $1 AND name = $2",
                namespace or CLUSTER_NAMESPACE,
                name,
            )
            deleted = result == "DELETE 1"

        if deleted:
            logger.info(f"Deleted secret store {namespace or 'cluster'}/{name}")
            await self._publish(
                ResourceEvent(
                    event_type=EventType.DELETED,
                    kind=self._store_kind(namespace),
                    namespace=namespace,
                    name=name,
                )
            )
        return deleted

    # ==================== Credential Record Methods ====================

    async def upsert_credential_record(
        self, namespace: str, name: str, data: Dict[str, bytes]
    ) -> None:
        """Create or replace a credential record."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO credential_records (namespace, name, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (namespace, name) DO UPDATE
                SET data = EXCLUDED.data,
                    updated_at = NOW()
                """,
                namespace,
                name,
                encode_data(data),
            )

        logger.info(f"Stored credential record {namespace}/{name}")
        # Field names only, never values
        await self._publish(
            ResourceEvent(
                event_type=EventType.MODIFIED,
                kind=KIND_CREDENTIAL_RECORD,
                namespace=namespace,
                name=name,
                data={"fields": sorted(data)},
            )
        )

    async def get_credential_record(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, bytes]]:
        """Get the fields of a credential record, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            raw = await conn.fetchval(
                "SELECT data FROM credential_records WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if raw is None:
                return None

            return decode_data(raw)

    async def delete_credential_record(self, namespace: str, name: str) -> bool:
        """Delete a credential record. Returns True if a row was removed."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM credential_records WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            deleted = result == "DELETE 1"

        if deleted:
            logger.info(f"Deleted credential record {namespace}/{name}")
            await self._publish(
                ResourceEvent(
                    event_type=EventType.DELETED,
                    kind=KIND_CREDENTIAL_RECORD,
                    namespace=namespace,
                    name=name,
                )
            )
        return deleted

    # ==================== External Secret Methods ====================

    async def upsert_external_secret(
        self, namespace: str, name: str, spec: Dict[str, Any]
    ) -> int:
        """
        Create or update an external secret declaration.

        The generation is bumped only when the spec content changes. Any
        change schedules the declaration for immediate reconciliation.

        Returns:
            The declaration's generation after the write
        """
        spec_hash = self._calculate_spec_hash(spec)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO external_secrets (
                    namespace, name, spec, spec_hash, status, next_reconcile_time
                )
                VALUES ($1, $2, $3, $4, $5, NOW())
                ON CONFLICT (namespace, name) DO UPDATE
                SET spec = EXCLUDED.spec,
                    spec_hash = EXCLUDED.spec_hash,
                    generation = CASE
                        WHEN external_secrets.spec_hash = EXCLUDED.spec_hash
                        THEN external_secrets.generation
                        ELSE external_secrets.generation + 1
                    END,
                    next_reconcile_time = CASE
                        WHEN external_secrets.spec_hash = EXCLUDED.spec_hash
                        THEN external_secrets.next_reconcile_time
                        ELSE NOW()
                    END,
                    updated_at = NOW()
                RETURNING *, (xmax = 0) AS created
                """,
                namespace,
                name,
                json.dumps(spec),
                spec_hash,
                ResourceStatus.PENDING.value,
            )

        declaration = self._parse_external_secret_row(row)
        created = declaration.pop("created")
        generation = declaration["generation"]
        logger.info(
            f"Stored external secret {namespace}/{name} (generation {generation})"
        )
        await self._publish(
            ResourceEvent.for_external_secret(
                EventType.CREATED if created else EventType.MODIFIED, declaration
            )
        )
        return generation

    async def get_external_secret(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get an external secret declaration with its status."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM external_secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None

            return self._parse_external_secret_row(row)

    async def list_external_secrets(
        self,
        namespace: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List external secrets with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM external_secrets WHERE TRUE"
            params = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if status:
                param_count += 1
                query += f" AND status = ${param_count}"
                params.append(status)

            param_count += 1
            query += f" ORDER BY namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_external_secret_row(row) for row in rows]

    async def list_external_secrets_for_store(
        self,
        store_name: str,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        List declarations that reference a store.

        Args:
            store_name: Name of the store
            namespace: Namespace of a namespaced store, or None for a
                cluster-scoped store (matched by ClusterSecretStore references
                in every namespace)
        """
        async with self.pool.acquire() as conn:
            if namespace is None:
                rows = await conn.fetch(
                    """
                    SELECT * FROM external_secrets
                    WHERE spec->'secretStoreRef'->>'name' = $1
                      AND spec->'secretStoreRef'->>'kind' = 'ClusterSecretStore'
                    """,
                    store_name,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM external_secrets
                    WHERE namespace = $2
                      AND spec->'secretStoreRef'->>'name' = $1
                      AND COALESCE(spec->'secretStoreRef'->>'kind', 'SecretStore')
                          = 'SecretStore'
                    """,
                    store_name,
                    namespace,
                )
            return [self._parse_external_secret_row(row) for row in rows]

    async def delete_external_secret(self, namespace: str, name: str) -> bool:
        """Delete an external secret declaration. Returns True if a row was removed."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                DELETE FROM external_secrets WHERE namespace = $1 AND name = $2
                RETURNING *
                """,
                namespace,
                name,
            )

        if row is None:
            return False

        logger.info(f"Deleted external secret {namespace}/{name}")
        await self._publish(
            ResourceEvent.for_external_secret(
                EventType.DELETED, self._parse_external_secret_row(row)
            )
        )
        return True

    async def get_external_secrets_needing_reconciliation(
        self, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Get declarations that need reconciliation.

        Similar to Kubernetes informers - finds declarations where desired !=
        observed state, or whose refresh or retry time has come.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM external_secrets
                WHERE
                    -- Never reconciled
                    last_reconcile_time IS NULL
                    -- Generation changed
                    OR generation > observed_generation
                    -- Refresh or retry due
                    OR next_reconcile_time <= NOW()
                ORDER BY
                    CASE status
                        WHEN 'pending' THEN 0
                        WHEN 'retrying' THEN 1
                        WHEN 'failed' THEN 2
                        ELSE 3
                    END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )

            return [self._parse_external_secret_row(row) for row in rows]

    async def update_external_secret_status(
        self,
        namespace: str,
        name: str,
        status: ResourceStatus,
        message: Optional[str] = None,
        observed_generation: Optional[int] = None,
        next_reconcile_after: Optional[float] = None,
    ):
        """
        Update the status of an external secret.

        Args:
            namespace: Declaration namespace
            name: Declaration name
            status: New status
            message: Human readable status message
            observed_generation: Generation the status refers to
            next_reconcile_after: Seconds until the next scheduled reconcile,
                or None for no scheduled reconcile
        """
        async with self.pool.acquire() as conn:
            query_parts = [
                "UPDATE external_secrets SET status = $1, status_message = $2, updated_at = NOW()"
            ]
            params = [status.value, message]
            param_count = 2

            if observed_generation is not None:
                param_count += 1
                query_parts.append(f"observed_generation = ${param_count}")
                params.append(observed_generation)

            if status != ResourceStatus.RECONCILING:
                param_count += 1
                query_parts.append(
                    f"next_reconcile_time = NOW() + ${param_count} * INTERVAL '1 second'"
                )
                params.append(next_reconcile_after)

            if status == ResourceStatus.READY:
                query_parts.append(
                    "last_reconcile_time = NOW(), refresh_time = NOW(), retry_count = 0"
                )
            elif status in (ResourceStatus.RETRYING, ResourceStatus.FAILED):
                query_parts.append(
                    "last_reconcile_time = NOW(), retry_count = retry_count + 1"
                )

            param_count += 1
            where = f"WHERE namespace = ${param_count}"
            params.append(namespace)
            param_count += 1
            where += f" AND name = ${param_count}"
            params.append(name)

            full_query = f"{', '.join(query_parts)} {where}"
            await conn.execute(full_query, *params)

    async def set_condition(
        self,
        namespace: str,
        name: str,
        condition_type: str,
        status: str,
        reason: str,
        message: str,
        observed_generation: Optional[int] = None,
    ) -> None:
        """
        Set a status condition on an external secret.

        The transition time only moves when the condition's status changes.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                raw = await conn.fetchval(
                    """
                    SELECT conditions FROM external_secrets
                    WHERE namespace = $1 AND name = $2
                    FOR UPDATE
                    """,
                    namespace,
                    name,
                )
                if raw is None:
                    return

                conditions = json.loads(raw) if isinstance(raw, str) else list(raw)
                now = datetime.now(timezone.utc).isoformat()
                updated = self._merge_condition(
                    conditions,
                    {
                        "type": condition_type,
                        "status": status,
                        "reason": reason,
                        "message": message,
                        "observedGeneration": observed_generation,
                    },
                    now,
                )

                await conn.execute(
                    """
                    UPDATE external_secrets SET conditions = $1
                    WHERE namespace = $2 AND name = $3
                    """,
                    json.dumps(updated),
                    namespace,
                    name,
                )

    # ==================== Target Secret Methods ====================

    async def get_target_secret(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get a target secret record.

        Returns:
            Dictionary with data (bytes map), managed_keys, owner and
            resource_version, or None if the record does not exist
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM target_secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None

            return self._parse_target_row(row)

    async def write_target_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        managed_keys: Iterable[str],
        owner: str,
        owner_generation: int,
        resource_version: Optional[int],
    ) -> WriteOutcome:
        """
        Create or update a target secret record under two guards.

        The owner declaration must still exist at owner_generation, and the
        record must still be at resource_version (None meaning it must not
        exist yet). Both checks and the write share one transaction.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                generation = await conn.fetchval(
                    """
                    SELECT generation FROM external_secrets
                    WHERE namespace = $1 AND name = $2
                    FOR SHARE
                    """,
                    namespace,
                    owner,
                )
                if generation is None or generation != owner_generation:
                    return WriteOutcome.SUPERSEDED

                if resource_version is None:
                    new_version = await conn.fetchval(
                        """
                        INSERT INTO target_secrets (
                            namespace, name, data, managed_keys, owner
                        )
                        VALUES ($1, $2, $3, $4, $5)
                        ON CONFLICT (namespace, name) DO NOTHING
                        RETURNING resource_version
                        """,
                        namespace,
                        name,
                        encode_data(data),
                        json.dumps(sorted(managed_keys)),
                        owner,
                    )
                else:
                    new_version = await conn.fetchval(
                        """
                        UPDATE target_secrets
                        SET data = $3,
                            managed_keys = $4,
                            owner = $5,
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE namespace = $1 AND name = $2
                          AND resource_version = $6
                        RETURNING resource_version
                        """,
                        namespace,
                        name,
                        encode_data(data),
                        json.dumps(sorted(managed_keys)),
                        owner,
                        resource_version,
                    )

                if new_version is None:
                    return WriteOutcome.CONFLICT

                return WriteOutcome.WRITTEN

    async def delete_target_secret(self, namespace: str, name: str) -> bool:
        """Delete a target secret record. Returns True if a row was removed."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM target_secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            return result == "DELETE 1"

    # ==================== Helpers ====================

    @staticmethod
    def _merge_condition(
        conditions: List[Dict[str, Any]], condition: Dict[str, Any], now: str
    ) -> List[Dict[str, Any]]:
        """Replace or append a condition, keeping the transition time stable."""
        result = []
        found = False
        for existing in conditions:
            if existing.get("type") != condition["type"]:
                result.append(existing)
                continue
            found = True
            merged = dict(condition)
            if existing.get("status") == condition["status"]:
                merged["lastTransitionTime"] = existing.get("lastTransitionTime", now)
            else:
                merged["lastTransitionTime"] = now
            result.append(merged)

        if not found:
            result.append(dict(condition, lastTransitionTime=now))
        return result

    def _parse_store_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a secret store row, mapping the cluster namespace back to None."""
        result = dict(row)
        result["spec"] = json.loads(result["spec"]) if result.get("spec") else {}
        if result.get("namespace") == CLUSTER_NAMESPACE:
            result["namespace"] = None
        return result

    def _parse_external_secret_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Parse an external secret row from the database, converting JSON fields.

        Args:
            row: An asyncpg.Record from a database query

        Returns:
            A dictionary with the declaration data, with JSON fields parsed
        """
        result = dict(row)
        result["spec"] = json.loads(result["spec"]) if result.get("spec") else {}
        result["conditions"] = (
            json.loads(result["conditions"])
            if isinstance(result.get("conditions"), str)
            else result.get("conditions", []) or []
        )
        return result

    def _parse_target_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a target secret row, decoding the stored byte values."""
        result = dict(row)
        result["data"] = decode_data(result.get("data"))
        managed = result.get("managed_keys")
        result["managed_keys"] = (
            json.loads(managed) if isinstance(managed, str) else list(managed or [])
        )
        return result

    def _calculate_spec_hash(self, spec: Dict[str, Any]) -> str:
        """Calculate a hash of the specification for change detection."""
        spec_string = json.dumps(spec, sort_keys=True)
        return hashlib.sha256(spec_string.encode()).hexdigest()
