"""
Database Store - PostgreSQL-backed object store.

Persists every object as a JSONB body in a single ``objects`` table, keyed by
(api_version, kind, namespace, name). Optimistic concurrency is enforced by
comparing the caller's resource_version with the stored one inside a
``SELECT ... FOR UPDATE`` transaction.
"""

import asyncpg
import json
import logging
from typing import Dict, List, Optional

from errors import AlreadyExistsError, NotFoundError
from events import EventBus, EventType
from migrate import run_migrations
from objects import (
    Object,
    ObjectKey,
    ResourceKind,
    Scheme,
    generate_name_suffix,
    utc_now,
)
from store import Store

logger = logging.getLogger(__name__)

# Attempts at finding a free name for objects created with generate_name
MAX_GENERATE_NAME_ATTEMPTS = 8


class DatabaseStore(Store):
    """Store implementation backed by an asyncpg connection pool."""

    def __init__(
        self,
        scheme: Scheme,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        super().__init__(scheme, event_bus)
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

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
            command_timeout=60,  # Query timeout
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

    def _parse_object_row(self, kind: ResourceKind, row: asyncpg.Record) -> Object:
        """Parse an objects row into a model of the supplied kind."""
        body = row["body"]
        model = self.scheme.model_for(kind)
        if isinstance(body, str):
            obj = model.model_validate_json(body)
        else:
            obj = model.model_validate(body)
        obj.metadata.resource_version = row["resource_version"]
        return obj

    # ==================== Reads ====================

    async def get(self, kind: ResourceKind, key: ObjectKey) -> Object:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT resource_version, body FROM objects
                WHERE api_version = $1 AND kind = $2
                  AND namespace = $3 AND name = $4
                """,
                kind.api_version,
                kind.kind,
                key.namespace,
                key.name,
            )
            if not row:
                raise NotFoundError(f'{kind.kind} "{key}" not found')
            return self._parse_object_row(kind, row)

    async def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        match_labels: Optional[Dict[str, str]] = None,
    ) -> List[Object]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            query = (
                "SELECT resource_version, body FROM objects "
                "WHERE api_version = $1 AND kind = $2"
            )
            params = [kind.api_version, kind.kind]
            param_count = 2

            if namespace is not None:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if match_labels:
                param_count += 1
                query += f" AND body->'metadata'->'labels' @> ${param_count}::jsonb"
                params.append(json.dumps(match_labels))

            query += " ORDER BY id"

            rows = await conn.fetch(query, *params)
            return [self._parse_object_row(kind, row) for row in rows]

    # ==================== Writes ====================

    async def create(self, obj: Object) -> None:
        self._ensure_connected()
        generated = not obj.metadata.name
        self._prepare_create(obj)

        for _ in range(MAX_GENERATE_NAME_ATTEMPTS):
            try:
                async with self.pool.acquire() as conn:
                    await conn.execute(
                        """
                        INSERT INTO objects (
                            api_version, kind, namespace, name, uid,
                            resource_version, body
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                        """,
                        obj.api_version,
                        obj.kind,
                        obj.metadata.namespace,
                        obj.metadata.name,
                        obj.metadata.uid,
                        obj.metadata.resource_version,
                        obj.model_dump_json(),
                    )
                break
            except asyncpg.UniqueViolationError:
                if not generated:
                    raise AlreadyExistsError(f'{obj.kind} "{obj.key}" already exists')
                obj.metadata.name = obj.metadata.generate_name + generate_name_suffix()
        else:
            raise AlreadyExistsError(
                f"cannot generate a free name with prefix {obj.metadata.generate_name}"
            )

        logger.debug(f"Created {obj.kind} {obj.key} ({obj.metadata.uid})")
        await self._publish(EventType.CREATED, obj)

    async def _lock_current(
        self, conn: asyncpg.Connection, obj: Object
    ) -> Optional[asyncpg.Record]:
        return await conn.fetchrow(
            """
            SELECT id, resource_version, body FROM objects
            WHERE api_version = $1 AND kind = $2
              AND namespace = $3 AND name = $4
            FOR UPDATE
            """,
            obj.api_version,
            obj.kind,
            obj.metadata.namespace,
            obj.metadata.name,
        )

    async def _write(self, conn: asyncpg.Connection, row_id: int, new: Object) -> None:
        await conn.execute(
            """
            UPDATE objects
            SET body = $1::jsonb,
                resource_version = $2,
                updated_at = NOW()
            WHERE id = $3
            """,
            new.model_dump_json(),
            new.metadata.resource_version,
            row_id,
        )

    async def update(self, obj: Object) -> None:
        self._ensure_connected()
        kind = obj.resource_kind
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await self._lock_current(conn, obj)
                if not row:
                    raise NotFoundError(f'{kind.kind} "{obj.key}" not found')
                current = self._parse_object_row(kind, row)
                self._check_version(current, obj)
                new = self._merged_for_update(current, obj)
                finalized = self._is_finalized(new)
                if finalized:
                    await conn.execute("DELETE FROM objects WHERE id = $1", row["id"])
                else:
                    await self._write(conn, row["id"], new)

        obj.metadata.resource_version = new.metadata.resource_version
        if finalized:
            logger.debug(f"Finalized and deleted {obj.kind} {obj.key}")
        await self._publish(
            EventType.DELETED if finalized else EventType.MODIFIED, new, old=current
        )

    async def update_status(self, obj: Object) -> None:
        self._ensure_connected()
        kind = obj.resource_kind
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await self._lock_current(conn, obj)
                if not row:
                    raise NotFoundError(f'{kind.kind} "{obj.key}" not found')
                current = self._parse_object_row(kind, row)
                self._check_version(current, obj)
                new = self._merged_for_status(current, obj)
                await self._write(conn, row["id"], new)

        obj.metadata.resource_version = new.metadata.resource_version
        await self._publish(EventType.MODIFIED, new, old=current)

    async def delete(self, obj: Object) -> None:
        self._ensure_connected()
        kind = obj.resource_kind
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await self._lock_current(conn, obj)
                if not row:
                    raise NotFoundError(f'{kind.kind} "{obj.key}" not found')
                current = self._parse_object_row(kind, row)
                if obj.metadata.resource_version is not None:
                    self._check_version(current, obj)

                if current.metadata.finalizers:
                    # Soft delete: finalizers must be removed before the row goes
                    new = current.model_copy(deep=True)
                    if new.metadata.deletion_timestamp is None:
                        new.metadata.deletion_timestamp = utc_now()
                        new.metadata.resource_version += 1
                        await self._write(conn, row["id"], new)
                    event_type = EventType.MODIFIED
                else:
                    new = current
                    await conn.execute("DELETE FROM objects WHERE id = $1", row["id"])
                    event_type = EventType.DELETED

        obj.metadata.deletion_timestamp = new.metadata.deletion_timestamp
        obj.metadata.resource_version = new.metadata.resource_version
        logger.info(f"Deleted {obj.kind} {obj.key} ({event_type.value.lower()})")
        await self._publish(event_type, new, old=current)
