from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from ..core.config import Settings
from ..core.errors import PersistenceFailure
from ..core.logging import get_logger
from ..schemas.decisions import DecisionLogEntry
from ..utils.json_encoding import decode_jsonb, encode_jsonb

logger = get_logger(name=__name__)


class DecisionLogStore:
    """Append-only storage for decision log entries."""

    async def append(self, entry: DecisionLogEntry) -> None:
        raise NotImplementedError

    async def read_all(self, task_id: str) -> list[DecisionLogEntry]:
        raise NotImplementedError


class InMemoryDecisionLogStore(DecisionLogStore):
    def __init__(self) -> None:
        self._entries: dict[str, list[DecisionLogEntry]] = {}
        self._lock = asyncio.Lock()

    async def append(self, entry: DecisionLogEntry) -> None:
        async with self._lock:
            entries = self._entries.setdefault(entry.task_id, [])
            if entries and entry.sequence <= entries[-1].sequence:
                raise ValueError(
                    f"sequence {entry.sequence} does not follow {entries[-1].sequence} for task {entry.task_id}"
                )
            entries.append(entry)

    async def read_all(self, task_id: str) -> list[DecisionLogEntry]:
        async with self._lock:
            return list(self._entries.get(task_id, ()))


class PostgresDecisionLogStore(DecisionLogStore):
    _INSERT = """
        INSERT INTO {table} (
            task_id, sequence, tenant_key, objective, stage, event, next_state,
            input_digest, output, confidence, degraded, threshold, round, max_rounds,
            verdict, publish_lock, created_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12, $13, $14, $15, $16, $17)
    """

    _FETCH = """
        SELECT task_id, sequence, tenant_key, objective, stage, event, next_state,
               input_digest, output, confidence, degraded, threshold, round, max_rounds,
               verdict, publish_lock, created_at
        FROM {table}
        WHERE task_id = $1
        ORDER BY sequence ASC
    """

    def __init__(self, pool: Any, *, table: str = "decision_log") -> None:
        self._pool_or_coroutine = pool
        self._pool: Any | None = None
        self._table = table

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresDecisionLogStore":
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool, table=settings.postgres.decision_log_table)

    async def append(self, entry: DecisionLogEntry) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                self._INSERT.format(table=self._table),
                entry.task_id,
                entry.sequence,
                entry.tenant_key,
                entry.objective,
                entry.stage.value,
                entry.event.value,
                entry.next_state.value,
                entry.input_digest,
                encode_jsonb(entry.output),
                entry.confidence,
                entry.degraded,
                entry.threshold,
                entry.round,
                entry.max_rounds,
                entry.verdict.value if entry.verdict is not None else None,
                entry.publish_lock,
                entry.timestamp,
            )

    async def read_all(self, task_id: str) -> list[DecisionLogEntry]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(self._FETCH.format(table=self._table), task_id)
        return [
            DecisionLogEntry(
                task_id=row["task_id"],
                sequence=row["sequence"],
                tenant_key=row["tenant_key"],
                objective=row["objective"],
                stage=row["stage"],
                event=row["event"],
                next_state=row["next_state"],
                input_digest=row["input_digest"],
                output=decode_jsonb(row["output"]) or {},
                confidence=row["confidence"],
                degraded=row["degraded"],
                threshold=row["threshold"],
                round=row["round"],
                max_rounds=row["max_rounds"],
                verdict=row["verdict"],
                publish_lock=row["publish_lock"],
                timestamp=row["created_at"],
            )
            for row in rows
        ]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["PostgresDecisionLogStore"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_coroutine
        if inspect.isawaitable(candidate):
            candidate = await candidate
        if not isinstance(candidate, asyncpg.Pool):
            raise RuntimeError("Invalid asyncpg pool supplied to PostgresDecisionLogStore")
        self._pool = candidate
        return self._pool


class DecisionLogger:
    """Awaited, append-only writer in front of a :class:`DecisionLogStore`.

    ``append`` returns only after the store accepted the entry; any store failure is
    surfaced as :class:`PersistenceFailure`.
    """

    def __init__(self, store: DecisionLogStore) -> None:
        self._store = store

    @property
    def store(self) -> DecisionLogStore:
        return self._store

    async def append(self, entry: DecisionLogEntry) -> DecisionLogEntry:
        try:
            await self._store.append(entry)
        except PersistenceFailure:
            raise
        except Exception as exc:
            logger.error(
                "decision_log_write_failed",
                task_id=entry.task_id,
                sequence=entry.sequence,
                stage=entry.stage.value,
                error=str(exc),
            )
            raise PersistenceFailure(f"decision log write failed: {exc}", task_id=entry.task_id) from exc
        logger.debug(
            "decision_logged",
            task_id=entry.task_id,
            sequence=entry.sequence,
            decision=entry.event.value,
            next_state=entry.next_state.value,
        )
        return entry

    async def read_all(self, task_id: str) -> list[DecisionLogEntry]:
        entries = await self._store.read_all(task_id)
        return sorted(entries, key=lambda entry: entry.sequence)


def build_decision_log_store(settings: Settings) -> DecisionLogStore:
    if settings.decision_log.backend == "postgres":
        return PostgresDecisionLogStore.from_settings(settings)
    return InMemoryDecisionLogStore()
