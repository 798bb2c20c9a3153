"""Deduplicating sample store.

``upsert`` is idempotent on :class:`SampleKey`: a re-delivered sample
overwrites the stored one, and activity days merge by contribution (see
:func:`cardiowatch.wearables.sync.dedup.merge_samples`).  Two backends:

* :class:`MemorySampleStore` - process-local, used in development and tests
* :class:`PostgresSampleStore` - ``wearable_samples`` via asyncpg
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from cardiowatch.services.database import get_connection
from cardiowatch.wearables.canonical import (
    CanonicalSample,
    HeartRateContext,
    MetricType,
    SampleKey,
)
from cardiowatch.wearables.sync.dedup import (
    SAMPLE_CONFLICT_COLUMNS,
    build_upsert_query,
    merge_samples,
)

logger = logging.getLogger("cardiowatch.wearables.store")


class SampleStore(ABC):
    """Idempotent storage of canonical samples."""

    @abstractmethod
    async def upsert(self, sample: CanonicalSample) -> CanonicalSample:
        """Insert or overwrite the sample under its key; returns what was stored."""

    async def upsert_many(self, samples: Iterable[CanonicalSample]) -> int:
        """Upsert each sample; returns how many were written."""
        written = 0
        for sample in samples:
            await self.upsert(sample)
            written += 1
        return written

    @abstractmethod
    async def get(self, key: SampleKey) -> CanonicalSample | None: ...

    @abstractmethod
    async def query(
        self,
        patient_id: UUID,
        metric: MetricType,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[CanonicalSample]:
        """Samples whose bucket start lies in ``[start, end)``."""

    async def latest(self, patient_id: UUID, metric: MetricType) -> CanonicalSample | None:
        rows = await self.query(patient_id, metric, limit=1, newest_first=True)
        return rows[0] if rows else None

    @abstractmethod
    async def count(self, patient_id: UUID | None = None) -> int: ...

    @abstractmethod
    async def erase_patient(self, patient_id: UUID) -> int:
        """Delete every sample of a patient (data-erasure request)."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemorySampleStore(SampleStore):
    def __init__(self) -> None:
        self._samples: dict[SampleKey, CanonicalSample] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, sample: CanonicalSample) -> CanonicalSample:
        key = sample.key
        async with self._lock:
            stored = merge_samples(self._samples.get(key), sample)
            self._samples[key] = stored
        return stored

    async def get(self, key: SampleKey) -> CanonicalSample | None:
        return self._samples.get(key)

    async def query(
        self,
        patient_id: UUID,
        metric: MetricType,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[CanonicalSample]:
        matches = [
            (key.bucket_start, sample)
            for key, sample in self._samples.items()
            if key.patient_id == patient_id
            and key.metric == metric
            and (start is None or key.bucket_start >= start)
            and (end is None or key.bucket_start < end)
        ]
        matches.sort(key=lambda item: item[0], reverse=newest_first)
        rows = [sample for _, sample in matches]
        return rows[:limit] if limit is not None else rows

    async def count(self, patient_id: UUID | None = None) -> int:
        if patient_id is None:
            return len(self._samples)
        return sum(1 for key in self._samples if key.patient_id == patient_id)

    async def erase_patient(self, patient_id: UUID) -> int:
        async with self._lock:
            doomed = [key for key in self._samples if key.patient_id == patient_id]
            for key in doomed:
                del self._samples[key]
        logger.info("Erased %d samples for patient %s", len(doomed), patient_id)
        return len(doomed)


# ---------------------------------------------------------------------------
# Postgres backend
# ---------------------------------------------------------------------------

_SAMPLE_COLUMNS: list[str] = [
    "patient_id",
    "metric_type",
    "bucket_start",
    "device_id",
    "provider",
    "start_time",
    "end_time",
    "day",
    "value",
    "unit",
    "context",
    "details",
]

_UPSERT_SQL = build_upsert_query("wearable_samples", _SAMPLE_COLUMNS, SAMPLE_CONFLICT_COLUMNS)

_SELECT_SQL = f"SELECT {', '.join(_SAMPLE_COLUMNS)} FROM wearable_samples"


def _sample_values(sample: CanonicalSample) -> list[Any]:
    key = sample.key
    return [
        key.patient_id,
        key.metric.value,
        key.bucket_start,
        sample.device_id,
        sample.provider,
        sample.start,
        sample.end,
        sample.day,
        float(sample.value),
        sample.unit,
        sample.context.value if sample.context else None,
        json.dumps(sample.details, default=str),
    ]


def _row_to_sample(row: Any) -> CanonicalSample:
    details = row["details"]
    if isinstance(details, str):
        details = json.loads(details)
    return CanonicalSample(
        patient_id=row["patient_id"],
        device_id=row["device_id"],
        provider=row["provider"],
        metric=MetricType(row["metric_type"]),
        start=row["start_time"],
        end=row["end_time"],
        day=row["day"],
        value=row["value"],
        unit=row["unit"],
        context=HeartRateContext(row["context"]) if row["context"] else None,
        details=details or {},
    )


class PostgresSampleStore(SampleStore):
    """``wearable_samples`` with ``ON CONFLICT (patient_id, metric_type, bucket_start)``.

    Activity days are read-merged-written under a transaction-scoped
    advisory lock on the key so concurrent deliveries cannot lose a
    contribution.
    """

    async def upsert(self, sample: CanonicalSample) -> CanonicalSample:
        key = sample.key
        async with get_connection() as conn:
            stored = sample
            if sample.metric == MetricType.ACTIVITY_DAY:
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{key.patient_id}:{key.metric.value}:{key.bucket_start.isoformat()}",
                )
                row = await conn.fetchrow(
                    f"{_SELECT_SQL} WHERE patient_id = $1 AND metric_type = $2 "
                    "AND bucket_start = $3 FOR UPDATE",
                    key.patient_id,
                    key.metric.value,
                    key.bucket_start,
                )
                stored = merge_samples(_row_to_sample(row) if row else None, sample)
            await conn.execute(_UPSERT_SQL, *_sample_values(stored))
        return stored

    async def get(self, key: SampleKey) -> CanonicalSample | None:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                f"{_SELECT_SQL} WHERE patient_id = $1 AND metric_type = $2 AND bucket_start = $3",
                key.patient_id,
                key.metric.value,
                key.bucket_start,
            )
        return _row_to_sample(row) if row else None

    async def query(
        self,
        patient_id: UUID,
        metric: MetricType,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[CanonicalSample]:
        clauses = ["patient_id = $1", "metric_type = $2"]
        args: list[Any] = [patient_id, metric.value]
        if start is not None:
            args.append(start)
            clauses.append(f"bucket_start >= ${len(args)}")
        if end is not None:
            args.append(end)
            clauses.append(f"bucket_start < ${len(args)}")
        sql = f"{_SELECT_SQL} WHERE {' AND '.join(clauses)} ORDER BY bucket_start "
        sql += "DESC" if newest_first else "ASC"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"
        async with get_connection() as conn:
            rows = await conn.fetch(sql, *args)
        return [_row_to_sample(row) for row in rows]

    async def count(self, patient_id: UUID | None = None) -> int:
        async with get_connection() as conn:
            if patient_id is None:
                return await conn.fetchval("SELECT COUNT(*) FROM wearable_samples")
            return await conn.fetchval(
                "SELECT COUNT(*) FROM wearable_samples WHERE patient_id = $1", patient_id
            )

    async def erase_patient(self, patient_id: UUID) -> int:
        async with get_connection() as conn:
            status = await conn.execute(
                "DELETE FROM wearable_samples WHERE patient_id = $1", patient_id
            )
        deleted = int(status.split()[-1]) if status else 0
        logger.info("Erased %d samples for patient %s", deleted, patient_id)
        return deleted
