"""Deduplication logic for canonical sample storage.

The same underlying event routinely arrives more than once: webhooks are
delivered at least once and OAuth sync windows overlap.  Storage is keyed
by :class:`~cardiowatch.wearables.canonical.SampleKey`, so a re-delivery
overwrites instead of duplicating.

Dedup keys:
    - point metrics (heart_rate, resting_heart_rate, hrv, blood_oxygen):
      (patient_id, metric_type, exact UTC timestamp)
    - aggregate metrics (sleep_session, activity_day):
      (patient_id, metric_type, calendar day as midnight UTC)

Activity days are additionally merged by contribution so that separate
deliveries for the same day add up while a replayed delivery does not.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from cardiowatch.wearables.canonical import CanonicalSample, MetricType
from cardiowatch.wearables.normalizer import activity_totals

logger = logging.getLogger("cardiowatch.wearables.sync.dedup")

SAMPLE_CONFLICT_COLUMNS: list[str] = ["patient_id", "metric_type", "bucket_start"]


def merge_samples(existing: CanonicalSample | None, incoming: CanonicalSample) -> CanonicalSample:
    """Combine an incoming sample with whatever is stored under the same key.

    Point metrics and sleep sessions are replaced outright.  Activity days
    merge their ``components`` maps: each contribution id keeps its latest
    values and the day totals are recomputed from all contributions.

    Args:
        existing: Currently stored sample, or None.
        incoming: Newly normalized sample with the same key.

    Returns:
        The sample to store.
    """
    if existing is None or incoming.metric != MetricType.ACTIVITY_DAY:
        return incoming

    components = dict(existing.details.get("components", {}))
    components.update(incoming.details.get("components", {}))
    totals = activity_totals(components)
    return replace(
        incoming,
        start=min(existing.start, incoming.start),
        value=totals["steps"],
        details={"components": components, "totals": totals},
    )


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes, safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
