"""Historical backfill orchestrator for pull devices.

Imports a long date range by running the regular device sync over
consecutive windows.  Designed to:
- Resume from where it left off (``BackfillState.last_backfilled_date``)
- Process in configurable batch sizes (default 7 days)
- Respect provider rate limits (configurable delay between windows)
- Stop early when the device needs reconnecting

Usage::

    orchestrator = BackfillOrchestrator(sync_service)
    async for progress in orchestrator.run(device_id, start_date, end_date):
        logger.info("Backfill progress: %s%%", progress.pct_complete)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import AsyncIterator
from uuid import UUID

from cardiowatch.wearables.base import ProviderTag, WearableError, utc_now
from cardiowatch.wearables.config_loader import TrendConfig, get_trend_config
from cardiowatch.wearables.sync.service import SyncService

logger = logging.getLogger("cardiowatch.wearables.sync.backfill")

DEFAULT_MAX_DAYS = 365


@dataclass
class BackfillProgress:
    """Progress update emitted after each backfill window.

    Attributes:
        device_id:      Device being backfilled.
        current_date:   Last date of the window just processed.
        processed_days: Total days processed so far.
        total_days:     Total days to process.
        records_saved:  Total canonical samples stored.
        errors:         Recent error messages (sanitized).
        is_complete:    True when the backfill finishes.
    """

    device_id: UUID
    current_date: date
    processed_days: int
    total_days: int
    records_saved: int
    errors: list[str] = field(default_factory=list)
    is_complete: bool = False

    @property
    def pct_complete(self) -> float:
        if self.total_days == 0:
            return 100.0
        return round(self.processed_days / self.total_days * 100, 1)


@dataclass
class BackfillState:
    """Persistent state for resumable backfills.

    Attributes:
        last_backfilled_date: The most recently completed date.
        total_records:        Running count of stored samples.
        errors:               Accumulated error log.
    """

    last_backfilled_date: date | None = None
    total_records: int = 0
    errors: list[str] = field(default_factory=list)

    def to_json(self) -> dict:
        return {
            "last_backfilled_date": (
                self.last_backfilled_date.isoformat()
                if self.last_backfilled_date
                else None
            ),
            "total_records": self.total_records,
            "errors": self.errors[-50:],  # keep last 50 errors
        }

    @classmethod
    def from_json(cls, data: dict) -> BackfillState:
        state = cls()
        if last := data.get("last_backfilled_date"):
            try:
                state.last_backfilled_date = date.fromisoformat(last)
            except ValueError:
                logger.warning("Ignoring malformed backfill checkpoint %r", last)
        state.total_records = int(data.get("total_records", 0))
        state.errors = list(data.get("errors", []))
        return state


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class BackfillOrchestrator:
    """Orchestrate a historical import for one device.

    All provider calls go through :meth:`SyncService.sync_device`, so
    backfilled samples are deduplicated and locked like any other sync.
    """

    def __init__(self, sync_service: SyncService, config: TrendConfig | None = None) -> None:
        self._sync = sync_service
        self._config = config or get_trend_config()

    async def run(
        self,
        device_id: UUID,
        start_date: date,
        end_date: date,
        existing_state: BackfillState | None = None,
    ) -> AsyncIterator[BackfillProgress]:
        """Backfill ``[start_date, end_date]`` (both inclusive).

        This is an async generator yielding one :class:`BackfillProgress`
        per window and a final one with ``is_complete=True``.
        """
        cfg = self._config.backfill
        rate_limit_s = cfg.rate_limit_ms / 1000.0
        batch_days = max(1, cfg.batch_size_days)

        state = existing_state or BackfillState()
        if state.last_backfilled_date and state.last_backfilled_date >= start_date:
            resume_from = state.last_backfilled_date + timedelta(days=1)
            logger.info("Backfill resuming from %s for device %s", resume_from, device_id)
        else:
            resume_from = start_date

        if resume_from > end_date:
            logger.info("Backfill already complete for device %s", device_id)
            yield BackfillProgress(
                device_id=device_id, current_date=end_date,
                processed_days=0, total_days=0, records_saved=state.total_records,
                is_complete=True,
            )
            return

        total_days = (end_date - resume_from).days + 1
        processed_days = 0
        current = resume_from

        while current <= end_date:
            window_end = min(current + timedelta(days=batch_days - 1), end_date)
            try:
                report = await self._sync.sync_device(
                    device_id,
                    since=_day_start(current),
                    # Never past now, or the device cursor would skip the rest of today
                    until=min(_day_start(window_end + timedelta(days=1)), utc_now()),
                )
            except WearableError as exc:
                logger.warning("Backfill for device %s stopped: %s", device_id, type(exc).__name__)
                state.errors.append(f"{current.isoformat()}: {type(exc).__name__}")
                break

            state.total_records += report.stored
            for error in report.errors:
                state.errors.append(f"{current.isoformat()}: {error.metric.value} {error.reason}")
            if report.reconnect_required:
                logger.warning("Backfill for device %s needs reconnect", device_id)
                break
            if report.status != "error":
                state.last_backfilled_date = window_end

            processed_days += (window_end - current).days + 1
            current = window_end + timedelta(days=1)

            yield BackfillProgress(
                device_id=device_id,
                current_date=window_end,
                processed_days=processed_days,
                total_days=total_days,
                records_saved=state.total_records,
                errors=state.errors[-5:],
                is_complete=current > end_date,
            )
            if current <= end_date:
                await asyncio.sleep(rate_limit_s)

        yield BackfillProgress(
            device_id=device_id,
            current_date=state.last_backfilled_date or resume_from,
            processed_days=processed_days,
            total_days=total_days,
            records_saved=state.total_records,
            errors=state.errors,
            is_complete=current > end_date,
        )

    def get_max_start_date(self, provider: ProviderTag | str, today: date | None = None) -> date:
        """Return the furthest-back date to backfill for a provider.

        Based on ``backfill.max_days.<provider>`` in trend_config.yaml.
        """
        key = provider.value if isinstance(provider, ProviderTag) else provider
        max_days = self._config.backfill.max_days.get(key, DEFAULT_MAX_DAYS)
        return (today or date.today()) - timedelta(days=max_days)
