"""Pydantic models for the wearable API: devices, connections, sync reports, readings."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Literal

from pydantic import ConfigDict, Field

from cardiowatch.models.base import CardioBase
from cardiowatch.wearables.base import ProviderTag
from cardiowatch.wearables.canonical import MetricType


# ---------- Providers / Devices ----------

class SupportedProviderRead(CardioBase):
    id: ProviderTag
    name: str
    type: Literal["oauth", "push"]
    capabilities: list[MetricType]
    platforms: list[str] = Field(default_factory=list)
    requires_app: bool = False


class DeviceRead(CardioBase):
    id: uuid.UUID
    patient_id: uuid.UUID
    provider: ProviderTag
    state: str
    is_connected: bool
    name: str | None = None
    model: str | None = None
    firmware_version: str | None = None
    enabled_metrics: list[MetricType] = Field(default_factory=list)
    sync_frequency_minutes: int
    last_sync_at: datetime | None = None
    created_at: datetime


# ---------- Connect / OAuth ----------

class ConnectRead(CardioBase):
    type: Literal["oauth", "push"]
    provider: ProviderTag
    device_id: uuid.UUID | None = None
    auth_url: str | None = None
    state: str | None = None
    expires_in: int | None = None
    register_endpoint: str | None = None
    instructions: str | None = None


class OAuthCallback(CardioBase):
    code: str = Field(min_length=1, max_length=2048)
    state: str = Field(min_length=1, max_length=512)


# ---------- Push devices ----------

class RegisterDeviceRequest(CardioBase):
    provider: ProviderTag
    device_id: str = Field(min_length=1, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    model: str | None = Field(default=None, max_length=255)
    firmware_version: str | None = Field(default=None, max_length=100)


class RegisterDeviceRead(CardioBase):
    device_id: uuid.UUID
    push_token: str
    sync_endpoint: str


class PushAck(CardioBase):
    success: bool = True
    processed: int
    next_sync_token: str | None = None


# ---------- Sync ----------

class SyncRequest(CardioBase):
    since: datetime | None = None


class BackfillRequest(CardioBase):
    start: date | None = None
    end: date | None = None


class BackfillAccepted(CardioBase):
    device_id: uuid.UUID
    start: date
    end: date
    total_days: int


class MetricErrorRead(CardioBase):
    metric: MetricType
    reason: str


class SyncReportRead(CardioBase):
    device_id: uuid.UUID
    status: Literal["success", "partial", "error"]
    counts: dict[str, int] = Field(default_factory=dict)
    stored: int = 0
    errors: list[MetricErrorRead] = Field(default_factory=list)
    synced_at: datetime
    reconnect_required: bool = False


# ---------- Readings ----------

class SampleRead(CardioBase):
    patient_id: uuid.UUID
    device_id: uuid.UUID
    provider: str
    metric: MetricType
    start: datetime
    end: datetime | None = None
    day: date | None = None
    value: float
    unit: str
    context: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class TrendsRead(CardioBase):
    patient_id: uuid.UUID
    baseline_days: int
    current_days: int
    trends: list[dict[str, Any]]
    alerts: list[dict[str, Any]]
    readiness: dict[str, Any] | None = None


# ---------- Thresholds ----------

class ThresholdsRead(CardioBase):
    resting_hr_low: float
    resting_hr_high: float
    resting_hr_critical_low: float
    resting_hr_critical_high: float
    hrv_low_warning: float
    hrv_low_critical: float
    spo2_low_warning: float
    spo2_low_critical: float
    sleep_hours_low_warning: float
    sleep_hours_low_critical: float
    steps_low_warning: float
    inactivity_hours_warning: float


class ThresholdsUpdate(CardioBase):
    """Partial override; omitted keys keep their current value."""

    model_config = ConfigDict(extra="forbid")

    resting_hr_low: float | None = Field(default=None, ge=0, le=300)
    resting_hr_high: float | None = Field(default=None, ge=0, le=300)
    resting_hr_critical_low: float | None = Field(default=None, ge=0, le=300)
    resting_hr_critical_high: float | None = Field(default=None, ge=0, le=300)
    hrv_low_warning: float | None = Field(default=None, ge=0, le=500)
    hrv_low_critical: float | None = Field(default=None, ge=0, le=500)
    spo2_low_warning: float | None = Field(default=None, ge=0, le=100)
    spo2_low_critical: float | None = Field(default=None, ge=0, le=100)
    sleep_hours_low_warning: float | None = Field(default=None, ge=0, le=24)
    sleep_hours_low_critical: float | None = Field(default=None, ge=0, le=24)
    steps_low_warning: float | None = Field(default=None, ge=0, le=100000)
    inactivity_hours_warning: float | None = Field(default=None, ge=0, le=168)
