from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


ProviderName = Literal["payments", "voice", "sms_voice_carrier"]
EventStatus = Literal["received", "processed", "failed"]


class WebhookEventListItem(BaseModel):
    id: str
    provider: ProviderName
    external_event_id: str
    event_type: str | None = None
    status: EventStatus
    last_error: str | None = None
    retryable: bool | None = None
    duplicate_count: int | None = None
    replay_count: int | None = None
    received_at: datetime | None = None
    processed_at: datetime | None = None


class WebhookEventListResponse(BaseModel):
    events: list[WebhookEventListItem]


class WebhookReplayResponse(BaseModel):
    status: Literal["replayed"]
    provider: ProviderName
    external_event_id: str
    event_type: str
    action: str
    company_id: str | None = None


class MetricsFlushResponse(BaseModel):
    persisted: bool
    counter_count: int
