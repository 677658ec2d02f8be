"""
Typed task payloads.

One pydantic model per task kind. Producers may send snake_case or camelCase
keys; the stored payload is the model dumped in snake_case so processors and
operators always see the same shape.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from kivvy.jobs.envelope import TaskKind
from kivvy.jobs.errors import PayloadValidationError


class JobPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class SendEmailPayload(JobPayload):
    to: str = Field(min_length=3)
    subject: str
    template: str
    context: Dict[str, Any] = Field(default_factory=dict)


class SendSmsPayload(JobPayload):
    to: str = Field(
        min_length=3,
        validation_alias=AliasChoices("to", "phoneNumber", "phone_number"),
    )
    message: str = Field(min_length=1)


class SendPushPayload(JobPayload):
    user_id: str
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class ProcessPaymentPayload(JobPayload):
    booking_id: str
    action: Literal["process", "capture", "refund"]
    amount: Optional[float] = Field(default=None, gt=0)
    reason: Optional[str] = None


class GenerateReportPayload(JobPayload):
    type: Literal["activity-stats", "revenue-report", "user-engagement"]
    period: Literal["daily", "weekly", "monthly"] = "daily"
    provider_id: Optional[str] = None
    date: Optional[datetime] = None


_DURATION = re.compile(r"^\s*(\d+)\s*d\s*$")


class CleanupSessionsPayload(JobPayload):
    older_than_days: int = Field(default=7, ge=0)

    @model_validator(mode="before")
    @classmethod
    def accept_duration_string(cls, data: Any) -> Any:
        # scheduled jobs historically carry {"olderThan": "7d"}
        if isinstance(data, dict) and "olderThan" in data:
            data = dict(data)
            raw = data.pop("olderThan")
            match = _DURATION.match(str(raw))
            if not match:
                raise ValueError(f"olderThan must look like '7d', got {raw!r}")
            data.setdefault("older_than_days", int(match.group(1)))
        return data


class SyncExternalDataPayload(JobPayload):
    source: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class UpdateActivityStatsPayload(JobPayload):
    date: Optional[datetime] = None


class BookingReminderPayload(JobPayload):
    window_start: Optional[datetime] = None
    window_hours: int = Field(default=24, gt=0)


class ImageUploadPayload(JobPayload):
    path: str = Field(min_length=1)
    activity_id: Optional[str] = None
    user_id: Optional[str] = None
    folder: str = "kivvy/activities"


TaskPayload = Union[
    SendEmailPayload,
    SendSmsPayload,
    SendPushPayload,
    ProcessPaymentPayload,
    GenerateReportPayload,
    CleanupSessionsPayload,
    SyncExternalDataPayload,
    UpdateActivityStatsPayload,
    BookingReminderPayload,
    ImageUploadPayload,
]

PAYLOAD_MODELS: Dict[TaskKind, Type[JobPayload]] = {
    TaskKind.SEND_EMAIL: SendEmailPayload,
    TaskKind.SEND_SMS: SendSmsPayload,
    TaskKind.SEND_PUSH_NOTIFICATION: SendPushPayload,
    TaskKind.PROCESS_PAYMENT: ProcessPaymentPayload,
    TaskKind.GENERATE_REPORT: GenerateReportPayload,
    TaskKind.CLEANUP_EXPIRED_SESSIONS: CleanupSessionsPayload,
    TaskKind.SYNC_EXTERNAL_DATA: SyncExternalDataPayload,
    TaskKind.UPDATE_ACTIVITY_STATS: UpdateActivityStatsPayload,
    TaskKind.SEND_BOOKING_REMINDER: BookingReminderPayload,
    TaskKind.PROCESS_IMAGE_UPLOAD: ImageUploadPayload,
}


def parse_payload(kind: TaskKind, data: Union[Dict[str, Any], JobPayload, None]) -> TaskPayload:
    """Validate ``data`` against the model for ``kind``."""
    model = PAYLOAD_MODELS[kind]
    if isinstance(data, model):
        return data
    if isinstance(data, JobPayload):
        data = data.model_dump()
    try:
        return model.model_validate(data or {})
    except ValidationError as exc:
        raise PayloadValidationError(kind.value, exc.errors(include_url=False)) from exc


def dump_payload(payload: JobPayload) -> Dict[str, Any]:
    """JSON-safe snake_case form persisted in the task envelope."""
    return payload.model_dump(mode="json", by_alias=False)
