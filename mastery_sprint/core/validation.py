"""
Boundary validation for incoming activity data.

Raw payloads are parsed with Pydantic; any failure is converted into an
InputValidationError carrying field-level messages so nothing malformed ever
reaches the metric store.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from mastery_sprint.core.errors import InputValidationError
from mastery_sprint.core.models import (
    ActivityMetrics,
    ActivityRecord,
    ActivityType,
    as_utc,
    utc_now,
)

# Clock skew tolerated for client-supplied timestamps
MAX_FUTURE_SKEW = timedelta(minutes=5)


class ActivityMetricsInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    speed: float = Field(gt=0, description="Seconds taken")
    accuracy: float = Field(ge=0, le=100)
    completion_rate: float = Field(
        ge=0,
        le=100,
        validation_alias=AliasChoices("completion_rate", "completionRate"),
    )


class ActivityInput(BaseModel):
    """Wire-level shape of a completed activity."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_id: str = Field(min_length=1, validation_alias=AliasChoices("user_id", "userId"))
    activity_id: str = Field(
        default_factory=lambda: str(uuid4()),
        min_length=1,
        validation_alias=AliasChoices("activity_id", "activityId"),
    )
    activity_type: ActivityType = Field(
        validation_alias=AliasChoices("activity_type", "activityType", "type"),
    )
    topic: str = Field(min_length=1)
    content_type: str = Field(
        default="general",
        min_length=1,
        validation_alias=AliasChoices("content_type", "contentType"),
    )
    timestamp: datetime
    metrics: ActivityMetricsInput
    difficulty: int | None = Field(default=None, ge=1, le=10)

    @field_validator("timestamp")
    @classmethod
    def _not_in_future(cls, value: datetime) -> datetime:
        value = as_utc(value)
        if value > utc_now() + MAX_FUTURE_SKEW:
            raise ValueError("timestamp is in the future")
        return value

    def to_record(self) -> ActivityRecord:
        return ActivityRecord(
            user_id=self.user_id,
            activity_id=self.activity_id,
            activity_type=self.activity_type,
            topic=self.topic,
            content_type=self.content_type,
            timestamp=self.timestamp,
            metrics=ActivityMetrics(
                speed=self.metrics.speed,
                accuracy=self.metrics.accuracy,
                completion_rate=self.metrics.completion_rate,
            ),
            difficulty=self.difficulty,
        )


def _field_errors(exc: ValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "__root__"
        errors.setdefault(location, error["msg"])
    return errors


def parse_activity(payload: dict[str, Any] | ActivityRecord) -> ActivityRecord:
    """
    Validate an activity payload and return an ActivityRecord.

    Already-built records are re-validated through the same model so that
    programmatic callers get identical guarantees.

    Raises:
        InputValidationError: with per-field messages
    """
    if isinstance(payload, ActivityRecord):
        payload = payload.to_dict()
    try:
        return ActivityInput.model_validate(payload).to_record()
    except ValidationError as exc:
        raise InputValidationError("Invalid activity record", field_errors=_field_errors(exc)) from exc


def validate_time_range(start: datetime | None, end: datetime | None) -> None:
    """Reject inverted query ranges."""
    if start is not None and end is not None and as_utc(start) > as_utc(end):
        raise InputValidationError(
            "Invalid time range",
            field_errors={"start": "start must not be after end"},
        )
