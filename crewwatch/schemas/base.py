"""Base schema shared by Supabase rows, feed payloads and API responses."""
from datetime import datetime, UTC
from typing import Any

from pydantic import BaseModel, ConfigDict, model_serializer


def serialize_datetime_utc(dt: datetime) -> str:
    """
    Serialize a datetime as ISO 8601 UTC with a ``Z`` suffix.

    Timestamps coming back from PostgREST are offset-aware, but rows built
    locally (tests, notifications) may be naive, so naive values are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _utc_timestamps(value: Any) -> Any:
    if isinstance(value, datetime):
        return serialize_datetime_utc(value)
    if isinstance(value, (list, tuple)):
        return [_utc_timestamps(item) for item in value]
    if isinstance(value, dict):
        return {key: _utc_timestamps(item) for key, item in value.items()}
    return value


class BaseSchema(BaseModel):
    """Base schema for remote rows and API responses.

    Remote tables grow columns over time, so unknown keys are kept rather than rejected.
    """

    model_config = ConfigDict(from_attributes=True, extra="allow")

    @model_serializer(mode="wrap")
    def serialize_model(self, handler):
        return _utc_timestamps(handler(self))
