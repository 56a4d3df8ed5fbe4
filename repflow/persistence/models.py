"""Persisted shapes and codecs shared by the ledger backends."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from ..contracts import RunRecord, StepResultRecord
from ..utils.clock import ensure_utc


class ScheduleWatermark(BaseModel):
    """Last cron tick claimed for a schedule."""

    schedule_id: str
    last_fired_at: datetime


def dump_json(value: Any) -> str:
    return json.dumps(to_jsonable_python(value))


def load_json(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


def encode_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO text, so string order equals time order."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def decode_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


__all__ = [
    "RunRecord",
    "StepResultRecord",
    "ScheduleWatermark",
    "dump_json",
    "load_json",
    "encode_ts",
    "decode_ts",
]
