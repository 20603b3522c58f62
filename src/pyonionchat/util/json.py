from __future__ import annotations

import dataclasses
import datetime as dt
import json
from typing import Any


def _default(obj: Any) -> Any:
    if isinstance(obj, dt.datetime):
        return obj.isoformat()
    # `dataclasses.is_dataclass()` is true for both instances and dataclass *types*.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(obj: Any) -> str:
    """Compact JSON serialize; datetimes become ISO-8601 strings."""

    return json.dumps(obj, default=_default, separators=(",", ":"))


def loads(data: str | bytes) -> Any:
    return json.loads(data)
