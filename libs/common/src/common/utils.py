from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def now_epoch_ms() -> int:
    return int(time.time() * 1000)


def has_text(value: object) -> bool:
    if value is None:
        return False
    return len(str(value).strip()) > 0


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    *,
    exc_info: bool = False,
    **fields: object,
) -> None:
    logger.log(level, json.dumps({"event": event, **fields}, default=str), exc_info=exc_info)
