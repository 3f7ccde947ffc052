from __future__ import annotations

import logging
from typing import Any


def safe_log(logger: logging.Logger, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
    """Emit a log record; a failing logger, filter or handler never propagates."""
    try:
        logger.log(level, msg, *args, **kwargs)
    except Exception:
        pass
