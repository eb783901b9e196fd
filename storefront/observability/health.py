from __future__ import annotations

import os
from pathlib import Path
from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from storefront.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_order_feed_health(feed_path: Path) -> Dict[str, str]:
    """The feed is best-effort; report DEGRADED rather than DOWN when unwritable."""
    target = feed_path if feed_path.exists() else feed_path.parent
    if os.access(target, os.W_OK):
        return {"status": "UP", "path": str(feed_path)}
    return {"status": "DEGRADED", "path": str(feed_path), "detail": "order feed is not writable"}
