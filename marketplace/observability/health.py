from __future__ import annotations

from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from marketplace.database import engine


def check_database_health(bind=None) -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": str(exc)}
