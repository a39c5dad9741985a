from __future__ import annotations

from concurrent import futures
import logging
from typing import Callable

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from fintrack.database import notifications

logger = logging.getLogger(__name__)

Broadcaster = Callable[[int, dict], None]

BUDGET_WARNING = "budget_warning"
BUDGET_CATEGORY_WARNING = "budget_category_warning"
DEFAULT_BROADCAST_TIMEOUT_SECONDS = 5.0


def _noop_broadcast(user_id: int, record: dict) -> None:
    return None


class NotificationSink:
    """Stores notifications and pushes them to live sessions of the user.

    An unread notification with the same (user, type, message) counts as
    already sent, so concurrent triggers do not produce duplicates.

    Delivery runs on a worker thread and is awaited for at most
    ``broadcast_timeout_seconds``.
    """

    def __init__(
        self,
        engine: Engine,
        broadcast: Broadcaster | None = None,
        broadcast_timeout_seconds: float = DEFAULT_BROADCAST_TIMEOUT_SECONDS,
    ) -> None:
        self.engine = engine
        self.broadcast = broadcast or _noop_broadcast
        self.broadcast_timeout_seconds = broadcast_timeout_seconds
        self._executor = futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="fintrack-broadcast")

    def create(
        self,
        user_id: int,
        type: str,
        message: str,
        link: str | None = None,
    ) -> dict | None:
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(notifications.c.id).where(
                    notifications.c.user_id == user_id,
                    notifications.c.type == type,
                    notifications.c.message == message,
                    notifications.c.is_read.is_(False),
                )
            ).first()
            if existing:
                logger.info("Skipping duplicate %s notification for user %s", type, user_id)
                return None
            row = conn.execute(
                insert(notifications)
                .values(
                    user_id=user_id,
                    type=type,
                    message=message,
                    link=link,
                    is_read=False,
                )
                .returning(*notifications.c)
            ).mappings().first()

        record = dict(row)
        self._deliver(user_id, record)
        return record

    def _deliver(self, user_id: int, record: dict) -> None:
        future = self._executor.submit(self.broadcast, user_id, record)
        try:
            future.result(timeout=self.broadcast_timeout_seconds)
        except futures.TimeoutError:
            logger.warning(
                "Broadcast of notification %s to user %s timed out after %ss",
                record["id"],
                user_id,
                self.broadcast_timeout_seconds,
            )
        except Exception:
            logger.exception("Failed to broadcast notification %s to user %s", record["id"], user_id)

    def list_for_user(self, user_id: int, unread_only: bool = False) -> list[dict]:
        stmt = select(notifications).where(notifications.c.user_id == user_id)
        if unread_only:
            stmt = stmt.where(notifications.c.is_read.is_(False))
        stmt = stmt.order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [dict(row) for row in rows]

    def mark_read(self, user_id: int, notification_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(notifications)
                .where(
                    notifications.c.id == notification_id,
                    notifications.c.user_id == user_id,
                )
                .values(is_read=True)
            )
        return result.rowcount > 0
