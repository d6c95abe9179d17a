"""Notification store.

Per-agent inbox entries. The dispatcher reads pending() and reports push
results back through mark_delivered() / record_failure(); agents pull
their inbox over the API and acknowledge with mark_read().
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from clawcontrol.board.errors import NotFoundError, ValidationError
from clawcontrol.board.models import Notification, NotificationType, parse_iso, utc_now
from clawcontrol.board.protocol import RecordPersistence

if TYPE_CHECKING:
    from clawcontrol.board.dispatcher import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=7)


class NotificationStore:
    """In-memory notification mapping with write-through persistence."""

    def __init__(
        self,
        persistence: RecordPersistence,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._persistence = persistence
        self._clock = clock
        self._notifications: dict[str, Notification] = {}

        for data in self._persistence.load_all().values():
            try:
                notification = Notification.from_dict(data)
            except ValueError as e:
                logger.warning(f"Skipping unreadable notification {data.get('id')}: {e}")
                continue
            self._notifications[notification.id] = notification

    def _commit(
        self, changed: list[Notification] | None = None, removed: list[str] | None = None
    ) -> None:
        staged = dict(self._notifications)
        for notification in changed or []:
            staged[notification.id] = notification
        for notification_id in removed or []:
            staged.pop(notification_id, None)
        self._persistence.save_all({nid: n.to_dict() for nid, n in staged.items()})
        self._notifications = staged

    def _require(self, notification_id: str) -> Notification:
        notification = self._notifications.get(notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)
        return notification

    # =========================================================================
    # Creation
    # =========================================================================

    async def enqueue(self, notification: Notification) -> Notification:
        """Store a notification for later delivery."""
        if not notification.agent_id:
            raise ValidationError("agentId required")
        if notification.id in self._notifications:
            raise ValidationError(f"Notification already exists: {notification.id}")

        notification.created_at = self._clock().isoformat()
        self._commit([notification])
        logger.debug(
            f"Queued {notification.type.value} notification {notification.id} "
            f"for {notification.agent_id}"
        )
        return notification

    async def create(
        self,
        agent_id: str,
        type: NotificationType | str,
        title: str,
        text: str = "",
        task_id: str | None = None,
        project_id: str | None = None,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        try:
            kind = NotificationType(type)
        except ValueError:
            raise ValidationError(f"Invalid notification type: {type}") from None
        if not (title or "").strip():
            raise ValidationError("title required")

        return await self.enqueue(
            Notification(
                agent_id=agent_id,
                type=kind,
                title=title.strip(),
                text=text or "",
                task_id=task_id,
                project_id=project_id,
                source=source,
                metadata=dict(metadata or {}),
            )
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, notification_id: str) -> Notification:
        return self._require(notification_id)

    async def find(self, notification_id: str) -> Notification | None:
        return self._notifications.get(notification_id)

    async def list_for_agent(
        self,
        agent_id: str,
        unread_only: bool = False,
        undelivered_only: bool = False,
        type: NotificationType | str | None = None,
    ) -> list[Notification]:
        """An agent's inbox, newest first."""
        items = [n for n in self._notifications.values() if n.agent_id == agent_id]
        if unread_only:
            items = [n for n in items if not n.read]
        if undelivered_only:
            items = [n for n in items if not n.delivered]
        if type:
            kind = NotificationType(type)
            items = [n for n in items if n.type == kind]
        return sorted(items, key=lambda n: n.created_at, reverse=True)

    async def pending(self, now: datetime | None = None) -> list[Notification]:
        """Undelivered, not dead-lettered notifications due for a push, oldest first."""
        now = now or self._clock()
        due = []
        for notification in self._notifications.values():
            if notification.delivered or notification.dead_letter:
                continue
            next_attempt = parse_iso(notification.next_attempt_at)
            if next_attempt is not None and next_attempt > now:
                continue
            due.append(notification)
        return sorted(due, key=lambda n: n.created_at)

    # =========================================================================
    # State Changes
    # =========================================================================

    async def mark_read(self, agent_id: str, notification_id: str) -> Notification:
        """Acknowledge one notification. It must belong to agent_id."""
        current = self._notifications.get(notification_id)
        if current is None or current.agent_id != agent_id:
            raise NotFoundError("Notification", notification_id)
        if current.read:
            return current

        notification = copy.deepcopy(current)
        notification.read = True
        self._commit([notification])
        return notification

    async def mark_all_read(self, agent_id: str) -> int:
        """Acknowledge every unread notification of an agent. Returns the count."""
        changed = []
        for notification in self._notifications.values():
            if notification.agent_id == agent_id and not notification.read:
                updated = copy.deepcopy(notification)
                updated.read = True
                changed.append(updated)
        if changed:
            self._commit(changed)
        return len(changed)

    async def mark_delivered(self, notification_id: str) -> Notification:
        notification = copy.deepcopy(self._require(notification_id))
        notification.delivered = True
        notification.delivered_at = self._clock().isoformat()
        notification.next_attempt_at = None
        notification.last_error = None
        self._commit([notification])
        return notification

    async def record_failure(
        self,
        notification_id: str,
        error: str,
        policy: RetryPolicy,
        now: datetime | None = None,
    ) -> Notification:
        """Count a failed push and schedule the next attempt.

        Once the policy's attempt limit is reached the notification is
        dead-lettered and pending() stops returning it.
        """
        now = now or self._clock()
        notification = copy.deepcopy(self._require(notification_id))
        notification.attempts += 1
        notification.last_error = error

        if notification.attempts >= policy.max_attempts:
            notification.dead_letter = True
            notification.next_attempt_at = None
        else:
            delay = policy.delay_for(notification.attempts)
            notification.next_attempt_at = (now + delay).isoformat()

        self._commit([notification])
        return notification

    async def dead_letter(self, notification_id: str, error: str) -> Notification:
        """Give up on a notification without further attempts."""
        notification = copy.deepcopy(self._require(notification_id))
        notification.dead_letter = True
        notification.last_error = error
        notification.next_attempt_at = None
        self._commit([notification])
        return notification

    async def delete(self, notification_id: str) -> None:
        self._require(notification_id)
        self._commit(removed=[notification_id])

    async def delete_for_agent(self, agent_id: str) -> int:
        """Drop an agent's whole inbox. Returns the count removed."""
        ids = [nid for nid, n in self._notifications.items() if n.agent_id == agent_id]
        if ids:
            self._commit(removed=ids)
        return len(ids)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def prune(
        self, now: datetime | None = None, retention: timedelta = DEFAULT_RETENTION
    ) -> list[str]:
        """Delete notifications older than the retention window.

        Read and delivered state do not matter. Returns the removed IDs.
        """
        cutoff = (now or self._clock()) - retention
        removed = [
            nid
            for nid, n in self._notifications.items()
            if (parse_iso(n.created_at) or cutoff) < cutoff
        ]
        if removed:
            self._commit(removed=removed)
            logger.info(f"Pruned {len(removed)} notifications older than {retention}")
        return removed

    async def stats(self) -> dict[str, int]:
        items = list(self._notifications.values())
        return {
            "total": len(items),
            "unread": len([n for n in items if not n.read]),
            "undelivered": len([n for n in items if not n.delivered and not n.dead_letter]),
            "dead_letter": len([n for n in items if n.dead_letter]),
        }

    def __len__(self) -> int:
        return len(self._notifications)
