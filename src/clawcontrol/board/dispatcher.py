"""Notification Dispatcher - pushes queued notifications to agent endpoints.

Runs one background loop on a fixed poll interval. Each tick:
1. Collects pending notifications (undelivered, not dead-lettered, due)
2. Pushes each one to its agent with POST {endpoint}/api/notify
3. Records success, or a failure with exponential backoff
4. Prunes notifications past the retention window

One unreachable agent never stalls the others: every push has a short
timeout and failures are isolated per notification.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx

from clawcontrol.board.agent_registry import AgentRegistry
from clawcontrol.board.errors import BoardError, DeliveryError, NotFoundError
from clawcontrol.board.models import Agent, AgentStatus, Notification
from clawcontrol.board.notifications import NotificationStore
from clawcontrol.config import Settings

logger = logging.getLogger(__name__)

LOCAL_INSTANCES = frozenset({"", "local", "localhost"})


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff."""

    max_attempts: int = 8
    base_delay: timedelta = timedelta(seconds=5)
    max_delay: timedelta = timedelta(seconds=300)

    def delay_for(self, attempt: int) -> timedelta:
        """Wait before the next try after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.delivery_max_attempts,
            base_delay=timedelta(seconds=settings.delivery_backoff_base),
            max_delay=timedelta(seconds=settings.delivery_backoff_max),
        )


class NotificationDispatcher:
    """Background delivery of notifications to agent endpoints."""

    def __init__(
        self,
        notifications: NotificationStore,
        agents: AgentRegistry,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ):
        self._notifications = notifications
        self._agents = agents
        self.settings = settings
        self.policy = RetryPolicy.from_settings(settings)
        self._http = client
        self._owns_client = client is None
        self._poll_task: asyncio.Task | None = None
        self._running = False
        self.last_summary: dict[str, int] | None = None

    @property
    def running(self) -> bool:
        return self._running and self._poll_task is not None and not self._poll_task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            return
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.delivery_timeout)
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"Notification dispatcher started (every {self.settings.notification_poll_interval}s)"
        )

    async def stop(self) -> None:
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._http and self._owns_client:
            await self._http.aclose()
            self._http = None
        logger.info("Notification dispatcher stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.deliver_pending()
                await self.prune()
            except BoardError as e:
                logger.error(f"Dispatcher tick failed: {e}")
            except Exception:
                logger.exception("Unexpected error in dispatcher tick")
            await asyncio.sleep(self.settings.notification_poll_interval)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver_pending(self) -> dict[str, int]:
        """Run one delivery pass over every due notification.

        Returns:
            Counts of delivered, deferred, failed and dead_lettered notifications.
        """
        summary = {"delivered": 0, "deferred": 0, "failed": 0, "dead_lettered": 0}
        for notification in await self._notifications.pending():
            try:
                outcome = await self._deliver_one(notification)
            except NotFoundError:
                # Deleted while its push was in flight
                logger.debug(f"Notification {notification.id} removed during delivery")
                continue
            summary[outcome] += 1

        if summary["delivered"] or summary["failed"] or summary["dead_lettered"]:
            logger.info(
                f"Dispatch pass: {summary['delivered']} delivered, {summary['failed']} failed, "
                f"{summary['dead_lettered']} dead-lettered, {summary['deferred']} deferred"
            )
        self.last_summary = summary
        return summary

    async def _deliver_one(self, notification: Notification) -> str:
        agent = await self._agents.find(notification.agent_id)
        if agent is None:
            await self._notifications.dead_letter(
                notification.id, f"Unknown agent: {notification.agent_id}"
            )
            logger.warning(f"Dead-lettered {notification.id}: agent {notification.agent_id} unknown")
            return "dead_lettered"

        if await self._agents.effective_status(agent) == AgentStatus.OFFLINE:
            return "deferred"

        endpoint = self.endpoint_for(agent)
        if endpoint is None:
            # Nothing to push to; the agent pulls its inbox over the API
            await self._notifications.mark_delivered(notification.id)
            return "delivered"

        try:
            await self._push(endpoint, notification)
        except DeliveryError as e:
            updated = await self._notifications.record_failure(notification.id, str(e), self.policy)
            if updated.dead_letter:
                logger.warning(
                    f"Dead-lettered {notification.id} after {updated.attempts} attempts: {e}"
                )
                return "dead_lettered"
            logger.debug(f"Delivery of {notification.id} failed (attempt {updated.attempts}): {e}")
            return "failed"

        await self._notifications.mark_delivered(notification.id)
        return "delivered"

    async def _push(self, endpoint: str, notification: Notification) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.delivery_timeout)
            self._owns_client = True

        headers = {}
        if self.settings.agent_token:
            headers["Authorization"] = f"Bearer {self.settings.agent_token}"

        try:
            resp = await self._http.post(
                f"{endpoint}/api/notify",
                json=self.payload(notification),
                headers=headers,
                timeout=self.settings.delivery_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

        if not resp.is_success:
            raise DeliveryError(f"HTTP {resp.status_code} from {endpoint}")

    @staticmethod
    def payload(notification: Notification) -> dict[str, Any]:
        """JSON body sent to the agent."""
        return {
            "id": notification.id,
            "title": notification.title,
            "message": notification.text,
            "type": notification.type.value,
            "taskId": notification.task_id,
            "projectId": notification.project_id,
            "metadata": notification.metadata,
        }

    def endpoint_for(self, agent: Agent) -> str | None:
        """Base URL of the agent's notify API, or None if it cannot be reached."""
        if agent.endpoint:
            return agent.endpoint.rstrip("/")
        if agent.tailscale_ip:
            return f"http://{agent.tailscale_ip}:{self.settings.agent_port}"
        if (agent.instance_id or "").strip().lower() in LOCAL_INSTANCES:
            return f"http://localhost:{self.settings.agent_port}"
        return None

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def prune(self) -> list[str]:
        retention = timedelta(days=self.settings.notification_retention_days)
        return await self._notifications.prune(retention=retention)

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "pollInterval": self.settings.notification_poll_interval,
            "deliveryTimeout": self.settings.delivery_timeout,
            "maxAttempts": self.policy.max_attempts,
            "retentionDays": self.settings.notification_retention_days,
            "lastPass": self.last_summary,
        }
