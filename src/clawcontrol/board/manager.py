"""Task board manager.

High-level operations for the board. The stores only know about their own
records; this manager combines them with the board's business rules:
- Lane changes that unblock dependents
- Assignment (manual and role-based) with notifications
- @mentions in comments
- The QA gate on moving tasks to done
- Agent views with live status and workload
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from clawcontrol.board.agent_registry import AgentRegistry
from clawcontrol.board.assignment import AssignmentResolver, canonical_role, match_role
from clawcontrol.board.errors import ValidationError
from clawcontrol.board.models import (
    Agent,
    AgentStatus,
    Comment,
    Lane,
    Notification,
    NotificationType,
    Task,
    TimeEntry,
    utc_now,
)
from clawcontrol.board.notifications import NotificationStore
from clawcontrol.board.persistence import JsonFilePersistence, collection_path
from clawcontrol.board.task_store import TaskStore, sort_by_priority
from clawcontrol.config import Settings, get_config_dir, get_settings

logger = logging.getLogger(__name__)

# Regex for @mentions of agent IDs (e.g. @dev-agent, @all)
MENTION_PATTERN = re.compile(r"@([\w-]+)")

# Only agents carrying this role may accept work into done
QA_ROLE = "qa"

AUTO_ASSIGN_SOURCE = "auto-assign"


def _lane_value(value: Any) -> str:
    return str(getattr(value, "value", value) or "").strip().lower()


@dataclass
class AssignmentResult:
    """Outcome of one auto-assign attempt."""

    task: Task
    assigned: bool
    agent_id: str | None = None
    role: str | None = None
    reason: str | None = None  # already-assigned, no-matching-role, no-available-agents

    def to_dict(self) -> dict[str, Any]:
        return {
            "assigned": self.assigned,
            "agentId": self.agent_id,
            "role": self.role,
            "reason": self.reason,
            "task": self.task.to_dict(),
        }


class BoardManager:
    """Orchestrates the task store, agent registry and notification store."""

    def __init__(
        self,
        tasks: TaskStore,
        agents: AgentRegistry,
        notifications: NotificationStore,
        settings: Settings | None = None,
    ):
        self.tasks = tasks
        self.agents = agents
        self.notifications = notifications
        self.settings = settings or get_settings()
        self.resolver = AssignmentResolver(agents)

    @classmethod
    def from_settings(cls, settings: Settings, clock=utc_now) -> BoardManager:
        """Build a manager backed by the JSON files in settings.data_dir."""
        data_dir = get_config_dir(settings)
        tasks = TaskStore(JsonFilePersistence(collection_path(data_dir, "tasks")), clock=clock)
        agents = AgentRegistry(
            JsonFilePersistence(collection_path(data_dir, "agents")),
            tasks,
            clock=clock,
            stale_after=timedelta(seconds=settings.heartbeat_stale_seconds),
        )
        notifications = NotificationStore(
            JsonFilePersistence(collection_path(data_dir, "notifications")), clock=clock
        )
        return cls(tasks, agents, notifications, settings=settings)

    # =========================================================================
    # Task Operations
    # =========================================================================

    async def create_task(self, draft: dict[str, Any], auto_assign: bool = False) -> Task:
        """Create a task, notify its owner, and optionally auto-assign it.

        Args:
            draft: Task fields (snake_case names)
            auto_assign: Run the resolver when the task has no owner

        Returns:
            The created (and possibly assigned) Task
        """
        task = await self.tasks.create(draft)

        if task.owner:
            await self._notify_assigned(task, by=task.created_by)
        elif auto_assign and task.lane == Lane.QUEUED:
            result = await self.auto_assign(task.id)
            task = result.task

        return task

    async def get_task(self, task_id: str) -> Task:
        return await self.tasks.get(task_id)

    async def list_tasks(self, **filters: Any) -> list[Task]:
        return await self.tasks.list(**filters)

    async def update_task(
        self,
        task_id: str,
        patch: dict[str, Any],
        by: str | None = None,
        note: str | None = None,
    ) -> Task:
        """Apply a patch and run the side effects of any lane change."""
        task, _ = await self._apply_update(task_id, patch, by, note)
        return task

    async def complete_task(self, task_id: str, by: str | None = None) -> tuple[Task, list[Task]]:
        """Move a task to done.

        Returns:
            The task and the dependents that were unblocked by it
        """
        return await self._apply_update(task_id, {"lane": Lane.DONE}, by, "completed")

    async def _apply_update(
        self,
        task_id: str,
        patch: dict[str, Any],
        by: str | None,
        note: str | None,
    ) -> tuple[Task, list[Task]]:
        before = await self.tasks.get(task_id)
        if "lane" in patch and _lane_value(patch["lane"]) == Lane.DONE.value:
            await self._check_can_complete(by)

        task = await self.tasks.update(task_id, patch, by=by, note=note)

        if "owner" in patch and task.owner and task.owner != before.owner:
            await self._notify_assigned(task, by=by)

        unblocked: list[Task] = []
        if task.lane != before.lane:
            logger.info(f"Task {task.id} moved {before.lane.value} -> {task.lane.value}")
            if task.lane == Lane.DONE:
                unblocked = await self.tasks.resolve_dependents(task.id)
                await self._notify_completed(task, by)
            elif task.lane == Lane.BLOCKED:
                await self._notify_blocked(task, by)

        await self._notify_unblocked(unblocked)
        return task, unblocked

    async def _check_can_complete(self, by: str | None) -> None:
        """Only QA agents may move work to done. Humans and unknown callers pass."""
        if not by:
            return
        agent = await self.agents.find(by)
        if agent is None:
            return
        if QA_ROLE not in {canonical_role(r) for r in agent.roles}:
            raise ValidationError(f"Only a QA agent can move tasks to done ({by} is not qa)")

    async def assign_task(self, task_id: str, agent_id: str | None, by: str | None = None) -> Task:
        """Set (or clear, with None) a task's owner."""
        if agent_id:
            await self.agents.get(agent_id)
        task = await self.tasks.assign(task_id, agent_id, by=by)
        if agent_id:
            logger.info(f"Assigned task {task_id} to {agent_id}")
            await self._notify_assigned(task, by=by)
        return task

    async def delete_task(self, task_id: str) -> list[Task]:
        """Delete a task. Dependents waiting only on it are released.

        Returns:
            The dependents that were unblocked
        """
        await self.tasks.remove(task_id)
        unblocked = await self.tasks.resolve_dependents(task_id)
        await self._notify_unblocked(unblocked)
        return unblocked

    async def set_dependencies(
        self, task_id: str, depends_on: list[str], by: str | None = None
    ) -> Task:
        before = await self.tasks.get(task_id)
        task = await self.tasks.set_dependencies(task_id, depends_on, by=by)
        if task.lane == Lane.BLOCKED and before.lane != Lane.BLOCKED:
            await self._notify_blocked(task, by)
        elif before.lane == Lane.BLOCKED and task.lane == Lane.QUEUED:
            await self._notify_unblocked([task])
        return task

    async def task_context(self, task_id: str) -> dict[str, Any]:
        """Everything an agent needs to pick up a task in one payload."""
        task = await self.tasks.get(task_id)
        owner = await self.agents.find(task.owner) if task.owner else None
        return {
            "task": task.to_dict(),
            "owner": await self.agents.view(owner) if owner else None,
            "dependencies": [t.to_dict() for t in await self.tasks.get_dependencies(task_id)],
            "unresolvedDependencies": await self.tasks.unresolved_dependencies(task),
            "dependents": [t.to_dict() for t in await self.tasks.get_dependents(task_id)],
            "subtasks": [t.to_dict() for t in await self.tasks.get_subtasks(task_id)],
        }

    async def next_task_for(self, agent_id: str) -> Task | None:
        """Highest-priority queued task owned by the agent."""
        await self.agents.get(agent_id)
        queued = await self.tasks.list(lane=Lane.QUEUED, owner=agent_id)
        ordered = sort_by_priority(queued)
        return ordered[0] if ordered else None

    # =========================================================================
    # Comments & Time
    # =========================================================================

    async def add_comment(self, task_id: str, by: str, text: str) -> Comment:
        """Post a comment, notify the owner and anyone @mentioned."""
        comment = await self.tasks.add_comment(task_id, by, text)
        task = await self.tasks.get(task_id)

        notified: set[str] = {comment.by}
        if task.owner and task.owner not in notified:
            await self._notify(
                task.owner,
                NotificationType.TASK_COMMENT,
                f"New comment on '{task.title}'",
                f"{comment.by}: {comment.text}",
                task=task,
                source=comment.by,
            )
            notified.add(task.owner)

        for agent_id in await self._mentioned_agents(comment.text):
            if agent_id in notified:
                continue
            await self._notify(
                agent_id,
                NotificationType.MENTION,
                f"{comment.by} mentioned you in '{task.title}'",
                comment.text,
                task=task,
                source=comment.by,
            )
            notified.add(agent_id)

        return comment

    async def _mentioned_agents(self, text: str) -> list[str]:
        mentions = MENTION_PATTERN.findall(text)
        if "all" in (m.lower() for m in mentions):
            return [a.id for a in await self.agents.list()]

        found = []
        for mention in mentions:
            agent = await self.agents.find(mention)
            if agent and agent.id not in found:
                found.append(agent.id)
        return found

    async def log_time(
        self,
        task_id: str,
        agent_id: str,
        hours: float,
        start: str | None = None,
        end: str | None = None,
        note: str | None = None,
    ) -> TimeEntry:
        return await self.tasks.log_time(task_id, agent_id, hours, start=start, end=end, note=note)

    async def time_entries(self, task_id: str) -> dict[str, Any]:
        task = await self.tasks.get(task_id)
        return {
            "taskId": task.id,
            "estimatedHours": task.estimated_hours,
            "actualHours": task.actual_hours,
            "entries": [e.to_dict() for e in task.time_entries],
        }

    # =========================================================================
    # Assignment
    # =========================================================================

    async def auto_assign(self, task_id: str, by: str = AUTO_ASSIGN_SOURCE) -> AssignmentResult:
        """Assign a task to the least-loaded online agent with the matching role."""
        task = await self.tasks.get(task_id)
        if task.owner:
            return AssignmentResult(
                task=task, assigned=False, agent_id=task.owner, reason="already-assigned"
            )

        role = match_role(task)
        if role is None:
            logger.info(f"Auto-assign: no role matches task {task_id} ('{task.title}')")
            return AssignmentResult(task=task, assigned=False, reason="no-matching-role")

        agent_id = await self.resolver.resolve(task)
        if agent_id is None:
            logger.info(f"Auto-assign: no online {role} agent for task {task_id}")
            return AssignmentResult(task=task, assigned=False, role=role, reason="no-available-agents")

        task = await self.tasks.assign(task_id, agent_id, by=by)
        logger.info(f"Auto-assigned task {task_id} to {agent_id} (role: {role})")
        await self._notify_assigned(task, by=by)
        return AssignmentResult(task=task, assigned=True, agent_id=agent_id, role=role)

    async def auto_assign_pending(self) -> list[AssignmentResult]:
        """Auto-assign every unowned queued task, most urgent first."""
        queued = [t for t in await self.tasks.list(lane=Lane.QUEUED) if not t.owner]
        return [await self.auto_assign(task.id) for task in sort_by_priority(queued)]

    async def suggest_assignment(self, task_id: str) -> dict[str, Any]:
        task = await self.tasks.get(task_id)
        suggestion = await self.resolver.suggest(task)
        suggestion["taskId"] = task.id
        suggestion["currentOwner"] = task.owner
        return suggestion

    # =========================================================================
    # Agent Operations
    # =========================================================================

    async def register_agent(self, data: dict[str, Any]) -> Agent:
        return await self.agents.register(data)

    async def heartbeat(self, agent_id: str, **details: Any) -> Agent:
        return await self.agents.heartbeat(agent_id, **details)

    async def set_current_task(self, agent_id: str, task_id: str | None) -> Agent:
        return await self.agents.set_current_task(agent_id, task_id)

    async def get_agent(self, agent_id: str) -> dict[str, Any]:
        """Agent view with live status and workload."""
        return await self.agents.view(await self.agents.get(agent_id))

    async def list_agents(
        self, status: AgentStatus | str | None = None, role: str | None = None
    ) -> list[dict[str, Any]]:
        agents = await self.agents.list_by_role(role) if role else await self.agents.list()
        if status:
            wanted = AgentStatus(status)
            agents = [a for a in agents if await self.agents.effective_status(a) == wanted]
        return [await self.agents.view(a) for a in agents]

    async def agent_tasks(self, agent_id: str) -> list[Task]:
        await self.agents.get(agent_id)
        return await self.agents.owned_tasks(agent_id)

    async def delete_agent(self, agent_id: str) -> None:
        """Remove an agent and its inbox. Tasks keep their owner field."""
        await self.agents.delete(agent_id)
        removed = await self.notifications.delete_for_agent(agent_id)
        if removed:
            logger.info(f"Dropped {removed} notifications of deleted agent {agent_id}")

    # =========================================================================
    # Notification Operations
    # =========================================================================

    async def send_notification(self, data: dict[str, Any]) -> Notification:
        """Queue a notification from an external producer."""
        agent_id = (data.get("agent_id") or "").strip()
        if not agent_id:
            raise ValidationError("agentId required")
        return await self.notifications.create(
            agent_id,
            data.get("type") or NotificationType.MENTION,
            data.get("title") or "",
            text=data.get("text") or "",
            task_id=data.get("task_id"),
            project_id=data.get("project_id"),
            source=data.get("source"),
            metadata=data.get("metadata"),
        )

    async def notifications_for(
        self, agent_id: str, unread_only: bool = False
    ) -> list[Notification]:
        return await self.notifications.list_for_agent(agent_id, unread_only=unread_only)

    async def mark_notification_read(self, agent_id: str, notification_id: str) -> Notification:
        return await self.notifications.mark_read(agent_id, notification_id)

    async def mark_all_read(self, agent_id: str) -> int:
        return await self.notifications.mark_all_read(agent_id)

    async def delete_notification(self, notification_id: str) -> None:
        await self.notifications.delete(notification_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _notify(
        self,
        agent_id: str,
        notification_type: NotificationType,
        title: str,
        text: str,
        task: Task | None = None,
        source: str | None = None,
    ) -> Notification | None:
        """Queue a notification for a registered agent. Unknown IDs are skipped."""
        if await self.agents.find(agent_id) is None:
            logger.debug(f"Skipping {notification_type.value} for unregistered agent {agent_id}")
            return None
        return await self.notifications.create(
            agent_id,
            notification_type,
            title,
            text,
            task_id=task.id if task else None,
            project_id=task.project_id if task else None,
            source=source,
        )

    async def _notify_assigned(self, task: Task, by: str | None) -> None:
        if not task.owner or task.owner == by:
            return
        await self._notify(
            task.owner,
            NotificationType.TASK_ASSIGNED,
            f"Assigned: {task.title}",
            f"You were assigned '{task.title}' ({task.priority.value}, {task.lane.value})",
            task=task,
            source=by,
        )

    async def _notify_completed(self, task: Task, by: str | None) -> None:
        recipients = []
        for agent_id in (task.created_by, task.owner):
            if agent_id and agent_id != by and agent_id not in recipients:
                recipients.append(agent_id)
        for agent_id in recipients:
            await self._notify(
                agent_id,
                NotificationType.TASK_COMPLETED,
                f"Completed: {task.title}",
                f"'{task.title}' was moved to done" + (f" by {by}" if by else ""),
                task=task,
                source=by,
            )

    async def _notify_blocked(self, task: Task, by: str | None) -> None:
        if not task.owner or task.owner == by:
            return
        reason = task.status_history[-1].note if task.status_history else ""
        await self._notify(
            task.owner,
            NotificationType.TASK_BLOCKED,
            f"Blocked: {task.title}",
            f"'{task.title}' is blocked" + (f": {reason}" if reason else ""),
            task=task,
            source=by,
        )

    async def _notify_unblocked(self, tasks: list[Task]) -> None:
        for task in tasks:
            if not task.owner:
                continue
            await self._notify(
                task.owner,
                NotificationType.TASK_UNBLOCKED,
                f"Unblocked: {task.title}",
                f"All dependencies of '{task.title}' are done; it is back in queued",
                task=task,
                source="system",
            )

    # =========================================================================
    # Maintenance & Stats
    # =========================================================================

    async def prune(self, now: datetime | None = None) -> dict[str, list[str]]:
        """Mark stale agents offline and drop notifications past retention."""
        retention = timedelta(days=self.settings.notification_retention_days)
        return {
            "staleAgents": await self.agents.prune_stale(now),
            "notifications": await self.notifications.prune(now, retention=retention),
        }

    async def stats(self) -> dict[str, Any]:
        """Board statistics."""
        by_status = {status.value: 0 for status in AgentStatus}
        for agent in await self.agents.list():
            by_status[(await self.agents.effective_status(agent)).value] += 1
        return {
            "tasks": await self.tasks.stats(),
            "agents": {"total": len(self.agents), "by_status": by_status},
            "notifications": await self.notifications.stats(),
        }


# =========================================================================
# Factory Function
# =========================================================================

_manager_instance: BoardManager | None = None


def get_board_manager() -> BoardManager:
    """Get or create the board manager singleton."""
    global _manager_instance
    if _manager_instance is None:
        _manager_instance = BoardManager.from_settings(get_settings())
    return _manager_instance


def reset_board_manager() -> None:
    """Reset the manager singleton (for testing)."""
    global _manager_instance
    _manager_instance = None
