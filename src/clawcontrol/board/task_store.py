"""Task entity store.

Owns every Task record: CRUD, lane transitions, the comment/time logs and
dependency bookkeeping. Records live in an in-memory dict and the whole
collection is written through the persistence port after each mutation.

Design notes:
- Mutations are staged on a copy and only swapped in after the write
  succeeds, so a PersistenceError leaves memory and disk unchanged
- Dependencies are advisory: a task whose dependencies are not done is
  parked in BLOCKED instead of being rejected
- Dependency IDs that no longer exist are ignored when checking readiness
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from clawcontrol.board.errors import NotFoundError, ValidationError
from clawcontrol.board.models import (
    DEPENDENCY_GATED_LANES,
    Comment,
    Lane,
    Priority,
    StatusChange,
    Task,
    TimeEntry,
    generate_id,
    utc_now,
)
from clawcontrol.board.protocol import RecordPersistence

logger = logging.getLogger(__name__)

DEPENDENCY_NOTE = "waiting on dependencies"
UNBLOCKED_NOTE = "auto-unblocked"

# Fields a caller may set on create; everything else is owned by the store
CREATE_FIELDS = frozenset(
    {
        "id",
        "title",
        "description",
        "problem",
        "scope",
        "acceptance_criteria",
        "lane",
        "priority",
        "owner",
        "created_by",
        "project_id",
        "parent_id",
        "tags",
        "depends_on",
        "estimated_hours",
        "metadata",
    }
)

# Fields a caller may change on update
PATCH_FIELDS = CREATE_FIELDS - {"id", "created_by"}


def _coerce_lane(value: Any) -> Lane:
    if isinstance(value, Lane):
        return value
    try:
        return Lane(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid lane: {value}") from None


def _coerce_priority(value: Any) -> Priority:
    if isinstance(value, Priority):
        return value
    try:
        return Priority(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid priority: {value}") from None


def sort_by_priority(tasks: Iterable[Task]) -> list[Task]:
    """Most urgent first, oldest first within a priority."""
    return sorted(tasks, key=lambda t: (t.priority.rank, t.created_at))


class TaskStore:
    """In-memory task mapping with write-through persistence."""

    def __init__(
        self,
        persistence: RecordPersistence,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._persistence = persistence
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._load()

    # =========================================================================
    # Persistence Helpers
    # =========================================================================

    def _load(self) -> None:
        for data in self._persistence.load_all().values():
            task = Task.from_dict(data)
            self._tasks[task.id] = task
        logger.info(f"Task store loaded: {len(self._tasks)} tasks")

    def _commit(self, changed: Iterable[Task] = (), removed: str | None = None) -> None:
        """Persist the staged state, then make it the live state."""
        staged = dict(self._tasks)
        for task in changed:
            staged[task.id] = task
        if removed is not None:
            staged.pop(removed, None)
        self._persistence.save_all({tid: t.to_dict() for tid, t in staged.items()})
        self._tasks = staged

    def _now(self) -> str:
        return self._clock().isoformat()

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def _check_dependencies(self, task_id: str, depends_on: list[str]) -> list[str]:
        deps: list[str] = []
        for dep_id in depends_on:
            if dep_id == task_id:
                raise ValidationError("A task cannot depend on itself")
            if dep_id not in self._tasks:
                raise ValidationError(f"Unknown dependency: {dep_id}")
            if dep_id not in deps:
                deps.append(dep_id)
        return deps

    def _unresolved(self, task: Task) -> list[str]:
        return [
            dep_id
            for dep_id in task.depends_on
            if dep_id in self._tasks and self._tasks[dep_id].lane != Lane.DONE
        ]

    def _reevaluate_block(self, task: Task, by: str | None) -> None:
        """Park or release a task after its dependency list changed."""
        unresolved = self._unresolved(task)
        if unresolved and task.lane == Lane.QUEUED:
            self._move(task, Lane.BLOCKED, DEPENDENCY_NOTE, by)
            task.blocked_by_dependencies = True
        elif not unresolved and task.lane == Lane.BLOCKED and task.blocked_by_dependencies:
            self._move(task, Lane.QUEUED, UNBLOCKED_NOTE, by)

    def _move(self, task: Task, to_lane: Lane, note: str, by: str | None) -> None:
        """Change lane and append exactly one history entry."""
        task.status_history.append(
            StatusChange(
                to_lane=to_lane,
                from_lane=task.lane,
                note=note,
                by=by,
                at=self._now(),
            )
        )
        if task.lane == Lane.BLOCKED and to_lane != Lane.BLOCKED:
            task.blocked_by_dependencies = False
        task.lane = to_lane

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create(self, draft: dict[str, Any]) -> Task:
        """Create a task from a draft dict of Task field names."""
        unknown = set(draft) - CREATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")

        title = str(draft.get("title") or "").strip()
        if not title:
            raise ValidationError("title required")

        task_id = str(draft.get("id") or "").strip() or generate_id("task")
        if task_id in self._tasks:
            raise ValidationError(f"Task already exists: {task_id}")

        lane = _coerce_lane(draft["lane"]) if draft.get("lane") else Lane.QUEUED
        priority = _coerce_priority(draft["priority"]) if draft.get("priority") else Priority.P2
        now = self._now()

        task = Task(
            id=task_id,
            title=title,
            description=draft.get("description") or "",
            problem=draft.get("problem") or "",
            scope=draft.get("scope") or "",
            acceptance_criteria=list(draft.get("acceptance_criteria") or []),
            lane=lane,
            priority=priority,
            owner=draft.get("owner") or None,
            created_by=draft.get("created_by"),
            project_id=draft.get("project_id"),
            parent_id=draft.get("parent_id"),
            tags=list(draft.get("tags") or []),
            depends_on=self._check_dependencies(task_id, list(draft.get("depends_on") or [])),
            estimated_hours=draft.get("estimated_hours"),
            created_at=now,
            updated_at=now,
            metadata=dict(draft.get("metadata") or {}),
        )

        note = "created"
        if self._unresolved(task) and task.lane in (Lane.QUEUED, Lane.BLOCKED):
            task.lane = Lane.BLOCKED
            task.blocked_by_dependencies = True
            note = f"created, {DEPENDENCY_NOTE}"
        task.status_history.append(
            StatusChange(to_lane=task.lane, note=note, by=task.created_by, at=now)
        )

        self._commit([task])
        logger.info(f"Created task {task.id}: {title} ({task.priority.value}, {task.lane.value})")
        return task

    async def get(self, task_id: str) -> Task:
        """Get a task by ID. Raises NotFoundError if absent."""
        return self._require(task_id)

    async def find(self, task_id: str) -> Task | None:
        """Get a task by ID, or None."""
        return self._tasks.get(task_id)

    async def update(
        self,
        task_id: str,
        patch: dict[str, Any],
        by: str | None = None,
        note: str | None = None,
    ) -> Task:
        """Merge patch fields into a task.

        A lane change appends one statusHistory entry. Moving into
        development/review/done with unresolved dependencies parks the task
        in blocked instead.
        """
        current = self._require(task_id)
        unknown = set(patch) - PATCH_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        task = copy.deepcopy(current)

        if "title" in patch:
            title = str(patch["title"] or "").strip()
            if not title:
                raise ValidationError("title required")
            task.title = title
        if "priority" in patch:
            task.priority = _coerce_priority(patch["priority"])
        if "depends_on" in patch:
            task.depends_on = self._check_dependencies(task_id, list(patch["depends_on"] or []))
        if "owner" in patch:
            task.owner = patch["owner"] or None
        if "acceptance_criteria" in patch:
            task.acceptance_criteria = list(patch["acceptance_criteria"] or [])
        if "tags" in patch:
            task.tags = list(patch["tags"] or [])
        if "metadata" in patch:
            task.metadata = dict(patch["metadata"] or {})
        for name in ("description", "problem", "scope"):
            if name in patch:
                setattr(task, name, patch[name] or "")
        for name in ("project_id", "parent_id", "estimated_hours"):
            if name in patch:
                setattr(task, name, patch[name])

        if "lane" in patch:
            target = _coerce_lane(patch["lane"])
            move_note = note or "updated"
            gated = False
            unresolved = self._unresolved(task)
            if unresolved and target in DEPENDENCY_GATED_LANES:
                target = Lane.BLOCKED
                move_note = DEPENDENCY_NOTE
                gated = True
            elif unresolved and "depends_on" in patch and target in (Lane.QUEUED, Lane.BLOCKED):
                # Same rule as create: new dependencies park the task
                if target == Lane.QUEUED:
                    move_note = DEPENDENCY_NOTE
                target = Lane.BLOCKED
                gated = True
            if target != task.lane:
                self._move(task, target, move_note, by)
            if gated:
                task.blocked_by_dependencies = True
        elif "depends_on" in patch:
            self._reevaluate_block(task, by)

        task.updated_at = self._now()
        self._commit([task])
        return task

    async def assign(self, task_id: str, agent_id: str | None, by: str | None = None) -> Task:
        """Set the owner and record the assignment in the history."""
        task = copy.deepcopy(self._require(task_id))
        task.owner = agent_id or None
        text = f"assigned to {agent_id}" if agent_id else "unassigned"
        task.status_history.append(
            StatusChange(to_lane=task.lane, from_lane=task.lane, note=text, by=by, at=self._now())
        )
        task.updated_at = self._now()
        self._commit([task])
        return task

    async def list(
        self,
        lane: Lane | str | None = None,
        owner: str | None = None,
        project_id: str | None = None,
        priority: Priority | str | None = None,
        tags: list[str] | None = None,
    ) -> list[Task]:
        """List tasks in insertion order with optional filters."""
        tasks = list(self._tasks.values())

        if lane:
            lane_value = _coerce_lane(lane)
            tasks = [t for t in tasks if t.lane == lane_value]

        if owner:
            tasks = [t for t in tasks if t.owner == owner]

        if project_id:
            tasks = [t for t in tasks if t.project_id == project_id]

        if priority:
            priority_value = _coerce_priority(priority)
            tasks = [t for t in tasks if t.priority == priority_value]

        if tags:
            tasks = [t for t in tasks if any(tag in t.tags for tag in tags)]

        return tasks

    async def remove(self, task_id: str) -> None:
        """Delete a task. Other tasks' dependsOn entries are left as they are."""
        self._require(task_id)
        self._commit(removed=task_id)
        logger.info(f"Deleted task {task_id}")

    # =========================================================================
    # Append-only logs
    # =========================================================================

    async def add_comment(self, task_id: str, by: str, text: str) -> Comment:
        """Append a comment to the task thread."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("text required")

        task = copy.deepcopy(self._require(task_id))
        comment = Comment(by=(by or "").strip() or "unknown", text=text, at=self._now())
        task.comments.append(comment)
        task.updated_at = comment.at
        self._commit([task])
        return comment

    async def log_time(
        self,
        task_id: str,
        agent_id: str,
        hours: float,
        start: str | None = None,
        end: str | None = None,
        note: str | None = None,
    ) -> TimeEntry:
        """Append a time entry. Does not touch the lane."""
        if not (agent_id or "").strip():
            raise ValidationError("agentId required")
        if hours is None or hours <= 0:
            raise ValidationError("hours must be positive")

        task = copy.deepcopy(self._require(task_id))
        now = self._now()
        entry = TimeEntry(
            agent_id=agent_id.strip(),
            hours=float(hours),
            start=start or now,
            end=end or now,
            note=note,
        )
        task.time_entries.append(entry)
        task.actual_hours = round(task.actual_hours + entry.hours, 4)
        task.updated_at = now
        self._commit([task])
        return entry

    # =========================================================================
    # Dependencies
    # =========================================================================

    async def set_dependencies(
        self, task_id: str, depends_on: list[str], by: str | None = None
    ) -> Task:
        """Replace a task's dependency list and re-evaluate its block."""
        task = copy.deepcopy(self._require(task_id))
        task.depends_on = self._check_dependencies(task_id, depends_on)
        self._reevaluate_block(task, by)

        task.updated_at = self._now()
        self._commit([task])
        return task

    async def unresolved_dependencies(self, task: Task) -> list[str]:
        """IDs of existing dependencies that are not done yet."""
        return self._unresolved(task)

    async def get_dependencies(self, task_id: str) -> list[Task]:
        """Tasks this task depends on (missing IDs skipped)."""
        task = self._require(task_id)
        return [self._tasks[d] for d in task.depends_on if d in self._tasks]

    async def get_dependents(self, task_id: str) -> list[Task]:
        """Tasks that list this task in their dependsOn."""
        return [t for t in self._tasks.values() if task_id in t.depends_on]

    async def get_subtasks(self, parent_id: str) -> list[Task]:
        return [t for t in self._tasks.values() if t.parent_id == parent_id]

    async def resolve_dependents(self, task_id: str) -> list[Task]:
        """Unblock dependents of a finished (or deleted) task.

        Scans every task whose dependsOn contains task_id. A dependent whose
        dependencies are now all done and that sits in blocked because of
        them moves back to queued.

        Returns:
            The tasks that were moved out of blocked.
        """
        unblocked: list[Task] = []
        for dependent in list(self._tasks.values()):
            if task_id not in dependent.depends_on:
                continue
            if self._unresolved(dependent):
                continue
            if dependent.lane != Lane.BLOCKED or not dependent.blocked_by_dependencies:
                continue

            task = copy.deepcopy(dependent)
            self._move(task, Lane.QUEUED, UNBLOCKED_NOTE, "system")
            task.updated_at = self._now()
            unblocked.append(task)

        if unblocked:
            self._commit(unblocked)
            logger.info(
                f"Task {task_id} unblocked {len(unblocked)} dependents: "
                f"{', '.join(t.id for t in unblocked)}"
            )
        return unblocked

    # =========================================================================
    # Utility Operations
    # =========================================================================

    async def stats(self) -> dict[str, Any]:
        """Task counts per lane."""
        by_lane = {lane.value: 0 for lane in Lane}
        for task in self._tasks.values():
            by_lane[task.lane.value] += 1
        return {
            "total": len(self._tasks),
            "by_lane": by_lane,
            "unassigned": len([t for t in self._tasks.values() if not t.owner]),
        }

    def __len__(self) -> int:
        return len(self._tasks)
