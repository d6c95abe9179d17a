"""Task board data models.

These models define the core data structures for:
- Tasks (kanban work items moving through lanes)
- Agents (LLM-backed workers with roles and heartbeats)
- Notifications (per-agent inbox entries pushed by the dispatcher)

Design notes:
- Dataclasses with explicit to_dict/from_dict for the JSON files
- Timestamps are ISO 8601 UTC strings
- JSON keys keep the camelCase names the bridge clients already use
- statusHistory, timeEntries and comments are append-only
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# ============================================================================
# Enums
# ============================================================================


class Lane(str, Enum):
    """Kanban lane a task sits in."""

    PROPOSED = "proposed"  # Suggested, not accepted yet
    QUEUED = "queued"  # Ready to be picked up
    DEVELOPMENT = "development"  # Being worked on
    REVIEW = "review"  # Work finished, waiting for QA
    BLOCKED = "blocked"  # Stuck on a dependency or a manual block
    DONE = "done"  # Accepted by QA


class Priority(str, Enum):
    """Task priority. P0 is the most urgent."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        """Sort key, lower is more urgent."""
        return int(self.value[1])


class AgentStatus(str, Enum):
    """Agent liveness as seen by the board."""

    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"


class NotificationType(str, Enum):
    """Events an agent can be notified about."""

    TASK_ASSIGNED = "task-assigned"
    TASK_COMMENT = "task-comment"
    TASK_COMPLETED = "task-completed"
    TASK_BLOCKED = "task-blocked"
    TASK_UNBLOCKED = "task-unblocked"
    MENTION = "mention"


# Lanes in which unresolved dependencies are not allowed
DEPENDENCY_GATED_LANES = frozenset({Lane.DEVELOPMENT, Lane.REVIEW, Lane.DONE})


# ============================================================================
# Helper Functions
# ============================================================================


def generate_id(prefix: str = "") -> str:
    """Generate a unique ID, optionally prefixed (e.g. ``task-``)."""
    value = uuid.uuid4().hex[:12]
    return f"{prefix}-{value}" if prefix else value


def utc_now() -> datetime:
    return datetime.now(UTC)


def now_iso() -> str:
    """Get current UTC time as ISO 8601 string."""
    return utc_now().isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp, treating naive values as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_lane(value: Any) -> Lane:
    """Map free-form input to a lane, falling back to QUEUED."""
    try:
        return Lane(str(value or "").strip().lower())
    except ValueError:
        return Lane.QUEUED


def normalize_priority(value: Any) -> Priority:
    """Map free-form input to a priority, falling back to P2."""
    try:
        return Priority(str(value or "").strip().upper())
    except ValueError:
        return Priority.P2


def _dedupe(values: list[str] | None) -> list[str]:
    seen: list[str] = []
    for value in values or []:
        if value and value not in seen:
            seen.append(value)
    return seen


# ============================================================================
# Task log entries
# ============================================================================


@dataclass
class StatusChange:
    """One lane transition in a task's history."""

    to_lane: Lane
    from_lane: Lane | None = None
    note: str = ""
    by: str | None = None
    at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at,
            "from": self.from_lane.value if self.from_lane else None,
            "to": self.to_lane.value,
            "note": self.note,
            "by": self.by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusChange":
        from_lane = data.get("from")
        return cls(
            to_lane=normalize_lane(data.get("to")),
            from_lane=normalize_lane(from_lane) if from_lane else None,
            note=data.get("note") or "",
            by=data.get("by"),
            at=data.get("at") or now_iso(),
        )


@dataclass
class TimeEntry:
    """Hours an agent logged against a task."""

    agent_id: str
    hours: float
    start: str = field(default_factory=now_iso)
    end: str = field(default_factory=now_iso)
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "hours": self.hours,
            "start": self.start,
            "end": self.end,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeEntry":
        return cls(
            agent_id=data.get("agentId", ""),
            hours=float(data.get("hours", 0)),
            start=data.get("start") or now_iso(),
            end=data.get("end") or now_iso(),
            note=data.get("note"),
        )


@dataclass
class Comment:
    """A comment left on a task."""

    by: str
    text: str
    at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"by": self.by, "text": self.text, "at": self.at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Comment":
        return cls(
            by=data.get("by") or "unknown",
            text=data.get("text", ""),
            at=data.get("at") or now_iso(),
        )


# ============================================================================
# Data Models
# ============================================================================


@dataclass
class Task:
    """
    A work item on the board.

    Tasks flow queued -> development -> review -> done, and can be parked
    in blocked at any point. Only the owner field says who works on a task;
    the agent side keeps no independent copy of it.

    Attributes:
        id: Unique identifier, immutable after creation
        title: Short summary (required)
        description: Free-form details
        problem: Problem statement
        scope: What is in scope (used for role matching)
        acceptance_criteria: Checklist QA verifies against
        lane: Current kanban lane
        priority: P0..P3
        owner: Agent ID working the task, None when unassigned
        created_by: Agent or user who created the task
        project_id: Project the task belongs to
        parent_id: Parent task for subtasks
        tags: Categorization tags
        depends_on: Task IDs that must be done first
        blocked_by_dependencies: True when parked in blocked by the dependency gate
        estimated_hours: Optional estimate
        actual_hours: Sum of logged time entries
        status_history: Append-only lane transitions
        time_entries: Append-only time log
        comments: Append-only comment thread
        created_at: When the task was created
        updated_at: Refreshed on every mutation
        metadata: Extensible key-value data
    """

    id: str = field(default_factory=lambda: generate_id("task"))
    title: str = ""
    description: str = ""
    problem: str = ""
    scope: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    lane: Lane = Lane.QUEUED
    priority: Priority = Priority.P2
    owner: str | None = None
    created_by: str | None = None
    project_id: str | None = None
    parent_id: str | None = None
    tags: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    blocked_by_dependencies: bool = False
    estimated_hours: float | None = None
    actual_hours: float = 0.0
    status_history: list[StatusChange] = field(default_factory=list)
    time_entries: list[TimeEntry] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.depends_on = _dedupe(self.depends_on)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "problem": self.problem,
            "scope": self.scope,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "lane": self.lane.value,
            "priority": self.priority.value,
            "owner": self.owner,
            "createdBy": self.created_by,
            "projectId": self.project_id,
            "parentId": self.parent_id,
            "tags": list(self.tags),
            "dependsOn": list(self.depends_on),
            "blockedByDependencies": self.blocked_by_dependencies,
            "estimatedHours": self.estimated_hours,
            "actualHours": self.actual_hours,
            "statusHistory": [s.to_dict() for s in self.status_history],
            "timeEntries": [t.to_dict() for t in self.time_entries],
            "comments": [c.to_dict() for c in self.comments],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Create from dictionary.

        Accepts ``assignedTo`` as a legacy alias of ``owner``.
        """
        created_at = data.get("createdAt") or now_iso()
        return cls(
            id=data.get("id") or generate_id("task"),
            title=data.get("title", ""),
            description=data.get("description") or "",
            problem=data.get("problem") or "",
            scope=data.get("scope") or "",
            acceptance_criteria=list(data.get("acceptanceCriteria") or []),
            lane=normalize_lane(data.get("lane")),
            priority=normalize_priority(data.get("priority")),
            owner=data.get("owner") or data.get("assignedTo"),
            created_by=data.get("createdBy"),
            project_id=data.get("projectId"),
            parent_id=data.get("parentId"),
            tags=list(data.get("tags") or []),
            depends_on=list(data.get("dependsOn") or []),
            blocked_by_dependencies=bool(data.get("blockedByDependencies", False)),
            estimated_hours=data.get("estimatedHours"),
            actual_hours=float(data.get("actualHours") or 0.0),
            status_history=[StatusChange.from_dict(s) for s in data.get("statusHistory") or []],
            time_entries=[TimeEntry.from_dict(t) for t in data.get("timeEntries") or []],
            comments=[Comment.from_dict(c) for c in data.get("comments") or []],
            created_at=created_at,
            updated_at=data.get("updatedAt") or created_at,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Agent:
    """
    An automated worker registered with the board.

    The persisted ``status`` is the last status the registry wrote. Callers
    that need the live value go through AgentRegistry.effective_status(),
    which recomputes it from last_heartbeat.

    Attributes:
        id: Unique identifier (e.g. "dev-agent", "pixel")
        name: Display name
        emoji: Avatar
        roles: Role tags (frontend, backend, qa, architect, pm, ...)
        model: LLM model the agent runs on
        endpoint: Explicit base URL for notification pushes
        tailscale_ip: Instance IP used to build a push URL
        instance_id: Host instance; "local" or empty means this machine
        status: Last persisted status
        current_task_id: Task the agent says it is working on
        last_heartbeat: Last time the agent checked in
        created_at: When the agent registered
        updated_at: Last modification time
        metadata: Extensible key-value data
    """

    id: str = ""
    name: str = ""
    emoji: str = "🤖"
    roles: list[str] = field(default_factory=list)
    model: str = ""
    endpoint: str | None = None
    tailscale_ip: str | None = None
    instance_id: str | None = None
    status: AgentStatus = AgentStatus.OFFLINE
    current_task_id: str | None = None
    last_heartbeat: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "emoji": self.emoji,
            "roles": list(self.roles),
            "model": self.model,
            "endpoint": self.endpoint,
            "tailscaleIP": self.tailscale_ip,
            "instanceId": self.instance_id,
            "status": self.status.value,
            "currentTask": self.current_task_id,
            "lastHeartbeat": self.last_heartbeat,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        """Create from dictionary."""
        try:
            status = AgentStatus(data.get("status") or "offline")
        except ValueError:
            status = AgentStatus.OFFLINE
        return cls(
            id=data.get("id", ""),
            name=data.get("name") or data.get("id", ""),
            emoji=data.get("emoji") or "🤖",
            roles=list(data.get("roles") or []),
            model=data.get("model") or "",
            endpoint=data.get("endpoint"),
            tailscale_ip=data.get("tailscaleIP"),
            instance_id=data.get("instanceId"),
            status=status,
            current_task_id=data.get("currentTask"),
            last_heartbeat=data.get("lastHeartbeat"),
            created_at=data.get("createdAt") or now_iso(),
            updated_at=data.get("updatedAt") or now_iso(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Notification:
    """
    A message for one agent.

    ``delivered`` tracks the dispatcher's push to the agent endpoint and
    ``read`` tracks the agent's acknowledgment. The two flags are
    independent: an agent may read a notification it pulled over the API
    before any push succeeded.

    Attributes:
        id: Unique identifier
        agent_id: Recipient agent
        type: What triggered the notification
        title: Short headline
        text: Human-readable body
        task_id: Related task
        project_id: Related project
        source: Who or what produced it (e.g. "auto-assign")
        read: Whether the agent acknowledged it
        delivered: Whether a push succeeded
        delivered_at: When the push succeeded
        attempts: Failed push attempts so far
        next_attempt_at: Earliest time of the next push attempt
        last_error: Error of the most recent failed attempt
        dead_letter: True once retries are exhausted
        created_at: When the notification was created
        metadata: Extensible key-value data
    """

    agent_id: str = ""
    type: NotificationType = NotificationType.MENTION
    title: str = ""
    text: str = ""
    id: str = field(default_factory=lambda: generate_id("notif"))
    task_id: str | None = None
    project_id: str | None = None
    source: str | None = None
    read: bool = False
    delivered: bool = False
    delivered_at: str | None = None
    attempts: int = 0
    next_attempt_at: str | None = None
    last_error: str | None = None
    dead_letter: bool = False
    created_at: str = field(default_factory=now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "type": self.type.value,
            "title": self.title,
            "text": self.text,
            "taskId": self.task_id,
            "projectId": self.project_id,
            "from": self.source,
            "read": self.read,
            "delivered": self.delivered,
            "deliveredAt": self.delivered_at,
            "attempts": self.attempts,
            "nextAttemptAt": self.next_attempt_at,
            "lastError": self.last_error,
            "deadLetter": self.dead_letter,
            "createdAt": self.created_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        """Create from dictionary."""
        return cls(
            id=data.get("id") or generate_id("notif"),
            agent_id=data.get("agentId", ""),
            type=NotificationType(data.get("type") or "mention"),
            title=data.get("title") or "",
            text=data.get("text") or "",
            task_id=data.get("taskId"),
            project_id=data.get("projectId"),
            source=data.get("from"),
            read=bool(data.get("read", False)),
            delivered=bool(data.get("delivered", False)),
            delivered_at=data.get("deliveredAt"),
            attempts=int(data.get("attempts") or 0),
            next_attempt_at=data.get("nextAttemptAt"),
            last_error=data.get("lastError"),
            dead_letter=bool(data.get("deadLetter", False)),
            created_at=data.get("createdAt") or now_iso(),
            metadata=dict(data.get("metadata") or {}),
        )
