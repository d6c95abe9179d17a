"""Task board API endpoints.

FastAPI router for the bridge that agents and the dashboard talk to.

Provides REST endpoints for:
- Tasks: CRUD, comments, time log, dependencies, completion
- Assignment: manual, role-based auto-assign, suggestions
- Agents: registration, heartbeat, current task, owned tasks
- Notifications: per-agent inbox, mark read, manual send
- Stats and dispatcher status

Request and response bodies use camelCase keys (dependsOn, agentId, ...).

Mount this router to your FastAPI app:
    from clawcontrol.board.api import router as board_router
    app.include_router(board_router, prefix="/api")
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from clawcontrol.board.errors import NotFoundError, PersistenceError, ValidationError
from clawcontrol.board.manager import get_board_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Task Board"])


@contextmanager
def _board_errors() -> Iterator[None]:
    """Translate board errors into HTTP responses."""
    try:
        yield
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except PersistenceError as e:
        logger.error(f"Write failed: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


# ============================================================================
# Request/Response Models
# ============================================================================


class CamelModel(BaseModel):
    """Accepts camelCase keys (and snake_case, for Python callers)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateTaskRequest(CamelModel):
    """Request to create a new task."""

    id: str | None = None
    title: str = Field(..., min_length=1, max_length=300)
    description: str = ""
    problem: str = ""
    scope: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    lane: str | None = None
    priority: str | None = None
    owner: str | None = None
    created_by: str | None = None
    project_id: str | None = None
    parent_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    estimated_hours: float | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    auto_assign: bool = False


class UpdateTaskRequest(CamelModel):
    """Partial task update. Only fields present in the body are applied."""

    title: str | None = None
    description: str | None = None
    problem: str | None = None
    scope: str | None = None
    acceptance_criteria: list[str] | None = None
    lane: str | None = None
    priority: str | None = None
    owner: str | None = None
    project_id: str | None = None
    parent_id: str | None = None
    tags: list[str] | None = None
    depends_on: list[str] | None = None
    estimated_hours: float | None = None
    metadata: dict[str, Any] | None = None
    by: str | None = None
    note: str | None = None


class CommentRequest(CamelModel):
    by: str = "unknown"
    text: str = ""


class TimeEntryRequest(CamelModel):
    agent_id: str = ""
    hours: float = 0
    start: str | None = None
    end: str | None = None
    note: str | None = None


class AssignTaskRequest(CamelModel):
    agent_id: str | None = None
    by: str | None = None


class CompleteTaskRequest(CamelModel):
    by: str | None = None


class DependenciesRequest(CamelModel):
    depends_on: list[str] = Field(default_factory=list)
    by: str | None = None


class RegisterAgentRequest(CamelModel):
    """Request to register (or re-register) an agent."""

    id: str = Field(..., min_length=1, max_length=100)
    name: str | None = None
    emoji: str | None = None
    roles: list[str] | None = None
    model: str | None = None
    endpoint: str | None = None
    tailscale_ip: str | None = Field(default=None, alias="tailscaleIP")
    instance_id: str | None = None
    metadata: dict[str, Any] | None = None


class UpdateAgentRequest(CamelModel):
    """Request to update an agent's details."""

    name: str | None = None
    emoji: str | None = None
    roles: list[str] | None = None
    model: str | None = None
    endpoint: str | None = None
    tailscale_ip: str | None = Field(default=None, alias="tailscaleIP")
    instance_id: str | None = None
    metadata: dict[str, Any] | None = None


class HeartbeatRequest(CamelModel):
    endpoint: str | None = None
    tailscale_ip: str | None = Field(default=None, alias="tailscaleIP")
    instance_id: str | None = None
    current_task: str | None = None


class CurrentTaskRequest(CamelModel):
    task_id: str | None = None


class SendNotificationRequest(CamelModel):
    """Request to queue a notification for an agent."""

    agent_id: str = Field(..., min_length=1)
    type: str = "mention"
    title: str = Field(..., min_length=1)
    text: str = ""
    task_id: str | None = None
    project_id: str | None = None
    source: str | None = Field(default=None, alias="from")
    metadata: dict[str, Any] = Field(default_factory=dict)


class SuccessResponse(BaseModel):
    """Generic success response."""

    success: bool = True
    message: str = ""


# ============================================================================
# Task Endpoints
# ============================================================================


@router.get("/tasks")
async def list_tasks(
    lane: str | None = None,
    owner: str | None = None,
    assigned_to: str | None = Query(default=None, alias="assignedTo"),
    project_id: str | None = Query(default=None, alias="projectId"),
    priority: str | None = None,
    tags: str | None = None,
) -> list[dict[str, Any]]:
    """List tasks with optional filters, in insertion order."""
    manager = get_board_manager()
    tag_list = tags.split(",") if tags else None
    with _board_errors():
        tasks = await manager.list_tasks(
            lane=lane,
            owner=owner or assigned_to,
            project_id=project_id,
            priority=priority,
            tags=tag_list,
        )
    return [t.to_dict() for t in tasks]


@router.post("/tasks")
async def create_task(request: CreateTaskRequest) -> dict[str, Any]:
    """Create a new task."""
    manager = get_board_manager()
    draft = request.model_dump(exclude={"auto_assign"}, exclude_none=True)
    with _board_errors():
        task = await manager.create_task(draft, auto_assign=request.auto_assign)
    return task.to_dict()


@router.post("/tasks/auto-assign")
async def auto_assign_pending() -> dict[str, Any]:
    """Auto-assign every unowned queued task."""
    manager = get_board_manager()
    with _board_errors():
        results = await manager.auto_assign_pending()
    return {
        "results": [r.to_dict() for r in results],
        "assigned": len([r for r in results if r.assigned]),
    }


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        task = await manager.get_task(task_id)
    return task.to_dict()


@router.put("/tasks/{task_id}")
async def update_task(task_id: str, request: UpdateTaskRequest) -> dict[str, Any]:
    """Update task fields. A move to done unblocks dependents."""
    manager = get_board_manager()
    patch = request.model_dump(exclude_unset=True, exclude={"by", "note"})
    with _board_errors():
        task = await manager.update_task(task_id, patch, by=request.by, note=request.note)
    return task.to_dict()


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        unblocked = await manager.delete_task(task_id)
    return {
        "success": True,
        "message": f"Task {task_id} deleted",
        "unblocked": [t.id for t in unblocked],
    }


@router.post("/tasks/{task_id}/comment")
async def add_comment(task_id: str, request: CommentRequest) -> dict[str, Any]:
    """Post a comment. @agent-id mentions notify those agents."""
    manager = get_board_manager()
    with _board_errors():
        comment = await manager.add_comment(task_id, request.by, request.text)
    return comment.to_dict()


@router.post("/tasks/{task_id}/time")
async def log_time(task_id: str, request: TimeEntryRequest) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        entry = await manager.log_time(
            task_id,
            request.agent_id,
            request.hours,
            start=request.start,
            end=request.end,
            note=request.note,
        )
        task = await manager.get_task(task_id)
    return {"entry": entry.to_dict(), "actualHours": task.actual_hours}


@router.get("/tasks/{task_id}/time")
async def get_time_entries(task_id: str) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        return await manager.time_entries(task_id)


@router.post("/tasks/{task_id}/assign")
async def assign_task(task_id: str, request: AssignTaskRequest) -> dict[str, Any]:
    """Assign a task to an agent (agentId null unassigns)."""
    manager = get_board_manager()
    with _board_errors():
        task = await manager.assign_task(task_id, request.agent_id, by=request.by)
    return task.to_dict()


@router.post("/tasks/{task_id}/auto-assign")
async def auto_assign_task(task_id: str) -> dict[str, Any]:
    """Assign a task to the least-loaded online agent with the matching role."""
    manager = get_board_manager()
    with _board_errors():
        result = await manager.auto_assign(task_id)
    return result.to_dict()


@router.get("/tasks/{task_id}/suggestion")
async def suggest_assignment(task_id: str) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        return await manager.suggest_assignment(task_id)


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: CompleteTaskRequest | None = None) -> dict[str, Any]:
    """Move a task to done and report the dependents it unblocked."""
    manager = get_board_manager()
    by = request.by if request else None
    with _board_errors():
        task, unblocked = await manager.complete_task(task_id, by=by)
    return {"task": task.to_dict(), "unblocked": [t.to_dict() for t in unblocked]}


@router.put("/tasks/{task_id}/dependencies")
async def set_dependencies(task_id: str, request: DependenciesRequest) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        task = await manager.set_dependencies(task_id, request.depends_on, by=request.by)
    return task.to_dict()


@router.get("/tasks/{task_id}/context")
async def get_task_context(task_id: str) -> dict[str, Any]:
    """Task with its owner, dependencies, dependents and subtasks."""
    manager = get_board_manager()
    with _board_errors():
        return await manager.task_context(task_id)


# ============================================================================
# Agent Endpoints
# ============================================================================


@router.get("/agents")
async def list_agents(status: str | None = None, role: str | None = None) -> list[dict[str, Any]]:
    """List agents with live status, optionally filtered by status or role."""
    manager = get_board_manager()
    try:
        return await manager.list_agents(status=status, role=role)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}") from None


@router.post("/agents")
async def register_agent(request: RegisterAgentRequest) -> dict[str, Any]:
    """Register an agent. Registering an existing ID updates it."""
    manager = get_board_manager()
    with _board_errors():
        agent = await manager.register_agent(request.model_dump(exclude_none=True))
        return await manager.get_agent(agent.id)


@router.get("/agents/{agent_id}")
async def get_agent(agent_id: str) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        return await manager.get_agent(agent_id)


@router.put("/agents/{agent_id}")
async def update_agent(agent_id: str, request: UpdateAgentRequest) -> dict[str, Any]:
    """Update an existing agent's details."""
    manager = get_board_manager()
    with _board_errors():
        await manager.agents.get(agent_id)
        data = request.model_dump(exclude_none=True)
        data["id"] = agent_id
        await manager.register_agent(data)
        return await manager.get_agent(agent_id)


@router.delete("/agents/{agent_id}")
async def delete_agent(agent_id: str) -> SuccessResponse:
    manager = get_board_manager()
    with _board_errors():
        await manager.delete_agent(agent_id)
    return SuccessResponse(message=f"Agent {agent_id} deleted")


@router.post("/agents/{agent_id}/heartbeat")
async def record_heartbeat(agent_id: str, request: HeartbeatRequest | None = None) -> dict[str, Any]:
    """Record an agent heartbeat, optionally updating connection details."""
    manager = get_board_manager()
    request = request or HeartbeatRequest()
    with _board_errors():
        await manager.heartbeat(
            agent_id,
            endpoint=request.endpoint,
            tailscale_ip=request.tailscale_ip,
            instance_id=request.instance_id,
            current_task_id=request.current_task,
        )
        return await manager.get_agent(agent_id)


@router.put("/agents/{agent_id}/current-task")
async def set_current_task(agent_id: str, request: CurrentTaskRequest) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        await manager.set_current_task(agent_id, request.task_id)
        return await manager.get_agent(agent_id)


@router.get("/agents/{agent_id}/tasks")
async def get_agent_tasks(agent_id: str) -> list[dict[str, Any]]:
    manager = get_board_manager()
    with _board_errors():
        tasks = await manager.agent_tasks(agent_id)
    return [t.to_dict() for t in tasks]


@router.get("/agents/{agent_id}/next-task")
async def get_next_task(agent_id: str) -> dict[str, Any]:
    """Highest-priority queued task owned by the agent."""
    manager = get_board_manager()
    with _board_errors():
        task = await manager.next_task_for(agent_id)
    return {"task": task.to_dict() if task else None}


# ============================================================================
# Notification Endpoints
# ============================================================================


@router.get("/agents/{agent_id}/notifications")
async def get_notifications(agent_id: str, unread: bool = False) -> list[dict[str, Any]]:
    """An agent's notifications, newest first."""
    manager = get_board_manager()
    notifications = await manager.notifications_for(agent_id, unread_only=unread)
    return [n.to_dict() for n in notifications]


@router.post("/agents/{agent_id}/notifications/read-all")
async def mark_all_notifications_read(agent_id: str) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        count = await manager.mark_all_read(agent_id)
    return {"success": True, "marked": count}


@router.post("/agents/{agent_id}/notifications/{notification_id}/read")
async def mark_notification_read(agent_id: str, notification_id: str) -> dict[str, Any]:
    manager = get_board_manager()
    with _board_errors():
        notification = await manager.mark_notification_read(agent_id, notification_id)
    return notification.to_dict()


@router.post("/notifications")
async def send_notification(request: SendNotificationRequest) -> dict[str, Any]:
    """Queue a notification for an agent."""
    manager = get_board_manager()
    with _board_errors():
        notification = await manager.send_notification(request.model_dump())
    return notification.to_dict()


@router.delete("/notifications/{notification_id}")
async def delete_notification(notification_id: str) -> SuccessResponse:
    manager = get_board_manager()
    with _board_errors():
        await manager.delete_notification(notification_id)
    return SuccessResponse(message=f"Notification {notification_id} deleted")


# ============================================================================
# Stats & Status Endpoints
# ============================================================================


@router.get("/stats")
async def get_stats() -> dict[str, Any]:
    """Board statistics."""
    manager = get_board_manager()
    return await manager.stats()


@router.get("/dispatcher")
async def get_dispatcher_status(request: Request) -> dict[str, Any]:
    """Notification dispatcher status."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        return {"running": False}
    return dispatcher.status()
