"""Task board - shared kanban for a team of automated agents.

The board keeps three collections, each owned by one store:

- Tasks moving through lanes (proposed -> queued -> development -> review -> done,
  with blocked for dependencies and manual blocks)
- Agents with roles, heartbeats and a live online/busy/offline status
- Notifications queued per agent and pushed to agent endpoints

On top of the stores sit the assignment resolver (role keywords plus load
balancing) and the notification dispatcher (background push with retries).

Usage:
    from clawcontrol.board import get_board_manager

    manager = get_board_manager()

    await manager.register_agent({"id": "pixel", "roles": ["frontend"]})
    await manager.heartbeat("pixel")

    task = await manager.create_task({"title": "Build React dashboard"})
    result = await manager.auto_assign(task.id)  # -> pixel

    # Finishing a task releases the tasks that depend on it
    task, unblocked = await manager.complete_task(task.id)
"""

from clawcontrol.board.agent_registry import AgentRegistry
from clawcontrol.board.assignment import AssignmentResolver, match_role
from clawcontrol.board.dispatcher import NotificationDispatcher, RetryPolicy
from clawcontrol.board.errors import (
    BoardError,
    DeliveryError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from clawcontrol.board.manager import (
    AssignmentResult,
    BoardManager,
    get_board_manager,
    reset_board_manager,
)
from clawcontrol.board.models import (
    Agent,
    AgentStatus,
    Comment,
    Lane,
    Notification,
    NotificationType,
    Priority,
    StatusChange,
    Task,
    TimeEntry,
)
from clawcontrol.board.notifications import NotificationStore
from clawcontrol.board.persistence import JsonFilePersistence
from clawcontrol.board.protocol import RecordPersistence
from clawcontrol.board.task_store import TaskStore

__all__ = [
    # Models
    "Agent",
    "AgentStatus",
    "Comment",
    "Lane",
    "Notification",
    "NotificationType",
    "Priority",
    "StatusChange",
    "Task",
    "TimeEntry",
    # Errors
    "BoardError",
    "DeliveryError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
    # Storage
    "JsonFilePersistence",
    "RecordPersistence",
    "TaskStore",
    "AgentRegistry",
    "NotificationStore",
    # Assignment & delivery
    "AssignmentResolver",
    "match_role",
    "NotificationDispatcher",
    "RetryPolicy",
    # Manager
    "AssignmentResult",
    "BoardManager",
    "get_board_manager",
    "reset_board_manager",
]
