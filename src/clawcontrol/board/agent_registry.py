"""Agent registry.

Owns every Agent record. Liveness is computed when read: an agent is
online while its last heartbeat is younger than the stale timeout, busy
while it also has a current task, and offline otherwise. Nothing has to
run for an agent to go offline.

Workload and the current-task back-reference are read from the task
store (Task.owner is the source of truth) rather than kept on the agent.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from clawcontrol.board.assignment import canonical_role
from clawcontrol.board.errors import NotFoundError, ValidationError
from clawcontrol.board.models import Agent, AgentStatus, Lane, Task, parse_iso, utc_now
from clawcontrol.board.protocol import RecordPersistence
from clawcontrol.board.task_store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=5)

# Lanes whose owned tasks count toward an agent's workload
WORKLOAD_LANES = frozenset({Lane.QUEUED, Lane.DEVELOPMENT, Lane.REVIEW})

# Fields register() copies from the caller; lifecycle fields stay with the registry
REGISTER_FIELDS = (
    "name",
    "emoji",
    "roles",
    "model",
    "endpoint",
    "tailscale_ip",
    "instance_id",
    "metadata",
)


class AgentRegistry:
    """In-memory agent mapping with write-through persistence."""

    def __init__(
        self,
        persistence: RecordPersistence,
        tasks: TaskStore,
        clock: Callable[[], datetime] = utc_now,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self._persistence = persistence
        self._tasks = tasks
        self._clock = clock
        self.stale_after = stale_after
        self._agents: dict[str, Agent] = {}

        for data in self._persistence.load_all().values():
            agent = Agent.from_dict(data)
            self._agents[agent.id] = agent
        logger.info(f"Agent registry loaded: {len(self._agents)} agents")

    def _commit(self, changed: list[Agent] | None = None, removed: str | None = None) -> None:
        staged = dict(self._agents)
        for agent in changed or []:
            staged[agent.id] = agent
        if removed is not None:
            staged.pop(removed, None)
        self._persistence.save_all({aid: a.to_dict() for aid, a in staged.items()})
        self._agents = staged

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    # =========================================================================
    # Registration & Heartbeats
    # =========================================================================

    async def register(self, data: dict[str, Any]) -> Agent:
        """Create or update an agent by ID.

        Registering the same ID twice updates the one record. Heartbeat
        and creation timestamps are never taken from the caller.
        """
        agent_id = str(data.get("id") or "").strip()
        if not agent_id:
            raise ValidationError("id required")

        now = self._clock().isoformat()
        existing = self._agents.get(agent_id)
        agent = copy.deepcopy(existing) if existing else Agent(id=agent_id, created_at=now)

        for name in REGISTER_FIELDS:
            if data.get(name) is not None:
                setattr(agent, name, copy.deepcopy(data[name]))
        if not agent.name:
            agent.name = agent_id
        agent.updated_at = now

        self._commit([agent])
        if existing is None:
            logger.info(f"Registered agent {agent_id} (roles: {', '.join(agent.roles) or 'none'})")
        return agent

    async def heartbeat(
        self,
        agent_id: str,
        endpoint: str | None = None,
        tailscale_ip: str | None = None,
        instance_id: str | None = None,
        current_task_id: str | None = None,
    ) -> Agent:
        """Refresh last_heartbeat and connection details.

        Empty strings clear the connection fields; None leaves them as they
        are. A current_task_id, when given, must name an existing task.
        """
        agent = copy.deepcopy(self._require(agent_id))
        if current_task_id:
            await self._tasks.get(current_task_id)
            agent.current_task_id = current_task_id
        now = self._clock().isoformat()
        agent.last_heartbeat = now
        agent.updated_at = now
        if endpoint is not None:
            agent.endpoint = endpoint or None
        if tailscale_ip is not None:
            agent.tailscale_ip = tailscale_ip or None
        if instance_id is not None:
            agent.instance_id = instance_id or None
        agent.status = AgentStatus.BUSY if await self.current_task(agent) else AgentStatus.ONLINE

        self._commit([agent])
        return agent

    async def set_current_task(self, agent_id: str, task_id: str | None) -> Agent:
        """Record which task the agent says it is working on."""
        agent = copy.deepcopy(self._require(agent_id))
        if task_id is not None:
            await self._tasks.get(task_id)
        agent.current_task_id = task_id
        agent.updated_at = self._clock().isoformat()
        self._commit([agent])
        return agent

    # =========================================================================
    # Derived State
    # =========================================================================

    def is_stale(self, agent: Agent, now: datetime | None = None) -> bool:
        last_seen = parse_iso(agent.last_heartbeat)
        if last_seen is None:
            return True
        return (now or self._clock()) - last_seen >= self.stale_after

    async def current_task(self, agent: Agent) -> str | None:
        """The agent's current task, derived from task ownership.

        A claimed current_task_id only counts while the agent owns that
        task and it is not done. Otherwise the first owned task in
        development is used.
        """
        if agent.current_task_id:
            task = await self._tasks.find(agent.current_task_id)
            if task and task.owner == agent.id and task.lane != Lane.DONE:
                return task.id
        active = await self._tasks.list(lane=Lane.DEVELOPMENT, owner=agent.id)
        return active[0].id if active else None

    async def effective_status(self, agent: Agent, now: datetime | None = None) -> AgentStatus:
        """Live status: offline when stale, busy with a current task, else online."""
        if self.is_stale(agent, now):
            return AgentStatus.OFFLINE
        if await self.current_task(agent):
            return AgentStatus.BUSY
        return AgentStatus.ONLINE

    async def owned_tasks(self, agent_id: str) -> list[Task]:
        return await self._tasks.list(owner=agent_id)

    async def active_tasks(self, agent_id: str) -> list[Task]:
        """Owned tasks in development."""
        return await self._tasks.list(lane=Lane.DEVELOPMENT, owner=agent_id)

    async def workload(self, agent_id: str) -> int:
        """Number of open tasks (queued, development, review) the agent owns."""
        return len([t for t in await self._tasks.list(owner=agent_id) if t.lane in WORKLOAD_LANES])

    async def view(self, agent: Agent) -> dict[str, Any]:
        """Agent dict with live status, current task and workload filled in."""
        data = agent.to_dict()
        data["status"] = (await self.effective_status(agent)).value
        data["currentTask"] = await self.current_task(agent)
        data["activeTasks"] = [t.id for t in await self.active_tasks(agent.id)]
        data["workload"] = await self.workload(agent.id)
        return data

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, agent_id: str) -> Agent:
        """Get an agent by ID. Raises NotFoundError if absent."""
        return self._require(agent_id)

    async def find(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    async def list(self, status: AgentStatus | str | None = None) -> list[Agent]:
        """List agents sorted by ID, optionally filtered by live status."""
        agents = sorted(self._agents.values(), key=lambda a: a.id)
        if status:
            wanted = AgentStatus(status)
            agents = [a for a in agents if await self.effective_status(a) == wanted]
        return agents

    async def list_online(self) -> list[Agent]:
        """Agents with a fresh heartbeat (online or busy)."""
        now = self._clock()
        return [a for a in sorted(self._agents.values(), key=lambda a: a.id) if not self.is_stale(a, now)]

    async def list_by_role(self, role: str) -> list[Agent]:
        """Agents carrying a role tag (aliases such as frontend-dev count)."""
        wanted = canonical_role(role)
        return [
            a
            for a in sorted(self._agents.values(), key=lambda a: a.id)
            if wanted in {canonical_role(r) for r in a.roles}
        ]

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def prune_stale(self, now: datetime | None = None) -> list[str]:
        """Mark agents without a recent heartbeat offline.

        Agents are never deleted here. Returns the IDs whose persisted
        status changed to offline.
        """
        now = now or self._clock()
        changed: list[Agent] = []
        for agent in self._agents.values():
            if agent.status != AgentStatus.OFFLINE and self.is_stale(agent, now):
                updated = copy.deepcopy(agent)
                updated.status = AgentStatus.OFFLINE
                updated.updated_at = now.isoformat()
                changed.append(updated)

        if changed:
            self._commit(changed)
            logger.info(f"Marked {len(changed)} stale agents offline")
        return [a.id for a in changed]

    async def delete(self, agent_id: str) -> None:
        """Remove an agent record."""
        self._require(agent_id)
        self._commit(removed=agent_id)
        logger.info(f"Deleted agent {agent_id}")

    def __len__(self) -> int:
        return len(self._agents)
