"""Assignment resolver.

Picks an agent for an unowned task:
1. Role matching - keywords in the task title and scope, checked against
   an ordered role table; the first role whose keywords appear wins
2. Candidate filter - online agents that carry the matched role
3. Load balancing - fewest open tasks, ties broken by agent ID

resolve() has no side effects. Setting the owner, logging the assignment
and notifying the agent happen in BoardManager.auto_assign().
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from clawcontrol.board.models import AgentStatus, Task

if TYPE_CHECKING:
    from clawcontrol.board.agent_registry import AgentRegistry


@dataclass(frozen=True)
class RoleRule:
    """Keywords that route a task to one role."""

    role: str
    keywords: frozenset[str]


def _rule(role: str, *keywords: str) -> RoleRule:
    return RoleRule(role=role, keywords=frozenset(keywords))


# Checked in this order; the first matching role wins.
ROLE_KEYWORDS: tuple[RoleRule, ...] = (
    _rule(
        "designer",
        "design", "ui", "ux", "mockup", "mockups", "wireframe", "wireframes",
        "prototype", "visual", "theme", "sketch",
    ),
    _rule(
        "frontend",
        "frontend", "front-end", "react", "vue", "angular", "tailwind", "css",
        "html", "component", "components", "responsive",
    ),
    _rule(
        "backend",
        "backend", "back-end", "api", "endpoint", "endpoints", "database",
        "server", "graphql", "rest", "sql", "schema",
    ),
    _rule(
        "qa",
        "test", "tests", "testing", "qa", "e2e", "verify", "verification",
        "validation", "regression",
    ),
    _rule(
        "content",
        "docs", "documentation", "readme", "guide", "tutorial", "blog", "copy",
    ),
    _rule(
        "devops",
        "infra", "infrastructure", "deploy", "deployment", "devops", "docker",
        "kubernetes", "ci", "pipeline", "monitoring", "hosting",
    ),
    _rule(
        "architect",
        "architecture", "design-doc", "blueprint", "rfc",
    ),
    _rule(
        "pm",
        "planning", "roadmap", "epic", "prioritize", "coordination", "milestone",
    ),
)

ROLE_PRECEDENCE: tuple[str, ...] = tuple(rule.role for rule in ROLE_KEYWORDS)

# Role tags agents register with that mean the same thing
ROLE_ALIASES: dict[str, str] = {
    "frontend-dev": "frontend",
    "backend-dev": "backend",
    "ui-designer": "designer",
    "design": "designer",
    "tester": "qa",
    "writer": "content",
    "docs": "content",
    "ops": "devops",
    "project-manager": "pm",
    "product-manager": "pm",
}

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")


def canonical_role(role: str) -> str:
    """Lowercase a role tag and resolve aliases."""
    value = role.strip().lower()
    return ROLE_ALIASES.get(value, value)


def tokenize(text: str) -> set[str]:
    """Lowercase word tokens. Hyphenated words stay whole (design-doc)."""
    return set(_TOKEN_PATTERN.findall(text.lower()))


def match_role(task: Task) -> str | None:
    """Return the first role in ROLE_KEYWORDS matching the task, or None."""
    tokens = tokenize(f"{task.title} {task.scope}")
    for rule in ROLE_KEYWORDS:
        if tokens & rule.keywords:
            return rule.role
    return None


class AssignmentResolver:
    """Chooses the least-loaded online agent for a task's role."""

    def __init__(self, agents: AgentRegistry):
        self._agents = agents

    async def candidates(self, role: str) -> list[tuple[int, str]]:
        """(workload, agent_id) pairs for online agents with the role, best first.

        Busy agents (already working a task) are not candidates.
        """
        ranked = []
        for agent in await self._agents.list(status=AgentStatus.ONLINE):
            if role not in {canonical_role(r) for r in agent.roles}:
                continue
            ranked.append((await self._agents.workload(agent.id), agent.id))
        ranked.sort()
        return ranked

    async def resolve(self, task: Task) -> str | None:
        """Pick an agent ID for the task, or None if nobody fits."""
        role = match_role(task)
        if role is None:
            return None
        ranked = await self.candidates(role)
        return ranked[0][1] if ranked else None

    async def suggest(self, task: Task) -> dict[str, Any]:
        """Preview an assignment without applying it."""
        role = match_role(task)
        ranked = await self.candidates(role) if role else []
        best = ranked[0] if ranked else None
        return {
            "role": role,
            "agentId": best[1] if best else None,
            "workload": best[0] if best else None,
            "candidates": [{"agentId": aid, "workload": load} for load, aid in ranked],
        }
