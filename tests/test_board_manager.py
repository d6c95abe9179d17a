# Tests for the task board manager
# End-to-end board flows: assignment, completion/unblocking, notifications, QA gate

import pytest

from clawcontrol.board import (
    AgentStatus,
    BoardManager,
    Lane,
    NotFoundError,
    NotificationType,
    ValidationError,
)
from clawcontrol.config import Settings


async def _online(manager, agent_id, roles):
    await manager.register_agent({"id": agent_id, "roles": roles})
    await manager.heartbeat(agent_id)


async def _types(manager, agent_id):
    return [n.type for n in await manager.notifications_for(agent_id)]


class TestScenarios:
    """Core board scenarios."""

    @pytest.mark.asyncio
    async def test_unmatched_task_stays_unassigned(self, manager):
        await _online(manager, "pixel", ["frontend"])
        await _online(manager, "forge", ["backend"])
        await _online(manager, "sentinel", ["qa"])
        task = await manager.create_task({"title": "Fix login bug", "priority": "P0"})

        result = await manager.auto_assign(task.id)

        assert result.assigned is False
        assert result.reason == "no-matching-role"
        task = await manager.get_task(task.id)
        assert task.owner is None
        assert task.lane == Lane.QUEUED
        assert len(manager.notifications) == 0

    @pytest.mark.asyncio
    async def test_least_loaded_frontend_agent_wins(self, manager, clock):
        await _online(manager, "pixel", ["frontend"])
        await _online(manager, "canvas", ["frontend"])
        await manager.create_task({"title": "one", "owner": "pixel"})
        for i in range(3):
            await manager.create_task({"title": f"c{i}", "owner": "canvas"})
        clock.advance(seconds=1)
        task = await manager.create_task({"title": "Build React dashboard"})

        result = await manager.auto_assign(task.id)

        assert result.assigned is True
        assert result.agent_id == "pixel"
        assert result.role == "frontend"
        assigned = await manager.get_task(task.id)
        assert assigned.owner == "pixel"
        assert assigned.status_history[-1].note == "assigned to pixel"
        assert await manager.agents.workload("pixel") == 2
        inbox = await manager.notifications_for("pixel")
        assert inbox[0].type == NotificationType.TASK_ASSIGNED
        assert inbox[0].task_id == task.id

    @pytest.mark.asyncio
    async def test_completing_dependency_unblocks_dependent(self, manager):
        await _online(manager, "dev", ["backend"])
        a = await manager.create_task({"id": "A", "title": "A"})
        b = await manager.create_task({"id": "B", "title": "B", "depends_on": ["A"], "owner": "dev"})
        assert b.lane == Lane.BLOCKED

        task, unblocked = await manager.complete_task(a.id)

        assert task.lane == Lane.DONE
        assert [t.id for t in unblocked] == ["B"]
        assert (await manager.get_task("B")).lane == Lane.QUEUED
        assert NotificationType.TASK_UNBLOCKED in await _types(manager, "dev")

    @pytest.mark.asyncio
    async def test_stale_heartbeat_reads_offline(self, manager, clock):
        await _online(manager, "pixel", ["frontend"])
        assert (await manager.get_agent("pixel"))["status"] == "online"

        clock.advance(minutes=6)

        assert (await manager.get_agent("pixel"))["status"] == "offline"
        assert (await manager.agents.get("pixel")).status == AgentStatus.ONLINE

    @pytest.mark.asyncio
    async def test_update_to_done_runs_dependency_resolution(self, manager):
        a = await manager.create_task({"id": "A", "title": "A"})
        await manager.create_task({"id": "B", "title": "B", "depends_on": ["A"]})

        await manager.update_task(a.id, {"lane": "done"})

        assert (await manager.get_task("B")).lane == Lane.QUEUED

    @pytest.mark.asyncio
    async def test_dependency_added_by_update_unblocks_on_completion(self, manager):
        a = await manager.create_task({"id": "A", "title": "A"})
        await manager.create_task({"id": "B", "title": "B"})
        await manager.update_task("B", {"lane": "blocked", "depends_on": ["A"]})

        _, unblocked = await manager.complete_task(a.id)

        assert [t.id for t in unblocked] == ["B"]
        assert (await manager.get_task("B")).lane == Lane.QUEUED


class TestAssignment:
    """Tests for manual and bulk assignment."""

    @pytest.mark.asyncio
    async def test_assign_unknown_agent(self, manager):
        task = await manager.create_task({"title": "x"})
        with pytest.raises(NotFoundError):
            await manager.assign_task(task.id, "ghost")

    @pytest.mark.asyncio
    async def test_assign_notifies_owner(self, manager):
        await manager.register_agent({"id": "forge", "roles": ["backend"]})
        task = await manager.create_task({"title": "x"})

        await manager.assign_task(task.id, "forge", by="pm")

        assert await _types(manager, "forge") == [NotificationType.TASK_ASSIGNED]

    @pytest.mark.asyncio
    async def test_already_assigned_is_skipped(self, manager):
        await _online(manager, "pixel", ["frontend"])
        task = await manager.create_task({"title": "React page", "owner": "pixel"})
        result = await manager.auto_assign(task.id)
        assert result.assigned is False
        assert result.reason == "already-assigned"

    @pytest.mark.asyncio
    async def test_no_available_agents(self, manager):
        await manager.register_agent({"id": "pixel", "roles": ["frontend"]})  # never online
        task = await manager.create_task({"title": "React page"})
        result = await manager.auto_assign(task.id)
        assert result.reason == "no-available-agents"
        assert result.role == "frontend"

    @pytest.mark.asyncio
    async def test_busy_agent_not_auto_assigned(self, manager):
        await _online(manager, "pixel", ["frontend"])
        await manager.create_task({"title": "Current", "owner": "pixel", "lane": "development"})
        task = await manager.create_task({"title": "React page"})

        result = await manager.auto_assign(task.id)

        assert (await manager.get_agent("pixel"))["status"] == "busy"
        assert result.assigned is False
        assert result.reason == "no-available-agents"

    @pytest.mark.asyncio
    async def test_create_with_auto_assign(self, manager):
        await _online(manager, "forge", ["backend"])
        task = await manager.create_task({"title": "Add API endpoint"}, auto_assign=True)
        assert task.owner == "forge"

    @pytest.mark.asyncio
    async def test_auto_assign_pending_balances_by_priority(self, manager, clock):
        await _online(manager, "a", ["backend"])
        await _online(manager, "b", ["backend"])
        await manager.create_task({"id": "low", "title": "API cleanup", "priority": "P3"})
        clock.advance(seconds=1)
        await manager.create_task({"id": "hot", "title": "API outage", "priority": "P0"})
        clock.advance(seconds=1)
        await manager.create_task({"id": "misc", "title": "Team lunch"})

        results = await manager.auto_assign_pending()

        assert [r.task.id for r in results] == ["hot", "misc", "low"]
        assert (await manager.get_task("hot")).owner == "a"
        assert (await manager.get_task("low")).owner == "b"
        assert (await manager.get_task("misc")).owner is None

    @pytest.mark.asyncio
    async def test_suggest_assignment_is_preview_only(self, manager):
        await _online(manager, "pixel", ["frontend"])
        task = await manager.create_task({"title": "CSS polish"})

        suggestion = await manager.suggest_assignment(task.id)

        assert suggestion["agentId"] == "pixel"
        assert suggestion["taskId"] == task.id
        assert (await manager.get_task(task.id)).owner is None


class TestLaneRules:
    """Tests for the QA gate and lane-change notifications."""

    @pytest.mark.asyncio
    async def test_only_qa_agents_complete(self, manager):
        await manager.register_agent({"id": "dev", "roles": ["backend"]})
        await manager.register_agent({"id": "qa", "roles": ["tester"]})
        task = await manager.create_task({"title": "x", "owner": "dev", "lane": "review"})

        with pytest.raises(ValidationError):
            await manager.update_task(task.id, {"lane": "done"}, by="dev")
        assert (await manager.get_task(task.id)).lane == Lane.REVIEW

        done = await manager.update_task(task.id, {"lane": "done"}, by="qa")
        assert done.lane == Lane.DONE

    @pytest.mark.asyncio
    async def test_non_agent_caller_can_complete(self, manager):
        task = await manager.create_task({"title": "x"})
        task, _ = await manager.complete_task(task.id, by="human")
        assert task.lane == Lane.DONE

    @pytest.mark.asyncio
    async def test_completion_notifies_creator_and_owner(self, manager):
        await manager.register_agent({"id": "pm", "roles": ["pm"]})
        await manager.register_agent({"id": "dev", "roles": ["backend"]})
        await manager.register_agent({"id": "qa", "roles": ["qa"]})
        task = await manager.create_task({"title": "x", "created_by": "pm", "owner": "dev"})

        await manager.complete_task(task.id, by="qa")

        assert NotificationType.TASK_COMPLETED in await _types(manager, "pm")
        assert NotificationType.TASK_COMPLETED in await _types(manager, "dev")
        assert await _types(manager, "qa") == []

    @pytest.mark.asyncio
    async def test_block_notifies_owner(self, manager, clock):
        await manager.register_agent({"id": "dev", "roles": ["backend"]})
        task = await manager.create_task({"title": "x", "owner": "dev"})
        clock.advance(seconds=1)

        await manager.update_task(task.id, {"lane": "blocked"}, by="pm", note="waiting on vendor")

        inbox = await manager.notifications_for("dev")
        assert inbox[0].type == NotificationType.TASK_BLOCKED
        assert "waiting on vendor" in inbox[0].text

    @pytest.mark.asyncio
    async def test_delete_releases_dependents(self, manager):
        a = await manager.create_task({"id": "A", "title": "A"})
        await manager.create_task({"id": "B", "title": "B", "depends_on": ["A"]})

        unblocked = await manager.delete_task(a.id)

        assert [t.id for t in unblocked] == ["B"]
        with pytest.raises(NotFoundError):
            await manager.get_task("A")


class TestComments:
    """Tests for comments and @mentions."""

    @pytest.mark.asyncio
    async def test_comment_notifies_owner_and_mentions(self, manager):
        for agent_id in ("dev", "qa", "pm"):
            await manager.register_agent({"id": agent_id})
        task = await manager.create_task({"title": "x", "owner": "dev"})

        await manager.add_comment(task.id, "pm", "@qa please verify, cc @nobody")

        assert sorted(await _types(manager, "dev")) == [
            NotificationType.TASK_ASSIGNED,
            NotificationType.TASK_COMMENT,
        ]
        assert await _types(manager, "qa") == [NotificationType.MENTION]
        assert await _types(manager, "pm") == []

    @pytest.mark.asyncio
    async def test_owner_commenting_is_not_notified(self, manager):
        await manager.register_agent({"id": "dev"})
        task = await manager.create_task({"title": "x"})
        await manager.assign_task(task.id, "dev", by="dev")

        await manager.add_comment(task.id, "dev", "on it")

        assert await _types(manager, "dev") == []

    @pytest.mark.asyncio
    async def test_mention_all(self, manager):
        for agent_id in ("a", "b", "c"):
            await manager.register_agent({"id": agent_id})
        task = await manager.create_task({"title": "x"})

        await manager.add_comment(task.id, "a", "@all standup in 5")

        assert await _types(manager, "a") == []
        assert await _types(manager, "b") == [NotificationType.MENTION]
        assert await _types(manager, "c") == [NotificationType.MENTION]


class TestQueries:
    """Tests for context, next task, time and stats."""

    @pytest.mark.asyncio
    async def test_task_context(self, manager):
        await manager.register_agent({"id": "dev", "roles": ["backend"]})
        epic = await manager.create_task({"id": "E", "title": "Epic"})
        await manager.create_task({"id": "A", "title": "A", "parent_id": epic.id})
        await manager.create_task(
            {"id": "B", "title": "B", "depends_on": ["A"], "owner": "dev", "parent_id": epic.id}
        )

        context = await manager.task_context("B")

        assert context["task"]["id"] == "B"
        assert context["owner"]["id"] == "dev"
        assert [t["id"] for t in context["dependencies"]] == ["A"]
        assert context["unresolvedDependencies"] == ["A"]
        assert [t["id"] for t in (await manager.task_context("E"))["subtasks"]] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_next_task_for(self, manager, clock):
        await manager.register_agent({"id": "dev"})
        await manager.create_task({"id": "later", "title": "later", "owner": "dev", "priority": "P3"})
        clock.advance(seconds=1)
        await manager.create_task({"id": "now", "title": "now", "owner": "dev", "priority": "P1"})

        assert (await manager.next_task_for("dev")).id == "now"
        with pytest.raises(NotFoundError):
            await manager.next_task_for("ghost")

    @pytest.mark.asyncio
    async def test_time_entries(self, manager):
        task = await manager.create_task({"title": "x", "estimated_hours": 4})
        await manager.log_time(task.id, "dev", 1.25)

        summary = await manager.time_entries(task.id)

        assert summary["estimatedHours"] == 4
        assert summary["actualHours"] == 1.25
        assert summary["entries"][0]["agentId"] == "dev"

    @pytest.mark.asyncio
    async def test_stats_and_prune(self, manager, clock):
        await _online(manager, "pixel", ["frontend"])
        await manager.register_agent({"id": "idle"})
        await manager.create_task({"title": "x"})
        await manager.send_notification({"agent_id": "pixel", "title": "hello"})

        stats = await manager.stats()
        assert stats["tasks"]["total"] == 1
        assert stats["agents"]["by_status"] == {"online": 1, "offline": 1, "busy": 0}
        assert stats["notifications"]["unread"] == 1

        clock.advance(days=8)
        pruned = await manager.prune()
        assert pruned["staleAgents"] == ["pixel"]
        assert len(pruned["notifications"]) == 1

    @pytest.mark.asyncio
    async def test_delete_agent_drops_inbox(self, manager):
        await manager.register_agent({"id": "pixel"})
        await manager.send_notification({"agent_id": "pixel", "title": "hello"})

        await manager.delete_agent("pixel")

        assert await manager.notifications_for("pixel") == []


class TestFileBacked:
    """The manager survives a restart through the JSON files."""

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, file_manager, settings, clock):
        await file_manager.register_agent({"id": "dev", "roles": ["backend"]})
        task = await file_manager.create_task({"title": "Persist me", "owner": "dev"})
        await file_manager.add_comment(task.id, "pm", "hello")

        restarted = BoardManager.from_settings(settings, clock=clock)

        assert (await restarted.get_task(task.id)).comments[0].text == "hello"
        assert (await restarted.agents.get("dev")).roles == ["backend"]
        assert len(await restarted.notifications_for("dev")) == 2
        assert (settings.data_dir / "tasks.json").exists()

    def test_creates_missing_data_dir(self, temp_store_path, clock):
        data_dir = temp_store_path / "nested" / "board"
        settings = Settings(data_dir=data_dir, _env_file=None)

        manager = BoardManager.from_settings(settings, clock=clock)

        assert data_dir.is_dir()
        assert len(manager.tasks) == 0
