# Tests for the task entity store
# CRUD, lane history, comments/time log, dependency blocking and unblocking

import pytest

from clawcontrol.board import Lane, NotFoundError, Priority, ValidationError
from clawcontrol.board.task_store import UNBLOCKED_NOTE, sort_by_priority


class TestCreate:
    """Tests for TaskStore.create()."""

    @pytest.mark.asyncio
    async def test_defaults(self, task_store, clock):
        task = await task_store.create({"title": "Write docs"})
        assert task.id.startswith("task-")
        assert task.lane == Lane.QUEUED
        assert task.priority == Priority.P2
        assert task.created_at == task.updated_at == clock().isoformat()
        assert len(task.status_history) == 1
        assert task.status_history[0].to_lane == Lane.QUEUED
        assert task.status_history[0].from_lane is None

    @pytest.mark.asyncio
    async def test_explicit_id_and_fields(self, task_store):
        task = await task_store.create(
            {"id": "login", "title": "Fix login", "priority": "p0", "lane": "proposed"}
        )
        assert task.id == "login"
        assert task.priority == Priority.P0
        assert task.lane == Lane.PROPOSED

    @pytest.mark.asyncio
    async def test_empty_title_rejected(self, task_store):
        with pytest.raises(ValidationError):
            await task_store.create({"title": "   "})

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, task_store):
        await task_store.create({"id": "a", "title": "A"})
        with pytest.raises(ValidationError):
            await task_store.create({"id": "a", "title": "A again"})

    @pytest.mark.asyncio
    async def test_invalid_lane_rejected(self, task_store):
        with pytest.raises(ValidationError):
            await task_store.create({"title": "x", "lane": "wip"})

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, task_store):
        with pytest.raises(ValidationError):
            await task_store.create({"title": "x", "status_history": []})

    @pytest.mark.asyncio
    async def test_unknown_dependency_rejected(self, task_store):
        with pytest.raises(ValidationError):
            await task_store.create({"title": "x", "depends_on": ["missing"]})

    @pytest.mark.asyncio
    async def test_created_blocked_when_dependency_open(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        b = await task_store.create({"id": "B", "title": "B", "depends_on": [a.id]})
        assert b.lane == Lane.BLOCKED
        assert b.blocked_by_dependencies is True


class TestUpdate:
    """Tests for TaskStore.update() and lane history."""

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, task_store):
        with pytest.raises(NotFoundError):
            await task_store.get("nope")
        assert await task_store.find("nope") is None

    @pytest.mark.asyncio
    async def test_lane_change_appends_one_entry(self, task_store, clock):
        task = await task_store.create({"title": "Build"})
        clock.advance(minutes=5)

        updated = await task_store.update(task.id, {"lane": "development"}, by="dev", note="start")

        assert updated.lane == Lane.DEVELOPMENT
        assert len(updated.status_history) == 2
        entry = updated.status_history[-1]
        assert (entry.from_lane, entry.to_lane, entry.note, entry.by) == (
            Lane.QUEUED,
            Lane.DEVELOPMENT,
            "start",
            "dev",
        )
        assert updated.updated_at == clock().isoformat()
        assert updated.created_at != updated.updated_at

    @pytest.mark.asyncio
    async def test_non_lane_patch_keeps_history(self, task_store):
        task = await task_store.create({"title": "Build"})
        updated = await task_store.update(task.id, {"priority": "P1", "tags": ["ui"]})
        assert updated.priority == Priority.P1
        assert updated.tags == ["ui"]
        assert len(updated.status_history) == 1

    @pytest.mark.asyncio
    async def test_same_lane_no_entry(self, task_store):
        task = await task_store.create({"title": "Build"})
        updated = await task_store.update(task.id, {"lane": "queued"})
        assert len(updated.status_history) == 1

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, task_store):
        with pytest.raises(NotFoundError):
            await task_store.update("nope", {"title": "x"})

    @pytest.mark.asyncio
    async def test_cannot_change_id(self, task_store):
        task = await task_store.create({"title": "Build"})
        with pytest.raises(ValidationError):
            await task_store.update(task.id, {"id": "other"})

    @pytest.mark.asyncio
    async def test_gated_lane_redirected_to_blocked(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        b = await task_store.create({"id": "B", "title": "B"})
        await task_store.update(b.id, {"depends_on": [a.id]})

        moved = await task_store.update(b.id, {"lane": "development"})
        assert moved.lane == Lane.BLOCKED
        assert moved.blocked_by_dependencies is True

    @pytest.mark.asyncio
    async def test_self_dependency_rejected(self, task_store):
        task = await task_store.create({"title": "Loop"})
        with pytest.raises(ValidationError):
            await task_store.update(task.id, {"depends_on": [task.id]})

    @pytest.mark.asyncio
    async def test_assign_records_history_note(self, task_store):
        task = await task_store.create({"title": "Build"})
        assigned = await task_store.assign(task.id, "dev", by="pm")
        assert assigned.owner == "dev"
        assert assigned.lane == Lane.QUEUED
        assert assigned.status_history[-1].note == "assigned to dev"


class TestListAndRemove:
    """Tests for filters, ordering and deletion."""

    @pytest.mark.asyncio
    async def test_list_insertion_order_and_filters(self, task_store):
        await task_store.create({"id": "1", "title": "One", "project_id": "p1", "priority": "P3"})
        await task_store.create({"id": "2", "title": "Two", "owner": "dev", "priority": "P0"})
        await task_store.create({"id": "3", "title": "Three", "lane": "review", "tags": ["ui"]})

        assert [t.id for t in await task_store.list()] == ["1", "2", "3"]
        assert [t.id for t in await task_store.list(owner="dev")] == ["2"]
        assert [t.id for t in await task_store.list(project_id="p1")] == ["1"]
        assert [t.id for t in await task_store.list(lane="review")] == ["3"]
        assert [t.id for t in await task_store.list(priority="P0")] == ["2"]
        assert [t.id for t in await task_store.list(tags=["ui"])] == ["3"]

    @pytest.mark.asyncio
    async def test_sort_by_priority(self, task_store, clock):
        await task_store.create({"id": "low", "title": "Low", "priority": "P3"})
        clock.advance(seconds=1)
        await task_store.create({"id": "urgent", "title": "Urgent", "priority": "P0"})
        clock.advance(seconds=1)
        await task_store.create({"id": "urgent2", "title": "Urgent 2", "priority": "P0"})

        ordered = sort_by_priority(await task_store.list())
        assert [t.id for t in ordered] == ["urgent", "urgent2", "low"]

    @pytest.mark.asyncio
    async def test_remove_leaves_dangling_dependency(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        b = await task_store.create({"id": "B", "title": "B", "depends_on": [a.id]})

        await task_store.remove(a.id)

        b = await task_store.get(b.id)
        assert b.depends_on == ["A"]
        assert await task_store.unresolved_dependencies(b) == []
        with pytest.raises(NotFoundError):
            await task_store.remove(a.id)


class TestLogs:
    """Tests for comments and time entries."""

    @pytest.mark.asyncio
    async def test_add_comment(self, task_store, clock):
        task = await task_store.create({"title": "Build"})
        comment = await task_store.add_comment(task.id, "qa", "needs tests")
        assert comment.by == "qa"
        assert comment.at == clock().isoformat()
        stored = await task_store.get(task.id)
        assert [c.text for c in stored.comments] == ["needs tests"]

    @pytest.mark.asyncio
    async def test_empty_comment_rejected(self, task_store):
        task = await task_store.create({"title": "Build"})
        with pytest.raises(ValidationError):
            await task_store.add_comment(task.id, "qa", "  ")

    @pytest.mark.asyncio
    async def test_log_time_accumulates_without_lane_change(self, task_store):
        task = await task_store.create({"title": "Build"})
        await task_store.log_time(task.id, "dev", 1.5)
        entry = await task_store.log_time(task.id, "dev", 2, note="pairing")

        stored = await task_store.get(task.id)
        assert stored.actual_hours == 3.5
        assert entry.note == "pairing"
        assert len(stored.time_entries) == 2
        assert stored.lane == Lane.QUEUED
        assert len(stored.status_history) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("agent_id,hours", [("", 1.0), ("dev", 0), ("dev", -2)])
    async def test_log_time_validation(self, task_store, agent_id, hours):
        task = await task_store.create({"title": "Build"})
        with pytest.raises(ValidationError):
            await task_store.log_time(task.id, agent_id, hours)


class TestDependencies:
    """Tests for dependency resolution."""

    @pytest.mark.asyncio
    async def test_resolve_dependents_unblocks_when_all_done(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        b = await task_store.create({"id": "B", "title": "B"})
        c = await task_store.create({"id": "C", "title": "C", "depends_on": [a.id, b.id]})
        assert c.lane == Lane.BLOCKED

        await task_store.update(a.id, {"lane": "done"})
        assert await task_store.resolve_dependents(a.id) == []
        assert (await task_store.get(c.id)).lane == Lane.BLOCKED

        await task_store.update(b.id, {"lane": "done"})
        unblocked = await task_store.resolve_dependents(b.id)

        assert [t.id for t in unblocked] == ["C"]
        c = await task_store.get(c.id)
        assert c.lane == Lane.QUEUED
        assert c.blocked_by_dependencies is False
        assert c.status_history[-1].note == UNBLOCKED_NOTE
        assert c.status_history[-1].from_lane == Lane.BLOCKED

    @pytest.mark.asyncio
    async def test_manual_block_not_released(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        await task_store.create({"id": "B", "title": "B", "depends_on": [a.id]})
        c = await task_store.create({"id": "C", "title": "C"})
        await task_store.set_dependencies(c.id, [a.id])
        # C is parked by hand as well; only the dependency gate is released
        await task_store.update(c.id, {"lane": "queued"})
        await task_store.update(c.id, {"lane": "blocked"}, note="waiting on vendor")

        await task_store.update(a.id, {"lane": "done"})
        unblocked = await task_store.resolve_dependents(a.id)

        assert [t.id for t in unblocked] == ["B"]
        assert (await task_store.get("C")).lane == Lane.BLOCKED

    @pytest.mark.asyncio
    async def test_blocked_with_new_dependencies_is_released(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        await task_store.create({"id": "B", "title": "B"})

        b = await task_store.update("B", {"lane": "blocked", "depends_on": [a.id]})
        assert b.lane == Lane.BLOCKED
        assert b.blocked_by_dependencies is True

        await task_store.update(a.id, {"lane": "done"})
        unblocked = await task_store.resolve_dependents(a.id)

        assert [t.id for t in unblocked] == ["B"]
        assert (await task_store.get("B")).lane == Lane.QUEUED

    @pytest.mark.asyncio
    async def test_queued_with_open_dependencies_is_parked(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        await task_store.create({"id": "B", "title": "B", "lane": "review"})

        b = await task_store.update("B", {"lane": "queued", "depends_on": [a.id]})

        assert b.lane == Lane.BLOCKED
        assert b.blocked_by_dependencies is True
        assert b.status_history[-1].note == "waiting on dependencies"
        assert len(b.status_history) == 2

    @pytest.mark.asyncio
    async def test_queued_with_done_dependencies_stays_queued(self, task_store):
        a = await task_store.create({"id": "A", "title": "A", "lane": "done"})
        await task_store.create({"id": "B", "title": "B", "lane": "review"})

        b = await task_store.update("B", {"lane": "queued", "depends_on": [a.id]})

        assert b.lane == Lane.QUEUED
        assert b.blocked_by_dependencies is False

    @pytest.mark.asyncio
    async def test_set_dependencies_blocks_and_releases(self, task_store):
        a = await task_store.create({"id": "A", "title": "A"})
        b = await task_store.create({"id": "B", "title": "B"})

        b = await task_store.set_dependencies(b.id, [a.id, a.id])
        assert b.depends_on == ["A"]
        assert b.lane == Lane.BLOCKED

        b = await task_store.set_dependencies(b.id, [])
        assert b.lane == Lane.QUEUED
        assert b.status_history[-1].note == UNBLOCKED_NOTE

    @pytest.mark.asyncio
    async def test_graph_queries(self, task_store):
        parent = await task_store.create({"id": "P", "title": "Epic"})
        a = await task_store.create({"id": "A", "title": "A", "parent_id": parent.id})
        await task_store.create({"id": "B", "title": "B", "depends_on": [a.id]})

        assert [t.id for t in await task_store.get_dependencies("B")] == ["A"]
        assert [t.id for t in await task_store.get_dependents("A")] == ["B"]
        assert [t.id for t in await task_store.get_subtasks("P")] == ["A"]

    @pytest.mark.asyncio
    async def test_stats(self, task_store):
        await task_store.create({"title": "One"})
        await task_store.create({"title": "Two", "owner": "dev", "lane": "review"})
        stats = await task_store.stats()
        assert stats["total"] == 2
        assert stats["by_lane"]["queued"] == 1
        assert stats["by_lane"]["review"] == 1
        assert stats["unassigned"] == 1
