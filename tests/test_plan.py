"""Tests for plan validation and run creation."""

from __future__ import annotations

import pytest

from nofx.engine.plan import PlanValidationError, create_run, validate_plan


class TestValidatePlan:
    def test_valid(self):
        steps = [
            {"name": "build", "tool": "bash", "inputs": {"command": "make"}},
            {"name": "test", "tool": "gate:unit", "inputs": {"_dependsOn": ["build"]}},
        ]
        assert validate_plan(steps) == []

    def test_empty(self):
        assert validate_plan([]) == ["plan has no steps"]

    def test_problems_are_collected(self):
        errors = validate_plan(
            [
                {"name": "a", "tool": "bash"},
                {"name": "a", "tool": "bash"},
                {"tool": "bash"},
                {"name": "c"},
                {"name": "d", "tool": "bash", "inputs": {"_dependsOn": ["d", "ghost"]}},
            ]
        )
        assert "duplicate step name 'a'" in errors
        assert "step 2 has no name" in errors
        assert "step 'c' has no tool" in errors
        assert "step 'd' depends on itself" in errors
        assert "step 'd' depends on unknown step 'ghost'" in errors


class TestCreateRun:
    @pytest.mark.asyncio
    async def test_persists_and_enqueues(self, any_store, queue):
        run, steps = await create_run(
            any_store,
            queue,
            "release",
            [
                {"name": "a", "tool": "test:echo", "inputs": {"x": 1}},
                {"name": "b", "tool": "test:echo", "idempotency_key": "b-once"},
            ],
        )

        assert (await any_store.get_run(run.id)).plan["goal"] == "release"
        stored = await any_store.list_steps_by_run(run.id)
        assert [s.name for s in stored] == ["a", "b"]
        assert stored[1].idempotency_key == "b-once"
        assert stored[1].inputs == {}
        assert [m["stepId"] for _, m, _ in queue.sent] == [s.id for s in steps]
        assert all(m["__attempt"] == 1 for _, m, _ in queue.sent)

        (event,) = await any_store.list_events(run.id)
        assert event.type == "run.created"
        assert event.payload == {"goal": "release", "steps": 2}

    @pytest.mark.asyncio
    async def test_invalid_plan_persists_nothing(self, any_store, queue):
        with pytest.raises(PlanValidationError) as exc_info:
            await create_run(any_store, queue, "bad", [{"name": "a"}])

        assert exc_info.value.errors == ["step 'a' has no tool"]
        assert queue.sent == []
