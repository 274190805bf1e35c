"""
Test Blueprint Task Queue
=========================

Per-blueprint single flight, typed FIFO queue, deduplication and removal,
the global process cap, and the queue views.
"""

import asyncio

import pytest

from clawui.task_queue import BlueprintTaskQueue, PendingTask


class TestSingleFlight:
    """One task per blueprint at a time, in FIFO order."""

    @pytest.mark.asyncio
    async def test_tasks_for_same_blueprint_serialize(self):
        queue = BlueprintTaskQueue()
        events = []

        def work(name):
            async def run():
                events.append(f"start {name}")
                await asyncio.sleep(0.01)
                events.append(f"end {name}")
                return name
            return run

        t1 = queue.enqueue("bp", "run", work("a"), node_id="a")
        t2 = queue.enqueue("bp", "run", work("b"), node_id="b")
        t3 = queue.enqueue("bp", "run_all", work("all"))
        assert await asyncio.gather(t1, t2, t3) == ["a", "b", "all"]
        assert events == ["start a", "end a", "start b", "end b", "start all", "end all"]

    @pytest.mark.asyncio
    async def test_different_blueprints_run_concurrently(self):
        queue = BlueprintTaskQueue()
        both_started = asyncio.Event()
        started = []

        def work(name):
            async def run():
                started.append(name)
                if len(started) == 2:
                    both_started.set()
                await asyncio.wait_for(both_started.wait(), timeout=2)
            return run

        await asyncio.gather(
            queue.enqueue("bp1", "run", work("x")),
            queue.enqueue("bp2", "run", work("y")),
        )
        assert sorted(started) == ["x", "y"]

    @pytest.mark.asyncio
    async def test_is_running_and_slot(self):
        queue = BlueprintTaskQueue()
        assert not queue.is_running("bp")
        async with queue.slot("bp"):
            assert queue.is_running("bp")
        assert not queue.is_running("bp")

    @pytest.mark.asyncio
    async def test_failure_releases_slot(self):
        queue = BlueprintTaskQueue()

        async def boom():
            raise RuntimeError("boom")

        async def ok():
            return "ok"

        failing = queue.enqueue("bp", "run", boom, node_id="a")
        after = queue.enqueue("bp", "run", ok, node_id="b")
        with pytest.raises(RuntimeError):
            await failing
        assert await after == "ok"
        assert not queue.is_running("bp")


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_duplicate_returns_same_task(self):
        queue = BlueprintTaskQueue()
        gate = asyncio.Event()

        async def wait():
            await gate.wait()

        first = queue.enqueue("bp", "run", wait, node_id="n1")
        second = queue.enqueue("bp", "run", wait, node_id="n1")
        assert first is second
        assert queue.get_queue_info("bp").queue_length == 1

        different_type = queue.enqueue("bp", "reevaluate", wait, node_id="n1")
        assert different_type is not first
        gate.set()
        await asyncio.gather(first, different_type)

    @pytest.mark.asyncio
    async def test_unknown_task_type(self):
        queue = BlueprintTaskQueue()

        async def noop():
            return None

        with pytest.raises(ValueError):
            queue.enqueue("bp", "teleport", noop)

    @pytest.mark.asyncio
    async def test_remove_queued_task(self):
        queue = BlueprintTaskQueue()
        gate = asyncio.Event()
        ran = []

        async def blocker():
            await gate.wait()

        async def victim():
            ran.append("victim")

        running = queue.enqueue("bp", "run", blocker, node_id="n1")
        queued = queue.enqueue("bp", "run", victim, node_id="n2")
        await asyncio.sleep(0)

        assert queue.remove_queued_task("bp", "n2") is True
        assert queue.remove_queued_task("bp", "n2") is False
        # A task that already started cannot be unqueued
        assert queue.remove_queued_task("bp", "n1") is False

        gate.set()
        await running
        with pytest.raises(asyncio.CancelledError):
            await queued
        assert ran == []


class TestProcessSlots:
    @pytest.mark.asyncio
    async def test_global_cap(self):
        queue = BlueprintTaskQueue(max_concurrent_processes=2)
        active = 0
        peak = 0

        async def spawn():
            nonlocal active, peak
            async with queue.process_slot():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(
            queue.enqueue(f"bp{i}", "run", spawn) for i in range(5)
        ))
        assert peak == 2


class TestViews:
    @pytest.mark.asyncio
    async def test_queue_info(self):
        queue = BlueprintTaskQueue()
        gate = asyncio.Event()

        async def wait():
            await gate.wait()

        t1 = queue.enqueue("bp", "run", wait, node_id="n1")
        t2 = queue.enqueue("bp", "run", wait, node_id="n2")
        await asyncio.sleep(0)
        queue.set_running_node("bp", "n1")

        info = queue.get_queue_info("bp")
        assert info.running is True
        assert info.queue_length == 1
        assert [t.node_id for t in info.pending_tasks] == ["n2"]
        assert info.to_dict()["running_node_id"] == "n1"

        gate.set()
        await asyncio.gather(t1, t2)
        queue.set_running_node("bp", None)
        assert queue.get_queue_info("bp").to_dict() == {
            "running": False,
            "queue_length": 0,
            "pending_tasks": [],
            "running_node_id": None,
        }

    @pytest.mark.asyncio
    async def test_global_queue_info_with_describe(self):
        queue = BlueprintTaskQueue()
        gate = asyncio.Event()

        async def wait():
            await gate.wait()

        t1 = queue.enqueue("bp1", "run_all", wait)
        t2 = queue.enqueue("bp1", "run", wait, node_id="n9")
        t3 = queue.enqueue("bp2", "run", wait, node_id="n1")
        await asyncio.sleep(0)

        def describe(blueprint_id, task):
            assert isinstance(task, PendingTask)
            return {"title": f"title of {blueprint_id}"}

        info = queue.get_global_queue_info(describe)
        assert info.active is True
        assert info.total_pending == 1
        states = [(t["blueprint_id"], t["state"], t["type"]) for t in info.tasks]
        assert states == [
            ("bp1", "running", "run_all"),
            ("bp1", "queued", "run"),
            ("bp2", "running", "run"),
        ]
        assert info.tasks[0]["title"] == "title of bp1"

        gate.set()
        await asyncio.gather(t1, t2, t3)
        assert queue.get_global_queue_info().to_dict() == {"active": False, "total_pending": 0, "tasks": []}

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self):
        queue = BlueprintTaskQueue()

        async def forever():
            await asyncio.sleep(3600)

        t1 = queue.enqueue("bp", "run", forever, node_id="a")
        t2 = queue.enqueue("bp", "run", forever, node_id="b")
        await asyncio.sleep(0)
        await queue.shutdown()
        assert t1.cancelled() and t2.cancelled()
        assert not queue.is_running("bp")
