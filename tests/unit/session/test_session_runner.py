"""
Tests for the asyncio session runner.
"""

import asyncio
import time

import pytest

from src.core.errors import InvalidStateError, PersistenceError
from src.core.models import SessionMode, SessionStatus
from src.session.events import CommandKind, SessionEventType
from src.session.persistence import InMemorySnapshotStore
from src.session.runner import SessionRunner


class SlowSnapshotStore(InMemorySnapshotStore):
    """Snapshot store on a slow disk."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.saved_revisions = []

    def save(self, snapshot):
        time.sleep(self.delay)
        super().save(snapshot)
        self.saved_revisions.append(snapshot.revision)


class FullDiskSnapshotStore(InMemorySnapshotStore):
    def save(self, snapshot):
        raise PersistenceError("disk full")


@pytest.mark.asyncio
async def test_commands_run_in_order(make_controller, make_config):
    controller = make_controller()

    async with SessionRunner(controller, auto_tick=False) as runner:
        await runner.send(CommandKind.START, config=make_config())
        feedback = await runner.send(CommandKind.SUBMIT_ANSWER, question_id="q1", selection=["a"])
        position = await runner.send(CommandKind.NAVIGATE, delta=1)

    assert feedback.correct is True
    assert position == 1
    assert not runner.running


@pytest.mark.asyncio
async def test_rejected_command_raises_in_caller(make_controller, make_config):
    controller = make_controller()

    async with SessionRunner(controller, auto_tick=False) as runner:
        await runner.send(CommandKind.START, config=make_config())
        with pytest.raises(InvalidStateError):
            await runner.send(CommandKind.ENTER_REVIEW)
        # The runner keeps serving after a rejection
        assert await runner.send(CommandKind.FLAG) is True


@pytest.mark.asyncio
async def test_batched_commands_are_reordered_by_issue_time(make_controller, make_config):
    controller = make_controller()

    async with SessionRunner(controller, auto_tick=False) as runner:
        await runner.send(CommandKind.START, config=make_config(SessionMode.TIMED))
        tick = controller.command(CommandKind.TICK, at=1060.0)
        answer = controller.command(CommandKind.SUBMIT_ANSWER, at=1059.0, question_id="q1", selection=["a"])

        tick_result, feedback = await asyncio.gather(runner.submit(tick), runner.submit(answer))

    assert tick_result.expired is True
    assert feedback is None
    assert controller.result.correct_count == 1


@pytest.mark.asyncio
async def test_ticker_expires_session(make_controller, make_config, fake_time):
    controller = make_controller()

    async with SessionRunner(controller, tick_interval=0.01) as runner:
        await runner.send(CommandKind.START, config=make_config(SessionMode.TIMED))
        fake_time.advance(61)
        for _ in range(100):
            if controller.status == SessionStatus.RESULTS:
                break
            await asyncio.sleep(0.01)

    assert controller.status == SessionStatus.RESULTS
    assert controller.result.time_expired is True


@pytest.mark.asyncio
async def test_submit_requires_running_runner(make_controller):
    runner = SessionRunner(make_controller(), auto_tick=False)
    with pytest.raises(RuntimeError):
        await runner.send(CommandKind.TICK)


@pytest.mark.asyncio
async def test_snapshot_saves_do_not_block_the_loop(make_controller, make_config):
    store = SlowSnapshotStore(delay=0.3)
    controller = make_controller(persistence=store)
    loop = asyncio.get_running_loop()
    gaps = []

    async def heartbeat():
        last = loop.time()
        while True:
            await asyncio.sleep(0.01)
            now = loop.time()
            gaps.append(now - last)
            last = now

    async with SessionRunner(controller, auto_tick=False) as runner:
        beat = asyncio.create_task(heartbeat())
        await runner.send(CommandKind.START, config=make_config())
        await runner.send(CommandKind.SUBMIT_ANSWER, question_id="q1", selection=["a"])
        await asyncio.sleep(0.05)
        beat.cancel()

    assert max(gaps) < 0.2
    # Writes are serialized and the newest snapshot lands last
    assert store.saved_revisions == sorted(store.saved_revisions)
    assert store.load(controller.session.session_id).answers == {"q1": ["a"]}
    assert controller.last_save_ok is True


@pytest.mark.asyncio
async def test_background_save_failure_becomes_warning(make_controller, make_config):
    controller = make_controller(persistence=FullDiskSnapshotStore())
    warnings = []
    controller.subscribe(warnings.append, SessionEventType.PERSISTENCE_WARNING)

    async with SessionRunner(controller, auto_tick=False) as runner:
        await runner.send(CommandKind.START, config=make_config())

    assert controller.status == SessionStatus.ACTIVE
    assert controller.last_save_ok is False
    assert controller.persistence_warnings[0].reason == "disk full"
    assert len(warnings) == 1
    assert controller.save_dispatcher is None
