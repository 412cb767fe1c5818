"""
Asyncio driver for a SessionController.

One worker task owns the controller: every command (user input, integrity
signal, clock tick) goes through an ``asyncio.Queue`` and the worker hands
each batch it drains to the controller, which re-orders it by issue time.
A ticker task enqueues TICK commands every ``tick_interval_seconds``.
Snapshot saves run in a worker thread, one at a time, so file or network
latency never stalls the loop; their failures come back as
PERSISTENCE_WARNING events.

Usage:
    async with SessionRunner(controller) as runner:
        await runner.send(CommandKind.START, config=config)
        feedback = await runner.send(CommandKind.SUBMIT_ANSWER, question_id="q1", selection=["a"])
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from src.core.errors import SessionEngineError
from src.session.controller import SessionController
from src.session.events import Command, CommandKind
from src.session.snapshot import SessionSnapshot

_STOP = object()


class SessionRunner:
    """Serializes commands for one controller on the running event loop."""

    def __init__(
        self,
        controller: SessionController,
        tick_interval: float | None = None,
        auto_tick: bool = True,
    ):
        self.controller = controller
        self.tick_interval = tick_interval or controller.settings.tick_interval_seconds
        self.auto_tick = auto_tick

        self._queue: asyncio.Queue[Any] | None = None
        self._worker: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._pending_snapshot: SessionSnapshot | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        if self.controller.persistence is not None:
            self.controller.save_dispatcher = self._schedule_save
        self._worker = asyncio.create_task(self._work(), name="session-worker")
        if self.auto_tick:
            self._ticker = asyncio.create_task(self._tick(), name="session-ticker")
        logger.debug(f"Session runner started (tick every {self.tick_interval}s)")

    async def stop(self) -> None:
        """Stop ticking, finish queued commands and snapshot writes, then stop."""
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        if self._worker is not None and self._queue is not None:
            await self._queue.put(_STOP)
            await self._worker
            self._worker = None

        if self._writer is not None:
            await self._writer
            self._writer = None
        self.controller.save_dispatcher = None
        logger.debug("Session runner stopped")

    async def __aenter__(self) -> SessionRunner:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =========================================================================
    # Commands
    # =========================================================================

    async def submit(self, command: Command) -> Any:
        """
        Queue a command and wait for it to run.

        Returns:
            The command's result

        Raises:
            SessionEngineError: The controller rejected the command
            RuntimeError: The runner is not started
        """
        if not self.running or self._queue is None:
            raise RuntimeError("SessionRunner is not running")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((command, future))
        return await future

    async def send(self, kind: CommandKind, at: float | None = None, **payload: Any) -> Any:
        """Build a command stamped now (or ``at``) and submit it."""
        return await self.submit(self.controller.command(kind, at, **payload))

    # =========================================================================
    # Tasks
    # =========================================================================

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            await self._queue.put((self.controller.command(CommandKind.TICK), None))

    async def _work(self) -> None:
        stopping = False
        while not stopping:
            batch = [await self._queue.get()]
            while not self._queue.empty():
                batch.append(self._queue.get_nowait())

            waiting: dict[int, asyncio.Future | None] = {}
            for item in batch:
                if item is _STOP:
                    stopping = True
                    continue
                command, future = item
                waiting[id(command)] = future
                self.controller.enqueue(command)

            try:
                outcomes = self.controller.process_pending()
            except Exception as e:  # Intentionally broad - waiters must not hang on a controller bug
                logger.exception(f"Session controller failed: {e}")
                for future in waiting.values():
                    if future is not None and not future.done():
                        future.set_exception(e)
                continue

            for command, result in outcomes:
                future = waiting.pop(id(command), None)
                if future is None:
                    if isinstance(result, SessionEngineError):
                        logger.warning(f"{command.kind.value} failed: {result.message}")
                    continue
                if future.done():
                    continue
                if isinstance(result, SessionEngineError):
                    future.set_exception(result)
                else:
                    future.set_result(result)

    # =========================================================================
    # Snapshot writes
    # =========================================================================

    def _schedule_save(self, snapshot: SessionSnapshot) -> None:
        """Queue a snapshot for the background writer; only the newest pending one is kept."""
        self._pending_snapshot = snapshot
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(
                self._write_snapshots(), name="session-snapshot-writer"
            )

    async def _write_snapshots(self) -> None:
        store = self.controller.persistence
        while self._pending_snapshot is not None:
            snapshot, self._pending_snapshot = self._pending_snapshot, None
            try:
                await asyncio.to_thread(store.save, snapshot)
            except Exception as e:  # Intentionally broad - durability is best-effort
                self.controller.record_save_outcome(snapshot, e)
            else:
                self.controller.record_save_outcome(snapshot, None)
