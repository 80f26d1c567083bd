from __future__ import annotations

import logging
import queue
import threading
import time
import traceback
from enum import Enum
from typing import Any, Callable, Sequence

from modupdater.common.errors import UpdateCancelledError
from modupdater.common.types import ModDescriptor, RepairItem, ResolutionResult
from modupdater.updater.update_service import ModUpdateService


log = logging.getLogger(__name__)

PassWork = Callable[[threading.Event], ResolutionResult]


class PassState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PassMode(str, Enum):
    CHECK = "check"
    FORCE = "force"
    REPAIR = "repair"


class UpdatePass:
    """One resolution or repair pass on a background thread.

    The owner supervises it by calling ``poll()`` (directly, through ``wait()``, or
    from an event loop via ``attach()``). ``poll()`` never blocks; it forwards a
    pending cancellation request to the worker and picks up the outcome once the
    worker has finished. A pass is single-use.
    """

    def __init__(self, work: PassWork, mode: PassMode = PassMode.CHECK, name: str = "modupdater-pass"):
        self.work = work
        self.mode = mode
        self.name = name
        self.cancel_event = threading.Event()
        self.error: BaseException | None = None
        self._cancel_requested = threading.Event()
        self._events: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._state = PassState.IDLE
        self._result: ResolutionResult | None = None
        self._thread: threading.Thread | None = None
        self._done_callbacks: list[Callable[["UpdatePass"], None]] = []

    @property
    def state(self) -> PassState:
        return self._state

    @property
    def finished(self) -> bool:
        return self._state in (PassState.COMPLETED, PassState.CANCELLED, PassState.FAILED)

    @property
    def result(self) -> ResolutionResult | None:
        """The pass outcome; only set once the pass has completed without cancellation."""
        return self._result

    def add_done_callback(self, callback: Callable[["UpdatePass"], None]) -> None:
        self._done_callbacks.append(callback)

    def start(self) -> "UpdatePass":
        if self._state is not PassState.IDLE:
            raise RuntimeError(f"Update pass {self.name!r} was already started ({self._state.value}).")
        self._state = PassState.RUNNING
        self._thread = threading.Thread(target=self._worker, daemon=True, name=self.name)
        self._thread.start()
        log.info("Started %s pass", self.mode.value)
        return self

    def _worker(self) -> None:
        try:
            result = self.work(self.cancel_event)
            self._events.put(("done", result))
        except UpdateCancelledError:
            self._events.put(("cancelled", None))
        except Exception as exc:
            self._events.put(("error", (exc, traceback.format_exc())))

    def request_cancel(self) -> None:
        self._cancel_requested.set()

    def poll(self) -> PassState:
        if self._state is not PassState.RUNNING:
            return self._state

        if self._cancel_requested.is_set() and not self.cancel_event.is_set():
            log.info("Cancellation requested for %s pass", self.mode.value)
            self.cancel_event.set()

        try:
            kind, payload = self._events.get_nowait()
        except queue.Empty:
            return self._state

        if kind == "done" and not self.cancel_event.is_set():
            self._result = payload
            self._finish(PassState.COMPLETED)
        elif kind in ("done", "cancelled"):
            # Partial results are dropped on cancellation.
            self._finish(PassState.CANCELLED)
        else:
            exc, tb = payload
            log.error("Update pass failed:\n%s", tb)
            self.error = exc
            self._finish(PassState.FAILED)
        return self._state

    def _finish(self, state: PassState) -> None:
        self._state = state
        if self._thread is not None:
            self._thread.join()
        log.info("%s pass finished: %s", self.mode.value.capitalize(), state.value)
        for callback in self._done_callbacks:
            try:
                callback(self)
            except Exception:
                log.exception("Update pass completion callback failed.")

    def wait(
        self,
        poll_interval: float = 0.05,
        should_cancel: Callable[[], bool] | None = None,
    ) -> ResolutionResult | None:
        """Supervise the pass until it finishes and return its result, if any."""
        if self._state is PassState.IDLE:
            self.start()
        while self.poll() is PassState.RUNNING:
            if should_cancel is not None and should_cancel():
                self.request_cancel()
            time.sleep(poll_interval)
        return self._result

    def attach(
        self,
        after: Callable[[int, Callable[[], None]], Any],
        interval_ms: int = 100,
        on_done: Callable[["UpdatePass"], None] | None = None,
    ) -> None:
        """Drive polling from an event loop exposing ``after(ms, callback)``."""

        def tick() -> None:
            if self.poll() is PassState.RUNNING:
                after(interval_ms, tick)
            elif on_done is not None:
                on_done(self)

        if self._state is PassState.IDLE:
            self.start()
        after(interval_ms, tick)


class UpdateCoordinator:
    """Hands out at most one running pass and tracks which mode it runs in.

    A forced or repair pass puts the coordinator in that mode for its duration; the
    mode returns to ``CHECK`` as soon as the pass reaches a terminal state.
    """

    def __init__(self, service: ModUpdateService):
        self.service = service
        self.mode = PassMode.CHECK
        self.active: UpdatePass | None = None

    @property
    def busy(self) -> bool:
        return self.active is not None and not self.active.finished

    def _launch(self, work: PassWork, mode: PassMode) -> UpdatePass | None:
        if self.busy:
            log.warning("An update pass is already running; ignoring %s request.", mode.value)
            return None
        self.mode = mode
        update_pass = UpdatePass(work, mode=mode, name=f"modupdater-{mode.value}")
        update_pass.add_done_callback(self._on_pass_done)
        self.active = update_pass
        return update_pass.start()

    def _on_pass_done(self, update_pass: UpdatePass) -> None:
        if update_pass is not self.active:
            return
        self.active = None
        if self.mode is not PassMode.CHECK:
            log.debug("Resetting update mode from %s to check", self.mode.value)
            self.mode = PassMode.CHECK

    def start_check(self, mods: Sequence[ModDescriptor]) -> UpdatePass | None:
        snapshot = tuple(mods)
        return self._launch(lambda cancel: self.service.resolve(snapshot, cancel), PassMode.CHECK)

    def start_force(self, mods: Sequence[ModDescriptor]) -> UpdatePass | None:
        snapshot = tuple(mods)
        return self._launch(lambda cancel: self.service.resolve(snapshot, cancel, force=True), PassMode.FORCE)

    def start_repair(self, items: Sequence[RepairItem]) -> UpdatePass | None:
        if not items:
            return None
        snapshot = tuple(items)
        return self._launch(lambda cancel: self.service.repair(snapshot, cancel), PassMode.REPAIR)
