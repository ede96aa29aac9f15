"""A worker thread that owns one set of engines and plays one trial at a time.

Requests arrive through a single-slot inbox; results and failures go back
to the scheduler's outbox as ``WorkerMessage`` values. A crash inside a
trial becomes an "error" message instead of propagating out of the thread.
"""

from __future__ import annotations

import queue
import threading
import traceback
from dataclasses import dataclass
from typing import Mapping

from . import config
from .engines import EngineFactory, MoveProvider
from .trial import TrialConfig, TrialResult, play_trial


class WorkerInitError(RuntimeError):
    pass


class WorkerInitTimeout(WorkerInitError):
    pass


class WorkerRuntimeError(RuntimeError):
    pass


@dataclass(frozen=True)
class WorkerMessage:
    kind: str  # "result" or "error"
    worker_id: int
    job_id: int
    result: TrialResult | None = None
    error: str | None = None


@dataclass(frozen=True)
class _Job:
    job_id: int
    config: TrialConfig


_STOP = object()


class Worker:
    def __init__(self, worker_id: int, engine_factory: EngineFactory, outbox: queue.Queue):
        self.worker_id = worker_id
        self._engine_factory = engine_factory
        self._outbox = outbox
        self._inbox: queue.Queue = queue.Queue(maxsize=1)
        self._ready = threading.Event()
        self._init_error: str | None = None
        self._roles: Mapping[str, MoveProvider] | None = None
        self._roles_lock = threading.Lock()
        self._terminated = False
        self._thread = threading.Thread(target=self._run, name=f"trial-worker-{worker_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def wait_ready(self, timeout: float) -> None:
        if not self._ready.wait(timeout):
            raise WorkerInitTimeout(f"Worker {self.worker_id} init timeout after {timeout:.0f}s")
        if self._init_error is not None:
            raise WorkerInitError(f"Worker {self.worker_id} failed to initialize: {self._init_error}")

    def initialize(self, timeout: float = config.WORKER_INIT_TIMEOUT_S) -> None:
        self.start()
        self.wait_ready(timeout)

    def run_game(self, job_id: int, trial_config: TrialConfig) -> None:
        if self._terminated:
            raise RuntimeError(f"worker {self.worker_id} is terminated")
        try:
            self._inbox.put_nowait(_Job(job_id, trial_config))
        except queue.Full:
            raise RuntimeError(f"worker {self.worker_id} is busy") from None

    def terminate(self) -> None:
        self._terminated = True
        try:
            self._inbox.put_nowait(_STOP)
        except queue.Full:
            pass
        self._close_roles()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _close_roles(self) -> None:
        with self._roles_lock:
            roles, self._roles = self._roles, None
        for provider in (roles or {}).values():
            provider.close()

    def _run(self) -> None:
        try:
            roles = self._engine_factory()
        except Exception as ex:
            self._init_error = f"{type(ex).__name__}: {ex}"
            self._ready.set()
            return

        with self._roles_lock:
            self._roles = roles
        self._ready.set()

        try:
            while not self._terminated:
                job = self._inbox.get()
                if job is _STOP:
                    break
                try:
                    result = play_trial(job.config, roles)
                except Exception as ex:
                    if self._terminated:
                        break
                    detail = "".join(traceback.format_exception_only(type(ex), ex)).strip()
                    self._outbox.put(WorkerMessage("error", self.worker_id, job.job_id, error=detail))
                else:
                    self._outbox.put(WorkerMessage("result", self.worker_id, job.job_id, result=result))
        finally:
            self._close_roles()
