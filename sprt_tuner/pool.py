"""Fixed-size worker pool that plays a shuffled queue of trials.

Scheduling is greedy pull: every worker gets one trial at startup and the
next queued trial as soon as it reports back. Only the scheduler thread
touches the counters and the queue cursor; workers talk to it exclusively
through the shared outbox.
"""

from __future__ import annotations

import math
import queue
import random
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Sequence

from . import config
from .engines import EngineFactory
from .log import log
from .position import Move
from .trial import TexelSample, TrialConfig, TrialResult
from .worker import Worker, WorkerInitError, WorkerMessage, WorkerRuntimeError


def elo_diff(pct):
    if pct >= 1.0:
        return "+inf"
    elif pct <= 0.0:
        return "-inf"
    return f"{-400 * math.log10((1 - pct) / pct):+.0f}"


@dataclass
class Tally:
    wins: int = 0
    losses: int = 0
    draws: int = 0
    errors: int = 0

    @property
    def games(self) -> int:
        return self.wins + self.losses + self.draws

    @property
    def score(self) -> float:
        return self.wins + 0.5 * self.draws

    def add(self, result: str) -> None:
        if result == "win":
            self.wins += 1
        elif result == "loss":
            self.losses += 1
        elif result == "draw":
            self.draws += 1
        else:
            raise ValueError(f"unknown trial result: {result!r}")

    def elo_diff(self) -> str:
        if self.games == 0:
            return "n/a"
        return elo_diff(self.score / self.games)

    def as_dict(self) -> dict[str, int]:
        return {"wins": self.wins, "losses": self.losses, "draws": self.draws, "errors": self.errors}

    def __str__(self) -> str:
        return f"+{self.wins}={self.draws}-{self.losses}"


@dataclass
class PoolSummary:
    tally: Tally
    results: list[TrialResult] = field(default_factory=list)
    errors: list[WorkerRuntimeError] = field(default_factory=list)
    stopped_early: bool = False  # on_result asked to stop
    abandoned: int = 0  # queued trials left with no live worker


ResultHook = Callable[[TrialResult, Tally], "bool | None"]
SampleSink = Callable[[Sequence[TexelSample]], None]


def build_trial_queue(
    games: int,
    base: TrialConfig | None = None,
    openings: Sequence[Move] = (),
    rng: random.Random | None = None,
) -> list[TrialConfig]:
    """Each game twice, once with "new" on each colour, then shuffled so
    colour never lines up with time of play."""
    base = base or TrialConfig()
    rng = rng or random.Random()
    configs: list[TrialConfig] = []
    for i in range(games):
        opening = openings[i % len(openings)] if openings else base.opening_move
        for new_plays_white in (True, False):
            configs.append(replace(
                base,
                new_plays_white=new_plays_white,
                opening_move=opening,
                game_index=len(configs),
            ))
    rng.shuffle(configs)
    return configs


class TrialScheduler:
    def __init__(
        self,
        engine_factory: EngineFactory,
        concurrency: int = config.MAX_WORKERS,
        init_timeout: float = config.WORKER_INIT_TIMEOUT_S,
        trial_timeout: float = config.TRIAL_TIMEOUT_S,
        respawn: bool = config.RESPAWN_ON_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.engine_factory = engine_factory
        self.concurrency = concurrency
        self.init_timeout = init_timeout
        self.trial_timeout = trial_timeout
        self.respawn = respawn
        self.tally = Tally()
        self._clock = clock
        self._outbox: queue.Queue[WorkerMessage] = queue.Queue()
        self._workers: dict[int, Worker] = {}
        self._next_worker_id = 0

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.close()

    def _spawn(self) -> Worker:
        worker = Worker(self._next_worker_id, self.engine_factory, self._outbox)
        self._next_worker_id += 1
        worker.start()
        return worker

    def start(self) -> None:
        if self._workers:
            return
        log(f"Starting {self.concurrency} worker threads...")
        workers = [self._spawn() for _ in range(self.concurrency)]
        deadline = self._clock() + self.init_timeout
        try:
            for worker in workers:
                worker.wait_ready(max(0.0, deadline - self._clock()))
        except WorkerInitError:
            for worker in workers:
                worker.terminate()
            raise
        self._workers = {w.worker_id: w for w in workers}
        log(f"{len(workers)} workers ready")

    def close(self) -> None:
        workers, self._workers = list(self._workers.values()), {}
        for worker in workers:
            worker.terminate()
        for worker in workers:
            worker.join(timeout=5.0)

    def run(
        self,
        configs: Sequence[TrialConfig],
        on_result: ResultHook | None = None,
        on_samples: SampleSink | None = None,
    ) -> PoolSummary:
        self.start()
        total = len(configs)
        tally = self.tally = Tally()
        summary = PoolSummary(tally)
        in_flight: dict[int, tuple[int, float]] = {}  # worker_id -> (job_id, started)
        cursor = 0
        stop = False

        def dispatch(worker_id: int) -> bool:
            nonlocal cursor
            if stop or cursor >= total:
                return False
            job_id = cursor
            cursor += 1
            self._workers[worker_id].run_game(job_id, configs[job_id])
            in_flight[worker_id] = (job_id, self._clock())
            return True

        for worker_id in list(self._workers):
            dispatch(worker_id)

        while in_flight:
            try:
                msg = self._outbox.get(timeout=self._poll_timeout(in_flight))
            except queue.Empty:
                for worker_id in self._expired(in_flight):
                    job_id, _ = in_flight.pop(worker_id)
                    error = WorkerRuntimeError(f"trial {job_id} timed out after {self.trial_timeout:g}s")
                    self._record_error(summary, worker_id, error)
                    replacement = self._retire(worker_id)
                    if replacement is not None:
                        dispatch(replacement)
                continue

            current = in_flight.get(msg.worker_id)
            if current is None or current[0] != msg.job_id:
                continue
            del in_flight[msg.worker_id]

            if msg.kind == "result" and msg.result is not None:
                result = msg.result
                tally.add(result.result)
                summary.results.append(result)
                if on_samples is not None and result.samples:
                    on_samples(result.samples)
                if on_result is not None and on_result(result, tally):
                    stop = True
            else:
                self._record_error(summary, msg.worker_id, WorkerRuntimeError(msg.error or "unknown error"))

            done = tally.games + tally.errors
            if done % 10 == 0 or done == total:
                log(f"  games={done}/{total} {tally}")

            dispatch(msg.worker_id)

        if not stop and cursor < total:
            # Every worker was retired without a replacement.
            summary.abandoned = total - cursor
            log(f"  ERROR no live workers, {summary.abandoned} trials abandoned")
            for job_id in range(cursor, total):
                tally.errors += 1
                summary.errors.append(WorkerRuntimeError(f"trial {job_id} abandoned: no live workers"))
            cursor = total

        summary.stopped_early = stop and cursor < total
        return summary

    def _record_error(self, summary: PoolSummary, worker_id: int, error: WorkerRuntimeError) -> None:
        summary.tally.errors += 1
        summary.errors.append(error)
        log(f"  ERROR worker {worker_id}: {error}")

    def _poll_timeout(self, in_flight: dict[int, tuple[int, float]]) -> float | None:
        if self.trial_timeout <= 0:
            return None
        now = self._clock()
        soonest = min(started + self.trial_timeout for _, started in in_flight.values())
        return max(0.0, soonest - now)

    def _expired(self, in_flight: dict[int, tuple[int, float]]) -> list[int]:
        if self.trial_timeout <= 0:
            return []
        now = self._clock()
        return [wid for wid, (_, started) in in_flight.items() if now - started >= self.trial_timeout]

    def _retire(self, worker_id: int) -> int | None:
        """Drop a stuck worker; with respawn on, start one replacement."""
        self._workers.pop(worker_id).terminate()
        if not self.respawn:
            return None
        worker = self._spawn()
        try:
            worker.wait_ready(self.init_timeout)
        except WorkerInitError:
            worker.terminate()
            raise
        self._workers[worker.worker_id] = worker
        log(f"  respawned worker {worker_id} as {worker.worker_id}")
        return worker.worker_id
