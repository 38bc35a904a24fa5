# ============================================================================
# FILE: src/airshed/trajectory/batch_runner.py
# ============================================================================
import os
import time
import logging
from concurrent.futures import (FIRST_COMPLETED, Executor, Future, ProcessPoolExecutor,
                                ThreadPoolExecutor, wait)
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

import pandas as pd

from airshed.config.logging_config import log_function_call
from airshed.errors import TrajectoryEngineError
from airshed.trajectory.hysplit_engine import Receptor

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5
DEFAULT_HOURS = (0, 6, 12, 18)
BACKENDS = ('process', 'thread', 'serial')

# How often running chunks are checked against their timeout
POLL_INTERVAL_S = 0.05


@dataclass
class ChunkFailure:
    """Missing-result marker for a chunk that produced no trajectories."""
    reason: str
    message: str


@dataclass
class ChunkResult:
    """Result or missing marker of one unit of work."""
    index: int
    dates: List[date]
    frame: Optional[pd.DataFrame] = None
    failure: Optional[ChunkFailure] = None
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None and self.frame is not None

    def status(self) -> Dict:
        return {
            'chunk': self.index,
            'first_date': self.dates[0].isoformat() if self.dates else None,
            'last_date': self.dates[-1].isoformat() if self.dates else None,
            'n_dates': len(self.dates),
            'ok': self.ok,
            'n_points': len(self.frame) if self.ok else 0,
            'reason': self.failure.reason if self.failure else None,
            'message': self.failure.message if self.failure else None,
            'elapsed_s': round(self.elapsed_s, 3),
        }


@dataclass
class TrajectoryBatch:
    """Concatenated trajectories of all successful chunks plus per-chunk status."""
    frame: pd.DataFrame
    results: List[ChunkResult] = field(default_factory=list)

    @property
    def failed(self) -> List[ChunkResult]:
        return [r for r in self.results if not r.ok]

    def status_table(self) -> pd.DataFrame:
        return pd.DataFrame([r.status() for r in self.results])


def normalize_dates(dates: Iterable[Union[date, str, pd.Timestamp]]) -> List[date]:
    """Calendar dates, sorted and without duplicates."""
    return sorted({pd.Timestamp(d).date() for d in dates})


def chunk_dates(dates: Iterable[Union[date, str, pd.Timestamp]],
                chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[List[date]]:
    """
    Split dates into consecutive chunks of ``chunk_size``.

    The last chunk holds the remainder, e.g. 7 dates with size 5 give
    chunks of 5 and 2.
    """

    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    ordered = normalize_dates(dates)
    return [ordered[i:i + chunk_size] for i in range(0, len(ordered), chunk_size)]


def default_worker_count() -> int:
    """Available cores minus one for the coordinating process, at least one."""
    return max(1, (os.cpu_count() or 1) - 1)


def run_chunk_safely(engine, index: int, dates: List[date], receptor: Receptor,
                     duration_hours: int, met_type: str, hours: Sequence[int],
                     workdir: Union[str, Path], timeout: Optional[float] = None) -> ChunkResult:
    """
    Run one chunk and turn any failure into a missing-result marker.

    Module-level so that it can be shipped to worker processes.
    """

    start = time.monotonic()
    chunk_dir = Path(workdir) / f"chunk_{index:03d}"
    try:
        frame = engine.run_chunk(dates, receptor, duration_hours, met_type, hours,
                                 chunk_dir, timeout=timeout)
    except TrajectoryEngineError as e:
        failure = ChunkFailure(reason=e.reason, message=str(e))
    except Exception as e:
        failure = ChunkFailure(reason='unexpected', message=f"{type(e).__name__}: {e}")
    else:
        if frame is None:
            failure = ChunkFailure(reason='engine_failed', message='Engine returned no result')
        else:
            return ChunkResult(index, list(dates), frame=frame,
                               elapsed_s=time.monotonic() - start)

    return ChunkResult(index, list(dates), failure=failure,
                       elapsed_s=time.monotonic() - start)


class TrajectoryBatchRunner:
    """
    Scatter date chunks over a worker pool and gather trajectories.

    Workflow:
    1. Partition dates into consecutive chunks
    2. Submit each chunk to the engine on a worker pool
    3. Replace failed or timed-out chunks by missing markers
    4. Concatenate surviving chunks in (date, hour) order
    """

    def __init__(self, engine, config: Dict):
        self.engine = engine
        self.config = config
        self.traj_config = config.get('trajectory', {})

        self.chunk_size = int(self.traj_config.get('chunk_size', DEFAULT_CHUNK_SIZE))
        self.hours = tuple(self.traj_config.get('hours', DEFAULT_HOURS))
        self.met_type = self.traj_config.get('met_type', 'reanalysis')
        self.duration_hours = int(self.traj_config.get('duration_hours', 72))
        self.direction = self.traj_config.get('direction', 'backward')
        self.workdir = Path(self.traj_config.get('working_dir', 'data/hysplit_work'))
        self.backend = self.traj_config.get('backend', 'process')
        self.max_workers = int(self.traj_config.get('workers') or default_worker_count())
        timeout = self.traj_config.get('chunk_timeout_s')
        self.chunk_timeout = float(timeout) if timeout else None

        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{self.backend}'; choose from {BACKENDS}")

        logger.info(
            f"TrajectoryBatchRunner initialized (backend={self.backend}, "
            f"workers={self.max_workers}, chunk_size={self.chunk_size})"
        )

    def signed_duration(self, duration_hours: Optional[int] = None) -> int:
        hours = abs(int(duration_hours if duration_hours is not None else self.duration_hours))
        return -hours if self.direction == 'backward' else hours

    @log_function_call
    def run(self, receptor: Receptor, dates: Iterable[Union[date, str]],
            duration_hours: Optional[int] = None,
            met_type: Optional[str] = None) -> TrajectoryBatch:
        """
        Compute trajectories for every date, tolerating per-chunk failures.

        Args:
            receptor: Arrival point
            dates: Calendar dates to start trajectories on
            duration_hours: Run length (sign follows ``direction``)
            met_type: Weather dataset selector

        Returns:
            TrajectoryBatch with the concatenated frame and per-chunk results
        """

        chunks = chunk_dates(dates, self.chunk_size)
        duration = self.signed_duration(duration_hours)
        met_type = met_type or self.met_type

        logger.info(
            f"Running {len(chunks)} chunks for {receptor.name} "
            f"({sum(len(c) for c in chunks)} dates, {duration} h, met={met_type})"
        )

        tasks = [
            (self.engine, index, chunk, receptor, duration, met_type,
             self.hours, self.workdir, self.chunk_timeout)
            for index, chunk in enumerate(chunks)
        ]

        if self.backend == 'serial' or (len(tasks) <= 1 and self.chunk_timeout is None):
            results = [run_chunk_safely(*task) for task in tasks]
        else:
            results = self._run_pool(tasks)

        results.sort(key=lambda r: r.index)
        for result in results:
            if not result.ok:
                logger.warning(
                    f"Chunk {result.index} ({result.dates[0]}..{result.dates[-1]}) missing: "
                    f"{result.failure.reason} - {result.failure.message}"
                )

        frame = self.concatenate(results)
        n_failed = sum(1 for r in results if not r.ok)
        logger.info(f"Batch finished: {len(results) - n_failed}/{len(results)} chunks, {len(frame)} points")
        return TrajectoryBatch(frame=frame, results=results)

    def _make_executor(self) -> Executor:
        if self.backend == 'thread':
            return ThreadPoolExecutor(max_workers=self.max_workers)
        return ProcessPoolExecutor(max_workers=self.max_workers)

    def _expired(self, order: List[Future], pending: Set[Future], abandoned: Set[Future],
                 started: Dict[Future, float]) -> List[Future]:
        """
        Running futures that have used up their chunk timeout.

        A process pool reports queued calls as running, so only the earliest
        running futures that fit the free worker slots start a clock.
        Abandoned chunks still occupy a slot until their worker returns.
        """

        now = time.monotonic()
        slots = self.max_workers - sum(1 for f in abandoned if not f.done())
        expired = []
        for future in order:
            if slots <= 0:
                break
            if future not in pending or not future.running():
                continue
            slots -= 1
            started.setdefault(future, now)
            if now - started[future] > self.chunk_timeout:
                expired.append(future)
        return expired

    def _run_pool(self, tasks: List[tuple]) -> List[ChunkResult]:
        """
        Run chunks on the executor, enforcing ``chunk_timeout`` per chunk.

        A chunk's clock starts when its future starts running, not when it
        is queued. A chunk still running past its timeout is recorded as
        missing with reason ``timeout`` and abandoned; its worker is not
        waited for.
        """

        results: Dict[int, ChunkResult] = {}
        executor = self._make_executor()
        futures = {executor.submit(run_chunk_safely, *task): task for task in tasks}
        order = list(futures)
        pending: Set[Future] = set(futures)
        started: Dict[Future, float] = {}
        abandoned: Set[Future] = set()

        poll = None if self.chunk_timeout is None else min(POLL_INTERVAL_S, self.chunk_timeout)

        while pending:
            done, pending = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)

            for future in done:
                index, chunk = futures[future][1], futures[future][2]
                try:
                    results[index] = future.result()
                except Exception as e:
                    # Worker crash or pickling error; the chunk itself never reported
                    results[index] = ChunkResult(
                        index, list(chunk),
                        failure=ChunkFailure('unexpected', f"{type(e).__name__}: {e}"),
                    )
                logger.debug(f"Chunk {index} done ({len(results)}/{len(tasks)})")

            if self.chunk_timeout is None:
                continue

            for future in self._expired(order, pending, abandoned, started):
                index, chunk = futures[future][1], futures[future][2]
                elapsed = time.monotonic() - started[future]
                results[index] = ChunkResult(
                    index, list(chunk),
                    failure=ChunkFailure(
                        'timeout', f"Chunk still running after {self.chunk_timeout:g} s"
                    ),
                    elapsed_s=elapsed,
                )
                pending.discard(future)
                abandoned.add(future)

        if abandoned:
            executor.shutdown(wait=False, cancel_futures=True)
        else:
            executor.shutdown(wait=True)

        return list(results.values())

    @staticmethod
    def concatenate(results: List[ChunkResult]) -> pd.DataFrame:
        """
        Concatenate successful chunks by chunk order, then stably by run time.

        Missing chunks are dropped without padding.
        """

        frames = [r.frame for r in sorted(results, key=lambda r: r.index) if r.ok and len(r.frame)]
        if not frames:
            return pd.DataFrame()

        frame = pd.concat(frames, ignore_index=True)
        if 'run_datetime' in frame.columns:
            frame = frame.sort_values('run_datetime', kind='mergesort').reset_index(drop=True)
        return frame
