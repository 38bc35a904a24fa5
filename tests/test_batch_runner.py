# ============================================================================
# FILE: tests/test_batch_runner.py
# ============================================================================
import sys
import stat
import time
import threading
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
from datetime import date, datetime

from airshed.errors import EngineTimeoutError, MeteorologyMissingError
from airshed.trajectory.batch_runner import (
    TrajectoryBatchRunner, chunk_dates, default_worker_count, run_chunk_safely,
)
from airshed.trajectory.hysplit_engine import HysplitEngine, Receptor


class FakeEngine:
    """Stands in for HysplitEngine: one point per (date, hour) start."""

    def __init__(self, failures=None, delays=None):
        self.failures = failures or {}
        self.delays = delays or {}
        self.workdirs = []
        self._lock = threading.Lock()

    def run_chunk(self, dates, receptor, duration_hours, met_type, hours, workdir, timeout=None):
        with self._lock:
            self.workdirs.append(Path(workdir).name)
        time.sleep(self.delays.get(dates[0], 0.0))
        if dates[0] in self.failures:
            raise self.failures[dates[0]]

        rows = []
        for day in dates:
            for hour in hours:
                rows.append({
                    'run_datetime': pd.Timestamp(datetime(day.year, day.month, day.day, hour)),
                    'age_hours': 0.0,
                    'receptor': receptor.name,
                })
        return pd.DataFrame(rows)


def make_runner(engine, backend='thread', chunk_size=5, workers=4, chunk_timeout=None):
    config = {'trajectory': {
        'chunk_size': chunk_size,
        'hours': [0, 12],
        'backend': backend,
        'workers': workers,
        'working_dir': 'unused',
        'chunk_timeout_s': chunk_timeout,
    }}
    return TrajectoryBatchRunner(engine, config)


RECEPTOR = Receptor(39.9, 116.4, name='beijing')
WEEK = pd.date_range('2019-01-01', '2019-01-07', freq='D')

TDUMP_TEXT = """\
     1     1
    CDC1    19     1     1     0     0
     1 BACKWARD OMEGA
    19     1     2     0    39.904  116.407   100.0
     1 PRESSURE
     1     1    19     1     2     0     0     0     0.0    39.904  116.407    100.0    990.1
     1     1    19     1     1    23     0     1    -1.0    39.950  116.300    110.0    985.0
     1     1    19     1     1    22     0     2    -2.0    40.010  116.150    125.0    980.2
"""

posix_only = pytest.mark.skipif(sys.platform == 'win32', reason="fake engine is a shell script")


def make_script_engine(tmp_path):
    """HysplitEngine whose executable copies a fixture tdump into place."""
    met_dir = tmp_path / 'met'
    met_dir.mkdir()
    for name in ('RP201812.gbl', 'RP201901.gbl'):
        (met_dir / name).write_bytes(b"")
    fixture = tmp_path / 'fixture_tdump'
    fixture.write_text(TDUMP_TEXT)

    exec_path = tmp_path / 'hyts_std'
    exec_path.write_text(f'#!/bin/sh\ncp "{fixture}" "$(tail -n 1 CONTROL)"\n')
    exec_path.chmod(exec_path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)

    return HysplitEngine({'trajectory': {
        'exec_path': str(exec_path),
        'met_dir': str(met_dir),
        'bdyfiles_dir': str(tmp_path / 'bdyfiles'),
    }})


class TestChunking:
    """Date partitioning."""

    def test_remainder_chunk(self):
        chunks = chunk_dates(WEEK, 5)
        assert [len(c) for c in chunks] == [5, 2]
        assert chunks[1] == [date(2019, 1, 6), date(2019, 1, 7)]

    def test_unsorted_duplicates_normalized(self):
        chunks = chunk_dates(['2019-01-03', '2019-01-01', '2019-01-03'], 5)
        assert chunks == [[date(2019, 1, 1), date(2019, 1, 3)]]

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            chunk_dates(WEEK, 0)

    def test_worker_count(self):
        assert default_worker_count() >= 1


class TestRunChunkSafely:
    """Failure markers for single chunks."""

    def test_engine_error_reason(self, tmp_path):
        engine = FakeEngine(failures={date(2019, 1, 1): MeteorologyMissingError("no RP201901.gbl")})

        result = run_chunk_safely(engine, 0, [date(2019, 1, 1)], RECEPTOR, -72,
                                  'reanalysis', [0], tmp_path)

        assert not result.ok
        assert result.failure.reason == 'no_meteorology'
        assert 'RP201901.gbl' in result.failure.message

    def test_unexpected_error_reason(self, tmp_path):
        engine = FakeEngine(failures={date(2019, 1, 1): KeyError('boom')})

        result = run_chunk_safely(engine, 3, [date(2019, 1, 1)], RECEPTOR, -72,
                                  'reanalysis', [0], tmp_path)

        assert result.failure.reason == 'unexpected'
        assert 'KeyError' in result.failure.message
        assert engine.workdirs == ['chunk_003']


class TestTrajectoryBatchRunner:
    """Scatter/gather over a worker pool."""

    def test_all_chunks_succeed(self):
        engine = FakeEngine()
        batch = make_runner(engine).run(RECEPTOR, WEEK)

        assert len(batch.frame) == 7 * 2
        assert batch.frame['run_datetime'].is_monotonic_increasing
        assert not batch.failed
        assert sorted(engine.workdirs) == ['chunk_000', 'chunk_001']

    def test_failed_chunk_dropped_without_padding(self):
        engine = FakeEngine(failures={date(2019, 1, 6): MeteorologyMissingError("RP201901.gbl")})
        batch = make_runner(engine).run(RECEPTOR, WEEK)

        days = sorted({t.date() for t in batch.frame['run_datetime']})
        assert days == [date(2019, 1, d) for d in range(1, 6)]
        assert len(batch.failed) == 1
        assert batch.failed[0].index == 1
        assert batch.failed[0].failure.reason == 'no_meteorology'

        status = batch.status_table()
        assert status['ok'].tolist() == [True, False]
        assert status['reason'].tolist()[1] == 'no_meteorology'

    def test_timeout_reason_reported(self):
        engine = FakeEngine(failures={date(2019, 1, 1): EngineTimeoutError("too slow")})
        batch = make_runner(engine).run(RECEPTOR, WEEK)

        assert [r.failure.reason for r in batch.failed] == ['timeout']
        assert len(batch.frame) == 2 * 2

    def test_order_independent_of_completion(self):
        dates = pd.date_range('2019-01-01', '2019-01-09', freq='D')
        # Earlier chunks finish last
        slow_first = FakeEngine(delays={date(2019, 1, 1): 0.3, date(2019, 1, 4): 0.15})
        serial = FakeEngine()

        pooled = make_runner(slow_first, chunk_size=3).run(RECEPTOR, dates)
        reference = make_runner(serial, backend='serial', chunk_size=3).run(RECEPTOR, dates)

        pd.testing.assert_frame_equal(pooled.frame, reference.frame)
        assert [r.index for r in pooled.results] == [0, 1, 2]

    def test_every_chunk_failing_gives_empty_frame(self):
        failures = {date(2019, 1, 1): MeteorologyMissingError("x"),
                    date(2019, 1, 6): MeteorologyMissingError("y")}
        batch = make_runner(FakeEngine(failures=failures)).run(RECEPTOR, WEEK)

        assert batch.frame.empty
        assert len(batch.failed) == 2

    def test_backward_duration_is_negative(self):
        runner = make_runner(FakeEngine())
        assert runner.signed_duration(72) == -72
        assert runner.signed_duration(-48) == -48

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            make_runner(FakeEngine(), backend='dask')

    def test_slow_chunk_abandoned_after_timeout(self):
        engine = FakeEngine(delays={date(2019, 1, 1): 1.5})
        runner = make_runner(engine, chunk_timeout=0.2)

        start = time.monotonic()
        batch = runner.run(RECEPTOR, WEEK)
        elapsed = time.monotonic() - start

        assert elapsed < 1.0
        assert [r.index for r in batch.failed] == [0]
        assert batch.failed[0].failure.reason == 'timeout'
        assert batch.results[1].ok
        assert len(batch.frame) == 2 * 2

    def test_queued_chunks_not_timed_out(self):
        # One worker: later chunks wait behind earlier ones without using their budget
        engine = FakeEngine(delays={date(2019, 1, 1): 0.15, date(2019, 1, 4): 0.15,
                                    date(2019, 1, 7): 0.15})
        batch = make_runner(engine, chunk_size=3, workers=1, chunk_timeout=0.4).run(RECEPTOR, WEEK)

        assert not batch.failed
        assert len(batch.frame) == 7 * 2

    @posix_only
    def test_process_backend(self, tmp_path):
        config = {'trajectory': {
            'chunk_size': 1,
            'hours': [0],
            'duration_hours': 24,
            'backend': 'process',
            'workers': 2,
            'working_dir': str(tmp_path / 'work'),
            'chunk_timeout_s': 60,
        }}
        runner = TrajectoryBatchRunner(make_script_engine(tmp_path), config)

        batch = runner.run(RECEPTOR, ['2019-01-02', '2019-01-03'])

        assert not batch.failed
        assert [r.index for r in batch.results] == [0, 1]
        assert len(batch.frame) == 2 * 3
        assert batch.frame['receptor'].unique().tolist() == ['beijing']
        assert (tmp_path / 'work' / 'chunk_001' / '2019010300' / 'CONTROL').is_file()
