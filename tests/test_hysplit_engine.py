# ============================================================================
# FILE: tests/test_hysplit_engine.py
# ============================================================================
import sys
import stat
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
from datetime import date, datetime

from airshed.errors import EngineFailedError, EngineTimeoutError, MeteorologyMissingError
from airshed.trajectory.hysplit_engine import (
    TDUMP_COLUMNS, HysplitEngine, Receptor, met_files_for, read_tdump, write_control,
)

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


def write_script(path, body):
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return path


class TestMeteorologyFiles:
    """File naming per weather dataset."""

    def test_reanalysis_spans_month_boundary(self):
        names = met_files_for(datetime(2019, 1, 2, 0), -72, 'reanalysis')
        assert names == ['RP201812.gbl', 'RP201901.gbl']

    def test_gdas1_weekly_files(self):
        names = met_files_for(datetime(2019, 1, 10, 0), -24, 'gdas1')
        assert names == ['gdas1.jan19.w2']

    def test_gdas0p5_daily_files(self):
        names = met_files_for(datetime(2019, 1, 10, 0), -24, 'gdas0p5')
        assert names == ['20190108_gdas0p5', '20190109_gdas0p5',
                         '20190110_gdas0p5', '20190111_gdas0p5']

    def test_forward_window(self):
        names = met_files_for(datetime(2019, 1, 30, 0), 72, 'reanalysis')
        assert names == ['RP201901.gbl', 'RP201902.gbl']

    def test_unknown_met_type(self):
        with pytest.raises(ValueError):
            met_files_for(datetime(2019, 1, 10), -24, 'era5')


class TestControlAndOutput:
    """CONTROL file layout and tdump parsing."""

    def test_control_file_layout(self, tmp_path):
        receptor = Receptor(lat=39.9042, lon=116.4074, height_m=100)
        path = write_control(
            tmp_path / 'CONTROL', datetime(2019, 1, 2, 6), receptor, -72,
            '/met', ['RP201812.gbl', 'RP201901.gbl'], '/out', 'tdump_2019010206',
        )

        lines = path.read_text().splitlines()
        assert lines == [
            '19 01 02 06',
            '1',
            '39.9042 116.4074 100.0',
            '-72',
            '0',
            '10000.0',
            '2',
            '/met/', 'RP201812.gbl',
            '/met/', 'RP201901.gbl',
            '/out/',
            'tdump_2019010206',
        ]

    def test_read_tdump(self, tmp_path):
        path = tmp_path / 'tdump'
        path.write_text(TDUMP_TEXT)

        df = read_tdump(path)

        assert list(df.columns) == TDUMP_COLUMNS + ['PRESSURE']
        assert len(df) == 3
        assert df['age_hours'].tolist() == [0.0, -1.0, -2.0]
        assert df['year'].dtype.kind == 'i'
        assert df.loc[2, 'height'] == pytest.approx(125.0)

    def test_truncated_tdump_rejected(self, tmp_path):
        path = tmp_path / 'tdump'
        path.write_text(TDUMP_TEXT + "     1     1    19     1     1    21\n")

        with pytest.raises(EngineFailedError):
            read_tdump(path)

    def test_receptor_range_checked(self):
        with pytest.raises(ValueError):
            Receptor(lat=95.0, lon=0.0)


class TestHysplitEngine:
    """Running the executable in per-run directories."""

    def make_engine(self, tmp_path, script_body, met_files=('RP201812.gbl', 'RP201901.gbl')):
        met_dir = tmp_path / 'met'
        met_dir.mkdir()
        for name in met_files:
            (met_dir / name).write_bytes(b"")
        (tmp_path / 'fixture_tdump').write_text(TDUMP_TEXT)
        exec_path = write_script(tmp_path / 'hyts_std', script_body)
        config = {'trajectory': {
            'exec_path': str(exec_path),
            'met_dir': str(met_dir),
            'bdyfiles_dir': str(tmp_path / 'bdyfiles'),
        }}
        return HysplitEngine(config)

    def test_missing_meteorology(self, tmp_path):
        engine = self.make_engine(tmp_path, 'exit 0', met_files=('RP201901.gbl',))

        with pytest.raises(MeteorologyMissingError) as excinfo:
            engine.run_single(datetime(2019, 1, 2), Receptor(39.9, 116.4), -24,
                              'reanalysis', tmp_path / 'run')
        assert 'RP201812.gbl' in str(excinfo.value)
        assert excinfo.value.reason == 'no_meteorology'

    @posix_only
    def test_run_chunk(self, tmp_path):
        fixture = tmp_path / 'fixture_tdump'
        engine = self.make_engine(tmp_path, f'cp "{fixture}" "$(tail -n 1 CONTROL)"')

        df = engine.run_chunk([date(2019, 1, 2)], Receptor(39.9, 116.4, name='beijing'),
                              -24, 'reanalysis', hours=[12, 0], workdir=tmp_path / 'work')

        assert len(df) == 6
        assert df['receptor'].unique().tolist() == ['beijing']
        assert df['run_datetime'].tolist()[:3] == [pd.Timestamp('2019-01-02 00:00')] * 3
        assert df['run_datetime'].tolist()[3:] == [pd.Timestamp('2019-01-02 12:00')] * 3
        assert (tmp_path / 'work' / '2019010200' / 'CONTROL').is_file()
        assert (tmp_path / 'work' / '2019010212' / 'ASCDATA.CFG').is_file()

    @posix_only
    def test_engine_failure(self, tmp_path):
        engine = self.make_engine(tmp_path, 'echo "FATAL ERROR: no met data" >&2\nexit 1')

        with pytest.raises(EngineFailedError) as excinfo:
            engine.run_single(datetime(2019, 1, 2), Receptor(39.9, 116.4), -24,
                              'reanalysis', tmp_path / 'run')
        assert 'FATAL ERROR' in str(excinfo.value)

    @posix_only
    def test_missing_output_is_failure(self, tmp_path):
        engine = self.make_engine(tmp_path, 'exit 0')

        with pytest.raises(EngineFailedError):
            engine.run_single(datetime(2019, 1, 2), Receptor(39.9, 116.4), -24,
                              'reanalysis', tmp_path / 'run')

    @posix_only
    def test_engine_timeout(self, tmp_path):
        engine = self.make_engine(tmp_path, 'exec sleep 10')

        with pytest.raises(EngineTimeoutError) as excinfo:
            engine.run_single(datetime(2019, 1, 2), Receptor(39.9, 116.4), -24,
                              'reanalysis', tmp_path / 'run', timeout=0.5)
        assert excinfo.value.reason == 'timeout'

    def test_unexecutable_engine(self, tmp_path):
        engine = self.make_engine(tmp_path, 'exit 0')
        engine.exec_path = tmp_path / 'does_not_exist'

        with pytest.raises(EngineFailedError):
            engine.run_single(datetime(2019, 1, 2), Receptor(39.9, 116.4), -24,
                              'reanalysis', tmp_path / 'run')
