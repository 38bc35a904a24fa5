# ============================================================================
# FILE: src/airshed/trajectory/hysplit_engine.py
# ============================================================================
import logging
import subprocess
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import pandas as pd

from airshed.errors import EngineFailedError, EngineTimeoutError, MeteorologyMissingError

logger = logging.getLogger(__name__)

MONTH_ABBR = ['jan', 'feb', 'mar', 'apr', 'may', 'jun',
              'jul', 'aug', 'sep', 'oct', 'nov', 'dec']

MET_TYPES = ('reanalysis', 'gdas1', 'gdas0p5')

TDUMP_COLUMNS = ['traj_id', 'met_grid', 'year', 'month', 'day', 'hour', 'minute',
                 'forecast_hour', 'age_hours', 'lat', 'lon', 'height']

ASCDATA_TEMPLATE = """-90.0  -180.0  lat/lon of lower left corner
1.0     1.0    lat/lon spacing in degrees
180     360    lat/lon number of data points
2              default land use category
0.2            default roughness length (m)
'{bdyfiles}/'  directory of files
"""


@dataclass(frozen=True)
class Receptor:
    """Fixed arrival point of the backward trajectories."""
    lat: float
    lon: float
    height_m: float = 100.0
    name: str = 'receptor'

    def __post_init__(self):
        if not -90 <= self.lat <= 90 or not -180 <= self.lon <= 180:
            raise ValueError(f"Receptor coordinates out of range: ({self.lat}, {self.lon})")


def met_files_for(start: datetime, duration_hours: int, met_type: str) -> List[str]:
    """
    Meteorology file names covering a trajectory run window.

    The window spans from the run start back (or forward) ``duration_hours``;
    one day of padding is added on each side so that interpolation at the
    window edges has data.

    Args:
        start: Run start time (receptor arrival time for backward runs)
        duration_hours: Run length; negative for backward trajectories
        met_type: One of 'reanalysis', 'gdas1', 'gdas0p5'
    """

    if met_type not in MET_TYPES:
        raise ValueError(f"Unknown met type '{met_type}'; choose from {MET_TYPES}")

    end = start + timedelta(hours=duration_hours)
    first = min(start, end).date() - timedelta(days=1)
    last = max(start, end).date() + timedelta(days=1)

    names = []
    day = first
    while day <= last:
        if met_type == 'reanalysis':
            name = f"RP{day.year:04d}{day.month:02d}.gbl"
        elif met_type == 'gdas1':
            week = (day.day - 1) // 7 + 1
            name = f"gdas1.{MONTH_ABBR[day.month - 1]}{day.year % 100:02d}.w{week}"
        else:
            name = f"{day.strftime('%Y%m%d')}_gdas0p5"
        if name not in names:
            names.append(name)
        day += timedelta(days=1)

    return names


def write_control(path: Union[str, Path], start: datetime, receptor: Receptor,
                  duration_hours: int, met_dir: Union[str, Path], met_files: Sequence[str],
                  output_dir: Union[str, Path], output_name: str = 'tdump',
                  vertical_motion: int = 0, model_top: float = 10000.0) -> Path:
    """Write a HYSPLIT CONTROL file for a single-location trajectory run."""

    path = Path(path)
    lines = [
        start.strftime('%y %m %d %H'),
        '1',
        f"{receptor.lat:.4f} {receptor.lon:.4f} {receptor.height_m:.1f}",
        str(int(duration_hours)),
        str(int(vertical_motion)),
        f"{model_top:.1f}",
        str(len(met_files)),
    ]
    for name in met_files:
        lines.append(f"{Path(met_dir).as_posix()}/")
        lines.append(name)
    lines.append(f"{Path(output_dir).as_posix()}/")
    lines.append(output_name)

    path.write_text('\n'.join(lines) + '\n')
    return path


def read_tdump(path: Union[str, Path]) -> pd.DataFrame:
    """
    Parse a HYSPLIT trajectory endpoint (tdump) file.

    Returns:
        DataFrame with the engine's native fields (see ``TDUMP_COLUMNS``)
        followed by its diagnostic variables, e.g. ``PRESSURE``
    """

    path = Path(path)
    with open(path, 'r') as f:
        lines = [line.rstrip('\n') for line in f if line.strip()]

    try:
        n_grids = int(lines[0].split()[0])
        pos = 1 + n_grids
        n_traj = int(lines[pos].split()[0])
        pos += 1 + n_traj
        diag_header = lines[pos].split()
        n_diag = int(diag_header[0])
        diag_names = diag_header[1:1 + n_diag]
        pos += 1
    except (IndexError, ValueError) as e:
        raise EngineFailedError(f"Malformed tdump header in {path}: {e}") from e

    columns = TDUMP_COLUMNS + diag_names
    rows = []
    for line in lines[pos:]:
        fields = line.split()
        if len(fields) < len(columns):
            raise EngineFailedError(f"Truncated tdump record in {path}: '{line.strip()}'")
        rows.append(fields[:len(columns)])

    df = pd.DataFrame(rows, columns=columns)
    int_columns = TDUMP_COLUMNS[:8]
    df[int_columns] = df[int_columns].astype(int)
    float_columns = [c for c in columns if c not in int_columns]
    df[float_columns] = df[float_columns].astype(float)
    return df


class HysplitEngine:
    """
    Adapter around the HYSPLIT ``hyts_std`` executable.

    Each run gets its own directory holding CONTROL, ASCDATA.CFG and the
    tdump output. The meteorology directory is only read.
    """

    def __init__(self, config: Dict):
        self.config = config
        self.engine_config = config.get('trajectory', {})
        self.exec_path = Path(self.engine_config.get('exec_path', 'hyts_std'))
        self.met_dir = Path(self.engine_config.get('met_dir', 'data/met'))
        self.bdyfiles_dir = Path(self.engine_config.get('bdyfiles_dir', 'bdyfiles'))
        self.model_top = float(self.engine_config.get('model_top_m', 10000.0))
        self.vertical_motion = int(self.engine_config.get('vertical_motion', 0))

    def check_met_files(self, names: Sequence[str]) -> None:
        missing = [name for name in names if not (self.met_dir / name).is_file()]
        if missing:
            raise MeteorologyMissingError(
                f"Missing meteorology in {self.met_dir}: {', '.join(missing)}"
            )

    def run_single(self, start: datetime, receptor: Receptor, duration_hours: int,
                   met_type: str, run_dir: Union[str, Path],
                   timeout: Optional[float] = None) -> pd.DataFrame:
        """Run one trajectory starting at ``start`` and return its tdump frame."""

        run_dir = Path(run_dir)
        run_dir.mkdir(parents=True, exist_ok=True)

        met_files = met_files_for(start, duration_hours, met_type)
        self.check_met_files(met_files)

        tdump_name = f"tdump_{start.strftime('%Y%m%d%H')}"
        write_control(
            run_dir / 'CONTROL', start, receptor, duration_hours,
            self.met_dir.resolve(), met_files, run_dir.resolve(), tdump_name,
            vertical_motion=self.vertical_motion, model_top=self.model_top,
        )
        (run_dir / 'ASCDATA.CFG').write_text(
            ASCDATA_TEMPLATE.format(bdyfiles=self.bdyfiles_dir.resolve().as_posix())
        )

        if timeout is not None and timeout <= 0:
            raise EngineTimeoutError(f"No time left to run {start:%Y-%m-%d %H}h")

        try:
            completed = subprocess.run(
                [str(self.exec_path)], cwd=run_dir, capture_output=True,
                text=True, timeout=timeout, check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise EngineTimeoutError(
                f"HYSPLIT run {start:%Y-%m-%d %H}h exceeded {timeout:.0f} s"
            ) from e
        except OSError as e:
            raise EngineFailedError(f"Cannot execute {self.exec_path}: {e}") from e

        tdump_path = run_dir / tdump_name
        if completed.returncode != 0 or not tdump_path.is_file():
            stderr = (completed.stderr or completed.stdout or '').strip()[-500:]
            raise EngineFailedError(
                f"HYSPLIT run {start:%Y-%m-%d %H}h failed (exit {completed.returncode}): {stderr}"
            )

        df = read_tdump(tdump_path)
        df['run_datetime'] = pd.Timestamp(start)
        df['receptor'] = receptor.name
        return df

    def run_chunk(self, dates: Sequence[date], receptor: Receptor, duration_hours: int,
                  met_type: str, hours: Sequence[int], workdir: Union[str, Path],
                  timeout: Optional[float] = None) -> pd.DataFrame:
        """
        Run all (date, hour) start times of a chunk.

        Any failing run fails the whole chunk. ``timeout`` is the budget for
        the whole chunk in seconds; each run receives what is left of it.

        Returns:
            Concatenated tdump frames ordered by run start, then trajectory age
        """

        workdir = Path(workdir)
        deadline = time.monotonic() + timeout if timeout is not None else None
        frames = []

        for day in sorted(dates):
            for hour in sorted(hours):
                start = datetime(day.year, day.month, day.day, int(hour))
                remaining = deadline - time.monotonic() if deadline is not None else None
                logger.debug(f"Running trajectory {start:%Y-%m-%d %H}h for {receptor.name}")
                frames.append(self.run_single(
                    start, receptor, duration_hours, met_type,
                    workdir / start.strftime('%Y%m%d%H'), timeout=remaining,
                ))

        if not frames:
            return pd.DataFrame(columns=TDUMP_COLUMNS + ['run_datetime', 'receptor'])

        df = pd.concat(frames, ignore_index=True)
        # Backward ages run 0, -1, -2, ...; keep the path order from arrival outwards
        df['_abs_age'] = df['age_hours'].abs()
        df = df.sort_values(['run_datetime', 'traj_id', '_abs_age'], kind='mergesort')
        return df.drop(columns='_abs_age').reset_index(drop=True)
