# ============================================================================
# FILE: src/airshed/trajectory/harmonizer.py
# ============================================================================
import logging

import numpy as np
import pandas as pd

from airshed.trajectory.hysplit_engine import TDUMP_COLUMNS

logger = logging.getLogger(__name__)

CANONICAL_COLUMNS = ['traj_key', 'receptor', 'hour_inc', 'origin_time', 'point_time',
                     'year', 'month', 'day', 'lat', 'lon', 'height']

# Engine fields folded into the canonical columns above
_ENGINE_ONLY = set(TDUMP_COLUMNS) | {'run_datetime'}


def _expand_year(year: pd.Series) -> pd.Series:
    """HYSPLIT writes two-digit years; map 00-49 to 20xx and 50-99 to 19xx."""
    year = year.astype(int)
    return year.where(year >= 100, np.where(year < 50, year + 2000, year + 1900))


def harmonize(raw: pd.DataFrame) -> pd.DataFrame:
    """
    Map engine-native trajectory points onto the canonical schema.

    Columns produced: ``traj_key, receptor, hour_inc, origin_time,
    point_time, year, month, day, lat, lon, height`` followed by any
    diagnostic variables in lower case. ``year/month/day`` describe the
    trajectory's start (receptor arrival) time, not the point's own time.
    Rows are never filtered or reordered.
    """

    if raw.empty:
        return pd.DataFrame(columns=CANONICAL_COLUMNS)

    point_time = pd.to_datetime(pd.DataFrame({
        'year': _expand_year(raw['year']),
        'month': raw['month'].astype(int),
        'day': raw['day'].astype(int),
        'hour': raw['hour'].astype(int),
        'minute': raw['minute'].astype(int) if 'minute' in raw else 0,
    }))

    if 'run_datetime' in raw.columns:
        origin_time = pd.to_datetime(raw['run_datetime'])
    else:
        # Without the run start time, use each trajectory's age-zero point
        start_rows = point_time.where(raw['age_hours'] == 0)
        origin_time = start_rows.groupby(raw['traj_id'].values).transform('first')

    receptor = raw['receptor'] if 'receptor' in raw.columns else 'receptor'
    traj_ids = raw['traj_id'].astype(int) if 'traj_id' in raw.columns else 1

    out = pd.DataFrame({
        'receptor': receptor,
        'hour_inc': raw['age_hours'].astype(float),
        'origin_time': origin_time.values,
        'point_time': point_time.values,
        'lat': raw['lat'].astype(float),
        'lon': raw['lon'].astype(float),
        'height': raw['height'].astype(float),
    }, index=raw.index)
    out['year'] = out['origin_time'].dt.year
    out['month'] = out['origin_time'].dt.month
    out['day'] = out['origin_time'].dt.day
    out['traj_key'] = (
        out['receptor'].astype(str) + '_'
        + out['origin_time'].dt.strftime('%Y%m%d%H') + '_'
        + pd.Series(traj_ids, index=raw.index).astype(str)
    )

    extras = [c for c in raw.columns if c not in _ENGINE_ONLY and c != 'receptor']
    for column in extras:
        out[column.lower()] = raw[column].values

    return out[CANONICAL_COLUMNS + [c.lower() for c in extras]].reset_index(drop=True)


def daily_measurements(series: pd.DataFrame, value_name: str = 'value') -> pd.DataFrame:
    """
    Collapse a (date, value) series to one mean value per calendar day.

    Returns:
        DataFrame with ``date`` (midnight timestamps) and ``value_name``
    """

    if series.empty:
        return pd.DataFrame({'date': pd.Series(dtype='datetime64[ns]'),
                             value_name: pd.Series(dtype=float)})

    daily = (
        series.assign(date=pd.to_datetime(series['date']).dt.normalize().astype('datetime64[ns]'))
        .groupby('date', as_index=False)['value']
        .mean()
        .rename(columns={'value': value_name})
    )
    return daily


def join_measurements(trajectories: pd.DataFrame, measurements: pd.DataFrame,
                      value_name: str = 'value') -> pd.DataFrame:
    """
    Attach the daily measurement to every trajectory point by start date.

    Left join: every trajectory row is kept, and days without a measurement
    get NaN.
    """

    daily = daily_measurements(measurements, value_name)

    traj = trajectories.copy()
    traj['date'] = pd.to_datetime(traj[['year', 'month', 'day']]).astype('datetime64[ns]')

    joined = traj.merge(daily, on='date', how='left', validate='many_to_one')
    if len(joined) != len(trajectories):
        raise RuntimeError(
            f"Measurement join changed row count ({len(trajectories)} -> {len(joined)})"
        )

    n_missing_days = joined.loc[joined[value_name].isna(), 'date'].nunique()
    if n_missing_days:
        logger.info(f"{n_missing_days} trajectory days have no measurement")

    return joined
