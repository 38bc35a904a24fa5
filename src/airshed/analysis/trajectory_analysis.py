# ============================================================================
# FILE: src/airshed/analysis/trajectory_analysis.py
# ============================================================================
import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans

logger = logging.getLogger(__name__)


def resample_trajectories(df: pd.DataFrame, n_points: int = 24) -> pd.DataFrame:
    """
    Resample every trajectory to ``n_points`` positions evenly spaced in |hour_inc|.

    Trajectories with fewer than two points are dropped.

    Returns:
        DataFrame indexed by ``traj_key`` with columns lat_0..lat_{n-1}, lon_0..lon_{n-1}
    """

    rows = {}
    for key, traj in df.groupby('traj_key', sort=True):
        traj = traj.dropna(subset=['lat', 'lon'])
        if len(traj) < 2:
            continue
        age = traj['hour_inc'].abs().values
        order = np.argsort(age, kind='mergesort')
        age = age[order]
        targets = np.linspace(age[0], age[-1], n_points)
        lats = np.interp(targets, age, traj['lat'].values[order])
        lons = np.interp(targets, age, traj['lon'].values[order])
        rows[key] = np.concatenate([lats, lons])

    columns = [f"lat_{i}" for i in range(n_points)] + [f"lon_{i}" for i in range(n_points)]
    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame.from_dict(rows, orient='index', columns=columns)


def cluster_trajectories(df: pd.DataFrame, n_clusters: int = 4, n_points: int = 24,
                         random_state: int = 42) -> pd.Series:
    """
    Group trajectories by path shape with k-means.

    Each trajectory is resampled to a fixed number of positions; the
    concatenated lat/lon vectors are clustered. Cluster ids are renumbered
    by descending size so that cluster 1 is always the most frequent.

    Returns:
        Series of cluster ids (1-based) indexed by ``traj_key``
    """

    features = resample_trajectories(df, n_points)
    if features.empty:
        return pd.Series(dtype=int, name='cluster')

    n_clusters = min(n_clusters, len(features))
    model = KMeans(n_clusters=n_clusters, n_init=10, random_state=random_state)
    raw_labels = model.fit_predict(features.values)

    counts = pd.Series(raw_labels).value_counts()
    ranking = {label: rank for rank, label in
               enumerate(sorted(counts.index, key=lambda l: (-counts[l], l)), start=1)}
    labels = pd.Series([ranking[l] for l in raw_labels], index=features.index, name='cluster')

    logger.info(f"Clustered {len(features)} trajectories into {n_clusters} groups")
    return labels


def cluster_summary(df: pd.DataFrame, labels: pd.Series,
                    value_name: Optional[str] = None) -> pd.DataFrame:
    """
    Per-cluster trajectory count, share and mean measured concentration.
    """

    summary = labels.value_counts().sort_index().rename('n_trajectories').to_frame()
    summary.index.name = 'cluster'
    summary['share_pct'] = 100.0 * summary['n_trajectories'] / summary['n_trajectories'].sum()

    if value_name and value_name in df.columns:
        per_traj = df.groupby('traj_key')[value_name].first()
        per_traj = per_traj.reindex(labels.index)
        summary['mean_' + value_name] = per_traj.groupby(labels).mean()

    return summary.reset_index()


def concentration_weighted_grid(df: pd.DataFrame, value_name: str,
                                resolution: float = 1.0,
                                min_points: int = 3,
                                exclude_receptor: bool = True) -> pd.DataFrame:
    """
    Concentration-weighted trajectory (CWT) field.

    Every trajectory point carries the measured concentration of its start
    day; the field is the mean of those values per lat/lon cell.

    Args:
        df: Harmonized trajectories joined with measurements
        value_name: Measurement column
        resolution: Cell size in degrees
        min_points: Cells with fewer points get NaN
        exclude_receptor: Drop the age-zero points at the receptor itself

    Returns:
        DataFrame with lat, lon (cell centres), n_points and cwt columns
    """

    points = df.dropna(subset=['lat', 'lon', value_name])
    if exclude_receptor:
        points = points[points['hour_inc'] != 0]
    if points.empty:
        return pd.DataFrame(columns=['lat', 'lon', 'n_points', 'cwt'])

    cell_lat = (np.floor(points['lat'].values / resolution) + 0.5) * resolution
    cell_lon = (np.floor(points['lon'].values / resolution) + 0.5) * resolution

    grid = (
        pd.DataFrame({'lat': cell_lat, 'lon': cell_lon, 'value': points[value_name].values})
        .groupby(['lat', 'lon'], as_index=False)
        .agg(n_points=('value', 'size'), cwt=('value', 'mean'))
    )
    grid.loc[grid['n_points'] < min_points, 'cwt'] = np.nan
    return grid


def summarize_batch(df: pd.DataFrame) -> Dict:
    """Counts used in logs and run metadata."""

    if df.empty:
        return {'n_points': 0, 'n_trajectories': 0, 'n_days': 0}
    return {
        'n_points': int(len(df)),
        'n_trajectories': int(df['traj_key'].nunique()),
        'n_days': int(df[['year', 'month', 'day']].drop_duplicates().shape[0]),
    }
