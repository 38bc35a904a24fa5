# ============================================================================
# FILE: src/airshed/data/facility_loader.py
# ============================================================================
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd
import geopandas as gpd

from airshed.utils.geo_utils import haversine_distance, validate_coordinates

logger = logging.getLogger(__name__)


class FacilityLoader:
    """Load industrial facility locations used to annotate trajectory maps."""

    def __init__(self, config: Dict):
        self.config = config
        self.facility_config = config.get('facilities', {})

    def load(self, path: Optional[Union[str, Path]] = None) -> gpd.GeoDataFrame:
        """
        Read a (name, sector, lat, lon) table into a point GeoDataFrame.

        Rows with missing or out-of-range coordinates are dropped.
        """

        path = Path(path or self.facility_config.get('path', ''))
        if not path.is_file():
            raise FileNotFoundError(f"Facility file not found: {path}")

        df = pd.read_csv(path)
        df.columns = [c.lower() for c in df.columns]
        df = df.rename(columns={'latitude': 'lat', 'longitude': 'lon', 'sector_label': 'sector'})

        missing = {'sector', 'lat', 'lon'} - set(df.columns)
        if missing:
            raise ValueError(f"Facility table {path.name} lacks columns {sorted(missing)}")
        if 'name' not in df.columns:
            df['name'] = [f"facility_{i}" for i in range(len(df))]

        df['lat'] = pd.to_numeric(df['lat'], errors='coerce')
        df['lon'] = pd.to_numeric(df['lon'], errors='coerce')
        valid, all_valid = validate_coordinates(df['lat'].values, df['lon'].values)
        if not all_valid:
            logger.warning(f"Dropping {int((~valid).sum())} facilities with invalid coordinates")
            df = df[valid]

        gdf = gpd.GeoDataFrame(
            df[['name', 'sector', 'lat', 'lon']].reset_index(drop=True),
            geometry=gpd.points_from_xy(df['lon'], df['lat']),
            crs='EPSG:4326',
        )
        logger.info(f"Loaded {len(gdf)} facilities from {path}")
        return gdf


def facilities_near_trajectories(facilities: pd.DataFrame, trajectories: pd.DataFrame,
                                 radius_km: float = 25.0) -> pd.DataFrame:
    """
    Facilities lying within ``radius_km`` of any trajectory point.

    Returns:
        Facility rows with ``min_distance_km`` and ``n_points`` (points within
        the radius), sorted by distance
    """

    columns = list(facilities.columns) + ['min_distance_km', 'n_points']
    if facilities.empty or trajectories.empty:
        return pd.DataFrame(columns=columns)

    points = trajectories[['lat', 'lon']].dropna().drop_duplicates()
    point_lats = points['lat'].values
    point_lons = points['lon'].values

    min_dist = np.empty(len(facilities))
    counts = np.empty(len(facilities), dtype=int)
    for i, (lat, lon) in enumerate(zip(facilities['lat'].values, facilities['lon'].values)):
        dist = haversine_distance(lat, lon, point_lats, point_lons)
        min_dist[i] = dist.min() if dist.size else np.inf
        counts[i] = int(np.sum(dist <= radius_km))

    result = facilities.copy()
    result['min_distance_km'] = min_dist
    result['n_points'] = counts
    result = result[result['min_distance_km'] <= radius_km]

    logger.info(f"{len(result)}/{len(facilities)} facilities within {radius_km} km of trajectories")
    return result.sort_values('min_distance_km', kind='mergesort').reset_index(drop=True)
