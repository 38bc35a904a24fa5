# ============================================================================
# FILE: src/airshed/data/boundary_loader.py
# ============================================================================
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import geopandas as gpd
from shapely.validation import make_valid

from airshed.errors import RegionSourceError

logger = logging.getLogger(__name__)

TARGET_CRS = 'EPSG:4326'


class RegionLoader:
    """
    Load administrative boundary polygons keyed by region name.

    The result always has exactly two columns, ``region`` and ``geometry``,
    in geographic coordinates (EPSG:4326) with one row per unique name.
    """

    def __init__(self, config: Dict):
        self.config = config
        self.region_config = config.get('emissions', {}).get('regions', {})

    def load(self, path: Optional[Union[str, Path]] = None,
             name_column: Optional[str] = None,
             level: Optional[Union[int, str]] = None) -> gpd.GeoDataFrame:
        """
        Read regions from any vector format geopandas understands.

        Args:
            path: Boundary file; defaults to ``emissions.regions.path``
            name_column: Attribute holding the region name
            level: Value of ``level_column`` to keep (e.g. admin level 1)

        Returns:
            GeoDataFrame with ``region`` and ``geometry`` columns
        """

        path = path or self.region_config.get('path')
        if not path:
            raise RegionSourceError("No boundary file configured (emissions.regions.path)")

        path = Path(path)
        if not path.exists():
            raise RegionSourceError(f"Boundary file not found: {path}")

        logger.info(f"Loading regions from {path}")
        try:
            gdf = gpd.read_file(path)
        except Exception as e:
            raise RegionSourceError(f"Cannot read boundary file {path}: {e}") from e

        return self.prepare(
            gdf,
            name_column=name_column or self.region_config.get('name_column', 'name'),
            level=level if level is not None else self.region_config.get('level'),
        )

    def prepare(self, gdf: gpd.GeoDataFrame, name_column: str = 'name',
                level: Optional[Union[int, str]] = None) -> gpd.GeoDataFrame:
        """Filter, reproject, repair and dissolve a raw boundary GeoDataFrame."""

        if name_column not in gdf.columns:
            raise RegionSourceError(
                f"Name column '{name_column}' not in boundary attributes {list(gdf.columns)}"
            )

        level_column = self.region_config.get('level_column')
        if level is not None and level_column:
            if level_column not in gdf.columns:
                raise RegionSourceError(f"Level column '{level_column}' not in boundary attributes")
            gdf = gdf[gdf[level_column].astype(str) == str(level)]
            logger.info(f"Kept {len(gdf)} features at {level_column}={level}")

        if gdf.crs is None:
            logger.warning(f"Boundary data has no CRS; assuming {TARGET_CRS}")
            gdf = gdf.set_crs(TARGET_CRS)
        elif gdf.crs.to_epsg() != 4326:
            logger.info(f"Reprojecting boundaries from {gdf.crs.to_string()} to {TARGET_CRS}")
            gdf = gdf.to_crs(TARGET_CRS)

        gdf = gdf[[name_column, 'geometry']].rename(columns={name_column: 'region'})
        gdf = gdf[gdf['region'].notna()]

        empty = gdf.geometry.is_empty | gdf.geometry.isna()
        if empty.any():
            logger.warning(f"Dropping {int(empty.sum())} regions with empty geometry")
            gdf = gdf[~empty]

        invalid = ~gdf.geometry.is_valid
        if invalid.any():
            logger.warning(f"Repairing {int(invalid.sum())} invalid region geometries")
            gdf = gdf.copy()
            gdf.loc[invalid, 'geometry'] = gdf.loc[invalid, 'geometry'].apply(make_valid)

        if gdf['region'].duplicated().any():
            n_dup = int(gdf['region'].duplicated().sum())
            logger.info(f"Dissolving {n_dup} duplicate region names into single geometries")
            gdf = gdf.dissolve(by='region', as_index=False)

        if gdf.empty:
            raise RegionSourceError("No usable regions after filtering")

        gdf = gdf.sort_values('region').reset_index(drop=True)
        logger.info(f"Prepared {len(gdf)} regions")
        return gpd.GeoDataFrame(gdf[['region', 'geometry']], geometry='geometry', crs=TARGET_CRS)
