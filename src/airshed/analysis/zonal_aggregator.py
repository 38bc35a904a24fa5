# ============================================================================
# FILE: src/airshed/analysis/zonal_aggregator.py
# ============================================================================
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import geopandas as gpd
import shapely
from shapely.geometry.base import BaseGeometry

from airshed.analysis.sectors import sector_label
from airshed.config.logging_config import log_function_call
from airshed.data.grid_loader import EmissionGrid, GridFileName, GridLoader, SECONDS_PER_YEAR
from airshed.errors import GridError
from airshed.utils.geo_utils import cell_edges

logger = logging.getLogger(__name__)

UNIT_FACTORS = {
    'kg/yr': 1.0,
    't/yr': 1e-3,
    'kt/yr': 1e-6,
}

RECORD_COLUMNS = [
    'region', 'pollutant', 'year', 'sector', 'subsector', 'sector_label',
    'emission_rate', 'units', 'source_file',
]


@dataclass
class Coverage:
    """Fraction of each cell in a grid window that lies inside a polygon."""
    row_start: int
    col_start: int
    fractions: np.ndarray

    @property
    def window(self) -> Tuple[slice, slice]:
        rows, cols = self.fractions.shape
        return (slice(self.row_start, self.row_start + rows),
                slice(self.col_start, self.col_start + cols))

    @property
    def is_empty(self) -> bool:
        return self.fractions.size == 0 or not np.any(self.fractions > 0)


@dataclass
class AggregationResult:
    """Output of a directory aggregation run."""
    records: pd.DataFrame
    failures: List[Dict] = field(default_factory=list)
    diagnostics: List[Dict] = field(default_factory=list)


def coverage_fractions(lats: np.ndarray, lons: np.ndarray,
                       geometry: BaseGeometry) -> Coverage:
    """
    Exact area fraction of every grid cell covered by ``geometry``.

    Only the window of cells overlapping the geometry's bounding box is
    evaluated. Cells wholly inside the polygon get 1 without an
    intersection; boundary cells get intersection area / cell area.

    Args:
        lats: Ascending latitude cell centres (degrees)
        lons: Ascending longitude cell centres (degrees)
        geometry: Polygon or MultiPolygon in the grid's coordinates
    """

    # Half-cells past the poles are cut at ±90 as in grid_cell_areas
    lat_edges = np.clip(cell_edges(lats), -90.0, 90.0)
    lon_edges = cell_edges(lons)
    minx, miny, maxx, maxy = geometry.bounds

    i0 = max(int(np.searchsorted(lat_edges, miny, side='right')) - 1, 0)
    i1 = min(int(np.searchsorted(lat_edges, maxy, side='left')), len(lats))
    j0 = max(int(np.searchsorted(lon_edges, minx, side='right')) - 1, 0)
    j1 = min(int(np.searchsorted(lon_edges, maxx, side='left')), len(lons))

    if i0 >= i1 or j0 >= j1:
        return Coverage(i0, j0, np.zeros((0, 0)))

    west, south = np.meshgrid(lon_edges[j0:j1], lat_edges[i0:i1])
    east, north = np.meshgrid(lon_edges[j0 + 1:j1 + 1], lat_edges[i0 + 1:i1 + 1])
    cells = shapely.box(west, south, east, north)

    shapely.prepare(geometry)
    fractions = np.zeros(cells.shape)

    inside = shapely.contains_properly(geometry, cells)
    fractions[inside] = 1.0

    touching = shapely.intersects(geometry, cells) & ~inside
    if np.any(touching):
        partial = shapely.intersection(cells[touching], geometry)
        fractions[touching] = shapely.area(partial) / shapely.area(cells[touching])

    np.clip(fractions, 0.0, 1.0, out=fractions)
    return Coverage(i0, j0, fractions)


def weighted_sum(grid: EmissionGrid, geometry: BaseGeometry,
                 coverage: Optional[Coverage] = None,
                 cell_areas: Optional[np.ndarray] = None) -> float:
    """
    Area-weighted sum of grid values inside a polygon.

    Σ value × covered fraction × cell surface area, over cells with a
    defined value. For a flux in kg m-2 s-1 the result is in kg s-1.

    Returns NaN when the polygon covers no cell with a defined value.
    """

    coverage = coverage or coverage_fractions(grid.lats, grid.lons, geometry)
    if coverage.is_empty:
        return np.nan

    cell_areas = grid.cell_areas() if cell_areas is None else cell_areas
    rows, cols = coverage.window
    values = grid.values[rows, cols]
    areas = cell_areas[rows, cols]

    mask = (coverage.fractions > 0) & np.isfinite(values)
    if not np.any(mask):
        return np.nan

    return float(np.sum(values[mask] * coverage.fractions[mask] * areas[mask]))


def global_weighted_sum(grid: EmissionGrid, cell_areas: Optional[np.ndarray] = None) -> float:
    """Area-weighted sum over every defined cell of the grid."""

    cell_areas = grid.cell_areas() if cell_areas is None else cell_areas
    values = grid.values
    mask = np.isfinite(values)
    return float(np.sum(values[mask] * cell_areas[mask]))


def outside_residual(grid: EmissionGrid, region_sums: Union[pd.Series, np.ndarray, List[float]],
                     cell_areas: Optional[np.ndarray] = None) -> float:
    """
    Weighted sum not assigned to any region.

    For non-overlapping regions, region sums plus this residual equal the
    grid's global weighted sum.
    """

    assigned = float(np.nansum(np.asarray(region_sums, dtype=float)))
    return global_weighted_sum(grid, cell_areas) - assigned


def to_annual_mass(rate_kg_s: Union[float, np.ndarray, pd.Series],
                   units: str = 'kg/yr') -> Union[float, np.ndarray, pd.Series]:
    """Convert a mass rate in kg s-1 to annual mass in ``units``."""

    if units not in UNIT_FACTORS:
        raise ValueError(f"Unsupported output unit '{units}'; choose from {list(UNIT_FACTORS)}")
    return rate_kg_s * SECONDS_PER_YEAR * UNIT_FACTORS[units]


class ZonalAggregator:
    """
    Aggregate gridded emission fluxes into administrative regions.

    Features:
    - Exact partial-cell coverage weighting (no nearest-cell assignment)
    - Latitude-dependent true cell surface areas
    - No-data cells excluded rather than zero-filled
    - Per-file failure isolation across a directory of grids
    - Conservation check (regions + outside residual = global total)
    """

    def __init__(self, config: Dict, grid_loader: Optional[GridLoader] = None):
        self.config = config
        self.emission_config = config.get('emissions', {})
        self.output_units = self.emission_config.get('output_units', 'kg/yr')
        self.conservation_rtol = float(self.emission_config.get('conservation_rtol', 1e-6))
        self.grid_loader = grid_loader or GridLoader(config)

        if self.output_units not in UNIT_FACTORS:
            raise ValueError(f"Unsupported output unit '{self.output_units}'")

        # Coverage depends only on the grid geometry, which inventory files share
        self._coverage_cache: Dict[Tuple, Dict[str, Coverage]] = {}

        logger.info(f"ZonalAggregator initialized (output units: {self.output_units})")

    def region_coverages(self, grid: EmissionGrid,
                         regions: gpd.GeoDataFrame) -> Dict[str, Coverage]:
        """Coverage fractions per region, cached per grid layout and boundary set."""

        key = (
            len(grid.lats), float(grid.lats[0]), float(grid.lats[-1]),
            len(grid.lons), float(grid.lons[0]), float(grid.lons[-1]),
            tuple(regions['region']),
            tuple(shapely.to_wkb(regions.geometry.values)),
        )
        if key not in self._coverage_cache:
            logger.info(f"Computing cell coverage for {len(regions)} regions")
            self._coverage_cache[key] = {
                row.region: coverage_fractions(grid.lats, grid.lons, row.geometry)
                for row in regions.itertuples(index=False)
            }
        return self._coverage_cache[key]

    def aggregate_grid(self, grid: EmissionGrid,
                       regions: gpd.GeoDataFrame) -> Tuple[pd.DataFrame, Dict]:
        """
        Aggregate one grid into one record per region.

        Returns:
            Tuple of (records DataFrame, conservation diagnostics)
        """

        coverages = self.region_coverages(grid, regions)
        cell_areas = grid.cell_areas()

        rates = {
            region: weighted_sum(grid, None, coverage=coverage, cell_areas=cell_areas)
            for region, coverage in coverages.items()
        }

        total = global_weighted_sum(grid, cell_areas)
        residual = outside_residual(grid, list(rates.values()), cell_areas)
        diagnostics = {
            'file': grid.path.name if grid.path else None,
            'global_kg_s': total,
            'assigned_kg_s': total - residual,
            'outside_kg_s': residual,
        }
        if residual < -self.conservation_rtol * max(abs(total), 1e-30):
            logger.warning(
                f"Regions overlap in {diagnostics['file']}: assigned exceeds grid total "
                f"by {-residual:.4g} kg/s"
            )

        meta = grid.meta
        records = pd.DataFrame({
            'region': list(rates.keys()),
            'pollutant': meta.pollutant,
            'year': meta.year,
            'sector': meta.sector or 'TOTALS',
            'subsector': meta.subsector or None,
            'sector_label': sector_label(meta.sector, meta.subsector).value,
            'emission_rate': to_annual_mass(np.array(list(rates.values()), dtype=float),
                                            self.output_units),
            'units': self.output_units,
            'source_file': diagnostics['file'],
        }, columns=RECORD_COLUMNS)

        return records, diagnostics

    def aggregate_file(self, path: Union[str, Path], regions: gpd.GeoDataFrame,
                       meta: Optional[GridFileName] = None) -> pd.DataFrame:
        """Load and aggregate a single grid file. Grid errors propagate."""

        grid = self.grid_loader.load(path, meta=meta)
        records, diagnostics = self.aggregate_grid(grid, regions)
        logger.info(
            f"{Path(path).name}: {diagnostics['assigned_kg_s']:.4g} kg/s in regions, "
            f"{diagnostics['outside_kg_s']:.4g} kg/s outside"
        )
        return records

    @log_function_call
    def aggregate_directory(self, directory: Union[str, Path],
                            regions: gpd.GeoDataFrame,
                            pattern: Optional[str] = None) -> AggregationResult:
        """
        Aggregate every grid file of a directory.

        A file that fails to parse or load is recorded in ``failures`` and
        skipped; the remaining files are still aggregated.
        """

        files, failures = self.grid_loader.scan(directory, pattern)
        frames = []
        diagnostics = []

        for i, (path, meta) in enumerate(files, start=1):
            logger.info(f"Aggregating grid {i}/{len(files)}: {path.name}")
            try:
                grid = self.grid_loader.load(path, meta=meta)
                records, diag = self.aggregate_grid(grid, regions)
            except GridError as e:
                logger.error(f"Failed to aggregate {path.name}: {e}")
                failures.append({'file': path.name, 'error': type(e).__name__, 'message': str(e)})
                continue

            frames.append(records)
            diagnostics.append(diag)

        if frames:
            table = pd.concat(frames, ignore_index=True)
        else:
            table = pd.DataFrame(columns=RECORD_COLUMNS)

        logger.info(
            f"Aggregated {len(frames)}/{len(files)} grid files into {len(table)} records "
            f"({len(failures)} failures)"
        )
        return AggregationResult(records=table, failures=failures, diagnostics=diagnostics)
