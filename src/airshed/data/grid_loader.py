# ============================================================================
# FILE: src/airshed/data/grid_loader.py
# ============================================================================
import re
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import xarray as xr

from airshed.errors import GridFormatError, GridNameError
from airshed.utils.geo_utils import grid_cell_areas, grid_spacing, wrap_longitudes

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 3600 * 24 * 365

SUPPORTED_EXTENSIONS = ('nc', 'txt', 'csv')

# Tokens that mark the all-sector aggregate or the quantity type; neither is a sector code
TOTAL_TOKENS = {'TOTALS', 'TOTAL'}
QUANTITY_TOKENS = {'emi', 'flx'}

_NAME_PATTERN = re.compile(
    r'^(?P<stem>.+?)'
    r'(?:\.(?P<resolution>\d+(?:\.\d+)?x\d+(?:\.\d+)?))?'
    r'\.(?P<ext>[A-Za-z0-9]+)$'
)

# Positional fields of the underscore-delimited stem: (name, pattern, required)
FILENAME_SCHEMA: Tuple[Tuple[str, str, bool], ...] = (
    ('version', r'v\d+(?:\.\d+)*', True),
    ('pollutant', r'[A-Za-z][A-Za-z0-9.]*', True),
    ('year', r'\d{4}', True),
    ('sector', r'[A-Z][A-Z0-9]*', False),
)

LAT_NAMES = ('lat', 'latitude', 'y')
LON_NAMES = ('lon', 'longitude', 'x')


@dataclass(frozen=True)
class GridFileName:
    """Metadata encoded in an inventory grid filename."""
    version: str
    pollutant: str
    year: int
    sector: str = ''
    subsector: str = ''
    resolution: Optional[str] = None
    extension: str = 'nc'

    @property
    def sector_code(self) -> str:
        if self.subsector:
            return f"{self.sector}_{self.subsector}"
        return self.sector

    @property
    def is_total(self) -> bool:
        return not self.sector

    @property
    def resolution_deg(self) -> Optional[Tuple[float, float]]:
        if not self.resolution:
            return None
        lat_res, lon_res = self.resolution.split('x')
        return float(lat_res), float(lon_res)


def parse_grid_filename(name: Union[str, Path]) -> GridFileName:
    """
    Parse an EDGAR-style grid filename.

    Pattern: ``<version>_<pollutant>_<year>[_<SECTOR>[_<subsector>]][.<res>].<ext>``,
    e.g. ``v6.1_SO2_2018_ENE.0.1x0.1.nc``. A missing sector token denotes the
    all-sector total.

    Raises:
        GridNameError: if the name does not follow the pattern
    """

    name = Path(name).name
    match = _NAME_PATTERN.match(name)
    if match is None:
        raise GridNameError(f"Unrecognised grid filename: {name}")

    ext = match.group('ext').lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise GridNameError(f"Unsupported grid file extension '{ext}' in {name}")

    tokens = match.group('stem').split('_')
    if tokens and tokens[-1] in QUANTITY_TOKENS:
        tokens = tokens[:-1]

    values: Dict[str, str] = {}
    for position, (field_name, pattern, required) in enumerate(FILENAME_SCHEMA):
        if position >= len(tokens):
            if required:
                raise GridNameError(f"Missing {field_name} field in grid filename: {name}")
            break
        token = tokens[position]
        if field_name == 'sector' and token.upper() in TOTAL_TOKENS:
            token = ''
        elif not re.fullmatch(pattern, token):
            raise GridNameError(
                f"Invalid {field_name} field '{token}' in grid filename: {name}"
            )
        values[field_name] = token

    year = int(values['year'])
    if not 1900 <= year <= 2100:
        raise GridNameError(f"Implausible inventory year {year} in grid filename: {name}")

    subsector = '_'.join(tokens[len(FILENAME_SCHEMA):])
    if subsector and not values.get('sector'):
        raise GridNameError(f"Subsector '{subsector}' given without a sector in: {name}")

    return GridFileName(
        version=values['version'],
        pollutant=values['pollutant'],
        year=year,
        sector=values.get('sector', ''),
        subsector=subsector,
        resolution=match.group('resolution'),
        extension=ext,
    )


@dataclass
class EmissionGrid:
    """Regular lat/lon raster of emission flux (kg m-2 s-1) plus its file metadata."""
    meta: GridFileName
    data: xr.DataArray
    path: Optional[Path] = None
    units: str = 'kg m-2 s-1'
    attrs: Dict = field(default_factory=dict)

    @property
    def lats(self) -> np.ndarray:
        return self.data['lat'].values

    @property
    def lons(self) -> np.ndarray:
        return self.data['lon'].values

    @property
    def values(self) -> np.ndarray:
        return self.data.values

    def cell_areas(self) -> np.ndarray:
        return grid_cell_areas(self.lats, self.lons)


class GridLoader:
    """
    Load gridded emission inventory files.

    Handles:
    - NetCDF grids (EDGAR ``emi_<pollutant>`` variables) via xarray
    - EDGAR tabular ``lat;lon;emission`` text grids via pandas
    - Longitude wrapping and latitude ordering
    - Filename metadata parsing and validation
    """

    def __init__(self, config: Dict):
        self.config = config
        self.grid_config = config.get('emissions', {})
        self.variable = self.grid_config.get('variable')
        self.pattern = self.grid_config.get('file_pattern', '*')

    def scan(self, directory: Union[str, Path],
             pattern: Optional[str] = None) -> Tuple[List[Tuple[Path, GridFileName]], List[Dict]]:
        """
        List grid files in a directory with their parsed metadata.

        Returns:
            Tuple of (parsed files, failures). Files whose names do not parse
            are reported in failures instead of raising.
        """

        directory = Path(directory)
        if not directory.is_dir():
            raise FileNotFoundError(f"Grid directory not found: {directory}")

        parsed = []
        failures = []
        for path in sorted(directory.glob(pattern or self.pattern)):
            if not path.is_file():
                continue
            if path.suffix.lstrip('.').lower() not in SUPPORTED_EXTENSIONS:
                logger.debug(f"Skipping non-grid file: {path.name}")
                continue
            try:
                parsed.append((path, parse_grid_filename(path)))
            except GridNameError as e:
                logger.warning(f"Skipping {path.name}: {e}")
                failures.append({'file': path.name, 'error': 'name', 'message': str(e)})

        logger.info(f"Found {len(parsed)} grid files in {directory} ({len(failures)} rejected names)")
        return parsed, failures

    def load(self, path: Union[str, Path],
             meta: Optional[GridFileName] = None) -> EmissionGrid:
        """
        Load one grid file.

        Raises:
            GridNameError: if the filename cannot be parsed
            GridFormatError: if the file is unreadable or lacks georeferencing
        """

        path = Path(path)
        meta = meta or parse_grid_filename(path)

        if not path.exists():
            raise GridFormatError(f"Grid file not found: {path}")

        if meta.extension == 'nc':
            data, units, attrs = self._read_netcdf(path)
        else:
            data, units, attrs = self._read_table(path, meta)

        data = self._normalise(data, path)

        logger.info(
            f"Loaded {path.name}: {meta.pollutant} {meta.year} "
            f"sector={meta.sector_code or 'Total'} shape={data.shape}"
        )
        return EmissionGrid(meta=meta, data=data, path=path, units=units, attrs=attrs)

    def _read_netcdf(self, path: Path) -> Tuple[xr.DataArray, str, Dict]:
        try:
            with xr.open_dataset(path) as ds:
                variable = self._select_variable(ds, path)
                da = ds[variable].load()
        except GridFormatError:
            raise
        except Exception as e:
            raise GridFormatError(f"Cannot read NetCDF grid {path.name}: {e}") from e

        lat_name = _find_coord(da, LAT_NAMES)
        lon_name = _find_coord(da, LON_NAMES)
        if lat_name is None or lon_name is None:
            raise GridFormatError(f"No latitude/longitude coordinates in {path.name}")

        # Singleton time/level dimensions are common in inventory files
        extra_dims = [d for d in da.dims if d not in (lat_name, lon_name)]
        for dim in extra_dims:
            if da.sizes[dim] != 1:
                raise GridFormatError(
                    f"Grid {path.name} has non-singleton dimension '{dim}' ({da.sizes[dim]})"
                )
        da = da.squeeze(extra_dims, drop=True) if extra_dims else da
        da = da.rename({lat_name: 'lat', lon_name: 'lon'}).transpose('lat', 'lon')

        units = str(da.attrs.get('units', 'kg m-2 s-1'))
        return da.astype('float64'), units, dict(da.attrs)

    def _select_variable(self, ds: xr.Dataset, path: Path) -> str:
        if self.variable:
            if self.variable not in ds.data_vars:
                raise GridFormatError(f"Variable '{self.variable}' not found in {path.name}")
            return self.variable

        candidates = [
            name for name, var in ds.data_vars.items()
            if _find_coord(var, LAT_NAMES) and _find_coord(var, LON_NAMES)
        ]
        if len(candidates) != 1:
            raise GridFormatError(
                f"Cannot choose emission variable in {path.name}: candidates {candidates}"
            )
        return candidates[0]

    def _read_table(self, path: Path, meta: GridFileName) -> Tuple[xr.DataArray, str, Dict]:
        """Read the EDGAR ``lat;lon;emission`` text grid (annual tonnes per cell)."""

        resolution = meta.resolution_deg or tuple(self.grid_config.get('table_resolution', (0.1, 0.1)))

        try:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                lines = f.readlines()
        except OSError as e:
            raise GridFormatError(f"Cannot read grid table {path.name}: {e}") from e

        header_idx = next(
            (i for i, line in enumerate(lines) if line.lower().replace(' ', '').startswith('lat;lon')),
            None
        )
        if header_idx is None:
            raise GridFormatError(f"No 'lat;lon' header in grid table {path.name}")
        header = lines[header_idx]

        try:
            table = pd.read_csv(path, sep=';', skiprows=header_idx)
        except Exception as e:
            raise GridFormatError(f"Cannot parse grid table {path.name}: {e}") from e

        if table.shape[1] < 3:
            raise GridFormatError(f"Grid table {path.name} has fewer than 3 columns")

        table = table.iloc[:, :3]
        table.columns = ['lat', 'lon', 'value']
        table = table.apply(pd.to_numeric, errors='coerce').dropna(subset=['lat', 'lon'])
        if table.empty:
            raise GridFormatError(f"Grid table {path.name} has no rows")

        lat_res, lon_res = resolution
        table['lon'] = wrap_longitudes(table['lon'].values)

        # Cells missing from the table are zero on the global grid
        lats = -90.0 + lat_res * (np.arange(int(round(180.0 / lat_res))) + 0.5)
        lons = -180.0 + lon_res * (np.arange(int(round(360.0 / lon_res))) + 0.5)

        lat_pos = (table['lat'].values + 90.0) / lat_res - 0.5
        lon_pos = (table['lon'].values + 180.0) / lon_res - 0.5
        lat_idx = np.round(lat_pos).astype(int)
        lon_idx = np.round(lon_pos).astype(int) % len(lons)
        off_centre = ((np.abs(lat_pos - np.round(lat_pos)) > 1e-3)
                      | (np.abs(lon_pos - np.round(lon_pos)) > 1e-3))
        if np.any(off_centre) or lat_idx.min() < 0 or lat_idx.max() >= len(lats):
            raise GridFormatError(
                f"Grid table {path.name} has coordinates off the {lat_res:g}x{lon_res:g} cell centres"
            )

        values = np.zeros((len(lats), len(lons)))
        np.add.at(values, (lat_idx, lon_idx), table['value'].values)

        area = grid_cell_areas(lats, lons)
        if 'ton' in header.lower():
            values = values * 1000.0 / (area * SECONDS_PER_YEAR)
        else:
            logger.warning(f"No unit found in {path.name} header; assuming kg/yr per cell")
            values = values / (area * SECONDS_PER_YEAR)

        da = xr.DataArray(values, dims=('lat', 'lon'), coords={'lat': lats, 'lon': lons},
                          name=f"emi_{meta.pollutant.lower()}")
        return da, 'kg m-2 s-1', {'source_header': header.strip()}

    def _normalise(self, da: xr.DataArray, path: Path) -> xr.DataArray:
        """Wrap longitudes, sort coordinates and validate regular spacing."""

        if da.sizes.get('lat', 0) < 2 or da.sizes.get('lon', 0) < 2:
            raise GridFormatError(f"Grid {path.name} needs at least 2x2 cells")

        lons = da['lon'].values.astype(float)
        if np.nanmax(lons) > 180.0:
            da = da.assign_coords(lon=wrap_longitudes(lons))
        da = da.sortby('lat').sortby('lon')

        try:
            grid_spacing(da['lat'].values)
            grid_spacing(da['lon'].values)
        except ValueError as e:
            raise GridFormatError(f"Grid {path.name} is not a regular lat/lon grid: {e}") from e

        return da


def _find_coord(da: Union[xr.DataArray, xr.Dataset], names: Tuple[str, ...]) -> Optional[str]:
    for name in da.dims:
        if str(name).lower() in names:
            return name
    return None
