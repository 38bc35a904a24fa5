# ============================================================================
# FILE: src/airshed/utils/geo_utils.py
# ============================================================================
import numpy as np
import logging
from typing import Union, Tuple

logger = logging.getLogger(__name__)

# Authalic (equal-area) Earth radius in meters
EARTH_RADIUS_M = 6371007.2

# Mean Earth radius in kilometers, used for great-circle distances
EARTH_RADIUS_KM = 6371.0

ArrayLike = Union[float, np.ndarray]


def haversine_distance(lat1: ArrayLike, lon1: ArrayLike,
                       lat2: ArrayLike, lon2: ArrayLike) -> ArrayLike:
    """
    Calculate the great circle distance between points on Earth.

    Works on scalars and on numpy arrays (broadcasting applies).

    Args:
        lat1, lon1: Latitude and longitude of first point(s) (degrees)
        lat2, lon2: Latitude and longitude of second point(s) (degrees)

    Returns:
        Distance in kilometers
    """

    lat1, lon1, lat2, lon2 = map(np.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    c = 2 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))

    return c * EARTH_RADIUS_KM


def cell_area_m2(lat_south: ArrayLike, lat_north: ArrayLike,
                 dlon_deg: ArrayLike) -> ArrayLike:
    """
    Surface area of a latitude/longitude cell on the sphere.

    A = R² · Δλ · |sin φ_north − sin φ_south|

    Args:
        lat_south: Southern edge latitude (degrees)
        lat_north: Northern edge latitude (degrees)
        dlon_deg: Cell width in longitude (degrees)

    Returns:
        Cell area in m²
    """

    dlon_rad = np.radians(np.abs(dlon_deg))
    band = np.abs(np.sin(np.radians(lat_north)) - np.sin(np.radians(lat_south)))
    return EARTH_RADIUS_M ** 2 * dlon_rad * band


def grid_spacing(centres: np.ndarray, rtol: float = 1e-3) -> float:
    """Return the regular spacing of a 1D coordinate array."""

    centres = np.asarray(centres, dtype=float)
    if centres.size < 2:
        raise ValueError("At least two coordinates are needed to infer grid spacing")

    steps = np.diff(centres)
    step = float(np.median(steps))
    if step == 0 or not np.allclose(steps, step, rtol=rtol, atol=1e-9):
        raise ValueError(f"Coordinates are not regularly spaced (median step {step})")

    return step


def cell_edges(centres: np.ndarray) -> np.ndarray:
    """
    Edges of regular cells from their centre coordinates.

    Returns an array one element longer than ``centres``.
    """

    centres = np.asarray(centres, dtype=float)
    step = grid_spacing(centres)
    return np.concatenate([centres - step / 2, [centres[-1] + step / 2]])


def grid_cell_areas(lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """
    Area (m²) of every cell of a regular lat/lon grid.

    Args:
        lats: 1D latitude cell centres (degrees)
        lons: 1D longitude cell centres (degrees)

    Returns:
        2D array shaped (len(lats), len(lons))
    """

    lat_edges = cell_edges(lats)
    dlon = abs(grid_spacing(lons))

    # Clip polar edges so half-cells at ±90 do not overshoot the pole
    lat_edges = np.clip(lat_edges, -90.0, 90.0)
    row_areas = cell_area_m2(lat_edges[:-1], lat_edges[1:], dlon)

    return np.repeat(row_areas[:, np.newaxis], len(lons), axis=1)


def wrap_longitudes(lons: np.ndarray) -> np.ndarray:
    """Map longitudes from 0..360 into -180..180."""

    lons = np.asarray(lons, dtype=float)
    return ((lons + 180.0) % 360.0) - 180.0


def validate_coordinates(lats: np.ndarray, lons: np.ndarray) -> Tuple[np.ndarray, bool]:
    """
    Validate coordinate arrays and return validity mask.

    Args:
        lats, lons: Coordinate arrays to validate

    Returns:
        Tuple of (validity_mask, all_valid_flag)
    """

    lats = np.asarray(lats, dtype=float)
    lons = np.asarray(lons, dtype=float)

    lat_valid = (lats >= -90) & (lats <= 90)
    lon_valid = (lons >= -180) & (lons <= 180)
    not_nan = ~(np.isnan(lats) | np.isnan(lons))

    valid_mask = lat_valid & lon_valid & not_nan
    all_valid = bool(np.all(valid_mask))

    if not all_valid:
        n_invalid = int(np.sum(~valid_mask))
        logger.warning(f"Found {n_invalid} invalid coordinates")

    return valid_mask, all_valid
