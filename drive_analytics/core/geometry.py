"""
Geometry for map selections and drive routes.

Great-circle distances use the haversine formula. Point-in-polygon checks
use even-odd ray casting over every ring of a polygon, so inner rings act
as holes and vertex order (clockwise or not) does not matter. A bounding
box check runs first since most drive-test points fall far outside a
user-drawn selection.
"""
import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import shapely.wkt
from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon as ShapelyMultiPolygon
from shapely.geometry import Polygon as ShapelyPolygon

from drive_analytics.data.schemas import LogSample, Polygon
from drive_analytics.utils.exceptions import DataValidationError
from drive_analytics.utils.logging_config import get_logger

logger = get_logger(__name__)

Ring = Sequence[Tuple[float, float]]

# Mean Earth radius in meters
EARTH_RADIUS_M = 6371000.0

# Meters per degree of latitude
METERS_PER_DEGREE = 111111.0


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two points, in meters.

    Example:
        >>> round(haversine_distance(28.6139, 77.2090, 19.0760, 72.8777) / 1000)
        1148
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def route_length_m(samples: Sequence[LogSample]) -> float:
    """
    Length of a drive route: the sum of hops between consecutive samples.

    Hops between different sessions are not counted.
    """
    if len(samples) < 2:
        return 0.0
    lat = np.radians([s.lat for s in samples])
    lng = np.radians([s.lng for s in samples])
    sessions = np.array([s.session_id or '' for s in samples], dtype=object)

    dphi = np.diff(lat)
    dlambda = np.diff(lng)
    a = np.sin(dphi / 2) ** 2 + np.cos(lat[:-1]) * np.cos(lat[1:]) * np.sin(dlambda / 2) ** 2
    hops = 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    same_session = sessions[1:] == sessions[:-1]
    return float(hops[same_session].sum())


def point_in_ring(lat: float, lng: float, ring: Ring) -> bool:
    """
    Ray casting against one ring of ``(lat, lng)`` vertices.

    The ring need not be closed. Points exactly on an edge are not
    guaranteed either way.

    Args:
        lat: Latitude of the point
        lng: Longitude of the point
        ring: Vertices as ``(lat, lng)`` pairs

    Returns:
        True if the horizontal ray from the point crosses the ring an odd
        number of times

    Example:
        >>> square = [(0, 0), (0, 1), (1, 1), (1, 0)]
        >>> point_in_ring(0.5, 0.5, square)
        True
        >>> point_in_ring(1.5, 0.5, square)
        False
    """
    inside = False
    n = len(ring)
    j = n - 1
    for i in range(n):
        lat_i, lng_i = ring[i]
        lat_j, lng_j = ring[j]
        if (lat_i > lat) != (lat_j > lat):
            crossing = (lng_j - lng_i) * (lat - lat_i) / (lat_j - lat_i) + lng_i
            if lng < crossing:
                inside = not inside
        j = i
    return inside


def _ring_tuples(polygon: Polygon) -> List[List[Tuple[float, float]]]:
    return [[(p.lat, p.lng) for p in ring] for ring in polygon.rings]


def point_in_polygon(lat: float, lng: float, polygon: Polygon) -> bool:
    """
    True if the point lies inside ``polygon`` (holes excluded).

    Non-finite coordinates are never inside.
    """
    if lat is None or lng is None or not (np.isfinite(lat) and np.isfinite(lng)):
        return False
    if polygon.bbox is not None and not polygon.bbox.contains(lat, lng):
        return False
    inside = False
    for ring in _ring_tuples(polygon):
        if point_in_ring(lat, lng, ring):
            inside = not inside
    return inside


def points_in_ring(lats: np.ndarray, lngs: np.ndarray, ring: np.ndarray) -> np.ndarray:
    """
    Vectorised :func:`point_in_ring`.

    Parameters
    ----------
    lats, lngs : np.ndarray
        Point coordinates, same shape
    ring : np.ndarray
        ``(n, 2)`` array of ``(lat, lng)`` vertices

    Returns
    -------
    np.ndarray
        Boolean mask, True where the point is inside the ring
    """
    inside = np.zeros(lats.shape, dtype=bool)
    n = len(ring)
    j = n - 1
    with np.errstate(divide='ignore', invalid='ignore'):
        for i in range(n):
            lat_i, lng_i = ring[i]
            lat_j, lng_j = ring[j]
            straddles = (lat_i > lats) != (lat_j > lats)
            crossing = (lng_j - lng_i) * (lats - lat_i) / (lat_j - lat_i) + lng_i
            inside ^= straddles & (lngs < crossing)
            j = i
    return inside


class PolygonFilter:
    """
    Keeps points inside any of a fixed set of polygons.

    Rings and bounding boxes are converted once at construction; an empty
    polygon list lets every point through.

    Example:
        >>> area = Polygon.from_coords([(0, 0), (0, 1), (1, 1), (1, 0)])
        >>> PolygonFilter([area]).contains(0.5, 0.5)
        True
    """

    def __init__(self, polygons: Optional[Iterable[Polygon]] = None):
        self.polygons = list(polygons or [])
        self._rings = [
            [np.asarray(ring, dtype=float) for ring in _ring_tuples(polygon)]
            for polygon in self.polygons
        ]

    def __len__(self):
        return len(self.polygons)

    @property
    def active(self) -> bool:
        return bool(self.polygons)

    def contains(self, lat: float, lng: float) -> bool:
        if not self.active:
            return True
        return any(point_in_polygon(lat, lng, polygon) for polygon in self.polygons)

    def mask(self, lats, lngs) -> np.ndarray:
        """
        Boolean mask of points inside any polygon.

        NaN coordinates are never inside unless no polygon is set.
        """
        lats = np.asarray(lats, dtype=float)
        lngs = np.asarray(lngs, dtype=float)
        if not self.active:
            return np.ones(lats.shape, dtype=bool)

        keep = np.zeros(lats.shape, dtype=bool)
        finite = np.isfinite(lats) & np.isfinite(lngs)
        for polygon, rings in zip(self.polygons, self._rings):
            candidates = finite & ~keep
            if polygon.bbox is not None:
                box = polygon.bbox
                candidates &= (
                    (lats >= box.south) & (lats <= box.north)
                    & (lngs >= box.west) & (lngs <= box.east)
                )
            if not candidates.any():
                continue
            inside = np.zeros(int(candidates.sum()), dtype=bool)
            for ring in rings:
                inside ^= points_in_ring(lats[candidates], lngs[candidates], ring)
            keep[candidates] = inside
        return keep

    def filter(self, samples: Sequence[LogSample]) -> List[LogSample]:
        """Samples inside any polygon, in input order."""
        if not self.active:
            return list(samples)
        if not samples:
            return []
        keep = self.mask([s.lat for s in samples], [s.lng for s in samples])
        return [s for s, k in zip(samples, keep) if k]

    def filter_dataframe(self, df: pd.DataFrame, lat_col: str = 'lat', lng_col: str = 'lng') -> pd.DataFrame:
        """Rows of ``df`` whose coordinates fall inside any polygon (index preserved)."""
        missing = {lat_col, lng_col} - set(df.columns)
        if missing:
            raise DataValidationError(
                f"Missing coordinate columns: {sorted(missing)}. "
                f"Available columns: {sorted(df.columns.tolist())}"
            )
        if not self.active:
            return df.copy()
        keep = self.mask(
            pd.to_numeric(df[lat_col], errors='coerce').to_numpy(),
            pd.to_numeric(df[lng_col], errors='coerce').to_numpy(),
        )
        return df.loc[keep].copy()


def filter_samples_by_polygons(
    samples: Sequence[LogSample],
    polygons: Optional[Iterable[Polygon]],
) -> List[LogSample]:
    """
    Keep samples inside any polygon; no polygons means pass-through.

    Example:
        >>> kept = filter_samples_by_polygons(samples, [selection])
    """
    polygon_filter = PolygonFilter(polygons)
    kept = polygon_filter.filter(samples)
    if polygon_filter.active:
        logger.debug("polygon_filter_applied", polygons=len(polygon_filter),
                     before=len(samples), after=len(kept))
    return kept


def filter_dataframe_by_polygons(
    df: pd.DataFrame,
    polygons: Optional[Iterable[Polygon]],
    lat_col: str = 'lat',
    lng_col: str = 'lng',
) -> pd.DataFrame:
    """
    Filter a DataFrame of points to those inside any polygon.

    Args:
        df: Points with latitude/longitude columns
        polygons: Selection polygons; empty or None keeps every row
        lat_col: Latitude column name
        lng_col: Longitude column name

    Returns:
        Filtered copy of ``df`` (index preserved)

    Raises:
        DataValidationError: If the coordinate columns are missing
    """
    return PolygonFilter(polygons).filter_dataframe(df, lat_col, lng_col)


def _rings_from_shapely(shape: ShapelyPolygon) -> List[List[dict]]:
    # shapely stores (x, y) = (lng, lat)
    rings = [shape.exterior] + list(shape.interiors)
    return [[{'lat': y, 'lng': x} for x, y in ring.coords] for ring in rings]


def polygons_from_wkt(wkt: str, **fields) -> List[Polygon]:
    """
    Parse a ``POLYGON`` or ``MULTIPOLYGON`` WKT string.

    Args:
        wkt: WKT text in ``lng lat`` order
        **fields: Extra Polygon fields (``id``, ``name``, ``session_ids``)

    Returns:
        One Polygon per WKT polygon part, holes preserved; ``[]`` for
        blank input

    Raises:
        DataValidationError: If the text is not valid polygon WKT

    Example:
        >>> [area] = polygons_from_wkt("POLYGON((77.1 28.5, 77.3 28.5, 77.3 28.7, 77.1 28.5))")
        >>> area.bbox.north
        28.7
    """
    if not wkt or not str(wkt).strip():
        return []
    try:
        shape = shapely.wkt.loads(str(wkt).strip())
    except (ShapelyError, ValueError) as e:
        raise DataValidationError(f"Invalid polygon WKT: {e}") from e

    if isinstance(shape, ShapelyPolygon):
        parts = [shape]
    elif isinstance(shape, ShapelyMultiPolygon):
        parts = list(shape.geoms)
    else:
        raise DataValidationError(f"Expected POLYGON or MULTIPOLYGON, got {shape.geom_type}")

    return [Polygon(rings=_rings_from_shapely(part), **fields) for part in parts if not part.is_empty]


def polygon_to_wkt(polygon: Polygon) -> str:
    """Serialise a Polygon back to WKT (``lng lat`` order, rings closed)."""
    rings = [[(p.lng, p.lat) for p in ring] for ring in polygon.rings]
    return ShapelyPolygon(rings[0], rings[1:]).wkt


def rectangle_polygon(south: float, west: float, north: float, east: float, **fields) -> Polygon:
    """Polygon of a rectangle drawn on the map, given its corners."""
    return Polygon.from_coords(
        [(north, west), (north, east), (south, east), (south, west)], **fields
    )


def circle_polygon(lat: float, lng: float, radius_m: float, points: int = 32, **fields) -> Polygon:
    """
    Approximate a drawn circle by a regular polygon.

    Args:
        lat: Center latitude
        lng: Center longitude
        radius_m: Radius in meters
        points: Number of vertices

    Example:
        >>> area = circle_polygon(28.6, 77.2, 500)
        >>> point_in_polygon(28.6, 77.2, area)
        True
    """
    if radius_m <= 0 or points < 3:
        raise DataValidationError(f"Invalid circle: radius={radius_m}, points={points}")
    lng_scale = METERS_PER_DEGREE * max(math.cos(math.radians(lat)), 1e-9)
    coords = []
    for i in range(points):
        angle = 2 * math.pi * i / points
        coords.append((
            min(90.0, max(-90.0, lat + radius_m / METERS_PER_DEGREE * math.cos(angle))),
            lng + radius_m / lng_scale * math.sin(angle),
        ))
    return Polygon.from_coords(coords, **fields)
