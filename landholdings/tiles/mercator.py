"""
Matemática de tiles Web Mercator (EPSG:3857, esquema XYZ).
"""
from typing import Tuple

from pyproj import Transformer
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform

from landholdings.errors import InvalidTileError

# Metade da circunferência da Terra em metros (EPSG:3857)
ORIGIN_SHIFT = 20037508.342789244
MAX_LATITUDE = 85.0511287798066

Bounds = Tuple[float, float, float, float]

# always_xy: ordem (lon, lat) nas duas direções
WGS84_TO_MERCATOR = Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)
MERCATOR_TO_WGS84 = Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)


def validate_tile(z: int, x: int, y: int, max_zoom: int = 22) -> None:
    """Levanta InvalidTileError se (z, x, y) não é um tile válido."""
    if not (0 <= z <= max_zoom):
        raise InvalidTileError(f"Zoom inválido: {z} (0-{max_zoom})")
    limit = 2 ** z
    if not (0 <= x < limit) or not (0 <= y < limit):
        raise InvalidTileError(f"Coordenadas inválidas para z={z}: x={x}, y={y}")


def tile_bounds_mercator(z: int, x: int, y: int) -> Bounds:
    """(minx, miny, maxx, maxy) do tile em metros EPSG:3857."""
    size = 2 * ORIGIN_SHIFT / (2 ** z)
    minx = -ORIGIN_SHIFT + x * size
    maxy = ORIGIN_SHIFT - y * size
    return minx, maxy - size, minx + size, maxy


def mercator_to_lonlat(mx: float, my: float) -> Tuple[float, float]:
    return MERCATOR_TO_WGS84.transform(mx, my)


def lonlat_to_mercator(lon: float, lat: float) -> Tuple[float, float]:
    lat = max(min(lat, MAX_LATITUDE), -MAX_LATITUDE)
    return WGS84_TO_MERCATOR.transform(lon, lat)


def tile_bounds(z: int, x: int, y: int) -> Bounds:
    """(west, south, east, north) do tile em graus EPSG:4326."""
    minx, miny, maxx, maxy = tile_bounds_mercator(z, x, y)
    west, south = mercator_to_lonlat(minx, miny)
    east, north = mercator_to_lonlat(maxx, maxy)
    return west, south, east, north


def lonlat_to_tile(lon: float, lat: float, z: int) -> Tuple[int, int]:
    """(x, y) do tile que contém o ponto no zoom z."""
    mx, my = lonlat_to_mercator(lon, lat)
    n = 2 ** z
    world = 2 * ORIGIN_SHIFT
    x = int((mx + ORIGIN_SHIFT) / world * n)
    y = int((ORIGIN_SHIFT - my) / world * n)
    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def expand_bounds(bounds: Bounds, fraction: float) -> Bounds:
    """Expande os bounds em `fraction` da largura/altura para cada lado."""
    minx, miny, maxx, maxy = bounds
    dx = (maxx - minx) * fraction
    dy = (maxy - miny) * fraction
    return minx - dx, miny - dy, maxx + dx, maxy + dy


def to_web_mercator(geometry: BaseGeometry) -> BaseGeometry:
    """Reprojeta uma geometria lon/lat para EPSG:3857."""
    return transform(WGS84_TO_MERCATOR.transform, geometry)
