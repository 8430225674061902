"""
Mapbox Vector Tiles of parcels and ownership clusters.
"""

from landholdings.tiles.cache import TileCache
from landholdings.tiles.generator import TileGenerator, TileMode, OWNERSHIP_LAYER, PARCELS_LAYER
from landholdings.tiles.mercator import tile_bounds, tile_bounds_mercator, validate_tile

__all__ = [
    'TileCache',
    'TileGenerator',
    'TileMode',
    'OWNERSHIP_LAYER',
    'PARCELS_LAYER',
    'tile_bounds',
    'tile_bounds_mercator',
    'validate_tile',
]
