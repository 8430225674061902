"""
Vector Tile Generator
=====================

Gera tiles Mapbox Vector Tile (MVT) a partir do store.

CAMADAS:
--------
- ownership: clusters agregados (owner, parcel_count, acres, county)
- parcels: parcelas brutas (id, county, parcel_number, class, owner,
  owner_norm, acres)

SELEÇÃO POR ZOOM:
-----------------
- z <= zoom_threshold (14): camada ownership
- z >  zoom_threshold:      camada parcels
- mode=hybrid:              parcels + ownership (só clusters com 2+ parcelas)

Cada feição é reprojetada para EPSG:3857, recortada nos limites do tile
mais o buffer (256 de 4096) e codificada com mapbox_vector_tile.
Uma feição malformada é descartada (com log) sem derrubar o tile.
Tiles vazios retornam None (o servidor responde 204).
"""
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import mapbox_vector_tile
from loguru import logger
from mapbox_vector_tile.encoder import on_invalid_geometry_make_valid
from shapely.errors import ShapelyError
from shapely.geometry import box
from sqlalchemy.exc import SQLAlchemyError

from landholdings.aggregation.adjacency import to_multipolygon
from landholdings.aggregation.store import AggregationStore
from landholdings.errors import StoreUnavailableError, TileGenerationError
from landholdings.models import TileSettings
from landholdings.tiles.cache import TileCache
from landholdings.tiles.mercator import (
    expand_bounds,
    tile_bounds,
    tile_bounds_mercator,
    to_web_mercator,
    validate_tile,
)

OWNERSHIP_LAYER = "ownership"
PARCELS_LAYER = "parcels"


class TileMode(str, Enum):
    DEFAULT = "default"
    HYBRID = "hybrid"


class TileGenerator:
    """Renderiza tiles MVT com cache em memória."""

    def __init__(
        self,
        store: AggregationStore,
        settings: Optional[TileSettings] = None,
        excluded_counties: Iterable[str] = (),
        cache: Optional[TileCache] = None,
    ):
        self.store = store
        self.settings = settings or TileSettings()
        self.excluded_counties = [c.upper() for c in excluded_counties]
        self.cache = cache or TileCache(ttl_seconds=self.settings.cache_ttl_seconds)
        self.stats = {
            'rendered': 0,
            'empty': 0,
            'features_skipped': 0,
        }

    def layers_for(self, z: int, mode: TileMode) -> List[str]:
        if mode == TileMode.HYBRID:
            return [PARCELS_LAYER, OWNERSHIP_LAYER]
        if z <= self.settings.zoom_threshold:
            return [OWNERSHIP_LAYER]
        return [PARCELS_LAYER]

    def render(self, z: int, x: int, y: int, mode: Any = TileMode.DEFAULT) -> Optional[bytes]:
        """
        Gera (ou busca no cache) o tile z/x/y.

        Returns:
            Bytes do MVT, ou None quando o tile não tem feições

        Raises:
            InvalidTileError: coordenadas fora do esquema XYZ
            TileGenerationError: falha ao consultar o store
        """
        mode = TileMode(mode or TileMode.DEFAULT)
        validate_tile(z, x, y, self.settings.max_zoom)

        key = (z, x, y, mode.value)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        buffer_fraction = self.settings.buffer / self.settings.extent
        query_bounds = expand_bounds(tile_bounds(z, x, y), buffer_fraction)
        mercator_bounds = tile_bounds_mercator(z, x, y)
        clip_box = box(*expand_bounds(mercator_bounds, buffer_fraction))

        layers = []
        for layer_name in self.layers_for(z, mode):
            records = self._query_layer(layer_name, query_bounds, mode)
            features = self._build_features(layer_name, records, clip_box)
            if features:
                layers.append({'name': layer_name, 'features': features})

        if not layers:
            self.stats['empty'] += 1
            return None

        tile = mapbox_vector_tile.encode(
            layers,
            default_options={
                'quantize_bounds': mercator_bounds,
                'extents': self.settings.extent,
                'on_invalid_geometry': on_invalid_geometry_make_valid,
            },
        )

        self.cache.set(key, tile)
        self.stats['rendered'] += 1
        return tile

    def _query_layer(self, layer_name: str, bounds: Tuple[float, float, float, float], mode: TileMode):
        try:
            if layer_name == OWNERSHIP_LAYER:
                return self.store.clusters_in_bounds(
                    bounds,
                    excluded=self.excluded_counties,
                    min_parcels=2 if mode == TileMode.HYBRID else 1,
                    limit=self.settings.max_features,
                )
            return self.store.parcels_in_bounds(
                bounds,
                excluded=self.excluded_counties,
                limit=self.settings.max_features,
            )
        except (StoreUnavailableError, SQLAlchemyError) as e:
            raise TileGenerationError(f"Falha ao consultar camada {layer_name}: {e}") from e

    @staticmethod
    def _properties(layer_name: str, record) -> Dict[str, Any]:
        if layer_name == OWNERSHIP_LAYER:
            props = {
                'owner': record.owner,
                'parcel_count': record.parcel_count,
                'acres': round(record.total_acres, 1),
                'county': record.county,
            }
        else:
            props = {
                'id': record.id,
                'county': record.county,
                'parcel_number': record.parcel_number,
                'class': record.parcel_class,
                'owner': record.owner_raw,
                'owner_norm': record.owner_normalized,
                'acres': round(record.acres, 2),
            }
        return {k: v for k, v in props.items() if v is not None}

    def _build_features(self, layer_name: str, records, clip_box) -> List[Dict[str, Any]]:
        features = []
        for record in records:
            if record.geometry is None or record.geometry.is_empty:
                self._skip(layer_name, record, "geometria ausente")
                continue
            try:
                clipped = to_web_mercator(record.geometry).intersection(clip_box)
                # Só encosta no limite do buffer (linha/ponto)
                if clipped.is_empty or clipped.area == 0:
                    continue
                geometry = to_multipolygon(clipped)
            except (ShapelyError, ValueError, TypeError) as e:
                self._skip(layer_name, record, str(e))
                continue

            features.append({
                'geometry': geometry,
                'properties': self._properties(layer_name, record),
            })
        return features

    def _skip(self, layer_name: str, record, reason: str) -> None:
        self.stats['features_skipped'] += 1
        logger.warning(f"⚠️ Feição ignorada em {layer_name} (id={record.id}): {reason}")
