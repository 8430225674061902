"""
Adjacency Clusterer
===================

Agrupa as parcelas de um condado em clusters: conjuntos máximos de
parcelas do MESMO proprietário que se tocam (ou ficam a até
`tolerance` graus uma da outra).

FLUXO POR CONDADO:
------------------
1. Carrega as parcelas do condado (store)
2. Recalcula o nome normalizado a partir de deed_holder (a coluna
   gravada pode estar nula ou desatualizada) e descarta parcelas sem
   proprietário ou sem geometria
3. Agrupa por proprietário (nome normalizado, ou nome canônico do
   OwnerGroupIndex quando o grouping está ativo)
4. Para cada proprietário:
   - STRtree com as geometrias
   - Para cada parcela, consulta candidatas pelo bbox expandido pela
     tolerância e confirma com distance() <= tolerance
   - Union-find sobre as arestas -> componentes conexos
   - unary_union de cada componente -> MultiPolygon
5. Clusters em ordem determinística (owner, menor parcel id)

Cada parcela agregável cai em exatamente um cluster; a área do cluster
é a soma das áreas das parcelas (não a área da geometria unida).
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from loguru import logger
from shapely import STRtree
from shapely.errors import ShapelyError
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon, box
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.validation import make_valid

from landholdings.aggregation.store import AggregationStore
from landholdings.models import AggregatedCluster, Parcel
from landholdings.owners.grouper import OwnerGroupIndex
from landholdings.owners.normalizer import normalize_owner_name


def with_current_owner(parcel: Parcel) -> Parcel:
    """Parcela com owner_normalized recalculado a partir do nome bruto."""
    if parcel.owner_raw is None:
        return parcel
    normalized = normalize_owner_name(parcel.owner_raw)
    if normalized == parcel.owner_normalized:
        return parcel
    return replace(parcel, owner_normalized=normalized)


@dataclass
class SkippedComponent:
    """Componente cuja união geométrica falhou mesmo após make_valid."""
    owner: str
    parcel_ids: Tuple[int, ...]
    error: str


@dataclass
class CountyClusterResult:
    county: str
    clusters: List[AggregatedCluster] = field(default_factory=list)
    parcels_seen: int = 0
    parcels_skipped: int = 0
    skipped_components: List[SkippedComponent] = field(default_factory=list)

    @property
    def parcels_clustered(self) -> int:
        return sum(c.parcel_count for c in self.clusters)

    @property
    def total_acres(self) -> float:
        return sum(c.total_acres for c in self.clusters)


class _UnionFind:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # menor índice vira raiz (ordem estável)
            if rb < ra:
                ra, rb = rb, ra
            self.parent[rb] = ra


def to_multipolygon(geometry: BaseGeometry) -> MultiPolygon:
    """Normaliza o resultado de uma união para MultiPolygon."""
    if isinstance(geometry, MultiPolygon):
        return geometry
    if isinstance(geometry, Polygon):
        return MultiPolygon([geometry])
    if isinstance(geometry, GeometryCollection):
        polygons = []
        for part in geometry.geoms:
            if isinstance(part, Polygon):
                polygons.append(part)
            elif isinstance(part, MultiPolygon):
                polygons.extend(part.geoms)
        if polygons:
            return MultiPolygon(polygons)
    raise ValueError(f"União não poligonal: {geometry.geom_type}")


def union_parcels(geometries: List[BaseGeometry]) -> MultiPolygon:
    """
    Une as geometrias de um componente.

    Se a união falhar (geometria inválida na origem), tenta de novo com
    as geometrias reparadas por make_valid. Se ainda falhar, propaga.
    """
    try:
        return to_multipolygon(unary_union(geometries))
    except (ShapelyError, ValueError) as e:
        logger.debug(f"União falhou ({e}), tentando com make_valid")
        repaired = [make_valid(g) for g in geometries]
        return to_multipolygon(unary_union(repaired))


class AdjacencyClusterer:
    """Calcula os clusters de adjacência por proprietário de um condado."""

    def __init__(
        self,
        store: AggregationStore,
        tolerance: float = 0.0001,
        owner_workers: int = 1,
        owner_index: Optional[OwnerGroupIndex] = None,
    ):
        """
        Args:
            store: Fonte das parcelas
            tolerance: Distância máxima (graus) para duas parcelas serem adjacentes
            owner_workers: Threads para processar proprietários em paralelo
            owner_index: Grupos de variantes aceitos (None = nome normalizado puro)
        """
        self.store = store
        self.tolerance = tolerance
        self.owner_workers = max(1, owner_workers)
        self.owner_index = owner_index

    def owner_key(self, parcel: Parcel) -> str:
        if self.owner_index is not None:
            return self.owner_index.canonical(parcel.owner_normalized)
        return parcel.owner_normalized

    def cluster_county(self, county: str) -> CountyClusterResult:
        """Carrega as parcelas do condado e calcula os clusters (não persiste)."""
        parcels = self.store.fetch_county_parcels(county)
        return self.cluster_parcels(county, parcels)

    def cluster_parcels(self, county: str, parcels: List[Parcel]) -> CountyClusterResult:
        result = CountyClusterResult(county=county, parcels_seen=len(parcels))
        created_at = datetime.now()

        by_owner: Dict[str, List[Parcel]] = {}
        refreshed = 0
        for parcel in parcels:
            current = with_current_owner(parcel)
            if current is not parcel:
                refreshed += 1
                parcel = current
            if not parcel.is_aggregatable or parcel.geometry.is_empty:
                result.parcels_skipped += 1
                continue
            by_owner.setdefault(self.owner_key(parcel), []).append(parcel)

        if refreshed:
            logger.debug(f"   {county}: {refreshed} nomes normalizados recalculados (coluna nula ou desatualizada)")

        owners = sorted(by_owner.items())

        if self.owner_workers > 1 and len(owners) > 1:
            with ThreadPoolExecutor(max_workers=self.owner_workers) as executor:
                outcomes = list(executor.map(
                    lambda item: self._cluster_owner(county, item[0], item[1], created_at),
                    owners,
                ))
        else:
            outcomes = [
                self._cluster_owner(county, owner, owner_parcels, created_at)
                for owner, owner_parcels in owners
            ]

        for clusters, skipped in outcomes:
            result.clusters.extend(clusters)
            result.skipped_components.extend(skipped)

        result.clusters.sort(key=lambda c: (c.owner, c.parcel_ids[0]))

        for skipped in result.skipped_components:
            logger.warning(
                f"⚠️ {county}: união falhou para '{skipped.owner}' "
                f"({len(skipped.parcel_ids)} parcelas) - componente ignorado: {skipped.error}"
            )

        logger.debug(
            f"   {county}: {len(result.clusters)} clusters de "
            f"{result.parcels_clustered} parcelas ({len(owners)} proprietários)"
        )
        return result

    def find_components(self, geometries: List[BaseGeometry]) -> List[List[int]]:
        """Componentes conexos pelo critério distance <= tolerance (índices ordenados)."""
        if len(geometries) == 1:
            return [[0]]

        tree = STRtree(geometries)
        uf = _UnionFind(len(geometries))
        tol = self.tolerance

        for i, geometry in enumerate(geometries):
            minx, miny, maxx, maxy = geometry.bounds
            search = box(minx - tol, miny - tol, maxx + tol, maxy + tol)
            for j in tree.query(search):
                j = int(j)
                if j <= i:
                    continue
                if geometry.distance(geometries[j]) <= tol:
                    uf.union(i, j)

        components: Dict[int, List[int]] = {}
        for i in range(len(geometries)):
            components.setdefault(uf.find(i), []).append(i)
        return list(components.values())

    def _cluster_owner(
        self,
        county: str,
        owner: str,
        parcels: List[Parcel],
        created_at: datetime,
    ) -> Tuple[List[AggregatedCluster], List[SkippedComponent]]:
        parcels = sorted(parcels, key=lambda p: p.id)
        geometries = [p.geometry for p in parcels]

        clusters = []
        skipped = []

        for component in self.find_components(geometries):
            members = [parcels[i] for i in component]
            parcel_ids = tuple(sorted(p.id for p in members))

            try:
                geometry = union_parcels([p.geometry for p in members])
            except (ShapelyError, ValueError) as e:
                skipped.append(SkippedComponent(owner=owner, parcel_ids=parcel_ids, error=str(e)))
                continue

            clusters.append(AggregatedCluster(
                county=county,
                owner=owner,
                parcel_ids=parcel_ids,
                total_acres=sum(p.acres for p in members),
                geometry=geometry,
                created_at=created_at,
            ))

        return clusters, skipped
