"""
Aggregation Store
=================

Persistência das parcelas e dos clusters agregados.

A interface AggregationStore separa o pipeline do banco. Duas
implementações:

- PostgisAggregationStore: PostgreSQL/PostGIS via SQLAlchemy (produção).
  Geometrias trafegam como WKB (ST_AsBinary / ST_GeomFromWKB) e são
  manipuladas em Python com shapely.
- InMemoryAggregationStore: tudo em memória (desenvolvimento e testes),
  mesmas semânticas.

TABELAS (ver landholdings/schema.sql):
--------------------------------------
- parcels: parcelas brutas (somente leitura para o pipeline, exceto o
  backfill de deed_holder_normalized)
- parcel_aggregated: um registro por cluster de parcelas adjacentes
- owner_groups: grupos de variantes de nome (fuzzy grouper)
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Any

from loguru import logger
from shapely import wkb
from shapely.errors import ShapelyError
from sqlalchemy import text
from sqlalchemy.engine import Engine

from landholdings.database import get_db_session
from landholdings.models import (
    SQM_PER_ACRE,
    AggregatedCluster,
    OwnerGroup,
    OwnerGroupMember,
    Parcel,
)
from landholdings.owners.normalizer import normalize_owner_name

BBox = Tuple[float, float, float, float]


def load_wkb(raw: Any, context: str):
    """Converte WKB do banco em geometria shapely; None (com log) se malformada."""
    if raw is None:
        return None
    try:
        return wkb.loads(bytes(raw))
    except (ShapelyError, ValueError, TypeError) as e:
        logger.warning(f"⚠️ Geometria malformada ignorada ({context}): {e}")
        return None


class AggregationStore(ABC):
    """Interface do store de parcelas e clusters agregados."""

    @abstractmethod
    def list_counties(self, excluded: Iterable[str] = ()) -> List[str]:
        """Condados com parcelas, em ordem alfabética, sem os excluídos."""

    @abstractmethod
    def fetch_county_parcels(self, county: str) -> List[Parcel]:
        """Todas as parcelas do condado, ordenadas por id."""

    @abstractmethod
    def replace_county_clusters(self, county: str, clusters: Sequence[AggregatedCluster]) -> int:
        """
        Substitui (DELETE + INSERT, numa única transação) os clusters do condado.

        Returns:
            Número de clusters inseridos
        """

    @abstractmethod
    def truncate_clusters(self) -> None:
        """Remove todos os clusters (rebuild from-scratch)."""

    @abstractmethod
    def county_clusters(self, county: str) -> List[AggregatedCluster]:
        """Clusters persistidos de um condado."""

    @abstractmethod
    def clusters_in_bounds(
        self,
        bounds: BBox,
        excluded: Iterable[str] = (),
        min_parcels: int = 1,
        limit: Optional[int] = None,
    ) -> List[AggregatedCluster]:
        """Clusters cujo bbox intersecta bounds (west, south, east, north)."""

    @abstractmethod
    def parcels_in_bounds(
        self,
        bounds: BBox,
        excluded: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> List[Parcel]:
        """Parcelas brutas cujo bbox intersecta bounds."""

    @abstractmethod
    def owner_stats(self, county: Optional[str] = None) -> List[Tuple[Optional[str], int, float]]:
        """(nome bruto, parcelas, acres) por nome bruto distinto."""

    @abstractmethod
    def save_owner_groups(self, groups: Sequence[OwnerGroup]) -> int:
        """Substitui os grupos automáticos; grupos manual_override são preservados."""

    @abstractmethod
    def load_owner_groups(self) -> List[OwnerGroup]:
        """Todos os grupos persistidos."""

    @abstractmethod
    def normalize_owner_names(self, county: Optional[str] = None) -> int:
        """Recalcula deed_holder_normalized a partir de deed_holder."""

    @abstractmethod
    def cluster_summary(self, top: int = 10) -> Dict[str, Any]:
        """Estatísticas gerais da tabela de clusters + maiores clusters."""


def _filter_manual_conflicts(groups: Sequence[OwnerGroup], manual: Sequence[OwnerGroup]) -> List[OwnerGroup]:
    """Descarta grupos automáticos que tocam nomes já cobertos por grupos manuais."""
    covered = {name for g in manual for name in g.variants} | {g.canonical_name for g in manual}
    kept = []
    for group in groups:
        if group.manual_override:
            continue
        if covered.intersection(group.variants) or group.canonical_name in covered:
            logger.debug(f"Grupo '{group.canonical_name}' conflita com revisão manual - ignorado")
            continue
        kept.append(group)
    return kept


# =============================================================================
# POSTGIS
# =============================================================================

class PostgisAggregationStore(AggregationStore):
    """Store sobre PostgreSQL/PostGIS (SQL explícito via SQLAlchemy text())."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine

    def _session(self):
        return get_db_session(self.engine)

    def list_counties(self, excluded: Iterable[str] = ()) -> List[str]:
        with self._session() as session:
            result = session.execute(text("""
                SELECT DISTINCT county_name
                FROM parcels
                WHERE county_name IS NOT NULL
                  AND NOT (county_name = ANY(CAST(:excluded AS text[])))
                ORDER BY county_name
            """), {'excluded': [c.upper() for c in excluded]})
            return [row[0] for row in result]

    def fetch_county_parcels(self, county: str) -> List[Parcel]:
        with self._session() as session:
            result = session.execute(text("""
                SELECT
                    id, county_name, parcel_number, parcel_class,
                    deed_holder, deed_holder_normalized, area_sqm,
                    ST_AsBinary(geom) AS geom_wkb
                FROM parcels
                WHERE county_name = :county
                ORDER BY id
            """), {'county': county})
            rows = result.fetchall()

        return [self._row_to_parcel(row) for row in rows]

    @staticmethod
    def _row_to_parcel(row) -> Parcel:
        return Parcel(
            id=int(row.id),
            county=row.county_name,
            owner_raw=row.deed_holder,
            owner_normalized=row.deed_holder_normalized or normalize_owner_name(row.deed_holder),
            area_sqm=float(row.area_sqm) if row.area_sqm is not None else None,
            geometry=load_wkb(row.geom_wkb, f"parcela {row.id}"),
            parcel_number=row.parcel_number,
            parcel_class=row.parcel_class,
        )

    @staticmethod
    def _row_to_cluster(row) -> AggregatedCluster:
        parcel_ids = row.parcel_ids
        if isinstance(parcel_ids, str):
            parcel_ids = json.loads(parcel_ids)
        return AggregatedCluster(
            id=row.id,
            county=row.county,
            owner=row.normalized_owner,
            parcel_ids=tuple(int(p) for p in (parcel_ids or [])),
            total_acres=float(row.total_acres),
            geometry=load_wkb(row.geom_wkb, f"cluster {row.id}"),
            created_at=row.created_at,
        )

    def replace_county_clusters(self, county: str, clusters: Sequence[AggregatedCluster]) -> int:
        params = [
            {
                'owner': c.owner,
                'county': county,
                'parcel_ids': json.dumps(list(c.parcel_ids)),
                'parcel_count': c.parcel_count,
                'total_acres': c.total_acres,
                'geom': c.geometry.wkb,
                'created_at': c.created_at,
            }
            for c in clusters
        ]

        with self._session() as session:
            deleted = session.execute(
                text("DELETE FROM parcel_aggregated WHERE county = :county"),
                {'county': county},
            ).rowcount
            if deleted:
                logger.debug(f"   🗑️ {deleted} clusters antigos removidos de {county}")

            if params:
                session.execute(text("""
                    INSERT INTO parcel_aggregated (
                        normalized_owner, county, parcel_ids, parcel_count,
                        total_acres, geom, created_at
                    ) VALUES (
                        :owner, :county, CAST(:parcel_ids AS json), :parcel_count,
                        :total_acres, ST_Multi(ST_GeomFromWKB(:geom, 4326)), :created_at
                    )
                """), params)

        return len(params)

    def truncate_clusters(self) -> None:
        with self._session() as session:
            session.execute(text("TRUNCATE TABLE parcel_aggregated"))

    def county_clusters(self, county: str) -> List[AggregatedCluster]:
        with self._session() as session:
            rows = session.execute(text("""
                SELECT id, normalized_owner, county, parcel_ids, total_acres,
                       created_at, ST_AsBinary(geom) AS geom_wkb
                FROM parcel_aggregated
                WHERE county = :county
                ORDER BY id
            """), {'county': county}).fetchall()
        return [self._row_to_cluster(row) for row in rows]

    def clusters_in_bounds(
        self,
        bounds: BBox,
        excluded: Iterable[str] = (),
        min_parcels: int = 1,
        limit: Optional[int] = None,
    ) -> List[AggregatedCluster]:
        west, south, east, north = bounds
        with self._session() as session:
            rows = session.execute(text("""
                SELECT id, normalized_owner, county, parcel_ids, total_acres,
                       created_at, ST_AsBinary(geom) AS geom_wkb
                FROM parcel_aggregated
                WHERE geom && ST_MakeEnvelope(:west, :south, :east, :north, 4326)
                  AND parcel_count >= :min_parcels
                  AND NOT (county = ANY(CAST(:excluded AS text[])))
                ORDER BY total_acres DESC
                LIMIT :limit
            """), {
                'west': west, 'south': south, 'east': east, 'north': north,
                'min_parcels': min_parcels,
                'excluded': [c.upper() for c in excluded],
                'limit': limit,
            }).fetchall()
        return [self._row_to_cluster(row) for row in rows]

    def parcels_in_bounds(
        self,
        bounds: BBox,
        excluded: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> List[Parcel]:
        west, south, east, north = bounds
        with self._session() as session:
            rows = session.execute(text("""
                SELECT
                    id, county_name, parcel_number, parcel_class,
                    deed_holder, deed_holder_normalized, area_sqm,
                    ST_AsBinary(geom) AS geom_wkb
                FROM parcels
                WHERE geom && ST_MakeEnvelope(:west, :south, :east, :north, 4326)
                  AND NOT (county_name = ANY(CAST(:excluded AS text[])))
                ORDER BY id
                LIMIT :limit
            """), {
                'west': west, 'south': south, 'east': east, 'north': north,
                'excluded': [c.upper() for c in excluded],
                'limit': limit,
            }).fetchall()
        return [self._row_to_parcel(row) for row in rows]

    def owner_stats(self, county: Optional[str] = None) -> List[Tuple[Optional[str], int, float]]:
        where = "WHERE deed_holder IS NOT NULL AND deed_holder <> ''"
        params: Dict[str, Any] = {}
        if county:
            where += " AND county_name = :county"
            params['county'] = county

        with self._session() as session:
            rows = session.execute(text(f"""
                SELECT
                    deed_holder,
                    COUNT(*) AS parcel_count,
                    COALESCE(SUM(area_sqm), 0) / {SQM_PER_ACRE} AS total_acres
                FROM parcels
                {where}
                GROUP BY deed_holder
            """), params).fetchall()
        return [(row[0], int(row[1]), float(row[2])) for row in rows]

    def save_owner_groups(self, groups: Sequence[OwnerGroup]) -> int:
        manual = [g for g in self.load_owner_groups() if g.manual_override]
        kept = _filter_manual_conflicts(groups, manual)

        with self._session() as session:
            session.execute(text("DELETE FROM owner_groups WHERE manual_override = FALSE"))
            if kept:
                session.execute(text("""
                    INSERT INTO owner_groups (
                        canonical_name, members, confidence, match_type, manual_override
                    ) VALUES (
                        :canonical_name, CAST(:members AS jsonb), :confidence, :match_type, FALSE
                    )
                """), [
                    {
                        'canonical_name': g.canonical_name,
                        'members': json.dumps(g.to_dict()['members']),
                        'confidence': g.confidence,
                        'match_type': g.match_type,
                    }
                    for g in kept
                ])
        return len(kept)

    def load_owner_groups(self) -> List[OwnerGroup]:
        with self._session() as session:
            rows = session.execute(text("""
                SELECT canonical_name, members, confidence, match_type, manual_override
                FROM owner_groups
                ORDER BY id
            """)).fetchall()

        groups = []
        for row in rows:
            members = row.members if not isinstance(row.members, str) else json.loads(row.members)
            groups.append(OwnerGroup(
                canonical_name=row.canonical_name,
                members=[OwnerGroupMember(**m) for m in members or []],
                confidence=float(row.confidence or 0.0),
                match_type=row.match_type or "",
                manual_override=bool(row.manual_override),
            ))
        return groups

    def normalize_owner_names(self, county: Optional[str] = None) -> int:
        where = "WHERE deed_holder IS NOT NULL"
        params: Dict[str, Any] = {}
        if county:
            where += " AND county_name = :county"
            params['county'] = county

        with self._session() as session:
            rows = session.execute(
                text(f"SELECT id, deed_holder, deed_holder_normalized FROM parcels {where}"),
                params,
            ).fetchall()

            updates = []
            for row in rows:
                normalized = normalize_owner_name(row.deed_holder)
                if normalized != row.deed_holder_normalized:
                    updates.append({'id': row.id, 'normalized': normalized})

            if updates:
                session.execute(
                    text("UPDATE parcels SET deed_holder_normalized = :normalized WHERE id = :id"),
                    updates,
                )

        logger.info(f"✓ {len(updates)} nomes normalizados atualizados")
        return len(updates)

    def cluster_summary(self, top: int = 10) -> Dict[str, Any]:
        with self._session() as session:
            stats = session.execute(text("""
                SELECT
                    COUNT(*) AS total_clusters,
                    COALESCE(SUM(parcel_count), 0) AS total_parcels,
                    COALESCE(AVG(parcel_count), 0) AS avg_parcels,
                    COALESCE(MAX(parcel_count), 0) AS max_parcels,
                    COALESCE(SUM(total_acres), 0) AS total_acres
                FROM parcel_aggregated
            """)).fetchone()

            largest = session.execute(text("""
                SELECT normalized_owner, county, parcel_count, total_acres
                FROM parcel_aggregated
                ORDER BY total_acres DESC
                LIMIT :top
            """), {'top': top}).fetchall()

        return {
            'total_clusters': int(stats.total_clusters),
            'total_parcels': int(stats.total_parcels),
            'avg_parcels_per_cluster': round(float(stats.avg_parcels), 1),
            'max_parcels_in_cluster': int(stats.max_parcels),
            'total_acres': float(stats.total_acres),
            'largest': [
                {
                    'owner': row.normalized_owner,
                    'county': row.county,
                    'parcel_count': int(row.parcel_count),
                    'total_acres': float(row.total_acres),
                }
                for row in largest
            ],
        }


# =============================================================================
# EM MEMÓRIA
# =============================================================================

class InMemoryAggregationStore(AggregationStore):
    """
    Store em memória com as mesmas semânticas do PostGIS.

    Útil para desenvolvimento local sem banco e para testes. Os filtros
    espaciais usam interseção de bounding box, como o operador && do PostGIS.
    """

    def __init__(self, parcels: Iterable[Parcel] = ()):
        self._lock = threading.Lock()
        self._parcels: Dict[int, Parcel] = {}
        self._clusters: List[AggregatedCluster] = []
        self._groups: List[OwnerGroup] = []
        self._next_cluster_id = 1

        for parcel in parcels:
            self.add_parcel(parcel)

    def add_parcel(self, parcel: Parcel) -> Parcel:
        """Adiciona uma parcela; normaliza o dono se o nome normalizado não veio."""
        if parcel.owner_normalized is None and parcel.owner_raw:
            parcel = Parcel(
                id=parcel.id,
                county=parcel.county,
                owner_raw=parcel.owner_raw,
                owner_normalized=normalize_owner_name(parcel.owner_raw),
                area_sqm=parcel.area_sqm,
                geometry=parcel.geometry,
                parcel_number=parcel.parcel_number,
                parcel_class=parcel.parcel_class,
            )
        with self._lock:
            self._parcels[parcel.id] = parcel
        return parcel

    @staticmethod
    def _bbox_intersects(geometry, bounds: BBox) -> bool:
        if geometry is None or geometry.is_empty:
            return False
        minx, miny, maxx, maxy = geometry.bounds
        west, south, east, north = bounds
        return not (maxx < west or minx > east or maxy < south or miny > north)

    def list_counties(self, excluded: Iterable[str] = ()) -> List[str]:
        skip = {c.upper() for c in excluded}
        with self._lock:
            counties = {p.county for p in self._parcels.values() if p.county}
        return sorted(c for c in counties if c.upper() not in skip)

    def fetch_county_parcels(self, county: str) -> List[Parcel]:
        with self._lock:
            parcels = [p for p in self._parcels.values() if p.county == county]
        return sorted(parcels, key=lambda p: p.id)

    def replace_county_clusters(self, county: str, clusters: Sequence[AggregatedCluster]) -> int:
        with self._lock:
            self._clusters = [c for c in self._clusters if c.county != county]
            for cluster in clusters:
                cluster.id = self._next_cluster_id
                self._next_cluster_id += 1
                self._clusters.append(cluster)
        return len(clusters)

    def truncate_clusters(self) -> None:
        with self._lock:
            self._clusters = []

    def county_clusters(self, county: str) -> List[AggregatedCluster]:
        with self._lock:
            return [c for c in self._clusters if c.county == county]

    def all_clusters(self) -> List[AggregatedCluster]:
        with self._lock:
            return list(self._clusters)

    def clusters_in_bounds(
        self,
        bounds: BBox,
        excluded: Iterable[str] = (),
        min_parcels: int = 1,
        limit: Optional[int] = None,
    ) -> List[AggregatedCluster]:
        skip = {c.upper() for c in excluded}
        with self._lock:
            found = [
                c for c in self._clusters
                if c.county.upper() not in skip
                and c.parcel_count >= min_parcels
                and self._bbox_intersects(c.geometry, bounds)
            ]
        found.sort(key=lambda c: c.total_acres, reverse=True)
        return found[:limit] if limit else found

    def parcels_in_bounds(
        self,
        bounds: BBox,
        excluded: Iterable[str] = (),
        limit: Optional[int] = None,
    ) -> List[Parcel]:
        skip = {c.upper() for c in excluded}
        with self._lock:
            found = [
                p for p in self._parcels.values()
                if (p.county or '').upper() not in skip
                and self._bbox_intersects(p.geometry, bounds)
            ]
        found.sort(key=lambda p: p.id)
        return found[:limit] if limit else found

    def owner_stats(self, county: Optional[str] = None) -> List[Tuple[Optional[str], int, float]]:
        totals: Dict[str, List[float]] = {}
        with self._lock:
            for parcel in self._parcels.values():
                if not parcel.owner_raw or (county and parcel.county != county):
                    continue
                entry = totals.setdefault(parcel.owner_raw, [0, 0.0])
                entry[0] += 1
                entry[1] += parcel.acres
        return [(raw, int(count), acres) for raw, (count, acres) in totals.items()]

    def save_owner_groups(self, groups: Sequence[OwnerGroup]) -> int:
        with self._lock:
            manual = [g for g in self._groups if g.manual_override]
            kept = _filter_manual_conflicts(groups, manual)
            self._groups = manual + kept
        return len(kept)

    def load_owner_groups(self) -> List[OwnerGroup]:
        with self._lock:
            return list(self._groups)

    def normalize_owner_names(self, county: Optional[str] = None) -> int:
        updated = 0
        with self._lock:
            for pid, parcel in list(self._parcels.items()):
                if county and parcel.county != county:
                    continue
                normalized = normalize_owner_name(parcel.owner_raw)
                if normalized != parcel.owner_normalized:
                    self._parcels[pid] = Parcel(
                        id=parcel.id,
                        county=parcel.county,
                        owner_raw=parcel.owner_raw,
                        owner_normalized=normalized,
                        area_sqm=parcel.area_sqm,
                        geometry=parcel.geometry,
                        parcel_number=parcel.parcel_number,
                        parcel_class=parcel.parcel_class,
                    )
                    updated += 1
        return updated

    def cluster_summary(self, top: int = 10) -> Dict[str, Any]:
        clusters = self.all_clusters()
        counts = [c.parcel_count for c in clusters]
        largest = sorted(clusters, key=lambda c: c.total_acres, reverse=True)[:top]
        return {
            'total_clusters': len(clusters),
            'total_parcels': sum(counts),
            'avg_parcels_per_cluster': round(sum(counts) / len(counts), 1) if counts else 0.0,
            'max_parcels_in_cluster': max(counts) if counts else 0,
            'total_acres': sum(c.total_acres for c in clusters),
            'largest': [
                {
                    'owner': c.owner,
                    'county': c.county,
                    'parcel_count': c.parcel_count,
                    'total_acres': c.total_acres,
                }
                for c in largest
            ],
        }
