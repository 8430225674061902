"""Tests for per-owner adjacency clustering."""

import pytest
from shapely.geometry import GeometryCollection, LineString, MultiPolygon, Polygon, box

from landholdings.aggregation import adjacency
from landholdings.aggregation.adjacency import AdjacencyClusterer, to_multipolygon, union_parcels
from landholdings.aggregation.store import InMemoryAggregationStore
from landholdings.models import OwnerGroup, OwnerGroupMember, Parcel
from landholdings.owners.grouper import OwnerGroupIndex


# =============================================================================
# TestPolkScenario
# =============================================================================


class TestPolkScenario:
    def test_two_clusters_25_and_8_acres(self, store):
        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert len(result.clusters) == 2
        first, second = result.clusters
        assert first.owner == "JOHN SMITH"
        assert first.parcel_ids == (1, 2)
        assert first.total_acres == pytest.approx(25.0)
        assert second.parcel_ids == (3,)
        assert second.total_acres == pytest.approx(8.0)

    def test_union_geometry_is_multipolygon(self, store, polk_parcels):
        result = AdjacencyClusterer(store).cluster_county("POLK")
        merged = result.clusters[0].geometry

        assert isinstance(merged, MultiPolygon)
        expected = polk_parcels[0].geometry.area + polk_parcels[1].geometry.area
        assert merged.area == pytest.approx(expected)


# =============================================================================
# TestAdjacencyRules
# =============================================================================


class TestAdjacencyRules:
    def test_touching_different_owners_stay_apart(self, make_parcel, make_square):
        store = InMemoryAggregationStore([
            make_parcel(1, "SMITH, JOHN", make_square(0.0, 0.0)),
            make_parcel(2, "DOE, JANE", make_square(0.001, 0.0)),
        ])
        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert len(result.clusters) == 2
        assert {c.owner for c in result.clusters} == {"JOHN SMITH", "JANE DOE"}

    def test_small_gap_within_tolerance(self, make_parcel, make_square):
        store = InMemoryAggregationStore([
            make_parcel(1, "SMITH, JOHN", make_square(0.0, 0.0)),
            make_parcel(2, "SMITH, JOHN", make_square(0.00105, 0.0)),
        ])

        assert len(AdjacencyClusterer(store, tolerance=0.0001).cluster_county("POLK").clusters) == 1
        assert len(AdjacencyClusterer(store, tolerance=0.0).cluster_county("POLK").clusters) == 2

    def test_chain_is_transitive(self, make_parcel, make_square):
        store = InMemoryAggregationStore([
            make_parcel(1, "SMITH, JOHN", make_square(0.000, 0.0)),
            make_parcel(2, "SMITH, JOHN", make_square(0.001, 0.0)),
            make_parcel(3, "SMITH, JOHN", make_square(0.002, 0.0)),
        ])
        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert [c.parcel_ids for c in result.clusters] == [(1, 2, 3)]

    def test_parcels_without_owner_or_geometry_skipped(self, make_parcel, make_square):
        store = InMemoryAggregationStore([
            make_parcel(1, "SMITH, JOHN", make_square(0.0, 0.0)),
            make_parcel(2, None, make_square(0.001, 0.0)),
            make_parcel(3, "SMITH, JOHN", None),
        ])
        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert result.parcels_seen == 3
        assert result.parcels_skipped == 2
        assert result.parcels_clustered == 1

    def test_every_eligible_parcel_in_exactly_one_cluster(self, statewide_store, statewide_parcels):
        clusterer = AdjacencyClusterer(statewide_store)
        for county in statewide_store.list_counties():
            result = clusterer.cluster_county(county)
            ids = [pid for c in result.clusters for pid in c.parcel_ids]
            eligible = [p.id for p in statewide_parcels if p.county == county and p.is_aggregatable]

            assert len(ids) == len(set(ids))
            assert sorted(ids) == sorted(eligible)

    def test_parallel_owners_same_result(self, statewide_store):
        serial = AdjacencyClusterer(statewide_store, owner_workers=1).cluster_county("ADAMS")
        parallel = AdjacencyClusterer(statewide_store, owner_workers=4).cluster_county("ADAMS")

        assert [(c.owner, c.parcel_ids) for c in serial.clusters] == \
            [(c.owner, c.parcel_ids) for c in parallel.clusters]

    def test_owner_index_merges_variants(self, make_parcel, make_square):
        store = InMemoryAggregationStore([
            make_parcel(1, "SMITH, JOHN", make_square(0.0, 0.0)),
            make_parcel(2, "JOHN A SMITH", make_square(0.001, 0.0)),
        ])
        index = OwnerGroupIndex([OwnerGroup(
            canonical_name="JOHN SMITH",
            members=[
                OwnerGroupMember("JOHN SMITH", 1, 10.0),
                OwnerGroupMember("JOHN A SMITH", 1, 10.0),
            ],
            confidence=0.98,
        )])

        assert len(AdjacencyClusterer(store).cluster_county("POLK").clusters) == 2
        grouped = AdjacencyClusterer(store, owner_index=index).cluster_county("POLK")
        assert [(c.owner, c.parcel_ids) for c in grouped.clusters] == [("JOHN SMITH", (1, 2))]


# =============================================================================
# TestUnionFailures
# =============================================================================


class TestUnionFailures:
    def test_failed_component_skipped_others_kept(self, store, monkeypatch):
        real = adjacency.union_parcels

        def flaky(geometries):
            if len(geometries) > 1:
                raise ValueError("topology exception")
            return real(geometries)

        monkeypatch.setattr(adjacency, "union_parcels", flaky)
        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert [c.parcel_ids for c in result.clusters] == [(3,)]
        assert len(result.skipped_components) == 1
        assert result.skipped_components[0].parcel_ids == (1, 2)

    def test_invalid_geometry_repaired(self):
        bowtie = Polygon([(0, 0), (1, 1), (1, 0), (0, 1)])
        merged = union_parcels([bowtie, box(1, 0, 2, 1)])

        assert isinstance(merged, MultiPolygon)
        assert not merged.is_empty


# =============================================================================
# TestToMultipolygon
# =============================================================================


class TestToMultipolygon:
    def test_polygon_wrapped(self):
        assert isinstance(to_multipolygon(box(0, 0, 1, 1)), MultiPolygon)

    def test_collection_keeps_polygons(self):
        collection = GeometryCollection([box(0, 0, 1, 1), LineString([(2, 2), (3, 3)])])
        result = to_multipolygon(collection)
        assert len(result.geoms) == 1

    def test_line_rejected(self):
        with pytest.raises(ValueError):
            to_multipolygon(LineString([(0, 0), (1, 1)]))


# =============================================================================
# TestStoredOwnerColumn
# =============================================================================


class TestStoredOwnerColumn:
    def test_stale_normalized_value_recomputed(self, make_square):
        # Coluna gravada antes da regra LAST, FIRST existir
        store = InMemoryAggregationStore([
            Parcel(id=1, county="POLK", owner_raw="Smith, John", owner_normalized="SMITH, JOHN",
                   area_sqm=100.0, geometry=make_square(0.0, 0.0)),
            Parcel(id=2, county="POLK", owner_raw="JOHN SMITH", owner_normalized="JOHN SMITH",
                   area_sqm=100.0, geometry=make_square(0.001, 0.0)),
        ])
        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert [(c.owner, c.parcel_ids) for c in result.clusters] == [("JOHN SMITH", (1, 2))]

    def test_null_normalized_value_still_aggregated(self, make_square):
        store = InMemoryAggregationStore()
        # add_parcel só preenche quando owner_normalized é None; aqui a coluna veio vazia
        store.add_parcel(Parcel(id=1, county="POLK", owner_raw="Doe, Jane", owner_normalized="",
                                area_sqm=4046.86, geometry=make_square(0.0, 0.0)))
        store.add_parcel(Parcel(id=2, county="POLK", owner_raw="DOE, JANE", owner_normalized="JANE DOE",
                                area_sqm=4046.86, geometry=make_square(0.001, 0.0)))

        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert result.parcels_skipped == 0
        assert [c.parcel_ids for c in result.clusters] == [(1, 2)]
        assert result.clusters[0].total_acres == pytest.approx(2.0)

    def test_blank_raw_owner_stays_excluded(self, make_square):
        store = InMemoryAggregationStore([
            Parcel(id=1, county="POLK", owner_raw="   ", owner_normalized="GHOST",
                   area_sqm=100.0, geometry=make_square(0.0, 0.0)),
        ])
        result = AdjacencyClusterer(store).cluster_county("POLK")

        assert result.clusters == []
        assert result.parcels_skipped == 1
