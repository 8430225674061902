"""
Ownership aggregation: adjacency clustering per owner and the
resumable county-by-county batch run.
"""

from landholdings.aggregation.store import (
    AggregationStore,
    PostgisAggregationStore,
    InMemoryAggregationStore,
)
from landholdings.aggregation.checkpoint import (
    CheckpointStore,
    PostgisCheckpointStore,
    InMemoryCheckpointStore,
)
from landholdings.aggregation.adjacency import AdjacencyClusterer, CountyClusterResult
from landholdings.aggregation.runner import AggregationRunner, RunReport, CountyReport, RunState

__all__ = [
    'AggregationStore',
    'PostgisAggregationStore',
    'InMemoryAggregationStore',
    'CheckpointStore',
    'PostgisCheckpointStore',
    'InMemoryCheckpointStore',
    'AdjacencyClusterer',
    'CountyClusterResult',
    'AggregationRunner',
    'RunReport',
    'CountyReport',
    'RunState',
]
