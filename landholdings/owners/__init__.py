"""
Owner name normalization and fuzzy grouping.

This module turns noisy deed-holder strings into comparable keys and
folds near-duplicate variants of the same owner into groups.
"""

from landholdings.owners.normalizer import normalize_owner_name, surname_key
from landholdings.owners.grouper import (
    OwnerGrouper,
    OwnerGroupIndex,
    MatchType,
    aggregate_owner_stats,
    summarize_groups,
    groups_to_dataframe,
)

__all__ = [
    'normalize_owner_name',
    'surname_key',
    'OwnerGrouper',
    'OwnerGroupIndex',
    'MatchType',
    'aggregate_owner_stats',
    'summarize_groups',
    'groups_to_dataframe',
]
