"""
HTTP surface: vector tiles, GeoJSON clusters and the aggregation run API.
"""

from landholdings.web.app import create_app

__all__ = ['create_app']
