"""PostGIS query service: shared data access layer."""

from .config import Settings, load_settings
from .database import Database, DatabaseRegistry
from .engine import build_query, query_features
from .introspection import (
    detect_geometry_column,
    enumerate_tables,
    get_fields,
    get_relationships,
    resolve_layer_by_id,
)
from .models import LayerSchema, QueryParams, QueryResult, TableDescriptor

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "DatabaseRegistry",
    "build_query",
    "query_features",
    "detect_geometry_column",
    "enumerate_tables",
    "get_fields",
    "get_relationships",
    "resolve_layer_by_id",
    "LayerSchema",
    "QueryParams",
    "QueryResult",
    "TableDescriptor",
]
