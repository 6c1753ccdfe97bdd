"""
Serialize QueryResult -> GeoJSON FeatureCollection.

This is the first formatting pass: rows become GeoJSON features and the
layer metadata rides along under a non-standard "metadata" key. The Esri
JSON serializer works from this collection.
"""

import datetime
import math
import uuid
from decimal import Decimal
from typing import Optional

from pg_geo.query.geometry import esri_geometry_type, parse_geojson_text
from pg_geo.query.introspection import INTERNAL_COLUMNS
from pg_geo.query.models import LayerSchema, QueryParams, QueryResult

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

# Used when a generic geometry column has no rows to sample
DEFAULT_GEOMETRY_TYPE = "esriGeometryPoint"


def serialize(result: QueryResult, schema: LayerSchema, params: QueryParams) -> dict:
    """Convert QueryResult to a GeoJSON FeatureCollection with layer metadata."""
    keep = selected_fields(schema, params.out_fields)
    skip = set(INTERNAL_COLUMNS)
    if schema.table.geometry_column:
        skip.add(schema.table.geometry_column)

    features = []
    for row in result.rows:
        geometry = None
        if schema.is_spatial and params.return_geometry:
            geometry = parse_geojson_text(row.get("geojson_geom"), schema.name)

        properties = {
            name: to_json_value(value)
            for name, value in row.items()
            if name not in skip and (keep is None or name in keep)
        }
        features.append(
            {
                "type": "Feature",
                "geometry": geometry,
                "properties": properties,
            }
        )

    geometry_type = schema.geometry_type
    if result.rows and result.rows[0].get("geom_type"):
        geometry_type = esri_geometry_type(result.rows[0]["geom_type"]) or geometry_type

    fields = [f for f in schema.fields if keep is None or f.name in keep]
    kind = "Spatial layer" if schema.is_spatial else "Non-spatial table"

    return {
        "type": "FeatureCollection",
        "features": features,
        "metadata": {
            "name": schema.name,
            "description": f"{kind} with {len(features)} records",
            "geometryType": (geometry_type or DEFAULT_GEOMETRY_TYPE) if schema.is_spatial else None,
            "idField": schema.id_field,
            "displayField": schema.display_field,
            "fields": [f.to_esri() for f in fields],
            "relationships": [r.to_esri() for r in schema.relationships],
            "limitExceeded": result.exceeded_transfer_limit,
        },
        "filtersApplied": {
            "where": bool(params.where),
            "geometry": bool(params.geometry) and schema.is_spatial,
            "bbox": bool(params.bbox) and schema.is_spatial,
            "limit": params.result_record_count is not None,
            "offset": bool(params.result_offset),
        },
    }


def selected_fields(schema: LayerSchema, out_fields: Optional[str]) -> Optional[set]:
    """Field names requested via outFields; None means all. The id field is always kept."""
    if not out_fields or out_fields.strip() == "*":
        return None
    names = {name.strip() for name in out_fields.split(",") if name.strip()}
    if "*" in names:
        return None
    if schema.id_field:
        names.add(schema.id_field)
    return names


def to_json_value(val):
    """
    Convert a driver value to a JSON-serializable value.

    Dates and timestamps become epoch ms. Time-of-day values become ms
    since midnight UTC, since they are exposed as Date fields. NaN and
    infinities have no JSON form and become None.
    """
    if val is None:
        return None
    if isinstance(val, datetime.datetime):
        if val.tzinfo is None:
            val = val.replace(tzinfo=datetime.timezone.utc)
        return int((val - _EPOCH).total_seconds() * 1000)
    if isinstance(val, datetime.date):
        midnight = datetime.datetime(val.year, val.month, val.day, tzinfo=datetime.timezone.utc)
        return int((midnight - _EPOCH).total_seconds() * 1000)
    if isinstance(val, datetime.time):
        at_epoch = datetime.datetime.combine(_EPOCH.date(), val)
        if at_epoch.tzinfo is None:
            at_epoch = at_epoch.replace(tzinfo=datetime.timezone.utc)
        return int((at_epoch - _EPOCH).total_seconds() * 1000)
    if isinstance(val, Decimal):
        return float(val) if val.is_finite() else None
    if isinstance(val, float):
        return val if math.isfinite(val) else None
    if isinstance(val, uuid.UUID):
        return str(val)
    if isinstance(val, (bytes, bytearray, memoryview)):
        return None
    return val
