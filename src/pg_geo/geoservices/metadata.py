"""
Build Esri GeoServices metadata responses from introspected PostGIS schemas.

These are the discovery documents for /FeatureServer, /MapServer and
/{layer_id}. Everything is derived from live catalog facts; capabilities
are fixed to read-only query, and every edit/sync/versioning flag is false.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from pg_geo.query import engine, introspection
from pg_geo.query.config import Settings
from pg_geo.query.database import Database
from pg_geo.query.errors import GeoServicesError, NotFound
from pg_geo.query.geometry import esri_geometry_type
from pg_geo.query.models import (
    INTEGER_FIELD_TYPES,
    WORLD_EXTENT,
    FieldDescriptor,
    FieldType,
    LayerDescriptor,
    LayerSchema,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = 10.91
SPATIAL_REFERENCE = {"wkid": 4326, "latestWkid": 4326}
SUPPORTED_QUERY_FORMATS = "JSON, geoJSON"

FEATURE_SERVER = "FeatureServer"
MAP_SERVER = "MapServer"

CAPABILITIES = {
    FEATURE_SERVER: "Query",
    MAP_SERVER: "Map,Query,Data",
}
LAYER_CAPABILITIES = {
    FEATURE_SERVER: "Query",
    MAP_SERVER: "Map,Query,Data",
}

ID_FIELD_CANDIDATES = ("id", "objectid", "fid", "gid", "pk")

# Schema searched for bare table ids
DEFAULT_SCHEMA = "public"


class ServiceCatalog(BaseModel):
    """The layers one service id exposes, resolved once per request."""

    service_id: str
    schema_name: str
    layers: list[LayerDescriptor]
    # Full schema enumeration, used for relatedTableId
    schema_layers: list[LayerDescriptor]

    def layer(self, layer_id: int) -> LayerDescriptor:
        layer = introspection.resolve_layer_by_id(self.layers, layer_id)
        if layer is None:
            raise NotFound(f"Layer {layer_id} not found in service '{self.service_id}'")
        return layer

    def find_table(self, name: str) -> Optional[LayerDescriptor]:
        for layer in self.schema_layers:
            if layer.name == name:
                return layer
        return None


def resolve_service(db: Database, settings: Settings, service_id: str) -> ServiceCatalog:
    """
    Resolve a service id to its layers.

    "schema" exposes every user table of the schema; "schema.table"
    exposes just that table as layer 0. A bare id that names no schema
    with tables is tried as a table of the default schema ("cities"
    means "public.cities").
    """
    schema, _, table = service_id.partition(".")
    schema_layers = introspection.enumerate_tables(
        db, schema, timeout=settings.timeouts.introspection
    )
    if not schema_layers and not table and schema != DEFAULT_SCHEMA:
        default_layers = introspection.enumerate_tables(
            db, DEFAULT_SCHEMA, timeout=settings.timeouts.introspection
        )
        if any(l.name == schema for l in default_layers):
            logger.debug("Service id '%s' resolved to %s.%s", service_id, DEFAULT_SCHEMA, schema)
            schema, table, schema_layers = DEFAULT_SCHEMA, schema, default_layers
    if not schema_layers:
        raise NotFound(f"Schema '{schema}' does not exist or has no tables")

    if not table:
        layers = schema_layers
    else:
        match = next((l for l in schema_layers if l.name == table), None)
        if match is None:
            raise NotFound(f"Table '{schema}.{table}' not found")
        layers = [match.model_copy(update={"id": 0})]

    return ServiceCatalog(
        service_id=service_id,
        schema_name=schema,
        layers=layers,
        schema_layers=schema_layers,
    )


def find_id_field(fields: list[FieldDescriptor]) -> Optional[str]:
    """First integer field with a conventional id name, else the first integer field."""
    integer_fields = [f for f in fields if f.type in INTEGER_FIELD_TYPES]
    for candidate in ID_FIELD_CANDIDATES:
        for f in integer_fields:
            if f.name.lower() == candidate:
                return f.name
    return integer_fields[0].name if integer_fields else None


def find_display_field(fields: list[FieldDescriptor]) -> Optional[str]:
    """First non-date string field, else first non-date field, else first field."""
    non_date = [f for f in fields if f.type != FieldType.DATE]
    for f in non_date:
        if f.type == FieldType.STRING:
            return f.name
    if non_date:
        return non_date[0].name
    return fields[0].name if fields else None


def describe_layer(
    db: Database,
    settings: Settings,
    catalog: ServiceCatalog,
    layer: LayerDescriptor,
    include_extent: bool = False,
) -> LayerSchema:
    """
    Collect fields, relationships and key fields for one layer.

    With include_extent, also computes the data extent and resolves
    generic geometry columns to a concrete type by sampling a row.
    """
    table = layer.table
    timeout = settings.timeouts.introspection
    fields = introspection.get_fields(db, table.schema_name, table.table, timeout=timeout)
    relationships = introspection.get_relationships(
        db, table.schema_name, table.table, catalog.schema_layers, timeout=timeout
    )

    geometry_type = layer.geometry_type
    extent = WORLD_EXTENT
    if include_extent and table.is_spatial:
        if geometry_type is None:
            geometry_type = esri_geometry_type(
                engine.sample_geometry_type(db, table, timeout=settings.timeouts.query)
            )
        extent = layer_extent(db, settings, layer)

    return LayerSchema(
        layer_id=layer.id,
        table=table,
        name=table.qualified_name,
        description=f"PostgreSQL/PostGIS {'layer' if table.is_spatial else 'table'}: "
        f"{table.qualified_name}",
        geometry_type=geometry_type,
        fields=fields,
        id_field=find_id_field(fields),
        display_field=find_display_field(fields),
        extent=extent,
        relationships=relationships,
        max_record_count=settings.max_record_count,
    )


def layer_extent(db: Database, settings: Settings, layer: LayerDescriptor):
    """Data extent of a layer, falling back to the world extent."""
    try:
        extent = engine.table_extent(db, layer.table, timeout=settings.timeouts.query)
    except GeoServicesError as e:
        logger.warning("Failed to compute extent for %s: %s", layer.table.qualified_name, e)
        return WORLD_EXTENT
    return extent or WORLD_EXTENT


def build_service_metadata(catalog: ServiceCatalog, settings: Settings, server_type: str) -> dict:
    """Build /FeatureServer or /MapServer response."""
    layers = []
    tables = []
    for layer in catalog.layers:
        if layer.is_spatial:
            layers.append(
                {
                    "id": layer.id,
                    "name": layer.name,
                    "parentLayerId": -1,
                    "defaultVisibility": True,
                    "subLayerIds": None,
                    "minScale": 0,
                    "maxScale": 0,
                    "type": "Feature Layer",
                    "geometryType": layer.geometry_type,
                }
            )
        else:
            tables.append({"id": layer.id, "name": layer.name, "type": "Table"})

    world = WORLD_EXTENT.to_esri()
    metadata = {
        "currentVersion": CURRENT_VERSION,
        "serviceDescription": f"PostgreSQL/PostGIS {server_type} for {catalog.service_id}",
        "description": f"PostgreSQL/PostGIS service: {catalog.service_id}",
        "copyrightText": "",
        "hasVersionedData": False,
        "supportsDisconnectedEditing": False,
        "supportedQueryFormats": SUPPORTED_QUERY_FORMATS,
        "maxRecordCount": settings.max_record_count,
        "capabilities": CAPABILITIES[server_type],
        "layers": layers,
        "tables": tables,
        "spatialReference": dict(SPATIAL_REFERENCE),
        "initialExtent": world,
        "fullExtent": world,
        "extent": WORLD_EXTENT.to_pairs(),
        "units": "esriDecimalDegrees",
    }

    if server_type == MAP_SERVER:
        metadata.update(
            {
                "mapName": catalog.service_id,
                "supportsDynamicLayers": False,
                "singleFusedMapCache": False,
                "minScale": 0,
                "maxScale": 0,
                "documentInfo": {
                    "Title": f"{server_type} for {catalog.service_id}",
                    "Author": "pg-geo",
                    "Subject": f"PostgreSQL/PostGIS {server_type}",
                    "Keywords": "postgis,postgresql",
                },
            }
        )
    else:
        metadata.update(
            {
                "syncEnabled": False,
                "allowGeometryUpdates": False,
                "supportsApplyEditsWithGlobalIds": False,
            }
        )
    return metadata


def build_time_info(schema: LayerSchema, settings: Settings) -> Optional[dict]:
    """timeInfo block when temporal layers are enabled and the field is a date."""
    if not settings.enable_temporal:
        return None
    temporal_field = settings.temporal_field or schema.display_field
    if not temporal_field:
        return None
    field = schema.field(temporal_field)
    if field is None or field.type != FieldType.DATE:
        return None
    return {
        "startTimeField": temporal_field,
        "endTimeField": None,
        "trackIdField": None,
        "timeExtent": None,
        "timeReference": {"timeZone": "UTC", "respectsDaylightSaving": False},
        "hasLiveData": False,
        "defaultTimeInterval": 1,
        "defaultTimeIntervalUnits": "esriTimeUnitsHours",
        "exportOptions": {
            "useTime": True,
            "timeDataCumulative": False,
            "timeOffset": None,
            "timeOffsetUnits": None,
        },
    }


def build_layer_metadata(schema: LayerSchema, settings: Settings, server_type: str) -> dict:
    """Build /FeatureServer/{layer_id} response."""
    is_spatial = schema.is_spatial
    time_info = build_time_info(schema, settings)

    return {
        "currentVersion": CURRENT_VERSION,
        "id": schema.layer_id,
        "name": schema.table.table,
        "type": "Feature Layer" if is_spatial else "Table",
        "description": schema.description,
        "geometryType": schema.geometry_type if is_spatial else None,
        "sourceSpatialReference": dict(SPATIAL_REFERENCE),
        "copyrightText": "",
        "parentLayer": None,
        "subLayers": [],
        "minScale": 0,
        "maxScale": 0,
        "defaultVisibility": True,
        "extent": schema.extent.to_esri(),
        "hasAttachments": False,
        "htmlPopupType": "esriServerHTMLPopupTypeAsHTMLText",
        "displayField": schema.display_field or "",
        "typeIdField": None,
        "objectIdField": schema.id_field,
        "uniqueIdField": {"name": schema.id_field, "isSystemMaintained": True}
        if schema.id_field
        else None,
        "globalIdField": next(
            (f.name for f in schema.fields if f.type == FieldType.GLOBAL_ID), ""
        ),
        "fields": [f.to_esri() for f in schema.fields],
        "geometryField": {
            "name": "Shape",
            "type": "esriFieldTypeGeometry",
            "alias": "Shape",
        }
        if is_spatial
        else None,
        "indexes": [],
        "types": [],
        "templates": [],
        "relationships": [r.to_esri() for r in schema.relationships],
        "capabilities": LAYER_CAPABILITIES[server_type],
        "maxRecordCount": schema.max_record_count,
        "supportedQueryFormats": SUPPORTED_QUERY_FORMATS,
        "supportsAdvancedQueries": True,
        "supportsStatistics": False,
        "supportsValidateSql": False,
        "supportsCoordinatesQuantization": False,
        "advancedQueryCapabilities": {
            "useStandardizedQueries": True,
            "supportsStatistics": False,
            "supportsOrderBy": True,
            "supportsDistinct": False,
            "supportsPagination": True,
            "supportsReturningQueryExtent": False,
            "supportsQueryWithDistance": False,
        },
        "ownershipBasedAccessControlForFeatures": {"allowOthersToQuery": True},
        "useStandardizedQueries": True,
        "isDataVersioned": False,
        "canModifyLayer": False,
        "canScaleSymbols": False,
        "hasLabels": False,
        "allowGeometryUpdates": False,
        "supportsRollbackOnFailureParameter": False,
        "syncCanReturnChanges": False,
        "timeInfo": time_info,
        "supportsTime": time_info is not None,
    }


def build_estimates(db: Database, settings: Settings, layer: LayerDescriptor) -> dict:
    """Build /FeatureServer/{layer_id}/getEstimates response."""
    count = engine.estimate_row_count(db, layer.table, timeout=settings.timeouts.query)
    extent = layer_extent(db, settings, layer) if layer.is_spatial else None
    return {
        "count": count,
        "extent": extent.to_esri() if extent else None,
    }


def build_root_info(service_id: str, service_url: str) -> dict:
    """Build /{service_id} response. service_url is the public URL of that resource."""
    return {
        "name": service_id,
        "type": "PostgreSQL/PostGIS Provider",
        "description": f"PostgreSQL/PostGIS data source: {service_id}",
        "services": [
            {"name": FEATURE_SERVER, "url": f"{service_url}/{FEATURE_SERVER}"},
            {"name": MAP_SERVER, "url": f"{service_url}/{MAP_SERVER}"},
        ],
    }
