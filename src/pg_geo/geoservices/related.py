"""
queryRelatedRecords: follow one relationship from a set of source object ids.
"""

import logging
from typing import Optional

from pg_geo.query import engine
from pg_geo.query.config import Settings
from pg_geo.query.database import Database
from pg_geo.query.errors import BadRequest, NotFound
from pg_geo.query.models import (
    LayerDescriptor,
    QueryParams,
    QueryResult,
    RelationshipDescriptor,
)

from .metadata import SPATIAL_REFERENCE, ServiceCatalog, describe_layer
from .serializers import esri_json, geojson

logger = logging.getLogger(__name__)


def select_relationship(
    relationships: list[RelationshipDescriptor], relationship_id: Optional[str]
) -> RelationshipDescriptor:
    """
    Pick a relationship by numeric id or by name; the first one when absent.

    Quoted ids ('"0"') are accepted.
    """
    wanted = relationship_id
    if isinstance(wanted, str):
        wanted = wanted.strip()
        if len(wanted) >= 2 and wanted[0] == wanted[-1] == '"':
            wanted = wanted[1:-1]

    relationship = None
    if wanted is None or wanted == "":
        relationship = relationships[0] if relationships else None
    else:
        try:
            numeric = int(wanted)
        except ValueError:
            numeric = None
        if numeric is not None:
            relationship = next((r for r in relationships if r.id == numeric), None)
        if relationship is None:
            relationship = next((r for r in relationships if r.name == wanted), None)

    if relationship is None:
        available = ", ".join(f"{r.id}:{r.name}" for r in relationships) or "none"
        raise BadRequest(f"Relationship not found. Available relationships: {available}")
    return relationship


def query_related_records(
    db: Database,
    settings: Settings,
    catalog: ServiceCatalog,
    layer: LayerDescriptor,
    params: QueryParams,
) -> dict:
    """Build the relatedRecordGroups response for a layer."""
    source = describe_layer(db, settings, catalog, layer)
    relationship = select_relationship(source.relationships, params.relationship_id)

    if not params.object_ids:
        raise BadRequest("objectIds is required for queryRelatedRecords")
    if source.id_field is None:
        raise BadRequest(f"Layer {layer.id} has no object id field")

    related_layer = catalog.find_table(relationship.related_table_name)
    if related_layer is None:
        raise NotFound(f"Related table '{relationship.related_table_name}' not found")
    related = describe_layer(db, settings, catalog, related_layer)

    format_params = QueryParams(
        out_fields=params.out_fields,
        return_geometry=params.return_geometry,
    )
    return_geometry = params.return_geometry and related.is_spatial

    groups = []
    for object_id in params.object_ids:
        rows = engine.query_related_records(
            db,
            source.table,
            related.table,
            relationship,
            id_field=source.id_field,
            object_id=object_id,
            definition_expression=params.definition_expression,
            timeout=settings.timeouts.query,
        )
        collection = geojson.serialize(QueryResult.from_rows(rows, None), related, format_params)
        groups.append(esri_json.related_record_group(object_id, collection, return_geometry))

    logger.debug(
        "Related records via %s for %d object ids", relationship.name, len(params.object_ids)
    )

    selected = geojson.selected_fields(related, params.out_fields)
    response = {
        "fields": [f.to_esri() for f in related.fields if selected is None or f.name in selected],
        "relatedRecordGroups": groups,
    }
    if related.is_spatial:
        response["geometryType"] = related.geometry_type
        response["spatialReference"] = dict(SPATIAL_REFERENCE)
    return response
