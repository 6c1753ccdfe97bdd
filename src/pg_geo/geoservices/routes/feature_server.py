"""
FeatureServer and MapServer routes.

Implements the subset of Esri GeoServices REST that ArcGIS clients
need for discovery and querying. Both server flavors share one query
pipeline and differ only in metadata framing.

ArcGIS clients send query parameters via:
- GET with URL query parameters
- POST with application/x-www-form-urlencoded body

Both must be handled. _get_query_params() merges both sources.
"""

import logging
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool

from pg_geo.query import engine
from pg_geo.query.config import Settings
from pg_geo.query.database import Database
from pg_geo.query.errors import BadRequest, NotFound
from pg_geo.query.models import QueryParams

from .. import metadata, related
from ..serializers import esri_json, geojson

logger = logging.getLogger(__name__)
router = APIRouter()

IDENTIFY_RECORD_COUNT = 10


class ServerType(str, Enum):
    FEATURE_SERVER = metadata.FEATURE_SERVER
    MAP_SERVER = metadata.MAP_SERVER


async def _get_query_params(request: Request) -> dict:
    """Merge query string and form body params.

    ArcGIS Pro sends POST with form-encoded body for query requests.
    Query string params take precedence over form body.
    """
    params = dict(request.query_params)

    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if "form" in content_type or "urlencoded" in content_type:
            try:
                form_data = await request.form()
            except Exception as e:
                logger.warning("Failed to parse form body: %s", e)
            else:
                for key, value in form_data.items():
                    if key not in params:
                        params[key] = value

    return params


def _str(p: dict, key: str, default: Optional[str] = None) -> Optional[str]:
    val = p.get(key)
    if val is None or val == "":
        return default
    return val


def _bool(p: dict, key: str, default: bool = False) -> bool:
    val = p.get(key)
    if val is None or val == "":
        return default
    return str(val).lower() in ("true", "1", "yes")


def _int(p: dict, key: str, default: Optional[int] = None) -> Optional[int]:
    val = p.get(key)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except (ValueError, TypeError):
        return default


def _object_ids(p: dict) -> Optional[list[int]]:
    raw = _str(p, "objectIds")
    if raw is None:
        return None
    try:
        return [int(x.strip()) for x in raw.split(",") if x.strip()]
    except ValueError:
        raise BadRequest(f"Invalid objectIds: {raw}")


def parse_query_params(p: dict) -> QueryParams:
    """Translate protocol parameters into QueryParams; unknown keys are ignored."""
    return QueryParams(
        where=_str(p, "where"),
        definition_expression=_str(p, "definitionExpression"),
        object_ids=_object_ids(p),
        bbox=_str(p, "bbox"),
        geometry=_str(p, "geometry"),
        spatial_rel=_str(p, "spatialRel", "esriSpatialRelIntersects"),
        out_fields=_str(p, "outFields"),
        return_geometry=_bool(p, "returnGeometry", True),
        order_by_fields=_str(p, "orderByFields"),
        result_offset=_int(p, "resultOffset"),
        result_record_count=_int(p, "resultRecordCount"),
        return_count_only=_bool(p, "returnCountOnly"),
        return_ids_only=_bool(p, "returnIdsOnly"),
        f=_str(p, "f", "json"),
        relationship_id=_str(p, "relationshipId"),
    )


def public_base_url(request: Request) -> str:
    """Derive the public base URL from the request.

    Behind a reverse proxy, X-Forwarded-Host and X-Forwarded-Proto
    reconstruct the external URL.
    """
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "localhost")
    proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    return f"{proto}://{host}"


def _database(request: Request) -> Database:
    return request.app.state.database


def _settings(request: Request) -> Settings:
    return request.app.state.settings


# ---------------------------------------------------------------------------
# Pipelines (run in the threadpool; they block on the database)
# ---------------------------------------------------------------------------


def run_query(
    db: Database,
    settings: Settings,
    catalog: metadata.ServiceCatalog,
    layer_id: int,
    params: QueryParams,
) -> dict:
    """
    Feature query: resolve layer, translate, execute, then format.

    Formatting is two-pass: rows -> GeoJSON (with metadata) -> Esri JSON.
    """
    layer = catalog.layer(layer_id)
    schema = metadata.describe_layer(db, settings, catalog, layer)

    result = engine.query_features(
        db,
        layer.table,
        params,
        max_record_count=settings.max_record_count,
        id_field=schema.id_field,
        timeout=settings.timeouts.query,
    )

    if params.return_count_only:
        return esri_json.count_only(result)

    collection = geojson.serialize(result, schema, params)

    if params.return_ids_only:
        return esri_json.ids_only(collection)
    if params.f == "geojson":
        return collection
    return esri_json.serialize(collection, params)


def _service_info(db, settings, service_id: str, server_type: str) -> dict:
    catalog = metadata.resolve_service(db, settings, service_id)
    return metadata.build_service_metadata(catalog, settings, server_type)


def _layer_info(db, settings, service_id: str, server_type: str, layer_id: int) -> dict:
    catalog = metadata.resolve_service(db, settings, service_id)
    layer = catalog.layer(layer_id)
    schema = metadata.describe_layer(db, settings, catalog, layer, include_extent=True)
    return metadata.build_layer_metadata(schema, settings, server_type)


def _query(db, settings, service_id: str, layer_id: int, params: QueryParams) -> dict:
    catalog = metadata.resolve_service(db, settings, service_id)
    return run_query(db, settings, catalog, layer_id, params)


def _related(db, settings, service_id: str, layer_id: int, params: QueryParams) -> dict:
    catalog = metadata.resolve_service(db, settings, service_id)
    return related.query_related_records(db, settings, catalog, catalog.layer(layer_id), params)


def _estimates(db, settings, service_id: str, layer_id: int) -> dict:
    catalog = metadata.resolve_service(db, settings, service_id)
    return metadata.build_estimates(db, settings, catalog.layer(layer_id))


def _identify(db, settings, service_id: str) -> dict:
    catalog = metadata.resolve_service(db, settings, service_id)
    layer = catalog.layers[0]
    schema = metadata.describe_layer(db, settings, catalog, layer)
    params = QueryParams(where="1=1", result_record_count=IDENTIFY_RECORD_COUNT)
    result = engine.query_features(
        db,
        layer.table,
        params,
        max_record_count=settings.max_record_count,
        id_field=schema.id_field,
        timeout=settings.timeouts.query,
    )
    collection = geojson.serialize(result, schema, params)
    return esri_json.identify(collection, layer.id, layer.name)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/{service_id}")
async def service_root(request: Request, service_id: str):
    """Describe the services available for a schema or table id."""
    service_url = f"{public_base_url(request)}{request.url.path}".rstrip("/")
    return metadata.build_root_info(service_id, service_url)


@router.get("/{service_id}/{server_type}")
@router.post("/{service_id}/{server_type}")
async def service_info(request: Request, service_id: str, server_type: ServerType):
    """
    Service-level metadata.

    ArcGIS clients call this to discover layers, tables, spatial
    reference and capabilities.
    """
    return await run_in_threadpool(
        _service_info, _database(request), _settings(request), service_id, server_type.value
    )


@router.get("/{service_id}/{server_type}/identify")
@router.post("/{service_id}/{server_type}/identify")
async def identify(request: Request, service_id: str, server_type: ServerType):
    """Simplified identify: the first records of layer 0."""
    return await run_in_threadpool(
        _identify, _database(request), _settings(request), service_id
    )


@router.get("/{service_id}/{server_type}/{layer_id}")
@router.post("/{service_id}/{server_type}/{layer_id}")
async def layer_info(request: Request, service_id: str, server_type: ServerType, layer_id: int):
    """
    Layer-level metadata.

    Returns field definitions, geometry type, extent, objectIdField,
    relationships, maxRecordCount, supportedQueryFormats, etc.
    """
    return await run_in_threadpool(
        _layer_info,
        _database(request),
        _settings(request),
        service_id,
        server_type.value,
        layer_id,
    )


@router.get("/{service_id}/{server_type}/{layer_id}/{method}")
@router.post("/{service_id}/{server_type}/{layer_id}/{method}")
async def layer_method(
    request: Request,
    service_id: str,
    server_type: ServerType,
    layer_id: int,
    method: str,
):
    """
    Layer operations: query, queryRelatedRecords (alias queryrelated),
    info and getEstimates.

    Reads parameters from both URL query string and POST form body.
    """
    db = _database(request)
    settings = _settings(request)

    if method == "info":
        return await run_in_threadpool(
            _layer_info, db, settings, service_id, server_type.value, layer_id
        )
    if method == "getEstimates":
        return await run_in_threadpool(_estimates, db, settings, service_id, layer_id)
    if method not in ("query", "queryRelatedRecords", "queryrelated"):
        raise NotFound(f"Method '{method}' not found")

    params = parse_query_params(await _get_query_params(request))
    if method == "query":
        return await run_in_threadpool(_query, db, settings, service_id, layer_id, params)
    return await run_in_threadpool(_related, db, settings, service_id, layer_id, params)
