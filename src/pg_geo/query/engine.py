"""
Core query engine. Translates protocol query parameters into one
parameterized PostGIS statement and executes it through the pool.

Identifiers are always composed with psycopg.sql.Identifier and values
are always bound parameters. The `where` and `definitionExpression`
options are the exception: they are SQL fragments by protocol and are
appended as raw SQL after a light tripwire check.
"""

import logging
import re
from typing import Optional

import psycopg
from psycopg import sql

from .database import Database
from .errors import BadRequest, QueryExecutionError, QueryTimeout
from .geometry import parse_bbox, parse_filter_geometry
from .models import Extent, QueryParams, QueryResult, RelationshipDescriptor, TableDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

SPATIAL_RELATIONS = {
    "esriSpatialRelIntersects": "ST_Intersects",
    "esriSpatialRelContains": "ST_Contains",
    "esriSpatialRelWithin": "ST_Within",
    "esriSpatialRelTouches": "ST_Touches",
    "esriSpatialRelOverlaps": "ST_Overlaps",
    "esriSpatialRelCrosses": "ST_Crosses",
    "esriSpatialRelDisjoint": "ST_Disjoint",
}

_FORBIDDEN_KEYWORDS = re.compile(
    r"\b(DROP|DELETE|INSERT|UPDATE|CREATE|ALTER|EXEC|EXECUTE|"
    r"TRUNCATE|GRANT|REVOKE|MERGE|CALL|COPY)\b",
    re.IGNORECASE,
)

_FORBIDDEN_PATTERNS = re.compile(r"(--|/\*|\*/|;)")

_LIKE = re.compile(r"\bLIKE\b", re.IGNORECASE)


def convert_where(where: str) -> str:
    """
    Convert an Esri SQL-92 filter to PostgreSQL.

    LIKE becomes ILIKE. Literal percent signs are doubled so the fragment
    survives client-side parameter binding.
    """
    if _FORBIDDEN_PATTERNS.search(where):
        raise BadRequest(f"Forbidden pattern in filter: {where}")
    if _FORBIDDEN_KEYWORDS.search(where):
        raise BadRequest(f"Forbidden keyword in filter: {where}")
    return _LIKE.sub("ILIKE", where).replace("%", "%%")


def build_query(
    table: TableDescriptor,
    params: QueryParams,
    max_record_count: int,
    id_field: Optional[str] = None,
) -> tuple[sql.Composed, list, Optional[int]]:
    """
    Build the feature query for one request.

    Stages run in a fixed order, each a no-op when its option is absent:
    base projection, attribute filters, bbox, geometry filter, ORDER BY,
    LIMIT/OFFSET.

    Returns (query, bound parameters, applied limit or None).
    """
    parts = [_base_query(table)]
    values: list = []

    # Attribute filters
    for expression in (params.where, params.definition_expression):
        if expression and expression.strip() and expression.strip() != "1=1":
            parts.append(sql.SQL(" AND ({})").format(sql.SQL(convert_where(expression))))

    if params.object_ids:
        if not id_field:
            raise BadRequest(f"objectIds requires an object id field; {table.qualified_name} has none")
        parts.append(sql.SQL(" AND {} = ANY(%s)").format(sql.Identifier(id_field)))
        values.append(list(params.object_ids))

    if table.is_spatial:
        geom = sql.Identifier(table.geometry_column)

        # Spatial filter - bbox
        bbox = parse_bbox(params.bbox)
        if bbox:
            parts.append(
                sql.SQL(" AND ST_Intersects({}, ST_MakeEnvelope(%s, %s, %s, %s, 4326))").format(geom)
            )
            values.extend(bbox)
        elif params.bbox:
            logger.debug("Ignoring malformed bbox %r", params.bbox)

        # Spatial filter - geometry
        geometry_wkt = parse_filter_geometry(params.geometry)
        if geometry_wkt:
            spatial_fn = SPATIAL_RELATIONS.get(params.spatial_rel, "ST_Intersects")
            parts.append(
                sql.SQL(" AND {}({}, ST_GeomFromText(%s, 4326))").format(
                    sql.SQL(spatial_fn), geom
                )
            )
            values.append(geometry_wkt)

    order = _order_by(params.order_by_fields)
    if order is not None:
        parts.append(sql.SQL(" ORDER BY ") + order)

    # Pagination
    limit = params.result_record_count
    if limit is None:
        limit = max_record_count
    if limit and limit > 0:
        parts.append(sql.SQL(" LIMIT %s"))
        values.append(limit)
    else:
        limit = None

    offset = params.result_offset or 0
    if offset > 0:
        parts.append(sql.SQL(" OFFSET %s"))
        values.append(offset)

    return sql.Composed(parts), values, limit


def query_features(
    db: Database,
    table: TableDescriptor,
    params: QueryParams,
    max_record_count: int,
    id_field: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> QueryResult:
    """Translate and execute a feature query."""
    query, values, limit = build_query(table, params, max_record_count, id_field)
    rows = _execute(db, query, values, timeout, table)
    logger.debug("Query on %s returned %d rows", table.qualified_name, len(rows))
    return QueryResult.from_rows(rows, limit)


def query_related_records(
    db: Database,
    table: TableDescriptor,
    related: TableDescriptor,
    relationship: RelationshipDescriptor,
    id_field: str,
    object_id: int,
    definition_expression: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> list[dict]:
    """
    Fetch rows of the related table linked to one source object id.

    The source row is found by its id field; its key field value is
    matched against the related table's side of the foreign key.
    """
    query = _base_query(related) + sql.SQL(
        " AND {related_key} IN (SELECT {key} FROM {schema}.{table} WHERE {id_field} = %s)"
    ).format(
        related_key=sql.Identifier(relationship.related_key_field),
        key=sql.Identifier(relationship.key_field),
        schema=sql.Identifier(table.schema_name),
        table=sql.Identifier(table.table),
        id_field=sql.Identifier(id_field),
    )
    if definition_expression and definition_expression.strip():
        query += sql.SQL(" AND ({})").format(sql.SQL(convert_where(definition_expression)))
    return _execute(db, query, [object_id], timeout, related)


def table_extent(
    db: Database, table: TableDescriptor, timeout: float = DEFAULT_TIMEOUT
) -> Optional[Extent]:
    """Bounding box of all geometries, or None if there is nothing to measure."""
    if not table.is_spatial:
        return None
    geom = sql.Identifier(table.geometry_column)
    query = sql.SQL(
        "SELECT ST_XMin(e) AS xmin, ST_YMin(e) AS ymin, ST_XMax(e) AS xmax, ST_YMax(e) AS ymax "
        "FROM (SELECT ST_Extent({geom}) AS e FROM {schema}.{table} WHERE {geom} IS NOT NULL) s"
    ).format(
        geom=geom,
        schema=sql.Identifier(table.schema_name),
        table=sql.Identifier(table.table),
    )
    rows = _execute(db, query, None, timeout, table)
    if not rows or rows[0].get("xmin") is None:
        return None
    row = rows[0]
    return Extent(xmin=row["xmin"], ymin=row["ymin"], xmax=row["xmax"], ymax=row["ymax"])


def sample_geometry_type(
    db: Database, table: TableDescriptor, timeout: float = DEFAULT_TIMEOUT
) -> Optional[str]:
    """PostGIS type name (e.g. 'ST_Point') of the first non-null geometry."""
    if not table.is_spatial:
        return None
    geom = sql.Identifier(table.geometry_column)
    query = sql.SQL(
        "SELECT ST_GeometryType({geom}) AS geom_type FROM {schema}.{table} "
        "WHERE {geom} IS NOT NULL LIMIT 1"
    ).format(
        geom=geom,
        schema=sql.Identifier(table.schema_name),
        table=sql.Identifier(table.table),
    )
    rows = _execute(db, query, None, timeout, table)
    return rows[0]["geom_type"] if rows else None


def estimate_row_count(
    db: Database, table: TableDescriptor, timeout: float = DEFAULT_TIMEOUT
) -> int:
    """Planner row estimate from pg_class; 0 when the table was never analyzed."""
    query = sql.SQL(
        "SELECT c.reltuples::bigint AS estimate FROM pg_class c "
        "JOIN pg_namespace n ON n.oid = c.relnamespace "
        "WHERE n.nspname = %s AND c.relname = %s"
    )
    rows = _execute(db, query, [table.schema_name, table.table], timeout, table)
    if not rows or rows[0]["estimate"] is None:
        return 0
    return max(int(rows[0]["estimate"]), 0)


def _base_query(table: TableDescriptor) -> sql.Composed:
    source = sql.SQL("{}.{}").format(
        sql.Identifier(table.schema_name), sql.Identifier(table.table)
    )
    if not table.is_spatial:
        return sql.SQL("SELECT * FROM {} WHERE 1=1").format(source)

    geom = sql.Identifier(table.geometry_column)
    return sql.SQL(
        "SELECT *, ST_AsGeoJSON({geom}) AS geojson_geom, "
        "ST_GeometryType({geom}) AS geom_type "
        "FROM {source} WHERE {geom} IS NOT NULL"
    ).format(geom=geom, source=source)


def _order_by(order_by_fields: Optional[str]) -> Optional[sql.Composed]:
    """Compose "field [ASC|DESC], ..." with quoted identifiers."""
    if not order_by_fields:
        return None

    items = []
    for part in order_by_fields.split(","):
        tokens = part.split()
        if not tokens:
            continue
        direction = "DESC" if len(tokens) > 1 and tokens[1].upper() == "DESC" else "ASC"
        items.append(sql.SQL("{} " + direction).format(sql.Identifier(tokens[0])))

    if not items:
        return None
    return sql.SQL(", ").join(items)


def _execute(db: Database, query, values, timeout: float, table: TableDescriptor) -> list[dict]:
    try:
        return db.fetch_all(query, values, timeout=timeout, on_timeout=QueryTimeout)
    except psycopg.Error as e:
        logger.error("Query on %s failed: %s", table.qualified_name, e)
        raise QueryExecutionError(str(e).strip())
