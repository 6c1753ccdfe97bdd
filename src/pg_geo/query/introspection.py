"""
Schema introspection against the PostgreSQL catalog.

Answers "what tables, layers, fields and relationships exist" from live
catalog metadata. Nothing is cached across requests, so schema changes
show up immediately.
"""

import logging
from typing import Optional

import psycopg

from .database import Database
from .errors import GeoServicesError, QueryExecutionError, SchemaTimeout
from .geometry import esri_geometry_type
from .models import (
    Cardinality,
    FieldDescriptor,
    FieldType,
    LayerDescriptor,
    RelationshipDescriptor,
    RelationshipLookup,
    Role,
    TableDescriptor,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0

POSTGIS_SYSTEM_TABLES = (
    "spatial_ref_sys",
    "geography_columns",
    "geometry_columns",
    "raster_columns",
    "raster_overviews",
)

# Computed by the feature query, never exposed as fields.
INTERNAL_COLUMNS = {"geojson_geom", "geom_type"}

GEOMETRY_COLUMN_SQL = """
    SELECT column_name
    FROM information_schema.columns
    WHERE table_schema = %s
      AND table_name = %s
      AND udt_name = 'geometry'
    ORDER BY ordinal_position
    LIMIT 1
"""

ENUMERATE_TABLES_SQL = """
    SELECT
        t.table_name,
        gc.column_name AS geometry_column,
        g.type AS geometry_type
    FROM information_schema.tables t
    LEFT JOIN LATERAL (
        SELECT c.column_name
        FROM information_schema.columns c
        WHERE c.table_schema = t.table_schema
          AND c.table_name = t.table_name
          AND c.udt_name = 'geometry'
        ORDER BY c.ordinal_position
        LIMIT 1
    ) gc ON TRUE
    LEFT JOIN geometry_columns g
        ON g.f_table_schema = t.table_schema
       AND g.f_table_name = t.table_name
       AND g.f_geometry_column = gc.column_name
    WHERE t.table_schema = %s
      AND t.table_type IN ('BASE TABLE', 'VIEW')
      AND t.table_name <> ALL(%s)
"""

COLUMNS_SQL = """
    SELECT
        column_name,
        data_type,
        udt_name,
        is_nullable,
        character_maximum_length
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""

# Single-column foreign keys touching the table, with uniqueness of each
# side taken from unique, non-partial, single-key indexes (primary keys
# and unique constraints are both backed by one).
RELATIONSHIPS_SQL = """
    SELECT
        c.conname AS constraint_name,
        src.relname AS origin_table,
        sa.attname AS origin_column,
        dst.relname AS destination_table,
        da.attname AS destination_column,
        EXISTS (
            SELECT 1 FROM pg_index i
            WHERE i.indrelid = c.conrelid
              AND i.indisunique
              AND i.indpred IS NULL
              AND i.indnkeyatts = 1
              AND i.indkey[0] = c.conkey[1]
        ) AS origin_unique,
        EXISTS (
            SELECT 1 FROM pg_index i
            WHERE i.indrelid = c.confrelid
              AND i.indisunique
              AND i.indpred IS NULL
              AND i.indnkeyatts = 1
              AND i.indkey[0] = c.confkey[1]
        ) AS destination_unique
    FROM pg_constraint c
    JOIN pg_class src ON src.oid = c.conrelid
    JOIN pg_namespace sn ON sn.oid = src.relnamespace
    JOIN pg_class dst ON dst.oid = c.confrelid
    JOIN pg_namespace dn ON dn.oid = dst.relnamespace
    JOIN pg_attribute sa ON sa.attrelid = c.conrelid AND sa.attnum = c.conkey[1]
    JOIN pg_attribute da ON da.attrelid = c.confrelid AND da.attnum = c.confkey[1]
    WHERE c.contype = 'f'
      AND cardinality(c.conkey) = 1
      AND sn.nspname = %s
      AND dn.nspname = %s
      AND (src.relname = %s OR dst.relname = %s)
    ORDER BY c.conname
"""

# Relational type class -> Esri field type
_TYPE_MAP = {
    "integer": FieldType.INTEGER,
    "smallint": FieldType.SMALL_INTEGER,
    "bigint": FieldType.BIG_INTEGER,
    "numeric": FieldType.DOUBLE,
    "decimal": FieldType.DOUBLE,
    "real": FieldType.DOUBLE,
    "double precision": FieldType.DOUBLE,
    "boolean": FieldType.SMALL_INTEGER,
    "text": FieldType.STRING,
    "character varying": FieldType.STRING,
    "character": FieldType.STRING,
    "date": FieldType.DATE,
    "timestamp without time zone": FieldType.DATE,
    "timestamp with time zone": FieldType.DATE,
    "time without time zone": FieldType.DATE,
    "time with time zone": FieldType.DATE,
    "uuid": FieldType.GUID,
}

_OBJECT_ID_NAMES = {"id", "objectid"}
_GEOMETRY_UDTS = {"geometry", "geography"}


def classify_column_type(data_type: str, column_name: str = "") -> FieldType:
    """Map a catalog data_type (plus naming conventions) to an Esri field type."""
    field_type = _TYPE_MAP.get((data_type or "").lower(), FieldType.STRING)
    if column_name.lower() in _OBJECT_ID_NAMES and field_type in (
        FieldType.INTEGER,
        FieldType.SMALL_INTEGER,
        FieldType.BIG_INTEGER,
    ):
        return FieldType.OID
    if column_name.upper() == "GLOBALID":
        return FieldType.GLOBAL_ID
    return field_type


def detect_geometry_column(
    db: Database, schema: str, table: str, timeout: float = DEFAULT_TIMEOUT
) -> Optional[str]:
    """
    Return the first geometry column of a table by ordinal position.

    Only the first one is used when a table has several.
    """
    rows = _run(db, GEOMETRY_COLUMN_SQL, [schema, table], timeout)
    return rows[0]["column_name"] if rows else None


def describe_table(
    db: Database, schema: str, table: str, timeout: float = DEFAULT_TIMEOUT
) -> TableDescriptor:
    return TableDescriptor(
        schema_name=schema,
        table=table,
        geometry_column=detect_geometry_column(db, schema, table, timeout),
    )


def enumerate_tables(
    db: Database, schema: str, timeout: float = DEFAULT_TIMEOUT
) -> list[LayerDescriptor]:
    """
    List the user tables of a schema as layers and tables.

    Ids are assigned by sorted position: spatial layers first, then
    non-spatial tables, alphabetically within each group. An empty
    schema yields an empty list.
    """
    rows = _run(db, ENUMERATE_TABLES_SQL, [schema, list(POSTGIS_SYSTEM_TABLES)], timeout)

    spatial = sorted(
        (r for r in rows if r["geometry_column"]), key=lambda r: r["table_name"]
    )
    non_spatial = sorted(
        (r for r in rows if not r["geometry_column"]), key=lambda r: r["table_name"]
    )

    layers = []
    for layer_id, row in enumerate(spatial + non_spatial):
        descriptor = TableDescriptor(
            schema_name=schema,
            table=row["table_name"],
            geometry_column=row["geometry_column"],
        )
        layers.append(
            LayerDescriptor(
                id=layer_id,
                name=row["table_name"],
                geometry_type=esri_geometry_type(row.get("geometry_type")),
                table=descriptor,
            )
        )

    logger.debug(
        "Schema %s: %d layers, %d tables", schema, len(spatial), len(non_spatial)
    )
    return layers


def resolve_layer_by_id(layers: list[LayerDescriptor], layer_id: int) -> Optional[LayerDescriptor]:
    """Find a layer by the id assigned in enumerate_tables."""
    for layer in layers:
        if layer.id == layer_id:
            return layer
    return None


def get_fields(
    db: Database, schema: str, table: str, timeout: float = DEFAULT_TIMEOUT
) -> list[FieldDescriptor]:
    """Describe the non-geometry columns of a table as Esri fields."""
    rows = _run(db, COLUMNS_SQL, [schema, table], timeout)

    fields = []
    for col in rows:
        name = col["column_name"]
        if name in INTERNAL_COLUMNS or (col.get("udt_name") or "").lower() in _GEOMETRY_UDTS:
            continue
        field_type = classify_column_type(col["data_type"], name)
        length = None
        if field_type in (FieldType.STRING, FieldType.GUID, FieldType.GLOBAL_ID):
            length = col.get("character_maximum_length") or (38 if field_type != FieldType.STRING else 255)
        fields.append(
            FieldDescriptor(
                name=name,
                type=field_type,
                alias=name,
                length=length,
                nullable=col.get("is_nullable") == "YES",
                editable=field_type not in (FieldType.OID, FieldType.GLOBAL_ID),
            )
        )
    return fields


def lookup_relationships(
    db: Database,
    schema: str,
    table: str,
    layers: Optional[list[LayerDescriptor]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> RelationshipLookup:
    """
    Derive relationships for `table` from its foreign keys.

    Failures are reported on the returned lookup instead of raised.
    """
    try:
        rows = _run(db, RELATIONSHIPS_SQL, [schema, schema, table, table], timeout)
    except GeoServicesError as e:
        logger.warning("Relationship introspection failed for %s.%s: %s", schema, table, e)
        return RelationshipLookup(error=str(e))

    table_ids = {layer.name: layer.id for layer in (layers or [])}
    relationships = []
    for index, row in enumerate(rows):
        is_origin = row["origin_table"] == table
        related = row["destination_table"] if is_origin else row["origin_table"]
        relationships.append(
            RelationshipDescriptor(
                id=index,
                name=row["constraint_name"],
                related_table_id=table_ids.get(related, -1),
                cardinality=_cardinality(
                    local_unique=row["origin_unique"] if is_origin else row["destination_unique"],
                    remote_unique=row["destination_unique"] if is_origin else row["origin_unique"],
                ),
                role=Role.ORIGIN if is_origin else Role.DESTINATION,
                key_field=row["origin_column"] if is_origin else row["destination_column"],
                related_table_name=related,
                origin_column=row["origin_column"],
                destination_column=row["destination_column"],
            )
        )

    if not relationships:
        logger.debug("No relationships for %s.%s", schema, table)
    return RelationshipLookup(relationships=relationships)


def get_relationships(
    db: Database,
    schema: str,
    table: str,
    layers: Optional[list[LayerDescriptor]] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> list[RelationshipDescriptor]:
    """Relationships for a table; empty when none exist or introspection failed."""
    return lookup_relationships(db, schema, table, layers, timeout).relationships


def _cardinality(local_unique: bool, remote_unique: bool) -> Cardinality:
    if local_unique and remote_unique:
        return Cardinality.ONE_TO_ONE
    if remote_unique:
        return Cardinality.MANY_TO_ONE
    return Cardinality.ONE_TO_MANY


def _run(db: Database, query: str, params: list, timeout: float) -> list[dict]:
    try:
        return db.fetch_all(query, params, timeout=timeout, on_timeout=SchemaTimeout)
    except psycopg.Error as e:
        raise QueryExecutionError(str(e).strip())
