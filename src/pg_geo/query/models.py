"""
Pydantic models shared across the query layer and the GeoServices surface.
These models describe relational facts and query semantics, not wire formats.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, model_validator


class FieldType(str, Enum):
    OID = "esriFieldTypeOID"
    GLOBAL_ID = "esriFieldTypeGlobalID"
    INTEGER = "esriFieldTypeInteger"
    BIG_INTEGER = "esriFieldTypeBigInteger"
    SMALL_INTEGER = "esriFieldTypeSmallInteger"
    DOUBLE = "esriFieldTypeDouble"
    STRING = "esriFieldTypeString"
    DATE = "esriFieldTypeDate"
    GUID = "esriFieldTypeGUID"


INTEGER_FIELD_TYPES = {
    FieldType.OID,
    FieldType.INTEGER,
    FieldType.BIG_INTEGER,
    FieldType.SMALL_INTEGER,
}


class Cardinality(str, Enum):
    ONE_TO_ONE = "esriRelCardinalityOneToOne"
    ONE_TO_MANY = "esriRelCardinalityOneToMany"
    MANY_TO_ONE = "esriRelCardinalityManyToOne"


class Role(str, Enum):
    ORIGIN = "esriRelRoleOrigin"
    DESTINATION = "esriRelRoleDestination"


class TableDescriptor(BaseModel):
    """A queryable relation. Spatial iff it has a geometry column."""

    schema_name: str
    table: str
    geometry_column: Optional[str] = None
    is_spatial: bool = False

    @model_validator(mode="after")
    def _spatial_matches_geometry(self):
        self.is_spatial = self.geometry_column is not None
        return self

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table}"


class LayerDescriptor(BaseModel):
    """An Esri layer (spatial) or table (non-spatial) within a schema."""

    id: int
    name: str
    geometry_type: Optional[str] = None  # esriGeometryPoint, ... or None
    table: TableDescriptor

    @property
    def is_spatial(self) -> bool:
        return self.table.is_spatial


class FieldDescriptor(BaseModel):
    name: str
    type: FieldType
    alias: str
    length: Optional[int] = None
    nullable: bool = True
    editable: bool = True

    def to_esri(self) -> dict:
        field = {
            "name": self.name,
            "type": self.type.value,
            "alias": self.alias,
            "nullable": self.nullable,
            "editable": self.editable,
            "defaultValue": None,
            "domain": None,
        }
        if self.length is not None:
            field["length"] = self.length
        return field


class RelationshipDescriptor(BaseModel):
    """One foreign-key edge, seen from the table it was looked up for."""

    id: int
    name: str
    related_table_id: int
    cardinality: Cardinality
    role: Role
    key_field: str
    related_table_name: str
    origin_column: str
    destination_column: str

    @property
    def related_key_field(self) -> str:
        """Column on the related table that pairs with key_field."""
        if self.role == Role.ORIGIN:
            return self.destination_column
        return self.origin_column

    def to_esri(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "relatedTableId": self.related_table_id,
            "cardinality": self.cardinality.value,
            "role": self.role.value,
            "keyField": self.key_field,
            "composite": False,
            "relatedTableName": self.related_table_name,
            "originColumn": self.origin_column,
            "destinationColumn": self.destination_column,
        }


class RelationshipLookup(BaseModel):
    """Relationships for a table, or the reason they could not be read.

    An empty list with error=None means the table has no foreign keys;
    an empty list with an error means introspection failed.
    """

    relationships: list[RelationshipDescriptor] = []
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class Extent(BaseModel):
    xmin: float = -180.0
    ymin: float = -90.0
    xmax: float = 180.0
    ymax: float = 90.0

    def to_esri(self) -> dict:
        return {
            "xmin": self.xmin,
            "ymin": self.ymin,
            "xmax": self.xmax,
            "ymax": self.ymax,
            "spatialReference": {"wkid": 4326, "latestWkid": 4326},
        }

    def to_pairs(self) -> list[list[float]]:
        return [[self.xmin, self.ymin], [self.xmax, self.ymax]]


WORLD_EXTENT = Extent()


class QueryParams(BaseModel):
    """Protocol query options after parsing. Absent options are None."""

    # Attribute
    where: Optional[str] = None
    definition_expression: Optional[str] = None
    object_ids: Optional[list[int]] = None

    # Spatial
    bbox: Optional[str] = None  # "xmin,ymin,xmax,ymax"
    geometry: Optional[str] = None  # GeoJSON, WKT or Esri JSON
    spatial_rel: str = "esriSpatialRelIntersects"

    # Fields
    out_fields: Optional[str] = None  # comma-separated field names, or "*"
    return_geometry: bool = True

    # Sorting and pagination
    order_by_fields: Optional[str] = None
    result_offset: Optional[int] = None
    result_record_count: Optional[int] = None

    # Response modifiers
    return_count_only: bool = False
    return_ids_only: bool = False
    f: str = "json"

    # Related records
    relationship_id: Optional[str] = None


class QueryResult(BaseModel):
    """Rows fetched by one translated query."""

    rows: list[dict[str, Any]] = []
    count: int = 0
    exceeded_transfer_limit: bool = False

    @classmethod
    def from_rows(cls, rows: list[dict], limit: Optional[int]) -> "QueryResult":
        return cls(
            rows=rows,
            count=len(rows),
            exceeded_transfer_limit=bool(limit) and len(rows) >= limit,
        )


class LayerSchema(BaseModel):
    """Everything the serializers need to know about one layer."""

    layer_id: int
    table: TableDescriptor
    name: str
    description: str = ""
    geometry_type: Optional[str] = None
    fields: list[FieldDescriptor] = []
    id_field: Optional[str] = None
    display_field: Optional[str] = None
    extent: Extent = WORLD_EXTENT
    relationships: list[RelationshipDescriptor] = []
    max_record_count: int = 100000

    @property
    def is_spatial(self) -> bool:
        return self.table.is_spatial

    def field(self, name: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.name == name:
                return f
        return None
