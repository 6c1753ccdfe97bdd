"""
Geometry conversion utilities.

Handles:
- Filter geometry normalization (GeoJSON / WKT / Esri JSON -> WKT)
- GeoJSON -> Esri JSON geometry conversion
- PostGIS geometry type names -> Esri geometry types
"""

import json
import logging
from typing import Optional

from shapely import wkt
from shapely.errors import ShapelyError
from shapely.geometry import (
    LineString,
    MultiLineString,
    MultiPoint,
    Point,
    Polygon,
    box,
    shape,
)

logger = logging.getLogger(__name__)


ESRI_GEOMETRY_TYPE_MAP = {
    "Point": "esriGeometryPoint",
    "MultiPoint": "esriGeometryMultipoint",
    "LineString": "esriGeometryPolyline",
    "MultiLineString": "esriGeometryPolyline",
    "Polygon": "esriGeometryPolygon",
    "MultiPolygon": "esriGeometryPolygon",
}

# PostGIS reports ST_Point / POINT / MULTIPOLYGONZ etc.
_POSTGIS_TYPE_MAP = {
    "POINT": "Point",
    "MULTIPOINT": "MultiPoint",
    "LINESTRING": "LineString",
    "MULTILINESTRING": "MultiLineString",
    "POLYGON": "Polygon",
    "MULTIPOLYGON": "MultiPolygon",
}


def postgis_to_geojson_type(pg_type: Optional[str]) -> Optional[str]:
    """Normalize 'ST_MultiPolygon' or 'MULTIPOLYGONZM' to 'MultiPolygon'."""
    if not pg_type:
        return None
    clean = pg_type.upper()
    if clean.startswith("ST_"):
        clean = clean[3:]
    for suffix in ("ZM", "Z", "M"):
        if clean.endswith(suffix) and clean[: -len(suffix)] in _POSTGIS_TYPE_MAP:
            clean = clean[: -len(suffix)]
            break
    return _POSTGIS_TYPE_MAP.get(clean)


def esri_geometry_type(pg_type: Optional[str]) -> Optional[str]:
    """Map a PostGIS or GeoJSON geometry type name to an Esri geometry type."""
    if not pg_type:
        return None
    geojson_type = pg_type if pg_type in ESRI_GEOMETRY_TYPE_MAP else postgis_to_geojson_type(pg_type)
    return ESRI_GEOMETRY_TYPE_MAP.get(geojson_type)


def geojson_to_esri(geometry: Optional[dict]) -> Optional[dict]:
    """
    Convert a GeoJSON geometry dict to an Esri JSON geometry.

    MultiPolygon rings are flattened one level into a single ring list,
    so the grouping of rings per polygon is not preserved. Empty
    geometries (PostGIS renders POINT EMPTY as ``"coordinates": []``)
    yield None.
    """
    if not geometry:
        return None

    geom_type = geometry.get("type")
    coords = geometry.get("coordinates")
    if not coords:
        return None

    if geom_type == "Point":
        if len(coords) < 2:
            return None
        return {"x": coords[0], "y": coords[1]}
    elif geom_type == "MultiPoint":
        return {"points": coords}
    elif geom_type == "LineString":
        return {"paths": [coords]}
    elif geom_type == "MultiLineString":
        return {"paths": coords}
    elif geom_type == "Polygon":
        return {"rings": coords}
    elif geom_type == "MultiPolygon":
        rings = [ring for polygon in coords for ring in polygon]
        return {"rings": rings} if rings else None

    return None


def parse_geojson_text(text: Optional[str], table_name: str = "") -> Optional[dict]:
    """Parse ST_AsGeoJSON output. Unparseable text yields None."""
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning("Dropping unparseable geometry in %s: %s", table_name, e)
        return None


def parse_filter_geometry(geometry_str: Optional[str]) -> Optional[str]:
    """
    Normalize a geometry filter parameter to WKT.

    Handles:
    - GeoJSON geometry: {"type": "Point", "coordinates": [...]}
    - Esri envelope: {"xmin":..., "ymin":..., "xmax":..., "ymax":...}
    - Esri point: {"x":..., "y":...}
    - Esri multipoint / polyline / polygon: points / paths / rings
    - Plain bbox string: "xmin,ymin,xmax,ymax"
    - WKT

    Returns None when the input cannot be parsed.
    """
    if not geometry_str or not geometry_str.strip():
        return None

    try:
        geom = json.loads(geometry_str)
    except (json.JSONDecodeError, TypeError):
        return _parse_plain_geometry(geometry_str)

    if not isinstance(geom, dict):
        logger.warning("Ignoring geometry filter that is not an object: %s", geometry_str)
        return None

    try:
        return _json_geometry_to_shapely(geom).wkt
    except (KeyError, IndexError, TypeError, ValueError, ShapelyError) as e:
        logger.warning("Ignoring unparseable geometry filter %s: %s", geometry_str, e)
        return None


def _json_geometry_to_shapely(geom: dict):
    # GeoJSON
    if "type" in geom and "coordinates" in geom:
        return shape(geom)

    # Esri envelope
    if "xmin" in geom:
        return box(geom["xmin"], geom["ymin"], geom["xmax"], geom["ymax"])

    # Esri point
    if "x" in geom:
        return Point(geom["x"], geom["y"])

    if "points" in geom:
        return MultiPoint(geom["points"])

    if "paths" in geom:
        paths = geom["paths"]
        if len(paths) == 1:
            return LineString(paths[0])
        return MultiLineString(paths)

    if "rings" in geom:
        rings = geom["rings"]
        return Polygon(rings[0], rings[1:])

    raise ValueError("unsupported geometry object")


def _parse_plain_geometry(geometry_str: str) -> Optional[str]:
    parts = geometry_str.split(",")
    if len(parts) == 4:
        try:
            xmin, ymin, xmax, ymax = (float(p) for p in parts)
        except ValueError:
            pass
        else:
            return box(xmin, ymin, xmax, ymax).wkt

    try:
        return wkt.loads(geometry_str).wkt
    except (ShapelyError, ValueError) as e:
        logger.warning("Ignoring unparseable geometry filter %s: %s", geometry_str, e)
        return None


def parse_bbox(bbox: Optional[str]) -> Optional[tuple[float, float, float, float]]:
    """Parse "xmin,ymin,xmax,ymax". Anything but four floats yields None."""
    if not bbox:
        return None
    parts = bbox.split(",")
    if len(parts) != 4:
        return None
    try:
        return tuple(float(p) for p in parts)
    except ValueError:
        return None
