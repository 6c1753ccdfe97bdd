"""
Serialize a GeoJSON FeatureCollection -> Esri JSON responses.

Esri JSON is the native JSON format for ArcGIS Feature Services.
It differs from GeoJSON in geometry representation:
- Polygons use {"rings": [[[x,y],...], ...]}
- Polylines use {"paths": [[[x,y],...], ...]}
- Points use {"x": val, "y": val}
- SpatialReference is an object: {"wkid": 4326}
"""

from pg_geo.query.geometry import geojson_to_esri
from pg_geo.query.models import QueryParams, QueryResult

SPATIAL_REFERENCE = {"wkid": 4326, "latestWkid": 4326}
DEFAULT_OBJECT_ID_FIELD = "OBJECTID"


def serialize(collection: dict, params: QueryParams) -> dict:
    """Convert the GeoJSON first pass to an Esri JSON FeatureSet."""
    metadata = collection["metadata"]
    id_field = metadata.get("idField") or DEFAULT_OBJECT_ID_FIELD
    spatial = metadata.get("geometryType") is not None

    features = []
    for feature in collection["features"]:
        esri_feature = {"attributes": _esri_attributes(feature["properties"])}
        if params.return_geometry and spatial:
            esri_feature["geometry"] = geojson_to_esri(feature["geometry"])
        features.append(esri_feature)

    response = {
        "objectIdFieldName": id_field,
        "uniqueIdField": {"name": id_field, "isSystemMaintained": True},
        "globalIdFieldName": "",
        "geometryType": metadata.get("geometryType"),
        "spatialReference": dict(SPATIAL_REFERENCE),
        "fields": metadata.get("fields", []),
        "features": features,
    }
    if not params.return_count_only:
        response["exceededTransferLimit"] = bool(metadata.get("limitExceeded"))
    return response


def count_only(result: QueryResult) -> dict:
    """returnCountOnly: the number of rows the (paginated) query fetched."""
    return {"count": result.count}


def ids_only(collection: dict) -> dict:
    """returnIdsOnly: object ids in query order, nulls dropped."""
    metadata = collection["metadata"]
    id_field = metadata.get("idField")
    ids = []
    if id_field:
        for feature in collection["features"]:
            value = feature["properties"].get(id_field)
            if value is not None:
                ids.append(value)
    return {
        "objectIdFieldName": id_field or DEFAULT_OBJECT_ID_FIELD,
        "objectIds": ids,
    }


def identify(collection: dict, layer_id: int, layer_name: str) -> dict:
    """Format features as an identify response."""
    metadata = collection["metadata"]
    id_field = metadata.get("idField")
    display_field = metadata.get("displayField")

    results = []
    for index, feature in enumerate(collection["features"]):
        properties = feature["properties"]
        value = properties.get(id_field) if id_field else None
        results.append(
            {
                "layerId": layer_id,
                "layerName": layer_name,
                "value": value if value is not None else index,
                "displayFieldName": display_field or next(iter(properties), ""),
                "attributes": _esri_attributes(properties),
                "geometryType": metadata.get("geometryType"),
                "geometry": geojson_to_esri(feature["geometry"]),
            }
        )
    return {"results": results}


def related_record_group(object_id, collection: dict, return_geometry: bool) -> dict:
    records = []
    for feature in collection["features"]:
        record = {"attributes": _esri_attributes(feature["properties"])}
        if return_geometry:
            record["geometry"] = geojson_to_esri(feature["geometry"])
        records.append(record)
    return {"objectId": object_id, "relatedRecords": records}


def _esri_attributes(properties: dict) -> dict:
    # Booleans are exposed as SmallInteger fields
    return {
        name: int(value) if isinstance(value, bool) else value
        for name, value in properties.items()
    }
