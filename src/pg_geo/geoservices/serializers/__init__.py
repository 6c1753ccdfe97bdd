"""GeoServices response serializers."""

from . import esri_json, geojson

__all__ = ["esri_json", "geojson"]
