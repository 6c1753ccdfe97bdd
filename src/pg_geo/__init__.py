"""Esri GeoServices REST API backed by PostgreSQL/PostGIS."""

__version__ = "0.1.0"
