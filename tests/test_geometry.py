"""Tests for geometry conversion utilities."""

import pytest

from pg_geo.query.geometry import (
    esri_geometry_type,
    geojson_to_esri,
    parse_bbox,
    parse_filter_geometry,
    parse_geojson_text,
    postgis_to_geojson_type,
)


class TestGeojsonToEsri:
    def test_point(self):
        assert geojson_to_esri({"type": "Point", "coordinates": [1.5, 2.5]}) == {"x": 1.5, "y": 2.5}

    def test_multipoint(self):
        coords = [[0, 0], [1, 1]]
        assert geojson_to_esri({"type": "MultiPoint", "coordinates": coords}) == {"points": coords}

    def test_linestring(self):
        coords = [[0, 0], [1, 1]]
        assert geojson_to_esri({"type": "LineString", "coordinates": coords}) == {"paths": [coords]}

    def test_multilinestring(self):
        coords = [[[0, 0], [1, 1]], [[2, 2], [3, 3]]]
        assert geojson_to_esri({"type": "MultiLineString", "coordinates": coords}) == {
            "paths": coords
        }

    def test_polygon(self):
        rings = [[[0, 0], [1, 0], [1, 1], [0, 0]]]
        assert geojson_to_esri({"type": "Polygon", "coordinates": rings}) == {"rings": rings}

    def test_multipolygon_rings_flattened(self):
        a = [[0, 0], [1, 0], [1, 1], [0, 0]]
        hole = [[0.2, 0.2], [0.4, 0.2], [0.4, 0.4], [0.2, 0.2]]
        b = [[5, 5], [6, 5], [6, 6], [5, 5]]
        esri = geojson_to_esri({"type": "MultiPolygon", "coordinates": [[a, hole], [b]]})
        assert esri == {"rings": [a, hole, b]}

    @pytest.mark.parametrize(
        "geometry",
        [
            {"type": "Point", "coordinates": []},
            {"type": "Point", "coordinates": [1.0]},
            {"type": "MultiPoint", "coordinates": []},
            {"type": "LineString", "coordinates": []},
            {"type": "MultiLineString", "coordinates": []},
            {"type": "Polygon", "coordinates": []},
            {"type": "MultiPolygon", "coordinates": []},
            {"type": "MultiPolygon", "coordinates": [[]]},
        ],
    )
    def test_empty_geometries(self, geometry):
        assert geojson_to_esri(geometry) is None

    def test_unknown_or_missing(self):
        assert geojson_to_esri(None) is None
        assert geojson_to_esri({"type": "GeometryCollection", "geometries": []}) is None


class TestGeometryTypes:
    @pytest.mark.parametrize(
        "pg_type,expected",
        [
            ("ST_Point", "esriGeometryPoint"),
            ("POINT", "esriGeometryPoint"),
            ("MULTIPOINT", "esriGeometryMultipoint"),
            ("ST_LineString", "esriGeometryPolyline"),
            ("MULTILINESTRINGZ", "esriGeometryPolyline"),
            ("MULTIPOLYGONZM", "esriGeometryPolygon"),
            ("Polygon", "esriGeometryPolygon"),
        ],
    )
    def test_esri_geometry_type(self, pg_type, expected):
        assert esri_geometry_type(pg_type) == expected

    def test_generic_geometry_is_unknown(self):
        assert esri_geometry_type("GEOMETRY") is None
        assert esri_geometry_type(None) is None

    def test_postgis_to_geojson_type(self):
        assert postgis_to_geojson_type("ST_MultiPolygon") == "MultiPolygon"
        assert postgis_to_geojson_type("POINTM") == "Point"


class TestParseFilterGeometry:
    def test_esri_envelope(self):
        wkt = parse_filter_geometry('{"xmin": 0, "ymin": 0, "xmax": 2, "ymax": 1}')
        assert wkt.startswith("POLYGON")
        assert "2 1" in wkt

    def test_esri_point(self):
        assert parse_filter_geometry('{"x": 1, "y": 2, "spatialReference": {"wkid": 4326}}') == (
            "POINT (1 2)"
        )

    def test_esri_polyline(self):
        assert parse_filter_geometry('{"paths": [[[0, 0], [1, 1]]]}') == "LINESTRING (0 0, 1 1)"

    def test_esri_polygon(self):
        wkt = parse_filter_geometry('{"rings": [[[0, 0], [1, 0], [1, 1], [0, 0]]]}')
        assert wkt == "POLYGON ((0 0, 1 0, 1 1, 0 0))"

    def test_geojson(self):
        assert parse_filter_geometry('{"type": "Point", "coordinates": [3, 4]}') == "POINT (3 4)"

    def test_wkt_passthrough(self):
        assert parse_filter_geometry("POINT (5 6)") == "POINT (5 6)"

    def test_bbox_string(self):
        assert parse_filter_geometry("0,0,1,1").startswith("POLYGON")

    def test_garbage_returns_none(self, caplog):
        assert parse_filter_geometry("definitely not geometry") is None
        assert parse_filter_geometry('{"foo": 1}') is None
        assert parse_filter_geometry("[1, 2]") is None
        assert "Ignoring" in caplog.text

    def test_empty(self):
        assert parse_filter_geometry(None) is None
        assert parse_filter_geometry("  ") is None


class TestParseBbox:
    def test_valid(self):
        assert parse_bbox("-100, 35, -95, 40") == (-100.0, 35.0, -95.0, 40.0)

    def test_wrong_arity(self):
        assert parse_bbox("1,2,3") is None
        assert parse_bbox("1,2,3,4,5") is None

    def test_non_numeric(self):
        assert parse_bbox("a,b,c,d") is None


class TestParseGeojsonText:
    def test_valid(self):
        assert parse_geojson_text('{"type": "Point", "coordinates": [1, 2]}') == {
            "type": "Point",
            "coordinates": [1, 2],
        }

    def test_invalid_logs_warning(self, caplog):
        assert parse_geojson_text("{broken", "public.cities") is None
        assert "public.cities" in caplog.text
