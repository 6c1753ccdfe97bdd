"""
Shared test fixtures.

FakeDatabase stands in for the connection pool: it answers the catalog
queries of the introspector and the feature queries of the engine from
an in-memory sample schema and records every statement it receives, so
the suite runs without PostgreSQL. The postgis_* fixtures run the same
code against a real database when PG_GEO_TEST_DATABASE_URL is set.

Sample schema "public":
- cities      spatial (Point), FK country_id -> countries.id
- countries   spatial (MultiPolygon)
- inspections non-spatial, FK city_id -> cities.id
"""

import datetime
import json
import os
import re
import uuid

import psycopg
import pytest
from fastapi.testclient import TestClient
from psycopg import sql

from pg_geo.geoservices.app import create_app
from pg_geo.query.config import DatabaseSettings, Settings
from pg_geo.query.database import Database


def _column(name, data_type, udt_name=None, nullable="YES", length=None):
    return {
        "column_name": name,
        "data_type": data_type,
        "udt_name": udt_name or data_type,
        "is_nullable": nullable,
        "character_maximum_length": length,
    }


def _city(id, name, population, country_id, x, y, founded=None):
    return {
        "id": id,
        "name": name,
        "population": population,
        "country_id": country_id,
        "founded": founded,
        "geom": "0101000020E6100000",
        "geojson_geom": json.dumps({"type": "Point", "coordinates": [x, y]}),
        "geom_type": "ST_Point",
    }


def _country(id, name, xmin, ymin, xmax, ymax):
    ring = [[xmin, ymin], [xmax, ymin], [xmax, ymax], [xmin, ymax], [xmin, ymin]]
    return {
        "id": id,
        "name": name,
        "geom": "0106000020E6100000",
        "geojson_geom": json.dumps({"type": "MultiPolygon", "coordinates": [[ring]]}),
        "geom_type": "ST_MultiPolygon",
    }


def sample_schema():
    """Catalog facts and rows for the sample "public" schema."""
    return {
        "public": {
            "tables": {
                "cities": {
                    "geometry_column": "geom",
                    "geometry_type": "POINT",
                    "columns": [
                        _column("id", "integer", "int4", nullable="NO"),
                        _column("name", "character varying", "varchar", nullable="NO", length=80),
                        _column("population", "integer", "int4"),
                        _column("country_id", "integer", "int4"),
                        _column("founded", "date"),
                        _column("geom", "USER-DEFINED", "geometry"),
                    ],
                    "rows": [
                        _city(1, "Springfield", 1500000, 1, -110.0, 45.0,
                              datetime.date(1900, 1, 1)),
                        _city(2, "Shelbyville", 40000, 1, -105.0, 42.0),
                        _city(3, "Ogdenville", 2500000, 2, -90.0, 30.0),
                        _city(4, "North Haverbrook", 8000, 2, -85.0, 35.0),
                        _city(5, "Capital City", 3100000, 3, -75.0, 40.0),
                        _city(6, "Brockway", 12000, 3, -72.0, 38.0),
                        _city(7, "Cypress Creek", 90000, 3, -71.0, 44.0),
                    ],
                    "extent": {"xmin": -110.0, "ymin": 30.0, "xmax": -71.0, "ymax": 45.0},
                    "estimate": 7,
                },
                "countries": {
                    "geometry_column": "geom",
                    "geometry_type": "MULTIPOLYGON",
                    "columns": [
                        _column("id", "integer", "int4", nullable="NO"),
                        _column("name", "text", "text"),
                        _column("geom", "USER-DEFINED", "geometry"),
                    ],
                    "rows": [
                        _country(1, "Northland", -120.0, 40.0, -100.0, 50.0),
                        _country(2, "Southland", -100.0, 25.0, -80.0, 40.0),
                        _country(3, "Eastland", -80.0, 30.0, -70.0, 45.0),
                    ],
                    "extent": {"xmin": -120.0, "ymin": 25.0, "xmax": -70.0, "ymax": 50.0},
                    "estimate": -1,
                },
                "inspections": {
                    "geometry_column": None,
                    "geometry_type": None,
                    "columns": [
                        _column("id", "integer", "int4", nullable="NO"),
                        _column("city_id", "integer", "int4"),
                        _column("score", "numeric"),
                        _column("inspected_at", "timestamp with time zone", "timestamptz"),
                    ],
                    "rows": [
                        {"id": 10, "city_id": 1, "score": 88.5,
                         "inspected_at": datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)},
                        {"id": 11, "city_id": 1, "score": 71.0,
                         "inspected_at": datetime.datetime(2024, 2, 1, tzinfo=datetime.timezone.utc)},
                        {"id": 12, "city_id": 3, "score": 93.25,
                         "inspected_at": datetime.datetime(2024, 3, 1, tzinfo=datetime.timezone.utc)},
                    ],
                    "extent": None,
                    "estimate": 3,
                },
            },
            "foreign_keys": [
                {
                    "constraint_name": "cities_country_id_fkey",
                    "origin_table": "cities",
                    "origin_column": "country_id",
                    "destination_table": "countries",
                    "destination_column": "id",
                    "origin_unique": False,
                    "destination_unique": True,
                },
                {
                    "constraint_name": "inspections_city_id_fkey",
                    "origin_table": "inspections",
                    "origin_column": "city_id",
                    "destination_table": "cities",
                    "destination_column": "id",
                    "origin_unique": False,
                    "destination_unique": True,
                },
            ],
        },
        "empty": {"tables": {}, "foreign_keys": []},
    }


_SOURCE_RE = re.compile(r'FROM "(?P<schema>[^"]+)"\."(?P<table>[^"]+)"')
_RELATED_RE = re.compile(
    r'AND "(?P<related_key>[^"]+)" IN \(SELECT "(?P<key>[^"]+)" FROM '
    r'"(?P<schema>[^"]+)"\."(?P<table>[^"]+)" WHERE "(?P<id_field>[^"]+)" = %s\)'
)


class FakeDatabase:
    """
    In-memory replacement for pg_geo.query.database.Database.

    Feature queries honor object ids, LIMIT and OFFSET; other filters
    are only recorded. `fail_on` maps a SQL substring to an exception
    instance, or to "timeout" to raise the caller's timeout error.
    """

    def __init__(self, schemas=None):
        self.schemas = schemas if schemas is not None else sample_schema()
        self.queries = []
        self.fail_on = {}

    def fetch_all(self, query, params=None, timeout=None, on_timeout=None):
        text = query if isinstance(query, str) else query.as_string(None)
        params = list(params) if params is not None else []
        self.queries.append((text, params))

        for marker, error in self.fail_on.items():
            if marker in text:
                if error == "timeout":
                    raise on_timeout(f"Database call exceeded {timeout:g}s timeout")
                raise error

        if "information_schema.tables" in text:
            return self._tables(*params)
        if "character_maximum_length" in text:
            return self._columns(*params)
        if "pg_constraint" in text:
            return self._foreign_keys(*params)
        if "information_schema.columns" in text:
            return self._geometry_column(*params)
        if "reltuples" in text:
            return self._estimate(*params)
        if "ST_Extent" in text:
            return self._extent(text)
        if "ST_AsGeoJSON" not in text and "ST_GeometryType" in text:
            return self._sample_type(text)
        return self._features(text, params)

    # Catalog

    def _tables(self, schema, excluded):
        tables = self.schemas.get(schema, {}).get("tables", {})
        return [
            {
                "table_name": name,
                "geometry_column": t["geometry_column"],
                "geometry_type": t["geometry_type"],
            }
            for name, t in tables.items()
            if name not in excluded
        ]

    def _table(self, schema, table):
        return self.schemas.get(schema, {}).get("tables", {}).get(table)

    def _columns(self, schema, table):
        t = self._table(schema, table)
        return list(t["columns"]) if t else []

    def _geometry_column(self, schema, table):
        t = self._table(schema, table)
        if t and t["geometry_column"]:
            return [{"column_name": t["geometry_column"]}]
        return []

    def _foreign_keys(self, schema, _schema, table, _table):
        fks = self.schemas.get(schema, {}).get("foreign_keys", [])
        matching = [
            fk for fk in fks if table in (fk["origin_table"], fk["destination_table"])
        ]
        return sorted(matching, key=lambda fk: fk["constraint_name"])

    def _estimate(self, schema, table):
        t = self._table(schema, table)
        return [{"estimate": t["estimate"]}] if t else []

    def _extent(self, text):
        t = self._table(*_SOURCE_RE.search(text).groups())
        extent = t.get("extent") if t else None
        return [extent or {"xmin": None, "ymin": None, "xmax": None, "ymax": None}]

    def _sample_type(self, text):
        t = self._table(*_SOURCE_RE.search(text).groups())
        rows = t["rows"] if t else []
        return [{"geom_type": rows[0]["geom_type"]}] if rows else []

    # Features

    def _features(self, text, params):
        source = _SOURCE_RE.search(text)
        t = self._table(source.group("schema"), source.group("table"))
        rows = [dict(r) for r in (t["rows"] if t else [])]
        values = list(params)

        related = _RELATED_RE.search(text)
        if related:
            src = self._table(related.group("schema"), related.group("table"))
            object_id = values.pop(0)
            keys = {
                r[related.group("key")]
                for r in src["rows"]
                if r[related.group("id_field")] == object_id
            }
            rows = [r for r in rows if r[related.group("related_key")] in keys]

        if "= ANY(%s)" in text:
            ids = next(v for v in values if isinstance(v, list))
            rows = [r for r in rows if r["id"] in ids]

        offset = values.pop() if " OFFSET %s" in text else 0
        limit = values.pop() if " LIMIT %s" in text else None
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return rows

    @property
    def last_query(self):
        return self.queries[-1]


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def app(settings, fake_db):
    return create_app(settings=settings, database=fake_db)


@pytest.fixture
def client(app):
    return TestClient(app)


# PostGIS-backed fixtures. Tests using them are skipped unless
# PG_GEO_TEST_DATABASE_URL points at a database where the postgis
# extension exists or can be created.

POSTGIS_URL_ENV = "PG_GEO_TEST_DATABASE_URL"


@pytest.fixture(scope="session")
def postgis_url():
    url = os.environ.get(POSTGIS_URL_ENV)
    if not url:
        pytest.skip(f"{POSTGIS_URL_ENV} is not set")
    return url


@pytest.fixture(scope="session")
def postgis_schema(postgis_url):
    """Create a throwaway schema with spatial tables and foreign keys; drop it afterwards."""
    schema = f"pg_geo_test_{uuid.uuid4().hex[:8]}"
    with psycopg.connect(postgis_url, autocommit=True) as conn:
        try:
            conn.execute("CREATE EXTENSION IF NOT EXISTS postgis")
        except psycopg.Error as e:
            pytest.skip(f"PostGIS is not available: {e}")
        _seed_postgis(conn, schema)

    yield schema

    with psycopg.connect(postgis_url, autocommit=True) as conn:
        conn.execute(sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(schema)))


@pytest.fixture(scope="session")
def postgis_settings(postgis_url):
    return Settings(database=DatabaseSettings(url=postgis_url, min_size=1, max_size=4))


@pytest.fixture(scope="session")
def postgis_db(postgis_settings, postgis_schema):
    db = Database(postgis_settings.database)
    db.open()
    yield db
    db.close()


def _seed_postgis(conn, schema):
    """
    cities(id pk, name, population, country_id -> countries, geom Point)
    countries(id pk, name, geom MultiPolygon)
    mayors(id pk, city_id unique -> cities, name)

    cities -> countries is many-to-one, mayors -> cities is one-to-one.
    City 4 has an empty point.
    """
    ident = sql.Identifier(schema)
    conn.execute(sql.SQL("CREATE SCHEMA {}").format(ident))
    conn.execute(
        sql.SQL(
            "CREATE TABLE {}.countries ("
            "id integer PRIMARY KEY, name text NOT NULL, "
            "geom geometry(MultiPolygon, 4326))"
        ).format(ident)
    )
    conn.execute(
        sql.SQL(
            "CREATE TABLE {}.cities ("
            "id integer PRIMARY KEY, name text NOT NULL, population integer, "
            "country_id integer CONSTRAINT cities_country_id_fkey "
            "REFERENCES {}.countries(id), "
            "founded date, geom geometry(Point, 4326))"
        ).format(ident, ident)
    )
    conn.execute(
        sql.SQL(
            "CREATE TABLE {}.mayors ("
            "id integer PRIMARY KEY, name text NOT NULL, "
            "city_id integer UNIQUE CONSTRAINT mayors_city_id_fkey REFERENCES {}.cities(id))"
        ).format(ident, ident)
    )

    countries = [
        (1, "Northland", "MULTIPOLYGON(((-100 38,-70 38,-70 45,-100 45,-100 38)))"),
        (2, "Southland", "MULTIPOLYGON(((-100 25,-70 25,-70 38,-100 38,-100 25)))"),
    ]
    for row in countries:
        conn.execute(
            sql.SQL("INSERT INTO {}.countries VALUES (%s, %s, ST_GeomFromText(%s, 4326))").format(ident),
            row,
        )

    cities = [
        (1, "Metropolis", 3500000, 1, datetime.date(1900, 1, 1), "POINT(-74 40.5)"),
        (2, "Smallville", 4500, 1, None, "POINT(-98 39)"),
        (3, "Gotham", 1200000, 2, None, "POINT(-75 30)"),
        (4, "Nowhere", 0, None, None, "POINT EMPTY"),
    ]
    for row in cities:
        conn.execute(
            sql.SQL(
                "INSERT INTO {}.cities VALUES (%s, %s, %s, %s, %s, ST_GeomFromText(%s, 4326))"
            ).format(ident),
            row,
        )

    conn.execute(
        sql.SQL("INSERT INTO {}.mayors VALUES (1, 'Lois', 1), (2, 'Jonathan', 2)").format(ident)
    )
    conn.execute(sql.SQL("ANALYZE {}.cities").format(ident))
