#!/usr/bin/env python3
"""
Create a small PostGIS sample schema for development.

Usage:
    python scripts/seed_test_data.py [schema]

Connects with DATABASE_URL (or the config file). Creates:
- countries: polygons
- cities: points, FK -> countries
- inspections: non-spatial table, FK -> cities, with a timestamp column
"""

import random
import sys

from psycopg import sql
from shapely.geometry import Point, box

from pg_geo.query.config import load_settings
from pg_geo.query.database import DatabaseRegistry

COUNTRIES = [
    ("Northland", (-120.0, 40.0, -100.0, 50.0)),
    ("Southland", (-100.0, 25.0, -80.0, 40.0)),
    ("Eastland", (-80.0, 30.0, -70.0, 45.0)),
]


def seed(conn, schema: str):
    random.seed(42)
    ident = sql.Identifier(schema)

    conn.execute(sql.SQL("CREATE EXTENSION IF NOT EXISTS postgis"))
    conn.execute(sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(ident))
    conn.execute(sql.SQL("CREATE SCHEMA {}").format(ident))

    conn.execute(
        sql.SQL(
            "CREATE TABLE {}.countries ("
            "id serial PRIMARY KEY, name varchar(80) NOT NULL, "
            "geom geometry(Polygon, 4326))"
        ).format(ident)
    )
    conn.execute(
        sql.SQL(
            "CREATE TABLE {}.cities ("
            "id serial PRIMARY KEY, name varchar(80) NOT NULL, population integer, "
            "country_id integer REFERENCES {}.countries(id), "
            "geom geometry(Point, 4326))"
        ).format(ident, ident)
    )
    conn.execute(
        sql.SQL(
            "CREATE TABLE {}.inspections ("
            "id serial PRIMARY KEY, inspected_at timestamptz NOT NULL DEFAULT now(), "
            "score numeric(5, 2), city_id integer REFERENCES {}.cities(id))"
        ).format(ident, ident)
    )

    for name, bounds in COUNTRIES:
        conn.execute(
            sql.SQL(
                "INSERT INTO {}.countries (name, geom) VALUES (%s, ST_GeomFromText(%s, 4326))"
            ).format(ident),
            [name, box(*bounds).wkt],
        )

    n = 50
    for i in range(n):
        country_id = random.randint(1, len(COUNTRIES))
        xmin, ymin, xmax, ymax = COUNTRIES[country_id - 1][1]
        pt = Point(random.uniform(xmin, xmax), random.uniform(ymin, ymax))
        conn.execute(
            sql.SQL(
                "INSERT INTO {}.cities (name, population, country_id, geom) "
                "VALUES (%s, %s, %s, ST_GeomFromText(%s, 4326))"
            ).format(ident),
            [f"City {i:03d}", random.randint(1000, 2000000), country_id, pt.wkt],
        )

    for _ in range(200):
        conn.execute(
            sql.SQL(
                "INSERT INTO {}.inspections (inspected_at, score, city_id) "
                "VALUES (now() - (%s * interval '1 hour'), %s, %s)"
            ).format(ident),
            [random.randint(0, 24 * 90), round(random.uniform(0, 100), 2), random.randint(1, n)],
        )

    print(f"Created {schema}.countries, {schema}.cities ({n}), {schema}.inspections (200)")


def main():
    schema = sys.argv[1] if len(sys.argv) > 1 else "sample"
    settings = load_settings()
    registry = DatabaseRegistry()
    db = registry.get(settings.database)
    try:
        with db.connection() as conn:
            seed(conn, schema)
    finally:
        registry.close_all()
    print("Seed data complete!")


if __name__ == "__main__":
    main()
