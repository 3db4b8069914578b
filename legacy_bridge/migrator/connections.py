"""
Source and destination connection handling.

Engines are built from app config; each step borrows one connection per side
and returns it when the step ends, whatever the outcome.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

from flask import Flask
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Connection, Engine

from legacy_bridge.migrator.errors import MigratorError

logger = logging.getLogger(__name__)

ENGINES_EXTENSION_KEY = "migrator_engines"


def build_database_url(config: Mapping[str, Any], side: str) -> str | URL:
    """
    Resolve the URL for ``side`` ("source" or "destination").

    A full ``SOURCE_DATABASE_URL``/``DESTINATION_DATABASE_URL`` wins; otherwise
    the URL is composed from the ``SRC_*``/``DST_*`` connection settings.
    """
    url_key = "SOURCE_DATABASE_URL" if side == "source" else "DESTINATION_DATABASE_URL"
    explicit = config.get(url_key)
    if explicit:
        if explicit.startswith("postgres://"):
            explicit = explicit.replace("postgres://", "postgresql://", 1)
        return explicit

    prefix = "SRC" if side == "source" else "DST"
    host = config.get(f"{prefix}_HOST")
    database = config.get(f"{prefix}_DB")
    if not host or not database:
        raise MigratorError(
            f"{side.capitalize()} database is not configured. Set {url_key} or {prefix}_HOST/{prefix}_DB."
        )
    port = config.get(f"{prefix}_PORT")
    return URL.create(
        "postgresql+psycopg2",
        username=config.get(f"{prefix}_USER"),
        password=config.get(f"{prefix}_PASS"),
        host=host,
        port=int(port) if port else None,
        database=database,
    )


def get_engines(app: Flask) -> tuple[Engine, Engine]:
    """Return (source, destination) engines, creating them once per app."""
    cached = app.extensions.get(ENGINES_EXTENSION_KEY)
    if cached is not None:
        return cached
    options = dict(app.config.get("MIGRATOR_ENGINE_OPTIONS") or {})
    source = create_engine(build_database_url(app.config, "source"), **options)
    destination = create_engine(build_database_url(app.config, "destination"), **options)
    app.extensions[ENGINES_EXTENSION_KEY] = (source, destination)
    return source, destination


def dispose_engines(app: Flask) -> None:
    engines = app.extensions.pop(ENGINES_EXTENSION_KEY, None)
    if not engines:
        return
    for engine in engines:
        engine.dispose()


@contextmanager
def step_connections(source_engine: Engine, destination_engine: Engine) -> Iterator[tuple[Connection, Connection]]:
    """Open one connection per side for a step and always release both."""
    source = source_engine.connect()
    try:
        destination = destination_engine.connect()
        try:
            yield source, destination
        finally:
            if destination.in_transaction():
                destination.rollback()
            destination.close()
    finally:
        if source.in_transaction():
            source.rollback()
        source.close()
        logger.debug("Step connections released")
