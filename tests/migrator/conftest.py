from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping

import pytest
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    insert,
)

from legacy_bridge.migrator.connections import step_connections
from legacy_bridge.migrator.mapping import load_enum_tables
from legacy_bridge.migrator.pipeline.engine import EntityMigration, MigratorSettings, StepContext

ENUMS_PATH = Path(__file__).resolve().parents[2] / "config" / "mappings" / "legacy_enums.yaml"


def _timestamps():
    return [Column("createdAt", DateTime), Column("updatedAt", DateTime)]


def _destination_timestamps():
    return [Column("created_at", DateTime), Column("updated_at", DateTime)]


def build_source_metadata() -> MetaData:
    """Legacy schema, camelCase as the old application created it."""
    metadata = MetaData()
    Table(
        "Tenants",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255)),
        Column("cnpj", String(32)),
        Column("maxUsers", Integer),
        Column("status", String(32)),
        *_timestamps(),
    )
    Table(
        "Users",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255)),
        Column("email", String(255)),
        Column("passwordHash", String(255)),
        Column("profile", String(32)),
        Column("tenantId", Integer),
        *_timestamps(),
    )
    Table(
        "UsersQueues",
        metadata,
        Column("userId", Integer, primary_key=True),
        Column("queueId", Integer, primary_key=True),
    )
    Table(
        "Queues",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("queue", String(255)),
        Column("isActive", Boolean),
        Column("tenantId", Integer),
        *_timestamps(),
    )
    Table(
        "ChatFlow",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255)),
        Column("flow", Text),
        Column("isDeleted", Boolean),
        Column("tenantId", Integer),
        *_timestamps(),
    )
    Table(
        "Whatsapps",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255)),
        Column("type", String(32)),
        Column("number", String(64)),
        Column("qrcode", Text),
        Column("tokenAPI", String(255)),
        Column("chatFlowId", Integer),
        Column("queueId", Integer),
        Column("is_open_ia", Boolean),
        Column("isDeleted", Boolean),
        Column("tenantId", Integer),
        *_timestamps(),
    )
    Table(
        "Tickets",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("status", String(32)),
        Column("lastMessage", Text),
        Column("whatsappId", Integer),
        Column("contactId", Integer),
        Column("userId", Integer),
        Column("queueId", Integer),
        Column("chatFlowId", Integer),
        Column("stepChatFlow", String(64)),
        Column("botRetries", Integer),
        Column("lastMessageAt", BigInteger),
        Column("lastMessageReceived", BigInteger),
        Column("startedAttendanceAt", BigInteger),
        Column("closedAt", BigInteger),
        Column("isGroup", Boolean),
        Column("tenantId", Integer),
        *_timestamps(),
    )
    Table(
        "Messages",
        metadata,
        Column("id", String(64), primary_key=True),
        Column("ticketId", Integer),
        Column("body", Text),
        Column("edited", Text),
        Column("mediaType", String(64)),
        Column("messageId", String(128)),
        Column("dataJson", Text),
        Column("status", String(32)),
        Column("isDeleted", Boolean),
        Column("fromMe", Boolean),
        Column("userId", Integer),
        Column("contactId", Integer),
        Column("scheduleDate", DateTime),
        Column("quotedMsgId", String(64)),
        *_timestamps(),
    )
    return metadata


def build_destination_metadata() -> MetaData:
    metadata = MetaData()
    Table(
        "companies",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255), nullable=False),
        Column("cnpj", String(14), unique=True),
        Column("users_allowed", Integer),
        Column("status", Boolean),
        Column("plan", JSON),
        Column("address", String(255)),
        Column("price_per_user", Float),
        Column("is_master", Boolean),
        Column("logo", String(255)),
        Column("theme", JSON),
        Column("background", String(255)),
        Column("subdomain", String(255)),
        Column("omni_name", String(255)),
        Column("favicon", String(255)),
        *_destination_timestamps(),
    )
    Table(
        "departments",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255), nullable=False),
        Column("status", Boolean),
        Column("company_id", Integer, nullable=False),
        Column("transfer_type", String(32)),
        *_destination_timestamps(),
    )
    Table(
        "users",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255)),
        Column("email", String(255), unique=True),
        Column("password_hash", String(255)),
        Column("profile", String(32)),
        Column("is_master", Boolean),
        Column("company_id", Integer),
        Column("departments", JSON),
        Column("permission_id", Integer),
        *_destination_timestamps(),
    )
    Table(
        "permissions",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255), nullable=False),
        Column("permissions", JSON),
        Column("company_id", Integer, nullable=False),
        *_destination_timestamps(),
    )
    Table(
        "flows",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255), nullable=False),
        Column("flow", JSON),
        Column("company_id", Integer, nullable=False),
        *_destination_timestamps(),
    )
    Table(
        "channel_instances",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255), nullable=False),
        Column("type", String(64), nullable=False),
        Column("company_id", Integer, nullable=False),
        Column("status", String(32)),
        Column("j_id", String(128)),
        Column("session", Text),
        Column("qr_code", Text),
        Column("config", JSON),
        Column("flow_id", Integer),
        Column("department_id", Integer),
        Column("enable_chatbot_for_groups", Boolean),
        Column("open_ticket_for_groups", Boolean),
        *_destination_timestamps(),
        Column("deleted_at", DateTime),
    )
    Table(
        "contacts",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(255)),
        Column("company_id", Integer),
    )
    Table(
        "tickets",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("status", String(32)),
        Column("last_message", Text),
        Column("channel_id", Integer, nullable=False),
        Column("contact_id", Integer, nullable=False),
        Column("company_id", Integer, nullable=False),
        Column("user_id", Integer),
        Column("department_id", Integer),
        Column("flow_id", Integer),
        Column("flow_step_id", Integer),
        Column("flow_attempts", Integer),
        Column("last_message_at", DateTime),
        Column("closed_at", DateTime),
        Column("last_interaction_at", DateTime),
        Column("is_group", Boolean),
        *_destination_timestamps(),
    )
    Table(
        "messages",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("ticket_id", Integer, nullable=False),
        Column("body", Text),
        Column("edited_body", Text),
        Column("media_type", String(32)),
        Column("media_name", String(255)),
        Column("message_id", String(128)),
        Column("data_json", JSON),
        Column("ack", String(32)),
        Column("is_deleted", Boolean),
        Column("from_me", Boolean),
        Column("user_id", Integer),
        Column("contact_id", Integer),
        Column("schedule_date", DateTime),
        Column("quoted_msg_id", Integer),
        *_destination_timestamps(),
        UniqueConstraint("ticket_id", "message_id", name="uq_messages_ticket_message"),
    )
    return metadata


@pytest.fixture
def source_metadata():
    return build_source_metadata()


@pytest.fixture
def destination_metadata():
    return build_destination_metadata()


@pytest.fixture
def source_engine(tmp_path, source_metadata):
    engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
    source_metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def destination_engine(tmp_path, destination_metadata):
    engine = create_engine(f"sqlite:///{tmp_path / 'destination.db'}")
    destination_metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def enums():
    return load_enum_tables(ENUMS_PATH)


@pytest.fixture
def seed():
    """Insert rows into a table of the given engine: ``seed(engine, "Tenants", [...])``."""

    def _seed(engine, table_name: str, rows: Iterable[Mapping[str, Any]]) -> None:
        rows = [dict(row) for row in rows]
        if not rows:
            return
        # executemany binds every row against the first row's keys
        columns = list(dict.fromkeys(key for row in rows for key in row))
        rows = [{column: row.get(column) for column in columns} for row in rows]
        table = Table(table_name, MetaData(), autoload_with=engine)
        with engine.begin() as connection:
            connection.execute(insert(table), rows)

    return _seed


@pytest.fixture
def fetch():
    """Read a destination table ordered by id as a list of dicts."""

    def _fetch(engine, table_name: str) -> list[dict[str, Any]]:
        table = Table(table_name, MetaData(), autoload_with=engine)
        with engine.connect() as connection:
            return [dict(row) for row in connection.execute(table.select().order_by(table.c.id)).mappings()]

    return _fetch


@pytest.fixture
def migrate(source_engine, destination_engine, enums):
    """Run one entity step end to end against the SQLite pair."""

    def _migrate(step, *, tenant_id=None, settings: MigratorSettings | None = None, on_transition=None):
        settings = settings or MigratorSettings(fetch_size=1000, insert_chunk_size=200, relaxed_durability=False)
        context = StepContext(tenant_id=tenant_id, settings=settings, enums=enums)
        with step_connections(source_engine, destination_engine) as (source, destination):
            return EntityMigration(
                step,
                source=source,
                destination=destination,
                context=context,
                on_transition=on_transition,
            ).run()

    return _migrate


@pytest.fixture
def step_context(enums):
    """Build a StepContext for calling transforms directly."""

    def _context(*, lookups=None, tenant_id=None, **flags):
        settings = MigratorSettings(flags=flags)
        return StepContext(tenant_id=tenant_id, settings=settings, enums=enums, lookups=dict(lookups or {}))

    return _context
