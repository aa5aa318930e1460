from __future__ import annotations

from datetime import datetime, timezone
import re

from sqlalchemy import Connection, MetaData, insert, text
from sqlalchemy.ext.asyncio import AsyncConnection

from medguard.core.config import get_settings
from medguard.domain.models import TenantBase


_SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_SCHEMA_PATTERN = re.compile(r"^[a-z0-9_]+$")
# Postgres identifiers stop at 63 bytes; leave room for the schema prefix.
MAX_SLUG_LENGTH = 48
TENANT_SCHEMA_VERSION = "1"


def is_valid_slug(slug: str | None) -> bool:
    return bool(slug) and len(slug) <= MAX_SLUG_LENGTH and _SLUG_PATTERN.match(slug) is not None


def schema_name_for(slug: str) -> str:
    # Slugs never contain '_', so replacing '-' keeps the mapping one-to-one.
    if not is_valid_slug(slug):
        raise ValueError(f"invalid tenant slug: {slug!r}")
    prefix = get_settings().tenant_schema_prefix
    return f"{prefix}{slug.replace('-', '_')}"


def quote_schema(schema_name: str) -> str:
    # Only derived schema names are ever interpolated into DDL.
    if not _SCHEMA_PATTERN.match(schema_name):
        raise ValueError(f"invalid schema name: {schema_name!r}")
    return f'"{schema_name}"'


def search_path_for(schema_name: str) -> str:
    # Shared tables stay reachable after the tenant schema.
    return f"{quote_schema(schema_name)}, public"


def tenant_metadata(schema_name: str) -> MetaData:
    # Copy the tenant table definitions into a metadata bound to one schema.
    metadata = MetaData()
    for table in TenantBase.metadata.sorted_tables:
        table.to_metadata(metadata, schema=schema_name)
    return metadata


def _create_tables(sync_conn: Connection, schema_name: str) -> None:
    tenant_metadata(schema_name).create_all(sync_conn, checkfirst=False)


async def create_tenant_schema(conn: AsyncConnection, schema_name: str) -> None:
    # Strict CREATE SCHEMA so a leftover schema fails provisioning instead of being adopted.
    await conn.execute(text(f"CREATE SCHEMA {quote_schema(schema_name)}"))
    await conn.run_sync(_create_tables, schema_name)


async def seed_tenant_schema(conn: AsyncConnection, schema_name: str) -> None:
    metadata = tenant_metadata(schema_name)
    table = metadata.tables[f"{schema_name}.tenant_metadata"]
    await conn.execute(
        insert(table),
        [
            {"key": "schema_version", "value": TENANT_SCHEMA_VERSION},
            {"key": "provisioned_at", "value": datetime.now(timezone.utc).isoformat()},
        ],
    )


async def drop_tenant_schema(conn: AsyncConnection, schema_name: str) -> None:
    await conn.execute(text(f"DROP SCHEMA IF EXISTS {quote_schema(schema_name)} CASCADE"))
