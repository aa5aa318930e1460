from __future__ import annotations

import pytest

from medguard.persistence.tenant_schema import (
    is_valid_slug,
    quote_schema,
    schema_name_for,
    search_path_for,
    tenant_metadata,
)


@pytest.mark.parametrize("slug", ["acme", "st-marys-2", "0clinic"])
def test_valid_slugs(slug: str) -> None:
    assert is_valid_slug(slug)


@pytest.mark.parametrize("slug", ["", "-acme", "Acme", "acme_health", "acme.health", "a" * 49, None])
def test_invalid_slugs(slug) -> None:
    assert not is_valid_slug(slug)


def test_schema_name_is_derived_from_slug() -> None:
    assert schema_name_for("st-marys") == "tenant_st_marys"
    with pytest.raises(ValueError):
        schema_name_for("St Marys")


def test_search_path_keeps_public_reachable() -> None:
    assert search_path_for("tenant_acme") == '"tenant_acme", public'
    with pytest.raises(ValueError):
        quote_schema('tenant_acme"; DROP SCHEMA public; --')


def test_tenant_metadata_is_schema_qualified() -> None:
    metadata = tenant_metadata("tenant_acme")
    names = set(metadata.tables)
    assert {
        "tenant_acme.medical_records",
        "tenant_acme.billings",
        "tenant_acme.prescriptions",
        "tenant_acme.lab_orders",
        "tenant_acme.tenant_metadata",
    } <= names
    assert all(table.schema == "tenant_acme" for table in metadata.tables.values())
