"""Tests for identifier quoting, URL resolution and adapter construction."""

import pytest

from db_restore.adapters.postgres import AsyncPostgresAdapter, normalize_async_url
from db_restore.config.models import ConfigurationError, RestoreSettings
from db_restore.factory import connection_factory, get_adapter, resolve_url
from db_restore.quoting import qualified_name, quote_ident, quote_literal


# ------------------------------------------------------------------
# Quoting
# ------------------------------------------------------------------


class TestQuoteIdent:
    """Identifiers are always double-quoted."""

    def test_plain_name(self) -> None:
        assert quote_ident("app_writer") == '"app_writer"'

    def test_mixed_case_preserved(self) -> None:
        assert quote_ident("AppWriter") == '"AppWriter"'

    def test_embedded_quote_doubled(self) -> None:
        assert quote_ident('we"ird') == '"we""ird"'

    def test_percent_not_doubled(self) -> None:
        """The asyncpg dialect does not use format paramstyle."""
        assert quote_ident("100%") == '"100%"'

    def test_injection_attempt_stays_one_identifier(self) -> None:
        quoted = quote_ident('x"; DROP TABLE users; --')
        assert quoted == '"x""; DROP TABLE users; --"'

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            quote_ident("")

    def test_nul_rejected(self) -> None:
        with pytest.raises(ValueError):
            quote_ident("a\x00b")

    def test_qualified_name(self) -> None:
        assert qualified_name("public", "orders") == '"public"."orders"'


class TestQuoteLiteral:
    def test_single_quotes_doubled(self) -> None:
        assert quote_literal("it's") == "'it''s'"

    def test_nul_rejected(self) -> None:
        with pytest.raises(ValueError):
            quote_literal("a\x00")


# ------------------------------------------------------------------
# URLs
# ------------------------------------------------------------------


class TestResolveUrl:
    """Per-database URLs derived from the maintenance URL."""

    def test_database_substituted(self) -> None:
        url = resolve_url("postgresql://postgres:pw@db:5432/postgres", "orders_db")
        assert url == "postgresql://postgres:pw@db:5432/orders_db"

    def test_database_kept_when_none(self) -> None:
        url = resolve_url("postgresql://postgres@db/postgres")
        assert url.endswith("/postgres")

    def test_driver_suffix_dropped(self) -> None:
        url = resolve_url("postgresql+asyncpg://postgres@db/postgres", "orders_db")
        assert url.startswith("postgresql://")

    def test_heroku_alias(self) -> None:
        url = resolve_url("postgres://postgres@db/postgres", "orders_db")
        assert url == "postgresql://postgres@db/orders_db"

    def test_socket_host_query_kept(self) -> None:
        url = resolve_url("postgresql://postgres@/postgres?host=/var/run/postgresql", "orders_db")
        assert "/orders_db?host=" in url

    def test_invalid_url_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            resolve_url("not a url", "orders_db")


class TestAdapters:
    def test_normalize_async_url(self) -> None:
        assert normalize_async_url("postgresql://u@h/d") == "postgresql+asyncpg://u@h/d"
        assert normalize_async_url("postgres://u@h/d") == "postgresql+asyncpg://u@h/d"
        assert normalize_async_url("postgresql+asyncpg://u@h/d") == "postgresql+asyncpg://u@h/d"

    def test_get_adapter_binds_database(self) -> None:
        settings = RestoreSettings(admin_url="postgresql://postgres@db:5432/postgres")
        adapter = get_adapter(settings, "orders_db")
        assert isinstance(adapter, AsyncPostgresAdapter)
        assert adapter._engine.url.database == "orders_db"
        assert adapter._engine.url.drivername == "postgresql+asyncpg"

    def test_connection_factory(self) -> None:
        settings = RestoreSettings(admin_url="postgresql://postgres@db:5432/postgres")
        connect = connection_factory(settings)
        assert connect("reports")._engine.url.database == "reports"
