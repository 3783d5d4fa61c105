"""Tests for privilege grants, ownership transfer and the verification report."""

from unittest.mock import AsyncMock

import pytest

from db_restore.restore.grants import (
    SCHEMA_GRANTS,
    apply_grants,
    grant_timescaledb_privileges,
    reassign_schema_objects,
)
from db_restore.restore.report import collect_report
from fakes import FakeCluster


# ------------------------------------------------------------------
# Grants
# ------------------------------------------------------------------


class TestApplyGrants:
    """Per (schema, role) grant set."""

    @pytest.mark.asyncio
    async def test_public_schema(self, cluster: FakeCluster) -> None:
        await apply_grants(cluster.client("orders_db"), ["app_writer"], ["public"])

        statements = cluster.statements("orders_db")
        assert statements[0] == 'ALTER SCHEMA "public" OWNER TO "app_writer"'
        assert len(statements) == 1 + len(SCHEMA_GRANTS)
        assert (
            'ALTER DEFAULT PRIVILEGES FOR ROLE "app_writer" IN SCHEMA "public" '
            'GRANT ALL ON TABLES TO "app_writer"'
        ) in statements

    @pytest.mark.asyncio
    async def test_roles_deduplicated(self, cluster: FakeCluster) -> None:
        await apply_grants(cluster.client("orders_db"), ["app_writer", "app_writer"], ["public"])
        assert len(cluster.statements()) == 1 + len(SCHEMA_GRANTS)

    @pytest.mark.asyncio
    async def test_owner_change_is_best_effort(self, cluster: FakeCluster) -> None:
        cluster.failures["ALTER SCHEMA"] = RuntimeError("must be owner of schema public")

        await apply_grants(cluster.client("orders_db"), ["app_writer"], ["public"])

        assert len(cluster.statements()) == 1 + len(SCHEMA_GRANTS)

    @pytest.mark.asyncio
    async def test_core_grant_failure_propagates(self, cluster: FakeCluster) -> None:
        cluster.failures["GRANT ALL PRIVILEGES ON ALL TABLES"] = RuntimeError("denied")

        with pytest.raises(RuntimeError, match="denied"):
            await apply_grants(cluster.client("orders_db"), ["app_writer"], ["public"])

    @pytest.mark.asyncio
    async def test_timescaledb_schemas_only_when_present(self, cluster: FakeCluster) -> None:
        cluster.namespaces.update({"_timescaledb_catalog", "_timescaledb_functions"})

        granted = await grant_timescaledb_privileges(cluster.client("metrics"), "app_writer")

        assert granted == ["_timescaledb_catalog", "_timescaledb_functions"]
        assert 'GRANT EXECUTE ON ALL FUNCTIONS IN SCHEMA "_timescaledb_functions" TO "app_writer"' in (
            cluster.statements()
        )

    @pytest.mark.asyncio
    async def test_timescaledb_failures_swallowed(self, cluster: FakeCluster) -> None:
        cluster.namespaces.update({"_timescaledb_catalog", "_timescaledb_internal"})
        cluster.failures['"_timescaledb_catalog"'] = RuntimeError("denied")

        granted = await grant_timescaledb_privileges(cluster.client("metrics"), "app_writer")

        assert granted == ["_timescaledb_internal"]


class TestReassign:
    @pytest.mark.asyncio
    async def test_runs_generated_statements(self) -> None:
        target = AsyncMock()
        target.fetch_all.return_value = [
            {"statement": 'ALTER TABLE public.orders OWNER TO app_writer'},
            {"statement": "ALTER ROUTINE public.f(integer) OWNER TO app_writer"},
        ]

        count = await reassign_schema_objects(target, "public", "app_writer")

        assert count == 2
        params = target.fetch_all.await_args.args[1]
        assert params == {"schema": "public", "role": "app_writer"}
        assert target.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_fails_fast(self) -> None:
        target = AsyncMock()
        target.fetch_all.return_value = [{"statement": "a"}, {"statement": "b"}]
        target.execute.side_effect = RuntimeError("denied")

        with pytest.raises(RuntimeError):
            await reassign_schema_objects(target, "public", "app_writer")
        assert target.execute.await_count == 1


# ------------------------------------------------------------------
# Report
# ------------------------------------------------------------------


class TestCollectReport:
    """Read-only verification queries."""

    @pytest.mark.asyncio
    async def test_plain(self, cluster: FakeCluster) -> None:
        cluster.tables["orders_db"] = ["orders", "customers"]

        report = await collect_report(cluster.client("orders_db"), "orders_db")

        assert report.tables == ["customers", "orders"]
        assert report.database_size == "8 MB"
        assert report.hypertables is None
        assert report.errors == []
        assert not any("timescaledb_information" in s for s in cluster.statements())

    @pytest.mark.asyncio
    async def test_table_limit(self, cluster: FakeCluster) -> None:
        cluster.tables["orders_db"] = [f"t{i:02d}" for i in range(30)]
        report = await collect_report(cluster.client("orders_db"), "orders_db", table_limit=5)
        assert report.tables == ["t00", "t01", "t02", "t03", "t04"]

    @pytest.mark.asyncio
    async def test_timescaledb(self, cluster: FakeCluster) -> None:
        cluster.hypertables["metrics"] = [("public", "readings", 4)]
        cluster.counts[("metrics", "chunks")] = 4
        cluster.counts[("metrics", "continuous_aggregates")] = 1
        cluster.counts[("metrics", "jobs")] = 2

        report = await collect_report(cluster.client("metrics"), "metrics", timescaledb=True)

        assert [h.table_name for h in report.hypertables] == ["readings"]
        assert report.chunks == 4
        assert report.continuous_aggregates == 1
        assert report.policies == 2

    @pytest.mark.asyncio
    async def test_failing_query_recorded(self, cluster: FakeCluster) -> None:
        cluster.failures["pg_size_pretty"] = RuntimeError("timeout")
        cluster.tables["orders_db"] = ["orders"]

        report = await collect_report(cluster.client("orders_db"), "orders_db")

        assert report.tables == ["orders"]
        assert report.database_size is None
        assert report.errors == ["size: timeout"]
