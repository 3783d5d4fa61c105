"""Post-restore verification report.

Read-only.  Every query is attempted independently; a failing query is
logged and recorded in ``VerificationReport.errors``.
"""

import logging
from collections.abc import Awaitable
from typing import Any

from db_restore.adapters.base import DatabaseClient
from db_restore.restore.models import HypertableInfo, VerificationReport

logger = logging.getLogger(__name__)

TABLES_SQL = (
    "SELECT tablename FROM pg_catalog.pg_tables "
    "WHERE schemaname = 'public' ORDER BY tablename LIMIT :limit"
)
SIZE_SQL = "SELECT pg_size_pretty(pg_database_size(current_database()))"
HYPERTABLES_SQL = (
    "SELECT hypertable_schema, hypertable_name, num_chunks "
    "FROM timescaledb_information.hypertables "
    "ORDER BY hypertable_schema, hypertable_name"
)
CHUNKS_SQL = "SELECT count(*) FROM timescaledb_information.chunks"
CAGGS_SQL = "SELECT count(*) FROM timescaledb_information.continuous_aggregates"
POLICIES_SQL = (
    "SELECT count(*) FROM timescaledb_information.jobs WHERE proc_name LIKE 'policy_%'"
)


async def _attempt(report: VerificationReport, label: str, query: Awaitable[Any]) -> Any:
    try:
        return await query
    except Exception as e:
        logger.warning("Verification query '%s' failed: %s", label, e)
        report.errors.append(f"{label}: {e}")
        return None


async def collect_report(
    target: DatabaseClient,
    database: str,
    *,
    timescaledb: bool = False,
    table_limit: int = 20,
) -> VerificationReport:
    """Summarise the restored database."""
    report = VerificationReport(database=database)

    rows = await _attempt(report, "tables", target.fetch_all(TABLES_SQL, {"limit": table_limit}))
    if rows is not None:
        report.tables = [row["tablename"] for row in rows]

    report.database_size = await _attempt(report, "size", target.fetch_value(SIZE_SQL))

    if timescaledb:
        rows = await _attempt(report, "hypertables", target.fetch_all(HYPERTABLES_SQL))
        if rows is not None:
            report.hypertables = [
                HypertableInfo(
                    schema_name=row["hypertable_schema"],
                    table_name=row["hypertable_name"],
                    num_chunks=row["num_chunks"] or 0,
                )
                for row in rows
            ]
        report.chunks = await _attempt(report, "chunks", target.fetch_value(CHUNKS_SQL))
        report.continuous_aggregates = await _attempt(
            report, "continuous_aggregates", target.fetch_value(CAGGS_SQL)
        )
        report.policies = await _attempt(report, "policies", target.fetch_value(POLICIES_SQL))

    logger.info("Verification report for '%s':\n%s", database, report.format_report())
    return report
