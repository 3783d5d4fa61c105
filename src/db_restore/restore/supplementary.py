"""TimescaleDB supplementary steps.

After ``pg_restore`` of a hypertable-bearing dump, the companion SQL files
written by the backup side are replayed in a fixed order:

    hypertables -> continuous_aggregates -> compression -> policies

Continuous aggregates reference hypertables, compression settings apply to
hypertables and policies reference both, so the order is not negotiable.
Each file is applied with ``psql -f`` (statements after a failing one still
run) and judged by re-querying the TimescaleDB information views rather
than by ``psql``'s exit code.
"""

import logging
from dataclasses import dataclass
from typing import Literal

from db_restore.adapters.base import DatabaseClient
from db_restore.restore.models import BackupArtifacts, StepResult
from db_restore.tools import PgTools, ToolError

logger = logging.getLogger(__name__)

FailurePolicy = Literal["continue", "abort"]


class SupplementaryStepError(Exception):
    """Raised under the ``abort`` policy when a step fails."""

    def __init__(self, step: StepResult, completed: list[StepResult]) -> None:
        super().__init__(f"Supplementary step '{step.name}' failed: {step.detail}")
        self.step = step
        self.completed = completed  # every step run so far, failed one included


@dataclass(frozen=True)
class SupplementaryStep:
    name: str
    file_attr: str              # BackupArtifacts property holding the SQL file
    trigger_text: str | None    # file must contain this to be applied
    verify_sql: str


SUPPLEMENTARY_STEPS: tuple[SupplementaryStep, ...] = (
    SupplementaryStep(
        name="hypertables",
        file_attr="hypertables_sql",
        trigger_text=None,
        verify_sql="SELECT count(*) FROM timescaledb_information.hypertables",
    ),
    SupplementaryStep(
        name="continuous_aggregates",
        file_attr="continuous_aggs_sql",
        trigger_text="CREATE MATERIALIZED VIEW",
        verify_sql="SELECT count(*) FROM timescaledb_information.continuous_aggregates",
    ),
    SupplementaryStep(
        name="compression",
        file_attr="compression_sql",
        trigger_text="ALTER TABLE",
        verify_sql=(
            "SELECT count(*) FROM timescaledb_information.hypertables "
            "WHERE compression_enabled"
        ),
    ),
    SupplementaryStep(
        name="policies",
        file_attr="policies_sql",
        trigger_text="SELECT add_",
        verify_sql=(
            "SELECT count(*) FROM timescaledb_information.jobs "
            "WHERE proc_name LIKE 'policy_%'"
        ),
    ),
)

# Triggers left behind by the dump that make create_hypertable() fail
CONFLICTING_TRIGGERS = ("ts_insert_blocker", "ts_cagg_invalidation_trigger")


async def drop_conflicting_triggers(target: DatabaseClient) -> int:
    """Drop leftover TimescaleDB triggers; failures are logged and skipped."""
    rows = await target.fetch_all(
        "SELECT format('DROP TRIGGER IF EXISTS %I ON %I.%I', "
        "trigger_name, trigger_schema, event_object_table) AS statement "
        "FROM information_schema.triggers "
        "WHERE trigger_name IN ('ts_insert_blocker', 'ts_cagg_invalidation_trigger')"
    )
    dropped = 0
    for row in rows:
        try:
            await target.execute(row["statement"])
            dropped += 1
        except Exception as e:
            logger.warning("Could not drop trigger (%s): %s", row["statement"], e)
    if dropped:
        logger.info("Dropped %d conflicting trigger(s)", dropped)
    return dropped


def _should_apply(step: SupplementaryStep, artifacts: BackupArtifacts) -> tuple[bool, str]:
    path = getattr(artifacts, step.file_attr)
    if not path.is_file() or path.stat().st_size == 0:
        return False, f"{path.name} not present"
    if step.trigger_text and step.trigger_text not in path.read_text(encoding="utf-8"):
        return False, f"{path.name} has no '{step.trigger_text}' statements"
    return True, ""


async def _count(target: DatabaseClient, sql: str) -> int:
    value = await target.fetch_value(sql)
    return int(value or 0)


async def apply_step(
    step: SupplementaryStep,
    artifacts: BackupArtifacts,
    target: DatabaseClient,
    tools: PgTools,
    dsn: str,
) -> StepResult:
    """Apply one step and verify it against the catalog."""
    apply, reason = _should_apply(step, artifacts)
    if not apply:
        logger.debug("Skipping %s: %s", step.name, reason)
        return StepResult(name=step.name, status="skipped", detail=reason)

    if step.name == "hypertables":
        await drop_conflicting_triggers(target)

    path = getattr(artifacts, step.file_attr)
    logger.info("Applying %s from %s", step.name, path.name)
    try:
        result = await tools.run_sql_file(dsn, path)
    except ToolError as e:
        return StepResult(name=step.name, status="failed", detail=str(e))
    if not result.ok:
        logger.debug("psql exited with %d for %s", result.returncode, path.name)

    try:
        count = await _count(target, step.verify_sql)
    except Exception as e:
        return StepResult(name=step.name, status="failed", detail=f"verification failed: {e}")

    if count > 0:
        logger.info("%s: %d object(s) present", step.name, count)
        return StepResult(name=step.name, status="applied", count=count)

    problems = [line for line in result.output if "ERROR" in line][:5]
    detail = "; ".join(problems) if problems else "no objects found after apply"
    logger.warning("%s: %s", step.name, detail)
    return StepResult(name=step.name, status="failed", count=0, detail=detail)


async def run_supplementary_steps(
    artifacts: BackupArtifacts,
    target: DatabaseClient,
    tools: PgTools,
    dsn: str,
    policy: FailurePolicy = "continue",
) -> list[StepResult]:
    """Run every step in order.

    Under ``continue`` a failed step is recorded and the next one runs.
    Under ``abort`` the first failure raises ``SupplementaryStepError``.
    """
    results: list[StepResult] = []
    for step in SUPPLEMENTARY_STEPS:
        outcome = await apply_step(step, artifacts, target, tools, dsn)
        results.append(outcome)
        if outcome.status == "failed" and policy == "abort":
            raise SupplementaryStepError(outcome, results)
    return results
