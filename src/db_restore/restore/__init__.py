"""Restore components: readiness, roles, detection, orchestration, grants, report.

Usage:
    from db_restore.restore import RestoreJob, run_restore
"""

from db_restore.restore.detect import TocEntry, classify_backup, parse_toc
from db_restore.restore.grants import apply_grants, grant_schema_privileges, reassign_schema_objects
from db_restore.restore.marker import RestoreInProgressError, RestoreMarker
from db_restore.restore.models import (
    BackupArtifacts,
    BackupClassification,
    PipelineResult,
    RestoreJob,
    RestoreResult,
    RestoreState,
    StepResult,
    VerificationReport,
)
from db_restore.restore.orchestrator import RestoreOrchestrator
from db_restore.restore.pipeline import ExtensionUnavailableError, run_restore
from db_restore.restore.readiness import ServerNotReadyError, wait_until_ready
from db_restore.restore.report import collect_report
from db_restore.restore.roles import provision_roles, read_roles_file
from db_restore.restore.supplementary import SupplementaryStepError, run_supplementary_steps

__all__ = [
    # Models
    "RestoreJob",
    "BackupArtifacts",
    "BackupClassification",
    "RestoreState",
    "StepResult",
    "RestoreResult",
    "VerificationReport",
    "PipelineResult",
    # Components
    "wait_until_ready",
    "provision_roles",
    "read_roles_file",
    "parse_toc",
    "TocEntry",
    "classify_backup",
    "RestoreMarker",
    "RestoreOrchestrator",
    "run_supplementary_steps",
    "apply_grants",
    "grant_schema_privileges",
    "reassign_schema_objects",
    "collect_report",
    "run_restore",
    # Errors
    "ServerNotReadyError",
    "RestoreInProgressError",
    "ExtensionUnavailableError",
    "SupplementaryStepError",
]
