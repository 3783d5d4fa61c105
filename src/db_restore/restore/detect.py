"""Backup-type detection.

A dump is "hypertable-bearing" when it carries TimescaleDB objects.  Evidence
is checked in priority order and the first match wins:

1. a non-empty companion metadata file (``<db>.timescaledb_info`` or
   ``<db>.hypertables.sql``) written by the backup side;
2. an ``EXTENSION ... timescaledb`` entry in the dump's table of contents;
3. a ``create_hypertable`` marker anywhere in the table of contents.

Usage:
    classification = await classify_backup(artifacts, tools)
    if classification.has_timescaledb:
        ...
"""

import logging
import re
from dataclasses import dataclass

from db_restore.restore.models import BackupArtifacts, BackupClassification
from db_restore.tools import PgTools, ToolError

logger = logging.getLogger(__name__)

# Longest first so "TABLE DATA" wins over "TABLE"
TOC_ENTRY_TYPES: tuple[str, ...] = tuple(
    sorted(
        (
            "ACL",
            "AGGREGATE",
            "BLOB",
            "BLOBS",
            "CAST",
            "CHECK CONSTRAINT",
            "COLLATION",
            "COMMENT",
            "CONSTRAINT",
            "CONVERSION",
            "DATABASE",
            "DATABASE PROPERTIES",
            "DEFAULT",
            "DEFAULT ACL",
            "DOMAIN",
            "ENCODING",
            "EVENT TRIGGER",
            "EXTENSION",
            "FK CONSTRAINT",
            "FOREIGN DATA WRAPPER",
            "FOREIGN TABLE",
            "FUNCTION",
            "INDEX",
            "INDEX ATTACH",
            "LARGE OBJECT",
            "MATERIALIZED VIEW",
            "MATERIALIZED VIEW DATA",
            "OPERATOR",
            "OPERATOR CLASS",
            "OPERATOR FAMILY",
            "POLICY",
            "PROCEDURE",
            "PUBLICATION",
            "PUBLICATION TABLE",
            "ROW SECURITY",
            "RULE",
            "SCHEMA",
            "SEARCHPATH",
            "SECURITY LABEL",
            "SEQUENCE",
            "SEQUENCE OWNED BY",
            "SEQUENCE SET",
            "SERVER",
            "STATISTICS",
            "STDSTRINGS",
            "SUBSCRIPTION",
            "TABLE",
            "TABLE ATTACH",
            "TABLE DATA",
            "TEXT SEARCH CONFIGURATION",
            "TEXT SEARCH DICTIONARY",
            "TRIGGER",
            "TYPE",
            "USER MAPPING",
            "VIEW",
        ),
        key=len,
        reverse=True,
    )
)

_TOC_LINE = re.compile(r"^\s*(\d+);\s+(\d+)\s+(\d+)\s+(.*)$")
_EXTENSION_MARKER = re.compile(r"EXTENSION.*timescaledb")
_HYPERTABLE_MARKER = re.compile(r"create_hypertable", re.IGNORECASE)

# Schemas whose tables are TimescaleDB internals, not user tables
INTERNAL_SCHEMA_PREFIXES = ("_timescaledb", "timescaledb_")


@dataclass(frozen=True)
class TocEntry:
    """One line of ``pg_restore --list`` output."""

    dump_id: int
    catalog_oid: int
    oid: int
    entry_type: str
    schema: str | None
    name: str
    owner: str | None

    @property
    def is_internal(self) -> bool:
        return bool(self.schema) and self.schema.startswith(INTERNAL_SCHEMA_PREFIXES)


def parse_toc_line(line: str) -> TocEntry | None:
    """Parse a numeric-prefixed TOC line; ``None`` for comments and noise."""
    match = _TOC_LINE.match(line)
    if not match:
        return None
    dump_id, catalog_oid, oid, rest = match.groups()

    entry_type = next(
        (t for t in TOC_ENTRY_TYPES if rest == t or rest.startswith(t + " ")),
        None,
    )
    if entry_type is None:
        entry_type, _, rest = rest.partition(" ")
    else:
        rest = rest[len(entry_type):]

    tokens = rest.split()
    schema = tokens[0] if tokens else None
    if schema == "-":
        schema = None
    if len(tokens) >= 3:
        name = " ".join(tokens[1:-1])
        owner: str | None = tokens[-1]
    else:
        name = " ".join(tokens[1:])
        owner = None

    return TocEntry(
        dump_id=int(dump_id),
        catalog_oid=int(catalog_oid),
        oid=int(oid),
        entry_type=entry_type,
        schema=schema,
        name=name,
        owner=owner,
    )


def parse_toc(lines: list[str]) -> list[TocEntry]:
    """Parse ``pg_restore --list`` output, skipping ``;`` comment lines."""
    entries = []
    for line in lines:
        if line.lstrip().startswith(";"):
            continue
        entry = parse_toc_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def count_toc_tables(entries: list[TocEntry]) -> int:
    """Number of user ``TABLE`` entries (TimescaleDB internals excluded)."""
    return sum(1 for e in entries if e.entry_type == "TABLE" and not e.is_internal)


def _has_metadata(artifacts: BackupArtifacts) -> bool:
    for path in (artifacts.timescaledb_info, artifacts.hypertables_sql):
        if path.is_file() and path.stat().st_size > 0:
            logger.info("TimescaleDB metadata found: %s", path.name)
            return True
    return False


async def classify_backup(artifacts: BackupArtifacts, tools: PgTools) -> BackupClassification:
    """Decide whether ``artifacts.dump`` is hypertable-bearing.

    The table of contents is listed even when metadata decides the outcome,
    so the returned classification carries the TOC table count used later
    to verify the restore.  A TOC listing failure is logged and treated as
    "no evidence".
    """
    from_metadata = _has_metadata(artifacts)

    toc_lines: list[str] = []
    toc_table_count: int | None = None
    if artifacts.dump.is_file():
        try:
            listing = await tools.list_contents(artifacts.dump)
        except ToolError as e:
            logger.warning("Could not list backup contents: %s", e)
        else:
            if listing.ok:
                toc_lines = [
                    line for line in listing.output if not line.lstrip().startswith(";")
                ]
                toc_table_count = count_toc_tables(parse_toc(toc_lines))
            else:
                logger.warning(
                    "pg_restore --list exited with %d for %s",
                    listing.returncode,
                    artifacts.dump,
                )

    if from_metadata:
        source = "metadata"
    elif any(_EXTENSION_MARKER.search(line) for line in toc_lines):
        source = "toc-extension"
    elif any(_HYPERTABLE_MARKER.search(line) for line in toc_lines):
        source = "toc-hypertable"
    else:
        source = "none"

    classification = BackupClassification(
        has_timescaledb=source != "none",
        source=source,
        toc_table_count=toc_table_count,
    )
    logger.info(
        "Backup %s classified as %s (%s)",
        artifacts.dump.name,
        classification.kind,
        source,
    )
    return classification
