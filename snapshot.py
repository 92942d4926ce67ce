"""Database explorer snapshot.

Turns schema rows and sanitized sample rows into two artifacts:

* ``db-explorer-context.md`` - full markdown overview used as LLM context
  when routing cannot narrow the schema down;
* ``table-metadata.json`` - per-table description, columns and sample rows,
  consumed by the table router and the partial context renderer.

Builds are single-flight per target database.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy.engine import Engine

import database
from errors import CompletionError, DescriptionGenerationError, MetadataIOError, SnapshotInProgressError
from infra import racquire, rdel
from llm import LLMClient, strip_code_fences
from metrics import SNAPSHOT_BUILD_SECONDS, SNAPSHOT_BUILDS_TOTAL
from sanitizer import sanitize_samples
from schema_context import render_table_section

logger = logging.getLogger("dbexplorer.snapshot")

EXPLORER_ARTIFACT_DIR = os.getenv("EXPLORER_ARTIFACT_DIR", "./artifacts")
SNAPSHOT_FILENAME = "db-explorer-context.md"
METADATA_FILENAME = "table-metadata.json"
SNAPSHOT_LOCK_TTL_SECONDS = int(os.getenv("SNAPSHOT_LOCK_TTL_SECONDS", "600"))
MAX_SAMPLE_ROWS = 10

DESCRIBE_TEMPERATURE = 0.2
DESCRIBE_MAX_TOKENS = int(os.getenv("DESCRIBE_MAX_TOKENS", "400"))

# ------------------------------------------------------------
# Models
# ------------------------------------------------------------
class SchemaColumn(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_name: str
    column_name: str
    data_type: str
    is_primary: bool = False
    is_foreign: bool = False
    foreign_table: Optional[str] = None
    foreign_column: Optional[str] = None


class TableMetadata(BaseModel):
    description: str = ""
    columns: List[SchemaColumn] = Field(default_factory=list)
    sample_rows: List[Dict[str, Any]] = Field(default_factory=list)


MetadataStore = Dict[str, TableMetadata]
_metadata_adapter = TypeAdapter(Dict[str, TableMetadata])
_descriptions_adapter = TypeAdapter(Dict[str, str])


# ------------------------------------------------------------
# Artifacts
# ------------------------------------------------------------
class ArtifactStore:
    """Filesystem home of the snapshot document and the metadata store."""

    def __init__(self, directory: str = EXPLORER_ARTIFACT_DIR):
        self.directory = Path(directory)

    @property
    def snapshot_path(self) -> Path:
        return self.directory / SNAPSHOT_FILENAME

    @property
    def metadata_path(self) -> Path:
        return self.directory / METADATA_FILENAME

    def _write_atomic(self, path: Path, content: str) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.directory), prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise MetadataIOError(f"Could not write {path.name}: {e}") from e

    def write_snapshot(self, markdown: str) -> None:
        self._write_atomic(self.snapshot_path, markdown)

    def read_snapshot(self) -> str:
        try:
            return self.snapshot_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise MetadataIOError(f"Could not read {SNAPSHOT_FILENAME}: {e}") from e

    def write_metadata(self, store: MetadataStore) -> None:
        payload = _metadata_adapter.dump_python(store, mode="json")
        self._write_atomic(self.metadata_path, json.dumps(payload, indent=2, ensure_ascii=False))

    def load_metadata(self) -> Optional[MetadataStore]:
        """The metadata store, or None when no snapshot has been built."""
        try:
            raw = self.metadata_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise MetadataIOError(f"Could not read {METADATA_FILENAME}: {e}") from e
        try:
            return _metadata_adapter.validate_json(raw)
        except ValidationError as e:
            raise MetadataIOError(f"{METADATA_FILENAME} is corrupt: {e.error_count()} validation error(s)") from e

    def clear(self) -> None:
        self.write_snapshot("")
        try:
            self.metadata_path.unlink(missing_ok=True)
        except OSError as e:
            raise MetadataIOError(f"Could not remove {METADATA_FILENAME}: {e}") from e


# ------------------------------------------------------------
# Pure builders
# ------------------------------------------------------------
def group_columns(schema_rows: Iterable[SchemaColumn]) -> Dict[str, List[SchemaColumn]]:
    grouped: Dict[str, List[SchemaColumn]] = {}
    for row in schema_rows:
        grouped.setdefault(row.table_name, []).append(row)
    return grouped


def build_relationships(schema_rows: Iterable[SchemaColumn]) -> List[str]:
    rels = {
        f"{r.table_name}.{r.column_name} -> {r.foreign_table}.{r.foreign_column}"
        for r in schema_rows
        if r.is_foreign
    }
    return sorted(rels)


def render_snapshot_markdown(
    generated_at: dt.datetime,
    tables: Sequence[str],
    schema_rows: Sequence[SchemaColumn],
    table_samples: Mapping[str, List[Dict[str, Any]]],
    schema_label: str = "public",
) -> str:
    grouped = group_columns(schema_rows)
    relationships = build_relationships(schema_rows)

    lines = [
        "# Database Explorer Context",
        "",
        f"Generated: {generated_at.isoformat()}",
        "",
        "## Tables",
        "",
    ]
    if not tables:
        lines.append(f"No tables found in `{schema_label}` schema.")
    else:
        lines.extend(f"- {t}" for t in tables)

    lines.extend(["", "## Relationships", ""])
    if not relationships:
        lines.append("No foreign key relationships found.")
    else:
        lines.extend(f"- {r}" for r in relationships)

    lines.extend(["", "## Table Details", ""])
    for table_name in tables:
        lines.extend(render_table_section(table_name, grouped.get(table_name, []), table_samples.get(table_name, [])))

    lines.extend(["", "_This file is auto-generated and cleared when DB Explorer is exited._", ""])
    return "\n".join(lines)


def build_metadata_store(
    tables: Sequence[str],
    schema_rows: Sequence[SchemaColumn],
    table_samples: Mapping[str, List[Dict[str, Any]]],
    descriptions: Mapping[str, str],
) -> MetadataStore:
    grouped = group_columns(schema_rows)
    return {
        t: TableMetadata(
            description=descriptions.get(t, "") or "",
            columns=grouped.get(t, []),
            sample_rows=table_samples.get(t, []),
        )
        for t in tables
    }


# ------------------------------------------------------------
# Table descriptions (LLM, best-effort)
# ------------------------------------------------------------
describe_prompt = ChatPromptTemplate.from_messages(
    [
        ("human",
         "For each database table below, write one concise sentence describing what it stores. "
         "Respond with ONLY a JSON object mapping table names to descriptions, "
         'e.g. {{"table1": "Stores ...", "table2": "Tracks ..."}}.\n\n'
         "Tables:\n{table_list}"),
    ]
)


def generate_table_descriptions(
    llm: LLMClient,
    tables: Sequence[str],
    schema_rows: Sequence[SchemaColumn],
) -> Dict[str, str]:
    if not tables:
        return {}
    grouped = group_columns(schema_rows)
    table_list = "\n".join(
        f"- {t}: columns are {', '.join(c.column_name for c in grouped.get(t, []))}" for t in tables
    )
    try:
        reply = llm.complete(
            describe_prompt.format_messages(table_list=table_list),
            temperature=DESCRIBE_TEMPERATURE,
            max_tokens=DESCRIBE_MAX_TOKENS,
            purpose="describe",
        )
    except CompletionError as e:
        raise DescriptionGenerationError(str(e)) from e

    try:
        parsed = _descriptions_adapter.validate_json(strip_code_fences(reply.content))
    except ValidationError as e:
        raise DescriptionGenerationError(f"invalid descriptions JSON: {e.error_count()} error(s)") from e

    known = set(tables)
    return {t: d.strip() for t, d in parsed.items() if t in known}


# ------------------------------------------------------------
# Builder
# ------------------------------------------------------------
SampleFetcher = Callable[[str], List[Dict[str, Any]]]
DescriptionGenerator = Callable[[Sequence[str], Sequence[SchemaColumn]], Dict[str, str]]


class SnapshotBuilder:
    def __init__(
        self,
        artifacts: ArtifactStore,
        llm: Optional[LLMClient] = None,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.timezone.utc),
    ):
        self.artifacts = artifacts
        self.llm = llm
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # single-flight ------------------------------------------------
    def _local_lock(self, target: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(target, threading.Lock())

    def _acquire(self, target: str) -> threading.Lock:
        lock = self._local_lock(target)
        if not lock.acquire(blocking=False):
            SNAPSHOT_BUILDS_TOTAL.labels(status="rejected").inc()
            raise SnapshotInProgressError(f"A snapshot build is already running for {target}")
        if racquire(f"snapshot_lock:{target}", SNAPSHOT_LOCK_TTL_SECONDS) is False:
            lock.release()
            SNAPSHOT_BUILDS_TOTAL.labels(status="rejected").inc()
            raise SnapshotInProgressError(f"A snapshot build is already running for {target}")
        return lock

    def _release(self, target: str, lock: threading.Lock) -> None:
        rdel(f"snapshot_lock:{target}")
        lock.release()

    # build --------------------------------------------------------
    def describe(self, tables: Sequence[str], schema_rows: Sequence[SchemaColumn]) -> Dict[str, str]:
        if self.llm is None:
            return {}
        try:
            return generate_table_descriptions(self.llm, tables, schema_rows)
        except DescriptionGenerationError as e:
            logger.warning("snapshot_descriptions_failed", extra={"error": str(e)})
            return {}

    def _run_describe(
        self,
        generator: DescriptionGenerator,
        tables: Sequence[str],
        schema_rows: Sequence[SchemaColumn],
    ) -> Dict[str, str]:
        try:
            return dict(generator(tables, schema_rows) or {})
        except Exception as e:
            logger.warning("snapshot_descriptions_failed", extra={"error": str(e)})
            return {}

    def build(
        self,
        schema_rows: Sequence[Any],
        tables: Sequence[str],
        sample_fetcher: SampleFetcher,
        description_generator: Optional[DescriptionGenerator] = None,
        target: str = "default",
        schema_label: str = "public",
    ) -> Tuple[str, MetadataStore]:
        """Build and persist both artifacts; returns (markdown, metadata store)."""
        lock = self._acquire(target)
        t0 = time.time()
        try:
            columns = [r if isinstance(r, SchemaColumn) else SchemaColumn.model_validate(r) for r in schema_rows]
            logger.info("snapshot_tables_found", extra={"tables": list(tables)})

            raw_samples = {t: list(sample_fetcher(t))[:MAX_SAMPLE_ROWS] for t in tables}
            samples = sanitize_samples(columns, raw_samples)

            markdown = render_snapshot_markdown(self.clock(), tables, columns, samples, schema_label=schema_label)
            self.artifacts.write_snapshot(markdown)
            logger.info("snapshot_written", extra={"path": str(self.artifacts.snapshot_path)})

            descriptions = self._run_describe(description_generator or self.describe, tables, columns)
            store = build_metadata_store(tables, columns, samples, descriptions)
            self.artifacts.write_metadata(store)
            logger.info("snapshot_metadata_written", extra={"path": str(self.artifacts.metadata_path)})
        except Exception:
            SNAPSHOT_BUILDS_TOTAL.labels(status="failed").inc()
            raise
        finally:
            SNAPSHOT_BUILD_SECONDS.observe(max(0.0, time.time() - t0))
            self._release(target, lock)

        SNAPSHOT_BUILDS_TOTAL.labels(status="ok").inc()
        return markdown, store

    def build_from_engine(self, engine: Engine, target: str = "default") -> Tuple[str, MetadataStore]:
        schema_rows = database.fetch_schema(engine)
        tables = database.list_tables(engine)
        return self.build(
            schema_rows,
            tables,
            lambda t: database.fetch_sample_rows(engine, t),
            target=target,
            schema_label=database.DB_SCHEMA or "public",
        )

    def clear(self) -> None:
        self.artifacts.clear()
        logger.info("snapshot_cleared", extra={"path": str(self.artifacts.snapshot_path)})
