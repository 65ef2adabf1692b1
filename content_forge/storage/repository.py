"""
Repository pattern for data access.

Holds the append-only cost ledger, the artifact store and the processing log.
Money is stored as decimal text and aggregated with Decimal so ledger sums
stay exact.
"""

import csv
import io
import json
import logging
import sqlite3
from collections import OrderedDict
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from content_forge.core.errors import PersistenceError, ValidationError

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    Artifact,
    ArtifactStatus,
    CostEntry,
    DailyCost,
    MonthlySummary,
    OperationCost,
    ProcessLog,
    Service,
    ServiceCost,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, artifact and log tables if they don't exist.

    The cost_entry table is an append-only ledger. No UPDATE or DELETE
    statement is ever issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS cost_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                service TEXT NOT NULL,
                operation TEXT NOT NULL,
                tokens_used INTEGER,
                cost TEXT NOT NULL,
                related_job_id TEXT,
                metadata TEXT
            );

            CREATE TABLE IF NOT EXISTS artifact (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                content TEXT NOT NULL,
                image_path TEXT,
                image_source TEXT,
                status TEXT NOT NULL DEFAULT 'draft',
                source_type TEXT,
                source_data TEXT,
                ai_cost TEXT NOT NULL DEFAULT '0',
                job_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS process_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                process_type TEXT NOT NULL,
                status TEXT NOT NULL,
                details TEXT,
                cost TEXT NOT NULL DEFAULT '0',
                metadata TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cost_entry_timestamp ON cost_entry(timestamp DESC);
            CREATE INDEX IF NOT EXISTS idx_cost_entry_service ON cost_entry(service);
            CREATE INDEX IF NOT EXISTS idx_artifact_created_at ON artifact(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_process_log_created_at ON process_log(created_at DESC);
        """)
        conn.commit()
    except sqlite3.Error as e:
        raise PersistenceError(f"Failed to initialize schema at {db_path}: {e}") from e
    finally:
        conn.close()


def to_decimal(value: Any) -> Decimal:
    """Convert a money amount to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid money amount: {value!r}") from e


def _to_db_time(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.isoformat()


def _dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if not value:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def _load_json(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    return json.loads(value)


class CostLedger:
    """Append-only ledger of priced provider operations.

    Exposes append and read operations only. Every append is a single
    SQLite transaction, which is the only locking the ledger relies on.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def _validate(self, entry: CostEntry) -> CostEntry:
        try:
            service = entry.service if isinstance(entry.service, Service) else Service(entry.service)
        except ValueError as e:
            known = [s.value for s in Service]
            raise ValidationError(f"Unknown service {entry.service!r}; expected one of {known}") from e

        cost = to_decimal(entry.cost)
        if not cost.is_finite():
            raise ValidationError(f"Cost must be a finite amount, got {entry.cost!r}")
        if cost < 0:
            raise ValidationError(f"Cost must be >= 0, got {cost}")

        if not entry.operation or not entry.operation.strip():
            raise ValidationError("operation is required and cannot be empty")

        if entry.tokens_used is not None and entry.tokens_used < 0:
            raise ValidationError(f"tokens_used must be >= 0, got {entry.tokens_used}")

        return replace(entry, service=service, cost=cost)

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: CostEntry) -> int:
        cursor = conn.execute("""
            INSERT INTO cost_entry
            (timestamp, service, operation, tokens_used, cost, related_job_id, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            _to_db_time(entry.timestamp),
            entry.service.value,
            entry.operation,
            entry.tokens_used,
            str(entry.cost),
            entry.related_job_id,
            _dump_json(entry.metadata),
        ))
        return cursor.lastrowid

    def append(self, entry: CostEntry) -> int:
        """Validate and durably append one entry.

        Args:
            entry: The cost entry to record

        Returns:
            Storage id of the new entry

        Raises:
            ValidationError: If cost is negative or the service is unknown
            PersistenceError: If the write fails
        """
        return self.append_many([entry])[0]

    def append_many(self, entries: Iterable[CostEntry]) -> List[int]:
        """Append several entries in a single transaction, all or nothing.

        Args:
            entries: Cost entries to record

        Returns:
            Storage ids in input order
        """
        validated = [self._validate(entry) for entry in entries]
        if not validated:
            return []

        conn = get_connection(self.db_path)
        try:
            ids = [self._insert(conn, entry) for entry in validated]
            conn.commit()
            return ids
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to append cost entries: {e}") from e
        finally:
            conn.close()

    def _fetch(self, query: str, params: List[Any]) -> List[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read cost ledger: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _row_to_entry(row: tuple) -> CostEntry:
        return CostEntry(
            id=row[0],
            timestamp=datetime.fromisoformat(row[1]),
            service=Service(row[2]),
            operation=row[3],
            tokens_used=row[4],
            cost=Decimal(row[5]),
            related_job_id=row[6],
            metadata=_load_json(row[7]),
        )

    def entries(
        self,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        service: Optional[Service] = None,
        limit: Optional[int] = None,
    ) -> List[CostEntry]:
        """Get entries within [window_start, window_end), newest first.

        Args:
            window_start: Inclusive lower bound
            window_end: Exclusive upper bound
            service: Optional filter for a single service
            limit: Maximum number of entries to return
        """
        query = """
            SELECT id, timestamp, service, operation, tokens_used,
                   cost, related_job_id, metadata
            FROM cost_entry
        """
        params: List[Any] = []
        conditions = []

        if window_start is not None:
            conditions.append("timestamp >= ?")
            params.append(_to_db_time(window_start))
        if window_end is not None:
            conditions.append("timestamp < ?")
            params.append(_to_db_time(window_end))
        if service is not None:
            conditions.append("service = ?")
            params.append(Service(service).value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return [self._row_to_entry(row) for row in self._fetch(query, params)]

    def recent(self, limit: int = 20) -> List[CostEntry]:
        """Most recent entries first."""
        return self.entries(limit=limit)

    def total(self, window_start: datetime, window_end: datetime) -> Decimal:
        """Sum of costs within [window_start, window_end)."""
        return sum((e.cost for e in self.entries(window_start, window_end)), ZERO)

    def summary(
        self,
        window_start: datetime,
        window_end: datetime,
        budget_limit: Optional[Decimal] = None,
        alert_threshold: Optional[Decimal] = None,
    ) -> MonthlySummary:
        """Aggregate spend by service and by calendar day within a window.

        Returns a zero-filled summary when the window holds no entries.

        Args:
            window_start: Inclusive lower bound
            window_end: Exclusive upper bound
            budget_limit: Budget the usage percentage is computed against
            alert_threshold: Spend at which the summary reports near-budget
        """
        entries = self.entries(window_start, window_end)

        by_service: Dict[Service, List] = {}
        by_day: Dict[date, Decimal] = OrderedDict()
        total = ZERO
        for entry in entries:
            bucket = by_service.setdefault(entry.service, [ZERO, 0])
            bucket[0] += entry.cost
            bucket[1] += 1
            day = entry.timestamp.date()
            by_day[day] = by_day.get(day, ZERO) + entry.cost
            total += entry.cost

        service_costs = sorted(
            (ServiceCost(service=s, cost=c, call_count=n) for s, (c, n) in by_service.items()),
            key=lambda item: (-item.cost, item.service.value),
        )
        daily_costs = [DailyCost(date=d, cost=c) for d, c in sorted(by_day.items(), reverse=True)]

        limit = to_decimal(budget_limit) if budget_limit is not None else ZERO
        if limit > 0:
            used = (total / limit * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
            used_percent = float(used)
        else:
            used_percent = 0.0

        return MonthlySummary(
            total_cost=total,
            by_service=service_costs,
            by_day=daily_costs,
            budget_limit=limit,
            budget_used_percent=used_percent,
            budget_remaining=max(ZERO, limit - total),
            alert_threshold=to_decimal(alert_threshold) if alert_threshold is not None else None,
        )

    def by_operation(
        self,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[OperationCost]:
        """Cost breakdown per operation label, most expensive first."""
        grouped: Dict[str, List] = {}
        for entry in self.entries(window_start, window_end):
            bucket = grouped.setdefault(entry.operation, [0, ZERO, 0])
            bucket[0] += 1
            bucket[1] += entry.cost
            bucket[2] += entry.tokens_used or 0

        results = [
            OperationCost(
                operation=operation,
                count=count,
                total_cost=total,
                avg_cost=total / count,
                total_tokens=tokens,
            )
            for operation, (count, total, tokens) in grouped.items()
        ]
        return sorted(results, key=lambda item: (-item.total_cost, item.operation))

    def export_csv(self, window_start: datetime, window_end: datetime) -> str:
        """Export entries within a window as CSV, newest first."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Timestamp", "Service", "Operation", "Tokens", "Cost", "Job ID"])
        for entry in self.entries(window_start, window_end):
            writer.writerow([
                entry.timestamp.isoformat(sep=" ", timespec="seconds"),
                entry.service.value,
                entry.operation,
                entry.tokens_used if entry.tokens_used is not None else "",
                str(entry.cost),
                entry.related_job_id or "",
            ])
        return buffer.getvalue()


class ArtifactRepository:
    """Persistence for generated posts, independent of the cost ledger."""

    UPDATABLE_FIELDS = {
        "content", "image_path", "image_source", "status",
        "source_type", "source_data", "ai_cost",
    }

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create_artifact(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> int:
        """Store a new artifact and return its id.

        Args:
            content: Post text
            metadata: Optional image_path, image_source, status, source_type,
                source_data, ai_cost and job_id values
        """
        if not content or not content.strip():
            raise ValidationError("content is required and cannot be empty")

        metadata = dict(metadata or {})
        unknown = set(metadata) - self.UPDATABLE_FIELDS - {"job_id"}
        if unknown:
            raise ValidationError(f"Unknown artifact fields: {sorted(unknown)}")

        status = metadata.get("status", ArtifactStatus.DRAFT.value)
        self._check_status(status)
        now = _to_db_time(datetime.now())

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO artifact
                (content, image_path, image_source, status, source_type,
                 source_data, ai_cost, job_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                content,
                metadata.get("image_path"),
                metadata.get("image_source"),
                status,
                metadata.get("source_type"),
                _dump_json(metadata.get("source_data")),
                str(to_decimal(metadata.get("ai_cost", ZERO))),
                metadata.get("job_id"),
                now,
                now,
            ))
            conn.commit()
            return cursor.lastrowid
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to create artifact: {e}") from e
        finally:
            conn.close()

    def update_artifact(self, artifact_id: int, fields: Dict[str, Any]) -> None:
        """Update mutable fields of an existing artifact.

        Raises:
            ValidationError: If a field is not updatable or the artifact is missing
        """
        if not fields:
            return
        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}")
        if "status" in fields:
            self._check_status(fields["status"])

        values = []
        for key, value in fields.items():
            if key == "source_data":
                value = _dump_json(value)
            elif key == "ai_cost":
                value = str(to_decimal(value))
            values.append(value)

        assignments = ", ".join(f"{key} = ?" for key in fields)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE artifact SET {assignments}, updated_at = ? WHERE id = ?",
                [*values, _to_db_time(datetime.now()), artifact_id],
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise ValidationError(f"Artifact {artifact_id} not found")
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to update artifact {artifact_id}: {e}") from e
        finally:
            conn.close()

    def get_artifact(self, artifact_id: int) -> Optional[Artifact]:
        rows = self._select("WHERE id = ?", [artifact_id])
        return rows[0] if rows else None

    def list_artifacts(self, limit: int = 50) -> List[Artifact]:
        return self._select("ORDER BY created_at DESC, id DESC LIMIT ?", [limit])

    def _select(self, clause: str, params: List[Any]) -> List[Artifact]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT id, content, image_path, image_source, status, source_type,
                       source_data, ai_cost, job_id, created_at, updated_at
                FROM artifact {clause}
            """, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read artifacts: {e}") from e
        finally:
            conn.close()

        return [
            Artifact(
                id=row[0],
                content=row[1],
                image_path=row[2],
                image_source=row[3],
                status=row[4],
                source_type=row[5],
                source_data=_load_json(row[6]),
                ai_cost=Decimal(row[7]),
                job_id=row[8],
                created_at=datetime.fromisoformat(row[9]),
                updated_at=datetime.fromisoformat(row[10]),
            )
            for row in rows
        ]

    @staticmethod
    def _check_status(status: str) -> None:
        try:
            ArtifactStatus(status)
        except ValueError as e:
            valid = [s.value for s in ArtifactStatus]
            raise ValidationError(f"status must be one of: {valid}") from e


class ProcessLogRepository:
    """Secondary log of finished jobs."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add(self, log: ProcessLog) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO process_log
                (process_type, status, details, cost, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                log.process_type,
                log.status,
                log.details,
                str(to_decimal(log.cost)),
                _dump_json(log.metadata),
                _to_db_time(log.created_at),
            ))
            conn.commit()
            return cursor.lastrowid
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to write process log: {e}") from e
        finally:
            conn.close()

    def recent(self, limit: int = 100) -> List[ProcessLog]:
        """Most recent log rows first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT id, process_type, status, details, cost, metadata, created_at
                FROM process_log
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, (limit,)).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read process logs: {e}") from e
        finally:
            conn.close()

        return [
            ProcessLog(
                id=row[0],
                process_type=row[1],
                status=row[2],
                details=row[3],
                cost=Decimal(row[4]),
                metadata=_load_json(row[5]),
                created_at=datetime.fromisoformat(row[6]),
            )
            for row in rows
        ]
