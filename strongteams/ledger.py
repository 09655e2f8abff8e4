from __future__ import annotations

import hashlib
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from strongteams.errors import LedgerUnavailableError
from strongteams.models import (
    EventRecord,
    LeadInfo,
    LedgerRecord,
    LedgerStats,
    Phase,
    TrackingStatus,
    serialize_datetime,
)

logger = logging.getLogger(__name__)

DESCRIPTION_PREFIX_LENGTH = 100

_RECORD_COLUMNS = (
    "row_id, event_id, fingerprint, phase, leader_name, company, event_date, "
    "processed_at, last_updated_at, email, build_artifact_id, build_folder_id"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def event_fingerprint(event: EventRecord) -> str:
    """Hash of the fields whose change means an event must be reprocessed.

    Start, end, location and the first 100 characters of the description are
    joined with ``|`` and reduced to a 64-bit blake2b digest.
    """
    details = "|".join(
        [
            serialize_datetime(event.start) or "",
            serialize_datetime(event.end) or "",
            event.location or "",
            (event.description or "")[:DESCRIPTION_PREFIX_LENGTH],
        ]
    )
    return hashlib.blake2b(details.encode("utf-8"), digest_size=8).hexdigest()


def _phase_value(phase: Phase | str) -> str:
    if isinstance(phase, Phase):
        return phase.value
    return Phase(str(phase)).value


class ProcessedEventsTracker:
    """Durable record of which calendar events have been handled.

    Reads that hit an unavailable store behave as if the ledger were empty, so
    the worst case is reprocessing. Writes raise ``LedgerUnavailableError``.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._schema_ready = False
        try:
            self._init_schema()
        except (sqlite3.Error, OSError) as exc:
            logger.error("Ledger store unavailable at %s: %s", self.db_path, exc)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS processed_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            row_id TEXT NOT NULL UNIQUE,
            event_id TEXT NOT NULL UNIQUE,
            fingerprint TEXT NOT NULL,
            phase TEXT NOT NULL,
            leader_name TEXT NOT NULL DEFAULT '',
            company TEXT NOT NULL DEFAULT '',
            event_date TEXT NOT NULL DEFAULT '',
            processed_at TEXT NOT NULL,
            last_updated_at TEXT NOT NULL,
            email TEXT NOT NULL DEFAULT '',
            build_artifact_id TEXT NOT NULL DEFAULT '',
            build_folder_id TEXT NOT NULL DEFAULT ''
        );

        CREATE INDEX IF NOT EXISTS idx_processed_events_email
            ON processed_events (email);

        CREATE TABLE IF NOT EXISTS batch_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            processed INTEGER NOT NULL,
            already_processed INTEGER NOT NULL,
            skipped INTEGER NOT NULL,
            errors INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(schema_sql)
            self._schema_ready = True

    def _ensure_schema(self) -> None:
        if not self._schema_ready:
            self._init_schema()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> LedgerRecord:
        return LedgerRecord(
            row_id=str(row["row_id"]),
            event_id=str(row["event_id"]),
            fingerprint=str(row["fingerprint"]),
            phase=str(row["phase"]),
            leader_name=str(row["leader_name"] or ""),
            company=str(row["company"] or ""),
            event_date=str(row["event_date"] or ""),
            processed_at=str(row["processed_at"] or ""),
            last_updated_at=str(row["last_updated_at"] or ""),
            email=str(row["email"] or ""),
            build_artifact_id=str(row["build_artifact_id"] or ""),
            build_folder_id=str(row["build_folder_id"] or ""),
        )

    def _read(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        try:
            with self._lock:
                self._ensure_schema()
                with self._connect() as conn:
                    return conn.execute(sql, params).fetchall()
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Ledger read failed, treating ledger as empty: %s", exc)
            return []

    # Lookup -----------------------------------------------------------------

    def is_processed(self, event: EventRecord) -> TrackingStatus:
        rows = self._read(
            "SELECT row_id, fingerprint FROM processed_events WHERE event_id = ?",
            (event.event_id,),
        )
        if not rows:
            return TrackingStatus(processed=False, needs_update=False, row_ref=None)
        row = rows[0]
        if str(row["fingerprint"]) == event_fingerprint(event):
            return TrackingStatus(processed=True, needs_update=False, row_ref=str(row["row_id"]))
        logger.info("Event details changed, will reprocess: %s", event.summary or event.event_id)
        return TrackingStatus(processed=False, needs_update=True, row_ref=str(row["row_id"]))

    def get_record(self, event_id: str) -> LedgerRecord | None:
        rows = self._read(
            f"SELECT {_RECORD_COLUMNS} FROM processed_events WHERE event_id = ?",
            (event_id,),
        )
        return self._row_to_record(rows[0]) if rows else None

    def records(self, limit: int = 100) -> list[LedgerRecord]:
        rows = self._read(
            f"SELECT {_RECORD_COLUMNS} FROM processed_events ORDER BY id DESC LIMIT ?",
            (max(1, int(limit)),),
        )
        return [self._row_to_record(row) for row in rows]

    def find_by_email(self, email: str, leader_name: str | None = None) -> LedgerRecord | None:
        normalized_email = (email or "").strip().lower()
        if not normalized_email:
            logger.warning("find_by_email called with empty email")
            return None

        rows = self._read(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM processed_events
            WHERE lower(trim(email)) = ? AND build_artifact_id != ''
            ORDER BY id ASC
            """,
            (normalized_email,),
        )
        matches = [self._row_to_record(row) for row in rows]
        if not matches:
            logger.info("No ledger match for email %s", normalized_email)
            return None
        if len(matches) == 1:
            return matches[0]

        logger.warning(
            "Found %d ledger matches for email %s: %s",
            len(matches),
            normalized_email,
            ", ".join(f"{m.leader_name} ({m.company})" for m in matches),
        )
        normalized_name = (leader_name or "").strip().lower()
        if normalized_name:
            name_matches = [m for m in matches if m.leader_name.strip().lower() == normalized_name]
            if len(name_matches) == 1:
                return name_matches[0]
            logger.warning(
                "Name %r matched %d of the %d records for %s; returning first email match: %s",
                leader_name,
                len(name_matches),
                len(matches),
                normalized_email,
                matches[0].leader_name,
            )
            return matches[0]

        logger.warning(
            "Multiple matches for %s and no name given; returning first: %s",
            normalized_email,
            matches[0].leader_name,
        )
        return matches[0]

    def stats(self) -> LedgerStats:
        rows = self._read(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN phase = ? THEN 1 ELSE 0 END), 0) AS phase1_count,
                COALESCE(SUM(CASE WHEN phase = ? THEN 1 ELSE 0 END), 0) AS phase2_count,
                COALESCE(SUM(CASE WHEN email != '' THEN 1 ELSE 0 END), 0) AS with_email_count,
                COALESCE(SUM(CASE WHEN build_artifact_id != '' THEN 1 ELSE 0 END), 0) AS with_artifact_count
            FROM processed_events
            """,
            (Phase.PHASE_1.value, Phase.PHASE_2.value),
        )
        if not rows:
            return LedgerStats()
        row = rows[0]
        return LedgerStats(
            total=int(row["total"]),
            phase1_count=int(row["phase1_count"]),
            phase2_count=int(row["phase2_count"]),
            with_email_count=int(row["with_email_count"]),
            with_artifact_count=int(row["with_artifact_count"]),
        )

    # Mutation ---------------------------------------------------------------

    def mark_processed(
        self,
        event: EventRecord,
        phase: Phase | str,
        lead: LeadInfo,
        row_ref: str | None = None,
        *,
        build_artifact_id: str | None = None,
        build_folder_id: str | None = None,
    ) -> str:
        """Upsert the ledger row for ``event`` and return its row handle.

        With ``row_ref`` the existing row is overwritten in place. Empty
        email/artifact/folder values never erase stored ones.
        """
        now = _iso_utc(_utc_now())
        values = {
            "event_id": event.event_id,
            "fingerprint": event_fingerprint(event),
            "phase": _phase_value(phase),
            "leader_name": lead.full_name or "",
            "company": lead.company_name or "",
            "event_date": _iso_utc(event.start) if event.start else "",
            "email": (lead.email or "").strip(),
            "build_artifact_id": build_artifact_id or "",
            "build_folder_id": build_folder_id or "",
        }
        try:
            with self._lock:
                self._ensure_schema()
                with self._connect() as conn:
                    if row_ref:
                        cursor = conn.execute(
                            """
                            UPDATE processed_events
                            SET event_id = ?, fingerprint = ?, phase = ?, leader_name = ?, company = ?,
                                event_date = ?, processed_at = ?, last_updated_at = ?,
                                email = COALESCE(NULLIF(?, ''), email),
                                build_artifact_id = COALESCE(NULLIF(?, ''), build_artifact_id),
                                build_folder_id = COALESCE(NULLIF(?, ''), build_folder_id)
                            WHERE row_id = ?
                            """,
                            (
                                values["event_id"],
                                values["fingerprint"],
                                values["phase"],
                                values["leader_name"],
                                values["company"],
                                values["event_date"],
                                now,
                                now,
                                values["email"],
                                values["build_artifact_id"],
                                values["build_folder_id"],
                                row_ref,
                            ),
                        )
                        if cursor.rowcount:
                            conn.commit()
                            logger.info("Updated ledger record for %s", values["leader_name"])
                            return row_ref
                        logger.warning("Ledger row %s vanished, inserting a new record", row_ref)

                    new_row_id = uuid.uuid4().hex
                    conn.execute(
                        """
                        INSERT INTO processed_events(
                            row_id, event_id, fingerprint, phase, leader_name, company, event_date,
                            processed_at, last_updated_at, email, build_artifact_id, build_folder_id
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(event_id) DO UPDATE SET
                            fingerprint = excluded.fingerprint,
                            phase = excluded.phase,
                            leader_name = excluded.leader_name,
                            company = excluded.company,
                            event_date = excluded.event_date,
                            processed_at = excluded.processed_at,
                            last_updated_at = excluded.last_updated_at,
                            email = COALESCE(NULLIF(excluded.email, ''), processed_events.email),
                            build_artifact_id = COALESCE(
                                NULLIF(excluded.build_artifact_id, ''), processed_events.build_artifact_id
                            ),
                            build_folder_id = COALESCE(
                                NULLIF(excluded.build_folder_id, ''), processed_events.build_folder_id
                            )
                        """,
                        (
                            new_row_id,
                            values["event_id"],
                            values["fingerprint"],
                            values["phase"],
                            values["leader_name"],
                            values["company"],
                            values["event_date"],
                            now,
                            now,
                            values["email"],
                            values["build_artifact_id"],
                            values["build_folder_id"],
                        ),
                    )
                    row = conn.execute(
                        "SELECT row_id FROM processed_events WHERE event_id = ?",
                        (values["event_id"],),
                    ).fetchone()
                    conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise LedgerUnavailableError(f"Could not record event {event.event_id}: {exc}") from exc

        logger.info(
            "Added ledger record for %s",
            values["leader_name"],
            extra={"phase": values["phase"], "build_artifact_id": values["build_artifact_id"]},
        )
        return str(row["row_id"]) if row else new_row_id

    def prune_older_than(self, retention: timedelta, now: datetime | None = None) -> int:
        cutoff = _iso_utc((now or _utc_now()) - retention)
        deleted = self._write(
            "DELETE FROM processed_events WHERE event_date != '' AND event_date < ?",
            (cutoff,),
        )
        logger.info("Pruned %d ledger records older than %s", deleted, cutoff)
        return deleted

    def reset(self) -> int:
        deleted = self._write("DELETE FROM processed_events")
        logger.warning("Ledger reset: %d records deleted, every in-window event will be reprocessed", deleted)
        return deleted

    def _write(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        try:
            with self._lock:
                self._ensure_schema()
                with self._connect() as conn:
                    cursor = conn.execute(sql, params)
                    conn.commit()
                    return int(cursor.rowcount if cursor.rowcount is not None else 0)
        except (sqlite3.Error, OSError) as exc:
            raise LedgerUnavailableError(f"Ledger write failed: {exc}") from exc

    # Batch run history ------------------------------------------------------

    def start_batch_run(self, *, trigger: str) -> int:
        try:
            with self._lock:
                self._ensure_schema()
                with self._connect() as conn:
                    cursor = conn.execute(
                        """
                        INSERT INTO batch_runs(run_at, trigger, status, message, duration_ms,
                                               processed, already_processed, skipped, errors)
                        VALUES (?, ?, 'running', 'running', 0, 0, 0, 0, 0)
                        """,
                        (_iso_utc(_utc_now()), trigger),
                    )
                    conn.commit()
                    return int(cursor.lastrowid)
        except (sqlite3.Error, OSError) as exc:
            raise LedgerUnavailableError(f"Could not record batch run: {exc}") from exc

    def finish_batch_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        processed: int,
        already_processed: int,
        skipped: int,
        errors: int,
    ) -> None:
        self._write(
            """
            UPDATE batch_runs
            SET status = ?, message = ?, duration_ms = ?, processed = ?,
                already_processed = ?, skipped = ?, errors = ?
            WHERE id = ?
            """,
            (
                str(status),
                str(message),
                int(duration_ms),
                int(processed),
                int(already_processed),
                int(skipped),
                int(errors),
                int(run_id),
            ),
        )

    def recent_batch_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._read(
            """
            SELECT id, run_at, trigger, status, message, duration_ms,
                   processed, already_processed, skipped, errors
            FROM batch_runs
            ORDER BY id DESC
            LIMIT ?
            """,
            (max(1, int(limit)),),
        )
        return [dict(row) for row in rows]

    # Meta -------------------------------------------------------------------

    def set_meta(self, key: str, value: str) -> None:
        self._write(
            """
            INSERT INTO app_meta(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (str(key), str(value), _iso_utc(_utc_now())),
        )

    def get_meta(self, key: str) -> str | None:
        rows = self._read("SELECT value FROM app_meta WHERE key = ?", (str(key),))
        if not rows:
            return None
        return str(rows[0]["value"])
