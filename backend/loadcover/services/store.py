"""SQLite-backed persistence for the load-coverage pipeline."""
from __future__ import annotations

import json
import re
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterable, List, Optional

from loadcover.core.clock import ensure_utc, utc_now
from loadcover.core.config import get_settings
from loadcover.core.logging import logger
from loadcover.models.coverage import (
    COMMITTED_LOAD_STATUSES,
    FINISHED_LOAD_STATUSES,
    CarrierCandidate,
    CheckCallSchedule,
    CheckCallStatus,
    FallOffEvent,
    FallOffStatus,
    Load,
    LoadStatus,
    MatchResult,
    Notification,
    RiskLog,
    SchedulerLock,
    StaffMember,
)

_NON_DIGITS = re.compile(r"\D")


def _iso(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def phone_digits(value: Optional[str]) -> str:
    return _NON_DIGITS.sub("", value or "")


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class CoverageStore:
    """Durable state for loads, carriers, check-calls, risk logs, fall-offs and job locks."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: Optional[str] = None) -> None:
        settings = get_settings()
        path = (db_path or settings.coverage_db_path or "").strip() or "./data/coverage.db"
        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS loads (
                    load_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    carrier_id TEXT,
                    owner_id TEXT NOT NULL,
                    origin_state TEXT NOT NULL,
                    dest_state TEXT NOT NULL,
                    carrier_rate REAL,
                    pickup_at TEXT NOT NULL,
                    delivery_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_loads_status ON loads (status);
                CREATE INDEX IF NOT EXISTS idx_loads_carrier_status ON loads (carrier_id, status);
                CREATE INDEX IF NOT EXISTS idx_loads_lane ON loads (origin_state, dest_state);

                CREATE TABLE IF NOT EXISTS carriers (
                    carrier_id TEXT PRIMARY KEY,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS staff (
                    user_id TEXT PRIMARY KEY,
                    data_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS match_results (
                    result_id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    carrier_id TEXT NOT NULL,
                    rank INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_match_results_load ON match_results (load_id, carrier_id);

                CREATE TABLE IF NOT EXISTS check_call_schedules (
                    schedule_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    sent_at TEXT,
                    phone_digits TEXT NOT NULL DEFAULT '',
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_check_calls_load ON check_call_schedules (load_id, scheduled_at);
                CREATE INDEX IF NOT EXISTS idx_check_calls_status_time
                    ON check_call_schedules (status, scheduled_at);
                CREATE INDEX IF NOT EXISTS idx_check_calls_status_sent
                    ON check_call_schedules (status, sent_at DESC);

                CREATE TABLE IF NOT EXISTS risk_logs (
                    log_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    level TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_risk_logs_load_time ON risk_logs (load_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS fall_off_events (
                    event_id TEXT PRIMARY KEY,
                    load_id TEXT NOT NULL,
                    original_carrier_id TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_fall_off_load_status
                    ON fall_off_events (load_id, status, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_fall_off_carrier ON fall_off_events (original_carrier_id);

                CREATE TABLE IF NOT EXISTS scheduler_locks (
                    job_name TEXT PRIMARY KEY,
                    holder_id TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS job_runs (
                    job_name TEXT PRIMARY KEY,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    last_started_at TEXT,
                    last_slot_at TEXT,
                    last_status TEXT,
                    last_duration_ms REAL,
                    last_error TEXT,
                    run_count INTEGER NOT NULL DEFAULT 0,
                    fail_count INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    load_id TEXT,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_notifications_user_time
                    ON notifications (user_id, created_at DESC);
                """
            )
            self._conn.commit()

    # -- sequences -----------------------------------------------------------

    def next_sequence(self, key: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is None:
                current = 1
                self._conn.execute(
                    "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                    (key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                    (current + 1, key),
                )
            self._conn.commit()
            return current

    def new_id(self, prefix: str) -> str:
        return f"{prefix}-{self.next_sequence(prefix):06d}"

    # -- loads ---------------------------------------------------------------

    def upsert_load(self, load: Load) -> Load:
        row = load.model_dump(mode="json")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO loads (
                    load_id, status, carrier_id, owner_id, origin_state, dest_state, carrier_rate,
                    pickup_at, delivery_at, created_at, updated_at, data_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(load_id)
                DO UPDATE SET
                    status = excluded.status,
                    carrier_id = excluded.carrier_id,
                    owner_id = excluded.owner_id,
                    origin_state = excluded.origin_state,
                    dest_state = excluded.dest_state,
                    carrier_rate = excluded.carrier_rate,
                    pickup_at = excluded.pickup_at,
                    delivery_at = excluded.delivery_at,
                    updated_at = excluded.updated_at,
                    data_json = excluded.data_json
                """,
                (
                    load.load_id,
                    load.status.value,
                    load.carrier_id,
                    load.owner_id,
                    load.origin_state,
                    load.dest_state,
                    load.carrier_rate,
                    _iso(load.pickup_at),
                    _iso(load.delivery_at),
                    _iso(load.created_at),
                    _iso(utc_now()),
                    _json_dumps(row),
                ),
            )
            self._conn.commit()
        return load

    def get_load(self, load_id: str) -> Optional[Load]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM loads WHERE load_id = ?",
                (load_id,),
            ).fetchone()
        if not row:
            return None
        return Load.model_validate(json.loads(row["data_json"]))

    def list_loads(self, statuses: Optional[Iterable[LoadStatus]] = None) -> List[Load]:
        with self._lock:
            if statuses is None:
                rows = self._conn.execute(
                    "SELECT data_json FROM loads ORDER BY created_at ASC"
                ).fetchall()
            else:
                values = [s.value for s in statuses]
                rows = self._conn.execute(
                    f"SELECT data_json FROM loads WHERE status IN ({_placeholders(values)}) ORDER BY created_at ASC",
                    values,
                ).fetchall()
        return [Load.model_validate(json.loads(row["data_json"])) for row in rows]

    def update_load(self, load_id: str, **changes: Any) -> Load:
        """Apply a patch and re-validate the whole record before saving."""
        with self._lock:
            existing = self.get_load(load_id)
            if existing is None:
                raise KeyError(load_id)
            payload = existing.model_dump()
            payload.update(changes)
            updated = Load.model_validate(payload)
            return self.upsert_load(updated)

    def completed_load_counts(
        self,
        origin_state: Optional[str] = None,
        dest_state: Optional[str] = None,
    ) -> Dict[str, int]:
        """Delivered/completed load counts per carrier, optionally scoped to a lane side."""
        statuses = [s.value for s in FINISHED_LOAD_STATUSES]
        clauses = [f"status IN ({_placeholders(statuses)})", "carrier_id IS NOT NULL"]
        params: List[Any] = list(statuses)
        if origin_state is not None:
            clauses.append("origin_state = ?")
            params.append(origin_state)
        if dest_state is not None:
            clauses.append("dest_state = ?")
            params.append(dest_state)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT carrier_id, COUNT(*) AS c FROM loads WHERE {' AND '.join(clauses)} GROUP BY carrier_id",
                params,
            ).fetchall()
        return {row["carrier_id"]: int(row["c"]) for row in rows}

    def average_lane_carrier_rate(self, origin_state: str, dest_state: str) -> Optional[float]:
        statuses = [s.value for s in FINISHED_LOAD_STATUSES]
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT AVG(carrier_rate) AS avg_rate FROM loads
                WHERE status IN ({_placeholders(statuses)})
                  AND origin_state = ? AND dest_state = ?
                  AND carrier_rate > 0
                """,
                [*statuses, origin_state, dest_state],
            ).fetchone()
        if not row or row["avg_rate"] is None:
            return None
        return float(row["avg_rate"])

    def committed_load_counts(
        self,
        window_start: datetime,
        window_end: datetime,
        exclude_load_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """Active load counts per carrier with pickup inside the window."""
        statuses = [s.value for s in COMMITTED_LOAD_STATUSES]
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT carrier_id, COUNT(*) AS c FROM loads
                WHERE status IN ({_placeholders(statuses)})
                  AND carrier_id IS NOT NULL
                  AND pickup_at >= ? AND pickup_at <= ?
                  AND load_id != ?
                GROUP BY carrier_id
                """,
                [*statuses, _iso(window_start), _iso(window_end), exclude_load_id or ""],
            ).fetchall()
        return {row["carrier_id"]: int(row["c"]) for row in rows}

    def carriers_delivering_into(self, state: str, window_start: datetime, window_end: datetime) -> set[str]:
        statuses = [LoadStatus.IN_TRANSIT.value, LoadStatus.AT_DELIVERY.value]
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT DISTINCT carrier_id FROM loads
                WHERE status IN ({_placeholders(statuses)})
                  AND carrier_id IS NOT NULL
                  AND dest_state = ?
                  AND delivery_at >= ? AND delivery_at <= ?
                """,
                [*statuses, state, _iso(window_start), _iso(window_end)],
            ).fetchall()
        return {row["carrier_id"] for row in rows}

    # -- carriers & staff ------------------------------------------------------

    def upsert_carrier(self, carrier: CarrierCandidate) -> CarrierCandidate:
        self.upsert_carrier_payload(carrier.carrier_id, carrier.model_dump(mode="json"))
        return carrier

    def upsert_carrier_payload(self, carrier_id: str, payload: Dict[str, Any]) -> None:
        """Store a raw carrier profile; records are validated when read for scoring."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO carriers (carrier_id, updated_at, data_json)
                VALUES (?, ?, ?)
                ON CONFLICT(carrier_id)
                DO UPDATE SET updated_at = excluded.updated_at, data_json = excluded.data_json
                """,
                (carrier_id, _iso(utc_now()), _json_dumps(payload)),
            )
            self._conn.commit()

    def list_carrier_payloads(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT carrier_id, data_json FROM carriers ORDER BY carrier_id"
            ).fetchall()
        payloads = []
        for row in rows:
            try:
                payload = json.loads(row["data_json"])
            except json.JSONDecodeError:
                logger.warning("Unreadable carrier payload", carrier_id=row["carrier_id"])
                payload = {"carrier_id": row["carrier_id"]}
            payloads.append(payload)
        return payloads

    def get_carrier(self, carrier_id: str) -> Optional[CarrierCandidate]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM carriers WHERE carrier_id = ?",
                (carrier_id,),
            ).fetchone()
        if not row:
            return None
        return CarrierCandidate.model_validate(json.loads(row["data_json"]))

    def append_carrier_note(self, carrier_id: str, note: str) -> Optional[CarrierCandidate]:
        with self._lock:
            carrier = self.get_carrier(carrier_id)
            if carrier is None:
                return None
            notes = f"{carrier.notes}\n{note}".strip()
            return self.upsert_carrier(carrier.model_copy(update={"notes": notes}))

    def upsert_staff(self, staff: StaffMember) -> StaffMember:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO staff (user_id, data_json) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET data_json = excluded.data_json
                """,
                (staff.user_id, _json_dumps(staff.model_dump(mode="json"))),
            )
            self._conn.commit()
        return staff

    def get_staff(self, user_id: str) -> Optional[StaffMember]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM staff WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return StaffMember.model_validate(json.loads(row["data_json"]))

    # -- match results ---------------------------------------------------------

    def add_match_results(self, results: List[MatchResult]) -> None:
        if not results:
            return
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO match_results (result_id, run_id, load_id, carrier_id, rank, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.result_id,
                        r.run_id,
                        r.load_id,
                        r.carrier_id,
                        r.rank,
                        _iso(r.created_at),
                        _json_dumps(r.model_dump(mode="json")),
                    )
                    for r in results
                ],
            )
            self._conn.commit()

    def list_match_results(self, load_id: str, run_id: Optional[str] = None) -> List[MatchResult]:
        with self._lock:
            if run_id:
                rows = self._conn.execute(
                    "SELECT data_json FROM match_results WHERE load_id = ? AND run_id = ? ORDER BY rank",
                    (load_id, run_id),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT data_json FROM match_results WHERE load_id = ? ORDER BY created_at, rank",
                    (load_id,),
                ).fetchall()
        return [MatchResult.model_validate(json.loads(row["data_json"])) for row in rows]

    def flag_match_results(
        self,
        load_id: str,
        carrier_id: str,
        *,
        field: str,
        require_assigned: bool = False,
    ) -> int:
        """Set `was_assigned` or `was_completed` on a carrier's match rows; returns rows touched."""
        if field not in {"was_assigned", "was_completed"}:
            raise ValueError(f"Unsupported match result flag '{field}'")
        touched = 0
        with self._lock:
            rows = self._conn.execute(
                "SELECT result_id, data_json FROM match_results WHERE load_id = ? AND carrier_id = ?",
                (load_id, carrier_id),
            ).fetchall()
            for row in rows:
                data = json.loads(row["data_json"])
                if require_assigned and not data.get("was_assigned"):
                    continue
                data[field] = True
                self._conn.execute(
                    "UPDATE match_results SET data_json = ? WHERE result_id = ?",
                    (_json_dumps(data), row["result_id"]),
                )
                touched += 1
            self._conn.commit()
        return touched

    # -- check-calls -----------------------------------------------------------

    def _write_check_call(self, schedule: CheckCallSchedule) -> None:
        self._conn.execute(
            """
            INSERT INTO check_call_schedules (
                schedule_id, load_id, status, scheduled_at, sent_at, phone_digits, data_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(schedule_id)
            DO UPDATE SET
                status = excluded.status,
                scheduled_at = excluded.scheduled_at,
                sent_at = excluded.sent_at,
                phone_digits = excluded.phone_digits,
                data_json = excluded.data_json
            """,
            (
                schedule.schedule_id,
                schedule.load_id,
                schedule.status.value,
                _iso(schedule.scheduled_at),
                _iso(schedule.sent_at) if schedule.sent_at else None,
                phone_digits(schedule.carrier_phone),
                _json_dumps(schedule.model_dump(mode="json")),
            ),
        )

    def replace_check_calls(self, load_id: str, schedules: List[CheckCallSchedule]) -> int:
        """Delete any existing plan for the load and insert the new one atomically."""
        with self._lock:
            try:
                cursor = self._conn.execute("DELETE FROM check_call_schedules WHERE load_id = ?", (load_id,))
                removed = cursor.rowcount
                for schedule in schedules:
                    self._write_check_call(schedule)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return removed

    def save_check_call(self, schedule: CheckCallSchedule) -> CheckCallSchedule:
        with self._lock:
            self._write_check_call(schedule)
            self._conn.commit()
        return schedule

    def close_open_check_calls(self, load_id: str) -> int:
        statuses = [CheckCallStatus.PENDING.value, CheckCallStatus.SENT.value]
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM check_call_schedules WHERE load_id = ? AND status IN ({_placeholders(statuses)})",
                [load_id, *statuses],
            )
            self._conn.commit()
        return cursor.rowcount

    def list_check_calls(self, load_id: str) -> List[CheckCallSchedule]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT data_json FROM check_call_schedules WHERE load_id = ? ORDER BY scheduled_at ASC",
                (load_id,),
            ).fetchall()
        return [CheckCallSchedule.model_validate(json.loads(row["data_json"])) for row in rows]

    def list_due_check_calls(self, now: datetime, limit: int = 50) -> List[CheckCallSchedule]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM check_call_schedules
                WHERE status = ? AND scheduled_at <= ?
                ORDER BY scheduled_at ASC
                LIMIT ?
                """,
                (CheckCallStatus.PENDING.value, _iso(now), limit),
            ).fetchall()
        return [CheckCallSchedule.model_validate(json.loads(row["data_json"])) for row in rows]

    def list_unanswered_check_calls(self, sent_before: datetime, limit: int = 50) -> List[CheckCallSchedule]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM check_call_schedules
                WHERE status = ? AND sent_at IS NOT NULL AND sent_at <= ?
                ORDER BY sent_at ASC
                LIMIT ?
                """,
                (CheckCallStatus.SENT.value, _iso(sent_before), limit),
            ).fetchall()
        schedules = [CheckCallSchedule.model_validate(json.loads(row["data_json"])) for row in rows]
        return [s for s in schedules if s.responded_at is None]

    def find_latest_sent_check_call(self, phone_suffix: str) -> Optional[CheckCallSchedule]:
        if not phone_suffix:
            return None
        with self._lock:
            row = self._conn.execute(
                """
                SELECT data_json FROM check_call_schedules
                WHERE status = ? AND phone_digits LIKE ?
                ORDER BY sent_at DESC
                LIMIT 1
                """,
                (CheckCallStatus.SENT.value, f"%{phone_suffix}"),
            ).fetchone()
        if not row:
            return None
        return CheckCallSchedule.model_validate(json.loads(row["data_json"]))

    def count_escalated_check_calls(self, load_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS c FROM check_call_schedules WHERE load_id = ? AND status = ?",
                (load_id, CheckCallStatus.ESCALATED.value),
            ).fetchone()
        return int(row["c"]) if row else 0

    # -- risk logs -------------------------------------------------------------

    def add_risk_log(self, log: RiskLog) -> RiskLog:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO risk_logs (log_id, load_id, level, created_at, data_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (log.log_id, log.load_id, log.level.value, _iso(log.created_at), _json_dumps(log.model_dump(mode="json"))),
            )
            self._conn.commit()
        return log

    def list_risk_logs(self, load_id: str, limit: int = 100) -> List[RiskLog]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT data_json FROM risk_logs WHERE load_id = ? ORDER BY created_at DESC LIMIT ?",
                (load_id, limit),
            ).fetchall()
        return [RiskLog.model_validate(json.loads(row["data_json"])) for row in rows]

    # -- fall-off events ------------------------------------------------------

    def save_fall_off_event(self, event: FallOffEvent) -> FallOffEvent:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO fall_off_events (event_id, load_id, original_carrier_id, status, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_id)
                DO UPDATE SET status = excluded.status, data_json = excluded.data_json
                """,
                (
                    event.event_id,
                    event.load_id,
                    event.original_carrier_id,
                    event.status.value,
                    _iso(event.created_at),
                    _json_dumps(event.model_dump(mode="json")),
                ),
            )
            self._conn.commit()
        return event

    def latest_active_fall_off(self, load_id: str) -> Optional[FallOffEvent]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT data_json FROM fall_off_events
                WHERE load_id = ? AND status = ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (load_id, FallOffStatus.ACTIVE.value),
            ).fetchone()
        if not row:
            return None
        return FallOffEvent.model_validate(json.loads(row["data_json"]))

    def list_fall_off_events(
        self,
        load_id: Optional[str] = None,
        status: Optional[FallOffStatus] = None,
        created_before: Optional[datetime] = None,
    ) -> List[FallOffEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if load_id is not None:
            clauses.append("load_id = ?")
            params.append(load_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if created_before is not None:
            clauses.append("created_at <= ?")
            params.append(_iso(created_before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM fall_off_events {where} ORDER BY created_at ASC",
                params,
            ).fetchall()
        return [FallOffEvent.model_validate(json.loads(row["data_json"])) for row in rows]

    def count_fall_offs(self, carrier_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS c FROM fall_off_events WHERE original_carrier_id = ?",
                (carrier_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    # -- scheduler locks -------------------------------------------------------

    def try_acquire_lock(self, job_name: str, holder_id: str, now: datetime, ttl: timedelta) -> bool:
        """Reclaim an expired row, then insert; the primary key makes creation atomic."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM scheduler_locks WHERE job_name = ? AND expires_at <= ?",
                (job_name, _iso(now)),
            )
            try:
                self._conn.execute(
                    """
                    INSERT INTO scheduler_locks (job_name, holder_id, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (job_name, holder_id, _iso(now), _iso(now + ttl)),
                )
            except sqlite3.IntegrityError:
                self._conn.commit()
                return False
            self._conn.commit()
        return True

    def release_lock(self, job_name: str, holder_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM scheduler_locks WHERE job_name = ? AND holder_id = ?",
                (job_name, holder_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def get_lock(self, job_name: str) -> Optional[SchedulerLock]:
        with self._lock:
            row = self._conn.execute(
                "SELECT job_name, holder_id, acquired_at, expires_at FROM scheduler_locks WHERE job_name = ?",
                (job_name,),
            ).fetchone()
        if not row:
            return None
        return SchedulerLock.model_validate(dict(row))

    # -- job registry ----------------------------------------------------------

    def ensure_job(self, job_name: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO job_runs (job_name, enabled, updated_at) VALUES (?, 1, ?)",
                (job_name, _iso(utc_now())),
            )
            self._conn.commit()

    def get_job_run(self, job_name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM job_runs WHERE job_name = ?", (job_name,)).fetchone()
        if not row:
            return None
        data = dict(row)
        data["enabled"] = bool(data["enabled"])
        return data

    def list_job_runs(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM job_runs ORDER BY job_name").fetchall()
        runs = []
        for row in rows:
            data = dict(row)
            data["enabled"] = bool(data["enabled"])
            runs.append(data)
        return runs

    def set_job_enabled(self, job_name: str, enabled: bool) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE job_runs SET enabled = ?, updated_at = ? WHERE job_name = ?",
                (1 if enabled else 0, _iso(utc_now()), job_name),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def mark_job_started(self, job_name: str, started_at: datetime, slot: Optional[datetime] = None) -> None:
        """Record a run start; only scheduled runs (with a slot) claim the slot."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE job_runs
                SET last_started_at = ?,
                    last_slot_at = COALESCE(?, last_slot_at),
                    last_status = 'running',
                    updated_at = ?
                WHERE job_name = ?
                """,
                (_iso(started_at), _iso(slot) if slot else None, _iso(utc_now()), job_name),
            )
            self._conn.commit()

    def mark_job_finished(
        self,
        job_name: str,
        *,
        succeeded: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE job_runs
                SET last_status = ?,
                    last_duration_ms = ?,
                    last_error = ?,
                    run_count = run_count + 1,
                    fail_count = fail_count + ?,
                    updated_at = ?
                WHERE job_name = ?
                """,
                (
                    "success" if succeeded else "failed",
                    duration_ms,
                    (error or "")[:500] or None,
                    0 if succeeded else 1,
                    _iso(utc_now()),
                    job_name,
                ),
            )
            self._conn.commit()

    # -- notifications ---------------------------------------------------------

    def add_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO notifications (notification_id, user_id, load_id, title, message, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.notification_id,
                    notification.user_id,
                    notification.load_id,
                    notification.title,
                    notification.message,
                    _iso(notification.created_at),
                    _json_dumps(notification.model_dump(mode="json")),
                ),
            )
            self._conn.commit()
        return notification

    def find_recent_notification(
        self,
        user_id: str,
        title: str,
        since: datetime,
        load_id: Optional[str] = None,
    ) -> Optional[Notification]:
        """Latest notification with exactly this title, scoped to one load when given."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT data_json FROM notifications
                WHERE user_id = ? AND title = ? AND created_at >= ?
                  AND (? IS NULL OR load_id = ?)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, title, _iso(since), load_id, load_id),
            ).fetchone()
        if not row:
            return None
        return Notification.model_validate(json.loads(row["data_json"]))

    def list_notifications(self, user_id: Optional[str] = None, limit: int = 200) -> List[Notification]:
        with self._lock:
            if user_id:
                rows = self._conn.execute(
                    "SELECT data_json FROM notifications WHERE user_id = ? ORDER BY created_at ASC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT data_json FROM notifications ORDER BY created_at ASC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [Notification.model_validate(json.loads(row["data_json"])) for row in rows]
