import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from models import (
    BuildJob,
    BuildState,
    ChangeEvent,
    Deployment,
    DeploymentStatus,
    HealthCheckResult,
    OrchestratorEvent,
    Slot,
    SlotName,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_utc(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class Storage:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS change_events (
                id TEXT PRIMARY KEY,
                source_system TEXT NOT NULL,
                content_id TEXT NOT NULL,
                received_at TEXT NOT NULL,
                environment TEXT NOT NULL,
                event_type TEXT,
                recorded_at TEXT NOT NULL,
                recorded_epoch REAL NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_change_events_tuple
            ON change_events (source_system, content_id, received_at)
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS build_jobs (
                id TEXT PRIMARY KEY,
                environment TEXT NOT NULL,
                change_event_ids TEXT NOT NULL,
                state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                artifact_ref TEXT,
                log_ref TEXT,
                duration_ms INTEGER,
                failure_code TEXT,
                failure_detail TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS slots (
                environment TEXT NOT NULL,
                name TEXT NOT NULL,
                state TEXT NOT NULL,
                artifact_ref TEXT,
                build_job_id TEXT,
                health_status TEXT,
                activated_at TEXT,
                updated_at TEXT,
                PRIMARY KEY (environment, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS deployments (
                id TEXT PRIMARY KEY,
                environment TEXT NOT NULL,
                from_slot TEXT,
                to_slot TEXT NOT NULL,
                artifact_ref TEXT,
                kind TEXT NOT NULL,
                rollback_of TEXT,
                created_at TEXT NOT NULL,
                switched_at TEXT,
                status TEXT NOT NULL,
                reason TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS health_checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                slot_ref TEXT NOT NULL,
                environment TEXT NOT NULL,
                slot TEXT NOT NULL,
                rollout_id TEXT NOT NULL,
                checked_at TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                verdict TEXT NOT NULL,
                status_code INTEGER,
                latency_ms REAL,
                detail TEXT,
                final INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                environment TEXT NOT NULL,
                severity TEXT NOT NULL,
                event TEXT NOT NULL,
                detail TEXT,
                occurred_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS leases (
                environment TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                key TEXT PRIMARY KEY,
                response TEXT NOT NULL,
                status_code INTEGER NOT NULL,
                request_fingerprint TEXT,
                expires_at REAL NOT NULL
            )
            """
        )
        conn.commit()
        conn.close()

    # Change events

    def insert_change_event(self, event: ChangeEvent, recorded_epoch: float) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO change_events (
                id, source_system, content_id, received_at, environment,
                event_type, recorded_at, recorded_epoch
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.sourceSystem,
                event.contentId,
                event.receivedAt,
                event.environment,
                event.eventType,
                event.recordedAt,
                recorded_epoch,
            ),
        )
        conn.commit()
        conn.close()

    def find_recent_change_event(
        self,
        source_system: str,
        content_id: str,
        received_at: str,
        since_epoch: float,
    ) -> Optional[ChangeEvent]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM change_events
            WHERE source_system = ? AND content_id = ? AND received_at = ?
              AND recorded_epoch >= ?
            ORDER BY recorded_epoch DESC
            LIMIT 1
            """,
            (source_system, content_id, received_at, since_epoch),
        )
        row = cur.fetchone()
        conn.close()
        return self._row_to_change_event(row) if row else None

    def get_change_event(self, event_id: str) -> Optional[ChangeEvent]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM change_events WHERE id = ?", (event_id,))
        row = cur.fetchone()
        conn.close()
        return self._row_to_change_event(row) if row else None

    def list_change_events(self, environment: str) -> List[ChangeEvent]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM change_events WHERE environment = ? ORDER BY recorded_epoch ASC",
            (environment,),
        )
        rows = cur.fetchall()
        conn.close()
        return [self._row_to_change_event(row) for row in rows]

    def _row_to_change_event(self, row: sqlite3.Row) -> ChangeEvent:
        return ChangeEvent(
            id=row["id"],
            sourceSystem=row["source_system"],
            contentId=row["content_id"],
            receivedAt=row["received_at"],
            environment=row["environment"],
            eventType=row["event_type"],
            recordedAt=row["recorded_at"],
        )

    # Build jobs

    def insert_build_job(self, job: BuildJob) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO build_jobs (
                id, environment, change_event_ids, state, created_at, started_at,
                finished_at, artifact_ref, log_ref, duration_ms, failure_code, failure_detail
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._build_job_values(job),
        )
        conn.commit()
        conn.close()

    def update_build_job(self, job: BuildJob) -> None:
        conn = self._connect()
        cur = conn.cursor()
        values = self._build_job_values(job)
        cur.execute(
            """
            UPDATE build_jobs SET
                environment = ?, change_event_ids = ?, state = ?, created_at = ?, started_at = ?,
                finished_at = ?, artifact_ref = ?, log_ref = ?, duration_ms = ?,
                failure_code = ?, failure_detail = ?
            WHERE id = ?
            """,
            values[1:] + (values[0],),
        )
        conn.commit()
        conn.close()

    def get_build_job(self, job_id: str) -> Optional[BuildJob]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM build_jobs WHERE id = ?", (job_id,))
        row = cur.fetchone()
        conn.close()
        return self._row_to_build_job(row) if row else None

    def list_build_jobs(self, environment: Optional[str] = None, state: Optional[str] = None) -> List[BuildJob]:
        conn = self._connect()
        cur = conn.cursor()
        query = "SELECT * FROM build_jobs"
        params = []
        conditions = []
        if environment:
            conditions.append("environment = ?")
            params.append(environment)
        if state:
            conditions.append("state = ?")
            params.append(state)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at ASC"
        cur.execute(query, tuple(params))
        rows = cur.fetchall()
        conn.close()
        return [self._row_to_build_job(row) for row in rows]

    def _build_job_values(self, job: BuildJob) -> tuple:
        return (
            job.id,
            job.environment,
            json.dumps(list(job.changeEventIds)),
            job.state.value,
            job.createdAt,
            job.startedAt,
            job.finishedAt,
            job.artifactRef,
            job.logRef,
            job.durationMs,
            job.failureCode,
            job.failureDetail,
        )

    def _row_to_build_job(self, row: sqlite3.Row) -> BuildJob:
        return BuildJob(
            id=row["id"],
            environment=row["environment"],
            changeEventIds=json.loads(row["change_event_ids"] or "[]"),
            state=BuildState(row["state"]),
            createdAt=row["created_at"],
            startedAt=row["started_at"],
            finishedAt=row["finished_at"],
            artifactRef=row["artifact_ref"],
            logRef=row["log_ref"],
            durationMs=row["duration_ms"],
            failureCode=row["failure_code"],
            failureDetail=row["failure_detail"],
        )

    # Slots

    def get_slots(self, environment: str) -> List[Slot]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM slots WHERE environment = ? ORDER BY name ASC", (environment,))
        rows = cur.fetchall()
        conn.close()
        return [self._row_to_slot(row) for row in rows]

    def save_slots(self, slots: Iterable[Slot]) -> None:
        conn = self._connect()
        cur = conn.cursor()
        for slot in slots:
            self._upsert_slot(cur, slot)
        conn.commit()
        conn.close()

    def _upsert_slot(self, cur: sqlite3.Cursor, slot: Slot) -> None:
        cur.execute(
            """
            INSERT INTO slots (
                environment, name, state, artifact_ref, build_job_id,
                health_status, activated_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (environment, name) DO UPDATE SET
                state = excluded.state,
                artifact_ref = excluded.artifact_ref,
                build_job_id = excluded.build_job_id,
                health_status = excluded.health_status,
                activated_at = excluded.activated_at,
                updated_at = excluded.updated_at
            """,
            (
                slot.environment,
                slot.name.value,
                slot.state.value,
                slot.artifactRef,
                slot.buildJobId,
                slot.healthStatus.value if slot.healthStatus else None,
                slot.activatedAt,
                slot.updatedAt,
            ),
        )

    def _row_to_slot(self, row: sqlite3.Row) -> Slot:
        return Slot(
            name=row["name"],
            environment=row["environment"],
            state=row["state"],
            artifactRef=row["artifact_ref"],
            buildJobId=row["build_job_id"],
            healthStatus=row["health_status"],
            activatedAt=row["activated_at"],
            updatedAt=row["updated_at"],
        )

    # Deployments

    def insert_deployment(self, deployment: Deployment) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO deployments (
                id, environment, from_slot, to_slot, artifact_ref, kind,
                rollback_of, created_at, switched_at, status, reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deployment.id,
                deployment.environment,
                deployment.fromSlot.value if deployment.fromSlot else None,
                deployment.toSlot.value,
                deployment.artifactRef,
                deployment.kind.value,
                deployment.rollbackOf,
                deployment.createdAt,
                deployment.switchedAt,
                deployment.status.value,
                deployment.reason,
            ),
        )
        conn.commit()
        conn.close()

    def update_deployment_status(self, deployment_id: str, status: str, reason: Optional[str] = None) -> None:
        conn = self._connect()
        cur = conn.cursor()
        if reason is None:
            cur.execute("UPDATE deployments SET status = ? WHERE id = ?", (status, deployment_id))
        else:
            cur.execute(
                "UPDATE deployments SET status = ?, reason = ? WHERE id = ?",
                (status, reason, deployment_id),
            )
        conn.commit()
        conn.close()

    def commit_switch(
        self,
        deployment_id: str,
        switched_at: str,
        slots: Iterable[Slot],
        rolled_back_id: Optional[str] = None,
    ) -> None:
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute(
                "UPDATE deployments SET status = ?, switched_at = ? WHERE id = ? AND status = ?",
                (
                    DeploymentStatus.COMMITTED.value,
                    switched_at,
                    deployment_id,
                    DeploymentStatus.IN_PROGRESS.value,
                ),
            )
            if cur.rowcount != 1:
                raise sqlite3.IntegrityError(f"deployment {deployment_id} is not in progress")
            if rolled_back_id:
                cur.execute(
                    "UPDATE deployments SET status = ? WHERE id = ?",
                    (DeploymentStatus.ROLLED_BACK.value, rolled_back_id),
                )
            for slot in slots:
                self._upsert_slot(cur, slot)
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM deployments WHERE id = ?", (deployment_id,))
        row = cur.fetchone()
        conn.close()
        return self._row_to_deployment(row) if row else None

    def list_deployments(self, environment: Optional[str] = None, status: Optional[str] = None) -> List[Deployment]:
        conn = self._connect()
        cur = conn.cursor()
        query = "SELECT * FROM deployments"
        params = []
        conditions = []
        if environment:
            conditions.append("environment = ?")
            params.append(environment)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC"
        cur.execute(query, tuple(params))
        rows = cur.fetchall()
        conn.close()
        return [self._row_to_deployment(row) for row in rows]

    def latest_committed_deployment(self, environment: str) -> Optional[Deployment]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM deployments
            WHERE environment = ? AND switched_at IS NOT NULL AND status = ?
            ORDER BY switched_at DESC
            LIMIT 1
            """,
            (environment, DeploymentStatus.COMMITTED.value),
        )
        row = cur.fetchone()
        conn.close()
        return self._row_to_deployment(row) if row else None

    def find_in_progress_deployment(self, environment: str) -> Optional[Deployment]:
        deployments = self.list_deployments(environment, DeploymentStatus.IN_PROGRESS.value)
        return deployments[0] if deployments else None

    def _row_to_deployment(self, row: sqlite3.Row) -> Deployment:
        return Deployment(
            id=row["id"],
            environment=row["environment"],
            fromSlot=row["from_slot"],
            toSlot=row["to_slot"],
            artifactRef=row["artifact_ref"],
            kind=row["kind"],
            rollbackOf=row["rollback_of"],
            createdAt=row["created_at"],
            switchedAt=row["switched_at"],
            status=row["status"],
            reason=row["reason"],
        )

    # Health checks

    def insert_health_check(self, result: HealthCheckResult) -> HealthCheckResult:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO health_checks (
                slot_ref, environment, slot, rollout_id, checked_at, attempt,
                verdict, status_code, latency_ms, detail, final
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.slotRef,
                result.environment,
                result.slot.value,
                result.rolloutId,
                result.checkedAt,
                result.attempt,
                result.verdict.value,
                result.statusCode,
                result.latencyMs,
                result.detail,
                1 if result.final else 0,
            ),
        )
        row_id = cur.lastrowid
        conn.commit()
        conn.close()
        return result.model_copy(update={"id": row_id})

    def list_health_checks(self, environment: str, rollout_id: Optional[str] = None) -> List[HealthCheckResult]:
        conn = self._connect()
        cur = conn.cursor()
        if rollout_id:
            cur.execute(
                "SELECT * FROM health_checks WHERE environment = ? AND rollout_id = ? ORDER BY id ASC",
                (environment, rollout_id),
            )
        else:
            cur.execute("SELECT * FROM health_checks WHERE environment = ? ORDER BY id ASC", (environment,))
        rows = cur.fetchall()
        conn.close()
        return [
            HealthCheckResult(
                id=row["id"],
                slotRef=row["slot_ref"],
                environment=row["environment"],
                slot=SlotName(row["slot"]),
                rolloutId=row["rollout_id"],
                checkedAt=row["checked_at"],
                attempt=row["attempt"],
                verdict=row["verdict"],
                statusCode=row["status_code"],
                latencyMs=row["latency_ms"],
                detail=row["detail"],
                final=bool(row["final"]),
            )
            for row in rows
        ]

    # Operator-visible events

    def insert_event(self, event: OrchestratorEvent) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO events (environment, severity, event, detail, occurred_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (event.environment, event.severity.value, event.event, event.detail, event.occurredAt),
        )
        conn.commit()
        conn.close()

    def list_events(self, environment: str, limit: int = 50) -> List[OrchestratorEvent]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM events WHERE environment = ? ORDER BY id DESC LIMIT ?",
            (environment, limit),
        )
        rows = cur.fetchall()
        conn.close()
        return [
            OrchestratorEvent(
                id=row["id"],
                environment=row["environment"],
                severity=row["severity"],
                event=row["event"],
                detail=row["detail"],
                occurredAt=row["occurred_at"],
            )
            for row in rows
        ]

    # Leases

    def try_acquire_lease(self, environment: str, holder: str, now: float, ttl_seconds: float) -> bool:
        conn = self._connect()
        conn.isolation_level = None
        cur = conn.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("SELECT holder, expires_at FROM leases WHERE environment = ?", (environment,))
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    "INSERT INTO leases (environment, holder, expires_at) VALUES (?, ?, ?)",
                    (environment, holder, now + ttl_seconds),
                )
            elif row["holder"] == holder or row["expires_at"] <= now:
                cur.execute(
                    "UPDATE leases SET holder = ?, expires_at = ? WHERE environment = ?",
                    (holder, now + ttl_seconds, environment),
                )
            else:
                cur.execute("ROLLBACK")
                return False
            cur.execute("COMMIT")
            return True
        except sqlite3.Error:
            if conn.in_transaction:
                cur.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def renew_lease(self, environment: str, holder: str, now: float, ttl_seconds: float) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "UPDATE leases SET expires_at = ? WHERE environment = ? AND holder = ? AND expires_at > ?",
            (now + ttl_seconds, environment, holder, now),
        )
        renewed = cur.rowcount == 1
        conn.commit()
        conn.close()
        return renewed

    def release_lease(self, environment: str, holder: str) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("DELETE FROM leases WHERE environment = ? AND holder = ?", (environment, holder))
        conn.commit()
        conn.close()

    def get_lease(self, environment: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM leases WHERE environment = ?", (environment,))
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return {"environment": row["environment"], "holder": row["holder"], "expiresAt": row["expires_at"]}

    # Idempotency keys

    def get_idempotency_key(self, key: str, now: float) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("DELETE FROM idempotency_keys WHERE expires_at <= ?", (now,))
        cur.execute("SELECT * FROM idempotency_keys WHERE key = ?", (key,))
        row = cur.fetchone()
        conn.commit()
        conn.close()
        if not row:
            return None
        return {
            "response": json.loads(row["response"]),
            "status_code": row["status_code"],
            "request_fingerprint": row["request_fingerprint"],
        }

    def put_idempotency_key(
        self,
        key: str,
        response: dict,
        status_code: int,
        fingerprint: Optional[str],
        expires_at: float,
    ) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT OR REPLACE INTO idempotency_keys (key, response, status_code, request_fingerprint, expires_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (key, json.dumps(response), status_code, fingerprint, expires_at),
        )
        conn.commit()
        conn.close()


def build_storage(db_path: Optional[str] = None) -> Storage:
    return Storage(db_path or os.getenv("BLUESWITCH_DB_PATH", "./data/blueswitch.db"))
