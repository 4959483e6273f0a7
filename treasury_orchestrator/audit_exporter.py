# treasury_orchestrator/audit_exporter.py
"""Audit exporter: ships audit log rows to gzip NDJSON files.

Audit rows stay immutable. Which rows were exported is tracked in
``audit_export_marks`` (one row per exported entry) and
``audit_export_batches`` (one row per file).
"""
from __future__ import annotations

import gzip
import json
import os
import socket
import tempfile
import time
from datetime import date, datetime, time as dtime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional

import ulid
from dateutil.parser import isoparse
from sqlalchemy import func
from sqlmodel import Field, Session, SQLModel, select

from common.audit import AuditLogEntry
from treasury_domain.db import SessionFactory
from treasury_observability import metrics as met

__all__ = ["AuditExporter", "AuditExportBatch", "AuditExportMark"]

HOSTNAME = socket.gethostname()


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


EXPORT_DIR = Path(os.getenv("AUDIT_EXPORT_DIR", "./audit_exports"))
BATCH_SIZE = _get_int("AUDIT_EXPORT_BATCH", 1000)
CUTOFF_SEC = _get_int("AUDIT_EXPORT_CUTOFF_SEC", 10)


class AuditExportBatch(SQLModel, table=True):
    __tablename__ = "audit_export_batches"

    export_id: str = Field(primary_key=True)
    file: Optional[str] = None
    row_count: int = 0
    first_entry_ts: Optional[datetime] = None
    last_entry_ts: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AuditExportMark(SQLModel, table=True):
    __tablename__ = "audit_export_marks"

    entry_id: str = Field(primary_key=True, foreign_key="audit_log.id")
    export_id: str = Field(foreign_key="audit_export_batches.export_id", index=True)


def _now_utc_iso_z() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _atomic_write_gz_ndjson(lines: List[str], export_id: str, directory: Path) -> Path:
    ts_safe = datetime.utcnow().strftime("%Y%m%dT%H%M%SZ")  # Windows-safe (no ':')
    fname = f"audit-{ts_safe}-{HOSTNAME}-{os.getpid()}-{export_id}.ndjson.gz"
    directory.mkdir(parents=True, exist_ok=True)

    tmp_fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    path_tmp = Path(tmp_path)
    try:
        with gzip.GzipFile(fileobj=os.fdopen(tmp_fd, "wb"), mode="w", mtime=0) as gz:
            for line in lines:
                gz.write(line.encode("utf-8"))
                gz.write(b"\n")
        final_path = directory / fname
        path_tmp.rename(final_path)
        try:
            os.chmod(final_path, 0o640)
        except OSError:
            pass
        return final_path
    except Exception:
        path_tmp.unlink(missing_ok=True)
        raise


def _sanitize_details(details: dict | None) -> dict:
    """Mask long digit strings (account or card numbers) in exported details."""
    if not details:
        return {}
    out: dict[str, Any] = {}
    for k, v in details.items():
        if isinstance(v, str) and v.isdigit() and len(v) >= 8:
            out[k] = f"***{v[-4:]}"
        else:
            out[k] = v
    return out


def _coerce_ts(v: Any) -> str | None:
    """Normalize timestamps to RFC3339 'Z'."""
    if v is None:
        return None
    if isinstance(v, datetime):
        dt = v if v.tzinfo else v.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(v, date):
        return datetime.combine(v, dtime.min, tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(v, str):
        dt = isoparse(v)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return str(v)


class AuditExporter:
    """Batch exporter for :class:`AuditLogEntry`."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        batch_size: int = BATCH_SIZE,
        cutoff_seconds: int = CUTOFF_SEC,
        out_dir: Path = EXPORT_DIR,
    ):
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.cutoff = cutoff_seconds
        self.out_dir = Path(out_dir)

    def _pending_query(self, now: datetime):
        exported = select(AuditExportMark.entry_id)
        return select(AuditLogEntry).where(
            AuditLogEntry.id.not_in(exported),
            AuditLogEntry.ts <= now - timedelta(seconds=self.cutoff),
        )

    def backlog(self, session: Session, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        exported = select(AuditExportMark.entry_id)
        n = session.exec(
            select(func.count()).select_from(AuditLogEntry).where(AuditLogEntry.id.not_in(exported))
        ).one()
        met.audit_export_backlog.set(n)
        return n

    def export_once(self, *, now: Optional[datetime] = None, dry_run: bool = False) -> dict:
        t0 = time.perf_counter()
        now = now or datetime.utcnow()
        with self._session_factory() as sess:
            rows = sess.exec(
                self._pending_query(now).order_by(AuditLogEntry.ts, AuditLogEntry.id).limit(self.batch_size)
            ).all()
            if not rows:
                self.backlog(sess, now)
                return {"selected": 0, "written": 0, "file": None, "export_id": ""}

            export_id = str(ulid.new())
            lines = [
                json.dumps(
                    {"_type": "audit_export", "_v": 1, "export_id": export_id, "created_at": _now_utc_iso_z()}
                )
            ]
            for r in rows:
                lines.append(
                    json.dumps(
                        {
                            "_v": 1,
                            "export_id": export_id,
                            "entry_id": r.id,
                            "event_id": r.event_id,
                            "ts": _coerce_ts(r.ts),
                            "action": r.action,
                            "actor_type": getattr(r.actor_type, "value", r.actor_type),
                            "actor": r.actor,
                            "entity_type": r.entity_type,
                            "entity_id": r.entity_id,
                            "details": _sanitize_details(r.details),
                        },
                        separators=(",", ":"),
                        ensure_ascii=False,
                    )
                )
            if dry_run:
                return {"selected": len(rows), "written": 0, "file": None, "export_id": export_id}

            file_path: Optional[Path] = None
            try:
                file_path = _atomic_write_gz_ndjson(lines, export_id, self.out_dir)
                sess.add(
                    AuditExportBatch(
                        export_id=export_id,
                        file=file_path.name,
                        row_count=len(rows),
                        first_entry_ts=rows[0].ts,
                        last_entry_ts=rows[-1].ts,
                    )
                )
                sess.flush()
                for r in rows:
                    sess.add(AuditExportMark(entry_id=r.id, export_id=export_id))
                sess.commit()
                met.audit_export_files_written_total.labels(result="success").inc()
                met.audit_export_rows_total.inc(len(rows))
            except Exception:
                sess.rollback()
                if file_path is not None:
                    file_path.unlink(missing_ok=True)
                met.audit_export_files_written_total.labels(result="fail").inc()
                raise
            finally:
                met.audit_export_duration_seconds.observe(time.perf_counter() - t0)
            self.backlog(sess, now)

        return {"selected": len(rows), "written": len(rows), "file": str(file_path), "export_id": export_id}

    def run_until_empty(self, *, now: Optional[datetime] = None, max_batches: Optional[int] = None) -> dict:
        batches = 0
        total = 0
        files: List[str] = []
        while max_batches is None or batches < max_batches:
            stats = self.export_once(now=now)
            if stats["selected"] == 0:
                break
            batches += 1
            total += stats["written"]
            files.append(stats["file"])
        return {"batches": batches, "written": total, "files": files}
