#!/usr/bin/env python3
"""Roster loading and the submission sink.

- Recipient records loaded from a JSON roster
- SQLite-backed current submission per recipient, replaced as a whole
- Sink-side file limits that turn into per-recipient notices
- Run history for previews and commits
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import hashlib
import json
import shutil
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Sequence

from bulk_reconcile.staging_store import StagedItem, check_segment

# ------------------------------- Constants ---------------------------------- #

HASH_BUFFER = 1024 * 1024


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if val < 1024.0 or unit == "TB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def parse_size_to_bytes(value: str) -> int:
    text = value.strip().lower().replace(" ", "")
    units: list[tuple[str, int]] = [
        ("gb", 1024**3),
        ("mb", 1024**2),
        ("kb", 1024),
        ("b", 1),
    ]
    for u, factor in units:
        if text.endswith(u):
            number = float(text[: -len(u)] or "0")
            return int(number * factor)
    return int(float(text))


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(HASH_BUFFER)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


# --------------------------------- Roster ----------------------------------- #


@dataclasses.dataclass(slots=True)
class Recipient:
    id: str
    full_name: str
    fields: dict[str, Any] = dataclasses.field(default_factory=dict)

    def field(self, name: str) -> Any:
        if name == "id":
            return self.id
        return self.fields.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "full_name": self.full_name, **{k: v for k, v in self.fields.items() if k != "id"}}


def recipient_from_row(row: dict[str, Any]) -> Recipient:
    if "id" not in row or row["id"] in (None, ""):
        raise ValueError(f"Roster entry without an id: {row!r}")
    rid = str(row["id"])
    full_name = str(row.get("fullname") or "").strip()
    if not full_name:
        full_name = " ".join(str(row.get(k) or "").strip() for k in ("firstname", "lastname")).strip()
    return Recipient(id=rid, full_name=full_name or rid, fields=dict(row))


def load_roster(path: Path) -> list[Recipient]:
    roster_path = Path(path).expanduser()
    if not roster_path.exists():
        raise FileNotFoundError(f"Roster file not found: {roster_path}")
    data = json.loads(roster_path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("recipients")
    if not isinstance(data, list):
        raise ValueError("Roster must be a JSON list of recipient objects")

    recipients: list[Recipient] = []
    seen: set[str] = set()
    for row in data:
        if not isinstance(row, dict):
            raise ValueError(f"Roster entry is not an object: {row!r}")
        recipient = recipient_from_row(row)
        if recipient.id in seen:
            raise ValueError(f"Duplicate recipient id in roster: {recipient.id}")
        seen.add(recipient.id)
        recipients.append(recipient)
    return recipients


# ------------------------------ Sink Policy --------------------------------- #


@dataclasses.dataclass(slots=True)
class SinkPolicy:
    max_files: int | None = None
    max_file_bytes: int | None = None
    accepted_extensions: set[str] = dataclasses.field(default_factory=set)

    def check(self, files: Sequence[StagedItem]) -> list[str]:
        notices: list[str] = []
        if self.max_files is not None and len(files) > self.max_files:
            notices.append(f"Too many files: {len(files)} submitted, at most {self.max_files} allowed")

        accepted = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in self.accepted_extensions}
        for item in files:
            shown = "/".join(item.full_path)
            if self.max_file_bytes is not None:
                size = item.content_ref.stat().st_size
                if size > self.max_file_bytes:
                    notices.append(f"{shown} is larger than the maximum file size ({human_bytes(self.max_file_bytes)})")
            if accepted and item.extension.lower() not in accepted:
                notices.append(f"{shown} has a file type that is not accepted")
        return notices


# ---------------------------- Submission Store ------------------------------ #


class SubmissionStore:
    """SQLite persistence for current submissions, their files, and run history."""

    def __init__(self, db_path: Path, sink_dir: Path, policy: SinkPolicy | None = None):
        self.db_path = Path(db_path)
        self.sink_dir = Path(sink_dir)
        self.policy = policy or SinkPolicy()
        ensure_parent(self.db_path)
        self.sink_dir.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              created_at TEXT NOT NULL,
              scope_key TEXT NOT NULL,
              identifier_field TEXT NOT NULL,
              commit_mode INTEGER NOT NULL,
              state TEXT NOT NULL,
              recipients INTEGER NOT NULL,
              unmatched INTEGER NOT NULL,
              report_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_runs_scope ON runs(scope_key, created_at);

            CREATE TABLE IF NOT EXISTS submissions (
              recipient_id TEXT PRIMARY KEY,
              replaced_at TEXT NOT NULL,
              file_count INTEGER NOT NULL,
              total_bytes INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS submission_files (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              recipient_id TEXT NOT NULL,
              path TEXT NOT NULL,
              size INTEGER NOT NULL,
              sha256 TEXT NOT NULL,
              stored_path TEXT NOT NULL,
              FOREIGN KEY(recipient_id) REFERENCES submissions(recipient_id)
            );

            CREATE INDEX IF NOT EXISTS idx_submission_files_recipient ON submission_files(recipient_id);
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def replace_submission(self, recipient_id: str, files: Sequence[StagedItem]) -> list[str]:
        """Replace the recipient's current file set. Returns notices; empty means saved."""
        notices = self.policy.check(files)
        if notices:
            return notices

        rid = check_segment(str(recipient_id))
        target = self.sink_dir / rid
        incoming = self.sink_dir / f".{rid}.incoming-{uuid.uuid4().hex[:8]}"
        incoming.mkdir(parents=True)

        rows: list[tuple[str, int, str, str]] = []
        try:
            for item in files:
                rel = Path(*item.full_path)
                dest = incoming / rel
                ensure_parent(dest)
                shutil.copy2(item.content_ref, dest)
                rows.append(("/".join(item.full_path), dest.stat().st_size, sha256_file(dest), str(target / rel)))
        except OSError:
            shutil.rmtree(incoming, ignore_errors=True)
            raise

        if target.exists():
            shutil.rmtree(target)
        incoming.rename(target)

        self.conn.execute("DELETE FROM submission_files WHERE recipient_id=?", (rid,))
        self.conn.executemany(
            "INSERT INTO submission_files(recipient_id, path, size, sha256, stored_path) VALUES(?, ?, ?, ?, ?)",
            [(rid, *row) for row in rows],
        )
        self.conn.execute(
            """
            INSERT INTO submissions(recipient_id, replaced_at, file_count, total_bytes) VALUES(?, ?, ?, ?)
            ON CONFLICT(recipient_id) DO UPDATE SET
              replaced_at=excluded.replaced_at,
              file_count=excluded.file_count,
              total_bytes=excluded.total_bytes
            """,
            (rid, now_utc_iso(), len(rows), sum(r[1] for r in rows)),
        )
        self.conn.commit()
        return []

    def get_submission(self, recipient_id: str) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM submissions WHERE recipient_id=?", (str(recipient_id),)).fetchone()
        if row is None:
            return None
        files = self.conn.execute(
            "SELECT path, size, sha256, stored_path FROM submission_files WHERE recipient_id=? ORDER BY path",
            (str(recipient_id),),
        ).fetchall()
        return {
            "recipient_id": row["recipient_id"],
            "replaced_at": row["replaced_at"],
            "file_count": int(row["file_count"]),
            "total_bytes": int(row["total_bytes"]),
            "files": [dict(f) for f in files],
        }

    def record_run(self, report: dict[str, Any], identifier_field: str) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO runs(
              run_id, created_at, scope_key, identifier_field, commit_mode, state, recipients, unmatched, report_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report["run_id"],
                now_utc_iso(),
                report["scope_key"],
                identifier_field,
                1 if report["commit"] else 0,
                report["state"],
                len(report["recipients"]),
                len(report["unmatched_paths"]),
                json.dumps(report),
            ),
        )
        self.conn.commit()

    def list_runs(self, scope_key: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        if scope_key:
            rows = self.conn.execute(
                "SELECT * FROM runs WHERE scope_key=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (scope_key, int(limit)),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM runs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [
            {
                "run_id": r["run_id"],
                "created_at": r["created_at"],
                "scope_key": r["scope_key"],
                "identifier_field": r["identifier_field"],
                "commit": bool(r["commit_mode"]),
                "state": r["state"],
                "recipients": int(r["recipients"]),
                "unmatched": int(r["unmatched"]),
            }
            for r in rows
        ]


__all__ = [
    "Recipient",
    "SinkPolicy",
    "SubmissionStore",
    "human_bytes",
    "load_roster",
    "now_utc_iso",
    "parse_size_to_bytes",
    "recipient_from_row",
]
