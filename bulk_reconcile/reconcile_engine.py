#!/usr/bin/env python3
"""Bulk Submission Reconciler

Matches one bulk upload (files, folders, archives) against a roster of
recipients and produces one flattened file set per recipient:
- Top-level archive expansion (archives named after a recipient stay packed)
- Breadth-first matching of files and folders by identifying token
- Per-recipient path simplification that never merges two files
- Preview by default, commit replaces each recipient's current submission
- Unmatched files are reported and keep the staging area for a retry
"""

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import enum
import json
import logging
import os
import sys
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from bulk_reconcile.staging_store import ASIDE_AREA, Scope, StagedItem, StagingStore
from bulk_reconcile.submission_store import (
    Recipient,
    SinkPolicy,
    SubmissionStore,
    ensure_parent,
    load_roster,
    now_utc_iso,
    parse_size_to_bytes,
)

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "bulk_reconcile"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / APP_NAME
DEFAULT_WORK_DIR = DEFAULT_DATA_DIR / "scopes"
DEFAULT_SINK_DIR = DEFAULT_DATA_DIR / "submissions"
DEFAULT_DB = DEFAULT_DATA_DIR / "bulk_reconcile.db"
DEFAULT_LOG_FILE = DEFAULT_DATA_DIR / "actions.log"
DEFAULT_EXPORT_DIR = Path.cwd() / "bulk_reconcile_reports"
DEFAULT_SCOPE = "default"
DEFAULT_IDENTIFIER_FIELD = "username"


# --------------------------------- Errors ----------------------------------- #


class ReconcileError(Exception):
    """Run-ending error that is reported back to the caller."""

    code = "RECONCILE_ERROR"
    status_code = 400


class ConflictError(ReconcileError):
    code = "CONFLICT"
    status_code = 409


class AmbiguousIdentifierError(ReconcileError):
    code = "AMBIGUOUS_IDENTIFIER"
    status_code = 422

    def __init__(self, field: str, value: str):
        super().__init__(f"Identifier is not unique: multiple recipients match {field} = {value}")
        self.field = field
        self.value = value


class UnknownIdentifierError(ReconcileError):
    code = "UNKNOWN_IDENTIFIER"
    status_code = 404

    def __init__(self, token: str):
        super().__init__(f"{token} is not a recipient in this roster")
        self.token = token


class InternalInvariantError(AssertionError):
    """Path simplification reached a state that correct code cannot produce."""


# ------------------------------- Utilities ---------------------------------- #


def setup_logger(log_file: Path) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path("/tmp") / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(logging.INFO)
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


def normalize_token(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def common_leading_length(a: Sequence[str], b: Sequence[str]) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


# ------------------------------ Data Models --------------------------------- #


class RunState(str, enum.Enum):
    STAGED = "staged"
    EXPANDED = "expanded"
    WALKED = "walked"
    PER_BUCKET_SIMPLIFIED = "per_bucket_simplified"
    REPORTED = "reported"
    COMMITTED = "committed"
    PREVIEWED = "previewed"
    CLEANED = "cleaned"


STATE_PROGRESS: dict[RunState, float] = {
    RunState.STAGED: 10.0,
    RunState.EXPANDED: 25.0,
    RunState.WALKED: 45.0,
    RunState.PER_BUCKET_SIMPLIFIED: 65.0,
    RunState.REPORTED: 75.0,
    RunState.COMMITTED: 95.0,
    RunState.PREVIEWED: 95.0,
    RunState.CLEANED: 100.0,
}


@dataclasses.dataclass(slots=True)
class ReconcileConfig:
    scope_key: str
    draft_dir: Path
    identifier_field: str = DEFAULT_IDENTIFIER_FIELD
    commit: bool = False


@dataclasses.dataclass(slots=True)
class Bucket:
    recipient: Recipient
    token: str
    scope: Scope
    files: list[StagedItem] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(slots=True)
class RecipientReport:
    recipient_id: str
    full_name: str
    matched_file_paths: list[str]
    notices: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(slots=True)
class RunReport:
    run_id: str
    scope_key: str
    commit: bool
    recipients: list[RecipientReport] = dataclasses.field(default_factory=list)
    unmatched_paths: list[str] = dataclasses.field(default_factory=list)
    expanded_archives: list[str] = dataclasses.field(default_factory=list)
    state: str = RunState.STAGED.value
    cleaned: bool = False
    generated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


ProgressCallback = Callable[[dict[str, Any]], None]
PostCommitHook = Callable[[Recipient, list[StagedItem]], None]


# -------------------------- Identifier Resolution --------------------------- #


class IdentifierResolver:
    """Injective token -> recipient map for one roster field, built once per run."""

    def __init__(self, recipients: Iterable[Recipient], field: str):
        self.field = field
        self._by_token: dict[str, Recipient] = {}
        self._token_by_id: dict[str, str] = {}
        for recipient in recipients:
            token = normalize_token(recipient.field(field))
            if not token:
                continue
            if token in self._by_token:
                raise AmbiguousIdentifierError(field, token)
            self._by_token[token] = recipient
            self._token_by_id[recipient.id] = token

    def __len__(self) -> int:
        return len(self._by_token)

    @staticmethod
    def effective_token(item: StagedItem) -> str:
        if item.is_directory:
            return item.name
        return os.path.splitext(item.name)[0]

    def lookup(self, token: str) -> Recipient | None:
        return self._by_token.get(normalize_token(token))

    def lookup_or_fail(self, token: str) -> Recipient:
        recipient = self.lookup(token)
        if recipient is None:
            raise UnknownIdentifierError(normalize_token(token))
        return recipient

    def resolve(self, item: StagedItem) -> Recipient | None:
        return self.lookup(self.effective_token(item))

    def token_for(self, recipient: Recipient) -> str:
        return self._token_by_id[recipient.id]


# ----------------------------- Archive Expansion ---------------------------- #


class ArchiveExpander:
    """Unpack top-level archives that are not themselves a recipient's submission."""

    def __init__(self, store: StagingStore, resolver: IdentifierResolver, logger: logging.Logger):
        self.store = store
        self.resolver = resolver
        self.logger = logger

    def expand(self, scope: Scope) -> list[str]:
        expanded: list[str] = []
        for item in self.store.list_children(scope, ()):
            if self.store.is_directory(item) or not self.store.is_archive(item):
                continue
            name = self.store.name(item)
            recipient = self.resolver.resolve(item)
            if recipient is not None:
                self.logger.info("archive_kept scope=%s name=%s recipient=%s", scope.key, name, recipient.id)
                continue

            # The new directory takes the archive's own name, so the archive moves aside first.
            held = self.store.hold(item)
            self.store.create_directory(scope, (name,))
            results = self.store.extract_archive_into(scope, (name,), held)
            failures = sorted((entry, reason) for entry, reason in results.items() if reason is not True)
            if failures:
                entry, reason = failures[0]
                self.logger.error(
                    "archive_conflict scope=%s name=%s failures=%s first=%s reason=%s held=%s",
                    scope.key,
                    name,
                    len(failures),
                    entry,
                    reason,
                    held.content_ref,
                )
                raise ConflictError(f"Could not unpack {name}: {entry}: {reason}")

            self.store.delete(held)
            expanded.append(name)
            self.logger.info("archive_expanded scope=%s name=%s entries=%s", scope.key, name, len(results))

        if expanded:
            self.store.clear(Scope(scope.key, ASIDE_AREA))
        return expanded


# -------------------------------- Tree Walk --------------------------------- #


class TreeWalker:
    """Breadth-first dispatch of matched subtrees into per-recipient buckets."""

    def __init__(self, store: StagingStore, resolver: IdentifierResolver, logger: logging.Logger):
        self.store = store
        self.resolver = resolver
        self.logger = logger

    def walk(self, scope: Scope) -> dict[str, Bucket]:
        buckets: dict[str, Bucket] = {}
        queue: deque[tuple[str, ...]] = deque([()])
        while queue:
            current = queue.popleft()
            for child in self.store.list_children(scope, current):
                recipient = self.resolver.resolve(child)
                if recipient is not None:
                    self._dispatch(scope, child, recipient, buckets)
                elif self.store.is_directory(child):
                    queue.append(child.full_path)
        return buckets

    def _dispatch(self, scope: Scope, item: StagedItem, recipient: Recipient, buckets: dict[str, Bucket]) -> None:
        files = self.store.list_files(scope, item.full_path) if self.store.is_directory(item) else [item]
        if not files:
            self.logger.info("walk_match_empty scope=%s path=%s recipient=%s", scope.key, item.display_path, recipient.id)
            return

        bucket = buckets.get(recipient.id)
        if bucket is None:
            bucket = Bucket(recipient=recipient, token=self.resolver.token_for(recipient), scope=scope.bucket(recipient.id))
            buckets[recipient.id] = bucket

        for f in files:
            if self.store.exists(bucket.scope, f.path, f.name):
                self.store.delete(self.store.get(bucket.scope, f.path, f.name))
                self.logger.warning("walk_stale_replaced scope=%s path=%s recipient=%s", scope.key, f.display_path, recipient.id)
            bucket.files.append(self.store.move_to(f, bucket.scope))
        self.logger.info(
            "walk_match scope=%s path=%s recipient=%s files=%s",
            scope.key,
            item.display_path,
            recipient.id,
            len(files),
        )


# ---------------------------- Path Simplification --------------------------- #


class PathSimplifier:
    """Shorten one bucket's paths without giving two files the same location.

    Pass A strips the longest path prefix shared by every file. Pass B applies
    only when every file carries the recipient's token as its name and sits at
    the same depth: the one path level that tells the files apart becomes
    their new name, keeping each file's extension.
    """

    def __init__(self, store: StagingStore, logger: logging.Logger):
        self.store = store
        self.logger = logger

    def simplify(self, bucket: Bucket) -> list[StagedItem]:
        plan = self.plan(bucket.files, bucket.token)
        moves = [
            (item, path, name)
            for item, (path, name) in zip(bucket.files, plan)
            if (path, name) != (item.path, item.name)
        ]
        if not moves:
            return bucket.files

        moved = iter(self.store.relocate_many(moves))
        bucket.files = [
            next(moved) if (path, name) != (item.path, item.name) else item
            for item, (path, name) in zip(bucket.files, plan)
        ]
        self.logger.info("simplify_applied recipient=%s renamed=%s", bucket.recipient.id, len(moves))
        return bucket.files

    @classmethod
    def plan(cls, files: Sequence[StagedItem], token: str) -> list[tuple[tuple[str, ...], str]]:
        if not files:
            return []

        paths = [tuple(f.path) for f in files]
        names = [f.name for f in files]
        path_len = len(paths[0])

        prefix = paths[0]
        uniform = True
        for f, p in zip(files, paths):
            prefix = prefix[: common_leading_length(prefix, p)]
            if IdentifierResolver.effective_token(f) != token or len(p) != path_len:
                uniform = False

        if prefix:
            stripped: list[tuple[str, ...]] = []
            for p in paths:
                if p[: len(prefix)] != prefix:
                    raise InternalInvariantError(f"path {p!r} does not start with common prefix {prefix!r}")
                stripped.append(p[len(prefix):])
            paths = stripped
            path_len -= len(prefix)

        if len(files) > 1 and uniform:
            paths, names = cls._collapse_same_name(paths, names, path_len)
        return list(zip(paths, names))

    @staticmethod
    def _collapse_same_name(
        paths: list[tuple[str, ...]],
        names: list[str],
        path_len: int,
    ) -> tuple[list[tuple[str, ...]], list[str]]:
        for p in paths:
            if len(p) != path_len:
                raise InternalInvariantError(f"path {p!r} should have length {path_len} after prefix removal")

        file_count = len(paths)
        var_index = -1
        constant_suffix = False
        for index in range(path_len):
            distinct = len({p[index] for p in paths})
            if distinct == file_count:
                var_index = index
                constant_suffix = True
            elif var_index > -1 and distinct > 1:
                constant_suffix = False

        if var_index < 0 or not constant_suffix:
            return paths, names

        new_names = [p[var_index] + os.path.splitext(n)[1] for p, n in zip(paths, names)]
        new_paths = [p[:var_index] for p in paths]
        return new_paths, new_names


class EmptyDirectoryPruner:
    """Remove directories in a recipient area that hold none of the bucket's files."""

    def __init__(self, store: StagingStore, logger: logging.Logger):
        self.store = store
        self.logger = logger

    def prune(self, bucket: Bucket) -> list[str]:
        required: set[tuple[str, ...]] = set()
        for f in bucket.files:
            for depth in range(1, len(f.path) + 1):
                required.add(tuple(f.path[:depth]))

        removed: list[str] = []
        directories = sorted(self.store.list_directories(bucket.scope), key=lambda d: len(d.full_path), reverse=True)
        for d in directories:
            if d.full_path in required:
                continue
            self.store.delete(d)
            removed.append(d.display_path)
        if removed:
            self.logger.info("prune_directories recipient=%s removed=%s", bucket.recipient.id, len(removed))
        return removed


# ------------------------------- Reconciler --------------------------------- #


class Reconciler:
    """Drive one upload through staging, matching, simplification and commit."""

    def __init__(
        self,
        store: StagingStore,
        sink: SubmissionStore,
        logger: logging.Logger,
        post_commit_hook: PostCommitHook | None = None,
    ):
        self.store = store
        self.sink = sink
        self.logger = logger
        self.post_commit_hook = post_commit_hook
        self.state: RunState | None = None

    def _advance(self, run_id: str, state: RunState, progress_cb: ProgressCallback | None) -> None:
        self.state = state
        self.logger.info("run_state run=%s state=%s", run_id, state.value)
        if progress_cb:
            progress_cb({"phase": state.value, "pct": STATE_PROGRESS[state]})

    def run(
        self,
        config: ReconcileConfig,
        recipients: Sequence[Recipient],
        progress_cb: ProgressCallback | None = None,
    ) -> RunReport:
        run_id = f"{dt.datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
        scope = Scope(config.scope_key)
        self.state = None
        self.logger.info(
            "run_start run=%s scope=%s field=%s commit=%s draft=%s",
            run_id,
            scope.key,
            config.identifier_field,
            config.commit,
            config.draft_dir,
        )

        try:
            return self._execute(run_id, scope, config, recipients, progress_cb)
        except Exception as exc:
            self.logger.error(
                "run_failed run=%s scope=%s state=%s type=%s err=%s",
                run_id,
                scope.key,
                self._state_name(),
                type(exc).__name__,
                exc,
            )
            raise

    def _execute(
        self,
        run_id: str,
        scope: Scope,
        config: ReconcileConfig,
        recipients: Sequence[Recipient],
        progress_cb: ProgressCallback | None,
    ) -> RunReport:
        resolver = IdentifierResolver(recipients, config.identifier_field)

        self.store.clear_key(scope.key)
        copied = self.store.copy_into(scope, Path(config.draft_dir))
        self.logger.info("run_staged run=%s files=%s", run_id, copied)
        self._advance(run_id, RunState.STAGED, progress_cb)

        expanded = ArchiveExpander(self.store, resolver, self.logger).expand(scope)
        self._advance(run_id, RunState.EXPANDED, progress_cb)

        buckets = TreeWalker(self.store, resolver, self.logger).walk(scope)
        self._advance(run_id, RunState.WALKED, progress_cb)

        simplifier = PathSimplifier(self.store, self.logger)
        pruner = EmptyDirectoryPruner(self.store, self.logger)
        for bucket in buckets.values():
            simplifier.simplify(bucket)
            pruner.prune(bucket)
        self._advance(run_id, RunState.PER_BUCKET_SIMPLIFIED, progress_cb)

        report = RunReport(
            run_id=run_id,
            scope_key=scope.key,
            commit=config.commit,
            expanded_archives=expanded,
            generated_at=now_utc_iso(),
        )
        entries: dict[str, RecipientReport] = {}
        for rid, bucket in buckets.items():
            entries[rid] = RecipientReport(
                recipient_id=rid,
                full_name=bucket.recipient.full_name,
                matched_file_paths=sorted(f.display_path for f in bucket.files),
            )
            report.recipients.append(entries[rid])
        report.unmatched_paths = [f.display_path for f in self.store.list_files(scope)]
        for path in report.unmatched_paths:
            self.logger.warning("run_unmatched run=%s path=%s", run_id, path)
        self._advance(run_id, RunState.REPORTED, progress_cb)

        if config.commit:
            for rid, bucket in buckets.items():
                self._commit_bucket(run_id, bucket, entries[rid])
            self._advance(run_id, RunState.COMMITTED, progress_cb)
        else:
            self._advance(run_id, RunState.PREVIEWED, progress_cb)
        report.state = self._state_name()

        if not report.unmatched_paths:
            self.store.clear_key(scope.key)
            report.cleaned = True
            self._advance(run_id, RunState.CLEANED, progress_cb)
            report.state = self._state_name()

        self.sink.record_run(report.to_dict(), config.identifier_field)
        self.logger.info(
            "run_complete run=%s recipients=%s unmatched=%s state=%s",
            run_id,
            len(report.recipients),
            len(report.unmatched_paths),
            report.state,
        )
        return report

    def _state_name(self) -> str:
        return self.state.value if self.state else "pending"

    def _commit_bucket(self, run_id: str, bucket: Bucket, entry: RecipientReport) -> None:
        rid = bucket.recipient.id
        try:
            notices = self.sink.replace_submission(rid, bucket.files)
        except Exception as exc:  # pylint: disable=broad-except
            notices = [f"Submission could not be saved: {exc}"]
            self.logger.error("commit_failed run=%s recipient=%s err=%s", run_id, rid, exc)

        if notices:
            entry.notices.extend(notices)
            self.logger.warning("commit_notices run=%s recipient=%s notices=%s", run_id, rid, len(notices))
            return

        self.logger.info("commit_success run=%s recipient=%s files=%s", run_id, rid, len(bucket.files))
        if self.post_commit_hook is None:
            return
        try:
            self.post_commit_hook(bucket.recipient, list(bucket.files))
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.error("post_commit_hook_failed run=%s recipient=%s err=%s", run_id, rid, exc)


# --------------------------------- Engine ----------------------------------- #


class Engine:
    """Top-level orchestrator for run/lookup/clean/history flows."""

    def __init__(
        self,
        work_dir: Path = DEFAULT_WORK_DIR,
        db_path: Path = DEFAULT_DB,
        sink_dir: Path = DEFAULT_SINK_DIR,
        log_file: Path = DEFAULT_LOG_FILE,
        policy: SinkPolicy | None = None,
        post_commit_hook: PostCommitHook | None = None,
    ):
        self.logger = setup_logger(log_file)
        try:
            self.sink = SubmissionStore(db_path, sink_dir, policy)
        except OSError as exc:
            fallback = Path("/tmp") / APP_NAME
            self.logger.warning("db_path_unavailable path=%s err=%s fallback=%s", db_path, exc, fallback)
            self.sink = SubmissionStore(fallback / "bulk_reconcile.db", fallback / "submissions", policy)
        self.store = StagingStore(work_dir)
        self.reconciler = Reconciler(self.store, self.sink, self.logger, post_commit_hook)

    def close(self) -> None:
        self.sink.close()

    def run(
        self,
        config: ReconcileConfig,
        recipients: Sequence[Recipient],
        progress_cb: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        return self.reconciler.run(config, recipients, progress_cb).to_dict()

    def lookup(self, recipients: Sequence[Recipient], field: str, token: str) -> dict[str, Any]:
        recipient = IdentifierResolver(recipients, field).lookup_or_fail(token)
        return recipient.to_dict()

    def clean(self, scope_key: str) -> dict[str, Any]:
        existed = self.store.key_root(scope_key).exists()
        self.store.clear_key(scope_key)
        self.logger.info("scope_cleared scope=%s existed=%s", scope_key, existed)
        return {"scope_key": scope_key, "cleared": existed}


# -------------------------------- CLI -------------------------------------- #


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def require_confirm(args: argparse.Namespace, message: str) -> bool:
    if getattr(args, "yes", False):
        return True
    ans = input(f"{message} [y/N]: ").strip().lower()
    return ans in {"y", "yes"}


def command_run(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    recipients = load_roster(Path(args.roster))
    config = ReconcileConfig(
        scope_key=args.scope,
        draft_dir=Path(args.draft),
        identifier_field=args.identifier,
        commit=args.commit,
    )
    if config.commit and not require_confirm(args, f"Replace current submissions from {config.draft_dir}?"):
        return {"mode": "run", "status": "cancelled", "scope_key": config.scope_key}
    result = engine.run(config, recipients)
    result["mode"] = "run"
    return result


def command_lookup(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    recipients = load_roster(Path(args.roster))
    return {"mode": "lookup", "field": args.identifier, "recipient": engine.lookup(recipients, args.identifier, args.token)}


def command_clean(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    if not require_confirm(args, f"Delete staged data for scope {args.scope}?"):
        return {"mode": "clean", "status": "cancelled", "scope_key": args.scope}
    result = engine.clean(args.scope)
    result["mode"] = "clean"
    return result


def command_history(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    return {"mode": "history", "runs": engine.sink.list_runs(args.scope, limit=args.limit)}


def command_submission(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    submission = engine.sink.get_submission(args.recipient_id)
    if submission is None:
        raise ValueError(f"No submission stored for recipient {args.recipient_id}")
    return {"mode": "submission", "submission": submission}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bulk-reconcile",
        description="Reconcile a bulk upload against a roster of recipients",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--work-dir", default=str(DEFAULT_WORK_DIR), help="Staging work directory")
    parser.add_argument("--db", default=str(DEFAULT_DB), help="SQLite database path")
    parser.add_argument("--sink-dir", default=str(DEFAULT_SINK_DIR), help="Directory holding committed submissions")
    parser.add_argument("--log-file", default=str(DEFAULT_LOG_FILE), help="Action log file")
    parser.add_argument("--max-files", type=int, default=None, help="Per-recipient file limit")
    parser.add_argument("--max-file-size", default=None, help="Per-file size limit, e.g. 20MB")
    parser.add_argument("--accept-ext", nargs="*", default=[], help="Accepted file extensions (empty: all)")

    sub = parser.add_subparsers(dest="command", required=True)

    # run
    p = sub.add_parser("run", help="Match an upload against the roster (preview unless --commit)")
    p.add_argument("--scope", default=DEFAULT_SCOPE, help="Staging scope key")
    p.add_argument("--draft", required=True, help="Directory holding the upload")
    p.add_argument("--roster", required=True, help="JSON roster file")
    p.add_argument("--identifier", default=DEFAULT_IDENTIFIER_FIELD, help="Roster field used as token")
    p.add_argument("--commit", action="store_true", help="Replace current submissions (otherwise preview)")
    p.add_argument("--yes", action="store_true", help="Non-interactive yes for confirmations")
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "run_report.json"))

    # lookup
    p = sub.add_parser("lookup", help="Resolve one identifier against the roster")
    p.add_argument("--roster", required=True)
    p.add_argument("--identifier", default=DEFAULT_IDENTIFIER_FIELD)
    p.add_argument("token")
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "lookup_report.json"))

    # clean
    p = sub.add_parser("clean", help="Drop the staging area of a scope")
    p.add_argument("--scope", default=DEFAULT_SCOPE)
    p.add_argument("--yes", action="store_true")
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "clean_report.json"))

    # history
    p = sub.add_parser("history", help="List recorded runs")
    p.add_argument("--scope", default=None)
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "history_report.json"))

    # submission
    p = sub.add_parser("submission", help="Show the stored submission of a recipient")
    p.add_argument("recipient_id")
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "submission_report.json"))

    return parser


def dispatch(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    cmd = args.command
    if cmd == "run":
        return command_run(engine, args)
    if cmd == "lookup":
        return command_lookup(engine, args)
    if cmd == "clean":
        return command_clean(engine, args)
    if cmd == "history":
        return command_history(engine, args)
    if cmd == "submission":
        return command_submission(engine, args)
    raise ValueError(f"Unknown command: {cmd}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    policy = SinkPolicy(
        max_files=args.max_files,
        max_file_bytes=parse_size_to_bytes(args.max_file_size) if args.max_file_size else None,
        accepted_extensions=set(args.accept_ext or []),
    )
    engine = Engine(
        work_dir=Path(args.work_dir),
        db_path=Path(args.db),
        sink_dir=Path(args.sink_dir),
        log_file=Path(args.log_file),
        policy=policy,
    )

    try:
        result = dispatch(engine, args)
        output_path = Path(args.output)
        export_json(output_path, result)

        print(json.dumps({
            "status": "ok",
            "command": args.command,
            "output": str(output_path.resolve()),
            "unmatched": len(result.get("unmatched_paths", [])),
            "timestamp": now_utc_iso(),
        }, indent=2))
        return 0
    except (ReconcileError, OSError, ValueError) as exc:
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1
    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
