#!/usr/bin/env python3
"""Filesystem staging store for bulk submission uploads.

Each scope key owns one directory under the work directory:
- <work_dir>/<key>/staging/...                 copy of one upload
- <work_dir>/<key>/submissions/<recipient>/... per-recipient buckets
- <work_dir>/<key>/.aside/...                  archives held while unpacking
- <work_dir>/<key>/.relocate/...               transit area for batch renames

Items are addressed by (scope, path segments, name). Records are immutable:
every rename or move returns a new StagedItem.
"""

from __future__ import annotations

import dataclasses
import mimetypes
import os
import shutil
import tarfile
import uuid
import zipfile
from pathlib import Path
from typing import Sequence

# ------------------------------- Constants ---------------------------------- #

STAGING_AREA = "staging"
SUBMISSIONS_AREA = "submissions"
ASIDE_AREA = ".aside"
RELOCATE_AREA = ".relocate"

ZIP_MIME = "application/zip"
TAR_MIME = "application/x-tar"
DIRECTORY_MIME = "inode/directory"
ARCHIVE_TYPES = {ZIP_MIME, TAR_MIME}

COPY_BUFFER = 1024 * 1024


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(frozen=True, slots=True)
class Scope:
    key: str
    area: str = STAGING_AREA
    item_id: str = ""

    def bucket(self, recipient_id: str) -> Scope:
        return Scope(key=self.key, area=SUBMISSIONS_AREA, item_id=str(recipient_id))


@dataclasses.dataclass(frozen=True, slots=True)
class StagedItem:
    """One file or directory inside a scope."""

    scope: Scope
    path: tuple[str, ...]
    name: str
    is_directory: bool
    content_ref: Path

    @property
    def full_path(self) -> tuple[str, ...]:
        return self.path + (self.name,)

    @property
    def extension(self) -> str:
        if self.is_directory:
            return ""
        return os.path.splitext(self.name)[1]

    @property
    def display_path(self) -> str:
        text = "/" + "/".join(self.full_path)
        return text + "/" if self.is_directory else text


# ------------------------------- Utilities ---------------------------------- #


def check_segment(segment: str) -> str:
    if not segment or segment in {".", ".."} or "/" in segment or "\\" in segment or "\x00" in segment:
        raise ValueError(f"Invalid path segment: {segment!r}")
    return segment


def member_segments(member_name: str) -> tuple[str, ...] | None:
    """Split an archive member name into safe segments, or None if it escapes."""
    text = member_name.replace("\\", "/")
    if text.startswith("/") or (len(text) > 1 and text[1] == ":"):
        return None
    parts = [p for p in text.split("/") if p not in {"", "."}]
    if not parts or any(p == ".." for p in parts):
        return None
    return tuple(parts)


# ------------------------------ Staging Store ------------------------------- #


class StagingStore:
    """Hierarchical blob store over a local work directory."""

    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir).expanduser().resolve()
        self.work_dir.mkdir(parents=True, exist_ok=True)

    # Addressing

    def key_root(self, key: str) -> Path:
        return self.work_dir / check_segment(key)

    def scope_root(self, scope: Scope) -> Path:
        root = self.key_root(scope.key) / scope.area
        if scope.item_id:
            root = root / check_segment(scope.item_id)
        return root

    def _locate(self, scope: Scope, path: Sequence[str], name: str | None = None) -> Path:
        target = self.scope_root(scope)
        for segment in path:
            target = target / check_segment(segment)
        if name is not None:
            target = target / check_segment(name)
        return target

    # Queries

    def get(self, scope: Scope, path: Sequence[str], name: str) -> StagedItem | None:
        target = self._locate(scope, path, name)
        if target.is_symlink():
            return None
        if target.is_dir():
            return StagedItem(scope, tuple(path), name, True, target)
        if target.is_file():
            return StagedItem(scope, tuple(path), name, False, target)
        return None

    def exists(self, scope: Scope, path: Sequence[str], name: str) -> bool:
        return self.get(scope, path, name) is not None

    def list_children(self, scope: Scope, path: Sequence[str] = ()) -> list[StagedItem]:
        base = self._locate(scope, path)
        if not base.is_dir():
            return []

        items: list[StagedItem] = []
        with os.scandir(base) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            is_dir = entry.is_dir(follow_symlinks=False)
            if not is_dir and not entry.is_file(follow_symlinks=False):
                continue
            items.append(StagedItem(scope, tuple(path), entry.name, is_dir, Path(entry.path)))
        return items

    def list_files(self, scope: Scope, path: Sequence[str] = (), recursive: bool = True) -> list[StagedItem]:
        files: list[StagedItem] = []
        stack = [tuple(path)]
        while stack:
            current = stack.pop()
            for child in self.list_children(scope, current):
                if child.is_directory:
                    if recursive:
                        stack.append(child.full_path)
                    continue
                files.append(child)
        files.sort(key=lambda f: f.full_path)
        return files

    def list_directories(self, scope: Scope) -> list[StagedItem]:
        dirs: list[StagedItem] = []
        stack: list[tuple[str, ...]] = [()]
        while stack:
            current = stack.pop()
            for child in self.list_children(scope, current):
                if child.is_directory:
                    dirs.append(child)
                    stack.append(child.full_path)
        dirs.sort(key=lambda d: d.full_path)
        return dirs

    def is_directory(self, item: StagedItem) -> bool:
        return item.is_directory

    def name(self, item: StagedItem) -> str:
        return item.name

    def mime_or_type(self, item: StagedItem) -> str:
        if item.is_directory:
            return DIRECTORY_MIME
        guessed, _ = mimetypes.guess_type(item.name, strict=False)
        return guessed or "application/octet-stream"

    def is_archive(self, item: StagedItem) -> bool:
        kind = self.mime_or_type(item)
        if kind not in ARCHIVE_TYPES:
            return False
        try:
            if kind == ZIP_MIME:
                return zipfile.is_zipfile(item.content_ref)
            return tarfile.is_tarfile(item.content_ref)
        except OSError:
            return False

    # Mutations

    def copy_into(self, scope: Scope, source_dir: Path) -> int:
        """Copy every file and folder of source_dir into the scope; the source is untouched."""
        source = Path(source_dir).expanduser().resolve()
        if not source.is_dir():
            raise FileNotFoundError(f"Upload directory not found: {source}")

        root = self.scope_root(scope)
        root.mkdir(parents=True, exist_ok=True)
        copied = 0
        for dirpath, dirnames, filenames in os.walk(source):
            rel = Path(dirpath).relative_to(source)
            target_dir = root / rel
            for d in dirnames:
                if not os.path.islink(os.path.join(dirpath, d)):
                    (target_dir / d).mkdir(parents=True, exist_ok=True)
            for f in filenames:
                src = Path(dirpath) / f
                if src.is_symlink() or not src.is_file():
                    continue
                target_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, target_dir / f)
                copied += 1
        return copied

    def create_directory(self, scope: Scope, path: Sequence[str]) -> StagedItem:
        if not path:
            raise ValueError("Cannot create the scope root as a directory item")
        target = self._locate(scope, path)
        target.mkdir(parents=True, exist_ok=True)
        return StagedItem(scope, tuple(path[:-1]), path[-1], True, target)

    def delete(self, item: StagedItem) -> None:
        p = item.content_ref
        if p.is_symlink() or p.is_file():
            p.unlink(missing_ok=True)
        elif p.is_dir():
            shutil.rmtree(p)

    def rename(self, item: StagedItem, new_path: Sequence[str], new_name: str) -> StagedItem:
        return self.move_to(item, item.scope, new_path, new_name)

    def move_to(
        self,
        item: StagedItem,
        scope: Scope,
        path: Sequence[str] | None = None,
        name: str | None = None,
    ) -> StagedItem:
        new_path = tuple(item.path if path is None else path)
        new_name = item.name if name is None else name
        target = self._locate(scope, new_path, new_name)
        if target.exists() or target.is_symlink():
            raise FileExistsError(f"Destination already exists: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(item.content_ref), str(target))
        return StagedItem(scope, new_path, new_name, item.is_directory, target)

    def relocate_many(self, moves: Sequence[tuple[StagedItem, Sequence[str], str]]) -> list[StagedItem]:
        """Rename several items of one scope at once.

        Items pass through a transit directory first, so a destination that is
        still occupied by another item of the same batch never collides. A
        directory left empty by the batch may be replaced by one of its own
        files. If any item cannot be placed, every item goes back where it was.
        """
        if not moves:
            return []
        keys = {item.scope.key for item, _, _ in moves}
        if len(keys) != 1:
            raise ValueError("relocate_many expects items from a single scope key")

        targets = [self._locate(item.scope, new_path, new_name) for item, new_path, new_name in moves]
        if len(set(targets)) != len(targets):
            raise FileExistsError("Two items of one batch share a destination")
        sources = {item.content_ref for item, _, _ in moves}
        for target in targets:
            if target in sources:
                continue
            if target.is_symlink() or target.is_file():
                raise FileExistsError(f"Destination already exists: {target}")
            if target.is_dir() and not self._vacated_by(target, sources):
                raise FileExistsError(f"Destination already exists: {target}")

        transit = self.key_root(keys.pop()) / RELOCATE_AREA / uuid.uuid4().hex
        transit.mkdir(parents=True, exist_ok=True)
        parked: list[tuple[Path, Path]] = []
        placed: list[tuple[Path, Path]] = []
        try:
            for index, (item, _, _) in enumerate(moves):
                holder = transit / str(index)
                shutil.move(str(item.content_ref), str(holder))
                parked.append((holder, item.content_ref))

            for (holder, _), target in zip(parked, targets):
                if target.is_dir() and not target.is_symlink():
                    self._remove_empty_tree(target)
                if target.exists() or target.is_symlink():
                    raise FileExistsError(f"Destination already exists: {target}")
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(holder), str(target))
                placed.append((target, holder))
        except OSError:
            self._restore(placed, parked)
            shutil.rmtree(transit, ignore_errors=True)
            raise

        shutil.rmtree(transit, ignore_errors=True)
        return [
            StagedItem(item.scope, tuple(new_path), new_name, item.is_directory, target)
            for (item, new_path, new_name), target in zip(moves, targets)
        ]

    @staticmethod
    def _vacated_by(directory: Path, sources: set[Path]) -> bool:
        """True when every file under directory is one of the items being moved."""
        for dirpath, dirnames, filenames in os.walk(directory):
            base = Path(dirpath)
            dirnames[:] = [d for d in dirnames if base / d not in sources]
            if any(base / f not in sources for f in filenames):
                return False
        return True

    @staticmethod
    def _remove_empty_tree(directory: Path) -> None:
        for dirpath, _, _ in os.walk(directory, topdown=False):
            os.rmdir(dirpath)

    @staticmethod
    def _restore(placed: list[tuple[Path, Path]], parked: list[tuple[Path, Path]]) -> None:
        for target, holder in reversed(placed):
            shutil.move(str(target), str(holder))
        for holder, origin in parked:
            origin.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(holder), str(origin))

    def hold(self, item: StagedItem) -> StagedItem:
        """Move an item out of its scope into the key's aside area."""
        aside = Scope(key=item.scope.key, area=ASIDE_AREA)
        return self.move_to(item, aside, (uuid.uuid4().hex,), item.name)

    def clear(self, scope: Scope) -> None:
        root = self.scope_root(scope)
        if root.exists():
            shutil.rmtree(root)

    def clear_key(self, key: str) -> None:
        """Drop staging, buckets and transit data for one scope key."""
        root = self.key_root(key)
        if root.exists():
            shutil.rmtree(root)

    # Archive codec

    def extract_archive_into(
        self,
        scope: Scope,
        path: Sequence[str],
        archive_item: StagedItem,
    ) -> dict[str, bool | str]:
        """Expand an archive under path; never overwrites.

        Returns one result per member: True on success, otherwise the reason
        the member could not be written.
        """
        target = self._locate(scope, path)
        target.mkdir(parents=True, exist_ok=True)
        results: dict[str, bool | str] = {}
        source = archive_item.content_ref

        if zipfile.is_zipfile(source):
            with zipfile.ZipFile(source) as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        results[info.filename] = self._make_member_dir(target, info.filename)
                        continue
                    with zf.open(info) as fh:
                        results[info.filename] = self._write_member(target, info.filename, fh)
            return results

        with tarfile.open(source, mode="r:*") as tf:
            for member in tf.getmembers():
                if member.isdir():
                    results[member.name] = self._make_member_dir(target, member.name)
                    continue
                if not member.isfile():
                    results[member.name] = "unsupported member type"
                    continue
                fh = tf.extractfile(member)
                if fh is None:
                    results[member.name] = "unreadable member"
                    continue
                with fh:
                    results[member.name] = self._write_member(target, member.name, fh)
        return results

    @staticmethod
    def _make_member_dir(target: Path, member_name: str) -> bool | str:
        parts = member_segments(member_name)
        if parts is None:
            return "path escapes the extraction directory"
        dest = target.joinpath(*parts)
        if dest.exists() and not dest.is_dir():
            return f"file exists: {'/'.join(parts)}"
        dest.mkdir(parents=True, exist_ok=True)
        return True

    @staticmethod
    def _write_member(target: Path, member_name: str, fh) -> bool | str:
        parts = member_segments(member_name)
        if parts is None:
            return "path escapes the extraction directory"
        dest = target.joinpath(*parts)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(dest, "xb") as out:
                shutil.copyfileobj(fh, out, COPY_BUFFER)
        except FileExistsError:
            return f"file exists: {'/'.join(parts)}"
        except (NotADirectoryError, IsADirectoryError, FileNotFoundError) as exc:
            return f"path conflict: {exc}"
        return True


__all__ = [
    "ARCHIVE_TYPES",
    "ASIDE_AREA",
    "STAGING_AREA",
    "SUBMISSIONS_AREA",
    "Scope",
    "StagedItem",
    "StagingStore",
    "check_segment",
    "member_segments",
]
