#!/usr/bin/env python3
"""Local directory scanner for StackBurn.

Single-pass traversal of one or more roots that produces:
- File records with size and age metadata
- A sha256 content digest index (streamed, bounded read buffer)
- Duplicate groups with wasted-space accounting (one keeper per group)
- Large, unused and temporary file classification
- The structured "local" payload consumed by the burn score engine

Independent subtrees can be walked by a thread pool. Each worker owns its
records, digest index and error list; outputs are merged only after the
worker completes, so no shared mutable state is written concurrently.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import datetime as dt
import hashlib
import heapq
import json
import logging
import os
import time
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "stackburn"

HASH_BUFFER = 1024 * 1024
HASH_SIZE_CEILING = 50 * 1024 * 1024
LARGE_FILE_THRESHOLD = 100 * 1024 * 1024
STALE_DAYS = 180
LARGEST_FILES_LIMIT = 20
UNUSED_FILES_LIMIT = 50
ERRORS_SAMPLE_LIMIT = 100
PROGRESS_EVERY = 500

DEFAULT_SKIP_NAMES = {
    "node_modules",
    ".git",
    ".hg",
    ".svn",
    ".vscode",
    "__pycache__",
    "target",
    "build",
    "dist",
    "$RECYCLE.BIN",
    "System Volume Information",
    "Windows",
    "Program Files",
    "Program Files (x86)",
    "ProgramData",
}

TEMP_EXTENSIONS = {
    ".tmp",
    ".temp",
    ".bak",
    ".old",
    ".cache",
    ".dmp",
    ".crdownload",
    ".part",
}

CancelFlag = Callable[[], bool]
ProgressCb = Callable[[dict[str, Any]], None]


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def epoch_to_iso(epoch: float | None) -> str | None:
    if epoch is None:
        return None
    return dt.datetime.fromtimestamp(epoch, dt.timezone.utc).replace(microsecond=0).isoformat()


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def read_policy_file(path: str | Path) -> dict[str, Any]:
    """Load a JSON object of policy overrides."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Policy overrides must be a JSON object")
    return data


def apply_overrides(target: Any, overrides: Mapping[str, Any]) -> None:
    known = {f.name for f in dataclasses.fields(target)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown policy keys: {', '.join(unknown)}")
    for key, value in overrides.items():
        current = getattr(target, key)
        if isinstance(current, set):
            value = set(value)
        elif isinstance(current, tuple):
            value = tuple(value)
        elif isinstance(current, dict):
            value = {**current, **value}
        setattr(target, key, value)


def hash_file(path: str, buffer_size: int = HASH_BUFFER) -> str:
    """Streaming sha256 of a file; raises OSError when unreadable."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(buffer_size)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def restore_times(path: str, st: os.stat_result) -> bool:
    """Put back the access/modify times a read may have bumped."""
    try:
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))
    except OSError:
        return False
    return True


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(frozen=True, slots=True)
class FileRecord:
    """Metadata for one discovered file."""

    path: str
    name: str
    extension: str
    size: int
    mtime: float
    atime: float | None
    is_hidden: bool
    digest: str | None = None
    # (st_dev, st_ino); None where the platform reports no inode
    identity: tuple[int, int] | None = dataclasses.field(default=None, compare=False, repr=False)

    @property
    def last_used(self) -> float:
        return max(self.mtime, self.atime or 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "extension": self.extension,
            "size": self.size,
            "size_human": human_bytes(self.size),
            "modified_time": epoch_to_iso(self.mtime),
            "accessed_time": epoch_to_iso(self.atime),
            "is_hidden": self.is_hidden,
            "hash": self.digest,
        }


@dataclasses.dataclass(frozen=True, slots=True)
class ScanError:
    path: str
    error: str


@dataclasses.dataclass(frozen=True, slots=True)
class DuplicateGroup:
    """Files sharing one content digest. The first member (smallest path) is kept."""

    digest: str
    members: tuple[FileRecord, ...]

    def __post_init__(self) -> None:
        if len(self.members) < 2:
            raise ValueError(f"Duplicate group {self.digest[:16]} needs at least 2 members")
        object.__setattr__(self, "members", tuple(sorted(self.members, key=lambda r: r.path)))

    @property
    def keeper(self) -> FileRecord:
        return self.members[0]

    @property
    def reclaimable(self) -> tuple[FileRecord, ...]:
        return self.members[1:]

    @property
    def size_each(self) -> int:
        return self.members[0].size

    @property
    def wasted_size(self) -> int:
        return self.size_each * (len(self.members) - 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.digest,
            "size_each": self.size_each,
            "total_size": self.wasted_size,
            "total_size_human": human_bytes(self.wasted_size),
            "keeper": self.keeper.path,
            "files": [m.to_dict() for m in self.members],
        }


@dataclasses.dataclass(slots=True)
class ScanConfig:
    roots: list[str]
    hash_size_ceiling: int = HASH_SIZE_CEILING
    large_file_threshold: int = LARGE_FILE_THRESHOLD
    stale_days: int = STALE_DAYS
    largest_files_limit: int = LARGEST_FILES_LIMIT
    unused_files_limit: int = UNUSED_FILES_LIMIT
    hash_buffer_size: int = HASH_BUFFER
    skip_names: set[str] = dataclasses.field(default_factory=lambda: set(DEFAULT_SKIP_NAMES))
    include_hidden: bool = False
    follow_symlinks: bool = False
    workers: int = 1

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.hash_size_ceiling >= self.large_file_threshold:
            raise ValueError("hash_size_ceiling must be smaller than large_file_threshold")
        if self.hash_buffer_size <= 0:
            raise ValueError("hash_buffer_size must be positive")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.stale_days < 0:
            raise ValueError("stale_days must be >= 0")

    @classmethod
    def from_file(cls, path: str | Path, roots: list[str], **kwargs: Any) -> "ScanConfig":
        cfg = cls(roots=roots, **kwargs)
        overrides = read_policy_file(path)
        overrides.pop("roots", None)
        apply_overrides(cfg, overrides)
        cfg.validate()
        return cfg


@dataclasses.dataclass(slots=True)
class TraversalResult:
    """Records and digest index from one walk (or one worker's subtree)."""

    roots: list[str] = dataclasses.field(default_factory=list)
    records: list[FileRecord] = dataclasses.field(default_factory=list)
    digest_index: dict[str, list[FileRecord]] = dataclasses.field(default_factory=lambda: defaultdict(list))
    errors: list[ScanError] = dataclasses.field(default_factory=list)
    directories: int = 0
    aliases_dropped: int = 0
    cancelled: bool = False
    duration_sec: float = 0.0

    def absorb(self, other: "TraversalResult") -> None:
        self.records.extend(other.records)
        for digest, recs in other.digest_index.items():
            self.digest_index[digest].extend(recs)
        self.errors.extend(other.errors)
        self.directories += other.directories
        self.cancelled = self.cancelled or other.cancelled

    def drop_aliases(self) -> int:
        """Keep one record per physical file (the smallest path) and reindex digests."""
        seen: set[tuple[int, int]] = set()
        kept: list[FileRecord] = []
        for rec in sorted(self.records, key=lambda r: r.path):
            if rec.identity is not None:
                if rec.identity in seen:
                    continue
                seen.add(rec.identity)
            kept.append(rec)

        dropped = len(self.records) - len(kept)
        if dropped:
            self.records = kept
            index: dict[str, list[FileRecord]] = defaultdict(list)
            for rec in kept:
                if rec.digest:
                    index[rec.digest].append(rec)
            self.digest_index = index
            self.aliases_dropped += dropped
        return dropped


@dataclasses.dataclass(slots=True)
class FileClassification:
    largest_files: list[FileRecord]
    unused_files: list[FileRecord]
    temporary_files: list[FileRecord]
    large_count: int
    unused_count: int


# -------------------------------- Scanner ----------------------------------- #


class LocalScanner:
    """Iterative os.scandir walker with skip-rule pruning and inline hashing."""

    def __init__(
        self,
        config: ScanConfig,
        logger: logging.Logger | None = None,
        cancel_flag: CancelFlag | None = None,
        progress_cb: ProgressCb | None = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(APP_NAME)
        self.cancel_flag = cancel_flag
        self.progress_cb = progress_cb

    def _cancelled(self) -> bool:
        return bool(self.cancel_flag and self.cancel_flag())

    def _progress(self, payload: dict[str, Any]) -> None:
        if self.progress_cb:
            self.progress_cb(payload)

    def should_skip(self, name: str) -> bool:
        if name.startswith(".") and not self.config.include_hidden:
            return True
        return name in self.config.skip_names

    def normalize_roots(self) -> list[str]:
        roots: list[str] = []
        for r in self.config.roots:
            rp = os.path.realpath(os.path.expanduser(r))
            if not os.path.exists(rp):
                raise ValueError(f"Directory does not exist: {r}")
            if not os.path.isdir(rp):
                raise ValueError(f"Path is not a directory: {r}")
            roots.append(rp)

        # nested roots would visit the same files twice
        kept: list[str] = []
        for rp in sorted(set(roots)):
            if any(rp == k or rp.startswith(k.rstrip(os.sep) + os.sep) for k in kept):
                continue
            kept.append(rp)
        return kept

    def traverse(self) -> TraversalResult:
        started = time.perf_counter()
        roots = self.normalize_roots()
        result = TraversalResult(roots=roots)
        self._progress({"phase": "initializing", "pct": 0.0, "files_scanned": 0})

        if self.config.workers <= 1:
            for root in roots:
                self._walk([(root, frozenset())], result)
                if result.cancelled:
                    break
        else:
            self._walk_parallel(roots, result)

        # symlinked or hard-linked copies of one file are not duplicates
        dropped = result.drop_aliases()
        if dropped:
            self.logger.info("scan_aliases_dropped count=%s", dropped)
        result.records.sort(key=lambda r: r.path)
        result.duration_sec = round(time.perf_counter() - started, 3)
        self._progress({
            "phase": "cancelled" if result.cancelled else "walk_completed",
            "pct": None if result.cancelled else 100.0,
            "files_scanned": len(result.records),
        })
        return result

    def _walk_parallel(self, roots: list[str], result: TraversalResult) -> None:
        # Files directly under each root are handled here; each first-level
        # subdirectory becomes an independent worker task.
        seeds: list[tuple[str, frozenset]] = []
        for root in roots:
            ancestry = self._enter_directory(root, frozenset(), result)
            if ancestry is None:
                continue
            result.directories += 1
            self._scan_directory(root, result, seeds, ancestry)
            if result.cancelled:
                return

        outcomes: dict[str, TraversalResult] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.workers) as ex:
            futures = {ex.submit(self._walk_subtree, seed): seed[0] for seed in seeds}
            for done, fut in enumerate(concurrent.futures.as_completed(futures), start=1):
                outcomes[futures[fut]] = fut.result()
                self._progress({
                    "phase": "scanning",
                    "pct": round(done * 100.0 / len(futures), 1),
                    "subtrees_done": done,
                    "subtrees_total": len(futures),
                })

        for seed in sorted(outcomes):
            result.absorb(outcomes[seed])

    def _walk_subtree(self, start: tuple[str, frozenset]) -> TraversalResult:
        outcome = TraversalResult()
        self._walk([start], outcome)
        return outcome

    def _walk(self, stack: list[tuple[str, frozenset]], outcome: TraversalResult) -> None:
        while stack:
            if self._cancelled():
                outcome.cancelled = True
                return
            current, parents = stack.pop()
            ancestry = self._enter_directory(current, parents, outcome)
            if ancestry is None:
                continue
            outcome.directories += 1
            self._scan_directory(current, outcome, stack, ancestry)
            if outcome.cancelled:
                return

    def _enter_directory(self, path: str, parents: frozenset, outcome: TraversalResult) -> frozenset | None:
        """Ancestry including `path`, or None when following a link would loop."""
        if not self.config.follow_symlinks:
            return parents
        try:
            st = os.stat(path)
        except OSError as exc:
            self._record_error(outcome, path, exc)
            return None
        ident = (st.st_dev, st.st_ino)
        if ident in parents:
            self._record_error(outcome, path, "symlink loop")
            return None
        return parents | {ident}

    def _scan_directory(
        self,
        current: str,
        outcome: TraversalResult,
        pending: list[tuple[str, frozenset]],
        ancestry: frozenset,
    ) -> None:
        try:
            with os.scandir(current) as it:
                for entry in it:
                    if self._cancelled():
                        outcome.cancelled = True
                        return
                    if self.should_skip(entry.name):
                        continue

                    try:
                        is_dir = entry.is_dir(follow_symlinks=self.config.follow_symlinks)
                        is_file = entry.is_file(follow_symlinks=self.config.follow_symlinks)
                    except OSError as exc:
                        self._record_error(outcome, entry.path, exc)
                        continue

                    if is_dir:
                        pending.append((entry.path, ancestry))
                        continue
                    if not is_file:
                        if entry.is_symlink() and not os.path.exists(entry.path):
                            self._record_error(outcome, entry.path, "broken symlink")
                        continue

                    self._process_file(entry, outcome)
                    if self.config.workers <= 1 and len(outcome.records) % PROGRESS_EVERY == 0:
                        self._progress({
                            "phase": "scanning",
                            "pct": None,
                            "files_scanned": len(outcome.records),
                            "current_path": entry.path,
                            "dirs_visited": outcome.directories,
                        })
        except OSError as exc:
            self._record_error(outcome, current, exc)

    def _process_file(self, entry: os.DirEntry, outcome: TraversalResult) -> None:
        try:
            st = entry.stat(follow_symlinks=self.config.follow_symlinks)
        except OSError as exc:
            self._record_error(outcome, entry.path, exc)
            return

        size = int(st.st_size)
        digest = None
        if 0 < size < self.config.hash_size_ceiling:
            try:
                digest = hash_file(entry.path, self.config.hash_buffer_size)
            except OSError as exc:
                # still classified for size/age, just not grouped
                self._record_error(outcome, entry.path, f"hash failed: {exc}")
            else:
                # reading bumps atime on most mounts; a rescan must see the same age
                if not restore_times(entry.path, st):
                    self.logger.debug("scan_atime_not_restored path=%s", entry.path)

        record = FileRecord(
            path=entry.path,
            name=entry.name,
            extension=Path(entry.name).suffix.lower(),
            size=size,
            mtime=float(st.st_mtime),
            atime=float(st.st_atime) if st.st_atime > 0 else None,
            is_hidden=entry.name.startswith("."),
            digest=digest,
            identity=(st.st_dev, st.st_ino) if st.st_ino else None,
        )
        outcome.records.append(record)
        if digest:
            outcome.digest_index[digest].append(record)

    def _record_error(self, outcome: TraversalResult, path: str, exc: Exception | str) -> None:
        outcome.errors.append(ScanError(path=path, error=str(exc)))
        self.logger.warning("scan_entry_skipped path=%s err=%s", path, exc)

    def scan(self, now_ts: float | None = None) -> dict[str, Any]:
        result = self.traverse()
        payload = build_local_payload(result, self.config, now_ts=now_ts)
        self.logger.info(
            "scan_complete roots=%s files=%s bytes=%s duplicates=%s errors=%s cancelled=%s",
            len(result.roots),
            payload["total_files"],
            payload["total_size"],
            len(payload["duplicates"]),
            payload["errors_count"],
            payload["cancelled"],
        )
        return payload


# --------------------------- Duplicate Detection ---------------------------- #


def find_duplicate_groups(digest_index: Mapping[str, Sequence[FileRecord]]) -> list[DuplicateGroup]:
    """Digests with more than one member, largest waste first."""
    groups = [
        DuplicateGroup(digest=digest, members=tuple(recs))
        for digest, recs in digest_index.items()
        if len(recs) > 1
    ]
    groups.sort(key=lambda g: (-g.wasted_size, g.digest))
    return groups


def total_wasted_size(groups: Iterable[DuplicateGroup]) -> int:
    return sum(g.wasted_size for g in groups)


# ---------------------------- Classification -------------------------------- #


def classify_records(
    records: Sequence[FileRecord],
    config: ScanConfig,
    now_ts: float | None = None,
) -> FileClassification:
    ref = now_ts if now_ts is not None else time.time()
    cutoff = ref - config.stale_days * 86400

    large = [r for r in records if r.size >= config.large_file_threshold]
    largest = heapq.nsmallest(config.largest_files_limit, large, key=lambda r: (-r.size, r.path))

    unused = [r for r in records if r.last_used < cutoff]
    unused_sample = heapq.nsmallest(config.unused_files_limit, unused, key=lambda r: (r.last_used, r.path))

    temporary = sorted((r for r in records if r.extension in TEMP_EXTENSIONS), key=lambda r: r.path)

    return FileClassification(
        largest_files=largest,
        unused_files=unused_sample,
        temporary_files=temporary,
        large_count=len(large),
        unused_count=len(unused),
    )


def build_local_payload(
    result: TraversalResult,
    config: ScanConfig,
    now_ts: float | None = None,
) -> dict[str, Any]:
    classification = classify_records(result.records, config, now_ts=now_ts)
    groups = find_duplicate_groups(result.digest_index)
    file_types = Counter(r.extension or "(none)" for r in result.records)
    total_size = sum(r.size for r in result.records)

    return {
        "roots": result.roots,
        "total_files": len(result.records),
        "total_directories": result.directories,
        "total_size": total_size,
        "total_human": human_bytes(total_size),
        "file_types": dict(sorted(file_types.items())),
        "largest_files": [r.to_dict() for r in classification.largest_files],
        "large_files_count": classification.large_count,
        "duplicates": [g.to_dict() for g in groups],
        "duplicate_waste_bytes": total_wasted_size(groups),
        "unused_files": [r.to_dict() for r in classification.unused_files],
        "unused_files_count": classification.unused_count,
        "temporary_files": [r.to_dict() for r in classification.temporary_files],
        "scan_timestamp": now_utc_iso(),
        "duration_sec": result.duration_sec,
        "cancelled": result.cancelled,
        "errors_count": len(result.errors),
        "errors_sample": [dataclasses.asdict(e) for e in result.errors[:ERRORS_SAMPLE_LIMIT]],
    }


# ------------------------------ Entry Points -------------------------------- #


def scan_directory(
    roots: str | Sequence[str],
    config: ScanConfig | None = None,
    logger: logging.Logger | None = None,
    cancel_flag: CancelFlag | None = None,
    progress_cb: ProgressCb | None = None,
    now_ts: float | None = None,
) -> dict[str, Any]:
    root_list = [roots] if isinstance(roots, str) else list(roots)
    cfg = dataclasses.replace(config, roots=root_list) if config else ScanConfig(roots=root_list)
    scanner = LocalScanner(cfg, logger=logger, cancel_flag=cancel_flag, progress_cb=progress_cb)
    return scanner.scan(now_ts=now_ts)


def detect_duplicates(
    roots: Sequence[str],
    config: ScanConfig | None = None,
    logger: logging.Logger | None = None,
    cancel_flag: CancelFlag | None = None,
    progress_cb: ProgressCb | None = None,
) -> list[DuplicateGroup]:
    """Duplicate groups across several roots, without age classification."""
    cfg = dataclasses.replace(config, roots=list(roots)) if config else ScanConfig(roots=list(roots))
    result = LocalScanner(cfg, logger=logger, cancel_flag=cancel_flag, progress_cb=progress_cb).traverse()
    groups = find_duplicate_groups(result.digest_index)
    (logger or logging.getLogger(APP_NAME)).info(
        "duplicates_complete roots=%s files=%s groups=%s wasted=%s cancelled=%s",
        len(result.roots), len(result.records), len(groups), total_wasted_size(groups), result.cancelled,
    )
    return groups


__all__ = [
    "APP_NAME",
    "DEFAULT_SKIP_NAMES",
    "DuplicateGroup",
    "FileClassification",
    "FileRecord",
    "LocalScanner",
    "ScanConfig",
    "ScanError",
    "TraversalResult",
    "build_local_payload",
    "classify_records",
    "detect_duplicates",
    "find_duplicate_groups",
    "hash_file",
    "human_bytes",
    "now_utc_iso",
    "scan_directory",
]
