import datetime as dt
import logging
import os
import time
from pathlib import Path

import pytest

NOW = dt.datetime(2025, 6, 1, tzinfo=dt.timezone.utc)
GIB = 1024 ** 3


def write_file(path: Path, data: bytes, age_days: float | None = None) -> Path:
    """Write a file and backdate its times relative to the real clock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if age_days is not None:
        ts = time.time() - age_days * 86400
        os.utime(path, (ts, ts))
    return path


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def quiet_logger():
    logger = logging.getLogger("stackburn.tests")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


@pytest.fixture
def sample_tree(tmp_path):
    """A small tree with duplicates, pruned dirs, temp files and old files."""
    root = tmp_path / "root"
    write_file(root / "a.txt", b"same content", age_days=1)
    write_file(root / "docs" / "b.txt", b"same content", age_days=1)
    write_file(root / "docs" / "deep" / "c.txt", b"same content", age_days=400)
    write_file(root / "unique.bin", b"unique", age_days=1)
    write_file(root / "music" / "song.mp3", b"x" * 64, age_days=1)
    write_file(root / "download.part", b"partial", age_days=1)
    write_file(root / "empty1.txt", b"", age_days=1)
    write_file(root / "docs" / "empty2.txt", b"", age_days=1)

    # pruned subtrees
    write_file(root / "node_modules" / "pkg" / "index.js", b"same content")
    write_file(root / ".git" / "HEAD", b"ref: refs/heads/main")
    write_file(root / ".hidden_file", b"same content")
    write_file(root / "build" / "out.o", b"object")
    return root


@pytest.fixture
def local_payload():
    return {
        "total_files": 1000,
        "total_size": 20 * GIB,
        "duplicates": [
            {
                "hash": "abc",
                "files": [
                    {"path": "/d/a.iso", "size": 2 * GIB},
                    {"path": "/d/b.iso", "size": 2 * GIB},
                    {"path": "/d/c.iso", "size": 2 * GIB},
                ],
                "total_size": 4 * GIB,
            }
        ],
        "largest_files": [
            {"path": "/d/a.iso", "name": "a.iso", "size": 2 * GIB},
            {"path": "/d/small.bin", "name": "small.bin", "size": 1024},
        ],
        "unused_files": [{"path": "/d/old.log", "size": GIB // 2}],
        "temporary_files": [{"path": "/d/x.tmp", "size": GIB // 4}],
    }


@pytest.fixture
def cloud_payload():
    return {
        "total_files": 100,
        "total_size": 10 * GIB,
        "file_types": {"Videos": 45, "Documents": 30, "Other": 25},
        "oldest_files": [
            {"name": "old.mov", "size": GIB, "modified_time": "2020-01-01T00:00:00Z"},
            {"name": "new.doc", "size": 1024, "modified_time": "2025-05-30T00:00:00Z"},
        ],
    }


@pytest.fixture
def code_hosting_payload():
    return {
        "total_repos": 12,
        "total_size_kb": 4 * 1024 * 1024,
        "stale_repos": [{"full_name": f"me/stale{i}", "size": 1024} for i in range(5)],
        "archived_repos": [{"full_name": f"me/arch{i}", "size": 2048} for i in range(2)],
        "inactive_forks": [{"full_name": "me/fork", "size": 512}],
    }
