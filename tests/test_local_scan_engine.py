import hashlib
import json
import os
import time

import pytest

from conftest import write_file
from stackburn import local_scan_engine as lse
from stackburn.local_scan_engine import (
    DuplicateGroup,
    FileRecord,
    LocalScanner,
    ScanConfig,
    build_local_payload,
    classify_records,
    detect_duplicates,
    find_duplicate_groups,
    hash_file,
    scan_directory,
)

GIB = 1024 ** 3


def make_record(path, size, mtime=0.0, atime=None, digest=None):
    name = path.rsplit("/", 1)[-1]
    ext = "." + name.rsplit(".", 1)[-1] if "." in name else ""
    return FileRecord(path=path, name=name, extension=ext, size=size, mtime=mtime,
                      atime=atime, is_hidden=name.startswith("."), digest=digest)


def rel_paths(records, root):
    return sorted(str(r.path)[len(str(root)) + 1:] for r in records)


# ------------------------------- Traversal ---------------------------------- #


def test_traversal_prunes_skip_matched_entries(sample_tree, quiet_logger):
    result = LocalScanner(ScanConfig(roots=[str(sample_tree)]), logger=quiet_logger).traverse()

    assert rel_paths(result.records, sample_tree.resolve()) == [
        "a.txt",
        "docs/b.txt",
        "docs/deep/c.txt",
        "docs/empty2.txt",
        "download.part",
        "empty1.txt",
        "music/song.mp3",
        "unique.bin",
    ]
    assert not result.errors
    assert not result.cancelled


def test_traversal_visits_each_file_once(sample_tree, quiet_logger):
    cfg = ScanConfig(roots=[str(sample_tree), str(sample_tree / "docs"), str(sample_tree)])
    result = LocalScanner(cfg, logger=quiet_logger).traverse()

    paths = [r.path for r in result.records]
    assert len(paths) == len(set(paths)) == 8
    assert result.roots == [str(sample_tree.resolve())]


def test_root_named_like_skip_entry_is_still_scanned(tmp_path, quiet_logger):
    root = tmp_path / "build"
    write_file(root / "kept.txt", b"kept")
    write_file(root / "dist" / "pruned.txt", b"pruned")

    result = LocalScanner(ScanConfig(roots=[str(root)]), logger=quiet_logger).traverse()

    assert [r.name for r in result.records] == ["kept.txt"]


def test_include_hidden_descends_into_dot_entries(sample_tree, quiet_logger):
    cfg = ScanConfig(roots=[str(sample_tree)], include_hidden=True)
    names = {r.name for r in LocalScanner(cfg, logger=quiet_logger).traverse().records}

    assert ".hidden_file" in names
    # .git is on the deny-list regardless of the hidden flag
    assert "HEAD" not in names


def test_missing_root_is_rejected(tmp_path):
    with pytest.raises(ValueError, match="does not exist"):
        LocalScanner(ScanConfig(roots=[str(tmp_path / "nope")])).traverse()


def test_file_root_is_rejected(tmp_path):
    f = write_file(tmp_path / "f.txt", b"x")
    with pytest.raises(ValueError, match="not a directory"):
        LocalScanner(ScanConfig(roots=[str(f)])).traverse()


def test_parallel_walk_matches_sequential(sample_tree, quiet_logger):
    seq = LocalScanner(ScanConfig(roots=[str(sample_tree)]), logger=quiet_logger).traverse()
    par = LocalScanner(ScanConfig(roots=[str(sample_tree)], workers=4), logger=quiet_logger).traverse()

    assert [r.path for r in seq.records] == [r.path for r in par.records]
    assert seq.directories == par.directories
    seq_groups = [(g.digest, [m.path for m in g.members]) for g in find_duplicate_groups(seq.digest_index)]
    par_groups = [(g.digest, [m.path for m in g.members]) for g in find_duplicate_groups(par.digest_index)]
    assert seq_groups == par_groups


def test_progress_reports_completion(sample_tree, quiet_logger):
    events = []
    LocalScanner(ScanConfig(roots=[str(sample_tree)]), logger=quiet_logger, progress_cb=events.append).traverse()

    assert events[0]["phase"] == "initializing"
    assert events[-1] == {"phase": "walk_completed", "pct": 100.0, "files_scanned": 8}


# ------------------------------ Cancellation -------------------------------- #


def test_cancel_before_start_returns_empty_partial_result(sample_tree, quiet_logger):
    result = LocalScanner(ScanConfig(roots=[str(sample_tree)]), logger=quiet_logger,
                          cancel_flag=lambda: True).traverse()

    assert result.cancelled
    assert result.records == []


def test_cancel_midway_keeps_only_complete_records(sample_tree, quiet_logger):
    calls = {"n": 0}

    def cancel_after_a_few():
        calls["n"] += 1
        return calls["n"] > 4

    result = LocalScanner(ScanConfig(roots=[str(sample_tree)]), logger=quiet_logger,
                          cancel_flag=cancel_after_a_few).traverse()

    assert result.cancelled
    assert len(result.records) < 8
    for rec in result.records:
        if 0 < rec.size:
            assert rec.digest == hash_file(rec.path)
    indexed = [r for recs in result.digest_index.values() for r in recs]
    assert sorted(r.path for r in indexed) == sorted(r.path for r in result.records if r.digest)


def test_cancelled_scan_payload_is_flagged(sample_tree, quiet_logger):
    payload = scan_directory(str(sample_tree), logger=quiet_logger, cancel_flag=lambda: True)
    assert payload["cancelled"] is True
    assert payload["total_files"] == 0


# -------------------------------- Hashing ----------------------------------- #


def test_hash_file_streams_sha256(tmp_path):
    data = b"0123456789" * 1000
    f = write_file(tmp_path / "data.bin", data)

    assert hash_file(str(f), buffer_size=7) == hashlib.sha256(data).hexdigest()


def test_files_at_or_above_ceiling_are_not_hashed(tmp_path, quiet_logger):
    root = tmp_path / "root"
    write_file(root / "small.bin", b"abc")
    write_file(root / "edge.bin", b"0123456789")
    write_file(root / "big.bin", b"0123456789abcdef")
    cfg = ScanConfig(roots=[str(root)], hash_size_ceiling=10, large_file_threshold=16)

    records = {r.name: r for r in LocalScanner(cfg, logger=quiet_logger).traverse().records}

    assert records["small.bin"].digest is not None
    assert records["edge.bin"].digest is None
    assert records["big.bin"].digest is None
    # still classified for size
    classification = classify_records(list(records.values()), cfg)
    assert [r.name for r in classification.largest_files] == ["big.bin"]


def test_zero_byte_files_never_form_duplicates(sample_tree, quiet_logger):
    groups = detect_duplicates([str(sample_tree)], logger=quiet_logger)
    assert all(g.size_each > 0 for g in groups)


def test_hash_failure_keeps_record_but_skips_grouping(sample_tree, quiet_logger, monkeypatch):
    real_hash = lse.hash_file

    def flaky_hash(path, buffer_size=lse.HASH_BUFFER):
        if path.endswith("b.txt"):
            raise PermissionError("denied")
        return real_hash(path, buffer_size)

    monkeypatch.setattr(lse, "hash_file", flaky_hash)
    result = LocalScanner(ScanConfig(roots=[str(sample_tree)]), logger=quiet_logger).traverse()

    names = {r.name: r for r in result.records}
    assert names["b.txt"].digest is None
    assert len(result.records) == 8
    assert len(result.errors) == 1 and "hash failed" in result.errors[0].error
    (group,) = find_duplicate_groups(result.digest_index)
    assert [m.name for m in group.members] == ["a.txt", "c.txt"]


def test_unreadable_directory_is_recorded_and_skipped(sample_tree, quiet_logger, monkeypatch):
    real_scandir = lse.os.scandir

    def guarded_scandir(path):
        if str(path).endswith("music"):
            raise PermissionError(13, "Permission denied", str(path))
        return real_scandir(path)

    monkeypatch.setattr(lse.os, "scandir", guarded_scandir)
    result = LocalScanner(ScanConfig(roots=[str(sample_tree)]), logger=quiet_logger).traverse()

    assert "song.mp3" not in {r.name for r in result.records}
    assert len(result.records) == 7
    assert [e.path.endswith("music") for e in result.errors] == [True]


# ------------------------------- Duplicates --------------------------------- #


def test_duplicate_group_scenario_three_copies_of_two_gib():
    members = tuple(make_record(f"/x/{n}.iso", 2 * GIB, digest="d") for n in ("c", "a", "b"))
    group = DuplicateGroup(digest="d", members=members)

    assert len(group.reclaimable) == 2
    assert group.wasted_size == 4 * GIB
    assert group.keeper.path == "/x/a.iso"
    assert [m.path for m in group.reclaimable] == ["/x/b.iso", "/x/c.iso"]


def test_duplicate_group_requires_two_members():
    with pytest.raises(ValueError):
        DuplicateGroup(digest="d", members=(make_record("/x/a", 10, digest="d"),))


def test_find_duplicate_groups_drops_singletons_and_orders_by_waste():
    index = {
        "solo": [make_record("/s", 100, digest="solo")],
        "small": [make_record("/a1", 10, digest="small"), make_record("/a2", 10, digest="small")],
        "big": [make_record(f"/b{i}", 50, digest="big") for i in range(3)],
    }
    groups = find_duplicate_groups(index)

    assert [g.digest for g in groups] == ["big", "small"]
    for g in groups:
        assert len(g.members) >= 2
        assert g.wasted_size == g.size_each * (len(g.members) - 1)


def test_detect_duplicates_across_roots(tmp_path, quiet_logger):
    write_file(tmp_path / "one" / "x.txt", b"payload")
    write_file(tmp_path / "two" / "y.txt", b"payload")
    write_file(tmp_path / "two" / "z.txt", b"other")

    (group,) = detect_duplicates([str(tmp_path / "one"), str(tmp_path / "two")], logger=quiet_logger)

    assert group.keeper.name == "x.txt"
    assert group.wasted_size == len(b"payload")


# ----------------------------- Classification ------------------------------- #


def test_classify_large_and_unused():
    now = time.time()
    old = now - 400 * 86400
    records = [
        make_record("/big1", 300, mtime=now),
        make_record("/big2", 500, mtime=now),
        make_record("/big3", 200, mtime=old, atime=old),
        make_record("/old_read_recently", 1, mtime=old, atime=now),
        make_record("/old", 1, mtime=old),
        make_record("/older", 1, mtime=old - 86400),
        make_record("/x.tmp", 1, mtime=now),
    ]
    cfg = ScanConfig(roots=["/"], hash_size_ceiling=50, large_file_threshold=200, largest_files_limit=2)

    c = classify_records(records, cfg, now_ts=now)

    assert [r.path for r in c.largest_files] == ["/big2", "/big1"]
    assert c.large_count == 3
    assert [r.path for r in c.unused_files] == ["/older", "/big3", "/old"]
    assert c.unused_count == 3
    assert [r.path for r in c.temporary_files] == ["/x.tmp"]


def test_unused_sample_is_capped():
    old = time.time() - 400 * 86400
    records = [make_record(f"/f{i}", 1, mtime=old - i) for i in range(10)]
    cfg = ScanConfig(roots=["/"], unused_files_limit=3)

    c = classify_records(records, cfg)

    assert len(c.unused_files) == 3
    assert c.unused_count == 10


def test_stale_file_detected_in_real_scan(tmp_path, quiet_logger):
    root = tmp_path / "root"
    # larger than the ceiling so reading for a digest never touches atime
    write_file(root / "ancient.dat", b"0123456789", age_days=400)
    cfg = ScanConfig(roots=[str(root)], hash_size_ceiling=4, large_file_threshold=1000)

    payload = scan_directory(str(root), config=cfg, logger=quiet_logger)

    assert payload["unused_files_count"] == 1
    assert payload["unused_files"][0]["name"] == "ancient.dat"


def test_rescan_keeps_stale_files_stale(tmp_path, quiet_logger):
    root = tmp_path / "root"
    path = write_file(root / "ancient.dat", b"0123456789", age_days=400)
    before = os.stat(path)

    first = scan_directory(str(root), logger=quiet_logger)
    second = scan_directory(str(root), logger=quiet_logger)

    # the file was read for its digest
    assert first["unused_files"][0]["hash"] == hashlib.sha256(b"0123456789").hexdigest()
    assert first["unused_files_count"] == second["unused_files_count"] == 1
    assert first["unused_files"] == second["unused_files"]
    assert os.stat(path).st_atime_ns == before.st_atime_ns


# --------------------------------- Links ------------------------------------ #


def symlink_or_skip(target, link, target_is_directory=False):
    try:
        os.symlink(target, link, target_is_directory=target_is_directory)
    except (OSError, NotImplementedError) as exc:
        pytest.skip(f"symlinks unavailable: {exc}")


@pytest.mark.parametrize("follow", [False, True])
def test_broken_symlink_is_recorded(tmp_path, quiet_logger, follow):
    root = tmp_path / "root"
    write_file(root / "real.txt", b"data")
    symlink_or_skip(str(root / "missing.txt"), str(root / "dangling"))

    cfg = ScanConfig(roots=[str(root)], follow_symlinks=follow)
    result = LocalScanner(cfg, logger=quiet_logger).traverse()

    assert [r.name for r in result.records] == ["real.txt"]
    assert [(e.path.rsplit(os.sep, 1)[-1], e.error) for e in result.errors] == [("dangling", "broken symlink")]


@pytest.mark.parametrize("workers", [1, 2])
def test_followed_directory_alias_is_not_a_duplicate(tmp_path, quiet_logger, workers):
    root = tmp_path / "root"
    write_file(root / "data" / "movie.bin", b"m" * 4096)
    symlink_or_skip(str(root / "data"), str(root / "alias"), target_is_directory=True)

    cfg = ScanConfig(roots=[str(root)], follow_symlinks=True, workers=workers)
    result = LocalScanner(cfg, logger=quiet_logger).traverse()

    assert rel_paths(result.records, root.resolve()) == ["alias/movie.bin"]
    assert find_duplicate_groups(result.digest_index) == []
    assert result.aliases_dropped == 1


def test_unfollowed_directory_alias_is_not_walked(tmp_path, quiet_logger):
    root = tmp_path / "root"
    write_file(root / "data" / "movie.bin", b"m" * 4096)
    symlink_or_skip(str(root / "data"), str(root / "alias"), target_is_directory=True)

    result = LocalScanner(ScanConfig(roots=[str(root)]), logger=quiet_logger).traverse()

    assert rel_paths(result.records, root.resolve()) == ["data/movie.bin"]
    assert not result.errors


@pytest.mark.parametrize("workers", [1, 2])
def test_symlink_loop_is_recorded_and_walk_finishes(tmp_path, quiet_logger, workers):
    root = tmp_path / "root"
    write_file(root / "data" / "movie.bin", b"m" * 4096)
    symlink_or_skip(str(root), str(root / "data" / "loop"), target_is_directory=True)

    cfg = ScanConfig(roots=[str(root)], follow_symlinks=True, workers=workers)
    result = LocalScanner(cfg, logger=quiet_logger).traverse()

    assert rel_paths(result.records, root.resolve()) == ["data/movie.bin"]
    assert [e.error for e in result.errors] == ["symlink loop"]


def test_hard_links_are_one_physical_file(tmp_path, quiet_logger):
    root = tmp_path / "root"
    write_file(root / "a.bin", b"z" * 2048)
    try:
        os.link(root / "a.bin", root / "b.bin")
    except (OSError, NotImplementedError) as exc:
        pytest.skip(f"hard links unavailable: {exc}")

    groups = detect_duplicates([str(root)], logger=quiet_logger)

    assert groups == []


# -------------------------------- Payload ----------------------------------- #


def test_local_payload_shape(sample_tree, quiet_logger):
    payload = scan_directory(str(sample_tree), logger=quiet_logger)

    assert payload["total_files"] == 8
    assert payload["total_size"] == sum(len(x) for x in (
        b"same content", b"same content", b"same content", b"unique", b"x" * 64, b"partial"))
    (dup,) = payload["duplicates"]
    assert dup["total_size"] == 2 * len(b"same content")
    assert dup["keeper"].endswith("a.txt")
    assert len(dup["files"]) == 3
    assert payload["duplicate_waste_bytes"] == dup["total_size"]
    assert [f["name"] for f in payload["temporary_files"]] == ["download.part"]
    assert payload["file_types"][".txt"] == 5
    assert payload["errors_count"] == 0
    json.dumps(payload)


def test_payload_from_traversal_is_deterministic(sample_tree, quiet_logger):
    cfg = ScanConfig(roots=[str(sample_tree)])
    first = build_local_payload(LocalScanner(cfg, logger=quiet_logger).traverse(), cfg)
    second = build_local_payload(LocalScanner(cfg, logger=quiet_logger).traverse(), cfg)

    for key in ("total_files", "total_size", "duplicates", "file_types", "largest_files", "temporary_files"):
        assert first[key] == second[key]


# --------------------------------- Config ----------------------------------- #


def test_config_rejects_ceiling_not_below_large_threshold():
    with pytest.raises(ValueError):
        ScanConfig(roots=["/"], hash_size_ceiling=100, large_file_threshold=100)


def test_config_overrides_from_file(tmp_path):
    policy = tmp_path / "scan.json"
    policy.write_text(json.dumps({"stale_days": 30, "skip_names": ["vendor"], "roots": ["/ignored"]}))

    cfg = ScanConfig.from_file(policy, roots=["/data"])

    assert cfg.stale_days == 30
    assert cfg.skip_names == {"vendor"}
    assert cfg.roots == ["/data"]


def test_config_file_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        ScanConfig.from_file(tmp_path / "missing.json", roots=["/"])

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"not_a_field": 1}))
    with pytest.raises(ValueError, match="not_a_field"):
        ScanConfig.from_file(bad, roots=["/"])
