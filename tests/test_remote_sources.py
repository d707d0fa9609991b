import datetime as dt

import pytest

from stackburn.remote_sources import (
    SessionExpired,
    SessionNotFound,
    SessionStore,
    SourceSession,
    mime_bucket,
    summarize_drive_files,
    summarize_repositories,
)
from stackburn.source_payloads import parse_payload

T0 = dt.datetime(2025, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


# -------------------------------- Sessions ---------------------------------- #


def test_session_lifecycle():
    session = SourceSession.create("cloud", "secret-token-1234", ttl_seconds=60, now=T0)

    assert session.is_active(T0)
    assert session.bearer(T0 + dt.timedelta(seconds=59)) == "secret-token-1234"
    assert session.is_expired(T0 + dt.timedelta(seconds=60))
    with pytest.raises(SessionExpired):
        session.bearer(T0 + dt.timedelta(seconds=61))


def test_session_never_exposes_token():
    session = SourceSession.create("code_hosting", "ghp_abcdefgh", now=T0)

    described = session.describe(T0)
    assert "ghp_abcdefgh" not in str(described)
    assert described["token_hint"] == "...efgh"
    assert "ghp_abcdefgh" not in repr(session)
    assert described["remaining_seconds"] == 3600


@pytest.mark.parametrize("source, token, ttl", [("local", "t", 60), ("cloud", "  ", 60), ("cloud", "t", 0)])
def test_session_creation_validates(source, token, ttl):
    with pytest.raises(ValueError):
        SourceSession.create(source, token, ttl_seconds=ttl)


def test_store_get_revoke_and_purge():
    store = SessionStore(ttl_seconds=30)
    a = store.create("cloud", "aaaa-token", now=T0)
    b = store.create("code_hosting", "bbbb-token", ttl_seconds=300, now=T0)

    assert store.get(a.session_id, now=T0) is a
    assert len(store) == 2

    with pytest.raises(SessionExpired):
        store.get(a.session_id, now=T0 + dt.timedelta(seconds=31))
    # expired sessions are dropped on access
    with pytest.raises(SessionNotFound):
        store.get(a.session_id, now=T0)

    assert store.revoke(b.session_id) is True
    assert b.revoked
    assert store.revoke(b.session_id) is False
    with pytest.raises(SessionNotFound):
        store.get(b.session_id)

    store.create("cloud", "cccc-token", now=T0)
    assert store.purge_expired(now=T0 + dt.timedelta(hours=1)) == 1
    assert len(store) == 0


def test_stores_are_independent():
    first, second = SessionStore(), SessionStore()
    session = first.create("cloud", "token-xyz")
    with pytest.raises(SessionNotFound):
        second.get(session.session_id)


# ------------------------------ Drive listings ------------------------------ #


@pytest.mark.parametrize(
    "mime, bucket",
    [
        ("image/png", "Images"),
        ("video/mp4", "Videos"),
        ("audio/mpeg", "Audio"),
        ("application/vnd.google-apps.document", "Documents"),
        ("application/vnd.google-apps.spreadsheet", "Spreadsheets"),
        ("application/vnd.google-apps.presentation", "Presentations"),
        ("application/pdf", "PDFs"),
        ("application/vnd.google-apps.folder", "Folders"),
        ("application/zip", "Other"),
        ("", "Other"),
    ],
)
def test_mime_bucket(mime, bucket):
    assert mime_bucket(mime) == bucket


def test_summarize_drive_files():
    files = [
        {"id": "1", "name": "a.mp4", "mimeType": "video/mp4", "size": "3000", "modifiedTime": "2020-01-01T00:00:00Z"},
        {"id": "2", "name": "b.png", "mime_type": "image/png", "size": 100, "modified_time": "2024-01-01T00:00:00Z"},
        {"id": "3", "name": "folder", "mimeType": "application/vnd.google-apps.folder"},
        {"id": "4", "name": "c.png", "mimeType": "image/png", "size": "oops", "modifiedTime": "garbage"},
    ]

    summary = summarize_drive_files(files, sample_limit=2)

    assert summary["total_files"] == 4
    assert summary["total_size"] == 3100
    assert summary["file_types"] == {"Folders": 1, "Images": 2, "Videos": 1}
    assert [f["name"] for f in summary["largest_files"]] == ["a.mp4", "b.png"]
    assert [f["name"] for f in summary["oldest_files"]] == ["a.mp4", "b.png"]
    assert "_modified" not in summary["oldest_files"][0]

    payload = parse_payload("cloud", summary)
    assert payload.total_files == 4
    assert payload.oldest_files[0].modified_time == "2020-01-01T00:00:00Z"


# --------------------------- Repository listings ---------------------------- #


def test_summarize_repositories():
    repos = [
        {"full_name": "me/old", "size": 100, "pushed_at": "2024-01-01T00:00:00Z", "language": "Rust"},
        {"full_name": "me/old-fork", "size": 50, "pushed_at": "2024-01-01T00:00:00Z", "fork": True},
        {"full_name": "me/archived", "size": 10, "pushed_at": "2023-01-01T00:00:00Z", "archived": True},
        {"full_name": "me/fresh", "size": 500, "pushed_at": "2025-05-20T00:00:00Z", "private": True,
         "language": "Python"},
        {"name": "nodate", "owner": {"login": "me"}, "size": 5, "pushed_at": "not a date"},
    ]

    summary = summarize_repositories(repos, stale_days=180, now=T0)

    assert summary["total_repos"] == 5
    assert summary["private_repos"] == 1
    assert summary["public_repos"] == 4
    assert summary["total_size_kb"] == 665
    assert [r["full_name"] for r in summary["stale_repos"]] == ["me/old", "me/old-fork"]
    assert [r["full_name"] for r in summary["inactive_forks"]] == ["me/old-fork"]
    assert [r["full_name"] for r in summary["archived_repos"]] == ["me/archived"]
    assert summary["repos_by_language"] == {"Python": 1, "Rust": 1}
    assert summary["largest_repos"][0]["full_name"] == "me/fresh"
    assert summary["warnings"] == ["code_hosting: unparsable push date for me/nodate"]
