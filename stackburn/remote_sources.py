"""Remote source sessions and listing summarizers.

Token exchange and the HTTP clients for the cloud drive and code-hosting
APIs are not part of this package. Callers that fetch raw listings keep
their credentials in a ``SourceSession`` they own (no process-wide token
globals) and pass the listings to the summarizers below, which condense them
into the payloads ingested by the burn score engine.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import secrets
import threading
from collections import Counter
from typing import Any, Iterable, Mapping

from .local_scan_engine import APP_NAME
from .source_payloads import SOURCE_CLOUD, SOURCE_CODE_HOSTING, parse_timestamp

DEFAULT_SESSION_TTL = 3600
STALE_REPO_DAYS = 180
LISTING_SAMPLE_LIMIT = 10
REMOTE_SOURCES = (SOURCE_CLOUD, SOURCE_CODE_HOSTING)

LOGGER = logging.getLogger(APP_NAME)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _iso(value: dt.datetime | None) -> str | None:
    return value.replace(microsecond=0).isoformat() if value else None


# -------------------------------- Sessions ---------------------------------- #


class SessionError(ValueError):
    pass


class SessionNotFound(SessionError):
    pass


class SessionExpired(SessionError):
    pass


@dataclasses.dataclass(slots=True)
class SourceSession:
    """Credential for one remote source with an explicit lifetime."""

    session_id: str
    source: str
    token: str = dataclasses.field(repr=False)
    created_at: dt.datetime = dataclasses.field(default_factory=_utcnow)
    expires_at: dt.datetime = dataclasses.field(default_factory=_utcnow)
    revoked: bool = False

    @classmethod
    def create(
        cls,
        source: str,
        token: str,
        ttl_seconds: int = DEFAULT_SESSION_TTL,
        now: dt.datetime | None = None,
    ) -> "SourceSession":
        if source not in REMOTE_SOURCES:
            raise ValueError(f"Sessions are only kept for remote sources: {', '.join(REMOTE_SOURCES)}")
        if not token or not token.strip():
            raise ValueError("Session token must not be empty")
        if ttl_seconds <= 0:
            raise ValueError("Session ttl must be positive")
        created = now or _utcnow()
        return cls(
            session_id=secrets.token_hex(16),
            source=source,
            token=token.strip(),
            created_at=created,
            expires_at=created + dt.timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: dt.datetime | None = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def is_active(self, now: dt.datetime | None = None) -> bool:
        return not self.revoked and not self.is_expired(now)

    def bearer(self, now: dt.datetime | None = None) -> str:
        """Token for an outgoing request; refuses once the session ended."""
        if self.revoked:
            raise SessionExpired(f"Session {self.session_id} was revoked")
        if self.is_expired(now):
            raise SessionExpired(f"Session {self.session_id} expired at {_iso(self.expires_at)}")
        return self.token

    def revoke(self) -> None:
        self.revoked = True

    def describe(self, now: dt.datetime | None = None) -> dict[str, Any]:
        ref = now or _utcnow()
        remaining = max(0.0, (self.expires_at - ref).total_seconds())
        return {
            "session_id": self.session_id,
            "source": self.source,
            "token_hint": f"...{self.token[-4:]}" if len(self.token) > 4 else "...",
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "active": self.is_active(ref),
            "remaining_seconds": int(remaining),
        }


class SessionStore:
    """In-memory sessions owned by one caller; nothing outlives the process."""

    def __init__(self, ttl_seconds: int = DEFAULT_SESSION_TTL):
        if ttl_seconds <= 0:
            raise ValueError("Session ttl must be positive")
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, SourceSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def create(
        self,
        source: str,
        token: str,
        ttl_seconds: int | None = None,
        now: dt.datetime | None = None,
    ) -> SourceSession:
        session = SourceSession.create(source, token, ttl_seconds or self.ttl_seconds, now=now)
        with self._lock:
            self._sessions[session.session_id] = session
        LOGGER.info("session_created source=%s session=%s expires=%s", source, session.session_id, _iso(session.expires_at))
        return session

    def get(self, session_id: str, now: dt.datetime | None = None) -> SourceSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(f"Unknown session: {session_id}")
            if not session.is_active(now):
                del self._sessions[session_id]
                raise SessionExpired(f"Session {session_id} is no longer active")
            return session

    def revoke(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.revoke()
        LOGGER.info("session_revoked source=%s session=%s", session.source, session_id)
        return True

    def purge_expired(self, now: dt.datetime | None = None) -> int:
        with self._lock:
            dead = [sid for sid, s in self._sessions.items() if not s.is_active(now)]
            for sid in dead:
                del self._sessions[sid]
        return len(dead)


# ---------------------------- Cloud Drive Listing --------------------------- #


def mime_bucket(mime_type: str) -> str:
    t = (mime_type or "").lower()
    if t.startswith("image/"):
        return "Images"
    if t.startswith("video/"):
        return "Videos"
    if t.startswith("audio/"):
        return "Audio"
    if "document" in t:
        return "Documents"
    if "spreadsheet" in t:
        return "Spreadsheets"
    if "presentation" in t:
        return "Presentations"
    if "pdf" in t:
        return "PDFs"
    if "folder" in t:
        return "Folders"
    return "Other"


def _pick(item: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return default


def _as_int(value: Any) -> int:
    # drive APIs report sizes as strings
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def summarize_drive_files(
    files: Iterable[Mapping[str, Any]],
    sample_limit: int = LISTING_SAMPLE_LIMIT,
) -> dict[str, Any]:
    """Condense a cloud file listing into the cloud payload."""
    entries = []
    for f in files:
        modified = _pick(f, "modified_time", "modifiedTime")
        entries.append({
            "id": _pick(f, "id", default=""),
            "name": _pick(f, "name", default=""),
            "mime_type": _pick(f, "mime_type", "mimeType", default=""),
            "size": _as_int(_pick(f, "size")),
            "modified_time": modified,
            "_modified": parse_timestamp(modified),
        })

    file_types = Counter(mime_bucket(e["mime_type"]) for e in entries)
    largest = sorted(entries, key=lambda e: (-e["size"], e["name"]))[:sample_limit]
    # unparsable dates sort after every real one
    far_future = dt.datetime.max.replace(tzinfo=dt.timezone.utc)
    oldest = sorted(entries, key=lambda e: (e["_modified"] or far_future, e["name"]))[:sample_limit]

    def public(e: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in e.items() if not k.startswith("_")}

    return {
        "total_files": len(entries),
        "total_size": sum(e["size"] for e in entries),
        "file_types": dict(sorted(file_types.items())),
        "largest_files": [public(e) for e in largest],
        "oldest_files": [public(e) for e in oldest],
        "scan_timestamp": _iso(_utcnow()),
    }


# --------------------------- Repository Listing ----------------------------- #


def summarize_repositories(
    repos: Iterable[Mapping[str, Any]],
    stale_days: int = STALE_REPO_DAYS,
    now: dt.datetime | None = None,
    sample_limit: int = LISTING_SAMPLE_LIMIT,
) -> dict[str, Any]:
    """Condense a repository listing into the code-hosting payload."""
    cutoff = (now or _utcnow()) - dt.timedelta(days=stale_days)
    warnings: list[str] = []
    parsed = []
    for r in repos:
        owner = r.get("owner")
        owner_login = owner.get("login") if isinstance(owner, Mapping) else owner
        full_name = _pick(r, "full_name", default="") or "/".join(x for x in (owner_login, r.get("name")) if x)
        pushed_raw = _pick(r, "pushed_at", "updated_at")
        pushed = parse_timestamp(pushed_raw)
        if pushed is None:
            warnings.append(f"code_hosting: unparsable push date for {full_name or '(unnamed)'}")
        parsed.append({
            "full_name": full_name,
            "name": _pick(r, "name", default=""),
            "size": _as_int(_pick(r, "size")),
            "language": _pick(r, "language"),
            "is_private": bool(_pick(r, "is_private", "private", default=False)),
            "is_fork": bool(_pick(r, "is_fork", "fork", default=False)),
            "archived": bool(_pick(r, "archived", default=False)),
            "pushed_at": _iso(pushed) if pushed else pushed_raw,
            "_pushed": pushed,
        })

    def is_stale(repo: dict[str, Any]) -> bool:
        return repo["_pushed"] is not None and repo["_pushed"] < cutoff and not repo["archived"]

    def public(repo: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in repo.items() if not k.startswith("_")}

    stale = [p for p in parsed if is_stale(p)]
    forks = [p for p in stale if p["is_fork"]]
    archived = [p for p in parsed if p["archived"]]
    languages = Counter(p["language"] for p in parsed if p["language"])
    largest = sorted(parsed, key=lambda p: (-p["size"], p["full_name"]))[:sample_limit]
    private = sum(1 for p in parsed if p["is_private"])

    for w in warnings:
        LOGGER.warning("repo_date_unparsable %s", w)

    return {
        "total_repos": len(parsed),
        "private_repos": private,
        "public_repos": len(parsed) - private,
        "total_size_kb": sum(p["size"] for p in parsed),
        "stale_repos": [public(p) for p in stale],
        "inactive_forks": [public(p) for p in forks],
        "archived_repos": [public(p) for p in archived],
        "repos_by_language": dict(sorted(languages.items())),
        "largest_repos": [public(p) for p in largest],
        "scan_timestamp": _iso(_utcnow()),
        "warnings": warnings,
    }


__all__ = [
    "DEFAULT_SESSION_TTL",
    "SessionError",
    "SessionExpired",
    "SessionNotFound",
    "SessionStore",
    "SourceSession",
    "mime_bucket",
    "summarize_drive_files",
    "summarize_repositories",
]
