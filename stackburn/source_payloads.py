"""Validated ingestion schema for per-source scan payloads.

Each source (local tree, cloud file store, code-hosting account) hands the
engine a loosely structured JSON document. Every field is optional: absent
or null fields fall back to typed defaults here, once, so the analyzers can
read attributes without existence checks. Documents that are not JSON
objects, or whose fields have the wrong type, raise ``PayloadError`` scoped
to the one source.
"""

from __future__ import annotations

import datetime as dt
import json
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, ValidationError, model_validator

SOURCE_LOCAL = "local"
SOURCE_CLOUD = "cloud"
SOURCE_CODE_HOSTING = "code_hosting"
KNOWN_SOURCES = (SOURCE_LOCAL, SOURCE_CLOUD, SOURCE_CODE_HOSTING)

SOURCE_LABELS = {
    SOURCE_LOCAL: "Local Files",
    SOURCE_CLOUD: "Cloud Drive",
    SOURCE_CODE_HOSTING: "Code Hosting",
}


class PayloadError(ValueError):
    """A source payload could not be ingested."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message


def parse_timestamp(value: Any) -> dt.datetime | None:
    """ISO-8601 string to an aware UTC datetime; None when unparsable."""
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


# ------------------------------ Schema Models ------------------------------- #


class PayloadModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            return {k: v for k, v in data.items() if v is not None}
        return data


class FileEntry(PayloadModel):
    path: str = ""
    name: str = ""
    size: NonNegativeInt = 0

    @property
    def label(self) -> str:
        return self.path or self.name


class DuplicateEntry(PayloadModel):
    hash: str = ""
    files: list[FileEntry] = Field(default_factory=list)
    # wasted bytes: one member is the keeper and is not counted
    total_size: NonNegativeInt = 0


class LocalPayload(PayloadModel):
    total_files: NonNegativeInt = 0
    total_size: NonNegativeInt = 0
    duplicates: list[DuplicateEntry] = Field(default_factory=list)
    largest_files: list[FileEntry] = Field(default_factory=list)
    unused_files: list[FileEntry] = Field(default_factory=list)
    temporary_files: list[FileEntry] = Field(default_factory=list)
    # set by the scanner when the walk was cut short or entries were unreadable
    cancelled: bool = False
    errors_count: NonNegativeInt = 0


class CloudFileEntry(PayloadModel):
    name: str = ""
    size: NonNegativeInt = 0
    # kept raw; an unparsable value only drops this entry from stale counting
    modified_time: Any = None


class CloudPayload(PayloadModel):
    total_files: NonNegativeInt = 0
    total_size: NonNegativeInt = 0
    file_types: dict[str, NonNegativeInt] = Field(default_factory=dict)
    oldest_files: list[CloudFileEntry] = Field(default_factory=list)


class RepoEntry(PayloadModel):
    full_name: str = ""
    name: str = ""
    size: NonNegativeInt = 0  # kilobytes

    @property
    def label(self) -> str:
        return self.full_name or self.name


class CodeHostingPayload(PayloadModel):
    total_repos: NonNegativeInt = 0
    total_size_kb: NonNegativeInt = 0
    stale_repos: list[RepoEntry] = Field(default_factory=list)
    archived_repos: list[RepoEntry] = Field(default_factory=list)
    inactive_forks: list[RepoEntry] = Field(default_factory=list)


PAYLOAD_MODELS: dict[str, type[PayloadModel]] = {
    SOURCE_LOCAL: LocalPayload,
    SOURCE_CLOUD: CloudPayload,
    SOURCE_CODE_HOSTING: CodeHostingPayload,
}


# -------------------------------- Ingestion --------------------------------- #


def _summarize_validation(exc: ValidationError, limit: int = 5) -> str:
    parts = []
    for err in exc.errors()[:limit]:
        loc = ".".join(str(x) for x in err.get("loc", ())) or "(root)"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    more = exc.error_count() - limit
    if more > 0:
        parts.append(f"... {more} more")
    return "; ".join(parts)


def parse_payload(source: str, raw: Any) -> PayloadModel:
    """Validate one source document (mapping, JSON text or model instance)."""
    model = PAYLOAD_MODELS.get(source)
    if model is None:
        raise PayloadError(source, f"unknown source; expected one of {', '.join(KNOWN_SOURCES)}")
    if isinstance(raw, model):
        return raw

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PayloadError(source, f"not a well-formed JSON document ({exc.msg} at line {exc.lineno})") from exc

    if not isinstance(raw, Mapping):
        raise PayloadError(source, f"expected a JSON object, got {type(raw).__name__}")

    try:
        return model.model_validate(dict(raw))
    except ValidationError as exc:
        raise PayloadError(source, f"schema validation failed: {_summarize_validation(exc)}") from exc


__all__ = [
    "KNOWN_SOURCES",
    "SOURCE_CLOUD",
    "SOURCE_CODE_HOSTING",
    "SOURCE_LABELS",
    "SOURCE_LOCAL",
    "CloudPayload",
    "CodeHostingPayload",
    "LocalPayload",
    "PayloadError",
    "parse_payload",
    "parse_timestamp",
]
