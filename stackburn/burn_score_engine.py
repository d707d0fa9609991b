#!/usr/bin/env python3
"""StackBurn burn score engine.

Turns up to three per-source scan payloads (local tree, cloud drive, code
hosting) into one 0-100 burn score:
- Per-source analyzers: bounded score plus partial category statistics
- Aggregator: field-wise merge of the six waste categories
- Score engine: weighted overall score, total bloat, potential savings
- Recommendation engine: prioritized, sorted cleanup actions
- Markdown report and optional matplotlib charts
- CLI for scanning, duplicate detection, scoring and reporting

Category sizes are always raw gigabytes (1 GiB = 2**30 bytes). Potential
savings and recommendation impact each apply one removability coefficient
to those raw sizes.
"""

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import json
import logging
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from .local_scan_engine import (
    APP_NAME,
    LARGE_FILE_THRESHOLD,
    STALE_DAYS,
    ScanConfig,
    apply_overrides,
    detect_duplicates,
    now_utc_iso,
    read_policy_file,
    scan_directory,
)
from .source_payloads import (
    KNOWN_SOURCES,
    SOURCE_CLOUD,
    SOURCE_CODE_HOSTING,
    SOURCE_LABELS,
    SOURCE_LOCAL,
    CloudPayload,
    CodeHostingPayload,
    LocalPayload,
    PayloadError,
    parse_payload,
    parse_timestamp,
)

# ------------------------------- Constants ---------------------------------- #

GIB = float(1024 ** 3)
KIB = 1024

DEFAULT_EXPORT_DIR = Path.cwd() / "stackburn_reports"
DEFAULT_LOG_FILE = Path.home() / ".local" / "share" / APP_NAME / "stackburn.log"

CATEGORY_NAMES = ("duplicates", "versioned", "stale", "archived", "large_unused", "temporary")
CATEGORY_TITLES = {
    "duplicates": "Duplicates",
    "versioned": "Versioned / Inactive Forks",
    "stale": "Stale Files",
    "archived": "Archived",
    "large_unused": "Large Files",
    "temporary": "Temporary Files",
}

PRIORITY_RANK = {"Critical": 0, "High": 1, "Medium": 2, "Low": 3}
EFFORT_LEVELS = ("Easy", "Moderate", "Complex")


def setup_logger(log_file: Path = DEFAULT_LOG_FILE) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        chosen.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "stackburn.log"
        chosen.parent.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.INFO)
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(fh)
    return logger


def bytes_to_gb(size: int | float) -> float:
    return float(size) / GIB


def clamp_score(score: float) -> float:
    return min(max(float(score), 0.0), 100.0)


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True)
class CategoryStats:
    count: int = 0
    total_size_gb: float = 0.0
    percentage_of_total: float = 0.0
    items: list[str] = dataclasses.field(default_factory=list)

    def add(self, count: int, size_bytes: int, items: Iterable[str] = (), limit: int | None = None) -> None:
        self.count += count
        self.total_size_gb += bytes_to_gb(size_bytes)
        for item in items:
            if limit is not None and len(self.items) >= limit:
                break
            if item:
                self.items.append(item)

    def merged(self, other: "CategoryStats") -> "CategoryStats":
        # percentages are recomputed after merging, never summed
        return CategoryStats(
            count=self.count + other.count,
            total_size_gb=self.total_size_gb + other.total_size_gb,
            items=[*self.items, *other.items],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_size_gb": round(self.total_size_gb, 6),
            "percentage_of_total": round(self.percentage_of_total, 2),
            "items": list(self.items),
        }


@dataclasses.dataclass(slots=True)
class FileCategories:
    duplicates: CategoryStats = dataclasses.field(default_factory=CategoryStats)
    versioned: CategoryStats = dataclasses.field(default_factory=CategoryStats)
    stale: CategoryStats = dataclasses.field(default_factory=CategoryStats)
    archived: CategoryStats = dataclasses.field(default_factory=CategoryStats)
    large_unused: CategoryStats = dataclasses.field(default_factory=CategoryStats)
    temporary: CategoryStats = dataclasses.field(default_factory=CategoryStats)

    def get(self, name: str) -> CategoryStats:
        if name not in CATEGORY_NAMES:
            raise KeyError(f"Unknown category: {name}")
        return getattr(self, name)

    def items(self) -> list[tuple[str, CategoryStats]]:
        return [(name, getattr(self, name)) for name in CATEGORY_NAMES]

    def merged(self, other: "FileCategories") -> "FileCategories":
        return FileCategories(**{name: stats.merged(other.get(name)) for name, stats in self.items()})

    def to_dict(self) -> dict[str, Any]:
        return {name: stats.to_dict() for name, stats in self.items()}


@dataclasses.dataclass(frozen=True, slots=True)
class Recommendation:
    priority: str
    category: str
    action: str
    impact_gb: float
    effort: str
    details: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "category": self.category,
            "action": self.action,
            "impact_gb": round(self.impact_gb, 6),
            "effort": self.effort,
            "details": self.details,
        }


@dataclasses.dataclass(slots=True)
class SourceAnalysis:
    """One analyzer's output for one present source."""

    source: str
    score: float
    categories: FileCategories
    files_scanned: int = 0
    size_bytes: int = 0
    warnings: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(slots=True)
class BurnScoreResult:
    overall_score: float
    category_scores: dict[str, float]
    file_categories: FileCategories
    total_bloat_size_gb: float
    total_files_scanned: int
    total_scanned_gb: float
    potential_savings_gb: float
    recommendations: list[Recommendation]
    calculated_at: dt.datetime
    warnings: list[str] = dataclasses.field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_score": round(self.overall_score, 2),
            "category_scores": {k: round(v, 2) for k, v in sorted(self.category_scores.items())},
            "total_bloat_size": round(self.total_bloat_size_gb, 6),
            "total_files_scanned": self.total_files_scanned,
            "total_scanned_size": round(self.total_scanned_gb, 6),
            "recommendations": [r.to_dict() for r in self.recommendations],
            "file_categories": self.file_categories.to_dict(),
            "potential_savings": round(self.potential_savings_gb, 6),
            "calculated_at": self.calculated_at.replace(microsecond=0).isoformat(),
            "warnings": list(self.warnings),
        }


# -------------------------------- Policy ------------------------------------ #


@dataclasses.dataclass(frozen=True, slots=True)
class RecommendationRule:
    label: str
    action: str
    coefficient: float
    effort: str
    priority: str
    details: str
    escalated_priority: str | None = None
    escalate_on: str = "size"  # "size" (GB) or "count"
    escalate_above: float = 0.0

    def priority_for(self, stats: CategoryStats) -> str:
        if not self.escalated_priority:
            return self.priority
        value = stats.total_size_gb if self.escalate_on == "size" else stats.count
        return self.escalated_priority if value > self.escalate_above else self.priority

    def validate(self, category: str) -> None:
        for p in (self.priority, self.escalated_priority):
            if p is not None and p not in PRIORITY_RANK:
                raise ValueError(f"{category}: unknown priority {p!r}")
        if self.effort not in EFFORT_LEVELS:
            raise ValueError(f"{category}: unknown effort {self.effort!r}")
        if self.escalate_on not in {"size", "count"}:
            raise ValueError(f"{category}: escalate_on must be 'size' or 'count'")
        if not 0.0 <= self.coefficient <= 1.0:
            raise ValueError(f"{category}: coefficient must be within [0, 1]")


def default_recommendation_rules() -> dict[str, RecommendationRule]:
    return {
        "duplicates": RecommendationRule(
            label="Duplicates",
            action="Remove duplicate files",
            coefficient=0.9,
            effort="Easy",
            priority="High",
            escalated_priority="Critical",
            escalate_on="size",
            escalate_above=5.0,
            details="Found {count} duplicate files taking up {size_gb:.2f} GB. "
                    "Use the duplicate finder to safely remove copies.",
        ),
        "stale": RecommendationRule(
            label="Stale Files",
            action="Archive or delete old files",
            coefficient=0.7,
            effort="Moderate",
            priority="Medium",
            escalated_priority="High",
            escalate_on="count",
            escalate_above=100,
            details="{count} files haven't been accessed in over 6 months ({size_gb:.2f} GB). "
                    "Review and archive or delete.",
        ),
        "large_unused": RecommendationRule(
            label="Large Files",
            action="Review large files",
            coefficient=0.5,
            effort="Moderate",
            priority="Medium",
            details="{count} large files found ({size_gb:.2f} GB total). "
                    "Consider compressing or moving to cloud storage.",
        ),
        "temporary": RecommendationRule(
            label="Temporary Files",
            action="Clear temporary files",
            coefficient=1.0,
            effort="Easy",
            priority="Low",
            details="{count} temporary or partial-download files ({size_gb:.2f} GB) can be removed.",
        ),
        "archived": RecommendationRule(
            label="Archived Repositories",
            action="Export and delete archived repositories",
            coefficient=0.8,
            effort="Moderate",
            priority="Low",
            details="{count} archived repositories still occupy {size_gb:.2f} GB.",
        ),
        "versioned": RecommendationRule(
            label="Inactive Forks",
            action="Remove inactive forks",
            coefficient=0.5,
            effort="Easy",
            priority="Low",
            details="{count} forks have seen no pushes in months ({size_gb:.2f} GB).",
        ),
    }


@dataclasses.dataclass(slots=True)
class BurnScorePolicy:
    stale_days: int = STALE_DAYS
    large_file_threshold: int = LARGE_FILE_THRESHOLD

    # cloud
    media_buckets: tuple[str, ...] = ("Images", "Videos")
    media_share_threshold: float = 40.0
    media_points: float = 10.0
    other_bucket: str = "Other"
    other_share_threshold: float = 30.0
    other_points: float = 5.0
    cloud_stale_points: float = 1.0
    cloud_stale_cap: float = 20.0

    # local
    duplicate_points: float = 2.0
    duplicate_cap: float = 30.0
    large_points: float = 1.0
    large_cap: float = 20.0
    unused_points: float = 1.0
    unused_cap: float = 20.0

    # code hosting
    stale_repo_points: float = 3.0
    stale_repo_cap: float = 30.0
    archived_points: float = 2.0
    archived_cap: float = 20.0
    fork_points: float = 2.0
    fork_cap: float = 20.0

    source_weights: dict[str, float] = dataclasses.field(default_factory=lambda: {
        SOURCE_LOCAL: 0.40,
        SOURCE_CLOUD: 0.35,
        SOURCE_CODE_HOSTING: 0.25,
    })
    savings_coefficients: dict[str, float] = dataclasses.field(default_factory=lambda: {
        "duplicates": 0.9,
        "stale": 0.7,
        "archived": 0.8,
        "versioned": 0.5,
        "temporary": 1.0,
    })
    recommendation_rules: dict[str, RecommendationRule] = dataclasses.field(
        default_factory=default_recommendation_rules
    )
    recommendation_categories: tuple[str, ...] = ("duplicates", "stale", "large_unused")

    duplicate_samples_per_group: int = 3
    category_sample_limit: int = 100

    def validate(self) -> None:
        if self.stale_days < 0:
            raise ValueError("stale_days must be >= 0")
        for name, weight in self.source_weights.items():
            if weight < 0:
                raise ValueError(f"source weight for {name} must be >= 0")
        for name, coef in self.savings_coefficients.items():
            if name not in CATEGORY_NAMES:
                raise ValueError(f"Unknown savings category: {name}")
            if not 0.0 <= coef <= 1.0:
                raise ValueError(f"savings coefficient for {name} must be within [0, 1]")
        for name in self.recommendation_categories:
            if name not in self.recommendation_rules:
                raise ValueError(f"No recommendation rule for category: {name}")
        for name, rule in self.recommendation_rules.items():
            if name not in CATEGORY_NAMES:
                raise ValueError(f"Unknown recommendation category: {name}")
            rule.validate(name)

    @classmethod
    def from_mapping(cls, overrides: Mapping[str, Any]) -> "BurnScorePolicy":
        policy = cls()
        overrides = dict(overrides)
        rule_overrides = overrides.pop("recommendation_rules", None) or {}
        apply_overrides(policy, overrides)

        rules = dict(policy.recommendation_rules)
        for name, fields in rule_overrides.items():
            base = rules.get(name)
            try:
                rules[name] = RecommendationRule(**fields) if base is None else dataclasses.replace(base, **fields)
            except TypeError as exc:
                raise ValueError(f"Invalid recommendation rule for {name}: {exc}") from exc
        policy.recommendation_rules = rules
        policy.validate()
        return policy

    @classmethod
    def from_file(cls, path: str | Path) -> "BurnScorePolicy":
        return cls.from_mapping(read_policy_file(path))


# ------------------------------- Analyzers ---------------------------------- #


def _capped(count: int, points: float, cap: float) -> float:
    return min(count * points, cap)


def analyze_local_payload(payload: LocalPayload, policy: BurnScorePolicy, now: dt.datetime | None = None) -> SourceAnalysis:
    categories = FileCategories()
    limit = policy.category_sample_limit

    for group in payload.duplicates:
        copies = max(len(group.files) - 1, 0)
        # files[0] is the keeper
        samples = [f.label for f in group.files[1:1 + policy.duplicate_samples_per_group]]
        categories.duplicates.add(copies, group.total_size, samples, limit)

    for f in payload.largest_files:
        if f.size >= policy.large_file_threshold:
            categories.large_unused.add(1, f.size, [f.label], limit)

    for f in payload.unused_files:
        categories.stale.add(1, f.size, [f.label], limit)

    for f in payload.temporary_files:
        categories.temporary.add(1, f.size, [f.label], limit)

    score = (
        _capped(categories.duplicates.count, policy.duplicate_points, policy.duplicate_cap)
        + _capped(categories.large_unused.count, policy.large_points, policy.large_cap)
        + _capped(categories.stale.count, policy.unused_points, policy.unused_cap)
    )

    warnings: list[str] = []
    if payload.cancelled:
        warnings.append(f"{SOURCE_LOCAL}: scan was cancelled; results are partial")
    if payload.errors_count:
        warnings.append(f"{SOURCE_LOCAL}: {payload.errors_count} entries could not be read during the scan")

    return SourceAnalysis(
        source=SOURCE_LOCAL,
        score=clamp_score(score),
        categories=categories,
        files_scanned=payload.total_files,
        size_bytes=payload.total_size,
        warnings=warnings,
    )


def analyze_cloud_payload(payload: CloudPayload, policy: BurnScorePolicy, now: dt.datetime | None = None) -> SourceAnalysis:
    categories = FileCategories()
    warnings: list[str] = []
    score = 0.0

    if payload.total_files > 0:
        for bucket, count in sorted(payload.file_types.items()):
            share = count * 100.0 / payload.total_files
            if bucket in policy.media_buckets and share > policy.media_share_threshold:
                score += policy.media_points
            elif bucket == policy.other_bucket and share > policy.other_share_threshold:
                score += policy.other_points

    cutoff = (now or dt.datetime.now(dt.timezone.utc)) - dt.timedelta(days=policy.stale_days)
    for f in payload.oldest_files:
        if f.modified_time is None:
            continue
        modified = parse_timestamp(f.modified_time)
        if modified is None:
            warnings.append(f"{SOURCE_CLOUD}: unparsable modified_time {f.modified_time!r} for {f.name or '(unnamed)'}")
            continue
        if modified < cutoff:
            categories.stale.add(1, f.size, [f.name], policy.category_sample_limit)

    score += _capped(categories.stale.count, policy.cloud_stale_points, policy.cloud_stale_cap)
    return SourceAnalysis(
        source=SOURCE_CLOUD,
        score=clamp_score(score),
        categories=categories,
        files_scanned=payload.total_files,
        size_bytes=payload.total_size,
        warnings=warnings,
    )


def analyze_code_hosting_payload(
    payload: CodeHostingPayload,
    policy: BurnScorePolicy,
    now: dt.datetime | None = None,
) -> SourceAnalysis:
    categories = FileCategories()
    limit = policy.category_sample_limit

    # repository sizes are reported in kilobytes
    for repo in payload.stale_repos:
        categories.stale.add(1, repo.size * KIB, [repo.label], limit)
    for repo in payload.archived_repos:
        categories.archived.add(1, repo.size * KIB, [repo.label], limit)
    for repo in payload.inactive_forks:
        categories.versioned.add(1, repo.size * KIB, [repo.label], limit)

    score = (
        _capped(len(payload.stale_repos), policy.stale_repo_points, policy.stale_repo_cap)
        + _capped(len(payload.archived_repos), policy.archived_points, policy.archived_cap)
        + _capped(len(payload.inactive_forks), policy.fork_points, policy.fork_cap)
    )
    return SourceAnalysis(
        source=SOURCE_CODE_HOSTING,
        score=clamp_score(score),
        categories=categories,
        files_scanned=payload.total_repos,
        size_bytes=payload.total_size_kb * KIB,
    )


ANALYZERS: dict[str, Callable[..., SourceAnalysis]] = {
    SOURCE_LOCAL: analyze_local_payload,
    SOURCE_CLOUD: analyze_cloud_payload,
    SOURCE_CODE_HOSTING: analyze_code_hosting_payload,
}


# --------------------------- Aggregate and Score ---------------------------- #


def merge_categories(parts: Iterable[FileCategories]) -> FileCategories:
    merged = FileCategories()
    for part in parts:
        merged = merged.merged(part)
    return merged


def apply_percentages(categories: FileCategories, total_scanned_gb: float) -> None:
    for _, stats in categories.items():
        stats.percentage_of_total = stats.total_size_gb * 100.0 / total_scanned_gb if total_scanned_gb > 0 else 0.0


def calculate_overall_score(scores: Mapping[str, float], weights: Mapping[str, float]) -> float:
    """Weighted mean over present sources; unknown sources weigh nothing."""
    total = 0.0
    weight_sum = 0.0
    for source in sorted(scores):
        weight = weights.get(source, 0.0)
        if weight <= 0:
            continue
        total += scores[source] * weight
        weight_sum += weight
    return clamp_score(total / weight_sum) if weight_sum > 0 else 0.0


def calculate_total_bloat(categories: FileCategories) -> float:
    return sum(stats.total_size_gb for _, stats in categories.items())


def calculate_potential_savings(categories: FileCategories, coefficients: Mapping[str, float]) -> float:
    # large_unused is only surfaced as a review recommendation
    return sum(categories.get(name).total_size_gb * coef for name, coef in coefficients.items())


def sort_recommendations(recs: Iterable[Recommendation]) -> list[Recommendation]:
    return sorted(recs, key=lambda r: (PRIORITY_RANK.get(r.priority, len(PRIORITY_RANK)), -r.impact_gb, r.category))


def generate_recommendations(categories: FileCategories, policy: BurnScorePolicy) -> list[Recommendation]:
    recs = []
    for name in policy.recommendation_categories:
        stats = categories.get(name)
        if stats.count <= 0:
            continue
        rule = policy.recommendation_rules[name]
        recs.append(Recommendation(
            priority=rule.priority_for(stats),
            category=rule.label,
            action=rule.action,
            impact_gb=stats.total_size_gb * rule.coefficient,
            effort=rule.effort,
            details=rule.details.format(count=stats.count, size_gb=stats.total_size_gb),
        ))
    return sort_recommendations(recs)


# -------------------------------- Engine ------------------------------------ #


class BurnScoreEngine:
    def __init__(self, policy: BurnScorePolicy | None = None, logger: logging.Logger | None = None):
        self.policy = policy or BurnScorePolicy()
        self.policy.validate()
        self.logger = logger or logging.getLogger(APP_NAME)

    def analyze_sources(
        self,
        payloads: Mapping[str, Any],
        strict: bool = False,
        now: dt.datetime | None = None,
    ) -> tuple[list[SourceAnalysis], list[str]]:
        analyses: list[SourceAnalysis] = []
        warnings: list[str] = []
        for source in KNOWN_SOURCES:
            raw = payloads.get(source)
            if raw is None:
                continue
            try:
                payload = parse_payload(source, raw)
            except PayloadError as exc:
                if strict:
                    raise
                self.logger.warning("payload_rejected source=%s err=%s", source, exc.message)
                warnings.append(str(exc))
                continue

            analysis = ANALYZERS[source](payload, self.policy, now)
            for w in analysis.warnings:
                self.logger.warning("payload_entry_skipped %s", w)
            warnings.extend(analysis.warnings)
            analyses.append(analysis)
        return analyses, warnings

    def calculate(
        self,
        local: Any = None,
        cloud: Any = None,
        code_hosting: Any = None,
        strict: bool = False,
        now: dt.datetime | None = None,
    ) -> BurnScoreResult:
        now = now or dt.datetime.now(dt.timezone.utc)
        analyses, warnings = self.analyze_sources(
            {SOURCE_LOCAL: local, SOURCE_CLOUD: cloud, SOURCE_CODE_HOSTING: code_hosting},
            strict=strict,
            now=now,
        )

        categories = merge_categories(a.categories for a in analyses)
        total_scanned_gb = bytes_to_gb(sum(a.size_bytes for a in analyses))
        apply_percentages(categories, total_scanned_gb)
        scores = {a.source: a.score for a in analyses}

        result = BurnScoreResult(
            overall_score=calculate_overall_score(scores, self.policy.source_weights),
            category_scores=scores,
            file_categories=categories,
            total_bloat_size_gb=calculate_total_bloat(categories),
            total_files_scanned=sum(a.files_scanned for a in analyses),
            total_scanned_gb=total_scanned_gb,
            potential_savings_gb=calculate_potential_savings(categories, self.policy.savings_coefficients),
            recommendations=generate_recommendations(categories, self.policy),
            calculated_at=now,
            warnings=warnings,
        )
        self.logger.info(
            "burn_score sources=%s overall=%.2f bloat_gb=%.3f savings_gb=%.3f warnings=%s",
            ",".join(sorted(scores)) or "-",
            result.overall_score,
            result.total_bloat_size_gb,
            result.potential_savings_gb,
            len(warnings),
        )
        return result


def calculate_burn_score(
    local: Any = None,
    cloud: Any = None,
    code_hosting: Any = None,
    policy: BurnScorePolicy | None = None,
    strict: bool = False,
    now: dt.datetime | None = None,
) -> BurnScoreResult:
    return BurnScoreEngine(policy).calculate(local, cloud, code_hosting, strict=strict, now=now)


def get_file_categories(
    local: Any = None,
    cloud: Any = None,
    code_hosting: Any = None,
    policy: BurnScorePolicy | None = None,
    strict: bool = False,
    now: dt.datetime | None = None,
) -> FileCategories:
    return calculate_burn_score(local, cloud, code_hosting, policy=policy, strict=strict, now=now).file_categories


# ------------------------------- Reporting ---------------------------------- #


def _as_result_dict(result: BurnScoreResult | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(result, BurnScoreResult):
        return result.to_dict()
    return dict(result)


def render_markdown_report(result: BurnScoreResult | Mapping[str, Any], top_n: int = 5) -> str:
    data = _as_result_dict(result)
    generated = parse_timestamp(data.get("calculated_at"))
    lines: list[str] = []
    lines.append("# StackBurn Analysis Report")
    lines.append("")
    lines.append(f"Generated: {generated.strftime('%Y-%m-%d %H:%M:%S UTC') if generated else 'unknown'}")
    lines.append("")
    lines.append(f"## Overall Burn Score: {float(data.get('overall_score', 0.0)):.1f}/100")
    lines.append("")
    lines.append("Higher scores indicate more digital bloat.")
    lines.append("")

    lines.append("## Summary Statistics")
    lines.append(f"- Total files scanned: {data.get('total_files_scanned', 0)}")
    lines.append(f"- Total bloat identified: {float(data.get('total_bloat_size', 0.0)):.2f} GB")
    lines.append(f"- Potential savings: {float(data.get('potential_savings', 0.0)):.2f} GB")
    lines.append("")

    lines.append("## Source Breakdown")
    scores = data.get("category_scores") or {}
    if scores:
        for source, score in scores.items():
            lines.append(f"- {SOURCE_LABELS.get(source, source)}: {float(score):.1f}/100")
    else:
        lines.append("- No sources analyzed")
    lines.append("")

    lines.append("## File Categories")
    lines.append("| Category | Count | Size (GB) | Share |")
    lines.append("|---|---:|---:|---:|")
    for name, stats in (data.get("file_categories") or {}).items():
        lines.append(
            f"| {CATEGORY_TITLES.get(name, name)} | {stats.get('count', 0)} | "
            f"{float(stats.get('total_size_gb', 0.0)):.2f} | {float(stats.get('percentage_of_total', 0.0)):.1f}% |"
        )
    lines.append("")

    lines.append("## Top Recommendations")
    recs = (data.get("recommendations") or [])[:top_n]
    if not recs:
        lines.append("No cleanup actions needed.")
    for i, rec in enumerate(recs, start=1):
        lines.append(f"{i}. **{rec['action']}** ({rec['priority']}) - {rec['details']}")
        lines.append(f"   - Impact: {float(rec['impact_gb']):.2f} GB | Effort: {rec['effort']}")
    lines.append("")

    warnings = data.get("warnings") or []
    if warnings:
        lines.append("## Warnings")
        for w in warnings:
            lines.append(f"- {w}")
        lines.append("")

    return "\n".join(lines)


class VisualReporter:
    """Charts for category sizes and per-source scores."""

    def __init__(self, output_dir: Path):
        self.output_dir = output_dir
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _import_matplotlib(self):
        try:
            import matplotlib

            matplotlib.use("Agg")
            import matplotlib.pyplot as plt
            return plt
        except ImportError as exc:
            raise RuntimeError(
                "matplotlib is required for visualize mode. Install with: pip install stackburn[visual]"
            ) from exc

    def chart_category_sizes(self, result: BurnScoreResult | Mapping[str, Any]) -> str:
        data = _as_result_dict(result)
        cats = [(CATEGORY_TITLES.get(k, k), float(v.get("total_size_gb", 0.0)))
                for k, v in (data.get("file_categories") or {}).items()]
        cats = [c for c in cats if c[1] > 0]
        if not cats:
            return ""
        plt = self._import_matplotlib()
        fig, ax = plt.subplots(figsize=(10, 5))
        ax.bar([c[0] for c in cats], [c[1] for c in cats])
        ax.set_title("Bloat by Category (GB)")
        ax.set_ylabel("GB")
        ax.tick_params(axis="x", labelrotation=20)
        out = self.output_dir / "category_sizes_bar.png"
        fig.tight_layout()
        fig.savefig(out, dpi=150)
        plt.close(fig)
        return str(out)

    def chart_source_scores(self, result: BurnScoreResult | Mapping[str, Any]) -> str:
        data = _as_result_dict(result)
        scores = data.get("category_scores") or {}
        if not scores:
            return ""
        plt = self._import_matplotlib()
        labels = [SOURCE_LABELS.get(k, k) for k in scores]
        fig, ax = plt.subplots(figsize=(8, 4))
        ax.barh(labels, [float(v) for v in scores.values()])
        ax.axvline(float(data.get("overall_score", 0.0)), linestyle="--", color="red", label="overall")
        ax.set_xlim(0, 100)
        ax.set_title("Burn Score by Source")
        ax.legend()
        out = self.output_dir / "source_scores_bar.png"
        fig.tight_layout()
        fig.savefig(out, dpi=150)
        plt.close(fig)
        return str(out)


# ---------------------------------- CLI ------------------------------------- #


def export_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def _read_payload_text(path: str | None) -> str | None:
    # raw text so a malformed document fails only its own source
    if not path:
        return None
    return Path(path).read_text(encoding="utf-8")


def _load_policy(args: argparse.Namespace) -> BurnScorePolicy:
    return BurnScorePolicy.from_file(args.policy) if args.policy else BurnScorePolicy()


def _scan_config(args: argparse.Namespace) -> ScanConfig:
    kwargs = {
        "follow_symlinks": args.follow_symlinks,
        "include_hidden": args.include_hidden,
        "workers": args.workers,
    }
    if args.scan_config:
        return ScanConfig.from_file(args.scan_config, roots=args.roots, **kwargs)
    return ScanConfig(roots=args.roots, **kwargs)


def _score_from_args(args: argparse.Namespace) -> dict[str, Any]:
    if getattr(args, "result", None):
        return json.loads(Path(args.result).read_text(encoding="utf-8"))
    result = calculate_burn_score(
        local=_read_payload_text(args.local),
        cloud=_read_payload_text(args.cloud),
        code_hosting=_read_payload_text(args.code_hosting),
        policy=_load_policy(args),
        strict=args.strict,
    )
    return result.to_dict()


def command_scan(args: argparse.Namespace) -> dict[str, Any]:
    cfg = _scan_config(args)
    return scan_directory(cfg.roots, config=cfg)


def command_duplicates(args: argparse.Namespace) -> dict[str, Any]:
    cfg = _scan_config(args)
    groups = detect_duplicates(cfg.roots, config=cfg)
    wasted = sum(g.wasted_size for g in groups)
    return {
        "generated_at": now_utc_iso(),
        "roots": cfg.roots,
        "groups": len(groups),
        "duplicate_files": sum(len(g.reclaimable) for g in groups),
        "wasted_bytes": wasted,
        "duplicates": [g.to_dict() for g in groups],
    }


def command_score(args: argparse.Namespace) -> dict[str, Any]:
    return _score_from_args(args)


def command_report(args: argparse.Namespace) -> str:
    return render_markdown_report(_score_from_args(args), top_n=args.top_n)


def command_visualize(args: argparse.Namespace) -> dict[str, Any]:
    data = _score_from_args(args)
    reporter = VisualReporter(Path(args.chart_dir))
    charts = {
        "category_sizes": reporter.chart_category_sizes(data),
        "source_scores": reporter.chart_source_scores(data),
    }
    return {"generated_at": now_utc_iso(), "charts": {k: v for k, v in charts.items() if v}}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackburn",
        description="StackBurn digital clutter scanner and burn score calculator",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--policy", default=None, help="Scoring policy JSON override file")
    parser.add_argument("--log-file", default=str(DEFAULT_LOG_FILE), help="Log file")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_scan_opts(p: argparse.ArgumentParser) -> None:
        p.add_argument("--roots", nargs="+", default=[str(Path.cwd())], help="Root paths to scan")
        p.add_argument("--scan-config", default=None, help="Scanner JSON override file")
        p.add_argument("--workers", type=int, default=1, help="Parallel subtree workers")
        p.add_argument("--follow-symlinks", action="store_true")
        p.add_argument("--include-hidden", action="store_true", help="Descend into dot-prefixed entries")

    def add_payload_opts(p: argparse.ArgumentParser) -> None:
        p.add_argument("--local", default=None, help="Local scan payload JSON")
        p.add_argument("--cloud", default=None, help="Cloud drive payload JSON")
        p.add_argument("--code-hosting", default=None, help="Code hosting payload JSON")
        p.add_argument("--result", default=None, help="Use an existing score result JSON instead")
        p.add_argument("--strict", action="store_true", help="Fail on an invalid payload instead of warning")

    p = sub.add_parser("scan", help="Scan local roots and emit the local payload")
    add_scan_opts(p)
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "local_payload.json"))

    p = sub.add_parser("duplicates", help="Duplicate file detection across roots")
    add_scan_opts(p)
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "duplicates_report.json"))

    p = sub.add_parser("score", help="Calculate the burn score from source payloads")
    add_payload_opts(p)
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "burn_score.json"))

    p = sub.add_parser("report", help="Render a Markdown burn score report")
    add_payload_opts(p)
    p.add_argument("--top-n", type=int, default=5)
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "burn_score_report.md"))

    p = sub.add_parser("visualize", help="Render burn score charts")
    add_payload_opts(p)
    p.add_argument("--chart-dir", default=str(DEFAULT_EXPORT_DIR / "charts"))
    p.add_argument("--output", default=str(DEFAULT_EXPORT_DIR / "charts_report.json"))

    return parser


def dispatch(args: argparse.Namespace) -> dict[str, Any] | str:
    cmd = args.command
    if cmd == "scan":
        return command_scan(args)
    if cmd == "duplicates":
        return command_duplicates(args)
    if cmd == "score":
        return command_score(args)
    if cmd == "report":
        return command_report(args)
    if cmd == "visualize":
        return command_visualize(args)
    raise ValueError(f"Unknown command: {cmd}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logger(Path(args.log_file))

    try:
        result = dispatch(args)
        output_path = Path(args.output)
        if isinstance(result, str):
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(result, encoding="utf-8")
        else:
            export_json(output_path, result)

        print(json.dumps({
            "status": "ok",
            "command": args.command,
            "output": str(output_path.resolve()),
            "timestamp": now_utc_iso(),
        }, indent=2))
        return 0
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("command_failed command=%s err=%s", args.command, exc)
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
