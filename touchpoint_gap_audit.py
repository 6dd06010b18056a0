#!/usr/bin/env python3
import argparse
import csv
import json
import logging
import math
import os
import re
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

DEFAULT_CADENCE_DAYS = 30
DEFAULT_TOP_N = 10
DEFAULT_MIN_TIER = "overdue"
DEFAULT_DB_SCHEMA = "touchpoint_gap_audit"
DB_CONNECT_TIMEOUT = 12
UNASSIGNED_PROGRAM = "Unassigned"
UNKNOWN_STATUS = "Unknown"
UNKNOWN_BUCKET = "unknown"

TIER_ON_TRACK = "on_track"
TIER_DUE_SOON = "due_soon"
TIER_OVERDUE = "overdue"
TIER_CRITICAL = "critical"
TIER_ORDER = (TIER_ON_TRACK, TIER_DUE_SOON, TIER_OVERDUE, TIER_CRITICAL)

# Trial order is the disambiguation rule for slash/dash dates.
# Each layout is gated by a shape pattern so fields must be zero-padded.
DATE_FORMATS = (
    ("%Y-%m-%d", re.compile(r"^\d{4}-\d{2}-\d{2}$")),
    ("%Y/%m/%d", re.compile(r"^\d{4}/\d{2}/\d{2}$")),
    ("%m/%d/%Y", re.compile(r"^\d{2}/\d{2}/\d{4}$")),
    ("%m-%d-%Y", re.compile(r"^\d{2}-\d{2}-\d{4}$")),
    ("%Y-%m-%d %H:%M:%S", re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")),
    ("%Y-%m-%dT%H:%M:%S", re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}$")),
    ("%Y-%m-%dT%H:%M:%S%z", re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:Z|[+-]\d{2}:\d{2})$")),
)

SCHOLAR_ID_HEADERS = ("scholar_id", "scholarid", "scholar", "student_id", "studentid")
CONTACT_DATE_HEADERS = ("contact_date", "contacted_at", "date", "touchpoint_date", "touchpoint")
PROGRAM_HEADERS = ("program", "cohort", "track")
CHANNEL_HEADERS = ("channel", "method", "touchpoint_channel")
STATUS_HEADERS = ("status", "outcome", "result")

# (label, inclusive min days, inclusive max days); days = next_due_date - as_of.
DUE_BUCKETS: Tuple[Tuple[str, Optional[int], Optional[int]], ...] = (
    ("overdue", None, -1),
    ("due_0_7", 0, 7),
    ("due_8_14", 8, 14),
    ("due_15_30", 15, 30),
    ("due_31_60", 31, 60),
    ("due_61_plus", 61, None),
    (UNKNOWN_BUCKET, None, None),
)

# days = gap_days.
RECENCY_BUCKETS: Tuple[Tuple[str, Optional[int], Optional[int]], ...] = (
    ("0_7", 0, 7),
    ("8_30", 8, 30),
    ("31_60", 31, 60),
    ("61_90", 61, 90),
    ("91_180", 91, 180),
    ("181_plus", 181, None),
    (UNKNOWN_BUCKET, None, None),
)

LOG = logging.getLogger("touchpoint_gap_audit")


class AuditError(Exception):
    """Base class for every rejection the audit raises."""


class StructuralError(AuditError):
    """The touchpoint source cannot be used at all (missing column, unreadable file)."""


class PolicyError(AuditError, ValueError):
    """A run parameter is invalid; raised before any row is processed."""


class RowError(AuditError, ValueError):
    """A single row cannot be aggregated. Ingestion counts it and moves on."""


class InvalidDate(RowError):
    pass


class UnsupportedDateFormat(InvalidDate):
    pass


class MissingScholarId(RowError):
    pass


class FutureDatedRow(RowError):
    pass


@dataclass
class TouchpointRow:
    scholar_id: str
    contact_date: str
    channel: str = ""
    program: str = ""
    status: str = ""


@dataclass
class ScholarAccumulator:
    scholar_id: str
    program: str = ""
    last_channel: str = ""
    last_status: str = ""
    last_contact: Optional[date] = None
    first_contact: Optional[date] = None
    contact_count: int = 0
    channels: Dict[str, int] = field(default_factory=dict)
    contacts: List[date] = field(default_factory=list)
    contact_dates: Optional[Set[date]] = None


@dataclass
class IngestResult:
    scholars: Dict[str, ScholarAccumulator]
    invalid_rows: int = 0
    future_rows: int = 0


@dataclass(frozen=True)
class ScholarSummary:
    scholar_id: str
    program: str
    last_channel: str
    last_status: str
    first_contact: Optional[date]
    last_contact: Optional[date]
    next_due_date: Optional[date]
    contact_count: int
    gap_days: int
    days_past_due: int
    missed_cadences: int
    days_since_first_contact: int
    avg_interval_days: float
    contacts_per_month: float
    tier: str


@dataclass(frozen=True)
class ProgramSummary:
    program: str
    scholars: int
    avg_gap_days: float
    avg_missed_cadences: float
    on_track_count: int
    due_soon_count: int
    overdue_count: int
    critical_count: int


@dataclass(frozen=True)
class BucketCount:
    label: str
    min_days: Optional[int]
    max_days: Optional[int]
    count: int


@dataclass(frozen=True)
class ReportSummary:
    as_of: date
    cadence_days: int
    due_window_days: int
    total_scholars: int
    avg_gap_days: float
    median_gap_days: float
    max_gap_days: int
    avg_missed_cadences: float
    max_missed_cadences: int
    on_track_count: int
    due_soon_count: int
    overdue_count: int
    critical_count: int
    invalid_rows: int
    future_rows: int


@dataclass(frozen=True)
class Report:
    summary: ReportSummary
    program_summary: Tuple[ProgramSummary, ...]
    channel_summary: Mapping[str, int]
    status_summary: Mapping[str, int]
    contact_channel_summary: Mapping[str, int]
    due_summary: Tuple[BucketCount, ...]
    recency_summary: Tuple[BucketCount, ...]
    top_gaps: Tuple[ScholarSummary, ...]
    scholars: Tuple[ScholarSummary, ...]


@dataclass(frozen=True)
class AuditPolicy:
    as_of: date
    cadence_days: int
    due_window_days: int
    top_n: int = DEFAULT_TOP_N
    dedupe_by_day: bool = False

    @classmethod
    def create(
        cls,
        as_of: date,
        cadence_days: int = DEFAULT_CADENCE_DAYS,
        due_window_days: Optional[int] = None,
        top_n: int = DEFAULT_TOP_N,
        dedupe_by_day: bool = False,
    ) -> "AuditPolicy":
        """Validate run parameters and fill in the default due window.

        A due window of ``None`` or anything below one day means "half the
        cadence, rounded up".
        """
        if cadence_days <= 0:
            raise PolicyError(f"cadence must be positive, got {cadence_days}")
        try:
            date_only(as_of) + timedelta(days=cadence_days)
        except OverflowError:
            raise PolicyError(f"cadence of {cadence_days} days runs past the last representable date") from None
        if due_window_days is None or due_window_days <= 0:
            due_window_days = default_due_window(cadence_days)
        return cls(
            as_of=date_only(as_of),
            cadence_days=cadence_days,
            due_window_days=due_window_days,
            top_n=top_n,
            dedupe_by_day=dedupe_by_day,
        )


@dataclass(frozen=True)
class DBConfig:
    dsn: str
    schema: str = DEFAULT_DB_SCHEMA
    tag: Optional[str] = None


def parse_contact_date(value: str) -> datetime:
    value = (value or "").strip()
    if not value:
        raise InvalidDate("empty date")
    for fmt, shape in DATE_FORMATS:
        if not shape.match(value):
            continue
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise UnsupportedDateFormat(f"unsupported date format: {value}")


def date_only(value: Optional[date]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def round1(value: float) -> float:
    """Round to one decimal place, halves away from zero."""
    scaled = Decimal(value * 10).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return float(scaled) / 10


def default_due_window(cadence_days: int) -> int:
    return int(math.ceil(cadence_days * 0.5))


def gap_days(as_of: date, contact: Optional[date]) -> int:
    if contact is None:
        return 0
    as_of_day = date_only(as_of)
    contact_day = date_only(contact)
    if contact_day > as_of_day:
        return 0
    return (as_of_day - contact_day).days


def gap_tier(gap: int, cadence_days: int, due_window_days: int) -> str:
    if gap <= cadence_days:
        return TIER_ON_TRACK
    if gap <= cadence_days + due_window_days:
        return TIER_DUE_SOON
    if gap <= cadence_days * 2:
        return TIER_OVERDUE
    return TIER_CRITICAL


def missed_cadences(gap: int, cadence_days: int) -> int:
    if cadence_days <= 0 or gap <= cadence_days:
        return 0
    return (gap - cadence_days + cadence_days - 1) // cadence_days


def tier_rank(value: str) -> int:
    tier = (value or "").strip().lower()
    if tier not in TIER_ORDER:
        raise PolicyError(f"invalid tier: {value!r} (expected one of {', '.join(TIER_ORDER)})")
    return TIER_ORDER.index(tier)


def average_interval_days(contacts: Iterable[Optional[date]]) -> float:
    days = sorted(date_only(value) for value in contacts if value is not None)
    if len(days) < 2:
        return 0.0
    total = sum((later - earlier).days for earlier, later in zip(days, days[1:]))
    return round1(total / (len(days) - 1))


def contacts_per_month(contact_count: int, days_since_first: int) -> float:
    if contact_count <= 0 or days_since_first <= 0:
        return 0.0
    return round1(contact_count / days_since_first * 30.0)


def check_row(row: TouchpointRow, as_of: date) -> date:
    """Return the row's contact day, or raise the RowError that excludes it."""
    if not (row.scholar_id or "").strip():
        raise MissingScholarId("missing scholar id")
    contact_day = parse_contact_date(row.contact_date).date()
    if contact_day > as_of:
        raise FutureDatedRow(f"contact date {contact_day.isoformat()} is after {as_of.isoformat()}")
    return contact_day


def fold_row(
    scholar: ScholarAccumulator,
    contact_day: date,
    channel: str,
    program: str,
    status: str,
    dedupe_by_day: bool,
) -> None:
    """Fold one valid touchpoint into a scholar's running state.

    A same-day repeat (dedupe on) never counts as a contact, but it still
    refreshes the last channel/status when its day is at or after the current
    last contact. A counted contact only refreshes them when strictly later.
    """
    if program and not scholar.program:
        scholar.program = program

    if dedupe_by_day:
        if scholar.contact_dates is None:
            scholar.contact_dates = set()
        if contact_day in scholar.contact_dates:
            if scholar.last_contact is None or contact_day >= scholar.last_contact:
                scholar.last_contact = contact_day
                scholar.last_channel = channel
                scholar.last_status = status
            return
        scholar.contact_dates.add(contact_day)

    scholar.contact_count += 1
    scholar.contacts.append(contact_day)
    if scholar.first_contact is None or contact_day < scholar.first_contact:
        scholar.first_contact = contact_day
    if channel:
        scholar.channels[channel] = scholar.channels.get(channel, 0) + 1
    if scholar.last_contact is None or contact_day > scholar.last_contact:
        scholar.last_contact = contact_day
        scholar.last_channel = channel
        scholar.last_status = status


def ingest_rows(rows: Iterable[TouchpointRow], as_of: date, dedupe_by_day: bool) -> IngestResult:
    as_of_day = date_only(as_of)
    result = IngestResult(scholars={})
    for index, row in enumerate(rows, start=1):
        try:
            contact_day = check_row(row, as_of_day)
        except FutureDatedRow as exc:
            result.future_rows += 1
            LOG.debug("Ignoring row %d: %s", index, exc)
            continue
        except RowError as exc:
            result.invalid_rows += 1
            LOG.debug("Skipping row %d: %s", index, exc)
            continue

        scholar_id = row.scholar_id.strip()
        scholar = result.scholars.get(scholar_id)
        if scholar is None:
            scholar = ScholarAccumulator(scholar_id=scholar_id)
            result.scholars[scholar_id] = scholar
        fold_row(
            scholar,
            contact_day,
            channel=(row.channel or "").strip(),
            program=(row.program or "").strip(),
            status=(row.status or "").strip(),
            dedupe_by_day=dedupe_by_day,
        )
    return result


def summarize_scholar(scholar: ScholarAccumulator, as_of: date, cadence_days: int, due_window_days: int) -> ScholarSummary:
    gap = gap_days(as_of, scholar.last_contact)
    next_due_date = None
    days_past_due = 0
    if scholar.last_contact is not None:
        next_due_date = scholar.last_contact + timedelta(days=cadence_days)
        days_past_due = max(0, gap - cadence_days)

    days_since_first = 0
    avg_interval = 0.0
    per_month = 0.0
    if scholar.first_contact is not None:
        days_since_first = gap_days(as_of, scholar.first_contact)
        avg_interval = average_interval_days(scholar.contacts)
        per_month = contacts_per_month(scholar.contact_count, days_since_first)

    return ScholarSummary(
        scholar_id=scholar.scholar_id,
        program=scholar.program,
        last_channel=scholar.last_channel,
        last_status=scholar.last_status,
        first_contact=scholar.first_contact,
        last_contact=scholar.last_contact,
        next_due_date=next_due_date,
        contact_count=scholar.contact_count,
        gap_days=gap,
        days_past_due=days_past_due,
        missed_cadences=missed_cadences(gap, cadence_days),
        days_since_first_contact=days_since_first,
        avg_interval_days=avg_interval,
        contacts_per_month=per_month,
        tier=gap_tier(gap, cadence_days, due_window_days),
    )


def summarize_gaps(gaps: List[int]) -> Tuple[float, float, int]:
    if not gaps:
        return 0.0, 0.0, 0
    values = sorted(gaps)
    mid = len(values) // 2
    if len(values) % 2 == 0:
        median = (values[mid - 1] + values[mid]) / 2
    else:
        median = float(values[mid])
    return round1(sum(values) / len(values)), round1(median), values[-1]


def count_tiers(scholars: Iterable[ScholarSummary]) -> Dict[str, int]:
    counts = {tier: 0 for tier in TIER_ORDER}
    for scholar in scholars:
        counts[scholar.tier] += 1
    return counts


def program_key(program: str) -> str:
    value = (program or "").strip()
    return value or UNASSIGNED_PROGRAM


def build_program_summary(scholars: List[ScholarSummary]) -> List[ProgramSummary]:
    buckets: Dict[str, List[ScholarSummary]] = {}
    for scholar in scholars:
        buckets.setdefault(program_key(scholar.program), []).append(scholar)

    programs: List[ProgramSummary] = []
    for program, entries in buckets.items():
        avg_gap, _, _ = summarize_gaps([entry.gap_days for entry in entries])
        tiers = count_tiers(entries)
        programs.append(
            ProgramSummary(
                program=program,
                scholars=len(entries),
                avg_gap_days=avg_gap,
                avg_missed_cadences=round1(sum(entry.missed_cadences for entry in entries) / len(entries)),
                on_track_count=tiers[TIER_ON_TRACK],
                due_soon_count=tiers[TIER_DUE_SOON],
                overdue_count=tiers[TIER_OVERDUE],
                critical_count=tiers[TIER_CRITICAL],
            )
        )
    if len(programs) > 1:
        programs.sort(key=lambda item: item.overdue_count + item.critical_count, reverse=True)
    return programs


def bucket_label(days: Optional[int], definitions: Tuple[Tuple[str, Optional[int], Optional[int]], ...]) -> str:
    if days is None:
        return UNKNOWN_BUCKET
    for label, min_days, max_days in definitions:
        if min_days is None and max_days is None:
            continue
        if min_days is not None and days < min_days:
            continue
        if max_days is not None and days > max_days:
            continue
        return label
    return UNKNOWN_BUCKET


def count_buckets(
    values: Iterable[Optional[int]],
    definitions: Tuple[Tuple[str, Optional[int], Optional[int]], ...],
) -> List[BucketCount]:
    counts = {label: 0 for label, _, _ in definitions}
    for days in values:
        counts[bucket_label(days, definitions)] += 1
    return [BucketCount(label, min_days, max_days, counts[label]) for label, min_days, max_days in definitions]


def days_until_due(scholar: ScholarSummary, as_of: date) -> Optional[int]:
    if scholar.next_due_date is None:
        return None
    return (scholar.next_due_date - date_only(as_of)).days


def build_due_summary(scholars: List[ScholarSummary], as_of: date) -> List[BucketCount]:
    return count_buckets((days_until_due(scholar, as_of) for scholar in scholars), DUE_BUCKETS)


def build_recency_summary(scholars: List[ScholarSummary]) -> List[BucketCount]:
    return count_buckets(
        (scholar.gap_days if scholar.last_contact is not None else None for scholar in scholars),
        RECENCY_BUCKETS,
    )


def summarize_last_channels(scholars: List[ScholarSummary]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for scholar in scholars:
        if scholar.last_channel:
            counts[scholar.last_channel] = counts.get(scholar.last_channel, 0) + 1
    return dict(sorted(counts.items()))


def summarize_last_statuses(scholars: List[ScholarSummary]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for scholar in scholars:
        key = scholar.last_status.strip() or UNKNOWN_STATUS
        counts[key] = counts.get(key, 0) + 1
    return dict(sorted(counts.items()))


def summarize_contact_channels(scholars: Iterable[ScholarAccumulator]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for scholar in scholars:
        for channel, count in scholar.channels.items():
            counts[channel] = counts.get(channel, 0) + count
    return dict(sorted(counts.items()))


def rank_by_gap(scholars: List[ScholarSummary], top_n: int) -> List[ScholarSummary]:
    ranked = sorted(scholars, key=lambda item: item.gap_days, reverse=True)
    if top_n > 0:
        return ranked[:top_n]
    return ranked


def build_report(rows: Iterable[TouchpointRow], policy: AuditPolicy) -> Report:
    ingested = ingest_rows(rows, policy.as_of, policy.dedupe_by_day)
    scholars = [
        summarize_scholar(scholar, policy.as_of, policy.cadence_days, policy.due_window_days)
        for scholar in ingested.scholars.values()
    ]

    avg_gap, median_gap, max_gap = summarize_gaps([scholar.gap_days for scholar in scholars])
    missed = [scholar.missed_cadences for scholar in scholars]
    tiers = count_tiers(scholars)
    summary = ReportSummary(
        as_of=policy.as_of,
        cadence_days=policy.cadence_days,
        due_window_days=policy.due_window_days,
        total_scholars=len(scholars),
        avg_gap_days=avg_gap,
        median_gap_days=median_gap,
        max_gap_days=max_gap,
        avg_missed_cadences=round1(sum(missed) / len(missed)) if missed else 0.0,
        max_missed_cadences=max(missed) if missed else 0,
        on_track_count=tiers[TIER_ON_TRACK],
        due_soon_count=tiers[TIER_DUE_SOON],
        overdue_count=tiers[TIER_OVERDUE],
        critical_count=tiers[TIER_CRITICAL],
        invalid_rows=ingested.invalid_rows,
        future_rows=ingested.future_rows,
    )
    LOG.info(
        "Audited %d scholars as of %s (%d invalid rows, %d future rows)",
        summary.total_scholars,
        policy.as_of.isoformat(),
        summary.invalid_rows,
        summary.future_rows,
    )

    ranked = rank_by_gap(scholars, 0)
    return Report(
        summary=summary,
        program_summary=tuple(build_program_summary(scholars)),
        channel_summary=MappingProxyType(summarize_last_channels(scholars)),
        status_summary=MappingProxyType(summarize_last_statuses(scholars)),
        contact_channel_summary=MappingProxyType(summarize_contact_channels(ingested.scholars.values())),
        due_summary=tuple(build_due_summary(scholars, policy.as_of)),
        recency_summary=tuple(build_recency_summary(scholars)),
        top_gaps=tuple(rank_by_gap(scholars, policy.top_n)),
        scholars=tuple(ranked),
    )


def normalize_header(value: str) -> str:
    value = (value or "").strip().lower()
    for char in (" ", "_", "-"):
        value = value.replace(char, "")
    return value


def find_column(headers: Dict[str, int], names: Iterable[str]) -> Optional[int]:
    for name in names:
        idx = headers.get(normalize_header(name))
        if idx is not None:
            return idx
    return None


def cell(record: List[str], idx: Optional[int]) -> str:
    if idx is None or idx >= len(record):
        return ""
    return record[idx].strip()


def load_touchpoints(path: str) -> List[TouchpointRow]:
    """Read a touchpoint CSV into rows, matching headers against synonym lists.

    Header matching ignores case, spaces, underscores and dashes, so
    "Scholar ID", "scholar-id" and "scholarid" all resolve to the scholar id
    column. Only the scholar id and contact date columns are required.
    """
    try:
        with open(path, newline="", encoding="utf-8-sig") as handle:
            reader = csv.reader(handle, skipinitialspace=True)
            try:
                header = next(reader)
            except StopIteration:
                raise StructuralError(f"unable to read header: {path} is empty") from None

            columns: Dict[str, int] = {}
            for idx, name in enumerate(header):
                columns.setdefault(normalize_header(name), idx)

            id_idx = find_column(columns, SCHOLAR_ID_HEADERS)
            if id_idx is None:
                raise StructuralError("missing scholar_id column")
            date_idx = find_column(columns, CONTACT_DATE_HEADERS)
            if date_idx is None:
                raise StructuralError("missing contact_date column")
            program_idx = find_column(columns, PROGRAM_HEADERS)
            channel_idx = find_column(columns, CHANNEL_HEADERS)
            status_idx = find_column(columns, STATUS_HEADERS)

            rows: List[TouchpointRow] = []
            for record in reader:
                if not record:
                    continue
                rows.append(
                    TouchpointRow(
                        scholar_id=cell(record, id_idx),
                        contact_date=cell(record, date_idx),
                        channel=cell(record, channel_idx),
                        program=cell(record, program_idx),
                        status=cell(record, status_idx),
                    )
                )
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise StructuralError(f"unable to read CSV {path}: {exc}") from exc
    LOG.info("Loaded %d touchpoint rows from %s", len(rows), path)
    return rows


def format_date(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


def format_buckets(buckets: Iterable[BucketCount]) -> str:
    parts = [f"{bucket.label} {bucket.count}" for bucket in buckets if bucket.count]
    return " | ".join(parts) if parts else "none"


def format_optional_int(value: Optional[int]) -> str:
    return "" if value is None else str(value)


def print_summary(summary: ReportSummary, input_path: str) -> None:
    print("Group Scholar Touchpoint Gap Audit")
    print("=" * 38)
    print(f"Input: {Path(input_path).name}")
    print(f"As of: {summary.as_of.isoformat()}")
    print(f"Cadence: {summary.cadence_days} days (due window {summary.due_window_days} days)")
    print(f"Total scholars: {summary.total_scholars}")
    print(
        f"Gap avg/median/max: {summary.avg_gap_days:.1f} / {summary.median_gap_days:.1f} / "
        f"{summary.max_gap_days} days"
    )
    print(f"Missed cadences avg/max: {summary.avg_missed_cadences:.1f} / {summary.max_missed_cadences}")
    print(
        f"On track: {summary.on_track_count} | Due soon: {summary.due_soon_count} | "
        f"Overdue: {summary.overdue_count} | Critical: {summary.critical_count}"
    )
    if summary.invalid_rows:
        print(f"Invalid rows skipped: {summary.invalid_rows}")
    if summary.future_rows:
        print(f"Future-dated rows ignored: {summary.future_rows}")


def print_top_gaps(top_gaps: Tuple[ScholarSummary, ...]) -> None:
    print("\nTop gaps")
    print("-" * 38)
    if not top_gaps:
        print("No scholars found.")
        return
    for entry in top_gaps:
        print(
            f"{entry.scholar_id} | {program_key(entry.program)} | gap {entry.gap_days} days | {entry.tier} | "
            f"last {format_date(entry.last_contact) or '-'} via {entry.last_channel or 'Unknown'}"
        )


def print_program_summary(programs: Tuple[ProgramSummary, ...]) -> None:
    if not programs:
        return
    print("\nProgram summary")
    print("-" * 38)
    for entry in programs:
        print(
            f"{entry.program} | scholars {entry.scholars} | avg gap {entry.avg_gap_days:.1f} | "
            f"avg missed {entry.avg_missed_cadences:.1f} | on track {entry.on_track_count} | "
            f"due soon {entry.due_soon_count} | overdue {entry.overdue_count} | critical {entry.critical_count}"
        )


def print_counts(title: str, counts: Mapping[str, int]) -> None:
    if not counts:
        return
    print(f"\n{title}")
    print("-" * 38)
    for key in sorted(counts):
        print(f"{key}: {counts[key]}")


def print_report(report: Report, input_path: str) -> None:
    print_summary(report.summary, input_path)
    print(f"Due buckets: {format_buckets(report.due_summary)}")
    print(f"Recency buckets: {format_buckets(report.recency_summary)}")
    print_top_gaps(report.top_gaps)
    print_program_summary(report.program_summary)
    print_counts("Last channel summary", report.channel_summary)
    print_counts("Last status summary", report.status_summary)
    print_counts("Contact channel mix", report.contact_channel_summary)


def bucket_to_dict(bucket: BucketCount) -> Dict[str, object]:
    payload: Dict[str, object] = {"label": bucket.label}
    if bucket.min_days is not None:
        payload["min_days"] = bucket.min_days
    if bucket.max_days is not None:
        payload["max_days"] = bucket.max_days
    payload["count"] = bucket.count
    return payload


def _json_default(value: object) -> str:
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def report_to_dict(report: Report) -> Dict[str, object]:
    return {
        "summary": asdict(report.summary),
        "program_summary": [asdict(entry) for entry in report.program_summary],
        "last_channel_summary": dict(report.channel_summary),
        "last_status_summary": dict(report.status_summary),
        "contact_channel_summary": dict(report.contact_channel_summary),
        "due_summary": [bucket_to_dict(bucket) for bucket in report.due_summary],
        "recency_summary": [bucket_to_dict(bucket) for bucket in report.recency_summary],
        "top_gaps": [asdict(entry) for entry in report.top_gaps],
        "scholars": [asdict(entry) for entry in report.scholars],
    }


def write_json(report: Report, path: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(report_to_dict(report), handle, indent=2, default=_json_default)


def write_csv(path: str, header: List[str], rows: Iterable[List[str]]) -> None:
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(header)
        writer.writerows(rows)


def write_alerts_csv(report: Report, path: str, min_tier: str) -> int:
    threshold = tier_rank(min_tier)
    alerts = [entry for entry in report.scholars if tier_rank(entry.tier) >= threshold]
    write_csv(
        path,
        [
            "scholar_id",
            "program",
            "last_contact",
            "first_contact",
            "next_due_date",
            "gap_days",
            "days_past_due",
            "missed_cadences",
            "days_since_first_contact",
            "avg_interval_days",
            "contacts_per_month",
            "tier",
            "last_channel",
            "last_status",
            "contact_count",
        ],
        (
            [
                entry.scholar_id,
                entry.program,
                format_date(entry.last_contact),
                format_date(entry.first_contact),
                format_date(entry.next_due_date),
                str(entry.gap_days),
                str(entry.days_past_due),
                str(entry.missed_cadences),
                str(entry.days_since_first_contact),
                f"{entry.avg_interval_days:.1f}",
                f"{entry.contacts_per_month:.1f}",
                entry.tier,
                entry.last_channel,
                entry.last_status,
                str(entry.contact_count),
            ]
            for entry in alerts
        ),
    )
    return len(alerts)


def write_program_csv(report: Report, path: str) -> None:
    write_csv(
        path,
        ["program", "scholars", "avg_gap_days", "avg_missed_cadences", "on_track", "due_soon", "overdue", "critical"],
        (
            [
                entry.program,
                str(entry.scholars),
                f"{entry.avg_gap_days:.1f}",
                f"{entry.avg_missed_cadences:.1f}",
                str(entry.on_track_count),
                str(entry.due_soon_count),
                str(entry.overdue_count),
                str(entry.critical_count),
            ]
            for entry in report.program_summary
        ),
    )


def write_channel_csv(report: Report, path: str) -> None:
    counts = report.channel_summary
    write_csv(path, ["channel", "touchpoint_count"], ([key, str(counts[key])] for key in sorted(counts)))


def write_status_csv(report: Report, path: str) -> None:
    counts = report.status_summary
    write_csv(path, ["status", "touchpoint_count"], ([key, str(counts[key])] for key in sorted(counts)))


def write_bucket_csv(buckets: Iterable[BucketCount], path: str) -> None:
    write_csv(
        path,
        ["label", "min_days", "max_days", "count"],
        (
            [bucket.label, format_optional_int(bucket.min_days), format_optional_int(bucket.max_days), str(bucket.count)]
            for bucket in buckets
        ),
    )


def write_due_csv(report: Report, path: str) -> None:
    write_bucket_csv(report.due_summary, path)


def write_recency_csv(report: Report, path: str) -> None:
    write_bucket_csv(report.recency_summary, path)


def validate_schema_name(schema: str) -> str:
    schema = (schema or "").strip()
    if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", schema):
        raise PolicyError("Invalid schema name. Use letters, numbers, and underscores only.")
    return schema


def resolve_db_dsn(env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if env is None else env
    for key in ("TOUCHPOINT_GAP_AUDIT_DB_URL", "GS_DB_DSN", "DATABASE_URL"):
        explicit = (env.get(key) or "").strip()
        if explicit:
            return explicit
    host = env.get("GS_DB_HOST")
    port = env.get("GS_DB_PORT", "5432")
    name = env.get("GS_DB_NAME")
    user = env.get("GS_DB_USER")
    password = env.get("GS_DB_PASSWORD")
    if not all([host, name, user, password]):
        return None
    sslmode = env.get("GS_DB_SSLMODE", "require")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}?sslmode={sslmode}"


def require_psycopg() -> "module":
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise SystemExit("psycopg is required for --db/--init-db. Install with: pip install psycopg[binary]") from exc
    return psycopg


def ensure_db(conn: "object", schema: str) -> None:
    with conn.cursor() as cur:
        cur.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {schema}.audit_runs (
                id UUID PRIMARY KEY,
                as_of DATE NOT NULL,
                cadence_days INTEGER NOT NULL,
                due_window_days INTEGER NOT NULL,
                total_scholars INTEGER NOT NULL,
                avg_gap_days NUMERIC(8,2) NOT NULL,
                median_gap_days NUMERIC(8,2) NOT NULL,
                max_gap_days INTEGER NOT NULL,
                avg_missed_cadences NUMERIC(8,2) NOT NULL DEFAULT 0,
                max_missed_cadences INTEGER NOT NULL DEFAULT 0,
                on_track_count INTEGER NOT NULL,
                due_soon_count INTEGER NOT NULL,
                overdue_count INTEGER NOT NULL,
                critical_count INTEGER NOT NULL,
                invalid_rows INTEGER NOT NULL,
                future_rows INTEGER NOT NULL DEFAULT 0,
                run_tag TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {schema}.audit_scholar_gaps (
                id UUID PRIMARY KEY,
                run_id UUID NOT NULL REFERENCES {schema}.audit_runs(id) ON DELETE CASCADE,
                scholar_id TEXT NOT NULL,
                program TEXT,
                last_channel TEXT,
                last_status TEXT,
                last_contact DATE,
                first_contact DATE,
                next_due_date DATE,
                contact_count INTEGER NOT NULL,
                gap_days INTEGER NOT NULL,
                days_past_due INTEGER NOT NULL DEFAULT 0,
                missed_cadences INTEGER NOT NULL DEFAULT 0,
                days_since_first_contact INTEGER NOT NULL DEFAULT 0,
                avg_interval_days NUMERIC(8,2) NOT NULL DEFAULT 0,
                contacts_per_month NUMERIC(8,2) NOT NULL DEFAULT 0,
                tier TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {schema}.audit_program_summary (
                id UUID PRIMARY KEY,
                run_id UUID NOT NULL REFERENCES {schema}.audit_runs(id) ON DELETE CASCADE,
                program TEXT NOT NULL,
                scholars INTEGER NOT NULL,
                avg_gap_days NUMERIC(8,2) NOT NULL,
                avg_missed_cadences NUMERIC(8,2) NOT NULL DEFAULT 0,
                on_track_count INTEGER NOT NULL,
                due_soon_count INTEGER NOT NULL,
                overdue_count INTEGER NOT NULL,
                critical_count INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        for table, key_column in (("audit_channel_summary", "channel"), ("audit_status_summary", "status")):
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {schema}.{table} (
                    id UUID PRIMARY KEY,
                    run_id UUID NOT NULL REFERENCES {schema}.audit_runs(id) ON DELETE CASCADE,
                    {key_column} TEXT NOT NULL,
                    touchpoint_count INTEGER NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
        for table in ("audit_due_summary", "audit_recency_summary"):
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {schema}.{table} (
                    id UUID PRIMARY KEY,
                    run_id UUID NOT NULL REFERENCES {schema}.audit_runs(id) ON DELETE CASCADE,
                    label TEXT NOT NULL,
                    min_days INTEGER,
                    max_days INTEGER,
                    bucket_count INTEGER NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
        cur.execute(
            f"ALTER TABLE {schema}.audit_runs ADD COLUMN IF NOT EXISTS future_rows INTEGER NOT NULL DEFAULT 0"
        )
        cur.execute(
            f"ALTER TABLE {schema}.audit_runs ADD COLUMN IF NOT EXISTS avg_missed_cadences NUMERIC(8,2) NOT NULL DEFAULT 0"
        )
        cur.execute(
            f"ALTER TABLE {schema}.audit_runs ADD COLUMN IF NOT EXISTS max_missed_cadences INTEGER NOT NULL DEFAULT 0"
        )
        cur.execute(
            f"ALTER TABLE {schema}.audit_scholar_gaps ADD COLUMN IF NOT EXISTS missed_cadences INTEGER NOT NULL DEFAULT 0"
        )
        cur.execute(
            f"ALTER TABLE {schema}.audit_program_summary "
            "ADD COLUMN IF NOT EXISTS avg_missed_cadences NUMERIC(8,2) NOT NULL DEFAULT 0"
        )
        for table in (
            "audit_scholar_gaps",
            "audit_program_summary",
            "audit_channel_summary",
            "audit_status_summary",
            "audit_due_summary",
            "audit_recency_summary",
        ):
            cur.execute(f"CREATE INDEX IF NOT EXISTS {schema}_{table}_run_idx ON {schema}.{table} (run_id)")
        cur.execute(
            f"CREATE INDEX IF NOT EXISTS {schema}_audit_scholar_gaps_tier_idx ON {schema}.audit_scholar_gaps (tier)"
        )
    conn.commit()


def null_if_blank(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value


def build_run_row(report: Report, run_id: uuid.UUID, tag: Optional[str]) -> Tuple[object, ...]:
    summary = report.summary
    return (
        run_id,
        summary.as_of,
        summary.cadence_days,
        summary.due_window_days,
        summary.total_scholars,
        summary.avg_gap_days,
        summary.median_gap_days,
        summary.max_gap_days,
        summary.avg_missed_cadences,
        summary.max_missed_cadences,
        summary.on_track_count,
        summary.due_soon_count,
        summary.overdue_count,
        summary.critical_count,
        summary.invalid_rows,
        summary.future_rows,
        null_if_blank(tag),
    )


def build_scholar_rows(
    report: Report, run_id: uuid.UUID, new_id: Callable[[], uuid.UUID] = uuid.uuid4
) -> List[Tuple[object, ...]]:
    return [
        (
            new_id(),
            run_id,
            entry.scholar_id,
            null_if_blank(entry.program),
            null_if_blank(entry.last_channel),
            null_if_blank(entry.last_status),
            entry.last_contact,
            entry.first_contact,
            entry.next_due_date,
            entry.contact_count,
            entry.gap_days,
            entry.days_past_due,
            entry.missed_cadences,
            entry.days_since_first_contact,
            entry.avg_interval_days,
            entry.contacts_per_month,
            entry.tier,
        )
        for entry in report.scholars
    ]


def build_program_rows(
    report: Report, run_id: uuid.UUID, new_id: Callable[[], uuid.UUID] = uuid.uuid4
) -> List[Tuple[object, ...]]:
    return [
        (
            new_id(),
            run_id,
            entry.program,
            entry.scholars,
            entry.avg_gap_days,
            entry.avg_missed_cadences,
            entry.on_track_count,
            entry.due_soon_count,
            entry.overdue_count,
            entry.critical_count,
        )
        for entry in report.program_summary
    ]


def build_count_rows(
    counts: Mapping[str, int], run_id: uuid.UUID, new_id: Callable[[], uuid.UUID] = uuid.uuid4
) -> List[Tuple[object, ...]]:
    return [(new_id(), run_id, key, count) for key, count in counts.items()]


def build_bucket_rows(
    buckets: Iterable[BucketCount], run_id: uuid.UUID, new_id: Callable[[], uuid.UUID] = uuid.uuid4
) -> List[Tuple[object, ...]]:
    return [(new_id(), run_id, bucket.label, bucket.min_days, bucket.max_days, bucket.count) for bucket in buckets]


def store_report(
    conn: "object",
    report: Report,
    schema: str,
    tag: Optional[str],
    new_id: Callable[[], uuid.UUID] = uuid.uuid4,
) -> str:
    """Insert one audit run and its child rows, committing once at the end."""
    run_id = new_id()
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO {schema}.audit_runs (
                id,
                as_of,
                cadence_days,
                due_window_days,
                total_scholars,
                avg_gap_days,
                median_gap_days,
                max_gap_days,
                avg_missed_cadences,
                max_missed_cadences,
                on_track_count,
                due_soon_count,
                overdue_count,
                critical_count,
                invalid_rows,
                future_rows,
                run_tag
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            build_run_row(report, run_id, tag),
        )
        child_inserts = (
            (
                f"""
                INSERT INTO {schema}.audit_scholar_gaps (
                    id,
                    run_id,
                    scholar_id,
                    program,
                    last_channel,
                    last_status,
                    last_contact,
                    first_contact,
                    next_due_date,
                    contact_count,
                    gap_days,
                    days_past_due,
                    missed_cadences,
                    days_since_first_contact,
                    avg_interval_days,
                    contacts_per_month,
                    tier
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                build_scholar_rows(report, run_id, new_id),
            ),
            (
                f"""
                INSERT INTO {schema}.audit_program_summary (
                    id,
                    run_id,
                    program,
                    scholars,
                    avg_gap_days,
                    avg_missed_cadences,
                    on_track_count,
                    due_soon_count,
                    overdue_count,
                    critical_count
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                build_program_rows(report, run_id, new_id),
            ),
            (
                f"INSERT INTO {schema}.audit_channel_summary (id, run_id, channel, touchpoint_count) "
                "VALUES (%s, %s, %s, %s)",
                build_count_rows(report.channel_summary, run_id, new_id),
            ),
            (
                f"INSERT INTO {schema}.audit_status_summary (id, run_id, status, touchpoint_count) "
                "VALUES (%s, %s, %s, %s)",
                build_count_rows(report.status_summary, run_id, new_id),
            ),
            (
                f"INSERT INTO {schema}.audit_due_summary (id, run_id, label, min_days, max_days, bucket_count) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                build_bucket_rows(report.due_summary, run_id, new_id),
            ),
            (
                f"INSERT INTO {schema}.audit_recency_summary (id, run_id, label, min_days, max_days, bucket_count) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                build_bucket_rows(report.recency_summary, run_id, new_id),
            ),
        )
        for statement, rows in child_inserts:
            if rows:
                cur.executemany(statement, rows)
    conn.commit()
    return str(run_id)


def write_report_to_db(report: Report, config: DBConfig) -> str:
    psycopg = require_psycopg()
    schema = validate_schema_name(config.schema)
    with psycopg.connect(config.dsn, connect_timeout=DB_CONNECT_TIMEOUT) as conn:
        ensure_db(conn, schema)
        run_id = store_report(conn, report, schema, config.tag)
    LOG.info("Stored audit run %s in schema %s", run_id, schema)
    return run_id


def count_runs(conn: "object", schema: str) -> int:
    with conn.cursor() as cur:
        cur.execute(f"SELECT COUNT(*) FROM {schema}.audit_runs")
        return int(cur.fetchone()[0])


def seed_database(report: Report, config: DBConfig) -> Optional[str]:
    """Store the report only when the schema has no audit runs yet."""
    psycopg = require_psycopg()
    schema = validate_schema_name(config.schema)
    with psycopg.connect(config.dsn, connect_timeout=DB_CONNECT_TIMEOUT) as conn:
        ensure_db(conn, schema)
        if count_runs(conn, schema) > 0:
            print("Audit data already present; skipping seed.")
            return None
        run_id = store_report(conn, report, schema, config.tag)
    LOG.info("Seeded audit run %s in schema %s", run_id, schema)
    return run_id


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format="%(levelname)s %(message)s")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Group Scholar Touchpoint Gap Audit: flag scholars whose outreach cadence has lapsed."
    )
    parser.add_argument("--input", required=True, help="Path to outreach touchpoint CSV")
    parser.add_argument("--cadence", type=int, default=DEFAULT_CADENCE_DAYS, help="Expected cadence in days")
    parser.add_argument("--as-of", help="Report as-of date (YYYY-MM-DD); defaults to today")
    parser.add_argument(
        "--due-window",
        type=int,
        default=0,
        help="Days after cadence before a scholar is overdue; default cadence/2",
    )
    parser.add_argument("--top", type=int, default=DEFAULT_TOP_N, help="Top N largest gaps to show")
    parser.add_argument(
        "--dedupe-day",
        action="store_true",
        help="Deduplicate multiple contacts on the same day per scholar",
    )
    parser.add_argument("--json", dest="json_path", help="Optional JSON output path")
    parser.add_argument("--alerts", help="Optional CSV output for alert tiers")
    parser.add_argument("--programs-csv", help="Optional CSV output for program summary")
    parser.add_argument("--channels-csv", help="Optional CSV output for last channel summary")
    parser.add_argument("--statuses-csv", help="Optional CSV output for last status summary")
    parser.add_argument("--due-csv", help="Optional CSV output for due-date buckets")
    parser.add_argument("--recency-csv", help="Optional CSV output for recency buckets")
    parser.add_argument(
        "--min-tier",
        default=DEFAULT_MIN_TIER,
        help="Minimum tier for alerts (due_soon, overdue, critical)",
    )
    parser.add_argument(
        "--db",
        action="store_true",
        help="Store report in Postgres (requires TOUCHPOINT_GAP_AUDIT_DB_URL or DATABASE_URL)",
    )
    parser.add_argument("--db-schema", default=DEFAULT_DB_SCHEMA, help="Postgres schema for audit tables")
    parser.add_argument("--db-tag", help="Optional label for this audit run")
    parser.add_argument("--init-db", action="store_true", help="Initialize database schema and seed data if empty")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING)")
    return parser.parse_args(argv)


def resolve_as_of(value: Optional[str]) -> date:
    if not value:
        return date.today()
    try:
        return parse_contact_date(value).date()
    except InvalidDate as exc:
        raise PolicyError(f"invalid --as-of date: {exc}") from exc


def write_outputs(report: Report, args: argparse.Namespace) -> None:
    if args.json_path:
        write_json(report, args.json_path)
        print(f"\nJSON report saved to {args.json_path}")
    if args.alerts:
        count = write_alerts_csv(report, args.alerts, args.min_tier)
        print(f"Alert CSV saved to {args.alerts} ({count} scholars)")
    if args.programs_csv:
        write_program_csv(report, args.programs_csv)
        print(f"Program summary CSV saved to {args.programs_csv}")
    if args.channels_csv:
        write_channel_csv(report, args.channels_csv)
        print(f"Channel summary CSV saved to {args.channels_csv}")
    if args.statuses_csv:
        write_status_csv(report, args.statuses_csv)
        print(f"Status summary CSV saved to {args.statuses_csv}")
    if args.due_csv:
        write_due_csv(report, args.due_csv)
        print(f"Due summary CSV saved to {args.due_csv}")
    if args.recency_csv:
        write_recency_csv(report, args.recency_csv)
        print(f"Recency summary CSV saved to {args.recency_csv}")


def store_outputs(report: Report, args: argparse.Namespace) -> None:
    dsn = resolve_db_dsn()
    if not dsn:
        raise SystemExit(
            "Database URL missing. Set TOUCHPOINT_GAP_AUDIT_DB_URL, GS_DB_DSN or DATABASE_URL "
            "(or GS_DB_HOST/GS_DB_NAME/GS_DB_USER/GS_DB_PASSWORD)."
        )
    config = DBConfig(dsn=dsn, schema=validate_schema_name(args.db_schema), tag=args.db_tag)
    seeded = False
    if args.init_db:
        run_id = seed_database(report, config)
        if run_id:
            seeded = True
            print(f"\nSeeded Postgres with initial audit run (run_id={run_id})")
    if args.db:
        if seeded:
            print("Skipped duplicate insert; current report already used for seed.")
        else:
            run_id = write_report_to_db(report, config)
            print(f"\nStored audit run in Postgres (run_id={run_id})")


def run(args: argparse.Namespace) -> Report:
    policy = AuditPolicy.create(
        as_of=resolve_as_of(args.as_of),
        cadence_days=args.cadence,
        due_window_days=args.due_window,
        top_n=args.top,
        dedupe_by_day=args.dedupe_day,
    )
    if args.alerts:
        tier_rank(args.min_tier)
    if args.db or args.init_db:
        validate_schema_name(args.db_schema)

    report = build_report(load_touchpoints(args.input), policy)
    print_report(report, args.input)
    write_outputs(report, args)
    if args.db or args.init_db:
        store_outputs(report, args)
    return report


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        run(args)
    except AuditError as exc:
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    main()
