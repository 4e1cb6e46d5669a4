from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from tailbeacon.models import (
    EventRecord,
    EventType,
    NormalizedEvent,
    Sector,
    Severity,
    ThreatMarker,
    VisualizerDataset,
)

logger = logging.getLogger(__name__)

MAX_EVENTS = 250
MAX_MARKERS = 300
ACTIVE_SEVERITY_RANK = 2          # S2 and above count as active failures
MARKER_LABEL_MAX = 18
SUPPORTED_RECORD_VERSION = 1

FAILURE_KINDS = frozenset({"finding", "watch_finding", "sweep_result"})

DEFAULT_SECTOR = Sector.REASONING
CATEGORY_SECTORS: Dict[str, Sector] = {
    "tool_use": Sector.TOOLS,
    "tool_exfil": Sector.TOOLS,
    "privilege_escalation": Sector.TOOLS,
    "financial_transaction": Sector.TOOLS,
    "mcp_attack": Sector.TOOLS,
    "mcp_attacks": Sector.TOOLS,
    "long_context": Sector.CONTEXT,
    "context_bleed": Sector.CONTEXT,
    "indirect_injection": Sector.CONTEXT,
    "memory_poisoning": Sector.CONTEXT,
    "feedback_loop": Sector.FEEDBACK,
    "unauthorized_action": Sector.FEEDBACK,
    "deployment": Sector.DEPLOYMENT,
    "supply_chain": Sector.DEPLOYMENT,
    "platform_specific": Sector.DEPLOYMENT,
    "reasoning": Sector.REASONING,
    "prompt_injection": Sector.REASONING,
    "evasion_bypass": Sector.REASONING,
}

# Marker key preference, most specific first.
MARKER_KEY_META_FIELDS = ("attack_id", "finding_id", "session_id")


@dataclass(frozen=True)
class SectorZone:
    left: float
    top: float
    width: float
    height: float


SECTOR_ZONES: Dict[Sector, SectorZone] = {
    Sector.REASONING: SectorZone(left=6, top=8, width=28, height=22),
    Sector.TOOLS: SectorZone(left=62, top=8, width=30, height=24),
    Sector.CONTEXT: SectorZone(left=18, top=43, width=30, height=22),
    Sector.FEEDBACK: SectorZone(left=55, top=43, width=30, height=22),
    Sector.DEPLOYMENT: SectorZone(left=33, top=71, width=34, height=22),
}


# ----------------------------
# Normalization helpers
# ----------------------------
def coerce_severity(value: Optional[str]) -> Severity:
    """Exact match on "S0".."S4"; anything else, case or padding included, is S0."""
    if not isinstance(value, str):
        return Severity.S0
    try:
        return Severity(value)
    except ValueError:
        return Severity.S0


def category_to_sector(category: Optional[str]) -> Sector:
    return CATEGORY_SECTORS.get(str(category or "").strip().lower(), DEFAULT_SECTOR)


def is_failure_kind(kind: Optional[str]) -> bool:
    return str(kind or "").lower() in FAILURE_KINDS


def marker_key(rec: EventRecord, event_id: str) -> str:
    for name in MARKER_KEY_META_FIELDS:
        val = rec.meta.get(name)
        if val:
            return str(val)
    return str(rec.title or rec.category or event_id)


def fnv1a_32(key: str) -> int:
    # Hashes UTF-16 code units so browser dashboards place markers identically.
    h = 2166136261
    data = key.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * 16777619) & 0xFFFFFFFF
    return h


def marker_position(key: str, sector: Sector) -> Tuple[float, float]:
    """Deterministic (x, y) for a marker key inside its sector's padded zone."""
    zone = SECTOR_ZONES[sector]
    pad_x = min(2.6, zone.width * 0.12)
    pad_y = min(2.0, zone.height * 0.12)
    span_x = max(1.0, zone.width - pad_x * 2)
    span_y = max(1.0, zone.height - pad_y * 2)

    hx = fnv1a_32(key) / 4294967295
    hy = fnv1a_32(f"{key}|y") / 4294967295
    return (
        round(zone.left + pad_x + hx * span_x, 2),
        round(zone.top + pad_y + hy * span_y, 2),
    )


def _parse_ts(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    text = ts.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _derived_id(rec: EventRecord) -> str:
    body = json.dumps(rec.model_dump(mode="json"), sort_keys=True, default=str)
    return f"{rec.kind}:{hashlib.sha1(body.encode('utf-8')).hexdigest()[:16]}"


def parse_record_line(line: Union[str, bytes]) -> Optional[EventRecord]:
    """Parse one events-file line. Malformed or kind-less lines give None."""
    try:
        obj = json.loads(line)
    except ValueError:
        logger.debug("dropping malformed line: %.80r", line)
        return None
    if not isinstance(obj, dict):
        return None
    try:
        rec = EventRecord.model_validate(obj)
    except ValidationError:
        logger.debug("dropping record without a usable kind: %.80r", line)
        return None
    if rec.v is not None and rec.v > SUPPORTED_RECORD_VERSION:
        logger.debug("record version %s is newer than %s, reading best effort", rec.v, SUPPORTED_RECORD_VERSION)
    return rec


def normalize_record(rec: EventRecord) -> NormalizedEvent:
    kind = rec.kind or "event"
    event_id = str(rec.id or _derived_id(rec))
    failure = is_failure_kind(kind)
    sev = coerce_severity(rec.severity)
    dt = _parse_ts(rec.ts)

    msg = rec.message or (f"{kind}: {rec.title}" if rec.title else kind)
    if rec.severity:
        msg = f"{rec.severity} {msg}"

    return NormalizedEvent(
        id=event_id,
        timestamp=dt.strftime("%H:%M:%S") if dt else "--:--:--",
        type=EventType.FAILURE if failure else EventType.SYSTEM,
        message=msg,
        sector=category_to_sector(rec.category),
        severity=sev,
        marker_id=marker_key(rec, event_id) if failure else None,
        details={
            "kind": kind,
            "title": rec.title,
            "category": rec.category,
            "severity": rec.severity,
            "message": rec.message,
            "meta": rec.meta,
        },
    )


# ----------------------------
# Reducer
# ----------------------------
def empty_dataset(source_label: str = "idle") -> VisualizerDataset:
    return VisualizerDataset(source_label=source_label)


def apply_record(dataset: VisualizerDataset, record: Union[EventRecord, Dict[str, Any]]) -> VisualizerDataset:
    """
    Fold one record into the dataset and return the new dataset.

    Pure: the input is never mutated. A record whose event id is already
    in the history returns `dataset` itself, so replays are no-ops.
    Only failure-class kinds touch the severity counters and markers.
    """
    rec = record if isinstance(record, EventRecord) else EventRecord.model_validate(record)
    event = normalize_record(rec)

    if any(e.id == event.id for e in dataset.events):
        return dataset

    events = (dataset.events + (event,))[-MAX_EVENTS:]
    counts = dataset.severity_counts
    markers = dataset.markers

    if event.type is EventType.FAILURE:
        counts = counts.incremented(event.severity)
        x, y = marker_position(event.marker_id, event.sector)
        dt = _parse_ts(rec.ts)
        marker = ThreatMarker(
            id=event.marker_id,
            sector=event.sector,
            severity=event.severity,
            x=x,
            y=y,
            label=event.marker_id[:MARKER_LABEL_MAX],
            timestamp=dt.timestamp() if dt else 0.0,
            active=event.severity.rank >= ACTIVE_SEVERITY_RANK,
        )
        idx = next((i for i, m in enumerate(markers) if m.id == marker.id), None)
        if idx is not None:
            markers = markers[:idx] + (marker,) + markers[idx + 1:]
        else:
            markers = (markers + (marker,))[-MAX_MARKERS:]

    active = sum(1 for m in markers if m.active)
    return dataset.model_copy(update={
        "events": events,
        "markers": markers,
        "severity_counts": counts,
        "stats": dataset.stats.model_copy(update={"active_failures": active, "latency": 0}),
    })
