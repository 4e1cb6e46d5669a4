from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List

from tailbeacon.models import (
    EventType,
    NormalizedEvent,
    SeverityCounts,
    SystemStats,
    ThreatMarker,
    VisualizerDataset,
)
from tailbeacon.reducer import (
    ACTIVE_SEVERITY_RANK,
    MAX_MARKERS,
    apply_record,
    category_to_sector,
    coerce_severity,
    empty_dataset,
    marker_position,
    parse_record_line,
)

logger = logging.getLogger(__name__)

EVAL_MAX_EVENTS = 200


def import_eval_result(payload: Dict[str, Any]) -> VisualizerDataset:
    """
    Build a fresh dataset from an evaluation-run result document.

    Every result is counted by severity and becomes an event, once per
    attack id. Results that failed or exposed a vulnerability also upsert a
    marker keyed by attack id: a repeated id replaces the earlier marker in
    place, and only the newest MAX_MARKERS are kept.
    """
    results = payload.get("results")
    results = results if isinstance(results, list) else []
    summary = payload.get("summary") if isinstance(payload.get("summary"), dict) else {}

    events: List[NormalizedEvent] = []
    event_ids = set()
    markers: Dict[str, ThreatMarker] = {}
    counts: Dict[str, int] = {}

    for i, r in enumerate(results):
        if not isinstance(r, dict):
            continue
        sev = coerce_severity(r.get("severity"))
        counts[sev.value] = counts.get(sev.value, 0) + 1
        sector = category_to_sector(r.get("category"))
        attack_id = str(r.get("attack_id") or f"attack-{i}")
        is_vuln = bool(r.get("is_vulnerability"))
        passed = bool(r.get("passed"))
        failed = is_vuln or not passed
        event_id = f"evt-{attack_id}"

        if event_id in event_ids:
            logger.debug("eval result %s repeats an attack id, keeping the first event", attack_id)
        else:
            event_ids.add(event_id)
            events.append(NormalizedEvent(
                id=event_id,
                timestamp="--:--:--",
                type=EventType.FAILURE if failed else EventType.SYSTEM,
                message=f"{sev.value} {'VULN' if is_vuln else 'FAIL'}: {r.get('attack_name') or attack_id}",
                sector=sector,
                severity=sev,
                marker_id=attack_id,
                details={
                    "attack_id": r.get("attack_id"),
                    "attack_name": r.get("attack_name"),
                    "category": r.get("category"),
                    "severity": r.get("severity"),
                    "expected": r.get("expected"),
                    "actual": r.get("actual"),
                    "passed": r.get("passed"),
                    "is_vulnerability": is_vuln,
                    "error": r.get("error"),
                    "latency_ms": r.get("latency_ms"),
                },
            ))

        if failed:
            x, y = marker_position(attack_id, sector)
            markers[attack_id] = ThreatMarker(
                id=attack_id,
                sector=sector,
                severity=sev,
                x=x,
                y=y,
                label=attack_id,
                timestamp=0.0,
                active=sev.rank >= ACTIVE_SEVERITY_RANK,
            )

    vulns = summary.get("vulnerabilities")
    if not isinstance(vulns, int):
        vulns = sum(1 for r in results if isinstance(r, dict) and r.get("is_vulnerability"))

    run_id = payload.get("run_id")
    return VisualizerDataset(
        markers=tuple(list(markers.values())[-MAX_MARKERS:]),
        events=tuple(events[-EVAL_MAX_EVENTS:]),
        stats=SystemStats(active_failures=vulns),
        severity_counts=SeverityCounts(**counts),
        source_label=f"eval:{run_id}" if run_id else "eval:import",
    )


def import_jsonl(path: str) -> VisualizerDataset:
    """Fold every valid line of an events file into a fresh dataset."""
    dataset = empty_dataset(f"file:{os.path.basename(path)}")
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            rec = parse_record_line(line)
            if rec is not None:
                dataset = apply_record(dataset, rec)
    return dataset


def load_import_file(path: str) -> VisualizerDataset:
    """Pick the importer by content: a JSON object with `results` is an eval run."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    try:
        doc = json.loads(text)
    except ValueError:
        doc = None
    if isinstance(doc, dict) and "results" in doc:
        logger.info("importing eval result from %s", path)
        return import_eval_result(doc)
    return import_jsonl(path)
