"""
Tests for tailbeacon.importers and tailbeacon.explain
"""
import json

from tailbeacon.explain import explain_event
from tailbeacon.importers import import_eval_result, import_jsonl, load_import_file
from tailbeacon.models import EventType, Sector, Severity
from tailbeacon.reducer import MAX_MARKERS, apply_record, marker_position, normalize_record, parse_record_line

EVAL_DOC = {
    "run_id": "run-7",
    "summary": {"total_attacks": 3, "vulnerabilities": 1},
    "results": [
        {"attack_id": "PI-001", "attack_name": "Ignore rules", "category": "prompt_injection",
         "severity": "S3", "passed": False, "is_vulnerability": True},
        {"attack_id": "TE-002", "attack_name": "Read ssh keys", "category": "tool_exfil",
         "severity": "S2", "passed": False},
        {"attack_id": "CB-003", "attack_name": "Stale context", "category": "context_bleed",
         "severity": "S1", "passed": True},
    ],
}


class TestEvalImport:
    def test_builds_fresh_dataset(self):
        ds = import_eval_result(EVAL_DOC)
        assert ds.source_label == "eval:run-7"
        assert [e.id for e in ds.events] == ["evt-PI-001", "evt-TE-002", "evt-CB-003"]
        assert [m.id for m in ds.markers] == ["PI-001", "TE-002"]
        assert ds.stats.active_failures == 1
        assert ds.severity_counts.S3 == 1
        assert ds.severity_counts.S1 == 1

    def test_event_types_and_messages(self):
        ds = import_eval_result(EVAL_DOC)
        assert ds.events[0].type is EventType.FAILURE
        assert ds.events[0].message == "S3 VULN: Ignore rules"
        assert ds.events[1].message == "S2 FAIL: Read ssh keys"
        assert ds.events[2].type is EventType.SYSTEM

    def test_marker_placement_matches_reducer(self):
        ds = import_eval_result(EVAL_DOC)
        marker = ds.find_marker("TE-002")
        assert marker.sector is Sector.TOOLS
        assert (marker.x, marker.y) == marker_position("TE-002", Sector.TOOLS)

    def test_empty_document(self):
        ds = import_eval_result({})
        assert ds.source_label == "eval:import"
        assert ds.events == ()
        assert ds.stats.active_failures == 0

    def test_repeated_attack_id_upserts_one_marker(self):
        doc = {"results": [
            {"attack_id": "A1", "category": "tool_exfil", "severity": "S4", "passed": False},
            {"attack_id": "B2", "category": "tool_exfil", "severity": "S2", "passed": False},
            {"attack_id": "A1", "category": "tool_exfil", "severity": "S1", "passed": False},
        ]}
        ds = import_eval_result(doc)
        assert [m.id for m in ds.markers] == ["A1", "B2"]
        assert ds.find_marker("A1").severity is Severity.S1
        assert [e.id for e in ds.events] == ["evt-A1", "evt-B2"]

        ds = apply_record(ds, {"id": "live-1", "kind": "finding", "severity": "S3",
                               "meta": {"attack_id": "A1"}})
        assert [m.severity for m in ds.markers if m.id == "A1"] == [Severity.S3]

    def test_marker_set_is_capped_to_newest(self):
        results = [{"attack_id": f"X{i}", "severity": "S2", "passed": False} for i in range(400)]
        ds = import_eval_result({"results": results})
        ids = [m.id for m in ds.markers]
        assert len(ids) == MAX_MARKERS
        assert len(set(ids)) == MAX_MARKERS
        assert ids[0] == "X100"
        assert ids[-1] == "X399"


class TestFileImport:
    def test_jsonl_skips_bad_lines(self, tmp_path):
        p = tmp_path / "events.jsonl"
        p.write_text(
            '{"id":"1","kind":"finding","severity":"S2"}\n'
            "garbage\n"
            "\n"
            '{"id":"2","kind":"scan_end"}\n'
            '{"id":"1","kind":"finding","severity":"S2"}\n',
            encoding="utf-8",
        )
        ds = import_jsonl(str(p))
        assert ds.source_label == "file:events.jsonl"
        assert [e.id for e in ds.events] == ["1", "2"]
        assert ds.severity_counts.S2 == 1

    def test_load_import_file_detects_eval(self, tmp_path):
        p = tmp_path / "eval.json"
        p.write_text(json.dumps(EVAL_DOC), encoding="utf-8")
        assert load_import_file(str(p)).source_label == "eval:run-7"

    def test_load_import_file_falls_back_to_jsonl(self, tmp_path):
        p = tmp_path / "stream.jsonl"
        p.write_text('{"id":"a","kind":"scan_start"}\n{"id":"b","kind":"scan_end"}\n', encoding="utf-8")
        assert len(load_import_file(str(p)).events) == 2


class TestExplain:
    def test_vulnerability_from_eval(self):
        ds = import_eval_result(EVAL_DOC)
        exp = explain_event(ds.events[0])
        assert exp.headline == "Ignore rules: This test found a real vulnerability."
        assert "ignore safety rules" in exp.meaning
        assert "High risk" in exp.meaning
        assert exp.next_steps[0].startswith("Treat all user/content instructions")

    def test_live_finding(self):
        rec = parse_record_line(
            '{"id":"x","kind":"watch_finding","severity":"S4","category":"memory_poisoning","title":"Persisted rule"}'
        )
        exp = explain_event(normalize_record(rec))
        assert exp.headline == "Persisted rule: A failure signal was detected."
        assert "Signal type: watch finding." in exp.meaning
        assert exp.next_steps[:2] == [
            "Review the finding details and severity immediately.",
            "Escalate or mitigate based on risk level.",
        ]
        assert len(exp.next_steps) == len(set(exp.next_steps))

    def test_unknown_category_defaults(self):
        rec = parse_record_line('{"id":"y","kind":"scan_start"}')
        ev = normalize_record(rec)
        assert ev.severity is Severity.S0
        exp = explain_event(ev)
        assert exp.headline == "REASONING: A system signal was recorded."
        assert exp.meaning.startswith("A security-relevant behavior was detected.")
        assert "Informational signal" in exp.meaning
