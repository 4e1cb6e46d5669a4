from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tailbeacon.models import EventType, NormalizedEvent, Severity

# Offline, table-driven explanation of a single event for the detail panel.


@dataclass
class EventExplanation:
    headline: str
    meaning: str
    impact: str
    next_steps: List[str] = field(default_factory=list)


SEVERITY_MEANING = {
    Severity.S4: "Critical risk. Immediate action is recommended.",
    Severity.S3: "High risk. Review and mitigate soon.",
    Severity.S2: "Moderate risk. Investigate before shipping changes.",
    Severity.S1: "Low risk. Keep an eye on this behavior.",
    Severity.S0: "Informational signal for visibility.",
}

CATEGORY_MEANING = {
    "prompt_injection": "The model was pushed to ignore safety rules.",
    "tool_exfil": "A tool was used (or requested) in a way that could leak data.",
    "tool_use": "A tool call looked risky or out of policy.",
    "context_bleed": "Data may be leaking across sessions or from stale context.",
    "long_context": "Long-context handling may be exposing unrelated data.",
    "privilege_escalation": "The model attempted actions beyond intended permissions.",
    "supply_chain": "A dependency or skill source may be untrusted or manipulated.",
    "financial_transaction": "A payment, transfer, or wallet action was requested unsafely.",
    "unauthorized_action": "The model tried to act without clear user approval.",
    "mcp_attack": "An MCP server/tool interaction looked unsafe.",
    "indirect_injection": "Unsafe instructions may have come from files, pages, or external content.",
    "evasion_bypass": "An attempt was made to hide risky intent using obfuscation.",
    "memory_poisoning": "The model may have been manipulated to store unsafe long-term instructions.",
    "platform_specific": "The behavior targets OS/cloud-specific attack paths.",
    "reasoning": "The model's decision logic showed a risky pattern.",
    "feedback_loop": "The model may be looping or amplifying harmful behavior.",
    "deployment": "The issue may be tied to deployment/runtime configuration.",
    "clean": "No immediate risky behavior was detected in this check.",
    "unknown": "A security-relevant behavior was detected.",
}
CATEGORY_MEANING["mcp_attacks"] = CATEGORY_MEANING["mcp_attack"]
CATEGORY_MEANING["financial"] = CATEGORY_MEANING["financial_transaction"]

CATEGORY_ACTIONS = {
    "prompt_injection": [
        "Treat all user/content instructions as untrusted unless explicitly approved.",
        "Add a rule to never override system/safety instructions.",
    ],
    "tool_exfil": [
        "Block access to secret paths, tokens, and credential files in tool policy.",
        "Require user approval for file read/export/network-send operations.",
    ],
    "tool_use": [
        "Tighten tool allow/deny policy for sensitive commands and paths.",
        "Require user confirmation before high-impact tool calls.",
    ],
    "context_bleed": [
        "Increase session isolation and reduce cross-session context reuse.",
        "Audit memory/context retrieval rules for tenant/user boundaries.",
    ],
    "privilege_escalation": [
        "Enforce least privilege for tools and filesystem/network access.",
        "Block privilege-changing patterns and require explicit approvals.",
    ],
    "supply_chain": [
        "Pin trusted dependencies/skills and verify signatures or checksums.",
        "Review recent updates before enabling in production flows.",
    ],
    "indirect_injection": [
        "Treat file/web/document content as untrusted instructions.",
        "Strip or sandbox external content before execution decisions.",
    ],
    "memory_poisoning": [
        "Do not persist untrusted instructions without review.",
        "Clear or quarantine suspicious memory entries.",
    ],
    "feedback_loop": [
        "Add loop detection/circuit breakers for repetitive agent behavior.",
        "Require user confirmation before repeated high-impact attempts.",
    ],
}
DEFAULT_ACTIONS = [
    "Review the triggering conversation/tool call and confirm expected behavior.",
    "Re-run scan/sweep after policy updates to verify the issue is mitigated.",
]

KIND_MEANING = {
    "scan_start": "A security scan has started.",
    "scan_end": "A scan completed and produced findings summary.",
    "finding": "A scan finding was emitted from session analysis.",
    "sweep_start": "A synthetic attack sweep has started.",
    "sweep_end": "A synthetic attack sweep has completed.",
    "sweep_result": "A sweep attack result indicates a blocked or vulnerable behavior.",
    "watch_start": "Continuous monitoring started.",
    "watch_stop": "Continuous monitoring stopped.",
    "watch_finding": "Realtime monitoring detected a new finding.",
    "watch_stats": "Monitoring session metrics were reported.",
    "hello": "Live stream connected and replay state initialized.",
    "event": "A generic event update was received.",
}

KIND_ACTIONS = {
    "finding": [
        "Open this finding and review evidence/context.",
        "Apply policy/tool changes, then re-test.",
    ],
    "sweep_result": [
        "Inspect expected vs actual behavior for this attack.",
        "Harden controls and verify with another sweep run.",
    ],
    "watch_finding": [
        "Review the finding details and severity immediately.",
        "Escalate or mitigate based on risk level.",
    ],
}


def _key(value: Optional[str]) -> str:
    return re.sub(r"\s+", "_", str(value or "").strip().lower())


def _text(details: Dict[str, Any], name: str) -> Optional[str]:
    val = details.get(name)
    if isinstance(val, str) and val.strip():
        return val.strip()
    return None


def explain_event(event: NormalizedEvent) -> EventExplanation:
    details = event.details or {}
    category = _key(_text(details, "category"))
    kind = _key(_text(details, "kind"))
    title = _text(details, "attack_name") or _text(details, "title")
    is_vuln = details.get("is_vulnerability") is True
    passed = details.get("passed")

    if is_vuln:
        status = "This test found a real vulnerability."
        impact = "Unsafe behavior may succeed in real user sessions if not mitigated."
    elif passed is False:
        status = "This behavior was not blocked during evaluation."
        impact = "The current defenses may be incomplete for this scenario."
    else:
        if event.type is EventType.FAILURE:
            status = "A failure signal was detected."
        else:
            status = "A system signal was recorded."
        impact = "This is a warning signal that helps prevent future incidents."

    meaning = [CATEGORY_MEANING.get(category, CATEGORY_MEANING["unknown"])]
    if kind in KIND_MEANING:
        meaning.append(KIND_MEANING[kind])
    meaning.append(SEVERITY_MEANING[event.severity])
    if kind:
        meaning.append(f"Signal type: {kind.replace('_', ' ')}.")

    steps = KIND_ACTIONS.get(kind, []) + CATEGORY_ACTIONS.get(category, DEFAULT_ACTIONS)
    return EventExplanation(
        headline=f"{title or event.sector.value}: {status}",
        meaning=" ".join(meaning),
        impact=impact,
        next_steps=list(dict.fromkeys(steps)),
    )
