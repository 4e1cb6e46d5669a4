from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ----------------------------
# Wire record
# ----------------------------
class EventRecord(BaseModel):
    """
    One line of the events file. Only `kind` is needed; every other field
    has a default, and unknown fields are kept as-is.
    """
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    v: Optional[int] = None
    id: Optional[str] = None
    ts: Optional[str] = None
    kind: str
    severity: Optional[str] = None
    category: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("v", mode="before")
    @classmethod
    def _lenient_version(cls, value):
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @field_validator("meta", mode="before")
    @classmethod
    def _meta_as_dict(cls, value):
        return value if isinstance(value, dict) else {}


# ----------------------------
# Visualization state
# ----------------------------
class Severity(str, Enum):
    S0 = "S0"   # benign
    S1 = "S1"   # UX degradation
    S2 = "S2"   # business risk
    S3 = "S3"   # serious risk
    S4 = "S4"   # critical

    @property
    def rank(self) -> int:
        return int(self.value[1])


class EventType(str, Enum):
    FAILURE = "FAILURE"
    SYSTEM = "SYSTEM"
    INTERVENTION = "INTERVENTION"
    HUMAN = "HUMAN"


class Sector(str, Enum):
    REASONING = "REASONING"
    TOOLS = "TOOLS"
    CONTEXT = "CONTEXT"
    FEEDBACK = "FEEDBACK"
    DEPLOYMENT = "DEPLOYMENT"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class NormalizedEvent(_Frozen):
    id: str
    timestamp: str                 # HH:MM:SS, UTC
    type: EventType
    message: str
    sector: Sector
    severity: Severity
    marker_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ThreatMarker(_Frozen):
    id: str
    sector: Sector
    severity: Severity
    x: float                       # percent of map width
    y: float                       # percent of map height
    label: str
    timestamp: float
    active: bool


class SystemStats(_Frozen):
    monitored_systems: int = 1
    active_failures: int = 0
    running_experiments: int = 0
    active_interventions: int = 0
    latency: int = 0


class SeverityCounts(_Frozen):
    S0: int = 0
    S1: int = 0
    S2: int = 0
    S3: int = 0
    S4: int = 0

    def incremented(self, sev: Severity) -> "SeverityCounts":
        return self.model_copy(update={sev.value: getattr(self, sev.value) + 1})


class VisualizerDataset(_Frozen):
    markers: Tuple[ThreatMarker, ...] = ()
    events: Tuple[NormalizedEvent, ...] = ()
    stats: SystemStats = Field(default_factory=SystemStats)
    severity_counts: SeverityCounts = Field(default_factory=SeverityCounts)
    source_label: str = "idle"

    def find_marker(self, marker_id: str) -> Optional[ThreatMarker]:
        for m in self.markers:
            if m.id == marker_id:
                return m
        return None

    def latest_event_for_marker(self, marker_id: str) -> Optional[NormalizedEvent]:
        for ev in reversed(self.events):
            if ev.marker_id == marker_id:
                return ev
        return None
