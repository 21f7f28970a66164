from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from threatscore.utils.time import utc_now


IndicatorType = Literal["IP", "domain", "hash", "user", "file", "unknown"]
Severity = Literal["Critical", "High", "Medium", "Low"]

EVENT_TYPES = (
    "failed_login",
    "successful_login",
    "port_scan",
    "dns_query",
    "http_request",
    "file_download",
    "malware_detected",
    "data_exfiltration",
    "c2_communication",
    "privilege_escalation",
    "script_execution",
    "unknown",
)
EventType = Literal[
    "failed_login",
    "successful_login",
    "port_scan",
    "dns_query",
    "http_request",
    "file_download",
    "malware_detected",
    "data_exfiltration",
    "c2_communication",
    "privilege_escalation",
    "script_execution",
    "unknown",
]


def new_id() -> str:
    return str(uuid.uuid4())


class Indicator(BaseModel):
    id: str = Field(default_factory=new_id)
    type: IndicatorType
    value: str
    source: str = "unknown"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def merged_with(self, confidence: float, seen_at: datetime, metadata: Dict[str, Any]) -> "Indicator":
        """Return the re-observed indicator: confidence only ever increases."""
        return self.model_copy(
            update={
                "confidence": max(self.confidence, confidence),
                "last_seen": max(self.last_seen, seen_at),
                "first_seen": min(self.first_seen, seen_at),
                "metadata": {**self.metadata, **metadata},
            }
        )


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    indicator_id: str
    event_type: EventType
    timestamp: datetime
    frequency: int = Field(default=1, ge=1)
    port: Optional[int] = None
    geo_location: Optional[str] = None
    payload_size: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GraphNode(BaseModel):
    id: str = Field(default_factory=new_id)
    entity_type: str
    entity_value: str
    pagerank: float = 0.0
    centrality: float = 0.0
    cluster_id: Optional[int] = None


class GraphEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    source_node: str
    target_node: str
    relation_type: str
    weight: float = Field(default=1.0, gt=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utc_now)


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    indicator_id: str
    event_id: Optional[str] = None
    rule_score: int
    ml_score: int
    graph_score: int
    final_risk_score: int
    severity: Severity
    mitre_stage: str
    triggered_rules: List[str] = Field(default_factory=list)
    explanation: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class ScoreResult(BaseModel):
    """One component's score in [0, 100] plus explanatory detail."""

    score: int = Field(ge=0, le=100)
    details: Dict[str, Any] = Field(default_factory=dict)


class AnalysisResult(BaseModel):
    alert_id: str
    indicator_id: str
    indicator_value: str
    event_type: str
    rule_score: int
    ml_score: int
    graph_score: int
    final_risk_score: int
    severity: Severity
    mitre_stage: str
    triggered_rules: List[str]
    features: Optional[Dict[str, float]] = None
    no_data: bool = False


class BatchItemResult(BaseModel):
    index: int
    success: bool
    alert_id: Optional[str] = None
    severity: Optional[Severity] = None
    final_risk_score: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class BatchReport(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[BatchItemResult]
