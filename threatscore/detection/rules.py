from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from threatscore.errors import DuplicateRuleError, MalformedRuleError
from threatscore.features.extract import FeatureVector
from threatscore.schemas import Event


logger = logging.getLogger(__name__)

RuleCondition = Callable[[FeatureVector, Sequence[Event]], bool]

MAX_RULE_SCORE = 100


@dataclass(frozen=True)
class Rule:
    rule_id: str
    name: str
    severity: str
    points: int
    condition: RuleCondition


@dataclass(frozen=True)
class TriggeredRule:
    rule_id: str
    name: str
    severity: str
    points: int

    def describe(self) -> str:
        return f"{self.name} ({self.severity}, +{self.points})"


@dataclass(frozen=True)
class RuleResult:
    score: int
    triggered: List[TriggeredRule] = field(default_factory=list)

    @property
    def rule_ids(self) -> List[str]:
        return [t.rule_id for t in self.triggered]

    @property
    def explanation(self) -> List[str]:
        return [t.describe() for t in self.triggered]


def _count(events: Sequence[Event], *event_types: str) -> int:
    return sum(1 for e in events if e.event_type in event_types)


def _ssh_failed_attempts(events: Sequence[Event]) -> int:
    return sum(e.frequency for e in events if e.event_type == "failed_login" and e.port == 22)


def default_rules() -> List[Rule]:
    return [
        Rule(
            "brute_force_ssh",
            "SSH Brute Force Detection",
            "high",
            30,
            lambda f, ev: _ssh_failed_attempts(ev) >= 200,
        ),
        Rule(
            "port_scan_detection",
            "Port Scan Detection",
            "medium",
            25,
            lambda f, ev: f.unique_ports >= 20 and f.port_scan_entropy > 3,
        ),
        Rule(
            "c2_communication",
            "Command and Control Communication",
            "critical",
            40,
            lambda f, ev: _count(ev, "c2_communication") > 0 or (f.dns_entropy > 4 and f.event_frequency > 50),
        ),
        Rule(
            "multi_vector_attack",
            "Multi-Vector Attack",
            "critical",
            35,
            lambda f, ev: f.unique_event_types >= 3,
        ),
        Rule(
            "data_exfiltration",
            "Data Exfiltration",
            "critical",
            45,
            lambda f, ev: _count(ev, "data_exfiltration") > 0 or f.avg_payload_size > 10_000_000,
        ),
        Rule(
            "geo_anomaly",
            "Geographic Anomaly",
            "medium",
            20,
            lambda f, ev: f.geo_risk_score > 70 or f.unique_geolocations > 10,
        ),
        Rule(
            "rapid_succession",
            "Rapid Event Succession",
            "medium",
            22,
            lambda f, ev: f.time_between_events < 2 and f.event_frequency > 100,
        ),
        Rule(
            "blacklist_match",
            "Blacklist Match",
            "high",
            35,
            lambda f, ev: f.blacklist_score > 50,
        ),
        Rule(
            "privilege_escalation",
            "Privilege Escalation Attempt",
            "high",
            38,
            lambda f, ev: _count(ev, "privilege_escalation", "script_execution") > 0,
        ),
        Rule(
            "dns_tunneling",
            "DNS Tunneling",
            "high",
            33,
            lambda f, ev: _count(ev, "dns_query") > 100 and f.dns_entropy > 4.5,
        ),
        Rule(
            "scanning_activity",
            "Network Scanning Activity",
            "medium",
            20,
            lambda f, ev: _count(ev, "port_scan") > 10,
        ),
        Rule(
            "malware_detection",
            "Malware Detected",
            "critical",
            50,
            lambda f, ev: _count(ev, "malware_detected") > 0,
        ),
    ]


class RuleEngine:
    """Ordered, runtime-mutable registry of declarative threat rules."""

    def __init__(self, rules: Optional[Sequence[Rule]] = None):
        self._lock = threading.RLock()
        self._rules: List[Rule] = []
        for rule in default_rules() if rules is None else rules:
            self.add_rule(rule)

    def add_rule(self, rule: Rule) -> Rule:
        if not isinstance(rule, Rule) or not rule.rule_id or not rule.name or not callable(rule.condition):
            raise MalformedRuleError("Invalid rule: must have rule_id, name, and a callable condition")
        if not isinstance(rule.points, int) or isinstance(rule.points, bool):
            raise MalformedRuleError(f"Invalid rule {rule.rule_id}: points must be an integer")
        with self._lock:
            if any(r.rule_id == rule.rule_id for r in self._rules):
                raise DuplicateRuleError(f"Rule {rule.rule_id} is already registered")
            self._rules.append(rule)
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            for i, r in enumerate(self._rules):
                if r.rule_id == rule_id:
                    del self._rules[i]
                    return True
        return False

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            return next((r for r in self._rules if r.rule_id == rule_id), None)

    def list_rules(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {"id": r.rule_id, "name": r.name, "severity": r.severity, "points": r.points}
                for r in self._rules
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    def evaluate(self, features: FeatureVector, events: Sequence[Event]) -> RuleResult:
        with self._lock:
            rules = list(self._rules)

        total = 0
        triggered: List[TriggeredRule] = []
        for rule in rules:
            try:
                matched = bool(rule.condition(features, events))
            except Exception:
                logger.warning("malformed rule %s raised during evaluation; treating as non-matching", rule.rule_id, exc_info=True)
                continue
            if matched:
                total += rule.points
                triggered.append(TriggeredRule(rule.rule_id, rule.name, rule.severity, rule.points))

        return RuleResult(score=int(min(MAX_RULE_SCORE, max(0, total))), triggered=triggered)
