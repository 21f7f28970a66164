from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Sequence, Set, Tuple

from threatscore.config import SETTINGS
from threatscore.schemas import Event, Indicator


EntityKey = Tuple[str, str]  # (entity_type, entity_value)

CO_OCCURS_WITH = "co_occurs_with"
RESOLVES_TO = "resolves_to"
RESOLVES_TO_WEIGHT = 0.7


@dataclass(frozen=True)
class InferredEdge:
    source: EntityKey
    target: EntityKey
    relation: str
    weight: float


def co_occurrence_weight(shared_event_types: int) -> float:
    return float(min(1.0, 0.5 + 0.1 * shared_event_types))


def _pairs_within(items: List[Tuple[datetime, EntityKey]], win: timedelta) -> Set[Tuple[EntityKey, EntityKey]]:
    """Unordered pairs of distinct entities whose timestamps fall within `win`."""
    items = sorted(items, key=lambda t: t[0])
    out: Set[Tuple[EntityKey, EntityKey]] = set()
    for i, (ts_i, key_i) in enumerate(items):
        for ts_j, key_j in items[i + 1 :]:
            if ts_j - ts_i > win:
                break
            if key_i != key_j:
                out.add((min(key_i, key_j), max(key_i, key_j)))
    return out


def infer_relationships(
    activity: Sequence[Tuple[Indicator, Event]],
    window_minutes: int = SETTINGS.correlation_window_minutes,
) -> List[InferredEdge]:
    """Derive graph edges from joint indicator/event history.

    Two indicators that produced events of the same type within the correlation
    window co-occur; the more event types they share, the heavier the edge. An IP
    active within the window of a domain's DNS query is taken to resolve to it.
    Output is sorted so repeated rebuilds over the same history are identical.
    """
    win = timedelta(minutes=window_minutes)

    by_type: Dict[str, List[Tuple[datetime, EntityKey]]] = defaultdict(list)
    ip_activity: List[Tuple[datetime, EntityKey]] = []
    dns_lookups: List[Tuple[datetime, EntityKey]] = []
    for indicator, event in activity:
        key = (indicator.type, indicator.value)
        by_type[event.event_type].append((event.timestamp, key))
        if indicator.type == "IP":
            ip_activity.append((event.timestamp, key))
        if indicator.type == "domain" and event.event_type == "dns_query":
            dns_lookups.append((event.timestamp, key))

    shared: Dict[Tuple[EntityKey, EntityKey], Set[str]] = defaultdict(set)
    for event_type, items in by_type.items():
        for pair in _pairs_within(items, win):
            shared[pair].add(event_type)

    edges: List[InferredEdge] = []
    for (a, b), types in sorted(shared.items()):
        w = co_occurrence_weight(len(types))
        edges.append(InferredEdge(a, b, CO_OCCURS_WITH, w))
        edges.append(InferredEdge(b, a, CO_OCCURS_WITH, w))

    resolutions: Set[Tuple[EntityKey, EntityKey]] = set()
    if ip_activity and dns_lookups:
        ip_activity.sort(key=lambda t: t[0])
        for dns_ts, domain in dns_lookups:
            for ip_ts, ip in ip_activity:
                if abs(ip_ts - dns_ts) <= win:
                    resolutions.add((ip, domain))
    for ip, domain in sorted(resolutions):
        edges.append(InferredEdge(ip, domain, RESOLVES_TO, RESOLVES_TO_WEIGHT))

    return edges
