from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from threatscore.schemas import EVENT_TYPES
from threatscore.utils.time import safe_parse_ts, to_iso_utc, utc_now


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical event handed to the scoring pipeline."""

    indicator_type: str
    indicator_value: str
    event_type: str
    ts: str
    source: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: str = ""

    @property
    def indicator_key(self) -> tuple:
        return (self.indicator_type, self.indicator_value)


EVENT_TYPE_ALIASES: Dict[str, str] = {
    "failed_login": "failed_login",
    "login_failure": "failed_login",
    "authentication_failure": "failed_login",
    "successful_login": "successful_login",
    "login_success": "successful_login",
    "authentication_success": "successful_login",
    "port_scan": "port_scan",
    "scan": "port_scan",
    "dns_query": "dns_query",
    "dns": "dns_query",
    "http_request": "http_request",
    "web_request": "http_request",
    "file_download": "file_download",
    "download": "file_download",
    "malware_detected": "malware_detected",
    "virus": "malware_detected",
    "data_exfiltration": "data_exfiltration",
    "exfil": "data_exfiltration",
    "c2_communication": "c2_communication",
    "command_control": "c2_communication",
    "privilege_escalation": "privilege_escalation",
    "script_execution": "script_execution",
}

# Raw keys that name an entity, in the order they are tried for the indicator itself.
ENTITY_KEYS = (("ip", "IP"), ("domain", "domain"), ("hash", "hash"), ("user", "user"), ("username", "user"), ("file", "file"))

_IPV4 = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
_IPV6 = re.compile(r"^([0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$")
_DOMAIN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9]?\.[a-zA-Z]{2,}$")
_HASH = re.compile(r"^[a-fA-F0-9]{32}$|^[a-fA-F0-9]{40}$|^[a-fA-F0-9]{64}$")

INDICATOR_TYPES = ("IP", "domain", "hash", "user", "file", "unknown")
_INDICATOR_TYPES_BY_NAME = {t.lower(): t for t in INDICATOR_TYPES}


def _stable_id(*parts: str) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(p.encode("utf-8", errors="ignore"))
        h.update(b"|")
    return h.hexdigest()[:16]


def is_ip_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_IPV4.match(value) or _IPV6.match(value))


def is_domain(value: Any) -> bool:
    return isinstance(value, str) and bool(_DOMAIN.match(value))


def is_hash(value: Any) -> bool:
    return isinstance(value, str) and bool(_HASH.match(value))


def detect_indicator_type(raw: Dict[str, Any]) -> str:
    if raw.get("indicator_type"):
        return _INDICATOR_TYPES_BY_NAME.get(str(raw["indicator_type"]).strip().lower(), "unknown")
    value = raw.get("value")
    if raw.get("ip") or is_ip_address(value):
        return "IP"
    if raw.get("domain") or is_domain(value):
        return "domain"
    if raw.get("hash") or is_hash(value):
        return "hash"
    if raw.get("user") or raw.get("username"):
        return "user"
    if raw.get("file"):
        return "file"
    return "unknown"


def extract_indicator_value(raw: Dict[str, Any]) -> str:
    for key in ("indicator_value", "value", "ip", "domain", "hash", "user", "username", "file"):
        if raw.get(key):
            return str(raw[key]).strip()
    return "unknown"


def normalize_event_type(event_type: Optional[str]) -> str:
    if not event_type:
        return "unknown"
    t = str(event_type).strip().lower()
    t = EVENT_TYPE_ALIASES.get(t, t)
    return t if t in EVENT_TYPES else "unknown"


def normalize_timestamp(ts: Any) -> str:
    dt = safe_parse_ts(ts)
    return to_iso_utc(dt or utc_now())


def _int_or_none(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def extract_metadata(raw: Dict[str, Any], indicator_type: str, indicator_value: str) -> Dict[str, Any]:
    base = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
    metadata: Dict[str, Any] = {
        "port": _int_or_none(raw.get("port") or raw.get("destination_port") or base.get("port")),
        "geo": raw.get("geo") or raw.get("country") or raw.get("geo_location") or base.get("geo"),
        "attempts": _int_or_none(raw.get("attempts") or raw.get("count") or base.get("attempts")) or 1,
        "protocol": raw.get("protocol") or base.get("protocol"),
        "user_agent": raw.get("user_agent") or base.get("user_agent"),
        "payload_size": _int_or_none(raw.get("payload_size") or raw.get("bytes") or base.get("payload_size")),
        "severity": raw.get("severity") or base.get("severity"),
        "confidence": raw.get("confidence") or base.get("confidence") or 0.5,
        "reputation": raw.get("reputation", base.get("reputation")),
    }

    # Entities mentioned alongside the indicator become graph neighbours.
    related: Dict[str, str] = dict(base.get("related") or {})
    for key, etype in ENTITY_KEYS:
        v = raw.get(key)
        if not v:
            continue
        v = str(v).strip()
        if etype == indicator_type and v == indicator_value:
            continue
        related.setdefault(etype, v)
    if related:
        metadata["related"] = related

    return {k: v for k, v in metadata.items() if v is not None}


def normalize_event(raw: Dict[str, Any]) -> NormalizedEvent:
    """Map a heterogeneous raw payload onto the canonical event schema."""
    indicator_type = detect_indicator_type(raw)
    indicator_value = extract_indicator_value(raw)
    event_type = normalize_event_type(raw.get("event_type") or raw.get("type"))
    ts = normalize_timestamp(raw.get("timestamp") or raw.get("time") or raw.get("ts"))
    source = str(raw.get("source") or "unknown")
    metadata = extract_metadata(raw, indicator_type, indicator_value)
    eid = _stable_id(indicator_type, indicator_value, event_type, ts, source, str(metadata.get("port") or "-"))
    return NormalizedEvent(
        indicator_type=indicator_type,
        indicator_value=indicator_value,
        event_type=event_type,
        ts=ts,
        source=source,
        metadata=metadata,
        event_id=eid,
    )


def coerce_event(event: Union[NormalizedEvent, Dict[str, Any]]) -> NormalizedEvent:
    if isinstance(event, NormalizedEvent):
        return event
    if isinstance(event, dict):
        return normalize_event(event)
    raise TypeError(f"Unsupported event payload: {type(event).__name__}")
