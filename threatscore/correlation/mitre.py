from __future__ import annotations

from typing import Dict, List, Optional


UNKNOWN_STAGE = "Unknown"

STAGES = (
    "Reconnaissance",
    "Initial Access",
    "Execution",
    "Privilege Escalation",
    "Command and Control",
    "Exfiltration",
    UNKNOWN_STAGE,
)

# Normalized event type -> attack-lifecycle stage, with the closest ATT&CK technique.
# malware_detected has no stage of its own.
MITRE_MAP: List[Dict[str, str]] = [
    {
        "event_type": "port_scan",
        "stage": "Reconnaissance",
        "technique": "Network Service Scanning",
        "technique_id": "T1046",
    },
    {
        "event_type": "dns_query",
        "stage": "Reconnaissance",
        "technique": "Gather Victim Network Information: DNS",
        "technique_id": "T1590.002",
    },
    {
        "event_type": "failed_login",
        "stage": "Initial Access",
        "technique": "Brute Force",
        "technique_id": "T1110",
    },
    {
        "event_type": "successful_login",
        "stage": "Initial Access",
        "technique": "Valid Accounts",
        "technique_id": "T1078",
    },
    {
        "event_type": "http_request",
        "stage": "Initial Access",
        "technique": "Exploit Public-Facing Application",
        "technique_id": "T1190",
    },
    {
        "event_type": "script_execution",
        "stage": "Execution",
        "technique": "Command and Scripting Interpreter",
        "technique_id": "T1059",
    },
    {
        "event_type": "file_download",
        "stage": "Execution",
        "technique": "User Execution: Malicious File",
        "technique_id": "T1204.002",
    },
    {
        "event_type": "privilege_escalation",
        "stage": "Privilege Escalation",
        "technique": "Abuse Elevation Control Mechanism",
        "technique_id": "T1548",
    },
    {
        "event_type": "c2_communication",
        "stage": "Command and Control",
        "technique": "Application Layer Protocol",
        "technique_id": "T1071",
    },
    {
        "event_type": "data_exfiltration",
        "stage": "Exfiltration",
        "technique": "Exfiltration Over C2 Channel",
        "technique_id": "T1041",
    },
]

_BY_EVENT_TYPE: Dict[str, Dict[str, str]] = {m["event_type"]: m for m in MITRE_MAP}


def map_stage(event_type: Optional[str]) -> str:
    """Attack stage for a normalized event type; never raises."""
    if not isinstance(event_type, str):
        return UNKNOWN_STAGE
    m = _BY_EVENT_TYPE.get(event_type.strip().lower())
    return m["stage"] if m else UNKNOWN_STAGE


def mitre_for_event_type(event_type: Optional[str]) -> Optional[Dict[str, str]]:
    if not isinstance(event_type, str):
        return None
    m = _BY_EVENT_TYPE.get(event_type.strip().lower())
    if m is None:
        return None
    return {"tactic": m["stage"], "technique": m["technique"], "technique_id": m["technique_id"]}
