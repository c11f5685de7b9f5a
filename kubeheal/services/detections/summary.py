"""
Condense a telemetry window into the document sent to the classifier.

Only the latest record per kind is kept. Bulk kinds are filtered down to what
matters for incident analysis: pods that are restarting or not healthy, and
warning/error events.
"""

from typing import Any, Iterable

MAX_PROBLEMATIC_PODS = 50
MAX_WARNING_EVENTS   = 100

SCALAR_KINDS = ("cpu", "memory", "pods", "nodes", "storage")


def latest_by_kind(records: Iterable) -> dict[str, dict]:
    """records must be ordered newest first."""
    latest: dict[str, dict] = {}
    for record in records:
        latest.setdefault(record.kind, record.payload)
    return latest


def _is_problematic(pod: dict) -> bool:
    restarts = pod.get("restarts") or 0
    if isinstance(restarts, (int, float)) and restarts > 0:
        return True
    for field in ("status", "phase"):
        value = pod.get(field)
        if value is not None and value not in ("Running", "Succeeded"):
            return True
    ready, total = pod.get("ready"), pod.get("total_containers")
    if ready is not None and total is not None and ready != total:
        return True
    return False


def problematic_pods(pod_details: dict | None) -> list[dict]:
    pods = (pod_details or {}).get("pods") or []
    return [p for p in pods if isinstance(p, dict) and _is_problematic(p)][:MAX_PROBLEMATIC_PODS]


def warning_events(events: dict | None) -> list[dict]:
    items = (events or {}).get("events") or []
    out = []
    for e in items:
        if not isinstance(e, dict):
            continue
        reason = str(e.get("reason") or "")
        if e.get("type") == "Warning" or "Error" in reason or "Failed" in reason:
            out.append(e)
        if len(out) >= MAX_WARNING_EVENTS:
            break
    return out


def build_summary(records: Iterable) -> dict[str, Any]:
    latest = latest_by_kind(records)
    summary: dict[str, Any] = {kind: latest.get(kind) for kind in SCALAR_KINDS}
    summary["problematic_pods"] = problematic_pods(latest.get("pod_details"))
    summary["warning_events"] = warning_events(latest.get("events"))
    if "security_threats" in latest:
        summary["security_threats"] = latest["security_threats"]
    if "security" in latest:
        summary["security"] = latest["security"]
    summary["kinds_present"] = sorted(latest)
    return summary
