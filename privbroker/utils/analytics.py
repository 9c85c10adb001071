"""
Minimal tool-usage analytics: one JSON line per tool call.
"""
import json
from collections import Counter
from datetime import datetime

from ..core import config

# Previous tool name, a repeat counts as a retry
_last_tool = None

ALL_TOOLS = {
    "elevation_status", "app_action", "install_package", "install_status",
    "reboot_device", "cache_size", "run_privileged",
}


def log_event(tool: str, ok: bool, backend: str = "none", **details):
    """
    Append one usage record.

    Args:
        tool: Tool name (e.g., "app_action")
        ok: Whether the tool succeeded
        backend: Backend that handled the call, if any
        details: Extra JSON-serializable fields (action, mode, truncated...)
    """
    global _last_tool

    record = {
        "ts": datetime.now().isoformat(timespec="seconds"),
        "tool": tool,
        "ok": ok,
        "backend": backend,
        "retry": tool == _last_tool,
        **details,
    }
    try:
        line = json.dumps(record)
        config.ANALYTICS_DIR.mkdir(parents=True, exist_ok=True)
        with open(config.ANALYTICS_FILE, "a") as f:
            f.write(line + "\n")
    except (OSError, TypeError, ValueError):
        return  # Never fail the tool call due to analytics
    _last_tool = tool


def _read_records() -> list:
    with open(config.ANALYTICS_FILE) as f:
        return [json.loads(line) for line in f if line.strip()]


def get_summary() -> dict:
    """
    Usage summary.

    Returns dict with:
    - tool_counts: {tool_name: count}
    - backend_counts: {backend: count}
    - success_rate, retry_rate: percentages
    - insights: list of strings
    """
    if not config.ANALYTICS_FILE.exists():
        return {"error": "No analytics data yet"}
    try:
        records = _read_records()
    except (OSError, ValueError) as e:
        return {"error": str(e)}
    if not records:
        return {"error": "No events recorded"}

    tools = Counter(r.get("tool", "unknown") for r in records)
    backends = Counter(r.get("backend", "none") for r in records)
    success_share = sum(1 for r in records if r.get("ok")) / len(records)
    retry_share = sum(1 for r in records if r.get("retry")) / len(records)

    return {
        "total_events": len(records),
        "tool_counts": dict(tools),
        "backend_counts": dict(backends),
        "success_rate": round(success_share * 100, 1),
        "retry_rate": round(retry_share * 100, 1),
        "insights": _generate_insights(tools, backends, retry_share),
    }


def _generate_insights(tools: Counter, backends: Counter, retry_share: float) -> list:
    notes = []
    if retry_share > 0.15:
        notes.append(f"High retry rate ({retry_share:.0%}): check error messages and remediation actions.")
    if backends and not any(count for name, count in backends.items() if name != "none"):
        notes.append("No call reached a backend: the device has no usable elevation.")
    unused = sorted(ALL_TOOLS - set(tools))
    if unused:
        notes.append(f"Unused tools: {', '.join(unused)}.")
    return notes or ["No obvious issues detected."]


def clear_analytics():
    """Clear all analytics data."""
    if config.ANALYTICS_FILE.exists():
        config.ANALYTICS_FILE.unlink()
    return "Analytics cleared."
