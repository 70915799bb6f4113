"""
Logging helpers.

structured_log_line renders one compact JSON object per log record; expansion
events can additionally be appended to a JSONL file for later analysis.
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import EXPANSION_EVENT_LOG

logger = logging.getLogger("constellations")

# Log file path
LOG_DIR = Path(__file__).parent / "logs"
LOG_FILE = LOG_DIR / "expansion_events.jsonl"


def structured_log_line(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def log_expansion_event(
    source_id: int,
    source_title: str,
    outcome: str,
    added_count: int = 0,
    latency_ms: Optional[int] = None,
    cache_hit: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    log_file: Optional[Path] = None,
) -> None:
    """
    Record one expansion in the structured log and, when enabled, the JSONL event file.

    Args:
        source_id: Id of the node that was expanded
        source_title: Its title
        outcome: Expansion status ("cache_hit", "expanded", "empty", "failed", ...)
        added_count: Number of nodes the merge added to the graph
        latency_ms: Wall time of the whole expansion
        cache_hit: "exact" / "partial" / "miss", or None when the cache was not consulted
        metadata: Optional additional fields
        log_file: Override for the JSONL path (tests)
    """
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": "expansion",
        "source_id": source_id,
        "source_title": source_title,
        "outcome": outcome,
        "added_count": added_count,
    }
    if latency_ms is not None:
        event["latency_ms"] = latency_ms
    if cache_hit is not None:
        event["cache_hit"] = cache_hit
    if metadata:
        event["metadata"] = metadata

    logger.info(structured_log_line(event))

    if not (EXPANSION_EVENT_LOG or log_file):
        return
    path = log_file or LOG_FILE
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, default=str) + "\n")
    except OSError as e:
        # The event is already in the structured log; the file is best-effort
        logger.warning(f"[expansion_log] Failed to append event: {e}")


def get_recent_events(limit: int = 100, log_file: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Most recent expansion events from the JSONL file, oldest first."""
    path = log_file or LOG_FILE
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as f:
        lines = [line for line in f if line.strip()]
    return [json.loads(line) for line in lines[-limit:]]
