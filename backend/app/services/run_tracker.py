"""
In-memory registry of enhancement runs.

Runs execute as background tasks; the HTTP layer looks them up here by run
id to report progress. Finished runs are dropped after a while by
``cleanup_stale_runs``.
"""
import time
import logging
from typing import Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .orchestrator import EnhancementRun

logger = logging.getLogger(__name__)

# Key: run id
_active_runs: Dict[str, "EnhancementRun"] = {}


def register_run(run: "EnhancementRun") -> "EnhancementRun":
    """Track a run. Replaces any entry with the same id."""
    if run.run_id in _active_runs:
        logger.warning(f"[RUN_TRACKER] Replacing run {run.run_id}")
    _active_runs[run.run_id] = run
    return run


def get_run(run_id: str) -> Optional["EnhancementRun"]:
    return _active_runs.get(run_id)


def list_runs(chapter_id: Optional[int] = None) -> list:
    runs = list(_active_runs.values())
    if chapter_id is not None:
        runs = [r for r in runs if r.chapter_id == chapter_id]
    return sorted(runs, key=lambda r: r.created_at)


def remove_run(run_id: str) -> None:
    _active_runs.pop(run_id, None)


def cleanup_stale_runs(max_age: float = 3600.0) -> int:
    """Remove finished runs older than max_age seconds, and stuck ones older than twice that."""
    now = time.time()
    stale = [
        run_id for run_id, run in _active_runs.items()
        if (now - run.created_at) > max_age and run.is_finished
    ]
    stale.extend(
        run_id for run_id, run in _active_runs.items()
        if (now - run.created_at) > max_age * 2 and run_id not in stale
    )
    for run_id in stale:
        _active_runs.pop(run_id, None)
    if stale:
        logger.info(f"[RUN_TRACKER] Cleaned up {len(stale)} stale runs")
    return len(stale)


def clear_runs() -> None:
    _active_runs.clear()
