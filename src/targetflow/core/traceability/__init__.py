"""
Rastreabilidade: histórico append-only de eventos de build.
"""

from .history import (
    now_utc,
    progress,
    read_history,
    record_event,
    run_finished,
    run_started,
    target_built,
    target_failed,
    target_skipped,
    target_started,
)

__all__ = [
    "now_utc",
    "progress",
    "read_history",
    "record_event",
    "run_finished",
    "run_started",
    "target_built",
    "target_failed",
    "target_skipped",
    "target_started",
]
