# src/targetflow/core/traceability/history.py
"""
Histórico de build — rastreabilidade append-only do TargetFlow.

Cada run registra eventos explícitos no log `progress/history.jsonl` do
CacheStore. O log nunca é reescrito: a ordem das linhas é a ordem real
de execução, e leitores externos podem auditar builds sem reexecutar o
engine.

Tipos de evento:
    run_started, run_finished,
    target_started, target_built, target_failed, target_skipped

Decisões arquiteturais:
    - UTC é o timezone canônico para todos os timestamps
    - Eventos são registrados apenas por chamada explícita da API
    - Consultas (`read_history`, `progress`) devolvem pandas.DataFrame

Invariantes:
    - Cada chamada adiciona exatamente uma linha ao log
    - Os campos `run_id`, `event_type` e `timestamp` estão sempre presentes

Limites explícitos:
    - Não decide políticas de execução
    - Não altera metadados nem valores do cache
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd


HISTORY_COLUMNS = ["run_id", "event_type", "target", "timestamp", "payload"]
_TERMINAL_STATES = {
    "target_started": "in_progress",
    "target_built": "built",
    "target_failed": "failed",
    "target_skipped": "skipped",
}


def _ensure_tzaware_utc(dt: datetime) -> datetime:
    """Timestamps naive são assumidos como UTC; os demais são convertidos."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: datetime) -> str:
    return _ensure_tzaware_utc(dt).isoformat()


def _ms_between(start: datetime, end: datetime) -> int:
    s = _ensure_tzaware_utc(start)
    e = _ensure_tzaware_utc(end)
    return max(0, int((e - s).total_seconds() * 1000))


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def record_event(
    store: Any,
    *,
    run_id: str,
    event_type: str,
    ts: datetime,
    target: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Adiciona um evento ao histórico persistente.

    Raises:
        CacheError: se o log não puder ser gravado.
    """
    event: Dict[str, Any] = {
        "run_id": run_id,
        "event_type": event_type,
        "timestamp": _iso(ts),
        "target": target,
        "payload": dict(payload or {}),
    }
    store.append_history(event)
    return event


def run_started(store: Any, *, run_id: str, ts: datetime, options_hash: str, targets: List[str]) -> None:
    record_event(
        store,
        run_id=run_id,
        event_type="run_started",
        ts=ts,
        payload={"options_hash": options_hash, "targets": list(targets)},
    )


def run_finished(
    store: Any,
    *,
    run_id: str,
    started_at: datetime,
    ts: datetime,
    summary: Dict[str, Any],
) -> None:
    payload = dict(summary)
    payload["duration_ms"] = _ms_between(started_at, ts)
    record_event(store, run_id=run_id, event_type="run_finished", ts=ts, payload=payload)


def target_started(store: Any, *, run_id: str, target: str, ts: datetime, attempt: int, reason: str) -> None:
    record_event(
        store,
        run_id=run_id,
        event_type="target_started",
        ts=ts,
        target=target,
        payload={"attempt": attempt, "reason": reason},
    )


def target_built(
    store: Any,
    *,
    run_id: str,
    target: str,
    started_at: datetime,
    ts: datetime,
    value_hash: Optional[str],
    warnings: Optional[List[str]] = None,
) -> None:
    record_event(
        store,
        run_id=run_id,
        event_type="target_built",
        ts=ts,
        target=target,
        payload={
            "duration_ms": _ms_between(started_at, ts),
            "value_hash": value_hash,
            "warnings": list(warnings or []),
        },
    )


def target_failed(
    store: Any,
    *,
    run_id: str,
    target: str,
    ts: datetime,
    error: Dict[str, Any],
    attempt: int,
    started_at: Optional[datetime] = None,
) -> None:
    payload: Dict[str, Any] = {"error": dict(error), "attempt": attempt}
    if started_at is not None:
        payload["duration_ms"] = _ms_between(started_at, ts)
    record_event(store, run_id=run_id, event_type="target_failed", ts=ts, target=target, payload=payload)


def target_skipped(store: Any, *, run_id: str, target: str, ts: datetime, reason: str) -> None:
    record_event(
        store,
        run_id=run_id,
        event_type="target_skipped",
        ts=ts,
        target=target,
        payload={"reason": reason},
    )


# ---------------------------------------------------------------------------
# Consultas
# ---------------------------------------------------------------------------

def read_history(store: Any, target: Optional[str] = None) -> pd.DataFrame:
    """Histórico completo (ou de um target) em ordem de registro."""
    records = store.read_history_records()
    df = pd.DataFrame.from_records(records, columns=HISTORY_COLUMNS)
    if target is not None:
        df = df[df["target"] == target].reset_index(drop=True)
    return df


def progress(store: Any) -> pd.DataFrame:
    """
    Último estado conhecido de cada target.

    Colunas: target, state, run_id, timestamp.
    """
    df = read_history(store)
    df = df[df["event_type"].isin(list(_TERMINAL_STATES))]
    if df.empty:
        return pd.DataFrame(columns=["target", "state", "run_id", "timestamp"])
    latest = df.groupby("target", sort=True).tail(1)
    out = pd.DataFrame(
        {
            "target": latest["target"].values,
            "state": latest["event_type"].map(_TERMINAL_STATES).values,
            "run_id": latest["run_id"].values,
            "timestamp": latest["timestamp"].values,
        }
    )
    return out.sort_values("target").reset_index(drop=True)


__all__ = [
    "read_history",
    "progress",
    "record_event",
    "run_started",
    "run_finished",
    "target_started",
    "target_built",
    "target_failed",
    "target_skipped",
    "now_utc",
]
