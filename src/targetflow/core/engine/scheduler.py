# src/targetflow/core/engine/scheduler.py
"""
Scheduler do TargetFlow.

Máquina de estados por item:

    blocked → ready → in_progress → built | failed
    blocked | ready → skipped   (ancestral falhou ou run cancelada)

A fila de prontos é um heap ordenado por
(época de descoberta, -prioridade, índice topológico). Todas as
transições de estado acontecem na thread coordenadora; o trabalho de
cada item (staleness, carga, execução, gravação) roda no pool de
workers em modo paralelo, ou na própria thread em modo sequencial.

Decisões arquiteturais:
    - Falhas viram `ErrorPayload` (serializável) no item, nunca stack trace
    - Retry por classe de falha:
        user/timeout:    até `target.retries`
        infrastructure:  até `target.retries + infrastructure_retries`
        trigger/expansão dinâmica: sem retry
    - fail_fast: nenhum item novo é despachado; pendentes viram skipped
    - keep_going: apenas sucessores transitivos da falha viram skipped
    - CacheError é fatal independentemente da política: o despacho para,
      itens em voo terminam e o erro é relançado

Targets dinâmicos:
    - quando fica pronto, o pai é expandido (runner) e seus branches são
      inseridos no grafo e na fila, herdando a prioridade do pai
    - o pai permanece in_progress até todos os branches terminarem e
      então é finalizado: built se todos foram built, senão failed

Limites explícitos:
    - Não decide staleness (runner/triggers)
    - Não executa comandos (executor)
"""

from __future__ import annotations

import heapq
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from targetflow.core.errors import exception_to_error, run_cancelled, upstream_failed
from targetflow.core.exceptions import (
    BuildError,
    CacheError,
    DynamicExpansionError,
    TriggerEvaluationError,
)
from targetflow.core.traceability.history import now_utc

from .context import RunContext
from .dynamic import Branch
from .executor import FailureKind, classify_failure
from .runner import Outcome, TargetRunner


class ScheduleState(str, Enum):
    BLOCKED = "blocked"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BUILT = "built"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({ScheduleState.BUILT, ScheduleState.FAILED, ScheduleState.SKIPPED})
_NOT_RETRIED = (TriggerEvaluationError, DynamicExpansionError)


@dataclass
class ScheduleItem:
    """Estado de agendamento de um nó construível."""

    name: str
    state: ScheduleState = ScheduleState.BLOCKED
    attempts: int = 0
    reason: str = ""
    error: Optional[Dict[str, Any]] = None
    executed: bool = False
    priority: float = 0.0
    order: int = 0
    index: int = 0
    parent: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "attempts": self.attempts,
            "reason": self.reason,
            "error": self.error,
            "executed": self.executed,
            "parent": self.parent,
        }


class Scheduler:
    """Despacha os nós do grafo respeitando dependências e políticas."""

    def __init__(self, ctx: RunContext, runner: TargetRunner):
        self.ctx = ctx
        self.runner = runner
        self.items: Dict[str, ScheduleItem] = {}
        self._heap: List[Tuple[int, float, int, int, str]] = []
        self._epoch = 0
        self._built: Set[str] = set()
        self._children: Dict[str, List[str]] = {}
        self._pending_children: Dict[str, Set[str]] = {}
        self._cancelled = threading.Event()
        self._cancel_cause: Optional[str] = None
        self._fatal: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Controle externo
    # ------------------------------------------------------------------
    def cancel(self, cause: str = "cancelled") -> None:
        """Interrompe o despacho de novos itens (thread-safe)."""
        if not self._cancelled.is_set():
            self._cancel_cause = cause
            self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _stopped(self) -> bool:
        return self._cancelled.is_set() or self._fatal is not None

    # ------------------------------------------------------------------
    # Execução
    # ------------------------------------------------------------------
    def run(self) -> Dict[str, ScheduleItem]:
        """
        Executa até que todo item seja terminal.

        Raises:
            CacheError: falha fatal de gravação no cache.
            KeyboardInterrupt: após marcar os itens pendentes como skipped.
        """
        graph = self.ctx.graph
        order = graph.topological_order()
        self.ctx.scopes.register_consumers(
            {n: [u for u in graph.dependents(n) if graph.node(u).buildable] for n in order}
        )
        for i, name in enumerate(order):
            target = self.ctx.plan.get(name)
            self.items[name] = ScheduleItem(name=name, priority=float(target.priority or 0.0), order=i)
        for name in order:
            self._maybe_ready(name)

        try:
            if self.ctx.options.parallel:
                self._run_parallel()
            else:
                self._run_sequential()
        except KeyboardInterrupt:
            self.cancel("interrupted")
            self._skip_remaining()
            raise

        self._skip_remaining()
        if self._fatal is not None:
            raise self._fatal
        return self.items

    def _run_sequential(self) -> None:
        while not self._stopped():
            name = self._pop()
            if name is None:
                return
            attempt = self._start(name)
            try:
                outcome = self.runner.run(name, attempt=attempt)
            except Exception as exc:
                self._on_failure(name, exc)
            else:
                self._on_success(name, outcome)

    def _run_parallel(self) -> None:
        workers = max(1, int(self.ctx.options.workers))
        running: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="targetflow") as pool:
            while True:
                while not self._stopped() and len(running) < workers:
                    name = self._pop()
                    if name is None:
                        break
                    attempt = self._start(name)
                    running[pool.submit(self.runner.run, name, attempt=attempt)] = name
                if not running:
                    return
                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    exc = future.exception()
                    if exc is None:
                        self._on_success(name, future.result())
                    elif isinstance(exc, Exception):
                        self._on_failure(name, exc)
                    else:
                        raise exc

    # ------------------------------------------------------------------
    # Fila
    # ------------------------------------------------------------------
    def _push(self, name: str) -> None:
        item = self.items[name]
        item.state = ScheduleState.READY
        heapq.heappush(self._heap, (self._epoch, -item.priority, item.order, item.index, name))

    def _pop(self) -> Optional[str]:
        while self._heap:
            *_, name = heapq.heappop(self._heap)
            if self.items[name].state == ScheduleState.READY:
                return name
        return None

    def _start(self, name: str) -> int:
        item = self.items[name]
        item.state = ScheduleState.IN_PROGRESS
        item.attempts += 1
        return item.attempts

    def _maybe_ready(self, name: str) -> None:
        item = self.items.get(name)
        if item is None or item.state != ScheduleState.BLOCKED:
            return
        if self.ctx.graph.is_ready(name, self._built):
            self._push(name)

    # ------------------------------------------------------------------
    # Sucesso
    # ------------------------------------------------------------------
    def _on_success(self, name: str, outcome: Outcome) -> None:
        if outcome.expanded:
            self._insert_branches(name, outcome.branches)
            return
        self._complete(name, outcome)

    def _complete(self, name: str, outcome: Outcome) -> None:
        item = self.items[name]
        item.state = ScheduleState.BUILT
        item.executed = outcome.executed
        item.reason = outcome.reason
        self._built.add(name)
        self._epoch += 1
        self.runner.release(name)
        for user in self.ctx.graph.dependents(name):
            self._maybe_ready(user)
        if item.parent is not None:
            self._child_done(item.parent, name)

    def _insert_branches(self, parent: str, branches: List[Branch]) -> None:
        graph = self.ctx.graph
        item = self.items[parent]
        parent_deps = graph.dependencies(parent)
        names: List[str] = []
        for branch in branches:
            depends_on = list(dict.fromkeys(parent_deps + list(branch.sources)))
            graph.add_branch(branch.name, parent, depends_on)
            for dep in depends_on:
                if graph.node(dep).buildable:
                    self.ctx.scopes.add_consumers(dep, 1)
            self.items[branch.name] = ScheduleItem(
                name=branch.name,
                priority=item.priority,
                order=item.order,
                index=branch.index,
                parent=parent,
            )
            names.append(branch.name)

        self._children[parent] = names
        self._pending_children[parent] = set(names)
        self._epoch += 1
        if not names:
            self._finalize(parent)
            return
        for name in names:
            self._maybe_ready(name)

    def _child_done(self, parent: str, child: str) -> None:
        pending = self._pending_children.get(parent)
        if pending is None:
            return
        pending.discard(child)
        if not pending and not self.items[parent].terminal:
            self._finalize(parent)

    def _finalize(self, parent: str) -> None:
        children = self._children.get(parent, [])
        failed = [c for c in children if self.items[c].state != ScheduleState.BUILT]
        if failed:
            self._fail_dynamic(parent, failed)
            return
        executed = any(self.items[c].executed for c in children)
        try:
            outcome = self.runner.finalize(parent, children, executed)
        except Exception as exc:
            self._on_failure(parent, exc, retry=False)
        else:
            self._complete(parent, outcome)

    def _fail_dynamic(self, parent: str, failed: List[str]) -> None:
        error = BuildError(
            message=f"{len(failed)} branch(es) de '{parent}' falharam",
            details={"target": parent, "failed_branches": sorted(failed)},
            hint="Corrija os branches que falharam; os demais são reaproveitados na próxima execução.",
        )
        self._fail(parent, exception_to_error(error, target=parent).to_dict())

    # ------------------------------------------------------------------
    # Falha
    # ------------------------------------------------------------------
    def _retry_budget(self, name: str, exc: BaseException) -> int:
        if isinstance(exc, _NOT_RETRIED):
            return 0
        target = self.runner.target_of(name)
        budget = int(target.retries or 0)
        if classify_failure(exc) == FailureKind.INFRASTRUCTURE:
            budget += int(self.ctx.options.infrastructure_retries)
        return budget

    def _on_failure(self, name: str, exc: Exception, *, retry: bool = True) -> None:
        item = self.items[name]
        error = exception_to_error(exc, target=name).to_dict()

        if isinstance(exc, CacheError):
            if self._fatal is None:
                self._fatal = exc
            item.state = ScheduleState.FAILED
            item.error = error
            self.ctx.log(target=name, level="error", message="fatal cache error", error=error)
            return

        if retry and not self._stopped() and item.attempts <= self._retry_budget(name, exc):
            self.ctx.log(
                target=name,
                level="warning",
                message="retrying",
                attempt=item.attempts,
                failure=classify_failure(exc).value,
                error=error,
            )
            self._push(name)
            return

        self._fail(name, error)

    def _fail(self, name: str, error: Dict[str, Any]) -> None:
        item = self.items[name]
        item.state = ScheduleState.FAILED
        item.error = error
        item.reason = error.get("message", "")
        self._epoch += 1
        self._guard(self.runner.record_failure, name, error, attempt=item.attempts)
        self.runner.release(name)

        if not self.ctx.options.keep_going:
            self.cancel(cause=f"{name} failed")
            if item.parent is not None and not self.items[item.parent].terminal:
                self._fail_dynamic(item.parent, [name])
            return

        for downstream in self.ctx.graph.downstream(name):
            other = self.items.get(downstream)
            if other is None or other.state not in (ScheduleState.BLOCKED, ScheduleState.READY):
                continue
            self._skip(downstream, upstream_failed(target=downstream, failed=[name]).to_dict(), reason="upstream failed")
        if item.parent is not None:
            self._child_done(item.parent, name)

    def _skip(self, name: str, error: Dict[str, Any], *, reason: str) -> None:
        item = self.items[name]
        item.state = ScheduleState.SKIPPED
        item.error = error
        item.reason = reason
        self.ctx.log(target=name, level="warning", message="skipped", reason=reason)
        self._guard(self.ctx.record, "target_skipped", target=name, ts=now_utc(), reason=reason)

    def _skip_remaining(self) -> None:
        cause = self._cancel_cause
        if cause is None and self._fatal is not None:
            cause = "cache error"
        for name, item in self.items.items():
            if item.terminal:
                continue
            self._skip(name, run_cancelled(target=name, cause=cause).to_dict(), reason="cancelled")

    def _guard(self, fn, *args: Any, **kwargs: Any) -> None:
        """Gravações de falha/skip: um CacheError aqui também é fatal."""
        if self._fatal is not None:
            return
        try:
            fn(*args, **kwargs)
        except CacheError as exc:
            self._fatal = exc


__all__ = ["ScheduleItem", "ScheduleState", "Scheduler", "TERMINAL_STATES"]
