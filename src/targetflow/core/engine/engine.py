# src/targetflow/core/engine/engine.py
"""
Pontos de entrada do TargetFlow: `build` e `outdated`.

Fluxo de `build`:

    Plan → SpecificationBuilder → build_graph (ciclos) → Scheduler
         → TargetRunner (staleness, executor, cache) → BuildReport

Fluxo de `outdated` (dry-run):
    mesma análise estática e o mesmo fingerprinting, sem executar nada e
    sem gravar no store; targets desatualizados propagam para os
    sucessores cujo trigger depende de valores (`command` e dinâmicos).

Decisões arquiteturais:
    - Erros estruturais (SpecificationError, CycleError, PlanError) são
      levantados antes de qualquer execução
    - Falhas de targets ficam no `BuildReport` como `ErrorPayload`
    - CacheError de gravação é fatal e relançado por `build`
    - Em `outdated`, CacheError, DynamicExpansionError e
      TriggerEvaluationError significam "assumir desatualizado"

Invariantes:
    - Nenhum estado global: cada chamada cria seu `RunContext`
    - O ambiente do usuário (`envir`) nunca é modificado
    - Todo build registra `run_started` e `run_finished` no histórico
      (exceto quando o próprio histórico não pode ser gravado)

Limites explícitos:
    - Não renderiza relatórios
    - Não oferece CLI
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from targetflow.core.cache.formats import get_format
from targetflow.core.cache.store import CacheStore
from targetflow.core.config.options import BuildOptions, ExecutorKind, load_options
from targetflow.core.exceptions import CacheError, DynamicExpansionError, PlanError, TriggerEvaluationError
from targetflow.core.graph.builder import build_graph
from targetflow.core.meta.metadata import MetadataStore
from targetflow.core.plan.types import Plan, Target, TriggerKind
from targetflow.core.scope.layers import ScopeManager
from targetflow.core.spec.builder import SpecificationBuilder
from targetflow.core.traceability.history import now_utc

from .context import RunContext, new_run_id
from .executor import Executor, LocalExecutor, ProcessExecutor
from .runner import TargetRunner
from .scheduler import ScheduleItem, ScheduleState, Scheduler


PlanLike = Union[Plan, Iterable[Target], Iterable[Mapping[str, Any]]]
StoreLike = Union[CacheStore, str, Path, None]


@dataclass(frozen=True)
class BuildReport:
    """Resultado agregado de um build."""

    run_id: str
    items: Dict[str, ScheduleItem] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    warnings: Dict[str, List[str]] = field(default_factory=dict)

    def _names(self, state: ScheduleState, executed: Optional[bool] = None) -> List[str]:
        return [
            name
            for name, item in self.items.items()
            if item.state == state and (executed is None or item.executed == executed)
        ]

    @property
    def built(self) -> List[str]:
        """Itens efetivamente (re)construídos nesta run."""
        return self._names(ScheduleState.BUILT, executed=True)

    @property
    def up_to_date(self) -> List[str]:
        return self._names(ScheduleState.BUILT, executed=False)

    @property
    def failed(self) -> List[str]:
        return self._names(ScheduleState.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._names(ScheduleState.SKIPPED)

    @property
    def errors(self) -> Dict[str, Dict[str, Any]]:
        return {name: item.error for name, item in self.items.items() if item.error is not None}

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def state(self, name: str) -> ScheduleState:
        try:
            return self.items[name].state
        except KeyError:
            raise PlanError(message=f"Item desconhecido no relatório: {name}", details={"name": name}) from None

    def summary(self) -> Dict[str, Any]:
        return {
            "built": len(self.built),
            "up_to_date": len(self.up_to_date),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "summary": self.summary(),
            "items": {name: item.to_dict() for name, item in self.items.items()},
        }


# ---------------------------------------------------------------------------
# Montagem
# ---------------------------------------------------------------------------

def _coerce_plan(plan: PlanLike) -> Plan:
    if isinstance(plan, Plan):
        return plan
    targets = [t if isinstance(t, Target) else Target.from_dict(t) for t in plan]
    return Plan(targets)


def _coerce_store(store: StoreLike, options: BuildOptions) -> CacheStore:
    if isinstance(store, CacheStore):
        return store
    return CacheStore(store if store is not None else options.store_path)


def _resolve_options(options: Optional[BuildOptions], config: Optional[Dict[str, Any]]) -> BuildOptions:
    if options is not None and config is not None:
        raise PlanError(
            message="Informe `options` ou `config`, não ambos",
            details={"options": True, "config": True},
        )
    if options is not None:
        return options
    return load_options(overrides=config)


def make_executor(kind: ExecutorKind) -> Executor:
    if ExecutorKind(kind) == ExecutorKind.PROCESS:
        return ProcessExecutor()
    return LocalExecutor()


def prepare_context(
    plan: Plan,
    options: BuildOptions,
    *,
    envir: Optional[Mapping[str, Any]],
    store: CacheStore,
    persist: bool = True,
) -> RunContext:
    """
    Análise estática + grafo + gerações de metadados.

    Raises:
        SpecificationError: comandos que não puderam ser analisados.
        CycleError: targets formam um ciclo.
        PlanError: formato desconhecido ou saídas duplicadas.
    """
    resolved = plan.resolved(options.target_defaults)
    for target in resolved:
        get_format(target.format)

    envir = envir if envir is not None else {}
    builder = SpecificationBuilder(envir, resolved.names(), store=store if persist else None)
    specs = builder.build_all(resolved)
    import_specs = builder.import_specs()
    graph = build_graph(resolved, specs, import_specs)

    metadata = MetadataStore(store, persist=persist)
    metadata.begin_run()

    return RunContext(
        run_id=new_run_id(),
        created_at=datetime.now(timezone.utc),
        options=options,
        plan=resolved,
        envir=envir,
        store=store,
        specs=specs,
        import_specs=import_specs,
        graph=graph,
        metadata=metadata,
        scopes=ScopeManager(envir, options.memory_strategy),
        persist=persist,
    )


# ---------------------------------------------------------------------------
# API pública
# ---------------------------------------------------------------------------

def build(
    plan: PlanLike,
    options: Optional[BuildOptions] = None,
    *,
    envir: Optional[Mapping[str, Any]] = None,
    store: StoreLike = None,
    executor: Optional[Executor] = None,
    config: Optional[Dict[str, Any]] = None,
) -> BuildReport:
    """
    Constrói todos os targets desatualizados do plano.

    Raises:
        SpecificationError / CycleError / PlanError: antes de qualquer execução.
        CacheError: falha fatal de gravação no cache.
        KeyboardInterrupt: após registrar o fim da run.
    """
    options = _resolve_options(options, config)
    plan = _coerce_plan(plan)
    cache = _coerce_store(store, options)
    ctx = prepare_context(plan, options, envir=envir, store=cache, persist=True)
    ctx.executor = executor if executor is not None else make_executor(options.executor)

    started = now_utc()
    ctx.log(target=None, level="info", message="run started", targets=len(ctx.plan))
    ctx.record("run_started", ts=started, options_hash=options.options_hash(), targets=ctx.plan.names())

    scheduler = Scheduler(ctx, TargetRunner(ctx))
    try:
        items = scheduler.run()
    except KeyboardInterrupt:
        _finish(ctx, scheduler.items, started, interrupted=True)
        raise
    except CacheError:
        # o histórico pode ser a própria causa da falha
        with contextlib.suppress(CacheError):
            _finish(ctx, scheduler.items, started)
        raise

    return _finish(ctx, items, started)


def _finish(
    ctx: RunContext,
    items: Dict[str, ScheduleItem],
    started: datetime,
    *,
    interrupted: bool = False,
) -> BuildReport:
    summary = BuildReport(run_id=ctx.run_id, items=dict(items)).summary()
    summary["interrupted"] = interrupted
    ctx.log(target=None, level="info", message="run finished", **summary)
    ctx.record("run_finished", started_at=started, ts=now_utc(), summary=summary)
    return BuildReport(
        run_id=ctx.run_id,
        items=dict(items),
        events=list(ctx.events),
        warnings={k: list(v) for k, v in ctx.warnings.items()},
    )


def outdated(
    plan: PlanLike,
    store: StoreLike = None,
    *,
    envir: Optional[Mapping[str, Any]] = None,
    options: Optional[BuildOptions] = None,
) -> Set[str]:
    """
    Nomes dos targets que `build` reconstruiria, sem executar nada.

    Raises:
        SpecificationError / CycleError / PlanError: como em `build`.
    """
    options = options if options is not None else load_options()
    plan = _coerce_plan(plan)
    cache = _coerce_store(store, options)
    ctx = prepare_context(plan, options, envir=envir, store=cache, persist=False)
    runner = TargetRunner(ctx)

    stale: Set[str] = set()
    for name in ctx.graph.topological_order():
        target = ctx.plan.get(name)
        follows_values = target.is_dynamic or target.trigger.kind == TriggerKind.COMMAND
        if follows_values and any(dep in stale for dep in ctx.graph.dependencies(name)):
            stale.add(name)
            continue
        try:
            if target.is_dynamic:
                decision = runner.check_dynamic(name)
            else:
                decision = runner.check_target(name).decision
        except (CacheError, DynamicExpansionError, TriggerEvaluationError) as exc:
            ctx.log(target=name, level="warning", message="assuming outdated", error=str(exc))
            stale.add(name)
            continue
        if decision.outdated:
            stale.add(name)
    return stale


__all__ = ["BuildReport", "build", "make_executor", "outdated", "prepare_context"]
