# src/targetflow/core/engine/runner.py
"""
Execução de um único nó do grafo (target, sub-target ou expansão).

O `TargetRunner` é o elo entre o scheduler e as demais camadas:

    staleness → carga de dependências → executor → cache + metadados

Para cada nó construível:
    1. calcula os hashes das dependências (valores, imports, fatias)
    2. calcula o fingerprint e decide staleness pelo trigger
    3. se desatualizado: carrega dependências nas camadas de escopo,
       executa o comando, grava valor + metadados e registra eventos
    4. se atualizado: nada é executado nem gravado

Targets dinâmicos têm dois momentos:
    - `expand(parent)`: fatia as dependências e calcula os branches
    - `finalize(parent, ...)`: com todos os branches terminados, grava
      os metadados agregados do pai e remove branches órfãos

Decisões arquiteturais:
    - O runner não decide retry nem propagação de falhas (scheduler)
    - Falhas são registradas por `record_failure` apenas na tentativa final
    - Em dry-run (`persist=False`) só decisões de staleness são calculadas;
      `check_dynamic` recalcula a expansão sem registrar branches

Invariantes:
    - Um target só grava os próprios metadados (um escritor por nó)
    - Arquivos de saída são re-observados após o build
    - O hash de um import cobre o fecho dos imports que ele usa
"""

from __future__ import annotations

import pickle
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from targetflow.core.cache.formats import get_format
from targetflow.core.config.options import ExecutorKind
from targetflow.core.exceptions import CacheError, DynamicExpansionError, WorkerError
from targetflow.core.graph.graph import NodeKind
from targetflow.core.meta.hashing import MISSING_FILE, FileStamp, canonical_hash, resolve_seed
from targetflow.core.meta.metadata import Metadata
from targetflow.core.meta.triggers import Decision, TriggerInputs, compute_fingerprint, decide
from targetflow.core.plan.types import Target, TriggerKind
from targetflow.core.spec.builder import Specification
from targetflow.core.traceability.history import _iso, now_utc

from .context import RunContext
from .dynamic import Branch, Sliced, expand, prepare
from .evaluate import evaluate_expression


_MISSING_VALUE = "missing"
_SERIALIZATION_ERRORS = (pickle.PicklingError, TypeError, ValueError, AttributeError)


@dataclass
class Outcome:
    """Resultado de `TargetRunner.run` para um nó."""

    name: str
    executed: bool = False
    reason: str = ""
    value_hash: Optional[str] = None
    branches: List[Branch] = field(default_factory=list)
    expanded: bool = False


@dataclass(frozen=True)
class Check:
    """Decisão de staleness com os fatos usados para tomá-la."""

    decision: Decision
    fingerprint: str
    depends: Dict[str, str]
    files_in: Dict[str, FileStamp]
    seed: Optional[int]

    @property
    def outdated(self) -> bool:
        return self.decision.outdated


class TargetRunner:
    """Executa nós do grafo sobre um `RunContext`."""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self._branches: Dict[str, Branch] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Identidade
    # ------------------------------------------------------------------
    def register_branches(self, branches: Iterable[Branch]) -> None:
        with self._lock:
            for branch in branches:
                self._branches[branch.name] = branch

    def branch(self, name: str) -> Branch:
        with self._lock:
            return self._branches[name]

    def target_of(self, name: str) -> Target:
        """Target declarado (o pai, para sub-targets)."""
        node = self.ctx.graph.node(name)
        if node.kind == NodeKind.BRANCH:
            return self.ctx.plan.get(node.parent)
        return self.ctx.plan.get(name)

    def seed_for(self, name: str, target: Target) -> int:
        """Seed explícita do target, ou derivada do nome; branches derivam da base do pai."""
        if name == target.name:
            return resolve_seed(name, self.ctx.options.seed, target.seed)
        base = target.seed if target.seed is not None else self.ctx.options.seed
        return resolve_seed(name, base)

    def max_expand(self, target: Target) -> Optional[int]:
        if target.max_expand is not None:
            return target.max_expand
        return self.ctx.options.max_expand

    # ------------------------------------------------------------------
    # Hashes de dependências
    # ------------------------------------------------------------------
    def import_hash(self, name: str) -> str:
        graph = self.ctx.graph
        import_specs = self.ctx.import_specs

        def compute() -> str:
            closure = [name] + [n for n in graph.upstream(name) if graph.kind(n) == NodeKind.IMPORT]
            pairs = sorted(
                (n, import_specs[n].digest if n in import_specs else _MISSING_VALUE) for n in set(closure)
            )
            return canonical_hash(pairs)

        return self.ctx.metadata.import_hash(name, compute)

    def dependency_hashes(self, names: Iterable[str]) -> Dict[str, str]:
        graph = self.ctx.graph
        out: Dict[str, str] = {}
        for dep in names:
            if dep not in graph:
                continue
            kind = graph.kind(dep)
            if kind == NodeKind.IMPORT:
                out[dep] = self.import_hash(dep)
            elif kind in (NodeKind.TARGET, NodeKind.BRANCH):
                out[dep] = self.ctx.metadata.value_hash(dep) or _MISSING_VALUE
        return out

    def _branch_depends(self, branch: Branch, target: Target, spec: Specification) -> Dict[str, str]:
        over = set(target.dynamic.names)
        depends = self.dependency_hashes(d for d in spec.dependencies if d not in over)
        for dep, h in branch.slice_hashes.items():
            depends[f"{dep}[slice]"] = h
        return depends

    # ------------------------------------------------------------------
    # Valores e escopos
    # ------------------------------------------------------------------
    def value_of(self, name: str) -> Tuple[Any, str]:
        """(valor, camada) de um nó construível já construído."""
        store = self.ctx.store
        node = self.ctx.graph.node(name)
        if node.kind == NodeKind.BRANCH:
            return store.retrieve(name), "branch"
        target = self.ctx.plan.get(name)
        if target.is_dynamic:
            meta = self.ctx.metadata.latest(name)
            children = list(meta.children) if meta is not None else []
            return [store.retrieve(c) for c in children], "aggregate"
        return store.retrieve(name), "static"

    def namespace_for(self, names: Iterable[str], extra: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Liga as dependências construíveis ausentes e achata o escopo em um único passo."""
        graph = self.ctx.graph
        deps = [d for d in names if d in graph and graph.node(d).buildable]
        return self.ctx.scopes.resolve(deps, self.value_of, extra)

    def release(self, name: str) -> None:
        """`name` terminou: cada dependência direta perde um consumidor."""
        graph = self.ctx.graph
        for dep in graph.dependencies(name):
            if graph.node(dep).buildable:
                self.ctx.scopes.release(dep)

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------
    def _cached(self, name: str, prev: Optional[Metadata]) -> bool:
        if prev is None or prev.error is not None:
            return False
        try:
            return self.ctx.store.exists(name)
        except CacheError:
            return False

    def check(
        self,
        name: str,
        target: Target,
        spec: Specification,
        *,
        depends: Dict[str, str],
        seed: Optional[int],
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Check:
        """
        Raises:
            TriggerEvaluationError: expressão de `condition`/`change` falhou.
        """
        metadata = self.ctx.metadata
        files_in = {p: metadata.file_stamp(p) for p in spec.input_files}
        files_out = {p: metadata.file_stamp(p) for p in spec.files_out}
        fingerprint = compute_fingerprint(
            command=target.command,
            depends=depends,
            files_in=files_in,
            trigger=target.trigger,
            seed=seed,
            format=target.format,
        )
        prev = metadata.previous(name)
        trigger_deps = [d for d in spec.trigger_deps if extra is None or d not in extra]

        def evaluate(expression: str) -> Any:
            return evaluate_expression(expression, self.namespace_for(trigger_deps, extra))

        decision = decide(
            TriggerInputs(
                target=target,
                fingerprint=fingerprint,
                previous=prev,
                cached=self._cached(name, prev),
                files_in=files_in,
                files_out=files_out,
                evaluate=evaluate,
            )
        )
        return Check(decision=decision, fingerprint=fingerprint, depends=depends, files_in=files_in, seed=seed)

    def check_target(self, name: str) -> Check:
        """Staleness de um target estático ou de um sub-target registrado."""
        target = self.target_of(name)
        if name != target.name:
            return self.check_branch(self.branch(name), target)
        spec = self.ctx.specs[name]
        return self.check(
            name, target, spec,
            depends=self.dependency_hashes(spec.dependencies),
            seed=self.seed_for(name, target),
        )

    def check_branch(self, branch: Branch, target: Target) -> Check:
        """Staleness de um branch (registrado ou não no grafo)."""
        spec = self.ctx.specs[target.name]
        return self.check(
            branch.name, target, spec,
            depends=self._branch_depends(branch, target, spec),
            seed=self.seed_for(branch.name, target),
            extra=branch.slices,
        )

    def dynamic_fingerprint(self, target: Target, depends: Mapping[str, str]) -> str:
        return compute_fingerprint(
            command=target.command,
            depends=depends,
            files_in={},
            trigger=target.trigger,
            seed=target.seed,
            format=target.format,
            extra={"dynamic": target.dynamic.to_dict(), "max_expand": self.max_expand(target)},
        )

    def check_dynamic(self, name: str) -> Decision:
        """
        Staleness de um target dinâmico sem registrar branches.

        Compara o fingerprint do pai, recalcula a expansão a partir dos
        valores em cache e decide cada branch pelo mesmo `decide` usado
        no build (triggers, arquivos declarados e valores em cache).

        Raises:
            DynamicExpansionError: a expansão falharia no build.
            TriggerEvaluationError: expressão de `condition`/`change` falhou.
        """
        target = self.ctx.plan.get(name)
        spec = self.ctx.specs[name]
        prev = self.ctx.metadata.previous(name)
        if prev is None:
            return Decision(True, "never built")
        if prev.error is not None:
            return Decision(True, "previous build failed")
        if target.trigger.kind == TriggerKind.ALWAYS:
            return Decision(True, "trigger always")
        fingerprint = self.dynamic_fingerprint(target, self.dependency_hashes(spec.dependencies))
        if target.trigger.kind != TriggerKind.NEVER and fingerprint != prev.fingerprint:
            return Decision(True, "fingerprint changed")

        branches = self._branches_of(target)
        if [b.name for b in branches] != list(prev.children):
            return Decision(True, "branches changed")
        for branch in branches:
            decision = self.check_branch(branch, target).decision
            if decision.outdated:
                return Decision(True, f"branch {branch.name}: {decision.reason}")
        return Decision(False, "up to date")

    # ------------------------------------------------------------------
    # Execução
    # ------------------------------------------------------------------
    def run(self, name: str, *, attempt: int = 1) -> Outcome:
        node = self.ctx.graph.node(name)
        if node.kind == NodeKind.BRANCH:
            return self._run_check(name, self.check_target(name), attempt=attempt)
        target = self.ctx.plan.get(name)
        if target.is_dynamic:
            return self.expand(name)
        return self._run_check(name, self.check_target(name), attempt=attempt)

    def _run_check(self, name: str, check: Check, *, attempt: int) -> Outcome:
        ctx = self.ctx
        if not check.outdated:
            ctx.log(target=name, level="info", message="up to date", reason=check.decision.reason)
            return Outcome(name=name, reason=check.decision.reason, value_hash=ctx.metadata.value_hash(name))
        return self._execute(name, check, attempt=attempt)

    def _execute(self, name: str, check: Check, *, attempt: int) -> Outcome:
        ctx = self.ctx
        target = self.target_of(name)
        spec = ctx.specs[target.name]
        is_branch = name != target.name
        branch = self.branch(name) if is_branch else None
        extra = branch.slices if branch is not None else None

        started = now_utc()
        ctx.log(target=name, level="info", message="building", reason=check.decision.reason, attempt=attempt)
        ctx.record("target_started", target=name, ts=started, attempt=attempt, reason=check.decision.reason)

        names = [d for d in spec.target_deps if extra is None or d not in extra]
        namespace = self.namespace_for(names, extra)

        store_ref = None
        if ctx.persist and target.storage == "worker" and ctx.options.executor == ExecutorKind.PROCESS:
            store_ref = ctx.store.value_path(name, target.format)

        result = ctx.executor.execute(target, namespace, seed=check.seed, store_ref=store_ref)
        for message in result.warnings:
            ctx.add_warning(target=name, message=message)

        files_out = {p: ctx.metadata.refresh_file(p) for p in spec.files_out}
        for path, stamp in files_out.items():
            if stamp.hash == MISSING_FILE:
                ctx.add_warning(target=name, message=f"declared output not found: {path}")

        if result.stored:
            value_hash = result.value_hash
        else:
            value_hash = self._value_hash(name, target, result.value)

        finished = now_utc()
        meta = Metadata(
            name=name,
            kind="branch" if is_branch else "target",
            parent=target.name if is_branch else None,
            command_hash=spec.command_hash,
            fingerprint=check.fingerprint,
            depends=dict(check.depends),
            files_in={p: s.to_dict() for p, s in check.files_in.items()},
            files_out={p: s.to_dict() for p, s in files_out.items()},
            value_hash=value_hash,
            format=target.format,
            seed=check.seed,
            trigger_value=check.decision.trigger_value,
            built_at=_iso(finished),
            elapsed=result.elapsed,
            warnings=ctx.warnings_for(name),
        )
        if result.stored:
            ctx.metadata.record(replace(meta, ref=result.ref))
        else:
            ctx.metadata.record(meta, value=result.value, has_value=True)
            if self._has_dependents(name):
                ctx.scopes.load(name, result.value, "branch" if is_branch else "static")

        ctx.log(target=name, level="info", message="built", elapsed=result.elapsed, value_hash=value_hash)
        ctx.record(
            "target_built",
            target=name,
            started_at=started,
            ts=finished,
            value_hash=value_hash,
            warnings=ctx.warnings_for(name),
        )
        return Outcome(name=name, executed=True, reason=check.decision.reason, value_hash=value_hash)

    def _value_hash(self, name: str, target: Target, value: Any) -> str:
        try:
            return get_format(target.format).value_hash(value)
        except _SERIALIZATION_ERRORS as exc:
            raise WorkerError(
                message=f"Valor de '{name}' não pode ser identificado por hash: {exc}",
                details={"target": name, "exc_type": exc.__class__.__name__},
            ) from exc

    def _has_dependents(self, name: str) -> bool:
        parent = self.ctx.graph.node(name).parent
        return any(user != parent for user in self.ctx.graph.dependents(name))

    # ------------------------------------------------------------------
    # Falhas
    # ------------------------------------------------------------------
    def record_failure(self, name: str, error: Dict[str, Any], *, attempt: int) -> None:
        ctx = self.ctx
        prev = ctx.metadata.latest(name)
        if prev is not None:
            meta = prev.failed(error)
        else:
            node = ctx.graph.node(name)
            meta = Metadata(
                name=name,
                kind="branch" if node.kind == NodeKind.BRANCH else "target",
                parent=node.parent,
                error=dict(error),
            )
        ctx.metadata.record(replace(meta, warnings=ctx.warnings_for(name)))
        ctx.log(target=name, level="error", message="failed", error=error, attempt=attempt)
        ctx.record("target_failed", target=name, ts=now_utc(), error=error, attempt=attempt)

    # ------------------------------------------------------------------
    # Targets dinâmicos
    # ------------------------------------------------------------------
    def _sliced(self, dep: str) -> Sliced:
        target = self.ctx.plan.get(dep)
        if target.is_dynamic:
            meta = self.ctx.metadata.latest(dep)
            children = list(meta.children) if meta is not None else []
            values = [self.ctx.store.retrieve(c) for c in children]
            hashes = [self.ctx.metadata.value_hash(c) or _MISSING_VALUE for c in children]
            return prepare(dep, values, branch_names=children, branch_hashes=hashes)
        return prepare(dep, self.namespace_for([dep])[dep])

    def _branches_of(self, target: Target) -> List[Branch]:
        sliced = {dep: self._sliced(dep) for dep in target.dynamic.names}
        branches = expand(target, sliced, max_expand=self.max_expand(target))
        taken = [b.name for b in branches if b.name in self.ctx.graph]
        if taken:
            raise DynamicExpansionError(
                message=f"Branches de '{target.name}' colidem com nós do plano: {', '.join(taken)}",
                details={"target": target.name, "names": taken},
                hint="Renomeie os targets declarados no formato <pai>_<hash8>.",
            )
        return branches

    def expand(self, name: str) -> Outcome:
        """
        Calcula os branches de um target dinâmico.

        Raises:
            DynamicExpansionError: valores não fatiáveis, tamanhos incompatíveis
                ou nome de branch já usado por outro nó.
        """
        target = self.ctx.plan.get(name)
        branches = self._branches_of(target)
        self.register_branches(branches)
        self.ctx.log(
            target=name,
            level="info",
            message="expanded",
            pattern=target.dynamic.pattern.value,
            branches=len(branches),
        )
        return Outcome(name=name, reason="expanded", branches=branches, expanded=True)

    def finalize(self, name: str, children: List[str], executed: bool) -> Outcome:
        """Grava os metadados agregados do pai após o sucesso de todos os branches."""
        ctx = self.ctx
        target = ctx.plan.get(name)
        spec = ctx.specs[name]
        prev = ctx.metadata.previous(name)
        depends = self.dependency_hashes(spec.dependencies)
        fingerprint = self.dynamic_fingerprint(target, depends)
        value_hash = canonical_hash([ctx.metadata.value_hash(c) for c in children])

        changed = (
            executed
            or prev is None
            or prev.error is not None
            or list(prev.children) != list(children)
            or (prev.fingerprint != fingerprint and target.trigger.kind != TriggerKind.NEVER)
        )
        finished = now_utc()
        if changed:
            ctx.metadata.record(
                Metadata(
                    name=name,
                    kind="dynamic",
                    command_hash=spec.command_hash,
                    fingerprint=fingerprint,
                    depends=depends,
                    value_hash=value_hash,
                    format=target.format,
                    seed=target.seed,
                    children=list(children),
                    built_at=_iso(finished),
                    warnings=ctx.warnings_for(name),
                )
            )
            ctx.record(
                "target_built",
                target=name,
                started_at=finished,
                ts=finished,
                value_hash=value_hash,
                warnings=ctx.warnings_for(name),
            )
        if prev is not None:
            for orphan in sorted(set(prev.children) - set(children)):
                ctx.metadata.forget(orphan)
                ctx.log(target=name, level="info", message="pruned branch", branch=orphan)

        reason = "branches rebuilt" if changed else "up to date"
        ctx.log(target=name, level="info", message=reason, branches=len(children))
        return Outcome(name=name, executed=changed, reason=reason, value_hash=value_hash)


__all__ = ["Check", "Outcome", "TargetRunner"]
