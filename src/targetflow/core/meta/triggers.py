"""
Decisão de staleness por tipo de trigger.

Fingerprint de um target:
    hash canônico sobre {comando normalizado, hashes das dependências
    (ordenados por nome), hashes dos arquivos de entrada, trigger, seed,
    formato}. O comando é normalizado pela sua árvore sintática:
    comentários e formatação não invalidam um target.

Regras comuns (antes do handler do trigger):
    - expressões de `condition`/`change` são avaliadas em toda run
    - sem metadados anteriores            → outdated ("never built")
    - último build falhou                 → outdated ("previous build failed")
    - valor ausente do cache              → outdated ("value missing"), inclusive `never`

Handlers (um por TriggerKind, resolvidos por tabela):
    - command:   fingerprint mudou, ou algum arquivo de saída mudou
    - file:      hash ou mtime de algum arquivo declarado (entrada ou saída) mudou
    - condition: expressão avaliada é verdadeira
    - change:    hash do valor da expressão difere do valor persistido
    - always / never

O trigger `command` compara arquivos de saída só pelo hash de conteúdo;
o trigger `file` compara hash e mtime.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from targetflow.core.exceptions import TargetFlowException, TriggerEvaluationError
from targetflow.core.plan.types import Target, TriggerKind

from .hashing import FileStamp, canonical_hash, hash_text, hash_value
from .metadata import Metadata


def normalize_command(command: str) -> str:
    """Forma canônica do comando (dump da AST); texto cru se não parsear."""
    try:
        return ast.dump(ast.parse(command))
    except SyntaxError:
        return command


def compute_fingerprint(
    *,
    command: str,
    depends: Mapping[str, str],
    files_in: Mapping[str, FileStamp],
    trigger: Any,
    seed: Optional[int],
    format: str,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    return canonical_hash(
        {
            "command": hash_text(normalize_command(command)),
            "depends": sorted((k, v) for k, v in depends.items()),
            "files_in": sorted((p, s.hash) for p, s in files_in.items()),
            "trigger": trigger.to_dict(),
            "seed": seed,
            "format": format,
            "extra": dict(extra or {}),
        }
    )


@dataclass(frozen=True)
class Decision:
    outdated: bool
    reason: str
    trigger_value: Optional[str] = None


@dataclass
class TriggerInputs:
    """Tudo o que um handler de trigger pode consultar."""

    target: Target
    fingerprint: str
    previous: Optional[Metadata]
    cached: bool
    files_in: Dict[str, FileStamp] = field(default_factory=dict)
    files_out: Dict[str, FileStamp] = field(default_factory=dict)
    evaluate: Optional[Callable[[str], Any]] = None


def _evaluate(inputs: TriggerInputs) -> Any:
    expression = inputs.target.trigger.expression
    if inputs.evaluate is None:
        raise TriggerEvaluationError(
            message=f"Trigger de '{inputs.target.name}' exige avaliação, mas nenhum avaliador foi fornecido",
            details={"target": inputs.target.name},
        )
    try:
        return inputs.evaluate(expression)
    except TargetFlowException:
        raise
    except Exception as exc:
        raise TriggerEvaluationError(
            message=f"Expressão do trigger de '{inputs.target.name}' falhou: {exc}",
            details={
                "target": inputs.target.name,
                "expression": expression,
                "exc_type": exc.__class__.__name__,
            },
        ) from exc


def _changed(
    current: Mapping[str, FileStamp],
    previous: Mapping[str, Dict[str, Any]],
    *,
    mtime: bool = False,
) -> Optional[str]:
    if set(current) != set(previous):
        return "declared files changed"
    for path, stamp in current.items():
        if stamp.hash != previous[path].get("hash"):
            return f"file changed: {path}"
        if mtime and stamp.mtime != previous[path].get("mtime"):
            return f"file touched: {path}"
    return None


def _on_command(inputs: TriggerInputs) -> Decision:
    prev = inputs.previous
    if inputs.fingerprint != prev.fingerprint:
        return Decision(True, "fingerprint changed")
    reason = _changed(inputs.files_out, prev.files_out)
    if reason:
        return Decision(True, f"output {reason}")
    return Decision(False, "up to date")


def _on_file(inputs: TriggerInputs) -> Decision:
    prev = inputs.previous
    reason = _changed(inputs.files_in, prev.files_in, mtime=True) or _changed(
        inputs.files_out, prev.files_out, mtime=True
    )
    if reason:
        return Decision(True, reason)
    return Decision(False, "declared files unchanged")


def _on_condition(inputs: TriggerInputs) -> Decision:
    if _evaluate(inputs):
        return Decision(True, "condition is true")
    return Decision(False, "condition is false")


def _on_change(inputs: TriggerInputs) -> Decision:
    value = hash_value(_evaluate(inputs))
    if value != inputs.previous.trigger_value:
        return Decision(True, "change value differs", trigger_value=value)
    return Decision(False, "change value unchanged", trigger_value=value)


def _on_always(inputs: TriggerInputs) -> Decision:
    return Decision(True, "trigger always")


def _on_never(inputs: TriggerInputs) -> Decision:
    return Decision(False, "trigger never")


_HANDLERS: Dict[TriggerKind, Callable[[TriggerInputs], Decision]] = {
    TriggerKind.COMMAND: _on_command,
    TriggerKind.FILE: _on_file,
    TriggerKind.CONDITION: _on_condition,
    TriggerKind.CHANGE: _on_change,
    TriggerKind.ALWAYS: _on_always,
    TriggerKind.NEVER: _on_never,
}


def decide(inputs: TriggerInputs) -> Decision:
    """
    Decide se um target precisa ser reconstruído.

    Raises:
        TriggerEvaluationError: a expressão de `condition`/`change` falhou.
    """
    kind = inputs.target.trigger.kind
    prev = inputs.previous

    if prev is None or prev.error is not None or not inputs.cached:
        trigger_value = None
        if kind == TriggerKind.CHANGE:
            trigger_value = hash_value(_evaluate(inputs))
        elif kind == TriggerKind.CONDITION:
            _evaluate(inputs)
        if prev is None:
            return Decision(True, "never built", trigger_value=trigger_value)
        if prev.error is not None:
            return Decision(True, "previous build failed", trigger_value=trigger_value)
        return Decision(True, "value missing from cache", trigger_value=trigger_value)

    return _HANDLERS[kind](inputs)


__all__ = ["Decision", "TriggerInputs", "compute_fingerprint", "decide", "normalize_command"]
