# src/targetflow/core/plan/types.py
"""
Tipos canônicos do plano do TargetFlow.

Este módulo define as estruturas e enums fundamentais que descrevem
um plano de build: targets, triggers e padrões de ramificação dinâmica.

Componentes principais:
    - TriggerKind / Trigger      → variante marcada da regra de rebuild
    - DynamicPattern / Dynamic   → declaração de ramificação dinâmica
    - Target                     → unidade nomeada de trabalho (imutável)
    - Plan                       → catálogo ordenado de targets

Princípios fundamentais:
    - Tipos são estáveis e serializáveis
    - Targets são imutáveis durante a run
    - Nenhuma lógica de execução vive neste módulo

Invariantes:
    - Enums possuem valores textuais canônicos
    - Nomes de targets são identificadores Python válidos e únicos
    - Triggers `condition`/`change` sempre carregam uma expressão

Limites explícitos:
    - Não analisa comandos
    - Não constrói o grafo
    - Não decide staleness
"""

from __future__ import annotations

import keyword
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from targetflow.core.exceptions import DuplicateTargetError, PlanError, UnknownTargetError


class TriggerKind(str, Enum):
    """
    Regras de rebuild de um target.

    - COMMAND: fingerprint (comando + dependências + arquivos + seed) mudou
    - FILE: hash de algum arquivo declarado mudou (ignora o comando)
    - CONDITION: expressão booleana avaliada a cada run
    - CHANGE: valor de uma expressão difere do valor persistido
    - ALWAYS / NEVER: overrides incondicionais
    """
    COMMAND = "command"
    FILE = "file"
    CONDITION = "condition"
    CHANGE = "change"
    ALWAYS = "always"
    NEVER = "never"


_EXPRESSION_TRIGGERS = (TriggerKind.CONDITION, TriggerKind.CHANGE)


@dataclass(frozen=True)
class Trigger:
    """Variante marcada (kind + payload) da regra de rebuild."""

    kind: TriggerKind = TriggerKind.COMMAND
    expression: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", TriggerKind(self.kind))
        if self.kind in _EXPRESSION_TRIGGERS:
            if not isinstance(self.expression, str) or not self.expression.strip():
                raise PlanError(
                    message=f"Trigger '{self.kind.value}' exige uma expressão",
                    details={"kind": self.kind.value},
                )
        elif self.expression is not None:
            raise PlanError(
                message=f"Trigger '{self.kind.value}' não aceita expressão",
                details={"kind": self.kind.value, "expression": self.expression},
            )

    @classmethod
    def coerce(cls, value: Any) -> "Trigger":
        """Aceita Trigger, nome do kind ou dict {kind, expression}."""
        if value is None:
            return cls()
        if isinstance(value, Trigger):
            return value
        if isinstance(value, (str, TriggerKind)):
            return cls(kind=TriggerKind(value))
        if isinstance(value, Mapping):
            return cls(kind=TriggerKind(value.get("kind", "command")), expression=value.get("expression"))
        raise PlanError(message="Trigger inválido", details={"received": repr(value)})

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "expression": self.expression}


class DynamicPattern(str, Enum):
    """
    Semânticas de combinação de ramificação dinâmica.

    - MAP: um sub-target por elemento (zip elemento a elemento de `over`)
    - CROSS: produto cartesiano dos elementos de `over`
    - GROUP: um sub-target por valor distinto da dependência `by`
    - COMBINE: um único sub-target sobre os agregados completos
    """
    MAP = "map"
    CROSS = "cross"
    GROUP = "group"
    COMBINE = "combine"


@dataclass(frozen=True)
class Dynamic:
    """Declaração de ramificação dinâmica de um target."""

    pattern: DynamicPattern
    over: Tuple[str, ...]
    by: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "pattern", DynamicPattern(self.pattern))
        over = (self.over,) if isinstance(self.over, str) else tuple(self.over)
        object.__setattr__(self, "over", over)
        if not over:
            raise PlanError(message="Dynamic exige ao menos uma dependência em `over`", details={})
        if self.pattern == DynamicPattern.GROUP:
            if self.by is None:
                raise PlanError(message="Dynamic 'group' exige `by`", details={"over": list(over)})
        elif self.by is not None:
            raise PlanError(
                message=f"Dynamic '{self.pattern.value}' não aceita `by`",
                details={"by": self.by},
            )

    @property
    def names(self) -> Tuple[str, ...]:
        return self.over + ((self.by,) if self.by else ())

    @classmethod
    def coerce(cls, value: Any) -> Optional["Dynamic"]:
        if value is None or isinstance(value, Dynamic):
            return value
        if isinstance(value, Mapping):
            return cls(pattern=DynamicPattern(value["pattern"]), over=value["over"], by=value.get("by"))
        raise PlanError(message="Dynamic inválido", details={"received": repr(value)})

    def to_dict(self) -> Dict[str, Any]:
        return {"pattern": self.pattern.value, "over": list(self.over), "by": self.by}


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise PlanError(message="target.name deve ser uma string não vazia", details={"name": repr(name)})
    if not name.isidentifier() or keyword.iskeyword(name):
        raise PlanError(
            message=f"Nome de target inválido: {name!r} (deve ser um identificador Python)",
            details={"name": name},
        )
    return name


@dataclass(frozen=True)
class Target:
    """
    Unidade nomeada de trabalho do plano.

    Campos:
        - name: identidade única (identificador Python)
        - command: código Python (expressão, ou bloco cuja última instrução é expressão)
        - trigger: regra de rebuild
        - format: nome do plugin de formato de armazenamento
        - dynamic: declaração de ramificação dinâmica (opcional)
        - elapsed / cpu: orçamentos em segundos (opcionais)
        - retries: tentativas extras em caso de falha
        - seed: seed explícita (derivada do nome quando ausente)
        - resources: dicas livres repassadas ao executor
        - priority: desempate no scheduler (maior primeiro)
        - storage: quem grava o valor no cache ("main" ou "worker")
        - max_expand: limite de sub-targets dinâmicos

    Opções `None` são resolvidas a partir de `TargetDefaults` no início do build.
    """

    name: str
    command: str
    trigger: Trigger = field(default_factory=Trigger)
    format: Optional[str] = None
    dynamic: Optional[Dynamic] = None
    elapsed: Optional[float] = None
    cpu: Optional[float] = None
    retries: Optional[int] = None
    seed: Optional[int] = None
    resources: Dict[str, Any] = field(default_factory=dict)
    priority: Optional[float] = None
    storage: Optional[str] = None
    max_expand: Optional[int] = None

    def __post_init__(self) -> None:
        validate_name(self.name)
        if not isinstance(self.command, str) or not self.command.strip():
            raise PlanError(message=f"Target '{self.name}' sem comando", details={"name": self.name})
        object.__setattr__(self, "trigger", Trigger.coerce(self.trigger))
        object.__setattr__(self, "dynamic", Dynamic.coerce(self.dynamic))
        if self.retries is not None and self.retries < 0:
            raise PlanError(message="retries deve ser >= 0", details={"name": self.name})
        if self.max_expand is not None and self.max_expand < 0:
            raise PlanError(message="max_expand deve ser >= 0", details={"name": self.name})
        if self.storage not in (None, "main", "worker"):
            raise PlanError(message="storage deve ser 'main' ou 'worker'", details={"name": self.name})

    @property
    def is_dynamic(self) -> bool:
        return self.dynamic is not None

    def resolved(self, defaults: Any) -> "Target":
        """Retorna uma cópia com opções ausentes preenchidas pelos defaults."""
        return replace(
            self,
            format=self.format if self.format is not None else defaults.format,
            retries=self.retries if self.retries is not None else defaults.retries,
            elapsed=self.elapsed if self.elapsed is not None else defaults.elapsed,
            cpu=self.cpu if self.cpu is not None else defaults.cpu,
            storage=self.storage if self.storage is not None else defaults.storage,
            priority=self.priority if self.priority is not None else defaults.priority,
        )

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "Target":
        known = {
            "name", "command", "trigger", "format", "dynamic", "elapsed", "cpu",
            "retries", "seed", "resources", "priority", "storage", "max_expand",
        }
        unknown = sorted(set(record) - known)
        if unknown:
            raise PlanError(
                message=f"Campos desconhecidos no registro de target: {unknown}",
                details={"name": record.get("name"), "unknown": unknown},
            )
        data = dict(record)
        data["resources"] = dict(data.get("resources") or {})
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "trigger": self.trigger.to_dict(),
            "format": self.format,
            "dynamic": self.dynamic.to_dict() if self.dynamic else None,
            "elapsed": self.elapsed,
            "cpu": self.cpu,
            "retries": self.retries,
            "seed": self.seed,
            "resources": dict(self.resources),
            "priority": self.priority,
            "storage": self.storage,
            "max_expand": self.max_expand,
        }


class Plan:
    """Catálogo ordenado e com nomes únicos de targets."""

    def __init__(self, targets: Iterable[Target] = ()):
        self._targets: Dict[str, Target] = {}
        for target in targets:
            self.add(target)

    def add(self, target: Target) -> None:
        if not isinstance(target, Target):
            raise PlanError(message="Plan aceita apenas instâncias de Target", details={"received": repr(target)})
        if target.name in self._targets:
            raise DuplicateTargetError(
                message=f"Duplicate target name: {target.name}",
                details={"name": target.name},
            )
        self._targets[target.name] = target

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "Plan":
        return cls(Target.from_dict(r) for r in records)

    def get(self, name: str) -> Target:
        try:
            return self._targets[name]
        except KeyError:
            raise UnknownTargetError(message=f"Unknown target: {name}", details={"name": name}) from None

    def names(self) -> List[str]:
        return list(self._targets)

    def resolved(self, defaults: Any) -> "Plan":
        return Plan(t.resolved(defaults) for t in self)

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def __repr__(self) -> str:
        return f"Plan({self.names()!r})"
