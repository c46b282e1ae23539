"""
TargetFlow — Canonical Exceptions (v1)

Este módulo define exceções tipadas internas do TargetFlow.

Objetivo:
- Permitir que o engine levante exceções semânticas tipadas
- Facilitar o mapeamento determinístico para ErrorPayload
- Evitar ValueError/RuntimeError genéricos em guardrails críticos

Taxonomia:
- SpecificationError / CycleError / PlanError: fatais antes de qualquer execução
- BuildError / TargetTimeoutError / WorkerError: falhas de um target (retry)
- TriggerEvaluationError: a expressão do trigger falhou (sem retry)
- CacheError: falha de I/O do store (fatal na escrita)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

from targetflow.core import errors as codes


@dataclass(frozen=True)
class TargetFlowException(Exception):
    """Base class para exceções internas do TargetFlow.

    Importante:
    - Sempre carregar dados estruturados em `details`
    - Não embedar stack trace em payloads de erro
    - Mensagem deve ser curta e humana
    """

    code: ClassVar[str] = codes.ENGINE_EXECUTION_ERROR

    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    hint: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover
        return self.message


# ---------------------------------------------------------------------------
# Plano / análise estática
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SpecificationError(TargetFlowException):
    """Comando de um target não pôde ser analisado estaticamente."""

    code: ClassVar[str] = codes.SPECIFICATION_ERROR


@dataclass(frozen=True)
class CycleError(TargetFlowException):
    """O grafo de dependências contém um ciclo (details["cycle"])."""

    code: ClassVar[str] = codes.CYCLE_ERROR

    @property
    def cycle(self) -> List[str]:
        return list(self.details.get("cycle", []))


@dataclass(frozen=True)
class PlanError(TargetFlowException):
    """Plano estruturalmente inválido (registro malformado, opção inválida)."""

    code: ClassVar[str] = codes.PLAN_ERROR


@dataclass(frozen=True)
class DuplicateTargetError(PlanError):
    """Dois targets declarados com o mesmo nome."""


@dataclass(frozen=True)
class UnknownTargetError(PlanError):
    """Referência a um target inexistente no plano."""


# ---------------------------------------------------------------------------
# Execução
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BuildError(TargetFlowException):
    """O comando do target levantou uma exceção durante a execução."""

    code: ClassVar[str] = codes.BUILD_ERROR


@dataclass(frozen=True)
class DynamicExpansionError(BuildError):
    """Os valores de `dynamic.over`/`by` não puderam ser ramificados (sem retry)."""


@dataclass(frozen=True)
class TargetTimeoutError(TargetFlowException):
    """Orçamento de tempo (elapsed/CPU) do target foi excedido."""

    code: ClassVar[str] = codes.TIMEOUT_ERROR


@dataclass(frozen=True)
class WorkerError(TargetFlowException):
    """Falha de infraestrutura do worker (processo morto, serialização)."""

    code: ClassVar[str] = codes.WORKER_ERROR


@dataclass(frozen=True)
class TriggerEvaluationError(TargetFlowException):
    """A expressão de um trigger `condition`/`change` falhou."""

    code: ClassVar[str] = codes.TRIGGER_EVALUATION_ERROR


# ---------------------------------------------------------------------------
# Persistência / Configuração
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CacheError(TargetFlowException):
    """Falha de I/O no store de cache."""

    code: ClassVar[str] = codes.CACHE_ERROR


@dataclass(frozen=True)
class EngineConfigurationError(TargetFlowException):
    """Configuração inválida ou inconsistente para execução."""

    code: ClassVar[str] = codes.ENGINE_CONFIGURATION_ERROR
