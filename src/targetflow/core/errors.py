"""
TargetFlow — Canonical Error Structures (v1)

Este módulo define o padrão canônico de erros do TargetFlow.
Erros são considerados artefatos de domínio e fazem parte do contrato operacional
do engine, devendo ser:

- explícitos
- serializáveis
- rastreáveis
- acionáveis

O BuildReport e o histórico de progresso nunca carregam stack traces crus:
toda falha é convertida em um ErrorPayload.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Payload canônico
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorPayload:
    """
    Payload canônico de erro do TargetFlow.

    Campos:
    - type: código estável do erro (não é texto livre)
    - message: mensagem curta, humana e objetiva
    - details: dados estruturados relevantes para diagnóstico
    - hint: ação sugerida ao operador (onde corrigir)
    """

    type: str
    message: str
    details: Dict[str, Any]
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Retorna representação serializável do erro."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Catálogo canônico de tipos de erro (v1)
# ---------------------------------------------------------------------------

# Análise estática / grafo
SPECIFICATION_ERROR = "SPECIFICATION_ERROR"
CYCLE_ERROR = "CYCLE_ERROR"
PLAN_ERROR = "PLAN_ERROR"

# Execução de targets
BUILD_ERROR = "BUILD_ERROR"
TIMEOUT_ERROR = "TIMEOUT_ERROR"
WORKER_ERROR = "WORKER_ERROR"
TRIGGER_EVALUATION_ERROR = "TRIGGER_EVALUATION_ERROR"
UPSTREAM_FAILED = "UPSTREAM_FAILED"
RUN_CANCELLED = "RUN_CANCELLED"

# Persistência
CACHE_ERROR = "CACHE_ERROR"

# Engine / Execução
ENGINE_EXECUTION_ERROR = "ENGINE_EXECUTION_ERROR"
ENGINE_CONFIGURATION_ERROR = "ENGINE_CONFIGURATION_ERROR"


# ---------------------------------------------------------------------------
# Helpers de fábrica
# ---------------------------------------------------------------------------

def upstream_failed(
    *,
    target: str,
    failed: List[str],
    hint: str = "Corrija o target que falhou; este target será reconstruído na próxima execução.",
) -> ErrorPayload:
    return ErrorPayload(
        type=UPSTREAM_FAILED,
        message="Target pulado porque uma dependência falhou",
        details={"target": target, "failed_upstream": sorted(failed)},
        hint=hint,
    )


def run_cancelled(
    *,
    target: str,
    cause: Optional[str] = None,
    hint: str = "A execução foi interrompida antes deste target ser despachado.",
) -> ErrorPayload:
    return ErrorPayload(
        type=RUN_CANCELLED,
        message="Target não despachado: execução cancelada",
        details={"target": target, "cause": cause},
        hint=hint,
    )


def engine_execution_error(
    *,
    target: Optional[str] = None,
    exc_type: Optional[str] = None,
    exc_message: Optional[str] = None,
    hint: str = "Verifique o histórico de progresso e o comando do target. Nenhum fallback é aplicado automaticamente.",
) -> ErrorPayload:
    return ErrorPayload(
        type=ENGINE_EXECUTION_ERROR,
        message="Falha inesperada durante a execução do target",
        details={
            "target": target,
            "exc_type": exc_type,
            "exc_message": exc_message,
        },
        hint=hint,
    )


def exception_to_error(exc: BaseException, *, target: Optional[str] = None) -> ErrorPayload:
    """Converte exceções em ErrorPayload (serializável, acionável).

    Regras:
    - TargetFlowException: já vem com message/details/hint e um código estável.
    - Outras exceções: encapsular como ENGINE_EXECUTION_ERROR sem expor stack trace.
    """
    from targetflow.core.exceptions import TargetFlowException

    if isinstance(exc, TargetFlowException):
        details = dict(exc.details or {})
        if target is not None:
            details.setdefault("target", target)
        return ErrorPayload(
            type=exc.code,
            message=str(exc) or "Erro de execução",
            details=details,
            hint=exc.hint,
        )

    return engine_execution_error(
        target=target,
        exc_type=exc.__class__.__name__,
        exc_message=str(exc) or None,
    )
