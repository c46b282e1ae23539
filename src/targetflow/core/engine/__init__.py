# src/targetflow/core/engine/__init__.py
"""
Engine do TargetFlow.

Este pacote contém a implementação responsável por **agendar** e
**executar** targets desatualizados, respeitando dependências extraídas
estaticamente, triggers e políticas de erro.

Componentes principais:
    - evaluate  → compilação e avaliação de comandos
    - executor  → execução local ou em processo, com orçamentos
    - dynamic   → fatiamento e expansão de targets dinâmicos
    - runner    → staleness, carga de escopos, gravação no cache
    - scheduler → máquina de estados, fila de prontos, retries
    - engine    → `build` / `outdated` / `BuildReport`

Princípios fundamentais:
    - Análise estática e execução são responsabilidades separadas
    - Nenhuma decisão silenciosa é tomada durante a execução
    - Políticas de execução são controladas por configuração

Invariantes:
    - Targets só são executados após suas dependências diretas
    - Cada target é executado no máximo uma vez por tentativa
    - O relatório reflete explicitamente o estado de cada item
"""

from .context import RunContext, new_run_id
from .dynamic import Branch, expand, prepare, slice_value
from .engine import BuildReport, build, make_executor, outdated, prepare_context
from .evaluate import compile_command, evaluate_command, evaluate_expression
from .executor import (
    ExecutionResult,
    Executor,
    FailureKind,
    LocalExecutor,
    ProcessExecutor,
    classify_failure,
)
from .runner import Outcome, TargetRunner
from .scheduler import ScheduleItem, ScheduleState, Scheduler

__all__ = [
    "RunContext",
    "new_run_id",
    "Branch",
    "expand",
    "prepare",
    "slice_value",
    "BuildReport",
    "build",
    "make_executor",
    "outdated",
    "prepare_context",
    "compile_command",
    "evaluate_command",
    "evaluate_expression",
    "ExecutionResult",
    "Executor",
    "FailureKind",
    "LocalExecutor",
    "ProcessExecutor",
    "classify_failure",
    "Outcome",
    "TargetRunner",
    "ScheduleItem",
    "ScheduleState",
    "Scheduler",
]
