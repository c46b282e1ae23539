# src/targetflow/__init__.py
"""
TargetFlow — motor de workflows incremental orientado a targets.

Um plano é um catálogo de targets nomeados; cada target declara um
comando Python. As dependências são extraídas estaticamente do comando,
o grafo é validado (ciclos) e apenas os targets desatualizados são
executados. Valores ficam em um cache endereçado por nome.

Princípios centrais:
    - Dependências implícitas, extraídas do código (sem `depends_on`)
    - Staleness por hashes de conteúdo (comando, dependências, arquivos)
    - Execução determinística e reprodutível (seeds por target)
    - Rastreabilidade: histórico append-only de cada run

Limites explícitos:
    - Não interpreta o código do usuário além da análise estática
    - Não renderiza relatórios nem oferece CLI
"""

from targetflow.core.cache import CacheStore, FormatPlugin, get_format, load_target, read_target, register_format
from targetflow.core.config import BuildOptions, load_options
from targetflow.core.engine import BuildReport, ScheduleState, build, outdated
from targetflow.core.errors import ErrorPayload
from targetflow.core.exceptions import (
    BuildError,
    CacheError,
    CycleError,
    PlanError,
    SpecificationError,
    TargetFlowException,
)
from targetflow.core.plan import (
    Dynamic,
    DynamicPattern,
    Plan,
    Target,
    Trigger,
    TriggerKind,
    file_in,
    file_out,
    ignore,
    load_plan,
    report_in,
)
from targetflow.core.traceability import progress, read_history

__all__ = [
    "CacheStore",
    "FormatPlugin",
    "get_format",
    "load_target",
    "read_target",
    "register_format",
    "BuildOptions",
    "load_options",
    "BuildReport",
    "ScheduleState",
    "build",
    "outdated",
    "ErrorPayload",
    "BuildError",
    "CacheError",
    "CycleError",
    "PlanError",
    "SpecificationError",
    "TargetFlowException",
    "Dynamic",
    "DynamicPattern",
    "Plan",
    "Target",
    "Trigger",
    "TriggerKind",
    "file_in",
    "file_out",
    "ignore",
    "load_plan",
    "report_in",
    "progress",
    "read_history",
]
