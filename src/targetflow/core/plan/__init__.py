"""
Modelo de plano do TargetFlow.

Um plano é um **catálogo ordenado de targets** nomeados, onde:
- cada target declara um comando (código Python opaco) e opções
- dependências são implícitas e extraídas estaticamente do comando
- o catálogo é imutável durante a run (exceto sub-targets dinâmicos,
  que pertencem ao grafo e não ao plano)
"""

from .loader import load_plan
from .sentinels import SENTINEL_NAMES, file_in, file_out, ignore, report_in
from .types import Dynamic, DynamicPattern, Plan, Target, Trigger, TriggerKind, validate_name

__all__ = [
    "load_plan",
    "SENTINEL_NAMES",
    "file_in",
    "file_out",
    "ignore",
    "report_in",
    "Dynamic",
    "DynamicPattern",
    "Plan",
    "Target",
    "Trigger",
    "TriggerKind",
    "validate_name",
]
