"""
Carregamento de planos declarados em arquivo (YAML/JSON).

Formato esperado:

    targets:
      - name: raw
        command: read_csv(file_in("data/raw.csv"))
      - name: model
        command: fit(raw)
        retries: 2

Limites explícitos:
    - Não oferece açúcar sintático de autoria de planos
    - Reaproveita o loader de configuração (mesmas regras de formato)
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

from targetflow.core.config.loader import load_file
from targetflow.core.exceptions import PlanError

from .types import Plan


def load_plan(path: Union[str, Path]) -> Plan:
    data = load_file(path)
    records = data.get("targets")
    if not isinstance(records, list):
        raise PlanError(
            message="Arquivo de plano deve conter uma lista `targets`",
            details={"path": str(path)},
        )
    return Plan.from_records(records)
