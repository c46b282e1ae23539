# src/targetflow/core/engine/context.py
"""
Contexto de execução de um build.

O `RunContext` concentra todo o estado mutável de uma run: grafo,
metadados, escopos, store, opções e o log estruturado de eventos. Não
existe estado global: cada chamada a `build`/`outdated` cria o seu.

Princípios fundamentais:
    - Isolamento por execução (cada run possui seu próprio contexto)
    - Comunicação explícita e rastreável
    - Logs e warnings estruturados, agrupados por target

Invariantes:
    - Logs sempre incluem `run_id` e `target`
    - Warnings são agrupados por target
    - `log`/`add_warning`/`record` são thread-safe

Limites explícitos:
    - Não executa targets
    - Não decide políticas de execução
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from targetflow.core.config.options import BuildOptions
from targetflow.core.graph.graph import DependencyGraph
from targetflow.core.meta.metadata import MetadataStore
from targetflow.core.plan.types import Plan
from targetflow.core.scope.layers import ScopeManager
from targetflow.core.spec.builder import ImportSpecification, Specification
from targetflow.core.traceability import history


def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ") + "-" + uuid.uuid4().hex[:8]


@dataclass
class RunContext:
    """
    Estado explícito de uma run.

    Campos:
        - run_id / created_at: identidade da execução
        - options: opções efetivas (imutáveis)
        - plan: plano com opções resolvidas pelos defaults
        - envir: ambiente do usuário (somente leitura)
        - store: CacheStore (dono durável dos valores)
        - specs / import_specs / graph: resultado da análise estática
        - metadata: gerações previous/current
        - scopes: camadas de escopo
        - executor: quem roda os comandos
        - persist: False em dry-runs (`outdated`): nada é gravado
    """

    run_id: str
    created_at: datetime
    options: BuildOptions
    plan: Plan
    envir: Mapping[str, Any]
    store: Any
    specs: Dict[str, Specification]
    import_specs: Dict[str, ImportSpecification]
    graph: DependencyGraph
    metadata: MetadataStore
    scopes: ScopeManager
    executor: Any = None
    persist: bool = True
    meta: Dict[str, Any] = field(default_factory=dict)

    events: List[Dict[str, Any]] = field(default_factory=list, init=False)
    warnings: Dict[str, List[str]] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    # -----------------------------
    # Logging & warnings
    # -----------------------------
    def log(self, *, target: Optional[str], level: str, message: str, **extra: Any) -> None:
        event = {
            "run_id": self.run_id,
            "target": target,
            "level": level,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        event.update(extra)
        with self._lock:
            self.events.append(event)

    def add_warning(self, *, target: str, message: str) -> None:
        with self._lock:
            self.warnings.setdefault(target, []).append(message)

    def warnings_for(self, target: str) -> List[str]:
        with self._lock:
            return list(self.warnings.get(target, []))

    # -----------------------------
    # Histórico persistente
    # -----------------------------
    def record(self, event_type: str, **kwargs: Any) -> None:
        """Despacha para `history.<event_type>` quando a run é persistente."""
        if not self.persist:
            return
        getattr(history, event_type)(self.store, run_id=self.run_id, **kwargs)


__all__ = ["RunContext", "new_run_id"]
