"""
Opções tipadas de execução de um build.

Este módulo converte a configuração resolvida (dict) em `BuildOptions`,
a estrutura imutável consumida pelo engine e pelo scheduler.

Chaves reconhecidas:
    engine.mode                   sequential | parallel
    engine.workers                int >= 1
    engine.executor               local | process
    engine.error_policy           fail_fast | keep_going
    engine.memory_strategy        keep | autoclean | unload
    engine.seed                   int
    engine.max_expand             int | null
    engine.infrastructure_retries int >= 0
    store.path                    diretório raiz do cache
    targets.*                     defaults de opções de targets

Invariantes:
    - Valores inválidos resultam em EngineConfigurationError (fatal)
    - `BuildOptions` é imutável e hashável em JSON canônico (`to_dict`)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from targetflow.core.exceptions import EngineConfigurationError

from .hashing import compute_config_hash
from .loader import load_config


class ScheduleMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ExecutorKind(str, Enum):
    LOCAL = "local"
    PROCESS = "process"


class ErrorPolicy(str, Enum):
    FAIL_FAST = "fail_fast"
    KEEP_GOING = "keep_going"


class MemoryStrategy(str, Enum):
    """
    Estratégias de memória do ScopeManager.

    - KEEP: valores carregados permanecem ligados até o fim da run
    - AUTOCLEAN: um valor é descarregado assim que o último consumidor termina
    - UNLOAD: valores são descarregados logo após cada target que os usou;
      o próximo consumidor recarrega do cache
    """
    KEEP = "keep"
    AUTOCLEAN = "autoclean"
    UNLOAD = "unload"


@dataclass(frozen=True)
class TargetDefaults:
    """Defaults aplicados às opções de targets não declaradas no plano."""

    format: str = "joblib"
    retries: int = 0
    elapsed: Optional[float] = None
    cpu: Optional[float] = None
    storage: str = "main"
    priority: float = 0.0


@dataclass(frozen=True)
class BuildOptions:
    """Opções efetivas de um build (imutáveis)."""

    mode: ScheduleMode = ScheduleMode.SEQUENTIAL
    workers: int = 1
    executor: ExecutorKind = ExecutorKind.LOCAL
    error_policy: ErrorPolicy = ErrorPolicy.FAIL_FAST
    memory_strategy: MemoryStrategy = MemoryStrategy.KEEP
    seed: int = 0
    max_expand: Optional[int] = None
    infrastructure_retries: int = 1
    store_path: str = ".targetflow"
    target_defaults: TargetDefaults = field(default_factory=TargetDefaults)

    @property
    def keep_going(self) -> bool:
        return self.error_policy == ErrorPolicy.KEEP_GOING

    @property
    def parallel(self) -> bool:
        return self.mode == ScheduleMode.PARALLEL

    def with_changes(self, **changes: Any) -> "BuildOptions":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        d = self.target_defaults
        return {
            "engine": {
                "mode": self.mode.value,
                "workers": self.workers,
                "executor": self.executor.value,
                "error_policy": self.error_policy.value,
                "memory_strategy": self.memory_strategy.value,
                "seed": self.seed,
                "max_expand": self.max_expand,
                "infrastructure_retries": self.infrastructure_retries,
            },
            "store": {"path": self.store_path},
            "targets": {
                "format": d.format,
                "retries": d.retries,
                "elapsed": d.elapsed,
                "cpu": d.cpu,
                "storage": d.storage,
                "priority": d.priority,
            },
        }

    def options_hash(self) -> str:
        return compute_config_hash(self.to_dict())

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "BuildOptions":
        """
        Constrói `BuildOptions` a partir de uma configuração resolvida.

        Raises:
            EngineConfigurationError: se algum valor for inválido.
        """
        config = config or {}
        engine_cfg = _section(config, "engine")
        store_cfg = _section(config, "store")
        targets_cfg = _section(config, "targets")

        defaults = TargetDefaults(
            format=str(targets_cfg.get("format", "joblib")),
            retries=_non_negative_int(targets_cfg.get("retries", 0), "targets.retries"),
            elapsed=_optional_positive(targets_cfg.get("elapsed"), "targets.elapsed"),
            cpu=_optional_positive(targets_cfg.get("cpu"), "targets.cpu"),
            storage=_choice(targets_cfg.get("storage", "main"), ("main", "worker"), "targets.storage"),
            priority=float(targets_cfg.get("priority", 0.0) or 0.0),
        )

        workers = _non_negative_int(engine_cfg.get("workers", 1), "engine.workers")
        if workers < 1:
            raise EngineConfigurationError(
                message="engine.workers deve ser >= 1",
                details={"key": "engine.workers", "value": workers},
            )

        max_expand = engine_cfg.get("max_expand")
        if max_expand is not None:
            max_expand = _non_negative_int(max_expand, "engine.max_expand")

        return cls(
            mode=_enum(ScheduleMode, engine_cfg.get("mode", "sequential"), "engine.mode"),
            workers=workers,
            executor=_enum(ExecutorKind, engine_cfg.get("executor", "local"), "engine.executor"),
            error_policy=_enum(ErrorPolicy, engine_cfg.get("error_policy", "fail_fast"), "engine.error_policy"),
            memory_strategy=_enum(
                MemoryStrategy, engine_cfg.get("memory_strategy", "keep"), "engine.memory_strategy"
            ),
            seed=_int(engine_cfg.get("seed", 0), "engine.seed"),
            max_expand=max_expand,
            infrastructure_retries=_non_negative_int(
                engine_cfg.get("infrastructure_retries", 1), "engine.infrastructure_retries"
            ),
            store_path=str(store_cfg.get("path", ".targetflow")),
            target_defaults=defaults,
        )


def load_options(
    *,
    defaults_path: Optional[str] = None,
    local_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> BuildOptions:
    """Carrega a configuração (defaults + local + overrides) e a converte em `BuildOptions`."""
    config = load_config(defaults_path=defaults_path, local_path=local_path, overrides=overrides)
    return BuildOptions.from_config(config)


# ---------------------------------------------------------------------------
# Validação
# ---------------------------------------------------------------------------

def _section(config: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config.get(key) or {}
    if not isinstance(value, dict):
        raise EngineConfigurationError(
            message=f"Seção '{key}' da configuração deve ser um mapa",
            details={"key": key, "received": type(value).__name__},
        )
    return value


def _enum(enum_cls, value: Any, key: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise EngineConfigurationError(
            message=f"Valor inválido para {key}: {value!r}",
            details={"key": key, "value": value, "allowed": [e.value for e in enum_cls]},
        ) from None


def _choice(value: Any, allowed, key: str) -> str:
    if value not in allowed:
        raise EngineConfigurationError(
            message=f"Valor inválido para {key}: {value!r}",
            details={"key": key, "value": value, "allowed": list(allowed)},
        )
    return str(value)


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EngineConfigurationError(
            message=f"{key} deve ser inteiro",
            details={"key": key, "value": value},
        )
    return value


def _non_negative_int(value: Any, key: str) -> int:
    value = _int(value, key)
    if value < 0:
        raise EngineConfigurationError(
            message=f"{key} deve ser >= 0",
            details={"key": key, "value": value},
        )
    return value


def _optional_positive(value: Any, key: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise EngineConfigurationError(
            message=f"{key} deve ser um número positivo ou null",
            details={"key": key, "value": value},
        )
    return float(value)
