# src/targetflow/core/config/__init__.py

"""
Camada de configuração do TargetFlow.

Este pacote contém as estruturas e utilitários responsáveis por carregar,
mesclar, validar estruturalmente e identificar as opções de execução
de um build.

A configuração no TargetFlow é:
    - declarativa
    - determinística
    - explicitamente versionável
    - separada do plano (catálogo de targets)

Responsabilidades do pacote:
    - Carregamento de arquivos de configuração (defaults + overrides locais)
    - Resolução de configuração final via deep-merge determinístico
    - Conversão tipada para `BuildOptions`
    - Geração de hash canônico para rastreabilidade

Invariantes:
    - A configuração final é um dicionário puro (dict)
    - A estrutura resultante é determinística
    - Conflitos estruturais são tratados como erro

Limites explícitos:
    - Não executa targets
    - Não interage com o scheduler diretamente
"""

from .errors import (
    ConfigError,
    ConfigTypeConflictError,
    DefaultsNotFoundError,
    InvalidConfigRootTypeError,
    UnsupportedConfigFormatError,
)
from .hashing import compute_config_hash
from .loader import DEFAULTS_PATH, load_config, load_file
from .merge import deep_merge
from .options import (
    BuildOptions,
    ErrorPolicy,
    ExecutorKind,
    MemoryStrategy,
    ScheduleMode,
    TargetDefaults,
    load_options,
)

__all__ = [
    "ConfigError",
    "ConfigTypeConflictError",
    "DefaultsNotFoundError",
    "InvalidConfigRootTypeError",
    "UnsupportedConfigFormatError",
    "compute_config_hash",
    "DEFAULTS_PATH",
    "load_config",
    "load_file",
    "deep_merge",
    "BuildOptions",
    "ErrorPolicy",
    "ExecutorKind",
    "MemoryStrategy",
    "ScheduleMode",
    "TargetDefaults",
    "load_options",
]
