# src/targetflow/core/config/errors.py
"""
Exceções canônicas da camada de configuração do TargetFlow.

Este módulo define a hierarquia oficial de exceções utilizadas durante
o carregamento, validação estrutural e resolução de configuração.

As exceções aqui definidas representam **violações estruturais
explícitas** da configuração, e não erros de execução de targets.

Invariantes:
    - Todas as exceções de configuração herdam de `ConfigError`
    - Nenhuma exceção representa falha de um comando de target

Limites explícitos:
    - Não realiza fallback ou recovery
    - Não depende do engine ou do scheduler
"""


class ConfigError(Exception):
    """
    Exceção base para erros relacionados à configuração do TargetFlow.

    Todas as exceções levantadas durante carregamento, validação estrutural
    e resolução de configuração devem herdar desta classe.
    """


class DefaultsNotFoundError(ConfigError):
    """
    Exceção levantada quando um arquivo de configuração obrigatório
    não é encontrado no caminho especificado.

    Limites explícitos:
        - Não tenta inferir ou criar defaults automaticamente
    """


class UnsupportedConfigFormatError(ConfigError):
    """
    Exceção levantada quando o formato do arquivo de configuração
    não é suportado pelo loader.

    Formatos suportados (v1):
        - YAML (.yaml, .yml)
        - JSON (.json)
    """


class InvalidConfigRootTypeError(ConfigError):
    """
    Exceção levantada quando o conteúdo raiz da configuração
    não é um dicionário (`dict`).

    Limites explícitos:
        - Não tenta normalizar ou encapsular estruturas inválidas
    """


class ConfigTypeConflictError(ConfigError):
    """
    Exceção levantada quando ocorre conflito de tipos durante o deep-merge.

    Exemplo de conflito:
        - base:     {"engine": {"workers": 4}}
        - override: {"engine": "parallel"}

    Valores `null` na base representam "não definido" e aceitam qualquer
    tipo no override; inteiros e floats são considerados compatíveis.
    """
