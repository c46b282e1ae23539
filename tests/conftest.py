# tests/conftest.py
"""
Fixtures compartilhados para testes do TargetFlow.

Este módulo define fixtures reutilizáveis que fornecem:
- configurações mínimas e determinísticas (YAML)
- um CacheStore isolado por teste (tmp_path)
- opções de build para as políticas mais usadas
- uma fábrica de planos a partir de registros simples

Decisões arquiteturais:
    - Fixtures são mantidas simples e explícitas
    - Todo I/O acontece sob `tmp_path` (nada fora do diretório do teste)
    - Imports do core são realizados de forma lazy para
      melhorar a clareza de erros durante falhas

Invariantes:
    - Nenhuma fixture executa um build
    - Nenhuma fixture compartilha estado entre testes

Limites explícitos:
    - Não substituir testes de integração
    - Não conter lógica condicional complexa
"""

import pytest


# =====================================================
# Config fixtures
# =====================================================

@pytest.fixture
def project_like_config_defaults_yaml() -> str:
    """
    YAML mínimo com a mesma forma do defaults do pacote.

    Usado pelos testes do loader para validar leitura e merge sem
    depender do arquivo embarcado.
    """
    return (
        "engine:\n"
        "  mode: sequential\n"
        "  workers: 1\n"
        "  error_policy: fail_fast\n"
        "  seed: 0\n"
        "store:\n"
        "  path: .targetflow\n"
        "targets:\n"
        "  format: joblib\n"
        "  retries: 0\n"
    )


@pytest.fixture
def project_like_config_local_yaml() -> str:
    """Override local: muda política de erro e retries."""
    return (
        "engine:\n"
        "  error_policy: keep_going\n"
        "targets:\n"
        "  retries: 2\n"
    )


# =====================================================
# Store / options / plan fixtures
# =====================================================

@pytest.fixture
def store(tmp_path):
    """CacheStore isolado sob o diretório temporário do teste."""
    from targetflow.core.cache.store import CacheStore

    return CacheStore(tmp_path / "store")


@pytest.fixture
def options():
    """Opções padrão: sequencial, executor local, fail_fast."""
    from targetflow.core.config.options import BuildOptions

    return BuildOptions()


@pytest.fixture
def keep_going_options():
    """Opções com política keep_going."""
    from targetflow.core.config.options import BuildOptions, ErrorPolicy

    return BuildOptions(error_policy=ErrorPolicy.KEEP_GOING)


@pytest.fixture
def make_plan():
    """
    Fábrica de planos: `make_plan(("a", "1"), ("b", "a + 1"))` ou registros dict.
    """
    from targetflow.core.plan.types import Plan, Target

    def _make(*records):
        targets = []
        for record in records:
            if isinstance(record, tuple):
                name, command = record
                targets.append(Target(name=name, command=command))
            elif isinstance(record, dict):
                targets.append(Target.from_dict(record))
            else:
                targets.append(record)
        return Plan(targets)

    return _make
