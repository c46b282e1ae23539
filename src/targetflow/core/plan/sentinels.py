"""
Sentinelas de declaração usadas dentro de comandos.

Em tempo de execução são funções identidade: o comando continua sendo
uma chamada Python comum. O significado delas é estático: o
SpecificationBuilder reconhece estas chamadas na árvore do comando.

    file_in("data/raw.csv")      → arquivo de entrada (argumento literal)
    file_out("out/model.bin")    → arquivo de saída (argumento literal)
    report_in("report.md")       → relatório; chamadas read_target("x")
                                   dentro dele viram dependências
    ignore(expr)                 → nada dentro de expr vira dependência

Caminhos declarados devem ser literais: a resolução acontece antes de
qualquer target executar.
"""

from __future__ import annotations

from typing import Any


def _identity(*paths: Any) -> Any:
    if len(paths) == 1:
        return paths[0]
    return list(paths)


def file_in(*paths: Any) -> Any:
    """Declara arquivos de entrada; retorna o(s) caminho(s)."""
    return _identity(*paths)


def file_out(*paths: Any) -> Any:
    """Declara arquivos de saída; retorna o(s) caminho(s)."""
    return _identity(*paths)


def report_in(*paths: Any) -> Any:
    """Declara relatórios de entrada; retorna o(s) caminho(s)."""
    return _identity(*paths)


def ignore(value: Any) -> Any:
    return value


SENTINEL_NAMES = ("file_in", "file_out", "report_in", "ignore")

__all__ = ["file_in", "file_out", "report_in", "ignore", "SENTINEL_NAMES"]
