# tests/core/spec/test_analyzer.py
"""
Testes da análise estática de comandos (`analyze_command`) e de
objetos importados (`analyze_function`).

Este módulo valida que:
- nomes livres são coletados na ordem de primeira leitura
- nomes ligados dentro do comando não viram dependências
- sentinelas de arquivo exigem caminhos literais
- `ignore(...)` oculta tudo que contém
- comandos inválidos resultam em SpecificationError

Invariantes:
    - A análise é pura: o mesmo texto produz a mesma análise
    - Nenhum código do usuário é executado

Limites explícitos:
    - Não resolve nomes contra targets (ver test_builder)
"""

import ast
import hashlib

import pytest

from targetflow.core.exceptions import SpecificationError
from targetflow.core.spec.analyzer import (
    CommandAnalysis,
    PythonCommandParser,
    analyze_command,
    analyze_function,
    hash_command,
    scan_report,
)


SCALE = 3


def _scaled(x):
    # comentário não altera o digest
    return x * SCALE + offset_table  # noqa: F821


def _local_only(values):
    total = 0
    for v in values:
        total += v
    return total


# =====================================================
# Nomes livres
# =====================================================

def test_free_names_in_order_of_first_use():
    facts = analyze_command("fit(raw, params) + raw")
    assert facts.names == ("fit", "raw", "params")
    assert facts.command_hash == hash_command("fit(raw, params) + raw")


def test_names_bound_in_block_are_not_dependencies():
    facts = analyze_command("x = load(raw)\ny = x + 1\ny * factor")
    assert facts.names == ("load", "raw", "factor")


def test_comprehension_and_lambda_variables_are_local():
    facts = analyze_command("[i * k for i in xs] + list(map(lambda y: y + z, ws))")
    assert "i" not in facts.names
    assert "y" not in facts.names
    assert facts.names == ("xs", "k", "list", "map", "z", "ws")


def test_walrus_binds_name():
    facts = analyze_command("(n := len(data)) and n")
    assert facts.names == ("len", "data")


def test_function_defined_in_command_is_local():
    facts = analyze_command("def f(a):\n    return a + b\nf(raw)")
    assert "f" not in facts.names
    assert "a" not in facts.names
    assert facts.names == ("b", "raw")


def test_imports_inside_command_are_local():
    facts = analyze_command("import math\nmath.sqrt(area)")
    assert facts.names == ("area",)


def test_ignore_hides_everything_inside():
    facts = analyze_command("ignore(secret_target) + kept")
    assert facts.names == ("kept",)


def test_sentinel_names_are_not_dependencies():
    facts = analyze_command("read_csv(file_in('data/raw.csv'))")
    assert facts.names == ("read_csv",)


# =====================================================
# Arquivos
# =====================================================

def test_file_sentinels_collect_literal_paths():
    facts = analyze_command(
        "save(model, file_out('out/a.bin', 'out/b.bin'))\n"
        "load(file_in(['x.csv', 'y.csv']), file_in('x.csv'))\n"
        "render(report_in('report.md'))"
    )
    assert facts.files_out == ("out/a.bin", "out/b.bin")
    assert facts.files_in == ("x.csv", "y.csv")
    assert facts.reports == ("report.md",)


def test_file_sentinel_with_expression_raises():
    with pytest.raises(SpecificationError) as excinfo:
        analyze_command("load(file_in(path))")
    assert excinfo.value.details["sentinel"] == "file_in"


def test_file_sentinel_with_keyword_raises():
    with pytest.raises(SpecificationError):
        analyze_command("save(x, file_out(path='out.bin'))")


def test_syntax_error_raises_specification_error():
    with pytest.raises(SpecificationError) as excinfo:
        analyze_command("a +")
    assert "lineno" in excinfo.value.details


# =====================================================
# Memo / parser plugável
# =====================================================

def test_analysis_is_memoized_by_text():
    first = analyze_command("memo_a + memo_b")
    second = analyze_command("memo_a + memo_b")
    assert first is second


def test_custom_parser_is_used():
    class UpperParser:
        def parse(self, command):
            return CommandAnalysis(command_hash=hash_command(command), names=("CUSTOM",))

    facts = analyze_command("anything", UpperParser())
    assert facts.names == ("CUSTOM",)


def test_analysis_round_trips_through_dict():
    facts = PythonCommandParser().parse("f(file_in('a.csv'))")
    assert CommandAnalysis.from_dict(facts.to_dict()) == facts


# =====================================================
# Imports
# =====================================================

def test_function_free_names_exclude_params_and_locals():
    facts = analyze_function(_local_only)
    assert facts.names == ()
    facts = analyze_function(_scaled)
    assert facts.names == ("SCALE", "offset_table")


def test_function_digest_ignores_comments_and_formatting():
    reformatted = "def _scaled(x):\n    return x*SCALE+offset_table\n"
    expected = hashlib.sha256(ast.dump(ast.parse(reformatted).body[0]).encode("utf-8")).hexdigest()
    assert analyze_function(_scaled).digest == expected


def test_value_digest_depends_on_value():
    assert analyze_function(1).digest == analyze_function(1).digest
    assert analyze_function(1).digest != analyze_function(2).digest
    assert analyze_function([1, 2]).names == ()


def test_module_digest_is_stable():
    import json

    assert analyze_function(json).digest == analyze_function(json).digest
    assert analyze_function(json).names == ()


# =====================================================
# Relatórios
# =====================================================

def test_scan_report_finds_read_target_calls(tmp_path):
    report = tmp_path / "report.md"
    report.write_text(
        "# Report\n\n```python\nread_target(\"model\")\nload_target('metrics')\nread_target(model)\n```\n",
        encoding="utf-8",
    )
    assert scan_report(str(report)) == ("model", "metrics")


def test_scan_report_missing_file_is_empty(tmp_path):
    assert scan_report(str(tmp_path / "nope.md")) == ()
