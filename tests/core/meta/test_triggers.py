# tests/core/meta/test_triggers.py
"""
Testes da decisão de staleness (`decide`) por tipo de trigger.

Regras comuns:
    - sem metadados anteriores → outdated ("never built")
    - último build falhou → outdated
    - valor ausente do cache → outdated, inclusive com trigger `never`

Handlers:
    - command: fingerprint ou arquivos de saída
    - file: hashes de arquivos declarados
    - condition / change: avaliação da expressão
    - always / never
"""

import pytest

from targetflow.core.exceptions import TriggerEvaluationError
from targetflow.core.meta.hashing import FileStamp, hash_value
from targetflow.core.meta.metadata import Metadata
from targetflow.core.meta.triggers import (
    TriggerInputs,
    compute_fingerprint,
    decide,
    normalize_command,
)
from targetflow.core.plan.types import Target, Trigger


def _inputs(trigger=None, *, fingerprint="fp", previous=None, cached=True, evaluate=None, files_in=None, files_out=None):
    target = Target("t", "f(x)", trigger=trigger or Trigger())
    return TriggerInputs(
        target=target,
        fingerprint=fingerprint,
        previous=previous,
        cached=cached,
        files_in=files_in or {},
        files_out=files_out or {},
        evaluate=evaluate,
    )


def _prev(**kwargs):
    base = {"name": "t", "fingerprint": "fp", "value_hash": "v", "ref": "r"}
    base.update(kwargs)
    return Metadata(**base)


# =====================================================
# Fingerprint
# =====================================================

def test_normalize_command_ignores_comments_and_whitespace():
    assert normalize_command("f( x )  # note") == normalize_command("f(x)")
    assert normalize_command("f(x)") != normalize_command("f(y)")
    assert normalize_command("f(") == "f("


def test_fingerprint_is_sensitive_to_every_input():
    base = dict(
        command="f(x)",
        depends={"x": "h1"},
        files_in={"a.csv": FileStamp("fa")},
        trigger=Trigger(),
        seed=1,
        format="joblib",
    )
    fp = compute_fingerprint(**base)
    assert compute_fingerprint(**base) == fp
    assert compute_fingerprint(**{**base, "command": "f(x)  # same"}) == fp
    assert compute_fingerprint(**{**base, "command": "g(x)"}) != fp
    assert compute_fingerprint(**{**base, "depends": {"x": "h2"}}) != fp
    assert compute_fingerprint(**{**base, "files_in": {"a.csv": FileStamp("fb")}}) != fp
    assert compute_fingerprint(**{**base, "seed": 2}) != fp
    assert compute_fingerprint(**{**base, "format": "json"}) != fp
    assert compute_fingerprint(**{**base, "extra": {"dynamic": "map"}}) != fp


# =====================================================
# Regras comuns
# =====================================================

def test_never_built_is_outdated():
    decision = decide(_inputs())
    assert decision.outdated
    assert decision.reason == "never built"


def test_previous_failure_is_outdated():
    decision = decide(_inputs(previous=_prev(error={"type": "BUILD_ERROR"})))
    assert decision.outdated
    assert decision.reason == "previous build failed"


def test_missing_value_overrides_never_trigger():
    decision = decide(_inputs(Trigger("never"), previous=_prev(), cached=False))
    assert decision.outdated
    assert decision.reason == "value missing from cache"


# =====================================================
# Handlers
# =====================================================

def test_command_trigger():
    assert not decide(_inputs(previous=_prev())).outdated
    changed = decide(_inputs(previous=_prev(), fingerprint="other"))
    assert changed.outdated
    assert changed.reason == "fingerprint changed"


def test_command_trigger_detects_changed_output():
    prev = _prev(files_out={"out.bin": {"hash": "old"}})
    decision = decide(_inputs(previous=prev, files_out={"out.bin": FileStamp("new")}))
    assert decision.outdated
    assert decision.reason.startswith("output file changed")


def test_file_trigger_ignores_fingerprint():
    prev = _prev(files_in={"a.csv": {"hash": "h"}})
    same = decide(_inputs(Trigger("file"), previous=prev, fingerprint="other", files_in={"a.csv": FileStamp("h")}))
    assert not same.outdated
    changed = decide(_inputs(Trigger("file"), previous=prev, files_in={"a.csv": FileStamp("h2")}))
    assert changed.outdated
    assert changed.reason == "file changed: a.csv"


def test_file_trigger_detects_new_declarations():
    prev = _prev(files_in={"a.csv": {"hash": "h"}})
    files = {"a.csv": FileStamp("h"), "b.csv": FileStamp("x")}
    decision = decide(_inputs(Trigger("file"), previous=prev, files_in=files))
    assert decision.reason == "declared files changed"


def test_file_trigger_detects_touched_file():
    prev = _prev(files_in={"a.csv": {"hash": "h", "mtime": 100.0, "size": 3}})
    same = decide(_inputs(Trigger("file"), previous=prev, files_in={"a.csv": FileStamp("h", 100.0, 3)}))
    assert not same.outdated
    touched = decide(_inputs(Trigger("file"), previous=prev, files_in={"a.csv": FileStamp("h", 200.0, 3)}))
    assert touched.outdated
    assert touched.reason == "file touched: a.csv"


def test_command_trigger_ignores_touched_output():
    prev = _prev(files_out={"out.bin": {"hash": "h", "mtime": 100.0, "size": 3}})
    decision = decide(_inputs(previous=prev, files_out={"out.bin": FileStamp("h", 200.0, 3)}))
    assert not decision.outdated


def test_condition_trigger():
    prev = _prev()
    yes = decide(_inputs(Trigger("condition", "flag"), previous=prev, evaluate=lambda e: True))
    no = decide(_inputs(Trigger("condition", "flag"), previous=prev, evaluate=lambda e: 0))
    assert yes.outdated and not no.outdated


def test_condition_failure_raises_trigger_error():
    def boom(expression):
        raise ZeroDivisionError("division by zero")

    with pytest.raises(TriggerEvaluationError) as excinfo:
        decide(_inputs(Trigger("condition", "1/0"), previous=_prev(), evaluate=boom))
    assert excinfo.value.details["exc_type"] == "ZeroDivisionError"


def test_condition_without_evaluator_raises():
    with pytest.raises(TriggerEvaluationError):
        decide(_inputs(Trigger("condition", "flag"), previous=_prev()))


def test_change_trigger_compares_value_hash():
    value_hash = hash_value(3)
    prev = _prev(trigger_value=value_hash)
    same = decide(_inputs(Trigger("change", "version"), previous=prev, evaluate=lambda e: 3))
    assert not same.outdated
    assert same.trigger_value == value_hash

    changed = decide(_inputs(Trigger("change", "version"), previous=prev, evaluate=lambda e: 4))
    assert changed.outdated
    assert changed.trigger_value == hash_value(4)


def test_change_trigger_value_is_computed_on_first_build():
    decision = decide(_inputs(Trigger("change", "version"), evaluate=lambda e: "v1"))
    assert decision.reason == "never built"
    assert decision.trigger_value == hash_value("v1")


def test_always_and_never():
    prev = _prev()
    assert decide(_inputs(Trigger("always"), previous=prev)).outdated
    assert not decide(_inputs(Trigger("never"), previous=prev, fingerprint="changed")).outdated


def test_condition_is_evaluated_on_first_build():
    calls = []

    def evaluate(expression):
        calls.append(expression)
        return False

    decision = decide(_inputs(Trigger("condition", "flag"), evaluate=evaluate))
    assert decision.outdated
    assert decision.reason == "never built"
    assert calls == ["flag"]


def test_broken_condition_fails_first_build():
    def boom(expression):
        raise NameError("flag")

    with pytest.raises(TriggerEvaluationError):
        decide(_inputs(Trigger("condition", "flag"), evaluate=boom))
