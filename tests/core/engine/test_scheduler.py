# tests/core/engine/test_scheduler.py
"""
Testes do Scheduler (máquina de estados, retries e políticas de erro).

Este módulo valida, através de `build`:

- transições blocked → ready → in_progress → built | failed | skipped
- retry por classe de falha (user, timeout, infrastructure)
- fail_fast: nenhum item novo é despachado após a primeira falha
- keep_going: apenas sucessores da falha são pulados
- modo paralelo com pool de workers
- prioridade como desempate na fila de prontos
- CacheError como falha fatal

Decisões arquiteturais:
    - Falhas transitórias são simuladas por funções do ambiente com
      contador próprio (um por teste)
    - A ordem de despacho é lida dos eventos estruturados ("building")

Invariantes:
    - Todo item termina em estado terminal
    - Nenhum item executa antes das dependências diretas
"""

import threading
import time
from pathlib import Path

import pytest

from targetflow.core.cache.formats import register_format
from targetflow.core.config.options import BuildOptions, ErrorPolicy, ScheduleMode
from targetflow.core.engine import ScheduleState, build
from targetflow.core.exceptions import CacheError
from targetflow.core.plan.types import Target


def _make_flaky(failures):
    """Função que falha `failures` vezes antes de devolver o número de chamadas."""
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) <= failures:
            raise RuntimeError("transient")
        return len(calls)

    return flaky, calls


def _dispatch_order(report):
    return [e["target"] for e in report.events if e["message"] == "building"]


# =====================================================
# Estados básicos
# =====================================================

def test_all_items_reach_terminal_state(store, make_plan):
    plan = make_plan(("a", "1"), ("b", "a + 1"), ("c", "a + b"))
    report = build(plan, store=store)
    assert report.ok
    assert report.built == ["a", "b", "c"]
    assert all(item.terminal for item in report.items.values())
    assert report.state("c") == ScheduleState.BUILT


def test_dependencies_run_first(store, make_plan):
    plan = make_plan(("report", "model + stats"), ("stats", "raw * 2"), ("model", "raw + 1"), ("raw", "10"))
    report = build(plan, store=store)
    order = _dispatch_order(report)
    assert order.index("raw") < order.index("stats") < order.index("report")
    assert order.index("model") < order.index("report")


# =====================================================
# Retries
# =====================================================

def test_user_failure_is_retried_up_to_budget(store):
    flaky, calls = _make_flaky(1)
    report = build([Target("a", "flaky()", retries=1)], envir={"flaky": flaky}, store=store)
    assert report.state("a") == ScheduleState.BUILT
    assert report.items["a"].attempts == 2
    assert len(calls) == 2
    assert any(e["message"] == "retrying" for e in report.events)


def test_user_failure_without_retries_fails(store):
    flaky, calls = _make_flaky(1)
    report = build([Target("a", "flaky()")], envir={"flaky": flaky}, store=store)
    assert report.failed == ["a"]
    assert report.items["a"].attempts == 1
    assert report.errors["a"]["type"] == "BUILD_ERROR"
    assert report.errors["a"]["details"]["exc_type"] == "RuntimeError"


def test_exhausted_retries_fail(store):
    flaky, calls = _make_flaky(5)
    report = build([Target("a", "flaky()", retries=2)], envir={"flaky": flaky}, store=store)
    assert report.failed == ["a"]
    assert report.items["a"].attempts == 3
    assert len(calls) == 3


def test_infrastructure_failures_get_extra_retries(store):
    options = BuildOptions(infrastructure_retries=2)
    report = build([Target("gen", "(i for i in range(3))")], options, store=store)
    assert report.failed == ["gen"]
    assert report.errors["gen"]["type"] == "WORKER_ERROR"
    assert report.items["gen"].attempts == 3


def test_timeout_failure(store):
    report = build([Target("slow", "time.sleep(2)", elapsed=0.1)], envir={"time": time}, store=store)
    assert report.failed == ["slow"]
    assert report.errors["slow"]["type"] == "TIMEOUT_ERROR"


def test_trigger_evaluation_error_is_not_retried(store):
    calls = []

    def check():
        calls.append(1)
        if len(calls) > 1:
            raise RuntimeError("broken condition")
        return False

    target = Target("a", "1", retries=3, trigger={"kind": "condition", "expression": "check()"})
    first = build([target], envir={"check": check}, store=store)
    assert first.built == ["a"]

    report = build([target], envir={"check": check}, store=store)
    assert report.failed == ["a"]
    assert report.items["a"].attempts == 1
    assert report.errors["a"]["type"] == "TRIGGER_EVALUATION_ERROR"


# =====================================================
# Políticas de erro
# =====================================================

def test_fail_fast_skips_everything_pending(store, make_plan):
    plan = make_plan(("a", "1 / 0"), ("b", "2"), ("c", "a + 1"))
    report = build(plan, store=store)
    assert report.failed == ["a"]
    assert sorted(report.skipped) == ["b", "c"]
    assert report.errors["b"]["type"] == "RUN_CANCELLED"
    assert report.errors["b"]["details"]["cause"] == "a failed"
    assert not report.ok


def test_keep_going_skips_only_downstream(store, make_plan, keep_going_options):
    plan = make_plan(("x", "1 / 0"), ("y", "x + 1"), ("w", "y + 1"), ("z", "3"))
    report = build(plan, keep_going_options, store=store)
    assert report.failed == ["x"]
    assert sorted(report.skipped) == ["w", "y"]
    assert report.built == ["z"]
    assert report.errors["y"]["type"] == "UPSTREAM_FAILED"
    assert report.errors["y"]["details"]["failed_upstream"] == ["x"]


def test_failed_target_is_rebuilt_next_run(store, make_plan, keep_going_options):
    flaky, calls = _make_flaky(1)
    plan = make_plan(("a", "flaky()"))
    first = build(plan, keep_going_options, envir={"flaky": flaky}, store=store)
    assert first.failed == ["a"]
    second = build(plan, keep_going_options, envir={"flaky": flaky}, store=store)
    assert second.built == ["a"]


# =====================================================
# Paralelo / prioridade
# =====================================================

def test_parallel_build_runs_concurrently(store):
    barrier = threading.Barrier(3, timeout=5)

    def meet(value):
        barrier.wait()
        return value

    plan = [Target(n, f"meet({i})") for i, n in enumerate(["a", "b", "c"])] + [Target("total", "a + b + c")]
    options = BuildOptions(mode=ScheduleMode.PARALLEL, workers=3)
    report = build(plan, options, envir={"meet": meet}, store=store)
    assert report.ok
    assert set(report.built) == {"a", "b", "c", "total"}


def test_parallel_keep_going(store):
    plan = [Target("bad", "1 / 0"), Target("after", "bad"), Target("good", "1"), Target("good2", "good + 1")]
    options = BuildOptions(mode=ScheduleMode.PARALLEL, workers=2, error_policy=ErrorPolicy.KEEP_GOING)
    report = build(plan, options, store=store)
    assert report.failed == ["bad"]
    assert report.skipped == ["after"]
    assert sorted(report.built) == ["good", "good2"]


def test_priority_breaks_ties(store):
    plan = [Target("low", "1"), Target("high", "2", priority=5), Target("mid", "3", priority=1)]
    report = build(plan, store=store)
    assert _dispatch_order(report) == ["high", "mid", "low"]


def test_declaration_order_without_priority(store, make_plan):
    report = build(make_plan(("c", "1"), ("a", "2"), ("b", "3")), store=store)
    assert _dispatch_order(report) == ["c", "a", "b"]


# =====================================================
# CacheError fatal
# =====================================================

class _BrokenDiskFormat:
    name = "test_broken_disk"
    extension = ".bin"

    def write(self, value, destination):
        raise OSError("No space left on device")

    def read(self, ref):
        return Path(ref).read_bytes()

    def exists(self, ref):
        return Path(ref).is_file()

    def value_hash(self, value):
        return repr(value)


def test_cache_write_error_is_fatal(store):
    register_format(_BrokenDiskFormat(), replace=True)
    plan = [Target("a", "1", format="test_broken_disk"), Target("b", "2"), Target("c", "a")]
    with pytest.raises(CacheError):
        build(plan, store=store, config={"engine": {"error_policy": "keep_going"}})
    events = [r["event_type"] for r in store.read_history_records()]
    assert events[0] == "run_started"
    assert events[-1] == "run_finished"
    assert "target_started" in events
    assert "target_built" not in events
    assert store.read_metadata("a") is None
