# tests/e2e/test_build_properties.py
"""
Propriedades de ponta a ponta do build incremental.

Cenários:
    - terminação: todo item termina em estado terminal
    - rebuild "quente" sem mudanças não executa nada
    - mudança de comando reconstrói só o target e os dependentes cujo
      valor de entrada mudou
    - ciclo A → B → C → A é rejeitado antes de qualquer execução
    - max_expand limita os branches de forma determinística
    - keep_going isola a falha no seu fecho downstream
    - trigger de arquivo reconstrói quando o conteúdo ou o mtime muda,
      e só então
"""

import os

import pytest

from targetflow import CycleError, Plan, Target, build, outdated, read_target
from targetflow.core.config.options import BuildOptions, ErrorPolicy, ScheduleMode
from targetflow.core.engine import ScheduleState


def _diamond(cmd_a="1", cmd_d="b + c"):
    return Plan(
        [
            Target("a", cmd_a),
            Target("b", "a + 1"),
            Target("c", "a * 2"),
            Target("d", cmd_d),
            Target("e", "5"),
        ]
    )


@pytest.mark.parametrize("mode", [ScheduleMode.SEQUENTIAL, ScheduleMode.PARALLEL])
def test_every_item_terminates(store, mode):
    plan = Plan(
        [Target("a", "1"), Target("bad", "a / 0"), Target("b", "bad + 1"), Target("c", "a + 1"), Target("d", "c + 1")]
    )
    options = BuildOptions(mode=mode, workers=3, error_policy=ErrorPolicy.KEEP_GOING)
    report = build(plan, options, store=store)
    assert set(report.items) == {"a", "bad", "b", "c", "d"}
    assert all(item.terminal for item in report.items.values())


def test_warm_rebuild_is_a_no_op(store):
    plan = _diamond()
    first = build(plan, store=store)
    assert sorted(first.built) == ["a", "b", "c", "d", "e"]

    second = build(plan, store=store)
    assert second.built == []
    assert sorted(second.up_to_date) == ["a", "b", "c", "d", "e"]
    assert outdated(plan, store) == set()


def test_command_change_rebuilds_only_affected(store):
    build(_diamond(), store=store)
    report = build(_diamond(cmd_d="b * c"), store=store)
    assert report.built == ["d"]

    report = build(_diamond(cmd_a="10", cmd_d="b * c"), store=store)
    assert sorted(report.built) == ["a", "b", "c", "d"]
    assert "e" in report.up_to_date
    assert read_target("d", store) == 11 * 20


def test_cycle_is_rejected_before_running(store):
    plan = Plan([Target("A", "C + 1"), Target("B", "A + 1"), Target("C", "B + 1")])
    with pytest.raises(CycleError) as exc:
        build(plan, store=store)
    assert set(exc.value.cycle) == {"A", "B", "C"}
    assert not store.values_dir.exists()
    assert store.read_history_records() == []


def test_max_expand_is_deterministic(store, tmp_path):
    plan = [
        Target("xs", "list(range(10))"),
        Target("ys", "xs * xs", dynamic={"pattern": "map", "over": ["xs"]}),
    ]
    options = BuildOptions(max_expand=3)
    first = build(plan, options, store=store)
    branches = [n for n, item in first.items.items() if item.parent == "ys"]
    assert len(branches) == 3
    assert read_target("ys", store) == [0, 1, 4]

    other = build(plan, options, store=tmp_path / "other_store")
    assert [n for n, item in other.items.items() if item.parent == "ys"] == branches


def test_keep_going_isolates_failure(store):
    plan = Plan([Target("X", "1 / 0"), Target("Y", "X + 1"), Target("Z", "40 + 2")])
    report = build(plan, BuildOptions(error_policy=ErrorPolicy.KEEP_GOING), store=store)
    assert report.state("X") == ScheduleState.FAILED
    assert report.state("Y") == ScheduleState.SKIPPED
    assert report.state("Z") == ScheduleState.BUILT
    assert read_target("Z", store) == 42


def test_file_trigger_follows_content_and_mtime(store, tmp_path):
    path = tmp_path / "input.csv"
    path.write_text("a,b\n1,2\n", encoding="utf-8")
    plan = [Target("t", f"file_in({str(path)!r})", trigger="file")]
    build(plan, store=store)
    assert build(plan, store=store).built == []

    path.write_text("a,b\n1,3\n", encoding="utf-8")
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))
    assert build(plan, store=store).built == ["t"]
    assert build(plan, store=store).built == []

    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))
    assert build(plan, store=store).built == ["t"]
