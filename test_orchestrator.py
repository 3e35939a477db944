"""
Growth cycle tests: step modes, equilibrium, skipping and continuous mode.
"""

import asyncio
from dataclasses import asdict

import numpy as np
import pytest

import orchestrator
from cells import cube_lattice
from config import GrowthConfig
from orchestrator import (GrowthOrchestrator, GrowthStats, Analysis, IDLE, EQUILIBRIUM,
                          STEP_BUDGET_EXHAUSTED, SKIPPED)


def _config(**changes):
    """Linear signals of ±(score - 10) so scores map to rates directly."""
    base = dict(threshold=10.0, mode="grow-both", growth_power=1.0, normalize=False,
                base_growth_rate=1.0, force_strength=1.0, log_every=0)
    base.update(changes)
    return GrowthConfig(**base)


def _strong(**changes):
    """Forces large enough that one sub-step never settles."""
    return _config(force_strength=100.0, max_force=100.0, **changes)


@pytest.fixture
def pair():
    """Two face-adjacent unit cubes, centers one unit apart along x."""
    return cube_lattice(2, 1, 1)


def _gap(points):
    return float(np.linalg.norm(points[1] - points[0]))


# ==============================================================================
# Synchronous cycles
# ==============================================================================

def test_opposite_growth_reaches_equilibrium(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    updated = orch.apply_growth(points, cells, [11.0, 9.0], step_mode="auto")

    stats = orch.get_stats()
    assert stats["equilibrium_reached"]
    assert stats["physics_steps"] < 100
    assert stats["outcome"] == EQUILIBRIUM
    assert (stats["active_points"], stats["growing_points"], stats["shrinking_points"]) == (2, 1, 1)
    np.testing.assert_allclose(updated, points)
    assert orch.state == IDLE


def test_lone_grower_pushes_neighbor_away(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    updated = orch.step_auto(points, cells, [11.0, 10.0])
    assert _gap(updated) > _gap(points)
    assert orch.get_stats()["active_points"] == 1


def test_lone_shrinker_pulls_neighbor_in(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    updated = orch.step_auto(points, cells, [9.0, 10.0])
    assert _gap(updated) < _gap(points)


def test_input_points_not_modified(pair):
    points, cells = pair
    before = points.copy()
    orch = GrowthOrchestrator(_strong())
    updated = orch.step_manual(points, cells, [11.0, 10.0])
    np.testing.assert_array_equal(points, before)
    assert updated is not points


def test_inactive_cells_leave_points_unchanged(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    updated = orch.step_auto(points, cells, [10.0, 10.0])
    np.testing.assert_array_equal(updated, points)
    stats = orch.get_stats()
    assert stats["max_displacement"] == 0.0
    assert stats["physics_steps"] == 1
    assert stats["equilibrium_reached"]


def test_manual_runs_exactly_one_substep(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_strong())
    orch.step_manual(points, cells, [11.0, 10.0])
    stats = orch.get_stats()
    assert stats["physics_steps"] == 1
    assert not stats["equilibrium_reached"]
    assert stats["outcome"] == STEP_BUDGET_EXHAUSTED


def test_auto_stops_at_step_budget(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_strong(max_physics_steps=3))
    orch.step_auto(points, cells, [11.0, 10.0])
    stats = orch.get_stats()
    assert stats["physics_steps"] == 3
    assert not stats["equilibrium_reached"]
    assert stats["total_displacement"] >= stats["max_displacement"] > 0.0
    assert stats["average_displacement"] == pytest.approx(stats["total_displacement"])


def test_equilibrium_mode_converges(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config(step_mode="equilibrium"))
    orch.apply_growth(points, cells, [12.0, 10.0])
    assert orch.get_stats()["equilibrium_reached"]


def test_config_step_mode_is_default(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_strong(step_mode="manual"))
    orch.apply_growth(points, cells, [11.0, 10.0])
    assert orch.get_stats()["physics_steps"] == 1


def test_short_scores_are_zero_padded(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    orch.step_auto(points, cells, [11.0])
    stats = orch.get_stats()
    assert stats["growing_points"] == 1
    assert stats["shrinking_points"] == 1


@pytest.mark.parametrize("scores", [None, "11,10", {"0": 11.0}, [[1.0, 2.0], [3.0, 4.0]],
                                    ["high", "low"]])
def test_unusable_scores_skip_cycle(pair, scores, capsys):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    updated = orch.step_auto(points, cells, scores)
    np.testing.assert_array_equal(updated, points)
    assert orch.get_stats()["outcome"] == SKIPPED
    assert orch.cycle == 0
    assert "[Growth][WARN]" in capsys.readouterr().out


def test_misaligned_cells_raise(pair):
    points, _ = pair
    _, three = cube_lattice(3, 1, 1)
    orch = GrowthOrchestrator(_config())
    with pytest.raises(ValueError):
        orch.step_auto(points, three, [11.0, 10.0])
    assert orch.state == IDLE


def test_invalid_step_modes(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    with pytest.raises(ValueError):
        orch.apply_growth(points, cells, [11.0, 10.0], step_mode="continuous")
    with pytest.raises(ValueError):
        orch.apply_growth(points, cells, [11.0, 10.0], step_mode="warp")


def test_static_cells_built_once_per_cycle(pair, monkeypatch):
    points, cells = pair
    calls = []
    real = orchestrator.build_neighbor_graph

    def counting(*args, **kwargs):
        calls.append(1)
        return real(*args, **kwargs)

    monkeypatch.setattr(orchestrator, "build_neighbor_graph", counting)
    orch = GrowthOrchestrator(_strong(max_physics_steps=4))
    orch.step_auto(points, cells, [11.0, 10.0])
    assert len(calls) == 1
    orch.step_auto(points, cells, [11.0, 10.0])
    assert len(calls) == 2


def test_tessellation_rerun_every_substep(pair):
    points, cells = pair
    seen = []

    def tessellate(current):
        seen.append(current.copy())
        return cells

    orch = GrowthOrchestrator(_strong(max_physics_steps=4))
    orch.step_auto(points, tessellate, [11.0, 10.0])
    assert len(seen) == 4
    np.testing.assert_array_equal(seen[0], points)
    assert _gap(seen[-1]) > _gap(seen[0])


def test_update_config_validates():
    orch = GrowthOrchestrator(_config())
    orch.update_config(threshold=3.0, max_physics_steps=5)
    assert orch.config.threshold == 3.0
    assert orch.config.max_physics_steps == 5
    with pytest.raises(ValueError):
        orch.update_config(mode="inflate")
    assert orch.config.mode == "grow-both"


def test_reset_clears_state(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    orch.step_auto(points, cells, [11.0, 10.0])
    assert orch.cycle == 1
    orch.reset()
    assert orch.get_stats() == asdict(GrowthStats())
    assert orch.cycle == 0
    assert orch.graph is None
    assert not orch.physics.growth_rates().any()


# ==============================================================================
# Continuous mode
# ==============================================================================

def test_continuous_batches(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config(physics_steps_per_analysis=3))
    substeps_at_analysis = []
    updates = []

    def analyse(current):
        substeps_at_analysis.append(orch.substep_count)
        return [11.0, 10.0]

    def on_update(current, stats):
        updates.append((current, stats))
        if len(updates) == 3:
            orch.stop()

    async def main():
        task = orch.start(points, analyse, cells=cells, on_update=on_update)
        assert orch.is_running
        await task

    asyncio.run(main())

    assert substeps_at_analysis == [0, 3, 6]
    assert [s["physics_steps"] for _, s in updates] == [3, 3, 3]
    assert _gap(updates[-1][0]) > _gap(updates[0][0]) > _gap(points)
    assert not orch.is_running
    assert orch.substep_count == 0
    assert orch.cached_signals is None
    assert orch.state == IDLE


def test_continuous_async_callback_with_analysis(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config(physics_steps_per_analysis=2))
    updates = []

    async def analyse(current):
        await asyncio.sleep(0)
        return Analysis(scores=[9.0, 10.0], cells=cells)

    def on_update(current, stats):
        updates.append(current)
        orch.stop()

    async def main():
        await orch.start(lambda: points, analyse, on_update=on_update)

    asyncio.run(main())
    assert len(updates) == 1
    assert _gap(updates[0]) < _gap(points)


def test_continuous_mapping_result(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config(physics_steps_per_analysis=1))
    updates = []

    def on_update(current, stats):
        updates.append(stats)
        orch.stop()

    async def main():
        await orch.start(points, lambda current: {"cellScores": [11.0, 9.0], "cells": cells},
                         on_update=on_update)

    asyncio.run(main())
    assert updates[0]["active_points"] == 2


def test_stop_while_analysis_pending(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())

    async def main():
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def analyse(current):
            entered.set()
            await gate.wait()
            return [11.0, 10.0]

        task = orch.start(points, analyse, cells=cells)
        await entered.wait()
        orch.stop()
        gate.set()
        await asyncio.gather(task, return_exceptions=True)
        return task

    task = asyncio.run(main())
    assert task.cancelled()
    assert orch.cycle == 0
    assert orch.substep_count == 0
    assert not orch.is_running


def test_stop_between_substeps(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config(physics_steps_per_analysis=50))

    async def main():
        task = orch.start(points, lambda current: [11.0, 10.0], cells=cells)
        for _ in range(10000):
            if orch.substep_count >= 2 or task.done():
                break
            await asyncio.sleep(0)
        assert orch.substep_count >= 2
        orch.stop()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(main())
    assert orch.substep_count == 0
    assert orch.get_stats()["physics_steps"] == 0
    assert not orch.is_running


def test_stop_is_idempotent(capsys):
    orch = GrowthOrchestrator(_config())
    orch.stop()
    orch.stop()
    assert not orch.is_running
    assert "[Continuous] Stopped" not in capsys.readouterr().out


def test_start_while_running_returns_same_task(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())

    async def main():
        async def analyse(current):
            await asyncio.sleep(0.01)
            return [11.0, 10.0]

        first = orch.start(points, analyse, cells=cells)
        second = orch.start(points, analyse, cells=cells)
        assert second is first
        orch.stop()
        orch.stop()
        await asyncio.gather(first, return_exceptions=True)

    asyncio.run(main())
    assert not orch.is_running


def test_callback_error_stops_loop(pair, capsys):
    points, cells = pair
    orch = GrowthOrchestrator(_config())

    def analyse(current):
        raise RuntimeError("analysis backend unavailable")

    async def main():
        task = orch.start(points, analyse, cells=cells)
        await task
        return task

    task = asyncio.run(main())
    assert not task.cancelled()
    assert isinstance(orch.last_error, RuntimeError)
    assert not orch.is_running
    out = capsys.readouterr().out
    assert "[Continuous][ERROR]" in out
    assert "[Continuous] Stopped" in out


def test_continuous_retries_after_missing_scores(pair, monkeypatch, capsys):
    monkeypatch.setattr(orchestrator, "CONTINUOUS_RETRY_DELAY", 0.0)
    points, cells = pair
    orch = GrowthOrchestrator(_config(physics_steps_per_analysis=1))
    results = iter([None, [11.0, 10.0]])
    updates = []

    def on_update(current, stats):
        updates.append(stats)
        orch.stop()

    async def main():
        await orch.start(points, lambda current: next(results), cells=cells,
                         on_update=on_update)

    asyncio.run(main())
    assert len(updates) == 1
    assert orch.cycle == 1
    assert "[Growth][WARN]" in capsys.readouterr().out


def test_cycle_summary_logging(pair, capsys):
    points, cells = pair
    orch = GrowthOrchestrator(_config(log_every=1))
    orch.step_auto(points, cells, [11.0, 10.0])
    out = capsys.readouterr().out
    assert "[Growth] Cycle 1:" in out
    assert "[Topology] edges=1" in out
    assert "[Topology][WARN]" not in out


def test_extra_scores_do_not_count_as_cells(pair):
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    orch.step_auto(points, cells, [11.0] * 5)
    stats = orch.get_stats()
    assert stats["active_points"] == 2
    assert stats["growing_points"] == 2
    assert len(orch.physics.growth_rates()) == 2


def test_failed_cycle_keeps_cycle_counter(pair):
    points, cells = pair
    _, three = cube_lattice(3, 1, 1)
    orch = GrowthOrchestrator(_config())
    orch.step_auto(points, cells, [11.0, 10.0])
    with pytest.raises(ValueError):
        orch.step_auto(points, three, [11.0, 10.0])
    assert orch.cycle == 1
    assert orch.get_stats()["cycle"] == 1


def test_synchronous_cycle_refused_while_continuous(pair):
    points, cells = pair
    other_points, other_cells = cube_lattice(3, 1, 1)
    orch = GrowthOrchestrator(_config())

    async def main():
        task = orch.start(points, lambda current: [11.0, 10.0], cells=cells)
        for _ in range(10000):
            if orch.substep_count >= 2 or task.done():
                break
            await asyncio.sleep(0)
        assert orch.substep_count >= 2

        with pytest.raises(RuntimeError):
            orch.step_manual(other_points, other_cells, [11.0, 10.0, 9.0])
        assert orch.is_running
        assert orch.physics.n == 2
        assert orch.cycle == 0

        # Still stepping the original cloud
        before = orch.substep_count
        for _ in range(10000):
            if orch.substep_count > before or task.done():
                break
            await asyncio.sleep(0)
        assert orch.substep_count > before
        assert orch.physics.n == 2

        orch.stop()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(main())
    assert orch.last_error is None
    assert not orch.is_running

    # Allowed again once stopped
    orch.step_manual(other_points, other_cells, [11.0, 10.0, 9.0])
    assert orch.physics.n == 3


def test_idle_while_waiting_to_retry(pair, monkeypatch):
    monkeypatch.setattr(orchestrator, "CONTINUOUS_RETRY_DELAY", 0.05)
    points, cells = pair
    orch = GrowthOrchestrator(_config())
    calls = []

    def analyse(current):
        calls.append(1)
        return None

    async def main():
        task = orch.start(points, analyse, cells=cells)
        for _ in range(10000):
            if calls or task.done():
                break
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert orch.get_stats()["outcome"] == SKIPPED
        assert orch.state == IDLE
        assert orch.is_running
        orch.stop()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(main())
    assert len(calls) == 1
