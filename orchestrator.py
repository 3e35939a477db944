"""
Growth orchestrator for Fabric of Space - Physics Growth.

One growth cycle:
  a. Stop all motion (reset velocities/forces)
  b. Score → growth signal (growth.py)
  c. Load signals into the physics state
  d. Repeat: rebuild neighbor graph → accumulate forces → integrate,
     until the largest sub-step displacement drops below
     equilibrium_precision or the sub-step budget runs out

State machine:
  idle → analyzing → stepping → (equilibrium | step_budget_exhausted) → idle

Step modes:
  manual       one sub-step per call, converged or not
  auto         converge-or-exhaust once per call
  equilibrium  same loop as auto (caller wants a settled result)
  continuous   background asyncio task; re-analysis every
               physics_steps_per_analysis sub-steps via an awaited callback

Cells are given either as a polygon sequence (fixed for the cycle) or as a
tessellate(points) -> cells callable that is re-run after every sub-step.
"""

import asyncio
import inspect
from collections.abc import Mapping
from dataclasses import dataclass, asdict

import numpy as np

from config import GrowthConfig, STEP_MODES, CONTINUOUS_RETRY_DELAY
from dynamics import PhysicsState
from growth import compute_growth_signals
from topology import build_neighbor_graph

# ==============================================================================
# States
# ==============================================================================

IDLE = "idle"
ANALYZING = "analyzing"
STEPPING = "stepping"
EQUILIBRIUM = "equilibrium"
STEP_BUDGET_EXHAUSTED = "step_budget_exhausted"
SKIPPED = "skipped"


@dataclass
class GrowthStats:
    active_points: int = 0
    growing_points: int = 0
    shrinking_points: int = 0
    max_displacement: float = 0.0
    total_displacement: float = 0.0     # sum of per-sub-step max displacement
    physics_steps: int = 0
    equilibrium_reached: bool = False
    average_displacement: float = 0.0   # total_displacement / active_points
    average_force: float = 0.0          # mean non-zero |F| of the last sub-step
    outcome: str = IDLE
    cycle: int = 0


@dataclass
class Analysis:
    """What a continuous-mode callback hands back: fresh scores, optionally fresh cells."""
    scores: object = None
    cells: object = None


@dataclass
class _Resolution:
    steps: int = 0
    max_displacement: float = 0.0
    total_displacement: float = 0.0
    equilibrium: bool = False
    average_force: float = 0.0


class CancellationToken:
    """One per continuous run; once cancelled the run never does more work."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self):
        return self._cancelled

    def cancel(self):
        self._cancelled = True


def _as_points(points):
    pts = np.array(points, dtype=np.float64)
    if pts.size == 0:
        return pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"points must have shape (n, 3), got {pts.shape}")
    return pts


def _usable_scores(scores):
    """
    Check that scores can drive a cycle.

    Returns:
        None if usable, otherwise a short reason for the warning
    """
    if scores is None:
        return "no scores available"
    if isinstance(scores, (str, bytes, Mapping)):
        return f"scores must be a sequence of numbers, got {type(scores).__name__}"
    try:
        arr = np.array([np.nan if v is None else v for v in scores], dtype=np.float64)
    except (TypeError, ValueError) as exc:
        return f"malformed scores ({exc})"
    if arr.ndim != 1:
        return f"scores must be one-dimensional, got shape {arr.shape}"
    return None


def _current_task():
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class GrowthOrchestrator:
    """
    Drives growth cycles over an externally tessellated point cloud.

    Owns the physics state, the latest neighbor graph and the statistics of
    the last cycle. Only one cycle runs at a time.
    """

    def __init__(self, config=None, physics=None):
        self.config = config if config is not None else GrowthConfig()
        self.physics = physics if physics is not None else PhysicsState()
        self.state = IDLE
        self.stats = GrowthStats()
        self.graph = None
        self.cycle = 0

        # Continuous mode
        self._task = None
        self._token = None
        self.substep_count = 0
        self.cached_signals = None
        self.continuous_points = None
        self.last_error = None

        # Neighbor graph cache for a fixed polygon sequence (one cycle only)
        self._graph_source = None

    # ==========================================================================
    # Configuration
    # ==========================================================================

    def update_config(self, **changes):
        """Swap in a validated copy of the config; applies from the next cycle."""
        self.config = self.config.replace(**changes)
        return self.config

    def reset(self):
        """Drop motion, growth rates, graph and statistics."""
        self.physics.reset()
        self.physics.clear_growth_rates()
        self.graph = None
        self._graph_source = None
        self.stats = GrowthStats()
        self.cycle = 0
        self.state = IDLE

    def get_stats(self):
        return asdict(self.stats)

    # ==========================================================================
    # Cycle primitives
    # ==========================================================================

    def _begin_cycle(self, points, scores, config):
        """Stop motion, compute growth signals and load them."""
        self.state = ANALYZING
        self._graph_source = None
        self.physics.load_points(points)
        self.physics.reset()
        signals = compute_growth_signals(scores, config, n_cells=len(points))
        self.physics.clear_growth_rates()
        self.physics.load_growth_rates(signals)
        return signals

    def _neighbor_graph(self, cells, config):
        """Neighbor graph for the current positions."""
        if callable(cells):
            polygons = cells(self.physics.read_points())
        else:
            polygons = cells
            if self._graph_source is polygons and self.graph is not None:
                # Same polygons as the previous sub-step of this cycle
                return self.graph
        if polygons is None:
            raise ValueError("no cells available for neighbor detection")
        if len(polygons) != self.physics.n:
            raise ValueError(
                f"cells and points are not index-aligned ({len(polygons)} cells, "
                f"{self.physics.n} points)")
        graph = build_neighbor_graph(polygons, config.vertex_precision,
                                     config.min_shared_vertices)
        self._graph_source = None if callable(cells) else polygons
        return graph

    def _substep(self, cells, config):
        self.graph = self._neighbor_graph(cells, config)
        self.physics.load_neighbors(self.graph)
        return self.physics.step(config)

    def _resolve(self, cells, config, max_steps):
        """Sub-step until equilibrium or max_steps."""
        self.state = STEPPING
        res = _Resolution()
        while res.steps < max_steps and not res.equilibrium:
            step = self._substep(cells, config)
            res.steps += 1
            res.max_displacement = max(res.max_displacement, step.max_displacement)
            res.total_displacement += step.max_displacement
            res.average_force = step.average_force
            if step.max_displacement < config.equilibrium_precision:
                res.equilibrium = True
        return res

    def _record(self, signals, res):
        outcome = EQUILIBRIUM if res.equilibrium else STEP_BUDGET_EXHAUSTED
        self.stats = GrowthStats(
            active_points=signals.active,
            growing_points=signals.growing,
            shrinking_points=signals.shrinking,
            max_displacement=res.max_displacement,
            total_displacement=res.total_displacement,
            physics_steps=res.steps,
            equilibrium_reached=res.equilibrium,
            average_displacement=(res.total_displacement / signals.active
                                  if signals.active > 0 else 0.0),
            average_force=res.average_force,
            outcome=outcome,
            cycle=self.cycle,
        )
        self.state = outcome

    def _skip(self, reason):
        print(f"[Growth][WARN] Cycle skipped: {reason}; points unchanged")
        self.stats = GrowthStats(outcome=SKIPPED, cycle=self.cycle)

    def _log_cycle(self, config):
        if config.log_every <= 0 or self.cycle % config.log_every != 0:
            return
        s = self.stats
        status = "equilibrium" if s.equilibrium_reached else "budget exhausted"
        print(f"[Growth] Cycle {s.cycle}: active={s.active_points} "
              f"(+{s.growing_points}/-{s.shrinking_points}) steps={s.physics_steps} "
              f"max_disp={s.max_displacement:.6f} avg_F={s.average_force:.4f} → {status}")
        if self.graph is not None:
            info = self.graph.summary()
            print(f"[Topology] edges={info['edges']} mean_degree={info['mean_degree']:.2f} "
                  f"max_degree={info['max_degree']} isolated={info['isolated']}")
            asym = self.graph.check_symmetry()
            if asym:
                print(f"[Topology][WARN] {asym} one-sided neighbor entries")

    # ==========================================================================
    # Synchronous step modes
    # ==========================================================================

    def apply_growth(self, points, cells, scores, step_mode=None):
        """
        Run one growth cycle.

        Args:
            points: (n, 3) generator positions
            cells: n polygons, or a tessellate(points) -> cells callable
            scores: n per-cell scores (missing tail entries count as 0)
            step_mode: Override config.step_mode ("manual" | "auto" | "equilibrium")

        Returns:
            New (n, 3) float64 array of positions. When no usable scores are
            given the cycle is skipped and a copy of the input is returned.

        Raises:
            RuntimeError: continuous mode is running on this orchestrator
        """
        config = self.config
        mode = step_mode if step_mode is not None else config.step_mode
        if mode not in STEP_MODES:
            raise ValueError(f"unknown step mode {mode!r} (expected one of {STEP_MODES})")
        if mode == "continuous":
            raise ValueError("continuous mode runs in the background: use start()/stop()")
        if self.is_running:
            raise RuntimeError("continuous mode is running; stop() it before a synchronous cycle")

        pts = _as_points(points)
        reason = _usable_scores(scores)
        if reason is not None:
            self._skip(reason)
            return pts

        try:
            signals = self._begin_cycle(pts, scores, config)
            max_steps = 1 if mode == "manual" else config.max_physics_steps
            res = self._resolve(cells, config, max_steps)
            updated = self.physics.read_points()
            self.cycle += 1
            self._record(signals, res)
        finally:
            self.state = IDLE
        self._log_cycle(config)
        return updated

    def step_manual(self, points, cells, scores):
        return self.apply_growth(points, cells, scores, step_mode="manual")

    def step_auto(self, points, cells, scores):
        return self.apply_growth(points, cells, scores, step_mode="auto")

    def step_equilibrium(self, points, cells, scores):
        return self.apply_growth(points, cells, scores, step_mode="equilibrium")

    # ==========================================================================
    # Continuous mode
    # ==========================================================================

    @property
    def is_running(self):
        return (self._token is not None and not self._token.cancelled
                and self._task is not None and not self._task.done())

    def start(self, point_source, callback, cells=None, on_update=None):
        """
        Start continuous growth as a task on the running event loop.

        Args:
            point_source: (n, 3) initial positions, or a callable returning them
            callback: callback(points) -> scores | Analysis | {"scores", "cells"},
                sync or async; awaited before every batch of sub-steps
            cells: Polygons or tessellate(points) callable, used when the
                analysis does not bring its own cells
            on_update: Optional on_update(points, stats) after every batch

        Returns:
            The asyncio.Task running the loop (the existing one if already running)
        """
        if self.is_running:
            print("[Continuous] Already running")
            return self._task

        points = point_source() if callable(point_source) else point_source
        self.continuous_points = _as_points(points)
        self.substep_count = 0
        self.cached_signals = None
        self.last_error = None

        token = CancellationToken()
        loop = asyncio.get_running_loop()
        self._token = token
        self._task = loop.create_task(self._continuous_loop(token, callback, cells, on_update))
        print(f"[Continuous] Started ({self.config.physics_steps_per_analysis} sub-steps per analysis)")
        return self._task

    def stop(self):
        """
        Stop continuous growth. Idempotent; safe while idle.

        Cancels the token (no further batch or sub-step can start), cancels
        the pending task, and clears the sub-step counter and cached signals.
        """
        token, task = self._token, self._task
        self._token = None
        self._task = None
        was_running = token is not None and not token.cancelled

        if token is not None:
            token.cancel()
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

        self.substep_count = 0
        self.cached_signals = None
        self.physics.clear_growth_rates()
        self.state = IDLE
        if was_running:
            print("[Continuous] Stopped")

    def _fail(self, token, exc):
        print(f"[Continuous][ERROR] {type(exc).__name__}: {exc}; stopping continuous mode")
        self.last_error = exc
        if self._token is token:
            self.stop()
        else:
            token.cancel()

    @staticmethod
    def _unpack(analysis, default_cells):
        if isinstance(analysis, Analysis):
            scores, cells = analysis.scores, analysis.cells
        elif isinstance(analysis, Mapping):
            scores = analysis.get("scores", analysis.get("cellScores"))
            cells = analysis.get("cells")
        else:
            scores, cells = analysis, None
        return scores, (cells if cells is not None else default_cells)

    async def _continuous_loop(self, token, callback, cells, on_update):
        points = self.continuous_points
        while not token.cancelled:
            self.state = ANALYZING
            try:
                analysis = callback(points.copy())
                if inspect.isawaitable(analysis):
                    analysis = await analysis
            except Exception as exc:
                self._fail(token, exc)
                return
            if token.cancelled:
                return

            scores, batch_cells = self._unpack(analysis, cells)
            reason = _usable_scores(scores)
            if reason is not None:
                self._skip(reason)
                self.state = IDLE
                await asyncio.sleep(CONTINUOUS_RETRY_DELAY)
                continue

            config = self.config
            try:
                self.cached_signals = self._begin_cycle(points, scores, config)
                self.state = STEPPING
                res = _Resolution()
                for _ in range(config.physics_steps_per_analysis):
                    if token.cancelled:
                        return
                    step = self._substep(batch_cells, config)
                    self.substep_count += 1
                    res.steps += 1
                    res.max_displacement = max(res.max_displacement, step.max_displacement)
                    res.total_displacement += step.max_displacement
                    res.average_force = step.average_force
                    res.equilibrium = step.max_displacement < config.equilibrium_precision
                    # Yield so stop() can land between sub-steps
                    await asyncio.sleep(0)
                if token.cancelled:
                    return

                points = self.physics.read_points()
                self.continuous_points = points
                self.cycle += 1
                self._record(self.cached_signals, res)
                self._log_cycle(config)
                if on_update is not None:
                    on_update(points.copy(), self.get_stats())
            except Exception as exc:
                self._fail(token, exc)
                return
