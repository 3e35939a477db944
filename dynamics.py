"""
Dynamics kernels for Fabric of Space - Physics Growth.

This module provides:
1. Pair force (inverse-square push/pull driven by the source cell's growth rate)
2. Force accumulation over the CSR neighbor graph (Newton's third law)
3. Damped explicit integration with displacement/force telemetry
4. PhysicsState: owner of the per-cell Taichi fields (structure-of-arrays)

Ordering per sub-step: accumulate_forces fills the whole force field before
integrate touches any position. Both loops are serialized; there is no
parallelism inside a sub-step.

All fields are f64; Taichi is initialized with default_fp=ti.f64 so vector
literals inside kernels match.
"""

from dataclasses import dataclass

import numpy as np
import taichi as ti

from config import (
    TAICHI_ARCH, DEBUG_KERNELS, INITIAL_CAPACITY, GROWTH_FACTOR,
    FORCE_STRENGTH, MAX_FORCE, MIN_DISTANCE,
)

_taichi_ready = False


def init_taichi(arch=None):
    """Initialize Taichi once (CPU, f64 by default). Later calls are no-ops."""
    global _taichi_ready
    if _taichi_ready:
        return
    ti.init(arch=getattr(ti, arch or TAICHI_ARCH), default_fp=ti.f64, debug=DEBUG_KERNELS)
    _taichi_ready = True


# ==============================================================================
# Force field
# ==============================================================================

@ti.func
def growth_force(a, b, g, force_strength, max_force, min_distance):
    """
    Force exerted on the cell at b by a source cell at a with growth rate g.

    F = (g * k / d²) * (b - a) / d, with the magnitude clamped to ±max_force.
    Positive g pushes b away, negative g pulls it in. The source receives -F.
    Separations below min_distance give zero force (coincident guard).
    """
    d = b - a
    dist_sq = d.dot(d)
    f = ti.Vector([0.0, 0.0, 0.0], dt=ti.f64)
    if dist_sq > 0.0 and dist_sq >= min_distance * min_distance:
        mag = (g * force_strength) / dist_sq
        mag = ti.max(-max_force, ti.min(max_force, mag))
        f = d / ti.sqrt(dist_sq) * mag
    return f


@ti.kernel
def _pair_force_kernel(ax: ti.f64, ay: ti.f64, az: ti.f64,
                       bx: ti.f64, by: ti.f64, bz: ti.f64,
                       g: ti.f64, force_strength: ti.f64, max_force: ti.f64,
                       min_distance: ti.f64) -> (ti.f64, ti.f64, ti.f64):
    a = ti.Vector([ax, ay, az], dt=ti.f64)
    b = ti.Vector([bx, by, bz], dt=ti.f64)
    f = growth_force(a, b, g, force_strength, max_force, min_distance)
    return f[0], f[1], f[2]


def pair_force(a, b, g, force_strength=FORCE_STRENGTH, max_force=MAX_FORCE,
               min_distance=MIN_DISTANCE):
    """
    Python-scope evaluation of growth_force for one pair.

    Returns:
        numpy (3,) force on the neighbor at b; the source at a receives its negation
    """
    init_taichi()
    fx, fy, fz = _pair_force_kernel(float(a[0]), float(a[1]), float(a[2]),
                                    float(b[0]), float(b[1]), float(b[2]),
                                    float(g), float(force_strength), float(max_force),
                                    float(min_distance))
    return np.array([fx, fy, fz], dtype=np.float64)


# ==============================================================================
# Kernel 1: Force accumulation over the neighbor graph
# ==============================================================================

@ti.kernel
def accumulate_forces(pos: ti.template(), force: ti.template(), rate: ti.template(),
                      nbr_start: ti.template(), nbr_count: ti.template(),
                      nbr_indices: ti.template(), n: ti.i32,
                      force_strength: ti.f64, max_force: ti.f64, min_distance: ti.f64):
    """
    Zero and refill the force accumulator.

    Every active cell i (rate != 0) drives each neighbor j with its own rate:
      force[j] += F(i → j), force[i] -= F(i → j)
    When both ends are active each contributes independently; contributions
    are summed, not averaged.
    """
    for i in range(n):
        force[i] = ti.Vector([0.0, 0.0, 0.0], dt=ti.f64)

    ti.loop_config(serialize=True)
    for i in range(n):
        g = rate[i]
        if g != 0.0:
            start = nbr_start[i]
            for k in range(start, start + nbr_count[i]):
                j = nbr_indices[k]
                f = growth_force(pos[i], pos[j], g, force_strength, max_force, min_distance)
                force[j] += f
                force[i] -= f


# ==============================================================================
# Kernel 2: Damped integration
# ==============================================================================

@ti.kernel
def integrate(pos: ti.template(), vel: ti.template(), force: ti.template(),
              n: ti.i32, damping: ti.f64, dt: ti.f64) -> (ti.f64, ti.f64, ti.f64):
    """
    Advance one sub-step (unit mass).

      v ← (v + F·dt) · damping
      x ← x + v·dt

    Returns:
        (max |v·dt|, sum of non-zero |F|, count of non-zero |F|)
    """
    max_disp = 0.0
    force_sum = 0.0
    force_count = 0.0

    ti.loop_config(serialize=True)
    for i in range(n):
        v = (vel[i] + force[i] * dt) * damping
        vel[i] = v
        step = v * dt
        pos[i] += step
        max_disp = ti.max(max_disp, step.norm())

        f_mag = force[i].norm()
        if f_mag > 0.0:
            force_sum += f_mag
            force_count += 1.0

    return max_disp, force_sum, force_count


@ti.kernel
def clear_motion(vel: ti.template(), force: ti.template(), n: ti.i32):
    """Zero velocities and forces (start of a growth cycle)."""
    for i in range(n):
        vel[i] = ti.Vector([0.0, 0.0, 0.0], dt=ti.f64)
        force[i] = ti.Vector([0.0, 0.0, 0.0], dt=ti.f64)


# ==============================================================================
# Physics state (structure-of-arrays owner)
# ==============================================================================

@dataclass
class StepResult:
    max_displacement: float
    average_force: float


def _padded(arr, rows, dtype):
    """Zero-pad arr along axis 0 to `rows` rows (from_numpy needs exact shape)."""
    arr = np.asarray(arr, dtype=dtype)
    out = np.zeros((rows,) + arr.shape[1:], dtype=dtype)
    out[:len(arr)] = arr
    return out


class PhysicsState:
    """
    Per-cell positions, velocities, forces, growth rates and neighbor runs.

    Fields are allocated for `capacity` cells; only the first `n` are active.
    Writing past capacity grows every per-cell field (contents preserved).
    The uploaded neighbor graph is only valid for the positions it was built
    from: every integration step marks it stale, and step() refuses to run
    on a stale graph.
    """

    def __init__(self, capacity=INITIAL_CAPACITY):
        init_taichi()
        self.capacity = 0
        self.edge_capacity = 0
        self.n = 0
        self.active_count = 0
        self.graph_valid = False
        self._allocate(max(1, int(capacity)))
        self._allocate_edges(1)

    # --------------------------------------------------------------------------
    # Allocation
    # --------------------------------------------------------------------------

    def _allocate(self, capacity):
        old = None
        if self.capacity:
            old = (self.pos.to_numpy(), self.vel.to_numpy(), self.force.to_numpy(),
                   self.rate.to_numpy(), self.nbr_start.to_numpy(), self.nbr_count.to_numpy())

        self.pos = ti.Vector.field(3, dtype=ti.f64, shape=capacity)
        self.vel = ti.Vector.field(3, dtype=ti.f64, shape=capacity)
        self.force = ti.Vector.field(3, dtype=ti.f64, shape=capacity)
        self.rate = ti.field(dtype=ti.f64, shape=capacity)
        self.nbr_start = ti.field(dtype=ti.i32, shape=capacity)
        self.nbr_count = ti.field(dtype=ti.i32, shape=capacity)

        if old is not None:
            pos, vel, force, rate, start, count = old
            self.pos.from_numpy(_padded(pos, capacity, np.float64))
            self.vel.from_numpy(_padded(vel, capacity, np.float64))
            self.force.from_numpy(_padded(force, capacity, np.float64))
            self.rate.from_numpy(_padded(rate, capacity, np.float64))
            self.nbr_start.from_numpy(_padded(start, capacity, np.int32))
            self.nbr_count.from_numpy(_padded(count, capacity, np.int32))
        self.capacity = capacity

    def _allocate_edges(self, capacity):
        self.nbr_indices = ti.field(dtype=ti.i32, shape=capacity)
        self.edge_capacity = capacity

    def ensure_capacity(self, size):
        """Grow per-cell fields so that indices [0, size) are addressable."""
        if size <= self.capacity:
            return
        new_capacity = max(size, self.capacity * GROWTH_FACTOR)
        print(f"[Physics] Growing state capacity {self.capacity} → {new_capacity}")
        self._allocate(new_capacity)

    # --------------------------------------------------------------------------
    # Host ↔ device
    # --------------------------------------------------------------------------

    def load_points(self, points):
        """Upload positions; the count becomes the active cell count."""
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise ValueError(f"points must have shape (n, 3), got {pts.shape}")
        self.ensure_capacity(len(pts))
        self.pos.from_numpy(_padded(pts, self.capacity, np.float64))
        self.n = len(pts)
        self.graph_valid = False

    def read_points(self):
        return self.pos.to_numpy()[:self.n].copy()

    def load_neighbors(self, graph):
        """Upload a NeighborGraph built for the current positions."""
        if len(graph) != self.n:
            raise ValueError(
                f"neighbor graph has {len(graph)} cells but {self.n} points are loaded")
        total = graph.total_neighbors
        if total > self.edge_capacity:
            self._allocate_edges(max(total, self.edge_capacity * GROWTH_FACTOR))
        self.nbr_start.from_numpy(_padded(graph.offsets[:-1], self.capacity, np.int32))
        self.nbr_count.from_numpy(_padded(graph.degree, self.capacity, np.int32))
        self.nbr_indices.from_numpy(_padded(graph.indices, self.edge_capacity, np.int32))
        self.graph_valid = True

    # --------------------------------------------------------------------------
    # Growth rates
    # --------------------------------------------------------------------------

    def clear_growth_rates(self):
        self.rate.fill(0.0)
        self.active_count = 0

    def set_growth_rate(self, index, rate):
        """Set one cell's rate, growing storage if index is past capacity."""
        self.ensure_capacity(index + 1)
        previous = self.rate[index]
        self.rate[index] = rate
        self.active_count += int(rate != 0.0) - int(previous != 0.0)

    def load_growth_rates(self, signals):
        """Replace all rates with a GrowthSignals set (inactive cells → 0)."""
        self.ensure_capacity(signals.size)
        self.rate.from_numpy(signals.dense(self.capacity))
        self.active_count = sum(1 for r in signals.rates.values() if r != 0.0)

    def growth_rates(self):
        return self.rate.to_numpy()[:self.n].copy()

    # --------------------------------------------------------------------------
    # Stepping
    # --------------------------------------------------------------------------

    def reset(self):
        """Stop all motion: zero velocities and forces, drop the graph."""
        clear_motion(self.vel, self.force, self.capacity)
        self.graph_valid = False

    def step(self, config):
        """
        One sub-step: accumulate forces, then integrate.

        Returns:
            StepResult for this sub-step
        """
        if not self.graph_valid:
            raise RuntimeError("neighbor graph is stale; rebuild it before stepping")

        accumulate_forces(self.pos, self.force, self.rate,
                          self.nbr_start, self.nbr_count, self.nbr_indices, self.n,
                          float(config.force_strength), float(config.max_force),
                          float(config.min_distance))
        max_disp, force_sum, force_count = integrate(self.pos, self.vel, self.force, self.n,
                                                     float(config.damping), float(config.dt))
        # Positions moved: adjacency must be rebuilt before the next step
        self.graph_valid = False
        average_force = force_sum / force_count if force_count > 0 else 0.0
        return StepResult(float(max_disp), float(average_force))

    # --------------------------------------------------------------------------
    # Diagnostics
    # --------------------------------------------------------------------------

    def forces(self):
        return self.force.to_numpy()[:self.n].copy()

    def velocities(self):
        return self.vel.to_numpy()[:self.n].copy()

    def force_vectors(self, min_magnitude=1e-3):
        """Cells whose last accumulated force exceeds min_magnitude."""
        f = self.forces()
        mags = np.linalg.norm(f, axis=1)
        return [
            {"index": int(i), "force": f[i], "magnitude": float(mags[i])}
            for i in np.flatnonzero(mags > min_magnitude)
        ]

    def debug_info(self):
        return {
            "capacity": self.capacity,
            "edge_capacity": self.edge_capacity,
            "active_points": self.n,
            "active_growth_cells": self.active_count,
            "graph_valid": self.graph_valid,
        }
