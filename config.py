"""
Configuration parameters for Fabric of Space - Physics Growth.

This module defines all growth-engine parameters:
- Growth signal (threshold, mode, power, normalization)
- Force field (strength, clamp, minimum distance)
- Integration (damping, timestep, equilibrium precision, step budget)
- Neighbor detection (vertex rounding precision, shared-vertex rule)
- Continuous mode cadence and telemetry

Module-level constants are the defaults. GrowthConfig freezes one set of
values for a growth cycle; the orchestrator swaps in a new instance between
cycles, never during one.
"""

from dataclasses import dataclass, fields, replace as dc_replace

# ==============================================================================
# Growth signal (score vs threshold)
# ==============================================================================

THRESHOLD = 5.0             # Decision boundary on the per-cell score
MODE = "grow-both"          # "grow-only" | "grow-both" | "shrink-only" | "shrink-both"
GROWTH_POWER = 1.5          # Non-linear exponent on |score - threshold| (1 = linear, 2 = quadratic)
NORMALIZE = True            # Divide by max |raw signal| before scaling
BASE_GROWTH_RATE = 3.0      # Growth rate multiplier (after normalization if enabled)

GROWTH_MODES = ("grow-only", "grow-both", "shrink-only", "shrink-both")

# Legacy preset names, still accepted
MODE_ALIASES = {
    "more_grow_only": "grow-only",
    "more_grow_both": "grow-both",
    "more_shrink_only": "shrink-only",
    "more_shrink_both": "shrink-both",
}

GROWTH_POWER_MIN = 0.5      # Below this the curve flattens to a step

# ==============================================================================
# Force field (inverse-square push/pull between neighbors)
# ==============================================================================

FORCE_STRENGTH = 2.0        # Multiplier on growth rate in F = g * k / d²
MAX_FORCE = 0.1             # Clamp on |F| per pair contribution (sign preserved)
MIN_DISTANCE = 0.01         # Below this separation the pair force is zero (coincident guard)

# ==============================================================================
# Integration (damped explicit Euler)
# ==============================================================================

DAMPING = 0.8               # Velocity multiplier per sub-step (0 = dead stop, 1 = no friction)
DT = 0.016                  # Sub-step timestep (≈60 FPS)
EQUILIBRIUM_PRECISION = 0.001   # Settled when max |v·dt| in a sub-step drops below this
MAX_PHYSICS_STEPS = 100     # Sub-step budget per cycle (auto / equilibrium modes)

# ==============================================================================
# Step modes
# ==============================================================================

STEP_MODE = "manual"        # "manual" | "auto" | "equilibrium" | "continuous"
STEP_MODES = ("manual", "auto", "equilibrium", "continuous")

PHYSICS_STEPS_PER_ANALYSIS = 10   # Continuous mode: sub-steps executed per re-analysis
CONTINUOUS_RETRY_DELAY = 0.1      # Seconds to wait before re-asking when an analysis had no scores

# ==============================================================================
# Neighbor detection (shared polygon vertices)
# ==============================================================================

VERTEX_PRECISION = 10000    # Vertices rounded to 1/VERTEX_PRECISION (tolerance 1e-4)
MIN_SHARED_VERTICES = 2     # One shared vertex = point contact, not a face/edge
FACE_KEY_DECIMALS = 6       # Dedup precision when flattening face-based cells

# Spatial hash primes (same triple as the Taichi grid/topology hash)
HASH_P1 = 73856093
HASH_P2 = 19349663
HASH_P3 = 83492791

# ==============================================================================
# Physics state allocation
# ==============================================================================

INITIAL_CAPACITY = 1000     # Cells allocated before the first cycle sizes the fields
GROWTH_FACTOR = 2           # Capacity multiplier when an index overflows

# ==============================================================================
# Taichi runtime
# ==============================================================================

TAICHI_ARCH = "cpu"         # "cpu" | "gpu" | "cuda" | "vulkan" (f64 fields: avoid "metal")
DEBUG_KERNELS = False       # ti.init(debug=True): bounds checks inside kernels

# ==============================================================================
# Telemetry
# ==============================================================================

LOG_EVERY = 10              # Print a cycle summary every N cycles (0 = silent)


def normalize_mode(mode):
    """Map a growth mode (or its legacy alias) to the canonical name."""
    canonical = MODE_ALIASES.get(mode, mode)
    if canonical not in GROWTH_MODES:
        raise ValueError(f"unknown growth mode {mode!r} (expected one of {GROWTH_MODES})")
    return canonical


@dataclass(frozen=True)
class GrowthConfig:
    """Immutable parameter set for one growth cycle."""

    # ── Growth signal ──
    threshold: float = THRESHOLD
    mode: str = MODE
    growth_power: float = GROWTH_POWER
    normalize: bool = NORMALIZE
    base_growth_rate: float = BASE_GROWTH_RATE

    # ── Force field ──
    force_strength: float = FORCE_STRENGTH
    max_force: float = MAX_FORCE
    min_distance: float = MIN_DISTANCE

    # ── Integration ──
    damping: float = DAMPING
    dt: float = DT
    equilibrium_precision: float = EQUILIBRIUM_PRECISION
    max_physics_steps: int = MAX_PHYSICS_STEPS

    # ── Stepping ──
    step_mode: str = STEP_MODE
    physics_steps_per_analysis: int = PHYSICS_STEPS_PER_ANALYSIS

    # ── Neighbor detection ──
    vertex_precision: int = VERTEX_PRECISION
    min_shared_vertices: int = MIN_SHARED_VERTICES

    # ── Telemetry ──
    log_every: int = LOG_EVERY

    def __post_init__(self):
        object.__setattr__(self, "mode", normalize_mode(self.mode))
        if self.step_mode not in STEP_MODES:
            raise ValueError(f"unknown step mode {self.step_mode!r} (expected one of {STEP_MODES})")
        if self.growth_power < GROWTH_POWER_MIN:
            raise ValueError(f"growth_power must be >= {GROWTH_POWER_MIN}, got {self.growth_power}")
        if not 0.0 <= self.damping <= 1.0:
            raise ValueError(f"damping must be in [0, 1], got {self.damping}")
        if self.max_force < 0.0:
            raise ValueError(f"max_force must be >= 0, got {self.max_force}")
        if self.min_distance < 0.0:
            raise ValueError(f"min_distance must be >= 0, got {self.min_distance}")
        if self.dt <= 0.0:
            raise ValueError(f"dt must be > 0, got {self.dt}")
        if self.max_physics_steps < 1:
            raise ValueError(f"max_physics_steps must be >= 1, got {self.max_physics_steps}")
        if self.physics_steps_per_analysis < 1:
            raise ValueError(
                f"physics_steps_per_analysis must be >= 1, got {self.physics_steps_per_analysis}")
        if self.vertex_precision <= 0:
            raise ValueError(f"vertex_precision must be > 0, got {self.vertex_precision}")
        if self.min_shared_vertices < 1:
            raise ValueError(f"min_shared_vertices must be >= 1, got {self.min_shared_vertices}")

    def replace(self, **changes):
        """Validated copy with some fields changed."""
        return dc_replace(self, **changes)

    @classmethod
    def from_mapping(cls, mapping):
        """
        Build a config from a dict, accepting snake_case or camelCase keys.

        Unknown keys raise ValueError so typos in presets don't silently
        fall back to defaults.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in mapping.items():
            name = _snake_case(key)
            if name not in known:
                raise ValueError(f"unknown config key {key!r}")
            kwargs[name] = value
        return cls(**kwargs)

    def as_dict(self):
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _snake_case(key):
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)
