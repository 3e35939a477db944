"""
Growth signal: per-cell score → signed growth rate.

Decision table (strict inequalities; score == threshold is always inactive):

    mode          score > threshold      score < threshold
    grow-only     grow                   -
    grow-both     grow                   shrink
    shrink-only   shrink                 -
    shrink-both   shrink                 grow

Magnitude is |score - threshold|. Raw signal = magnitude ** growth_power,
negated for shrink. With normalize the raw signals are divided by the largest
|raw| among active cells, then every signal is scaled by base_growth_rate.
"""

from dataclasses import dataclass, field

import numpy as np


@dataclass
class GrowthSignals:
    """Growth rates for the active cells of one cycle."""
    rates: dict = field(default_factory=dict)     # cell index -> signed rate
    active: int = 0
    growing: int = 0
    shrinking: int = 0
    max_raw_signal: float = 0.0

    @property
    def indices(self):
        return np.fromiter(self.rates.keys(), dtype=np.int64, count=len(self.rates))

    @property
    def size(self):
        """Smallest array length that can hold every active index."""
        return max(self.rates) + 1 if self.rates else 0

    def dense(self, size=None):
        """Full-length rate array, zero for inactive cells."""
        n = self.size if size is None else max(size, self.size)
        out = np.zeros(n, dtype=np.float64)
        for idx, rate in self.rates.items():
            out[idx] = rate
        return out


def _scores_array(scores, n_cells):
    s = np.array([np.nan if v is None else v for v in scores], dtype=np.float64)
    s[np.isnan(s)] = 0.0
    if n_cells is None:
        return s
    # Scores past the last cell have nothing to drive
    s = s[:n_cells]
    if len(s) < n_cells:
        # Missing trailing scores count as 0
        s = np.concatenate([s, np.zeros(n_cells - len(s))])
    return s


def decide(scores, threshold, mode):
    """
    Apply the decision table.

    Returns:
        (direction, magnitude): direction is +1 grow, -1 shrink, 0 inactive;
        magnitude is |score - threshold| where active, else 0
    """
    s = np.asarray(scores, dtype=np.float64)
    above = s > threshold
    below = s < threshold

    direction = np.zeros(len(s), dtype=np.int8)
    if mode == "grow-only":
        direction[above] = 1
    elif mode == "grow-both":
        direction[above] = 1
        direction[below] = -1
    elif mode == "shrink-only":
        direction[above] = -1
    elif mode == "shrink-both":
        direction[above] = -1
        direction[below] = 1
    else:
        raise ValueError(f"unknown growth mode {mode!r}")

    magnitude = np.where(direction != 0, np.abs(s - threshold), 0.0)
    return direction, magnitude


def compute_growth_signals(scores, config, n_cells=None):
    """
    Turn per-cell scores into signed growth rates.

    Args:
        scores: Sequence of numbers, index-aligned with cells (None/NaN -> 0)
        config: GrowthConfig
        n_cells: Number of cells; shorter score lists are zero-padded

    Returns:
        GrowthSignals with only the active cells in `rates`
    """
    s = _scores_array(scores, n_cells)
    direction, magnitude = decide(s, config.threshold, config.mode)

    active = np.flatnonzero(magnitude > 0.0)
    raw = np.power(magnitude[active], config.growth_power) * direction[active]

    max_raw = float(np.max(np.abs(raw))) if len(raw) else 0.0
    if config.normalize and max_raw > 0.0:
        rates = raw / max_raw * config.base_growth_rate
    else:
        rates = raw * config.base_growth_rate

    growing = int(np.count_nonzero(direction[active] > 0))
    return GrowthSignals(
        rates=dict(zip(active.tolist(), rates.tolist())),
        active=len(active),
        growing=growing,
        shrinking=len(active) - growing,
        max_raw_signal=max_raw,
    )
