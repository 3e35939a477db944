#!/usr/bin/env python3
"""
Benchmark script for Physics Growth - Reproducible Performance Testing
=======================================================================

Runs a fixed number of growth cycles on a cube lattice with a deterministic
seed and reports:
- Cycles per second
- Time breakdown (neighbor graph build, physics sub-steps)
- Convergence statistics (sub-steps per cycle, equilibrium rate)
- Configuration used

Usage:
    python scripts/bench.py [--cycles N] [--lattice N] [--step-mode MODE]

Example:
    python scripts/bench.py --cycles 20 --lattice 10
"""

import sys
import os
import time
import argparse
import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import GrowthConfig, STEP_MODES
from cells import cube_lattice
from topology import build_neighbor_graph
from orchestrator import GrowthOrchestrator


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Benchmark physics growth performance')
    parser.add_argument('--cycles', type=int, default=20,
                        help='Number of growth cycles to run (default: 20)')
    parser.add_argument('--lattice', type=int, default=8,
                        help='Cube lattice side; cells = lattice³ (default: 8)')
    parser.add_argument('--step-mode', choices=[m for m in STEP_MODES if m != 'continuous'],
                        default='auto', help='Step mode per cycle (default: auto)')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed for reproducibility (default: 42)')
    return parser.parse_args()


def run_benchmark(args):
    """
    Run benchmark and collect performance statistics.

    Args:
        args: Parsed command line arguments

    Returns:
        Dictionary with benchmark results
    """
    rng = np.random.default_rng(args.seed)
    points, cells = cube_lattice(args.lattice, args.lattice, args.lattice, spacing=1.0)
    n = len(points)

    config = GrowthConfig(step_mode=args.step_mode, log_every=0)

    print(f"\n{'='*70}")
    print(f"PHYSICS GROWTH BENCHMARK")
    print(f"{'='*70}\n")

    print(f"Configuration:")
    print(f"  Cells:         {n} ({args.lattice}³ lattice)")
    print(f"  Cycles:        {args.cycles}")
    print(f"  Step mode:     {args.step_mode}")
    print(f"  Seed:          {args.seed}")
    print(f"  Threshold:     {config.threshold} ({config.mode})")
    print(f"  Step budget:   {config.max_physics_steps}")
    print(f"\n")

    orchestrator = GrowthOrchestrator(config)

    # Warm-up (first cycle pays for kernel compilation)
    orchestrator.apply_growth(points, cells, rng.uniform(0.0, 10.0, n))
    print(f"Warm-up complete\n")

    times_graph = []
    times_cycle = []
    steps = []
    settled = 0

    start_time_total = time.perf_counter()

    for cycle in range(args.cycles):
        scores = rng.uniform(0.0, 10.0, n)

        # 1. Neighbor graph alone (the part re-run after every sub-step)
        t0 = time.perf_counter()
        graph = build_neighbor_graph(cells)
        times_graph.append(time.perf_counter() - t0)

        # 2. Full cycle (graph rebuilds + physics)
        t0 = time.perf_counter()
        points = orchestrator.apply_growth(points, cells, scores)
        times_cycle.append(time.perf_counter() - t0)

        stats = orchestrator.get_stats()
        steps.append(stats['physics_steps'])
        settled += int(stats['equilibrium_reached'])

        if (cycle + 1) % 5 == 0 or cycle == args.cycles - 1:
            print(f"  Cycle {cycle+1:4d}/{args.cycles}: {times_cycle[-1]*1000:7.2f}ms  "
                  f"steps={stats['physics_steps']:3d}  max_disp={stats['max_displacement']:.6f}")

    total_time = time.perf_counter() - start_time_total

    avg_graph = np.mean(times_graph)
    avg_cycle = np.mean(times_cycle)
    avg_steps = np.mean(steps)

    print(f"\n{'='*70}")
    print(f"BENCHMARK RESULTS")
    print(f"{'='*70}\n")

    print(f"Overall Performance:")
    print(f"  Cycles/s:      {args.cycles / total_time:.2f}")
    print(f"  Total Time:    {total_time:.2f}s")
    print(f"  Avg Cycle:     {avg_cycle*1000:.2f}ms")
    print(f"\n")

    print(f"Neighbor Graph:")
    print(f"  Build:         {avg_graph*1000:6.2f}ms")
    print(f"  Summary:       {graph.summary()}")
    print(f"\n")

    print(f"Convergence:")
    print(f"  Sub-steps:     {avg_steps:.1f} per cycle")
    print(f"  Equilibrium:   {settled}/{args.cycles} cycles")
    print(f"\n")

    return {
        'cycles_per_s': args.cycles / total_time,
        'total_time': total_time,
        'avg_cycle_ms': avg_cycle * 1000,
        'avg_graph_ms': avg_graph * 1000,
        'avg_substeps': avg_steps,
        'equilibrium_cycles': settled,
        'config': {
            'cells': n,
            'cycles': args.cycles,
            'seed': args.seed,
            'step_mode': args.step_mode,
        }
    }


def main():
    """Main entry point."""
    args = parse_args()
    run_benchmark(args)

    print(f"Benchmark complete!")
    print(f"{'='*70}\n")

    return 0


if __name__ == '__main__':
    sys.exit(main())
