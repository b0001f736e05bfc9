#!/usr/bin/env python3
"""
Performance benchmark for the Barnes-Hut galaxy simulation.

Times the quadtree build and the force pass for several opening angles and
compares each against the exact direct solver:
- Barnes-Hut (CPU, O(N log N)), one run per θ
- Direct CPU (NumPy, O(N²)), the accuracy reference

Usage:
    python -m cosmos_bh.utils.benchmark [-n 1000] [-i 10] [--theta 0.5 0.95]
"""

from __future__ import annotations

import argparse
import random
import sys
import time
from typing import Sequence

import numpy as np

from cosmos_bh.core.body import Body
from cosmos_bh.physics.forces import BarnesHutSolver, DirectCPUSolver
from cosmos_bh.physics.quadtree import QuadTree

WORLD_SIZE = 16384.0
DEFAULT_THETAS = (0.3, 0.5, 0.7, 0.95)


def generate_bodies(n: int, seed: int = 42, spread: float = 2000.0) -> list[Body]:
    """Generate random bodies in a square of side 2 * spread around the origin."""
    rng = random.Random(seed)
    return [
        Body(
            id=i,
            x=rng.uniform(-spread, spread),
            y=rng.uniform(-spread, spread),
            mass=rng.uniform(1.0, 10.0),
        )
        for i in range(n)
    ]


def _forces(bodies: Sequence[Body]) -> np.ndarray:
    out = np.empty((len(bodies), 2), dtype=np.float64)
    for i, body in enumerate(bodies):
        out[i, 0] = body.fx
        out[i, 1] = body.fy
    return out


def _reset_forces(bodies: Sequence[Body]) -> None:
    for body in bodies:
        body.reset_force()


def relative_error(approx: np.ndarray, exact: np.ndarray) -> float:
    """Mean over bodies of |F_approx - F_exact| / |F_exact|."""
    norm = np.linalg.norm(exact, axis=1)
    mask = norm > 0.0
    if not np.any(mask):
        return 0.0
    diff = np.linalg.norm(approx - exact, axis=1)
    return float(np.mean(diff[mask] / norm[mask]))


def benchmark_build(bodies: Sequence[Body], iterations: int = 10, parallel: bool = False) -> tuple[float, float]:
    """Benchmark the quadtree build. Returns (mean_ms, std_ms)."""
    tree = QuadTree(WORLD_SIZE, WORLD_SIZE)
    times = []
    for _ in range(iterations):
        tree.clear()
        t0 = time.perf_counter()
        if parallel:
            tree.insert_batch_parallel(bodies)
        else:
            tree.insert_batch(bodies)
        times.append(time.perf_counter() - t0)
    tree.clear()
    arr = np.asarray(times) * 1000.0
    return float(arr.mean()), float(arr.std())


def benchmark_barnes_hut(
    bodies: Sequence[Body],
    g: float,
    softening: float,
    theta: float = 0.95,
    iterations: int = 10,
    workers: int = 1,
) -> tuple[float, float, np.ndarray]:
    """Benchmark the Barnes-Hut force pass. Returns (mean_ms, std_ms, forces)."""
    tree = QuadTree(WORLD_SIZE, WORLD_SIZE)
    tree.insert_batch(bodies)
    solver = BarnesHutSolver(theta=theta, workers=workers)

    times = []
    forces = np.zeros((len(bodies), 2), dtype=np.float64)
    for _ in range(iterations):
        _reset_forces(bodies)
        t0 = time.perf_counter()
        solver.compute(tree, bodies, g=g, softening=softening)
        times.append(time.perf_counter() - t0)
        forces = _forces(bodies)
    _reset_forces(bodies)
    tree.clear()

    arr = np.asarray(times) * 1000.0
    return float(arr.mean()), float(arr.std()), forces


def benchmark_direct_cpu(
    bodies: Sequence[Body],
    g: float,
    softening: float,
    tile_size: int = 256,
    iterations: int = 10,
) -> tuple[float, float, np.ndarray]:
    """Benchmark the direct solver. Returns (mean_ms, std_ms, forces)."""
    solver = DirectCPUSolver(tile_size=tile_size)

    times = []
    forces = np.zeros((len(bodies), 2), dtype=np.float64)
    for _ in range(iterations):
        _reset_forces(bodies)
        t0 = time.perf_counter()
        solver.compute(None, bodies, g=g, softening=softening)
        times.append(time.perf_counter() - t0)
        forces = _forces(bodies)
    _reset_forces(bodies)

    arr = np.asarray(times) * 1000.0
    return float(arr.mean()), float(arr.std()), forces


def run_benchmark(
    n: int,
    iterations: int,
    thetas: Sequence[float] = DEFAULT_THETAS,
    *,
    seed: int = 42,
    workers: int = 1,
    verbose: bool = True,
) -> dict:
    """
    Run the full benchmark suite.

    Returns:
        {"n", "build_ms", "build_parallel_ms", "direct_ms",
         "barnes_hut": {theta: {"mean_ms", "std_ms", "error"}}}
    """
    iterations = max(1, int(iterations))
    g = 1.0
    softening = 1.0

    def say(msg: str, **kwargs) -> None:
        if verbose:
            print(msg, **kwargs)

    say(f"\n{'='*60}")
    say(f"Benchmark: {n} bodies, {iterations} iterations")
    say(f"{'='*60}")

    say("Generating bodies...", end=" ", flush=True)
    bodies = generate_bodies(n, seed=seed)
    say("done")

    results: dict = {"n": n, "barnes_hut": {}}

    say("Quadtree build...", end=" ", flush=True)
    build_ms, build_std = benchmark_build(bodies, iterations)
    say(f"{build_ms:.2f} ± {build_std:.2f} ms")
    results["build_ms"] = build_ms

    say("Quadtree build (parallel)...", end=" ", flush=True)
    pbuild_ms, pbuild_std = benchmark_build(bodies, iterations, parallel=True)
    say(f"{pbuild_ms:.2f} ± {pbuild_std:.2f} ms")
    results["build_parallel_ms"] = pbuild_ms

    say("Direct CPU (NumPy)...", end=" ", flush=True)
    direct_ms, direct_std, exact = benchmark_direct_cpu(bodies, g, softening, iterations=iterations)
    say(f"{direct_ms:.2f} ± {direct_std:.2f} ms")
    results["direct_ms"] = direct_ms

    for theta in thetas:
        say(f"Barnes-Hut (θ={theta})...", end=" ", flush=True)
        bh_ms, bh_std, approx = benchmark_barnes_hut(
            bodies, g, softening, theta=theta, iterations=iterations, workers=workers,
        )
        err = relative_error(approx, exact)
        say(f"{bh_ms:.2f} ± {bh_std:.2f} ms, error {err:.2e}")
        results["barnes_hut"][float(theta)] = {"mean_ms": bh_ms, "std_ms": bh_std, "error": err}

    say(f"\n{'='*60}")
    say("Summary:")
    for theta, row in results["barnes_hut"].items():
        speedup = direct_ms / row["mean_ms"] if row["mean_ms"] > 0 else float("inf")
        say(f"  Barnes-Hut (θ={theta}): {row['mean_ms']:.2f} ms ({speedup:.1f}x vs direct), error {row['error']:.2e}")
    say(f"  Direct CPU: {direct_ms:.2f} ms")

    return results


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Benchmark Barnes-Hut quadtree force calculations")
    parser.add_argument("--bodies", "-n", type=int, default=1000, help="Number of bodies")
    parser.add_argument("--iterations", "-i", type=int, default=10, help="Benchmark iterations")
    parser.add_argument("--theta", type=float, nargs="+", default=list(DEFAULT_THETAS), help="Opening angles to test")
    parser.add_argument("--workers", "-w", type=int, default=1, help="Threads for the force pass")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--sweep", action="store_true", help="Run sweep over body counts")
    args = parser.parse_args(argv)

    print("Barnes-Hut Quadtree Benchmark")
    print(f"Platform: {sys.platform}")
    print(f"NumPy: {np.__version__}")

    if args.sweep:
        for n in (100, 500, 1000, 2000, 5000):
            run_benchmark(n, args.iterations, args.theta, seed=args.seed, workers=args.workers)
    else:
        run_benchmark(args.bodies, args.iterations, args.theta, seed=args.seed, workers=args.workers)
    return 0


if __name__ == "__main__":
    sys.exit(main())
