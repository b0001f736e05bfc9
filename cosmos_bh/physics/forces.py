"""
Gravity solvers for the 2D N-body simulation.

This module provides:
- the pairwise attraction used by every solver
- Barnes-Hut: O(N log N) tree walk, optionally spread over worker threads
- Direct CPU: O(N²) exact summation with NumPy, the reference for accuracy checks

Example:
    >>> from cosmos_bh.physics.forces import BarnesHutSolver
    >>> solver = BarnesHutSolver(theta=0.5)
    >>> solver.compute(tree, bodies, g=1.0)
"""

from __future__ import annotations

import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable, Sequence

import numpy as np

if TYPE_CHECKING:
    from cosmos_bh.core.body import Body
    from cosmos_bh.physics.quadtree import QuadTree


def attraction_at(
    x: float,
    y: float,
    m: float,
    ox: float,
    oy: float,
    om: float,
    g: float,
    eps2: float,
) -> tuple[float, float]:
    """
    Force on a mass m at (x, y) from a mass om at (ox, oy).

    The magnitude is G * m * om / (r² + ε²), directed toward (ox, oy).
    Coincident points exert no force.
    """
    dx = ox - x
    dy = oy - y
    d2 = (dx * dx) + (dy * dy)
    if d2 <= 0.0:
        return 0.0, 0.0
    inv_d = 1.0 / math.sqrt(d2)
    strength = g * m * om / (d2 + eps2)
    return dx * inv_d * strength, dy * inv_d * strength


def attraction(body: "Body", other: "Body", g: float, eps2: float = 0.0) -> tuple[float, float]:
    """Force on ``body`` due to ``other``."""
    return attraction_at(body.x, body.y, body.mass, other.x, other.y, other.mass, g, eps2)


def compute_forces_direct(
    xs: Sequence[float],
    ys: Sequence[float],
    masses: Sequence[float],
    g: float,
    eps2: float = 0.0,
    *,
    tile_size: int = 256,
) -> np.ndarray:
    """
    Exact O(N²) forces in float64.

    Uses tiled computation to bound memory. Coincident pairs contribute
    nothing, matching attraction_at().

    Returns:
        (N, 2) array of forces
    """
    n = len(xs)
    out = np.zeros((n, 2), dtype=np.float64)
    if n == 0:
        return out

    pos = np.empty((n, 2), dtype=np.float64)
    pos[:, 0] = xs
    pos[:, 1] = ys
    m = np.asarray(masses, dtype=np.float64)
    tile = max(1, int(tile_size))

    for i0 in range(0, n, tile):
        i1 = min(n, i0 + tile)
        pi = pos[i0:i1]
        mi = m[i0:i1].reshape(-1, 1)
        f_i = np.zeros((i1 - i0, 2), dtype=np.float64)

        for j0 in range(0, n, tile):
            j1 = min(n, j0 + tile)
            d = pos[j0:j1][None, :, :] - pi[:, None, :]
            d2 = np.sum(d * d, axis=2)
            with np.errstate(divide="ignore", invalid="ignore"):
                inv_d = np.where(d2 > 0.0, 1.0 / np.sqrt(d2), 0.0)
                strength = g * mi * m[j0:j1].reshape(1, -1) / (d2 + eps2)
            strength = np.where(d2 > 0.0, strength, 0.0)
            f_i += np.sum(d * (strength * inv_d)[:, :, None], axis=1)

        out[i0:i1] = f_i

    return out


class ForceSolver:
    """
    Abstract base interface for force solvers.

    Solvers add forces to the bodies' accumulators.
    """

    def compute(
        self,
        tree: "QuadTree | None",
        bodies: Sequence["Body"],
        *,
        g: float,
        softening: float = 0.0,
        multiplier: float = 1.0,
        **kwargs,
    ) -> int:
        """
        Accumulate forces on all live bodies.

        Returns:
            Number of interactions evaluated.
        """
        raise NotImplementedError


class BarnesHutSolver(ForceSolver):
    """
    Barnes-Hut tree-walk force solver.

    The walk only reads the tree, so bodies are split into chunks and walked
    concurrently on a thread pool. Collisions found during the walk go to
    ``on_collision``, which must be thread-safe when ``workers > 1``.

    Attributes:
        theta: Opening angle (0 = exact, higher = faster but less accurate)
        workers: Thread count for the walk (1 = run in the calling thread)
    """

    def __init__(self, theta: float = 0.95, workers: int = 1):
        self.theta = theta
        self.workers = max(1, int(workers))
        self.last_traverse_time_ms: float | None = None
        self.last_interactions: int = 0

    def compute(
        self,
        tree: "QuadTree | None",
        bodies: Sequence["Body"],
        *,
        g: float,
        softening: float = 0.0,
        multiplier: float = 1.0,
        on_collision: Callable[["Body", "Body"], object] | None = None,
        **kwargs,
    ) -> int:
        if tree is None:
            raise ValueError("BarnesHutSolver needs a built tree")
        t0 = time.perf_counter()

        def walk(chunk: Sequence["Body"]) -> int:
            count = 0
            for body in chunk:
                if body.marked_to_remove:
                    continue
                count += tree.calculate_force(
                    body,
                    theta=self.theta,
                    g=g,
                    softening=softening,
                    multiplier=multiplier,
                    on_collision=on_collision,
                )
            return count

        n = len(bodies)
        if self.workers <= 1 or n < 2 * self.workers:
            interactions = walk(bodies)
        else:
            size = (n + self.workers - 1) // self.workers
            chunks = [bodies[i:i + size] for i in range(0, n, size)]
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="bh-force") as executor:
                interactions = sum(executor.map(walk, chunks))

        self.last_interactions = interactions
        self.last_traverse_time_ms = (time.perf_counter() - t0) * 1000.0
        return interactions


class DirectCPUSolver(ForceSolver):
    """
    Direct O(N²) force solver using NumPy on CPU.

    Exact, ignores the tree and does not resolve collisions. Used as the
    reference when measuring Barnes-Hut error.
    """

    def __init__(self, tile_size: int = 256):
        self.tile_size = tile_size
        self.last_compute_time_ms: float | None = None

    def compute(
        self,
        tree: "QuadTree | None",
        bodies: Sequence["Body"],
        *,
        g: float,
        softening: float = 0.0,
        multiplier: float = 1.0,
        **kwargs,
    ) -> int:
        t0 = time.perf_counter()
        live = [b for b in bodies if not b.marked_to_remove]
        forces = compute_forces_direct(
            [b.x for b in live],
            [b.y for b in live],
            [b.mass for b in live],
            g,
            softening * softening,
            tile_size=self.tile_size,
        )
        for body, (fx, fy) in zip(live, forces):
            body.apply_force(float(fx) * multiplier, float(fy) * multiplier)
        self.last_compute_time_ms = (time.perf_counter() - t0) * 1000.0
        n = len(live)
        return n * (n - 1)
