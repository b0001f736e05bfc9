from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from cosmos_bh.core.body import NO_NODE, Body, InvalidBody
from cosmos_bh.core.init_conditions import create_bodies
from cosmos_bh.params import SimParams
from cosmos_bh.physics.collisions import CollisionResolver
from cosmos_bh.physics.forces import BarnesHutSolver
from cosmos_bh.physics.quadtree import QuadTree, default_workers
from cosmos_bh.utils.config_groups import classify_changes

logger = logging.getLogger("cosmos_bh")


@dataclass(frozen=True, slots=True)
class SimStats:
    live: int
    pending_removal: int
    ticks: int
    merges: int
    nodes: int
    last_build_ms: float | None
    last_force_ms: float | None


class GalaxySim:
    """
    Steps a 2D galaxy of bodies under Barnes-Hut gravity.

    Each tick sweeps flagged bodies, brings the quadtree up to date, runs the
    force walk (absorbing colliding bodies on the way) and integrates every
    live body with explicit Euler.

    Args:
        params: Simulation parameters (clamped in place)
        bodies: Initial bodies; when omitted the world is populated from
            ``params.init_mode``
    """

    def __init__(self, params: SimParams, bodies: Iterable[Body] | None = None) -> None:
        self.params = params.clamp()
        self.bodies: list[Body] = []
        self._ids: set[int] = set()
        self.ticks = 0
        self.merges = 0
        self.paused = False
        self.last_build_ms: float | None = None
        self.last_force_ms: float | None = None
        self._last_removed = 0
        self._tree_built = False

        self.tree = self._new_tree()
        self._resolver = CollisionResolver(self.params.radius_exponent)
        self._solver = BarnesHutSolver(theta=self.params.theta, workers=self._force_workers())

        for warning in self.params.validate():
            logger.warning("params: %s", warning)

        if bodies is None:
            self.reset()
        else:
            self.add_bodies(bodies)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _new_tree(self) -> QuadTree:
        p = self.params
        return QuadTree(p.world_width, p.world_height, max_depth=p.max_depth)

    def _force_workers(self) -> int:
        n = int(self.params.force_workers)
        return default_workers() if n <= 0 else n

    def reset(self) -> None:
        """Repopulate the world from the current parameters."""
        p = self.params
        self.bodies = []
        self._ids = set()
        self.ticks = 0
        self.merges = 0
        self._last_removed = 0
        self.tree = self._new_tree()
        self._tree_built = False
        self.add_bodies(create_bodies(p, random.Random(p.seed)))
        logger.info("world populated: mode=%s bodies=%d", p.init_mode, len(self.bodies))

    def add_body(self, body: Body) -> Body:
        """
        Add one body.

        Raises InvalidBody for bad state, a duplicate id, or a body that still
        belongs to another tree.
        """
        body.validate()
        if body.marked_to_remove:
            raise InvalidBody(f"body {body.id} is already marked for removal")
        if body.node != NO_NODE:
            raise InvalidBody(f"body {body.id} already belongs to tree node {body.node}")
        if body.id in self._ids:
            raise InvalidBody(f"duplicate body id {body.id}")
        self._ids.add(body.id)
        self.bodies.append(body)
        return body

    def add_bodies(self, bodies: Iterable[Body]) -> int:
        count = 0
        for body in bodies:
            self.add_body(body)
            count += 1
        return count

    def next_id(self) -> int:
        return max(self._ids, default=-1) + 1

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def toggle_pause(self) -> bool:
        self.paused = not self.paused
        return self.paused

    def set_time_scale(self, value: float) -> None:
        self.params.time_scale = value
        self.params.clamp()

    def update_params(self, **changes) -> None:
        """
        Apply parameter changes, resetting the tree or the world as needed.

        Raises ValueError for unknown parameter names.
        """
        p = self.params
        unknown = [k for k in changes if k not in SimParams.__annotations__]
        if unknown:
            raise ValueError(f"unknown parameters: {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            setattr(p, key, value)
        p.clamp()

        repopulate, rebuild, retune = classify_changes(changes)
        if retune:
            self._solver.theta = p.theta
            self._solver.workers = self._force_workers()
            self._resolver.radius_exponent = p.radius_exponent
        if repopulate:
            self.reset()
        elif rebuild:
            self.tree = self._new_tree()
            self._tree_built = False
            for body in self.bodies:
                body.detach()
        logger.info(
            "params updated: %s (repopulate=%s, rebuild=%s, retune=%s)",
            ", ".join(sorted(changes)), repopulate, rebuild, retune,
        )

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def tick(self) -> bool:
        """
        Advance the world by one tick.

        Returns False without doing anything while paused.
        """
        if self.paused:
            return False
        p = self.params

        removed = self._sweep()

        if self.ticks % p.iterations_per_calculation == 0:
            self._maintain_tree(removed)
            self._compute_forces(float(p.iterations_per_calculation))

        self._integrate()
        self.ticks += 1
        return True

    def step(self, n: int = 1) -> int:
        """Run up to n ticks. Returns how many actually ran."""
        ran = 0
        for _ in range(max(0, int(n))):
            if self.tick():
                ran += 1
        return ran

    def _sweep(self) -> list[Body]:
        removed = [b for b in self.bodies if b.marked_to_remove]
        if removed:
            self.bodies = [b for b in self.bodies if not b.marked_to_remove]
            for body in removed:
                self._ids.discard(body.id)
            logger.debug("swept %d bodies, %d live", len(removed), len(self.bodies))
        self._last_removed = len(removed)
        return removed

    def _maintain_tree(self, removed: list[Body]) -> None:
        p = self.params
        tree = self.tree
        t0 = time.perf_counter()
        full_reset = (
            self.ticks % p.reset_interval == 0
            or self._last_removed > p.reset_removal_threshold
        )

        with tree.lock:
            if p.rebuild_mode == "incremental" and self._tree_built and not full_reset:
                moves = tree.repair(removed + self.bodies)
                logger.debug("tree repaired: %d moves", moves)
            else:
                if full_reset:
                    tree.reset()
                else:
                    tree.clear()
                if p.parallel_build:
                    tree.insert_batch_parallel(self.bodies, p.build_workers)
                else:
                    tree.insert_batch(self.bodies)
                self._tree_built = True

        self.last_build_ms = (time.perf_counter() - t0) * 1000.0

    def _compute_forces(self, multiplier: float) -> None:
        p = self.params
        on_collision = self._resolver if p.collisions_enabled else None
        self._solver.compute(
            self.tree,
            self.bodies,
            g=p.g,
            softening=p.softening,
            multiplier=multiplier,
            on_collision=on_collision,
        )
        self.last_force_ms = self._solver.last_traverse_time_ms
        merges = self._resolver.reset_count()
        if merges:
            self.merges += merges
            logger.debug("absorbed %d bodies", merges)

    def _integrate(self) -> None:
        p = self.params
        dt = float(p.time_scale)
        a_max = float(p.max_acceleration)
        root = self.tree.root
        clamp = p.bounds_policy == "clamp"
        bounce = float(p.bounce)

        for body in self.bodies:
            if body.marked_to_remove:
                body.reset_force()
                continue
            ax = body.fx / body.mass
            ay = body.fy / body.mass
            if a_max > 0.0:
                ax = max(-a_max, min(a_max, ax))
                ay = max(-a_max, min(a_max, ay))
            body.vx += ax * dt
            body.vy += ay * dt
            body.x += body.vx * dt
            body.y += body.vy * dt
            body.reset_force()

            if root.fits(body.x, body.y):
                continue
            if clamp:
                self._bounce_inside(body, bounce)
            else:
                body.mark_to_remove()

    def _bounce_inside(self, body: Body, bounce: float) -> None:
        root = self.tree.root
        hw = root.width * 0.5
        hh = root.height * 0.5
        x_lo = math.nextafter(root.cx - hw, root.cx)
        x_hi = math.nextafter(root.cx + hw, root.cx)
        y_lo = math.nextafter(root.cy - hh, root.cy)
        y_hi = math.nextafter(root.cy + hh, root.cy)
        if body.x <= x_lo:
            body.x = x_lo
            body.vx = abs(body.vx) * bounce
        elif body.x >= x_hi:
            body.x = x_hi
            body.vx = -abs(body.vx) * bounce
        if body.y <= y_lo:
            body.y = y_lo
            body.vy = abs(body.vy) * bounce
        elif body.y >= y_hi:
            body.y = y_hi
            body.vy = -abs(body.vy) * bounce

    # ------------------------------------------------------------------
    # Read-back
    # ------------------------------------------------------------------

    def live_bodies(self) -> list[Body]:
        return [b for b in self.bodies if not b.marked_to_remove]

    def positions(self) -> np.ndarray:
        """(n, 2) array of live body positions."""
        live = self.live_bodies()
        out = np.empty((len(live), 2), dtype=np.float64)
        for i, body in enumerate(live):
            out[i, 0] = body.x
            out[i, 1] = body.y
        return out

    def total_mass(self) -> float:
        return math.fsum(b.mass for b in self.bodies if not b.marked_to_remove)

    def total_momentum(self) -> tuple[float, float]:
        live = self.live_bodies()
        return (
            math.fsum(b.mass * b.vx for b in live),
            math.fsum(b.mass * b.vy for b in live),
        )

    def stats(self) -> SimStats:
        pending = sum(1 for b in self.bodies if b.marked_to_remove)
        return SimStats(
            live=len(self.bodies) - pending,
            pending_removal=pending,
            ticks=self.ticks,
            merges=self.merges,
            nodes=self.tree.stats().nodes,
            last_build_ms=self.last_build_ms,
            last_force_ms=self.last_force_ms,
        )

    def validate_state(self) -> list[str]:
        issues: list[str] = []
        root = self.tree.root
        seen: set[int] = set()

        for body in self.bodies:
            if body.id in seen:
                issues.append(f"body {body.id} appears more than once")
            seen.add(body.id)
            if not (
                math.isfinite(body.x)
                and math.isfinite(body.y)
                and math.isfinite(body.vx)
                and math.isfinite(body.vy)
            ):
                issues.append(f"body {body.id} has non-finite position/velocity")
                continue
            if not math.isfinite(body.mass) or body.mass <= 0.0:
                issues.append(f"body {body.id} has invalid mass {body.mass}")
            if body.marked_to_remove:
                continue
            if not root.fits(body.x, body.y):
                issues.append(f"body {body.id} out of world bounds")

        return issues
