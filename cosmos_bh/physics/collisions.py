"""
Collision detection and inelastic absorption between bodies.

Two bodies collide when their centers are closer than the sum of their radii.
On collision the heavier body absorbs the lighter one: masses add up, the
velocity becomes the momentum-weighted average and the radius grows with the
combined mass. The absorbed body is only flagged; the stepper sweeps it.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cosmos_bh.core.body import Body


def collides(a: "Body", b: "Body") -> bool:
    dx = a.x - b.x
    dy = a.y - b.y
    r = a.radius + b.radius
    return (dx * dx) + (dy * dy) < r * r


def grown_radius(radius: float, old_mass: float, new_mass: float, exponent: float = 0.5) -> float:
    """
    Radius after growing from old_mass to new_mass.

    r' = r * (M'/M) ** exponent. With exponent 0.5 the disc area stays
    proportional to mass; 1.0 keeps a constant size per unit mass.
    """
    if old_mass <= 0.0 or new_mass <= old_mass:
        return radius
    return radius * (new_mass / old_mass) ** exponent


def absorb(a: "Body", b: "Body", *, radius_exponent: float = 0.5) -> "Body":
    """
    Merge the lighter of a and b into the heavier one (a wins ties).

    Returns the surviving body. Momentum and mass are conserved; position of
    the survivor is unchanged.
    """
    if b.mass > a.mass:
        target, source = b, a
    else:
        target, source = a, b

    m1 = target.mass
    m2 = source.mass
    total = m1 + m2
    target.vx = ((m1 * target.vx) + (m2 * source.vx)) / total
    target.vy = ((m1 * target.vy) + (m2 * source.vy)) / total
    target.radius = grown_radius(target.radius, m1, total, radius_exponent)
    target.mass = total
    source.mark_to_remove()
    return target


class CollisionResolver:
    """
    Thread-safe absorption callback for the force pass.

    Force walks run on several threads and may reach the same pair from both
    sides; the flags are re-checked under the lock so each body is absorbed
    at most once.

    Attributes:
        radius_exponent: Passed to absorb()
        merges: Number of absorptions since the last reset_count()
    """

    def __init__(self, radius_exponent: float = 0.5) -> None:
        self.radius_exponent = radius_exponent
        self.merges = 0
        self._lock = threading.Lock()

    def __call__(self, a: "Body", b: "Body") -> "Body | None":
        with self._lock:
            if a.marked_to_remove or b.marked_to_remove:
                return None
            survivor = absorb(a, b, radius_exponent=self.radius_exponent)
            self.merges += 1
            return survivor

    def reset_count(self) -> int:
        with self._lock:
            merges = self.merges
            self.merges = 0
            return merges
