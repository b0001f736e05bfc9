"""
Body state for the Barnes-Hut simulation.

A body carries its physical state (position, velocity, accumulated force,
mass, radius), a one-way removal flag and the handle of the quadtree node it
currently lives in. The tree also records the position and mass the body had
when it was placed (its anchor) so the exact contribution can be taken back
out of the ancestor aggregates later on.

Example:
    >>> from cosmos_bh.core.body import Body
    >>> b = Body(id=1, x=10.0, y=-4.0, mass=2.0, radius=0.5)
    >>> b.apply_force(1.0, 0.0)
    >>> b.fx
    1.0
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field


NO_NODE = -1


class InvalidBody(ValueError):
    """Raised when a body carries state the simulation cannot work with."""


@dataclass(slots=True, eq=False)
class Body:
    """
    A point mass in the plane.

    Attributes:
        id: Unique identifier
        x, y: Position
        vx, vy: Velocity
        fx, fy: Force accumulated for the current tick
        mass: Mass (> 0 while alive)
        radius: Collision radius (>= 0)
        marked_to_remove: Set once, swept by the stepper
        node: Handle of the containing quadtree node, NO_NODE when detached

    Bodies compare by identity.
    """
    id: int
    x: float
    y: float
    vx: float = 0.0
    vy: float = 0.0
    mass: float = 1.0
    radius: float = 0.0
    fx: float = 0.0
    fy: float = 0.0
    marked_to_remove: bool = False
    node: int = NO_NODE

    anchor_x: float = field(default=0.0, repr=False)
    anchor_y: float = field(default=0.0, repr=False)
    anchor_mass: float = field(default=0.0, repr=False)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not (math.isfinite(self.x) and math.isfinite(self.y)):
            raise InvalidBody(f"body {self.id}: non-finite position ({self.x}, {self.y})")
        if not (math.isfinite(self.vx) and math.isfinite(self.vy)):
            raise InvalidBody(f"body {self.id}: non-finite velocity ({self.vx}, {self.vy})")
        if not math.isfinite(self.mass) or self.mass <= 0.0:
            raise InvalidBody(f"body {self.id}: mass must be finite and > 0, got {self.mass}")
        if not math.isfinite(self.radius) or self.radius < 0.0:
            raise InvalidBody(f"body {self.id}: radius must be finite and >= 0, got {self.radius}")

    def apply_force(self, fx: float, fy: float) -> None:
        self.fx += fx
        self.fy += fy

    def reset_force(self) -> None:
        self.fx = 0.0
        self.fy = 0.0

    def mark_to_remove(self) -> None:
        """Flag for removal at the next sweep. Cannot be undone."""
        self.marked_to_remove = True

    def anchor(self, node: int) -> None:
        """Record the node and the contribution this body was placed with."""
        self.node = node
        self.anchor_x = self.x
        self.anchor_y = self.y
        self.anchor_mass = self.mass

    def detach(self) -> None:
        self.node = NO_NODE
        self.anchor_mass = 0.0

    @property
    def speed(self) -> float:
        return math.hypot(self.vx, self.vy)

    @property
    def momentum(self) -> tuple[float, float]:
        return self.mass * self.vx, self.mass * self.vy
