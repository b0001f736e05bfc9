"""
Initial condition generators for the galaxy simulation.

This module provides functions to populate the world with bodies.

Available modes:
- galaxy: Central black hole with a disk of bodies on circular orbits
- systems: Scattered stars, each with planets on circular orbits around it
- random: Uniform random distribution over the world box
- empty: No bodies
"""

from __future__ import annotations

import math
import random
from typing import TYPE_CHECKING, NamedTuple

from cosmos_bh.core.body import Body

if TYPE_CHECKING:
    from cosmos_bh.params import SimParams


def sample_annulus_radius(rng: random.Random, r_min: float, r_max: float) -> float:
    """
    Sample a radius so that points are uniform in area over the annulus.

    The density of r is proportional to r on [r_min, r_max].
    """
    if r_max <= r_min:
        return r_min
    u = rng.random()
    return math.sqrt((r_min * r_min) + u * ((r_max * r_max) - (r_min * r_min)))


def circular_velocity(x: float, y: float, central_mass: float, g: float) -> tuple[float, float]:
    """
    Velocity of a circular orbit around a mass at the origin.

    |v| = sqrt(G * M / r), perpendicular to the radius, counter-clockwise.
    Returns (0, 0) at the origin.
    """
    r = math.hypot(x, y)
    if r <= 1e-12:
        return 0.0, 0.0
    speed = math.sqrt(g * central_mass / r)
    return -y / r * speed, x / r * speed


def create_galaxy(params: "SimParams", rng: random.Random) -> list[Body]:
    """
    Create a disk galaxy around a central black hole.

    The black hole (id 0) sits at rest at the origin. The remaining
    ``body_count - 1`` bodies are placed in the annulus between
    ``galaxy_inner_radius`` and ``galaxy_radius`` on circular orbits around
    it. Every ``star_every``-th body is a heavy star.

    Args:
        params: Simulation parameters
        rng: Random number generator

    Returns:
        List of bodies, black hole first
    """
    n = int(params.body_count)
    if n <= 0:
        return []

    g = float(params.g)
    m_bh = float(params.central_mass)
    bodies = [Body(id=0, x=0.0, y=0.0, mass=m_bh, radius=float(params.central_radius))]

    r_in = max(float(params.galaxy_inner_radius), float(params.central_radius) * 2.0)
    r_out = max(r_in, float(params.galaxy_radius))
    star_every = int(params.star_every)

    for i in range(1, n):
        r = sample_annulus_radius(rng, r_in, r_out)
        angle = rng.random() * 2.0 * math.pi
        x = r * math.cos(angle)
        y = r * math.sin(angle)
        vx, vy = circular_velocity(x, y, m_bh, g)

        mass = rng.uniform(params.body_mass_min, params.body_mass_max)
        radius = float(params.body_radius)
        if star_every > 0 and i % star_every == 0:
            mass *= params.star_mass_scale
            radius *= params.star_radius_scale

        bodies.append(Body(id=i, x=x, y=y, vx=vx, vy=vy, mass=mass, radius=radius))

    return bodies


class BodyClass(NamedTuple):
    """A spectral or size class: share of the population and value ranges."""
    name: str
    share: float  # percent of generated bodies
    mass: tuple[float, float]  # in reference masses
    radius: tuple[float, float]  # in reference radii


# Main-sequence classes, masses in suns.
STAR_CLASSES = (
    BodyClass("O", 0.00003, (16.0, 60.0), (3.0, 5.0)),
    BodyClass("B", 0.13, (2.1, 16.0), (1.9, 3.0)),
    BodyClass("A", 0.6, (1.4, 2.1), (1.4, 1.9)),
    BodyClass("F", 3.0, (1.04, 1.4), (1.04, 1.3)),
    BodyClass("G", 7.6, (0.8, 1.04), (0.8, 1.04)),
    BodyClass("K", 12.1, (0.45, 0.8), (0.45, 0.8)),
    BodyClass("M", 76.56997, (0.08, 0.45), (0.08, 0.45)),
)

# Planet size classes, masses in Earths.
PLANET_CLASSES = (
    BodyClass("Asteroidian", 10.0, (1e-6, 1e-5), (0.1, 0.3)),
    BodyClass("Mercurian", 15.0, (1e-5, 0.1), (0.3, 0.7)),
    BodyClass("Subterran", 15.0, (0.1, 0.5), (0.5, 1.2)),
    BodyClass("Terran", 20.0, (0.5, 2.0), (0.8, 1.9)),
    BodyClass("Superterran", 15.0, (2.0, 10.0), (1.3, 3.3)),
    BodyClass("Neptunian", 15.0, (10.0, 50.0), (2.1, 5.7)),
    BodyClass("Jovian", 10.0, (50.0, 200.0), (3.5, 10.0)),
)


def pick_class(table: tuple[BodyClass, ...], u: float) -> tuple[BodyClass, float]:
    """
    Map a uniform draw u in [0, 1) to a class and a position t in [0, 1) inside it.

    Classes own consecutive slices of [0, 100) sized by their share; the last
    class absorbs rounding.
    """
    total = math.fsum(c.share for c in table)
    x = u * total
    lo = 0.0
    for cls in table[:-1]:
        hi = lo + cls.share
        if x < hi:
            return cls, (x - lo) / cls.share
        lo = hi
    last = table[-1]
    return last, min(1.0, max(0.0, (x - lo) / last.share))


def _lerp(span: tuple[float, float], t: float) -> float:
    return span[0] + (span[1] - span[0]) * t


def sample_star(rng: random.Random, params: "SimParams") -> tuple[str, float, float]:
    """Draw a star. Returns (class name, mass, radius)."""
    cls, t = pick_class(STAR_CLASSES, rng.random())
    return cls.name, params.sun_mass * _lerp(cls.mass, t), params.sun_radius * _lerp(cls.radius, t)


def sample_planet(rng: random.Random, params: "SimParams") -> tuple[str, float, float]:
    """Draw a planet. Returns (class name, mass, radius)."""
    cls, t = pick_class(PLANET_CLASSES, rng.random())
    return cls.name, params.planet_mass * _lerp(cls.mass, t), params.planet_radius * _lerp(cls.radius, t)


def create_star_system(first_id: int, params: "SimParams", rng: random.Random) -> list[Body]:
    """
    Create one star with its planets.

    The star sits at rest somewhere inside ``galaxy_radius``, pulled in far
    enough that its widest orbit stays inside that radius. Each planet is
    placed between ``orbit_min_ratio`` and ``orbit_max_ratio`` star radii
    from the star on a circular orbit around it, clockwise or
    counter-clockwise with equal odds.

    Returns:
        The star (id ``first_id``) followed by its planets
    """
    g = float(params.g)
    _, m_star, r_star = sample_star(rng, params)
    orbit_lo = r_star * params.orbit_min_ratio
    orbit_hi = r_star * params.orbit_max_ratio

    reach = max(0.0, float(params.galaxy_radius) - orbit_hi)
    r = rng.uniform(0.0, reach)
    angle = rng.random() * 2.0 * math.pi
    sx = r * math.cos(angle)
    sy = r * math.sin(angle)
    system = [Body(id=first_id, x=sx, y=sy, mass=m_star, radius=r_star)]

    count = rng.randint(params.min_bodies_per_system, params.max_bodies_per_system)
    for k in range(1, count + 1):
        _, m, radius = sample_planet(rng, params)
        d = rng.uniform(orbit_lo, orbit_hi)
        a = rng.random() * 2.0 * math.pi
        dx = d * math.cos(a)
        dy = d * math.sin(a)
        vx, vy = circular_velocity(dx, dy, m_star, g)
        if rng.random() < 0.5:
            vx, vy = -vx, -vy
        system.append(Body(id=first_id + k, x=sx + dx, y=sy + dy, vx=vx, vy=vy, mass=m, radius=radius))

    return system


def create_star_systems(params: "SimParams", rng: random.Random) -> list[Body]:
    """Create ``params.systems`` star systems with consecutive ids."""
    bodies: list[Body] = []
    for _ in range(int(params.systems)):
        bodies.extend(create_star_system(len(bodies), params, rng))
    return bodies


def create_random_distribution(params: "SimParams", rng: random.Random) -> list[Body]:
    """
    Create a uniform random distribution of bodies.

    Positions are uniform inside the world box (kept a small margin away from
    the edges), velocities point in a random direction with a speed up to
    ``initial_speed``.
    """
    hw = float(params.world_width) * 0.5 * 0.95
    hh = float(params.world_height) * 0.5 * 0.95
    bodies: list[Body] = []

    for i in range(int(params.body_count)):
        x = rng.uniform(-hw, hw)
        y = rng.uniform(-hh, hh)
        angle = rng.random() * 2.0 * math.pi
        speed = rng.random() * float(params.initial_speed)
        bodies.append(Body(
            id=i,
            x=x, y=y,
            vx=math.cos(angle) * speed,
            vy=math.sin(angle) * speed,
            mass=rng.uniform(params.body_mass_min, params.body_mass_max),
            radius=float(params.body_radius),
        ))

    return bodies


def create_bodies(params: "SimParams", rng: random.Random | None = None) -> list[Body]:
    """Populate the world according to ``params.init_mode``."""
    if rng is None:
        rng = random.Random(int(params.seed))
    mode = str(params.init_mode)
    if mode == "galaxy":
        return create_galaxy(params, rng)
    if mode == "systems":
        return create_star_systems(params, rng)
    if mode == "random":
        return create_random_distribution(params, rng)
    if mode == "empty":
        return []
    raise ValueError(f"unknown init_mode: {mode!r}")
