"""
Parameter groups for the Barnes-Hut galaxy simulation.

This module centralizes which parameter changes need the world to be
repopulated, the quadtree to be rebuilt, or the running solvers to be
retuned.
"""

from __future__ import annotations

from typing import Iterable


# =============================================================================
# Repopulate Keys - Changes that require a fresh set of bodies
# =============================================================================

REPOPULATE_KEYS = {
    "init_mode",
    "body_count",
    "central_mass",
    "central_radius",
    "galaxy_inner_radius",
    "galaxy_radius",
    "body_mass_min",
    "body_mass_max",
    "body_radius",
    "star_every",
    "star_mass_scale",
    "star_radius_scale",
    "systems",
    "min_bodies_per_system",
    "max_bodies_per_system",
    "sun_mass",
    "sun_radius",
    "planet_mass",
    "planet_radius",
    "orbit_min_ratio",
    "orbit_max_ratio",
    "initial_speed",
    "seed",
}


# =============================================================================
# Tree Keys - Changes that invalidate the quadtree geometry
# =============================================================================

TREE_KEYS = {
    "world_width",
    "world_height",
    "max_depth",
}


# =============================================================================
# Solver Keys - Pushed to the force solver and collision resolver
# =============================================================================

SOLVER_KEYS = {
    "theta",
    "force_workers",
    "radius_exponent",
}


def classify_changes(keys: Iterable[str]) -> tuple[bool, bool, bool]:
    """
    Summarize a set of changed keys.

    Returns:
        (repopulate, rebuild_tree, retune_solver)
    """
    keys = set(keys)
    repopulate = bool(keys & REPOPULATE_KEYS)
    rebuild = repopulate or bool(keys & TREE_KEYS)
    retune = bool(keys & SOLVER_KEYS)
    return repopulate, rebuild, retune
