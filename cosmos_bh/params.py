from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class SimParams:
    world_width: float = 16384.0
    world_height: float = 16384.0
    max_depth: int = 100

    theta: float = 0.95  # Barnes-Hut acceptance threshold
    g: float = 1.0
    softening: float = 0.0
    time_scale: float = 1.0
    iterations_per_calculation: int = 1  # force pass every N ticks, scaled by N
    max_acceleration: float = 0.0  # per-axis clamp, 0 = off

    collisions_enabled: bool = True
    radius_exponent: float = 0.5

    bounds_policy: str = "remove"  # remove | clamp
    bounce: float = 0.0

    rebuild_mode: str = "batch"  # batch | incremental
    parallel_build: bool = True
    build_workers: int = 0  # 0 = cpu_count - 1
    force_workers: int = 1  # 0 = cpu_count - 1
    reset_interval: int = 50
    reset_removal_threshold: int = 500

    init_mode: str = "galaxy"  # galaxy | systems | random | empty
    body_count: int = 1000
    central_mass: float = 1.0e5
    central_radius: float = 40.0
    galaxy_inner_radius: float = 200.0
    galaxy_radius: float = 3000.0
    body_mass_min: float = 1.0
    body_mass_max: float = 10.0
    body_radius: float = 1.0
    star_every: int = 100
    star_mass_scale: float = 1000.0
    star_radius_scale: float = 8.0
    systems: int = 5  # star systems (init_mode=systems)
    min_bodies_per_system: int = 50
    max_bodies_per_system: int = 100
    sun_mass: float = 1.0e4  # class G reference star
    sun_radius: float = 20.0
    planet_mass: float = 1.0  # Terran reference planet
    planet_radius: float = 1.0
    orbit_min_ratio: float = 3.0  # planet distance in star radii
    orbit_max_ratio: float = 30.0
    initial_speed: float = 5.0
    seed: int = 1

    def clamp(self) -> "SimParams":
        self.world_width = max(1.0, float(self.world_width))
        self.world_height = max(1.0, float(self.world_height))
        self.max_depth = max(1, min(200, int(self.max_depth)))

        self.theta = min(2.0, max(0.0, float(self.theta)))
        self.g = max(0.0, float(self.g))
        self.softening = max(0.0, float(self.softening))
        self.time_scale = min(100.0, max(0.0, float(self.time_scale)))
        self.iterations_per_calculation = max(1, min(64, int(self.iterations_per_calculation)))
        self.max_acceleration = max(0.0, float(self.max_acceleration))

        self.collisions_enabled = bool(self.collisions_enabled)
        self.radius_exponent = min(1.0, max(0.0, float(self.radius_exponent)))

        self.bounds_policy = str(self.bounds_policy or "remove").strip().lower()
        if self.bounds_policy not in {"remove", "clamp"}:
            self.bounds_policy = "remove"
        self.bounce = min(1.0, max(0.0, float(self.bounce)))

        self.rebuild_mode = str(self.rebuild_mode or "batch").strip().lower()
        if self.rebuild_mode not in {"batch", "incremental"}:
            self.rebuild_mode = "batch"
        self.parallel_build = bool(self.parallel_build)
        self.build_workers = max(0, min(4, int(self.build_workers)))
        self.force_workers = max(0, min(256, int(self.force_workers)))
        self.reset_interval = max(1, int(self.reset_interval))
        self.reset_removal_threshold = max(0, int(self.reset_removal_threshold))

        self.init_mode = str(self.init_mode or "galaxy").strip().lower()
        if self.init_mode not in {"galaxy", "systems", "random", "empty"}:
            self.init_mode = "galaxy"
        self.body_count = max(0, int(self.body_count))
        self.central_mass = max(1e-9, float(self.central_mass))
        self.central_radius = max(0.0, float(self.central_radius))
        self.body_mass_min = max(1e-9, float(self.body_mass_min))
        self.body_mass_max = max(self.body_mass_min, float(self.body_mass_max))
        self.body_radius = max(0.0, float(self.body_radius))
        self.star_every = max(0, int(self.star_every))
        self.star_mass_scale = max(1.0, float(self.star_mass_scale))
        self.star_radius_scale = max(1.0, float(self.star_radius_scale))
        self.systems = max(0, int(self.systems))
        self.min_bodies_per_system = max(0, int(self.min_bodies_per_system))
        self.max_bodies_per_system = max(self.min_bodies_per_system, int(self.max_bodies_per_system))
        self.sun_mass = max(1e-9, float(self.sun_mass))
        self.sun_radius = max(1e-9, float(self.sun_radius))
        self.planet_mass = max(1e-9, float(self.planet_mass))
        self.planet_radius = max(0.0, float(self.planet_radius))
        self.orbit_min_ratio = max(1.0, float(self.orbit_min_ratio))
        self.orbit_max_ratio = max(self.orbit_min_ratio, float(self.orbit_max_ratio))
        self.initial_speed = max(0.0, float(self.initial_speed))
        self.seed = int(self.seed)

        domain = 0.5 * min(self.world_width, self.world_height)
        self.galaxy_radius = min(domain * 0.95, max(1.0, float(self.galaxy_radius)))
        self.galaxy_inner_radius = min(self.galaxy_radius, max(0.0, float(self.galaxy_inner_radius)))
        return self

    def validate(self) -> list[str]:
        warnings: list[str] = []

        for name, extent in (("world_width", self.world_width), ("world_height", self.world_height)):
            if extent >= 1.0 and not math.log2(extent).is_integer():
                warnings.append(f"{name}={extent:g} is not a power of two; deep nodes lose exact splits.")
        if self.theta <= 0.0:
            warnings.append("theta=0 disables the approximation (exact O(N²) walk).")
        elif self.theta > 1.0:
            warnings.append("theta > 1 accepts cells wider than their distance; forces get coarse.")
        if self.bounds_policy != "clamp" and self.bounce > 0.0:
            warnings.append("bounce only applies with bounds_policy=clamp.")
        if not self.collisions_enabled and abs(self.radius_exponent - 0.5) > 1e-9:
            warnings.append("radius_exponent ignored while collisions_enabled is false.")
        if self.softening <= 0.0 and not self.collisions_enabled:
            warnings.append("no softening and no collisions: close encounters can blow up.")
        if self.rebuild_mode == "incremental" and self.parallel_build:
            warnings.append("parallel_build only applies to full rebuilds in rebuild_mode=incremental.")
        if self.init_mode == "random" and self.star_every > 0:
            warnings.append("init_mode=random: galaxy and star params are ignored.")
        if self.init_mode == "systems" and self.systems == 0:
            warnings.append("init_mode=systems with systems=0 leaves the world empty.")
        if self.time_scale <= 0.0:
            warnings.append("time_scale=0 freezes motion; forces still accumulate.")

        return warnings

    @classmethod
    def load(cls, path: str | Path) -> "SimParams":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("Parameter file must contain a JSON object.")
        filtered: dict[str, Any] = {k: v for k, v in data.items() if k in cls.__annotations__}
        return cls(**filtered).clamp()

    def save(self, path: str | Path) -> None:
        data = asdict(self)
        Path(path).write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
