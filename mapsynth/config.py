"""
Pipeline configuration.

Defaults live on PipelineConfig; load_config overlays a JSON file on top of
them. Distances are in the units of the base graph's CRS (metres once the
graph has been projected).
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from .errors import ConfigError

U64_MAX = 2**64 - 1

# Search radius per record kind
DEFAULT_MATCH_RADIUS_BY_KIND: dict[str, float] = {
    'collision': 25.0,
    'transit_stop': 30.0,
    'poi': 50.0,
    'census_tract': 0.0,  # containment, radius unused
}

# Travel-plausible destination radius per trip purpose
DEFAULT_DESTINATION_RADIUS_BY_PURPOSE: dict[str, float] = {
    'work': 15000.0,
    'school': 5000.0,
    'shop': 3000.0,
    'leisure': 5000.0,
}

# Departure time-of-day distribution per purpose (normal, hours)
DEFAULT_DEPARTURE_TIME_BY_PURPOSE: dict[str, dict[str, float]] = {
    'work': {'mean_hour': 8.0, 'std_hours': 1.0},
    'school': {'mean_hour': 7.75, 'std_hours': 0.5},
    'shop': {'mean_hour': 14.0, 'std_hours': 3.0},
    'leisure': {'mean_hour': 18.0, 'std_hours': 2.0},
}

# Time spent at the destination before the return trip
DEFAULT_DWELL_HOURS_BY_PURPOSE: dict[str, float] = {
    'work': 8.5,
    'school': 7.0,
    'shop': 1.0,
    'leisure': 2.5,
}

HOME_WEIGHTINGS = ('uniform', 'length')


@dataclass
class PipelineConfig:
    """All recognized pipeline options."""

    seed: int = 42
    match_radius_by_kind: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_MATCH_RADIUS_BY_KIND)
    )
    ambiguity_tie_band: float = 0.05
    quality_skip_threshold: float = 0.1
    min_match_confidence: float = 0.0
    n_workers: int = 1

    # Population synthesis
    population_scale: float = 1.0
    home_weighting: str = 'uniform'
    ipf_max_iterations: int = 100
    ipf_tolerance: float = 1e-6

    # Demand assembly
    destination_radius_by_purpose: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_DESTINATION_RADIUS_BY_PURPOSE)
    )
    departure_time_by_purpose: dict[str, dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_DEPARTURE_TIME_BY_PURPOSE.items()}
    )
    dwell_hours_by_purpose: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_DWELL_HOURS_BY_PURPOSE)
    )
    walk_max_distance: float = 1000.0
    bike_max_distance: float = 4000.0
    transit_access_distance: float = 400.0

    check_determinism: bool = False
    verbose: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check option values.

        Raises:
            ConfigError: If any option is out of range
        """
        if not isinstance(self.seed, int) or not 0 <= self.seed <= U64_MAX:
            raise ConfigError(f"seed must be an unsigned 64-bit integer, got {self.seed!r}")
        if not 0.0 <= self.ambiguity_tie_band < 1.0:
            raise ConfigError(f"ambiguity_tie_band must be in [0, 1), got {self.ambiguity_tie_band}")
        if not 0.0 <= self.quality_skip_threshold <= 1.0:
            raise ConfigError(
                f"quality_skip_threshold must be in [0, 1], got {self.quality_skip_threshold}"
            )
        if self.min_match_confidence < 0:
            raise ConfigError("min_match_confidence must be non-negative")
        if self.n_workers < 1:
            raise ConfigError(f"n_workers must be >= 1, got {self.n_workers}")
        if self.population_scale <= 0:
            raise ConfigError(f"population_scale must be positive, got {self.population_scale}")
        if self.home_weighting not in HOME_WEIGHTINGS:
            raise ConfigError(
                f"home_weighting must be one of {HOME_WEIGHTINGS}, got {self.home_weighting!r}"
            )
        if self.ipf_max_iterations < 1 or self.ipf_tolerance <= 0:
            raise ConfigError("ipf_max_iterations must be >= 1 and ipf_tolerance positive")
        for kind, radius in self.match_radius_by_kind.items():
            if radius < 0:
                raise ConfigError(f"match radius for {kind} must be non-negative, got {radius}")
        for purpose, radius in self.destination_radius_by_purpose.items():
            if radius <= 0:
                raise ConfigError(f"destination radius for {purpose} must be positive, got {radius}")
        for purpose, dist in self.departure_time_by_purpose.items():
            if 'mean_hour' not in dist or 'std_hours' not in dist:
                raise ConfigError(
                    f"departure_time_by_purpose[{purpose}] needs 'mean_hour' and 'std_hours'"
                )
            if dist['std_hours'] < 0:
                raise ConfigError(f"departure std for {purpose} must be non-negative")

    def match_radius(self, kind: str) -> float:
        try:
            return float(self.match_radius_by_kind[kind])
        except KeyError:
            return DEFAULT_MATCH_RADIUS_BY_KIND.get(kind, 0.0)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe view, used for provenance."""
        return asdict(self)


def load_config(path: Path | str | None = None, **overrides: Any) -> PipelineConfig:
    """
    Load configuration from a JSON file, overlaid on defaults.

    Mapping options (radii, time distributions) are merged key by key so a
    file can override a single purpose without restating the rest.

    Args:
        path: JSON config file (optional)
        **overrides: Explicit option values, applied last

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: On unknown keys, unreadable JSON, or invalid values
    """
    payload: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        if not isinstance(payload, dict):
            raise ConfigError(f"Config {path} must contain a JSON object")
    payload.update(overrides)

    known = {f.name for f in fields(PipelineConfig)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown config option(s): {', '.join(unknown)}")

    defaults = PipelineConfig()
    values: dict[str, Any] = {}
    for name, value in payload.items():
        default = getattr(defaults, name)
        if isinstance(default, dict) and isinstance(value, dict):
            merged = dict(default)
            merged.update(value)
            values[name] = merged
        else:
            values[name] = value

    try:
        return PipelineConfig(**values)
    except TypeError as e:
        raise ConfigError(str(e)) from e
