"""
Scenario model and persistence.

A Scenario is the simulation-ready output: households with their persons,
concrete trips, and provenance. Serialization uses a fixed field order so
the same Scenario always produces the same bytes.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from .demand import Trip
from .errors import ScenarioInvariantError
from .graph import StreetGraph
from .population import Household, Person, TripTemplate

logger = logging.getLogger(__name__)

SCENARIO_FORMAT_VERSION = 1

# Provenance keys not covered by Scenario.fingerprint()
VOLATILE_PROVENANCE_KEYS = ('run_timestamp',)


def _canonical(value: Any) -> Any:
    """Recursively sort mapping keys so provenance serializes stably."""
    if isinstance(value, dict):
        return {str(k): _canonical(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

def _person_to_dict(p: Person) -> dict:
    return {
        "person_id": p.person_id,
        "household_id": p.household_id,
        "age": p.age,
        "role": p.role,
        "employed": p.employed,
        "trip_templates": [
            {"purpose": t.purpose, "return_home": t.return_home} for t in p.trip_templates
        ],
    }


def _person_from_dict(d: dict) -> Person:
    return Person(
        person_id=int(d["person_id"]),
        household_id=int(d["household_id"]),
        age=int(d["age"]),
        role=d["role"],
        employed=bool(d["employed"]),
        trip_templates=tuple(
            TripTemplate(t["purpose"], bool(t["return_home"])) for t in d["trip_templates"]
        ),
    )


def _household_to_dict(h: Household) -> dict:
    return {
        "household_id": h.household_id,
        "zone_id": h.zone_id,
        "home": h.home,
        "size": h.size,
        "attributes": [[k, v] for k, v in h.attributes],
        "persons": [_person_to_dict(p) for p in h.persons],
    }


def _household_from_dict(d: dict) -> Household:
    return Household(
        household_id=int(d["household_id"]),
        zone_id=str(d["zone_id"]),
        home=int(d["home"]),
        size=int(d["size"]),
        persons=tuple(_person_from_dict(p) for p in d["persons"]),
        attributes=tuple((k, v) for k, v in d["attributes"]),
    )


def _trip_to_dict(t: Trip) -> dict:
    return {
        "trip_id": t.trip_id,
        "person_id": t.person_id,
        "household_id": t.household_id,
        "origin": t.origin,
        "destination": t.destination,
        "purpose": t.purpose,
        "departure_s": t.departure_s,
        "mode_hint": t.mode_hint,
    }


def _trip_from_dict(d: dict) -> Trip:
    return Trip(
        trip_id=int(d["trip_id"]),
        person_id=int(d["person_id"]),
        household_id=int(d["household_id"]),
        origin=int(d["origin"]),
        destination=int(d["destination"]),
        purpose=d["purpose"],
        departure_s=int(d["departure_s"]),
        mode_hint=d["mode_hint"],
    )


# =============================================================================
# SCENARIO
# =============================================================================

@dataclass(frozen=True)
class Scenario:
    """
    Households, persons and trips referencing base-graph elements by id.

    provenance holds the seed, source dataset fingerprints, the effective
    configuration, the run timestamp and the format version.
    """

    name: str
    households: tuple[Household, ...] = ()
    trips: tuple[Trip, ...] = ()
    provenance: dict[str, Any] = field(default_factory=dict)

    @property
    def persons(self) -> list[Person]:
        return [p for h in self.households for p in h.persons]

    def validate(self, graph: StreetGraph) -> None:
        """
        Check structural invariants against the base graph.

        Raises:
            ScenarioInvariantError: On the first class of violation found
                (all offending ids of that class are listed)
        """
        problems = []
        household_ids = [h.household_id for h in self.households]
        if len(set(household_ids)) != len(household_ids):
            problems.append("duplicate household ids")

        person_household = {}
        for h in self.households:
            if h.size != len(h.persons):
                problems.append(f"household {h.household_id} size {h.size} != {len(h.persons)}")
            if h.home not in graph:
                problems.append(f"household {h.household_id} home {h.home} not in graph")
            for p in h.persons:
                if p.person_id in person_household:
                    problems.append(f"duplicate person id {p.person_id}")
                person_household[p.person_id] = h.household_id

        for t in self.trips:
            for end in (t.origin, t.destination):
                if end is None or end not in graph:
                    problems.append(f"trip {t.trip_id} references missing element {end}")
            if person_household.get(t.person_id) != t.household_id:
                problems.append(
                    f"trip {t.trip_id} person {t.person_id} not in household {t.household_id}"
                )

        if problems:
            shown = "; ".join(problems[:10])
            more = f" (+{len(problems) - 10} more)" if len(problems) > 10 else ""
            raise ScenarioInvariantError(
                f"Scenario '{self.name}' invalid: {shown}{more}", stage="validate",
            )

    def to_dict(self) -> dict:
        return {
            "format_version": SCENARIO_FORMAT_VERSION,
            "name": self.name,
            "provenance": _canonical(self.provenance),
            "households": [_household_to_dict(h) for h in self.households],
            "trips": [_trip_to_dict(t) for t in self.trips],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Scenario":
        version = data.get("format_version")
        if version != SCENARIO_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported scenario format version {version} "
                f"(expected {SCENARIO_FORMAT_VERSION})"
            )
        return cls(
            name=data["name"],
            households=tuple(_household_from_dict(h) for h in data["households"]),
            trips=tuple(_trip_from_dict(t) for t in data["trips"]),
            provenance=data.get("provenance", {}),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=1, ensure_ascii=False, allow_nan=False) + "\n"

    def fingerprint(self) -> str:
        """Content hash excluding volatile provenance (run timestamp)."""
        data = self.to_dict()
        data["provenance"] = {
            k: v for k, v in data["provenance"].items() if k not in VOLATILE_PROVENANCE_KEYS
        }
        payload = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
        return hashlib.blake2b(payload.encode("utf-8"), digest_size=16).hexdigest()


def save_scenario(scenario: Scenario, path: Path | str) -> Path:
    """Write a Scenario as JSON. Returns the written path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(scenario.to_json().encode("utf-8"))
    logger.info(
        f"Saved scenario '{scenario.name}' ({len(scenario.households)} households, "
        f"{len(scenario.trips)} trips) to {path}"
    )
    return path


def load_scenario(path: Path | str) -> Scenario:
    with open(path, "r", encoding="utf-8") as f:
        return Scenario.from_dict(json.load(f))


# =============================================================================
# STATISTICS
# =============================================================================

def get_scenario_stats(scenario: Scenario) -> dict[str, Any]:
    """
    Summary statistics for a scenario.

    Returns:
        Dict with household/person/trip counts, mean household size,
        trips per person, trips by purpose and mode, and mean departure hour
        of outbound trips.
    """
    n_households = len(scenario.households)
    n_persons = sum(h.size for h in scenario.households)
    outbound = [t.departure_s for t in scenario.trips if t.purpose != 'home']
    return {
        'households': n_households,
        'persons': n_persons,
        'trips': len(scenario.trips),
        'mean_household_size': n_persons / n_households if n_households else 0.0,
        'trips_per_person': len(scenario.trips) / n_persons if n_persons else 0.0,
        'trips_by_purpose': dict(sorted(Counter(t.purpose for t in scenario.trips).items())),
        'trips_by_mode': dict(sorted(Counter(t.mode_hint for t in scenario.trips).items())),
        'mean_departure_hour': float(np.mean(outbound)) / 3600 if outbound else None,
    }
