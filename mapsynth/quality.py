"""
Quality report: per-stage counts for operational monitoring.

Parallel units return their own counters; the report is built by summing
them after the stage (QualityReport.merge), never by shared mutation.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class QualityReport:
    """Counts of skipped/unmatched/ambiguous/unresolved items per stage."""

    # source name -> {"emitted": n, "skipped": n}
    sources: dict[str, dict[str, int]] = field(default_factory=dict)
    # record kind -> Counter of match statuses (+ "invalid")
    conflation: dict[str, Counter] = field(default_factory=dict)
    # zone id -> reason
    coverage_gaps: dict[str, str] = field(default_factory=dict)
    zones_synthesized: int = 0
    households: int = 0
    persons: int = 0
    trips: int = 0
    trips_by_purpose: Counter = field(default_factory=Counter)
    unresolved_by_purpose: Counter = field(default_factory=Counter)

    def record_source(self, name: str, emitted: int, skipped: int) -> None:
        self.sources[name] = {"emitted": int(emitted), "skipped": int(skipped)}

    def merge(self, other: "QualityReport") -> "QualityReport":
        """Sum another report into this one. Returns self."""
        for name, counts in other.sources.items():
            mine = self.sources.setdefault(name, {"emitted": 0, "skipped": 0})
            for key, value in counts.items():
                mine[key] = mine.get(key, 0) + value
        for kind, counts in other.conflation.items():
            self.conflation.setdefault(kind, Counter()).update(counts)
        self.coverage_gaps.update(other.coverage_gaps)
        self.zones_synthesized += other.zones_synthesized
        self.households += other.households
        self.persons += other.persons
        self.trips += other.trips
        self.trips_by_purpose.update(other.trips_by_purpose)
        self.unresolved_by_purpose.update(other.unresolved_by_purpose)
        return self

    @property
    def unresolved_trips(self) -> int:
        return sum(self.unresolved_by_purpose.values())

    def ambiguous(self, kind: str | None = None) -> int:
        kinds = [kind] if kind else list(self.conflation)
        return sum(self.conflation.get(k, Counter())["ambiguous"] for k in kinds)

    def matched_fraction(self, kind: str) -> float:
        """Share of records of a kind anchored to the graph (matched or ambiguous)."""
        counts = self.conflation.get(kind)
        if not counts:
            return 0.0
        total = counts["matched"] + counts["ambiguous"] + counts["unmatched"]
        if total == 0:
            return 0.0
        return (counts["matched"] + counts["ambiguous"]) / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "sources": {k: dict(v) for k, v in sorted(self.sources.items())},
            "conflation": {
                kind: {
                    "matched": counts["matched"],
                    "ambiguous": counts["ambiguous"],
                    "unmatched": counts["unmatched"],
                    "invalid": counts["invalid"],
                    "matched_fraction": round(self.matched_fraction(kind), 6),
                }
                for kind, counts in sorted(self.conflation.items())
            },
            "population": {
                "zones_synthesized": self.zones_synthesized,
                "coverage_gaps": dict(sorted(self.coverage_gaps.items())),
                "households": self.households,
                "persons": self.persons,
            },
            "demand": {
                "trips": self.trips,
                "trips_by_purpose": dict(sorted(self.trips_by_purpose.items())),
                "unresolved_by_purpose": dict(sorted(self.unresolved_by_purpose.items())),
                "unresolved_trips": self.unresolved_trips,
            },
        }

    def save(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
