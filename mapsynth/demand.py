"""
Demand assembly: turn each person's trip templates into concrete trips.

Destinations are graph elements compatible with the trip purpose, drawn
with gravity weighting among the candidates within a travel-plausible
radius of home. A template with no candidate is dropped and counted as
unresolved; it is never given a made-up destination.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

import numpy as np
from scipy.spatial import cKDTree

from .config import PipelineConfig
from .conflation import Match
from .errors import UnresolvedTrip
from .graph import StreetGraph
from .parallel import derive_rng, parallel_map
from .population import Household
from .quality import QualityReport
from .records import NormalizedRecord, RecordKind

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR

# Offset in the gravity weight 1 / (d + offset), avoids favouring zero-distance hits
GRAVITY_OFFSET = 100.0

# Return trips leave after the dwell time plus up to this much jitter (hours)
DWELL_JITTER_HOURS = 0.5

# POI category / element tag value -> purposes it can serve
PURPOSES_BY_CATEGORY: dict[str, tuple[str, ...]] = {
    # work
    'office': ('work',),
    'industrial': ('work',),
    'commercial': ('work', 'shop'),
    'company': ('work',),
    'government': ('work',),
    'hospital': ('work',),
    'clinic': ('work',),
    'townhall': ('work',),
    'warehouse': ('work',),
    # school
    'school': ('school', 'work'),
    'kindergarten': ('school', 'work'),
    'college': ('school', 'work'),
    'university': ('school', 'work'),
    # shop
    'retail': ('shop', 'work'),
    'supermarket': ('shop', 'work'),
    'convenience': ('shop',),
    'mall': ('shop', 'work'),
    'marketplace': ('shop',),
    'bakery': ('shop',),
    'pharmacy': ('shop',),
    'shop': ('shop', 'work'),
    # leisure
    'restaurant': ('leisure', 'work'),
    'cafe': ('leisure',),
    'bar': ('leisure',),
    'pub': ('leisure',),
    'cinema': ('leisure', 'work'),
    'theatre': ('leisure',),
    'library': ('leisure', 'work'),
    'park': ('leisure',),
    'sports_centre': ('leisure',),
    'playground': ('leisure',),
    'community_centre': ('leisure',),
}

# Element tags consulted for purposes, besides matched POIs
DESTINATION_TAGS = ('landuse', 'amenity', 'shop', 'office')


def purposes_for(category: Optional[str]) -> tuple[str, ...]:
    if not category:
        return ()
    return PURPOSES_BY_CATEGORY.get(str(category).strip().lower(), ())


# =============================================================================
# DESTINATIONS
# =============================================================================

class DestinationCatalog:
    """
    Purpose -> candidate destination elements, with a KD-tree per purpose
    over element representative points. Also holds transit access points.
    """

    def __init__(
        self,
        candidates: Mapping[str, Iterable[int]],
        element_xy: Mapping[int, tuple[float, float]],
        transit_elements: Iterable[int] = (),
    ):
        self._ids: dict[str, np.ndarray] = {}
        self._trees: dict[str, cKDTree] = {}
        self._xy: dict[int, tuple[float, float]] = {}
        for purpose, ids in sorted(candidates.items()):
            ids = np.array(sorted(set(ids)), dtype=np.int64)
            if ids.size == 0:
                continue
            coords = np.array([element_xy[i] for i in ids])
            self._ids[purpose] = ids
            self._trees[purpose] = cKDTree(coords)
            for i, xy in zip(ids, coords):
                self._xy[int(i)] = (float(xy[0]), float(xy[1]))
        transit = sorted(set(transit_elements))
        self._transit_tree = cKDTree(np.array([element_xy[i] for i in transit])) if transit else None

    @classmethod
    def build(
        cls,
        graph: StreetGraph,
        records: Iterable[NormalizedRecord],
        matches: Iterable[Match],
    ) -> "DestinationCatalog":
        """
        Collect destination candidates from matched POIs and element tags.

        POI records are joined to matches on (kind, record_id); record ids
        are unique within a kind.
        """
        poi_categories = {
            r.record_id: r.get('category') for r in records if r.kind is RecordKind.POI
        }
        candidates: dict[str, set[int]] = defaultdict(set)
        transit = set()
        for m in matches:
            if not m.is_anchored:
                continue
            if m.kind is RecordKind.POI:
                for purpose in purposes_for(poi_categories.get(m.record_id)):
                    candidates[purpose].add(m.element_id)
            elif m.kind is RecordKind.TRANSIT_STOP:
                transit.add(m.element_id)

        for element in graph:
            for tag in DESTINATION_TAGS:
                for purpose in purposes_for(element.tags.get(tag)):
                    candidates[purpose].add(element.element_id)

        element_xy = {
            eid: graph[eid].representative_xy()
            for eid in set().union(transit, *candidates.values())
        }
        catalog = cls(candidates, element_xy, transit)
        logger.info(
            "Destination candidates: "
            + ", ".join(f"{p}={catalog.count(p)}" for p in sorted(candidates))
            + f"; transit access points={len(transit)}"
        )
        return catalog

    def count(self, purpose: str) -> int:
        ids = self._ids.get(purpose)
        return 0 if ids is None else int(ids.size)

    def draw(
        self,
        purpose: str,
        origin_xy: tuple[float, float],
        radius: float,
        rng: np.random.Generator,
        exclude: Optional[int] = None,
    ) -> tuple[int, float]:
        """
        Draw a destination for a purpose, gravity-weighted by distance.

        Returns:
            (element_id, straight-line distance)

        Raises:
            LookupError: If no candidate lies within radius
        """
        tree = self._trees.get(purpose)
        if tree is None:
            raise LookupError(purpose)
        idx = sorted(tree.query_ball_point(origin_xy, r=radius))
        ids = self._ids[purpose][idx] if idx else np.empty(0, dtype=np.int64)
        if exclude is not None:
            keep = ids != exclude
            ids = ids[keep]
            idx = [i for i, k in zip(idx, keep) if k]
        if ids.size == 0:
            raise LookupError(purpose)
        coords = tree.data[idx]
        distances = np.hypot(coords[:, 0] - origin_xy[0], coords[:, 1] - origin_xy[1])
        weights = 1.0 / (distances + GRAVITY_OFFSET)
        choice = int(rng.choice(len(ids), p=weights / weights.sum()))
        return int(ids[choice]), float(distances[choice])

    def xy(self, element_id: int) -> tuple[float, float]:
        return self._xy[element_id]

    def near_transit(self, xy: tuple[float, float], distance: float) -> bool:
        if self._transit_tree is None:
            return False
        d, _ = self._transit_tree.query(xy, k=1, distance_upper_bound=distance)
        return bool(np.isfinite(d))


# =============================================================================
# TRIPS
# =============================================================================

@dataclass(frozen=True)
class Trip:
    trip_id: int
    person_id: int
    household_id: int
    origin: int
    destination: int
    purpose: str
    departure_s: int
    mode_hint: str


@dataclass(frozen=True)
class TripDraft:
    person_id: int
    household_id: int
    origin: int
    destination: int
    purpose: str
    departure_s: int
    mode_hint: str


def draw_departure(rng: np.random.Generator, purpose: str, config: PipelineConfig) -> int:
    """Departure time in seconds since midnight, clipped to the day."""
    dist = config.departure_time_by_purpose.get(purpose, {'mean_hour': 12.0, 'std_hours': 3.0})
    hour = rng.normal(dist['mean_hour'], dist['std_hours'])
    seconds = int(round(hour * SECONDS_PER_HOUR))
    return min(max(seconds, 0), SECONDS_PER_DAY - 1)


def mode_hint(
    distance: float,
    origin_xy: tuple[float, float],
    destination_xy: tuple[float, float],
    catalog: DestinationCatalog,
    config: PipelineConfig,
) -> str:
    if distance <= config.walk_max_distance:
        return 'walk'
    if distance <= config.bike_max_distance:
        return 'bike'
    if (catalog.near_transit(origin_xy, config.transit_access_distance)
            and catalog.near_transit(destination_xy, config.transit_access_distance)):
        return 'transit'
    return 'drive'


def plan_household(
    household: Household,
    home_xy: tuple[float, float],
    catalog: DestinationCatalog,
    config: PipelineConfig,
) -> tuple[list[TripDraft], list[UnresolvedTrip]]:
    """
    Trips for every person of one household, from the household's own
    random stream.

    Returns:
        (trip drafts in person/template order, unresolved templates)
    """
    rng = derive_rng(config.seed, "demand", household.household_id)
    drafts: list[TripDraft] = []
    unresolved: list[UnresolvedTrip] = []
    for person in household.persons:
        for template in person.trip_templates:
            radius = config.destination_radius_by_purpose.get(template.purpose, 0.0)
            try:
                destination, distance = catalog.draw(
                    template.purpose, home_xy, radius, rng, exclude=household.home,
                )
            except LookupError:
                unresolved.append(UnresolvedTrip(person.person_id, template.purpose, radius))
                continue
            dest_xy = catalog.xy(destination)
            mode = mode_hint(distance, home_xy, dest_xy, catalog, config)
            departure = draw_departure(rng, template.purpose, config)
            drafts.append(TripDraft(
                person.person_id, household.household_id, household.home, destination,
                template.purpose, departure, mode,
            ))
            if template.return_home:
                dwell = config.dwell_hours_by_purpose.get(template.purpose, 1.0)
                dwell += rng.uniform(-DWELL_JITTER_HOURS, DWELL_JITTER_HOURS)
                back = departure + int(round(max(dwell, 0.0) * SECONDS_PER_HOUR))
                drafts.append(TripDraft(
                    person.person_id, household.household_id, destination, household.home,
                    'home', back, mode,
                ))
    return drafts, unresolved


def _plan_household_unit(context, item):
    catalog, config = context
    household, home_xy = item
    return plan_household(household, home_xy, catalog, config)


@dataclass
class DemandResult:
    trips: list[Trip] = field(default_factory=list)
    unresolved: list[UnresolvedTrip] = field(default_factory=list)

    def to_report(self) -> QualityReport:
        report = QualityReport()
        report.trips = len(self.trips)
        report.trips_by_purpose = Counter(t.purpose for t in self.trips)
        report.unresolved_by_purpose = Counter(u.purpose for u in self.unresolved)
        return report


class DemandAssembler:
    """
    Assigns destinations, departure times and mode hints to trip templates.

    Args:
        graph: Base street graph
        catalog: Destination candidates
        config: Pipeline configuration
    """

    def __init__(
        self,
        graph: StreetGraph,
        catalog: DestinationCatalog,
        config: Optional[PipelineConfig] = None,
    ):
        self.graph = graph
        self.catalog = catalog
        self.config = config or PipelineConfig()

    def assemble(
        self,
        households: Iterable[Household],
        n_workers: Optional[int] = None,
    ) -> DemandResult:
        """
        Plan trips for all households. Trip ids follow household order.

        Args:
            households: Synthesized households
            n_workers: Worker processes (default: config.n_workers)

        Returns:
            DemandResult with every household processed
        """
        n_workers = n_workers if n_workers is not None else self.config.n_workers
        items = [(h, self.graph[h.home].representative_xy()) for h in households]
        planned = parallel_map(
            _plan_household_unit,
            items,
            context=(self.catalog, self.config),
            n_workers=n_workers,
            desc="Assembling trips",
            verbose=self.config.verbose,
        )

        result = DemandResult()
        for drafts, unresolved in planned:
            for d in drafts:
                result.trips.append(Trip(
                    trip_id=len(result.trips),
                    person_id=d.person_id,
                    household_id=d.household_id,
                    origin=d.origin,
                    destination=d.destination,
                    purpose=d.purpose,
                    departure_s=d.departure_s,
                    mode_hint=d.mode_hint,
                ))
            result.unresolved.extend(unresolved)

        if result.unresolved:
            by_purpose = Counter(u.purpose for u in result.unresolved)
            logger.warning(
                f"{len(result.unresolved)} trip templates unresolved: "
                + ", ".join(f"{p}={n}" for p, n in sorted(by_purpose.items()))
            )
        logger.info(f"Assembled {len(result.trips)} trips for {len(items)} households")
        return result
