"""
Population synthesis from zone-level aggregate statistics.

For each zone, a household size x composition table is fitted to the zone
marginals with iterative proportional fitting, integerized with
largest-remainder rounding so it sums exactly to the zone's household count,
and expanded into households and persons anchored on the zone's residential
graph elements. Each zone draws from its own generator derived from the
global seed, so zones can be synthesized in parallel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping, Optional

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .errors import InvalidRecord, ZoneCoverageGap
from .graph import GraphElement, StreetGraph
from .parallel import derive_rng, parallel_map
from .quality import QualityReport
from .records import NormalizedRecord

logger = logging.getLogger(__name__)


# =============================================================================
# CATEGORIES AND DEFAULT DISTRIBUTIONS
# =============================================================================

# Household sizes; the last one stands for "this many or more"
HOUSEHOLD_SIZES = (1, 2, 3, 4, 5, 6)

# Age brackets (inclusive bounds)
AGE_BRACKETS: dict[str, tuple[int, int]] = {
    '0-17': (0, 17),
    '18-64': (18, 64),
    '65+': (65, 90),
}

COMPOSITIONS = ('adults', 'family', 'senior')

# US-style defaults when a zone gives no size / age breakdown
DEFAULT_SIZE_SHARES: dict[int, float] = {1: 0.28, 2: 0.34, 3: 0.15, 4: 0.13, 5: 0.06, 6: 0.04}
DEFAULT_AGE_SHARES: dict[str, float] = {'0-17': 0.22, '18-64': 0.61, '65+': 0.17}
DEFAULT_EMPLOYMENT_RATE = 0.6

# Chance a person aged 12+ plans a discretionary trip of each purpose
DISCRETIONARY_TRIP_PROBABILITY: dict[str, float] = {'shop': 0.3, 'leisure': 0.25}
SCHOOL_AGES = (5, 17)

RESIDENTIAL_ROAD_CLASSES = frozenset({'residential', 'living_street'})
RESIDENTIAL_LANDUSE = frozenset({'residential'})
RESIDENTIAL_BUILDINGS = frozenset({
    'residential', 'house', 'apartments', 'detached', 'semidetached_house', 'terrace',
})

# Column / attribute names read from zone records or tables
HOUSEHOLDS_FIELD = 'households'
SIZE_FIELDS = {size: f'hh_size_{size}' for size in HOUSEHOLD_SIZES}
AGE_FIELDS = {'0-17': 'age_0_17', '18-64': 'age_18_64', '65+': 'age_65_plus'}
COMPOSITION_FIELDS = {c: f'hh_{c}' for c in COMPOSITIONS}
EMPLOYMENT_FIELD = 'employment_rate'


def is_residential(element: GraphElement) -> bool:
    """Whether households can be anchored on this element."""
    tags = element.tags
    if tags.get('landuse') in RESIDENTIAL_LANDUSE:
        return True
    if tags.get('building') in RESIDENTIAL_BUILDINGS:
        return True
    return element.element_type == "edge" and element.road_class in RESIDENTIAL_ROAD_CLASSES


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class TripTemplate:
    """A planned activity: travel from home for a purpose (and back)."""

    purpose: str
    return_home: bool = True


@dataclass(frozen=True)
class Person:
    person_id: int
    household_id: int
    age: int
    role: str
    employed: bool = False
    trip_templates: tuple[TripTemplate, ...] = ()


@dataclass(frozen=True)
class Household:
    """
    A synthesized household. size always equals len(persons).

    Raises:
        ValueError: On construction with a size that does not match persons
    """

    household_id: int
    zone_id: str
    home: int
    size: int
    persons: tuple[Person, ...] = ()
    attributes: tuple[tuple[str, Any], ...] = ()

    def __post_init__(self):
        if self.size != len(self.persons):
            raise ValueError(
                f"Household {self.household_id}: size {self.size} != {len(self.persons)} persons"
            )
        for person in self.persons:
            if person.household_id != self.household_id:
                raise ValueError(
                    f"Person {person.person_id} belongs to household {person.household_id}, "
                    f"not {self.household_id}"
                )


@dataclass(frozen=True)
class ZoneStatistics:
    """
    Aggregate statistics for one zone.

    Args:
        zone_id: Zone identifier (the zone record id)
        households: Target household count
        size_counts: Households by size (HOUSEHOLD_SIZES)
        age_counts: Persons by AGE_BRACKETS key
        employment_rate: Share of working-age persons employed
        composition_counts: Households by COMPOSITIONS (optional)
    """

    zone_id: str
    households: int
    size_counts: Mapping[int, float] = field(default_factory=lambda: dict(DEFAULT_SIZE_SHARES))
    age_counts: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_AGE_SHARES))
    employment_rate: float = DEFAULT_EMPLOYMENT_RATE
    composition_counts: Optional[Mapping[str, float]] = None

    def __post_init__(self):
        if self.households < 0:
            raise InvalidRecord(f"zone {self.zone_id}: negative household count")
        if not 0.0 <= self.employment_rate <= 1.0:
            raise InvalidRecord(f"zone {self.zone_id}: employment_rate out of [0, 1]")

    @classmethod
    def from_attributes(cls, zone_id: str, attrs: Mapping[str, Any]) -> "ZoneStatistics":
        """
        Parse zone statistics from record attributes or a table row.

        Raises:
            InvalidRecord: If the household count is missing or malformed
        """
        households = _as_number(attrs.get(HOUSEHOLDS_FIELD))
        if households is None:
            raise InvalidRecord(f"zone {zone_id}: missing '{HOUSEHOLDS_FIELD}'")
        if households != int(households):
            raise InvalidRecord(f"zone {zone_id}: household count {households} is not whole")

        size_counts = _read_counts(attrs, SIZE_FIELDS) or dict(DEFAULT_SIZE_SHARES)
        age_counts = _read_counts(attrs, AGE_FIELDS) or dict(DEFAULT_AGE_SHARES)
        composition_counts = _read_counts(attrs, COMPOSITION_FIELDS)
        employment = _as_number(attrs.get(EMPLOYMENT_FIELD))
        return cls(
            zone_id=str(zone_id),
            households=int(households),
            size_counts=size_counts,
            age_counts=age_counts,
            employment_rate=DEFAULT_EMPLOYMENT_RATE if employment is None else employment,
            composition_counts=composition_counts,
        )


def _as_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(str(value).replace(',', ''))
    except ValueError as e:
        raise InvalidRecord(f"malformed number {value!r}") from e
    if np.isnan(number):
        return None
    if number < 0:
        raise InvalidRecord(f"negative count {value!r}")
    return number


def _read_counts(attrs: Mapping[str, Any], fields: Mapping[Any, str]) -> Optional[dict]:
    counts = {key: _as_number(attrs.get(name)) for key, name in fields.items()}
    if all(v is None for v in counts.values()):
        return None
    counts = {k: (v or 0.0) for k, v in counts.items()}
    if sum(counts.values()) <= 0:
        return None
    return counts


def zone_statistics_from_records(records: Iterable[NormalizedRecord]) -> dict[str, ZoneStatistics]:
    """
    Read statistics carried as attributes on zone records.

    Zones without usable statistics are logged and left out.
    """
    statistics = {}
    for record in records:
        if not record.kind.is_zone:
            continue
        try:
            statistics[record.record_id] = ZoneStatistics.from_attributes(
                record.record_id, record.attributes
            )
        except InvalidRecord as e:
            logger.warning(f"No statistics for zone {record.record_id}: {e}")
    return statistics


def load_zone_statistics(path, zone_column: str = 'zone_id') -> dict[str, ZoneStatistics]:
    """
    Load zone statistics from a CSV table keyed by zone id.

    Raises:
        InvalidRecord: If a row is malformed (the table is structural input)
    """
    df = pd.read_csv(path, dtype={zone_column: str})
    if zone_column not in df.columns:
        raise InvalidRecord(f"{path}: no '{zone_column}' column")
    statistics = {}
    for row in df.to_dict(orient="records"):
        zone_id = str(row[zone_column])
        statistics[zone_id] = ZoneStatistics.from_attributes(zone_id, row)
    logger.info(f"Loaded statistics for {len(statistics)} zones from {path}")
    return statistics


# =============================================================================
# FITTING AND ROUNDING
# =============================================================================

def largest_remainder(values: Iterable[float], total: int) -> np.ndarray:
    """
    Integerize non-negative values so they sum exactly to total.

    Values are scaled to the total, floored, and the leftover units go to the
    largest fractional remainders, ties broken by position.

    Raises:
        ValueError: If total > 0 but all values are zero, or inputs are negative
    """
    values = np.asarray(list(values), dtype=float)
    total = int(total)
    if total < 0 or (values < 0).any():
        raise ValueError("largest_remainder needs non-negative values and total")
    result = np.zeros(len(values), dtype=np.int64)
    if total == 0:
        return result
    value_sum = values.sum()
    if value_sum <= 0:
        raise ValueError("cannot apportion a positive total over all-zero values")
    scaled = values * (total / value_sum)
    floors = np.floor(scaled).astype(np.int64)
    leftover = total - int(floors.sum())
    remainders = scaled - floors
    order = np.lexsort((np.arange(len(values)), -remainders))
    floors[order[:leftover]] += 1
    return floors


def ipf(
    seed: np.ndarray,
    row_targets: np.ndarray,
    col_targets: np.ndarray,
    max_iterations: int = 100,
    tolerance: float = 1e-6,
) -> tuple[np.ndarray, int, bool]:
    """
    Iterative proportional fitting of a 2-D table to row and column marginals.

    Column targets are rescaled to the row total so the marginals agree.
    Zero cells in the seed stay zero (structural zeros).

    Args:
        seed: Prior table (rows x cols), non-negative
        row_targets: Row marginal
        col_targets: Column marginal
        max_iterations: Iteration cap
        tolerance: Max relative marginal error to stop at

    Returns:
        (fitted table, iterations used, converged)
    """
    table = np.asarray(seed, dtype=float).copy()
    rows = np.asarray(row_targets, dtype=float)
    cols = np.asarray(col_targets, dtype=float)
    total = rows.sum()
    if total <= 0:
        return np.zeros_like(table), 0, True
    if cols.sum() > 0:
        cols = cols * (total / cols.sum())

    for iteration in range(1, max_iterations + 1):
        row_sums = table.sum(axis=1)
        table *= np.divide(rows, row_sums, out=np.zeros_like(rows), where=row_sums > 0)[:, None]
        col_sums = table.sum(axis=0)
        table *= np.divide(cols, col_sums, out=np.zeros_like(cols), where=col_sums > 0)[None, :]

        row_err = np.abs(table.sum(axis=1) - rows).max() / total
        col_err = np.abs(table.sum(axis=0) - cols).max() / total
        if max(row_err, col_err) < tolerance:
            return table, iteration, True
    return table, max_iterations, False


def _seed_table() -> np.ndarray:
    seed = np.ones((len(HOUSEHOLD_SIZES), len(COMPOSITIONS)))
    # A one-person household cannot contain a child
    seed[HOUSEHOLD_SIZES.index(1), COMPOSITIONS.index('family')] = 0.0
    return seed


def composition_targets(stats: ZoneStatistics) -> np.ndarray:
    """
    Household counts by composition: explicit counts if given, otherwise
    derived from the zone's age-bracket shares.
    """
    if stats.composition_counts:
        return np.array([stats.composition_counts.get(c, 0.0) for c in COMPOSITIONS])
    ages = np.array([stats.age_counts.get(b, 0.0) for b in AGE_BRACKETS])
    if ages.sum() <= 0:
        ages = np.array([DEFAULT_AGE_SHARES[b] for b in AGE_BRACKETS])
    child, adult, senior = ages / ages.sum()
    # Children live in ~2.5-person families; seniors mostly in 1-2 person homes
    family = min(0.9, child * 2.0)
    senior_share = min(0.9 - family, senior * 1.2) if family < 0.9 else 0.0
    adults = max(0.05, 1.0 - family - senior_share)
    return np.array([adults, family, senior_share])


def fit_household_table(stats: ZoneStatistics, target: int, config: PipelineConfig) -> np.ndarray:
    """
    Integer size x composition table summing exactly to target.
    """
    if target == 0:
        return np.zeros((len(HOUSEHOLD_SIZES), len(COMPOSITIONS)), dtype=np.int64)
    rows = np.array([stats.size_counts.get(s, 0.0) for s in HOUSEHOLD_SIZES])
    if rows.sum() <= 0:
        rows = np.array([DEFAULT_SIZE_SHARES[s] for s in HOUSEHOLD_SIZES])
    rows = rows * (target / rows.sum())
    cols = composition_targets(stats)

    fitted, iterations, converged = ipf(
        _seed_table(), rows, cols, config.ipf_max_iterations, config.ipf_tolerance,
    )
    if not converged:
        logger.debug(f"Zone {stats.zone_id}: IPF stopped after {iterations} iterations")
    if fitted.sum() <= 0:
        fitted = _seed_table() * rows[:, None]
    counts = largest_remainder(fitted.ravel(), target)
    return counts.reshape(fitted.shape)


# =============================================================================
# PER-ZONE SYNTHESIS
# =============================================================================

@dataclass(frozen=True)
class PersonDraft:
    age: int
    role: str
    employed: bool
    purposes: tuple[str, ...]


@dataclass(frozen=True)
class HouseholdDraft:
    home: int
    composition: str
    persons: tuple[PersonDraft, ...]


@dataclass
class ZoneOutcome:
    """What one zone produced: household drafts, or the gap that stopped it."""

    zone_id: str
    target: int
    households: list[HouseholdDraft] = field(default_factory=list)
    gap: Optional[ZoneCoverageGap] = None


def _draw_age(rng: np.random.Generator, bracket: str) -> int:
    low, high = AGE_BRACKETS[bracket]
    return int(rng.integers(low, high + 1))


def _draw_members(
    rng: np.random.Generator,
    size: int,
    composition: str,
) -> list[tuple[int, str]]:
    """(age, role) for each member of a household."""
    if composition == 'family':
        n_adults = 1 if size == 2 else int(rng.choice([1, 2], p=[0.25, 0.75]))
        members = [(_draw_age(rng, '18-64'), 'head')]
        if n_adults == 2:
            members.append((_draw_age(rng, '18-64'), 'partner'))
        members += [(_draw_age(rng, '0-17'), 'child') for _ in range(size - n_adults)]
        return members
    if composition == 'senior':
        members = [(_draw_age(rng, '65+'), 'head')]
        if size >= 2:
            members.append((_draw_age(rng, '65+'), 'partner'))
        members += [(_draw_age(rng, '18-64'), 'adult') for _ in range(size - 2)]
        return members
    members = [(_draw_age(rng, '18-64'), 'head')]
    members += [(_draw_age(rng, '18-64'), 'adult') for _ in range(size - 1)]
    return members


def _draw_person(
    rng: np.random.Generator,
    age: int,
    role: str,
    employment_rate: float,
) -> PersonDraft:
    low, high = AGE_BRACKETS['18-64']
    employed = bool(low <= age <= high and rng.random() < employment_rate)
    purposes = []
    if employed:
        purposes.append('work')
    if SCHOOL_AGES[0] <= age <= SCHOOL_AGES[1]:
        purposes.append('school')
    if age >= 12:
        for purpose, probability in DISCRETIONARY_TRIP_PROBABILITY.items():
            if rng.random() < probability:
                purposes.append(purpose)
    return PersonDraft(age, role, employed, tuple(purposes))


def synthesize_zone(
    stats: ZoneStatistics,
    target: int,
    homes: tuple[int, ...],
    home_weights: Optional[np.ndarray],
    config: PipelineConfig,
) -> list[HouseholdDraft]:
    """
    Draw the households of one zone.

    Args:
        stats: Zone statistics
        target: Exact number of households to draw
        homes: Residential element ids in the zone (sorted)
        home_weights: Selection weights for homes (None for uniform)
        config: Pipeline configuration (seed, IPF settings)

    Returns:
        Household drafts, in generator order

    Raises:
        ZoneCoverageGap: If households are needed but the zone has no homes
    """
    if target > 0 and not homes:
        raise ZoneCoverageGap(stats.zone_id, target, "no residential elements matched")
    rng = derive_rng(config.seed, "population", stats.zone_id)
    table = fit_household_table(stats, target, config)

    cells = []
    for i, size in enumerate(HOUSEHOLD_SIZES):
        for j, composition in enumerate(COMPOSITIONS):
            cells.extend([(size, composition)] * int(table[i, j]))
    order = rng.permutation(len(cells))

    p = None
    if home_weights is not None:
        p = home_weights / home_weights.sum()
    home_draws = rng.choice(len(homes), size=len(cells), p=p) if cells else []

    drafts = []
    for position, cell_index in enumerate(order):
        size, composition = cells[cell_index]
        persons = tuple(
            _draw_person(rng, age, role, stats.employment_rate)
            for age, role in _draw_members(rng, size, composition)
        )
        drafts.append(HouseholdDraft(homes[int(home_draws[position])], composition, persons))
    return drafts


def _synthesize_zone_unit(context, item) -> ZoneOutcome:
    config, homes_by_zone = context
    stats, target = item
    homes, weights = homes_by_zone.get(stats.zone_id, ((), None))
    outcome = ZoneOutcome(stats.zone_id, target)
    try:
        outcome.households = synthesize_zone(stats, target, homes, weights, config)
    except ZoneCoverageGap as gap:
        outcome.gap = gap
    return outcome


# =============================================================================
# SYNTHESIZER
# =============================================================================

@dataclass
class PopulationResult:
    households: list[Household] = field(default_factory=list)
    coverage_gaps: list[ZoneCoverageGap] = field(default_factory=list)
    zone_household_counts: dict[str, int] = field(default_factory=dict)
    zone_targets: dict[str, int] = field(default_factory=dict)

    def persons(self) -> Iterator[Person]:
        for household in self.households:
            yield from household.persons

    @property
    def n_persons(self) -> int:
        return sum(h.size for h in self.households)

    def to_report(self) -> QualityReport:
        report = QualityReport()
        report.coverage_gaps = {gap.zone_id: gap.reason for gap in self.coverage_gaps}
        report.zones_synthesized = sum(1 for n in self.zone_household_counts.values() if n > 0)
        report.households = len(self.households)
        report.persons = self.n_persons
        return report


class PopulationSynthesizer:
    """
    Expands zone statistics into households anchored on residential elements.

    Args:
        graph: Base street graph
        config: Pipeline configuration
    """

    def __init__(self, graph: StreetGraph, config: Optional[PipelineConfig] = None):
        self.graph = graph
        self.config = config or PipelineConfig()

    def zone_homes(self, element_ids: Iterable[int]) -> tuple[tuple[int, ...], Optional[np.ndarray]]:
        """Residential element ids in a zone and their selection weights."""
        homes = tuple(sorted(
            eid for eid in element_ids
            if eid in self.graph and is_residential(self.graph[eid])
        ))
        if not homes or self.config.home_weighting == 'uniform':
            return homes, None
        # Longer residential streets hold more dwellings; nodes count as one unit
        weights = np.array([max(self.graph[eid].length, 1.0) for eid in homes])
        return homes, weights

    def zone_targets(self, statistics: Mapping[str, ZoneStatistics]) -> dict[str, int]:
        """
        Household target per zone. With population_scale != 1 the scaled
        counts are apportioned across zones by largest remainder.
        """
        zone_ids = sorted(statistics)
        counts = [statistics[z].households for z in zone_ids]
        if self.config.population_scale == 1.0:
            return dict(zip(zone_ids, counts))
        scaled = [c * self.config.population_scale for c in counts]
        total = int(round(sum(scaled)))
        if total == 0:
            return {z: 0 for z in zone_ids}
        return dict(zip(zone_ids, (int(n) for n in largest_remainder(scaled, total))))

    def synthesize(
        self,
        statistics: Mapping[str, ZoneStatistics],
        zone_elements: Mapping[str, tuple[int, ...]],
        n_workers: Optional[int] = None,
    ) -> PopulationResult:
        """
        Synthesize households for every zone.

        Zones that cannot be anchored are skipped and reported as
        ZoneCoverageGap; they never fail the run.

        Args:
            statistics: Zone id -> statistics
            zone_elements: Zone id -> ids of graph elements in the zone
                (from ConflationResult.zone_elements())
            n_workers: Worker processes (default: config.n_workers)

        Returns:
            PopulationResult with ids assigned in zone-id order
        """
        n_workers = n_workers if n_workers is not None else self.config.n_workers
        targets = self.zone_targets(statistics)

        gaps: list[ZoneCoverageGap] = []
        homes_by_zone = {}
        units = []
        for zone_id in sorted(statistics):
            target = targets[zone_id]
            if zone_id not in zone_elements:
                if target > 0:
                    gaps.append(ZoneCoverageGap(zone_id, target, "zone polygon not found"))
                continue
            if not zone_elements[zone_id] and target > 0:
                gaps.append(ZoneCoverageGap(zone_id, target, "no graph elements inside zone"))
                continue
            homes_by_zone[zone_id] = self.zone_homes(zone_elements[zone_id])
            units.append((statistics[zone_id], target))

        outcomes = parallel_map(
            _synthesize_zone_unit,
            units,
            context=(self.config, homes_by_zone),
            n_workers=n_workers,
            desc="Synthesizing zones",
            verbose=self.config.verbose,
        )

        result = PopulationResult(zone_targets=targets)
        next_household = 0
        next_person = 0
        for outcome in outcomes:
            if outcome.gap is not None:
                gaps.append(outcome.gap)
                result.zone_household_counts[outcome.zone_id] = 0
                continue
            for draft in outcome.households:
                household_id = next_household
                next_household += 1
                persons = []
                for p in draft.persons:
                    persons.append(Person(
                        person_id=next_person,
                        household_id=household_id,
                        age=p.age,
                        role=p.role,
                        employed=p.employed,
                        trip_templates=tuple(TripTemplate(purpose) for purpose in p.purposes),
                    ))
                    next_person += 1
                result.households.append(Household(
                    household_id=household_id,
                    zone_id=outcome.zone_id,
                    home=draft.home,
                    size=len(persons),
                    persons=tuple(persons),
                    attributes=(
                        ('composition', draft.composition),
                        ('workers', sum(1 for p in persons if p.employed)),
                    ),
                ))
            result.zone_household_counts[outcome.zone_id] = len(outcome.households)

        result.coverage_gaps = sorted(gaps, key=lambda g: g.zone_id)
        for gap in result.coverage_gaps:
            logger.warning(f"Coverage gap: {gap}")
        logger.info(
            f"Synthesized {len(result.households)} households, {result.n_persons} persons "
            f"in {sum(1 for n in result.zone_household_counts.values() if n)} zones "
            f"({len(result.coverage_gaps)} coverage gaps)"
        )
        return result
