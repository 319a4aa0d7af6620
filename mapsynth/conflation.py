"""
Conflation: match normalized records to graph elements.

Point records (collisions, transit stops, POIs) are matched to their nearest
graph elements within a kind-specific radius; zone records (census tracts)
are matched to every element inside the polygon. Matching is a pure function
of (graph, record, rules), so re-running conflation gives identical matches.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Literal, Optional

from .config import PipelineConfig
from .errors import InvalidGeometry
from .geometry_index import GeometryIndex
from .graph import GraphElement, StreetGraph
from .parallel import chunked, parallel_map
from .quality import QualityReport
from .records import NormalizedRecord, RecordKind

logger = logging.getLogger(__name__)

# Records per parallel task
CONFLATION_CHUNK = 500


class MatchStatus(str, Enum):
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class Match:
    """
    Result of conflating one record.

    For point kinds, element_id is the resolved anchor; for AMBIGUOUS it is
    the lowest id among the tied candidates, which are all listed in
    candidate_ids. For zone kinds, candidate_ids holds every element inside
    the zone and element_id the lowest of them.
    """

    record_id: str
    kind: RecordKind
    status: MatchStatus
    element_id: Optional[int] = None
    candidate_ids: tuple[int, ...] = ()
    confidence: float = 0.0
    distance: Optional[float] = None

    @property
    def is_anchored(self) -> bool:
        return self.status is not MatchStatus.UNMATCHED


# =============================================================================
# ATTRIBUTE HEURISTICS
# =============================================================================

# How plausible a transit stop is on each road class (buses use through roads)
TRANSIT_ROAD_CLASS_WEIGHT: dict[str, float] = {
    'motorway': 0.2,
    'motorway_link': 0.2,
    'trunk': 0.8,
    'trunk_link': 0.5,
    'primary': 1.0,
    'primary_link': 0.7,
    'secondary': 1.0,
    'secondary_link': 0.7,
    'tertiary': 0.9,
    'tertiary_link': 0.6,
    'residential': 0.7,
    'unclassified': 0.7,
    'living_street': 0.3,
    'service': 0.4,
    'busway': 1.0,
    'footway': 0.1,
    'cycleway': 0.1,
    'path': 0.1,
}

DEFAULT_ROAD_CLASS_WEIGHT = 0.5


def road_class_weight(record: NormalizedRecord, element: GraphElement) -> float:
    """Compatibility of a transit stop with the road class of an edge."""
    if element.element_type != "edge":
        return 1.0
    return TRANSIT_ROAD_CLASS_WEIGHT.get(element.road_class, DEFAULT_ROAD_CLASS_WEIGHT)


Heuristic = Callable[[NormalizedRecord, GraphElement], float]


@dataclass(frozen=True)
class KindRule:
    """Matching rule for one record kind."""

    mode: Literal["nearest", "contained"]
    radius: float = 0.0
    element_types: Optional[tuple[str, ...]] = None
    k: Optional[int] = 8
    heuristic: Optional[Heuristic] = None


DEFAULT_RULES: dict[RecordKind, KindRule] = {
    RecordKind.COLLISION: KindRule("nearest", 25.0, ("edge",)),
    RecordKind.TRANSIT_STOP: KindRule("nearest", 30.0, ("edge",), heuristic=road_class_weight),
    RecordKind.POI: KindRule("nearest", 50.0),
    RecordKind.CENSUS_TRACT: KindRule("contained", k=None),
}


def rules_from_config(config: PipelineConfig) -> dict[RecordKind, KindRule]:
    """Default rules with the configured search radii."""
    rules = {}
    for kind, rule in DEFAULT_RULES.items():
        rules[kind] = replace(rule, radius=config.match_radius(kind.value))
    return rules


# =============================================================================
# ENGINE
# =============================================================================

class ConflationEngine:
    """
    Matches records to graph elements using the geometry index.

    Args:
        graph: Base street graph
        config: Pipeline configuration (tie band, min confidence, radii)
        rules: Per-kind rules (default: rules_from_config(config))
        index: Prebuilt geometry index over the graph
    """

    def __init__(
        self,
        graph: StreetGraph,
        config: Optional[PipelineConfig] = None,
        rules: Optional[dict[RecordKind, KindRule]] = None,
        index: Optional[GeometryIndex] = None,
    ):
        self.graph = graph
        self.config = config or PipelineConfig()
        self.rules = rules if rules is not None else rules_from_config(self.config)
        self.index = index if index is not None else GeometryIndex.from_graph(graph)

    def match(self, record: NormalizedRecord) -> Match:
        """
        Conflate one record.

        Raises:
            InvalidGeometry: If the record geometry is degenerate
            KeyError: If no rule exists for the record kind
        """
        rule = self.rules[record.kind]
        if rule.mode == "contained":
            return self._match_zone(record, rule)
        return self._match_nearest(record, rule)

    def _match_zone(self, record: NormalizedRecord, rule: KindRule) -> Match:
        members = self.index.within(record.geometry, element_types=rule.element_types)
        ids = tuple(sorted(e.element_id for e in members))
        if not ids:
            return Match(record.record_id, record.kind, MatchStatus.UNMATCHED)
        return Match(
            record.record_id, record.kind, MatchStatus.MATCHED,
            element_id=ids[0], candidate_ids=ids, confidence=1.0,
        )

    def _match_nearest(self, record: NormalizedRecord, rule: KindRule) -> Match:
        geom = record.geometry
        if geom.geom_type != "Point":
            geom = geom.representative_point()
        candidates = self.index.nearest(
            geom, k=rule.k, max_distance=rule.radius, element_types=rule.element_types,
        )
        if not candidates:
            return Match(record.record_id, record.kind, MatchStatus.UNMATCHED)

        scale = rule.radius if rule.radius > 0 else 1.0
        scored = []
        for distance, element in candidates:
            weight = rule.heuristic(record, element) if rule.heuristic else 1.0
            scored.append((weight / (1.0 + distance / scale), element.element_id, distance))

        best_score = max(s for s, _, _ in scored)
        if best_score <= 0 or best_score < self.config.min_match_confidence:
            return Match(
                record.record_id, record.kind, MatchStatus.UNMATCHED,
                candidate_ids=tuple(sorted(eid for _, eid, _ in scored)),
                confidence=best_score,
            )

        cutoff = best_score * (1.0 - self.config.ambiguity_tie_band)
        tied = sorted((eid, d) for s, eid, d in scored if s >= cutoff)
        element_id, distance = tied[0]
        if len(tied) > 1:
            return Match(
                record.record_id, record.kind, MatchStatus.AMBIGUOUS,
                element_id=element_id,
                candidate_ids=tuple(eid for eid, _ in tied),
                confidence=best_score,
                distance=distance,
            )
        return Match(
            record.record_id, record.kind, MatchStatus.MATCHED,
            element_id=element_id,
            candidate_ids=(element_id,),
            confidence=best_score,
            distance=distance,
        )

    def conflate(
        self,
        records: Iterable[NormalizedRecord],
        n_workers: Optional[int] = None,
        verbose: Optional[bool] = None,
    ) -> "ConflationResult":
        """
        Conflate all records.

        Records with degenerate geometry are counted as invalid and produce
        no Match; every other record produces exactly one Match, in input
        order.

        Args:
            records: Normalized records (fully loaded before matching)
            n_workers: Worker processes (default: config.n_workers)
            verbose: Show progress

        Returns:
            ConflationResult
        """
        records = list(records)
        n_workers = n_workers if n_workers is not None else self.config.n_workers
        verbose = verbose if verbose is not None else self.config.verbose

        if n_workers <= 1:
            chunk_results = [_match_chunk(self, records)]
        else:
            chunk_results = parallel_map(
                _match_chunk,
                chunked(records, CONFLATION_CHUNK),
                context=(self.graph, self.config, self.rules),
                n_workers=n_workers,
                setup=_engine_from_context,
                desc="Conflating records",
                verbose=verbose,
                chunksize=1,
            )

        matches: list[Match] = []
        invalid: Counter = Counter()
        for chunk_matches, chunk_invalid in chunk_results:
            matches.extend(chunk_matches)
            invalid.update(chunk_invalid)

        result = ConflationResult(matches=matches, invalid=invalid)
        for kind, counts in sorted(result.counts().items()):
            logger.info(
                f"Conflated {kind}: {counts['matched']} matched, {counts['ambiguous']} ambiguous, "
                f"{counts['unmatched']} unmatched, {counts['invalid']} invalid"
            )
        return result


def _engine_from_context(context) -> ConflationEngine:
    graph, config, rules = context
    return ConflationEngine(graph, config, rules)


def _match_chunk(
    engine: ConflationEngine,
    records: list[NormalizedRecord],
) -> tuple[list[Match], Counter]:
    matches = []
    invalid: Counter = Counter()
    for record in records:
        try:
            matches.append(engine.match(record))
        except InvalidGeometry as e:
            logger.debug(f"Record {record.record_id}: {e}")
            invalid[record.kind.value] += 1
    return matches, invalid


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ConflationResult:
    """Matches in input order plus per-kind invalid counts."""

    matches: list[Match] = field(default_factory=list)
    invalid: Counter = field(default_factory=Counter)

    def by_kind(self, kind: RecordKind | str) -> list[Match]:
        kind = RecordKind(kind)
        return [m for m in self.matches if m.kind is kind]

    def counts(self) -> dict[str, Counter]:
        counts: dict[str, Counter] = defaultdict(Counter)
        for m in self.matches:
            counts[m.kind.value][m.status.value] += 1
        for kind, n in self.invalid.items():
            counts[kind]["invalid"] += n
        return dict(counts)

    def zone_elements(self) -> dict[str, tuple[int, ...]]:
        """Zone record id -> ids of elements inside it (empty for unmatched zones)."""
        return {
            m.record_id: m.candidate_ids
            for m in self.matches
            if m.kind.is_zone
        }

    def annotations(self) -> dict[int, list[str]]:
        """Element id -> ids of point records anchored to it."""
        annotations: dict[int, list[str]] = defaultdict(list)
        for m in self.matches:
            if m.is_anchored and not m.kind.is_zone:
                annotations[m.element_id].append(m.record_id)
        return {eid: sorted(ids) for eid, ids in sorted(annotations.items())}

    def record_counts_by_element(self, kind: RecordKind | str) -> Counter:
        """How many records of a kind anchor to each element (e.g. collisions per edge)."""
        kind = RecordKind(kind)
        return Counter(
            m.element_id for m in self.matches if m.kind is kind and m.is_anchored
        )

    def to_report(self) -> QualityReport:
        report = QualityReport()
        report.conflation = self.counts()
        return report
