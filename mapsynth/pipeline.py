"""
End-to-end pipeline: normalize -> conflate -> synthesize -> assemble -> validate.

Each stage runs to completion before the next begins. Structural failures
propagate with the failing stage attached; per-record conditions end up in
the QualityReport.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from .adapters import DEFAULT_SKIP_THRESHOLD, SourceAdapter, make_adapter, source_fingerprint
from .conflation import ConflationEngine, ConflationResult
from .config import PipelineConfig
from .demand import DemandAssembler, DemandResult, DestinationCatalog
from .errors import DeterminismViolation, PipelineCancelled, PipelineError
from .graph import StreetGraph
from .population import (
    PopulationResult,
    PopulationSynthesizer,
    ZoneStatistics,
    zone_statistics_from_records,
)
from .quality import QualityReport
from .records import NormalizedRecord, RecordKind
from .scenario import SCENARIO_FORMAT_VERSION, Scenario

logger = logging.getLogger(__name__)

# Execution-only options; they never change output so provenance leaves them out
EXECUTION_OPTIONS = ('n_workers', 'verbose', 'check_determinism')


@dataclass(frozen=True)
class SourceSpec:
    """A raw source: report name, adapter, and file path."""

    name: str
    adapter: SourceAdapter
    path: Path | str

    @classmethod
    def from_manifest(cls, entry: Mapping[str, Any], target_crs: Any = None) -> "SourceSpec":
        """
        Build from a manifest entry such as
        {"name": "stops", "adapter": "transit_stops", "path": "stops.txt", "options": {...}}.

        A "skip_threshold" option overrides the pipeline's quality_skip_threshold
        for this source only.
        """
        options = dict(entry.get('options', {}))
        options.setdefault('target_crs', target_crs)
        options.setdefault('name', entry['name'])
        return cls(entry['name'], make_adapter(entry['adapter'], **options), entry['path'])


@dataclass
class PipelineResult:
    scenario: Scenario
    report: QualityReport
    conflation: ConflationResult
    population: PopulationResult
    demand: DemandResult
    records: list[NormalizedRecord] = field(default_factory=list)


@contextmanager
def _stage(name: str) -> Iterator[None]:
    """Attach the stage name to errors escaping a stage."""
    logger.info(f"Stage {name}: start")
    try:
        yield
    except PipelineError as e:
        if e.stage is None:
            e.stage = name
        logger.error(f"Stage {name} failed: {e}")
        raise
    except (OSError, ValueError) as e:
        logger.error(f"Stage {name} failed: {e}")
        raise PipelineError(f"{type(e).__name__}: {e}", stage=name) from e
    logger.info(f"Stage {name}: done")


def _check_cancel(cancel_event: Optional[threading.Event], next_stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelled(f"Cancelled before {next_stage}", stage=next_stage)


def _provenance(
    config: PipelineConfig,
    source_versions: dict[str, str],
    run_timestamp: str,
) -> dict[str, Any]:
    options = {k: v for k, v in config.to_dict().items() if k not in EXECUTION_OPTIONS}
    return {
        'format_version': SCENARIO_FORMAT_VERSION,
        'seed': config.seed,
        'sources': source_versions,
        'config': options,
        'run_timestamp': run_timestamp,
    }


def normalize_sources(
    sources: list[SourceSpec],
    report: QualityReport,
    skip_threshold: float = DEFAULT_SKIP_THRESHOLD,
) -> tuple[list[NormalizedRecord], dict[str, str]]:
    """
    Read every source fully, recording emitted/skipped counts.

    A record whose (kind, record_id) was already emitted by an earlier source
    or row is dropped and counted as skipped for its source.

    Args:
        sources: Raw sources, read in order
        report: Receives per-source counts
        skip_threshold: Skip rate limit for adapters without their own

    Returns:
        (records in source order, source name -> dataset fingerprint)

    Raises:
        SourceQualityError: If a source skips too many rows
    """
    records: list[NormalizedRecord] = []
    versions: dict[str, str] = {}
    seen: set[tuple[RecordKind, str]] = set()
    for spec in sources:
        stream = spec.adapter.normalize(spec.path, skip_threshold=skip_threshold)
        duplicates = 0
        try:
            for record in stream:
                key = (record.kind, record.record_id)
                if key in seen:
                    duplicates += 1
                    continue
                seen.add(key)
                records.append(record)
        finally:
            report.record_source(spec.name, stream.emitted - duplicates,
                                 stream.skipped + duplicates)
        if duplicates:
            logger.warning(f"Source {spec.name}: dropped {duplicates} records with duplicate ids")
        if Path(spec.path).is_file():
            versions[spec.name] = source_fingerprint(spec.path)
        logger.info(f"Source {spec.name}: {stream.emitted - duplicates} records, "
                    f"{stream.skipped + duplicates} skipped")
    return records, versions


def _run_core(
    graph: StreetGraph,
    records: list[NormalizedRecord],
    config: PipelineConfig,
    zone_statistics: Optional[Mapping[str, ZoneStatistics]],
    n_workers: int,
    cancel_event: Optional[threading.Event],
) -> tuple[ConflationResult, PopulationResult, DemandResult]:
    _check_cancel(cancel_event, 'conflate')
    with _stage('conflate'):
        conflation = ConflationEngine(graph, config).conflate(records, n_workers=n_workers)

    _check_cancel(cancel_event, 'synthesize')
    with _stage('synthesize'):
        statistics = zone_statistics
        if statistics is None:
            statistics = zone_statistics_from_records(records)
        population = PopulationSynthesizer(graph, config).synthesize(
            statistics, conflation.zone_elements(), n_workers=n_workers,
        )

    _check_cancel(cancel_event, 'assemble')
    with _stage('assemble'):
        catalog = DestinationCatalog.build(graph, records, conflation.matches)
        demand = DemandAssembler(graph, catalog, config).assemble(
            population.households, n_workers=n_workers,
        )
    return conflation, population, demand


def _check_determinism(
    parallel: tuple[ConflationResult, PopulationResult, DemandResult],
    sequential: tuple[ConflationResult, PopulationResult, DemandResult],
) -> None:
    """
    Raises:
        DeterminismViolation: Naming the first stage whose outputs differ
    """
    conflation, population, demand = parallel
    ref_conflation, ref_population, ref_demand = sequential
    if conflation.matches != ref_conflation.matches:
        raise DeterminismViolation("Parallel conflation differs from sequential run",
                                   stage='conflate')
    if population.households != ref_population.households:
        raise DeterminismViolation("Parallel synthesis differs from sequential run",
                                   stage='synthesize')
    if demand.trips != ref_demand.trips:
        raise DeterminismViolation("Parallel demand differs from sequential run",
                                   stage='assemble')
    logger.info("Determinism check passed")


def run_pipeline(
    graph: StreetGraph,
    sources: list[SourceSpec],
    config: Optional[PipelineConfig] = None,
    zone_statistics: Optional[Mapping[str, ZoneStatistics]] = None,
    cancel_event: Optional[threading.Event] = None,
    name: str = 'scenario',
    run_timestamp: Optional[str] = None,
) -> PipelineResult:
    """
    Build a Scenario from a base graph and raw sources.

    Args:
        graph: Base street graph (projected, metric CRS)
        sources: Raw sources to normalize
        config: Pipeline configuration
        zone_statistics: Zone id -> statistics; read from census record
            attributes when not given
        cancel_event: Checked between stages; when set the run aborts
        name: Scenario name
        run_timestamp: ISO timestamp recorded in provenance (default: now, UTC)

    Returns:
        PipelineResult with the validated Scenario and QualityReport

    Raises:
        PipelineError: Subclass with .stage set, on any structural failure
    """
    config = config or PipelineConfig()
    if run_timestamp is None:
        run_timestamp = datetime.now(timezone.utc).isoformat(timespec='seconds')
    logger.info(
        f"Running pipeline '{name}': {len(graph)} graph elements, {len(sources)} sources, "
        f"seed={config.seed}, n_workers={config.n_workers}"
    )

    report = QualityReport()
    _check_cancel(cancel_event, 'normalize')
    with _stage('normalize'):
        records, versions = normalize_sources(sources, report, config.quality_skip_threshold)

    conflation, population, demand = _run_core(
        graph, records, config, zone_statistics, config.n_workers, cancel_event,
    )

    if config.check_determinism and config.n_workers > 1:
        logger.info("Re-running stages sequentially for determinism check")
        sequential = _run_core(graph, records, config, zone_statistics, 1, cancel_event)
        _check_determinism((conflation, population, demand), sequential)

    graph.attach_annotations(conflation.annotations())
    report.merge(conflation.to_report())
    report.merge(population.to_report())
    report.merge(demand.to_report())

    _check_cancel(cancel_event, 'validate')
    with _stage('validate'):
        scenario = Scenario(
            name=name,
            households=tuple(population.households),
            trips=tuple(demand.trips),
            provenance=_provenance(config, versions, run_timestamp),
        )
        scenario.validate(graph)

    logger.info(
        f"Scenario '{name}': {report.households} households, {report.persons} persons, "
        f"{report.trips} trips ({report.unresolved_trips} unresolved)"
    )
    return PipelineResult(
        scenario=scenario,
        report=report,
        conflation=conflation,
        population=population,
        demand=demand,
        records=records,
    )
