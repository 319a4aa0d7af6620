"""
Error taxonomy for the conflation and demand-synthesis pipeline.

Per-record conditions (InvalidGeometry on a single record, InvalidRecord,
ZoneCoverageGap, UnresolvedTrip) are absorbed into quality counters by the
loop that owns the record. Structural conditions propagate out of
run_pipeline with the failing stage attached.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures.

    Attributes:
        stage: Name of the pipeline stage that raised, when known
    """

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message

    def __reduce__(self):
        return (self.__class__, (self.args[0] if self.args else "", self.stage))


class ConfigError(PipelineError, ValueError):
    """Invalid or unknown configuration option."""


class InvalidGeometry(PipelineError, ValueError):
    """Malformed geometry: empty, non-finite coordinates, or zero-area polygon."""


class InvalidRecord(PipelineError, ValueError):
    """A raw source row is missing required fields or has unparseable values."""


class SourceQualityError(PipelineError):
    """An adapter skipped more records than the configured threshold allows."""

    def __init__(
        self,
        source: str,
        skipped: int,
        total: int,
        threshold: float,
        stage: str | None = None,
    ):
        self.source = source
        self.skipped = skipped
        self.total = total
        self.threshold = threshold
        rate = skipped / total if total else 0.0
        super().__init__(
            f"Source '{source}' skipped {skipped}/{total} records "
            f"({rate:.1%}), above threshold {threshold:.1%}",
            stage=stage,
        )

    def __reduce__(self):
        return (
            self.__class__,
            (self.source, self.skipped, self.total, self.threshold, self.stage),
        )


class ZoneCoverageGap(PipelineError):
    """A zone has no residential graph elements to anchor households on."""

    def __init__(self, zone_id: str, target_households: int, reason: str):
        self.zone_id = zone_id
        self.target_households = target_households
        self.reason = reason
        super().__init__(
            f"Zone {zone_id}: {reason} ({target_households} households not synthesized)",
            stage="synthesize",
        )

    def __reduce__(self):
        return (self.__class__, (self.zone_id, self.target_households, self.reason))


class UnresolvedTrip(PipelineError):
    """No purpose-compatible destination within the search radius."""

    def __init__(self, person_id: int, purpose: str, radius: float):
        self.person_id = person_id
        self.purpose = purpose
        self.radius = radius
        super().__init__(
            f"Person {person_id}: no '{purpose}' destination within {radius:g}",
            stage="assemble",
        )

    def __reduce__(self):
        return (self.__class__, (self.person_id, self.purpose, self.radius))


class DeterminismViolation(PipelineError):
    """Parallel and sequential execution of a stage produced different output."""


class ScenarioInvariantError(PipelineError):
    """The assembled scenario violates a structural invariant."""


class PipelineCancelled(PipelineError):
    """Abort was requested; raised at the next stage boundary."""
