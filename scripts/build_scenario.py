#!/usr/bin/env python3
"""
Build a simulation scenario from a base street graph and raw sources.

This script:
1. Loads the base graph (osmnx GraphML, projected to metres)
2. Normalizes every source listed in the manifest
3. Conflates records onto the graph, synthesizes households and trips
4. Saves the scenario JSON, the quality report and summary statistics

Manifest format (JSON):
    {
      "sources": [
        {"name": "tracts", "adapter": "kml_zones", "path": "tracts.kml"},
        {"name": "stops", "adapter": "transit_stops", "path": "gtfs/stops.txt"},
        {"name": "poi", "adapter": "poi", "path": "poi.geojson"}
      ],
      "zone_statistics": "zone_stats.csv"
    }

Relative paths are resolved against the manifest's directory.

Usage:
    python scripts/build_scenario.py --graph city.graphml --manifest sources.json
    python scripts/build_scenario.py --graph city.graphml --manifest sources.json \\
        --config config.json --workers 4 --output-dir results/city
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from mapsynth.config import load_config
from mapsynth.errors import PipelineError
from mapsynth.graph import load_base_graph
from mapsynth.logging_config import configure_logging
from mapsynth.pipeline import SourceSpec, run_pipeline
from mapsynth.population import load_zone_statistics
from mapsynth.scenario import get_scenario_stats, save_scenario

logger = logging.getLogger("mapsynth.build_scenario")


def read_manifest(path: Path, target_crs):
    """Source specs and optional zone statistics path from a manifest file."""
    manifest = json.loads(path.read_text(encoding="utf-8"))
    base = path.parent
    sources = []
    for entry in manifest.get("sources", []):
        entry = dict(entry)
        entry["path"] = str((base / entry["path"]).resolve())
        sources.append(SourceSpec.from_manifest(entry, target_crs=target_crs))
    stats_path = manifest.get("zone_statistics")
    return sources, (base / stats_path).resolve() if stats_path else None


def main() -> int:
    parser = argparse.ArgumentParser(description="Build a population/demand scenario.")
    parser.add_argument("--graph", type=str, required=True, help="Base graph GraphML file.")
    parser.add_argument("--manifest", type=str, required=True, help="Sources manifest JSON.")
    parser.add_argument("--config", type=str, default=None, help="Pipeline config JSON.")
    parser.add_argument("--output-dir", type=str, default="results/scenario")
    parser.add_argument("--name", type=str, default=None, help="Scenario name (default: graph file stem).")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--no-project", action="store_true", help="Graph is already in a metric CRS.")
    parser.add_argument("--check-determinism", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    configure_logging(output_dir, console_level=logging.DEBUG if args.verbose else logging.INFO)

    overrides = {}
    if args.seed is not None:
        overrides["seed"] = args.seed
    if args.workers is not None:
        overrides["n_workers"] = args.workers
    if args.check_determinism:
        overrides["check_determinism"] = True
    if args.verbose:
        overrides["verbose"] = True

    try:
        config = load_config(args.config, **overrides)
        graph = load_base_graph(args.graph, project=not args.no_project)
        sources, stats_path = read_manifest(Path(args.manifest), graph.crs)
        statistics = load_zone_statistics(stats_path) if stats_path else None
        name = args.name or Path(args.graph).stem
        result = run_pipeline(
            graph, sources, config,
            zone_statistics=statistics,
            name=name,
        )
    except PipelineError as e:
        logger.error(f"Scenario build failed: {e}")
        return 1

    save_scenario(result.scenario, output_dir / f"{result.scenario.name}.json")
    result.report.save(output_dir / "quality_report.json")
    stats = get_scenario_stats(result.scenario)
    (output_dir / "scenario_stats.json").write_text(json.dumps(stats, indent=2), encoding="utf-8")

    logger.info("=" * 60)
    logger.info("SCENARIO SUMMARY")
    logger.info("=" * 60)
    for key, value in stats.items():
        logger.info(f"  {key}: {value}")
    for kind in sorted(result.report.conflation):
        logger.info(f"  matched fraction {kind}: {result.report.matched_fraction(kind):.1%}")
    logger.info(f"  coverage gaps: {len(result.report.coverage_gaps)}")
    logger.info(f"  fingerprint: {result.scenario.fingerprint()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
