"""End-to-end tests for run_pipeline."""

import dataclasses
import json
import threading
from types import SimpleNamespace

import pytest

from mapsynth import pipeline
from mapsynth.adapters import CollisionAdapter, KmlPolygonAdapter, PoiAdapter, TabularZoneAdapter
from mapsynth.config import PipelineConfig
from mapsynth.demand import DestinationCatalog
from mapsynth.errors import DeterminismViolation, PipelineCancelled, SourceQualityError
from mapsynth.graph import StreetGraph
from mapsynth.pipeline import SourceSpec, run_pipeline

from conftest import GRID_DESTINATIONS, grid_networkx

TIMESTAMP = "2024-05-01T08:00:00+00:00"


@pytest.fixture
def sources(tmp_path):
    """Two zones over the grid plus a few collisions, in graph coordinates."""
    zones = tmp_path / "zones.csv"
    zones.write_text(
        "zone_id,households,age_0_17,age_18_64,age_65_plus,wkt\n"
        'west,30,20,60,10,"POLYGON ((-50 -50, 350 -50, 350 850, -50 850, -50 -50))"\n'
        'east,20,5,40,25,"POLYGON ((450 -50, 850 -50, 850 850, 450 850, 450 -50))"\n'
        'far,10,5,40,25,"POLYGON ((5000 5000, 5100 5000, 5100 5100, 5000 5100, 5000 5000))"\n'
    )
    collisions = tmp_path / "collisions.csv"
    collisions.write_text(
        "collision_id,longitude,latitude\n"
        "k1,100,3\n"
        "k2,205,410\n"
        "k3,3000,3000\n"
    )
    return [
        SourceSpec('zones', TabularZoneAdapter(source_crs=None, name='zones'), zones),
        SourceSpec('collisions', CollisionAdapter(source_crs=None, name='collisions'), collisions),
    ]


def fresh_graph():
    return StreetGraph.from_networkx(grid_networkx(node_tags=GRID_DESTINATIONS))


class TestRunPipeline:
    """Tests for the full pipeline."""

    def test_builds_consistent_scenario(self, sources):
        """Households, trips and report agree and reference real elements."""
        graph = fresh_graph()
        result = run_pipeline(graph, sources, PipelineConfig(seed=5), run_timestamp=TIMESTAMP)
        scenario = result.scenario
        report = result.report

        assert len(scenario.households) == 50
        assert report.households == 50
        assert report.persons == sum(h.size for h in scenario.households)
        assert report.trips == len(scenario.trips) > 0
        assert report.coverage_gaps == {'far': 'no graph elements inside zone'}
        assert report.sources['collisions'] == {'emitted': 3, 'skipped': 0}
        assert report.conflation['collision']['unmatched'] == 1

        for trip in scenario.trips:
            assert trip.origin in graph and trip.destination in graph
        assert graph.annotations_for(result.conflation.by_kind('collision')[0].element_id)

        provenance = scenario.provenance
        assert provenance['seed'] == 5
        assert provenance['run_timestamp'] == TIMESTAMP
        assert set(provenance['sources']) == {'zones', 'collisions'}
        assert 'n_workers' not in provenance['config']

    def test_deterministic_across_worker_counts(self, sources):
        """Same seed and inputs: byte-identical scenario for 1 and 2 workers."""
        one = run_pipeline(fresh_graph(), sources, PipelineConfig(seed=9, n_workers=1),
                           run_timestamp=TIMESTAMP)
        two = run_pipeline(fresh_graph(), sources, PipelineConfig(seed=9, n_workers=2),
                           run_timestamp=TIMESTAMP)
        assert one.scenario.to_json() == two.scenario.to_json()

    def test_determinism_check(self, sources):
        """The debug check re-runs sequentially and passes."""
        config = PipelineConfig(n_workers=2, check_determinism=True)
        result = run_pipeline(fresh_graph(), sources, config, run_timestamp=TIMESTAMP)
        assert result.scenario.households

    def test_zone_statistics_argument(self, sources):
        """Explicit statistics take precedence over zone attributes."""
        from mapsynth.population import ZoneStatistics
        result = run_pipeline(
            fresh_graph(), sources, zone_statistics={'west': ZoneStatistics('west', 7)},
            run_timestamp=TIMESTAMP,
        )
        assert len(result.scenario.households) == 7
        assert result.report.coverage_gaps == {}

    def test_poi_destinations(self, sources, tmp_path):
        """Matched POIs become destinations."""
        poi = tmp_path / "poi.geojson"
        poi.write_text(
            '{"type": "FeatureCollection", "features": [{"type": "Feature", '
            '"properties": {"osm_id": "u1", "amenity": "university"}, '
            '"geometry": {"type": "Point", "coordinates": [410, 795]}}]}'
        )
        spec = SourceSpec('poi', PoiAdapter(source_crs=None, target_crs=None, name='poi'), poi)
        result_graph = fresh_graph()
        result = run_pipeline(result_graph, sources + [spec], run_timestamp=TIMESTAMP)

        anchored = result.conflation.by_kind("poi")[0].element_id
        assert anchored is not None
        catalog = DestinationCatalog.build(result_graph, result.records, result.conflation.matches)
        # the tagged school node plus the university
        assert catalog.count("school") == 2

    def test_cancelled(self, sources):
        """A set cancel event stops the run at the next stage boundary."""
        event = threading.Event()
        event.set()
        with pytest.raises(PipelineCancelled) as exc:
            run_pipeline(fresh_graph(), sources, cancel_event=event)
        assert exc.value.stage == 'normalize'

    def test_bad_source_fails_normalize(self, tmp_path):
        """A source over the skip threshold fails the run in normalize."""
        path = tmp_path / "collisions.csv"
        path.write_text("collision_id,longitude,latitude\nk1,x,y\nk2,1,1\n")
        spec = SourceSpec('collisions', CollisionAdapter(source_crs=None), path)
        with pytest.raises(SourceQualityError) as exc:
            run_pipeline(fresh_graph(), [spec])
        assert exc.value.stage == 'normalize'
        assert 'normalize' in str(exc.value)

    def test_config_skip_threshold_applies_to_sources(self, sources, tmp_path):
        """quality_skip_threshold governs adapters that set no threshold of their own."""
        path = tmp_path / "more_collisions.csv"
        path.write_text("collision_id,longitude,latitude\nm1,x,y\nm2,100,3\nm3,205,410\n")
        spec = SourceSpec('more', CollisionAdapter(source_crs=None, name='more'), path)

        with pytest.raises(SourceQualityError):
            run_pipeline(fresh_graph(), sources + [spec], run_timestamp=TIMESTAMP)

        result = run_pipeline(fresh_graph(), sources + [spec],
                              PipelineConfig(quality_skip_threshold=0.9),
                              run_timestamp=TIMESTAMP)
        assert result.report.sources['more'] == {'emitted': 2, 'skipped': 1}


def kml_zone(path, ring, households):
    """One unnamed placemark carrying a household count."""
    path.write_text(
        '<kml xmlns="http://www.opengis.net/kml/2.2"><Document><Placemark>'
        '<ExtendedData><Data name="households"><value>' + str(households) + '</value></Data>'
        '</ExtendedData><Polygon><outerBoundaryIs><LinearRing><coordinates>'
        + ring + '</coordinates></LinearRing></outerBoundaryIs></Polygon>'
        '</Placemark></Document></kml>'
    )
    return path


def poi_file(path, features):
    """GeoJSON points given as (properties, x, y)."""
    path.write_text(json.dumps({"type": "FeatureCollection", "features": [
        {"type": "Feature", "properties": props,
         "geometry": {"type": "Point", "coordinates": [x, y]}}
        for props, x, y in features
    ]}))
    return path


class TestSourcesOfOneKind:
    """Records from several sources of the same kind stay separate."""

    def test_unnamed_zones_from_two_files(self, tmp_path):
        """Each file's zone keeps its own household total."""
        west = kml_zone(tmp_path / "west.kml", "-50,-50 350,-50 350,850 -50,850 -50,-50", 30)
        east = kml_zone(tmp_path / "east.kml", "450,-50 850,-50 850,850 450,850 450,-50", 20)
        sources = [
            SourceSpec('west', KmlPolygonAdapter(source_crs=None), west),
            SourceSpec('east', KmlPolygonAdapter(source_crs=None), east),
        ]
        result = run_pipeline(fresh_graph(), sources, run_timestamp=TIMESTAMP)

        assert result.population.zone_targets == {'west.kml:1': 30, 'east.kml:1': 20}
        assert len(result.scenario.households) == 50
        assert result.report.coverage_gaps == {}

    def test_unnamed_pois_from_two_files(self, tmp_path):
        """A cafe file does not overwrite the category of a university file."""
        university = poi_file(tmp_path / "edu.geojson", [({"amenity": "university"}, 410, 795)])
        cafe = poi_file(tmp_path / "food.geojson", [({"amenity": "cafe"}, 10, 405)])
        sources = [
            SourceSpec('edu', PoiAdapter(target_crs=None), university),
            SourceSpec('food', PoiAdapter(target_crs=None), cafe),
        ]
        graph = fresh_graph()
        result = run_pipeline(graph, sources, run_timestamp=TIMESTAMP)

        assert [r.record_id for r in result.records] == ['edu.geojson:1', 'food.geojson:1']
        catalog = DestinationCatalog.build(graph, result.records, result.conflation.matches)
        assert catalog.count("school") == 2

    def test_duplicate_explicit_ids_are_skipped(self, tmp_path):
        """A repeated (kind, id) keeps the first record and counts the rest as skipped."""
        first = poi_file(tmp_path / "a.geojson", [({"osm_id": "n1", "amenity": "cafe"}, 10, 405)])
        second = poi_file(tmp_path / "b.geojson", [
            ({"osm_id": "n1", "amenity": "school"}, 410, 795),
            ({"osm_id": "n2", "amenity": "school"}, 10, 5),
        ])
        sources = [
            SourceSpec('a', PoiAdapter(target_crs=None, name='a'), first),
            SourceSpec('b', PoiAdapter(target_crs=None, name='b'), second),
        ]
        result = run_pipeline(fresh_graph(), sources, run_timestamp=TIMESTAMP)

        assert [(r.record_id, r.get('category')) for r in result.records] == [
            ('n1', 'cafe'), ('n2', 'school'),
        ]
        assert result.report.sources['b'] == {'emitted': 1, 'skipped': 1}


class TestDeterminismCheck:
    """The sequential re-run must reproduce the parallel output."""

    def test_divergent_rerun_raises(self, sources, monkeypatch):
        """A sequential run with a different household list fails in synthesize."""
        run_core = pipeline._run_core

        def diverging(graph, records, config, statistics, n_workers, cancel_event):
            conflation, population, demand = run_core(
                graph, records, config, statistics, n_workers, cancel_event,
            )
            if n_workers == 1:
                population = dataclasses.replace(population, households=population.households[1:])
            return conflation, population, demand

        monkeypatch.setattr(pipeline, '_run_core', diverging)
        config = PipelineConfig(n_workers=2, check_determinism=True)
        with pytest.raises(DeterminismViolation) as exc:
            run_pipeline(fresh_graph(), sources, config, run_timestamp=TIMESTAMP)
        assert exc.value.stage == 'synthesize'

    def test_first_differing_stage_is_named(self):
        """Only the trips differ: the violation names assemble."""
        conflation = SimpleNamespace(matches=['m'])
        population = SimpleNamespace(households=['h'])
        with pytest.raises(DeterminismViolation) as exc:
            pipeline._check_determinism(
                (conflation, population, SimpleNamespace(trips=['t1'])),
                (conflation, population, SimpleNamespace(trips=['t2'])),
            )
        assert exc.value.stage == 'assemble'
