"""Tests for source adapters."""

import json

import pytest
from shapely.geometry import Point, box

from mapsynth.adapters import (
    CollisionAdapter,
    KmlPolygonAdapter,
    PoiAdapter,
    RecordStream,
    SkippedRow,
    TabularZoneAdapter,
    TransitStopAdapter,
    make_adapter,
    source_fingerprint,
)
from mapsynth.errors import SourceQualityError
from mapsynth.records import NormalizedRecord, RecordKind


def write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


class TestRecordStream:
    """Tests for the single-pass record stream."""

    def test_counts_and_threshold(self):
        """Skip rate above the threshold fails at exhaustion."""
        items = iter([SkippedRow(1, "bad"), SkippedRow(2, "bad")])
        stream = RecordStream("src", items, skip_threshold=0.1)
        with pytest.raises(SourceQualityError) as exc:
            stream.collect()
        assert exc.value.skipped == 2
        assert exc.value.stage == "normalize"

    def test_single_pass(self):
        """A stream can only be iterated once."""
        stream = RecordStream("src", iter([]))
        assert stream.collect() == []
        with pytest.raises(RuntimeError):
            stream.collect()


class TestCollisionAdapter:
    """Tests for CSV point sources."""

    def test_normalizes_rows(self, tmp_path):
        """Rows become collision records; bad coordinates are skipped."""
        path = write(tmp_path / "collisions.csv", (
            "collision_id,longitude,latitude,severity\n"
            "a1,10.0,20.0,slight\n"
            "a2,,20.0,fatal\n"
            "a3,11.0,21.0,serious\n"
        ))
        stream = CollisionAdapter(source_crs=None, skip_threshold=0.5).normalize(path)
        records = stream.collect()

        assert [r.record_id for r in records] == ['a1', 'a3']
        assert all(r.kind is RecordKind.COLLISION for r in records)
        assert records[0].get('severity') == 'slight'
        assert 'longitude' not in records[0].attributes
        assert (stream.emitted, stream.skipped) == (2, 1)

    def test_over_threshold_fails(self, tmp_path):
        """Too many bad rows raise SourceQualityError."""
        path = write(tmp_path / "collisions.csv", (
            "collision_id,longitude,latitude\n"
            "a1,10.0,20.0\n"
            "a2,nan,20.0\n"
        ))
        with pytest.raises(SourceQualityError):
            CollisionAdapter(source_crs=None).normalize(path).collect()

    def test_reprojects_to_target(self, tmp_path):
        """Coordinates are reprojected into the target CRS."""
        path = write(tmp_path / "collisions.csv", (
            "collision_id,longitude,latitude\n"
            "a1,0.0,0.0\n"
            "a2,1.0,0.0\n"
        ))
        adapter = CollisionAdapter(source_crs="EPSG:4326", target_crs="EPSG:3857")
        records = adapter.normalize(path).collect()

        assert records[0].geometry.x == pytest.approx(0.0, abs=1e-6)
        assert records[1].geometry.x == pytest.approx(111319.49, rel=1e-4)

    def test_generated_ids_carry_source_name(self, tmp_path):
        """Rows without an id get "{source}:{row}" ids."""
        path = write(tmp_path / "c.csv", "longitude,latitude\n1.0,1.0\n2.0,2.0\n")
        records = CollisionAdapter(source_crs=None, name='city').normalize(path).collect()
        assert [r.record_id for r in records] == ['city:1', 'city:2']

    def test_threshold_precedence(self, tmp_path):
        """The adapter's own threshold wins over the one passed to normalize."""
        path = write(tmp_path / "c.csv", (
            "collision_id,longitude,latitude\n"
            "a1,10.0,20.0\n"
            "a2,,20.0\n"
        ))
        records = CollisionAdapter(source_crs=None).normalize(path, skip_threshold=0.6).collect()
        assert [r.record_id for r in records] == ['a1']

        with pytest.raises(SourceQualityError):
            CollisionAdapter(source_crs=None, skip_threshold=0.2).normalize(
                path, skip_threshold=0.6).collect()

    def test_small_chunks(self, tmp_path):
        """Chunked reading yields the same records."""
        rows = "".join(f"r{i},{i}.0,{i}.0\n" for i in range(7))
        path = write(tmp_path / "c.csv", "collision_id,longitude,latitude\n" + rows)
        records = CollisionAdapter(source_crs=None, chunk_size=3).normalize(path).collect()
        assert [r.record_id for r in records] == [f"r{i}" for i in range(7)]


class TestTransitStopAdapter:
    """Tests for GTFS stops."""

    def test_parent_stations_left_out(self, tmp_path):
        """Stations (location_type 1) are not stops and not skips."""
        path = write(tmp_path / "stops.txt", (
            "stop_id,stop_name,stop_lat,stop_lon,location_type\n"
            "S1,Main St,40.0,-75.0,0\n"
            "P1,Central Station,40.1,-75.1,1\n"
            "S2,Oak Ave,40.2,-75.2,\n"
        ))
        stream = TransitStopAdapter(source_crs=None).normalize(path)
        records = stream.collect()

        assert [r.record_id for r in records] == ['S1', 'S2']
        assert records[0].kind is RecordKind.TRANSIT_STOP
        assert records[0].geometry.x == pytest.approx(-75.0)
        assert stream.skipped == 0


class TestPoiAdapter:
    """Tests for vector POI sources."""

    def test_geojson_points_and_polygons(self, tmp_path):
        """Polygons are reduced to points; category comes from tag columns."""
        features = [
            {"type": "Feature", "properties": {"osm_id": "n1", "amenity": "cafe"},
             "geometry": {"type": "Point", "coordinates": [5.0, 5.0]}},
            {"type": "Feature", "properties": {"osm_id": "w2", "amenity": None, "shop": "bakery"},
             "geometry": {"type": "Polygon",
                          "coordinates": [[[0, 0], [2, 0], [2, 2], [0, 2], [0, 0]]]}},
        ]
        path = write(tmp_path / "poi.geojson",
                     json.dumps({"type": "FeatureCollection", "features": features}))
        records = PoiAdapter(target_crs=None).normalize(path).collect()

        assert [r.record_id for r in records] == ['n1', 'w2']
        assert records[0].get('category') == 'cafe'
        assert records[1].get('category') == 'bakery'
        assert records[1].geometry.geom_type == "Point"
        assert records[1].geometry.within(box(0, 0, 2, 2))


KML = """<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
<Document>
  <Placemark id="pm1">
    <name>Tract 1</name>
    <ExtendedData>
      <Data name="GEOID"><value>001</value></Data>
      <SchemaData><SimpleData name="households">120</SimpleData></SchemaData>
    </ExtendedData>
    <Polygon><outerBoundaryIs><LinearRing>
      <coordinates>0,0 10,0 10,10 0,10 0,0</coordinates>
    </LinearRing></outerBoundaryIs></Polygon>
  </Placemark>
  <Placemark>
    <name>Broken</name>
    <Point><coordinates>1,1</coordinates></Point>
  </Placemark>
  <Placemark>
    <name>Tract 3</name>
    <ExtendedData><Data name="GEOID"><value>003</value></Data></ExtendedData>
    <Polygon><outerBoundaryIs><LinearRing>
      <coordinates>20,0 30,0 30,10 20,10 20,0</coordinates>
    </LinearRing></outerBoundaryIs></Polygon>
  </Placemark>
</Document>
</kml>
"""


class TestKmlPolygonAdapter:
    """Tests for KML zone polygons."""

    def test_placemarks(self, tmp_path):
        """Polygons and ExtendedData attributes are read; non-polygons skipped."""
        path = write(tmp_path / "tracts.kml", KML)
        stream = KmlPolygonAdapter(id_attribute='GEOID', source_crs=None,
                                   skip_threshold=0.5).normalize(path)
        records = stream.collect()

        assert [r.record_id for r in records] == ['001', '003']
        assert records[0].kind is RecordKind.CENSUS_TRACT
        assert records[0].get('households') == '120'
        assert records[0].get('name') == 'Tract 1'
        assert records[0].geometry.area == pytest.approx(100.0)
        assert stream.skipped == 1

    def test_placemark_id_fallback(self, tmp_path):
        """Without an id attribute the placemark id is used."""
        path = write(tmp_path / "tracts.kml", KML)
        records = KmlPolygonAdapter(source_crs=None, skip_threshold=0.5).normalize(path).collect()
        assert records[0].record_id == 'pm1'

    def test_unnamed_placemarks_in_folders(self, tmp_path):
        """Nested placemarks are all read; unnamed ones get "{source}:{ordinal}" ids."""
        ring = "<Polygon><outerBoundaryIs><LinearRing><coordinates>{}</coordinates>" \
               "</LinearRing></outerBoundaryIs></Polygon>"
        path = write(tmp_path / "east.kml", (
            '<kml xmlns="http://www.opengis.net/kml/2.2"><Document>'
            "<Folder><Placemark>" + ring.format("0,0 10,0 10,10 0,0") + "</Placemark>"
            "<Folder><Placemark>" + ring.format("20,0 30,0 30,10 20,0") + "</Placemark></Folder>"
            "</Folder></Document></kml>"
        ))
        records = KmlPolygonAdapter(source_crs=None, chunk_size=1).normalize(path).collect()

        assert [r.record_id for r in records] == ['east.kml:1', 'east.kml:2']
        assert records[1].geometry.area == pytest.approx(50.0)


class TestTabularZoneAdapter:
    """Tests for WKT zone tables."""

    def test_rows(self, tmp_path):
        """WKT polygons with statistics; malformed rows skipped."""
        path = write(tmp_path / "zones.csv", (
            "zone_id,households,wkt\n"
            'A,100,"POLYGON ((0 0, 10 0, 10 10, 0 10, 0 0))"\n'
            'B,50,"POLYGON ((0 0, 1 1"\n'
            'C,10,"POLYGON ((0 0, 1 0, 2 0, 0 0))"\n'
            'D,5,"POLYGON ((20 0, 30 0, 30 10, 20 10, 20 0))"\n'
        ))
        stream = TabularZoneAdapter(source_crs=None, skip_threshold=0.5).normalize(path)
        records = stream.collect()

        assert [r.record_id for r in records] == ['A', 'D']
        assert records[0].get('households') == '100'
        assert stream.skipped == 2


class TestMisc:
    """Tests for adapter helpers."""

    def test_make_adapter(self):
        """Adapters are built by manifest name."""
        assert isinstance(make_adapter('transit_stops'), TransitStopAdapter)
        with pytest.raises(ValueError):
            make_adapter('gpx')

    def test_fingerprint_tracks_content(self, tmp_path):
        """Fingerprints change with file content."""
        a = write(tmp_path / "a.csv", "x\n1\n")
        b = write(tmp_path / "b.csv", "x\n2\n")
        assert source_fingerprint(a) != source_fingerprint(b)
        assert source_fingerprint(a) == source_fingerprint(a)

    def test_record_attributes_are_immutable(self):
        """Mutating the attributes view does not change the record."""
        record = NormalizedRecord.create('r', RecordKind.POI, Point(0, 0), {'b': 1, 'a': 2})
        attrs = record.attributes
        attrs['a'] = 99
        assert record.get('a') == 2
        assert record.attribute_items == (('a', 2), ('b', 1))
