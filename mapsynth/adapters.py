"""
Source adapters: normalize raw datasets into NormalizedRecord streams.

Each adapter reads its source in chunks so files larger than memory can be
streamed. Rows that cannot be normalized are skipped and counted; the
stream enforces the skip-rate threshold once it is exhausted.
"""

from __future__ import annotations

import hashlib
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

import geopandas as gpd
import pandas as pd
import shapely
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from .errors import InvalidGeometry, InvalidRecord, SourceQualityError
from .records import NormalizedRecord, RecordKind, make_point, repair_polygon

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10_000
DEFAULT_SOURCE_CRS = "EPSG:4326"
DEFAULT_SKIP_THRESHOLD = 0.1

# Columns checked, in order, for a POI category
POI_CATEGORY_COLUMNS = ('category', 'amenity', 'shop', 'leisure', 'office', 'landuse')
POI_ID_COLUMNS = ('id', 'osm_id', 'poi_id')


@dataclass(frozen=True)
class SkippedRow:
    """Marker yielded by adapters for a row that could not be normalized."""

    row: int
    reason: str


StreamItem = Union[NormalizedRecord, SkippedRow]


class RecordStream:
    """
    Lazy, single-pass stream of normalized records.

    Skipped rows are counted, not yielded. When the underlying source is
    exhausted the skip rate is checked against the threshold.
    """

    def __init__(
        self,
        source_name: str,
        items: Iterator[StreamItem],
        skip_threshold: float = DEFAULT_SKIP_THRESHOLD,
    ):
        self.source_name = source_name
        self.skip_threshold = skip_threshold
        self.emitted = 0
        self.skipped = 0
        self.exhausted = False
        self._items = items
        self._started = False
        self._skip_reasons: dict[str, int] = {}

    def __iter__(self) -> Iterator[NormalizedRecord]:
        if self._started:
            raise RuntimeError(f"Record stream for {self.source_name} can only be read once")
        self._started = True
        for item in self._items:
            if isinstance(item, SkippedRow):
                self.skipped += 1
                self._skip_reasons[item.reason] = self._skip_reasons.get(item.reason, 0) + 1
                logger.debug(f"{self.source_name}: skipped row {item.row}: {item.reason}")
                continue
            self.emitted += 1
            yield item
        self.exhausted = True
        self.check_quality()

    @property
    def total(self) -> int:
        return self.emitted + self.skipped

    @property
    def skip_rate(self) -> float:
        return self.skipped / self.total if self.total else 0.0

    def check_quality(self) -> None:
        """
        Raises:
            SourceQualityError: If the skip rate exceeds the threshold
        """
        if self.skipped:
            logger.warning(
                f"{self.source_name}: skipped {self.skipped}/{self.total} records "
                f"({self.skip_rate:.1%})"
            )
        if self.skip_rate > self.skip_threshold:
            raise SourceQualityError(
                self.source_name, self.skipped, self.total, self.skip_threshold,
                stage="normalize",
            )

    def collect(self) -> list[NormalizedRecord]:
        """Read the whole stream into a list."""
        return list(self)


def source_fingerprint(path: Path | str, chunk_bytes: int = 1 << 20) -> str:
    """
    Content digest of a raw source file, used as its dataset version.
    """
    digest = hashlib.blake2b(digest_size=16)
    with Path(path).open("rb") as f:
        for block in iter(lambda: f.read(chunk_bytes), b""):
            digest.update(block)
    return digest.hexdigest()


class SourceAdapter:
    """
    Base adapter. Subclasses implement _iter_items(source, name).

    Generated record ids (rows without an id) are prefixed with the source
    name so records from different sources of one kind stay distinct.

    Args:
        source_crs: CRS of the raw coordinates
        target_crs: CRS of the base graph (None to keep source coordinates)
        skip_threshold: Max tolerable skip rate before SourceQualityError.
            When None, the threshold passed to normalize() applies
        chunk_size: Rows per read
        name: Source name used in reports (defaults to the file name)
    """

    kind: RecordKind = RecordKind.POI

    def __init__(
        self,
        source_crs: Any = DEFAULT_SOURCE_CRS,
        target_crs: Any = None,
        skip_threshold: Optional[float] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        name: Optional[str] = None,
        kind: Optional[RecordKind | str] = None,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.source_crs = source_crs
        self.target_crs = target_crs
        self.skip_threshold = skip_threshold
        self.chunk_size = chunk_size
        self.name = name
        if kind is not None:
            self.kind = RecordKind(kind)

    def normalize(self, source: Path | str, skip_threshold: Optional[float] = None) -> RecordStream:
        """
        Stream normalized records from a raw source.

        Args:
            source: Raw source path
            skip_threshold: Threshold used when the adapter has none of its own
                (default: DEFAULT_SKIP_THRESHOLD)
        """
        name = self.name or Path(str(source)).name
        threshold = self.skip_threshold
        if threshold is None:
            threshold = skip_threshold if skip_threshold is not None else DEFAULT_SKIP_THRESHOLD
        return RecordStream(name, self._iter_items(source, name), threshold)

    def _iter_items(self, source: Any, name: str) -> Iterator[StreamItem]:
        raise NotImplementedError

    def _reproject(self, geoms: list[BaseGeometry], crs: Any = None) -> list[BaseGeometry]:
        crs = crs if crs is not None else self.source_crs
        if not geoms or self.target_crs is None or crs is None:
            return geoms
        series = gpd.GeoSeries(geoms, crs=crs)
        if series.crs == self.target_crs:
            return geoms
        return list(series.to_crs(self.target_crs))

    def _build_batch(
        self,
        pending: list[tuple[int, str, BaseGeometry, dict[str, Any]]],
        crs: Any = None,
    ) -> Iterator[StreamItem]:
        """Reproject a batch of parsed rows and turn them into records."""
        geoms = self._reproject([geom for _, _, geom, _ in pending], crs)
        for (row, record_id, _, attrs), geom in zip(pending, geoms):
            try:
                yield NormalizedRecord.create(record_id, self.kind, geom, attrs)
            except InvalidGeometry as e:
                yield SkippedRow(row, str(e))


# =============================================================================
# CSV POINT SOURCES
# =============================================================================

class PointCsvAdapter(SourceAdapter):
    """
    Point records from a CSV with coordinate columns.

    Args:
        x_column: Longitude / easting column
        y_column: Latitude / northing column
        id_column: Record id column ("{source name}:{row}" when absent)
        attribute_columns: Columns kept as attributes (default: all others)
    """

    def __init__(
        self,
        x_column: str = 'longitude',
        y_column: str = 'latitude',
        id_column: Optional[str] = None,
        attribute_columns: Optional[Iterable[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.x_column = x_column
        self.y_column = y_column
        self.id_column = id_column
        self.attribute_columns = list(attribute_columns) if attribute_columns is not None else None

    def _keep_row(self, row: dict[str, Any]) -> bool:
        return True

    def _attributes(self, row: dict[str, Any]) -> dict[str, Any]:
        skip = {self.x_column, self.y_column}
        if self.attribute_columns is not None:
            return {c: row.get(c) for c in self.attribute_columns}
        return {k: v for k, v in row.items() if k not in skip}

    def _iter_items(self, source: Path | str, name: str) -> Iterator[StreamItem]:
        row_number = 0
        reader = pd.read_csv(source, chunksize=self.chunk_size, dtype=str)
        for chunk in reader:
            pending = []
            for row in chunk.to_dict(orient="records"):
                row_number += 1
                if not self._keep_row(row):
                    continue
                try:
                    point = make_point(row.get(self.x_column), row.get(self.y_column))
                except InvalidGeometry as e:
                    yield SkippedRow(row_number, str(e))
                    continue
                record_id = row.get(self.id_column) if self.id_column else None
                if record_id is None or (isinstance(record_id, float) and pd.isna(record_id)):
                    record_id = f"{name}:{row_number}"
                pending.append((row_number, str(record_id), point, self._attributes(row)))
            yield from self._build_batch(pending)


class CollisionAdapter(PointCsvAdapter):
    """Collision records: one point per row (e.g. STATS19-style exports)."""

    kind = RecordKind.COLLISION

    def __init__(self, id_column: str = 'collision_id', **kwargs: Any):
        kwargs.setdefault('x_column', 'longitude')
        kwargs.setdefault('y_column', 'latitude')
        super().__init__(id_column=id_column, **kwargs)


class TransitStopAdapter(PointCsvAdapter):
    """Transit stops from a GTFS stops.txt. Parent stations are left out."""

    kind = RecordKind.TRANSIT_STOP

    def __init__(self, **kwargs: Any):
        kwargs.setdefault('x_column', 'stop_lon')
        kwargs.setdefault('y_column', 'stop_lat')
        kwargs.setdefault('id_column', 'stop_id')
        super().__init__(**kwargs)

    def _keep_row(self, row: dict[str, Any]) -> bool:
        location_type = row.get('location_type')
        if location_type is None or (isinstance(location_type, float) and pd.isna(location_type)):
            return True
        return str(location_type).strip() in ('', '0')


# =============================================================================
# VECTOR POI SOURCES
# =============================================================================

class PoiAdapter(SourceAdapter):
    """
    Points of interest from any vector file geopandas can read.

    Polygon features (buildings, parks) are reduced to a representative
    point. The category is the first non-empty value among
    POI_CATEGORY_COLUMNS.
    """

    kind = RecordKind.POI

    def __init__(self, id_column: Optional[str] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.id_column = id_column

    def _read_chunks(self, source: Path | str) -> Iterator[gpd.GeoDataFrame]:
        start = 0
        while True:
            chunk = gpd.read_file(source, rows=slice(start, start + self.chunk_size))
            if chunk.empty:
                return
            yield chunk
            if len(chunk) < self.chunk_size:
                return
            start += self.chunk_size

    def _iter_items(self, source: Path | str, name: str) -> Iterator[StreamItem]:
        row_number = 0
        for chunk in self._read_chunks(source):
            crs = chunk.crs if chunk.crs is not None else self.source_crs
            id_column = self.id_column or next(
                (c for c in POI_ID_COLUMNS if c in chunk.columns), None
            )
            pending = []
            for row in chunk.to_dict(orient="records"):
                row_number += 1
                geom = row.pop('geometry', None)
                if geom is None or geom.is_empty:
                    yield SkippedRow(row_number, "missing geometry")
                    continue
                if geom.geom_type != "Point":
                    geom = geom.representative_point()
                attrs = {k: v for k, v in row.items() if v is not None}
                category = next(
                    (row[c] for c in POI_CATEGORY_COLUMNS if isinstance(row.get(c), str) and row[c]),
                    None,
                )
                attrs['category'] = category
                record_id = row.get(id_column) if id_column else None
                if record_id is None:
                    record_id = f"{name}:{row_number}"
                pending.append((row_number, str(record_id), geom, attrs))
            yield from self._build_batch(pending, crs)


# =============================================================================
# POLYGON ZONE SOURCES
# =============================================================================

def _local(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def _parse_kml_ring(text: Optional[str]) -> list[tuple[float, float]]:
    coords = []
    for token in (text or "").split():
        parts = token.split(',')
        if len(parts) < 2:
            raise InvalidGeometry(f"malformed KML coordinate {token!r}")
        try:
            coords.append((float(parts[0]), float(parts[1])))
        except ValueError as e:
            raise InvalidGeometry(f"malformed KML coordinate {token!r}") from e
    return coords


def _parse_kml_polygon(elem: ET.Element) -> Polygon:
    shell = None
    holes = []
    for boundary in elem:
        name = _local(boundary.tag)
        if name not in ('outerBoundaryIs', 'innerBoundaryIs'):
            continue
        ring = next((c for c in boundary.iter() if _local(c.tag) == 'coordinates'), None)
        coords = _parse_kml_ring(ring.text if ring is not None else None)
        if name == 'outerBoundaryIs':
            shell = coords
        else:
            holes.append(coords)
    if not shell or len(shell) < 3:
        raise InvalidGeometry("KML polygon without an outer boundary")
    return Polygon(shell, holes)


class KmlPolygonAdapter(SourceAdapter):
    """
    Zone polygons from KML placemarks.

    Attributes come from ExtendedData (both <Data name=..><value> and
    <SimpleData name=..>) plus the placemark <name>. The record id is the
    id_attribute value when present, else the placemark id, name, or
    "{source name}:{ordinal}".
    """

    kind = RecordKind.CENSUS_TRACT

    def __init__(self, id_attribute: Optional[str] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.id_attribute = id_attribute

    def _parse_placemark(
        self, placemark: ET.Element, ordinal: int, source_name: str,
    ) -> tuple[str, BaseGeometry, dict]:
        attrs: dict[str, Any] = {}
        polygons = []
        for child in placemark.iter():
            name = _local(child.tag)
            if name == 'Data' and child.get('name'):
                value = next((v for v in child if _local(v.tag) == 'value'), None)
                attrs[child.get('name')] = value.text if value is not None else None
            elif name == 'SimpleData' and child.get('name'):
                attrs[child.get('name')] = child.text
            elif name == 'Polygon':
                polygons.append(_parse_kml_polygon(child))
        placemark_name = next(
            (c.text for c in placemark if _local(c.tag) == 'name'), None
        )
        if placemark_name is not None:
            attrs.setdefault('name', placemark_name)
        if not polygons:
            raise InvalidGeometry("placemark has no polygon")
        geom = polygons[0] if len(polygons) == 1 else MultiPolygon(polygons)
        geom = repair_polygon(geom)

        record_id = None
        if self.id_attribute:
            record_id = attrs.get(self.id_attribute)
        if record_id is None:
            record_id = placemark.get('id') or placemark_name or f"{source_name}:{ordinal}"
        return str(record_id), geom, attrs

    def _iter_items(self, source: Path | str, name: str) -> Iterator[StreamItem]:
        ordinal = 0
        pending = []
        # open elements; finished placemarks are detached from their parent
        open_elems: list[ET.Element] = []
        for event, elem in ET.iterparse(str(source), events=("start", "end")):
            if event == "start":
                open_elems.append(elem)
                continue
            open_elems.pop()
            if _local(elem.tag) != 'Placemark':
                continue
            ordinal += 1
            try:
                record_id, geom, attrs = self._parse_placemark(elem, ordinal, name)
            except InvalidGeometry as e:
                yield SkippedRow(ordinal, str(e))
            else:
                pending.append((ordinal, record_id, geom, attrs))
            elem.clear()
            if open_elems:
                open_elems[-1].remove(elem)
            if len(pending) >= self.chunk_size:
                yield from self._build_batch(pending)
                pending = []
        yield from self._build_batch(pending)


class TabularZoneAdapter(SourceAdapter):
    """
    Zone polygons from a CSV with a WKT geometry column and zone attributes
    (household counts, age brackets, ...).
    """

    kind = RecordKind.CENSUS_TRACT

    def __init__(self, id_column: str = 'zone_id', geometry_column: str = 'wkt', **kwargs: Any):
        super().__init__(**kwargs)
        self.id_column = id_column
        self.geometry_column = geometry_column

    def _parse_row(self, row: dict[str, Any]) -> tuple[str, BaseGeometry, dict]:
        record_id = row.get(self.id_column)
        if not isinstance(record_id, str) or not record_id.strip():
            raise InvalidRecord(f"missing {self.id_column}")
        wkt = row.get(self.geometry_column)
        if not isinstance(wkt, str) or not wkt.strip():
            raise InvalidGeometry("missing geometry")
        try:
            geom = shapely.from_wkt(wkt)
        except GEOSException as e:
            raise InvalidGeometry(f"malformed WKT: {e}") from e
        geom = repair_polygon(geom)
        attrs = {k: v for k, v in row.items() if k != self.geometry_column}
        return record_id.strip(), geom, attrs

    def _iter_items(self, source: Path | str, name: str) -> Iterator[StreamItem]:
        row_number = 0
        for chunk in pd.read_csv(source, chunksize=self.chunk_size, dtype=str):
            pending = []
            for row in chunk.to_dict(orient="records"):
                row_number += 1
                try:
                    pending.append((row_number, *self._parse_row(row)))
                except (InvalidGeometry, InvalidRecord) as e:
                    yield SkippedRow(row_number, str(e))
            yield from self._build_batch(pending)


ADAPTERS: dict[str, type[SourceAdapter]] = {
    'collisions': CollisionAdapter,
    'transit_stops': TransitStopAdapter,
    'poi': PoiAdapter,
    'kml_zones': KmlPolygonAdapter,
    'tabular_zones': TabularZoneAdapter,
}


def make_adapter(adapter_type: str, **kwargs: Any) -> SourceAdapter:
    """Build an adapter by its manifest name (see ADAPTERS)."""
    try:
        cls = ADAPTERS[adapter_type]
    except KeyError:
        raise ValueError(
            f"Unknown adapter type: {adapter_type} (expected one of {sorted(ADAPTERS)})"
        ) from None
    return cls(**kwargs)

