"""KML markup: writing our own documents, reading them back, and converting
third-party KML to a GeoJSON FeatureCollection.
"""

import logging
import math
import re
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Mapping
from typing import Any

from routelogger.app import images
from routelogger.app.errors import CodecError
from routelogger.app.settings import APP_NAME
from routelogger.app.store import models as store_models

from . import models

logger = logging.getLogger(__name__)

KML_NS = 'http://www.opengis.net/kml/2.2'
ATOM_NS = 'http://www.w3.org/2005/Atom'
NAMESPACES = {'kml': KML_NS, 'atom': ATOM_NS}

ET.register_namespace('', KML_NS)
ET.register_namespace('atom', ATOM_NS)

TRACK_STYLE_ID = 'trackStyle'
PHOTO_STYLE_ID = 'photoStyle'
TRACK_LINE_COLOR = 'ff0000ff'
TRACK_LINE_WIDTH = '4'
CAMERA_ICON_HREF = 'http://maps.google.com/mapfiles/kml/shapes/camera.png'

IMG_SRC_PATTERN = re.compile(r'<img[^>]*\bsrc="([^"]+)"[^>]*/?>', re.IGNORECASE)
BR_PATTERN = re.compile(r'<br\s*/?>', re.IGNORECASE)


def photo_image_name(photo_id: int | None) -> str:
    """Archive-relative path of a photo's packaged image."""
    return f'images/photo_{photo_id}.jpg'


def _tag(name: str) -> str:
    return f'{{{KML_NS}}}{name}'


def _sub(parent: ET.Element, name: str, text: str | None = None) -> ET.Element:
    element = ET.SubElement(parent, _tag(name))
    if text is not None:
        element.text = text
    return element


def _coordinates(points: Iterable[Mapping[str, float]]) -> str:
    return ' '.join(f'{p["lng"]},{p["lat"]},0' for p in points)


# ----------------------------------------------------------------------
# Writing
# ----------------------------------------------------------------------


def build_kml(
    tracks: Iterable[store_models.Track], photos: Iterable[store_models.Photo]
) -> str:
    """Render tracks and photos as a KML document carrying our author marker."""
    root = ET.Element(_tag('kml'))
    document = _sub(root, 'Document')
    author = ET.SubElement(document, f'{{{ATOM_NS}}}author')
    ET.SubElement(author, f'{{{ATOM_NS}}}name').text = APP_NAME
    _sub(document, 'name', f'{APP_NAME} Data')

    track_style = _sub(document, 'Style')
    track_style.set('id', TRACK_STYLE_ID)
    line_style = _sub(track_style, 'LineStyle')
    _sub(line_style, 'color', TRACK_LINE_COLOR)
    _sub(line_style, 'width', TRACK_LINE_WIDTH)

    photo_style = _sub(document, 'Style')
    photo_style.set('id', PHOTO_STYLE_ID)
    icon_style = _sub(photo_style, 'IconStyle')
    _sub(icon_style, 'scale', '1.0')
    _sub(_sub(icon_style, 'Icon'), 'href', CAMERA_ICON_HREF)

    for track in tracks:
        if not track.points:
            continue
        when = store_models.isoformat(track.timestamp)
        placemark = _sub(document, 'Placemark')
        _sub(placemark, 'name', f'Track {when}')
        _sub(_sub(placemark, 'TimeStamp'), 'when', when)
        _sub(placemark, 'styleUrl', f'#{TRACK_STYLE_ID}')
        line = _sub(placemark, 'LineString')
        _sub(line, 'tessellate', '1')
        _sub(line, 'coordinates', _coordinates(track.points))

    for photo in photos:
        when = store_models.isoformat(photo.timestamp)
        image = f'<img src="{photo_image_name(photo.id)}" width="300" />'
        placemark = _sub(document, 'Placemark')
        _sub(placemark, 'name', f'Photo {when}')
        description = f'{photo.text}<br/>{image}' if photo.text else image
        _sub(placemark, 'description', description)
        _sub(_sub(placemark, 'TimeStamp'), 'when', when)
        _sub(placemark, 'styleUrl', f'#{PHOTO_STYLE_ID}')
        if photo.direction is not None:
            data = _sub(_sub(placemark, 'ExtendedData'), 'Data')
            data.set('name', 'direction')
            _sub(data, 'value', str(photo.direction))
        if photo.location is not None:
            point = _sub(placemark, 'Point')
            _sub(point, 'coordinates', _coordinates([photo.location]))

    ET.indent(root)
    body = ET.tostring(root, encoding='unicode')
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}\n'


# ----------------------------------------------------------------------
# Reading
# ----------------------------------------------------------------------


def parse_kml(text: str | bytes) -> ET.Element:
    """Parse KML text into an element tree root."""
    try:
        return ET.fromstring(text)
    except ET.ParseError as exc:
        raise CodecError(f'KML document could not be parsed: {exc}') from exc


def is_native(root: ET.Element) -> bool:
    """True when the document's atom author name is ours."""
    for name in root.iterfind('.//atom:author/atom:name', NAMESPACES):
        if (name.text or '').strip() == APP_NAME:
            return True
    return False


def _local_name(element: ET.Element) -> str:
    return element.tag.rsplit('}', 1)[-1]


def _find(element: ET.Element, name: str) -> ET.Element | None:
    """First direct child with the given local name, in any namespace."""
    for child in element:
        if _local_name(child) == name:
            return child
    return None


def _child_text(element: ET.Element, *path: str) -> str | None:
    node: ET.Element | None = element
    for name in path:
        if node is None:
            return None
        node = _find(node, name)
    if node is None or node.text is None:
        return None
    return node.text.strip()


def _placemarks(root: ET.Element) -> Iterable[ET.Element]:
    return (el for el in root.iter() if _local_name(el) == 'Placemark')


def parse_coordinates(text: str | None) -> list[list[float]]:
    """Split a KML coordinates string into ``[lng, lat(, alt)]`` positions.

    Tuples that do not parse to finite numbers are dropped.
    """
    positions = []
    for chunk in (text or '').split():
        parts = chunk.split(',')
        try:
            values = [float(part) for part in parts[:3]]
        except ValueError:
            continue
        if len(values) < 2 or not all(math.isfinite(v) for v in values):
            continue
        positions.append(values)
    return positions


def extended_data(placemark: ET.Element) -> dict[str, str]:
    """``<Data name=...><value>`` pairs of a placemark."""
    result: dict[str, str] = {}
    container = _find(placemark, 'ExtendedData')
    if container is None:
        return result
    for data in container:
        if _local_name(data) != 'Data' or not data.get('name'):
            continue
        result[data.get('name', '')] = _child_text(data, 'value') or ''
    return result


def split_description(description: str | None) -> tuple[str | None, str | None]:
    """Separate a photo description into caption text and image reference."""
    if not description:
        return None, None
    match = IMG_SRC_PATTERN.search(description)
    source = match.group(1) if match else None
    caption = BR_PATTERN.sub('', IMG_SRC_PATTERN.sub('', description)).strip()
    return caption or None, source


def native_from_kml(
    root: ET.Element, assets: Mapping[str, bytes]
) -> models.NativeImport:
    """Rebuild tracks and photos from one of our own KML documents.

    ``assets`` maps archive-relative paths to packaged image bytes.
    """
    result = models.NativeImport(tracks=[], photos=[])
    for placemark in _placemarks(root):
        when = _child_text(placemark, 'TimeStamp', 'when')
        timestamp = store_models.parse_timestamp(when)
        line = _find(placemark, 'LineString')
        point = _find(placemark, 'Point')

        if line is not None:
            points = [
                models.parse_position(p)
                for p in parse_coordinates(_child_text(line, 'coordinates'))
            ]
            valid = [p for p in points if p is not None]
            if not valid:
                logger.debug('Dropping track placemark without valid points')
                continue
            result.tracks.append(
                store_models.Track(
                    timestamp=timestamp or store_models.utc_now(),
                    points=valid,
                    total_points=len(valid),
                )
            )
        elif point is not None:
            positions = parse_coordinates(_child_text(point, 'coordinates'))
            location = models.parse_position(positions[0]) if positions else None
            if location is None:
                logger.debug('Dropping photo placemark without valid coordinates')
                continue
            caption, source = split_description(_child_text(placemark, 'description'))
            blob = assets.get(source) if source else None
            data = None
            if blob is not None and source is not None:
                data = images.to_data_url(blob, images.mime_type_for(source))
            result.photos.append(
                store_models.Photo(
                    data=data,
                    timestamp=timestamp or store_models.utc_now(),
                    location=location,
                    direction=models.parse_direction(
                        extended_data(placemark).get('direction')
                    ),
                    text=caption,
                )
            )
    return result


# ----------------------------------------------------------------------
# KML -> GeoJSON for third-party documents
# ----------------------------------------------------------------------


def _geometry(element: ET.Element) -> dict[str, Any] | None:
    name = _local_name(element)
    if name == 'Point':
        positions = parse_coordinates(_child_text(element, 'coordinates'))
        return {'type': 'Point', 'coordinates': positions[0]} if positions else None
    if name == 'LineString':
        positions = parse_coordinates(_child_text(element, 'coordinates'))
        if len(positions) < 2:
            return None
        return {'type': 'LineString', 'coordinates': positions}
    if name == 'Polygon':
        rings = []
        for boundary in ('outerBoundaryIs', 'innerBoundaryIs'):
            for child in element:
                if _local_name(child) != boundary:
                    continue
                text = _child_text(child, 'LinearRing', 'coordinates')
                ring = parse_coordinates(text)
                if len(ring) >= 4:
                    rings.append(ring)
        if not rings:
            return None
        return {'type': 'Polygon', 'coordinates': rings}
    if name == 'MultiGeometry':
        parts = [g for g in (_geometry(child) for child in element) if g is not None]
        if not parts:
            return None
        return {'type': 'GeometryCollection', 'geometries': parts}
    return None


def _placemark_geometry(placemark: ET.Element) -> dict[str, Any] | None:
    for child in placemark:
        if _local_name(child) in ('Point', 'LineString', 'Polygon', 'MultiGeometry'):
            return _geometry(child)
    return None


def to_feature_collection(root: ET.Element) -> dict[str, Any]:
    """Convert every placemark with a usable geometry to a GeoJSON Feature."""
    features = []
    for placemark in _placemarks(root):
        geometry = _placemark_geometry(placemark)
        if geometry is None:
            logger.debug('Skipping placemark without usable geometry')
            continue
        properties: dict[str, Any] = {}
        for key in ('name', 'description', 'styleUrl'):
            value = _child_text(placemark, key)
            if value is not None:
                properties[key] = value
        when = _child_text(placemark, 'TimeStamp', 'when')
        if when:
            properties['timestamp'] = when
        properties.update(extended_data(placemark))
        features.append(
            {'type': 'Feature', 'geometry': geometry, 'properties': properties}
        )
    return {'type': 'FeatureCollection', 'features': features}
