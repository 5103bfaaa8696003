"""GeoJSON documents: export with our creator marker and native reconstruction."""

import json
import logging
from collections.abc import Iterable
from typing import Any

from routelogger.app.errors import CodecError
from routelogger.app.settings import APP_NAME
from routelogger.app.store import models as store_models

from . import models

logger = logging.getLogger(__name__)

GEOMETRY_TYPES = frozenset(
    {
        'Point',
        'MultiPoint',
        'LineString',
        'MultiLineString',
        'Polygon',
        'MultiPolygon',
        'GeometryCollection',
    }
)


def build_document(
    tracks: Iterable[store_models.Track], photos: Iterable[store_models.Photo]
) -> dict[str, Any]:
    """FeatureCollection with one LineString per track and one Point per photo."""
    features: list[dict[str, Any]] = []
    for track in tracks:
        features.append(
            {
                'type': 'Feature',
                'geometry': {
                    'type': 'LineString',
                    'coordinates': [[p['lng'], p['lat']] for p in track.points],
                },
                'properties': {
                    'timestamp': store_models.isoformat(track.timestamp),
                    'totalPoints': len(track.points),
                },
            }
        )
    for photo in photos:
        geometry = None
        if photo.location is not None:
            geometry = {
                'type': 'Point',
                'coordinates': [photo.location['lng'], photo.location['lat']],
            }
        features.append(
            {
                'type': 'Feature',
                'geometry': geometry,
                'properties': {
                    'timestamp': store_models.isoformat(photo.timestamp),
                    'photoData': photo.data,
                    'direction': photo.direction,
                    'text': photo.text,
                },
            }
        )
    return {'type': 'FeatureCollection', 'creator': APP_NAME, 'features': features}


def parse_document(text: str | bytes) -> dict[str, Any]:
    """Decode a GeoJSON document into a FeatureCollection.

    A lone Feature or geometry is wrapped as a one-feature collection.
    """
    try:
        document = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CodecError(f'Document is not valid JSON: {exc}') from exc
    if not isinstance(document, dict):
        raise CodecError('Document is not a GeoJSON object')

    kind = document.get('type')
    if kind == 'FeatureCollection':
        if not isinstance(document.get('features'), list):
            raise CodecError('FeatureCollection has no features list')
        return document
    if kind == 'Feature':
        return {'type': 'FeatureCollection', 'features': [document]}
    if isinstance(kind, str) and kind in GEOMETRY_TYPES:
        feature = {'type': 'Feature', 'geometry': document, 'properties': {}}
        return {'type': 'FeatureCollection', 'features': [feature]}
    raise CodecError(f'Document is not a GeoJSON object (type {kind!r})')


def is_native(document: dict[str, Any]) -> bool:
    """True when the document's creator is exactly our application name."""
    return document.get('creator') == APP_NAME


def native_from_document(document: dict[str, Any]) -> models.NativeImport:
    """Rebuild tracks and photos from one of our own GeoJSON documents."""
    result = models.NativeImport(tracks=[], photos=[])
    for feature in document.get('features', []):
        if not isinstance(feature, dict):
            continue
        geometry = feature.get('geometry') or {}
        properties = feature.get('properties') or {}
        if not isinstance(geometry, dict) or not isinstance(properties, dict):
            continue
        timestamp = store_models.parse_timestamp(properties.get('timestamp'))
        coordinates = geometry.get('coordinates')

        if geometry.get('type') == 'LineString':
            if not isinstance(coordinates, list):
                coordinates = []
            points = [models.parse_position(c) for c in coordinates]
            valid = [p for p in points if p is not None]
            if not valid:
                logger.debug('Dropping LineString feature without valid points')
                continue
            result.tracks.append(
                store_models.Track(
                    timestamp=timestamp or store_models.utc_now(),
                    points=valid,
                    total_points=len(valid),
                )
            )
        elif geometry.get('type') == 'Point':
            location = models.parse_position(coordinates)
            if location is None:
                logger.debug('Dropping Point feature without valid coordinates')
                continue
            data = properties.get('photoData')
            text = properties.get('text')
            result.photos.append(
                store_models.Photo(
                    data=data if isinstance(data, str) and data else None,
                    timestamp=timestamp or store_models.utc_now(),
                    location=location,
                    direction=models.parse_direction(properties.get('direction')),
                    text=text if isinstance(text, str) else None,
                )
            )
    return result
