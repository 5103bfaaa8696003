"""Export and import entry points for the KMZ and GeoJSON interchange formats."""

import datetime
import json
import logging
import secrets
import string
from collections.abc import Iterable, Mapping
from typing import Any

from routelogger.app import images
from routelogger.app.errors import CodecError
from routelogger.app.store import database
from routelogger.app.store import models as store_models

from . import archive, geojson, kml, models

logger = logging.getLogger(__name__)

_IMPORT_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_import_id(now: datetime.datetime | None = None) -> str:
    """Fresh identifier grouping one foreign import: ``import_{ms}_{9 chars}``."""
    now = now or datetime.datetime.now(datetime.UTC)
    millis = int(now.timestamp() * 1000)
    suffix = ''.join(secrets.choice(_IMPORT_ID_ALPHABET) for _ in range(9))
    return f'import_{millis}_{suffix}'


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------


def export_archive(
    tracks: Iterable[store_models.Track], photos: Iterable[store_models.Photo]
) -> bytes:
    """Build a KMZ archive; photos without image data are not packaged."""
    tracks = list(tracks)
    photos = list(photos)
    packaged: dict[str, bytes] = {}
    for photo in photos:
        if not photo.data:
            continue
        try:
            packaged[kml.photo_image_name(photo.id)] = images.from_data_url(photo.data)
        except CodecError as exc:
            logger.warning('Photo %s not packaged: %s', photo.id, exc)
    logger.info(
        'Exporting archive: %d tracks, %d photos, %d images',
        len(tracks),
        len(photos),
        len(packaged),
    )
    return archive.write_archive(kml.build_kml(tracks, photos), packaged)


def export_document(
    tracks: Iterable[store_models.Track], photos: Iterable[store_models.Photo]
) -> str:
    """Serialize tracks and photos as a GeoJSON document."""
    return json.dumps(geojson.build_document(tracks, photos), ensure_ascii=False)


# ----------------------------------------------------------------------
# Import
# ----------------------------------------------------------------------


async def import_file(
    store: database.LocalStore, content: bytes, file_name: str
) -> models.ImportResult:
    """Classify an uploaded file and reconstruct or store it.

    Our own files come back as a NativeImport that the caller may apply;
    anything else is persisted as an external dataset right away.
    """
    if archive.is_archive(content):
        kml_document, assets = archive.read_archive(content)
        root = kml.parse_kml(kml_document)
        if kml.is_native(root):
            logger.info('Importing %s as native archive', file_name)
            return kml.native_from_kml(root, assets)
        collection = kml.to_feature_collection(root)
        return await _store_foreign(store, file_name, collection, assets)

    document = geojson.parse_document(content)
    if geojson.is_native(document):
        logger.info('Importing %s as native document', file_name)
        return geojson.native_from_document(document)
    return await _store_foreign(store, file_name, document, {})


async def _store_foreign(
    store: database.LocalStore,
    file_name: str,
    collection: dict[str, Any],
    assets: Mapping[str, bytes],
) -> models.ForeignImport:
    import_id = new_import_id()
    for feature in collection.get('features', []):
        if not isinstance(feature, dict):
            continue
        properties = feature.get('properties')
        if not isinstance(properties, dict):
            properties = feature['properties'] = {}
        properties['importId'] = import_id

    for name, blob in assets.items():
        await store.save_external_photo(import_id, name, blob)
    dataset = await store.save_external_data('geojson', file_name, collection)
    assert dataset.id is not None
    logger.info(
        'Stored %s as external dataset %s (%s, %d images)',
        file_name,
        dataset.id,
        import_id,
        len(assets),
    )
    return models.ForeignImport(
        import_id=import_id,
        dataset_id=dataset.id,
        feature_collection=collection,
        asset_count=len(assets),
    )


async def apply_native_import(
    store: database.LocalStore, result: models.NativeImport
) -> dict[str, int]:
    """Replace the route-log data with an imported native result.

    External datasets are kept. Returns the number of tracks and photos stored.
    """
    await store.clear_route_log_data()
    for track in result.tracks:
        await store.restore_track(track)
    for photo in result.photos:
        await store.save_photo(photo)
    logger.info(
        'Applied native import: %d tracks, %d photos',
        len(result.tracks),
        len(result.photos),
    )
    return {'tracks': len(result.tracks), 'photos': len(result.photos)}
