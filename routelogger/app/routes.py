"""HTTP routes exposing the store, codec and sync operations."""

import dataclasses
import datetime
import logging
import typing

import fastapi
import fastapi.responses
import pydantic

from . import errors, images
from . import settings as app_settings
from .codec import archive
from .codec import models as codec_models
from .codec import services as codec_services
from .store import database, models, recording
from .sync import remote
from .sync import services as sync_services

logger = logging.getLogger(__name__)

router = fastapi.APIRouter()

KMZ_MIME = 'application/vnd.google-earth.kmz'
GEOJSON_MIME = 'application/geo+json'

ERROR_STATUS: list[tuple[type[errors.RouteLoggerError], int]] = [
    (errors.NotInitialized, 503),
    (errors.StoreBlocked, 503),
    (errors.AuthRequired, 401),
    (errors.NameExhausted, 409),
    (errors.CodecError, 400),
    (errors.TransportError, 502),
]


async def handle_route_logger_error(
    request: fastapi.Request, exc: Exception
) -> fastapi.responses.JSONResponse:
    """Turn a RouteLoggerError into a JSON error response."""
    status = next(
        (code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500
    )
    if status >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc)
    return fastapi.responses.JSONResponse(
        status_code=status, content={'detail': str(exc)}
    )


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class SessionStart(pydantic.BaseModel):
    """Body for starting a recording session."""

    timestamp: datetime.datetime | None = None


class PhotoUpdate(pydantic.BaseModel):
    """Caption and/or direction change; omitted fields are left alone."""

    text: str | None = None
    direction: float | models.Facing | None = None


class PublishRequest(pydantic.BaseModel):
    """Body for publishing; the name defaults to one derived from the session."""

    name: str | None = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_store(request: fastapi.Request) -> database.LocalStore:
    """The store opened by the application lifespan."""
    return request.app.state.store


def get_sync_engine(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> sync_services.SyncEngine:
    """Sync engine for the configured principal and remote store."""
    settings = store.settings
    principal = remote.Principal.from_settings(settings)
    if principal is None:
        raise errors.AuthRequired()
    if not settings.remote_configured:
        raise fastapi.HTTPException(
            status_code=503, detail='Remote store is not configured'
        )
    remote_store = remote.SupabaseRemoteStore.from_settings(settings, principal)
    return sync_services.SyncEngine(store, remote_store, principal, settings)


def serialize_photo(
    photo: models.Photo, include_data: bool = True
) -> dict[str, typing.Any]:
    """Serialize a photo with a display label for its direction."""
    result = photo.model_dump(exclude=set() if include_data else {'data'})
    result['direction_label'] = recording.format_direction(photo.direction)
    return result


def _attachment(file_name: str) -> dict[str, str]:
    return {'Content-Disposition': f'attachment; filename="{file_name}"'}


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


@router.post('/session/start', response_model=models.Track)
async def start_session(
    body: SessionStart | None = None,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> models.Track:
    """Begin recording into a new track."""
    return await recording.start_session(store, body.timestamp if body else None)


@router.post('/session/points', response_model=models.Track)
async def record_point(
    point: models.LatLng,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> models.Track:
    """Append one GPS fix to the active track."""
    return await recording.record_track_point(store, point)


@router.get('/tracks')
async def get_tracks(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, typing.Any]:
    """All tracks with their summed point count."""
    tracks = await store.get_all(models.Track)
    return {
        'tracks': [track.model_dump() for track in tracks],
        **recording.track_stats(tracks),
    }


# ---------------------------------------------------------------------------
# Photos
# ---------------------------------------------------------------------------


@router.get('/photos')
async def get_photos(
    include_data: bool = False,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> list[dict[str, typing.Any]]:
    """All photos; image payloads only when asked for."""
    photos = await store.get_all(models.Photo)
    return [serialize_photo(photo, include_data) for photo in photos]


@router.post('/photos', status_code=201)
async def capture_photo(
    file: typing.Annotated[fastapi.UploadFile | None, fastapi.File()] = None,
    lat: typing.Annotated[float | None, fastapi.Form()] = None,
    lng: typing.Annotated[float | None, fastapi.Form()] = None,
    direction: typing.Annotated[str | None, fastapi.Form()] = None,
    text: typing.Annotated[str | None, fastapi.Form()] = None,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, typing.Any]:
    """Store a photo; location and time fall back to the image's EXIF data."""
    if (lat is None) != (lng is None):
        raise fastapi.HTTPException(
            status_code=422, detail='lat and lng must be given together'
        )
    parsed_direction = codec_models.parse_direction(direction)
    if direction is not None and parsed_direction is None:
        raise fastapi.HTTPException(status_code=422, detail='Invalid direction')

    content: bytes | None = None
    if file is not None:
        if not file.content_type or not file.content_type.startswith('image/'):
            raise fastapi.HTTPException(
                status_code=400, detail='File must be an image'
            )
        content = await file.read()

    location = {'lat': lat, 'lng': lng} if lat is not None else None
    try:
        photo = await recording.capture_photo(
            store, content, location=location, direction=parsed_direction, text=text
        )
    except OSError as exc:
        raise fastapi.HTTPException(
            status_code=400, detail='File is not a readable image'
        ) from exc
    return serialize_photo(photo, include_data=False)


@router.get('/photos/{photo_id}')
async def get_photo(
    photo_id: int,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, typing.Any]:
    """One photo including its image payload."""
    photo = await store.get_photo(photo_id)
    if photo is None:
        raise fastapi.HTTPException(status_code=404, detail='Photo not found')
    return serialize_photo(photo)


@router.patch('/photos/{photo_id}')
async def update_photo(
    photo_id: int,
    body: PhotoUpdate,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, typing.Any]:
    """Change a photo's caption and/or direction."""
    changes = body.model_dump(exclude_unset=True)
    if isinstance(changes.get('direction'), models.Facing):
        changes['direction'] = changes['direction'].value
    photo = await store.update_photo(photo_id, **changes)
    if photo is None:
        raise fastapi.HTTPException(status_code=404, detail='Photo not found')
    return serialize_photo(photo, include_data=False)


@router.delete('/photos/{photo_id}')
async def delete_photo(
    photo_id: int,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, str]:
    """Delete a photo."""
    if not await store.delete_photo(photo_id):
        raise fastapi.HTTPException(status_code=404, detail='Photo not found')
    return {'message': 'Photo deleted successfully'}


# ---------------------------------------------------------------------------
# External datasets
# ---------------------------------------------------------------------------


@router.get('/externals', response_model=list[models.ExternalDataset])
async def get_externals(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> list[models.ExternalDataset]:
    """Every imported foreign dataset."""
    return await store.get_all_external_data()


@router.get('/externals/{import_id}/photos/{file_name:path}')
async def get_external_photo(
    import_id: str,
    file_name: str,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> fastapi.responses.Response:
    """Serve an image that arrived inside a foreign archive."""
    blob = await store.get_external_photo(import_id, file_name)
    if blob is None:
        raise fastapi.HTTPException(status_code=404, detail='Image not found')
    return fastapi.responses.Response(
        content=blob, media_type=images.mime_type_for(file_name)
    )


# ---------------------------------------------------------------------------
# Position, counts and resets
# ---------------------------------------------------------------------------


@router.get('/position', response_model=app_settings.Position)
async def get_position(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> app_settings.Position:
    """The saved map position, or the configured default."""
    position = await store.get_last_position()
    return position or store.settings.default_position


@router.put('/position', response_model=app_settings.Position)
async def save_position(
    position: app_settings.Position,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> app_settings.Position:
    """Remember the current map position."""
    return await store.save_last_position(position.lat, position.lng, position.zoom)


@router.get('/counts')
async def get_counts(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, int]:
    """Record counts per collection."""
    return await store.get_data_counts()


@router.post('/reset/route-log')
async def reset_route_log(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, int]:
    """Delete tracks and photos; external datasets are kept."""
    await store.clear_route_log_data()
    return await store.get_data_counts()


@router.post('/reset/full', response_model=app_settings.Position)
async def reset_full(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> app_settings.Position:
    """Recreate the store, keeping only the last map position."""
    return await store.full_reset()


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------


@router.get('/export/kmz')
async def export_kmz(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> fastapi.responses.Response:
    """Download the route log as a KMZ archive."""
    tracks = await store.get_all(models.Track)
    photos = await store.get_all(models.Photo)
    return fastapi.responses.Response(
        content=codec_services.export_archive(tracks, photos),
        media_type=KMZ_MIME,
        headers=_attachment(archive.archive_file_name()),
    )


@router.get('/export/geojson')
async def export_geojson(
    store: database.LocalStore = fastapi.Depends(get_store),
) -> fastapi.responses.Response:
    """Download the route log as a GeoJSON document."""
    tracks = await store.get_all(models.Track)
    photos = await store.get_all(models.Photo)
    file_name = archive.archive_file_name().removesuffix('.kmz') + '.geojson'
    return fastapi.responses.Response(
        content=codec_services.export_document(tracks, photos),
        media_type=GEOJSON_MIME,
        headers=_attachment(file_name),
    )


@router.post('/import')
async def import_file(
    file: typing.Annotated[fastapi.UploadFile, fastapi.File(...)],
    replace: typing.Annotated[bool, fastapi.Form()] = False,
    store: database.LocalStore = fastapi.Depends(get_store),
) -> dict[str, typing.Any]:
    """Import a KMZ or GeoJSON file.

    Our own exports are only applied (replacing the route log) when
    ``replace`` is set; foreign files are always stored as external data.
    """
    content = await file.read()
    result = await codec_services.import_file(
        store, content, file.filename or 'import'
    )
    if isinstance(result, codec_models.ForeignImport):
        return {
            'kind': result.kind,
            'import_id': result.import_id,
            'dataset_id': result.dataset_id,
            'feature_count': len(result.feature_collection.get('features', [])),
            'asset_count': result.asset_count,
        }

    summary: dict[str, typing.Any] = {
        'kind': result.kind,
        'tracks': len(result.tracks),
        'photos': len(result.photos),
        'total_points': recording.track_stats(result.tracks)['total_points'],
        'applied': False,
    }
    if replace:
        await codec_services.apply_native_import(store, result)
        summary['applied'] = True
    return summary


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post('/sync/publish')
async def publish(
    body: PublishRequest | None = None,
    engine: sync_services.SyncEngine = fastapi.Depends(get_sync_engine),
) -> dict[str, typing.Any]:
    """Publish the local route log as a new remote project."""
    result = await engine.publish(body.name if body else None)
    return dataclasses.asdict(result)


@router.get('/sync/projects')
async def list_projects(
    engine: sync_services.SyncEngine = fastapi.Depends(get_sync_engine),
) -> list[dict[str, typing.Any]]:
    """Remote project summaries, newest first."""
    projects = await engine.list_remote_projects()
    return [
        project.model_dump(by_alias=True, exclude={'tracks', 'photos'})
        for project in projects
    ]


@router.post('/sync/projects/{name}/load')
async def load_project(
    name: str,
    engine: sync_services.SyncEngine = fastapi.Depends(get_sync_engine),
) -> dict[str, typing.Any]:
    """Replace the local route log with a remote project."""
    project = await engine.find_project(name)
    if project is None:
        raise fastapi.HTTPException(status_code=404, detail='Project not found')
    return dataclasses.asdict(await engine.load(project))
