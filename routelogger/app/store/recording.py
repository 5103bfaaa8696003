"""Recording session operations: tracks growing point by point, photo capture."""

import datetime
import io
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from routelogger.app import images

from . import database, models

logger = logging.getLogger(__name__)


async def start_session(
    store: database.LocalStore, timestamp: datetime.datetime | None = None
) -> models.Track:
    """Begin recording into a new, empty track."""
    start = timestamp or models.utc_now()
    track = await store.create_initial_track(start)
    store.recording.reset()
    store.recording.track_id = track.id
    store.recording.start_time = start
    logger.info('Recording session started (track %s)', track.id)
    return track


async def record_track_point(
    store: database.LocalStore, point: models.LatLng | Mapping[str, Any]
) -> models.Track:
    """Append one GPS fix to the active track, starting a session if needed.

    Raises pydantic.ValidationError for a malformed or non-finite point.
    """
    normalized = models.normalize_point(point)
    if store.recording.track_id is not None:
        track = await store.append_track_point(store.recording.track_id, normalized)
        if track is not None:
            return track
        logger.warning(
            'Active track %s no longer exists; starting a new session',
            store.recording.track_id,
        )

    await start_session(store)
    assert store.recording.track_id is not None
    track = await store.append_track_point(store.recording.track_id, normalized)
    assert track is not None
    return track


async def capture_photo(
    store: database.LocalStore,
    data: str | bytes | None,
    location: models.LatLng | Mapping[str, Any] | None = None,
    direction: models.Direction = None,
    text: str | None = None,
    timestamp: datetime.datetime | None = None,
) -> models.Photo:
    """Store a newly taken photo.

    ``data`` is either a data URL or raw image bytes; raw bytes are
    re-encoded to JPEG.  When location or timestamp are not given they are
    taken from the image's EXIF block where present.
    """
    raw: bytes | None = None
    if isinstance(data, bytes):
        raw = data
        data = images.to_data_url(images.reencode_jpeg(raw))
    elif data is not None and (location is None or timestamp is None):
        raw = images.from_data_url(data)

    if raw is not None and (location is None or timestamp is None):
        metadata = images.extract_metadata(io.BytesIO(raw))
        if location is None and 'latitude' in metadata:
            location = {'lat': metadata['latitude'], 'lng': metadata['longitude']}
        if timestamp is None:
            timestamp = metadata.get('date_taken')

    if isinstance(direction, str):
        direction = models.Facing(direction).value

    photo = models.Photo(
        data=data,
        timestamp=timestamp or models.utc_now(),
        location=models.normalize_point(location) if location is not None else None,
        direction=direction,
        text=text,
    )
    return await store.save_photo(photo)


def track_stats(tracks: Iterable[models.Track]) -> dict[str, int]:
    """Track count and summed point count."""
    track_count = 0
    total_points = 0
    for track in tracks:
        track_count += 1
        total_points += len(track.points)
    return {'track_count': track_count, 'total_points': total_points}


def format_direction(direction: models.Direction) -> str:
    """Human-readable direction: ``+12°``, ``-60°``, ``0°``; empty if unknown."""
    if isinstance(direction, int | float) and not isinstance(direction, bool):
        return f'+{direction:g}°' if direction > 0 else f'{direction:g}°'
    if isinstance(direction, str) and direction in models.Facing:
        degrees = models.Facing(direction).degrees
        return f'+{degrees}°' if degrees > 0 else f'{degrees}°'
    return ''
