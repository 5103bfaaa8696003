"""Local store: SQLite-backed collections with an explicit open/close lifecycle.

A :class:`LocalStore` is the only owner of the route-log data (tracks and
photos), the foreign datasets imported from other tools, and the settings
row that remembers the last map position.  The codec and sync layers borrow
records from it for the duration of one call and never cache them.

Every operation is a coroutine and raises :class:`NotInitialized` when the
store is not open.  SQLite work completes inside the call; each operation
runs in its own transaction, so there is no atomicity across collections.

Full reset
----------
:meth:`LocalStore.full_reset` deletes the database file and recreates it.
The deletion is refused while another :class:`LocalStore` in this process
holds the same file open (or when the OS refuses the unlink); it is retried
with exponential backoff and then surfaces :class:`StoreBlocked`, with the
store reopened on the untouched file.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import dataclasses
import datetime
import logging
import os
import pathlib
from collections.abc import Iterator, Mapping, Sequence
from typing import Any, TypeVar

import sqlalchemy
import sqlalchemy.pool
import sqlmodel

from routelogger.app import settings as app_settings
from routelogger.app.errors import NotInitialized, StoreBlocked

from . import models

logger = logging.getLogger(__name__)

# 1: tracks, photos, settings.  2: externals.  3: external photo assets.
SCHEMA_VERSION = 3

_TABLES: list[type[sqlmodel.SQLModel]] = [
    models.Track,
    models.Photo,
    models.Setting,
    models.ExternalDataset,
    models.ExternalPhotoAsset,
]

# Number of open LocalStore handles per database file in this process.
_open_handles: collections.Counter[str] = collections.Counter()

RecordT = TypeVar('RecordT', bound=sqlmodel.SQLModel)

_KEEP: Any = object()


@dataclasses.dataclass
class RecordingState:
    """In-memory state of the active recording session."""

    track_id: int | None = None
    start_time: datetime.datetime | None = None

    @property
    def active(self) -> bool:
        """True while a track is being recorded."""
        return self.track_id is not None

    def reset(self) -> None:
        """Forget the active session."""
        self.track_id = None
        self.start_time = None


class LocalStore:
    """Store-context object passed to every store, codec and sync operation."""

    def __init__(
        self,
        url: str | None = None,
        settings: app_settings.Settings | None = None,
    ) -> None:
        self.settings = settings or app_settings.Settings()
        self.url = url or self.settings.resolved_database_url
        self.recording = RecordingState()
        self._engine: sqlalchemy.Engine | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        """True between open() and close()."""
        return self._engine is not None

    @property
    def database_path(self) -> pathlib.Path | None:
        """Path of the SQLite file, or None for an in-memory store."""
        database = sqlalchemy.engine.make_url(self.url).database
        if not database or database == ':memory:':
            return None
        return pathlib.Path(database)

    async def open(self) -> LocalStore:
        """Open the database, creating or upgrading the schema as needed."""
        if self._engine is not None:
            return self
        path = self.database_path
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            engine = sqlmodel.create_engine(
                self.url, connect_args={'check_same_thread': False}
            )
        else:
            engine = sqlmodel.create_engine(
                self.url,
                connect_args={'check_same_thread': False},
                poolclass=sqlalchemy.pool.StaticPool,
            )
        upgrade_schema(engine)
        self._engine = engine
        _open_handles[self._handle_key] += 1
        logger.info('Local store opened at %s', self.url)
        return self

    async def close(self) -> None:
        """Release the database handle. In-memory data does not survive this."""
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        _open_handles[self._handle_key] -= 1
        if _open_handles[self._handle_key] <= 0:
            del _open_handles[self._handle_key]
        logger.info('Local store closed')

    @property
    def _handle_key(self) -> str:
        path = self.database_path
        return str(path.resolve()) if path is not None else f'memory:{id(self)}'

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlmodel.Session]:
        if self._engine is None:
            raise NotInitialized()
        with sqlmodel.Session(self._engine, expire_on_commit=False) as session:
            yield session

    # ------------------------------------------------------------------
    # Generic record access
    # ------------------------------------------------------------------

    async def add(self, record: RecordT) -> RecordT:
        """Insert a record, letting the store assign its identifier."""
        _normalize(record)
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
        return record

    async def put(self, record: RecordT) -> RecordT:
        """Insert a record, or replace the stored one with the same identifier."""
        _normalize(record)
        with self._session() as session:
            merged = session.merge(record)
            session.commit()
            session.refresh(merged)
        return merged

    async def get(self, model: type[RecordT], key: Any) -> RecordT | None:
        """Fetch one record by primary key; None when absent."""
        with self._session() as session:
            return session.get(model, key)

    async def get_all(self, model: type[RecordT]) -> list[RecordT]:
        """Fetch every record of a collection in insertion order."""
        statement = sqlmodel.select(model)
        if 'id' in model.model_fields:
            statement = statement.order_by(model.id)  # type: ignore[attr-defined]
        with self._session() as session:
            return list(session.exec(statement).all())

    async def count(
        self, collection: models.Collection | type[sqlmodel.SQLModel]
    ) -> int:
        """Number of records in a collection, given by name or table model."""
        model = (
            collection.model
            if isinstance(collection, models.Collection)
            else collection
        )
        statement = sqlmodel.select(sqlalchemy.func.count()).select_from(model)
        with self._session() as session:
            return session.exec(statement).one()

    async def get_data_counts(self) -> dict[str, int]:
        """Record counts for the four data collections."""
        return {
            collection.value: await self.count(collection)
            for collection in models.DATA_COLLECTIONS
        }

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    async def create_initial_track(
        self, timestamp: datetime.datetime | None = None
    ) -> models.Track:
        """Create the empty track a new recording session writes into."""
        return await self.add(models.Track(timestamp=timestamp or models.utc_now()))

    async def restore_track(self, track: models.Track) -> models.Track:
        """Insert a copy of an imported or downloaded track under a new id."""
        copy = models.Track(timestamp=track.timestamp, points=list(track.points))
        return await self.add(copy)

    async def append_track_point(
        self, track_id: int, point: models.LatLng | Mapping[str, Any]
    ) -> models.Track | None:
        """Append one point to a track; None if the track does not exist."""
        with self._session() as session:
            track = session.get(models.Track, track_id)
            if track is None:
                return None
            track.points = [*track.points, models.normalize_point(point)]
            track.total_points = len(track.points)
            session.add(track)
            session.commit()
            session.refresh(track)
            return track

    async def replace_track_points(
        self,
        track_id: int,
        points: Sequence[models.LatLng | Mapping[str, Any]],
    ) -> models.Track | None:
        """Overwrite a track's whole point array; None if the track is missing."""
        with self._session() as session:
            track = session.get(models.Track, track_id)
            if track is None:
                return None
            track.points = [models.normalize_point(p) for p in points]
            track.total_points = len(track.points)
            session.add(track)
            session.commit()
            session.refresh(track)
            return track

    # ------------------------------------------------------------------
    # Photos
    # ------------------------------------------------------------------

    async def save_photo(self, photo: models.Photo) -> models.Photo:
        """Insert a photo; any identifier it carries is discarded."""
        photo.id = None
        return await self.add(photo)

    async def get_photo(self, photo_id: int) -> models.Photo | None:
        """Fetch one photo."""
        return await self.get(models.Photo, photo_id)

    async def update_photo(
        self,
        photo_id: int,
        *,
        text: str | None = _KEEP,
        direction: models.Direction = _KEEP,
    ) -> models.Photo | None:
        """Change a photo's caption and/or direction; None if it does not exist."""
        with self._session() as session:
            photo = session.get(models.Photo, photo_id)
            if photo is None:
                return None
            if text is not _KEEP:
                photo.text = text
            if direction is not _KEEP:
                photo.direction = direction
            session.add(photo)
            session.commit()
            session.refresh(photo)
            return photo

    async def delete_photo(self, photo_id: int) -> bool:
        """Delete a photo; False if it did not exist."""
        with self._session() as session:
            photo = session.get(models.Photo, photo_id)
            if photo is None:
                return False
            session.delete(photo)
            session.commit()
            return True

    # ------------------------------------------------------------------
    # External datasets and their image assets
    # ------------------------------------------------------------------

    async def save_external_data(
        self, type_: str, name: str, data: dict[str, Any]
    ) -> models.ExternalDataset:
        """Store a foreign document as a new external dataset."""
        return await self.add(models.ExternalDataset(type=type_, name=name, data=data))

    async def get_all_external_data(self) -> list[models.ExternalDataset]:
        """Every external dataset, oldest first."""
        return await self.get_all(models.ExternalDataset)

    async def save_external_photo(
        self, import_id: str, file_name: str, blob: bytes
    ) -> models.ExternalPhotoAsset:
        """Store one image that arrived with a foreign archive."""
        asset = models.ExternalPhotoAsset(
            import_id=import_id, file_name=file_name, blob=blob
        )
        return await self.add(asset)

    async def get_external_photos(
        self, import_id: str
    ) -> list[models.ExternalPhotoAsset]:
        """Every image asset saved under one import id."""
        statement = (
            sqlmodel.select(models.ExternalPhotoAsset)
            .where(models.ExternalPhotoAsset.import_id == import_id)
            .order_by(models.ExternalPhotoAsset.id)  # type: ignore[arg-type]
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    async def get_external_photo(self, import_id: str, file_name: str) -> bytes | None:
        """Image bytes for ``(import_id, file_name)``, or None."""
        for asset in await self.get_external_photos(import_id):
            if asset.file_name == file_name:
                return asset.blob
        return None

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def save_last_position(
        self, lat: float, lng: float, zoom: int
    ) -> app_settings.Position:
        """Upsert the lastPosition row (coordinates rounded to 5 decimals)."""
        position = app_settings.Position(
            lat=round(lat, 5), lng=round(lng, 5), zoom=zoom
        )
        await self.put(
            models.Setting(key=models.LAST_POSITION_KEY, value=position.model_dump())
        )
        return position

    async def get_last_position(self) -> app_settings.Position | None:
        """The saved map position, or None if none was saved yet."""
        row = await self.get(models.Setting, models.LAST_POSITION_KEY)
        if row is None:
            return None
        return app_settings.Position.model_validate(row.value)

    # ------------------------------------------------------------------
    # Resets
    # ------------------------------------------------------------------

    async def clear_route_log_data(self) -> None:
        """Empty tracks and photos; external datasets and assets are kept."""
        if self._engine is None:
            raise NotInitialized()
        logger.info('Clearing route log data (tracks, photos); keeping externals')
        for model in (models.Track, models.Photo):
            with self._session() as session:
                session.connection().execute(sqlalchemy.delete(model))
                session.commit()
        self.recording.reset()

    async def full_reset(self) -> app_settings.Position:
        """Delete and recreate the whole store, keeping only lastPosition.

        Returns the position that was re-seeded.
        """
        previous = await self.get_last_position() if self.is_open else None
        await self.close()
        logger.info('Deleting entire local store at %s', self.url)
        try:
            await self._delete_with_retry()
        except StoreBlocked:
            await self.open()
            raise
        await self.open()

        position = previous or self.settings.default_position
        await self.save_last_position(position.lat, position.lng, position.zoom)
        self.recording.reset()
        logger.info('Local store recreated')
        return position

    async def _delete_with_retry(self) -> None:
        delay = self.settings.reset_backoff_seconds
        retries = self.settings.reset_max_retries
        for attempt in range(retries + 1):
            try:
                self._delete_database()
                return
            except StoreBlocked as exc:
                if attempt == retries:
                    logger.error('Store deletion still blocked; giving up: %s', exc)
                    raise
                logger.warning(
                    'Store deletion blocked (%s); retry %d/%d in %.2fs',
                    exc,
                    attempt + 1,
                    retries,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

    def _delete_database(self) -> None:
        path = self.database_path
        if path is None:
            # In-memory data went away with the engine.
            return
        holders = _open_handles.get(self._handle_key, 0)
        if holders:
            raise StoreBlocked(f'{holders} other session(s) hold {path} open')
        for suffix in ('', '-journal', '-wal', '-shm'):
            try:
                os.remove(f'{path}{suffix}')
            except FileNotFoundError:
                continue
            except PermissionError as exc:
                raise StoreBlocked(str(exc)) from exc


def upgrade_schema(engine: sqlalchemy.Engine) -> int:
    """Create missing tables and stamp the schema version.

    Existing tables are never altered or dropped, so upgrades are additive.
    Returns the version found before the upgrade.
    """
    with engine.begin() as conn:
        found = conn.exec_driver_sql('PRAGMA user_version').scalar() or 0
        if found > SCHEMA_VERSION:
            logger.warning(
                'Store schema version %d is newer than supported %d',
                found,
                SCHEMA_VERSION,
            )
            return found
        if found < SCHEMA_VERSION:
            logger.info('Upgrading store schema %d -> %d', found, SCHEMA_VERSION)
            tables = [model.__table__ for model in _TABLES]  # type: ignore
            sqlmodel.SQLModel.metadata.create_all(conn, tables=tables)
            conn.exec_driver_sql(f'PRAGMA user_version = {SCHEMA_VERSION}')
    return found


def _normalize(record: sqlmodel.SQLModel) -> None:
    """Keep derived fields consistent before a write."""
    if isinstance(record, models.Track):
        record.points = [models.normalize_point(p) for p in record.points]
        record.total_points = len(record.points)
