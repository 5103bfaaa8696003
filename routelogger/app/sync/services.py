"""Publishing the local route log to the remote store and loading it back."""

import dataclasses
import datetime
import logging
from collections.abc import Callable, Iterable

from routelogger.app import images
from routelogger.app import settings as app_settings
from routelogger.app.codec import models as codec_models
from routelogger.app.errors import (
    AuthRequired,
    CodecError,
    NameExhausted,
    TransportError,
)
from routelogger.app.store import database
from routelogger.app.store import models as store_models

from . import remote

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclasses.dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish."""

    name: str
    upload_success_count: int
    upload_fail_count: int


@dataclasses.dataclass(frozen=True)
class LoadResult:
    """Outcome of loading one remote project into the local store."""

    track_count: int
    total_points: int
    photo_count: int
    skipped_photos: int


@dataclasses.dataclass(frozen=True)
class _UploadTally:
    """Accumulator folded over the photo uploads."""

    entries: tuple[remote.RemotePhoto, ...] = ()
    successes: int = 0
    failures: int = 0

    def succeeded(self, entry: remote.RemotePhoto) -> '_UploadTally':
        return dataclasses.replace(
            self, entries=(*self.entries, entry), successes=self.successes + 1
        )

    def failed(self) -> '_UploadTally':
        return dataclasses.replace(self, failures=self.failures + 1)


def photo_storage_path(project_name: str, timestamp: datetime.datetime) -> str:
    """Object path for one uploaded photo."""
    millis = int(store_models.as_utc(timestamp).timestamp() * 1000)
    return f'tracks/{project_name}/photos/{millis}.jpg'


def default_project_name(start: datetime.datetime) -> str:
    """Name suggested when the caller gives none, e.g. ``RouteLog_20240501_0930``."""
    return f'RouteLog_{start:%Y%m%d_%H%M}'


def sort_projects(
    projects: Iterable[remote.RemoteProject],
) -> list[remote.RemoteProject]:
    """Newest first by createdAt; projects without one go last."""
    oldest = datetime.datetime.min.replace(tzinfo=datetime.UTC)

    def created(project: remote.RemoteProject) -> datetime.datetime:
        return store_models.parse_timestamp(project.created_at) or oldest

    return sorted(projects, key=created, reverse=True)


class SyncEngine:
    """Publishes and loads remote projects on behalf of one principal."""

    def __init__(
        self,
        store: database.LocalStore,
        remote_store: remote.RemoteStore,
        principal: remote.Principal | None,
        settings: app_settings.Settings | None = None,
    ) -> None:
        self.store = store
        self.remote = remote_store
        self.principal = principal
        self.settings = settings or store.settings

    def _require_principal(self) -> remote.Principal:
        if self.principal is None:
            raise AuthRequired()
        return self.principal

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def resolve_project_name(self, base_name: str) -> str:
        """First free name among ``base``, ``base_2``, ``base_3``, ...

        A probe refused for lack of permission counts as free; the later
        write fails on its own if that was wrong.
        """
        limit = self.settings.name_attempt_limit
        for attempt in range(1, limit + 1):
            candidate = base_name if attempt == 1 else f'{base_name}_{attempt}'
            try:
                exists = await self.remote.project_exists(candidate)
            except TransportError as exc:
                if not exc.permission_denied:
                    raise
                logger.warning(
                    'Name probe for %s denied; assuming it is free', candidate
                )
                return candidate
            if not exists:
                return candidate
        raise NameExhausted(base_name, limit)

    async def _session_start(self) -> datetime.datetime:
        if self.store.recording.start_time is not None:
            return store_models.as_utc(self.store.recording.start_time)
        tracks = await self.store.get_all(store_models.Track)
        if tracks:
            return min(store_models.as_utc(t.timestamp) for t in tracks)
        return store_models.utc_now()

    async def _upload_photo(
        self, project_name: str, photo: store_models.Photo
    ) -> remote.RemotePhoto:
        if not photo.data:
            raise CodecError(f'photo {photo.id} has no image data')
        content = images.from_data_url(photo.data)
        path = photo_storage_path(project_name, photo.timestamp)
        location = photo.location or {}
        url = await self.remote.upload_blob(
            path,
            content,
            images.JPEG_MIME,
            {
                'timestamp': store_models.isoformat(photo.timestamp),
                'lat': str(location.get('lat', '')),
                'lng': str(location.get('lng', '')),
            },
        )
        return remote.RemotePhoto(
            url=url,
            storage_path=path,
            timestamp=store_models.isoformat(photo.timestamp),
            direction=photo.direction,
            location=photo.location,
            text=photo.text,
        )

    async def publish(
        self,
        base_name: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PublishResult:
        """Upload every local track and photo as a new remote project."""
        principal = self._require_principal()
        start = await self._session_start()
        base_name = base_name or default_project_name(start)
        name = await self.resolve_project_name(base_name)
        logger.info('Publishing route log as %s', name)

        tracks = await self.store.get_all(store_models.Track)
        photos = await self.store.get_all(store_models.Photo)

        tally = _UploadTally()
        for index, photo in enumerate(photos, start=1):
            try:
                tally = tally.succeeded(await self._upload_photo(name, photo))
            except (TransportError, CodecError) as exc:
                logger.error('Photo %s upload failed: %s', photo.id, exc)
                tally = tally.failed()
            if on_progress is not None:
                on_progress(index, len(photos))

        project = remote.RemoteProject(
            name=name,
            user_id=principal.user_id,
            start_time=store_models.isoformat(start),
            tracks=[
                remote.RemoteTrack(
                    timestamp=store_models.isoformat(t.timestamp),
                    points=list(t.points),
                    total_points=t.total_points,
                )
                for t in tracks
            ],
            photos=list(tally.entries),
            tracks_count=len(tracks),
            photos_count=len(tally.entries),
        )
        await self.remote.save_project(project)
        logger.info(
            'Published %s: %d tracks, %d photos uploaded, %d failed',
            name,
            len(tracks),
            tally.successes,
            tally.failures,
        )
        return PublishResult(
            name=name,
            upload_success_count=tally.successes,
            upload_fail_count=tally.failures,
        )

    # ------------------------------------------------------------------
    # List / load
    # ------------------------------------------------------------------

    async def list_remote_projects(self) -> list[remote.RemoteProject]:
        """All remote projects, newest first."""
        self._require_principal()
        return sort_projects(await self.remote.list_projects())

    async def find_project(self, name: str) -> remote.RemoteProject | None:
        """Remote project with the given name, or None."""
        for project in await self.list_remote_projects():
            if project.name == name:
                return project
        return None

    async def _download_photo(self, entry: remote.RemotePhoto) -> str | None:
        reference = entry.storage_path or entry.url
        if not reference:
            return None
        content = await self.remote.download_blob(reference)
        return images.to_data_url(images.reencode_jpeg(content))

    async def load(
        self,
        project: remote.RemoteProject,
        on_progress: ProgressCallback | None = None,
    ) -> LoadResult:
        """Replace the local route log with a remote project; externals are kept."""
        logger.info('Loading remote project %s', project.name)
        await self.store.clear_route_log_data()

        track_count = 0
        total_points = 0
        for remote_track in project.tracks:
            points = [
                codec_models.parse_position([p.get('lng'), p.get('lat')])
                for p in remote_track.points
            ]
            valid = [p for p in points if p is not None]
            timestamp = store_models.parse_timestamp(remote_track.timestamp)
            await self.store.restore_track(
                store_models.Track(
                    timestamp=timestamp or store_models.utc_now(), points=valid
                )
            )
            track_count += 1
            total_points += len(valid)

        photo_count = 0
        skipped = 0
        for index, entry in enumerate(project.photos, start=1):
            try:
                data = await self._download_photo(entry)
            except (TransportError, OSError, ValueError) as exc:
                reference = entry.storage_path or entry.url
                logger.error('Photo %s download failed: %s', reference, exc)
                data = None
            if data is None:
                skipped += 1
            else:
                location = None
                if entry.location:
                    location = codec_models.parse_position(
                        [entry.location.get('lng'), entry.location.get('lat')]
                    )
                timestamp = store_models.parse_timestamp(entry.timestamp)
                await self.store.save_photo(
                    store_models.Photo(
                        data=data,
                        timestamp=timestamp or store_models.utc_now(),
                        location=location,
                        direction=codec_models.parse_direction(entry.direction),
                        text=entry.text,
                    )
                )
                photo_count += 1
            if on_progress is not None:
                on_progress(index, len(project.photos))

        logger.info(
            'Loaded %s: %d tracks (%d points), %d photos, %d skipped',
            project.name,
            track_count,
            total_points,
            photo_count,
            skipped,
        )
        return LoadResult(
            track_count=track_count,
            total_points=total_points,
            photo_count=photo_count,
            skipped_photos=skipped,
        )
