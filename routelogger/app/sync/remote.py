"""Remote project store: record shapes, the store protocol and a Supabase client.

A remote project is one row keyed by its name, holding the published tracks
and photo references. Photo binaries live in object storage under
``tracks/{name}/photos/{timestamp_ms}.jpg``.
"""

import base64
import dataclasses
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
import pydantic
import pydantic.alias_generators

from routelogger.app import settings as app_settings
from routelogger.app.errors import TransportError

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Principal:
    """The signed-in user that sync operations act for."""

    user_id: str
    access_token: str | None = None

    @classmethod
    def from_settings(cls, settings: app_settings.Settings) -> 'Principal | None':
        """Principal configured in the environment, or None if signed out."""
        if not settings.user_id:
            return None
        return cls(user_id=settings.user_id, access_token=settings.access_token)


class _RemoteModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        alias_generator=pydantic.alias_generators.to_camel,
        populate_by_name=True,
    )


class RemoteTrack(_RemoteModel):
    """A track as stored in a remote project."""

    timestamp: str | None = None
    points: list[dict[str, Any]] = []
    total_points: int = 0


class RemotePhoto(_RemoteModel):
    """A photo reference as stored in a remote project."""

    url: str | None = None
    storage_path: str | None = None
    timestamp: str | None = None
    direction: float | str | None = None
    location: dict[str, Any] | None = None
    text: str | None = None


class RemoteProject(_RemoteModel):
    """One published project; ``name`` is its unique key."""

    name: str
    user_id: str | None = None
    start_time: str | None = None
    created_at: str | None = None
    tracks: list[RemoteTrack] = []
    photos: list[RemotePhoto] = []
    tracks_count: int = 0
    photos_count: int = 0


class RemoteStore(Protocol):
    """Operations the sync engine needs from the remote side."""

    async def project_exists(self, name: str) -> bool: ...

    async def list_projects(self) -> list[RemoteProject]: ...

    async def save_project(self, project: RemoteProject) -> None: ...

    async def upload_blob(
        self,
        path: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str: ...

    async def download_blob(self, reference: str) -> bytes: ...


class SupabaseRemoteStore:
    """RemoteStore backed by a PostgREST table and a storage bucket."""

    def __init__(
        self,
        url: str,
        key: str,
        bucket: str = 'routelogger',
        table: str = 'tracks',
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url.rstrip('/')
        self.key = key
        self.bucket = bucket
        self.table = table
        self.access_token = access_token
        self._transport = transport
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: app_settings.Settings,
        principal: Principal | None = None,
    ) -> 'SupabaseRemoteStore':
        """Build a client from configured settings."""
        if not settings.remote_url or not settings.remote_key:
            raise ValueError('Remote URL and key must be configured')
        return cls(
            url=settings.remote_url,
            key=settings.remote_key,
            bucket=settings.remote_bucket,
            table=settings.remote_table,
            access_token=principal.access_token if principal else None,
        )

    def _headers(self) -> dict[str, str]:
        return {
            'apikey': self.key,
            'Authorization': f'Bearer {self.access_token or self.key}',
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.url,
            headers=self._headers(),
            transport=self._transport,
            timeout=self._timeout,
        )

    def public_url(self, path: str) -> str:
        """Download URL for an object in the bucket."""
        return f'{self.url}/storage/v1/object/public/{self.bucket}/{path}'

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TransportError(
                f'{method} {exc.request.url} failed with HTTP {status}',
                status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f'{method} {url} failed: {exc}') from exc

    # ------------------------------------------------------------------
    # Project records
    # ------------------------------------------------------------------

    async def project_exists(self, name: str) -> bool:
        """True when a project row with this name exists."""
        response = await self._request(
            'GET',
            f'/rest/v1/{self.table}',
            params={'select': 'name', 'name': f'eq.{name}'},
        )
        return bool(response.json())

    async def list_projects(self) -> list[RemoteProject]:
        """Every project row, in whatever order the server returns them."""
        response = await self._request(
            'GET', f'/rest/v1/{self.table}', params={'select': '*'}
        )
        return [RemoteProject.model_validate(row) for row in response.json()]

    async def save_project(self, project: RemoteProject) -> None:
        """Insert a project row; the server assigns createdAt."""
        record = project.model_dump(by_alias=True, exclude={'created_at'})
        await self._request(
            'POST',
            f'/rest/v1/{self.table}',
            json=[record],
            headers={'Prefer': 'return=minimal'},
        )
        logger.info('Saved remote project %s', project.name)

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    async def upload_blob(
        self,
        path: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        """Store an object and return its download URL."""
        encoded = base64.b64encode(json.dumps(dict(metadata)).encode()).decode()
        await self._request(
            'POST',
            f'/storage/v1/object/{self.bucket}/{path}',
            content=content,
            headers={
                'Content-Type': content_type,
                'x-upsert': 'true',
                'x-metadata': encoded,
            },
        )
        return self.public_url(path)

    async def download_blob(self, reference: str) -> bytes:
        """Fetch an object by bucket path or by absolute URL."""
        if reference.startswith(('http://', 'https://')):
            response = await self._request('GET', reference)
        else:
            response = await self._request(
                'GET', f'/storage/v1/object/{self.bucket}/{reference}'
            )
        return response.content
