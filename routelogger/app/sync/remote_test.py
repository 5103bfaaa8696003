"""Unit tests for the Supabase remote store client."""

import asyncio
import base64
import json
import unittest
from collections.abc import Callable

import httpx

from routelogger.app import settings as app_settings
from routelogger.app.errors import TransportError
from routelogger.app.sync import remote

BASE_URL = 'https://project.supabase.co'

Handler = Callable[[httpx.Request], httpx.Response]


class RecordingTransport:
    """Collects requests and answers them from a handler."""

    def __init__(self, handler: Handler | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is not None:
            return self.handler(request)
        return httpx.Response(200, json=[])


def make_store(transport: RecordingTransport) -> remote.SupabaseRemoteStore:
    """Client wired to an in-process mock transport."""
    return remote.SupabaseRemoteStore(
        BASE_URL,
        'anon-key',
        bucket='photos',
        table='tracks',
        access_token='user-token',
        transport=httpx.MockTransport(transport),
    )


class TestRemoteProject(unittest.TestCase):
    """Tests for the camelCase record shape."""

    def test_aliases(self) -> None:
        """Records serialize with camelCase keys and parse them back."""
        project = remote.RemoteProject(
            name='trip',
            user_id='u1',
            tracks=[remote.RemoteTrack(timestamp='t', points=[], total_points=0)],
            photos=[remote.RemotePhoto(storage_path='a.jpg')],
            tracks_count=1,
            photos_count=1,
        )
        record = project.model_dump(by_alias=True)
        self.assertEqual(record['userId'], 'u1')
        self.assertEqual(record['tracks'][0]['totalPoints'], 0)
        self.assertEqual(record['photos'][0]['storagePath'], 'a.jpg')
        self.assertEqual(remote.RemoteProject.model_validate(record), project)


class TestPrincipal(unittest.TestCase):
    """Tests for Principal.from_settings()."""

    def test_signed_out(self) -> None:
        """No user id means no principal."""
        self.assertIsNone(remote.Principal.from_settings(app_settings.Settings()))

    def test_signed_in(self) -> None:
        """User id and token are carried over."""
        settings = app_settings.Settings(user_id='u1', access_token='tok')
        self.assertEqual(
            remote.Principal.from_settings(settings), remote.Principal('u1', 'tok')
        )


class TestSupabaseRemoteStore(unittest.TestCase):
    """Tests for SupabaseRemoteStore."""

    def test_project_exists(self) -> None:
        """Existence probes filter by name and send both auth headers."""
        transport = RecordingTransport(
            lambda request: httpx.Response(200, json=[{'name': 'trip'}])
        )
        store = make_store(transport)

        self.assertTrue(asyncio.run(store.project_exists('trip')))

        request = transport.requests[0]
        self.assertEqual(request.url.path, '/rest/v1/tracks')
        self.assertEqual(request.url.params['name'], 'eq.trip')
        self.assertEqual(request.headers['apikey'], 'anon-key')
        self.assertEqual(request.headers['Authorization'], 'Bearer user-token')

    def test_project_missing(self) -> None:
        """An empty result means the name is free."""
        store = make_store(RecordingTransport())
        self.assertFalse(asyncio.run(store.project_exists('trip')))

    def test_list_projects(self) -> None:
        """Rows are parsed into RemoteProject records."""
        rows = [
            {'name': 'a', 'createdAt': '2024-01-01T00:00:00Z', 'tracksCount': 2},
            {'name': 'b'},
        ]
        store = make_store(
            RecordingTransport(lambda request: httpx.Response(200, json=rows))
        )
        projects = asyncio.run(store.list_projects())
        self.assertEqual([p.name for p in projects], ['a', 'b'])
        self.assertEqual(projects[0].tracks_count, 2)
        self.assertEqual(projects[0].created_at, '2024-01-01T00:00:00Z')

    def test_save_project_omits_created_at(self) -> None:
        """The server assigns createdAt."""
        transport = RecordingTransport(lambda request: httpx.Response(201))
        store = make_store(transport)
        asyncio.run(
            store.save_project(
                remote.RemoteProject(name='trip', created_at='ignored')
            )
        )
        body = json.loads(transport.requests[0].content)
        self.assertEqual(body[0]['name'], 'trip')
        self.assertNotIn('createdAt', body[0])
        self.assertEqual(transport.requests[0].method, 'POST')

    def test_upload_blob(self) -> None:
        """Uploads go to the bucket path and return the public URL."""
        transport = RecordingTransport(lambda request: httpx.Response(200, json={}))
        store = make_store(transport)

        url = asyncio.run(
            store.upload_blob(
                'tracks/trip/photos/1.jpg', b'jpg', 'image/jpeg', {'lat': '1.0'}
            )
        )

        self.assertEqual(
            url, f'{BASE_URL}/storage/v1/object/public/photos/tracks/trip/photos/1.jpg'
        )
        request = transport.requests[0]
        self.assertEqual(
            request.url.path, '/storage/v1/object/photos/tracks/trip/photos/1.jpg'
        )
        self.assertEqual(request.content, b'jpg')
        self.assertEqual(request.headers['Content-Type'], 'image/jpeg')
        metadata = json.loads(base64.b64decode(request.headers['x-metadata']))
        self.assertEqual(metadata, {'lat': '1.0'})

    def test_download_by_path_and_url(self) -> None:
        """Bucket paths and absolute URLs are both fetched."""
        transport = RecordingTransport(
            lambda request: httpx.Response(200, content=b'x')
        )
        store = make_store(transport)
        self.assertEqual(asyncio.run(store.download_blob('a/b.jpg')), b'x')
        self.assertEqual(
            asyncio.run(store.download_blob('https://cdn.example/c.jpg')), b'x'
        )
        self.assertEqual(
            transport.requests[0].url.path, '/storage/v1/object/photos/a/b.jpg'
        )
        self.assertEqual(transport.requests[1].url.host, 'cdn.example')

    def test_status_errors_become_transport_errors(self) -> None:
        """HTTP failures carry their status code."""
        store = make_store(
            RecordingTransport(lambda request: httpx.Response(403, json={}))
        )
        with self.assertRaises(TransportError) as ctx:
            asyncio.run(store.project_exists('trip'))
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertTrue(ctx.exception.permission_denied)

    def test_connection_errors_become_transport_errors(self) -> None:
        """Network failures have no status code."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('refused', request=request)

        store = make_store(RecordingTransport(refuse))
        with self.assertRaises(TransportError) as ctx:
            asyncio.run(store.list_projects())
        self.assertIsNone(ctx.exception.status_code)
        self.assertFalse(ctx.exception.permission_denied)

    def test_from_settings(self) -> None:
        """Settings supply URL, key, bucket and table."""
        settings = app_settings.Settings(
            remote_url=f'{BASE_URL}/', remote_key='k', remote_bucket='b'
        )
        store = remote.SupabaseRemoteStore.from_settings(
            settings, remote.Principal('u', 'tok')
        )
        self.assertEqual(store.url, BASE_URL)
        self.assertEqual(store.bucket, 'b')
        self.assertEqual(store.access_token, 'tok')
        with self.assertRaises(ValueError):
            remote.SupabaseRemoteStore.from_settings(app_settings.Settings())


if __name__ == '__main__':
    unittest.main()
