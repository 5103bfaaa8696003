"""Unit tests for routes.py."""

import asyncio
import io
import json
import unittest
import zipfile

import fastapi.testclient
import httpx
from PIL import Image

from routelogger.app import main, routes
from routelogger.app import settings as app_settings
from routelogger.app.errors import TransportError
from routelogger.app.store import database, models
from routelogger.app.sync import remote
from routelogger.app.sync import services as sync_services
from routelogger.app.sync.services_test import FakeRemoteStore

FOREIGN_KML = b"""<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
  <Document>
    <Placemark>
      <name>Cafe</name>
      <description><![CDATA[<img src="files/cafe.jpg" />]]></description>
      <Point><coordinates>139.7,35.6,0</coordinates></Point>
    </Placemark>
  </Document>
</kml>
"""


def make_png() -> bytes:
    """Render a tiny PNG image."""
    output = io.BytesIO()
    Image.new('RGBA', (2, 2), color=(1, 2, 3, 128)).save(output, format='PNG')
    return output.getvalue()


class RoutesTestCase(unittest.TestCase):
    """Runs the app against an in-memory store."""

    settings = app_settings.Settings(database_url='sqlite://')

    def setUp(self) -> None:
        self.app = main.create_app(self.settings)
        self.client = self.enterContext(fastapi.testclient.TestClient(self.app))
        self.store: database.LocalStore = self.app.state.store

    def counts(self) -> dict[str, int]:
        return self.client.get('/counts').json()


class TestSerializePhoto(unittest.TestCase):
    """Tests for serialize_photo helper function."""

    def test_label_and_data(self) -> None:
        """Direction labels are added; data can be left out."""
        photo = models.Photo(id=1, data='data:x', direction='right')
        result = routes.serialize_photo(photo)
        self.assertEqual(result['direction_label'], '+60°')
        self.assertEqual(result['data'], 'data:x')
        self.assertNotIn('data', routes.serialize_photo(photo, include_data=False))


class TestRecordingRoutes(RoutesTestCase):
    """Tests for session and track routes."""

    def test_session_and_points(self) -> None:
        """Points go to the session's track."""
        started = self.client.post('/session/start')
        self.assertEqual(started.status_code, 200)
        track_id = started.json()['id']

        for lat in (1.0, 2.0):
            response = self.client.post(
                '/session/points', json={'lat': lat, 'lng': 139.0}
            )
            self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['id'], track_id)
        self.assertEqual(response.json()['total_points'], 2)

        tracks = self.client.get('/tracks').json()
        self.assertEqual(tracks['track_count'], 1)
        self.assertEqual(tracks['total_points'], 2)
        self.assertEqual(tracks['tracks'][0]['points'][1], {'lat': 2.0, 'lng': 139.0})

    def test_point_without_session_starts_one(self) -> None:
        """The first point opens a session on its own."""
        response = self.client.post('/session/points', json={'lat': 1, 'lng': 2})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.counts()['tracks'], 1)

    def test_invalid_point(self) -> None:
        """Malformed points are rejected."""
        response = self.client.post('/session/points', json={'lat': 'north'})
        self.assertEqual(response.status_code, 422)


class TestPhotoRoutes(RoutesTestCase):
    """Tests for photo routes."""

    def upload(self, **form: str) -> httpx.Response:
        return self.client.post(
            '/photos',
            files={'file': ('shot.png', make_png(), 'image/png')},
            data=form,
        )

    def test_capture_and_read(self) -> None:
        """Uploads are re-encoded to JPEG and stored with their metadata."""
        response = self.upload(lat='35.5', lng='139.5', direction='left', text='hi')
        self.assertEqual(response.status_code, 201)
        created = response.json()
        self.assertNotIn('data', created)
        self.assertEqual(created['location'], {'lat': 35.5, 'lng': 139.5})
        self.assertEqual(created['direction'], 'left')
        self.assertEqual(created['direction_label'], '-60°')

        listing = self.client.get('/photos').json()
        self.assertEqual(len(listing), 1)
        self.assertNotIn('data', listing[0])
        full = self.client.get('/photos', params={'include_data': 'true'}).json()
        self.assertTrue(full[0]['data'].startswith('data:image/jpeg;base64,'))

        single = self.client.get(f'/photos/{created["id"]}').json()
        self.assertEqual(single['text'], 'hi')
        self.assertIn('data', single)

    def test_update_and_delete(self) -> None:
        """Partial updates keep omitted fields; deletes are final."""
        photo_id = self.upload(direction='left', text='old').json()['id']

        response = self.client.patch(f'/photos/{photo_id}', json={'text': 'new'})
        self.assertEqual(response.json()['text'], 'new')
        self.assertEqual(response.json()['direction'], 'left')

        response = self.client.patch(f'/photos/{photo_id}', json={'direction': 12.5})
        self.assertEqual(response.json()['direction_label'], '+12.5°')
        self.assertEqual(response.json()['text'], 'new')

        response = self.client.patch(
            f'/photos/{photo_id}', json={'direction': 'sideways'}
        )
        self.assertEqual(response.status_code, 422)

        self.assertEqual(self.client.delete(f'/photos/{photo_id}').status_code, 200)
        self.assertEqual(self.client.get(f'/photos/{photo_id}').status_code, 404)
        self.assertEqual(self.client.delete(f'/photos/{photo_id}').status_code, 404)
        response = self.client.patch(f'/photos/{photo_id}', json={'text': 'x'})
        self.assertEqual(response.status_code, 404)

    def test_rejected_uploads(self) -> None:
        """Non-images, unreadable images and half locations are refused."""
        response = self.client.post(
            '/photos', files={'file': ('a.txt', b'hello', 'text/plain')}
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.post(
            '/photos', files={'file': ('a.jpg', b'not a jpeg', 'image/jpeg')}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.upload(lat='1.0').status_code, 422)
        self.assertEqual(self.upload(direction='sideways').status_code, 422)
        self.assertEqual(self.counts()['photos'], 0)


class TestPositionAndResetRoutes(RoutesTestCase):
    """Tests for position, counts and reset routes."""

    def test_position(self) -> None:
        """The default is served until a position is saved."""
        self.assertEqual(
            self.client.get('/position').json(),
            {'lat': 35.6812, 'lng': 139.7671, 'zoom': 15},
        )
        response = self.client.put(
            '/position', json={'lat': 1.123456789, 'lng': 2.0, 'zoom': 10}
        )
        self.assertEqual(response.json()['lat'], 1.12346)
        self.assertEqual(self.client.get('/position').json()['zoom'], 10)

    def test_route_log_reset_keeps_externals(self) -> None:
        """Clearing the route log leaves foreign datasets alone."""
        self.client.post('/session/points', json={'lat': 1, 'lng': 2})
        asyncio.run(self.store.save_external_data('geojson', 'x', {'features': []}))

        response = self.client.post('/reset/route-log')

        self.assertEqual(response.json()['tracks'], 0)
        self.assertEqual(response.json()['externals'], 1)

    def test_full_reset_keeps_position(self) -> None:
        """A full reset empties everything but the saved position."""
        self.client.put('/position', json={'lat': 10.0, 'lng': 20.0, 'zoom': 5})
        self.client.post('/session/points', json={'lat': 1, 'lng': 2})
        asyncio.run(self.store.save_external_data('geojson', 'x', {'features': []}))

        response = self.client.post('/reset/full')

        self.assertEqual(response.json(), {'lat': 10.0, 'lng': 20.0, 'zoom': 5})
        self.assertEqual(
            self.counts(),
            {'tracks': 0, 'photos': 0, 'externals': 0, 'external_photos': 0},
        )

    def test_closed_store_is_unavailable(self) -> None:
        """Store errors map to 503."""
        asyncio.run(self.store.close())
        self.assertEqual(self.client.get('/counts').status_code, 503)


class TestExportImportRoutes(RoutesTestCase):
    """Tests for export and import routes."""

    def setUp(self) -> None:
        super().setUp()
        self.client.post('/session/points', json={'lat': 1.0, 'lng': 2.0})
        self.client.post('/session/points', json={'lat': 3.0, 'lng': 4.0})

    def test_export_kmz(self) -> None:
        """The archive downloads as an attachment."""
        response = self.client.get('/export/kmz')
        self.assertEqual(response.headers['content-type'], routes.KMZ_MIME)
        self.assertRegex(
            response.headers['content-disposition'], r'RouteLog_\d{8}\.kmz'
        )
        with zipfile.ZipFile(io.BytesIO(response.content)) as zip_file:
            self.assertIn('doc.kml', zip_file.namelist())

    def test_export_geojson(self) -> None:
        """The document carries the creator marker."""
        response = self.client.get('/export/geojson')
        self.assertRegex(
            response.headers['content-disposition'], r'RouteLog_\d{8}\.geojson'
        )
        self.assertEqual(response.json()['creator'], 'RouteLogger')

    def test_native_import_applies_only_on_replace(self) -> None:
        """Our own export is previewed unless replace is set."""
        exported = self.client.get('/export/geojson').content
        self.client.post('/session/start')

        preview = self.client.post(
            '/import', files={'file': ('log.geojson', exported, 'application/json')}
        ).json()
        self.assertEqual(preview['kind'], 'native')
        self.assertEqual(preview['total_points'], 2)
        self.assertFalse(preview['applied'])
        self.assertEqual(self.counts()['tracks'], 2)

        applied = self.client.post(
            '/import',
            files={'file': ('log.geojson', exported, 'application/json')},
            data={'replace': 'true'},
        ).json()
        self.assertTrue(applied['applied'])
        self.assertEqual(self.counts()['tracks'], 1)

    def test_foreign_document(self) -> None:
        """Foreign documents become external datasets."""
        document = {
            'type': 'FeatureCollection',
            'features': [
                {
                    'type': 'Feature',
                    'geometry': {'type': 'Point', 'coordinates': [1, 2]},
                    'properties': {'name': 'poi'},
                }
            ],
        }
        response = self.client.post(
            '/import',
            files={'file': ('poi.geojson', json.dumps(document), 'application/json')},
        )
        body = response.json()
        self.assertEqual(body['kind'], 'foreign')
        self.assertEqual(body['feature_count'], 1)

        externals = self.client.get('/externals').json()
        self.assertEqual(externals[0]['name'], 'poi.geojson')
        properties = externals[0]['data']['features'][0]['properties']
        self.assertEqual(properties['importId'], body['import_id'])
        self.assertEqual(self.counts()['tracks'], 1)

    def test_foreign_archive_images(self) -> None:
        """Images packaged in foreign archives are served by path."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w') as zip_file:
            zip_file.writestr('doc.kml', FOREIGN_KML)
            zip_file.writestr('files/cafe.jpg', b'cafe')
        body = self.client.post(
            '/import', files={'file': ('places.kmz', buffer.getvalue(), 'x')}
        ).json()
        self.assertEqual(body['asset_count'], 1)

        image = self.client.get(f'/externals/{body["import_id"]}/photos/files/cafe.jpg')
        self.assertEqual(image.content, b'cafe')
        self.assertEqual(image.headers['content-type'], 'image/jpeg')
        missing = self.client.get(f'/externals/{body["import_id"]}/photos/nope.jpg')
        self.assertEqual(missing.status_code, 404)

    def test_malformed_import(self) -> None:
        """Unreadable files map to 400."""
        response = self.client.post(
            '/import', files={'file': ('bad.geojson', b'{not json', 'text/plain')}
        )
        self.assertEqual(response.status_code, 400)


class TestSyncRoutes(RoutesTestCase):
    """Tests for sync routes with a fake remote store."""

    settings = app_settings.Settings(database_url='sqlite://', name_attempt_limit=2)

    def setUp(self) -> None:
        super().setUp()
        self.remote = FakeRemoteStore()
        engine = sync_services.SyncEngine(
            self.store, self.remote, remote.Principal('user-1'), self.settings
        )
        self.app.dependency_overrides[routes.get_sync_engine] = lambda: engine

    def test_publish_list_and_load(self) -> None:
        """Published projects can be listed and loaded back."""
        self.client.post('/session/points', json={'lat': 1, 'lng': 2})

        first = self.client.post('/sync/publish', json={'name': 'trip'}).json()
        second = self.client.post('/sync/publish', json={'name': 'trip'}).json()
        self.assertEqual([first['name'], second['name']], ['trip', 'trip_2'])
        self.assertEqual(first['upload_fail_count'], 0)

        projects = self.client.get('/sync/projects').json()
        self.assertEqual({p['name'] for p in projects}, {'trip', 'trip_2'})
        self.assertNotIn('tracks', projects[0])
        self.assertEqual(projects[0]['tracksCount'], 1)

        self.client.post('/reset/route-log')
        loaded = self.client.post('/sync/projects/trip/load').json()
        self.assertEqual(loaded['track_count'], 1)
        self.assertEqual(loaded['total_points'], 1)
        self.assertEqual(self.counts()['tracks'], 1)

    def test_unknown_project(self) -> None:
        """Loading a missing project is a 404."""
        response = self.client.post('/sync/projects/nope/load')
        self.assertEqual(response.status_code, 404)

    def test_error_mapping(self) -> None:
        """Exhausted names are 409; remote failures are 502."""
        self.remote.projects['trip'] = remote.RemoteProject(name='trip')
        self.remote.projects['trip_2'] = remote.RemoteProject(name='trip_2')
        response = self.client.post('/sync/publish', json={'name': 'trip'})
        self.assertEqual(response.status_code, 409)

        self.remote.probe_error = TransportError('down', status_code=500)
        response = self.client.post('/sync/publish', json={'name': 'other'})
        self.assertEqual(response.status_code, 502)


class TestSyncConfiguration(unittest.TestCase):
    """Tests for the sync engine dependency."""

    def request(self, settings: app_settings.Settings) -> int:
        app = main.create_app(settings)
        with fastapi.testclient.TestClient(app) as client:
            return client.get('/sync/projects').status_code

    def test_signed_out(self) -> None:
        """Without a user the sync routes answer 401."""
        self.assertEqual(
            self.request(app_settings.Settings(database_url='sqlite://')), 401
        )

    def test_remote_not_configured(self) -> None:
        """A signed-in user without a remote gets 503."""
        settings = app_settings.Settings(database_url='sqlite://', user_id='u1')
        self.assertEqual(self.request(settings), 503)


if __name__ == '__main__':
    unittest.main()
