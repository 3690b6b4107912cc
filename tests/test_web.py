import base64
import io
import json
import os
import time

import pytest

from camera_relay.core import RelaySystem
from camera_relay.models import Detection
from camera_relay.web import app, socketio
from camera_relay.web import routes
from camera_relay.web.routes import atoi_default, parse_date, parse_time_of_day

PERSON = [{"label": "person", "confidence": 0.9, "x": 1, "y": 1, "width": 10, "height": 10}]


@pytest.fixture
def relay(relay_config):
    relay_system = RelaySystem(relay_config, socketio, app)
    app.relay_system = relay_system
    relay_system.start()
    yield relay_system
    relay_system.stop()
    app.relay_system = None


@pytest.fixture
def client(relay):
    return app.test_client()


def upload(client, camera="balkon", image=b"\xff\xd8frame\xff\xd9", detections=None, **params):
    headers = {'X-Detections': json.dumps(detections)} if detections is not None else {}
    query = {'camera': camera, **params} if camera is not None else params
    return client.post('/upload', query_string=query, data=image, headers=headers)


def wait_for_event(socket_client, name, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        for event in socket_client.get_received():
            if event['name'] == name:
                return event
        time.sleep(0.05)
    return None


def test_query_helpers():
    assert atoi_default("3", 1) == 3
    assert atoi_default("0", 24) == 24
    assert atoi_default("-5", 24) == 24
    assert atoi_default("abc", 1) == 1
    assert atoi_default(None, 1) == 1
    assert parse_date("2024-01-02").isoformat() == "2024-01-02"
    assert parse_date("2024-01-02T10:00:00+00:00").isoformat() == "2024-01-02"
    assert parse_date("02/01/2024") is None
    assert parse_time_of_day("08:15").strftime("%H:%M") == "08:15"
    assert parse_time_of_day("8am") is None


def test_upload_broadcasts_and_archives(client, relay):
    response = upload(client, detections=PERSON)

    assert response.status_code == 200
    assert response.get_json() == {'status': 'accepted', 'camera': 'balkon', 'sequence': 1, 'archived': True}
    assert relay.archive_writer.drain(timeout=5.0)

    listing = client.get('/api/pictures').get_json()
    assert listing['length'] == 1
    assert listing['totalPages'] == 1
    assert listing['currentPage'] == 1
    assert listing['pageSize'] == 24
    assert listing['imagesDir'] == '/images'
    assert listing['maxSize'] == pytest.approx(0.01)
    assert listing['size'] == len(b"\xff\xd8frame\xff\xd9")
    picture = listing['pictures'][0]
    assert picture['camera'] == 'balkon'
    assert picture['objects'] == ['person']

    image = client.get(f"/images/{picture['name']}")
    assert image.status_code == 200
    assert image.data == b"\xff\xd8frame\xff\xd9"


def test_upload_without_detections_is_not_archived(client, relay):
    response = upload(client)
    assert response.get_json()['archived'] is False

    forced = upload(client, archive='1')
    assert forced.get_json()['archived'] is True
    assert forced.get_json()['sequence'] == 2


def test_multipart_upload(client, relay):
    response = client.post('/upload', data={
        'camera': 'drzwi',
        'image': (io.BytesIO(b"\xff\xd8multi\xff\xd9"), 'frame.jpg'),
        'detections': json.dumps(PERSON),
    }, content_type='multipart/form-data')

    assert response.status_code == 200
    assert response.get_json()['camera'] == 'drzwi'
    assert relay.hub.latest('drzwi').image == b"\xff\xd8multi\xff\xd9"


@pytest.mark.parametrize("kwargs", [
    {'camera': None},
    {'image': b""},
    {'detections': [{"label": "person", "confidence": 7}]},
])
def test_invalid_upload_returns_400(client, relay, kwargs):
    response = upload(client, **kwargs)
    assert response.status_code == 400
    assert 'error' in response.get_json()
    assert relay.hub.latest('balkon') is None


def test_malformed_detection_json_returns_400(client):
    response = client.post('/upload?camera=balkon', data=b"jpeg", headers={'X-Detections': '{not json'})
    assert response.status_code == 400


def test_listing_filters_and_bad_query_values(client, relay):
    relay.archive.save("balkon", b"a" * 10)
    relay.archive.save("drzwi", b"b" * 10)

    only_balkon = client.get('/api/pictures?camera=balkon').get_json()
    assert [p['camera'] for p in only_balkon['pictures']] == ['balkon']

    lenient = client.get('/api/pictures?page=abc&limit=-1&dateAfter=yesterday&timeBefore=late').get_json()
    assert lenient['currentPage'] == 1
    assert lenient['pageSize'] == 24
    assert lenient['length'] == 2

    beyond = client.get('/api/pictures?page=5&limit=1').get_json()
    assert beyond['pictures'] == []
    assert beyond['totalPages'] == 2


def test_delete_picture(client, relay):
    picture = relay.archive.save("balkon", b"a" * 10)

    assert client.post('/api/pictures/delete').status_code == 400
    assert client.post('/api/pictures/delete?filename=missing.jpg').status_code == 404

    response = client.delete(f'/api/pictures/delete?filename={picture.filename}')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'deleted'}
    assert client.get(f'/images/{picture.filename}').status_code == 404
    assert client.get('/api/pictures').get_json()['size'] == 0


def test_clear_pictures(client, relay):
    relay.archive.save("balkon", b"a" * 10)
    relay.archive.save("drzwi", b"b" * 10)

    response = client.post('/api/pictures/clear')
    assert response.get_json() == {'status': 'cleared'}

    listing = client.get('/api/pictures').get_json()
    assert listing['length'] == 0
    assert listing['size'] == 0
    assert listing['totalPages'] <= 1


def test_clear_failure_returns_500_and_keeps_picture(client, relay, monkeypatch):
    picture = relay.archive.save("balkon", b"a" * 10)

    def failing_remove(path):
        raise PermissionError(13, "Permission denied", path)

    monkeypatch.setattr(os, "remove", failing_remove)
    response = client.post('/api/pictures/clear')
    monkeypatch.undo()

    assert response.status_code == 500
    listing = client.get('/api/pictures').get_json()
    assert [p['name'] for p in listing['pictures']] == [picture.filename]
    assert listing['size'] == 10


def test_picture_filters_and_stats(client, relay):
    relay.archive.save("balkon", b"a" * 10, [Detection(label="person", confidence=0.9)])
    relay.archive.save("drzwi", b"b" * 20, [Detection(label="car", confidence=0.7)])
    relay.archive.save("drzwi", b"c" * 30)

    filters = client.get('/api/pictures/filters').get_json()
    assert filters == {'cameras': ['balkon', 'drzwi'], 'objects': ['car', 'person']}

    stats = client.get('/api/pictures/stats').get_json()
    assert stats['total_images'] == 3
    assert stats['total_size_bytes'] == 60
    assert stats['per_camera'] == {'balkon': 1, 'drzwi': 2}
    assert stats['object_counts'] == {'person': 1, 'car': 1}


def test_camera_status_and_health(client, relay):
    status = client.get('/api/cameras/status').get_json()
    assert set(status) == {'balkon', 'drzwi'}
    assert status['balkon']['active'] is False

    upload(client)
    relay.liveness.evaluate()
    status = client.get('/api/cameras/status').get_json()
    assert status['balkon']['active'] is True
    assert status['balkon']['frame_count'] == 1

    overview = client.get('/api/status').get_json()
    assert overview['running'] is True
    assert overview['hub']['published'] == {'balkon': 1}
    assert overview['intake']['accepted'] == 1

    assert client.get('/api/health').get_json()['status'] == 'ok'


def test_video_feed_streams_latest_frame(client, relay):
    upload(client, image=b"\xff\xd8live\xff\xd9")

    response = client.get('/video_feed/balkon')
    assert response.mimetype == 'multipart/x-mixed-replace'
    first = next(response.iter_encoded())
    response.close()
    assert relay.hub.viewer_count() == 0

    assert first.startswith(b'--frame\r\nContent-Type: image/jpeg\r\n\r\n')
    assert b"\xff\xd8live\xff\xd9" in first


def test_socket_viewer_receives_frames(client, relay):
    socket_client = socketio.test_client(app)
    try:
        assert socket_client.is_connected()
        statuses = [e['args'][0] for e in socket_client.get_received() if e['name'] == 'camera_status']
        assert {s['camera_id'] for s in statuses} == {'balkon', 'drzwi'}
        assert all(s['active'] is False for s in statuses)
        assert relay.hub.viewer_count() == 1

        upload(client, image=b"\xff\xd8live\xff\xd9", detections=PERSON)

        event = wait_for_event(socket_client, 'frame')
        assert event is not None
        envelope = event['args'][0]
        assert envelope['camera'] == 'balkon'
        assert envelope['sequence'] == 1
        assert base64.b64decode(envelope['image']) == b"\xff\xd8live\xff\xd9"
        assert envelope['detections'][0]['label'] == 'person'
    finally:
        socket_client.disconnect()

    assert relay.hub.viewer_count() == 0


def test_socket_viewer_camera_selection(client, relay):
    socket_client = socketio.test_client(app)
    try:
        socket_client.emit('select_cameras', {'cameras': ['drzwi']})
        selected = wait_for_event(socket_client, 'cameras_selected')
        assert selected['args'][0] == {'cameras': ['drzwi']}

        upload(client, camera='balkon')
        upload(client, camera='drzwi')

        event = wait_for_event(socket_client, 'frame')
        assert event['args'][0]['camera'] == 'drzwi'
    finally:
        socket_client.disconnect()


def test_liveness_flip_is_pushed_to_viewers(client, relay):
    socket_client = socketio.test_client(app)
    try:
        socket_client.get_received()
        upload(client)
        relay.liveness.evaluate()

        event = wait_for_event(socket_client, 'camera_status')
        assert event['args'][0]['camera_id'] == 'balkon'
        assert event['args'][0]['active'] is True
    finally:
        socket_client.disconnect()


def test_video_feed_without_frames_ends_and_unsubscribes(client, relay, monkeypatch):
    monkeypatch.setattr(routes, "FIRST_FRAME_TIMEOUT", 0.2)

    response = client.get('/video_feed/drzwi')
    assert relay.hub.viewer_count() == 0
    assert response.get_data() == b''
    assert relay.hub.viewer_count() == 0
