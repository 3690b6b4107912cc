from flask import current_app, request
from flask_socketio import emit
from typing import Dict, List, Optional

from . import socketio


@socketio.on('connect')
def handle_connect(auth=None):
    relay_system = current_app.relay_system
    if not relay_system:
        return False

    relay_system.attach_viewer(request.sid)
    for status in relay_system.liveness.all_statuses().values():
        emit('camera_status', status.to_dict())


@socketio.on('disconnect')
def handle_disconnect(*args):
    relay_system = current_app.relay_system
    if relay_system:
        relay_system.detach_viewer(request.sid)


@socketio.on('select_cameras')
def handle_select_cameras(data: Optional[Dict[str, List[str]]]):
    """Restrict this viewer's feed to a set of cameras; an empty list means all."""
    relay_system = current_app.relay_system
    if not relay_system:
        emit('error_message', {'message': 'Relay system not available'})
        return

    connection = relay_system.hub.get_viewer(request.sid)
    if connection is None:
        emit('error_message', {'message': 'Viewer is not subscribed'})
        return

    try:
        cameras = (data or {}).get('cameras') or []
        if not isinstance(cameras, list):
            raise TypeError("cameras must be a list")
        connection.set_cameras([str(c) for c in cameras])
        emit('cameras_selected', {'cameras': sorted(connection.cameras) if connection.cameras else []})
    except (AttributeError, TypeError) as e:
        emit('error_message', {'message': f'Invalid data format: {e}'})


@socketio.on('request_status')
def handle_request_status():
    relay_system = current_app.relay_system
    if not relay_system:
        emit('error_message', {'message': 'Relay system not available'})
        return
    for status in relay_system.liveness.all_statuses().values():
        emit('camera_status', status.to_dict())
