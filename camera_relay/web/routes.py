from flask import Blueprint, Response, jsonify, send_from_directory, current_app, request
from datetime import date, datetime, time as dt_time
from typing import Any, List, Optional
import json
import logging
import time

from ..errors import InvalidFrame, PictureNotFound, StorageIOError
from ..picture_archive import BYTES_PER_GB, DEFAULT_PAGE_SIZE, PictureFilter

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__)

IMAGES_URL_PATH = '/images'
MJPEG_BOUNDARY = b'--frame\r\nContent-Type: image/jpeg\r\n\r\n'
FIRST_FRAME_TIMEOUT = 5.0
KEEPALIVE_INTERVAL = 2.0


### QUERY PARSING ###

def atoi_default(value: Optional[str], default: int) -> int:
    """Parse a positive integer, falling back to ``default`` on anything else."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        return None


def parse_time_of_day(value: Optional[str]) -> Optional[dt_time]:
    if not value:
        return None
    try:
        return datetime.strptime(value, '%H:%M').time()
    except ValueError:
        return None


def parse_flag(value: Optional[str]) -> Optional[bool]:
    if value is None or value == '':
        return None
    return value.lower() in ['true', '1', 't', 'yes']


def build_filter(args) -> PictureFilter:
    return PictureFilter(
        camera=args.get('camera') or None,
        object=args.get('object') or None,
        date_after=parse_date(args.get('dateAfter')),
        date_before=parse_date(args.get('dateBefore')),
        time_after=parse_time_of_day(args.get('timeAfter')),
        time_before=parse_time_of_day(args.get('timeBefore')),
    )


def _parse_detections(raw: Optional[str]) -> Optional[List[Any]]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidFrame(f"Detections are not valid JSON: {e}") from e


### INGEST ###

@api_bp.route('/upload', methods=['POST'])
def upload_frame():
    """Accept one frame from a camera, as a raw body or a multipart form."""
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500

    try:
        if request.mimetype == 'multipart/form-data':
            image_file = request.files.get('image')
            image = image_file.read() if image_file else b''
            camera_id = request.form.get('camera') or request.args.get('camera')
            detections = _parse_detections(request.form.get('detections') or request.args.get('detections'))
        else:
            image = request.get_data()
            camera_id = request.args.get('camera')
            detections = _parse_detections(request.headers.get('X-Detections') or request.args.get('detections'))

        result = relay_system.intake.submit(
            camera_id, image, detections, archive=parse_flag(request.args.get('archive'))
        )
    except InvalidFrame as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'status': 'accepted',
        'camera': result.camera_id,
        'sequence': result.sequence,
        'archived': result.archived
    })


### ARCHIVE ###

@api_bp.route('/api/pictures')
def list_pictures():
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500

    page = atoi_default(request.args.get('page'), 1)
    limit = atoi_default(request.args.get('limit'), DEFAULT_PAGE_SIZE)

    result = relay_system.archive.list(build_filter(request.args), page, limit)
    return jsonify({
        'pictures': [picture.to_dict() for picture in result.items],
        'imagesDir': IMAGES_URL_PATH,
        'size': result.current_size,
        'maxSize': result.max_size / BYTES_PER_GB,
        'length': result.total_count,
        'totalPages': result.total_pages,
        'currentPage': result.current_page,
        'pageSize': result.page_size
    })


@api_bp.route('/api/pictures/filters')
def get_picture_filters():
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500
    return jsonify(relay_system.archive.filter_options())


@api_bp.route('/api/pictures/stats')
def get_picture_stats():
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500
    return jsonify(relay_system.archive.stats())


@api_bp.route('/api/pictures/delete', methods=['POST', 'DELETE'])
def delete_picture():
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500

    filename = request.args.get('filename')
    if not filename:
        return jsonify({'error': 'Missing filename parameter'}), 400

    try:
        relay_system.archive.delete(filename)
    except PictureNotFound as e:
        return jsonify({'error': str(e)}), 404
    except StorageIOError as e:
        logger.error(f"Failed to delete picture {filename}: {e}")
        return jsonify({'error': 'Failed to delete picture'}), 500

    return jsonify({'status': 'deleted'})


@api_bp.route('/api/pictures/clear', methods=['POST', 'DELETE'])
def clear_pictures():
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500

    try:
        removed = relay_system.archive.clear()
    except StorageIOError as e:
        logger.error(f"Failed to clear pictures: {e}")
        return jsonify({'error': 'Failed to clear pictures'}), 500

    logger.info(f"Cleared {removed} pictures from the archive")
    return jsonify({'status': 'cleared'})


@api_bp.route(f'{IMAGES_URL_PATH}/<path:filename>')
def serve_picture(filename):
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500
    if relay_system.archive.get(filename) is None:
        return jsonify({'error': 'Picture not found'}), 404
    # send_from_directory rejects paths outside the archive directory
    return send_from_directory(relay_system.archive.directory, filename, mimetype='image/jpeg')


### LIVE + STATUS ###

@api_bp.route('/api/cameras/status')
def get_camera_status():
    """Get liveness of all cameras."""
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500

    formatted_status = {}
    for camera_id, status in relay_system.get_camera_status().items():
        last_seen = status['last_seen_at']
        formatted_status[camera_id] = {
            'active': status['active'],
            'frame_count': status['frame_count'],
            'last_frame_time': last_seen,
            'last_frame_ago': time.time() - last_seen if last_seen else None
        }
    return jsonify(formatted_status)


@api_bp.route('/api/status')
def get_status():
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500
    return jsonify(relay_system.get_status())


@api_bp.route('/api/health')
def health():
    relay_system = current_app.relay_system
    return jsonify({
        'status': 'ok' if relay_system and relay_system.running else 'starting',
        'timestamp': time.time()
    })


@api_bp.route('/video_feed/<camera_id>')
def video_feed(camera_id: str):
    relay_system = current_app.relay_system
    if not relay_system:
        return jsonify({'error': 'Relay system not available'}), 500

    hub = relay_system.hub

    def generate_frames():
        """Stream this camera's JPEG frames until the client goes away."""
        connection = hub.subscribe(cameras=[camera_id])
        try:
            message = hub.latest(camera_id) or connection.receive(timeout=FIRST_FRAME_TIMEOUT)
            if message is None:
                logger.info(f"No frame from camera {camera_id} within {FIRST_FRAME_TIMEOUT}s, closing stream")
                return
            while not connection.closed:
                yield MJPEG_BOUNDARY + message.image + b'\r\n'
                # Resend the latest frame when idle so a gone client is noticed
                message = connection.receive(timeout=KEEPALIVE_INTERVAL) or hub.latest(camera_id)
        except (BrokenPipeError, ConnectionResetError):
            logger.info(f"MJPEG client disconnected from camera {camera_id}")
        finally:
            hub.unsubscribe(connection)

    return Response(generate_frames(), mimetype='multipart/x-mixed-replace; boundary=frame')
