# app.py  (JSON API over the matching engine, gunicorn ready)
from dotenv import load_dotenv
load_dotenv()

from flask import Flask, request, jsonify, session, send_file
from functools import wraps
from io import BytesIO
import logging
import mimetypes

from picmatch.config import configure_logging, load_settings
from picmatch.errors import (
    DuplicateRegistrationError,
    EntityNotFoundError,
    EventClosedError,
    EventNotFoundError,
    ExtractionError,
    IndexUnavailableError,
    InvalidStateError,
    InvalidUploadError,
    NoDescriptorError,
    PermissionDeniedError,
    PicMatchError,
)
from picmatch.models import Principal


# --- CONFIGURATION ---
settings = load_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = settings.secret_key
app.config['SETTINGS'] = settings
app.config['MATCHING_SERVICE'] = None
app.config['MAX_CONTENT_LENGTH'] = settings.max_upload_mb * 1024 * 1024 * 20

ERROR_STATUS = {
    InvalidUploadError: 400,
    ExtractionError: 400,
    NoDescriptorError: 400,
    InvalidStateError: 409,
    PermissionDeniedError: 403,
    EventNotFoundError: 404,
    EntityNotFoundError: 404,
    EventClosedError: 409,
    DuplicateRegistrationError: 409,
    IndexUnavailableError: 503,
}


def get_service():
    """Build the engine on first use so importing the app stays cheap."""
    service = app.config.get('MATCHING_SERVICE')
    if service is None:
        from picmatch.service import build_service
        service = build_service(app.config['SETTINGS'])
        app.config['MATCHING_SERVICE'] = service
        logger.info("[API] Matching service initialised")
    return service


# --- DISABLE CACHING FOR API RESPONSES ---
@app.after_request
def add_cache_headers(response):
    if request.path.startswith('/api/'):
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'
        response.headers['Expires'] = '0'
    return response


@app.errorhandler(PicMatchError)
def handle_engine_error(error):
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"[API] Request failed - path: {request.path}, error: {str(error)}")
    else:
        logger.info(f"[API] Request rejected - path: {request.path}, status: {status_code}, error: {str(error)}")
    return jsonify({"success": False, "error": str(error), "error_code": error.error_code}), status_code


# --- AUTH GUARD ---
def principal_required(f):
    """Resolve the session principal and pass it to the view."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        email = session.get('user_email')
        if not session.get('logged_in') or not email:
            return jsonify({
                "success": False,
                "error": "Session expired. Please log in again.",
                "error_code": "SESSION_EXPIRED"
            }), 401
        principal = Principal.from_session(email, session.get('role'))
        return f(principal, *args, **kwargs)
    return decorated_function


def _read_upload(field_name):
    file = request.files.get(field_name)
    if file is None or not file.filename:
        raise InvalidUploadError(f"No file provided in '{field_name}'")
    return file.read(), file.filename


# --- EVENTS ---
@app.route('/api/events', methods=['POST'])
@principal_required
def create_event(principal):
    data = request.get_json(silent=True) or {}
    event = get_service().create_event(principal, name=str(data.get('name', '')).strip())
    return jsonify({"success": True, "event": event.to_dict()}), 201


@app.route('/api/my_events')
@principal_required
def get_my_events(principal):
    events = get_service().list_events(principal)
    return jsonify({"success": True, "events": [e.to_dict() for e in events]})


@app.route('/api/events/<event_id>/close', methods=['POST'])
@principal_required
def close_event(principal, event_id):
    event = get_service().close_event(principal, event_id)
    return jsonify({"success": True, "event": event.to_dict()})


@app.route('/api/events/<event_id>', methods=['DELETE'])
@principal_required
def delete_event(principal, event_id):
    get_service().delete_event(principal, event_id)
    return jsonify({"success": True, "message": "Event deleted"})


@app.route('/api/qr_code/<event_id>')
def get_qr_code(event_id):
    png = get_service().event_qr_png(event_id)
    return send_file(BytesIO(png), mimetype='image/png')


# --- UPLOADS ---
@app.route('/api/upload_photos/<event_id>', methods=['POST'])
@principal_required
def upload_event_photos(principal, event_id):
    files = request.files.getlist('photos')
    if not files or files[0].filename == '':
        return jsonify({"success": False, "error": "No photos selected", "error_code": "INVALID_UPLOAD"}), 400

    service = get_service()
    photo_ids = []
    rejected = []
    for file in files:
        try:
            photo_ids.append(service.upload_photo(principal, event_id, file.read(), file.filename))
        except InvalidUploadError as e:
            # Skip invalid files but continue processing others
            logger.warning(f"[API] File upload validation failed - event_id: {event_id}, filename: {file.filename}, error: {str(e)}")
            rejected.append({"filename": file.filename, "error": str(e)})

    return jsonify({
        "success": True,
        "message": f"Successfully uploaded {len(photo_ids)} photos",
        "photo_ids": photo_ids,
        "rejected": rejected,
    }), 202


@app.route('/api/events/<event_id>/selfie', methods=['POST'])
@principal_required
def upload_selfie(principal, event_id):
    data, filename = _read_upload('selfie')
    additional = request.form.get('additional', '').lower() in ('1', 'true', 'yes')
    submission_id = get_service().upload_selfie(principal, event_id, data, filename, additional=additional)
    return jsonify({"success": True, "submission_id": submission_id}), 202


# --- PROCESSING STATUS ---
@app.route('/api/status/<entity_id>')
@principal_required
def get_processing_status(principal, entity_id):
    return jsonify({"success": True, "status": get_service().get_processing_status(principal, entity_id)})


@app.route('/api/retry/<entity_id>', methods=['POST'])
@principal_required
def retry_entity(principal, entity_id):
    return jsonify({"success": True, "status": get_service().retry(principal, entity_id)}), 202


# --- PHOTO FEEDS ---
@app.route('/api/my_photos')
@principal_required
def get_my_photos(principal):
    event_id = request.args.get('event_id') or None
    refs = get_service().get_my_photos(principal, event_id=event_id)
    return jsonify({
        "success": True,
        "photos": [dict(ref.to_dict(), url=f"/api/photos/{ref.photo_id}/image") for ref in refs],
        "total_photos": len(refs),
    })


@app.route('/api/events/<event_id>/photos')
@principal_required
def get_event_photos(principal, event_id):
    refs = get_service().get_event_photos(principal, event_id)
    return jsonify({
        "success": True,
        "photos": [dict(ref.to_dict(), url=f"/api/photos/{ref.photo_id}/image") for ref in refs],
        "has_next": False,
    })


@app.route('/api/photos/<photo_id>/image')
@principal_required
def serve_photo(principal, photo_id):
    service = get_service()
    data = service.read_photo_bytes(principal, photo_id)
    storage_ref = service.photo_index.get_photo(photo_id).storage_ref
    mimetype = mimetypes.guess_type(storage_ref)[0] or 'application/octet-stream'
    logger.info(f"[PHOTO_SERVING] Serving photo - photo_id: {photo_id}, principal: {principal.email}, operation: serve_photo")
    return send_file(BytesIO(data), mimetype=mimetype)


# --- MODERATION ---
@app.route('/api/photos/<photo_id>', methods=['DELETE'])
@principal_required
def delete_photo(principal, photo_id):
    get_service().delete_photo(principal, photo_id)
    return jsonify({"success": True, "message": "Photo deleted"})


@app.route('/api/photos/<photo_id>/attendees')
@principal_required
def get_photo_attendees(principal, photo_id):
    attributions = get_service().get_photo_attendees(principal, photo_id)
    return jsonify({
        "success": True,
        "attendees": [
            {"attendee_id": a.attendee_id, "score": round(a.score, 4), "decided_at": a.decided_at.isoformat()}
            for a in attributions
        ],
    })


# --- ENTRY POINT ---
if __name__ == '__main__':
    get_service()
    # Use 0.0.0.0 for container compatibility (allows external connections)
    logger.info(f"Starting Flask application on 0.0.0.0:{settings.port}")
    app.run(host='0.0.0.0', port=settings.port)
