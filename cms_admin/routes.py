"""
Flask routes for the CMS admin editor.

JSON API under /api/editor. Each open entity form is an EditSession held
in-process and addressed by its id; the browser drives it field by field
and renders the returned state.
"""

import io
import time
from typing import Callable, Dict, List, Optional, Tuple

from flask import Blueprint, current_app, jsonify, request
from flask_wtf.csrf import generate_csrf
from werkzeug.datastructures import FileStorage

from cms_admin import db
from cms_admin.audit_logger import (
    log_draft_discarded, log_draft_restored, log_draft_saved,
    log_session_closed, log_session_opened, log_submission_result,
    log_validation_failed,
)
from cms_admin.drafts import DatabaseStore, DraftStore, KeyValueStore, MemoryStore
from cms_admin.models import Submission, SubmissionMode, SubmissionStatus
from cms_admin.path_store import ShapeError
from cms_admin.schemas import SCHEMAS, get_schema
from cms_admin.security import (
    get_client_ip, rate_limit_draft, rate_limit_edit, rate_limit_session,
    rate_limit_submit, sanitize_string,
)
from cms_admin.session import TRIGGER_CHANGE, EditSession, coerce_bool
from cms_admin.submission import build_submitter
from cms_admin.validation import coerce_to_int


editor_bp = Blueprint('editor', __name__, url_prefix='/api/editor')


class SessionNotFound(LookupError):
    pass


class SessionRegistry:
    """
    Open edit sessions of this process, by id.

    Sessions untouched for `idle_seconds` are closed by prune(); closing
    runs the exit autosave, so an abandoned form still leaves its draft.
    """

    def __init__(self, idle_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.idle_seconds = idle_seconds
        self.clock = clock
        self._sessions: Dict[str, EditSession] = {}
        self._last_seen: Dict[str, float] = {}

    def add(self, session: EditSession) -> None:
        self._sessions[session.id] = session
        self._last_seen[session.id] = self.clock()

    def get(self, session_id: str) -> EditSession:
        try:
            session = self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id)
        self._last_seen[session_id] = self.clock()
        return session

    def remove(self, session_id: str) -> Optional[EditSession]:
        self._last_seen.pop(session_id, None)
        return self._sessions.pop(session_id, None)

    def prune(self) -> List[Tuple[EditSession, bool]]:
        """Close and drop idle sessions; returns (session, draft_saved) pairs."""
        if not self.idle_seconds:
            return []
        cutoff = self.clock() - self.idle_seconds
        idle = [session_id for session_id, seen in self._last_seen.items() if seen <= cutoff]
        pruned = []
        for session_id in idle:
            session = self.remove(session_id)
            pruned.append((session, session.close()))
        return pruned

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session_id):
        return session_id in self._sessions


def init_editor(app):
    """Attach the session registry and draft backend to the app."""
    app.extensions['cms_sessions'] = SessionRegistry(app.config.get('EDITOR_SESSION_IDLE_SECONDS'))
    backend = app.config.get('DRAFT_BACKEND', 'database')
    if backend == 'memory':
        app.extensions['cms_draft_backend'] = MemoryStore()
    elif backend == 'database':
        app.extensions['cms_draft_backend'] = DatabaseStore()
    else:
        raise ValueError(f'Unknown DRAFT_BACKEND: {backend}')


def registry() -> SessionRegistry:
    return current_app.extensions['cms_sessions']


def draft_backend() -> KeyValueStore:
    return current_app.extensions['cms_draft_backend']


def error_response(message: str, code: str, status: int, field: str = ''):
    return jsonify({
        'ok': False,
        'errors': [{'field': field, 'message': message, 'code': code}]
    }), status


def state_response(session: EditSession, status: int = 200, **extra):
    body = {'ok': True, 'state': session.state()}
    body.update(extra)
    return jsonify(body), status


def load_session(session_id: str) -> EditSession:
    """Look up a session and run any autosave that fell due since the last request."""
    session = registry().get(session_id)
    session.poll()
    return session


def json_body() -> dict:
    return request.get_json(silent=True) or {}


def optional_index(value) -> Optional[int]:
    if value is None or value == '':
        return None
    index = coerce_to_int(value)
    if index is None or index < 0:
        raise ShapeError(f'Invalid index: {value!r}')
    return index


def detach_upload(upload: FileStorage) -> FileStorage:
    """Copy an upload into memory; request streams close with the request."""
    data = upload.read()
    return FileStorage(
        stream=io.BytesIO(data),
        filename=sanitize_string(upload.filename or '', max_length=255),
        name=upload.name,
        content_type=upload.content_type,
    )


@editor_bp.errorhandler(ShapeError)
def handle_shape_error(error):
    current_app.logger.warning(f'Rejected editor request: {error}')
    return error_response(str(error), 'invalid_path', 400)


@editor_bp.errorhandler(IndexError)
def handle_index_error(error):
    return error_response(str(error), 'invalid_index', 400)


@editor_bp.errorhandler(SessionNotFound)
def handle_missing_session(error):
    return error_response('Editing session not found', 'session_not_found', 404)


@editor_bp.before_request
def prune_idle_sessions():
    for session, saved in registry().prune():
        log_session_closed(session.schema.name, session.id, saved)
        current_app.logger.info(f'Closed idle {session.schema.name} session {session.id}')


@editor_bp.route('/csrf-token', methods=['GET'])
def csrf_token():
    return jsonify({'ok': True, 'csrf_token': generate_csrf()})


@editor_bp.route('/entities', methods=['GET'])
def list_entities():
    return jsonify({'ok': True, 'entities': [schema.summary() for schema in SCHEMAS.values()]})


@editor_bp.route('/<entity>/sessions', methods=['POST'])
@rate_limit_session()
def open_session(entity):
    """
    Open a form.

    Body (optional):
        record_id: CMS id when editing an existing record
        initial: the record's current values
    """
    schema = get_schema(entity)
    body = json_body()
    record_id = body.get('record_id')
    config = current_app.config

    drafts = None
    if record_id is None:
        drafts = DraftStore(draft_backend(), schema.draft_key)

    session = EditSession(
        schema,
        submitter=build_submitter(config, schema),
        drafts=drafts,
        record_id=record_id,
        initial=body.get('initial'),
        autosave_interval=config.get('DRAFT_AUTOSAVE_SECONDS', 30),
        debounce=config.get('DRAFT_DEBOUNCE_SECONDS', 2),
    )
    recovery = session.open()
    registry().add(session)

    log_session_opened(schema.name, session.id, record_id=record_id, draft_waiting=recovery.exists)
    current_app.logger.info(f'Opened {schema.name} session {session.id}')
    return state_response(session, 201, session_id=session.id, recovery=recovery.to_dict())


@editor_bp.route('/sessions/<session_id>', methods=['GET'])
def get_session(session_id):
    return state_response(load_session(session_id))


@editor_bp.route('/sessions/<session_id>', methods=['DELETE'])
def close_session(session_id):
    session = registry().get(session_id)
    saved = session.close()
    registry().remove(session_id)
    log_session_closed(session.schema.name, session_id, saved)
    return jsonify({'ok': True, 'draft_saved': saved})


@editor_bp.route('/sessions/<session_id>/fields', methods=['PATCH'])
@rate_limit_edit()
def update_field(session_id):
    """Body: {path, value, trigger}; trigger is 'change', 'blur' or 'none'."""
    session = load_session(session_id)
    body = json_body()
    if 'path' not in body:
        return error_response('path is required', 'missing_path', 400, 'path')

    error = session.set_value(body['path'], body.get('value'), body.get('trigger', TRIGGER_CHANGE))
    return state_response(session, error=error)


@editor_bp.route('/sessions/<session_id>/sections/<section_key>/items', methods=['POST'])
@rate_limit_edit()
def add_item(session_id, section_key):
    session = load_session(session_id)
    body = json_body()
    index = session.add_sub_section(section_key, body.get('template'), body.get('list_key'))
    return state_response(session, 201, index=index)


@editor_bp.route('/sessions/<session_id>/sections/<section_key>/items/<int:index>', methods=['DELETE'])
@rate_limit_edit()
def remove_item(session_id, section_key, index):
    session = load_session(session_id)
    session.remove_sub_section(section_key, index, request.args.get('list_key'))
    return state_response(session)


@editor_bp.route('/sessions/<session_id>/sections/<section_key>/points', methods=['POST'])
@rate_limit_edit()
def add_point(session_id, section_key):
    """Body: {sub_index, list_key}; no sub_index targets the section's own list."""
    session = load_session(session_id)
    body = json_body()
    index = session.add_point(section_key, optional_index(body.get('sub_index')), body.get('list_key'))
    return state_response(session, 201, index=index)


@editor_bp.route('/sessions/<session_id>/sections/<section_key>/points/<int:point_index>', methods=['DELETE'])
@rate_limit_edit()
def remove_point(session_id, section_key, point_index):
    session = load_session(session_id)
    session.remove_point(section_key, optional_index(request.args.get('sub_index')), point_index,
                         request.args.get('list_key'))
    return state_response(session)


@editor_bp.route('/sessions/<session_id>/assets', methods=['POST'])
@rate_limit_edit()
def upload_asset(session_id):
    """
    Multipart form: file, owner (section key or upload slot), index
    (sub-section), position (replace in place), alt_text.
    """
    session = load_session(session_id)
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return error_response('No file uploaded', 'missing_file', 400, 'file')

    owner = request.form.get('owner', '')
    index = optional_index(request.form.get('index'))
    position = optional_index(request.form.get('position'))
    file = detach_upload(upload)

    if position is None:
        position = session.add_asset(owner, index, file)
    else:
        session.set_asset(owner, index, file, position=position)

    if 'alt_text' in request.form:
        session.set_alt_text(owner, index, sanitize_string(request.form['alt_text']), position)
    return state_response(session, 201, position=position)


@editor_bp.route('/sessions/<session_id>/assets', methods=['DELETE'])
@rate_limit_edit()
def remove_asset(session_id):
    session = load_session(session_id)
    body = json_body()
    session.remove_asset(body.get('owner', ''), optional_index(body.get('index')),
                         optional_index(body.get('position')) or 0)
    return state_response(session)


@editor_bp.route('/sessions/<session_id>/assets/alt-text', methods=['PUT'])
@rate_limit_edit()
def update_alt_text(session_id):
    session = load_session(session_id)
    body = json_body()
    stored = session.set_alt_text(body.get('owner', ''), optional_index(body.get('index')),
                                  sanitize_string(body.get('alt_text', '')),
                                  optional_index(body.get('position')) or 0)
    return state_response(session, alt_text=stored)


@editor_bp.route('/sessions/<session_id>/validate', methods=['POST'])
def validate_session(session_id):
    session = load_session(session_id)
    result = session.validate()
    body = result.to_dict()
    body['state'] = session.state()
    return jsonify(body), 200 if result.is_valid else 422


@editor_bp.route('/sessions/<session_id>/draft', methods=['POST'])
@rate_limit_draft()
def save_draft(session_id):
    session = load_session(session_id)
    if session.drafts is None:
        return error_response('Drafts are not kept when editing an existing record',
                              'drafts_unavailable', 400)
    saved = session.save_draft()
    log_draft_saved(session.schema.draft_key, saved)
    if not saved:
        return error_response('Draft could not be saved', 'draft_save_failed', 500)
    return state_response(session, last_saved=session.last_saved)


@editor_bp.route('/sessions/<session_id>/draft/restore', methods=['POST'])
@rate_limit_draft()
def restore_draft(session_id):
    session = load_session(session_id)
    recovery = session.recovery_signal()
    if not session.restore_draft():
        return error_response('No draft to restore', 'draft_not_found', 404)
    log_draft_restored(session.schema.draft_key, recovery.timestamp)
    return state_response(session)


@editor_bp.route('/sessions/<session_id>/draft', methods=['DELETE'])
@rate_limit_draft()
def discard_draft(session_id):
    session = load_session(session_id)
    session.discard_draft()
    log_draft_discarded(session.schema.draft_key)
    return state_response(session, recovery=session.recovery_signal().to_dict())


@editor_bp.route('/sessions/<session_id>/autosave', methods=['PUT'])
def toggle_autosave(session_id):
    session = load_session(session_id)
    session.set_autosave(coerce_bool(json_body().get('enabled', True)))
    return state_response(session)


@editor_bp.route('/sessions/<session_id>/submit', methods=['POST'])
@rate_limit_submit()
def submit_session(session_id):
    """
    Validate and send the form to the CMS API.

    Returns:
        200/201 on success, 422 when the form is invalid, 502 when the CMS
        rejected or could not receive it
    """
    session = load_session(session_id)
    outcome = session.submit()

    if not outcome.sent:
        log_validation_failed(session.schema.name, session.id, list(outcome.field_errors))
        body = outcome.to_dict()
        body['state'] = session.state()
        return jsonify(body), 422

    envelope = session.last_envelope
    submission = Submission(
        ip_address=get_client_ip(),
        user_agent=request.headers.get('User-Agent', 'unknown'),
        entity_type=session.schema.name,
        mode=SubmissionMode.EDIT.value if session.is_edit else SubmissionMode.CREATE.value,
        record_id=str(session.record_id) if session.record_id is not None else None,
        file_count=envelope.file_count,
        envelope_sha256=envelope.digest(),
        status=SubmissionStatus.PENDING.value,
    )
    submission.set_part_keys(envelope.keys())
    if outcome.ok:
        submission.mark_sent(outcome.result)
    else:
        submission.mark_failed(outcome.message)

    try:
        db.session.add(submission)
        db.session.commit()
        outcome.submission_id = submission.id
        log_submission_result(submission.id, session.schema.name, outcome.ok,
                              None if outcome.ok else outcome.message)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f'Failed to record submission: {str(e)}')

    body = outcome.to_dict()
    body['state'] = session.state()
    if outcome.submission_id is not None:
        body['submission'] = submission.to_dict()
    if not outcome.ok:
        return jsonify(body), 502

    # A sent form is finished; the client opens a new session to keep editing
    registry().remove(session.id)
    log_session_closed(session.schema.name, session.id, False)
    return jsonify(body), 200 if session.is_edit else 201
