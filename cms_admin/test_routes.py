"""
Editor API Tests

Drives the JSON API end to end with a stub CMS submitter:
- Session lifecycle
- Field and structural edits
- Uploads and alt text
- Drafts
- Submission outcomes and their records
"""

import io
import unittest

from cms_admin import create_app, db
from cms_admin.audit_logger import get_audit_trail_for_submission, verify_audit_integrity
from cms_admin.models import DraftRecord, Submission
from cms_admin.routes import SessionNotFound, SessionRegistry
from cms_admin.schemas import TAG_SCHEMA
from cms_admin.session import EditSession
from cms_admin.submission import SubmissionError


class StubSubmitter:

    def __init__(self):
        self.calls = []
        self.error = None

    def __call__(self, envelope, record_id=None):
        self.calls.append((envelope, record_id))
        if self.error is not None:
            raise self.error
        return {'id': 101}


class EditorApiTestCase(unittest.TestCase):

    def setUp(self):
        self.submitter = StubSubmitter()
        self.app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'WTF_CSRF_ENABLED': False,
            'RATELIMIT_ENABLED': False,
            'DRAFT_BACKEND': 'database',
            'EDITOR_SESSION_IDLE_SECONDS': 600,
            'CMS_SUBMITTER': lambda schema: self.submitter,
        })
        self.client = self.app.test_client()

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()

    def open_session(self, entity='tag', **body):
        response = self.client.post(f'/api/editor/{entity}/sessions', json=body)
        self.assertEqual(response.status_code, 201)
        return response.get_json()

    def set_field(self, session_id, path, value, trigger='change'):
        return self.client.patch(f'/api/editor/sessions/{session_id}/fields',
                                 json={'path': path, 'value': value, 'trigger': trigger})


class TestSessions(EditorApiTestCase):

    def test_entities(self):
        response = self.client.get('/api/editor/entities')
        names = [entity['name'] for entity in response.get_json()['entities']]
        self.assertEqual(sorted(names), ['blog', 'industry', 'project', 'service', 'tag'])

    def test_csrf_token(self):
        response = self.client.get('/api/editor/csrf-token')
        self.assertTrue(response.get_json()['csrf_token'])

    def test_open_session(self):
        body = self.open_session('project')
        self.assertFalse(body['recovery']['exists'])
        self.assertEqual(body['state']['mode'], 'create')
        self.assertEqual(body['state']['scalars']['tag_ids'], [])

    def test_unknown_entity(self):
        response = self.client.post('/api/editor/invoice/sessions', json={})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.get_json()['ok'])

    def test_unknown_session(self):
        response = self.client.get('/api/editor/sessions/missing')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()['errors'][0]['code'], 'session_not_found')

    def test_close_session(self):
        session_id = self.open_session()['session_id']
        self.set_field(session_id, 'name', 'Python')
        response = self.client.delete(f'/api/editor/sessions/{session_id}')
        self.assertTrue(response.get_json()['draft_saved'])
        self.assertEqual(self.client.get(f'/api/editor/sessions/{session_id}').status_code, 404)

    def test_security_headers(self):
        response = self.client.get('/api/editor/entities')
        self.assertEqual(response.headers['X-Frame-Options'], 'DENY')


class TestEdits(EditorApiTestCase):

    def test_field_error_reported(self):
        session_id = self.open_session()['session_id']
        body = self.set_field(session_id, 'name', 'n' * 51).get_json()
        self.assertEqual(body['error'], 'Tag name must be 50 characters or less')
        self.assertEqual(body['state']['error_paths'], {'name': 'Tag name must be 50 characters or less'})

    def test_slug_generated(self):
        session_id = self.open_session()['session_id']
        body = self.set_field(session_id, 'name', 'Web Design').get_json()
        self.assertEqual(body['state']['scalars']['slug'], 'web-design')

    def test_missing_path(self):
        session_id = self.open_session()['session_id']
        response = self.client.patch(f'/api/editor/sessions/{session_id}/fields', json={'value': 'x'})
        self.assertEqual(response.status_code, 400)

    def test_bad_path(self):
        session_id = self.open_session()['session_id']
        response = self.set_field(session_id, 'hero_section.title', 'x')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['errors'][0]['code'], 'invalid_path')

    def test_items_and_points(self):
        session_id = self.open_session('service')['session_id']
        base = f'/api/editor/sessions/{session_id}/sections/what_we_offer_section'

        response = self.client.post(f'{base}/items', json={'template': {'title': 'Speed'}})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['index'], 0)

        response = self.client.post(f'{base}/points', json={'sub_index': 0})
        self.assertEqual(response.get_json()['index'], 1)

        response = self.client.delete(f'{base}/points/0?sub_index=0')
        item = response.get_json()['state']['sections']['what_we_offer_section']['sub_sections'][0]
        self.assertEqual(item['points'], [''])

        response = self.client.delete(f'{base}/items/0')
        self.assertEqual(response.get_json()['state']['sections']['what_we_offer_section']['sub_sections'], [])

    def test_remove_missing_item(self):
        session_id = self.open_session('service')['session_id']
        response = self.client.delete(f'/api/editor/sessions/{session_id}/sections/team_section/items/3')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['errors'][0]['code'], 'invalid_index')

    def test_validate(self):
        session_id = self.open_session()['session_id']
        response = self.client.post(f'/api/editor/sessions/{session_id}/validate')
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json()['first_invalid_tab'], 'basic')

        self.set_field(session_id, 'name', 'Python')
        response = self.client.post(f'/api/editor/sessions/{session_id}/validate')
        self.assertEqual(response.status_code, 200)


class TestAssets(EditorApiTestCase):

    def upload(self, session_id, **form):
        form.setdefault('file', (io.BytesIO(b'\x89PNG'), 'hero.png'))
        return self.client.post(f'/api/editor/sessions/{session_id}/assets', data=form,
                                content_type='multipart/form-data')

    def test_upload_with_alt_text(self):
        session_id = self.open_session('project')['session_id']
        response = self.upload(session_id, owner='hero_section', alt_text='<b>Harbour</b> at dawn')
        self.assertEqual(response.status_code, 201)
        entries = response.get_json()['state']['assets']['hero_section']
        self.assertEqual(entries[0]['filename'], 'hero.png')
        self.assertEqual(entries[0]['alt_text'], 'Harbour at dawn')

    def test_upload_to_sub_section(self):
        session_id = self.open_session('service')['session_id']
        self.client.post(f'/api/editor/sessions/{session_id}/sections/team_section/items', json={})
        response = self.upload(session_id, owner='team_section', index='0')
        self.assertIn('team_section.0', response.get_json()['state']['assets'])

    def test_upload_requires_file(self):
        session_id = self.open_session('project')['session_id']
        response = self.client.post(f'/api/editor/sessions/{session_id}/assets',
                                    data={'owner': 'hero_section'}, content_type='multipart/form-data')
        self.assertEqual(response.status_code, 400)

    def test_alt_text_and_removal(self):
        session_id = self.open_session('project')['session_id']
        self.upload(session_id, owner='image_file')

        response = self.client.put(f'/api/editor/sessions/{session_id}/assets/alt-text',
                                   json={'owner': 'image_file', 'alt_text': 'a' * 300})
        self.assertEqual(len(response.get_json()['alt_text']), 255)

        response = self.client.delete(f'/api/editor/sessions/{session_id}/assets',
                                      json={'owner': 'image_file'})
        self.assertEqual(response.get_json()['state']['assets'], {})


class TestDrafts(EditorApiTestCase):

    def test_save_and_restore(self):
        first = self.open_session('industry')['session_id']
        self.set_field(first, 'name', 'Retail')
        response = self.client.post(f'/api/editor/sessions/{first}/draft')
        self.assertTrue(response.get_json()['last_saved'])

        with self.app.app_context():
            self.assertEqual(DraftRecord.query.filter_by(key='industry_draft_data').count(), 1)

        body = self.open_session('industry')
        self.assertTrue(body['recovery']['exists'])
        second = body['session_id']
        response = self.client.post(f'/api/editor/sessions/{second}/draft/restore')
        self.assertEqual(response.get_json()['state']['scalars']['name'], 'Retail')

    def test_discard(self):
        session_id = self.open_session('industry')['session_id']
        self.set_field(session_id, 'name', 'Retail')
        self.client.post(f'/api/editor/sessions/{session_id}/draft')
        response = self.client.delete(f'/api/editor/sessions/{session_id}/draft')
        self.assertFalse(response.get_json()['recovery']['exists'])

        response = self.client.post(f'/api/editor/sessions/{session_id}/draft/restore')
        self.assertEqual(response.status_code, 404)

    def test_autosave_toggle(self):
        session_id = self.open_session('industry')['session_id']
        response = self.client.put(f'/api/editor/sessions/{session_id}/autosave', json={'enabled': False})
        self.assertFalse(response.get_json()['state']['autosave_enabled'])

    def test_autosave_toggle_accepts_strings(self):
        session_id = self.open_session('industry')['session_id']
        response = self.client.put(f'/api/editor/sessions/{session_id}/autosave', json={'enabled': 'false'})
        self.assertFalse(response.get_json()['state']['autosave_enabled'])
        response = self.client.put(f'/api/editor/sessions/{session_id}/autosave', json={'enabled': 'true'})
        self.assertTrue(response.get_json()['state']['autosave_enabled'])

    def test_no_drafts_when_editing(self):
        session_id = self.open_session('tag', record_id=5, initial={'name': 'Python', 'slug': 'python'})['session_id']
        response = self.client.post(f'/api/editor/sessions/{session_id}/draft')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['errors'][0]['code'], 'drafts_unavailable')


class TestSubmit(EditorApiTestCase):

    def test_invalid_form(self):
        session_id = self.open_session()['session_id']
        response = self.client.post(f'/api/editor/sessions/{session_id}/submit')
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json()['first_invalid_path'], 'name')
        self.assertEqual(self.submitter.calls, [])
        with self.app.app_context():
            self.assertEqual(Submission.query.count(), 0)

    def test_created(self):
        session_id = self.open_session()['session_id']
        self.set_field(session_id, 'name', 'Python')
        response = self.client.post(f'/api/editor/sessions/{session_id}/submit')

        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertEqual(body['message'], 'Tag created successfully')
        self.assertEqual(body['result'], {'id': 101})

        with self.app.app_context():
            submission = db.session.get(Submission, body['submission_id'])
            self.assertEqual(submission.status, 'sent')
            self.assertEqual(submission.mode, 'create')
            self.assertEqual(submission.get_part_keys(), ['name', 'slug'])
            trail = get_audit_trail_for_submission(submission.id)
            self.assertEqual(trail[0]['action'], 'submission_sent')
            valid, invalid, _ = verify_audit_integrity()
            self.assertEqual(invalid, 0)
            self.assertGreater(valid, 0)

    def test_sent_session_is_closed(self):
        session_id = self.open_session('industry')['session_id']
        self.set_field(session_id, 'name', 'Retail')
        self.set_field(session_id, 'description', 'd' * 60)
        self.set_field(session_id, 'meta_title', 'Retail')
        self.set_field(session_id, 'meta_description', 'm' * 60)
        response = self.client.post(f'/api/editor/sessions/{session_id}/submit')
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()['submission']['status'], 'sent')

        self.assertEqual(self.client.get(f'/api/editor/sessions/{session_id}').status_code, 404)
        with self.app.app_context():
            self.assertEqual(DraftRecord.query.count(), 0)
        self.assertFalse(self.open_session('industry')['recovery']['exists'])

    def test_rejected(self):
        self.submitter.error = SubmissionError('Validation failed', {'slug': ['Slug already exists']}, 400)
        session_id = self.open_session()['session_id']
        self.set_field(session_id, 'name', 'Python')
        response = self.client.post(f'/api/editor/sessions/{session_id}/submit')

        self.assertEqual(response.status_code, 502)
        body = response.get_json()
        self.assertEqual(body['field_errors'], {'slug': 'Slug already exists'})
        self.assertEqual(body['state']['general_message'], 'Validation failed')
        self.assertEqual(body['server_errors'], {'slug': 'Slug already exists'})
        self.assertEqual(body['submission']['status'], 'failed')
        self.assertEqual(self.client.get(f'/api/editor/sessions/{session_id}').status_code, 200)
        with self.app.app_context():
            submission = db.session.get(Submission, body['submission_id'])
            self.assertEqual(submission.status, 'failed')

    def test_updated(self):
        session_id = self.open_session('tag', record_id=5, initial={'name': 'Python', 'slug': 'python'})['session_id']
        self.set_field(session_id, 'name', 'Python 3')
        response = self.client.post(f'/api/editor/sessions/{session_id}/submit')

        self.assertEqual(response.status_code, 200)
        envelope, record_id = self.submitter.calls[0]
        self.assertEqual(record_id, 5)
        self.assertEqual(envelope.keys(), ['name'])


class TestSessionRegistry(unittest.TestCase):

    def setUp(self):
        self.now = 0.0
        self.sessions = SessionRegistry(idle_seconds=600, clock=lambda: self.now)

    def test_idle_sessions_pruned(self):
        stale = EditSession(TAG_SCHEMA)
        fresh = EditSession(TAG_SCHEMA)
        self.sessions.add(stale)
        self.now = 400
        self.sessions.add(fresh)
        self.now = 700

        pruned = self.sessions.prune()
        self.assertEqual([session.id for session, _ in pruned], [stale.id])
        self.assertNotIn(stale.id, self.sessions)
        self.assertIn(fresh.id, self.sessions)
        with self.assertRaises(SessionNotFound):
            self.sessions.get(stale.id)

    def test_access_keeps_session_alive(self):
        session = EditSession(TAG_SCHEMA)
        self.sessions.add(session)
        self.now = 500
        self.sessions.get(session.id)
        self.now = 1000
        self.assertEqual(self.sessions.prune(), [])
        self.assertEqual(len(self.sessions), 1)

    def test_no_limit_keeps_everything(self):
        sessions = SessionRegistry(clock=lambda: self.now)
        sessions.add(EditSession(TAG_SCHEMA))
        self.now = 10 ** 6
        self.assertEqual(sessions.prune(), [])


class TestIdleSessions(EditorApiTestCase):

    def test_idle_session_closed_with_draft(self):
        now = [0.0]
        sessions = self.app.extensions['cms_sessions']
        sessions.clock = lambda: now[0]
        session_id = self.open_session('industry')['session_id']
        self.set_field(session_id, 'name', 'Retail')

        now[0] = 601
        response = self.client.get(f'/api/editor/sessions/{session_id}')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(len(sessions), 0)
        with self.app.app_context():
            self.assertEqual(DraftRecord.query.filter_by(key='industry_draft_data').count(), 1)


if __name__ == '__main__':
    unittest.main()
