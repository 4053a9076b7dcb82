"""
Submit collaborator for the CMS API and mapping of its error responses.

A submitter is any callable `submit(envelope, record_id=None)` that returns
the parsed response body or raises SubmissionError. ApiSubmitter is the HTTP
implementation: multipart POST to /api/v1/{endpoint}/ when creating, PATCH
to /api/v1/{endpoint}/{id}/ when editing.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from cms_admin.path_store import Path, format_path, parse_path
from cms_admin.schemas import EntitySchema

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 30
GENERIC_FAILURE_MESSAGE = 'Failed to save. Please try again.'


class SubmissionError(Exception):
    """
    The CMS API refused or could not receive a submission.

    Args:
        message: Human readable summary for the toast
        field_errors: Server field name -> message(s)
        status_code: HTTP status, when a response was received
    """

    def __init__(self, message: str, field_errors: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.field_errors = field_errors or {}
        self.status_code = status_code


@dataclass
class SubmissionOutcome:
    """What a submit attempt produced, for the rendering layer."""
    ok: bool
    sent: bool = False  # the envelope reached the submitter
    message: str = ''
    result: Any = None
    field_errors: Dict[str, str] = field(default_factory=dict)
    first_invalid_path: Optional[str] = None
    first_invalid_tab: Optional[str] = None
    server_errors: Dict[str, str] = field(default_factory=dict)  # as reported by the CMS
    submission_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': self.ok,
            'sent': self.sent,
            'message': self.message,
            'result': self.result,
            'field_errors': dict(self.field_errors),
            'first_invalid_path': self.first_invalid_path,
            'first_invalid_tab': self.first_invalid_tab,
            'server_errors': dict(self.server_errors),
            'submission_id': self.submission_id,
        }


def error_message_text(value: Any) -> str:
    """Server messages arrive as strings or lists of strings."""
    if isinstance(value, (list, tuple)):
        return ' '.join(str(item) for item in value if item)
    if isinstance(value, dict):
        return ' '.join(error_message_text(item) for item in value.values())
    return str(value) if value is not None else ''


def parse_error_body(body: Any, status_code: Optional[int] = None) -> SubmissionError:
    """Build a SubmissionError from a failure response body."""
    if not isinstance(body, dict):
        return SubmissionError(GENERIC_FAILURE_MESSAGE, status_code=status_code)

    field_errors = body.get('error_details')
    if not isinstance(field_errors, dict):
        field_errors = {}
    message = body.get('message') or body.get('error') or body.get('detail')
    if not message and field_errors:
        message = 'Please correct the highlighted fields.'
    return SubmissionError(error_message_text(message) or GENERIC_FAILURE_MESSAGE,
                           field_errors=field_errors, status_code=status_code)


class ApiSubmitter:
    """
    Sends envelopes to the CMS API with requests.

    Args:
        base_url: API root, e.g. https://cms.example.com
        endpoint: Collection name, e.g. 'projects'
        token: Bearer token
        timeout: Request timeout in seconds
        session: requests.Session to use (one is created if omitted)
    """

    def __init__(self, base_url: str, endpoint: str, token: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.endpoint = endpoint
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, record_id: Optional[Any] = None) -> str:
        url = f'{self.base_url}/api/v1/{self.endpoint}/'
        if record_id is not None:
            url += f'{record_id}/'
        return url

    def __call__(self, envelope, record_id: Optional[Any] = None) -> Any:
        method = 'PATCH' if record_id is not None else 'POST'
        url = self.url_for(record_id)
        data, files = envelope.to_requests()
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'

        try:
            response = self.session.request(method, url, data=data, files=files or None,
                                            headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f'{method} {url} failed: {e}')
            raise SubmissionError('Could not reach the CMS. Please try again.') from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.ok:
            logger.warning(f'{method} {url} returned {response.status_code}')
            raise parse_error_body(body, response.status_code)

        logger.info(f'{method} {url} returned {response.status_code}')
        return body


def build_submitter(config: Dict[str, Any], schema: EntitySchema) -> Callable:
    """
    Submitter for a schema from application config.

    CMS_SUBMITTER, when set, is a factory `(schema) -> submitter` that
    replaces the HTTP client.
    """
    factory = config.get('CMS_SUBMITTER')
    if factory is not None:
        return factory(schema)
    return ApiSubmitter(
        base_url=config.get('CMS_API_BASE_URL', ''),
        endpoint=schema.endpoint,
        token=config.get('CMS_API_TOKEN') or None,
        timeout=config.get('CMS_API_TIMEOUT', DEFAULT_TIMEOUT),
    )


def map_server_errors(schema: EntitySchema, field_errors: Dict[str, Any]) -> Tuple[Dict[Path, str], List[str]]:
    """
    Map server field names back to form paths.

    Lookup order: the schema's server_field_map, top-level field names and
    transport keys, {section}_{field} keys, then bare section keys (which
    land on the section's first field).

    Returns:
        (path -> message, messages that matched no field)
    """
    mapped: Dict[Path, str] = {}
    unmapped: List[str] = []

    for server_key, raw in field_errors.items():
        message = error_message_text(raw)
        if not message:
            continue
        path = resolve_server_field(schema, server_key)
        if path is None:
            unmapped.append(f'{server_key}: {message}')
        else:
            mapped[path] = message
    return mapped, unmapped


def resolve_server_field(schema: EntitySchema, server_key: str) -> Optional[Path]:
    if server_key in schema.server_field_map:
        return parse_path(schema.server_field_map[server_key])

    for spec in schema.scalars:
        if server_key in (spec.name, spec.key):
            return (spec.name,)

    for section in schema.sections:
        prefix = f'{section.key}_'
        if server_key.startswith(prefix) and section.field_spec(server_key[len(prefix):]) is not None:
            return (section.key, server_key[len(prefix):])

    for section in schema.sections:
        if server_key == section.key and section.fields:
            return (section.key, section.fields[0].name)

    return None


def describe_paths(paths: Dict[Path, str]) -> Dict[str, str]:
    return {format_path(path): message for path, message in paths.items()}
