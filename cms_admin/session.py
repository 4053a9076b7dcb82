"""
Edit sessions: one open entity form.

A session owns exactly one section tree, one error store and one asset
ledger, and wires them to validation, draft autosave and submission. The
rendering layer drives it through set_value / structural edits and reads
back state().
"""

import copy
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from werkzeug.datastructures import FileStorage

from cms_admin.assets import AssetEntry, AssetLedger
from cms_admin.drafts import (
    DEFAULT_AUTOSAVE_SECONDS, DEFAULT_DEBOUNCE_SECONDS,
    DraftAutosave, DraftSnapshot, DraftStore, RecoverySignal,
)
from cms_admin.encoder import Envelope, SubmissionEncoder
from cms_admin.path_store import PathLike, PathStore, ShapeError, format_path, parse_path
from cms_admin.schemas import BOOLEAN, TAGS, TEXT, EntitySchema
from cms_admin.section_tree import SectionTree
from cms_admin.submission import SubmissionError, SubmissionOutcome, describe_paths, map_server_errors
from cms_admin.utils import coerce_tag_ids, slugify
from cms_admin.validation import ValidationEngine, ValidationResult, is_blank, tab_for_path

logger = logging.getLogger(__name__)


TRIGGER_CHANGE = 'change'
TRIGGER_BLUR = 'blur'
TRIGGER_NONE = 'none'
VALIDATING_TRIGGERS = (TRIGGER_CHANGE, TRIGGER_BLUR)

SLUG_FIELD = 'slug'
FIX_ERRORS_MESSAGE = 'Please fix the errors before submitting.'


def coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


class EditSession:
    """
    State of one entity form.

    Args:
        schema: EntitySchema of the form
        submitter: Callable `(envelope, record_id=None)` sending the form
        drafts: DraftStore for autosave; ignored when editing an existing record
        record_id: CMS id of the record being edited, None when creating
        initial: Existing record values (scalar names and section keys)
        clock: Monotonic clock for the autosave scheduler
    """

    def __init__(self, schema: EntitySchema, submitter: Optional[Callable] = None,
                 drafts: Optional[DraftStore] = None, record_id: Optional[Any] = None,
                 initial: Optional[Dict[str, Any]] = None,
                 autosave_interval: float = DEFAULT_AUTOSAVE_SECONDS,
                 debounce: float = DEFAULT_DEBOUNCE_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.schema = schema
        self.submitter = submitter
        self.record_id = record_id

        self.errors = PathStore()
        self.assets = AssetLedger()
        self.tree = SectionTree(schema, assets=self.assets, errors=self.errors)
        self.validator = ValidationEngine(schema, self.errors)
        self.encoder = SubmissionEncoder(schema)
        self.scalars: Dict[str, Any] = {spec.name: spec.initial() for spec in schema.scalars}

        self.dirty = False
        self.is_submitting = False
        self.slug_edited = False
        self.general_message = ''
        self.last_envelope: Optional[Envelope] = None
        self.baseline: Optional[Dict[str, Any]] = None

        # Existing records are edited without drafts
        self.drafts = drafts if record_id is None else None
        self.autosave: Optional[DraftAutosave] = None
        if self.drafts is not None:
            self.autosave = DraftAutosave(self.drafts, self.snapshot, self.has_content,
                                          interval=autosave_interval, debounce=debounce, clock=clock)

        if initial:
            self.load_record(initial)

    @property
    def is_edit(self) -> bool:
        return self.record_id is not None

    # Lifecycle

    def open(self) -> RecoverySignal:
        """Start autosave and report whether a draft is waiting."""
        if self.autosave is not None:
            self.autosave.start()
        return self.recovery_signal()

    def close(self) -> bool:
        """Stop autosave, saving first when there is something to keep."""
        if self.autosave is None:
            return False
        return self.autosave.on_exit()

    def poll(self) -> bool:
        if self.autosave is None:
            return False
        return self.autosave.poll()

    def recovery_signal(self) -> RecoverySignal:
        if self.drafts is None:
            return RecoverySignal()
        return self.drafts.peek()

    def load_record(self, record: Dict[str, Any]) -> None:
        """Load an existing record; it becomes the baseline for change detection."""
        for spec in self.schema.scalars:
            if spec.name in record:
                self.scalars[spec.name] = self._coerce(spec, record[spec.name])
        self.tree.load({key: record[key] for key in self.tree.keys() if key in record})
        self.errors.clear()
        self.assets.clear()
        self.slug_edited = not is_blank(self.scalars.get(SLUG_FIELD))
        self.baseline = {'scalars': copy.deepcopy(self.scalars), 'sections': self.tree.to_dict()}
        self.dirty = False

    # Editing

    def set_value(self, path: PathLike, value: Any, trigger: str = TRIGGER_CHANGE) -> Optional[str]:
        """
        Set the field at a path and validate it.

        Paths:
            name                                    top-level field
            section.field                           section field
            section.points_key.i                    section-level point
            section.list_key.i.field                sub-section field
            section.list_key.i.points_key.j         sub-section point

        Returns:
            The field's error message after the change, or None
        """
        segments = parse_path(path)

        if len(segments) == 1:
            name = str(segments[0])
            spec = self.schema.scalar_spec(name)
            if spec is None:
                raise ShapeError(f'{self.schema.name} has no field {name!r}')
            try:
                value = self._coerce(spec, value)
            except (TypeError, ValueError) as e:
                raise ShapeError(f'Invalid value for {name!r}: {e}') from e
            self.scalars[name] = value
            if name == SLUG_FIELD:
                self.slug_edited = not is_blank(value)
            elif name == self.schema.slug_source and not self.slug_edited:
                self._regenerate_slug(trigger)
        else:
            section_key = str(segments[0])
            if len(segments) == 2:
                self.tree.update_scalar(section_key, str(segments[1]), value)
            elif len(segments) == 3 and isinstance(segments[2], int):
                if self.tree.points_path(section_key) != segments[:2]:
                    raise ShapeError(f'Path does not address a point: {format_path(segments)!r}')
                self.tree.update_point(section_key, None, segments[2], value)
            elif len(segments) == 4 and isinstance(segments[2], int):
                self.tree.update_sub_section(section_key, segments[2], str(segments[3]), value,
                                             list_key=str(segments[1]))
            elif len(segments) == 5 and isinstance(segments[2], int) and isinstance(segments[4], int):
                list_key = str(segments[1])
                if self.tree.points_path(section_key, segments[2], list_key) != segments[:4]:
                    raise ShapeError(f'Path does not address a point: {format_path(segments)!r}')
                self.tree.update_point(section_key, segments[2], segments[4], value, list_key=list_key)
            else:
                raise ShapeError(f'Path does not address a field: {format_path(segments)!r}')

        self._touch()
        if trigger in VALIDATING_TRIGGERS:
            return self.validator.validate_field(segments, self.get_value(segments))
        return self.errors.get(segments)

    def get_value(self, path: PathLike) -> Any:
        segments = parse_path(path)
        if len(segments) == 1:
            return self.scalars.get(str(segments[0]))
        node: Any = self.tree.to_dict()
        for segment in segments:
            if isinstance(node, dict) and segment in node:
                node = node[segment]
            elif isinstance(node, list) and isinstance(segment, int) and segment < len(node):
                node = node[segment]
            else:
                return None
        return node

    def add_sub_section(self, section_key: str, template: Optional[Dict[str, Any]] = None,
                        list_key: Optional[str] = None) -> int:
        index = self.tree.add_sub_section(section_key, template, list_key)
        self._touch()
        return index

    def remove_sub_section(self, section_key: str, index: int, list_key: Optional[str] = None) -> None:
        self.tree.remove_sub_section(section_key, index, list_key)
        self._touch()

    def add_point(self, section_key: str, sub_index: Optional[int] = None,
                  list_key: Optional[str] = None) -> int:
        index = self.tree.add_point(section_key, sub_index, list_key)
        self._touch()
        return index

    def remove_point(self, section_key: str, sub_index: Optional[int], point_index: int,
                     list_key: Optional[str] = None) -> None:
        self.tree.remove_point(section_key, sub_index, point_index, list_key)
        self._touch()

    # Assets

    def set_asset(self, owner: str, index: Optional[int], file: FileStorage,
                  preview: Any = None, position: int = 0) -> AssetEntry:
        """Put a file in a slot; owner is a section key or a top-level upload name."""
        slot = self._check_slot(owner, index)
        if not slot.multiple and position != 0:
            raise ShapeError(f'{slot.file_key} holds a single image')
        entry = self.assets.set_asset(owner, index, file, preview, position)
        self._touch()
        return entry

    def add_asset(self, owner: str, index: Optional[int], file: FileStorage, preview: Any = None) -> int:
        """Append to a multi-image slot; a single-image slot is replaced instead."""
        slot = self._check_slot(owner, index)
        if not slot.multiple:
            self.assets.set_asset(owner, index, file, preview, 0)
            position = 0
        else:
            position = self.assets.add_asset(owner, index, file, preview)
        self._touch()
        return position

    def remove_asset(self, owner: str, index: Optional[int], position: int = 0) -> None:
        self._check_slot(owner, index)
        self.assets.remove_asset(owner, index, position)
        self._touch()

    def set_alt_text(self, owner: str, index: Optional[int], text: str, position: int = 0) -> str:
        slot = self._check_slot(owner, index)
        if not slot.multiple and position != 0:
            raise ShapeError(f'{slot.file_key} holds a single image')
        stored = self.assets.set_alt_text(owner, index, text, position)
        self._touch()
        return stored

    # Validation and submission

    def validate(self) -> ValidationResult:
        return self.validator.validate_all(self.tree, self.scalars)

    def submit(self) -> SubmissionOutcome:
        """
        Validate and send the form.

        Client validation failures never reach the submitter. Server
        rejections are mapped back onto the error store; whatever cannot be
        placed on a field is reported in the outcome message.
        """
        if self.submitter is None:
            raise ShapeError('Session has no submitter')

        self.general_message = ''
        result = self.validate()
        if not result.is_valid:
            return SubmissionOutcome(
                ok=False,
                message=FIX_ERRORS_MESSAGE,
                field_errors=self.errors.flatten(),
                first_invalid_path=format_path(result.first_invalid_path),
                first_invalid_tab=result.first_invalid_tab,
            )

        envelope = self.encoder.encode(self.tree, self.scalars, self.assets, self.baseline)
        self.last_envelope = envelope
        self.is_submitting = True
        try:
            response = self.submitter(envelope, record_id=self.record_id)
        except SubmissionError as e:
            logger.warning(f'{self.schema.name} submission rejected: {e.message}')
            return self._rejected(e)
        finally:
            self.is_submitting = False

        # The sent form must not come back as a draft
        if self.autosave is not None:
            self.autosave.stop()
        if self.drafts is not None:
            self.drafts.clear()
        self.assets.clear()
        self.dirty = False
        if self.is_edit:
            self.baseline = {'scalars': copy.deepcopy(self.scalars), 'sections': self.tree.to_dict()}
        verb = 'updated' if self.is_edit else 'created'
        return SubmissionOutcome(ok=True, sent=True, message=f'{self.schema.label} {verb} successfully', result=response)

    def apply_server_errors(self, field_errors: Dict[str, Any]):
        """Write server field errors into the error store; returns (mapped, unmapped)."""
        mapped, unmapped = map_server_errors(self.schema, field_errors)
        for path, message in mapped.items():
            self.errors.delete(path)
            self.errors.set(path, message)
        return mapped, unmapped

    # Drafts

    def has_content(self) -> bool:
        """True once any top-level text field has been filled in."""
        return any(not is_blank(self.scalars.get(spec.name)) for spec in self.schema.text_scalars())

    def snapshot(self) -> DraftSnapshot:
        return DraftSnapshot(scalars=copy.deepcopy(self.scalars), sections=self.tree.to_dict())

    def save_draft(self) -> bool:
        if self.autosave is None:
            return False
        return self.autosave.save_now()

    def restore_draft(self) -> bool:
        """
        Apply the stored draft. Pending uploads are not part of a draft and
        are cleared.
        """
        if self.drafts is None:
            return False
        snapshot = self.drafts.load()
        if snapshot is None:
            return False

        for spec in self.schema.scalars:
            value = snapshot.scalars.get(spec.name, spec.initial())
            try:
                self.scalars[spec.name] = self._coerce(spec, value)
            except (TypeError, ValueError):
                self.scalars[spec.name] = spec.initial()
        self.tree.load(snapshot.sections)
        self.assets.clear()
        self.errors.clear()
        self.slug_edited = not is_blank(self.scalars.get(SLUG_FIELD))
        self.dirty = True
        return True

    def discard_draft(self) -> None:
        if self.drafts is not None:
            self.drafts.clear()

    def set_autosave(self, enabled: bool) -> None:
        if self.autosave is not None:
            self.autosave.enabled = bool(enabled)

    @property
    def last_saved(self) -> Optional[str]:
        return self.drafts.last_saved if self.drafts is not None else None

    def state(self) -> Dict[str, Any]:
        """Everything the rendering layer needs to draw the form."""
        first_path = self.errors.paths()[0] if self.errors else None
        return {
            'id': self.id,
            'entity': self.schema.name,
            'mode': 'edit' if self.is_edit else 'create',
            'record_id': self.record_id,
            'scalars': copy.deepcopy(self.scalars),
            'sections': self.tree.to_dict(),
            'errors': self.errors.to_dict(),
            'error_paths': self.errors.flatten(),
            'first_error_tab': tab_for_path(first_path) if first_path else None,
            'assets': self.assets.to_dict(),
            'dirty': self.dirty,
            'last_saved': self.last_saved,
            'is_submitting': self.is_submitting,
            'autosave_enabled': self.autosave.enabled if self.autosave is not None else False,
            'general_message': self.general_message,
        }

    # Internals

    def _touch(self) -> None:
        self.dirty = True
        if self.autosave is not None:
            self.autosave.notify_edit()

    def _coerce(self, spec, value: Any) -> Any:
        if spec.kind == BOOLEAN:
            return coerce_bool(value)
        if spec.kind == TAGS:
            return coerce_tag_ids(value)
        if spec.kind == TEXT and value is None:
            return ''
        return value

    def _regenerate_slug(self, trigger: str) -> None:
        if self.schema.scalar_spec(SLUG_FIELD) is None:
            return
        self.scalars[SLUG_FIELD] = slugify(self.scalars.get(self.schema.slug_source) or '')
        if trigger in VALIDATING_TRIGGERS and SLUG_FIELD in self.errors:
            self.validator.validate_field((SLUG_FIELD,), self.scalars[SLUG_FIELD])

    def _check_slot(self, owner: str, index: Optional[int]):
        slot = self.schema.slot_spec(owner, index)
        if index is not None and not 0 <= index < len(self.tree.sub_sections(owner)):
            raise IndexError(f'No sub-section {index} in {owner}')
        return slot

    def _rejected(self, error: SubmissionError) -> SubmissionOutcome:
        mapped, unmapped = self.apply_server_errors(error.field_errors)
        message = error.message
        if unmapped:
            message = f'{message} ' + '; '.join(unmapped)
        self.general_message = message

        first_path = next(iter(mapped), None)
        return SubmissionOutcome(
            ok=False,
            sent=True,
            message=message,
            field_errors=self.errors.flatten(),
            first_invalid_path=format_path(first_path) if first_path else None,
            first_invalid_tab=tab_for_path(first_path) if first_path else None,
            server_errors=describe_paths(mapped),
        )
