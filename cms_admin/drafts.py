"""
Draft persistence and recovery.

A draft is a snapshot of a form's scalars and section tree (never its
pending uploads) stored as JSON under a fixed key per entity type. Each
save replaces the previous snapshot. Drafts do not expire; they are removed
when the form is submitted successfully or the editor discards them.

Storage failures never reach the editor: they are logged and the operation
becomes a no-op.
"""

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from cms_admin.utils import format_timestamp

logger = logging.getLogger(__name__)


DEFAULT_AUTOSAVE_SECONDS = 30
DEFAULT_DEBOUNCE_SECONDS = 2


class PersistenceError(Exception):
    """The key-value backend could not complete an operation."""


class KeyValueStore:
    """String key -> string value storage used for drafts."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """Process-local store; drafts last as long as the process."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class DatabaseStore(KeyValueStore):
    """Drafts stored as DraftRecord rows."""

    def get(self, key: str) -> Optional[str]:
        from cms_admin.models import DraftRecord
        try:
            record = DraftRecord.query.filter_by(key=key).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f'Could not read draft {key}: {e}') from e
        return record.value_json if record else None

    def set(self, key: str, value: str) -> None:
        from cms_admin import db
        from cms_admin.models import DraftRecord
        try:
            record = DraftRecord.query.filter_by(key=key).first()
            if record is None:
                record = DraftRecord(key=key, value_json=value)
                db.session.add(record)
            else:
                record.value_json = value
                record.updated_at = datetime.utcnow()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Could not write draft {key}: {e}') from e

    def delete(self, key: str) -> None:
        from cms_admin import db
        from cms_admin.models import DraftRecord
        try:
            DraftRecord.query.filter_by(key=key).delete()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f'Could not delete draft {key}: {e}') from e


@dataclass
class DraftSnapshot:
    """Scalars and sections of a form at one moment. Assets are never included."""
    scalars: Dict[str, Any] = field(default_factory=dict)
    sections: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scalars': copy.deepcopy(self.scalars),
            'sections': copy.deepcopy(self.sections),
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DraftSnapshot':
        scalars = data.get('scalars')
        sections = data.get('sections')
        if not isinstance(scalars, dict) or not isinstance(sections, dict):
            raise ValueError('Draft is missing scalars or sections')
        return cls(scalars=scalars, sections=sections, timestamp=str(data.get('timestamp') or ''))


@dataclass
class RecoverySignal:
    """Tells the rendering layer a draft is waiting to be restored."""
    exists: bool = False
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'exists': self.exists, 'timestamp': self.timestamp}


class DraftStore:
    """
    Saves and loads the draft of one entity type.

    Args:
        store: Key-value backend
        key: Draft key for the entity type (e.g. 'project_draft_data')
    """

    def __init__(self, store: KeyValueStore, key: str):
        self.store = store
        self.key = key
        self.last_saved: Optional[str] = None

    def save(self, snapshot: DraftSnapshot) -> bool:
        """Replace the stored draft. Returns False if the backend failed."""
        if not snapshot.timestamp:
            snapshot.timestamp = format_timestamp()
        payload = json.dumps(snapshot.to_dict(), sort_keys=True)
        try:
            self.store.set(self.key, payload)
        except PersistenceError as e:
            logger.error(f'Draft save failed for {self.key}: {e}')
            return False
        self.last_saved = snapshot.timestamp
        logger.debug(f'Draft saved for {self.key} at {snapshot.timestamp}')
        return True

    def load(self) -> Optional[DraftSnapshot]:
        """Stored draft, or None when there is none or it cannot be read."""
        try:
            raw = self.store.get(self.key)
        except PersistenceError as e:
            logger.error(f'Draft load failed for {self.key}: {e}')
            return None
        if raw is None:
            return None
        try:
            return DraftSnapshot.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f'Ignoring unreadable draft {self.key}: {e}')
            return None

    def clear(self) -> None:
        try:
            self.store.delete(self.key)
        except PersistenceError as e:
            logger.error(f'Draft clear failed for {self.key}: {e}')
            return
        self.last_saved = None

    def exists(self) -> bool:
        return self.load() is not None

    def peek(self) -> RecoverySignal:
        snapshot = self.load()
        if snapshot is None:
            return RecoverySignal()
        return RecoverySignal(exists=True, timestamp=snapshot.timestamp or None)


class DraftAutosave:
    """
    Autosave scheduling for one open form.

    Nothing runs in the background: the owner calls poll() and the
    scheduler decides from the injected clock whether a save is due.

    - interval: while running, a save every `interval` seconds
    - debounce: a save `debounce` seconds after the last edit
    - exit: on_exit() saves synchronously before the form closes

    Interval, debounce and exit saves only happen while autosave is enabled
    and the form has content. save_now() is an explicit request and always
    saves.

    Args:
        drafts: DraftStore to write to
        snapshot: Callable returning the current DraftSnapshot
        has_content: Callable returning True when the form is worth saving
        clock: Monotonic clock in seconds
    """

    def __init__(self, drafts: DraftStore, snapshot: Callable[[], DraftSnapshot],
                 has_content: Callable[[], bool],
                 interval: float = DEFAULT_AUTOSAVE_SECONDS,
                 debounce: float = DEFAULT_DEBOUNCE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.drafts = drafts
        self.snapshot = snapshot
        self.has_content = has_content
        self.interval = interval
        self.debounce = debounce
        self.clock = clock
        self.enabled = True
        self.running = False
        self._next_interval: Optional[float] = None
        self._debounce_due: Optional[float] = None

    def start(self) -> None:
        self.running = True
        self._next_interval = self.clock() + self.interval
        self._debounce_due = None

    def stop(self) -> None:
        self.running = False
        self._next_interval = None
        self._debounce_due = None

    def notify_edit(self) -> None:
        """Restart the debounce window after an edit."""
        if self.running and self.enabled:
            self._debounce_due = self.clock() + self.debounce

    def poll(self) -> bool:
        """Run whatever saves are due. Returns True if a save happened."""
        if not self.running:
            return False

        now = self.clock()
        due = False
        if self._debounce_due is not None and now >= self._debounce_due:
            self._debounce_due = None
            due = True
        if self._next_interval is not None and now >= self._next_interval:
            self._next_interval = now + self.interval
            due = True

        if due and self._should_save():
            return self.drafts.save(self.snapshot())
        return False

    def on_exit(self) -> bool:
        """Save before the form closes; a stopped scheduler has nothing to keep."""
        saved = False
        if self.running and self._should_save():
            saved = self.drafts.save(self.snapshot())
        self.stop()
        return saved

    def save_now(self) -> bool:
        return self.drafts.save(self.snapshot())

    def _should_save(self) -> bool:
        return self.enabled and self.has_content()
