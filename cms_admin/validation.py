"""
Field validation for content editing sessions.

Validation Rules Documentation:
===============================

1. REQUIRED
   - Empty or whitespace-only text fails with "<Label> is required"
   - Checked first; a value that has not passed this check is never
     judged on its length

2. LENGTH (inclusive bounds, measured on the raw value)
   - min_length: "<Label> must be at least N characters long"
   - max_length: "<Label> must be N characters or less"
   - Optional fields left empty are valid and skip the length checks

3. PATTERN (slugs)
   - ^[a-z0-9-]+$
   - One fixed message whichever character is at fault

4. NUMBERS (counts, star ratings)
   - Must coerce to an integer
   - min_value / max_value, inclusive

Traversal Order:
================
validate_all visits fields in a fixed order so the first invalid path is
reproducible:
- top-level scalars, in declared order
- sections, in declared order; within a section:
  section scalars, section points, then each list in declared order,
  each sub-section by index, its fields in declared order, then its points
"""

import re
from typing import Any, Dict, Iterator, List, Optional, Pattern, Tuple
from dataclasses import dataclass, field

from cms_admin.path_store import PathStore, Path, PathLike, parse_path, format_path


SLUG_PATTERN = re.compile(r'^[a-z0-9-]+$')
SLUG_PATTERN_MESSAGE = 'Slug can only contain lowercase letters, numbers, and hyphens'

BASIC_TAB = 'basic'


@dataclass(frozen=True)
class FieldRule:
    """Constraints for one scalar field."""
    label: str
    required: bool = False
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[Pattern] = None
    pattern_message: str = SLUG_PATTERN_MESSAGE
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    numeric: bool = False


def slug_rule(label: str = 'Slug', required: bool = True,
              min_length: Optional[int] = None, max_length: int = 40) -> FieldRule:
    """Rule for URL slugs."""
    return FieldRule(label, required=required, min_length=min_length,
                     max_length=max_length, pattern=SLUG_PATTERN)


def number_rule(label: str, min_value: Optional[int] = None,
                max_value: Optional[int] = None, required: bool = False) -> FieldRule:
    return FieldRule(label, required=required, min_value=min_value,
                     max_value=max_value, numeric=True)


@dataclass
class ValidationError:
    """A failing field, addressed by its path."""
    field: str
    message: str
    code: str
    section: str = ''


@dataclass
class ValidationResult:
    """Container for a full validation pass."""
    errors: PathStore = field(default_factory=PathStore)
    issues: List[ValidationError] = field(default_factory=list)
    first_invalid_path: Optional[Path] = None

    @property
    def is_valid(self) -> bool:
        return self.first_invalid_path is None

    def add_error(self, path: PathLike, message: str, code: str = 'invalid', section: str = ''):
        """Record a failing field; the first one recorded wins focus."""
        segments = parse_path(path)
        self.errors.set(segments, message)
        self.issues.append(ValidationError(format_path(segments), message, code, section))
        if self.first_invalid_path is None:
            self.first_invalid_path = segments

    @property
    def first_invalid_tab(self) -> Optional[str]:
        if self.first_invalid_path is None:
            return None
        return tab_for_path(self.first_invalid_path)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            'ok': self.is_valid,
            'errors': [
                {'field': e.field, 'message': e.message, 'code': e.code, 'section': e.section}
                for e in self.issues
            ],
            'first_invalid_path': format_path(self.first_invalid_path) if self.first_invalid_path else None,
            'first_invalid_tab': self.first_invalid_tab,
        }


def tab_for_path(path: PathLike) -> str:
    """Tab that holds the control for a path: top-level fields live on the basic tab."""
    segments = parse_path(path)
    if len(segments) <= 1:
        return BASIC_TAB
    return str(segments[0])


def coerce_to_int(value: Any) -> Optional[int]:
    """Coerce various inputs to integer."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    return False


def check_value(value: Any, rule: FieldRule) -> Optional[Tuple[str, str]]:
    """
    Run a rule against a value.

    Returns:
        (code, message) for the first failing check, or None
    """
    if is_blank(value):
        if rule.required:
            return 'required', f'{rule.label} is required'
        return None

    if rule.numeric:
        number = coerce_to_int(value)
        if number is None:
            return 'type', f'{rule.label} must be a valid number'
        if rule.min_value is not None and number < rule.min_value:
            return 'min_value', f'{rule.label} must be at least {rule.min_value}'
        if rule.max_value is not None and number > rule.max_value:
            return 'max_value', f'{rule.label} must be {rule.max_value} or less'
        return None

    text = value if isinstance(value, str) else str(value)

    if rule.min_length is not None and len(text) < rule.min_length:
        return 'min_length', f'{rule.label} must be at least {rule.min_length} characters long'

    if rule.max_length is not None and len(text) > rule.max_length:
        return 'max_length', f'{rule.label} must be {rule.max_length} characters or less'

    if rule.pattern is not None and not rule.pattern.match(text):
        return 'format', rule.pattern_message

    return None


def validate_value(value: Any, rule: FieldRule) -> Optional[str]:
    """Validate a single value; returns the error message or None."""
    failure = check_value(value, rule)
    return failure[1] if failure else None


class ValidationEngine:
    """
    Runs field rules for one edit session and keeps its error store current.

    The same PathStore backs real-time checks (validate_field) and full
    passes (validate_all), so inline errors and the submit summary never
    disagree.
    """

    def __init__(self, schema, errors: Optional[PathStore] = None):
        self.schema = schema
        self.errors = errors if errors is not None else PathStore()

    def validate_field(self, path: PathLike, value: Any,
                       rule: Optional[FieldRule] = None) -> Optional[str]:
        """
        Validate one field and write the outcome to the error store.

        A passing field has its entry deleted rather than blanked.
        """
        segments = parse_path(path)
        if rule is None:
            rule = self.schema.rule_for(segments)
        message = validate_value(value, rule) if rule is not None else None
        if message:
            self.errors.set(segments, message)
        else:
            self.errors.delete(segments)
        return message

    def validate_all(self, tree, scalars: Dict[str, Any]) -> ValidationResult:
        """
        Validate every field of the session in traversal order.

        The session's error store is replaced by the outcome.
        """
        result = ValidationResult()
        for path, value, rule, section in iter_checks(self.schema, tree, scalars):
            failure = check_value(value, rule)
            if failure:
                code, message = failure
                result.add_error(path, message, code, section)

        self.errors.clear()
        for path, message in result.errors.items():
            self.errors.set(path, message)
        return result


def iter_checks(schema, tree, scalars: Dict[str, Any]) -> Iterator[Tuple[Path, Any, FieldRule, str]]:
    """Yield (path, value, rule, section) in traversal order."""
    for spec in schema.scalars:
        if spec.rule is not None:
            yield (spec.name,), scalars.get(spec.name), spec.rule, ''

    for section_spec in schema.sections:
        record = tree.get_section(section_spec.key)
        key = section_spec.key

        for spec in section_spec.fields:
            if spec.rule is not None:
                yield (key, spec.name), record.values.get(spec.name), spec.rule, key

        if section_spec.points is not None and section_spec.points.rule is not None:
            points_key = section_spec.points.key
            for index, point in enumerate(record.values.get(points_key) or []):
                yield (key, points_key, index), point, section_spec.points.rule, key

        for list_spec in section_spec.lists:
            for index, item in enumerate(record.lists.get(list_spec.key, [])):
                base = (key, list_spec.key, index)
                for spec in list_spec.fields:
                    if spec.rule is not None:
                        yield base + (spec.name,), item.values.get(spec.name), spec.rule, key
                if list_spec.points is not None and list_spec.points.rule is not None:
                    points_key = list_spec.points.key
                    for point_index, point in enumerate(item.values.get(points_key) or []):
                        yield base + (points_key, point_index), point, list_spec.points.rule, key
