"""
Serialization of an edit session into the multipart envelope the CMS API
accepts.

Encoding Rules:
===============

1. SCALARS
   - One string part per top-level field, under its transport key
   - Booleans become "true" / "false"
   - Rows marked omit_empty are left out when blank
   - Tag selections become a JSON array of ints under tag_ids

2. SECTIONS (per schema row)
   - json:          one JSON part named after the section
   - flat:          one part per field, named {section}_{field}
   - sections_data: every such section merged into one sections_data part
   - Point lists are stripped of blank points; rows with flatten_into join
     them with the row's delimiter into that field instead

3. ASSETS
   - Files under the slot's file key, in order: top-level uploads, then per
     section the section slot, then sub-sections by index, then position
   - Alt texts under the slot's alt key, aligned 1:1 with the files. A
     file with no alt text contributes "" so positions never drift
   - A JSON array when the key can carry several files, else a plain string

4. EDIT MODE
   - With a baseline, only changed scalars and changed sections are sent
   - Asset parts are always sent
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from werkzeug.datastructures import FileStorage, MultiDict

from cms_admin.assets import AssetLedger
from cms_admin.path_store import ShapeError
from cms_admin.schemas import (
    BOOLEAN, ENCODE_FLAT, ENCODE_JSON, ENCODE_SECTIONS_DATA, INTEGER,
    SECTIONS_DATA_KEY, TAGS, AssetSlotSpec, EntitySchema, PointsSpec, ScalarSpec,
)
from cms_admin.utils import calculate_sha256

logger = logging.getLogger(__name__)


class Envelope:
    """Flat keyed transport payload: form fields plus file parts."""

    def __init__(self):
        self.form: MultiDict = MultiDict()
        self.files: MultiDict = MultiDict()

    def add_field(self, key: str, value: str) -> None:
        self.form.add(key, value)

    def add_file(self, key: str, file: FileStorage) -> None:
        self.files.add(key, file)

    def get(self, key: str) -> Optional[str]:
        return self.form.get(key)

    def get_json(self, key: str) -> Any:
        value = self.form.get(key)
        return json.loads(value) if value is not None else None

    def get_files(self, key: str) -> List[FileStorage]:
        return self.files.getlist(key)

    def keys(self) -> List[str]:
        """Every part key, fields first, each once."""
        keys = list(self.form.keys())
        keys.extend(key for key in self.files.keys() if key not in keys)
        return keys

    @property
    def file_count(self) -> int:
        return len(list(self.files.items(multi=True)))

    def is_empty(self) -> bool:
        return not self.form and not self.files

    def to_requests(self) -> Tuple[List[Tuple[str, str]], List[Tuple[str, tuple]]]:
        """
        (data, files) arguments for requests.

        Files are given as (filename, stream, content_type) and their
        streams are rewound first.
        """
        data = list(self.form.items(multi=True))
        files = []
        for key, storage in self.files.items(multi=True):
            _rewind(storage)
            files.append((key, (storage.filename or key, storage.stream, storage.content_type)))
        return data, files

    def digest(self) -> str:
        """Hash of the field parts and file names, for the submission record."""
        parts = [[key, value] for key, value in self.form.items(multi=True)]
        parts.extend([key, storage.filename or ''] for key, storage in self.files.items(multi=True))
        return calculate_sha256(json.dumps(parts).encode('utf-8'))

    def __contains__(self, key) -> bool:
        return key in self.form or key in self.files

    def __repr__(self):
        return f'<Envelope fields={list(self.form.keys())} files={self.file_count}>'


def _rewind(storage: FileStorage) -> None:
    stream = getattr(storage, 'stream', None)
    if stream is not None and hasattr(stream, 'seek'):
        try:
            stream.seek(0)
        except (OSError, ValueError):
            logger.debug(f'Could not rewind upload {storage.filename}')


def encode_scalar(spec: ScalarSpec, value: Any) -> Optional[str]:
    """String form of a scalar, or None when it should be left out."""
    if spec.kind == BOOLEAN:
        return 'true' if value else 'false'
    if spec.kind == INTEGER:
        return str(value) if value not in (None, '') else None
    if spec.kind == TAGS:
        return json.dumps([int(tag_id) for tag_id in (value or [])])
    if value is None:
        value = ''
    text = value if isinstance(value, str) else str(value)
    if spec.omit_empty and not text.strip():
        return None
    return text


def flatten_points(points: Optional[List[str]], spec: PointsSpec) -> Any:
    """Drop blank points; join them when the row flattens the list."""
    kept = [point for point in (points or []) if isinstance(point, str) and point.strip()]
    if spec.flatten_into:
        return spec.delimiter.join(kept)
    return kept


class SubmissionEncoder:
    """Builds envelopes for one entity schema."""

    def __init__(self, schema: EntitySchema):
        self.schema = schema

    def encode(self, tree, scalars: Dict[str, Any], assets: AssetLedger,
               baseline: Optional[Dict[str, Any]] = None) -> Envelope:
        """
        Encode a form.

        Args:
            tree: SectionTree of the form
            scalars: Top-level field values
            assets: Pending uploads
            baseline: {'scalars': ..., 'sections': ...} as loaded for an
                edit; when given only differences are encoded

        Returns:
            The envelope
        """
        envelope = Envelope()
        self._encode_scalars(envelope, scalars, baseline)
        self._encode_sections(envelope, tree, assets, baseline)
        self._encode_assets(envelope, assets)
        return envelope

    def section_payload(self, tree, section_key: str, assets: Optional[AssetLedger] = None) -> Dict[str, Any]:
        """Section content as sent: points flattened, counts filled in."""
        spec = self.schema.section(section_key)
        data = tree.get_section(section_key).to_dict()

        if spec.points is not None:
            flattened = flatten_points(data.pop(spec.points.key, []), spec.points)
            data[spec.points.flatten_into or spec.points.key] = flattened

        for list_spec in spec.lists:
            items = data.get(list_spec.key, [])
            for index, item in enumerate(items):
                if list_spec.points is not None:
                    flattened = flatten_points(item.pop(list_spec.points.key, []), list_spec.points)
                    item[list_spec.points.flatten_into or list_spec.points.key] = flattened
                if list_spec.count_field and assets is not None:
                    item[list_spec.count_field] = assets.count(section_key, index)
        return data

    def _encode_scalars(self, envelope: Envelope, scalars: Dict[str, Any],
                        baseline: Optional[Dict[str, Any]]) -> None:
        previous = (baseline or {}).get('scalars') or {}
        for spec in self.schema.scalars:
            value = scalars.get(spec.name, spec.initial())
            if baseline is not None:
                if value == previous.get(spec.name, spec.initial()):
                    continue
            elif spec.kind == TAGS and not value:
                continue
            encoded = encode_scalar(spec, value)
            if encoded is not None:
                envelope.add_field(spec.key, encoded)

    def _encode_sections(self, envelope: Envelope, tree, assets: AssetLedger,
                         baseline: Optional[Dict[str, Any]]) -> None:
        previous = (baseline or {}).get('sections') or {}
        merged: Dict[str, Any] = {}

        for spec in self.schema.sections:
            record = tree.get_section(spec.key)
            if baseline is not None and record.to_dict() == previous.get(spec.key):
                continue
            if spec.drop_empty and record.is_empty():
                continue

            data = self.section_payload(tree, spec.key, assets)
            if spec.encoding == ENCODE_JSON:
                envelope.add_field(spec.key, json.dumps(data))
            elif spec.encoding == ENCODE_FLAT:
                for name, value in data.items():
                    if isinstance(value, (list, dict)):
                        value = json.dumps(value)
                    elif isinstance(value, bool):
                        value = 'true' if value else 'false'
                    envelope.add_field(f'{spec.key}_{name}', str(value))
            elif spec.encoding == ENCODE_SECTIONS_DATA:
                merged[spec.key] = data
            else:
                raise ShapeError(f'Unknown encoding {spec.encoding!r} for {spec.key}')

        if merged:
            envelope.add_field(SECTIONS_DATA_KEY, json.dumps(merged))

    def iter_slots(self, assets: AssetLedger) -> Iterator[Tuple[AssetSlotSpec, Optional[int], list]]:
        """(slot spec, sub-section index, entries) in emission order."""
        for upload in self.schema.uploads:
            yield upload.slot, None, assets.get_assets(upload.name, None)
        for section in self.schema.sections:
            if section.assets is not None:
                yield section.assets, None, assets.get_assets(section.key, None)
            list_spec = section.primary_list
            if list_spec is not None and list_spec.assets is not None:
                for index in assets.indices(section.key):
                    yield list_spec.assets, index, assets.get_assets(section.key, index)

    def _encode_assets(self, envelope: Envelope, assets: AssetLedger) -> None:
        alt_texts: Dict[str, List[str]] = {}
        as_list: Dict[str, bool] = {}
        alt_keys: Dict[str, str] = {}

        for slot, index, entries in self.iter_slots(assets):
            for entry in entries:
                if not entry.has_binary:
                    continue
                envelope.add_file(slot.file_key, entry.binary)
                alt_texts.setdefault(slot.file_key, []).append(entry.alt_text or '')
                alt_keys[slot.file_key] = slot.alt_key
                as_list[slot.file_key] = as_list.get(slot.file_key, False) or slot.multiple or index is not None

        for file_key, texts in alt_texts.items():
            if as_list[file_key] or len(texts) > 1:
                envelope.add_field(alt_keys[file_key], json.dumps(texts))
            else:
                envelope.add_field(alt_keys[file_key], texts[0])
