"""
Section/sub-section content model.

An entity's content is a mapping of section key -> SectionRecord. A section
holds scalar values, an optional section-level point list and zero or more
ordered lists of SubSectionRecord. Sub-sections are identified by their
position, so removing one shifts the positions of everything after it; the
tree keeps the asset ledger and the error store in step when that happens.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cms_admin.path_store import PathStore, ShapeError


DEFAULT_STARS = 5

# Default record for each sub-section variant
SUB_SECTION_TEMPLATES: Dict[str, Dict[str, Any]] = {
    'title_description': {'title': '', 'description': ''},
    'title_count': {'title': '', 'count': 0},
    'team_member': {'name': '', 'designation': '', 'experience': '', 'summary': ''},
    'feedback': {'name': '', 'designation': '', 'comment': '', 'stars': DEFAULT_STARS},
    'point_list': {'title': '', 'points': ['']},
    'approach': {'title': '', 'description': '', 'additional_info': ['']},
    'quote': {'title': '', 'description': '', 'quote': '', 'quoteusername': ''},
    'title_only': {'title': ''},
    'technology': {'title': '', 'image_count': 0, 'description': ''},
    'description_only': {'description': ''},
}

# Variants that carry a free-text point list, and the key it lives under
VARIANT_POINTS: Dict[str, str] = {
    'point_list': 'points',
    'approach': 'additional_info',
}


def new_sub_section_values(variant: str) -> Dict[str, Any]:
    if variant not in SUB_SECTION_TEMPLATES:
        raise ShapeError(f'Unknown sub-section variant: {variant}')
    return copy.deepcopy(SUB_SECTION_TEMPLATES[variant])


@dataclass
class SubSectionRecord:
    """One repeatable item inside a section list."""
    variant: str
    values: Dict[str, Any] = field(default_factory=dict)

    @property
    def points_key(self) -> Optional[str]:
        return VARIANT_POINTS.get(self.variant)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.values)


@dataclass
class SectionRecord:
    """A named block of content."""
    key: str
    values: Dict[str, Any] = field(default_factory=dict)
    lists: Dict[str, List[SubSectionRecord]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.values)
        for list_key, items in self.lists.items():
            data[list_key] = [item.to_dict() for item in items]
        return data

    def is_empty(self) -> bool:
        """True when nothing in the section has been filled in."""
        for value in self.values.values():
            if isinstance(value, list):
                if any(isinstance(v, str) and v.strip() for v in value):
                    return False
            elif isinstance(value, str) and value.strip():
                return False
        return not any(self.lists.values())


class SectionTree:
    """
    Mutable section tree for one entity schema.

    Args:
        schema: EntitySchema describing the sections
        assets: AssetLedger kept in step on sub-section removal
        errors: PathStore kept in step on sub-section and point removal
    """

    def __init__(self, schema, assets=None, errors: Optional[PathStore] = None):
        self.schema = schema
        self.assets = assets
        self.errors = errors
        self._sections: Dict[str, SectionRecord] = {}
        self.reset()

    def reset(self) -> None:
        """Rebuild every section from its defaults."""
        self._sections = {spec.key: self._blank_section(spec) for spec in self.schema.sections}

    def keys(self) -> List[str]:
        return list(self._sections)

    def get_section(self, key: str) -> SectionRecord:
        try:
            return self._sections[key]
        except KeyError:
            raise ShapeError(f'Unknown section: {key}')

    def update_scalar(self, section_key: str, field_name: str, value: Any) -> None:
        spec = self.schema.section(section_key)
        if spec.field_spec(field_name) is None:
            raise ShapeError(f'Unknown field {field_name!r} in section {section_key!r}')
        self.get_section(section_key).values[field_name] = value

    def sub_sections(self, section_key: str, list_key: Optional[str] = None) -> List[SubSectionRecord]:
        list_spec = self.schema.section(section_key).list_spec(list_key)
        return self.get_section(section_key).lists[list_spec.key]

    def add_sub_section(self, section_key: str, template: Optional[Dict[str, Any]] = None,
                        list_key: Optional[str] = None) -> int:
        """
        Append a sub-section built from the variant template.

        Args:
            template: Values overriding the variant defaults

        Returns:
            Index of the new sub-section
        """
        list_spec = self.schema.section(section_key).list_spec(list_key)
        items = self.get_section(section_key).lists[list_spec.key]
        if list_spec.max_items is not None and len(items) >= list_spec.max_items:
            raise ShapeError(f'{list_spec.label} list in {section_key!r} is limited to {list_spec.max_items} items')

        values = new_sub_section_values(list_spec.variant)
        if template:
            unknown = set(template) - set(values)
            if unknown:
                raise ShapeError(f'Unknown fields for {list_spec.variant}: {sorted(unknown)}')
            values.update(copy.deepcopy(template))
        items.append(SubSectionRecord(list_spec.variant, values))
        return len(items) - 1

    def remove_sub_section(self, section_key: str, index: int, list_key: Optional[str] = None) -> None:
        """
        Remove a sub-section and renumber everything addressed after it.

        Tree, asset ledger and error store change together: the index is
        checked before anything is touched.
        """
        section_spec = self.schema.section(section_key)
        list_spec = section_spec.list_spec(list_key)
        items = self.get_section(section_key).lists[list_spec.key]
        if not 0 <= index < len(items):
            raise IndexError(f'No sub-section {index} in {section_key}.{list_spec.key}')

        del items[index]
        if self.assets is not None and list_spec is section_spec.primary_list:
            self.assets.reindex_after_removal(section_key, index)
        if self.errors is not None:
            self.errors.remove_index((section_key, list_spec.key), index)

    def update_sub_section(self, section_key: str, index: int, field_name: str, value: Any,
                           list_key: Optional[str] = None) -> None:
        item = self._item(section_key, index, list_key)
        if field_name not in item.values or field_name == item.points_key:
            raise ShapeError(f'Unknown field {field_name!r} for {item.variant} sub-section')
        item.values[field_name] = value

    def add_point(self, section_key: str, sub_index: Optional[int] = None,
                  list_key: Optional[str] = None) -> int:
        """Append an empty point; sub_index None targets the section-level list."""
        points = self._points(section_key, sub_index, list_key)
        points.append('')
        return len(points) - 1

    def update_point(self, section_key: str, sub_index: Optional[int], point_index: int, value: str,
                     list_key: Optional[str] = None) -> None:
        points = self._points(section_key, sub_index, list_key)
        if not 0 <= point_index < len(points):
            raise IndexError(f'No point {point_index} in {section_key}')
        points[point_index] = value

    def remove_point(self, section_key: str, sub_index: Optional[int], point_index: int,
                     list_key: Optional[str] = None) -> None:
        points = self._points(section_key, sub_index, list_key)
        if not 0 <= point_index < len(points):
            raise IndexError(f'No point {point_index} in {section_key}')

        del points[point_index]
        if self.errors is not None:
            self.errors.remove_index(self.points_path(section_key, sub_index, list_key), point_index)

    def points_path(self, section_key: str, sub_index: Optional[int] = None,
                    list_key: Optional[str] = None) -> tuple:
        """Path prefix of a point list."""
        section_spec = self.schema.section(section_key)
        if sub_index is None:
            if section_spec.points is None:
                raise ShapeError(f'Section {section_key!r} has no point list')
            return (section_key, section_spec.points.key)
        list_spec = section_spec.list_spec(list_key)
        if list_spec.points is None:
            raise ShapeError(f'{list_spec.variant} sub-sections have no point list')
        return (section_key, list_spec.key, sub_index, list_spec.points.key)

    def to_dict(self) -> Dict[str, Any]:
        """Section key -> plain data, in declared order."""
        return {key: record.to_dict() for key, record in self._sections.items()}

    def load(self, data: Optional[Dict[str, Any]]) -> None:
        """
        Replace the tree content from plain data.

        Missing sections, fields and lists fall back to defaults; keys the
        schema does not know are ignored.
        """
        self.reset()
        if not isinstance(data, dict):
            return
        for spec in self.schema.sections:
            raw = data.get(spec.key)
            if not isinstance(raw, dict):
                continue
            record = self._sections[spec.key]
            for key in record.values:
                if key in raw:
                    record.values[key] = copy.deepcopy(raw[key])
            if spec.points is not None and spec.points.key not in raw and spec.points.flatten_into:
                # Records from the CMS carry the points flattened into one field
                record.values[spec.points.key] = spec.points.split(raw.get(spec.points.flatten_into))
            for list_spec in spec.lists:
                raw_items = raw.get(list_spec.key)
                if not isinstance(raw_items, list):
                    continue
                items = []
                for raw_item in raw_items:
                    values = new_sub_section_values(list_spec.variant)
                    if isinstance(raw_item, dict):
                        for key in values:
                            if key in raw_item:
                                values[key] = copy.deepcopy(raw_item[key])
                        points = list_spec.points
                        if points is not None and points.flatten_into and points.key not in raw_item:
                            values[points.key] = points.split(raw_item.get(points.flatten_into)) or ['']
                    items.append(SubSectionRecord(list_spec.variant, values))
                record.lists[list_spec.key] = items

    def copy(self) -> 'SectionTree':
        """Detached copy of the content (no ledger or error store)."""
        clone = SectionTree(self.schema)
        clone.load(self.to_dict())
        return clone

    def _blank_section(self, spec) -> SectionRecord:
        values = {field_spec.name: field_spec.initial() for field_spec in spec.fields}
        if spec.points is not None:
            values[spec.points.key] = []
        lists = {list_spec.key: [] for list_spec in spec.lists}
        return SectionRecord(spec.key, values, lists)

    def _item(self, section_key: str, index: int, list_key: Optional[str]) -> SubSectionRecord:
        items = self.sub_sections(section_key, list_key)
        if not 0 <= index < len(items):
            raise IndexError(f'No sub-section {index} in {section_key}')
        return items[index]

    def _points(self, section_key: str, sub_index: Optional[int], list_key: Optional[str]) -> List[str]:
        if sub_index is None:
            path = self.points_path(section_key)
            return self.get_section(section_key).values[path[1]]
        item = self._item(section_key, sub_index, list_key)
        if item.points_key is None:
            raise ShapeError(f'{item.variant} sub-sections have no point list')
        return item.values[item.points_key]
