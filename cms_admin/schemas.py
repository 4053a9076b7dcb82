"""
Entity rule tables.

Each content type (blog, industry, project, service, tag) is described here
declaratively: its top-level fields, its sections in display order, the
sub-section lists and point lists inside them, their validation rules, and
how each part is encoded for the CMS API. Adding an entity means adding a
table, not new editing logic.

Limits follow the admin forms the editors already know.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from cms_admin.path_store import PathLike, ShapeError, parse_path
from cms_admin.section_tree import SUB_SECTION_TEMPLATES, VARIANT_POINTS
from cms_admin.validation import FieldRule, number_rule, slug_rule


# Section encodings
ENCODE_JSON = 'json'                    # one JSON part named after the section
ENCODE_FLAT = 'flat'                    # one part per field: {section}_{field}
ENCODE_SECTIONS_DATA = 'sections_data'  # merged into a single sections_data part

SECTIONS_DATA_KEY = 'sections_data'

# Scalar kinds
TEXT = 'text'
BOOLEAN = 'bool'
INTEGER = 'int'
TAGS = 'tags'


@dataclass(frozen=True)
class ScalarSpec:
    """A scalar field and how it is checked and sent."""
    name: str
    rule: Optional[FieldRule] = None
    kind: str = TEXT
    default: Any = None
    transport_key: Optional[str] = None
    omit_empty: bool = False

    @property
    def key(self) -> str:
        return self.transport_key or self.name

    def initial(self) -> Any:
        if self.default is not None:
            return self.default
        if self.kind == BOOLEAN:
            return False
        if self.kind == INTEGER:
            return 0
        if self.kind == TAGS:
            return []
        return ''


@dataclass(frozen=True)
class PointsSpec:
    """
    A free-text point list.

    When flatten_into is set the encoder joins the non-blank points with
    `delimiter`, stores the result in that field and drops the list.
    """
    key: str = 'points'
    rule: Optional[FieldRule] = None
    flatten_into: Optional[str] = None
    delimiter: str = ', '

    def split(self, text: Any) -> List[str]:
        """Points from a flattened value, as stored by the CMS."""
        if not isinstance(text, str):
            return []
        separator = self.delimiter.strip() or self.delimiter
        return [point.strip() for point in text.split(separator) if point.strip()]


@dataclass(frozen=True)
class AssetSlotSpec:
    """Where a slot's files and alt text go in the envelope."""
    file_key: str
    alt_key: str
    multiple: bool = False


@dataclass(frozen=True)
class ListSpec:
    """A repeatable sub-section list inside a section."""
    key: str
    variant: str
    fields: Tuple[ScalarSpec, ...] = ()
    points: Optional[PointsSpec] = None
    assets: Optional[AssetSlotSpec] = None
    count_field: Optional[str] = None
    max_items: Optional[int] = None
    label: str = 'Sub-section'


@dataclass(frozen=True)
class SectionSpec:
    key: str
    label: str
    fields: Tuple[ScalarSpec, ...] = ()
    lists: Tuple[ListSpec, ...] = ()
    points: Optional[PointsSpec] = None
    assets: Optional[AssetSlotSpec] = None
    encoding: str = ENCODE_SECTIONS_DATA
    drop_empty: bool = False

    @property
    def primary_list(self) -> Optional[ListSpec]:
        return self.lists[0] if self.lists else None

    def list_spec(self, list_key: Optional[str] = None) -> ListSpec:
        if list_key is None:
            if self.primary_list is None:
                raise ShapeError(f'Section {self.key!r} has no sub-sections')
            return self.primary_list
        for spec in self.lists:
            if spec.key == list_key:
                return spec
        raise ShapeError(f'Section {self.key!r} has no list {list_key!r}')

    def field_spec(self, name: str) -> Optional[ScalarSpec]:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None


@dataclass(frozen=True)
class UploadSpec:
    """A top-level upload slot (not tied to a section)."""
    name: str
    slot: AssetSlotSpec
    label: str = 'Image'


@dataclass(frozen=True)
class EntitySchema:
    name: str
    label: str
    endpoint: str
    draft_key: str
    scalars: Tuple[ScalarSpec, ...]
    sections: Tuple[SectionSpec, ...] = ()
    uploads: Tuple[UploadSpec, ...] = ()
    slug_source: Optional[str] = None
    server_field_map: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        names = [spec.name for spec in self.scalars]
        names += [spec.key for spec in self.sections]
        names += [upload.name for upload in self.uploads]
        if len(set(names)) != len(names):
            raise ShapeError(f'{self.name}: field, section and upload names must be unique')

        for section in self.sections:
            for list_spec in section.lists:
                if list_spec.variant not in SUB_SECTION_TEMPLATES:
                    raise ShapeError(f'{section.key}: unknown variant {list_spec.variant!r}')
                expected = VARIANT_POINTS.get(list_spec.variant)
                if list_spec.points is not None and list_spec.points.key != expected:
                    raise ShapeError(f'{section.key}.{list_spec.key}: points key must be {expected!r}')
                if list_spec.assets is not None and list_spec is not section.primary_list:
                    raise ShapeError(f'{section.key}.{list_spec.key}: only the first list may hold assets')

        # Slots sharing a file key must share the alt-text key, or positions drift
        alt_keys: Dict[str, str] = {}
        for slot in self.asset_slots():
            known = alt_keys.setdefault(slot.file_key, slot.alt_key)
            if known != slot.alt_key:
                raise ShapeError(f'{self.name}: file key {slot.file_key!r} has two alt-text keys')

    def scalar_spec(self, name: str) -> Optional[ScalarSpec]:
        for spec in self.scalars:
            if spec.name == name:
                return spec
        return None

    def section(self, key: str) -> SectionSpec:
        for spec in self.sections:
            if spec.key == key:
                return spec
        raise ShapeError(f'{self.name} has no section {key!r}')

    def has_section(self, key: str) -> bool:
        return any(spec.key == key for spec in self.sections)

    def upload(self, name: str) -> Optional[UploadSpec]:
        for spec in self.uploads:
            if spec.name == name:
                return spec
        return None

    def asset_slots(self):
        for upload in self.uploads:
            yield upload.slot
        for section in self.sections:
            if section.assets is not None:
                yield section.assets
            if section.primary_list is not None and section.primary_list.assets is not None:
                yield section.primary_list.assets

    def slot_spec(self, owner: str, index: Optional[int] = None) -> AssetSlotSpec:
        """
        Resolve the asset slot for (owner, index).

        owner is a section key or a top-level upload name; index selects a
        sub-section of the section's first list.
        """
        upload = self.upload(owner)
        if upload is not None:
            if index is not None:
                raise ShapeError(f'Upload slot {owner!r} has no sub-sections')
            return upload.slot

        section = self.section(owner)
        if index is None:
            if section.assets is None:
                raise ShapeError(f'Section {owner!r} has no image slot')
            return section.assets
        list_spec = section.primary_list
        if list_spec is None or list_spec.assets is None:
            raise ShapeError(f'Sub-sections of {owner!r} have no image slot')
        return list_spec.assets

    def text_scalars(self):
        return [spec for spec in self.scalars if spec.kind == TEXT]

    def rule_for(self, path: PathLike) -> Optional[FieldRule]:
        """Rule governing the field at a path, or None if it is unchecked."""
        segments = parse_path(path)
        if len(segments) == 1:
            spec = self.scalar_spec(str(segments[0]))
            if spec is None:
                raise ShapeError(f'{self.name} has no field {segments[0]!r}')
            return spec.rule

        section = self.section(str(segments[0]))
        if len(segments) == 2:
            spec = section.field_spec(str(segments[1]))
            if spec is None:
                raise ShapeError(f'Section {section.key!r} has no field {segments[1]!r}')
            return spec.rule

        if len(segments) == 3 and section.points is not None and segments[1] == section.points.key:
            return section.points.rule

        list_spec = section.list_spec(str(segments[1]))
        if len(segments) == 4:
            for spec in list_spec.fields:
                if spec.name == segments[3]:
                    return spec.rule
            if segments[3] in SUB_SECTION_TEMPLATES[list_spec.variant]:
                return None
            raise ShapeError(f'{list_spec.variant} sub-sections have no field {segments[3]!r}')

        if len(segments) == 5 and list_spec.points is not None and segments[3] == list_spec.points.key:
            return list_spec.points.rule

        raise ShapeError(f'Path does not address a field: {segments!r}')

    def summary(self) -> Dict[str, Any]:
        """Shape description for the rendering layer."""
        return {
            'name': self.name,
            'label': self.label,
            'fields': [spec.name for spec in self.scalars],
            'uploads': [upload.name for upload in self.uploads],
            'sections': [
                {
                    'key': section.key,
                    'label': section.label,
                    'fields': [spec.name for spec in section.fields],
                    'lists': [
                        {'key': list_spec.key, 'variant': list_spec.variant,
                         'has_images': list_spec.assets is not None}
                        for list_spec in section.lists
                    ],
                    'has_points': section.points is not None,
                    'has_image': section.assets is not None,
                }
                for section in self.sections
            ],
        }


def text(name: str, label: str, required: bool = False, min_length: Optional[int] = None,
         max_length: Optional[int] = None, **kwargs) -> ScalarSpec:
    """Shorthand for a text field with a length rule."""
    rule = FieldRule(label, required=required, min_length=min_length, max_length=max_length)
    return ScalarSpec(name, rule=rule, **kwargs)


def title_and_description(section: str, description_min: Optional[int] = None,
                          title_max: int = 100, description_max: int = 1000) -> Tuple[ScalarSpec, ...]:
    return (
        text('title', f'{section} title', max_length=title_max),
        text('description', f'{section} description', min_length=description_min,
             max_length=description_max),
    )


def images(file_key: str, alt_key: Optional[str] = None, multiple: bool = True) -> AssetSlotSpec:
    return AssetSlotSpec(file_key, alt_key or f'{file_key}_alt_text', multiple=multiple)


# Blog
# ====

BLOG_SCHEMA = EntitySchema(
    name='blog',
    label='Blog',
    endpoint='blogs',
    draft_key='blog_draft_data',
    slug_source='title',
    scalars=(
        text('title', 'Blog title', required=True, min_length=5, max_length=40),
        ScalarSpec('slug', rule=slug_rule(max_length=40)),
        text('content', 'Blog content', required=True, min_length=100),
        ScalarSpec('published', kind=BOOLEAN),
        text('meta_title', 'Meta title', max_length=40),
        text('meta_description', 'Meta description', max_length=300),
        ScalarSpec('tag_ids', kind=TAGS),
    ),
    uploads=(
        UploadSpec('image_files', images('image_files', 'image_alt_text'), 'Blog images'),
        UploadSpec('og_image_file', images('og_image_file', 'og_image_alt_text', multiple=False),
                   'Open Graph image'),
    ),
    sections=(
        SectionSpec(
            'hero_section', 'Hero',
            fields=(
                text('title', 'Hero title', max_length=40),
                text('description', 'Hero description', min_length=100, max_length=1000),
                text('summary', 'Hero summary', min_length=100, max_length=400),
            ),
            assets=images('hero_section_image', 'hero_section_image_alt_text', multiple=False),
            encoding=ENCODE_JSON,
        ),
        SectionSpec(
            'quote_section', 'Quotes',
            fields=(
                text('summary', 'Quote section summary', min_length=100, max_length=400),
            ),
            lists=(
                ListSpec('quotes', 'quote', label='Quote', fields=(
                    text('title', 'Quote title', max_length=40),
                    text('description', 'Quote description', max_length=1000),
                    text('quote', 'Quote text', max_length=1000),
                    text('quoteusername', 'Quote username', max_length=40),
                )),
            ),
            encoding=ENCODE_JSON,
        ),
        SectionSpec(
            'info_section', 'Info',
            fields=(
                text('title', 'Info title', max_length=40),
                text('description', 'Info description', min_length=100, max_length=1000),
                text('summary', 'Info summary', min_length=100, max_length=400),
                text('summary_2', 'Info summary 2', min_length=100, max_length=400),
            ),
            assets=images('info_section_image', 'info_section_image_alt_text', multiple=False),
            encoding=ENCODE_JSON,
        ),
    ),
)


# Industry
# ========

INDUSTRY_SCHEMA = EntitySchema(
    name='industry',
    label='Industry',
    endpoint='industries',
    draft_key='industry_draft_data',
    slug_source='name',
    scalars=(
        text('name', 'Industry name', required=True, min_length=3, max_length=100),
        ScalarSpec('slug', rule=slug_rule('URL slug', min_length=3, max_length=40)),
        text('description', 'Industry description', required=True, min_length=50, max_length=500),
        text('meta_title', 'Meta title', required=True, min_length=5, max_length=60),
        text('meta_description', 'Meta description', required=True, min_length=50, max_length=160),
        ScalarSpec('is_active', kind=BOOLEAN, default=True),
        ScalarSpec('tag_ids', kind=TAGS),
    ),
    uploads=(
        UploadSpec('images', images('images'), 'Industry images'),
    ),
    sections=(
        SectionSpec(
            'hero_section', 'Hero',
            fields=(
                text('title', 'Hero title', max_length=100),
                text('description', 'Hero description', min_length=10, max_length=500),
            ),
            lists=(
                ListSpec('sub_sections', 'title_count', label='Statistic', fields=(
                    text('title', 'Statistic title', max_length=50),
                    ScalarSpec('count', rule=number_rule('Statistic count', min_value=0), kind=INTEGER),
                )),
            ),
            assets=images('hero_section_image', 'hero_section_image_alt_text', multiple=False),
        ),
        SectionSpec(
            'challenges_section', 'Challenges',
            fields=(
                text('title', 'Challenges title', min_length=10, max_length=100),
            ),
            points=PointsSpec('points', FieldRule('Challenge point', max_length=200),
                              flatten_into='description', delimiter=', '),
        ),
        SectionSpec(
            'expertise_section', 'Expertise',
            fields=(
                text('title', 'Expertise title', min_length=10, max_length=100),
                text('description', 'Expertise description', min_length=10, max_length=500),
            ),
            lists=(
                ListSpec('sub_sections', 'title_description', label='Expertise', fields=(
                    text('title', 'Expertise item title', min_length=10, max_length=100),
                    text('description', 'Expertise item description', min_length=10, max_length=500),
                )),
            ),
            assets=images('expertise_section_images'),
        ),
        SectionSpec(
            'what_sets_us_apart_section', 'What sets us apart',
            fields=(
                text('title', 'What sets us apart title', min_length=10, max_length=100),
                text('description', 'What sets us apart description', min_length=10, max_length=500),
            ),
            lists=(
                ListSpec('sub_sections', 'title_description', label='Differentiator', fields=(
                    text('title', 'Differentiator title', min_length=10, max_length=100),
                    text('description', 'Differentiator description', min_length=10, max_length=500),
                )),
            ),
            assets=images('what_sets_us_apart_section_images'),
        ),
        SectionSpec(
            'we_build_section', 'We build',
            fields=title_and_description('We build', description_min=10, description_max=500),
            lists=(
                ListSpec('sub_sections', 'description_only', label='Offering', fields=(
                    text('description', 'Offering description', max_length=500),
                )),
            ),
        ),
    ),
)


# Project
# =======

PROJECT_SCHEMA = EntitySchema(
    name='project',
    label='Project',
    endpoint='projects',
    draft_key='project_draft_data',
    slug_source='name',
    scalars=(
        text('name', 'Project name', required=True, max_length=100),
        ScalarSpec('slug', rule=slug_rule('Project slug', max_length=40)),
        text('description', 'Project description', required=True, min_length=100, max_length=2000),
        ScalarSpec('tag_ids', kind=TAGS),
    ),
    uploads=(
        UploadSpec('image_file', images('image_file', 'image_alt_text', multiple=False), 'Project image'),
    ),
    sections=(
        SectionSpec(
            'hero_section', 'Hero',
            fields=title_and_description('Hero section', description_min=100),
            assets=images('hero_section_image_files', 'hero_section_image_alt_text'),
        ),
        SectionSpec(
            'about_section', 'About',
            fields=title_and_description('About section', description_min=100),
        ),
        SectionSpec(
            'project_goals_section', 'Project goals',
            fields=(text('title', 'Project goals title', max_length=100),),
            lists=(
                ListSpec('sub_sections', 'title_only', label='Goal', fields=(
                    text('title', 'Goal title', max_length=100),
                ), assets=images('project_goals_section_image_files',
                                 'project_goals_section_image_alt_text', multiple=False)),
                ListSpec('approaches', 'approach', label='Approach', fields=(
                    text('title', 'Approach title', max_length=100),
                    text('description', 'Approach description', max_length=1000),
                ), points=PointsSpec('additional_info', FieldRule('Approach detail', max_length=200))),
            ),
        ),
        SectionSpec(
            'technologies_used_section', 'Technologies',
            fields=title_and_description('Technologies section', description_min=100),
            lists=(
                ListSpec('sub_sections', 'technology', label='Technology', fields=(
                    text('title', 'Technology title', max_length=100),
                    text('description', 'Technologies section sub-section description',
                         min_length=100, max_length=1000),
                ), assets=images('technologies_used_section_image_files',
                                 'technologies_used_section_image_alt_text'),
                    count_field='image_count'),
            ),
        ),
        SectionSpec(
            'services_provided_section', 'Services provided',
            fields=title_and_description('Services section', description_min=100),
            lists=(
                ListSpec('sub_sections', 'approach', label='Service', fields=(
                    text('title', 'Service title', max_length=100),
                    text('description', 'Services section sub-section description',
                         min_length=100, max_length=1000),
                ), points=PointsSpec('additional_info', FieldRule('Service detail', max_length=200))),
            ),
        ),
    ),
)


# Service
# =======

def _service_section(key: str, label: str) -> SectionSpec:
    return SectionSpec(
        key, label,
        fields=title_and_description(label),
        lists=(
            ListSpec('sub_sections', 'title_description', fields=(
                text('title', f'{label} item title', max_length=100),
                text('description', f'{label} item description', max_length=1000),
            ), assets=images(f'{key}_image_files', f'{key}_image_files_subsection_alt_text')),
        ),
        drop_empty=True,
    )


SERVICE_SCHEMA = EntitySchema(
    name='service',
    label='Service',
    endpoint='services',
    draft_key='service_draft_data',
    scalars=(
        text('title', 'Service title', required=True, max_length=100, omit_empty=True),
        text('description', 'Service description', required=True, min_length=100,
             max_length=2000, omit_empty=True),
        ScalarSpec('is_active', kind=BOOLEAN, default=True),
        text('meta_title', 'Meta title', required=True, max_length=60, omit_empty=True),
        text('meta_description', 'Meta description', required=True, max_length=160, omit_empty=True),
    ),
    uploads=(
        UploadSpec('image_files', images('image_files', 'image_alt_text'), 'Service images'),
    ),
    sections=(
        _service_section('hero_section', 'Hero'),
        _service_section('about_section', 'About'),
        _service_section('why_choose_us_section', 'Why choose us'),
        SectionSpec(
            'what_we_offer_section', 'What we offer',
            fields=title_and_description('What we offer'),
            lists=(
                ListSpec('sub_sections', 'point_list', label='Offer', fields=(
                    text('title', 'Offer title', max_length=100),
                ), points=PointsSpec('points', FieldRule('Offer point', max_length=200),
                                     flatten_into='description', delimiter=', ')),
            ),
            drop_empty=True,
        ),
        _service_section('perfect_business_section', 'Perfect business'),
        _service_section('design_section', 'Design'),
        SectionSpec(
            'team_section', 'Team',
            fields=title_and_description('Team'),
            lists=(
                ListSpec('sub_sections', 'team_member', label='Team member', fields=(
                    text('name', 'Team member name', max_length=100),
                    text('designation', 'Team member designation', max_length=100),
                    text('experience', 'Team member experience', max_length=100),
                    text('summary', 'Team member summary', max_length=1000),
                ), assets=images('team_section_image_files')),
            ),
            drop_empty=True,
        ),
        _service_section('tools_used_section', 'Tools used'),
        SectionSpec(
            'client_feedback_section', 'Client feedback',
            fields=title_and_description('Client feedback'),
            lists=(
                ListSpec('sub_sections', 'feedback', label='Feedback', fields=(
                    text('name', 'Client name', max_length=100),
                    text('designation', 'Client designation', max_length=100),
                    text('comment', 'Client comment', max_length=1000),
                    ScalarSpec('stars', rule=number_rule('Star rating', min_value=1, max_value=5),
                               kind=INTEGER),
                ), assets=images('client_feedback_section_image_files')),
            ),
            drop_empty=True,
        ),
    ),
)


# Tag
# ===

TAG_SCHEMA = EntitySchema(
    name='tag',
    label='Tag',
    endpoint='tags',
    draft_key='tag_draft_data',
    slug_source='name',
    scalars=(
        text('name', 'Tag name', required=True, max_length=50),
        ScalarSpec('slug', rule=slug_rule('Tag slug', max_length=50)),
    ),
)


SCHEMAS: Dict[str, EntitySchema] = {
    schema.name: schema
    for schema in (BLOG_SCHEMA, INDUSTRY_SCHEMA, PROJECT_SCHEMA, SERVICE_SCHEMA, TAG_SCHEMA)
}


def get_schema(name: str) -> EntitySchema:
    try:
        return SCHEMAS[name]
    except KeyError:
        raise ShapeError(f'Unknown entity type: {name}')
