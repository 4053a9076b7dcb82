"""
Unit tests for envelope encoding.
"""

import io

import pytest
from werkzeug.datastructures import FileStorage

from cms_admin.assets import AssetLedger
from cms_admin.encoder import Envelope, SubmissionEncoder
from cms_admin.schemas import BLOG_SCHEMA, INDUSTRY_SCHEMA, PROJECT_SCHEMA, SERVICE_SCHEMA
from cms_admin.section_tree import SectionTree


def image(name):
    return FileStorage(stream=io.BytesIO(name.encode()), filename=name, content_type='image/jpeg')


def filenames(envelope, key):
    return [storage.filename for storage in envelope.get_files(key)]


def service_scalars():
    return {
        'title': 'Cloud Migration',
        'description': 'd' * 120,
        'is_active': True,
        'meta_title': 'Cloud Migration Services',
        'meta_description': 'Move to the cloud',
    }


@pytest.fixture
def service():
    assets = AssetLedger()
    tree = SectionTree(SERVICE_SCHEMA, assets=assets)
    return tree, assets, SubmissionEncoder(SERVICE_SCHEMA)


class TestScalars:
    def test_strings_and_booleans(self, service):
        tree, assets, encoder = service
        envelope = encoder.encode(tree, service_scalars(), assets)
        assert envelope.get('title') == 'Cloud Migration'
        assert envelope.get('is_active') == 'true'

    def test_omit_empty(self, service):
        tree, assets, encoder = service
        scalars = service_scalars()
        scalars['meta_title'] = '  '
        envelope = encoder.encode(tree, scalars, assets)
        assert 'meta_title' not in envelope

    def test_tag_ids_as_json(self):
        tree = SectionTree(BLOG_SCHEMA)
        encoder = SubmissionEncoder(BLOG_SCHEMA)
        envelope = encoder.encode(tree, {'title': 'Hello', 'tag_ids': [3, 1]}, AssetLedger())
        assert envelope.get_json('tag_ids') == [3, 1]
        assert envelope.get('published') == 'false'

    def test_empty_tags_omitted(self):
        encoder = SubmissionEncoder(BLOG_SCHEMA)
        envelope = encoder.encode(SectionTree(BLOG_SCHEMA), {'title': 'Hello', 'tag_ids': []}, AssetLedger())
        assert 'tag_ids' not in envelope


class TestSections:
    def test_empty_sections_dropped(self, service):
        tree, assets, encoder = service
        envelope = encoder.encode(tree, service_scalars(), assets)
        assert 'sections_data' not in envelope

    def test_points_joined_into_description(self, service):
        tree, assets, encoder = service
        index = tree.add_sub_section('what_we_offer_section', {'title': 'Speed'})
        tree.update_point('what_we_offer_section', index, 0, 'Fast')
        tree.add_point('what_we_offer_section', index)
        tree.add_point('what_we_offer_section', index)
        tree.update_point('what_we_offer_section', index, 2, 'Cheap')

        sections = encoder.encode(tree, service_scalars(), assets).get_json('sections_data')
        assert list(sections) == ['what_we_offer_section']
        assert sections['what_we_offer_section']['sub_sections'] == [
            {'title': 'Speed', 'description': 'Fast, Cheap'},
        ]

    def test_industry_challenges_join_with_commas(self):
        tree = SectionTree(INDUSTRY_SCHEMA)
        for point in ('Legacy systems', '   ', 'Scaling'):
            index = tree.add_point('challenges_section')
            tree.update_point('challenges_section', None, index, point)
        envelope = SubmissionEncoder(INDUSTRY_SCHEMA).encode(tree, {'name': 'Retail'}, AssetLedger())
        challenges = envelope.get_json('sections_data')['challenges_section']
        assert challenges == {'title': '', 'description': 'Legacy systems, Scaling'}
        assert 'points' not in challenges

    def test_unflattened_points_drop_blanks(self):
        tree = SectionTree(PROJECT_SCHEMA)
        index = tree.add_sub_section('services_provided_section')
        tree.update_point('services_provided_section', index, 0, 'Discovery')
        tree.add_point('services_provided_section', index)
        envelope = SubmissionEncoder(PROJECT_SCHEMA).encode(tree, {'name': 'P'}, AssetLedger())
        item = envelope.get_json('sections_data')['services_provided_section']['sub_sections'][0]
        assert item['additional_info'] == ['Discovery']

    def test_blog_sections_as_json_parts(self):
        tree = SectionTree(BLOG_SCHEMA)
        tree.update_scalar('hero_section', 'title', 'Why we build')
        tree.add_sub_section('quote_section', {'quote': 'Ship it', 'quoteusername': 'Mia'})
        envelope = SubmissionEncoder(BLOG_SCHEMA).encode(tree, {'title': 'Post'}, AssetLedger())
        assert envelope.get_json('hero_section')['title'] == 'Why we build'
        assert envelope.get_json('quote_section')['quotes'][0]['quoteusername'] == 'Mia'
        assert 'sections_data' not in envelope


class TestAssets:
    def test_alignment_survives_removal(self, service):
        tree, assets, encoder = service
        for name in ('ana', 'ben', 'cai'):
            index = tree.add_sub_section('team_section', {'name': name})
            assets.set_asset('team_section', index, image(f'{name}.jpg'))
        assets.set_alt_text('team_section', 0, 'Ana smiling')
        assets.set_alt_text('team_section', 2, 'Cai at desk')

        tree.remove_sub_section('team_section', 1)
        envelope = encoder.encode(tree, service_scalars(), assets)

        assert filenames(envelope, 'team_section_image_files') == ['ana.jpg', 'cai.jpg']
        assert envelope.get_json('team_section_image_files_alt_text') == ['Ana smiling', 'Cai at desk']

    def test_missing_alt_text_keeps_position(self, service):
        tree, assets, encoder = service
        for name in ('a', 'b', 'c'):
            index = tree.add_sub_section('tools_used_section')
            assets.set_asset('tools_used_section', index, image(f'{name}.jpg'))
        assets.set_alt_text('tools_used_section', 2, 'Third')

        envelope = encoder.encode(tree, service_scalars(), assets)
        texts = envelope.get_json('tools_used_section_image_files_subsection_alt_text')
        assert texts == ['', '', 'Third']
        assert len(texts) == len(envelope.get_files('tools_used_section_image_files'))

    def test_alt_text_without_file_not_sent(self, service):
        tree, assets, encoder = service
        index = tree.add_sub_section('team_section')
        assets.set_alt_text('team_section', index, 'Pending photo')
        envelope = encoder.encode(tree, service_scalars(), assets)
        assert 'team_section_image_files' not in envelope
        assert 'team_section_image_files_alt_text' not in envelope

    def test_section_slot_then_sub_sections_then_positions(self):
        assets = AssetLedger()
        tree = SectionTree(PROJECT_SCHEMA, assets=assets)
        tree.add_sub_section('technologies_used_section')
        tree.add_sub_section('technologies_used_section')
        assets.add_asset('technologies_used_section', 1, image('vue.jpg'))
        assets.add_asset('technologies_used_section', 0, image('django.jpg'))
        assets.add_asset('technologies_used_section', 0, image('postgres.jpg'))
        assets.add_asset('hero_section', None, image('hero-1.jpg'))
        assets.add_asset('hero_section', None, image('hero-2.jpg'))

        envelope = SubmissionEncoder(PROJECT_SCHEMA).encode(tree, {'name': 'P'}, assets)

        assert filenames(envelope, 'technologies_used_section_image_files') == \
            ['django.jpg', 'postgres.jpg', 'vue.jpg']
        assert filenames(envelope, 'hero_section_image_files') == ['hero-1.jpg', 'hero-2.jpg']
        assert envelope.get_json('technologies_used_section_image_alt_text') == ['', '', '']
        items = envelope.get_json('sections_data')['technologies_used_section']['sub_sections']
        assert [item['image_count'] for item in items] == [2, 1]

    def test_single_slot_alt_text_is_plain(self):
        assets = AssetLedger()
        assets.set_asset('og_image_file', None, image('og.png'))
        assets.set_alt_text('og_image_file', None, 'Share card')
        envelope = SubmissionEncoder(BLOG_SCHEMA).encode(SectionTree(BLOG_SCHEMA), {'title': 'T'}, assets)
        assert filenames(envelope, 'og_image_file') == ['og.png']
        assert envelope.get('og_image_alt_text') == 'Share card'

    def test_multi_slot_alt_text_is_json_even_for_one_file(self):
        assets = AssetLedger()
        assets.add_asset('image_files', None, image('cover.png'))
        envelope = SubmissionEncoder(BLOG_SCHEMA).encode(SectionTree(BLOG_SCHEMA), {'title': 'T'}, assets)
        assert envelope.get_json('image_alt_text') == ['']


class TestEditMode:
    def baseline(self, tree, scalars):
        return {'scalars': dict(scalars), 'sections': tree.to_dict()}

    def test_only_changed_scalars(self):
        tree = SectionTree(PROJECT_SCHEMA)
        scalars = {'name': 'Old', 'slug': 'old', 'description': 'x' * 150, 'tag_ids': [1]}
        baseline = self.baseline(tree, scalars)
        scalars['name'] = 'New'

        envelope = SubmissionEncoder(PROJECT_SCHEMA).encode(tree, scalars, AssetLedger(), baseline)
        assert envelope.keys() == ['name']

    def test_only_changed_sections(self):
        tree = SectionTree(PROJECT_SCHEMA)
        scalars = {'name': 'P'}
        baseline = self.baseline(tree, scalars)
        tree.update_scalar('about_section', 'title', 'About us')

        envelope = SubmissionEncoder(PROJECT_SCHEMA).encode(tree, scalars, AssetLedger(), baseline)
        assert list(envelope.get_json('sections_data')) == ['about_section']

    def test_cleared_tags_are_sent(self):
        tree = SectionTree(PROJECT_SCHEMA)
        scalars = {'name': 'P', 'tag_ids': [4]}
        baseline = self.baseline(tree, scalars)
        scalars['tag_ids'] = []
        envelope = SubmissionEncoder(PROJECT_SCHEMA).encode(tree, scalars, AssetLedger(), baseline)
        assert envelope.get_json('tag_ids') == []

    def test_assets_always_sent(self):
        tree = SectionTree(PROJECT_SCHEMA)
        scalars = {'name': 'P'}
        baseline = self.baseline(tree, scalars)
        assets = AssetLedger()
        assets.set_asset('image_file', None, image('main.jpg'))
        envelope = SubmissionEncoder(PROJECT_SCHEMA).encode(tree, scalars, assets, baseline)
        assert envelope.keys() == ['image_alt_text', 'image_file']


class TestEnvelope:
    def test_to_requests(self):
        envelope = Envelope()
        envelope.add_field('title', 'Hello')
        upload = image('a.jpg')
        upload.stream.read()
        envelope.add_file('image_files', upload)

        data, files = envelope.to_requests()
        assert data == [('title', 'Hello')]
        key, (filename, stream, content_type) = files[0]
        assert (key, filename, content_type) == ('image_files', 'a.jpg', 'image/jpeg')
        assert stream.read() == b'a.jpg'

    def test_digest_is_stable(self):
        first, second = Envelope(), Envelope()
        for envelope in (first, second):
            envelope.add_field('title', 'Hello')
            envelope.add_file('image_files', image('a.jpg'))
        assert first.digest() == second.digest()
        assert first.file_count == 1
