#!/usr/bin/env python3
"""
Tests for the persisted JSON config documents.
"""

import asyncio
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import json_utils
from autopilot_exceptions import ConfigError, PersistenceError, ValidationError
from config_documents import (
    BOOLEAN, NUMBER, OPTIONAL_NUMBER, STRING,
    ConfigDocumentStore, check_schema_version, validate_fields,
)

FIELDS = {
    'schema_version': (int,),
    'name': STRING,
    'limit': NUMBER,
    'threshold': OPTIONAL_NUMBER,
    'enabled': BOOLEAN,
}


def _defaults():
    return {'schema_version': 1, 'name': 'default', 'limit': 10, 'threshold': None, 'enabled': False}


def _parse(data):
    validate_fields(data, FIELDS, 'sample')
    check_schema_version(data, 'sample')
    return dict(data)


class TestValidation:

    def test_valid_document_passes(self):
        validate_fields(_defaults(), FIELDS, 'sample')

    @pytest.mark.parametrize("data", [
        {'colour': 'red'},
        {'limit': '10'},
        {'limit': True},
        {'enabled': 0},
        {'name': None},
    ])
    def test_invalid_fields(self, data):
        with pytest.raises(ValidationError):
            validate_fields(data, FIELDS, 'sample')

    def test_optional_number_accepts_null(self):
        validate_fields({'threshold': None}, FIELDS, 'sample')
        validate_fields({'threshold': 2.5}, FIELDS, 'sample')

    def test_non_object_rejected(self):
        with pytest.raises(ValidationError):
            validate_fields(['name'], FIELDS, 'sample')

    def test_schema_version(self):
        check_schema_version({}, 'sample')
        check_schema_version({'schema_version': 1}, 'sample')
        with pytest.raises(ConfigError):
            check_schema_version({'schema_version': 2}, 'sample')


class TestStore:

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_missing_document_is_created_with_defaults(self, documents):
        doc = await documents.load('sample', _defaults, _parse)

        assert doc == _defaults()
        stored = json_utils.loads(documents.path_for('sample').read_text())
        assert stored == _defaults()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_saved_document_is_loaded(self, documents):
        await documents.save('sample', dict(_defaults(), name='garage', limit=3.5))

        doc = await documents.load('sample', _defaults, _parse)

        assert doc['name'] == 'garage'
        assert doc['limit'] == 3.5
        assert not os.path.exists(str(documents.path_for('sample')) + '.tmp')

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.parametrize("content", [
        '{"name": ',
        '{"name": "x", "unexpected": 1}',
        '{"schema_version": 7}',
        '[]',
    ])
    async def test_corrupted_document_is_backed_up(self, documents, content):
        path = documents.path_for('sample')
        path.parent.mkdir(parents=True)
        path.write_text(content)

        doc = await documents.load('sample', _defaults, _parse)

        assert doc == _defaults()
        backups = [n for n in os.listdir(path.parent) if n.startswith('sample.json.corrupted.')]
        assert len(backups) == 1
        assert (path.parent / backups[0]).read_text() == content
        assert json_utils.loads(path.read_text()) == _defaults()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_invalid_utf8_document_is_backed_up(self, documents):
        garbage = b'\xff\xfe\x00garbage'
        path = documents.path_for('sample')
        path.parent.mkdir(parents=True)
        path.write_bytes(garbage)

        doc = await documents.load('sample', _defaults, _parse)

        assert doc == _defaults()
        backups = [n for n in os.listdir(path.parent) if n.startswith('sample.json.corrupted.')]
        assert len(backups) == 1
        assert (path.parent / backups[0]).read_bytes() == garbage
        assert json_utils.loads(path.read_text()) == _defaults()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_concurrent_saves_leave_one_complete_document(self, documents):
        await asyncio.gather(*[
            documents.save('sample', dict(_defaults(), limit=i)) for i in range(20)
        ])

        stored = json_utils.loads(documents.path_for('sample').read_text())
        assert stored['limit'] in range(20)
        assert set(stored) == set(_defaults())

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_unwritable_directory_raises(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file in the way")
        store = ConfigDocumentStore(str(blocker))

        with pytest.raises(PersistenceError):
            await store.save('sample', _defaults())

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_load_survives_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file in the way")
        store = ConfigDocumentStore(str(blocker))

        assert await store.load('sample', _defaults, _parse) == _defaults()
