"""
Tests for profile payload normalization and merging.
"""

import pytest
from faker import Faker

from identity_hub.services.profile_mapping import (
    build_record,
    flatten,
    merge_records,
    normalize_payload,
)

fake = Faker()

NOW = '2024-01-01T00:00:00'
LATER = '2024-06-01T12:00:00'


@pytest.fixture
def record():
    update = normalize_payload({
        'name': 'Asha Rao',
        'father_name': 'Ravi Rao',
        'email': 'asha@example.com',
        'phone': '+919876543210',
        'school_name': 'City School',
        'calculator_sessions': {'s1': {'score': 120}},
        'providers': ['phone'],
    })
    return build_record(update, NOW, record_id='rec-1')


class TestNormalizePayload:

    def test_alternate_spellings_collapse(self):
        update = normalize_payload({'fatherName': 'Ravi', 'phoneNumber': '+919876543210', 'firebaseUid': 'abc'})

        assert update['basic'] == {'guardian_name': 'Ravi'}
        assert update['contact'] == {'phone': '+919876543210'}
        assert update['account'] == {'subject_id': 'abc'}

    def test_snake_case_wins_over_camel_case(self):
        update = normalize_payload({'father_name': 'Snake', 'fatherName': 'Camel'})

        assert update['basic']['guardian_name'] == 'Snake'

    def test_grouped_and_wrapped_payloads(self):
        update = normalize_payload({
            'profile': {'studentName': 'Asha'},
            'education': {'schoolName': 'City School', 'house': 'Blue'},
        })

        assert update['basic'] == {'name': 'Asha'}
        assert update['education'] == {'school_name': 'City School'}
        assert update['extras'] == {'house': 'Blue'}

    def test_none_values_are_absent(self):
        update = normalize_payload({'name': None, 'city': 'Pune'})

        assert 'basic' not in update
        assert update['contact'] == {'city': 'Pune'}

    def test_unknown_keys_kept_as_extras(self):
        update = normalize_payload({'favourite_colour': 'green', 'extra': {'referral': 'X1'}})

        assert update['extras'] == {'favourite_colour': 'green', 'referral': 'X1'}

    def test_providers_deduplicated(self):
        update = normalize_payload({'linkedProviders': ['password', 'password', 'google.com']})

        assert update['account']['providers'] == ['password', 'google.com']

    def test_rejects_non_object(self):
        with pytest.raises(TypeError):
            normalize_payload(['not', 'a', 'dict'])

    def test_rejects_list_calculator_sessions(self):
        with pytest.raises(TypeError):
            normalize_payload({'calculator_sessions': [1, 2]})

    def test_empty_payload(self):
        assert normalize_payload({}) == {}
        assert normalize_payload(None) == {}


class TestMergeRecords:

    def test_empty_update_is_noop(self, record):
        assert merge_records(record, {}) == record

    def test_disjoint_groups_both_survive(self, record):
        first = merge_records(record, normalize_payload({'about': {'bio': 'Loves sketching'}}))
        second = merge_records(first, normalize_payload({'education': {'board': 'CBSE'}}))

        assert second['about'] == {'bio': 'Loves sketching'}
        assert second['education'] == {'school_name': 'City School', 'board': 'CBSE'}
        assert second['basic'] == record['basic']

    def test_same_field_last_write_wins(self, record):
        merged = merge_records(record, normalize_payload({'name': 'Asha R.'}))

        assert merged['basic']['name'] == 'Asha R.'
        assert merged['basic']['guardian_name'] == 'Ravi Rao'

    def test_identity_and_creation_time_preserved(self, record):
        merged = merge_records(record, {'id': 'other', 'created_at': LATER})

        assert merged['id'] == 'rec-1'
        assert merged['created_at'] == NOW

    def test_calculator_sessions_key_union(self, record):
        merged = merge_records(record, normalize_payload({'nataCalculatorSessions': {'s2': {'score': 140}}}))

        assert merged['calculator_sessions'] == {'s1': {'score': 120}, 's2': {'score': 140}}

    def test_providers_union(self, record):
        merged = merge_records(record, normalize_payload({'providers': ['password']}))

        assert merged['account']['providers'] == ['phone', 'password']

    def test_top_level_fields_follow_update(self, record):
        merged = merge_records(record, normalize_payload({'selectedCourse': 'B.Arch', 'nata_attempt_year': 2025}))

        assert merged['selected_course'] == 'B.Arch'
        assert merged['attempt_year'] == 2025


class TestBuildAndFlatten:

    def test_build_record_uses_client_created_at(self):
        record = build_record(normalize_payload({'createdAt': '2023-05-05T10:00:00'}), NOW)

        assert record['created_at'] == '2023-05-05T10:00:00'
        assert record['updated_at'] == NOW
        assert record['id']

    def test_flatten_is_single_snake_case_object(self, record):
        flat = flatten(record)

        assert flat['name'] == 'Asha Rao'
        assert flat['guardian_name'] == 'Ravi Rao'
        assert flat['email'] == 'asha@example.com'
        assert flat['school_name'] == 'City School'
        assert flat['id'] == 'rec-1'
        assert 'fatherName' not in flat
        assert 'basic' not in flat

    def test_flatten_extras_never_shadow_fields(self, record):
        record['extras'] = {'name': 'shadow', 'house': 'Blue'}

        flat = flatten(record)

        assert flat['name'] == 'Asha Rao'
        assert flat['house'] == 'Blue'

    def test_flatten_none(self):
        assert flatten(None) is None

    def test_faker_names_round_through_merge(self, record):
        name = fake.name()
        assert flatten(merge_records(record, normalize_payload({'fullName': name})))['name'] == name
