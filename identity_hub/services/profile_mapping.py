"""Mapping between client profile payloads and the canonical grouped record.

Clients send partial payloads that may spell the same field two ways
(``father_name`` / ``fatherName``), may be flat or already grouped, and may
wrap everything in a ``profile`` object. ``normalize_payload`` collapses all
of that into one canonical update at the boundary; nothing past this module
sees an alternate spelling.

When two spellings of a field are both present, the snake_case one wins.
``None`` values are treated as absent and never erase stored data.
"""

import uuid

from identity_hub.models.profile import PROFILE_GROUPS

# canonical name -> (group, accepted spellings in precedence order)
# group None means a top-level record field.
FIELD_ALIASES = {
    # account
    'subject_id': ('account', ('subject_id', 'firebase_uid', 'firebaseUid', 'subjectId', 'uid')),
    'username': ('account', ('username', 'userName')),
    'display_name': ('account', ('display_name', 'displayName')),
    'photo_url': ('account', ('photo_url', 'avatar_url', 'photoURL', 'photoUrl', 'avatarUrl')),
    'providers': ('account', ('providers', 'linked_providers', 'linkedProviders')),
    'last_sign_in': ('account', ('last_sign_in', 'lastSignIn', 'lastSignInTime')),
    'email_verified': ('account', ('email_verified', 'emailVerified')),
    'phone_verified': ('account', ('phone_verified', 'phoneVerified')),
    'phone_auth_used': ('account', ('phone_auth_used', 'phoneAuthUsed')),
    # basic
    'name': ('basic', ('name', 'full_name', 'student_name', 'fullName', 'studentName')),
    'guardian_name': ('basic', ('guardian_name', 'father_name', 'guardianName', 'fatherName')),
    'gender': ('basic', ('gender',)),
    'dob': ('basic', ('dob', 'date_of_birth', 'dateOfBirth', 'birthDate')),
    # contact
    'email': ('contact', ('email', 'emailAddress')),
    'phone': ('contact', ('phone', 'phone_number', 'phoneNumber')),
    'alternate_phone': ('contact', ('alternate_phone', 'alt_phone', 'alternatePhone', 'altPhone')),
    'address': ('contact', ('address', 'address_line', 'addressLine')),
    'city': ('contact', ('city',)),
    'district': ('contact', ('district',)),
    'state': ('contact', ('state',)),
    'country': ('contact', ('country',)),
    'zip_code': ('contact', ('zip_code', 'pincode', 'pin_code', 'zipCode', 'pinCode')),
    # about
    'interests': ('about', ('interests',)),
    'instagram_handle': ('about', ('instagram_handle', 'instagram_id', 'instagramHandle', 'instagramId')),
    'youtube_subscribed': ('about', ('youtube_subscribed', 'youtubeSubscribed')),
    'newsletter_opt_in': ('about', ('newsletter_opt_in', 'newsletterOptIn')),
    'heard_from': ('about', ('heard_from', 'heardFrom')),
    'bio': ('about', ('bio', 'about_me', 'aboutMe')),
    # education
    'education_type': ('education', ('education_type', 'educationType')),
    'school_name': ('education', ('school_name', 'schoolName')),
    'board': ('education', ('board',)),
    'grade': ('education', ('grade', 'standard')),
    'college_name': ('education', ('college_name', 'collegeName')),
    'diploma_course': ('education', ('diploma_course', 'diplomaCourse')),
    'graduation_year': ('education', ('graduation_year', 'passing_year', 'graduationYear', 'passingYear')),
    # top level
    'calculator_sessions': (None, ('calculator_sessions', 'nata_calculator_sessions',
                                   'calculatorSessions', 'nataCalculatorSessions')),
    'selected_course': (None, ('selected_course', 'selectedCourse')),
    'attempt_year': (None, ('attempt_year', 'nata_attempt_year', 'attemptYear', 'nataAttemptYear')),
    'created_at': (None, ('created_at', 'createdAt')),
}

# Keys the server owns or that carry structure rather than data
IGNORED_KEYS = {'updated_at', 'updatedAt', 'profile', 'extra', 'extras', 'id'} | set(PROFILE_GROUPS)

_KNOWN_SPELLINGS = {
    spelling for _, spellings in FIELD_ALIASES.values() for spelling in spellings
}


def _flat_view(payload):
    """Collapse the nested shapes a payload may arrive in into one flat dict.

    Later sources override earlier ones: ``profile`` object, then grouped
    objects, then top-level keys.
    """
    flat = {}
    profile = payload.get('profile')
    if isinstance(profile, dict):
        flat.update({k: v for k, v in profile.items() if k not in IGNORED_KEYS})
    for group in PROFILE_GROUPS:
        nested = payload.get(group)
        if isinstance(nested, dict):
            flat.update(nested)
    flat.update({k: v for k, v in payload.items() if k not in IGNORED_KEYS})
    return flat


def normalize_payload(payload):
    """Convert a client payload into a canonical partial update.

    Returns a dict containing only what the payload actually supplied:
    group dicts keyed by group name, top-level fields, ``extras`` for
    unrecognised keys and ``id`` when the client names a record.
    """
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise TypeError('Profile payload must be a JSON object')

    flat = _flat_view(payload)
    update = {}

    for canonical, (group, spellings) in FIELD_ALIASES.items():
        for spelling in spellings:
            value = flat.get(spelling)
            if value is not None:
                break
        else:
            continue

        if group is None:
            update[canonical] = value
        else:
            update.setdefault(group, {})[canonical] = value

    extras = {}
    sources = [payload.get('profile'), payload.get('extra'), payload.get('extras')]
    sources.extend(payload.get(group) for group in PROFILE_GROUPS)
    for source in sources:
        if isinstance(source, dict):
            extras.update({k: v for k, v in source.items()
                           if k not in _KNOWN_SPELLINGS and k not in IGNORED_KEYS and v is not None})
    for key, value in payload.items():
        if key in _KNOWN_SPELLINGS or key in IGNORED_KEYS or value is None:
            continue
        extras[key] = value
    if extras:
        update['extras'] = extras

    if payload.get('id') is not None:
        update['id'] = str(payload['id'])

    if 'calculator_sessions' in update and not isinstance(update['calculator_sessions'], dict):
        raise TypeError('calculator_sessions must be an object keyed by session id')
    if 'providers' in update.get('account', {}):
        providers = update['account']['providers']
        if isinstance(providers, str):
            providers = [providers]
        update['account']['providers'] = list(dict.fromkeys(providers))

    return update


def build_record(update, now, record_id=None):
    """Construct a brand new canonical record from a normalized update."""
    record = {
        'id': record_id or update.get('id') or str(uuid.uuid4()),
        'created_at': update.get('created_at') or now,
        'updated_at': now,
        'calculator_sessions': dict(update.get('calculator_sessions') or {}),
        'selected_course': update.get('selected_course'),
        'attempt_year': update.get('attempt_year'),
        'extras': dict(update.get('extras') or {}),
    }
    for group in PROFILE_GROUPS:
        record[group] = dict(update.get(group) or {})
    return record


def _union(existing, incoming):
    return list(dict.fromkeys(list(existing or []) + list(incoming or [])))


def merge_records(existing, update):
    """Merge a normalized update over an existing canonical record.

    Each group is shallow-merged (update wins per field, absent fields are
    kept). ``calculator_sessions`` is merged by key union and the provider
    list by set union, so neither loses entries. ``id`` and ``created_at``
    always come from ``existing``.
    """
    merged = dict(existing)

    for group in PROFILE_GROUPS:
        combined = dict(existing.get(group) or {})
        incoming = update.get(group) or {}
        for key, value in incoming.items():
            if group == 'account' and key == 'providers':
                value = _union(combined.get('providers'), value)
            combined[key] = value
        merged[group] = combined

    sessions = dict(existing.get('calculator_sessions') or {})
    sessions.update(update.get('calculator_sessions') or {})
    merged['calculator_sessions'] = sessions

    extras = dict(existing.get('extras') or {})
    extras.update(update.get('extras') or {})
    merged['extras'] = extras

    for key in ('selected_course', 'attempt_year'):
        if update.get(key) is not None:
            merged[key] = update[key]

    merged['id'] = existing.get('id')
    merged['created_at'] = existing.get('created_at')
    return merged


def flatten(record):
    """Externally visible projection: one flat snake_case object."""
    if record is None:
        return None

    flat = {
        'id': record.get('id'),
        'created_at': record.get('created_at'),
        'updated_at': record.get('updated_at'),
    }
    for group in PROFILE_GROUPS:
        flat.update(record.get(group) or {})
    flat['calculator_sessions'] = dict(record.get('calculator_sessions') or {})
    flat['selected_course'] = record.get('selected_course')
    flat['attempt_year'] = record.get('attempt_year')
    for key, value in (record.get('extras') or {}).items():
        flat.setdefault(key, value)
    return flat
