"""Profile reconciliation service.

Turns partial, possibly conflicting client updates into the single
canonical record for a subject. Records are located by subject id, then
phone, then case-insensitive email; the first match wins.
"""

import copy
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from identity_hub import db
from identity_hub.errors import ValidationError
from identity_hub.models import UserProfile
from identity_hub.services import profile_mapping
from identity_hub.validation import mask_phone, normalize_e164, username_error, validate_email

logger = logging.getLogger(__name__)

VERIFICATION_FLAGS = ('email_verified', 'phone_verified', 'phone_auth_used')


class ProfileServiceError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ProfileValidationError(ProfileServiceError):
    status_code = 400


class ProfileAccessError(ProfileServiceError):
    status_code = 403


class ProfileConflictError(ProfileServiceError):
    status_code = 409


def _utcnow_iso():
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat()


def _timestamp_iso(epoch_seconds):
    if epoch_seconds is None:
        return None
    return datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc).replace(tzinfo=None).isoformat()


class ProfileService:
    """Upsert and lookup operations over ``UserProfile`` rows."""

    def __init__(self, session=None):
        self.session = session or db.session

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, subject_id=None, phone=None, email=None):
        """Find an existing profile by subject id, then phone, then email."""
        if subject_id:
            profile = UserProfile.query.filter_by(subject_id=subject_id).first()
            if profile:
                return profile
        if phone:
            profile = UserProfile.query.filter_by(phone=phone).order_by(UserProfile.created_at).first()
            if profile:
                return profile
        if email:
            profile = (UserProfile.query
                       .filter_by(email_normalized=email.strip().lower())
                       .order_by(UserProfile.created_at)
                       .first())
            if profile:
                return profile
        return None

    def fetch(self, claims):
        """Return the canonical record for the token's subject, or None."""
        profile = self.resolve(subject_id=claims.subject, phone=claims.phone, email=claims.email)
        if profile is None or not self._owned_by(profile, claims.subject):
            return None
        return profile.to_record()

    def fetch_by_subject(self, subject_id):
        profile = UserProfile.query.filter_by(subject_id=subject_id).first() if subject_id else None
        return profile.to_record() if profile else None

    def resolve_username(self, username):
        """Return the email registered for ``username`` (case-insensitive), or None."""
        if not username:
            return None
        profile = self._username_owner(username)
        if profile is None:
            return None
        return (profile.contact or {}).get('email')

    def _username_owner(self, username):
        return UserProfile.query.filter_by(username_normalized=username.strip().lower()).first()

    def is_username_available(self, username, subject_id=None):
        profile = self._username_owner(username)
        if profile is None:
            return True
        return subject_id is not None and profile.subject_id == subject_id

    def providers_for_email(self, email):
        """Return the linked-provider list recorded for ``email``."""
        profile = self.resolve(email=email)
        if profile is None:
            return []
        return list((profile.account or {}).get('providers') or [])

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def upsert(self, claims, payload):
        """Merge ``payload`` into the subject's canonical record.

        Args:
            claims: IdentityClaims of the verified bearer token
            payload: Partial profile payload from the client

        Returns:
            The merged canonical record

        Raises:
            ProfileValidationError: Malformed payload, phone, email or username
            ProfileAccessError: Payload targets another subject's record
            ProfileConflictError: Username already taken
        """
        try:
            update = profile_mapping.normalize_payload(payload if payload is not None else {})
        except TypeError as e:
            raise ProfileValidationError(str(e))

        self._validate_update(update)
        self._apply_token_facts(update, claims)

        try:
            return self._write(claims, copy.deepcopy(update))
        except IntegrityError:
            # Another request created the record between resolve and commit;
            # merge into it once.
            logger.info(f"Retrying profile upsert for subject {claims.subject} after a concurrent insert")
        try:
            return self._write(claims, update)
        except IntegrityError as e:
            logger.warning(f"Profile upsert conflict for subject {claims.subject}: {e.orig}")
            raise ProfileConflictError('Profile conflicts with an existing record')

    def _write(self, claims, update):
        contact = update.get('contact', {})
        profile = self.resolve(subject_id=claims.subject, phone=contact.get('phone'), email=contact.get('email'))

        if profile is not None and not self._owned_by(profile, claims.subject):
            logger.warning(f"Upsert for subject {claims.subject} matched profile {profile.id} owned by another subject")
            raise ProfileAccessError('Not permitted to modify this profile')

        requested_id = update.pop('id', None)
        if requested_id:
            if profile is not None and requested_id != profile.id:
                raise ProfileAccessError('Payload id does not match your profile')
            if profile is None and self.session.get(UserProfile, requested_id) is not None:
                raise ProfileAccessError('Payload id belongs to another profile')

        username = update.get('account', {}).get('username')
        owner = self._username_owner(username) if username else None
        if owner is not None and (profile is None or owner.id != profile.id):
            raise ProfileConflictError('Username is already taken')

        now = _utcnow_iso()
        try:
            if profile is None:
                if not self._has_display_name(update):
                    self._default_display_name(update, claims)
                record = profile_mapping.build_record(update, now, record_id=requested_id)
                profile = UserProfile(id=record['id'])
                profile.apply_record(record)
                self.session.add(profile)
                logger.info(f"Created profile {record['id']} for subject {claims.subject}")
            else:
                existing = profile.to_record()
                if not existing['account'].get('display_name') and not self._has_display_name(update):
                    self._default_display_name(update, claims)
                record = profile_mapping.merge_records(existing, update)
                profile.apply_record(record)
                logger.info(f"Merged profile {profile.id} for subject {claims.subject}")

            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        return profile.to_record()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _owned_by(profile, subject_id):
        return profile.subject_id is None or profile.subject_id == subject_id

    @staticmethod
    def _has_display_name(update):
        return bool(update.get('account', {}).get('display_name'))

    @staticmethod
    def _default_display_name(update, claims):
        if claims.name:
            update.setdefault('account', {})['display_name'] = claims.name

    def _validate_update(self, update):
        contact = update.get('contact', {})
        try:
            if contact.get('phone'):
                contact['phone'] = normalize_e164(str(contact['phone']))
            if contact.get('alternate_phone'):
                contact['alternate_phone'] = normalize_e164(str(contact['alternate_phone']))
            if contact.get('email'):
                contact['email'] = validate_email(str(contact['email']))
        except ValidationError as e:
            raise ProfileValidationError(e.user_message)

        account = update.get('account', {})
        # Only the identity token may vouch for these
        for flag in VERIFICATION_FLAGS:
            account.pop(flag, None)
        if account.get('username'):
            error = username_error(account['username'])
            if error:
                raise ProfileValidationError(error)
            account['username'] = account['username'].strip().lower()

    def _apply_token_facts(self, update, claims):
        """Overlay facts the identity token vouches for.

        Token phone and email win over the payload; the payload cannot name
        a different subject.
        """
        account = update.setdefault('account', {})
        payload_subject = account.get('subject_id')
        if payload_subject and payload_subject != claims.subject:
            raise ProfileAccessError('Payload subject does not match token')
        account['subject_id'] = claims.subject

        contact = update.get('contact', {})
        if claims.phone:
            try:
                phone = normalize_e164(claims.phone)
            except ValidationError:
                logger.warning(f"Token for {claims.subject} carries malformed phone {mask_phone(claims.phone)}")
            else:
                contact['phone'] = phone
                account['phone_verified'] = True
                account['phone_auth_used'] = True
        if claims.email:
            contact['email'] = claims.email.strip().lower()
            if claims.email_verified:
                account['email_verified'] = True
        if contact:
            update['contact'] = contact

        if claims.auth_time:
            account['last_sign_in'] = _timestamp_iso(claims.auth_time)
        if claims.provider:
            account['providers'] = list(dict.fromkeys(list(account.get('providers') or []) + [claims.provider]))
