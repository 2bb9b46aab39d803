# app/profiles.py
"""Credential profile store.

Profiles are owned by one user and hold vendor secrets as an encrypted JSON
blob. At most one profile per (user, vendor) is the default. Changing a
profile's secrets or deleting it notifies invalidation listeners so any
session derived from it is dropped.
"""
import logging

from flask import current_app

from app import db
from app.models import CredentialProfile, Plant
from app.monitoring.errors import ValidationError
from app.monitoring.sessions import ProfileConfig
from app.utils import naive_utcnow

logger = logging.getLogger(__name__)

AUTH_MODES = {
    'solaredge': ('direct',),
    'sungrow': ('direct', 'oauth2'),
}

SECRET_FIELDS = {
    'solaredge': ('api_key', 'site_id'),
    'sungrow': ('app_key', 'access_key', 'username', 'password'),
}

_invalidation_listeners = []


def register_invalidation_listener(callback):
    """``callback(profile_id)`` runs whenever a profile's sessions become invalid."""
    if callback not in _invalidation_listeners:
        _invalidation_listeners.append(callback)


def unregister_invalidation_listener(callback):
    if callback in _invalidation_listeners:
        _invalidation_listeners.remove(callback)


def _notify_invalidated(profile_id):
    for callback in list(_invalidation_listeners):
        try:
            callback(profile_id)
        except Exception:  # noqa: BLE001
            logger.exception("Profile invalidation listener failed for profile %s", profile_id)


def required_fields(vendor, auth_mode):
    if vendor == 'solaredge':
        return ['api_key', 'site_id']
    if vendor == 'sungrow':
        fields = ['app_key', 'access_key']
        if auth_mode == 'direct':
            fields += ['username', 'password']
        return fields
    return []


def validate(vendor, auth_mode, name, secrets):
    """Raise ValidationError listing every missing or invalid field."""
    missing = []
    if not (name or '').strip():
        missing.append('name')
    if vendor not in AUTH_MODES:
        missing.append('vendor')
    elif auth_mode not in AUTH_MODES[vendor]:
        missing.append('auth_mode')
    missing += [f for f in required_fields(vendor, auth_mode) if not str(secrets.get(f) or '').strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing_fields=missing)


def _extract_secrets(vendor, fields):
    """Secret values from ``fields['secrets']`` and/or top-level keys."""
    allowed = SECRET_FIELDS.get(vendor, ())
    secrets = {}
    nested = fields.get('secrets') or {}
    for key in allowed:
        value = nested.get(key, fields.get(key))
        if value is not None and str(value).strip() != '':
            secrets[key] = str(value).strip()
    return secrets


def list_profiles(user, vendor=None):
    """The user's profiles, default first, then by creation time."""
    query = CredentialProfile.query.filter_by(user_id=user.id)
    if vendor:
        query = query.filter_by(vendor=vendor)
    return query.order_by(
        CredentialProfile.is_default.desc(),
        CredentialProfile.created_at.asc(),
        CredentialProfile.id.asc(),
    ).all()


def get(profile_id, user=None):
    profile = db.session.get(CredentialProfile, profile_id)
    if profile is None or (user is not None and profile.user_id != user.id):
        return None
    return profile


def get_default(user, vendor):
    return CredentialProfile.query.filter_by(user_id=user.id, vendor=vendor, is_default=True).first()


def create(user, fields):
    vendor = (fields.get('vendor') or '').strip().lower()
    auth_mode = (fields.get('auth_mode') or 'direct').strip().lower()
    name = (fields.get('name') or '').strip()
    secrets = _extract_secrets(vendor, fields)
    validate(vendor, auth_mode, name, secrets)

    profile = CredentialProfile(
        user_id=user.id,
        name=name,
        description=fields.get('description'),
        vendor=vendor,
        auth_mode=auth_mode,
        base_url=fields.get('base_url') or None,
        secrets_version=1,
        is_default=False,
    )
    profile.set_secrets(secrets)
    db.session.add(profile)
    db.session.flush()

    first_for_vendor = CredentialProfile.query.filter_by(user_id=user.id, vendor=vendor).count() == 1
    if fields.get('is_default') or first_for_vendor:
        _set_default_in_session(profile)
    db.session.commit()
    logger.info("Created %s profile %s for user %s", vendor, profile.id, user.id)
    return profile


def update(profile_id, patch, user=None):
    profile = get(profile_id, user)
    if profile is None:
        raise ValidationError("Profile not found", missing_fields=['profile_id'])

    name = patch.get('name', profile.name)
    auth_mode = (patch.get('auth_mode') or profile.auth_mode).strip().lower()
    current = profile.get_secrets()
    merged = dict(current)
    merged.update(_extract_secrets(profile.vendor, patch))
    validate(profile.vendor, auth_mode, name, merged)

    secrets_changed = merged != current or auth_mode != profile.auth_mode
    profile.name = (name or '').strip()
    if 'description' in patch:
        profile.description = patch.get('description')
    if 'base_url' in patch:
        secrets_changed = secrets_changed or (patch.get('base_url') or None) != profile.base_url
        profile.base_url = patch.get('base_url') or None
    profile.auth_mode = auth_mode
    if secrets_changed:
        profile.set_secrets(merged)
        profile.secrets_version = (profile.secrets_version or 1) + 1
    if patch.get('is_default'):
        _set_default_in_session(profile)
    profile.updated_at = naive_utcnow()
    db.session.commit()

    if secrets_changed:
        logger.info("Profile %s credentials changed (version %s)", profile.id, profile.secrets_version)
        _notify_invalidated(profile.id)
    return profile


def delete(profile_id, user=None):
    profile = get(profile_id, user)
    if profile is None:
        raise ValidationError("Profile not found", missing_fields=['profile_id'])
    Plant.query.filter_by(profile_id=profile.id).update({'profile_id': None})
    db.session.delete(profile)
    db.session.commit()
    logger.info("Deleted profile %s", profile_id)
    _notify_invalidated(profile_id)


def _set_default_in_session(profile):
    CredentialProfile.query.filter(
        CredentialProfile.user_id == profile.user_id,
        CredentialProfile.vendor == profile.vendor,
        CredentialProfile.id != profile.id,
    ).update({'is_default': False}, synchronize_session='fetch')
    profile.is_default = True


def set_default(profile_id, user=None):
    """Make ``profile_id`` the user's only default for its vendor, in one transaction."""
    profile = get(profile_id, user)
    if profile is None:
        raise ValidationError("Profile not found", missing_fields=['profile_id'])
    try:
        _set_default_in_session(profile)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Profile %s is now the default %s profile", profile.id, profile.vendor)
    return profile


def resolve_for_plant(plant):
    """The plant's own profile, or the owner's default for its vendor."""
    if plant.vendor == 'manual':
        return None
    if plant.profile is not None:
        return plant.profile
    return CredentialProfile.query.filter_by(user_id=plant.user_id, vendor=plant.vendor, is_default=True).first()


def server_endpoints(vendor):
    """Vendor URLs from the application config, never from request data."""
    config = current_app.config
    if vendor == 'solaredge':
        return {'base_url': config.get('SOLAREDGE_BASE_URL')}
    if vendor == 'sungrow':
        return {
            'base_url': config.get('SUNGROW_BASE_URL'),
            'authorize_url': config.get('SUNGROW_AUTHORIZE_URL'),
        }
    return {}


def to_vendor_config(profile):
    """Plain VendorConfig dict for the vendor-call envelope."""
    return to_profile_config(profile).vendor_config()


def to_profile_config(profile):
    endpoints = server_endpoints(profile.vendor)
    extra = {}
    if 'authorize_url' in endpoints:
        extra['authorize_url'] = endpoints['authorize_url']
    return ProfileConfig(
        profile_id=profile.id,
        user_id=profile.user_id,
        vendor=profile.vendor,
        auth_mode=profile.auth_mode,
        secrets=profile.get_secrets(),
        base_url=profile.base_url or endpoints.get('base_url'),
        secrets_version=profile.secrets_version or 1,
        extra=extra,
    )
