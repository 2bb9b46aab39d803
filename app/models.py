# app/models.py
import json

from app import db, login
from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin

from app.utils import encrypt_token, decrypt_token, naive_utcnow, as_utc


@login.user_loader
def load_user(id):
    return db.session.get(User, int(id))


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), index=True, unique=True, nullable=False)
    password_hash = db.Column(db.String(256))

    # Bearer token for scripted API access
    api_token = db.Column(db.String(64), unique=True, index=True)

    # Single boolean role flag (admin vs regular user)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)

    # Set when repeated failed sign-ins lock the account; cleared by an admin
    locked_at = db.Column(db.DateTime, nullable=True)
    unlocked_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=naive_utcnow)

    # Relationships
    credential_profiles = db.relationship('CredentialProfile', backref='user', lazy='dynamic', cascade='all, delete-orphan')
    plants = db.relationship('Plant', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def is_locked(self):
        return self.locked_at is not None

    def __repr__(self):
        return f'<User {self.email}>'


class CredentialProfile(db.Model):
    """Named, reusable set of vendor credentials owned by one user."""
    __tablename__ = 'credential_profile'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)

    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(255))
    vendor = db.Column(db.String(20), nullable=False)  # 'solaredge', 'sungrow'
    auth_mode = db.Column(db.String(20), nullable=False, default='direct')  # 'direct', 'oauth2'
    base_url = db.Column(db.String(255))

    # Vendor-specific secret fields, JSON-encoded then encrypted
    secrets_encrypted = db.Column(db.LargeBinary)
    # Incremented whenever the secret fields change; sessions derived from an older version are stale
    secrets_version = db.Column(db.Integer, nullable=False, default=1)

    is_default = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, default=naive_utcnow)
    updated_at = db.Column(db.DateTime, default=naive_utcnow, onupdate=naive_utcnow)

    oauth_token = db.relationship('OAuthToken', backref='profile', uselist=False, cascade='all, delete-orphan')

    def get_secrets(self):
        raw = decrypt_token(self.secrets_encrypted)
        if not raw:
            return {}
        return json.loads(raw)

    def set_secrets(self, secrets):
        self.secrets_encrypted = encrypt_token(json.dumps(secrets, sort_keys=True))

    def __repr__(self):
        return f'<CredentialProfile {self.name} ({self.vendor}/{self.auth_mode})>'

    def to_dict(self, include_secrets=False):
        """Convert to dictionary for API responses. Secret values are masked unless requested."""
        secrets = self.get_secrets()
        if not include_secrets:
            secrets = {key: bool(value) for key, value in secrets.items()}
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'vendor': self.vendor,
            'auth_mode': self.auth_mode,
            'base_url': self.base_url,
            'is_default': self.is_default,
            'secrets': secrets,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class OAuthToken(db.Model):
    """Persisted OAuth2 session for a credential profile (tokens encrypted)."""
    __tablename__ = 'oauth_token'

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('credential_profile.id'), nullable=False, unique=True)

    access_token_encrypted = db.Column(db.LargeBinary)
    refresh_token_encrypted = db.Column(db.LargeBinary)
    expires_at = db.Column(db.DateTime)
    authorized_plant_ids = db.Column(db.Text)  # JSON list of vendor plant ids
    secrets_version = db.Column(db.Integer, nullable=False, default=1)

    updated_at = db.Column(db.DateTime, default=naive_utcnow, onupdate=naive_utcnow)

    @property
    def access_token(self):
        return decrypt_token(self.access_token_encrypted)

    @property
    def refresh_token(self):
        return decrypt_token(self.refresh_token_encrypted)

    def plant_ids(self):
        return json.loads(self.authorized_plant_ids) if self.authorized_plant_ids else []

    def __repr__(self):
        return f'<OAuthToken profile={self.profile_id} expires={self.expires_at}>'


class Plant(db.Model):
    """A monitored solar installation."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)

    name = db.Column(db.String(100), nullable=False)
    vendor = db.Column(db.String(20), nullable=False)  # 'solaredge', 'sungrow', 'manual'
    vendor_plant_id = db.Column(db.String(100))  # SolarEdge site id / iSolarCloud ps_id
    profile_id = db.Column(db.Integer, db.ForeignKey('credential_profile.id', ondelete='SET NULL'), nullable=True)

    capacity_kwp = db.Column(db.Float)
    location = db.Column(db.String(255))

    sync_enabled = db.Column(db.Boolean, default=True)
    last_sync = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=naive_utcnow)

    profile = db.relationship('CredentialProfile')
    readings = db.relationship('Reading', backref='plant', lazy='dynamic', cascade='all, delete-orphan')
    sync_runs = db.relationship('SyncRun', backref='plant', lazy='dynamic', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Plant {self.name} ({self.vendor})>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'vendor': self.vendor,
            'vendor_plant_id': self.vendor_plant_id,
            'profile_id': self.profile_id,
            'capacity_kwp': self.capacity_kwp,
            'location': self.location,
            'sync_enabled': self.sync_enabled,
            'last_sync': self.last_sync.isoformat() if self.last_sync else None,
        }


class Reading(db.Model):
    """Stored canonical reading, either synced from a vendor or entered manually."""
    __table_args__ = (
        db.UniqueConstraint('plant_id', 'timestamp', 'source', name='uq_reading_plant_time_source'),
    )

    id = db.Column(db.Integer, primary_key=True)
    plant_id = db.Column(db.Integer, db.ForeignKey('plant.id'), nullable=False, index=True)

    # Timestamp (UTC)
    timestamp = db.Column(db.DateTime, index=True, nullable=False)

    power_w = db.Column(db.Float)  # Instantaneous power (W)
    energy_wh = db.Column(db.Float)  # Interval energy (Wh)

    source = db.Column(db.String(20), nullable=False)  # 'solaredge', 'sungrow', 'manual'
    provenance = db.Column(db.String(20), default='vendor')  # 'vendor', 'manual', 'stale'

    created_at = db.Column(db.DateTime, default=naive_utcnow)

    def __repr__(self):
        return f'<Reading plant={self.plant_id} {self.timestamp} - {self.power_w}W {self.energy_wh}Wh>'


class SyncRun(db.Model):
    """One execution of a sync (append-only; written once with its terminal outcome)."""
    __tablename__ = 'sync_run'

    id = db.Column(db.Integer, primary_key=True)
    plant_id = db.Column(db.Integer, db.ForeignKey('plant.id'), nullable=False, index=True)
    vendor = db.Column(db.String(20), nullable=False)
    trigger = db.Column(db.String(10), nullable=False)  # 'auto', 'manual'

    started_at = db.Column(db.DateTime, nullable=False)
    finished_at = db.Column(db.DateTime)
    outcome = db.Column(db.String(10), nullable=False)  # 'success', 'partial', 'failed'
    error_class = db.Column(db.String(50))
    error_message = db.Column(db.Text)
    attempts = db.Column(db.Integer, default=1)
    readings_synced = db.Column(db.Integer, default=0)

    def __repr__(self):
        return f'<SyncRun plant={self.plant_id} {self.trigger} {self.outcome}>'

    def to_dict(self):
        started = as_utc(self.started_at)
        finished = as_utc(self.finished_at)
        return {
            'id': self.id,
            'plant_id': self.plant_id,
            'vendor': self.vendor,
            'trigger': self.trigger,
            'started_at': started.isoformat() if started else None,
            'finished_at': finished.isoformat() if finished else None,
            'outcome': self.outcome,
            'error_class': self.error_class,
            'error_message': self.error_message,
            'attempts': self.attempts,
            'readings_synced': self.readings_synced,
            'duration_ms': int((finished - started).total_seconds() * 1000) if started and finished else None,
        }


class SecurityAuditLog(db.Model):
    """Security-relevant event (authentication attempts, profile access, lockouts)."""
    __tablename__ = 'security_audit_log'

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True, index=True)
    success = db.Column(db.Boolean, nullable=False)
    details = db.Column(db.Text)  # JSON
    ip_address = db.Column(db.String(45))
    created_at = db.Column(db.DateTime, default=naive_utcnow, index=True)

    def __repr__(self):
        return f'<SecurityAuditLog {self.action} user={self.user_id} success={self.success}>'
