# config.py
import os
import subprocess
from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def get_version():
    """Get the current git commit hash as version identifier."""
    # Try VERSION file first (Docker deployment)
    version_file = os.path.join(basedir, 'VERSION')
    if os.path.exists(version_file):
        try:
            with open(version_file, 'r') as f:
                version = f.read().strip()
                if version and version != 'unknown':
                    return version
        except OSError:
            pass

    # Fall back to git command (development)
    try:
        result = subprocess.run(
            ['git', 'rev-parse', '--short=7', 'HEAD'],
            cwd=basedir,
            capture_output=True,
            text=True,
            timeout=1
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass

    return 'unknown'


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-please-change-in-production'

    # Fernet key used for credential profile secrets and OAuth tokens.
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    ENCRYPTION_KEY = os.environ.get('ENCRYPTION_KEY')

    # Use DATABASE_URL if set (for Docker/PostgreSQL), otherwise use SQLite
    default_db_path = os.path.join(basedir, 'data', 'app.db') if os.path.exists(os.path.join(basedir, 'data')) else os.path.join(basedir, 'app.db')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///' + default_db_path
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # SQLite-specific settings to reduce locking issues
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {
            'timeout': 30,  # SQLite busy timeout in seconds
            'check_same_thread': False,  # Sync runs write from the monitoring loop thread
        },
        'pool_pre_ping': True,  # Verify connections before use
    }

    # Dashboard day boundaries (IANA timezone string)
    DISPLAY_TIMEZONE = os.environ.get('DISPLAY_TIMEZONE', 'UTC')

    # Manual readings older than this are not substituted for a missing vendor value
    MONITORING_STALENESS_HOURS = float(os.environ.get('MONITORING_STALENESS_HOURS', 2))

    # Sync scheduling
    AUTO_SYNC_ENABLED = _env_bool('AUTO_SYNC_ENABLED', True)
    AUTO_SYNC_INTERVAL_MINUTES = int(os.environ.get('AUTO_SYNC_INTERVAL_MINUTES', 15))
    AUTO_SYNC_INITIAL_DELAY_SECONDS = int(os.environ.get('AUTO_SYNC_INITIAL_DELAY_SECONDS', 30))
    SYNC_MAX_ATTEMPTS = int(os.environ.get('SYNC_MAX_ATTEMPTS', 3))
    SYNC_BACKOFF_BASE_SECONDS = float(os.environ.get('SYNC_BACKOFF_BASE_SECONDS', 1))
    SYNC_BACKOFF_MAX_SECONDS = float(os.environ.get('SYNC_BACKOFF_MAX_SECONDS', 30))
    MANUAL_SYNC_FAILURE_THRESHOLD = int(os.environ.get('MANUAL_SYNC_FAILURE_THRESHOLD', 3))
    MANUAL_SYNC_COOLDOWN_SECONDS = int(os.environ.get('MANUAL_SYNC_COOLDOWN_SECONDS', 30))

    # Every vendor call is bounded by this timeout
    VENDOR_CALL_TIMEOUT_SECONDS = float(os.environ.get('VENDOR_CALL_TIMEOUT_SECONDS', 30))

    # Account lockout after repeated failed sign-ins
    LOCKOUT_THRESHOLD = int(os.environ.get('LOCKOUT_THRESHOLD', 5))
    LOCKOUT_WINDOW_MINUTES = int(os.environ.get('LOCKOUT_WINDOW_MINUTES', 15))

    # OAuth2 redirect target is {origin}/plants?oauth=callback
    OAUTH_REDIRECT_ORIGIN = os.environ.get('OAUTH_REDIRECT_ORIGIN', 'http://localhost:5001')

    # Vendor endpoints
    SOLAREDGE_BASE_URL = os.environ.get('SOLAREDGE_BASE_URL', 'https://monitoringapi.solaredge.com')
    SUNGROW_BASE_URL = os.environ.get('SUNGROW_BASE_URL', 'https://gateway.isolarcloud.com.hk')
    SUNGROW_AUTHORIZE_URL = os.environ.get('SUNGROW_AUTHORIZE_URL', 'https://web3.isolarcloud.com.hk/#/authorized-app')

    # Remote connector endpoint base URL; empty runs connectors in-process
    CONNECTOR_GATEWAY_URL = os.environ.get('CONNECTOR_GATEWAY_URL', '')

    # Start the background monitoring loop with the app
    MONITORING_RUNTIME_ENABLED = _env_bool('MONITORING_RUNTIME_ENABLED', True)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WTF_CSRF_ENABLED = False
    ENCRYPTION_KEY = 'mUOSdCiXyZ4n6lYL8Sg8h1bDO1s9yvRzXkOjBzH0M2k='
    MONITORING_RUNTIME_ENABLED = False
    AUTO_SYNC_ENABLED = False
