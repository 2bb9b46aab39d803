# app/utils.py
"""Shared helpers: secret encryption, UTC time handling and log redaction."""
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app, has_app_context

_LOGGER = logging.getLogger(__name__)

_fernet_cache = {}


def _get_fernet() -> Fernet:
    key = None
    if has_app_context():
        key = current_app.config.get('ENCRYPTION_KEY')
    key = key or os.environ.get('ENCRYPTION_KEY')
    if not key:
        raise RuntimeError("ENCRYPTION_KEY is not configured")
    if key not in _fernet_cache:
        _fernet_cache[key] = Fernet(key.encode() if isinstance(key, str) else key)
    return _fernet_cache[key]


def encrypt_token(value):
    """Encrypt a string for storage in a LargeBinary column."""
    if value is None:
        return None
    return _get_fernet().encrypt(value.encode('utf-8'))


def decrypt_token(value):
    """Decrypt a value written by encrypt_token. Returns None if it cannot be read."""
    if not value:
        return None
    try:
        return _get_fernet().decrypt(bytes(value)).decode('utf-8')
    except InvalidToken:
        _LOGGER.error("Stored secret could not be decrypted (wrong ENCRYPTION_KEY?)")
        return None


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def naive_utcnow() -> datetime:
    """Current UTC time without tzinfo, as stored in DateTime columns."""
    return utcnow().replace(tzinfo=None)


def as_utc(value):
    """Interpret a stored (naive) or aware datetime as aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value):
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


class SensitiveDataFilter(logging.Filter):
    """
    Logging filter that obfuscates credentials that pass through vendor calls.
    Shows first 4 and last 4 characters with asterisks in between.
    """

    _JSON_KEYS = (
        'access_token', 'refresh_token', 'token', 'api_key', 'appkey',
        'app_key', 'access_key', 'password', 'user_password', 'code',
    )

    @staticmethod
    def obfuscate(value: str, show_chars: int = 4) -> str:
        """Obfuscate a string showing only first and last N characters."""
        if len(value) <= show_chars * 2:
            return '*' * len(value)
        return f"{value[:show_chars]}{'*' * (len(value) - show_chars * 2)}{value[-show_chars:]}"

    def _obfuscate_string(self, text: str) -> str:
        if not text:
            return text

        # Bearer tokens
        text = re.sub(
            r'(Bearer\s+)([a-zA-Z0-9._~+/=-]{16,})',
            lambda m: m.group(1) + self.obfuscate(m.group(2)),
            text,
            flags=re.IGNORECASE
        )

        # Query string keys (SolarEdge passes api_key in the URL)
        text = re.sub(
            r'([?&](?:api_key|access_token|code)=)([^&\s]+)',
            lambda m: m.group(1) + self.obfuscate(m.group(2)),
            text,
            flags=re.IGNORECASE
        )

        # JSON / repr fields ('token': 'xxx' or "token": "xxx")
        keys = '|'.join(self._JSON_KEYS)
        text = re.sub(
            r'(["\'](?:' + keys + r')["\']:\s*["\'])([^"\']{6,})(["\'])',
            lambda m: m.group(1) + self.obfuscate(m.group(2)) + m.group(3),
            text,
            flags=re.IGNORECASE
        )

        # Email addresses
        text = re.sub(
            r'([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})',
            lambda m: self.obfuscate(m.group(1)),
            text
        )

        return text

    def _obfuscate_arg(self, arg: Any) -> Any:
        """Obfuscate an argument only if it contains sensitive data, preserving type otherwise."""
        str_value = str(arg)
        obfuscated = self._obfuscate_string(str_value)
        if obfuscated != str_value:
            return obfuscated
        return arg

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = self._obfuscate_string(str(record.msg))

        # Keep numeric args intact for %d / %.3f
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._obfuscate_arg(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._obfuscate_arg(a) for a in record.args)

        return True

