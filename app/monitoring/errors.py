"""Error taxonomy shared by the monitoring layer.

Every error carries a remediation category so the UI can tell the user
whether to fix their credentials, try again later, or contact support.
"""

FIX_CREDENTIALS = 'fix_credentials'
RETRY_LATER = 'retry_later'
CONTACT_SUPPORT = 'contact_support'


class MonitoringError(Exception):
    """Base exception for monitoring integration errors"""
    remediation = CONTACT_SUPPORT
    http_status = 500

    def __init__(self, message, code=None, remediation=None):
        super().__init__(message)
        self.message = message
        self.code = code
        if remediation is not None:
            self.remediation = remediation

    def to_dict(self):
        return {
            'error': self.message,
            'error_class': type(self).__name__,
            'code': self.code,
            'remediation': self.remediation,
        }


class ValidationError(MonitoringError):
    """Required fields are missing or malformed. Never retried."""
    remediation = FIX_CREDENTIALS
    http_status = 400

    def __init__(self, message, missing_fields=None, code=None):
        super().__init__(message, code=code)
        self.missing_fields = list(missing_fields or [])

    def to_dict(self):
        data = super().to_dict()
        data['missing_fields'] = self.missing_fields
        return data


class AuthError(MonitoringError):
    """The vendor rejected the credentials or token."""
    remediation = FIX_CREDENTIALS
    http_status = 401


class TransientError(MonitoringError):
    """Timeouts, rate limits, 5xx and network failures. Retried with backoff."""
    remediation = RETRY_LATER
    http_status = 503

    def __init__(self, message, code=None, retry_after=None):
        super().__init__(message, code=code)
        self.retry_after = retry_after


class UnsupportedOperation(MonitoringError):
    """The vendor does not offer this capability."""
    http_status = 501


class LockoutError(MonitoringError):
    """Too many failed authentication attempts; the account is locked."""
    http_status = 423


def is_retryable(error):
    return isinstance(error, TransientError)
