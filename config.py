import os


BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _parse_consumers(value):
    """Parse ``key:secret,key2:secret2`` into a dict."""
    consumers = {}
    for entry in value.split(','):
        if ':' in entry:
            key, secret = entry.split(':', 1)
            consumers[key.strip()] = secret.strip()
    return consumers


def _optional_int(value):
    return int(value) if value not in (None, '') else None


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-change-me-in-production')

    # Database – absolute path so it works on PythonAnywhere
    DATABASE_URL = os.environ.get(
        'DATABASE_URL',
        'sqlite:///' + os.path.join(BASE_DIR, 'lti.db')
    )
    # Heroku uses 'postgres://' but SQLAlchemy requires 'postgresql://'
    if DATABASE_URL.startswith('postgres://'):
        DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie inside the LMS iframe
    SESSION_COOKIE_SAMESITE = 'None'
    SESSION_COOKIE_SECURE = True       # Required when SameSite=None
    SESSION_COOKIE_HTTPONLY = True

    # LTI Configuration – the default consumer plus any extra
    # ``key:secret`` pairs from LTI_CONSUMERS.
    LTI_KEY = os.environ.get('LTI_KEY', 'lti-key')
    LTI_SECRET = os.environ.get('LTI_SECRET', 'lti-secret')
    LTI_CONSUMERS = _parse_consumers(os.environ.get('LTI_CONSUMERS', ''))

    # Replay protection
    LTI_REPLAY_WINDOW = int(os.environ.get('LTI_REPLAY_WINDOW', '300'))  # seconds
    LTI_MAX_FUTURE_SKEW = _optional_int(os.environ.get('LTI_MAX_FUTURE_SKEW'))  # None = unbounded
    LTI_NONCE_BACKEND = os.environ.get('LTI_NONCE_BACKEND', 'memory')  # memory, redis, sql

    # Shared nonce store
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    REDIS_TIMEOUT = float(os.environ.get('REDIS_TIMEOUT', '2'))  # seconds

    # Grade passback
    OUTCOMES_TIMEOUT = int(os.environ.get('OUTCOMES_TIMEOUT', '10'))  # seconds


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = False  # test client speaks plain http
    LTI_KEY = 'key'
    LTI_SECRET = 'secret'
    LTI_CONSUMERS = {}
    LTI_NONCE_BACKEND = 'memory'
