"""
OAuth Nonce Stores - Replay Protection.

A nonce store remembers which ``oauth_nonce`` values have been consumed
within the replay window.  Three backends share one interface:

* ``MemoryNonceStore`` - a dict guarded by a lock, for a single process.
* ``RedisNonceStore`` - ``SET NX EX`` on a shared Redis, for several
  processes behind one authentication boundary.
* ``SQLNonceStore`` - rows in the application database, primary-key
  uniqueness doing the check-and-set.

``is_new`` returns ``True`` when the nonce is accepted and raises a
``NonceError`` (or ``BackendUnavailable``) otherwise.
"""

import heapq
import logging
import math
import threading
import time
from typing import Protocol

import redis
from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError, OperationalError

from lti.errors import BackendUnavailable, Expired, MissingParameter, Replayed
from models.database import db, NonceRecord

logger = logging.getLogger(__name__)

REPLAY_WINDOW_SECONDS = 300


class NonceStore(Protocol):
    """What the request authenticator needs from a nonce backend."""

    def is_new(self, nonce, timestamp):
        """Accept ``nonce`` once, raising ``NonceError`` if it is rejected."""

    def set_used(self, nonce, timestamp):
        """Record ``nonce`` as consumed without any checks."""


def check_freshness(nonce, timestamp, now, replay_window, max_future_skew=None):
    """Validate nonce/timestamp against the store clock ``now``.

    Returns the timestamp as an int.  Timestamps ahead of the clock are
    accepted unless ``max_future_skew`` is set.
    """
    if not nonce or timestamp is None or timestamp == '':
        raise MissingParameter('Missing nonce or timestamp')
    try:
        timestamp = int(timestamp)
    except (TypeError, ValueError):
        raise MissingParameter('Timestamp must be an integer number of seconds')

    age = now - timestamp
    if age > replay_window:
        raise Expired('Request timestamp is outside the replay window')
    if max_future_skew is not None and -age > max_future_skew:
        raise Expired('Request timestamp is too far in the future')
    return timestamp


def expires_at(now, timestamp, replay_window):
    """When a record stops counting as a replay.

    A record lives for the replay window after whichever is later, its
    acceptance or its timestamp, so a request stamped ahead of the clock
    cannot be replayed once the window has passed since acceptance.
    """
    try:
        timestamp = int(timestamp)
    except (TypeError, ValueError):
        timestamp = now
    return max(now, timestamp) + replay_window


class MemoryNonceStore:
    """In-process nonce ledger.

    Expired entries are pruned on every call so memory stays bounded by
    the number of requests seen in one replay window.  A heap ordered by
    expiry keeps each prune proportional to what actually expired.
    """

    def __init__(self, replay_window=REPLAY_WINDOW_SECONDS, max_future_skew=None,
                 clock=time.time):
        self.replay_window = replay_window
        self.max_future_skew = max_future_skew
        self.clock = clock
        self._expires = {}  # nonce -> expires_at
        self._queue = []  # heap of (expires_at, nonce)
        self._lock = threading.Lock()

    def _prune(self, now):
        while self._queue and self._queue[0][0] < now:
            expires, nonce = heapq.heappop(self._queue)
            # stale entry when set_used has re-recorded the nonce since
            if self._expires.get(nonce) == expires:
                del self._expires[nonce]

    def _record(self, nonce, expires):
        self._expires[nonce] = expires
        heapq.heappush(self._queue, (expires, nonce))

    def is_new(self, nonce, timestamp):
        now = self.clock()
        timestamp = check_freshness(nonce, timestamp, now,
                                    self.replay_window, self.max_future_skew)
        with self._lock:
            self._prune(now)
            if nonce in self._expires:
                logger.warning('Replayed nonce rejected: %s', nonce)
                raise Replayed(f'Nonce {nonce!r} has already been used')
            self._record(nonce, expires_at(now, timestamp, self.replay_window))
        return True

    def set_used(self, nonce, timestamp):
        with self._lock:
            now = self.clock()
            self._prune(now)
            self._record(nonce, expires_at(now, timestamp, self.replay_window))

    def __len__(self):
        return len(self._expires)


class RedisNonceStore:
    """Nonce ledger shared through Redis.

    Each nonce is written with ``SET key value NX EX ttl`` so the
    check-and-set is one atomic command and Redis handles expiry.
    """

    key_prefix = 'lti-nonce:'

    def __init__(self, client, replay_window=REPLAY_WINDOW_SECONDS, max_future_skew=None,
                 clock=time.time):
        self.client = client
        self.replay_window = replay_window
        self.max_future_skew = max_future_skew
        self.clock = clock

    @classmethod
    def from_url(cls, url, timeout=2, **kwargs):
        client = redis.Redis.from_url(url, socket_timeout=timeout,
                                      socket_connect_timeout=timeout)
        return cls(client, **kwargs)

    def _key(self, nonce):
        return f'{self.key_prefix}{nonce}'

    def _set(self, nonce, timestamp, now, **options):
        ttl = max(1, math.ceil(expires_at(now, timestamp, self.replay_window) - now))
        try:
            return self.client.set(self._key(nonce), now, ex=ttl, **options)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            logger.error('Redis nonce store unreachable: %s', e)
            raise BackendUnavailable(f'Redis nonce store unreachable: {e}') from e

    def is_new(self, nonce, timestamp):
        now = self.clock()
        timestamp = check_freshness(nonce, timestamp, now,
                                    self.replay_window, self.max_future_skew)
        if not self._set(nonce, timestamp, now, nx=True):
            logger.warning('Replayed nonce rejected: %s', nonce)
            raise Replayed(f'Nonce {nonce!r} has already been used')
        return True

    def set_used(self, nonce, timestamp):
        self._set(nonce, timestamp, self.clock())


class SQLNonceStore:
    """Nonce ledger kept in the application database.

    Must be used inside a Flask application context.
    """

    def __init__(self, replay_window=REPLAY_WINDOW_SECONDS, max_future_skew=None,
                 clock=time.time):
        self.replay_window = replay_window
        self.max_future_skew = max_future_skew
        self.clock = clock

    def _prune(self, now):
        db.session.execute(
            delete(NonceRecord).where(NonceRecord.expires_at < now)
        )

    def _insert(self, nonce, timestamp, now):
        db.session.execute(
            insert(NonceRecord).values(
                nonce=nonce, timestamp=timestamp, used_at=now,
                expires_at=expires_at(now, timestamp, self.replay_window))
        )

    def is_new(self, nonce, timestamp):
        now = self.clock()
        timestamp = check_freshness(nonce, timestamp, now,
                                    self.replay_window, self.max_future_skew)
        try:
            self._prune(now)
            self._insert(nonce, timestamp, now)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.warning('Replayed nonce rejected: %s', nonce)
            raise Replayed(f'Nonce {nonce!r} has already been used')
        except OperationalError as e:
            db.session.rollback()
            raise BackendUnavailable(f'Nonce database unreachable: {e.orig}') from e
        return True

    def set_used(self, nonce, timestamp):
        now = self.clock()
        try:
            timestamp = int(timestamp)
        except (TypeError, ValueError):
            timestamp = int(now)
        try:
            self._prune(now)
            db.session.execute(delete(NonceRecord).where(NonceRecord.nonce == nonce))
            self._insert(nonce, timestamp, now)
            db.session.commit()
        except IntegrityError:
            # a concurrent writer recorded it first
            db.session.rollback()
        except OperationalError as e:
            db.session.rollback()
            raise BackendUnavailable(f'Nonce database unreachable: {e.orig}') from e


def create_nonce_store(config):
    """Build the nonce store selected by ``LTI_NONCE_BACKEND``."""
    backend = config.get('LTI_NONCE_BACKEND', 'memory')
    options = {
        'replay_window': config.get('LTI_REPLAY_WINDOW', REPLAY_WINDOW_SECONDS),
        'max_future_skew': config.get('LTI_MAX_FUTURE_SKEW'),
    }
    if backend == 'memory':
        return MemoryNonceStore(**options)
    if backend == 'redis':
        return RedisNonceStore.from_url(config['REDIS_URL'],
                                        timeout=config.get('REDIS_TIMEOUT', 2),
                                        **options)
    if backend == 'sql':
        return SQLNonceStore(**options)
    raise ValueError(f'Unknown nonce backend: {backend!r}')
