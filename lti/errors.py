"""
LTI Error Types.

Every failure raised by the signature engine, the nonce stores and the
request authenticator derives from ``LTIError``.  Each kind carries the HTTP
status the routes answer with, so the web layer never has to guess.
"""


class LTIError(Exception):
    """Base class for all LTI authentication errors."""
    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__

    @property
    def kind(self):
        return type(self).__name__


class ParameterError(LTIError):
    """Required LTI launch parameter missing or malformed."""
    status_code = 400


class SignatureError(LTIError):
    """The OAuth signature provided is not valid."""
    status_code = 401


class NonceError(LTIError):
    """The request nonce was rejected."""
    status_code = 401


class MissingParameter(NonceError):
    """Nonce or timestamp missing."""


class Expired(NonceError):
    """Request timestamp is outside the replay window."""


class Replayed(NonceError):
    """Nonce has already been used."""


class InvalidConfiguration(LTIError):
    """Consumer secret is not configured."""
    status_code = 500


class StoreError(LTIError):
    """Nonce store failure."""
    status_code = 503


class BackendUnavailable(StoreError):
    """Nonce store backend could not be reached."""


class OutcomeResponseError(LTIError):
    """Outcomes service did not accept the request."""
    status_code = 502
