"""
OAuth 1.0a HMAC-SHA1 Signature Engine.

Builds the signature base string for an HTTP request and signs / verifies
it with the shared consumer secret.  Everything here is a pure function of
its arguments, so it is safe to call from any number of request threads.
"""

import base64
import hashlib
import hmac
import urllib.parse

from lti.errors import InvalidConfiguration

DEFAULT_PORTS = {'http': 80, 'https': 443}


def percent_encode(value):
    """RFC 3986 percent-encoding (unreserved characters stay as-is)."""
    if isinstance(value, bytes):
        value = value.decode('utf-8')
    return urllib.parse.quote(str(value), safe='~')


def normalize_url(url):
    """Reduce a request URL to ``scheme://host[:port]/path``.

    Scheme and host are lower-cased, default ports dropped, the query
    string and fragment stripped.
    """
    parsed = urllib.parse.urlsplit(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or '').lower()
    if ':' in host:
        host = f'[{host}]'  # IPv6 literal
    port = parsed.port
    if port and port != DEFAULT_PORTS.get(scheme):
        host = f'{host}:{port}'
    return f'{scheme}://{host}{parsed.path or "/"}'


def _pairs(parameters):
    for key, values in parameters.items():
        if key == 'oauth_signature':
            continue
        if values is None:
            values = ['']
        elif isinstance(values, (str, bytes, int, float)):
            values = [values]
        for value in values:
            yield percent_encode(key), percent_encode(value)


def normalize_parameters(parameters):
    """Sort and join the encoded ``key=value`` pairs with ``&``.

    Multi-valued parameters contribute one pair per value; pairs are
    ordered by encoded key, then encoded value.
    """
    return '&'.join(f'{k}={v}' for k, v in sorted(_pairs(parameters)))


def build_base_string(method, url, parameters):
    """Build the OAuth signature base string.

    Format: METHOD&url_encoded_url&url_encoded_params
    """
    return '&'.join([
        method.upper(),
        percent_encode(normalize_url(url)),
        percent_encode(normalize_parameters(parameters)),
    ])


def signing_key(consumer_secret, token_secret=''):
    if consumer_secret is None:
        raise InvalidConfiguration('A consumer secret is required to sign requests')
    return f'{percent_encode(consumer_secret)}&{percent_encode(token_secret or "")}'


def sign(base_string, consumer_secret, token_secret=''):
    """Generate the base64 HMAC-SHA1 signature of ``base_string``."""
    hashed = hmac.new(
        signing_key(consumer_secret, token_secret).encode('utf-8'),
        base_string.encode('utf-8'),
        hashlib.sha1
    )
    return base64.b64encode(hashed.digest()).decode('utf-8')


def verify(base_string, provided_signature, consumer_secret, token_secret=''):
    """Check ``provided_signature`` against a freshly computed one.

    The comparison runs in constant time.
    """
    expected = sign(base_string, consumer_secret, token_secret)
    if not provided_signature:
        return False
    return hmac.compare_digest(expected.encode('utf-8'),
                               provided_signature.encode('utf-8'))


def body_hash(body):
    """``oauth_body_hash`` value for a raw request body."""
    if isinstance(body, str):
        body = body.encode('utf-8')
    return base64.b64encode(hashlib.sha1(body).digest()).decode('utf-8')


class SignatureRequest:
    """The inputs of one signature computation."""

    def __init__(self, method, url, parameters, consumer_secret, token_secret=''):
        self.method = method.upper()
        self.url = url
        self.parameters = parameters
        self.consumer_secret = consumer_secret
        self.token_secret = token_secret or ''

    def base_string(self):
        return build_base_string(self.method, self.url, self.parameters)

    def sign(self):
        return sign(self.base_string(), self.consumer_secret, self.token_secret)

    def verify(self, signature):
        return verify(self.base_string(), signature,
                      self.consumer_secret, self.token_secret)

    def __repr__(self):
        return f'<SignatureRequest {self.method} {self.url}>'
