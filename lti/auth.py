"""
LTI 1.0/1.1 OAuth 1.0a Authentication Module.

Validates incoming LTI requests (tool launches from the LMS and
grade-passback POX callbacks) by verifying the OAuth 1.0a signature with
the shared consumer secret and consuming the request nonce.
"""

import hmac
import urllib.parse
from functools import wraps

from flask import abort, current_app, session
from werkzeug.http import parse_dict_header

from lti.errors import ParameterError, SignatureError
from lti.signature import body_hash, build_base_string, verify

LAUNCH_MESSAGE_TYPE = 'basic-lti-launch-request'
LTI_VERSIONS = ('LTI-1p0', 'LTI-1p2')


def consumer_secret(consumer_key):
    """Look up the shared secret for ``consumer_key``."""
    consumers = {current_app.config['LTI_KEY']: current_app.config['LTI_SECRET']}
    consumers.update(current_app.config.get('LTI_CONSUMERS') or {})
    if not consumer_key or consumer_key not in consumers:
        raise SignatureError('Unknown consumer key')
    return consumers[consumer_key]


def request_url(req):
    """Rebuild the public URL the consumer signed.

    Behind a reverse proxy (ngrok / Heroku) the internal req.url is
    http://127.0.0.1:5000/... but the LMS signed against the *public*
    HTTPS URL.
    """
    scheme = req.headers.get('X-Forwarded-Proto',
                             req.headers.get('X-Forwarded-Scheme',
                                             req.scheme))
    host = req.headers.get('X-Forwarded-Host',
                           req.headers.get('Host', req.host))
    # Proxy chains send comma separated lists; the first hop is the client's
    scheme = scheme.split(',')[0].strip()
    host = host.split(',')[0].strip()
    return f'{scheme}://{host}{req.path}'


def parse_authorization_header(value):
    """Extract the OAuth parameters from an ``Authorization: OAuth`` header."""
    if not value or not value[:6].lower() == 'oauth ':
        return {}
    params = {}
    for key, item in parse_dict_header(value[6:]).items():
        key = urllib.parse.unquote(key.strip())
        if key == 'realm' or item is None:
            continue
        params[key] = urllib.parse.unquote(item)
    return params


def collect_params(req):
    """All signed parameters of a request, as name -> list of values.

    Query string, form body and Authorization header all take part in
    the signature.
    """
    params = {}
    for source in (req.args, req.form):
        for key, values in source.lists():
            params.setdefault(key, []).extend(values)
    header = parse_authorization_header(req.headers.get('Authorization', ''))
    for key, value in header.items():
        params.setdefault(key, []).append(value)
    return params


def _first(params, key):
    values = params.get(key)
    return values[0] if values else None


def _flatten(params):
    return {key: values[0] for key, values in params.items() if values}


def _authenticate(req, params, nonce_store):
    """Verify the signature, then consume the nonce."""
    consumer_key = _first(params, 'oauth_consumer_key')
    secret = consumer_secret(consumer_key)

    if _first(params, 'oauth_signature_method') != 'HMAC-SHA1':
        raise SignatureError('Unsupported oauth_signature_method')

    signature = _first(params, 'oauth_signature')
    if not signature:
        raise SignatureError('Missing oauth_signature')

    url = request_url(req)
    base_string = build_base_string(req.method, url, params)
    if not verify(base_string, signature, secret):
        current_app.logger.warning(
            f'Invalid OAuth signature from consumer {consumer_key!r} for {url}')
        raise SignatureError()

    # Only signed requests get to consume a nonce
    if nonce_store is None:
        nonce_store = current_app.extensions['lti_nonce_store']
    nonce_store.is_new(_first(params, 'oauth_nonce'), _first(params, 'oauth_timestamp'))


def validate_lti_request(req, nonce_store=None):
    """Validate an incoming LTI launch request.

    Returns the launch parameters (first value of each) or raises an
    ``LTIError`` describing why the launch was rejected.
    """
    params = collect_params(req)

    if _first(params, 'lti_message_type') != LAUNCH_MESSAGE_TYPE:
        raise ParameterError('Invalid LTI message type')
    if _first(params, 'lti_version') not in LTI_VERSIONS:
        raise ParameterError('Invalid LTI version')
    if not _first(params, 'resource_link_id'):
        raise ParameterError('Missing resource_link_id')

    _authenticate(req, params, nonce_store)
    return _flatten(params)


def validate_outcomes_request(req, nonce_store=None):
    """Validate a grade-passback POX request signed with ``oauth_body_hash``.

    Returns the OAuth parameters.
    """
    params = collect_params(req)

    provided_hash = _first(params, 'oauth_body_hash')
    if not provided_hash:
        raise SignatureError('Missing oauth_body_hash')
    expected_hash = body_hash(req.get_data())
    if not hmac.compare_digest(expected_hash.encode('utf-8'),
                               provided_hash.encode('utf-8')):
        raise SignatureError('Body hash does not match the request body')

    _authenticate(req, params, nonce_store)
    return _flatten(params)


def extract_lti_user_data(params):
    """Extract user information from LTI launch parameters.

    Returns:
        dict with user_id, name, email, role, outcome data
    """
    # LMSs send roles like 'Instructor', 'Learner', or URN-based roles
    # like 'urn:lti:role:ims/lis/Instructor'
    roles_str = params.get('roles', '')
    roles = [r.strip() for r in roles_str.split(',') if r.strip()]
    is_instructor = any(
        r in roles_str.lower()
        for r in ['instructor', 'administrator', 'teachingassistant',
                   'contentdeveloper', 'mentor']
    )

    return {
        'lti_user_id': params.get('user_id', ''),
        'name': params.get('lis_person_name_full',
                           params.get('lis_person_name_given', 'Unknown')),
        'email': params.get('lis_person_contact_email_primary', ''),
        'roles': roles,
        'role': 'instructor' if is_instructor else 'student',
        'consumer_key': params.get('oauth_consumer_key', ''),
        'context_id': params.get('context_id', ''),
        'resource_link_id': params.get('resource_link_id', ''),
        'outcome_service_url': params.get('lis_outcome_service_url', ''),
        'result_sourcedid': params.get('lis_result_sourcedid', ''),
    }


def start_lti_session(lti_launch, user_data):
    """Bind the accepted launch to the Flask session."""
    session['lti_launch_id'] = lti_launch.id
    session['user_id'] = user_data['lti_user_id']
    session['role'] = user_data['role']
    session['consumer_key'] = user_data['consumer_key']
    session['context_id'] = user_data['context_id']
    session.modified = True


def require_instructor(f):
    """Decorator to ensure the user is an instructor."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'lti_launch_id' not in session:
            abort(403, description='No active LTI session. Please launch from your LMS.')
        if session.get('role') != 'instructor':
            abort(403, description='Instructor access required.')
        return f(*args, **kwargs)
    return decorated
