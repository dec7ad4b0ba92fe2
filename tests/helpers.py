"""Shared test helpers."""

import time
import uuid

from lti.signature import build_base_string, sign

LAUNCH_URL = 'http://localhost/lti/launch'


def launch_params(url=LAUNCH_URL, secret='secret', **overrides):
    """A launch form signed like an LMS would sign it."""
    params = {
        'lti_message_type': 'basic-lti-launch-request',
        'lti_version': 'LTI-1p0',
        'resource_link_id': 'link-1',
        'user_id': 'student-42',
        'roles': 'Learner',
        'context_id': 'course-7',
        'lis_person_name_full': 'Sam Student',
        'lis_outcome_service_url': 'http://lms.example.com/outcomes',
        'lis_result_sourcedid': 'sourced-1',
        'oauth_consumer_key': 'key',
        'oauth_signature_method': 'HMAC-SHA1',
        'oauth_timestamp': str(int(time.time())),
        'oauth_nonce': uuid.uuid4().hex,
        'oauth_version': '1.0',
    }
    params.update(overrides)
    params['oauth_signature'] = sign(build_base_string('POST', url, params), secret)
    return params
