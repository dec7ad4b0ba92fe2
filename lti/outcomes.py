"""
LTI Basic Outcomes Service - Grade Passback.

Sends grades (0.0 to 1.0) back to the LMS gradebook using the LTI Basic
Outcomes POX (Plain Old XML) protocol, and builds / parses the envelopes
used by the receiving side of that exchange.
"""

import time
import uuid
import urllib.parse
import xml.etree.ElementTree as ET
from xml.sax.saxutils import escape

import requests

from lti.errors import OutcomeResponseError, ParameterError
from lti.signature import body_hash, build_base_string, sign

POX_NAMESPACE = 'http://www.imsglobal.org/services/ltiv1p1/xsd/imsoms_v1p0'
OPERATIONS = ('replaceResult', 'readResult', 'deleteResult')


def _generate_oauth_params(consumer_key):
    """Generate base OAuth parameters for the outcomes request."""
    return {
        'oauth_consumer_key': consumer_key,
        'oauth_signature_method': 'HMAC-SHA1',
        'oauth_timestamp': str(int(time.time())),
        'oauth_nonce': uuid.uuid4().hex,
        'oauth_version': '1.0',
    }


def _local_name(tag):
    return tag.rsplit('}', 1)[-1]


def _find_text(root, name):
    """Text of the first element called ``name``, namespace ignored."""
    for element in root.iter():
        if _local_name(element.tag) == name:
            return (element.text or '').strip()
    return None


def validate_score(score):
    try:
        score = float(score)
    except (TypeError, ValueError):
        raise ParameterError('Score must be a number')
    if not 0.0 <= score <= 1.0:
        raise ParameterError('Score must be a floating point number >= 0 and <= 1')
    return score


def build_request_envelope(operation, sourcedid, score=None, message_id=None):
    """Build the POX request body for ``operation``.

    Args:
        operation: 'replaceResult', 'readResult' or 'deleteResult'
        sourcedid: The lis_result_sourcedid from the LTI launch
        score: Normalized score between 0.0 and 1.0 (replaceResult only)
    """
    message_id = message_id or uuid.uuid4().hex
    result = ''
    if score is not None:
        result = f'''
        <result>
          <resultScore>
            <language>en</language>
            <textString>{score}</textString>
          </resultScore>
        </result>'''
    return f'''<?xml version="1.0" encoding="UTF-8"?>
<imsx_POXEnvelopeRequest xmlns="{POX_NAMESPACE}">
  <imsx_POXHeader>
    <imsx_POXRequestHeaderInfo>
      <imsx_version>V1.0</imsx_version>
      <imsx_messageIdentifier>{message_id}</imsx_messageIdentifier>
    </imsx_POXRequestHeaderInfo>
  </imsx_POXHeader>
  <imsx_POXBody>
    <{operation}Request>
      <resultRecord>
        <sourcedGUID>
          <sourcedId>{escape(sourcedid)}</sourcedId>
        </sourcedGUID>{result}
      </resultRecord>
    </{operation}Request>
  </imsx_POXBody>
</imsx_POXEnvelopeRequest>'''


def parse_request_envelope(body):
    """Pull the fields the receiving endpoint needs out of a POX request.

    Returns:
        dict with operation, message_id, sourcedid and score (text or None)
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ParameterError(f'Malformed POX request: {e}')

    operation = None
    for element in root.iter():
        name = _local_name(element.tag)
        if name.endswith('Request') and name != 'imsx_POXEnvelopeRequest':
            operation = name[:-len('Request')]
            break

    return {
        'operation': operation,
        'message_id': _find_text(root, 'imsx_messageIdentifier') or '',
        'sourcedid': _find_text(root, 'sourcedId'),
        'score': _find_text(root, 'textString'),
    }


def build_response_envelope(code_major, description, operation, message_ref='',
                            severity='status', body=''):
    """Build a POX response envelope (success / failure / unsupported)."""
    return f'''<?xml version="1.0" encoding="UTF-8"?>
<imsx_POXEnvelopeResponse xmlns="{POX_NAMESPACE}">
  <imsx_POXHeader>
    <imsx_POXResponseHeaderInfo>
      <imsx_version>V1.0</imsx_version>
      <imsx_messageIdentifier>{uuid.uuid4().hex}</imsx_messageIdentifier>
      <imsx_statusInfo>
        <imsx_codeMajor>{code_major}</imsx_codeMajor>
        <imsx_severity>{severity}</imsx_severity>
        <imsx_description>{escape(description)}</imsx_description>
        <imsx_messageRefIdentifier>{escape(message_ref)}</imsx_messageRefIdentifier>
        <imsx_operationRefIdentifier>{escape(operation or '')}</imsx_operationRefIdentifier>
      </imsx_statusInfo>
    </imsx_POXResponseHeaderInfo>
  </imsx_POXHeader>
  <imsx_POXBody>{body}</imsx_POXBody>
</imsx_POXEnvelopeResponse>'''


def authorization_header(oauth_params):
    return 'OAuth ' + ', '.join(
        f'{urllib.parse.quote(k, safe="")}="{urllib.parse.quote(v, safe="")}"'
        for k, v in sorted(oauth_params.items())
    )


class OutcomeService:
    """Client for one result record on the LMS outcomes service."""

    def __init__(self, service_url, source_did, consumer_key, consumer_secret, timeout=10):
        self.service_url = service_url
        self.source_did = source_did
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.timeout = timeout

    def send_replace_result(self, score):
        score = validate_score(score)
        self._send('replaceResult',
                   build_request_envelope('replaceResult', self.source_did, score))
        return True

    def send_read_result(self):
        """Returns the stored score, or None when the LMS has none."""
        root = self._send('readResult',
                          build_request_envelope('readResult', self.source_did))
        text = _find_text(root, 'textString')
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            raise OutcomeResponseError(f'Invalid score in response: {text!r}')

    def send_delete_result(self):
        self._send('deleteResult',
                   build_request_envelope('deleteResult', self.source_did))
        return True

    def _signed_headers(self, xml_body):
        # LTI outcomes sign the body through oauth_body_hash
        oauth_params = _generate_oauth_params(self.consumer_key)
        oauth_params['oauth_body_hash'] = body_hash(xml_body)

        parsed = urllib.parse.urlsplit(self.service_url)
        params = {k: [v] for k, v in oauth_params.items()}
        for key, value in urllib.parse.parse_qsl(parsed.query, keep_blank_values=True):
            params.setdefault(key, []).append(value)

        base_string = build_base_string('POST', self.service_url, params)
        oauth_params['oauth_signature'] = sign(base_string, self.consumer_secret)
        return {
            'Content-Type': 'application/xml',
            'Authorization': authorization_header(oauth_params),
        }

    def _send(self, operation, xml_body):
        try:
            response = requests.post(
                self.service_url,
                data=xml_body.encode('utf-8'),
                headers=self._signed_headers(xml_body),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise OutcomeResponseError(f'Failed to reach outcomes service: {e}')

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError:
            raise OutcomeResponseError(
                f'LMS returned: {response.status_code} - {response.text[:200]}')

        code_major = _find_text(root, 'imsx_codeMajor')
        if code_major != 'success':
            description = _find_text(root, 'imsx_description') or ''
            raise OutcomeResponseError(f'{operation} failed ({code_major}): {description}')
        return root
