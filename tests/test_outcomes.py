import pytest
import requests

from helpers import launch_params
from lti import outcomes
from lti.auth import parse_authorization_header
from lti.errors import OutcomeResponseError, ParameterError
from lti.outcomes import (OutcomeService, build_request_envelope, build_response_envelope,
                          parse_request_envelope)
from lti.signature import body_hash, build_base_string, verify

SERVICE_URL = 'http://localhost/lti/outcomes'


class FakeResponse:
    def __init__(self, status_code, content):
        self.status_code = status_code
        self.content = content if isinstance(content, bytes) else content.encode('utf-8')
        self.text = self.content.decode('utf-8')


@pytest.fixture
def routed(client, monkeypatch):
    """Send outcomes requests to the app's own /lti/outcomes endpoint."""
    sent = []

    def post(url, data=None, headers=None, timeout=None):
        sent.append({'url': url, 'data': data, 'headers': headers, 'timeout': timeout})
        resp = client.post(url.replace('http://localhost', ''), data=data, headers=headers)
        return FakeResponse(resp.status_code, resp.data)

    monkeypatch.setattr(outcomes.requests, 'post', post)
    return sent


@pytest.fixture
def service():
    return OutcomeService(SERVICE_URL, 'sourced-1', 'key', 'secret')


def test_request_is_signed_with_body_hash(routed, service):
    service.send_replace_result(0.5)

    request = routed[0]
    params = parse_authorization_header(request['headers']['Authorization'])
    assert params['oauth_body_hash'] == body_hash(request['data'])
    base_string = build_base_string('POST', SERVICE_URL, params)
    assert verify(base_string, params['oauth_signature'], 'secret')
    assert request['timeout'] == 10


def test_replace_read_delete_round_trip(routed, service):
    assert service.send_read_result() is None
    assert service.send_replace_result(0.75) is True
    assert service.send_read_result() == 0.75
    assert service.send_delete_result() is True
    assert service.send_read_result() is None


@pytest.mark.parametrize('score', [-0.1, 1.1, 'abc', None])
def test_invalid_scores_are_rejected_before_sending(routed, service, score):
    with pytest.raises(ParameterError):
        service.send_replace_result(score)
    assert routed == []


def test_wrong_secret_is_refused_by_endpoint(routed):
    service = OutcomeService(SERVICE_URL, 'sourced-1', 'key', 'wrong')
    with pytest.raises(OutcomeResponseError, match='signature'):
        service.send_replace_result(0.5)


def test_replayed_outcomes_request_is_refused(routed, client, service):
    service.send_replace_result(0.5)
    request = routed[0]
    resp = client.post('/lti/outcomes', data=request['data'], headers=request['headers'])
    assert resp.status_code == 401
    assert b'<imsx_codeMajor>failure</imsx_codeMajor>' in resp.data


def test_tampered_body_is_refused(routed, client, service):
    service.send_replace_result(0.5)
    headers = routed[0]['headers']
    body = build_request_envelope('replaceResult', 'sourced-1', 1.0)
    resp = client.post('/lti/outcomes', data=body, headers=headers)
    assert resp.status_code == 401


def test_unsupported_operation(client):
    body = build_request_envelope('replaceResult', 'sourced-1', 0.5).replace(
        'replaceResultRequest', 'frobnicateResultRequest')
    service = OutcomeService(SERVICE_URL, 'sourced-1', 'key', 'secret')
    resp = client.post('/lti/outcomes', data=body.encode('utf-8'),
                       headers=service._signed_headers(body))
    assert resp.status_code == 200
    assert b'<imsx_codeMajor>unsupported</imsx_codeMajor>' in resp.data


def test_failure_response_raises(monkeypatch, service):
    failure = build_response_envelope('failure', 'The score provided is not valid',
                                      'replaceResult', severity='score')
    monkeypatch.setattr(outcomes.requests, 'post',
                        lambda *args, **kwargs: FakeResponse(403, failure))
    with pytest.raises(OutcomeResponseError, match='not valid'):
        service.send_replace_result(0.5)


def test_non_xml_response_raises(monkeypatch, service):
    monkeypatch.setattr(outcomes.requests, 'post',
                        lambda *args, **kwargs: FakeResponse(500, 'Internal Server Error'))
    with pytest.raises(OutcomeResponseError, match='500'):
        service.send_delete_result()


def test_transport_failure_raises(monkeypatch, service):
    def post(*args, **kwargs):
        raise requests.ConnectionError('connection refused')

    monkeypatch.setattr(outcomes.requests, 'post', post)
    with pytest.raises(OutcomeResponseError):
        service.send_read_result()


def test_parse_request_envelope():
    pox = parse_request_envelope(
        build_request_envelope('replaceResult', 'a&b', 0.25, message_id='m1'))
    assert pox == {'operation': 'replaceResult', 'message_id': 'm1',
                   'sourcedid': 'a&b', 'score': '0.25'}


def test_malformed_envelope_gets_pox_failure(client, service):
    body = '<imsx_POXEnvelopeRequest><unclosed>'
    resp = client.post('/lti/outcomes', data=body.encode('utf-8'),
                       headers=service._signed_headers(body))
    assert resp.status_code == 400
    assert resp.headers['Content-Type'] == 'application/xml'
    assert b'<imsx_codeMajor>failure</imsx_codeMajor>' in resp.data


# Grade passback from a stored launch

def _student_launch(app, **overrides):
    """Launch as a student from a separate browser and return the launch id."""
    params = launch_params(**overrides)
    return app.test_client().post('/lti/launch', data=params).get_json()['launch_id']


def _instructor_login(client, context_id='course-7'):
    params = launch_params(user_id='teacher-1', roles='Instructor', context_id=context_id)
    assert client.post('/lti/launch', data=params).status_code == 200


def test_grade_passback_for_stored_launch(app, client, monkeypatch):
    sent = []

    def post(url, data=None, headers=None, timeout=None):
        sent.append({'url': url, 'data': data})
        return FakeResponse(200, build_response_envelope(
            'success', 'Score updated', 'replaceResult'))

    monkeypatch.setattr(outcomes.requests, 'post', post)
    launch_id = _student_launch(app, lis_outcome_service_url='http://lms.example.com/grades')
    _instructor_login(client)

    resp = client.post(f'/lti/launch/{launch_id}/grade', json={'score': 0.9})
    assert resp.status_code == 200
    assert resp.get_json()['score'] == 0.9

    pox = parse_request_envelope(sent[0]['data'])
    assert sent[0]['url'] == 'http://lms.example.com/grades'
    assert pox['operation'] == 'replaceResult'
    assert pox['sourcedid'] == 'sourced-1'
    assert float(pox['score']) == 0.9


def test_grade_passback_requires_a_session(app, client, monkeypatch):
    monkeypatch.setattr(outcomes.requests, 'post', pytest.fail)
    launch_id = _student_launch(app)
    resp = client.post(f'/lti/launch/{launch_id}/grade', json={'score': 1.0})
    assert resp.status_code == 403


def test_students_cannot_send_grades(app, client, monkeypatch):
    monkeypatch.setattr(outcomes.requests, 'post', pytest.fail)
    launch_id = _student_launch(app)
    assert client.post('/lti/launch', data=launch_params(user_id='student-43')).status_code == 200
    resp = client.post(f'/lti/launch/{launch_id}/grade', json={'score': 1.0})
    assert resp.status_code == 403


def test_instructor_of_another_course_cannot_send_grades(app, client, monkeypatch):
    monkeypatch.setattr(outcomes.requests, 'post', pytest.fail)
    launch_id = _student_launch(app)
    _instructor_login(client, context_id='course-8')
    resp = client.post(f'/lti/launch/{launch_id}/grade', json={'score': 1.0})
    assert resp.status_code == 403


@pytest.mark.parametrize('payload', [[1], 'text', 0.5])
def test_grade_payload_must_be_an_object(app, client, payload):
    launch_id = _student_launch(app)
    _instructor_login(client)
    resp = client.post(f'/lti/launch/{launch_id}/grade', json=payload)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'ParameterError'


def test_grade_passback_without_outcome_service(app, client):
    launch_id = _student_launch(app, lis_outcome_service_url='', lis_result_sourcedid='')
    _instructor_login(client)
    resp = client.post(f'/lti/launch/{launch_id}/grade', json={'score': 0.9})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'ParameterError'


def test_grade_passback_unknown_launch(client):
    _instructor_login(client)
    assert client.post('/lti/launch/999/grade', json={'score': 0.5}).status_code == 404
