"""
LTI Routes.

Handles the LTI launch POST from the LMS, grade passback for stored
launches, and a receiving outcomes endpoint for POX grade callbacks.
"""

from flask import Blueprint, request, jsonify, current_app, make_response, session, abort
from models.database import db, LTILaunch, OutcomeResult
from lti.auth import (validate_lti_request, validate_outcomes_request,
                      extract_lti_user_data, consumer_secret,
                      start_lti_session, require_instructor)
from lti.errors import LTIError, NonceError, ParameterError, SignatureError
from lti.outcomes import (OutcomeService, OPERATIONS, build_response_envelope,
                          parse_request_envelope, validate_score)

lti_bp = Blueprint('lti', __name__)


def _pox_response(code_major, description, operation, message_ref='',
                  severity='status', body='', status=200):
    resp = make_response(build_response_envelope(
        code_major, description, operation, message_ref, severity, body), status)
    resp.headers['Content-Type'] = 'application/xml'
    return resp


@lti_bp.route('/lti/launch', methods=['POST'])
def launch():
    """Handle LTI launch from the LMS."""
    params = validate_lti_request(request)
    user_data = extract_lti_user_data(params)

    # Store launch for grade passback
    lti_launch = LTILaunch(
        consumer_key=user_data['consumer_key'],
        lti_user_id=user_data['lti_user_id'],
        roles=','.join(user_data['roles']),
        context_id=user_data['context_id'],
        resource_link_id=user_data['resource_link_id'],
        outcome_service_url=user_data['outcome_service_url'],
        result_sourcedid=user_data['result_sourcedid'],
    )
    db.session.add(lti_launch)
    db.session.commit()
    start_lti_session(lti_launch, user_data)

    current_app.logger.info(
        f'LTI launch {lti_launch.id} for user {user_data["lti_user_id"]!r} '
        f'({user_data["role"]})')
    return jsonify(launch_id=lti_launch.id, **user_data)


@lti_bp.route('/lti/launch/<int:launch_id>/grade', methods=['POST'])
@require_instructor
def send_grade(launch_id):
    """Send a grade for a stored launch back to the LMS.

    Only an instructor launched into the same course may grade it.
    """
    lti_launch = db.get_or_404(LTILaunch, launch_id)
    if (lti_launch.consumer_key != session.get('consumer_key')
            or lti_launch.context_id != session.get('context_id')):
        abort(403, description='Launch belongs to another course.')
    if not lti_launch.can_pass_back:
        raise ParameterError('No outcome URL or sourcedid available (grade passback not configured)')

    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form
    if not isinstance(payload, dict):
        raise ParameterError('Expected an object with a score')
    score = validate_score(payload.get('score'))

    service = OutcomeService(
        lti_launch.outcome_service_url,
        lti_launch.result_sourcedid,
        lti_launch.consumer_key,
        consumer_secret(lti_launch.consumer_key),
        timeout=current_app.config['OUTCOMES_TIMEOUT'],
    )
    service.send_replace_result(score)
    current_app.logger.info(f'Grade {score} sent for launch {launch_id}')
    return jsonify(launch_id=launch_id, score=score)


@lti_bp.route('/lti/outcomes', methods=['POST'])
def outcomes():
    """Receive a signed POX grade-passback request."""
    try:
        validate_outcomes_request(request)
    except (SignatureError, NonceError) as e:
        current_app.logger.warning(f'Outcomes request rejected: {e.kind}: {e.message}')
        return _pox_response('failure', e.message, 'signature',
                             severity='signature', status=e.status_code)

    try:
        pox = parse_request_envelope(request.get_data())
    except ParameterError as e:
        return _pox_response('failure', e.message, 'undefined',
                             severity='error', status=400)
    operation, message_ref = pox['operation'], pox['message_id']

    if operation not in OPERATIONS:
        operation = operation or 'undefined'
        return _pox_response('unsupported', f'{operation}Request is not supported',
                             operation, message_ref)
    if not pox['sourcedid']:
        return _pox_response('failure', 'Missing sourcedId', operation, message_ref,
                             status=400)

    if operation == 'replaceResult':
        try:
            score = validate_score(pox['score'])
        except LTIError as e:
            return _pox_response('failure', e.message, operation, message_ref,
                                 severity='error', status=400)
        result = db.session.get(OutcomeResult, pox['sourcedid'])
        if result is None:
            result = OutcomeResult(sourcedid=pox['sourcedid'], score=score)
            db.session.add(result)
        else:
            result.score = score
        db.session.commit()
        return _pox_response('success', f'The score for {pox["sourcedid"]} is now {score}',
                             operation, message_ref,
                             body='<replaceResultResponse/>')

    if operation == 'readResult':
        result = db.session.get(OutcomeResult, pox['sourcedid'])
        text = '' if result is None else str(result.score)
        body = ('<readResultResponse><result><resultScore>'
                f'<language>en</language><textString>{text}</textString>'
                '</resultScore></result></readResultResponse>')
        return _pox_response('success', 'Result read', operation, message_ref, body=body)

    result = db.session.get(OutcomeResult, pox['sourcedid'])
    if result is not None:
        db.session.delete(result)
        db.session.commit()
    return _pox_response('success', 'Result deleted', operation, message_ref,
                         body='<deleteResultResponse/>')
