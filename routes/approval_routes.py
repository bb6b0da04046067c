# Milestone approval routes

from flask import Blueprint

approval_bp = Blueprint('approvals', __name__)

from flask import request, jsonify, current_app
from models.approval import Timepoint
from utils.error_handling import ResourceNotFoundError, ValidationError
from utils.security_utils import rate_limit_api, validate_required_fields
from utils.ss58_utils import decode_address


def _service():
    return current_app.extensions['approval_service']


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('JSON data required')
    return data


def _require(data, *fields):
    valid, error = validate_required_fields(data, fields)
    if not valid:
        raise ValidationError(error, 'MISSING_FIELDS')


def _parse_int(value, name):
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _parse_timepoint(value):
    if value is None:
        return None
    if not isinstance(value, dict) or 'height' not in value or 'index' not in value:
        raise ValidationError('timepoint must be an object with height and index')
    return Timepoint(_parse_int(value['height'], 'timepoint.height'), _parse_int(value['index'], 'timepoint.index'))


def _approval_for_milestone(milestone_id, approval_id):
    approval = _service().get_approval(approval_id)
    if approval.milestone_id != milestone_id:
        raise ResourceNotFoundError(f"Approval {approval_id} not found for milestone {milestone_id}")
    return approval


@approval_bp.route('/milestones/<int:milestone_id>/approvals', methods=['POST'])
@rate_limit_api
def initiate_approval(milestone_id):
    data = _json_body()
    _require(data, 'committeeId', 'recipientAddress', 'payoutAmount', 'initiatorAddress')

    result = _service().initiate(
        committee_id=_parse_int(data['committeeId'], 'committeeId'),
        milestone_id=milestone_id,
        recipient_address=data['recipientAddress'],
        amount=data['payoutAmount'],
        initiator_address=data['initiatorAddress'],
        approval_pattern=data.get('approvalPattern'),
        call_hash=data.get('callHash'),
        call_data=data.get('callData'),
        timepoint=_parse_timepoint(data.get('timepoint')),
        tx_hash=data.get('txHash'),
    )

    return jsonify({
        'approval': result.approval.to_dict(),
        'result': {
            'vote': result.vote.to_dict(),
            'thresholdMet': result.threshold_met,
        }
    }), 201


@approval_bp.route('/milestones/<int:milestone_id>/approvals', methods=['GET'])
@rate_limit_api
def get_milestone_approval(milestone_id):
    approval = _service().get_approval_for_milestone(milestone_id)
    if approval is None:
        return jsonify({'error': 'No approval found for this milestone', 'error_code': 'NOT_FOUND'}), 404
    return jsonify({'approval': approval.to_dict()}), 200


@approval_bp.route('/milestones/<int:milestone_id>/approvals/<int:approval_id>/progress', methods=['GET'])
@rate_limit_api
def approval_progress(milestone_id, approval_id):
    _approval_for_milestone(milestone_id, approval_id)
    return jsonify({'progress': _service().progress(approval_id)}), 200


@approval_bp.route('/milestones/<int:milestone_id>/approvals/<int:approval_id>/can-vote', methods=['GET'])
@rate_limit_api
def approval_can_vote(milestone_id, approval_id):
    _approval_for_milestone(milestone_id, approval_id)
    address = request.args.get('address')
    if not address:
        raise ValidationError('address query parameter is required', 'MISSING_FIELDS')
    return jsonify(_service().can_vote(approval_id, address).to_dict()), 200


@approval_bp.route('/milestones/<int:milestone_id>/approvals/<int:approval_id>/vote', methods=['POST'])
@rate_limit_api
def cast_vote(milestone_id, approval_id):
    data = _json_body()
    _require(data, 'signatoryAddress')
    signatory = data['signatoryAddress']
    decode_address(signatory)

    service = _service()
    _approval_for_milestone(milestone_id, approval_id)

    eligibility = service.can_vote(approval_id, signatory)
    if not eligibility.can_vote:
        return jsonify({
            'error': eligibility.reason or 'Cannot vote',
            'error_code': 'CANNOT_VOTE',
            'canVote': False,
            'reason': eligibility.reason,
        }), 403

    result = service.vote(approval_id, signatory, data.get('decision') or 'approve', data.get('txHash'))
    approval = service.get_approval(approval_id)

    return jsonify({
        'approval': approval.to_dict(),
        'vote': result.vote.to_dict(),
        'thresholdMet': result.threshold_met,
    }), 200


@approval_bp.route('/milestones/<int:milestone_id>/approvals/<int:approval_id>/execute', methods=['POST'])
@rate_limit_api
def execute_approval(milestone_id, approval_id):
    data = _json_body()
    _require(data, 'finalSignatoryAddress')

    service = _service()
    _approval_for_milestone(milestone_id, approval_id)

    execution = service.execute(approval_id, data['finalSignatoryAddress'])
    approval = service.get_approval(approval_id)

    return jsonify({
        'approval': approval.to_dict(),
        'execution': execution.to_dict(),
    }), 200


@approval_bp.route('/milestones/<int:milestone_id>/approvals/<int:approval_id>/cancel', methods=['POST'])
@rate_limit_api
def cancel_approval(milestone_id, approval_id):
    data = _json_body()
    _require(data, 'signatoryAddress')

    service = _service()
    _approval_for_milestone(milestone_id, approval_id)

    approval = service.cancel(approval_id, data['signatoryAddress'])
    return jsonify({'approval': approval.to_dict()}), 200
