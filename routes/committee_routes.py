# Committee multisig configuration and discovery routes

from flask import Blueprint

committee_bp = Blueprint('committees', __name__)

from flask import request, jsonify, current_app
from utils.error_handling import ResourceNotFoundError, ServiceUnavailableError, ValidationError
from utils.security_utils import rate_limit_api, validate_required_fields


def _committee_service():
    return current_app.extensions['committee_service']


def _discoverer():
    discoverer = current_app.extensions.get('structure_discoverer')
    if discoverer is None:
        raise ServiceUnavailableError('Chain discovery is not configured (set CHAIN_RPC_URL)')
    return discoverer


@committee_bp.route('/committees', methods=['POST'])
@rate_limit_api
def create_committee():
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ('name',))
    if not valid:
        raise ValidationError(error, 'MISSING_FIELDS')

    committee = _committee_service().create_committee(data['name'], data.get('network') or 'polkadot')
    return jsonify({'committee': committee.to_dict()}), 201


@committee_bp.route('/committees/<int:committee_id>', methods=['GET'])
@rate_limit_api
def get_committee(committee_id):
    committee = _committee_service().get_committee(committee_id)
    return jsonify({'committee': committee.to_dict()}), 200


@committee_bp.route('/committees/<int:committee_id>/multisig', methods=['PUT'])
@rate_limit_api
def configure_multisig(committee_id):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ('signatories', 'threshold'))
    if not valid:
        raise ValidationError(error, 'MISSING_FIELDS')

    signatories = data['signatories']
    if not isinstance(signatories, list):
        raise ValidationError('signatories must be a list of addresses', 'INVALID_SIGNATORIES')

    bounty_id = data.get('parentBountyId')
    if bounty_id is not None and (isinstance(bounty_id, bool) or not isinstance(bounty_id, int)):
        raise ValidationError('parentBountyId must be an integer')

    committee = _committee_service().configure_multisig(
        committee_id,
        signatories,
        data['threshold'],
        parent_bounty_id=bounty_id,
        approval_pattern=data.get('approvalPattern') or 'combined',
    )
    return jsonify({'committee': committee.to_dict()}), 200


@committee_bp.route('/committees/<int:committee_id>/approvals/pending', methods=['GET'])
@rate_limit_api
def pending_approvals(committee_id):
    _committee_service().get_committee(committee_id)
    service = current_app.extensions['approval_service']

    signatory = request.args.get('signatory')
    if signatory:
        approvals = service.pending_approvals_for_signatory(committee_id, signatory)
    else:
        approvals = service.pending_approvals_for_committee(committee_id)
    return jsonify({'approvals': [a.to_dict(include_votes=False) for a in approvals]}), 200


@committee_bp.route('/bounties/<int:bounty_id>/multisig', methods=['GET'])
@rate_limit_api
def discover_bounty_multisig(bounty_id):
    discoverer = _discoverer()
    if request.args.get('refresh', '').lower() == 'true':
        discoverer.invalidate(bounty_id)

    structure = discoverer.discover(bounty_id)
    if structure is None:
        raise ResourceNotFoundError(f"Bounty {bounty_id} not found or has no curator")

    response = {'structure': structure.to_dict()}
    if request.args.get('includePending', '').lower() == 'true':
        response['pendingCalls'] = [c.to_dict() for c in discoverer.pending_calls(structure.effective_multisig)]
    return jsonify(response), 200
