import threading
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from conftest import address
from models.approval import ApprovalPattern
from services.payout_service import (
    ExecutionResult,
    PayoutExecutor,
    PayoutRequest,
    SubstratePayoutExecutor,
    classify_chain_error,
    run_with_timeout,
)
from utils.error_handling import ChainError, ChainErrorKind
from utils.multisig_utils import build_multisig_config


def make_request(pattern=ApprovalPattern.COMBINED):
    return PayoutRequest(
        approval_id=1,
        milestone_id=42,
        final_signatory=address(2),
        multisig=build_multisig_config([address(1), address(2), address(3)], 2),
        recipient=address(0x20),
        amount=5_000_000_000,
        approval_pattern=pattern,
        call_hash='0x' + '00' * 32,
    )


@pytest.mark.parametrize('message,kind', [
    ('Inability to pay some fees (e.g. account balance too low)', ChainErrorKind.INSUFFICIENT_BALANCE),
    ('Balances.InsufficientBalance', ChainErrorKind.INSUFFICIENT_BALANCE),
    ('Multisig.AlreadyApproved', ChainErrorKind.ALREADY_APPROVED),
    ('Multisig.UnexpectedTimepoint', ChainErrorKind.TIMEPOINT_INVALID),
    ('Multisig.NoTimepoint', ChainErrorKind.TIMEPOINT_INVALID),
    ('Request timed out', ChainErrorKind.TRANSACTION_TIMEOUT),
    ('Cancelled by user', ChainErrorKind.USER_REJECTED),
    ('WebSocket connection closed', ChainErrorKind.NETWORK_ERROR),
    ('BadOrigin', ChainErrorKind.PERMISSION_DENIED),
    ('Multisig.MinimumThreshold', ChainErrorKind.THRESHOLD_NOT_MET),
    ('something completely different', ChainErrorKind.UNKNOWN),
    ('', ChainErrorKind.UNKNOWN),
    (None, ChainErrorKind.UNKNOWN),
])
def test_classify_chain_error(message, kind):
    assert classify_chain_error(message) == kind


def test_classification_order_prefers_balance():
    # Matches both the balance and the network pattern; balance is checked first
    assert classify_chain_error('network error: insufficient balance') == ChainErrorKind.INSUFFICIENT_BALANCE


def test_chain_error_status_codes():
    assert ChainError(ChainErrorKind.TRANSACTION_TIMEOUT).status_code == 504
    error = ChainError(ChainErrorKind.INSUFFICIENT_BALANCE)
    assert error.status_code == 502
    assert error.error_code == 'CHAIN_INSUFFICIENT_BALANCE'
    assert ChainError('network_error').kind is ChainErrorKind.NETWORK_ERROR


def test_execution_result_to_dict():
    assert ExecutionResult('0xabc', 12).to_dict() == {'txHash': '0xabc', 'blockNumber': 12}


class _StubExecutor(PayoutExecutor):
    def __init__(self, behaviour):
        self.behaviour = behaviour

    def submit(self, request):
        return self.behaviour(request)


class TestRunWithTimeout:
    """run_with_timeout bounds the chain call and normalises its errors."""

    def test_returns_result(self):
        executor = _StubExecutor(lambda r: ExecutionResult('0x01', 5))
        assert run_with_timeout(executor, make_request(), 1) == ExecutionResult('0x01', 5)

    def test_timeout(self):
        release = threading.Event()

        def stall(request):
            release.wait(5)
            return ExecutionResult('0x01')

        try:
            with pytest.raises(ChainError) as exc:
                run_with_timeout(_StubExecutor(stall), make_request(), 0.05)
            assert exc.value.kind is ChainErrorKind.TRANSACTION_TIMEOUT
        finally:
            release.set()

    def test_chain_error_passes_through(self):
        def fail(request):
            raise ChainError(ChainErrorKind.ALREADY_APPROVED, 'already approved')

        with pytest.raises(ChainError) as exc:
            run_with_timeout(_StubExecutor(fail), make_request(), 1)
        assert exc.value.kind is ChainErrorKind.ALREADY_APPROVED

    def test_unexpected_error_is_classified(self):
        def fail(request):
            raise RuntimeError('Balances.InsufficientBalance')

        with pytest.raises(ChainError) as exc:
            run_with_timeout(_StubExecutor(fail), make_request(), 1)
        assert exc.value.kind is ChainErrorKind.INSUFFICIENT_BALANCE


class TestSubstratePayoutExecutor:
    """Extrinsic composition against a mocked substrate-interface client."""

    def _executor(self, keypair=object()):
        executor = SubstratePayoutExecutor('ws://unused', keypair_resolver=lambda a: keypair)
        executor._substrate = MagicMock()
        executor._substrate.compose_call.side_effect = lambda **kw: kw
        return executor

    def test_combined_pattern_batches_remark(self):
        executor = self._executor()
        call = executor.compose_payout_call(make_request(ApprovalPattern.COMBINED))
        assert call['call_module'] == 'Utility'
        assert call['call_function'] == 'batch_all'
        transfer, remark = call['call_params']['calls']
        assert transfer['call_function'] == 'transfer_keep_alive'
        assert transfer['call_params'] == {'dest': address(0x20), 'value': 5_000_000_000}
        assert remark['call_params'] == {'remark': 'milestone:42'}

    def test_separated_pattern_is_bare_transfer(self):
        executor = self._executor()
        call = executor.compose_payout_call(make_request(ApprovalPattern.SEPARATED))
        assert call['call_module'] == 'Balances'

    def test_child_bounty_bundle(self):
        executor = self._executor()
        executor._substrate.query.return_value = MagicMock(value=7)
        request = replace(make_request(ApprovalPattern.SEPARATED), parent_bounty_id=3, curator=address(0x70))

        call = executor.compose_payout_call(request)

        assert call['call_function'] == 'batch_all'
        calls = call['call_params']['calls']
        assert [c['call_function'] for c in calls] == [
            'add_child_bounty', 'propose_curator', 'accept_curator', 'award_child_bounty', 'claim_child_bounty',
        ]
        assert all(c['call_module'] == 'ChildBounties' for c in calls)
        assert calls[0]['call_params'] == {'parent_bounty_id': 3, 'value': 5_000_000_000, 'description': 'Milestone 42'}
        assert calls[1]['call_params'] == {'parent_bounty_id': 3, 'child_bounty_id': 7,
                                           'curator': address(0x70), 'fee': 0}
        assert calls[3]['call_params']['beneficiary'] == address(0x20)
        assert all(c['call_params']['child_bounty_id'] == 7 for c in calls[1:])
        executor._substrate.query.assert_called_once_with('ChildBounties', 'ChildBountyCount')

    def test_child_bounty_combined_appends_remark(self):
        executor = self._executor()
        executor._substrate.query.return_value = MagicMock(value=0)
        request = replace(make_request(ApprovalPattern.COMBINED), parent_bounty_id=3)

        calls = executor.compose_payout_call(request)['call_params']['calls']

        assert len(calls) == 6
        assert calls[-1]['call_params'] == {'remark': 'milestone:42'}
        assert calls[1]['call_params']['curator'] == request.multisig.address

    def test_submit_success(self):
        executor = self._executor()
        receipt = MagicMock(is_success=True, extrinsic_hash='0xfeed', block_number=77)
        executor._substrate.submit_extrinsic.return_value = receipt

        result = executor.submit(make_request())

        assert result == ExecutionResult('0xfeed', 77)
        kwargs = executor._substrate.generate_multisig_account.call_args.kwargs
        assert kwargs['threshold'] == 2
        assert len(kwargs['signatories']) == 3

    def test_submit_failed_receipt(self):
        executor = self._executor()
        receipt = MagicMock(is_success=False, error_message={'name': 'InsufficientBalance'})
        executor._substrate.submit_extrinsic.return_value = receipt

        with pytest.raises(ChainError) as exc:
            executor.submit(make_request())
        assert exc.value.kind is ChainErrorKind.INSUFFICIENT_BALANCE

    def test_submit_without_key(self):
        executor = self._executor(keypair=None)
        with pytest.raises(ChainError) as exc:
            executor.submit(make_request())
        assert exc.value.kind is ChainErrorKind.PERMISSION_DENIED
