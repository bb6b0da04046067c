"""
Payout executor boundary.

The approval engine never talks to the chain client directly: once a request
has enough approvals it hands a ``PayoutRequest`` to a ``PayoutExecutor`` and
gets back either an ``ExecutionResult`` or a ``ChainError`` whose ``kind`` is
one of the closed ``ChainErrorKind`` values.
"""

import logging
import re
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Optional

from models.approval import ApprovalPattern, Timepoint
from utils.error_handling import ChainError, ChainErrorKind
from utils.multisig_utils import MultisigConfig


logger = logging.getLogger(__name__)


# Checked in order; the first match wins.
_CHAIN_ERROR_PATTERNS = [
    (ChainErrorKind.INSUFFICIENT_BALANCE, re.compile(
        r'insufficient ?balance|not enough funds|balance too low|funds ?unavailable|inability to pay some fees',
        re.IGNORECASE)),
    (ChainErrorKind.ALREADY_APPROVED, re.compile(
        r'already ?approved|duplicate approval|already voted', re.IGNORECASE)),
    (ChainErrorKind.TIMEPOINT_INVALID, re.compile(
        r'invalid.*timepoint|timepoint.*invalid|missing timepoint|unexpected ?timepoint|no ?timepoint|wrong ?timepoint',
        re.IGNORECASE)),
    (ChainErrorKind.TRANSACTION_TIMEOUT, re.compile(
        r'timeout|timed out|failed to extract timepoint', re.IGNORECASE)),
    (ChainErrorKind.USER_REJECTED, re.compile(
        r'user rejected|cancelled by user|denied by user|^cancelled$', re.IGNORECASE)),
    (ChainErrorKind.NETWORK_ERROR, re.compile(
        r'network error|connection (failed|refused|closed|reset)|disconnected|websocket', re.IGNORECASE)),
    (ChainErrorKind.PERMISSION_DENIED, re.compile(
        r'not authori[sz]ed|unauthori[sz]ed|permission denied|access denied|bad ?origin|not ?owner|not a signatory',
        re.IGNORECASE)),
    (ChainErrorKind.THRESHOLD_NOT_MET, re.compile(
        r'threshold not met|not enough approvals|minimum ?threshold', re.IGNORECASE)),
]


def classify_chain_error(message: Any) -> ChainErrorKind:
    """Map a raw chain-client error message onto ``ChainErrorKind``."""
    text = str(message or '').strip()
    for kind, pattern in _CHAIN_ERROR_PATTERNS:
        if pattern.search(text):
            return kind
    return ChainErrorKind.UNKNOWN


@dataclass(frozen=True)
class ExecutionResult:
    tx_hash: str
    block_number: Optional[int] = None

    def to_dict(self) -> dict:
        return {'txHash': self.tx_hash, 'blockNumber': self.block_number}


@dataclass(frozen=True)
class PayoutRequest:
    """Everything the chain client needs to submit the final approval."""
    approval_id: int
    milestone_id: int
    final_signatory: str
    multisig: MultisigConfig
    recipient: str
    amount: int
    approval_pattern: ApprovalPattern
    call_hash: str
    call_data: Optional[str] = None
    timepoint: Optional[Timepoint] = None
    parent_bounty_id: Optional[int] = None
    curator: Optional[str] = None
    curator_fee: int = 0


class PayoutExecutor(ABC):
    """Submits the final multisig approval of a payout."""

    @abstractmethod
    def submit(self, request: PayoutRequest) -> ExecutionResult:
        """
        Submit the payout call.

        Raises:
            ChainError: on any failure, with the kind classified
        """


def run_with_timeout(executor: PayoutExecutor, request: PayoutRequest, timeout: float) -> ExecutionResult:
    """
    Run ``executor.submit`` bounded by ``timeout`` seconds.

    A timeout raises ``ChainError(transaction_timeout)``. The submission thread
    is abandoned, not killed, so the call may still land on chain later.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='payout-submit')
    future = pool.submit(executor.submit, request)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        logger.warning("Payout submission for approval %s timed out after %ss", request.approval_id, timeout)
        raise ChainError(ChainErrorKind.TRANSACTION_TIMEOUT, f"Payout submission timed out after {timeout}s")
    except ChainError:
        raise
    except Exception as e:
        logger.exception("Payout executor raised an unexpected error")
        raise ChainError(classify_chain_error(e), str(e))
    finally:
        pool.shutdown(wait=False)


class SubstratePayoutExecutor(PayoutExecutor):
    """
    ``PayoutExecutor`` that submits ``as_multi`` through substrate-interface.

    The final signatory's keypair is obtained from ``keypair_resolver``; key
    custody lives outside this service.
    """

    def __init__(
        self,
        url: str,
        keypair_resolver: Callable[[str], Any],
        ss58_format: int = 0,
        max_weight: Optional[dict] = None
    ):
        self.url = url
        self.keypair_resolver = keypair_resolver
        self.ss58_format = ss58_format
        self.max_weight = max_weight or {'ref_time': 10_000_000_000, 'proof_size': 1_000_000}
        self._substrate = None

    @property
    def substrate(self):
        if self._substrate is None:
            from substrateinterface import SubstrateInterface
            self._substrate = SubstrateInterface(url=self.url, ss58_format=self.ss58_format)
        return self._substrate

    def next_child_bounty_id(self) -> int:
        """Index the runtime will assign to the next child bounty."""
        return int(self.substrate.query('ChildBounties', 'ChildBountyCount').value)

    def _child_bounty_calls(self, request: PayoutRequest) -> list:
        parent = request.parent_bounty_id
        child = self.next_child_bounty_id()
        curator = request.curator or request.multisig.address
        return [
            self.substrate.compose_call(
                call_module='ChildBounties',
                call_function='add_child_bounty',
                call_params={'parent_bounty_id': parent, 'value': request.amount,
                             'description': f'Milestone {request.milestone_id}'}
            ),
            self.substrate.compose_call(
                call_module='ChildBounties',
                call_function='propose_curator',
                call_params={'parent_bounty_id': parent, 'child_bounty_id': child,
                             'curator': curator, 'fee': request.curator_fee}
            ),
            self.substrate.compose_call(
                call_module='ChildBounties',
                call_function='accept_curator',
                call_params={'parent_bounty_id': parent, 'child_bounty_id': child}
            ),
            self.substrate.compose_call(
                call_module='ChildBounties',
                call_function='award_child_bounty',
                call_params={'parent_bounty_id': parent, 'child_bounty_id': child,
                             'beneficiary': request.recipient}
            ),
            self.substrate.compose_call(
                call_module='ChildBounties',
                call_function='claim_child_bounty',
                call_params={'parent_bounty_id': parent, 'child_bounty_id': child}
            ),
        ]

    def compose_payout_call(self, request: PayoutRequest):
        """
        Build the call the multisig approves.

        With a parent bounty the payout is a child bounty that is created,
        curated, awarded and claimed in one ``batch_all``. Without one it is a
        plain ``transfer_keep_alive`` from the multisig account. The combined
        pattern appends a milestone remark to either.
        """
        if request.parent_bounty_id is not None:
            calls = self._child_bounty_calls(request)
        else:
            calls = [self.substrate.compose_call(
                call_module='Balances',
                call_function='transfer_keep_alive',
                call_params={'dest': request.recipient, 'value': request.amount}
            )]

        if request.approval_pattern == ApprovalPattern.COMBINED:
            calls.append(self.substrate.compose_call(
                call_module='System',
                call_function='remark',
                call_params={'remark': f'milestone:{request.milestone_id}'}
            ))

        if len(calls) == 1:
            return calls[0]
        return self.substrate.compose_call(
            call_module='Utility',
            call_function='batch_all',
            call_params={'calls': calls}
        )

    def submit(self, request: PayoutRequest) -> ExecutionResult:
        from substrateinterface.exceptions import SubstrateRequestException

        keypair = self.keypair_resolver(request.final_signatory)
        if keypair is None:
            raise ChainError(ChainErrorKind.PERMISSION_DENIED,
                             f"No signing key available for {request.final_signatory}")

        try:
            call = self.compose_payout_call(request)
            multisig_account = self.substrate.generate_multisig_account(
                signatories=list(request.multisig.signatories),
                threshold=request.multisig.threshold
            )
            extrinsic = self.substrate.create_multisig_extrinsic(
                call=call,
                keypair=keypair,
                multisig_account=multisig_account,
                max_weight=self.max_weight
            )
            receipt = self.substrate.submit_extrinsic(extrinsic, wait_for_inclusion=True)
        except SubstrateRequestException as e:
            raise ChainError(classify_chain_error(e), str(e))
        except (ConnectionError, TimeoutError) as e:
            raise ChainError(ChainErrorKind.NETWORK_ERROR, str(e))

        if not receipt.is_success:
            message = str(receipt.error_message)
            raise ChainError(classify_chain_error(message), message)

        logger.info("Payout for approval %s included in extrinsic %s", request.approval_id, receipt.extrinsic_hash)
        return ExecutionResult(
            tx_hash=receipt.extrinsic_hash,
            block_number=getattr(receipt, 'block_number', None)
        )
