"""
Committee model for database operations.

A committee owns a multisig account. Only its inputs (signatory set and
threshold) are stored; the account address is always re-derived from them so
it can never drift from the configuration that produces it.
"""

from datetime import datetime, timezone
from typing import Optional

from db.database import db
from utils.multisig_utils import MultisigConfig, derive_multisig_address
from utils.ss58_utils import network_prefix


def _utcnow():
    return datetime.now(timezone.utc)


class Committee(db.Model):
    """Committee model for database operations."""

    __tablename__ = 'committees'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, nullable=False)
    network = db.Column(db.String, nullable=False, default='polkadot')
    parent_bounty_id = db.Column(db.Integer, nullable=True)
    curator_proxy_address = db.Column(db.String, nullable=True)
    multisig_signatories = db.Column(db.JSON, nullable=True)
    multisig_threshold = db.Column(db.Integer, nullable=True)
    approval_pattern = db.Column(db.String, nullable=False, default='combined')
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    approvals = db.relationship('ApprovalRequest', back_populates='committee')

    def __init__(self, name: str, network: str = 'polkadot', **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.network = network

    @property
    def ss58_prefix(self) -> int:
        return network_prefix(self.network)

    @property
    def is_configured(self) -> bool:
        return bool(self.multisig_signatories) and self.multisig_threshold is not None

    @property
    def multisig_config(self) -> Optional[MultisigConfig]:
        """The committee's ``MultisigConfig``, or None while unconfigured."""
        if not self.is_configured:
            return None
        return MultisigConfig(
            signatories=tuple(self.multisig_signatories),
            threshold=self.multisig_threshold,
            prefix=self.ss58_prefix
        )

    @property
    def multisig_address(self) -> Optional[str]:
        if not self.is_configured:
            return None
        return derive_multisig_address(self.multisig_signatories, self.multisig_threshold, self.ss58_prefix)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'network': self.network,
            'parentBountyId': self.parent_bounty_id,
            'curatorProxyAddress': self.curator_proxy_address,
            'multisig': {
                'address': self.multisig_address,
                'signatories': list(self.multisig_signatories or []),
                'threshold': self.multisig_threshold,
                'approvalPattern': self.approval_pattern,
            } if self.is_configured else None,
        }

    def __repr__(self) -> str:
        return f"<Committee(id={self.id}, name='{self.name}', network='{self.network}')>"
