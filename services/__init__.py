"""
Services package for the multisig payout service.

This package contains the approval state machine, committee configuration,
on-chain structure discovery and the payout executor boundary.
"""
