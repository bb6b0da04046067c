"""
Routes package for the multisig payout service.

Blueprints for milestone approvals and committee multisig configuration.
"""
