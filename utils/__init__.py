"""Utility modules: SS58 addresses, multisig derivation, errors, audit logging."""
