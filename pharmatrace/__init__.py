"""
PharmaTrace - pharmaceutical supply-chain provenance.

Off-chain projection of ledger batch tokens plus authenticity verification.
"""

__version__ = "0.1.0"
