"""
NGO donation payments.

ECPay checkout signing, callback verification and order reconciliation
for the NGO donation platform.
"""

__version__ = "1.0.0"
