"""
Loan Origination Core

Credit application lifecycle (status state machine with an append-only
history) and the loan calculation engine (French amortization, CAT) used
to simulate, counter-offer and approve consumer loans.
"""

__version__ = "1.0.0"
