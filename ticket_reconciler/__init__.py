"""
Multi-source Ticket Reconciler.

This package reconciles tickets from a first-line helpdesk, a mid-tier
service desk and an engineering issue tracker into one canonical store with
L1-L4 support levels, a movement history and an escalation ledger.
"""

__version__ = "1.0.0"
