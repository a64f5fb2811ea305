"""
Mutuus Billing - premium subscriptions, community points and job commissions
kept in sync with Stripe
"""

__version__ = "0.1.0"
