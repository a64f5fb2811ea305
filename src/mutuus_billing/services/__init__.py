"""
Billing services
"""
