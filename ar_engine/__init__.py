"""
A/R Aging & Collections Engine

Classifies patient-account balances into aging buckets, drives the collection
status machine, evaluates configured collection rules and amortizes payment
plans, with a hash-chained audit trail for every transition.
"""

__version__ = "1.0.0"
