"""
Caseflow

Data-driven case workflow engine: per-category state machines with
role-based authorization, optimistic concurrency, a hash-chained audit
trail and SLA escalation.
"""

__version__ = "1.0.0"
