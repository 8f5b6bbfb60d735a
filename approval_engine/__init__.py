"""
Waypoint Approval Engine

A workflow-driven approval state machine: multi-step requests snapshot their
workflow at submission, every action is authorized by role, steps carry SLA
deadlines, and every action lands in a hash-chained, append-only ledger.
"""

__version__ = "1.0.0"
