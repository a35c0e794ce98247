"""
Redpanda Reconciler - level-triggered control loops for Redpanda clusters.

Remediates Pods stuck in Pending on node-bound local volumes (PVC unbinder)
and keeps the resources rendered for a Redpanda cluster in sync, including
readiness aggregation and garbage collection of orphaned children.
"""

__version__ = "0.9.0"
