"""Quorum MySQL Reconciler (QMR).

Reconciliation core of an operator that runs a self-healing MySQL fleet on
Kubernetes:
 - desired pod template built from the cluster spec
 - idempotent create-or-update of the fleet StatefulSet
 - leader-last rolling restarts gated on pod health

A consensus sidecar (xenon) elects the leader; this package only reads the
labels it publishes.
"""
