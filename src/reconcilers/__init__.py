"""
Reconcilers - the control loops driving claims, managed resources,
connection secrets and the readiness gate toward their desired state.
"""

from reconcilers.base import Reconciler, Request, Result

__all__ = [
    "Reconciler",
    "Request",
    "Result",
]
