"""
Error taxonomy shared by the reconcilers.

Not-found responses are absorbed by the store's read helpers; everything
raised from here propagates to the driver, which retries the whole pass.
"""

from typing import List

from kubernetes.client.rest import ApiException


class ReconcileError(Exception):
    """Base class for errors raised out of a reconcile pass."""


class PolicyViolation(ReconcileError):
    """An upstream invariant was broken (should be unreachable)."""


class UnknownKindError(ReconcileError):
    """The API server does not serve the requested kind (e.g. missing CRD)."""

    def __init__(self, api_version: str, kind: str):
        super().__init__(f"{api_version}/{kind} is not served by the API server")
        self.api_version = api_version
        self.kind = kind


class WaitForReleaseDeletion(ReconcileError):
    """The companion HelmRelease is still being deleted."""


class AdminAPIError(ReconcileError):
    """The Redpanda admin API could not be queried."""


class GarbageCollectionError(ReconcileError):
    """One or more orphaned children could not be deleted."""

    def __init__(self, errors: List[Exception]):
        super().__init__("; ".join(str(e) for e in errors))
        self.errors = errors


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    """Conflicts cover both stale resourceVersions and failed UID preconditions."""
    return isinstance(exc, ApiException) and exc.status == 409
