"""Error taxonomy for the approval pipeline.

Skipped duplicates are not errors: ``ApprovalQueueManager.enqueue`` returns
``None`` for them.
"""

from typing import List, Optional


class TweetGateError(Exception):
    pass


class ValidationError(TweetGateError):
    """Malformed inbound decision payload, rejected at the boundary."""

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.details = list(details or [])


class NotFoundError(TweetGateError):
    """Decision references an approval id the store does not know."""

    def __init__(self, approval_id: str):
        super().__init__(f"No approval request found for id={approval_id}")
        self.approval_id = approval_id


class InvalidTransitionError(TweetGateError):
    pass


class ExecutorUnavailableError(TweetGateError):
    """Platform session handle could not be resolved (transient)."""


class ExecutionError(TweetGateError):
    """Terminal failure for one approval request. Recorded as status=Error."""

    def __init__(self, message: str, approval_id: Optional[str] = None):
        super().__init__(message)
        self.approval_id = approval_id


class StoreError(TweetGateError):
    """Durable store unreachable or rejected the request."""


class ModelError(TweetGateError):
    """Language-model call failed or returned an unusable payload."""
