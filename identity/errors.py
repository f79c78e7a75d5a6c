"""Error taxonomy for identity resolution and disclosure writes.

Resolution failures (NotFound, AmbiguousMatch) are recoverable: read paths
degrade to the safest display. Write failures are rejected with a reason.
"""


class IdentityError(Exception):
    """Base class; ``reason`` is safe to show to the caller."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class NotFound(IdentityError, LookupError):
    pass


class AmbiguousMatch(IdentityError, LookupError):
    def __init__(self, reason, candidate_ids=None):
        super().__init__(reason)
        self.candidate_ids = list(candidate_ids or [])


class InvalidVisibility(IdentityError, ValueError):
    pass


class InvalidScope(IdentityError, ValueError):
    pass


class PropagationLimitExceeded(IdentityError):
    def __init__(self, reason, parent_invite_id=None):
        super().__init__(reason)
        self.parent_invite_id = parent_invite_id
