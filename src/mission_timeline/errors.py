from __future__ import annotations


class TimelineError(Exception):
    """Base class for every error raised by the timeline model and its engine."""


class InvalidSpan(TimelineError):
    """Raised when a span has start > end (or a NaN bound)."""


class ContainmentViolation(InvalidSpan):
    """Raised when containment is enforced and a child span leaves its parent's span."""


class OutOfRange(TimelineError):
    """Raised when a decision branch index does not exist."""


class EmptyBranch(TimelineError):
    """Raised when a duration is requested for a decision whose selected branch has no members."""


class DanglingReference(TimelineError):
    """Raised when removing a node would orphan a group, link or branch pointer."""

    def __init__(self, node_id: str, referrers: list[str]):
        self.node_id = node_id
        self.referrers = referrers
        super().__init__(f"Node '{node_id}' is still referenced by {referrers}")


class UnknownNode(TimelineError):
    """Raised when a node id is not present in the timeline."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Unknown node '{node_id}'")


class DuplicateNode(TimelineError):
    """Raised when creating a node with an id that is already taken."""


class InvalidBranchMember(TimelineError):
    """Raised when a decision branch names something other than an activity."""


class QueryError(TimelineError):
    """Base class for aggregation query failures."""


class EmptyQuerySpan(QueryError):
    """Raised when a query window has start > end."""


class QueryAborted(QueryError):
    """Raised when the caller asked a running query to stop."""


class WrongNodeKind(TimelineError):
    """Raised when an operation for activities is applied to a decision, or the other way round."""
