# /autoreply/utils/errors.py

from typing import Optional

# Exception taxonomy shared by the resolver, the decision engine and the
# persistence layer. Business outcomes (no knowledge base, disabled, after
# hours) are Decisions, not exceptions.


class AutoReplyError(Exception):
    """Base class for all errors raised by the auto-reply core."""


class ValidationError(AutoReplyError, ValueError):
    """Input rejected before any state was read or written (e.g. a malformed field path)."""


class NotFoundError(AutoReplyError, LookupError):
    """A knowledge base or configuration record does not exist."""


class GenerationFailed(AutoReplyError):
    """
    The text-generation collaborator errored, timed out, or produced nothing usable.
    Callers must not send a fabricated or empty reply.
    """

    def __init__(self, reason: str, knowledge_base_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.knowledge_base_id = knowledge_base_id


class PersistenceError(AutoReplyError):
    """A database read or write failed."""


class VersionConflictError(PersistenceError):
    """The record changed between read and write (optimistic concurrency miss)."""
