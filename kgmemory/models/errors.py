"""
Error taxonomy shared by the version store, the search engine and the service adapters.
"""

from typing import Optional


class KnowledgeGraphError(Exception):
    """Base class for every error raised by the knowledge graph core."""
    pass


class NotFoundError(KnowledgeGraphError):
    """No current version exists for the requested logical key."""
    pass


class DuplicateKeyError(KnowledgeGraphError):
    """A current version already exists for the logical key being created."""
    pass


class DanglingEndpointError(KnowledgeGraphError):
    """A relation references an endpoint entity that is not current."""
    pass


class ValidationError(KnowledgeGraphError):
    """Malformed input, e.g. an empty name or an out-of-range strength."""
    pass


class InconsistentStateError(KnowledgeGraphError):
    """A stored invariant was found violated at read time (e.g. two current versions)."""
    pass


class UpstreamFailure(KnowledgeGraphError):
    """A backing store, embedding service or index call failed.

    Carries the operation and the logical key involved so that callers can decide
    whether and how to retry.
    """

    def __init__(self, message: str, operation: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.key = key


class VersionConflictError(UpstreamFailure):
    """Concurrent writers kept superseding the version a read-modify-write started from."""
    pass
