"""
Error hierarchy for the dispatch backend.

Per-item errors are trapped inside a run and reported in its summary.
DataStoreUnavailableError is the one that ends a run early.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base exception for all dispatch operations."""


class TemplatePayloadError(DispatchError):
    """The template and the item's variables cannot form a provider payload."""


class DeliveryError(DispatchError):
    """The client refused the delivery before contacting the provider."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class DataStoreError(DispatchError):
    """A data-store read or write failed."""


class DataStoreUnavailableError(DataStoreError):
    """The store could not be reached at all."""


class ProcedureError(DataStoreError):
    """A named database procedure rejected the call."""

    def __init__(self, procedure: str, message: str):
        self.procedure = procedure
        super().__init__(f"{procedure}: {message}")


class VersionConflictError(ProcedureError):
    """The expected version did not match; the row changed concurrently."""

    def __init__(self, conversation_id: str, expected_version: int):
        self.conversation_id = conversation_id
        self.expected_version = expected_version
        super().__init__(
            "assign_conversation",
            f"version conflict on {conversation_id} (expected {expected_version})",
        )


class ConversationNotFoundError(ProcedureError):
    """The conversation no longer matches the procedure's predicate."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__("assign_conversation", f"conversation {conversation_id} not found or not assignable")
