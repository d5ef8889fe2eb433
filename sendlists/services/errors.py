"""Service-layer exceptions. The API maps these onto HTTP status codes."""

from typing import Optional


class SendListsError(Exception):
    """Base class for domain errors raised by the services."""


class NotFoundError(SendListsError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class InvalidEmailError(SendListsError):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Invalid email address: {email!r}")


class DuplicateRoundListError(SendListsError):
    def __init__(self, round_number: int, existing_list_id: str):
        self.round_number = round_number
        self.existing_list_id = existing_list_id
        super().__init__(f"Round {round_number} already has an active list ({existing_list_id})")


class ContactStateError(SendListsError):
    """Illegal contact status transition."""


class ExternalServiceError(SendListsError):
    """A delivery provider / recommender / notifier call failed after its retry."""

    def __init__(self, service: str, message: str, retryable: bool = True, original: Optional[Exception] = None):
        self.service = service
        self.retryable = retryable
        self.original = original
        super().__init__(f"{service}: {message}")


class PlanValidationError(SendListsError):
    """A recommendation plan is malformed or violates list invariants."""


class MaintenanceInProgressError(SendListsError):
    def __init__(self, list_id: str):
        self.list_id = list_id
        super().__init__(f"A maintenance run is already in progress for list {list_id}")
