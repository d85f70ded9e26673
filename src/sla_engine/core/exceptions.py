"""
Core Exceptions
================

Error hierarchy for the SLA engine. Every error carries a human message and
a `details` dict; the HTTP layer picks the status code from the class.
"""

from typing import Optional


class ApplicationException(Exception):
    """Root of every error the engine raises on purpose."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details) if details else {}


class DomainException(ApplicationException):
    """A ticket or calendar rule was violated."""


class RepositoryException(ApplicationException):
    """Storage rejected a read or write (including stale optimistic-lock writes)."""


class ValidationException(ApplicationException):
    """Input is well-formed but inconsistent, e.g. a gap in the escalation matrix."""


class ResourceNotFoundException(ApplicationException):
    """Lookup by id found nothing."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        label = f"{resource_type} '{resource_id}'" if resource_id else resource_type
        super().__init__(f"{label} not found", details)


class ExternalServiceException(ApplicationException):
    """A collaborator (user directory, notification service) failed."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class PolicyNotFoundError(ResourceNotFoundException):
    """SLA policy is missing, inactive, or has no target for a priority."""

    def __init__(self, policy_id: Optional[str], reason: Optional[str] = None):
        details = {"policy_id": policy_id}
        if reason:
            details["reason"] = reason
        self.reason = reason
        super().__init__("SLA policy", policy_id, details)


class TicketNotFoundError(ResourceNotFoundException):
    """Ticket does not exist."""

    def __init__(self, ticket_id: str):
        super().__init__("Ticket", ticket_id, {"ticket_id": ticket_id})


class InvalidTransitionError(DomainException):
    """Attempted status edge is not part of the ticket lifecycle graph."""

    def __init__(self, ticket_id: str, from_status: str, to_status: str):
        self.ticket_id = ticket_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Ticket {ticket_id} cannot move from {from_status} to {to_status}",
            {"ticket_id": ticket_id, "from_status": from_status, "to_status": to_status}
        )


class TicketLockedError(DomainException):
    """Ticket was locked by an escalation and refuses manual reassignment."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(
            f"Ticket {ticket_id} is locked by escalation",
            {"ticket_id": ticket_id}
        )


class CalendarResolutionError(DomainException):
    """Business calendar cannot produce an open instant (e.g. no open hours)."""


class NotificationDeliveryFailed(ExternalServiceException):
    """Notification could not be handed to the notification service."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Service", message, details)
