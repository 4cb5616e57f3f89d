"""Error taxonomy for the checkout funnel.

A not-qualified address is not an error: it is a terminal business outcome
and is expressed as a step, never raised.
"""

from __future__ import annotations


class FunnelError(Exception):
    """Base class for all funnel errors."""

    #: Message safe to show to the person filling in the funnel.
    user_message = "Something went wrong. Please try again."

    #: Partial state a failed step still keeps (e.g. a confirmed payment).
    state_update: dict | None = None

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(FunnelError):
    """User-entered fields are missing or malformed. Never reaches the network."""

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message, user_message=message)
        self.field = field


class CollaboratorError(FunnelError):
    """An external call failed or returned an error payload."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        collaborator: str,
        user_message: str | None = None,
    ):
        super().__init__(message, user_message=user_message)
        self.collaborator = collaborator


class AddressNotFound(CollaboratorError):
    """The geocoder answered definitively that the address does not exist."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(
            message,
            collaborator="geocoder",
            user_message="We couldn't find that address.",
        )


class PaymentDeclined(CollaboratorError):
    """The payment provider confirmed the payment with a non-success status."""

    def __init__(self, message: str, *, status: str):
        super().__init__(
            message,
            collaborator="payments",
            user_message="Your payment was not completed. Please check your card details and try again.",
        )
        self.status = status


class IllegalTransitionError(FunnelError):
    """A handler tried to move the funnel along an edge that doesn't exist."""

    def __init__(self, source: str, target: str, reason: str = "no such edge"):
        super().__init__(f"Illegal transition {source} -> {target}: {reason}")
        self.source = source
        self.target = target


class StepMismatchError(FunnelError):
    """The client submitted a form for a step the session is no longer on."""

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"Submitted for step {expected!r} but session is on {actual!r}",
            user_message="This page is out of date. Please continue from the current step.",
        )
        self.expected = expected
        self.actual = actual


class SubmissionInFlightError(FunnelError):
    """A submission for this session is still waiting on an external call."""

    user_message = "We're still working on your last request."


class SessionExpiredError(FunnelError):
    """The session outlived its expiration window and was reset."""

    user_message = "Your session expired. Please enter your address again."


class AlreadyCustomerError(FunnelError):
    """The lead behind this signup already completed an order."""

    user_message = (
        "This email already has an order with us. "
        "Please contact support to change or add service."
    )

    def __init__(self, lead_id: int):
        super().__init__(f"Lead {lead_id} was already converted to a customer")
        self.lead_id = lead_id
