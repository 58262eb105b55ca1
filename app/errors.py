class TicketingError(Exception):
    """Base class for errors raised by the fulfillment and redemption engine."""


class ReferenceNotFound(TicketingError):
    """A confirmation or admin call names an event, ticket type or order that does not exist.

    Fatal for that request: re-sending the same payload cannot succeed,
    somebody has to fix the catalogue or refund the payment.
    """

    def __init__(self, kind: str, ref_id: str):
        super().__init__(f"{kind} {ref_id!r} not found")
        self.kind = kind
        self.ref_id = ref_id


class TransientStoreError(TicketingError):
    """The store could not be reached or aborted the statement. Retryable."""


class NotificationFailure(TicketingError):
    """The ticket email could not be handed to the mail transport."""


class ProcessorError(TicketingError):
    """The payment processor rejected or failed a checkout session request."""
