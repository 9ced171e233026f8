import logging

from chairbook.models import Booking

logger = logging.getLogger(__name__)


class PaymentGateway:
    """Boundary to the payment collaborator.

    Charges and refunds happen elsewhere; the collaborator reports back
    through the booking payment signal. This default only records the calls.
    """

    def register_booking(self, booking: Booking) -> None:
        logger.info("Payment charge requested for booking %s (%.2f)", booking.uid, booking.price)

    def refund(self, booking: Booking, reason: str) -> bool:
        """Ask for a refund; return True once the collaborator reports it complete."""
        logger.info("Refund requested for booking %s payment %s: %s", booking.uid, booking.payment_id, reason or "-")
        return True


payment_gateway = PaymentGateway()
