from __future__ import annotations


class PickupError(RuntimeError):
    pass


class ValidationError(PickupError, ValueError):
    pass


class NotFoundError(PickupError, LookupError):
    pass


class DuplicateTrackingError(PickupError):
    pass


class InvalidTransitionError(PickupError):
    pass


class ReportLinkConflict(PickupError):
    pass


class OtpError(PickupError):
    pass


class OtpInvalid(OtpError):
    pass


class OtpExpired(OtpError):
    pass


class OtpAlreadyConsumed(OtpError):
    pass


class OtpAttemptsExceeded(OtpError):
    pass


class NotificationDeliveryError(PickupError):
    """Delivery failed. Never fatal for the operation that triggered the message."""


class RecipientUnreachable(NotificationDeliveryError):
    """The transport has no address for this customer; retrying will not help."""


class QrGenerationError(PickupError):
    pass
