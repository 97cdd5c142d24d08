"""
Error taxonomy shared by every outreach module.

Routes translate these into JSON responses; duplicate delivery events are
absorbed by the tracker and never raise.
"""


class OutreachError(Exception):
    """Base class for engine errors."""

    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        payload = {'error': self.message, 'type': type(self).__name__}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(OutreachError):
    """Malformed input, rejected before any state change."""

    status_code = 400


class NotFound(OutreachError):
    status_code = 404


class InvalidTransition(OutreachError):
    """Illegal lifecycle move; the current state is left unchanged."""

    status_code = 409


class EmptyAudience(InvalidTransition):
    """The resolved recipient set is empty, so the campaign cannot send."""


class ResolutionFailure(OutreachError):
    """Recipient or segment evaluation could not complete."""

    status_code = 503


class DeliveryFailure(OutreachError):
    """The transport rejected a single recipient."""

    status_code = 502
