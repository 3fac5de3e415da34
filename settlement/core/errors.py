from __future__ import annotations


class SettlementError(Exception):
    """Base class for errors raised by the settlement core."""


class ValidationError(SettlementError):
    """Inbound payload rejected before any side effect."""


class TransientDependencyError(SettlementError):
    """An external collaborator (store, processor, mailer) failed."""


class DocumentStoreError(TransientDependencyError):
    pass


class PaymentGatewayError(TransientDependencyError):
    pass


class NotificationError(TransientDependencyError):
    pass


class OrderCreationError(SettlementError):
    """The primary order write failed; the sender should retry the whole event."""


class OrderNotFound(SettlementError):
    pass
