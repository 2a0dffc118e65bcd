"""
Custom exception hierarchy for the signal auto-close engine.

Hierarchy:

    AutoCloseError (base)
    ├── OperationalError       transient (store unreachable, transport down)
    │   └── DeliveryError      notification transport failed
    └── DataError              bad input or bad state, surfaced to caller
        ├── NotFoundError      signal / position / notification / job missing
        ├── ValidationError    payload outside declared ranges
        └── InvalidTransitionError signal state machine violation

Rules:
    - Single-entity operations raise these directly to the caller.
    - Batch operations catch per-unit failures, record them in the result's
      ``errors`` list and continue with the next unit.
    - DeliveryError is terminalized on the notification record (FAILED),
      never retried in-line.
    - Everything else (AttributeError, TypeError, store outages): let it
      propagate. The host scheduler owns retries.
"""


class AutoCloseError(Exception):
    """Base exception for all engine errors."""
    pass


# ============ OPERATIONAL (transient) ============

class OperationalError(AutoCloseError):
    """Transient error: persistence store, network, timeouts."""
    pass


class DeliveryError(OperationalError):
    """A notification transport could not deliver a notification.

    Treatment: mark the notification FAILED, log, continue.
    """
    pass


# ============ DATA (bad input / bad state) ============

class DataError(AutoCloseError):
    """Bad input or an entity in the wrong state."""
    pass


class NotFoundError(DataError):
    """Raised when a signal, position, notification or job does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ValidationError(DataError):
    """Raised when a payload is outside its declared ranges."""
    pass


class InvalidTransitionError(DataError):
    """Raised when a signal transition does not start from an allowed state."""

    def __init__(self, signal_id: str, current: str, target: str):
        self.signal_id = signal_id
        self.current = current
        self.target = target
        super().__init__(f"Signal {signal_id} cannot move from {current} to {target}")
