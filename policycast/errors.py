"""
Error taxonomy for the notification pipeline.

- ValidationError: malformed or duplicate inbound event (rejected, no retry)
- AdapterTransientError: network/timeout failure (retried with backoff)
- AdapterPermanentError: delivery can never succeed (task abandoned at once)
- LedgerWriteFault: durability layer unavailable (halts the pipeline)
- StateLocked: a second pipeline was started on a busy state directory
"""

from __future__ import annotations


class PolicycastError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(PolicycastError):
    """Static configuration is missing or invalid."""


class ValidationError(PolicycastError):
    """An inbound event payload was rejected."""

    def __init__(self, field: str, message: str, *, reason: str = "invalid"):
        self.field = field
        self.message = message
        self.reason = reason  # "invalid" | "missing" | "future" | "duplicate"
        super().__init__(f"{field}: {message}")


class InvalidTransition(PolicycastError):
    """A delivery task was moved to a status its current status does not allow."""


class AdapterError(PolicycastError):
    """Base class for channel transport failures."""


class AdapterTransientError(AdapterError):
    """Temporary transport failure; the attempt may be retried."""


class AdapterPermanentError(AdapterError):
    """Transport rejected the delivery; retrying cannot help."""


class LedgerWriteFault(PolicycastError):
    """The delivery ledger could not durably record an entry."""


class PipelineHalted(PolicycastError):
    """The pipeline stopped accepting events after a ledger write fault."""


class StateLocked(PolicycastError):
    """Another pipeline process already owns the state directory."""
