"""
Escrow Error Taxonomy
Every failure the engine reports to the command layer is one of these classes
"""

from typing import Optional


class EscrowError(Exception):
    """Base class for all escrow engine errors"""

    retryable = False
    default_user_message = "❌ Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None, **context):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message
        self.context = context


class ValidationError(EscrowError):
    """Malformed or out-of-range input; reported immediately, never retried"""

    default_user_message = "❌ Invalid input."


class NotYetAvailable(EscrowError):
    """Transaction not yet confirmed on chain; the requester may retry later"""

    retryable = True
    default_user_message = "⏳ Transaction is not confirmed yet. Please try again in a minute."


class ResourceExhausted(EscrowError):
    """A finite resource is used up; surfaced as 'try later'"""

    retryable = True
    default_user_message = "⏳ All trade rooms are busy right now. Please try again later."


class NoChannelsAvailable(ResourceExhausted):
    """No channel in the pool is available for lease"""


class DuplicateReference(EscrowError):
    """Transaction reference already consumed by a trade; permanent rejection"""

    default_user_message = "❌ This transaction has already been used."

    def __init__(self, tx_ref: str, owner_trade_id: Optional[str] = None, **kwargs):
        super().__init__(
            f"Transaction reference {tx_ref} already consumed"
            + (f" by trade {owner_trade_id}" if owner_trade_id else ""),
            **kwargs,
        )
        self.tx_ref = tx_ref
        self.owner_trade_id = owner_trade_id


class ConflictingState(EscrowError):
    """Record changed underneath the caller or is in the wrong state for the step"""

    retryable = True
    default_user_message = "⚠️ This trade changed in the meantime. Please try again."

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_status = current_status


class ExternalCallFailure(EscrowError):
    """Chain or fund-movement call failed after retries; needs operator attention"""

    retryable = True
    default_user_message = "⚠️ An external service failed. An administrator has been notified."

    def __init__(self, message: str, service: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.service = service


class PermissionDenied(EscrowError):
    """Actor does not hold the role required for this step"""

    default_user_message = "❌ You are not allowed to do this."


class TradeNotFound(EscrowError):
    """No trade with the given identifier"""

    default_user_message = "❌ No active trade found."
