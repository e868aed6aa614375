"""
Error taxonomy for the deposit flow.

Every error raised by the orchestration layer derives from DepositError and
belongs to exactly one category:

- ValidationError: bad input or unmet preconditions, raised before any
  external call and never retried
- UserRejectedError: the user declined a prompt (signing, chain switch, abort)
- TransientError: an external system is not ready yet or timed out; retried
  with a bounded policy at the step level
- FatalError: malformed responses and invariant violations; the whole flow
  stops immediately
"""

from __future__ import annotations


class DepositError(Exception):
    """Base class for all deposit flow errors."""

    user_message: str | None = None

    def display_message(self) -> str:
        """Message suitable for showing to the user."""
        return self.user_message or str(self)


class ValidationError(DepositError):
    """Input or precondition check failed."""


class InsufficientFundsError(ValidationError):
    """Confirmed funds do not cover the deposit and its fees."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient confirmed funds: need {required:,} sats, have {available:,} sats"
        )


class SplitUnreachableError(ValidationError):
    """No two-way split leaves both vault shares above the minimum."""


class NonPositiveOutputError(ValidationError):
    """Fee computation leaves an output with zero or negative value."""


class UserRejectedError(DepositError):
    """The user declined a wallet prompt."""


class ChainSwitchRejectedError(UserRejectedError):
    """The wallet refused to switch to the expected contract chain."""

    def __init__(self, chain_id: int, reason: str = ""):
        self.chain_id = chain_id
        self.user_message = f"Please switch your wallet network to chain {chain_id}"
        detail = f": {reason}" if reason else ""
        super().__init__(f"Chain switch to {chain_id} rejected{detail}")


class FlowAbortedError(UserRejectedError):
    """The deposit flow was cancelled between steps."""


class TransientError(DepositError):
    """An external system is not ready; the operation can be retried."""


class ProviderNotReadyError(TransientError):
    """The vault provider has not prepared the requested data yet."""


class ConfirmationTimeoutError(TransientError):
    """A transaction was not confirmed within the allowed time."""


class RetryExhaustedError(TransientError):
    """A bounded retry policy gave up."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        message = f"{operation} did not succeed after {attempts} attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class FatalError(DepositError):
    """Unrecoverable error; the flow stops immediately."""


class MalformedResponseError(FatalError):
    """An external system returned data that cannot be interpreted."""


class InvariantViolationError(FatalError):
    """An internal invariant does not hold."""


class TransactionDroppedError(FatalError):
    """A submitted contract transaction was dropped or replaced."""


class TerminalProviderError(FatalError):
    """The vault provider reported an error that will never resolve."""


class UtxoNotAvailableError(FatalError):
    """Inputs of a transaction were spent before it could be signed."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        subject = "The output" if len(missing) == 1 else f"{len(missing)} outputs"
        verb = "is" if len(missing) == 1 else "are"
        self.user_message = (
            f"{subject} funding this deposit {verb} no longer available. "
            "Please start a new deposit."
        )
        super().__init__(f"Inputs already spent: {', '.join(missing)}")


class StoreError(DepositError):
    """Pending-deposit persistence failed."""


class StatusRegressionError(StoreError):
    """A pending record status would move backward."""
