"""Typed failures shared by the wallet, transfer and quest services."""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    SELF_TRANSFER = "self_transfer"
    CHAIN_SUBMISSION_FAILURE = "chain_submission_failure"
    CHAIN_CONFIRMATION_FAILURE = "chain_confirmation_failure"
    TIMEOUT = "timeout"
    ALREADY_OPENED = "already_opened"
    NOT_ELIGIBLE = "not_eligible"
    NOTHING_TO_CLAIM = "nothing_to_claim"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"


class AuraError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(AuraError):
    kind = ErrorKind.INVALID_INPUT


class InsufficientBalanceError(AuraError):
    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, attempted: str, available: str, symbol: Optional[str] = None):
        unit = f" {symbol}" if symbol else ""
        super().__init__(f"Insufficient balance. You have {available}{unit} but tried to send {attempted}{unit}.")
        self.attempted = attempted
        self.available = available


class SelfTransferError(AuraError):
    kind = ErrorKind.SELF_TRANSFER


class ChainSubmissionError(AuraError):
    kind = ErrorKind.CHAIN_SUBMISSION_FAILURE


class ChainConfirmationError(AuraError):
    kind = ErrorKind.CHAIN_CONFIRMATION_FAILURE


class ChainTimeoutError(AuraError):
    kind = ErrorKind.TIMEOUT


class AlreadyOpenedError(AuraError):
    kind = ErrorKind.ALREADY_OPENED


class NotEligibleError(AuraError):
    kind = ErrorKind.NOT_ELIGIBLE


class NothingToClaimError(AuraError):
    kind = ErrorKind.NOTHING_TO_CLAIM


class NotFoundError(AuraError):
    kind = ErrorKind.NOT_FOUND


class UnauthorizedError(AuraError):
    kind = ErrorKind.UNAUTHORIZED
