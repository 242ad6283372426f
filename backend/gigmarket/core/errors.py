"""Marketplace error taxonomy.

Every failure the core can report is a ``MarketplaceError`` subclass carrying
a stable ``code`` and the HTTP status the API maps it to.  Validation and
authorization errors are raised before any state mutation or transfer;
``SettlementError`` is the only category raised after validation has passed,
and it always leaves the order and escrow untouched.
"""


class MarketplaceError(Exception):
    """Base class for all domain errors."""

    code = "marketplace_error"
    status_code = 400
    default_message = "Marketplace error"

    def __init__(self, message: str | None = None, **context: object) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation: bad input, rejected before any mutation
# ---------------------------------------------------------------------------
class ValidationError(MarketplaceError):
    code = "validation_error"
    status_code = 422
    default_message = "Invalid input"


class InvalidAmount(ValidationError):
    code = "invalid_amount"
    default_message = "Amount is outside the allowed range"


class AmountTooSmall(InvalidAmount):
    code = "amount_too_small"
    default_message = "Amount is below the minimum escrow amount"


class AmountTooLarge(InvalidAmount):
    code = "amount_too_large"
    default_message = "Amount is above the maximum escrow amount"


class InvalidParties(ValidationError):
    code = "invalid_parties"
    default_message = "Buyer and seller must be distinct, non-empty accounts"


class InvalidDuration(ValidationError):
    code = "invalid_duration"
    default_message = "Duration is outside the allowed range"


class InvalidMilestoneSplit(ValidationError):
    code = "invalid_milestone_split"
    default_message = "Milestone percentages must be positive and sum to exactly 100"


class InvalidMilestones(ValidationError):
    code = "invalid_milestones"
    default_message = "Invalid milestone definition"


class InvalidRating(ValidationError):
    code = "invalid_rating"
    default_message = "Rating must be between 1 and 5"


class InvalidPercentage(ValidationError):
    code = "invalid_percentage"
    default_message = "Percentage must be between 0 and 100"


class InvalidRequirements(ValidationError):
    code = "invalid_requirements"
    default_message = "Requirements text has an invalid length"


class InvalidGig(ValidationError):
    code = "invalid_gig"
    default_message = "Invalid gig definition"


class InvalidMessage(ValidationError):
    code = "invalid_message"
    default_message = "Invalid message"


class InvalidTransferIntent(ValidationError):
    code = "invalid_transfer_intent"
    default_message = "Transfer intent is incomplete or malformed"


class InvalidDeposit(ValidationError):
    code = "invalid_deposit"
    default_message = "Deposit does not match the escrow"


class DeadlineError(ValidationError):
    """Timing failures are reported as validation errors."""

    code = "deadline_error"
    default_message = "Deadline has passed"


class DisputeWindowClosed(DeadlineError):
    code = "dispute_window_closed"
    default_message = "The dispute window for this escrow has closed"


# ---------------------------------------------------------------------------
# Authorization: wrong actor for the action
# ---------------------------------------------------------------------------
class AuthorizationError(MarketplaceError):
    code = "authorization_error"
    status_code = 403
    default_message = "Not allowed"


class Unauthorized(AuthorizationError):
    code = "unauthorized"
    default_message = "This account may not perform this action"


# ---------------------------------------------------------------------------
# State conflicts: action not valid in the current status
# ---------------------------------------------------------------------------
class StateConflictError(MarketplaceError):
    code = "state_conflict"
    status_code = 409
    default_message = "Action is not valid in the current state"


class InvalidState(StateConflictError):
    code = "invalid_state"


class StaleState(StateConflictError):
    code = "stale_state"
    default_message = "The order changed while this action was in flight; reload and retry"


class AlreadyFunded(StateConflictError):
    code = "already_funded"
    default_message = "Escrow is already funded"


class EscrowNotFunded(StateConflictError):
    code = "escrow_not_funded"
    default_message = "Escrow has not been funded yet"


class EscrowExpired(StateConflictError):
    code = "escrow_expired"
    default_message = "Escrow expired before it was funded"


class MaxRevisionsExceeded(StateConflictError):
    code = "max_revisions_exceeded"
    default_message = "No revisions left; approve the work or open a dispute"


class DepositAlreadyUsed(StateConflictError):
    code = "deposit_already_used"
    default_message = "This deposit already funded another escrow"


class DisputeAlreadyExists(StateConflictError):
    code = "dispute_already_exists"
    default_message = "An open dispute already exists for this order"


class ReleaseExceedsBalance(StateConflictError):
    code = "release_exceeds_balance"
    default_message = "Release amount exceeds the remaining escrow balance"


class GigNotActive(StateConflictError):
    code = "gig_not_active"
    default_message = "Gig is not accepting orders"


class MilestoneOutOfOrder(StateConflictError):
    code = "milestone_out_of_order"
    default_message = "Earlier milestones must be completed first"


# ---------------------------------------------------------------------------
# Settlement: ledger transfer or confirmation failed
# ---------------------------------------------------------------------------
class SettlementError(MarketplaceError):
    """Ledger rejected, failed or did not confirm a transfer.

    ``settled`` lists the transaction references that did confirm before the
    failure so an operator can reconcile multi-leg payouts.
    """

    code = "settlement_error"
    status_code = 502
    default_message = "Ledger settlement failed"

    def __init__(
        self, message: str | None = None, *, settled: list[str] | None = None, **context: object
    ) -> None:
        self.settled = settled or []
        super().__init__(message, **context)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
class NotFoundError(MarketplaceError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"
