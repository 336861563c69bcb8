"""Error kinds raised by the market mill program and its client helpers.

Every error carries a stable numeric code (6000+ range, like Anchor custom
program errors) so on-chain failures and local failures can be reported the
same way.
"""


class MarketMillError(Exception):
    code = 6000

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ── Marshalling (local only, never a ledger state change) ──────────────


class InvalidInstructionFormatError(MarketMillError):
    code = 6001


class UnknownInstructionError(MarketMillError):
    code = 6002


# ── Economic input ─────────────────────────────────────────────────────


class InvalidAmountError(MarketMillError):
    code = 6010


class InsufficientFundsError(MarketMillError):
    code = 6011


class SlippageExceededError(MarketMillError):
    code = 6012


class InvalidFeeShareError(MarketMillError):
    code = 6013


class MathOverflowError(MarketMillError):
    code = 6014


class NothingToClaimError(MarketMillError):
    code = 6015


class ReflectionOverCreditError(MarketMillError):
    code = 6016


class BuybackUnderspentError(MarketMillError):
    """A swap buyback left more in the treasury than the amount it claimed to spend."""

    code = 6017


# ── Idempotency ────────────────────────────────────────────────────────


class AlreadyBoundError(MarketMillError):
    code = 6020


class AlreadyMigratedError(MarketMillError):
    code = 6021


# ── Lifecycle ──────────────────────────────────────────────────────────


class NotEligibleError(MarketMillError):
    code = 6030


class MarketMigratedError(MarketMillError):
    code = 6031


class MissingLiquidityInstructionError(MarketMillError):
    code = 6032


class InvalidMarketStateError(MarketMillError):
    code = 6033


# ── Forwarding ─────────────────────────────────────────────────────────


class ForwardedCallFailedError(MarketMillError):
    """External program rejected a forwarded call. Message is passed through verbatim."""

    code = 6040

    def __init__(self, message: str = "", *, program_id: object = None) -> None:
        super().__init__(message)
        self.program_id = program_id


class ProgramMismatchError(MarketMillError):
    code = 6041


class ExternalProgramNotAllowedError(MarketMillError):
    code = 6042


class TooManyForwardedAccountsError(MarketMillError):
    code = 6043


# ── Authority / account validation ─────────────────────────────────────


class UnauthorizedError(MarketMillError):
    code = 6050


class InvalidConfigAccountError(MarketMillError):
    code = 6051


class InvalidPdaError(MarketMillError):
    code = 6052


class InvalidReferralAccountError(MarketMillError):
    code = 6053


class MissingSignatureError(MarketMillError):
    code = 6054


class ExclusionListFullError(MarketMillError):
    code = 6055


# ── Ledger / runtime ───────────────────────────────────────────────────


class AccountInUseError(MarketMillError):
    code = 6060


class AccountNotFoundError(MarketMillError):
    code = 6061


class AccountAlreadyExistsError(MarketMillError):
    code = 6062


class ReadonlyAccountError(MarketMillError):
    code = 6063


class ProgramNotFoundError(MarketMillError):
    code = 6064


class AccountOwnerMismatchError(MarketMillError):
    code = 6065
