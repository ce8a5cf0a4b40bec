# Overview: Exceptions shared by the wallet, loyalty and coupon ledgers.


class LedgerError(Exception):
    """Raised for ledger operation errors."""
    pass


class InsufficientBalance(LedgerError):
    """A debit asked for more than the account holds. Nothing was written."""

    def __init__(self, message: str, *, available: int, requested: int):
        super().__init__(message)
        self.available = available
        self.requested = requested
