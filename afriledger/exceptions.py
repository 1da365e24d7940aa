from fastapi import HTTPException

class LedgerError(HTTPException):
    code = "LEDGER_ERROR"

    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)

class InvalidInputError(LedgerError):
    code = "VALIDATION_ERROR"

    def __init__(self, detail: str = "Invalid input"):
        super().__init__(status_code=400, detail=detail)

class InvalidPinError(LedgerError):
    code = "INVALID_CREDENTIALS"

    def __init__(self):
        super().__init__(status_code=401, detail="Invalid PIN")

class AccountNotFoundError(LedgerError):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, detail: str = "Account not found"):
        super().__init__(status_code=404, detail=detail)

class RecipientNotFoundError(AccountNotFoundError):
    code = "RECIPIENT_NOT_FOUND"

    def __init__(self):
        super().__init__(detail="Recipient not found")

class TransactionNotFoundError(LedgerError):
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self):
        super().__init__(status_code=404, detail="Transaction not found")

class InsufficientBalanceError(LedgerError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self):
        super().__init__(status_code=400, detail="Insufficient balance")

class UnsupportedCurrencyError(LedgerError):
    code = "UNSUPPORTED_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(status_code=400, detail=f"Unsupported currency: {currency}")

class DuplicateAccountError(LedgerError):
    code = "ACCOUNT_EXISTS"

    def __init__(self, detail: str = "User already exists"):
        super().__init__(status_code=409, detail=detail)

class DuplicateTransactionError(LedgerError):
    code = "DUPLICATE_TRANSACTION"

    def __init__(self):
        super().__init__(status_code=409, detail="Duplicate transaction detected (idempotency)")

class ConcurrencyConflictError(LedgerError):
    code = "CONCURRENCY_CONFLICT"

    def __init__(self):
        super().__init__(status_code=409, detail="Account was modified concurrently, please retry")

class ExternalServiceError(LedgerError):
    """An oracle or chain call failed or timed out. Retryable."""
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, detail: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(status_code=502, detail=detail)
