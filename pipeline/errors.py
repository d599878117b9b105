"""Exception types raised by the generation gateway."""

from __future__ import annotations


class GenerationError(Exception):
    """Clean error from a generation call with a human-readable message."""

    def __init__(self, message: str, provider: str = "", model: str = "", cause: Exception | None = None):
        self.provider = provider
        self.model = model
        self.cause = cause
        super().__init__(message)


class ProviderHTTPError(GenerationError):
    """Non-2xx response from a provider endpoint."""

    def __init__(self, status_code: int, message: str, provider: str = "", model: str = ""):
        self.status_code = int(status_code)
        super().__init__(message, provider=provider, model=model)


class BudgetExceededError(GenerationError):
    """The call would push the ledger past its cost cap."""

    def __init__(self, spent: float, estimated: float, cap: float, model: str = ""):
        self.spent = spent
        self.estimated = estimated
        self.cap = cap
        super().__init__(
            f"Budget exceeded: spent ${spent:.4f} + estimated ${estimated:.4f} > cap ${cap:.2f}",
            model=model,
        )
