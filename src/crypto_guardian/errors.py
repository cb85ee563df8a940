from __future__ import annotations


class CryptoGuardianError(Exception):
    pass


class MarketDataUnavailable(CryptoGuardianError):
    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class StoreUnavailable(CryptoGuardianError):
    pass


class NotificationFailure(CryptoGuardianError):
    pass
