"""
Message Wallet Errors

Exceptions raised by the wallet, checkout and gateway layers.
Each error carries a stable machine-readable code and converts to the
API response format via to_dict().
"""
from typing import Optional

from .config import ERROR_CODES


class WalletError(Exception):
    """Base error for message wallet operations."""
    code = "wallet_error"
    status_code = 400

    def __init__(self, message: str = None, details: Optional[dict] = None):
        self.message = message or ERROR_CODES.get(self.code, self.code)
        self.details = details or {}
        super().__init__(f"[{self.code}] {self.message}")

    def to_dict(self):
        """Convert to API response format."""
        return {
            "error_code": self.code,
            "message": self.message,
            **self.details
        }


class WalletUnavailableError(WalletError):
    """The wallet row could not be found or created."""
    code = "wallet_unavailable"
    status_code = 503


class InvalidPackError(WalletError):
    """Unknown or malformed top-up pack."""
    code = "invalid_package"


class InvalidPlanError(WalletError):
    """Unknown plan or billing cycle."""
    code = "invalid_plan"


class GatewayError(WalletError):
    """Payment gateway request failed or returned a non-2xx status."""
    code = "gateway_error"
    status_code = 502
