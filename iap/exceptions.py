"""
Exception Classes - Strongly typed exception hierarchy.

Categories map onto how callers react:
- InputValidationError: rejected before any ledger or network call
- PolicyViolationError: routing/ownership rules, rejected before verification
- PurchaseVerificationError: provider rejected the evidence, no ledger entry
- StorageError: backend unavailable, caller retries later
- InsufficientCoinsError: negative adjustment would overdraw a balance
"""


class IapError(Exception):
    """Base exception for all entitlement engine errors."""

    pass


# ============================================================================
# Input validation
# ============================================================================


class InputValidationError(IapError):
    """Raised when a request field is missing or malformed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class UnsupportedProviderError(InputValidationError):
    """Raised when the payment provider is not one of the known providers."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"unsupported provider: {provider}")


class UnsupportedExportTargetError(InputValidationError):
    """Raised when the export target is not a known distribution channel."""

    def __init__(self, export_target: str) -> None:
        self.export_target = export_target
        super().__init__(f"unsupported export_target: {export_target}")


class UnknownProductError(InputValidationError):
    """Raised when the product id does not resolve to a catalog entry."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"unknown product_id: {product_id}")


class InvalidAdjustmentError(InputValidationError):
    """Raised when an internal coin adjustment request is malformed."""

    pass


class WebhookPayloadError(InputValidationError):
    """Raised when a webhook body lacks the fields needed to apply it."""

    pass


# ============================================================================
# Policy
# ============================================================================


class PolicyViolationError(IapError):
    """Raised when a request breaks a routing or ownership rule."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ProviderNotAllowedError(PolicyViolationError):
    """Raised when a provider is not allowed for the export target."""

    def __init__(self, provider: str, export_target: str) -> None:
        self.provider = provider
        self.export_target = export_target
        super().__init__(f"provider {provider} is not allowed for export_target {export_target}")


class ProductGameMismatchError(PolicyViolationError):
    """Raised when a consumable product belongs to a different game."""

    def __init__(self, product_id: str, game_id: str, product_game_id: str) -> None:
        self.product_id = product_id
        self.game_id = game_id
        self.product_game_id = product_game_id
        super().__init__(
            f"product_id does not belong to game_id: {product_id} is for {product_game_id}, "
            f"not {game_id}"
        )


# ============================================================================
# Verification / storage / balance
# ============================================================================


class PurchaseVerificationError(IapError):
    """Raised when a provider cannot verify the payload as a completed purchase."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"{provider} verification failed: {message}")


class StorageError(IapError):
    """Raised when the ledger backend fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class InsufficientCoinsError(IapError):
    """Raised when a negative adjustment would drive a balance below zero."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient coins. Balance: {balance}, Required: {required}")


class RuntimeConfigError(IapError):
    """Raised when per-game runtime config cannot be loaded."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Runtime config error: {message}")
