"""Transaction SDK: a uniform async transaction pipeline with secure, portable tokens."""

from transaction_sdk.auth import (
    AuthenticationContext,
    AuthenticationProvider,
    StaticAuthenticationProvider,
)
from transaction_sdk.config import Settings, StorageProvider, get_settings
from transaction_sdk.core import TransactionHandler, TransactionMediator
from transaction_sdk.crypto import CryptographyService
from transaction_sdk.errors import (
    ErrorCode,
    StorageUnavailableError,
    TransactionSdkError,
)
from transaction_sdk.events import (
    EventPublisher,
    InMemoryEventPublisher,
    LoggingEventPublisher,
)
from transaction_sdk.models import (
    SecureToken,
    Transaction,
    TransactionContext,
    TransactionResult,
    TransactionStatus,
    ValidationResult,
)
from transaction_sdk.storage import TokenStorage, create_token_storage
from transaction_sdk.tokens import SecureTokenGenerator

__version__ = "0.1.0"

__all__ = [
    "AuthenticationContext",
    "AuthenticationProvider",
    "StaticAuthenticationProvider",
    "Settings",
    "StorageProvider",
    "get_settings",
    "TransactionHandler",
    "TransactionMediator",
    "CryptographyService",
    "ErrorCode",
    "StorageUnavailableError",
    "TransactionSdkError",
    "EventPublisher",
    "InMemoryEventPublisher",
    "LoggingEventPublisher",
    "SecureToken",
    "Transaction",
    "TransactionContext",
    "TransactionResult",
    "TransactionStatus",
    "ValidationResult",
    "TokenStorage",
    "create_token_storage",
    "SecureTokenGenerator",
]
