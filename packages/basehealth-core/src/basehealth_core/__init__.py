"""Core primitives shared across the BaseHealth payment packages."""

from .config import NetworkConfig, PaymentSettings, PricingTier, load_settings
from .exceptions import (
    AlreadyProcessed,
    ConfigError,
    DecodeError,
    InvalidTransition,
    NetworkError,
    NotFoundError,
    PaymentGateError,
    ProtocolError,
    RequirementNotFound,
    SchemeNetworkMismatchError,
    SessionNotFound,
    UnsupportedSchemeError,
    UnsupportedVersionError,
    VerificationFailed,
    VerificationPending,
    WebhookSignatureError,
)
from .logging_config import setup_logging

__all__ = [
    "NetworkConfig",
    "PaymentSettings",
    "PricingTier",
    "load_settings",
    "setup_logging",
    "AlreadyProcessed",
    "ConfigError",
    "DecodeError",
    "InvalidTransition",
    "NetworkError",
    "NotFoundError",
    "PaymentGateError",
    "ProtocolError",
    "RequirementNotFound",
    "SchemeNetworkMismatchError",
    "SessionNotFound",
    "UnsupportedSchemeError",
    "UnsupportedVersionError",
    "VerificationFailed",
    "VerificationPending",
    "WebhookSignatureError",
]
