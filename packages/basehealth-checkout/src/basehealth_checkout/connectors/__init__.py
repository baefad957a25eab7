"""Payment processor connectors."""

from .stripe import StripeConnector, StripeIntentVerifier

__all__ = ["StripeConnector", "StripeIntentVerifier"]
