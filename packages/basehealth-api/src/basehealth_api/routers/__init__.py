"""HTTP routers for the payment API."""
