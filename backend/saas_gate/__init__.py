"""saas-gate: session authentication, subscription entitlements and rate limiting."""

__version__ = "0.1.0"
