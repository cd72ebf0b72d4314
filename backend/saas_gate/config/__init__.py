"""Configuration module for saas-gate."""

from saas_gate.config.settings import (
    ConfigurationError,
    ProductSettings,
    RateLimitSettings,
    RouteLimit,
    SessionSettings,
    Settings,
    TokenSettings,
    load_settings,
)

__all__ = [
    "ConfigurationError",
    "ProductSettings",
    "RateLimitSettings",
    "RouteLimit",
    "SessionSettings",
    "Settings",
    "TokenSettings",
    "load_settings",
]
