"""
Process-wide configuration for saas-gate.

Loaded once at startup by load_settings() and immutable thereafter. Every
component receives the pieces it needs through its constructor; nothing
reads signing keys or secrets from ambient global state.

Environment variables:
- SESSION_SIGNING_KEYS:               Comma-separated HMAC keys, newest first (required)
- SESSION_TOKEN_ALGORITHM:            JWS algorithm (default: "HS512")
- SESSION_TOKEN_ISSUER:               iss claim (default: "saas-gate")
- SESSION_TTL_SECONDS:                Session lifetime (default: "86400")
- SESSION_REVOKE_ALL_TIMEOUT_SECONDS: Deadline for log-out-everywhere (default: "2.0")
- LEMONSQUEEZY_WEBHOOK_SECRET:        Webhook signing secret (required)
- RATE_LIMITS:                        JSON {route_id: {"limit": n, "window_seconds": s}}
- RATE_LIMIT_DEFAULT:                 Limit for routes missing from RATE_LIMITS (default: "60")
- RATE_LIMIT_WINDOW_SECONDS:          Window for routes missing from RATE_LIMITS (default: "60")
- REDIS_URL:                          Key-value store URL (default: "redis://localhost:6379/0")
- STORE_TIMEOUT_SECONDS:              Store socket timeout (default: "2.0")
- DATABASE_URL:                       Subscription ledger database (default: "sqlite:///./saas_gate.db")
- PRO_PRODUCT_ID / PRO_MONTHLY_VARIANT_ID / PRO_ANNUALLY_VARIANT_ID: plan mapping
"""

import json
import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")


class ConfigurationError(Exception):
    """Raised at startup when required configuration is missing or invalid."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.error_code = "CONFIGURATION_INVALID"
        super().__init__(message)


class RouteLimit(BaseModel):
    """Per-route fixed-window budget."""

    model_config = ConfigDict(frozen=True)

    limit: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


class TokenSettings(BaseModel):
    """Session token signing configuration."""

    model_config = ConfigDict(frozen=True)

    signing_keys: tuple[str, ...]
    algorithm: str = "HS512"
    issuer: str = "saas-gate"

    @field_validator("signing_keys")
    @classmethod
    def _keys_present(cls, keys: tuple[str, ...]) -> tuple[str, ...]:
        keys = tuple(k for k in keys if k)
        if not keys:
            raise ValueError("at least one signing key is required")
        return keys

    @field_validator("algorithm")
    @classmethod
    def _hmac_only(cls, algorithm: str) -> str:
        if algorithm not in HMAC_ALGORITHMS:
            raise ValueError(f"algorithm must be one of {', '.join(HMAC_ALGORITHMS)}")
        return algorithm


class SessionSettings(BaseModel):
    """Session lifecycle configuration."""

    model_config = ConfigDict(frozen=True)

    ttl_seconds: int = Field(default=86400, gt=0)
    revoke_all_timeout_seconds: float = Field(default=2.0, gt=0)


class RateLimitSettings(BaseModel):
    """Static per-route rate-limit table, enumerated at startup."""

    model_config = ConfigDict(frozen=True)

    routes: dict[str, RouteLimit] = Field(default_factory=dict)
    default: RouteLimit = RouteLimit(limit=60, window_seconds=60)

    def for_route(self, route_id: str) -> RouteLimit:
        return self.routes.get(route_id, self.default)


class ProductSettings(BaseModel):
    """Billing-provider product ids that map to the paid plan."""

    model_config = ConfigDict(frozen=True)

    pro_product_id: Optional[int] = None
    pro_monthly_variant_id: Optional[int] = None
    pro_annually_variant_id: Optional[int] = None


class Settings(BaseModel):
    """Complete, immutable configuration surface."""

    model_config = ConfigDict(frozen=True)

    token: TokenSettings
    session: SessionSettings = SessionSettings()
    webhook_secret: str = Field(min_length=1)
    rate_limits: RateLimitSettings = RateLimitSettings()
    redis_url: str = "redis://localhost:6379/0"
    store_timeout_seconds: float = Field(default=2.0, gt=0)
    database_url: str = "sqlite:///./saas_gate.db"
    products: ProductSettings = ProductSettings()


def _parse_rate_limits(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        table = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"RATE_LIMITS is not valid JSON: {e.msg}", field="RATE_LIMITS") from e
    if not isinstance(table, dict):
        raise ConfigurationError("RATE_LIMITS must be a JSON object", field="RATE_LIMITS")
    return table


def _optional_int(env: Mapping[str, str], name: str) -> Optional[int]:
    value = env.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer", field=name) from e


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Raises:
        ConfigurationError: If a required value is missing or invalid
    """
    env = os.environ if env is None else env

    signing_keys = tuple(k.strip() for k in env.get("SESSION_SIGNING_KEYS", "").split(","))
    if not any(signing_keys):
        raise ConfigurationError("SESSION_SIGNING_KEYS environment variable is required", field="SESSION_SIGNING_KEYS")

    webhook_secret = env.get("LEMONSQUEEZY_WEBHOOK_SECRET", "")
    if not webhook_secret:
        raise ConfigurationError(
            "LEMONSQUEEZY_WEBHOOK_SECRET environment variable is required",
            field="LEMONSQUEEZY_WEBHOOK_SECRET",
        )

    try:
        return Settings(
            token=TokenSettings(
                signing_keys=signing_keys,
                algorithm=env.get("SESSION_TOKEN_ALGORITHM", "HS512"),
                issuer=env.get("SESSION_TOKEN_ISSUER", "saas-gate"),
            ),
            session=SessionSettings(
                ttl_seconds=int(env.get("SESSION_TTL_SECONDS", "86400")),
                revoke_all_timeout_seconds=float(env.get("SESSION_REVOKE_ALL_TIMEOUT_SECONDS", "2.0")),
            ),
            webhook_secret=webhook_secret,
            rate_limits=RateLimitSettings(
                routes=_parse_rate_limits(env.get("RATE_LIMITS")),
                default=RouteLimit(
                    limit=int(env.get("RATE_LIMIT_DEFAULT", "60")),
                    window_seconds=int(env.get("RATE_LIMIT_WINDOW_SECONDS", "60")),
                ),
            ),
            redis_url=env.get("REDIS_URL", "redis://localhost:6379/0"),
            store_timeout_seconds=float(env.get("STORE_TIMEOUT_SECONDS", "2.0")),
            database_url=env.get("DATABASE_URL", "sqlite:///./saas_gate.db"),
            products=ProductSettings(
                pro_product_id=_optional_int(env, "PRO_PRODUCT_ID"),
                pro_monthly_variant_id=_optional_int(env, "PRO_MONTHLY_VARIANT_ID"),
                pro_annually_variant_id=_optional_int(env, "PRO_ANNUALLY_VARIANT_ID"),
            ),
        )
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
