"""
Middleware package for request admission.

Provides:
- RateLimiter: fixed-window per-route, per-client request budgets
- rate_limit_dependency: FastAPI dependency returning 429 with Retry-After
"""
