from saas_gate.api.dependencies.auth import require_session
from saas_gate.api.dependencies.entitlements import require_entitlement

__all__ = ["require_entitlement", "require_session"]
