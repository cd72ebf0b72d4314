"""
Health checks for the key-value store and the ledger database.

Reports each dependency as ok/error; the overall status is "ok" only when
every check passes.
"""

import logging
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from saas_gate.platform.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class HealthChecker:
    """Health check service for the store and database."""

    def __init__(self, kv_store: KeyValueStore, session_factory: sessionmaker):
        self._kv_store = kv_store
        self._session_factory = session_factory

    def check_store(self) -> Dict[str, Any]:
        """
        Check key-value store connectivity.

        Returns:
            Dict with 'status' (ok/error) and 'message'
        """
        if self._kv_store.ping():
            return {"status": "ok", "message": "Store connection successful"}
        return {"status": "error", "message": "Store unreachable"}

    def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict with 'status' (ok/error) and 'message'
        """
        db = self._session_factory()
        try:
            db.execute(text("SELECT 1")).fetchone()
            return {"status": "ok", "message": "Database connection successful"}
        except SQLAlchemyError as e:
            logger.error("Database connection failed", extra={"error": str(e)})
            return {"status": "error", "message": "Database connection failed"}
        finally:
            db.close()

    def get_health_status(self) -> Dict[str, Any]:
        checks = {
            "store": self.check_store(),
            "database": self.check_database(),
        }
        healthy = all(c["status"] == "ok" for c in checks.values())
        return {"status": "ok" if healthy else "error", "checks": checks}
