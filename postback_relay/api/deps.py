"""
Dependencies for admin authentication, database sessions, and service access.
"""
import hmac
from typing import Generator, Optional
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from postback_relay import config
from postback_relay.database import SessionLocal
from postback_relay.services.registry import Services
from postback_relay.services.postback_pipeline import PostbackPipeline
from postback_relay.services.reconciliation_engine import ReconciliationEngine
from postback_relay.jobs.audit_scheduler import AuditScheduler
from postback_relay.utils import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)

def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()

def get_services(request: Request) -> Services:
    """Service registry built during application startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        logger.error("Service registry not initialised", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not ready"
        )
    return services

def get_pipeline(services: Services = Depends(get_services)) -> PostbackPipeline:
    return services.pipeline

def get_reconciliation_engine(services: Services = Depends(get_services)) -> ReconciliationEngine:
    return services.reconciliation

def get_audit_scheduler(services: Services = Depends(get_services)) -> AuditScheduler:
    return services.scheduler

def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> bool:
    """
    Bearer-token guard for admin / audit endpoints.

    Returns:
        bool: True if admin access granted

    Raises:
        HTTPException: 503 when no admin token is configured, 401 otherwise
    """
    expected = config.ADMIN_API_TOKEN
    if not expected:
        logger.warning("Admin API disabled: ADMIN_API_TOKEN not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API disabled"
        )

    provided = credentials.credentials if credentials else ""
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "Admin access denied",
            provided_token_prefix=provided[:4] + "..." if len(provided) > 4 else None
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True
