import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine, SessionLocal
from .errors import register_exception_handlers
from .logging import setup_logging, RequestIdMiddleware
from .auth.router import router as auth_router
from .auth.security import seed_default_roles
from .services.portal import InvalidPortalToken
from .routes.organizations import router as organizations_router
from .routes.customers import router as customers_router, requests_router as service_requests_router
from .routes.portal import router as portal_router, public_router
from .routes.inventory import router as inventory_router
from .routes.consumables import router as consumables_router
from .routes.jobs import router as jobs_router
from .routes.quotes import router as quotes_router
from .routes.invoices import router as invoices_router
from .routes.fleet import router as fleet_router
from .routes.work_orders import router as work_orders_router
from .routes.compliance import router as compliance_router
from .routes.marketing import router as marketing_router
from .routes.notifications import router as notifications_router
from .routes.service_reports import router as service_reports_router
from .routes.analytics import router as analytics_router
from .routes.audit import router as audit_router


logger = structlog.get_logger(__name__)


async def _invalid_portal_token_handler(request: Request, exc: InvalidPortalToken) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": str(exc) or "Invalid or expired portal link"})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Errors
    register_exception_handlers(app)
    app.add_exception_handler(InvalidPortalToken, _invalid_portal_token_handler)

    # Routers
    app.include_router(auth_router)
    app.include_router(organizations_router)
    app.include_router(customers_router)
    app.include_router(service_requests_router)
    app.include_router(portal_router)
    app.include_router(public_router)
    app.include_router(inventory_router)
    app.include_router(consumables_router)
    app.include_router(jobs_router)
    app.include_router(quotes_router)
    app.include_router(invoices_router)
    app.include_router(fleet_router)
    app.include_router(work_orders_router)
    app.include_router(compliance_router)
    app.include_router(marketing_router)
    app.include_router(notifications_router)
    app.include_router(service_reports_router)
    app.include_router(analytics_router)
    app.include_router(audit_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            db = SessionLocal()
            try:
                created = seed_default_roles(db)
                db.commit()
            finally:
                db.close()
            logger.info("startup_complete", roles_created=created)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
