import logging

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

import crud
from auth_utils import get_password_hash
from config import settings
from database import SessionLocal, create_db_and_tables
from exceptions import AmountMismatch, GatewayFailure, MembershipError, StorageFailure, ValidationError
from routers.applications import applications_router
from routers.auth import auth_router
from routers.board import board_router
from routers.dashboard import dashboard_router
from routers.directors import directors_router
from routers.members import members_router
from routers.payments import payments_router
from routers.tokens import tokens_router
from routers.webhooks import webhooks_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
log = logging.getLogger(__name__)


async def ensure_site_admin():
    """Create the configured site admin account once, when a bootstrap password is set."""
    if not settings.SITE_ADMIN_PASSWORD:
        return
    async with SessionLocal() as db:
        user = await crud.get_or_create_user(db, settings.SITE_ADMIN_EMAIL)
        if not user.is_admin:
            user.is_admin = True
            user.is_officer = True
            user.hashed_password = get_password_hash(settings.SITE_ADMIN_PASSWORD)
            await db.commit()
            log.info(f"Site admin account {user.email} initialised")


app = FastAPI(title=settings.SITE_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MembershipError)
async def membership_error_handler(request: Request, exc: MembershipError):
    if isinstance(exc, (StorageFailure, GatewayFailure)):
        log.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "The request could not be completed. Please try again later."},
        )

    content = {"detail": exc.message}
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    elif isinstance(exc, AmountMismatch):
        content.update({"expected": str(exc.expected), "received": str(exc.received)})
    return JSONResponse(status_code=exc.status_code, content=content)


@app.on_event("startup")
async def startup_event():
    log.info("Creating database tables")
    await create_db_and_tables()
    async with SessionLocal() as db:
        await db.execute(text("SELECT 1"))
    await ensure_site_admin()
    log.info("Application ready")


app.include_router(auth_router)
app.include_router(tokens_router)
app.include_router(applications_router)
app.include_router(board_router)
app.include_router(payments_router)
app.include_router(webhooks_router)
app.include_router(directors_router)
app.include_router(members_router)
app.include_router(dashboard_router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
