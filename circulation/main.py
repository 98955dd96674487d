import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from circulation.core.config import settings
from circulation.core.logging import setup_logging, get_logger, request_id_ctx
from circulation.core.security import hash_password
from circulation.db.session import AsyncSessionLocal, engine
from circulation.db.models import Base, User, UserRole
from circulation.services.overdue import SweepEngine
from circulation.services.scheduler import SweepScheduler

logger = get_logger("circulation.main")


async def seed_admin() -> None:
    """Create the built-in admin account if it doesn't exist."""
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(User).where(User.email == settings.ADMIN_EMAIL))
        if result.scalar_one_or_none():
            logger.info(f"Built-in admin already exists: {settings.ADMIN_EMAIL}")
            return

        db.add(
            User(
                email=settings.ADMIN_EMAIL,
                hashed_password=hash_password(settings.ADMIN_PASSWORD),
                full_name="System Administrator",
                role=UserRole.ADMIN,
                is_built_in=True,
            )
        )
        await db.commit()
        logger.info(f"Built-in admin created: {settings.ADMIN_EMAIL}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    # Create tables (in dev; in prod use migrations)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await seed_admin()

    scheduler = SweepScheduler(app.state.sweep_engine, AsyncSessionLocal)
    app.state.sweep_scheduler = scheduler
    scheduler.start()

    yield

    await scheduler.stop()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "## Library Circulation API\n\n"
        "- **Authentication** – Register, login (JWT Bearer), and logout\n"
        "- **Users** – Account administration, block/unblock, borrowed books\n"
        "- **Books** – Catalog with availability tracking\n"
        "- **Loans** – Borrow and return\n"
        "- **Reservations** – FIFO waiting lists for unavailable books\n"
        "- **Notifications** – Overdue, reminder and availability messages\n"
        "- **Overdue Sweep** – Hourly reconciliation of overdue loans and account locks, "
        "with a manual trigger\n"
    ),
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Shared by the scheduler and the manual trigger so sweeps never overlap
app.state.sweep_engine = SweepEngine(AsyncSessionLocal)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    req_id = str(uuid.uuid4())[:8]
    request_id_ctx.set(req_id)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({duration:.3f}s)"
    )

    response.headers["X-Request-ID"] = req_id
    return response


@app.get("/health", tags=["Health"], summary="Health check")
async def health_check():
    return {"status": "healthy", "version": settings.APP_VERSION}


from circulation.api.v1.endpoints.auth import router as auth_router  # noqa: E402
from circulation.api.v1.endpoints.users import router as users_router  # noqa: E402
from circulation.api.v1.endpoints.books import router as books_router  # noqa: E402
from circulation.api.v1.endpoints.loans import router as loans_router  # noqa: E402
from circulation.api.v1.endpoints.reservations import router as reservations_router  # noqa: E402
from circulation.api.v1.endpoints.notifications import router as notifications_router  # noqa: E402
from circulation.api.v1.endpoints.sweeps import router as sweeps_router  # noqa: E402
from circulation.api.v1.endpoints.reports import router as reports_router  # noqa: E402

for router in (
    auth_router,
    users_router,
    books_router,
    loans_router,
    reservations_router,
    notifications_router,
    sweeps_router,
    reports_router,
):
    app.include_router(router, prefix="/api/v1")
