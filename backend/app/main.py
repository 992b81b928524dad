"""
Klaviyo Profile Insights — FastAPI Backend
Browse Klaviyo profiles across accounts, inspect per-profile activity and
configure which metrics feed each engagement category.
Serves frontend static files when present (unified deploy = no CORS).
"""

import asyncio
import logging
from pathlib import Path
from contextlib import asynccontextmanager, suppress
from starlette.responses import Response, FileResponse
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from fastapi.middleware.cors import CORSMiddleware
from app.config import get_settings
from app.database import init_db, check_db_connection, async_session
from app.routers import accounts, metrics, profiles
from app.services.credential_store import CredentialStore
from app.services.metric_catalog import MetricCatalogCache, RemoteUnavailableError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


async def _refresh_default_catalog(catalog: MetricCatalogCache, interval: int):
    """Keep the default-scope catalog warm. Readers still check the TTL themselves."""
    while True:
        try:
            async with async_session() as db:
                credentials = CredentialStore(db, fallback_key=settings.klaviyo_api_key)
                await catalog.refresh(credentials)
        except RemoteUnavailableError as e:
            logger.info(f"Background metric refresh skipped: {e}")
        except Exception as e:
            logger.error(f"Background metric refresh failed: {e}", exc_info=True)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Klaviyo Profile Insights...")
    try:
        await init_db()
        logger.info("Database initialized, all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible

    refresher = None
    if settings.metric_refresh_interval_seconds > 0:
        refresher = asyncio.create_task(
            _refresh_default_catalog(app.state.metric_catalog, settings.metric_refresh_interval_seconds)
        )
    yield
    if refresher is not None:
        refresher.cancel()
        with suppress(asyncio.CancelledError):
            await refresher
    logger.info("Shutting down...")


app = FastAPI(
    title="Klaviyo Profile Insights",
    description="Multi-account Klaviyo profile browser and engagement dashboard",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.metric_catalog = MetricCatalogCache(ttl_seconds=settings.metric_cache_ttl_seconds)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers ─────────────────────────────────────────────────
app.include_router(accounts.router, prefix="/api/accounts", tags=["Accounts"])
app.include_router(metrics.router, prefix="/api/metrics", tags=["Metrics"])
app.include_router(profiles.router, prefix="/api/profiles", tags=["Profiles"])


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Klaviyo Profile Insights",
        "database": "connected" if db_ok else "disconnected",
    }


# Static files + SPA fallback (when backend/static exists = unified deploy, no CORS)
STATIC_DIR = Path(__file__).resolve().parent.parent / "static"
if STATIC_DIR.exists():
    app.mount("/assets", StaticFiles(directory=STATIC_DIR / "assets"), name="assets")

    @app.get("/{full_path:path}", include_in_schema=False)
    async def serve_spa(full_path: str):
        """Serve SPA for non-API routes. API routes registered above."""
        if full_path.startswith("api") or full_path == "api":
            return Response(status_code=404)
        file_path = STATIC_DIR / full_path
        if file_path.is_file():
            return FileResponse(file_path)
        return FileResponse(STATIC_DIR / "index.html")
