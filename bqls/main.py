"""FastAPI main application"""
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from bqls.config import settings
from bqls.deps import Services
from bqls.routers import cache, commands, documents, events
from bqls.smart_logger import SmartLogger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    print("Starting BigQuery SQL tooling API...")
    services = Services.from_settings()
    await services.start()
    app.state.services = services
    print(f"Schema cache at {services.cache.path}")
    print(f"Remote backend: {settings.remote_backend}")
    SmartLogger.log(
        "INFO",
        "main.lifespan.start",
        category="main.lifespan.start",
        params={
            "cache_path": str(services.cache.path),
            "remote_backend": settings.remote_backend,
            "dry_run_on_save": settings.dry_run_on_save,
            "refresh_on_open": settings.refresh_on_open,
        },
    )

    yield

    # Shutdown
    print("Shutting down...")
    await services.close()
    SmartLogger.log("INFO", "main.lifespan.stop", category="main.lifespan.stop")
    print("Schema cache closed")


app = FastAPI(
    title="BigQuery SQL Tooling API",
    description="""
    Schema cache and dry-run diagnostics for BigQuery SQL editors.

    ## Features
    - Local mirror of projects, datasets, tables and columns
    - Date-sharded tables folded into one wildcard entry
    - Dry-run errors mapped onto token ranges
    - Processed-bytes estimate after every dry run

    ## Workflow
    1. Open documents: `POST /bqls/documents/open`
    2. Refresh the cache: `POST /bqls/commands/update-cache`
    3. Read the cache: `GET /bqls/cache/projects`
    4. Follow diagnostics: `GET /bqls/events/stream`
    """,
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers with /bqls prefix
app.include_router(commands.router, prefix="/bqls")
app.include_router(documents.router, prefix="/bqls")
app.include_router(cache.router, prefix="/bqls")
app.include_router(events.router, prefix="/bqls")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "BigQuery SQL Tooling API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    services = getattr(app.state, "services", None)
    if services is None or not services.cache.is_open:
        return {"status": "unhealthy", "error": "schema cache is not open"}
    try:
        projects = await services.cache.list_projects()
        return {
            "status": "healthy",
            "cache": "open",
            "config": {
                "remote_backend": settings.remote_backend,
                "cache_path": str(services.cache.path),
                "cached_projects": len(projects),
                "open_documents": len(services.documents),
            }
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e)
        }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bqls.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
