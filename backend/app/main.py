from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from .config import settings
from .database import engine
from .models import Base
from .models.cascade_validator import check_cascade_relationships
from .dependencies import shutdown_orchestrator
import logging
import os

# Configure logging
os.makedirs(os.path.dirname(settings.log_file), exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug
)

@app.on_event("startup")
async def startup_event():
    """Create tables and check relationship cascade configuration"""
    logger.info("Initializing services...")
    Base.metadata.create_all(bind=engine)
    check_cascade_relationships()
    logger.info(f"Image provider: {settings.image_provider}, text generation: {'on' if settings.llm_enabled else 'off'}")
    logger.info("Application startup complete")

@app.on_event("shutdown")
async def shutdown_event():
    await shutdown_orchestrator()
    logger.info("Application shutdown complete")

# Add CORS middleware
logger.info(f"CORS Origins: {settings.cors_origins}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Stored enhancement media
os.makedirs(settings.storage_root, exist_ok=True)
app.mount(settings.storage_base_url, StaticFiles(directory=settings.storage_root), name="media")

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "image_provider": settings.image_provider,
        "text_generation": settings.llm_enabled,
    }

# Import and include routers
from .api import stories, characters, enhancements

app.include_router(stories.router, prefix="/api/stories", tags=["stories"])
app.include_router(characters.router, prefix="/api/characters", tags=["characters"])
app.include_router(enhancements.router, prefix="/api", tags=["enhancements"])

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs"
    }

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "9876"))
    uvicorn.run(app, host="0.0.0.0", port=port)
