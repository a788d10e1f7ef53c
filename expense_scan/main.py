"""
HTTP entry point: `uvicorn expense_scan.main:app`.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from expense_scan import __version__
from expense_scan.config import settings
from expense_scan.routers import scan

app = FastAPI(
    title=settings.APP_NAME,
    description="Receipt OCR and expense draft suggestions",
    version=__version__,
    debug=settings.DEBUG,
)

# Only the review UI calls this service
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(scan.router)


@app.get("/health")
async def health_check():
    """Liveness plus the recognition defaults a scan without options would use."""
    return {
        "status": "healthy",
        "ocr_mode": settings.OCR_MODE,
        "remote_configured": bool(settings.OCR_API_KEY.strip()),
    }


@app.get("/")
async def root():
    return {
        "service": settings.APP_NAME,
        "version": __version__,
        "endpoints": ["/scan", "/scan/suggest", "/scan/category"],
    }
