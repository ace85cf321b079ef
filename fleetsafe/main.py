import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from .config import setup_logging
from .db import init_db
from .errors import ComplianceError, RateLimited, ValidationError
from .api.endpoints import router as api_router

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="FleetSafe Trip Compliance Engine",
    description="Trip lifecycle, violation detection and enforcement for fleet safety",
    version="1.0.0"
)

# Include API routes
app.include_router(api_router, prefix="/api")

@app.on_event("startup")
async def startup():
    """Initialize logging and database on startup."""
    setup_logging()
    init_db()

@app.exception_handler(ComplianceError)
async def compliance_error_handler(request: Request, exc: ComplianceError):
    """Translate engine errors into structured JSON responses."""
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies the same way as engine validation errors."""
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        parts.append(f"{location}: {err.get('msg')}")
    error = ValidationError("; ".join(parts))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())

@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "FleetSafe Trip Compliance Engine", "docs": "/docs"}

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("fleetsafe.main:app", host="0.0.0.0", port=8000)
