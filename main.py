import uvicorn
import time
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from valencloud.api.greeting import router as greeting_router
from valencloud.api.health import router as health_router
from valencloud.core.config import HOST, PORT, LOG_LEVEL
from valencloud.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging(level=LOG_LEVEL)
logger = logging.getLogger("main")

# Only the two service routes are exposed; docs and schema routes are disabled
app = FastAPI(
    title="ValenCloud Hello Service",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise e

app.add_middleware(LoggingMiddleware)


# ---------------------------------------------------------------------------
# Unmatched routes - a known path with the wrong method is still "not found"
# ---------------------------------------------------------------------------
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 405:
        return JSONResponse({"detail": "Not Found"}, status_code=404)
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)


# Register routers
app.include_router(greeting_router, tags=["Service"])
app.include_router(health_router, tags=["Service"])

if __name__ == "__main__":
    uvicorn.run("main:app", host=HOST, port=PORT)
