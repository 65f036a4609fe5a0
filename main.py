# main.py

import logging
import time

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from errors import LLMError, PlannerError
from logging_config import setup_logging
from models import ActivityPlan, PlannedActivity, PlanRequest, PlanResponse, SingleActivityRequest
from request_context import bind_request_id, get_request_id
from security import SecurityValidator, rate_limit, security_headers_middleware
from services.planner import TripPlanner, build_planner

# Initialize logging BEFORE creating the app
setup_logging(settings.log_level)
log = logging.getLogger("app")

MAX_BODY_BYTES = 1024 * 200

app = FastAPI(
    title="Activity Planner",
    version="0.1.0",
    description="LLM-backed activity planning: sanitize, validate, deduplicate, score, tier and allocate.",
)


@app.on_event("startup")
async def on_startup():
    try:
        app.state.planner = build_planner()
    except LLMError as e:
        # keep /health up so the missing key is visible
        app.state.planner = None
        log.warning("Planner unavailable at startup", extra={"error": e.message})
    log.info("App starting", extra={
        "request_id": get_request_id(),
        "model": settings.PERPLEXITY_MODEL,
        "env": settings.APP_ENV,
        "debug": settings.DEBUG,
        "marketplace": settings.marketplace_enabled,
        "gds": settings.gds_enabled,
    })


@app.on_event("shutdown")
async def on_shutdown():
    planner = getattr(app.state, "planner", None)
    if planner is not None:
        await planner.aclose()


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
    expose_headers=settings.CORS_EXPOSE_HEADERS,
    max_age=settings.CORS_MAX_AGE,
)

app.middleware("http")(security_headers_middleware())


@app.middleware("http")
async def request_logging_mw(request: Request, call_next):
    rid = bind_request_id(request.headers.get("x-request-id"))
    start = time.perf_counter()
    response: Response | None = None

    if request.method in ("POST", "PUT", "PATCH"):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                SecurityValidator.validate_request_size(int(content_length), max_size=MAX_BODY_BYTES)
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header."},
                                    headers={"X-Request-Id": rid})
            except HTTPException as e:
                log.warning("Request size validation failed", extra={
                    "request_id": rid,
                    "size": content_length,
                    "client_ip": request.client.host if request.client else "unknown",
                })
                return JSONResponse(status_code=e.status_code, content={"detail": e.detail},
                                    headers={"X-Request-Id": rid})

    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.perf_counter() - start) * 1000)
        if response is not None:
            response.headers["X-Request-Id"] = rid
        log.info(
            f"{request.method} {request.url.path} -> {getattr(response, 'status_code', '?')} in {dur_ms}ms",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": getattr(response, "status_code", None),
                "duration_ms": dur_ms,
            },
        )


@app.exception_handler(PlannerError)
async def planner_error_handler(request: Request, exc: PlannerError):
    log.warning("Request failed", extra={
        "request_id": get_request_id(),
        "path": request.url.path,
        "error": exc.code,
        "detail": exc.message,
    })
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})


def get_planner(request: Request) -> TripPlanner:
    planner = getattr(request.app.state, "planner", None)
    if planner is None:
        raise HTTPException(status_code=503, detail="Planner not configured. Check PERPLEXITY_API_KEY.")
    return planner


@app.get("/health")
def health():
    return {
        "status": "ok",
        "llm_key_loaded": bool(settings.PERPLEXITY_API_KEY),
        "model": settings.PERPLEXITY_MODEL,
        "marketplace": settings.marketplace_enabled,
        "gds": settings.gds_enabled,
    }


@app.post("/activities/generate", response_model=ActivityPlan)
@rate_limit(max_requests=10, window_seconds=60)
async def generate_activities(request: Request, req: PlanRequest, planner: TripPlanner = Depends(get_planner)):
    log.info("Activity plan requested", extra={
        "request_id": get_request_id(),
        "destination": req.destination,
        "days": req.days,
        "preselected": len(req.preselected_activities),
    })
    return await planner.activities.generate_plan(req)


@app.post("/activities/single", response_model=PlannedActivity)
@rate_limit(max_requests=30, window_seconds=60)
async def generate_single_activity(request: Request, req: SingleActivityRequest,
                                   planner: TripPlanner = Depends(get_planner)):
    return await planner.activities.generate_single_activity(req)


@app.post("/plan", response_model=PlanResponse)
@rate_limit(max_requests=5, window_seconds=60)
async def plan_trip(request: Request, req: PlanRequest, planner: TripPlanner = Depends(get_planner)):
    log.info("Trip plan requested", extra={
        "request_id": get_request_id(),
        "destination": req.destination,
        "days": req.days,
        "flights": bool(req.origin_code and req.destination_code),
    })
    return await planner.plan(req)


# Production entry point
if __name__ == "__main__":
    import uvicorn

    log.info(f"Starting server on {settings.HOST}:{settings.PORT}")
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        workers=1,
        access_log=True,
        log_level="info" if settings.APP_ENV == "production" else "debug",
    )
