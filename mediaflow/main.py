"""FastAPI application entry point for the transcoding admin API."""

import asyncio

from fastapi import Depends, FastAPI, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from mediaflow.core.alerting import setup_default_thresholds
from mediaflow.core.config import settings
from mediaflow.core.health import HealthCheck, HealthStatus, get_health_checks, overall_status
from mediaflow.core.logging import setup_logging
from mediaflow.core.metrics import get_content_type, get_metrics, set_app_info
from mediaflow.core.middleware import CorrelationIdMiddleware, MetricsMiddleware
from mediaflow.core.tracing import setup_tracing
from mediaflow.modules.transcoding.router import router as transcoding_router

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Transcoding Job Orchestration API

Read and administrative access to transcoding jobs.

* **Jobs** - list, inspect by id or by video, abort
* **Stats** - job counts per status
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "transcoding",
            "description": "Transcoding job administration",
        },
    ],
)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=settings.ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
    enable_console_export=settings.DEBUG,
)

setup_default_thresholds()

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check(checks: list[HealthCheck] = Depends(get_health_checks)) -> JSONResponse:
    """Health check endpoint.

    Pings the database and Redis. Responds 503 when any of them is unhealthy.
    """
    components = await asyncio.gather(*(check() for check in checks))
    status = overall_status(components)
    return JSONResponse(
        status_code=503 if status == HealthStatus.UNHEALTHY else 200,
        content={
            "status": status.value,
            "checks": {c.name: c.to_dict() for c in components},
        },
    )


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(transcoding_router, prefix=settings.API_V1_PREFIX)
