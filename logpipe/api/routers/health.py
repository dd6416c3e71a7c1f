"""
Logpipe - Health Router

GET /health          capability probe: 200 "OK" only if the broker answers
GET /health/details  the same probe, per-dependency, as JSON
GET /livez           process liveness, always 200
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, PlainTextResponse

from logpipe.core.health import HealthProbe, HealthReport, HealthStatus

from ..deps import get_health_probe

router = APIRouter(tags=["health"])


async def _probe(probe: Optional[HealthProbe]) -> HealthReport:
    if probe is None:
        return HealthReport(status=HealthStatus.UNAVAILABLE)
    return await probe.check()


@router.get("/health", response_class=PlainTextResponse)
async def health(probe: Optional[HealthProbe] = Depends(get_health_probe)) -> PlainTextResponse:
    report = await _probe(probe)
    if report.healthy:
        return PlainTextResponse("OK", status_code=status.HTTP_200_OK)
    return PlainTextResponse("Unavailable", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@router.get("/health/details")
async def health_details(probe: Optional[HealthProbe] = Depends(get_health_probe)) -> JSONResponse:
    report = await _probe(probe)
    code = status.HTTP_200_OK if report.healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(report.to_dict(), status_code=code)


@router.get("/livez", response_class=PlainTextResponse)
async def livez() -> PlainTextResponse:
    return PlainTextResponse("OK")
