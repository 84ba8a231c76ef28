import secrets

from fastapi import APIRouter, HTTPException, Request, Response

from servicebook.infra.metrics import Metrics, metrics

router = APIRouter()


def _scrape_authorized(request: Request, token: str | None) -> bool:
    if not token:
        return True
    supplied = request.headers.get("Authorization") or ""
    return secrets.compare_digest(supplied, f"Bearer {token}")


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    """Prometheus scrape of booking, hold, dispatch, webhook and sweep counters."""

    registry: Metrics = getattr(request.app.state, "metrics", None) or metrics
    if not registry.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")

    app_settings = getattr(request.app.state, "app_settings", None)
    if not _scrape_authorized(request, getattr(app_settings, "metrics_token", None)):
        raise HTTPException(status_code=401, detail="Unauthorized")

    body, content_type = registry.render()
    return Response(content=body, media_type=content_type)
