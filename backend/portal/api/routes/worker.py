from fastapi import APIRouter
from fastapi.responses import Response

from portal.worker.delivery import render_service_worker

router = APIRouter(tags=["worker"])


@router.get("/sw.js", include_in_schema=False)
async def service_worker():
    return Response(
        content=render_service_worker(),
        media_type="application/javascript",
        headers={"Service-Worker-Allowed": "/", "Cache-Control": "no-cache"},
    )
