"""Flash telemetry endpoints

POST /log     - record a flash outcome (guard pipeline)
GET  /counts  - per-project counters
GET  /errors  - error log, filtered and paginated, or summarized
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from webflasher.middleware.security import get_client_identifier
from webflasher.services.guard_pipeline import GuardPipeline, RawRequest

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_ERRORS_LIMIT = 50
MAX_ERRORS_LIMIT = 500

_OPEN_CORS = {"Access-Control-Allow-Origin": "*"}


class PrettyJSONResponse(JSONResponse):
    """JSON response rendered with indentation"""

    def render(self, content: Any) -> bytes:
        return json.dumps(content, indent=2, ensure_ascii=False).encode("utf-8")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@router.api_route("/log", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
async def log_flash(request: Request):
    """Record one flash outcome"""
    pipeline: GuardPipeline = request.app.state.guard_pipeline
    settings = request.app.state.settings

    raw = RawRequest(
        method=request.method,
        body=await request.body(),
        headers={k.lower(): v for k, v in request.headers.items()},
        client_ip=get_client_identifier(request, settings.TRUST_PROXY_HEADERS),
    )
    # File locks block, keep them off the event loop
    result = await run_in_threadpool(pipeline.handle, raw)

    if result.body is None:
        return Response(status_code=result.status, headers=result.headers)
    return JSONResponse(status_code=result.status, content=result.body, headers=result.headers)


@router.get("/counts")
async def get_flash_counts(request: Request):
    """All project counters"""
    counts = await run_in_threadpool(request.app.state.flash_stats.counts)
    return PrettyJSONResponse(content=counts, headers=_OPEN_CORS)


@router.get("/errors")
async def get_flash_errors(
    request: Request,
    category: Optional[str] = None,
    project: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    summary: Optional[str] = None,
):
    """
    Error log.

    - category / project: exact-match filters, ANDed
    - limit: default 50, clamped to [0, 500]
    - offset: default 0, floor 0
    - summary=true: category and per-project tallies instead of entries
    """
    store = request.app.state.flash_stats

    if summary == "true":
        body = await run_in_threadpool(store.summarize)
        return PrettyJSONResponse(content=body, headers=_OPEN_CORS)

    limit_value = min(max(_parse_int(limit, DEFAULT_ERRORS_LIMIT), 0), MAX_ERRORS_LIMIT)
    offset_value = max(_parse_int(offset, 0), 0)

    body = await run_in_threadpool(
        store.query_errors,
        category=category or None,
        project=project or None,
        limit=limit_value,
        offset=offset_value,
    )
    return PrettyJSONResponse(content=body, headers=_OPEN_CORS)
