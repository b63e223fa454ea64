"""Build endpoints.

- GET /builds - List build records
- GET /builds/{id} - Get a build record with its steps
- POST /builds - Build a stage graph for one or more platforms
"""

from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from stagecache.builds.executor import Executor
from stagecache.builds.service import (
    BuildNotFoundError,
    BuildServiceError,
    build_record_to_dict,
    get_build,
    list_builds,
    run_builds,
)
from stagecache.builds.store import CacheStore
from stagecache.config import get_settings
from stagecache.graph.context import BuildContext, BuildContextError
from stagecache.graph.io import parse_graph_data
from stagecache.graph.schema import GraphValidationError
from stagecache.types import BatchMode, BuildStatus
from web.deps import get_db, get_executor, get_store

router = APIRouter()


class BuildRequest(BaseModel):
    """Request body for builds."""

    graph: dict[str, Any]
    context: str = Field(description="Build context directory on the server")
    platforms: list[str] = Field(min_length=1)
    target: str | None = None
    mode: str = "fail-fast"


@router.get("")
def list_builds_endpoint(
    platform: str | None = Query(None, description="Filter by platform"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build records.

    Args:
        platform: Filter by platform.
        status: Filter by status.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of build records.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in BuildStatus)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: {valid}",
                },
            ) from None

    builds = list_builds(db, platform=platform, status=status_filter, limit=limit)
    return [build_record_to_dict(b) for b in builds]


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build record by ID, including its steps.

    Raises:
        HTTPException: If build not found.
    """
    try:
        build = get_build(db, build_id)
        return build_record_to_dict(build, include_steps=True)
    except BuildNotFoundError:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={
                "code": "build_not_found",
                "message": f"Build not found: {build_id}",
            },
        ) from None


@router.post("")
def run_build_endpoint(
    request: BuildRequest,
    db: Session = Depends(get_db),
    store: CacheStore = Depends(get_store),
    executor: Executor = Depends(get_executor),
) -> dict[str, Any]:
    """Build a stage graph for the requested platforms.

    Args:
        request: Graph, build context and platforms.
        db: Database session.
        store: Cache store.
        executor: Executor used for cache misses.

    Returns:
        Per-platform results and the created build record IDs.

    Raises:
        HTTPException: On invalid graphs, contexts or modes.
    """
    try:
        batch_mode = BatchMode(request.mode)
    except ValueError:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "invalid_mode",
                "message": f"Invalid mode: {request.mode}. "
                "Valid values: fail-fast, best-effort",
            },
        ) from None

    try:
        graph = parse_graph_data(request.graph)
    except ValidationError as e:
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "invalid_graph", "message": str(e)},
        ) from None
    except GraphValidationError as e:
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": e.code, "message": str(e), "reference": e.reference},
        ) from None

    try:
        context = BuildContext(Path(request.context))
        batch, records = run_builds(
            db,
            graph,
            context,
            request.platforms,
            store,
            executor=executor,
            target=request.target,
            mode=batch_mode,
            settings=get_settings(),
        )
    except GraphValidationError as e:
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": e.code, "message": str(e), "reference": e.reference},
        ) from None
    except (BuildContextError, BuildServiceError) as e:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        ) from None

    result = batch.to_dict()
    result["build_ids"] = {r.platform: r.id for r in records}
    return result
