"""
/api/v1/structured-outputs：带 Authorization 头时按 API Key 认证，否则按登录会话认证。
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from accelerator.api.deps import Pagination, allowed_query_params, parse_pagination
from accelerator.core.api_auth import ApiRoute, AuthMode, resolve_auth_mode
from accelerator.core.errors import InvalidInput, NotFound
from accelerator.schemas import (
    ApiListResponse,
    ListMeta,
    RestoreRequest,
    StructuredOutputCreate,
    StructuredOutputUpdate,
)
from accelerator.services.structured_outputs import structured_output_store

router = APIRouter(prefix="/structured-outputs", tags=["Structured Outputs"], route_class=ApiRoute)

READ_SCOPE = "structured-outputs:read"
WRITE_SCOPE = "structured-outputs:write"

# 这两个字段不允许显式置空
REQUIRED_FIELDS = ("name", "json_schema")


def _present(output: Dict[str, Any]) -> Dict[str, Any]:
    return {**output, "schema": output["json_schema"]}


@router.get(
    "",
    summary="List structured outputs",
)
async def list_structured_outputs(
    auth: AuthMode = Depends(resolve_auth_mode(READ_SCOPE)),
    _: None = Depends(allowed_query_params("limit", "offset", "page", "search", "include_public")),
    pagination: Pagination = Depends(parse_pagination),
    search: Optional[str] = None,
    include_public: Optional[str] = None,
) -> ApiListResponse[Dict[str, Any]]:
    outputs, total = await run_in_threadpool(
        structured_output_store.list,
        auth.acting_user_id,
        include_public == "true",
        search,
        pagination.limit,
        pagination.offset,
    )
    return ApiListResponse(
        data=[_present(output) for output in outputs],
        meta=ListMeta(total=total, limit=pagination.limit, offset=pagination.offset),
    )


@router.post("", summary="Create structured output")
async def create_structured_output(
    body: StructuredOutputCreate,
    auth: AuthMode = Depends(resolve_auth_mode(WRITE_SCOPE)),
) -> Dict[str, Any]:
    output = await run_in_threadpool(structured_output_store.create, auth.acting_user_id, body.model_dump())
    return _present(output)


@router.get("/{output_id}", summary="Get structured output")
async def get_structured_output(
    output_id: str,
    auth: AuthMode = Depends(resolve_auth_mode(READ_SCOPE)),
) -> Dict[str, Any]:
    output = await run_in_threadpool(structured_output_store.get, auth.acting_user_id, output_id)
    if not output:
        raise NotFound("Schema not found")
    return _present(output)


@router.put("/{output_id}", summary="Update structured output")
async def update_structured_output(
    output_id: str,
    body: StructuredOutputUpdate,
    auth: AuthMode = Depends(resolve_auth_mode(WRITE_SCOPE)),
) -> Dict[str, Any]:
    updates = {
        key: value
        for key, value in body.model_dump(exclude_unset=True).items()
        if value is not None or key not in REQUIRED_FIELDS
    }
    output = await run_in_threadpool(
        structured_output_store.update,
        auth.acting_user_id,
        output_id,
        updates,
        "Updated via API",
    )
    return _present(output)


@router.delete("/{output_id}", summary="Delete structured output")
async def delete_structured_output(
    output_id: str,
    auth: AuthMode = Depends(resolve_auth_mode(WRITE_SCOPE)),
) -> Dict[str, Any]:
    deleted = await run_in_threadpool(structured_output_store.delete, auth.acting_user_id, output_id)
    if not deleted:
        raise NotFound("Schema not found")
    return {"success": True, "message": "Schema deleted successfully"}


@router.get("/{output_id}/versions", summary="Get version history")
async def list_versions(
    output_id: str,
    auth: AuthMode = Depends(resolve_auth_mode(READ_SCOPE)),
) -> List[Dict[str, Any]]:
    return await run_in_threadpool(structured_output_store.versions, auth.acting_user_id, output_id)


@router.post("/{output_id}/restore", summary="Restore a previous version")
async def restore_version(
    output_id: str,
    body: RestoreRequest,
    auth: AuthMode = Depends(resolve_auth_mode(WRITE_SCOPE)),
) -> Dict[str, Any]:
    """
    两种认证方式最终都以 acting_user_id 调用同一个 restore。
    """
    if not body.version:
        raise InvalidInput("Version number is required")
    output = await run_in_threadpool(
        structured_output_store.restore,
        auth.acting_user_id,
        output_id,
        body.version,
        body.change_summary or f"Restored to version {body.version}",
    )
    return _present(output)
