"""/api/v1/auth：API Key 管理和用量统计"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from accelerator.api.deps import Pagination, allowed_query_params, parse_pagination
from accelerator.core.api_auth import ApiPrincipal, ApiRoute, AuthMode, require_api_key, resolve_auth_mode
from accelerator.core.errors import InvalidInput, NotFound
from accelerator.schemas import (
    APIKeyCreateRequest,
    APIKeyCreateResponse,
    APIKeyUpdateRequest,
    ApiListResponse,
    ListMeta,
)
from accelerator.services.analytics import get_api_usage_stats
from accelerator.services.key_store import DEFAULT_RATE_LIMIT, UPDATABLE_FIELDS, invalid_scopes, key_store

router = APIRouter(prefix="/auth", tags=["API Keys"], route_class=ApiRoute)

MIN_RATE_LIMIT = 1
MAX_RATE_LIMIT = 10000


def _check_scopes(scopes: Optional[List[str]]) -> None:
    invalid = invalid_scopes(scopes or [])
    if invalid:
        raise InvalidInput(f"Invalid scopes: {', '.join(invalid)}", code="INVALID_SCOPES")


def _check_rate_limit(rate_limit: Optional[int]) -> None:
    if rate_limit is not None and not MIN_RATE_LIMIT <= rate_limit <= MAX_RATE_LIMIT:
        raise InvalidInput("Rate limit must be between 1 and 10000", code="INVALID_RATE_LIMIT")


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


@router.get("/keys", summary="List API keys")
async def list_keys(
    auth: AuthMode = Depends(resolve_auth_mode("read")),
    _: None = Depends(allowed_query_params("limit", "offset", "page")),
    pagination: Pagination = Depends(parse_pagination),
) -> ApiListResponse[Dict[str, Any]]:
    keys = await run_in_threadpool(key_store.list_keys, auth.acting_user_id)
    return ApiListResponse(
        data=keys[pagination.offset:pagination.offset + pagination.limit],
        meta=ListMeta(total=len(keys), limit=pagination.limit, offset=pagination.offset),
    )


@router.post("/keys", summary="Create API key", response_model=APIKeyCreateResponse)
async def create_key(
    body: APIKeyCreateRequest,
    auth: AuthMode = Depends(resolve_auth_mode("write")),
):
    """
    明文 key 只在创建时返回一次。
    """
    name = body.name.strip()
    if not name:
        raise InvalidInput("Name is required", code="MISSING_FIELDS")
    _check_scopes(body.scopes)
    _check_rate_limit(body.rate_limit)

    return await run_in_threadpool(
        key_store.create_key,
        auth.acting_user_id,
        name,
        body.scopes,
        body.rate_limit or DEFAULT_RATE_LIMIT,
        _iso(body.expires_at),
        body.is_test,
    )


@router.get("/keys/{key_id}", summary="Get API key")
async def get_key(key_id: str, principal: ApiPrincipal = Depends(require_api_key("read"))) -> Dict[str, Any]:
    record = await run_in_threadpool(key_store.get_key, principal.user_id, key_id)
    if not record:
        raise NotFound("API key not found", code="KEY_NOT_FOUND")
    return record


@router.put("/keys/{key_id}", summary="Update API key")
async def update_key(
    key_id: str,
    body: APIKeyUpdateRequest,
    principal: ApiPrincipal = Depends(require_api_key("write")),
) -> Dict[str, Any]:
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise InvalidInput(
            f"No valid update fields provided. Allowed fields: {', '.join(UPDATABLE_FIELDS)}",
            code="NO_UPDATE_FIELDS",
        )
    if updates.get("scopes") is not None:
        _check_scopes(updates["scopes"])
    _check_rate_limit(updates.get("rate_limit"))
    if "expires_at" in updates:
        updates["expires_at"] = _iso(updates["expires_at"])

    record = await run_in_threadpool(key_store.update_key, principal.user_id, key_id, updates)
    if not record:
        raise NotFound("API key not found", code="KEY_NOT_FOUND")
    return record


@router.delete("/keys/{key_id}", summary="Revoke or delete API key")
async def delete_key(
    key_id: str,
    permanent: Optional[str] = None,
    auth: AuthMode = Depends(resolve_auth_mode("delete")),
) -> Dict[str, bool]:
    """
    默认只停用；permanent=true 时物理删除。
    """
    is_permanent = permanent == "true"
    if is_permanent:
        found = await run_in_threadpool(key_store.delete_key, auth.acting_user_id, key_id)
    else:
        found = await run_in_threadpool(key_store.revoke_key, auth.acting_user_id, key_id)
    if not found:
        raise NotFound("API key not found", code="KEY_NOT_FOUND")
    return {"deleted": True, "permanent": is_permanent}


@router.get("/usage", summary="API usage statistics")
async def usage(
    days: Optional[str] = None,
    principal: ApiPrincipal = Depends(require_api_key("read")),
    _: None = Depends(allowed_query_params("days")),
) -> Dict[str, Any]:
    try:
        period_days = int(days) if days else 30
    except ValueError:
        period_days = 0
    if not 1 <= period_days <= 365:
        raise InvalidInput("Days parameter must be between 1 and 365")

    key_names = await run_in_threadpool(key_store.key_names, principal.user_id)
    stats = await run_in_threadpool(get_api_usage_stats, principal.user_id, period_days, key_names)
    now = datetime.now(timezone.utc)
    return {
        "period": {
            "days": period_days,
            "start_date": (now - timedelta(days=period_days)).date().isoformat(),
            "end_date": now.date().isoformat(),
        },
        **stats,
    }
