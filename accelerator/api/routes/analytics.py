"""统计接口"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from accelerator.core.auth import require_auth
from accelerator.services import analytics
from accelerator.services.auth_provider import AuthSession

router = APIRouter(tags=["Analytics"])


@router.get("/analytics", summary="获取统计数据")
async def get_analytics(
    type: Literal["dashboard", "api", "storage", "activity"] = "dashboard",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AuthSession = Depends(require_auth),
) -> Dict[str, Any]:
    user_id = session.user.id
    if type == "api":
        data: Any = await run_in_threadpool(analytics.get_user_api_stats, user_id, start_date, end_date)
    elif type == "storage":
        data = await run_in_threadpool(analytics.get_user_storage_stats, user_id)
    elif type == "activity":
        data = await run_in_threadpool(analytics.get_user_activity, user_id, limit, offset)
    else:
        data = await analytics.get_dashboard_stats(user_id)
    return {"success": True, "data": data}
