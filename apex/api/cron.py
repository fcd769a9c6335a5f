"""
Cron trigger - an external scheduler calls this once a minute to run one
campaign executor tick.

- GET  /api/cron/campaign-executor[?force=true]
- any other method -> 405, the executor is never built

Overlapping invocations are not serialized here; the executor's per-lead
claims keep concurrent ticks from dialing the same lead.
"""
import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from apex.config import get_settings
from apex.database import Database, get_database
from apex.schemas.api_responses import CronErrorResponse, CronSuccessResponse, TickResultSchema
from apex.services.campaign_executor import CampaignExecutor
from apex.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])


def get_campaign_executor(database: Database = Depends(get_database)) -> CampaignExecutor:
    """A fresh executor for every invocation."""
    return CampaignExecutor(database.session_factory, settings=get_settings())


async def verify_cron_secret(request: Request) -> None:
    """When CRON_SECRET is set, require Authorization: Bearer <secret>."""
    secret = get_settings().cron_secret
    if not secret:
        return
    provided = request.headers.get("authorization", "")
    if not hmac.compare_digest(provided.encode(), f"Bearer {secret}".encode()):
        raise HTTPException(status_code=401, detail="Invalid cron credentials")


@router.get("/campaign-executor", dependencies=[Depends(verify_cron_secret)])
async def trigger_campaign_executor(
    force: bool = False,
    executor: CampaignExecutor = Depends(get_campaign_executor),
):
    """Run one campaign tick. force=true skips the working-hours gate."""
    logger.info("Campaign executor triggered (force=%s)", force)
    try:
        result = await executor.process_campaigns(force)
    except Exception as e:
        logger.error("Campaign processing failed: %s", str(e), exc_info=True)
        await send_alert(AlertType.CAMPAIGN_TICK_FAILED, f"Campaign processing failed: {e}")
        body = CronErrorResponse(
            error="Campaign processing failed",
            message=str(e),
            timestamp=datetime.now(timezone.utc),
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    return CronSuccessResponse(
        message="Campaign processing completed",
        force_mode=force,
        result=TickResultSchema(**result.to_dict()),
        timestamp=datetime.now(timezone.utc),
    )


@router.api_route("/campaign-executor", methods=["POST", "PUT", "PATCH", "DELETE"])
async def campaign_executor_method_not_allowed():
    return JSONResponse(
        status_code=405,
        content={"error": "Method not allowed"},
        headers={"Allow": "GET"},
    )
