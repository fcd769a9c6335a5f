"""
Campaign executor - advances every running campaign by one tick.

Called once a minute by the cron trigger. Each tick, per campaign:
1. Start scheduled campaigns whose scheduled_at has passed
2. Working-hours gate (skipped when forced)
3. Concurrency cap against calls still in flight
4. Claim "new" leads (new -> calling, conditional update) and dial them
5. Complete the campaign once nothing is left to call or in flight

Overlapping ticks are safe: a lead is only dialed by the tick whose
conditional update claimed it.
"""
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apex.config import Settings, get_settings
from apex.models.call import ACTIVE_CALL_STATUSES, Call
from apex.models.campaign import Campaign
from apex.models.lead import Lead
from apex.services.vapi import VapiClient, VapiError
from apex.utils.encryption import decrypt_value
from apex.utils.phone import normalize_phone_e164
from apex.utils.redaction import mask_phone

logger = logging.getLogger(__name__)

RUNNABLE_STATUSES = ("active", "scheduled")
OPEN_LEAD_STATUSES = ("new", "calling")

DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_WORKING_DAYS = {
    "monday": True,
    "tuesday": True,
    "wednesday": True,
    "thursday": True,
    "friday": True,
    "saturday": False,
    "sunday": False,
}
DEFAULT_START = "09:00"
DEFAULT_END = "17:00"


class CampaignConfigError(Exception):
    """Campaign cannot dial: missing credentials or Vapi wiring."""


@dataclass
class TickResult:
    processed: int = 0
    calls: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CampaignRun:
    calls: int = 0
    skipped: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _zone(name: Optional[str], fallback: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown campaign timezone %r - using %s", name, fallback)
        return ZoneInfo(fallback)


def is_within_working_hours(
    settings: dict,
    now: datetime,
    default_timezone: str = "America/New_York",
) -> bool:
    """
    Working-hours gate for a campaign, evaluated in the campaign's timezone.

    Two settings shapes are accepted:
    - per-day map: workingHours = {"monday": {"start": "09:00", "end": "17:00", "enabled": true}, ...}
    - legacy: workingHours = {"start", "end"} plus workingDays = {"monday": true, ...}
    workingHoursEnabled = false disables the gate. Both bounds are inclusive.
    """
    if settings.get("workingHoursEnabled") is False:
        return True

    working_hours = settings.get("workingHours") or {}
    if not isinstance(working_hours, dict):
        working_hours = {}

    tz = _zone(settings.get("timezone") or working_hours.get("timezone"), default_timezone)
    local = _as_utc(now).astimezone(tz)
    day = DAY_NAMES[local.weekday()]
    current = local.strftime("%H:%M")

    if any(name in working_hours for name in DAY_NAMES):
        day_config = working_hours.get(day)
        # Per-day map without an entry for today: not a working day
        if not isinstance(day_config, dict) or day_config.get("enabled") is False:
            return False
        start = day_config.get("start") or DEFAULT_START
        end = day_config.get("end") or DEFAULT_END
        return start <= current <= end

    working_days = settings.get("workingDays") or DEFAULT_WORKING_DAYS
    if not working_days.get(day):
        return False
    start = working_hours.get("start") or DEFAULT_START
    end = working_hours.get("end") or DEFAULT_END
    return start <= current <= end


class CampaignExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dialer_factory: Optional[Callable[[str], VapiClient]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.dialer_factory = dialer_factory or self._vapi_dialer
        self.clock = clock

    def _vapi_dialer(self, api_key: str) -> VapiClient:
        return VapiClient(
            api_key,
            base_url=self.settings.vapi_base_url,
            timeout=self.settings.vapi_timeout_seconds,
        )

    async def process_campaigns(self, force: bool = False) -> TickResult:
        """Run one tick over every active or scheduled campaign, oldest first."""
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Campaign.id)
                .where(Campaign.status.in_(RUNNABLE_STATUSES))
                .order_by(Campaign.created_at.asc())
            )
            campaign_ids = list(result.scalars().all())

        tick = TickResult(processed=len(campaign_ids))
        if not campaign_ids:
            logger.info("No active campaigns to process")
            return tick

        for campaign_id in campaign_ids:
            try:
                run = await self._process_campaign(campaign_id, now, force)
                tick.calls += run.calls
            except Exception as e:
                logger.error(
                    "Campaign processing failed: %s", str(e), exc_info=True,
                    extra={"campaign_id": str(campaign_id)},
                )
                tick.errors.append({"campaign_id": str(campaign_id), "error": str(e)})

        logger.info(
            "Campaign tick complete: %d campaigns, %d calls, %d errors",
            tick.processed, tick.calls, len(tick.errors),
        )
        return tick

    async def _process_campaign(self, campaign_id: uuid.UUID, now: datetime, force: bool) -> CampaignRun:
        async with self.session_factory() as db:
            campaign = await db.get(Campaign, campaign_id)
            if campaign is None or campaign.status not in RUNNABLE_STATUSES:
                return CampaignRun(skipped="not_runnable")
            log_extra = {
                "campaign_id": str(campaign.id),
                "organization_id": str(campaign.organization_id),
            }

            if campaign.status == "scheduled":
                scheduled_at = _as_utc(campaign.scheduled_at)
                if scheduled_at is not None and scheduled_at > now:
                    return CampaignRun(skipped="not_started")
                campaign.status = "active"
                campaign.started_at = campaign.started_at or now
                await db.commit()
                logger.info("Scheduled campaign started", extra=log_extra)

            settings = campaign.settings or {}
            if not force and not is_within_working_hours(
                settings, now, self.settings.campaign_default_timezone
            ):
                logger.debug("Outside working hours", extra=log_extra)
                return CampaignRun(skipped="outside_working_hours")

            max_concurrent = int(
                settings.get("maxConcurrentCalls")
                or settings.get("concurrent_calls")
                or self.settings.campaign_default_max_concurrent_calls
            )
            active_calls = await self._count_active_calls(db, campaign.id)
            slots = max_concurrent - active_calls
            if slots <= 0:
                logger.info(
                    "Campaign at max concurrency (%d/%d)", active_calls, max_concurrent,
                    extra=log_extra,
                )
                return CampaignRun(skipped="max_concurrency")

            lead_ids = await self._next_lead_ids(db, campaign, min(slots, self.settings.campaign_leads_per_tick))
            if not lead_ids:
                if active_calls == 0:
                    await self._complete_if_done(db, campaign, now)
                return CampaignRun(skipped="no_leads")

            api_key = decrypt_value(campaign.organization.vapi_private_key_encrypted)
            if not api_key:
                raise CampaignConfigError("Organization has no Vapi private key configured")
            assistant_id = (
                settings.get("assistantId") or settings.get("assistant_id") or campaign.assistant_id
            )
            phone_number_id = (
                settings.get("phoneNumberId") or settings.get("phone_number_id") or campaign.phone_number_id
            )
            if not assistant_id or not phone_number_id:
                raise CampaignConfigError("Campaign has no Vapi assistant or phone number configured")

            dialer = self.dialer_factory(api_key)
            calls = 0
            for lead_id in lead_ids:
                if await self._dial_lead(db, campaign, lead_id, dialer, assistant_id, phone_number_id, now):
                    calls += 1

            logger.info("Campaign tick placed %d call(s)", calls, extra=log_extra)
            return CampaignRun(calls=calls)

    async def _count_active_calls(self, db: AsyncSession, campaign_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(Call)
            .where(Call.campaign_id == campaign_id, Call.status.in_(ACTIVE_CALL_STATUSES))
        )
        return result.scalar_one()

    async def _next_lead_ids(self, db: AsyncSession, campaign: Campaign, limit: int) -> list[uuid.UUID]:
        result = await db.execute(
            select(Lead.id)
            .where(
                Lead.campaign_id == campaign.id,
                Lead.organization_id == campaign.organization_id,
                Lead.status == "new",
                Lead.call_attempts < self.settings.campaign_max_call_attempts,
            )
            .order_by(Lead.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _dial_lead(
        self,
        db: AsyncSession,
        campaign: Campaign,
        lead_id: uuid.UUID,
        dialer: VapiClient,
        assistant_id: str,
        phone_number_id: str,
        now: datetime,
    ) -> bool:
        claimed = await db.execute(
            update(Lead)
            .where(Lead.id == lead_id, Lead.status == "new")
            .values(status="calling", call_attempts=Lead.call_attempts + 1, last_called_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claimed.rowcount != 1:
            # Claimed by an overlapping tick
            return False

        lead = await db.get(Lead, lead_id, populate_existing=True)
        log_extra = {"campaign_id": str(campaign.id), "lead_id": str(lead_id)}

        phone = normalize_phone_e164(lead.phone)
        if phone is None:
            lead.status = "invalid_phone"
            await db.commit()
            logger.warning("Lead has invalid phone %s", mask_phone(lead.phone), extra=log_extra)
            return False

        try:
            vapi_call = await dialer.create_call(
                assistant_id=assistant_id,
                phone_number_id=phone_number_id,
                customer_number=phone,
                customer_name=lead.name,
                metadata={
                    "organizationId": str(campaign.organization_id),
                    "campaignId": str(campaign.id),
                    "leadId": str(lead.id),
                },
            )
        except VapiError as e:
            retry = lead.call_attempts < self.settings.campaign_max_call_attempts
            lead.status = "new" if retry else "failed"
            await db.commit()
            logger.warning(
                "Vapi call failed (attempt %d, %s): %s",
                lead.call_attempts, "will retry" if retry else "giving up", str(e),
                extra=log_extra,
            )
            return False

        status = str(vapi_call.get("status") or "queued").replace("-", "_")
        recorded = await db.execute(select(Call.id).where(Call.vapi_call_id == vapi_call["id"]))
        if recorded.scalar_one_or_none() is None:
            db.add(Call(
                organization_id=campaign.organization_id,
                campaign_id=campaign.id,
                lead_id=lead.id,
                vapi_call_id=vapi_call["id"],
                status=status if status in ACTIVE_CALL_STATUSES else "queued",
            ))
        else:
            # A webhook for this call arrived first and recorded it
            logger.info("Call %s already recorded by webhook", vapi_call["id"], extra=log_extra)
        await db.execute(
            update(Campaign)
            .where(Campaign.id == campaign.id)
            .values(total_calls=Campaign.total_calls + 1)
        )
        await db.commit()
        return True

    async def _complete_if_done(self, db: AsyncSession, campaign: Campaign, now: datetime) -> None:
        result = await db.execute(
            select(func.count())
            .select_from(Lead)
            .where(Lead.campaign_id == campaign.id, Lead.status.in_(OPEN_LEAD_STATUSES))
        )
        if result.scalar_one() > 0:
            return
        campaign.status = "completed"
        campaign.completed_at = now
        await db.commit()
        logger.info(
            "Campaign completed - no leads left to call",
            extra={"campaign_id": str(campaign.id), "organization_id": str(campaign.organization_id)},
        )
