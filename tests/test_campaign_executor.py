"""
Tests for apex/services/campaign_executor.py - working hours, concurrency cap,
lead claiming, dial failures and campaign completion.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from apex.models.call import Call
from apex.models.campaign import Campaign
from apex.models.lead import Lead
from apex.schemas.webhook_events import CallStatusUpdateEvent
from apex.services.call_events import handle_call_status_update
from apex.services.campaign_executor import CampaignExecutor, is_within_working_hours
from apex.services.vapi import VapiError
from tests.conftest import make_settings

# Wednesday, 11:00 in New York
NOW = datetime(2026, 10, 21, 15, 0, tzinfo=timezone.utc)


class FakeDialer:
    """Stands in for VapiClient.create_call."""

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls: list[dict] = []
        self.api_keys: list[str] = []

    def factory(self, api_key: str) -> "FakeDialer":
        self.api_keys.append(api_key)
        return self

    async def create_call(self, **kwargs) -> dict:
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return {"id": f"call_{len(self.calls)}_{kwargs['metadata']['leadId'][:8]}", "status": "queued"}


def _executor(database, dialer: FakeDialer, **settings) -> CampaignExecutor:
    return CampaignExecutor(
        database.session_factory,
        dialer_factory=dialer.factory,
        settings=make_settings(**settings),
        clock=lambda: NOW,
    )


async def _add_leads(db, campaign, count: int, **fields) -> list[Lead]:
    leads = []
    for i in range(count):
        values = {"name": f"Lead {i}", "phone": f"+1512555{i:04d}", "status": "new"}
        values.update(fields)
        lead = Lead(organization_id=campaign.organization_id, campaign_id=campaign.id, **values)
        db.add(lead)
        leads.append(lead)
    await db.commit()
    return leads


async def _update_campaign(db, campaign, **fields) -> None:
    for name, value in fields.items():
        setattr(campaign, name, value)
    await db.commit()


async def _reload(database, model, pk):
    async with database.session() as session:
        return await session.get(model, pk)


async def _calls(database, campaign_id) -> list[Call]:
    async with database.session() as session:
        result = await session.execute(select(Call).where(Call.campaign_id == campaign_id))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# is_within_working_hours
# ---------------------------------------------------------------------------

class TestWorkingHours:
    def test_disabled_gate_always_open(self):
        saturday_night = datetime(2026, 10, 24, 5, 0, tzinfo=timezone.utc)
        assert is_within_working_hours({"workingHoursEnabled": False}, saturday_night) is True

    def test_defaults_are_weekdays_nine_to_five_eastern(self):
        assert is_within_working_hours({}, NOW) is True
        # 08:00 New York
        assert is_within_working_hours({}, datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)) is False
        # Saturday 11:00 New York
        assert is_within_working_hours({}, datetime(2026, 10, 24, 15, 0, tzinfo=timezone.utc)) is False

    def test_bounds_are_inclusive(self):
        settings = {"workingHours": {"start": "11:00", "end": "11:00"}}
        assert is_within_working_hours(settings, NOW) is True

    def test_legacy_working_days(self):
        settings = {"workingHours": {"start": "09:00", "end": "17:00"}, "workingDays": {"wednesday": False}}
        assert is_within_working_hours(settings, NOW) is False

    def test_per_day_map(self):
        settings = {"workingHours": {"wednesday": {"start": "10:00", "end": "12:00"}}}
        assert is_within_working_hours(settings, NOW) is True

    def test_per_day_map_without_today_is_closed(self):
        settings = {"workingHours": {"monday": {"start": "00:00", "end": "23:59"}}}
        assert is_within_working_hours(settings, NOW) is False

    def test_per_day_entry_disabled(self):
        settings = {"workingHours": {"wednesday": {"start": "09:00", "end": "17:00", "enabled": False}}}
        assert is_within_working_hours(settings, NOW) is False

    def test_campaign_timezone(self):
        # 08:00 in Los Angeles
        assert is_within_working_hours({"timezone": "America/Los_Angeles"}, NOW) is False

    def test_unknown_timezone_falls_back_to_default(self):
        assert is_within_working_hours({"timezone": "Mars/Olympus"}, NOW) is True

    def test_naive_datetime_is_treated_as_utc(self):
        assert is_within_working_hours({}, NOW.replace(tzinfo=None)) is True


# ---------------------------------------------------------------------------
# Dialing
# ---------------------------------------------------------------------------

class TestDialing:
    async def test_dials_new_leads(self, database, db, campaign):
        leads = await _add_leads(db, campaign, 3)
        dialer = FakeDialer()

        result = await _executor(database, dialer).process_campaigns()

        assert result.processed == 1
        assert result.calls == 3
        assert result.errors == []
        assert dialer.api_keys == ["vapi-private-key"]
        assert dialer.calls[0]["assistant_id"] == "asst_123"
        assert dialer.calls[0]["phone_number_id"] == "pn_123"
        assert dialer.calls[0]["customer_number"].startswith("+1512555")
        metadata = [c["metadata"] for c in dialer.calls]
        assert {m["leadId"] for m in metadata} == {str(lead.id) for lead in leads}
        assert {m["campaignId"] for m in metadata} == {str(campaign.id)}
        assert {m["organizationId"] for m in metadata} == {str(campaign.organization_id)}

        for lead in leads:
            stored = await _reload(database, Lead, lead.id)
            assert stored.status == "calling"
            assert stored.call_attempts == 1
        calls = await _calls(database, campaign.id)
        assert len(calls) == 3
        assert {c.status for c in calls} == {"queued"}
        assert (await _reload(database, Campaign, campaign.id)).total_calls == 3

    async def test_call_recorded_by_webhook_first_is_kept(self, database, db, campaign):
        [lead] = await _add_leads(db, campaign, 1)

        class WebhookFirstDialer(FakeDialer):
            async def create_call(self, **kwargs) -> dict:
                self.calls.append(kwargs)
                metadata = kwargs["metadata"]
                async with database.session() as session:
                    await handle_call_status_update(CallStatusUpdateEvent(
                        vapi_call_id="call_early",
                        organization_id=metadata["organizationId"],
                        campaign_id=metadata["campaignId"],
                        lead_id=metadata["leadId"],
                        status="ringing",
                    ), session)
                    await session.commit()
                return {"id": "call_early", "status": "queued"}

        result = await _executor(database, WebhookFirstDialer()).process_campaigns()

        assert result.calls == 1
        assert result.errors == []
        calls = await _calls(database, campaign.id)
        assert len(calls) == 1
        assert calls[0].vapi_call_id == "call_early"
        assert calls[0].lead_id == lead.id
        assert calls[0].status == "ringing"
        assert (await _reload(database, Campaign, campaign.id)).total_calls == 1

    async def test_concurrency_cap(self, database, db, campaign):
        await _update_campaign(db, campaign, settings={"workingHoursEnabled": False, "maxConcurrentCalls": 2})
        await _add_leads(db, campaign, 5)

        result = await _executor(database, FakeDialer()).process_campaigns()
        assert result.calls == 2

    async def test_in_flight_calls_use_slots(self, database, db, campaign):
        await _update_campaign(db, campaign, settings={"workingHoursEnabled": False, "maxConcurrentCalls": 2})
        db.add(Call(
            organization_id=campaign.organization_id, campaign_id=campaign.id,
            vapi_call_id="call_in_flight", status="in_progress",
        ))
        await db.commit()
        await _add_leads(db, campaign, 3)

        dialer = FakeDialer()
        result = await _executor(database, dialer).process_campaigns()
        assert result.calls == 1

    async def test_at_capacity_places_nothing(self, database, db, campaign):
        await _update_campaign(db, campaign, settings={"workingHoursEnabled": False, "maxConcurrentCalls": 1})
        db.add(Call(
            organization_id=campaign.organization_id, campaign_id=campaign.id,
            vapi_call_id="call_ringing", status="ringing",
        ))
        await db.commit()
        await _add_leads(db, campaign, 1)

        dialer = FakeDialer()
        result = await _executor(database, dialer).process_campaigns()
        assert result.calls == 0
        assert dialer.calls == []

    async def test_outside_working_hours_skips_unless_forced(self, database, db, campaign):
        await _update_campaign(db, campaign, settings={"workingHours": {"start": "13:00", "end": "17:00"}})
        await _add_leads(db, campaign, 1)

        dialer = FakeDialer()
        skipped = await _executor(database, dialer).process_campaigns()
        assert skipped.calls == 0
        assert dialer.calls == []

        forced = await _executor(database, dialer).process_campaigns(force=True)
        assert forced.calls == 1

    async def test_paused_campaign_is_not_processed(self, database, db, campaign):
        await _update_campaign(db, campaign, status="paused")
        await _add_leads(db, campaign, 1)

        result = await _executor(database, FakeDialer()).process_campaigns()
        assert result.processed == 0
        assert result.calls == 0


# ---------------------------------------------------------------------------
# Lead outcomes on failure
# ---------------------------------------------------------------------------

class TestDialFailures:
    async def test_vapi_error_returns_lead_to_queue(self, database, db, campaign):
        [lead] = await _add_leads(db, campaign, 1)

        result = await _executor(database, FakeDialer(error=VapiError("503", 503))).process_campaigns()

        assert result.calls == 0
        stored = await _reload(database, Lead, lead.id)
        assert stored.status == "new"
        assert stored.call_attempts == 1
        assert await _calls(database, campaign.id) == []

    async def test_vapi_error_on_last_attempt_fails_lead(self, database, db, campaign):
        [lead] = await _add_leads(db, campaign, 1, call_attempts=2)

        await _executor(database, FakeDialer(error=VapiError("boom"))).process_campaigns()

        stored = await _reload(database, Lead, lead.id)
        assert stored.status == "failed"
        assert stored.call_attempts == 3

    async def test_exhausted_leads_are_not_selected(self, database, db, campaign):
        await _add_leads(db, campaign, 1, call_attempts=3)
        dialer = FakeDialer()
        await _executor(database, dialer).process_campaigns()
        assert dialer.calls == []

    async def test_invalid_phone(self, database, db, campaign):
        [lead] = await _add_leads(db, campaign, 1, phone="12")
        dialer = FakeDialer()

        result = await _executor(database, dialer).process_campaigns()

        assert result.calls == 0
        assert dialer.calls == []
        assert (await _reload(database, Lead, lead.id)).status == "invalid_phone"

    async def test_misconfigured_campaign_is_reported_and_isolated(self, database, db, campaign, organization):
        await _add_leads(db, campaign, 1)
        await _update_campaign(db, campaign, assistant_id=None)

        healthy = Campaign(
            organization_id=organization.id, name="Healthy", status="active",
            assistant_id="asst_999", phone_number_id="pn_999",
            settings={"workingHoursEnabled": False},
        )
        db.add(healthy)
        await db.commit()
        await _add_leads(db, healthy, 1)

        result = await _executor(database, FakeDialer()).process_campaigns()

        assert result.processed == 2
        assert result.calls == 1
        assert len(result.errors) == 1
        assert result.errors[0]["campaign_id"] == str(campaign.id)
        assert "assistant" in result.errors[0]["error"]

    async def test_campaign_selection_failure_propagates(self):
        def _factory():
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        executor = CampaignExecutor(MagicMock(side_effect=_factory), settings=make_settings())
        with pytest.raises(OperationalError):
            await executor.process_campaigns()


# ---------------------------------------------------------------------------
# Campaign lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    async def test_future_scheduled_campaign_waits_even_when_forced(self, database, db, campaign):
        await _update_campaign(db, campaign, status="scheduled", scheduled_at=NOW + timedelta(hours=1))
        await _add_leads(db, campaign, 1)

        result = await _executor(database, FakeDialer()).process_campaigns(force=True)

        assert result.calls == 0
        assert (await _reload(database, Campaign, campaign.id)).status == "scheduled"

    async def test_due_scheduled_campaign_starts(self, database, db, campaign):
        await _update_campaign(db, campaign, status="scheduled", scheduled_at=NOW - timedelta(minutes=1))
        await _add_leads(db, campaign, 1)

        result = await _executor(database, FakeDialer()).process_campaigns()

        assert result.calls == 1
        stored = await _reload(database, Campaign, campaign.id)
        assert stored.status == "active"
        assert stored.started_at is not None

    async def test_completes_when_nothing_left(self, database, db, campaign):
        await _add_leads(db, campaign, 2, status="contacted")

        await _executor(database, FakeDialer()).process_campaigns()

        stored = await _reload(database, Campaign, campaign.id)
        assert stored.status == "completed"
        assert stored.completed_at is not None

    async def test_not_completed_while_leads_await_outcome(self, database, db, campaign, lead):
        # `lead` is in "calling": dialed, end-of-call report not in yet
        await _executor(database, FakeDialer()).process_campaigns()
        assert (await _reload(database, Campaign, campaign.id)).status == "active"


# ---------------------------------------------------------------------------
# Overlapping ticks
# ---------------------------------------------------------------------------

class TestOverlappingTicks:
    async def test_each_lead_is_dialed_once(self, database, db, campaign):
        leads = await _add_leads(db, campaign, 4)
        dialer = FakeDialer(delay=0.02)

        first, second = await asyncio.gather(
            _executor(database, dialer).process_campaigns(),
            _executor(database, dialer).process_campaigns(),
        )

        assert first.calls + second.calls == 4
        dialed = [c["metadata"]["leadId"] for c in dialer.calls]
        assert sorted(dialed) == sorted(str(lead.id) for lead in leads)
        assert len(await _calls(database, campaign.id)) == 4
