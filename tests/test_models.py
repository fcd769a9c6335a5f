"""
Tests for apex/models - identifiers survive a round trip through the database.
"""
import uuid

from sqlalchemy import select

from apex.models.campaign import Campaign
from apex.models.organization import Organization


class TestIdentifierStorage:
    async def test_all_digit_uuid_round_trips(self, database):
        org_id = uuid.UUID("11111111-1111-1111-1111-111111111111")
        async with database.session() as session:
            session.add(Organization(id=org_id, name="Digits Inc", owner_id="user_1", settings={}))
            session.add(Campaign(organization_id=org_id, name="Digits", status="draft", settings={}))
            await session.commit()

        async with database.session() as session:
            org = await session.get(Organization, org_id)
            result = await session.execute(
                select(Campaign).where(Campaign.organization_id == org_id)
            )
            campaign = result.scalar_one()

        assert org is not None
        assert org.id == org_id
        assert campaign.organization_id == org_id
        assert isinstance(campaign.organization_id, uuid.UUID)
