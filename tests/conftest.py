"""
Shared pytest fixtures for the ICP discovery test suite.
"""

from datetime import date, datetime, timedelta

import pytest

from icp_discovery.storage import create_db_engine, init_db, make_session_factory
from icp_discovery.storage.models import (
    Account,
    Activity,
    Connection,
    Contact,
    Conversation,
    CustomFieldDiscovery,
    Deal,
    DealContact,
    Lead,
    WorkspaceConfig,
)

AS_OF = datetime(2026, 3, 2, 12, 0, 0)


class Seeder:
    """Adds CRM rows for one workspace through a single session."""

    def __init__(self, session_factory, workspace_id):
        self.workspace_id = workspace_id
        self.session = session_factory()

    def _add(self, row):
        self.session.add(row)
        self.session.flush()
        return row

    def account(self, industry=None, employee_count=None, custom_fields=None, name="Acme"):
        return self._add(Account(
            workspace_id=self.workspace_id,
            name=name,
            industry=industry,
            employee_count=employee_count,
            custom_fields=custom_fields,
        ))

    def deal(self, stage, amount=None, account=None, close_date=None, created_at=None,
             probability=None, owner=None, name=None, custom_fields=None):
        return self._add(Deal(
            workspace_id=self.workspace_id,
            account_id=account.id if account else None,
            name=name,
            amount=amount,
            stage_normalized=stage,
            probability=probability,
            close_date=close_date,
            owner=owner,
            custom_fields=custom_fields,
            created_at=created_at or AS_OF,
        ))

    def contact(self, title=None, email=None, phone=None, first_name=None, last_name=None):
        return self._add(Contact(
            workspace_id=self.workspace_id,
            first_name=first_name,
            last_name=last_name,
            title=title,
            email=email,
            phone=phone,
        ))

    def role(self, deal, contact, buying_role=None, seniority=None, department=None, enrichment_status=None):
        return self._add(DealContact(
            workspace_id=self.workspace_id,
            deal_id=deal.id,
            contact_id=contact.id,
            buying_role=buying_role,
            seniority_verified=seniority,
            department_verified=department,
            enrichment_status=enrichment_status,
        ))

    def activity(self, deal, activity_type, timestamp, contact=None):
        return self._add(Activity(
            workspace_id=self.workspace_id,
            deal_id=deal.id,
            contact_id=contact.id if contact else None,
            activity_type=activity_type,
            timestamp=timestamp,
        ))

    def conversation(self, deal, call_date, duration_seconds=1800):
        return self._add(Conversation(
            workspace_id=self.workspace_id,
            deal_id=deal.id,
            call_date=call_date,
            duration_seconds=duration_seconds,
        ))

    def lead(self, source, deal=None):
        return self._add(Lead(
            workspace_id=self.workspace_id,
            lead_source=source,
            is_converted=deal is not None,
            converted_deal_id=deal.id if deal else None,
        ))

    def connection(self, connector_name, status="active"):
        return self._add(Connection(
            workspace_id=self.workspace_id,
            connector_name=connector_name,
            status=status,
        ))

    def field_discovery(self, top_fields, completed_at=AS_OF):
        return self._add(CustomFieldDiscovery(
            workspace_id=self.workspace_id,
            status="completed",
            result={"topFields": top_fields},
            completed_at=completed_at,
        ))

    def department_patterns(self, patterns):
        return self._add(WorkspaceConfig(workspace_id=self.workspace_id, department_patterns=patterns))

    def commit(self):
        self.session.commit()

    def close(self):
        self.session.close()


# =============================================================================
# Database fixtures
# =============================================================================

@pytest.fixture
def db_engine():
    """Fresh in-memory SQLite database with all tables created."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seeder(session_factory):
    """Seeder for workspace ws_test."""
    seeder = Seeder(session_factory, "ws_test")
    yield seeder
    seeder.close()


# =============================================================================
# Scenario fixtures
# =============================================================================

SEGMENT_FIELD = {
    "fieldKey": "segment",
    "entityType": "deal",
    "icpRelevanceScore": 80,
    "winRateByValue": {
        "enterprise": {"winRate": 1.0, "dealCount": 20},
        "smb": {"winRate": 0.25, "dealCount": 20},
    },
}
REGION_FIELD = {
    "fieldKey": "region",
    "entityType": "deal",
    "icpRelevanceScore": 70,
    "winRateByValue": {
        "west": {"winRate": 0, "dealCount": 4},
        "east": {"winRate": 0, "dealCount": 3},
    },
}
LEAD_FIELD = {
    "fieldKey": "lead_band",
    "entityType": "lead",
    "icpRelevanceScore": 90,
    "winRateByValue": {"hot": {"winRate": 0.8, "dealCount": 10}},
}


def build_descriptive_corpus(seeder):
    """
    40 closed deals (25 won / 15 lost), every deal role-tagged.

    Personas:
      vp__engineering   on won 0-11 and lost 0-2    (lift 2.4)
      director__finance on won 0-5 and lost 0-1     (lift 1.8, 8 deals)
      manager__sales    on won 12-13 and lost 3-10
      ic__engineering   on won 14-24 and lost 11-14
    Industries: Computer Software 13/5, Financial Services 12/0, Retail 0/10
    Segment field: enterprise on won 0-19, smb elsewhere
    """
    won, lost = [], []
    for i in range(25):
        industry = "COMPUTER_SOFTWARE" if i % 2 == 0 else "financial_services"
        account = seeder.account(industry=industry, employee_count=200, name=f"Won {i}")
        close = AS_OF.date() - timedelta(days=(i + 1) * 5)
        won.append(seeder.deal(
            "closed_won",
            amount=50000 + i * 1000,
            account=account,
            close_date=close,
            created_at=datetime.combine(close, datetime.min.time()) - timedelta(days=60),
            name=f"Won deal {i}",
            custom_fields={"segment": "enterprise" if i < 20 else "smb"},
        ))
    for i in range(15):
        industry = "COMPUTER_SOFTWARE" if i % 3 == 0 else "Retail"
        account = seeder.account(industry=industry, employee_count=3000, name=f"Lost {i}")
        close = AS_OF.date() - timedelta(days=(i + 1) * 4)
        lost.append(seeder.deal(
            "closed_lost",
            amount=30000,
            account=account,
            close_date=close,
            created_at=datetime.combine(close, datetime.min.time()) - timedelta(days=90),
            name=f"Lost deal {i}",
            custom_fields={"segment": "smb"},
        ))

    def attach(deals, title, buying_role):
        for deal in deals:
            contact = seeder.contact(title=title, email=f"{buying_role}@example.com")
            seeder.role(deal, contact, buying_role=buying_role)

    attach(won[0:12] + lost[0:3], "VP Engineering", "champion")
    attach(won[0:6] + lost[0:2], "Director of Finance", "economic_buyer")
    attach(won[12:14] + lost[3:11], "Sales Manager", "influencer")
    attach(won[14:25] + lost[11:15], "Software Engineer", "technical_evaluator")

    for i in range(6):
        seeder.lead("Webinar", deal=won[i] if i < 3 else (lost[0] if i == 3 else None))
    seeder.lead(None)
    seeder.lead(None)

    seeder.field_discovery([SEGMENT_FIELD, REGION_FIELD, LEAD_FIELD])
    seeder.commit()
    return won, lost


@pytest.fixture
def descriptive_workspace(seeder):
    """ws_test seeded with a 40-deal descriptive corpus."""
    build_descriptive_corpus(seeder)
    return seeder.workspace_id


def build_scoring_deal(seeder, stage="decision"):
    """
    One open 120k deal in decision with three role-tagged contacts and
    15 activities over 8 days, the latest 10 days before AS_OF.
    """
    account = seeder.account(industry="financial_services", employee_count=400, name="Globex")
    deal = seeder.deal(
        stage,
        amount=120000,
        account=account,
        close_date=AS_OF.date() + timedelta(days=45),
        created_at=AS_OF - timedelta(days=25),
        probability=60,
        owner="Dana",
        name="Globex expansion",
    )
    champion = seeder.contact(title="VP Engineering", email="vp@globex.com", first_name="Avery")
    buyer = seeder.contact(title="CFO", email="cfo@globex.com", phone="+1 555 0100", first_name="Sam")
    evaluator = seeder.contact(title="Software Engineer", first_name="Kai")
    seeder.role(deal, champion, buying_role="champion")
    seeder.role(deal, buyer, buying_role="economic_buyer")
    seeder.role(deal, evaluator, buying_role="technical_evaluator")

    types = ["email", "call", "meeting"] * 5
    for i, activity_type in enumerate(types):
        offset = 10 + (i % 8)
        seeder.activity(deal, activity_type, AS_OF - timedelta(days=offset))

    seeder.commit()
    return deal, {"champion": champion, "buyer": buyer, "evaluator": evaluator}


@pytest.fixture
def scoring_workspace(seeder):
    """ws_test with one well-qualified open deal and no call connector."""
    deal, contacts = build_scoring_deal(seeder)
    return deal, contacts


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def today() -> date:
    return AS_OF.date()


@pytest.fixture
def combined_workspace(seeder):
    """ws_test with the descriptive corpus plus the open scoring deal."""
    build_descriptive_corpus(seeder)
    build_scoring_deal(seeder)
    return seeder.workspace_id
