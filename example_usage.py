"""
ICP Discovery Engine - Usage Examples
=====================================
Demonstrates how to use the engines directly, with custom configuration,
and through the REST API.
"""

import random
from datetime import datetime, timedelta

from icp_discovery.storage import create_db_engine, init_db, make_session_factory, session_scope
from icp_discovery.storage.models import Account, Activity, Contact, Deal, DealContact


WORKSPACE_ID = "ws_demo"
AS_OF = datetime(2026, 3, 2, 12, 0, 0)

PERSONAS = [
    # title, buying role, won-deal odds, lost-deal odds
    ("VP Engineering", "champion", 0.7, 0.2),
    ("CFO", "economic_buyer", 0.5, 0.3),
    ("Sales Manager", "influencer", 0.2, 0.6),
    ("Software Engineer", "technical_evaluator", 0.5, 0.5),
]

INDUSTRIES = ["Computer Software", "Financial Services", "Retail", "Healthcare"]


def build_demo_workspace():
    """Seed an in-memory SQLite workspace with 60 closed and 5 open deals"""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    session_factory = make_session_factory(engine)
    rng = random.Random(7)

    with session_scope(session_factory) as session:
        def add(row):
            session.add(row)
            session.flush()
            return row

        for i in range(65):
            if i < 60:
                stage = "closed_won" if rng.random() < 0.45 else "closed_lost"
                close_date = (AS_OF - timedelta(days=rng.randint(5, 300))).date()
                created_at = datetime.combine(close_date, datetime.min.time()) - timedelta(days=rng.randint(20, 120))
            else:
                stage = rng.choice(["qualification", "evaluation", "decision", "negotiation"])
                close_date = (AS_OF + timedelta(days=rng.randint(10, 120))).date()
                created_at = AS_OF - timedelta(days=rng.randint(5, 90))

            won = stage == "closed_won"
            industry = INDUSTRIES[0] if won and rng.random() < 0.5 else rng.choice(INDUSTRIES)
            account = add(Account(
                workspace_id=WORKSPACE_ID,
                name=f"Company {i}",
                industry=industry,
                employee_count=rng.choice([40, 180, 800, 2500]),
            ))
            deal = add(Deal(
                workspace_id=WORKSPACE_ID,
                account_id=account.id,
                name=f"Deal {i}",
                amount=rng.randint(10, 150) * 1000,
                stage_normalized=stage,
                close_date=close_date,
                created_at=created_at,
                owner=rng.choice(["Dana", "Lee", "Morgan"]),
                custom_fields={"segment": rng.choice(["enterprise", "mid_market", "smb"])},
            ))

            for title, role, won_odds, lost_odds in PERSONAS:
                if rng.random() < (won_odds if won else lost_odds):
                    contact = add(Contact(
                        workspace_id=WORKSPACE_ID,
                        title=title,
                        email=f"{role}.{i}@example.com",
                    ))
                    add(DealContact(
                        workspace_id=WORKSPACE_ID,
                        deal_id=deal.id,
                        contact_id=contact.id,
                        buying_role=role,
                    ))

            for _ in range(rng.randint(0, 12)):
                add(Activity(
                    workspace_id=WORKSPACE_ID,
                    deal_id=deal.id,
                    activity_type=rng.choice(["email", "call", "meeting"]),
                    timestamp=AS_OF - timedelta(days=rng.randint(1, 40)),
                ))

    return session_factory


# =============================================================================
# EXAMPLE 1: ICP Discovery
# =============================================================================

def example_discovery(session_factory):
    """Run discovery over the closed deals and print the persisted profile"""
    from icp_discovery.engine import create_discovery_engine
    from icp_discovery.storage.persistence import get_profile

    engine = create_discovery_engine(session_factory=session_factory)

    readiness = engine.check_readiness(WORKSPACE_ID)
    print("=" * 60)
    print("DATA READINESS")
    print("=" * 60)
    print(f"Mode: {readiness.mode.value}")
    print(f"Closed deals: {readiness.total_closed} ({readiness.won_count} won / {readiness.lost_count} lost)")
    print(f"Deals with contacts: {readiness.deals_with_contacts}")
    for reason in readiness.reasons:
        print(f"  - {reason}")

    result = engine.discover(WORKSPACE_ID, as_of=AS_OF)

    with session_scope(session_factory) as session:
        profile = get_profile(session, WORKSPACE_ID, result.profile_id)

    print()
    print("=" * 60)
    print(f"ICP PROFILE v{profile.version} ({profile.status.value})")
    print("=" * 60)
    print(f"Baseline win rate: {profile.company_profile.baseline_win_rate:.1%}")
    print("\nTop personas:")
    for persona in profile.personas[:5]:
        print(f"  {persona.name:<28} lift {persona.lift:.2f}  confidence {persona.confidence}")
    print("\nBuying committees:")
    for combo in profile.buying_committees[:3]:
        print(f"  {' + '.join(combo.personas)}: {combo.win_rate:.0%} over {combo.total_count} deals")
    print("\nSweet spots:")
    for spot in profile.company_profile.sweet_spots:
        print(f"  {spot.description} (lift {spot.lift:.2f})")
    print(f"\nPersona weights: {profile.scoring_weights.personas}")
    print(f"Processing time: {result.processing_time_ms}ms")

    return result


# =============================================================================
# EXAMPLE 2: Lead Scoring
# =============================================================================

def example_scoring(session_factory):
    """Score every open deal and its contacts"""
    from icp_discovery.engine import create_scoring_engine

    engine = create_scoring_engine(session_factory=session_factory)
    result = engine.score(WORKSPACE_ID, as_of=AS_OF)

    print("=" * 60)
    print("LEAD SCORING RESULTS")
    print("=" * 60)
    for score in sorted(result.deal_scores, key=lambda s: s.total_score, reverse=True):
        print(f"  Deal {score.entity_id[:8]}  {score.total_score:>3}  grade {score.score_grade.value}")
        for dimension, component in score.score_breakdown.items():
            if component.points:
                print(f"      {dimension:<22} {component.points:+g} / {component.weight:g}")

    summary = result.summary
    print(f"\nAverage deal score: {summary.avg_deal_score}")
    print(f"Grade distribution: {summary.grade_distribution}")
    print(f"Contacts scored: {summary.total_contacts}")
    for rep, stats in summary.rep_scores.items():
        print(f"  {rep}: {stats.deal_count} deals, avg {stats.avg_score}")

    return result


# =============================================================================
# EXAMPLE 3: Custom Scoring Configuration
# =============================================================================

def example_custom_config(session_factory):
    """Score with a tighter activity window and harsher penalties"""
    from icp_discovery.engine import create_scoring_engine
    from icp_discovery.models.icp_config import create_default_engine_config

    config = create_default_engine_config(
        recent_window_days=7,
        inactivity_points_per_week=-3,
        no_calls_late_stage_points=-3,
    )
    config.name = "Strict pipeline review"
    config.scoring.close_horizon_days = 90

    engine = create_scoring_engine(config=config, session_factory=session_factory)
    result = engine.score(WORKSPACE_ID, as_of=AS_OF)

    print("=" * 60)
    print("CUSTOM SCORING CONFIGURATION")
    print("=" * 60)
    print(f"Config Name: {config.name}")
    print(f"Recent window: {config.scoring.recent_window_days} days")
    print(f"Close horizon: {config.scoring.close_horizon_days} days")
    print(f"Average deal score: {result.summary.avg_deal_score}")
    for mover in result.summary.movers:
        print(f"  {mover.name}: {mover.change:+d}")

    return engine


# =============================================================================
# EXAMPLE 4: API Usage
# =============================================================================

def example_api_usage():
    """Endpoints to call once the server is running"""
    BASE_URL = "http://localhost:8000"

    print("=" * 60)
    print("API USAGE EXAMPLE")
    print("=" * 60)
    print("Make sure the server is running: python main.py --init-db")
    print()

    print("Check readiness, run discovery and list profiles:")
    print(f"  GET  {BASE_URL}/api/workspaces/{WORKSPACE_ID}/icp/readiness")
    print(f"  POST {BASE_URL}/api/workspaces/{WORKSPACE_ID}/icp/discover")
    print(f"  GET  {BASE_URL}/api/workspaces/{WORKSPACE_ID}/icp/profiles?status=draft")
    print()
    print("Score open deals and fetch the grade A leads:")
    print(f"  POST {BASE_URL}/api/workspaces/{WORKSPACE_ID}/lead-scores/run")
    print(f"  GET  {BASE_URL}/api/workspaces/{WORKSPACE_ID}/lead-scores?grade=A&entity_type=deal")

    # With an HTTP client such as httpx:
    # response = httpx.post(f"{BASE_URL}/api/workspaces/{WORKSPACE_ID}/lead-scores/run")
    # print(f"\nResponse: {response.json()['summary']}")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    from icp_discovery.logging_config import setup_logging

    setup_logging(level="WARNING")

    print("\n" + "=" * 60)
    print("ICP DISCOVERY ENGINE - USAGE EXAMPLES")
    print("=" * 60 + "\n")

    factory = build_demo_workspace()

    print("\n[Example 1: ICP Discovery]")
    example_discovery(factory)

    print("\n" + "-" * 60)
    print("\n[Example 2: Lead Scoring]")
    example_scoring(factory)

    print("\n" + "-" * 60)
    print("\n[Example 3: Custom Configuration]")
    example_custom_config(factory)

    print("\n" + "-" * 60)
    print("\n[Example 4: API Usage]")
    example_api_usage()

    print("\n" + "=" * 60)
    print("EXAMPLES COMPLETE")
    print("=" * 60)
