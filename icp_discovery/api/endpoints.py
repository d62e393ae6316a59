"""
FastAPI Endpoints for ICP Discovery Engine
==========================================
RESTful API over the discovery and lead scoring pipelines.

Base URL: http://localhost:8000

Endpoints:
- GET  /                                                      - API info
- GET  /api/health                                            - Health check
- GET  /api/stats                                             - Engine statistics
- GET  /api/workspaces/{workspace_id}/icp/readiness           - Data readiness
- POST /api/workspaces/{workspace_id}/icp/discover            - Run ICP discovery
- GET  /api/workspaces/{workspace_id}/icp/profiles            - List profiles
- GET  /api/workspaces/{workspace_id}/icp/profiles/{id}       - Get a profile
- POST /api/workspaces/{workspace_id}/lead-scores/run         - Run lead scoring
- GET  /api/workspaces/{workspace_id}/lead-scores             - List stored scores
"""

import logging
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

# Load environment variables
load_dotenv()

from ..engine import (
    ICPDiscoveryEngine,
    LeadScoringEngine,
    create_discovery_engine,
    create_scoring_engine,
)
from ..exceptions import InsufficientDataError, ProfileNotFoundError
from ..models.schemas import EntityType, Grade, ProfileStatus
from ..storage.connection import get_session_factory, session_scope
from ..storage.persistence import get_profile, list_profiles, list_scores

logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App Initialization
# =============================================================================

app = FastAPI(
    title="ICP Discovery Engine API",
    description="""
## Ideal Customer Profile Discovery & Lead Scoring

Learns which buyers, companies and segments win from a workspace's closed
deals, and scores open deals and contacts with point-based heuristics.

### Quick Start:
1. `GET .../icp/readiness` to see which analysis mode the data supports
2. `POST .../icp/discover` to generate a draft ICP profile
3. `POST .../lead-scores/run` to score open deals and contacts
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware - Allow all origins for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Engine Dependencies
# =============================================================================

_engines = {}


def get_db_session_factory() -> sessionmaker:
    return get_session_factory()


def get_discovery_engine(factory: sessionmaker = Depends(get_db_session_factory)) -> ICPDiscoveryEngine:
    key = ("discovery", factory)
    if key not in _engines:
        _engines[key] = create_discovery_engine(session_factory=factory)
    return _engines[key]


def get_scoring_engine(factory: sessionmaker = Depends(get_db_session_factory)) -> LeadScoringEngine:
    key = ("scoring", factory)
    if key not in _engines:
        _engines[key] = create_scoring_engine(session_factory=factory)
    return _engines[key]


# =============================================================================
# Health & Info Endpoints
# =============================================================================

@app.get("/", tags=["Info"])
async def root():
    """API information and available endpoints"""
    return {
        "service": "ICP Discovery Engine",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
        "endpoints": {
            "Readiness": "GET /api/workspaces/{workspace_id}/icp/readiness",
            "Discover": "POST /api/workspaces/{workspace_id}/icp/discover",
            "Profiles": "GET /api/workspaces/{workspace_id}/icp/profiles",
            "Run Scoring": "POST /api/workspaces/{workspace_id}/lead-scores/run",
            "Scores": "GET /api/workspaces/{workspace_id}/lead-scores",
            "Health": "GET /api/health",
        }
    }


@app.get("/api/health", tags=["Info"])
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "service": "ICP Discovery Engine",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/api/stats", tags=["Info"])
def get_stats(
    discovery: ICPDiscoveryEngine = Depends(get_discovery_engine),
    scoring: LeadScoringEngine = Depends(get_scoring_engine),
):
    """Get engine statistics"""
    return {
        "discovery": discovery.get_stats(),
        "scoring": scoring.get_stats(),
    }


# =============================================================================
# ICP Discovery Endpoints
# =============================================================================

@app.get("/api/workspaces/{workspace_id}/icp/readiness", tags=["Discovery"])
def get_readiness(workspace_id: str, engine: ICPDiscoveryEngine = Depends(get_discovery_engine)):
    """Classify the workspace's closed-deal corpus"""
    return engine.check_readiness(workspace_id)


@app.post("/api/workspaces/{workspace_id}/icp/discover", tags=["Discovery"])
def run_discovery(workspace_id: str, engine: ICPDiscoveryEngine = Depends(get_discovery_engine)):
    """
    Run ICP discovery and save a new draft profile.

    Returns 422 when the workspace does not have enough closed deals or
    contact roles.
    """
    try:
        return engine.discover(workspace_id)
    except InsufficientDataError as exc:
        raise HTTPException(status_code=422, detail={"error": str(exc), "reasons": exc.reasons})


@app.get("/api/workspaces/{workspace_id}/icp/profiles", tags=["Discovery"])
def get_profiles(
    workspace_id: str,
    status: Optional[ProfileStatus] = Query(None, description="Filter by profile status"),
    factory: sessionmaker = Depends(get_db_session_factory),
):
    """List ICP profiles, newest version first"""
    with session_scope(factory) as session:
        profiles = list_profiles(session, workspace_id, status)
    return {"count": len(profiles), "profiles": profiles}


@app.get("/api/workspaces/{workspace_id}/icp/profiles/{profile_id}", tags=["Discovery"])
def get_profile_by_id(
    workspace_id: str,
    profile_id: str,
    factory: sessionmaker = Depends(get_db_session_factory),
):
    """Get an ICP profile by ID"""
    try:
        with session_scope(factory) as session:
            return get_profile(session, workspace_id, profile_id)
    except ProfileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


# =============================================================================
# Lead Scoring Endpoints
# =============================================================================

@app.post("/api/workspaces/{workspace_id}/lead-scores/run", tags=["Scoring"])
def run_scoring(workspace_id: str, engine: LeadScoringEngine = Depends(get_scoring_engine)):
    """Score all open deals and their contacts"""
    return engine.score(workspace_id)


@app.get("/api/workspaces/{workspace_id}/lead-scores", tags=["Scoring"])
def get_scores(
    workspace_id: str,
    entity_type: Optional[EntityType] = Query(None, description="deal or contact"),
    grade: Optional[Grade] = Query(None, description="Filter by grade"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    factory: sessionmaker = Depends(get_db_session_factory),
):
    """List stored lead scores, highest first"""
    with session_scope(factory) as session:
        scores = list_scores(session, workspace_id, entity_type, grade, limit, offset)
    return {"count": len(scores), "scores": scores}


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc),
            "type": type(exc).__name__,
        }
    )
