"""
Record shapes returned by the storage repositories
"""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class ActivityStats(BaseModel):
    """Aggregated activity counters for one deal"""
    total_activities: int = 0
    emails: int = 0
    calls: int = 0
    meetings: int = 0
    tasks: int = 0
    active_days: int = 0
    last_activity: Optional[datetime] = None
    recent_activities: int = 0


class ConversationStats(BaseModel):
    """Aggregated call statistics for one deal"""
    total_calls: int = 0
    last_call: Optional[datetime] = None
    avg_duration_seconds: Optional[float] = None
    recent_calls: int = 0


class CallRecord(BaseModel):
    """One recorded call linked to a deal"""
    call_date: datetime
    duration_seconds: Optional[float] = None


class LeadRecord(BaseModel):
    """A lead joined to the deal it converted into, if any"""
    lead_id: str
    source: Optional[str] = None
    is_converted: bool = False
    deal_id: Optional[str] = None
    deal_stage: Optional[str] = None
    deal_amount: Optional[float] = None


class ValueStats(BaseModel):
    win_rate: float = 0
    deal_count: int = 0


class DiscoveredField(BaseModel):
    """One entry of the custom-field discovery topFields list"""
    field_key: str
    entity_type: str
    icp_relevance_score: float = 0
    win_rate_by_value: Dict[str, ValueStats] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "DiscoveredField":
        """Parse the camelCase JSON written by the discovery job"""
        values = payload.get("winRateByValue") or {}
        return cls(
            field_key=str(payload.get("fieldKey", "")),
            entity_type=str(payload.get("entityType", "")),
            icp_relevance_score=float(payload.get("icpRelevanceScore") or 0),
            win_rate_by_value={
                str(value): ValueStats(
                    win_rate=float((stats or {}).get("winRate") or 0),
                    deal_count=int((stats or {}).get("dealCount") or 0),
                )
                for value, stats in values.items()
            },
        )


class ClosedCorpusCounts(BaseModel):
    won_count: int = 0
    lost_count: int = 0
    deals_with_contacts: int = 0
    total_contact_roles: int = 0
    unique_contacts: int = 0
    enriched_contacts: int = 0


class FieldDiscoveryResult(BaseModel):
    """Latest completed custom-field discovery for a workspace"""
    fields: List[DiscoveredField] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
