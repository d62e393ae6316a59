"""
Exceptions raised by ICP Discovery Engine
"""

from typing import List, Optional


class ICPDiscoveryError(Exception):
    """Base class for engine errors"""


class InsufficientDataError(ICPDiscoveryError):
    """Readiness classifier aborted the discovery run"""

    def __init__(self, reasons: List[str], workspace_id: Optional[str] = None):
        self.reasons = list(reasons)
        self.workspace_id = workspace_id
        super().__init__(
            "Insufficient data for ICP discovery: " + "; ".join(self.reasons)
        )


class ProfileNotFoundError(ICPDiscoveryError):
    """No ICP profile with the requested id exists in the workspace"""

    def __init__(self, profile_id: str, workspace_id: Optional[str] = None):
        self.profile_id = profile_id
        self.workspace_id = workspace_id
        super().__init__(f"ICP profile not found: {profile_id}")
