from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any

from pydantic import BaseModel, Field


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UrlCategory(str, Enum):
    """Coarse purpose of a URL. UNKNOWN is never counted by the learner."""
    AUTHENTICATION = "authentication"
    FINANCE = "finance"
    MARKETING = "marketing"
    DOWNLOAD = "download"
    GENERAL = "general"
    UNKNOWN = "unknown"


class Recommendation(str, Enum):
    TRUST = "TRUST"
    PROBABLY_SAFE = "PROBABLY_SAFE"
    NEUTRAL = "NEUTRAL"
    PROBABLY_UNSAFE = "PROBABLY_UNSAFE"
    UNSAFE = "UNSAFE"


class UserAction(str, Enum):
    PROCEED = "proceed"
    BLOCK = "block"


class NavigationAction(str, Enum):
    """What the front-end should do with the navigation."""
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class DomainStats(BaseModel):
    safe_count: int = 0
    unsafe_count: int = 0
    total: int = 0


class LearnerRecommendation(BaseModel):
    """Learned trust for a URL, as computed at read time."""
    trust_score: float
    recommendation: Recommendation
    confidence: float
    domain_stats: DomainStats = Field(default_factory=DomainStats)


class AnalysisResult(BaseModel):
    url: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    issues: List[str] = Field(default_factory=list)
    severity: Severity = Severity.LOW
    safe: bool = True
    threats: List[str] = Field(default_factory=list)
    adjusted_by_safety: bool = False
    category: UrlCategory = UrlCategory.UNKNOWN
    overridden: bool = False
    cached: bool = False
    action: NavigationAction = NavigationAction.ALLOW
    recommendation: Optional[LearnerRecommendation] = None


class Stats(BaseModel):
    total_analyzed: int = 0
    total_blocked: int = 0
    total_warnings: int = 0
    session_overrides: int = 0


class ProtectionSettings(BaseModel):
    """Runtime toggles managed through UPDATE_SETTINGS."""
    enabled: bool = True
    show_warnings: bool = True
    block_high_risk: bool = True
    safe_browsing: bool = True
    keep_history: bool = True


class SettingsUpdate(BaseModel):
    """Partial settings update; unset fields keep their current value."""
    enabled: Optional[bool] = None
    show_warnings: Optional[bool] = None
    block_high_risk: Optional[bool] = None
    safe_browsing: Optional[bool] = None
    keep_history: Optional[bool] = None


# ============== REQUEST / RESPONSE BODIES ==============


class UrlRequest(BaseModel):
    url: str


class Ack(BaseModel):
    success: bool = True
    message: Optional[str] = None


class SettingsResponse(BaseModel):
    success: bool = True
    settings: ProtectionSettings


class CommandRequest(BaseModel):
    """Message-style command, as sent by the extension front-ends."""
    type: str
    url: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
