"""
Adaptive trust learning.
Learns from user proceed/block decisions which domains, categories and
times of day the user trusts.
"""

import logging
import math
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from aegis.errors import LearnerDataCorruption, StorageFailure
from aegis.schemas.analysis_schemas import (
    DomainStats,
    LearnerRecommendation,
    Recommendation,
    UrlCategory,
    UserAction,
)
from aegis.services.storage_service import KeyValueStore
from aegis.utils.preprocessing import extract_domain

logger = logging.getLogger(__name__)

STORAGE_KEY = "user_learning"

WEIGHTS = {
    "domain_history": 0.25,
    "category_trust": 0.25,
    "time_pattern": 0.20,
    "override_frequency": 0.30,
}

OVERRIDE_DECAY_DAYS = 30.0
SECONDS_PER_DAY = 24 * 60 * 60

RECOMMENDATION_THRESHOLDS = [
    (0.8, Recommendation.TRUST),
    (0.6, Recommendation.PROBABLY_SAFE),
    (0.4, Recommendation.NEUTRAL),
    (0.2, Recommendation.PROBABLY_UNSAFE),
]


def interpret_trust_score(score: float) -> Recommendation:
    for threshold, recommendation in RECOMMENDATION_THRESHOLDS:
        if score >= threshold:
            return recommendation
    return Recommendation.UNSAFE


def _ratio(good: int, bad: int) -> float:
    total = good + bad
    return good / total if total > 0 else 0.0


class AdaptiveTrustLearner:
    """
    Tracks per-domain, per-category and per-hour interaction counters plus
    override frequency, and turns them into a trust score.

    Counters only grow. The override term decays with days since the last
    override, computed at read time.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._reset()

    def _reset(self):
        # {domain: {"safe_count", "unsafe_count", "total"}}
        self._domain_trust: Dict[str, Dict[str, int]] = {}
        # {category: {"trusted_count", "blocked_count"}}
        self._category_preferences: Dict[str, Dict[str, int]] = {}
        # {hour: {"safe_count", "unsafe_count"}}
        self._time_activity: Dict[int, Dict[str, int]] = {}
        # {domain: {"frequency", "last_override_at"}}
        self._overrides: Dict[str, Dict[str, float]] = {}

    def _current_hour(self) -> int:
        return datetime.fromtimestamp(self._clock()).hour

    # ============== RECORDING ==============

    def record_interaction(
        self,
        url: str,
        action: UserAction,
        category: UrlCategory = UrlCategory.UNKNOWN,
    ):
        """
        Record a user decision. Every call counts; there is no
        de-duplication. Raises InvalidURL for unparseable URLs.
        """
        domain = extract_domain(url)
        action = UserAction(action)
        proceed = action == UserAction.PROCEED
        now = self._clock()
        hour = datetime.fromtimestamp(now).hour

        with self._lock:
            trust = self._domain_trust.setdefault(
                domain, {"safe_count": 0, "unsafe_count": 0, "total": 0}
            )
            trust["safe_count" if proceed else "unsafe_count"] += 1
            trust["total"] += 1

            if category != UrlCategory.UNKNOWN:
                pref = self._category_preferences.setdefault(
                    category.value, {"trusted_count": 0, "blocked_count": 0}
                )
                pref["trusted_count" if proceed else "blocked_count"] += 1

            activity = self._time_activity.setdefault(hour, {"safe_count": 0, "unsafe_count": 0})
            activity["safe_count" if proceed else "unsafe_count"] += 1

            if proceed:
                override = self._overrides.setdefault(domain, {"frequency": 0, "last_override_at": now})
                override["frequency"] += 1
                override["last_override_at"] = now

        logger.debug(f"Recorded '{action.value}' for {domain}")

    # ============== SCORING ==============

    def override_score(self, domain: str) -> float:
        with self._lock:
            record = self._overrides.get(domain)
            if not record:
                return 0.0
            frequency = record["frequency"]
            last = record["last_override_at"]
        days = max(self._clock() - last, 0.0) / SECONDS_PER_DAY
        return min(frequency * math.exp(-days / OVERRIDE_DECAY_DAYS), 1.0)

    def calculate_trust_score(
        self,
        url: str,
        category: UrlCategory = UrlCategory.UNKNOWN,
    ) -> float:
        domain = extract_domain(url)
        hour = self._current_hour()

        with self._lock:
            trust = self._domain_trust.get(domain)
            domain_history = trust["safe_count"] / trust["total"] if trust and trust["total"] else 0.0

            category_trust = 0.0
            if category != UrlCategory.UNKNOWN:
                pref = self._category_preferences.get(category.value)
                if pref:
                    category_trust = _ratio(pref["trusted_count"], pref["blocked_count"])

            activity = self._time_activity.get(hour)
            time_pattern = _ratio(activity["safe_count"], activity["unsafe_count"]) if activity else 0.0

        score = (
            domain_history * WEIGHTS["domain_history"]
            + category_trust * WEIGHTS["category_trust"]
            + time_pattern * WEIGHTS["time_pattern"]
            + self.override_score(domain) * WEIGHTS["override_frequency"]
        )
        return min(max(score, 0.0), 1.0)

    def calculate_confidence(self, domain: str) -> float:
        """More interactions = higher confidence, with diminishing returns."""
        with self._lock:
            trust = self._domain_trust.get(domain)
            total = trust["total"] if trust else 0
        if total <= 0:
            return 0.0
        return min(math.log10(total + 1) / 2, 1.0)

    def domain_stats(self, domain: str) -> DomainStats:
        with self._lock:
            trust = self._domain_trust.get(domain)
            return DomainStats(**trust) if trust else DomainStats()

    def recommend(
        self,
        url: str,
        category: UrlCategory = UrlCategory.UNKNOWN,
    ) -> LearnerRecommendation:
        """Trust score, recommendation and confidence for a URL. Raises InvalidURL."""
        domain = extract_domain(url)
        score = self.calculate_trust_score(url, category)
        return LearnerRecommendation(
            trust_score=score,
            recommendation=interpret_trust_score(score),
            confidence=self.calculate_confidence(domain),
            domain_stats=self.domain_stats(domain),
        )

    # ============== PERSISTENCE ==============

    def snapshot(self) -> Dict[str, Any]:
        """JSON-compatible copy of all learned maps."""
        with self._lock:
            return {
                "domain_trust": {k: dict(v) for k, v in self._domain_trust.items()},
                "category_preferences": {k: dict(v) for k, v in self._category_preferences.items()},
                "time_activity": {str(k): dict(v) for k, v in self._time_activity.items()},
                "overrides": {k: dict(v) for k, v in self._overrides.items()},
            }

    def load(self) -> bool:
        """
        Load learned maps from the store. Corrupt data resets the learner;
        storage errors leave the in-memory maps untouched. Returns True if
        stored data was applied.
        """
        if self._store is None:
            return False
        try:
            data = self._store.get(STORAGE_KEY)
        except StorageFailure as e:
            logger.warning(f"Could not load learning data, continuing in memory: {e}")
            return False
        if data is None:
            return False

        try:
            parsed = self._parse(data)
        except LearnerDataCorruption as e:
            logger.warning(f"Learning data corrupt, resetting: {e}")
            with self._lock:
                self._reset()
            return False

        with self._lock:
            self._domain_trust, self._category_preferences, self._time_activity, self._overrides = parsed
        return True

    def save(self) -> bool:
        if self._store is None:
            return False
        try:
            self._store.set(STORAGE_KEY, self.snapshot())
            return True
        except StorageFailure as e:
            logger.warning(f"Failed to save learning data: {e}")
            return False

    @staticmethod
    def _parse(data: Any):
        if not isinstance(data, dict):
            raise LearnerDataCorruption("learning data is not a mapping")

        def counters(section: str, fields, key_type=str):
            raw = data.get(section) or {}
            if not isinstance(raw, dict):
                raise LearnerDataCorruption(f"'{section}' is not a mapping")
            parsed = {}
            for key, value in raw.items():
                if not isinstance(value, dict):
                    raise LearnerDataCorruption(f"'{section}.{key}' is not a mapping")
                try:
                    parsed[key_type(key)] = {f: int(value.get(f, 0)) for f in fields}
                except (TypeError, ValueError) as e:
                    raise LearnerDataCorruption(f"'{section}.{key}': {e}") from e
                if any(v < 0 for v in parsed[key_type(key)].values()):
                    raise LearnerDataCorruption(f"'{section}.{key}' has negative counters")
            return parsed

        domain_trust = counters("domain_trust", ("safe_count", "unsafe_count", "total"))
        for domain, trust in domain_trust.items():
            if trust["total"] != trust["safe_count"] + trust["unsafe_count"]:
                raise LearnerDataCorruption(f"'domain_trust.{domain}' total does not add up")

        category_preferences = counters("category_preferences", ("trusted_count", "blocked_count"))
        time_activity = counters("time_activity", ("safe_count", "unsafe_count"), key_type=int)
        if any(not 0 <= hour <= 23 for hour in time_activity):
            raise LearnerDataCorruption("'time_activity' hour out of range")

        raw_overrides = data.get("overrides") or {}
        if not isinstance(raw_overrides, dict):
            raise LearnerDataCorruption("'overrides' is not a mapping")
        overrides = {}
        for domain, record in raw_overrides.items():
            try:
                overrides[domain] = {
                    "frequency": int(record["frequency"]),
                    "last_override_at": float(record["last_override_at"]),
                }
            except (KeyError, TypeError, ValueError) as e:
                raise LearnerDataCorruption(f"'overrides.{domain}': {e}") from e

        return domain_trust, category_preferences, time_activity, overrides
