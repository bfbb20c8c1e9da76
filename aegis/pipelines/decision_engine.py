"""
Decision engine: one verdict per URL request.

Order of checks:
    protection disabled -> session override -> cache (trust-aware reuse)
    -> in-flight de-duplication -> fresh structural + reputation analysis
    -> learned trust adjustment -> stats / history / cache write.

All shared state (cache, learner, overrides, in-flight set, stats, history,
settings) is owned by one DecisionEngine instance. Locks guard in-memory
mutation only and are never held across an await.
"""

import asyncio
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from aegis.config import settings
from aegis.errors import AegisError, InvalidURL, StorageFailure
from aegis.schemas.analysis_schemas import (
    Ack,
    AnalysisResult,
    LearnerRecommendation,
    NavigationAction,
    ProtectionSettings,
    Recommendation,
    SettingsUpdate,
    Severity,
    Stats,
    UrlCategory,
    UserAction,
)
from aegis.services.cache_service import ResultCache
from aegis.services.override_service import SessionOverrideStore
from aegis.services.storage_service import KeyValueStore
from aegis.services.threat_intel import ThreatIntelClient, ThreatLookup
from aegis.services.trust_learner import AdaptiveTrustLearner
from aegis.services.url_analyzer import StructuralAnalyzer
from aegis.utils.logging_config import StructuredLogger, command_var
from aegis.utils.preprocessing import split_url

logger = StructuredLogger(__name__)

SETTINGS_KEY = "settings"
STATS_KEY = "stats"
HISTORY_KEY = "history"

# Learned trust may reuse a cached verdict above this confidence...
CACHE_TRUST_CONFIDENCE = 0.7
# ...and may flip a fresh verdict only above this one.
ADJUSTMENT_CONFIDENCE = 0.8

PROTECTION_DISABLED_ISSUE = "Protection disabled"
OVERRIDE_ISSUE = "URL previously allowed by user"
IN_FLIGHT_ISSUE = "Analysis already in progress"
INTERNAL_ERROR_ISSUE = "Internal error during analysis"


class CommandType:
    ANALYZE_URL = "ANALYZE_URL"
    USER_OVERRIDE = "USER_OVERRIDE"
    USER_BLOCK = "USER_BLOCK"
    GET_STATS = "GET_STATS"
    GET_HISTORY = "GET_HISTORY"
    UPDATE_SETTINGS = "UPDATE_SETTINGS"

    ALL = (ANALYZE_URL, USER_OVERRIDE, USER_BLOCK, GET_STATS, GET_HISTORY, UPDATE_SETTINGS)


def default_protection_settings() -> ProtectionSettings:
    return ProtectionSettings(
        enabled=settings.protection_enabled,
        show_warnings=settings.show_warnings,
        block_high_risk=settings.block_high_risk,
        safe_browsing=settings.safe_browsing_enabled,
        keep_history=settings.keep_history,
    )


class DecisionEngine:
    def __init__(
        self,
        analyzer: Optional[StructuralAnalyzer] = None,
        intel: Optional[ThreatIntelClient] = None,
        cache: Optional[ResultCache] = None,
        learner: Optional[AdaptiveTrustLearner] = None,
        overrides: Optional[SessionOverrideStore] = None,
        store: Optional[KeyValueStore] = None,
        history_limit: Optional[int] = None,
        protection: Optional[ProtectionSettings] = None,
    ):
        self.analyzer = analyzer or StructuralAnalyzer()
        self.intel = intel or ThreatIntelClient()
        self.cache = cache or ResultCache()
        self.store = store
        self.learner = learner or AdaptiveTrustLearner(store=store)
        self.overrides = overrides if overrides is not None else SessionOverrideStore()

        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._stats = Stats()
        self._history: Deque[AnalysisResult] = deque(
            maxlen=history_limit if history_limit is not None else settings.history_limit
        )
        self._protection = protection or default_protection_settings()

    # ============== LIFECYCLE ==============

    async def start(self):
        """Reload persisted state and start the cache sweeper."""
        await asyncio.to_thread(self._load_state)
        self.cache.start_sweeper()
        logger.info("Decision engine started", cache_ttl=self.cache.ttl, lookup_enabled=self.intel.enabled)

    async def close(self):
        await self.cache.stop_sweeper()
        await self.intel.aclose()

    @property
    def protection(self) -> ProtectionSettings:
        with self._lock:
            return self._protection.model_copy()

    def is_in_flight(self, url: str) -> bool:
        with self._lock:
            return url in self._in_flight

    # ============== ANALYZE_URL ==============

    async def analyze_url(self, url: str) -> AnalysisResult:
        """
        Verdict for a URL. Never raises: internal failures produce a
        fail-open result carrying an explanatory issue.
        """
        try:
            return await self._decide(url)
        except Exception as e:
            logger.error("URL analysis failed, failing open", url=url, error=str(e), exc_info=True)
            return AnalysisResult(url=url, safe=True, issues=[INTERNAL_ERROR_ISSUE])

    async def _decide(self, url: str) -> AnalysisResult:
        protection = self.protection

        if not protection.enabled:
            return AnalysisResult(url=url, issues=[PROTECTION_DISABLED_ISSUE])

        if url in self.overrides:
            logger.debug("Session override hit", url=url)
            return AnalysisResult(url=url, safe=True, overridden=True, issues=[OVERRIDE_ISSUE])

        cached = self.cache.get(url)
        if cached is not None:
            recommendation = self._recommend(url, cached.category)
            trusted = recommendation is not None and recommendation.recommendation == Recommendation.TRUST

            if trusted and recommendation.confidence > CACHE_TRUST_CONFIDENCE:
                logger.debug("Cached verdict reused on learned trust", url=url)
                return self._from_cache(cached, recommendation, protection)
            if cached.safe or trusted:
                return self._from_cache(cached, recommendation, protection)
            # Negative verdict while trust may have shifted: re-evaluate
            logger.debug("Cached unsafe verdict is stale, re-evaluating", url=url)

        with self._lock:
            if url in self._in_flight:
                duplicate = True
            else:
                duplicate = False
                self._in_flight.add(url)
        if duplicate:
            # Optimistic: the in-progress analysis may still resolve unsafe
            logger.debug("Duplicate in-flight request short-circuited", url=url)
            return AnalysisResult(url=url, safe=True, issues=[IN_FLIGHT_ISSUE])

        try:
            return await self._fresh_analysis(url, protection)
        finally:
            with self._lock:
                self._in_flight.discard(url)

    def _from_cache(
        self,
        cached: AnalysisResult,
        recommendation: Optional[LearnerRecommendation],
        protection: ProtectionSettings,
    ) -> AnalysisResult:
        result = cached.model_copy(update={"cached": True, "recommendation": recommendation})
        result.action = self._navigation_action(result, protection)
        return result

    async def _fresh_analysis(self, url: str, protection: ProtectionSettings) -> AnalysisResult:
        try:
            split_url(url)
            parsed = True
        except InvalidURL:
            parsed = False

        # Unparseable input is never sent to the reputation service
        structural, lookup = await asyncio.gather(
            asyncio.to_thread(self.analyzer.analyze, url),
            self._lookup(url, protection.safe_browsing and parsed),
        )

        issues = list(structural.issues)
        issues.extend(f"Flagged by threat intelligence: {threat}" for threat in lookup.threats)
        severity = Severity.HIGH if lookup.threats else structural.severity

        result = AnalysisResult(
            url=url,
            issues=issues,
            severity=severity,
            safe=severity == Severity.LOW,
            threats=list(lookup.threats),
            category=structural.category,
        )

        if structural.valid:
            recommendation = self._recommend(url, structural.category)
            if recommendation is not None:
                result.recommendation = recommendation
                self._apply_learned_trust(result, recommendation)

        result.action = self._navigation_action(result, protection)

        with self._lock:
            self._stats.total_analyzed += 1
            if result.action == NavigationAction.BLOCK:
                self._stats.total_blocked += 1
            elif result.action == NavigationAction.WARN:
                self._stats.total_warnings += 1
            if protection.keep_history:
                self._history.appendleft(result)

        self.cache.set(url, result)
        await self._persist(STATS_KEY, HISTORY_KEY if protection.keep_history else None)

        logger.info(
            "URL analyzed",
            url=url,
            severity=result.severity.value,
            safe=result.safe,
            action=result.action.value,
            threats=result.threats,
            adjusted=result.adjusted_by_safety,
        )
        return result

    async def _lookup(self, url: str, enabled: bool) -> ThreatLookup:
        if not enabled:
            return ThreatLookup()
        return await self.intel.check_url(url)

    @staticmethod
    def _apply_learned_trust(result: AnalysisResult, recommendation: LearnerRecommendation):
        """Only high-confidence TRUST / UNSAFE changes `safe`; anything else is advisory."""
        if recommendation.confidence <= ADJUSTMENT_CONFIDENCE:
            return
        if recommendation.recommendation == Recommendation.TRUST:
            result.safe = True
            result.adjusted_by_safety = True
        elif recommendation.recommendation == Recommendation.UNSAFE:
            result.safe = False
            result.adjusted_by_safety = True

    @staticmethod
    def _navigation_action(result: AnalysisResult, protection: ProtectionSettings) -> NavigationAction:
        if result.safe:
            return NavigationAction.ALLOW
        if result.severity == Severity.HIGH and protection.block_high_risk:
            return NavigationAction.BLOCK
        if protection.show_warnings:
            return NavigationAction.WARN
        return NavigationAction.ALLOW

    def _recommend(self, url: str, category: UrlCategory) -> Optional[LearnerRecommendation]:
        try:
            return self.learner.recommend(url, category)
        except Exception as e:
            logger.warning("Learner unavailable, skipping learned adjustment", url=url, error=str(e))
            return None

    # ============== USER DECISIONS ==============

    async def user_override(self, url: str) -> Ack:
        """The user chose to proceed: remember for this session and learn from it."""
        self.overrides.add(url)
        with self._lock:
            self._stats.session_overrides += 1

        learned = await self._record(url, UserAction.PROCEED)
        await self._persist(STATS_KEY)
        if learned:
            await asyncio.to_thread(self.learner.save)

        logger.info("User override recorded", url=url)
        return Ack(message="URL allowed for this session")

    async def user_block(self, url: str) -> Ack:
        learned = await self._record(url, UserAction.BLOCK)
        if learned:
            await asyncio.to_thread(self.learner.save)

        logger.info("User block recorded", url=url)
        return Ack(message="Block recorded")

    async def _record(self, url: str, action: UserAction) -> bool:
        cached = self.cache.get(url)
        if cached is not None:
            category = cached.category
        else:
            category = (await asyncio.to_thread(self.analyzer.analyze, url)).category
        try:
            self.learner.record_interaction(url, action, category)
            return True
        except AegisError as e:
            logger.warning("Could not record interaction", url=url, action=action.value, error=str(e))
            return False

    # ============== STATS / HISTORY / SETTINGS ==============

    def get_stats(self) -> Stats:
        with self._lock:
            return self._stats.model_copy()

    def get_history(self) -> List[AnalysisResult]:
        """Retained results, newest first."""
        with self._lock:
            return list(self._history)

    async def update_settings(
        self,
        update: Union[SettingsUpdate, Mapping[str, Any]],
    ) -> ProtectionSettings:
        if not isinstance(update, SettingsUpdate):
            update = SettingsUpdate.model_validate(dict(update) if isinstance(update, Mapping) else update)

        with self._lock:
            self._protection = self._protection.model_copy(
                update=update.model_dump(exclude_none=True)
            )
            current = self._protection.model_copy()

        await self._persist(SETTINGS_KEY)
        logger.info("Settings updated", **current.model_dump())
        return current

    # ============== COMMAND DISPATCH ==============

    async def dispatch(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Message-style entry point, e.g. {"type": "ANALYZE_URL", "url": "..."}.
        Always returns a mapping; failures come back as {"error": ...}.
        """
        command = message.get("type")
        token = command_var.set(command)
        try:
            return await self._dispatch(command, message)
        except (ValidationError, AegisError) as e:
            logger.warning("Command rejected", error=str(e))
            return {"error": str(e)}
        except Exception as e:
            logger.error("Command failed", error=str(e), exc_info=True)
            return {"error": f"Internal error handling {command}"}
        finally:
            command_var.reset(token)

    async def _dispatch(self, command: Optional[str], message: Mapping[str, Any]) -> Dict[str, Any]:
        if command in (CommandType.ANALYZE_URL, CommandType.USER_OVERRIDE, CommandType.USER_BLOCK):
            url = message.get("url")
            if not isinstance(url, str) or not url.strip():
                return {"error": "Missing url"}
            if command == CommandType.ANALYZE_URL:
                result = await self.analyze_url(url)
            elif command == CommandType.USER_OVERRIDE:
                result = await self.user_override(url)
            else:
                result = await self.user_block(url)
            return result.model_dump(mode="json")

        if command == CommandType.GET_STATS:
            return self.get_stats().model_dump()

        if command == CommandType.GET_HISTORY:
            return {"history": [r.model_dump(mode="json") for r in self.get_history()]}

        if command == CommandType.UPDATE_SETTINGS:
            new_settings = await self.update_settings(message.get("settings") or {})
            return {"success": True, "settings": new_settings.model_dump()}

        return {"error": "Unknown message type"}

    # ============== PERSISTENCE ==============

    async def _persist(self, *keys: Optional[str]):
        if self.store is None:
            return
        with self._lock:
            payload = {}
            if STATS_KEY in keys:
                payload[STATS_KEY] = self._stats.model_dump()
            if HISTORY_KEY in keys:
                payload[HISTORY_KEY] = [r.model_dump(mode="json") for r in self._history]
            if SETTINGS_KEY in keys:
                payload[SETTINGS_KEY] = self._protection.model_dump()
        await asyncio.to_thread(self._write, payload)

    def _write(self, payload: Dict[str, Any]):
        for key, value in payload.items():
            try:
                self.store.set(key, value)
            except StorageFailure as e:
                logger.warning("Failed to persist state, continuing in memory", key=key, error=str(e))

    def _read(self, key: str) -> Optional[Any]:
        try:
            return self.store.get(key)
        except StorageFailure as e:
            logger.warning("Failed to load state, using defaults", key=key, error=str(e))
            return None

    def _load_state(self):
        if self.store is None:
            return

        stored_settings = self._read(SETTINGS_KEY)
        stored_stats = self._read(STATS_KEY)
        stored_history = self._read(HISTORY_KEY)

        with self._lock:
            if isinstance(stored_settings, dict):
                try:
                    self._protection = self._protection.model_copy(
                        update=SettingsUpdate.model_validate(stored_settings).model_dump(exclude_none=True)
                    )
                except ValidationError as e:
                    logger.warning("Ignoring malformed stored settings", error=str(e))

            if isinstance(stored_stats, dict):
                try:
                    self._stats = Stats.model_validate(stored_stats)
                except ValidationError as e:
                    logger.warning("Ignoring malformed stored stats", error=str(e))

            if isinstance(stored_history, list):
                self._history.clear()
                for entry in stored_history[: self._history.maxlen]:
                    try:
                        self._history.append(AnalysisResult.model_validate(entry))
                    except ValidationError:
                        logger.warning("Dropping malformed history entry")

        self.learner.load()
