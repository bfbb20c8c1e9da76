import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from aegis.config import settings
from aegis.errors import NetworkFailure

logger = logging.getLogger(__name__)


@dataclass
class ThreatLookup:
    """Reputation verdict for one URL. Absent signal reads as safe."""
    is_safe: bool = True
    threats: List[str] = field(default_factory=list)


class ThreatIntelClient:
    """
    Wrapper around the Safe Browsing v4 threatMatches:find API.

    Fails open: a missing API key, a network error, a timeout or a bad
    response all yield ThreatLookup(is_safe=True, threats=[]).
    One outbound request per lookup, no retry.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        threat_types: Optional[List[str]] = None,
        client_id: Optional[str] = None,
        client_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.safe_browsing_api_key
        self.endpoint = endpoint or settings.safe_browsing_endpoint
        self.timeout = timeout if timeout is not None else settings.reputation_timeout
        self.threat_types = threat_types or settings.safe_browsing_threat_types_list
        self.client_id = client_id or settings.safe_browsing_client_id
        self.client_version = client_version or settings.safe_browsing_client_version
        self._client = httpx.AsyncClient(transport=transport, timeout=self.timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def build_request(self, url: str) -> Dict[str, Any]:
        return {
            "client": {
                "clientId": self.client_id,
                "clientVersion": self.client_version,
            },
            "threatInfo": {
                "threatTypes": self.threat_types,
                "platformTypes": ["ANY_PLATFORM"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": url}],
            },
        }

    async def check_url(self, url: str, deadline: Optional[float] = None) -> ThreatLookup:
        """
        Look up a URL. `deadline` (seconds) bounds the whole call and
        defaults to the configured reputation timeout.
        """
        if not self.enabled:
            return ThreatLookup()

        try:
            threats = await asyncio.wait_for(
                self._fetch_threats(url),
                timeout=deadline if deadline is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Reputation lookup timed out, failing open: {url}")
            return ThreatLookup()
        except NetworkFailure as e:
            logger.warning(f"Reputation lookup failed, failing open: {e}")
            return ThreatLookup()
        except Exception as e:
            logger.error(f"Unexpected reputation lookup error, failing open: {e}", exc_info=True)
            return ThreatLookup()

        return ThreatLookup(is_safe=not threats, threats=threats)

    async def _fetch_threats(self, url: str) -> List[str]:
        try:
            response = await self._client.post(
                self.endpoint,
                params={"key": self.api_key},
                json=self.build_request(url),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise NetworkFailure(f"reputation service returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise NetworkFailure(f"reputation service unreachable: {e}") from e
        except ValueError as e:
            raise NetworkFailure(f"undecodable reputation response: {e}") from e

        if not isinstance(data, dict):
            raise NetworkFailure("unexpected reputation response shape")

        matches = data.get("matches") or []
        if not isinstance(matches, list):
            raise NetworkFailure("unexpected reputation response shape: 'matches' is not a list")

        threats: List[str] = []
        for match in matches:
            if not isinstance(match, dict):
                raise NetworkFailure("unexpected reputation response shape: match is not an object")
            threat_type = match.get("threatType")
            if not isinstance(threat_type, str):
                raise NetworkFailure(f"unexpected threatType {threat_type!r}")
            if threat_type and threat_type not in threats:
                threats.append(threat_type)
        return threats

    async def aclose(self):
        await self._client.aclose()
