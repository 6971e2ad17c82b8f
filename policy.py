import asyncio
import logging
from typing import List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger("gatekeeper.policy")


class UpstreamUnavailable(Exception):
    """Policy source unreachable or returned an unusable payload."""


# =========================
# Policy rules (display only)
# =========================

class PolicyRule(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    enabled: bool = False
    action: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    traffic: Optional[str] = None  # rule expression


class PolicySummary(BaseModel):
    total: int
    enabled: int
    blocking: int


def summarize(rules: List[PolicyRule]) -> PolicySummary:
    return PolicySummary(
        total=len(rules),
        enabled=sum(1 for r in rules if r.enabled),
        blocking=sum(1 for r in rules if r.action == "block"),
    )


class PolicySummaryReader:
    """
    Read-only client for the externally managed gateway rule list.
    """

    def __init__(
        self,
        *,
        base_url: str,
        account_id: str,
        api_token: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self._api_token = api_token
        self.timeout = timeout
        self._transport = transport

    async def fetch_rules(self) -> List[PolicyRule]:
        url = f"{self.base_url}/accounts/{self.account_id}/gateway/rules"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {self._api_token}",
                        "Content-Type": "application/json",
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Policy source request failed: {type(e).__name__}") from e
        except ValueError as e:
            raise UpstreamUnavailable("Policy source returned invalid JSON") from e

        if not isinstance(data, dict) or data.get("success") is False:
            raise UpstreamUnavailable("Policy source reported failure")

        result = data.get("result")
        if result is None:
            result = []
        if not isinstance(result, list):
            raise UpstreamUnavailable(f"Policy source returned a non-list result: {type(result).__name__}")

        rules: List[PolicyRule] = []
        for item in result:
            try:
                rules.append(PolicyRule.model_validate(item))
            except ValidationError:
                logger.warning(f"Skipping malformed policy rule: {item.get('id') if isinstance(item, dict) else item!r}")

        return rules


# =========================
# Cached view with background refresh
# =========================

class PolicyCache:
    MIN_BACKOFF = 10
    MAX_BACKOFF = 120

    def __init__(self, reader: Optional[PolicySummaryReader] = None):
        self.reader = reader
        self._rules: List[PolicyRule] = []
        self._loaded = False
        self._last_error: Optional[str] = None
        self._lock = asyncio.Lock()
        self._consecutive_failures = 0
        self._current_backoff = self.MIN_BACKOFF
        self._task: Optional[asyncio.Task] = None

    def start_background_refresh(self):
        if self.reader is None:
            logger.warning("Policy refresh disabled: Cloudflare credentials not set")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None

    async def _refresh_loop(self):
        """
        Background refresh with exponential backoff.

        - Never blocks request handling
        - Backoff on failures: 10s -> 20s -> 40s -> 80s -> 120s (max)
        - Warning on first failure, error after 3 consecutive failures
        - Stale rules keep being served while refresh fails
        """
        logger.info("Starting policy refresh loop...")

        while True:
            await asyncio.sleep(await self._refresh_once())

    async def _refresh_once(self) -> float:
        """Run one refresh attempt and return the delay before the next one."""
        try:
            await self.refresh()

            if self._consecutive_failures > 0:
                logger.info("Policy refresh recovered after failures")
            self._consecutive_failures = 0
            self._current_backoff = self.MIN_BACKOFF

        except Exception as e:
            # Anything escaping here would end the loop for good
            self._consecutive_failures += 1
            if not isinstance(e, UpstreamUnavailable):
                self._last_error = f"Unexpected policy refresh error: {type(e).__name__}"

            if self._consecutive_failures == 1:
                logger.warning(f"Policy refresh failed (retrying with backoff): {type(e).__name__}: {e}")
            elif self._consecutive_failures >= 3:
                logger.error(
                    f"Policy refresh failed {self._consecutive_failures} times consecutively: {type(e).__name__}: {e}"
                )

            self._current_backoff = min(self._current_backoff * 2, self.MAX_BACKOFF)

        return self._current_backoff

    async def refresh(self) -> List[PolicyRule]:
        if self.reader is None:
            raise UpstreamUnavailable("No policy source configured")

        try:
            rules = await self.reader.fetch_rules()
        except UpstreamUnavailable as e:
            self._last_error = str(e)
            raise

        async with self._lock:
            self._rules = rules
            self._loaded = True
            self._last_error = None

        logger.info(f"Loaded {len(rules)} policy rules")
        return rules

    def snapshot(self) -> Tuple[List[PolicyRule], bool, Optional[str]]:
        return list(self._rules), self._loaded, self._last_error
