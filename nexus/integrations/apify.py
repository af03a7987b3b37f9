"""Apify actor integration.

Runs Apify actors (Google Maps crawler, web scraper, ...) as external-action
steps. Runs are started asynchronously and polled, so a workflow instance
never holds a thread while an actor is crawling.

Usage:
    from nexus.integrations.apify import ApifyClient

    client = ApifyClient()
    result = client.invoke("compass/crawler-google-places", {"searchStringsArray": ["plumbers austin"]})
    if result.status is ActionStatus.RUNNING:
        result = client.check(result.run_id)
"""

from typing import Any, Optional

from nexus.core.config import Config, get_config
from nexus.core.exceptions import IntegrationError, TransientIntegrationError
from nexus.core.logging import get_logger
from nexus.integrations.base import (
    ActionResult,
    ActionStatus,
    ExternalActionCapability,
    IntegrationBase,
    RateLimiter,
)

logger = get_logger(__name__)

API_ROOT = "https://api.apify.com/v2"
BASE_URL = f"{API_ROOT}/acts"

GOOGLE_MAPS_ACTOR = "compass/crawler-google-places"
WEB_SCRAPER_ACTOR = "apify/web-scraper"

_STATUS_MAP = {
    "SUCCEEDED": ActionStatus.SUCCESS,
    "READY": ActionStatus.RUNNING,
    "RUNNING": ActionStatus.RUNNING,
    "TIMING-OUT": ActionStatus.RUNNING,
    "ABORTING": ActionStatus.RUNNING,
    "FAILED": ActionStatus.FAILED,
    "ABORTED": ActionStatus.FAILED,
    "TIMED-OUT": ActionStatus.FAILED,
}


def actor_path(actor_id: str) -> str:
    """Apify URLs use '~' between username and actor name."""
    return actor_id.replace("/", "~")


class ApifyClient(IntegrationBase, ExternalActionCapability):
    """Apify REST API client.

    Attributes:
        max_items: Dataset items fetched when a run succeeds
    """

    def __init__(self, config: Optional[Config] = None, max_items: int = 100) -> None:
        self._config = config or get_config()
        self.timeout_seconds = self._config.http_timeout_seconds
        self.max_items = max_items
        self._rate_limiter = RateLimiter(calls_per_minute=60)

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.apify_token}",
            "Content-Type": "application/json",
        }

    def is_configured(self) -> bool:
        return bool(self._config.apify_token)

    def health_check(self) -> bool:
        """Check the token against the account endpoint."""
        if not self.is_configured():
            return False
        try:
            response = self._request("GET", f"{API_ROOT}/users/me", headers=self._headers)
            return response.status_code == 200
        except IntegrationError:
            return False

    def invoke(self, actor_id: str, input: dict[str, Any]) -> ActionResult:
        """Start an actor run.

        Returns:
            ActionResult with run_id; status is usually running

        Raises:
            TransientIntegrationError: Timeout, connection failure, 429, 5xx or
                the local rate limit, so the step is retried on a later tick
            IntegrationError: If Apify is not configured
        """
        if not self.is_configured():
            raise IntegrationError("Apify not configured (set APIFY_TOKEN)")

        if not self._rate_limiter.try_acquire():
            raise TransientIntegrationError("Apify rate limit reached, actor start deferred")
        response = self._request(
            "POST",
            f"{BASE_URL}/{actor_path(actor_id)}/runs",
            headers=self._headers,
            json=input,
        )
        if response.status_code >= 400:
            logger.warning(
                "Apify actor start rejected",
                extra={"context": {"actor_id": actor_id, "status": response.status_code}},
            )
            return ActionResult(
                status=ActionStatus.FAILED,
                error=f"Actor start failed ({response.status_code}): {response.text[:200]}",
            )

        result = self._to_result(response.json().get("data") or {})
        logger.info(
            "Apify actor started",
            extra={
                "context": {
                    "actor_id": actor_id,
                    "run_id": result.run_id,
                    "status": result.status.value,
                }
            },
        )
        return result

    def check(self, run_id: str) -> ActionResult:
        """Poll a run; on success the dataset items are in ``data["items"]``.

        Over the local rate limit the run is reported as still running
        without calling Apify, so the step is polled again later.
        """
        if not self.is_configured():
            raise IntegrationError("Apify not configured (set APIFY_TOKEN)")

        if not self._rate_limiter.try_acquire():
            return ActionResult(status=ActionStatus.RUNNING, run_id=run_id)
        response = self._request("GET", f"{API_ROOT}/actor-runs/{run_id}", headers=self._headers)
        if response.status_code >= 400:
            return ActionResult(
                status=ActionStatus.FAILED,
                run_id=run_id,
                error=f"Run lookup failed ({response.status_code}): {response.text[:200]}",
            )
        return self._to_result(response.json().get("data") or {})

    def _to_result(self, run: dict[str, Any]) -> ActionResult:
        run_status = str(run.get("status", "")).upper()
        status = _STATUS_MAP.get(run_status)
        run_id = run.get("id")

        if status is None:
            return ActionResult(
                status=ActionStatus.FAILED,
                run_id=run_id,
                data=run,
                error=f"Unknown Apify run status: {run_status or 'missing'}",
            )
        if status is ActionStatus.FAILED:
            return ActionResult(
                status=status,
                run_id=run_id,
                data=run,
                error=f"Actor run {run_status.lower()}",
            )
        if status is ActionStatus.RUNNING:
            return ActionResult(status=status, run_id=run_id, data=run)

        data = {
            "run_id": run_id,
            "dataset_id": run.get("defaultDatasetId"),
            "items": self._fetch_items(run.get("defaultDatasetId")),
        }
        return ActionResult(status=status, run_id=run_id, data=data)

    def _fetch_items(self, dataset_id: Optional[str]) -> list[dict[str, Any]]:
        if not dataset_id:
            return []
        response = self._request(
            "GET",
            f"{API_ROOT}/datasets/{dataset_id}/items",
            headers=self._headers,
            params={"clean": "true", "limit": self.max_items},
        )
        if response.status_code >= 400:
            logger.warning(
                "Apify dataset fetch failed",
                extra={"context": {"dataset_id": dataset_id, "status": response.status_code}},
            )
            return []
        items = response.json()
        return items if isinstance(items, list) else []
