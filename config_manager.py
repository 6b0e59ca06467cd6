import asyncio
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from schemas import ThrottleConfig

logger = logging.getLogger("throttle.worker.config")

INITIAL_BACKOFF = 10
MAX_BACKOFF = 120


class ConfigManager:
    """
    Holds the current policy snapshot.

    Starts from the local settings; when a control API is configured the
    snapshot is refreshed from it in the background. A failed refresh
    keeps serving the previous snapshot.
    """

    def __init__(
        self,
        initial: ThrottleConfig,
        control_base_url: Optional[str] = None,
        shared_secret: Optional[str] = None,
    ):
        self._snapshot = initial
        self._base_url = control_base_url.rstrip("/") if control_base_url else None
        self._secret = shared_secret
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._consecutive_failures = 0
        self._current_backoff = INITIAL_BACKOFF

    def get_snapshot(self) -> ThrottleConfig:
        return self._snapshot

    def start_background_refresh(self) -> None:
        if not self._base_url:
            logger.info("No control API configured, using local throttle settings")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _refresh_loop(self):
        """
        Exponential backoff on failures: 10s -> 20s -> 40s -> ... -> 120s (max).
        Warn on the first failure, error from the third in a row.
        """
        logger.info("Starting config refresh loop...")

        try:
            await self._fetch_and_update()
            logger.info("Initial throttle config loaded from control API")
        except Exception as e:
            logger.warning(f"Initial config fetch failed (will retry): {type(e).__name__}")

        while True:
            try:
                await asyncio.sleep(self._current_backoff)
                await self._fetch_and_update()

                if self._consecutive_failures > 0:
                    logger.info("Config refresh recovered after failures")
                self._consecutive_failures = 0
                self._current_backoff = INITIAL_BACKOFF

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._consecutive_failures += 1

                if self._consecutive_failures == 1:
                    logger.warning(f"Config refresh failed (retrying with backoff): {type(e).__name__}")
                elif self._consecutive_failures >= 3:
                    logger.error(
                        f"Config refresh failed {self._consecutive_failures} times consecutively: {type(e).__name__}"
                    )

                self._current_backoff = min(self._current_backoff * 2, MAX_BACKOFF)

    async def _fetch_and_update(self) -> ThrottleConfig:
        url = f"{self._base_url}/internal/worker/config"
        headers = {"x-control-secret": self._secret} if self._secret else {}

        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
            data = resp.json()

        try:
            merged = {**self._snapshot.model_dump(), **data.get("throttle", data)}
            snapshot = ThrottleConfig.model_validate(merged)
        except (AttributeError, ValidationError) as e:
            raise ValueError(f"Control API returned an invalid throttle config: {e}") from e

        async with self._lock:
            self._snapshot = snapshot

        logger.info(
            f"Loaded throttle config: limit={snapshot.limit_per_minute}/min, "
            f"whitelist={len(snapshot.whitelist)}, "
            f"bots={len(snapshot.allowed_bots)}+{len(snapshot.blocked_bots)}"
        )
        return snapshot
