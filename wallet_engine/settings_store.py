"""Local-first user settings with debounced remote synchronisation.

Local storage is the source of truth for reads: the in-memory tree is loaded
from it at start-up without waiting for the network, and every change is
written back immediately. The remote preferences store is only consulted when
no local copy exists (or for an opportunistic reconciliation) and is merged
with local values taking precedence.

Changes are queued per top-level key. A rolling debounce timer coalesces
bursts of updates into one ``PATCH``; a failed sync keeps the queue and
retries with exponential backoff.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from .client import ApiError, AuthenticationError
from .config import EngineConfig
from .storage import LocalStorage

logger = logging.getLogger(__name__)

UNINITIALIZED = "uninitialized"
INITIALIZING = "initializing"
READY = "ready"

CACHE_KEY = "settings-cache"

# Secrets live in their own column and are saved through a dedicated endpoint.
APIS_KEYS = ("apis", "APIs")


class PreferencesRemote(Protocol):
    async def current_user_id(self) -> Optional[str]: ...

    async def get_preferences(self) -> dict[str, Any]: ...

    async def patch_preferences(self, updates: Mapping[str, Any]) -> Any: ...

    async def save_apis(self, apis: Any) -> Any: ...


class SettingsStore:
    """User settings tree with a ``uninitialized -> initializing -> ready`` lifecycle."""

    def __init__(
        self,
        storage: LocalStorage,
        remote: Optional[PreferencesRemote] = None,
        *,
        debounce: float = 0.8,
        max_backoff: float = 60.0,
        identity_timeout: float = 2.0,
        remote_timeout: float = 5.0,
        background_reconcile: bool = False,
        clock: Callable[[], float] = time.time,
        on_synced: Optional[Callable[[], None]] = None,
    ) -> None:
        self._storage = storage
        self._remote = remote
        self._debounce = debounce
        self._max_backoff = max_backoff
        self._identity_timeout = identity_timeout
        self._remote_timeout = remote_timeout
        self._background_reconcile = background_reconcile
        self._clock = clock
        # Called after every accepted remote write.
        self.on_synced = on_synced

        self.state = UNINITIALIZED
        self.user_id: Optional[str] = None
        self.error: Optional[BaseException] = None
        self._settings: dict[str, Any] = {}
        self._pending: dict[str, Any] = {}
        self._failures = 0
        self._flush_lock = asyncio.Lock()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        storage: LocalStorage,
        remote: Optional[PreferencesRemote] = None,
        background_reconcile: bool = True,
    ) -> "SettingsStore":
        return cls(
            storage,
            remote,
            debounce=config.settings_debounce,
            max_backoff=config.settings_max_backoff,
            identity_timeout=config.identity_timeout,
            remote_timeout=config.remote_settings_timeout,
            background_reconcile=background_reconcile,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def ready(self) -> bool:
        return self.state == READY

    @property
    def settings(self) -> dict[str, Any]:
        return copy.deepcopy(self._settings)

    @property
    def pending(self) -> dict[str, Any]:
        return copy.deepcopy(self._pending)

    @property
    def failures(self) -> int:
        return self._failures

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        """Load settings, preferring the local copy over the network.

        Without a local copy the user identity and the remote settings are
        fetched under timeouts; on timeout or failure the store starts empty.
        """

        if self.state != UNINITIALIZED:
            return
        self.state = INITIALIZING

        cached = self._read_local()
        if cached is not None:
            self._settings = cached["settings"]
            self.user_id = cached.get("user_id")
            self.state = READY
            if self._background_reconcile and self._remote is not None:
                self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile_quietly())
            return

        self.user_id = await self._resolve_identity()
        if self.user_id is None:
            self._settings = {}
            self.state = READY
            return

        remote = await self._fetch_remote()
        if remote:
            self._settings = {**remote, **self._settings}
            self._write_local()
        self.state = READY

    async def reconcile(self) -> bool:
        """Merge the remote copy into the local one; local values win.

        Returns ``True`` when remote settings were fetched and merged.
        """

        remote = await self._fetch_remote()
        if not remote:
            return False
        self._settings = {**remote, **self._settings}
        self._write_local()
        return True

    async def _reconcile_quietly(self) -> None:
        try:
            await self.reconcile()
        except Exception:
            logger.exception("Background settings reconciliation failed")

    def reset(self) -> None:
        """Forget everything, including the local copy (used on sign-out)."""

        self._cancel_background()
        self._pending = {}
        self._failures = 0
        self._settings = {}
        self.user_id = None
        self.error = None
        self.state = UNINITIALIZED
        self._storage.remove_item(CACHE_KEY)

    async def close(self) -> None:
        """Try a last sync, then stop timers; the local copy is kept."""

        if self._timer is not None and self._pending:
            try:
                await self.flush(reschedule=False)
            except ApiError as exc:
                logger.warning("Settings not synced before shutdown: %s", exc)
        self._cancel_background()

    def _cancel_background(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in (self._flush_task, self._reconcile_task):
            if task is not None and not task.done():
                task.cancel()
        self._flush_task = None
        self._reconcile_task = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        value = self._settings.get(key)
        return default if value is None else value

    def get_nested_setting(self, path: str, default: Any = None) -> Any:
        current: Any = self._settings
        for key in path.split("."):
            if not isinstance(current, Mapping):
                return default
            current = current.get(key)
        return default if current is None else current

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def update_setting(self, key: str, value: Any) -> None:
        """Set a top-level setting, persist locally and queue it for sync."""

        self._settings = {**self._settings, key: copy.deepcopy(value)}
        self._write_local()
        self._pending[key] = copy.deepcopy(value)
        self._schedule_flush(self._debounce)

    def update_nested_setting(self, path: str, value: Any) -> None:
        """Set ``section.sub.key`` style settings; the whole section is queued."""

        keys = path.split(".")
        updated = dict(self._settings)
        current = updated
        for key in keys[:-1]:
            child = current.get(key)
            current[key] = dict(child) if isinstance(child, Mapping) else {}
            current = current[key]
        current[keys[-1]] = copy.deepcopy(value)

        self._settings = updated
        self._write_local()
        section = keys[0]
        self._pending[section] = copy.deepcopy(updated[section])
        self._schedule_flush(self._debounce)

    # ------------------------------------------------------------------
    # Synchronisation
    # ------------------------------------------------------------------
    async def flush(self, reschedule: bool = True) -> bool:
        """Send the queued changes; safe to call at any time.

        Returns ``True`` when nothing is left pending. Transport failures keep
        the queue and schedule a retry with backoff. Authentication failures
        are raised and not retried.
        """

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        async with self._flush_lock:
            if not self._pending:
                return True
            if self._remote is None:
                return False

            batch = copy.deepcopy(self._pending)
            try:
                await self._send(batch)
            except AuthenticationError as exc:
                self.error = exc
                raise
            except (ApiError, OSError, asyncio.TimeoutError) as exc:
                self.error = exc
                self._failures += 1
                delay = self.retry_delay()
                logger.warning(
                    "Settings sync failed (attempt %d), retrying in %.1fs: %s",
                    self._failures,
                    delay,
                    exc,
                )
                if reschedule:
                    self._schedule_flush(delay)
                return False

            self._failures = 0
            self.error = None
            if self._pending and reschedule:
                self._schedule_flush(self._debounce)
            return not self._pending

    async def _send(self, batch: Mapping[str, Any]) -> None:
        apis = {key: value for key, value in batch.items() if key in APIS_KEYS}
        rest = {key: value for key, value in batch.items() if key not in APIS_KEYS}

        if apis:
            await self._remote.save_apis(next(iter(apis.values())))
            self._commit(apis)
        if rest:
            await self._remote.patch_preferences(rest)
            self._commit(rest)

    def _commit(self, sent: Mapping[str, Any]) -> None:
        self._drop_sent(sent)
        if self.on_synced is not None:
            self.on_synced()

    def _drop_sent(self, sent: Mapping[str, Any]) -> None:
        # Keys changed again while the request was in flight stay queued.
        for key, value in sent.items():
            if key in self._pending and self._pending[key] == value:
                del self._pending[key]

    def retry_delay(self) -> float:
        if self._failures <= 0:
            return self._debounce
        return min(self._debounce * 2 ** (self._failures - 1), self._max_backoff)

    def _schedule_flush(self, delay: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; settings stay queued until flush()")
            return
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_from_timer())

    async def _flush_from_timer(self) -> None:
        try:
            await self.flush()
        except AuthenticationError:
            logger.error("Settings sync stopped: the session is no longer authenticated")

    async def wait_idle(self) -> None:
        """Wait for an in-progress timer-triggered flush to finish."""

        if self._flush_task is not None:
            await asyncio.gather(self._flush_task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Remote helpers
    # ------------------------------------------------------------------
    async def _resolve_identity(self) -> Optional[str]:
        if self._remote is None:
            return None
        return await self._with_timeout(self._remote.current_user_id(), self._identity_timeout, "identity")

    async def _fetch_remote(self) -> Optional[dict[str, Any]]:
        if self._remote is None:
            return None
        remote = await self._with_timeout(self._remote.get_preferences(), self._remote_timeout, "remote settings")
        if not isinstance(remote, Mapping):
            return None
        return dict(remote)

    async def _with_timeout(self, awaitable: Awaitable[Any], timeout: float, what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out after %.1fs waiting for %s", timeout, what)
        except ApiError as exc:
            logger.warning("Could not load %s: %s", what, exc)
        return None

    # ------------------------------------------------------------------
    # Local persistence
    # ------------------------------------------------------------------
    def _read_local(self) -> Optional[dict[str, Any]]:
        document = self._storage.get_json(CACHE_KEY)
        if not isinstance(document, dict) or not isinstance(document.get("settings"), dict):
            return None
        return document

    def _write_local(self) -> None:
        self._storage.set_json(
            CACHE_KEY,
            {
                "user_id": self.user_id,
                "settings": self._settings,
                "timestamp": int(self._clock() * 1000),
            },
        )


__all__ = ["CACHE_KEY", "INITIALIZING", "READY", "SettingsStore", "UNINITIALIZED"]
