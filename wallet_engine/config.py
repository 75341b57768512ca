"""Runtime configuration for the wallet engine.

Every tunable of the engine (endpoints, cache lifetimes, debounce windows,
timeouts) is read from the environment here so the rest of the package
receives plain values through :class:`EngineConfig` and never touches
``os.environ`` itself.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load any variables defined in a local .env file before reading the
# environment below.
load_dotenv()


@dataclass(frozen=True)
class EngineConfig:
    """Strongly-typed container for runtime configuration.

    Attributes:
        project_root: Root directory of the project, used to derive the
            default storage location.
        api_base_url: Base URL of the data API serving cards, transactions
            and preferences.
        api_token: Optional bearer token sent with every data API request.
        rates_endpoint: Third-party endpoint returning ``{"rates": {...}}``
            quoted against USD. An empty value disables rate fetching.
        storage_file: SQLite file acting as durable local storage.
        http_timeout: Timeout in seconds applied to outgoing HTTP requests.
        cards_ttl / sums_ttl / transactions_ttl / rates_ttl: Freshness
            windows in seconds for the resource caches.
        preferences_ttl: Freshness window for preferences; ``None`` keeps
            them until explicitly invalidated.
        settings_debounce: Quiet period in seconds before pending setting
            changes are sent to the remote store.
        settings_max_backoff: Upper bound in seconds for the retry delay of
            failed settings syncs.
        identity_timeout / remote_settings_timeout: Limits for the network
            steps of a cold settings start.
        reconcile_interval: Seconds between full refreshes of live balances.
        anchor_currencies: Currencies the "all" bucket is expressed in.
    """

    project_root: Path
    api_base_url: str
    api_token: Optional[str]
    rates_endpoint: str
    storage_file: Path
    http_timeout: float = 30.0
    cards_ttl: float = 30.0
    sums_ttl: float = 10.0
    transactions_ttl: float = 5.0
    rates_ttl: float = 3600.0
    preferences_ttl: Optional[float] = None
    settings_debounce: float = 0.8
    settings_max_backoff: float = 60.0
    identity_timeout: float = 2.0
    remote_settings_timeout: float = 5.0
    reconcile_interval: float = 300.0
    anchor_currencies: tuple[str, ...] = ("UAH", "USD", "EUR")


def load_config() -> EngineConfig:
    """Create a new :class:`EngineConfig` instance based on environment settings."""

    project_root = Path(__file__).resolve().parent.parent
    storage_file = Path(
        getenv_with_default(
            "WALLET_STORAGE_FILE",
            project_root / "wallet_engine.db",
        )
    )

    # Ensure the directory exists so the storage layer can create the file.
    storage_file.parent.mkdir(parents=True, exist_ok=True)

    anchors = getenv_with_default("WALLET_ANCHOR_CURRENCIES", "UAH,USD,EUR")

    return EngineConfig(
        project_root=project_root,
        api_base_url=getenv_with_default("WALLET_API_BASE_URL", "http://127.0.0.1:3000").rstrip("/"),
        api_token=getenv_with_default("WALLET_API_TOKEN"),
        rates_endpoint=getenv_with_default("WALLET_RATES_ENDPOINT", "https://open.er-api.com/v6/latest/USD"),
        storage_file=storage_file,
        http_timeout=getenv_float("WALLET_HTTP_TIMEOUT", 30.0),
        cards_ttl=getenv_float("WALLET_CARDS_TTL", 30.0),
        sums_ttl=getenv_float("WALLET_SUMS_TTL", 10.0),
        transactions_ttl=getenv_float("WALLET_TRANSACTIONS_TTL", 5.0),
        rates_ttl=getenv_float("WALLET_RATES_TTL", 3600.0),
        settings_debounce=getenv_float("WALLET_SETTINGS_DEBOUNCE", 0.8),
        settings_max_backoff=getenv_float("WALLET_SETTINGS_MAX_BACKOFF", 60.0),
        identity_timeout=getenv_float("WALLET_IDENTITY_TIMEOUT", 2.0),
        remote_settings_timeout=getenv_float("WALLET_REMOTE_SETTINGS_TIMEOUT", 5.0),
        reconcile_interval=getenv_float("WALLET_RECONCILE_INTERVAL", 300.0),
        anchor_currencies=tuple(code.strip().upper() for code in anchors.split(",") if code.strip()),
    )


def getenv_with_default(name: str, default: Optional[Path | str] = None) -> Optional[str]:
    """Return the value of an environment variable or a sensible default.

    ``None`` values are propagated so callers can make explicit decisions about
    optional configuration values. Paths are converted to strings, keeping the
    return type uniform.
    """

    from os import getenv

    value = getenv(name)
    if value is not None:
        return value
    if default is None:
        return None
    return str(default)


def getenv_float(name: str, default: float) -> float:
    value = getenv_with_default(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
