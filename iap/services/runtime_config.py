"""
Runtime Config Provider - per-game catalog overrides and provider credentials.

Per-game config is owned by the control plane. The HTTP provider fetches it
from the identity-config endpoint and caches results (including "not found")
for a short TTL.
"""

import re
import time
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from structlog import get_logger

from iap.config import ENVIRONMENTS
from iap.exceptions import RuntimeConfigError
from iap.models.domain import IapRuntimeConfig

logger = get_logger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 15
MIN_CACHE_TTL_SECONDS = 5
IDENTITY_CONFIG_PATH = "/v1/internal/runtime/identity-config"


def normalize_game_id(value: Any) -> str:
    return str(value or "").strip().lower()


def normalize_environment(value: Any) -> str:
    """Return prod or staging; empty means prod."""
    environment = str(value or "").strip().lower() or "prod"
    if environment not in ENVIRONMENTS:
        raise RuntimeConfigError("environment must be staging or prod")
    return environment


def normalize_cache_ttl(value: Any) -> int:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CACHE_TTL_SECONDS
    if parsed <= 0:
        return DEFAULT_CACHE_TTL_SECONDS
    return max(MIN_CACHE_TTL_SECONDS, int(parsed))


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def parse_runtime_config(
    data: Mapping[str, Any], game_id: str, environment: str
) -> IapRuntimeConfig:
    """
    Build an IapRuntimeConfig from a control-plane document.

    Accepts ``iapCatalog`` / ``iap_catalog`` / ``catalog`` for catalog
    overrides and ``iapProviderConfigs`` / ``iap_provider_configs`` /
    ``provider_configs`` for credentials. Credential field names are
    converted to snake_case (clientId -> client_id).
    """
    catalog = data.get("iapCatalog", data.get("iap_catalog", data.get("catalog")))
    providers = data.get(
        "iapProviderConfigs", data.get("iap_provider_configs", data.get("provider_configs"))
    )

    provider_configs: dict[str, dict[str, str]] = {}
    if isinstance(providers, Mapping):
        for raw_key, raw_config in providers.items():
            provider_key = str(raw_key or "").strip().lower()
            if not provider_key or not isinstance(raw_config, Mapping):
                continue
            provider_configs[provider_key] = {
                _snake_case(str(field)): str(value)
                for field, value in raw_config.items()
                if value is not None
            }

    return IapRuntimeConfig(
        game_id=normalize_game_id(data.get("gameId") or data.get("game_id") or game_id),
        environment=environment,
        catalog=catalog if isinstance(catalog, Mapping) else {},
        provider_configs=provider_configs,
    )


class RuntimeConfigProvider(Protocol):
    """Source of per-game runtime config."""

    async def get_iap_runtime_config(
        self, game_id: str, environment: str | None = None
    ) -> IapRuntimeConfig | None:
        """
        Return the runtime config for a game, or None when the game has none.

        Raises:
            RuntimeConfigError: If the config source fails
        """
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


class NoopRuntimeConfigProvider:
    """Provider used when runtime config is disabled."""

    async def get_iap_runtime_config(
        self, game_id: str, environment: str | None = None
    ) -> IapRuntimeConfig | None:
        return None

    async def close(self) -> None:
        return None


class StaticRuntimeConfigProvider:
    """In-process runtime config keyed by game id (tests, local dev)."""

    def __init__(
        self,
        configs: Mapping[str, Mapping[str, Any]],
        environment: str = "prod",
    ) -> None:
        self.environment = normalize_environment(environment)
        self._configs = {normalize_game_id(key): value for key, value in configs.items()}

    async def get_iap_runtime_config(
        self, game_id: str, environment: str | None = None
    ) -> IapRuntimeConfig | None:
        key = normalize_game_id(game_id)
        data = self._configs.get(key)
        if not key or data is None:
            return None
        return parse_runtime_config(
            data, key, normalize_environment(environment or self.environment)
        )

    async def close(self) -> None:
        return None


class HttpRuntimeConfigProvider:
    """
    Runtime config fetched from the control plane over HTTP.

    GET {service_url}/v1/internal/runtime/identity-config?game_id=..&environment=..
    with the x-admin-key header. 404 means the game has no config. Results
    (including None) are cached per (game_id, environment) for cache_ttl_seconds.
    """

    def __init__(
        self,
        service_url: str,
        internal_key: str = "",
        environment: str = "prod",
        cache_ttl_seconds: Any = DEFAULT_CACHE_TTL_SECONDS,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not service_url.strip():
            raise RuntimeConfigError("http mode requires a service url")
        self.service_url = service_url.strip().rstrip("/")
        self.internal_key = internal_key.strip()
        self.environment = normalize_environment(environment)
        self.cache_ttl_seconds = normalize_cache_ttl(cache_ttl_seconds)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._cache: dict[str, tuple[float, IapRuntimeConfig | None]] = {}

    async def get_iap_runtime_config(
        self, game_id: str, environment: str | None = None
    ) -> IapRuntimeConfig | None:
        key = normalize_game_id(game_id)
        if not key:
            return None
        target_env = normalize_environment(environment or self.environment)
        cache_key = f"{key}:{target_env}"
        now = time.monotonic()
        cached = self._cache.get(cache_key)
        if cached is not None and cached[0] > now:
            return cached[1]

        url = f"{self.service_url}{IDENTITY_CONFIG_PATH}"
        try:
            response = await self._client.get(
                url,
                params={"game_id": key, "environment": target_env},
                headers={"x-admin-key": self.internal_key},
            )
        except httpx.HTTPError as exc:
            logger.error("runtime_config_request_failed", game_id=key, error=str(exc))
            raise RuntimeConfigError(f"fetch failed: {exc}") from exc

        if response.status_code == 404:
            self._cache[cache_key] = (now + self.cache_ttl_seconds, None)
            return None
        if response.status_code >= 400:
            logger.error(
                "runtime_config_fetch_failed",
                game_id=key,
                status=response.status_code,
            )
            raise RuntimeConfigError(
                f"fetch failed ({response.status_code}): {response.text[:200]}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RuntimeConfigError("response is not JSON") from exc
        data = payload.get("config") if isinstance(payload, Mapping) else None
        config = (
            parse_runtime_config(data, key, target_env) if isinstance(data, Mapping) else None
        )
        self._cache[cache_key] = (now + self.cache_ttl_seconds, config)
        logger.debug("runtime_config_loaded", game_id=key, environment=target_env)
        return config

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
