"""
Tests for runtime (per-game) config providers.
"""

import httpx
import pytest

from iap.exceptions import RuntimeConfigError
from iap.services.runtime_config import (
    HttpRuntimeConfigProvider,
    NoopRuntimeConfigProvider,
    StaticRuntimeConfigProvider,
    normalize_cache_ttl,
    normalize_environment,
    parse_runtime_config,
)


class TestHelpers:
    """Tests for normalization helpers."""

    def test_environment(self):
        """Empty means prod; only prod/staging are valid."""
        assert normalize_environment(None) == "prod"
        assert normalize_environment(" Staging ") == "staging"
        with pytest.raises(RuntimeConfigError):
            normalize_environment("dev")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, 15), ("abc", 15), (0, 15), (-3, 15), (2, 5), (30, 30), ("60", 60)],
    )
    def test_cache_ttl(self, value, expected):
        """Garbage falls back to 15s; the floor is 5s."""
        assert normalize_cache_ttl(value) == expected

    def test_parse_camel_case(self):
        """camelCase document keys and credential fields are accepted."""
        config = parse_runtime_config(
            {
                "gameId": "LumaRush",
                "iapCatalog": {"consumables": {}},
                "iapProviderConfigs": {
                    "PayPal_Web": {"clientId": "cid", "clientSecret": "sec", "unused": None}
                },
            },
            "fallback",
            "prod",
        )
        assert config.game_id == "lumarush"
        assert config.catalog == {"consumables": {}}
        assert config.provider_configs == {
            "paypal_web": {"client_id": "cid", "client_secret": "sec"}
        }

    def test_parse_snake_case_and_garbage(self):
        """snake_case keys work; non-mapping sections are dropped."""
        config = parse_runtime_config(
            {"catalog": "nope", "provider_configs": {"apple": "nope"}}, "g", "staging"
        )
        assert config.game_id == "g"
        assert config.environment == "staging"
        assert config.catalog == {}
        assert config.provider_configs == {}


class TestStaticProviders:
    """Tests for the in-process providers."""

    async def test_noop(self):
        """The noop provider never has config."""
        assert await NoopRuntimeConfigProvider().get_iap_runtime_config("lumarush") is None

    async def test_static_lookup(self):
        """Lookup is by normalized game id."""
        provider = StaticRuntimeConfigProvider({"LumaRush": {"catalog": {"a": 1}}})

        config = await provider.get_iap_runtime_config(" lumarush ")
        assert config is not None
        assert config.catalog == {"a": 1}
        assert await provider.get_iap_runtime_config("other") is None


class TestHttpRuntimeConfigProvider:
    """Tests for HttpRuntimeConfigProvider."""

    def _provider(self, handler, **kwargs) -> HttpRuntimeConfigProvider:
        return HttpRuntimeConfigProvider(
            service_url="https://control.test/",
            internal_key="k",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            **kwargs,
        )

    async def test_fetch_and_cache(self):
        """Config is fetched once and served from cache within the TTL."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                200, json={"config": {"iapProviderConfigs": {"apple": {"sharedSecret": "s"}}}}
            )

        provider = self._provider(handler)
        first = await provider.get_iap_runtime_config("LumaRush")
        second = await provider.get_iap_runtime_config("lumarush")

        assert first is second
        assert first is not None
        assert first.provider_configs["apple"]["shared_secret"] == "s"
        assert len(calls) == 1
        assert calls[0].url.path == "/v1/internal/runtime/identity-config"
        assert calls[0].url.params["game_id"] == "lumarush"
        assert calls[0].url.params["environment"] == "prod"
        assert calls[0].headers["x-admin-key"] == "k"

    async def test_not_found_is_cached_none(self):
        """404 means no config, and that answer is cached too."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        provider = self._provider(handler)
        assert await provider.get_iap_runtime_config("g") is None
        assert await provider.get_iap_runtime_config("g") is None
        assert len(calls) == 1

    async def test_environment_is_part_of_cache_key(self):
        """prod and staging are cached separately."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"config": {}})

        provider = self._provider(handler)
        await provider.get_iap_runtime_config("g", "prod")
        await provider.get_iap_runtime_config("g", "staging")
        assert len(calls) == 2

    async def test_server_error_raises(self):
        """5xx responses are runtime config errors."""
        provider = self._provider(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(RuntimeConfigError, match="500"):
            await provider.get_iap_runtime_config("g")

    async def test_transport_error_raises(self):
        """Connection failures are runtime config errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RuntimeConfigError, match="fetch failed"):
            await self._provider(handler).get_iap_runtime_config("g")

    async def test_blank_game_skips_fetch(self):
        """No game id, no request."""
        provider = self._provider(lambda request: pytest.fail("unexpected request"))
        assert await provider.get_iap_runtime_config("  ") is None

    def test_requires_url(self):
        """http mode without a URL is a configuration error."""
        with pytest.raises(RuntimeConfigError):
            HttpRuntimeConfigProvider(service_url=" ")

    async def test_close_keeps_injected_client(self):
        """An injected client is left open for its owner."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        provider = HttpRuntimeConfigProvider(service_url="https://control.test", client=client)

        await provider.close()
        assert client.is_closed is False
        await client.aclose()
