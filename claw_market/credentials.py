"""Registry credential resolution.

Tokens come from an ordered chain of strategies: the GCE metadata server
(zero-config on cloud VMs), the local ``gcloud`` CLI, then an optionally
configured static token. Every strategy is allowed to fail; running out of
strategies yields ``None`` since public catalogs and registries need no auth.
"""

from __future__ import annotations

import asyncio
import base64
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from urllib.parse import urlparse

import httpx

from claw_market.config import MarketplaceConfig
from claw_market.logging import get_logger

log = get_logger(__name__)

TokenStrategy = Callable[[], Awaitable[str | None]]

GCE_METADATA_BASE = "http://metadata.google.internal/computeMetadata/v1"
METADATA_TOKEN_PATH = "/instance/service-accounts/default/token"
METADATA_PROJECT_PATH = "/project/project-id"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}
METADATA_TIMEOUT_SECONDS = 3.0
CLI_TOKEN_COMMAND = ("gcloud", "auth", "print-access-token")
CLI_TIMEOUT_SECONDS = 10.0

AUTH_FALLBACK_ENV_KEY = "NPM_CONFIG__AUTH"


@dataclass
class RegistryAuth:
    registry_url: str
    registry_env: dict[str, str] = field(default_factory=dict)


async def _fetch_metadata(path: str) -> httpx.Response | None:
    async with httpx.AsyncClient(timeout=METADATA_TIMEOUT_SECONDS) as client:
        response = await client.get(f"{GCE_METADATA_BASE}{path}", headers=METADATA_HEADERS)
    if response.status_code != 200:
        return None
    return response


async def fetch_metadata_token() -> str | None:
    """Access token from the instance metadata server."""
    response = await _fetch_metadata(METADATA_TOKEN_PATH)
    if response is None:
        return None
    payload = response.json()
    if not isinstance(payload, dict):
        return None
    token = str(payload.get("access_token") or "").strip()
    return token or None


async def fetch_cli_token(
    command: Sequence[str] = CLI_TOKEN_COMMAND,
    timeout_seconds: float = CLI_TIMEOUT_SECONDS,
) -> str | None:
    """Access token printed by the local credential helper CLI."""
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    if process.returncode != 0:
        return None
    token = stdout.decode("utf-8", errors="replace").strip()
    return token or None


def static_token_strategy(token: str | None) -> TokenStrategy:
    async def _static() -> str | None:
        cleaned = (token or "").strip()
        return cleaned or None

    _static.__name__ = "static_token"
    return _static


def build_token_strategies(static_token: str | None = None) -> list[TokenStrategy]:
    """Default strategy chain, in priority order."""
    strategies: list[TokenStrategy] = [fetch_metadata_token, fetch_cli_token]
    if static_token:
        strategies.append(static_token_strategy(static_token))
    return strategies


async def resolve_token(strategies: Sequence[TokenStrategy] | None = None) -> str | None:
    """Return the first non-empty token from the strategy chain, or None."""
    chain = build_token_strategies() if strategies is None else strategies
    for strategy in chain:
        name = getattr(strategy, "__name__", repr(strategy))
        try:
            token = await strategy()
        except Exception as exc:
            log.debug("Token strategy failed", strategy=name, error=str(exc))
            continue
        if token and token.strip():
            log.debug("Resolved registry token", strategy=name)
            return token.strip()
    return None


async def resolve_project_id() -> str | None:
    """Cloud project id from the metadata server, or None off-cloud."""
    try:
        response = await _fetch_metadata(METADATA_PROJECT_PATH)
    except Exception as exc:
        log.debug("Metadata project lookup failed", error=str(exc))
        return None
    if response is None:
        return None
    return response.text.strip() or None


def _registry_path(registry_url: str) -> str:
    parsed = urlparse(registry_url)
    if parsed.scheme and parsed.hostname:
        # userinfo never goes into the key
        host = f"{parsed.hostname}:{parsed.port}" if parsed.port else parsed.hostname
        registry_path = f"//{host}{parsed.path}"
    else:
        registry_path = re.sub(r"^https?:", "", registry_url)
    if not registry_path.endswith("/"):
        registry_path += "/"
    return registry_path


def build_registry_auth_env(registry_url: str, token: str) -> dict[str, str]:
    """Environment entries that authenticate ``npm`` against a registry.

    npm reads per-registry auth from ``npm_config_//host/path/:_authToken``;
    the key is flattened to a valid env var name.
    """
    registry_path = _registry_path(registry_url)
    env_key = f"npm_config_{registry_path}:_authToken".replace("/", "_").replace(":", "_")
    basic = base64.b64encode(f"_:{token}".encode("utf-8")).decode("ascii")
    return {
        env_key: token,
        AUTH_FALLBACK_ENV_KEY: basic,
    }


async def resolve_registry_auth(
    marketplace: MarketplaceConfig | None,
    token_resolver: Callable[[], Awaitable[str | None]] | None = None,
) -> RegistryAuth | None:
    """Resolve the private registry URL and its auth environment.

    Returns None when no private registry is configured.
    """
    if marketplace is None or not marketplace.registry_url.strip():
        return None
    registry_url = marketplace.registry_url.strip()
    registry_env: dict[str, str] = {}

    if marketplace.auth_method == "delegated-credential":
        resolver = token_resolver or resolve_token
        token = await resolver()
        if token:
            registry_env = build_registry_auth_env(registry_url, token)
        else:
            log.warning("No registry credentials resolved", registry=registry_url)
    elif marketplace.auth_method == "static-token":
        token = marketplace.static_token()
        if token:
            registry_env = build_registry_auth_env(registry_url, token)

    return RegistryAuth(registry_url=registry_url, registry_env=registry_env)


async def resolve_marketplace_token(
    marketplace: MarketplaceConfig,
    token_resolver: Callable[[], Awaitable[str | None]] | None = None,
) -> str | None:
    """Bearer token for catalog and archive downloads."""
    if marketplace.auth_method == "delegated-credential":
        resolver = token_resolver or resolve_token
        return await resolver()
    return marketplace.static_token()
