"""Marketplace catalog fetching, validation and search."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from claw_market.credentials import resolve_token
from claw_market.exceptions import CatalogValidationError, NetworkError
from claw_market.fetch_guard import fetch_with_ssrf_guard, read_body
from claw_market.logging import get_logger
from claw_market.models import (
    Catalog,
    CatalogSearchResult,
    ExtensionEntry,
    ExtensionInstallRecord,
    SkillEntry,
)

log = get_logger(__name__)

GCS_SCHEME = "gs://"
GCS_PUBLIC_BASE = "https://storage.googleapis.com/"
FETCH_TIMEOUT_SECONDS = 15
MAX_CATALOG_BYTES = 5 * 1024 * 1024

Fetcher = Callable[..., Awaitable[Any]]


def resolve_object_storage_url(url: str) -> str:
    """Rewrite ``gs://bucket/path`` to its public HTTPS object URL."""
    if not url.startswith(GCS_SCHEME):
        return url
    return f"{GCS_PUBLIC_BASE}{url[len(GCS_SCHEME):]}"


def _describe_entry_error(collection: str, exc: PydanticValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"Invalid catalog: bad entry in '{collection}' at {location}: {message}"


def validate_catalog(payload: Any) -> Catalog:
    """Check the catalog's structure and build the typed model."""
    if not isinstance(payload, dict):
        raise CatalogValidationError("Invalid catalog: expected an object")
    version = payload.get("version")
    if isinstance(version, bool) or not isinstance(version, (int, float)):
        raise CatalogValidationError("Invalid catalog: missing 'version' field")
    if isinstance(version, float) and not version.is_integer():
        raise CatalogValidationError(f"Invalid catalog: 'version' must be a whole number, got {version}")
    if not isinstance(payload.get("extensions"), list):
        raise CatalogValidationError("Invalid catalog: missing 'extensions' array")
    if not isinstance(payload.get("skills"), list):
        raise CatalogValidationError("Invalid catalog: missing 'skills' array")

    for collection, model in (("extensions", ExtensionEntry), ("skills", SkillEntry)):
        for index, item in enumerate(payload[collection]):
            try:
                model.model_validate(item)
            except PydanticValidationError as exc:
                raise CatalogValidationError(
                    _describe_entry_error(f"{collection}[{index}]", exc)
                ) from exc

    try:
        return Catalog.model_validate({**payload, "version": int(version)})
    except PydanticValidationError as exc:
        raise CatalogValidationError(_describe_entry_error("catalog", exc)) from exc


async def fetch_catalog(
    url: str,
    token: str | None = None,
    *,
    timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
    fetcher: Fetcher = fetch_with_ssrf_guard,
    **fetch_options: Any,
) -> Catalog:
    """Fetch and validate a catalog from an HTTPS or ``gs://`` URL."""
    resolved_url = resolve_object_storage_url(url)
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    log.info("Fetching catalog", url=resolved_url, authenticated=bool(token))
    async with await fetcher(
        resolved_url,
        headers=headers,
        timeout_seconds=timeout_seconds,
        **fetch_options,
    ) as fetched:
        response = fetched.response
        if not response.is_success:
            raise NetworkError(
                f"Failed to fetch catalog from {resolved_url}: "
                f"{response.status_code} {response.reason_phrase}".rstrip(),
                status_code=response.status_code,
                reason=response.reason_phrase,
            )
        body = await read_body(fetched, MAX_CATALOG_BYTES)

    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CatalogValidationError(f"Invalid catalog: response is not JSON ({exc})") from exc
    return validate_catalog(payload)


async def fetch_catalog_with_auth(
    url: str,
    auth_method: str | None = None,
    static_token: str | None = None,
    *,
    token_resolver: Callable[[], Awaitable[str | None]] = resolve_token,
    **fetch_options: Any,
) -> Catalog:
    """Fetch the catalog, resolving a bearer token per ``auth_method``.

    A static token wins; delegated credentials are resolved on demand. Failing
    to obtain a token falls back to an unauthenticated fetch.
    """
    token = (static_token or "").strip() or None
    if token is None and auth_method == "delegated-credential":
        try:
            token = await token_resolver()
        except Exception as exc:
            log.warning("Catalog token resolution failed", error=str(exc))
            token = None
        if token is None:
            log.info("Fetching catalog without credentials", url=url)
    return await fetch_catalog(url, token, **fetch_options)


def _matches(query: str, *fields: str | None, tags: list[str] | None = None) -> bool:
    if any(query in (value or "").lower() for value in fields):
        return True
    return any(query in tag.lower() for tag in tags or [])


def search_catalog(catalog: Catalog, query: str) -> CatalogSearchResult:
    """Case-insensitive substring search over extensions and skills."""
    q = (query or "").lower()
    extensions = [
        entry
        for entry in catalog.extensions
        if _matches(q, entry.id, entry.name, entry.description, tags=entry.tags)
    ]
    skills = [
        entry
        for entry in catalog.skills
        if _matches(q, entry.name, entry.description, tags=entry.tags)
    ]
    return CatalogSearchResult(extensions=extensions, skills=skills)


def find_extension(catalog: Catalog, key: str) -> ExtensionEntry | None:
    """Look up an extension by id or package spec."""
    for entry in catalog.extensions:
        if entry.id == key or (entry.package_spec and entry.package_spec == key):
            return entry
    return None


def find_skill(catalog: Catalog, name: str) -> SkillEntry | None:
    for entry in catalog.skills:
        if entry.name == name:
            return entry
    return None


def package_name(spec: str) -> str:
    """Package name of a spec: ``@scope/pkg@^1.2`` -> ``@scope/pkg``."""
    spec = (spec or "").strip()
    if spec.startswith("@"):
        scope, _, rest = spec.partition("/")
        return f"{scope}/{rest.split('@', 1)[0]}" if rest else spec
    return spec.split("@", 1)[0]


def find_installed_extension(
    catalog: Catalog,
    extension_id: str,
    record: ExtensionInstallRecord | None = None,
) -> ExtensionEntry | None:
    """Catalog entry for an installed extension.

    A package's manifest may declare an id other than the catalog's, so an
    id miss falls back to the package the install was made from.
    """
    entry = find_extension(catalog, extension_id)
    if entry is not None or record is None:
        return entry
    installed = {package_name(value) for value in (record.spec, record.resolved_name) if value}
    for candidate in catalog.extensions:
        if candidate.package_spec and package_name(candidate.package_spec) in installed:
            return candidate
    return None
