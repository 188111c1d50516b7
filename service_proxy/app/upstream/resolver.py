"""
Request resolution for the proxy.

Turns a caller-supplied path (possibly a full URL, possibly carrying a stale
hostname) into an immutable ``UpstreamRequest`` aimed at one of the fixed
upstream hosts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

import httpx

from shared.config import BaseConfig
from shared.errors import InvalidRequestError


_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
_LEGACY_HOST_PATTERN = re.compile(r"^api\.roblox\.com(?=/|$)", re.IGNORECASE)
_WWW_PATTERN = re.compile(r"^www\.", re.IGNORECASE)
_IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp")

API_KEY_HEADER = "x-api-key"
MODE_PASSTHROUGH = "roproxy"
MODE_DIRECT = "direct"


class PayloadKind(str, Enum):
    """Expected body kind of an upstream response."""

    BINARY = "binary"
    TEXT = "text"


class HostFamily(str, Enum):
    """Upstream host a request is aimed at."""

    PASSTHROUGH = "passthrough"
    DIRECT = "direct"
    CATALOG = "catalog"
    THUMBNAIL = "thumbnail"
    GAMES = "games"
    AVATAR = "avatar"
    INVENTORY = "inventory"
    OTHER = "other"


@dataclass(frozen=True)
class UpstreamRequest:
    """A fully resolved outbound GET."""

    resolved_url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    expected_payload_kind: PayloadKind = PayloadKind.TEXT
    host_family: HostFamily = HostFamily.PASSTHROUGH
    method: str = "GET"

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    @property
    def cache_key(self) -> str:
        return f"{self.method}:{self.resolved_url}"


@dataclass(frozen=True)
class UpstreamHosts:
    """Base URLs (with trailing slash) of every upstream the proxy talks to."""

    passthrough: str
    direct: str
    catalog: str
    thumbnail: str
    games: str
    avatar: str
    inventory: str

    @classmethod
    def from_config(cls, config: BaseConfig) -> "UpstreamHosts":
        return cls(
            passthrough=config.passthrough_upstream,
            direct=config.direct_upstream,
            catalog=config.catalog_upstream,
            thumbnail=config.thumbnail_upstream,
            games=config.games_upstream,
            avatar=config.avatar_upstream,
            inventory=config.inventory_upstream,
        )

    def by_family(self) -> Dict[HostFamily, str]:
        return {
            HostFamily.PASSTHROUGH: self.passthrough,
            HostFamily.DIRECT: self.direct,
            HostFamily.CATALOG: self.catalog,
            HostFamily.THUMBNAIL: self.thumbnail,
            HostFamily.GAMES: self.games,
            HostFamily.AVATAR: self.avatar,
            HostFamily.INVENTORY: self.inventory,
        }


def normalize_path(raw_path: Optional[str]) -> str:
    """Strip scheme, legacy host, ``www.`` and leading slashes until stable."""
    path = (raw_path or "").strip()
    while True:
        previous = path
        path = _SCHEME_PATTERN.sub("", path)
        path = _LEGACY_HOST_PATTERN.sub("", path)
        path = _WWW_PATTERN.sub("", path)
        path = path.lstrip("/")
        if path == previous:
            return path


def _drop_hostname(path: str) -> str:
    _, _, remainder = path.partition("/")
    return remainder.lstrip("/")


def _payload_kind_for(path: str) -> PayloadKind:
    bare = path.split("?", 1)[0].split("#", 1)[0].lower()
    return PayloadKind.BINARY if bare.endswith(_IMAGE_SUFFIXES) else PayloadKind.TEXT


class RequestResolver:
    """Maps caller paths and fixed resource URLs to ``UpstreamRequest`` objects."""

    def __init__(self, hosts: UpstreamHosts, api_key: Optional[str] = None):
        self.hosts = hosts
        self.api_key = api_key or None
        self._netlocs = {
            family: httpx.URL(base).host.lower()
            for family, base in hosts.by_family().items()
        }
        # Hostnames a caller may paste in front of a passthrough/direct path
        self._api_hostnames = {
            self._netlocs[HostFamily.PASSTHROUGH],
            self._netlocs[HostFamily.DIRECT],
        }

    def resolve(self, raw_path: Optional[str], mode: Optional[str] = None) -> UpstreamRequest:
        """Resolve a caller path for the passthrough endpoint."""
        mode = (mode or MODE_PASSTHROUGH).strip().lower()
        if mode not in (MODE_PASSTHROUGH, MODE_DIRECT):
            raise InvalidRequestError(
                f"Unsupported mode '{mode}'",
                details={"allowed_modes": [MODE_PASSTHROUGH, MODE_DIRECT]},
            )

        path = normalize_path(raw_path)
        if not path:
            raise InvalidRequestError("Missing ?url=")

        family, tail = self._route(path, mode)
        if family in (HostFamily.PASSTHROUGH, HostFamily.DIRECT) and not tail:
            raise InvalidRequestError("Upstream path is empty", details={"url": raw_path})

        base = self.hosts.by_family()[family]
        url = base + tail
        self._validate_url(url)

        return UpstreamRequest(
            resolved_url=url,
            headers=self._credential_headers(family),
            expected_payload_kind=_payload_kind_for(tail),
            host_family=family,
        )

    def build(
        self,
        url: str,
        params: Optional[Mapping[str, str]] = None,
        expected_payload_kind: PayloadKind = PayloadKind.TEXT,
    ) -> UpstreamRequest:
        """Build a request for a fixed upstream resource URL."""
        target = httpx.URL(url)
        if params:
            target = target.copy_merge_params(dict(params))
        family = self.family_for_host(target.host)
        return UpstreamRequest(
            resolved_url=str(target),
            headers=self._credential_headers(family),
            expected_payload_kind=expected_payload_kind,
            host_family=family,
        )

    def family_for_host(self, host: str) -> HostFamily:
        host = host.lower()
        for family, netloc in self._netlocs.items():
            if netloc == host:
                return family
        return HostFamily.OTHER

    def _route(self, path: str, mode: str):
        lowered = path.lower()
        if lowered.startswith("catalog."):
            return HostFamily.CATALOG, _drop_hostname(path)
        if lowered.startswith("catalog/"):
            return HostFamily.CATALOG, path
        if lowered.startswith("thumbnails."):
            return HostFamily.THUMBNAIL, _drop_hostname(path)
        if lowered.startswith("thumbnails/"):
            return HostFamily.THUMBNAIL, path

        head = lowered.split("/", 1)[0]
        if head in self._api_hostnames:
            path = _drop_hostname(path)

        if mode == MODE_DIRECT:
            return HostFamily.DIRECT, path
        return HostFamily.PASSTHROUGH, path

    def _credential_headers(self, family: HostFamily) -> Dict[str, str]:
        if family is HostFamily.DIRECT and self.api_key:
            return {API_KEY_HEADER: self.api_key}
        return {}

    @staticmethod
    def _validate_url(url: str) -> None:
        try:
            httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise InvalidRequestError("Malformed upstream path", details={"error": str(exc)}) from exc
