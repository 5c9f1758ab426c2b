"""Network egress policy for sandbox runs: package-registry allow-list.

Sandboxed commands get no network unless registry egress is switched on, and
even then only the package registries listed here (or in
``[sandbox] allowed_registries``) may be reached. A rule is one of

- an exact host, ``pypi.org``
- a wildcard, ``*.npmjs.org``, matching the bare suffix and any subdomain
- an IP network, ``10.0.0.0/8``
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, Final
from urllib.parse import urlsplit

import structlog

from patchpilot.errors import GuardViolation

DEFAULT_ALLOWED_REGISTRIES: Final[tuple[str, ...]] = (
    "registry.npmjs.org",
    "packagist.org",
    "pypi.org",
    "proxy.golang.org",
    "repo.maven.apache.org",
    "rubygems.org",
    "crates.io",
    "nuget.org",
)

_IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
_IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class NetworkPolicyMode(StrEnum):
    DENY = "deny"
    ALLOWLIST = "allowlist"


class NetworkPolicyViolationError(GuardViolation):
    """A sandbox run asked for a registry the egress policy does not admit."""


@dataclass(frozen=True, slots=True)
class NetworkDecision:
    mode: NetworkPolicyMode
    target: str
    host: str
    allowed: bool
    reason: str
    matched_rule: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["mode"] = self.mode.value
        return payload


@dataclass(frozen=True, slots=True)
class _RegistryRule:
    text: str
    network: _IPNetwork | None = None
    wildcard: bool = False

    @classmethod
    def parse(cls, raw: str) -> _RegistryRule:
        text = raw.strip().lower()
        if not text or " " in text:
            raise ValueError(f"invalid allowlist rule: {raw!r}")
        if text.startswith("*."):
            if len(text) == 2:
                raise ValueError("allowlist wildcard rule must include a suffix")
            return cls(text=text, wildcard=True)
        try:
            return cls(text=text, network=ipaddress.ip_network(text, strict=False))
        except ValueError:
            return cls(text=_clean_host(text, what="allowlist rule"))

    def admits(self, host: str, address: _IPAddress | None) -> bool:
        if self.network is not None:
            return address is not None and address in self.network
        if self.wildcard:
            suffix = self.text[2:]
            return host == suffix or host.endswith("." + suffix)
        return host == self.text


class NetworkPolicy:
    """Decides whether a sandbox may reach a registry host.

    ``deny`` refuses every target; ``allowlist`` admits targets matching a rule.
    Every decision is logged at debug level.
    """

    def __init__(
        self,
        *,
        mode: NetworkPolicyMode | str = NetworkPolicyMode.DENY,
        allowlist: Iterable[str] = DEFAULT_ALLOWED_REGISTRIES,
        logger: Any | None = None,
    ) -> None:
        self._mode = _policy_mode(mode)
        self._rules = tuple(_RegistryRule.parse(item) for item in allowlist)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def mode(self) -> NetworkPolicyMode:
        return self._mode

    @property
    def allowlist(self) -> tuple[str, ...]:
        return tuple(rule.text for rule in self._rules)

    @property
    def egress_enabled(self) -> bool:
        return self._mode is NetworkPolicyMode.ALLOWLIST

    def evaluate(self, target: str) -> NetworkDecision:
        """Classify ``target`` (a URL, ``host:port`` or bare host) without raising on denial."""

        host = _host_of(target)
        matched: str | None = None
        if not self.egress_enabled:
            reason = "registry egress is disabled"
        else:
            matched = self._first_match(host)
            reason = (
                f"registry matches allowlist rule {matched!r}"
                if matched is not None
                else "registry is not in the allowlist"
            )
        decision = NetworkDecision(
            mode=self._mode,
            target=target,
            host=host,
            allowed=matched is not None,
            reason=reason,
            matched_rule=matched,
        )
        self._logger.debug("registry_egress_decision", **decision.to_dict())
        return decision

    def enforce(self, target: str) -> NetworkDecision:
        decision = self.evaluate(target)
        if not decision.allowed:
            raise NetworkPolicyViolationError(
                f"sandbox egress to {decision.host!r} refused: {decision.reason}"
            )
        return decision

    def _first_match(self, host: str) -> str | None:
        try:
            address: _IPAddress | None = ipaddress.ip_address(host)
        except ValueError:
            address = None
        return next((rule.text for rule in self._rules if rule.admits(host, address)), None)


def _policy_mode(value: NetworkPolicyMode | str) -> NetworkPolicyMode:
    try:
        return NetworkPolicyMode(str(value).strip().lower())
    except ValueError as exc:
        choices = "/".join(NetworkPolicyMode)
        raise ValueError(f"network policy mode must be one of {choices}, got {value!r}") from exc


def _clean_host(value: str, *, what: str) -> str:
    host = value.strip().lower()
    if not host:
        raise ValueError(f"{what} must not be empty")
    if " " in host or "/" in host:
        raise ValueError(f"{what} must be a host or IP literal")
    return host


def _host_of(target: str) -> str:
    text = target.strip()
    hostname = urlsplit(text if "://" in text else "//" + text).hostname
    if hostname is None:
        raise ValueError(f"no host in egress target {target!r}")
    return _clean_host(hostname, what="target host")


__all__ = [
    "DEFAULT_ALLOWED_REGISTRIES",
    "NetworkDecision",
    "NetworkPolicy",
    "NetworkPolicyMode",
    "NetworkPolicyViolationError",
]
