"""Packet-filter layer: rule grammar, rule sets and the UFW configurator."""
from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Mapping

from ..config import defaults
from ..errors import CommandError, ConfigurationError, ValidationError
from .base import LayerConfigurator, write_file

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..setup.orchestrator import StageContext

logger = logging.getLogger(__name__)

RULES_ARTIFACT_NAME = "securestack.rules"
DEFAULT_POLICIES: tuple[tuple[str, ...], ...] = (
    ("default", "deny", "incoming"),
    ("default", "allow", "outgoing"),
)

_SERVICE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,31}$")
_INTERFACE_RE = re.compile(r"^[A-Za-z0-9_.-]{1,15}$")
_PORT_SPEC_RE = re.compile(r"^(\d{1,5})(?::(\d{1,5}))?(?:/(tcp|udp))?$")
_KEYWORDS = frozenset({"allow", "limit", "deny", "reject", "from", "to", "in", "out", "on", "proto", "port", "any"})
_PROTOCOLS = frozenset({"tcp", "udp"})
_LEADING_NOISE = re.compile(r"^(?:[-*•]\s+|\d+[.)]\s+)")
# Widest port range and shortest source prefix a rule may open.
MAX_PORT_SPAN = 1000
_MIN_PREFIX = {4: 8, 6: 32}


@dataclass(frozen=True)
class FirewallRule:
    """A validated allow rule in ``protocol/port/source`` or named-service form."""

    action: str = "allow"
    service: str | None = None
    port: int | None = None
    port_end: int | None = None
    proto: str | None = None
    source: str | None = None
    interface: str | None = None

    def to_args(self) -> list[str]:
        """Arguments following ``ufw`` that apply this rule."""

        args = [self.action]
        if self.service:
            return args + [self.service]
        if self.interface:
            args += ["in", "on", self.interface]
        if self.source is None and self.interface is None:
            return args + [self._port_spec()]
        args += ["from", self.source or "any"]
        if self.port is not None:
            args += ["to", "any", "port", self._port_range()]
            if self.proto:
                args += ["proto", self.proto]
        elif self.proto:
            args += ["proto", self.proto]
        return args

    def _port_range(self) -> str:
        if self.port_end is not None:
            return f"{self.port}:{self.port_end}"
        return str(self.port)

    def _port_spec(self) -> str:
        spec = self._port_range()
        return f"{spec}/{self.proto}" if self.proto else spec

    @property
    def canonical(self) -> str:
        return " ".join(self.to_args())

    def __str__(self) -> str:
        return self.canonical


def _parse_port(value: str) -> int:
    if not value.isdigit():
        raise ValidationError(f"invalid port '{value}'")
    port = int(value)
    if not 1 <= port <= 65535:
        raise ValidationError(f"port {port} out of range")
    return port


def _check_range(port: int, port_end: int | None, spec: str) -> None:
    if port_end is None:
        return
    if port_end <= port:
        raise ValidationError(f"invalid port range '{spec}'")
    if port_end - port > MAX_PORT_SPAN:
        raise ValidationError(f"port range '{spec}' spans more than {MAX_PORT_SPAN} ports")


def _check_portless_source(source: str | None, text: str) -> None:
    """A rule without a port opens every port, so its source must be narrow."""

    if source is None or source == "any":
        raise ValidationError(f"rule opens every port to any source: '{text}'")
    network = ipaddress.ip_network(source)
    if network.prefixlen < _MIN_PREFIX[network.version]:
        raise ValidationError(f"source '{source}' is too broad for a rule without a port: '{text}'")


def _parse_source(value: str) -> str:
    if value == "any":
        return "any"
    try:
        return str(ipaddress.ip_network(value, strict=False))
    except ValueError as exc:
        raise ValidationError(f"invalid source '{value}'") from exc


def _clean(text: str) -> str:
    line = _LEADING_NOISE.sub("", text.strip())
    line = line.strip().strip("`").strip()
    if line.startswith("sudo "):
        line = line[5:].lstrip()
    if line.startswith("ufw "):
        line = line[4:].lstrip()
    return line


def parse_rule(text: str) -> FirewallRule:
    """Validate *text* against the allow-rule grammar.

    Accepted forms (an optional leading ``sudo ufw`` and list bullet are
    ignored)::

        [allow|limit] SERVICE
        [allow|limit] PORT[:PORT][/tcp|/udp]
        [allow|limit] [in on IFACE] [proto P] from SRC [to any [port PORT[:PORT]] [proto P]]
        [allow|limit] in on IFACE to any port PORT [proto P]

    Port ranges may span at most ``MAX_PORT_SPAN`` ports, and a rule with no
    port needs a specific source network.
    """

    line = _clean(text)
    tokens = line.split()
    if not tokens:
        raise ValidationError("empty rule")
    action = "allow"
    if tokens[0] in {"allow", "limit"}:
        action = tokens.pop(0)
    elif tokens[0] in {"deny", "reject"}:
        raise ValidationError(f"only allow/limit rules are accepted: '{text.strip()}'")
    if not tokens:
        raise ValidationError(f"rule has no target: '{text.strip()}'")

    if len(tokens) == 1:
        token = tokens[0]
        match = _PORT_SPEC_RE.match(token)
        if match:
            port = _parse_port(match.group(1))
            port_end = _parse_port(match.group(2)) if match.group(2) else None
            proto = match.group(3)
            _check_range(port, port_end, token)
            if port_end is not None and proto is None:
                raise ValidationError(f"port range '{token}' needs a protocol")
            return FirewallRule(action=action, port=port, port_end=port_end, proto=proto)
        if _SERVICE_RE.match(token) and token.lower() not in _KEYWORDS:
            return FirewallRule(action=action, service=token)
        raise ValidationError(f"invalid rule target '{token}'")

    interface: str | None = None
    source: str | None = None
    port: int | None = None
    port_end: int | None = None
    proto: str | None = None
    saw_to = False
    stream: Iterator[str] = iter(tokens)

    def _next(expected: str) -> str:
        try:
            return next(stream)
        except StopIteration:
            raise ValidationError(f"expected {expected} in '{text.strip()}'") from None

    for token in stream:
        if token == "in":
            if interface is not None or _next("'on'") != "on":
                raise ValidationError(f"malformed interface clause in '{text.strip()}'")
            candidate = _next("interface")
            if not _INTERFACE_RE.match(candidate):
                raise ValidationError(f"invalid interface '{candidate}'")
            interface = candidate
        elif token == "from":
            if source is not None:
                raise ValidationError(f"duplicate 'from' in '{text.strip()}'")
            source = _parse_source(_next("source"))
        elif token == "to":
            if saw_to:
                raise ValidationError(f"duplicate 'to' in '{text.strip()}'")
            saw_to = True
            if _next("'any'") != "any":
                raise ValidationError("only 'to any' destinations are accepted")
        elif token == "port":
            if port is not None:
                raise ValidationError(f"duplicate 'port' in '{text.strip()}'")
            spec = _next("port")
            match = re.match(r"^(\d{1,5})(?::(\d{1,5}))?$", spec)
            if not match:
                raise ValidationError(f"invalid port '{spec}'")
            port = _parse_port(match.group(1))
            port_end = _parse_port(match.group(2)) if match.group(2) else None
            _check_range(port, port_end, spec)
        elif token == "proto":
            if proto is not None:
                raise ValidationError(f"duplicate 'proto' in '{text.strip()}'")
            proto = _next("protocol")
            if proto not in _PROTOCOLS:
                raise ValidationError(f"unsupported protocol '{proto}'")
        else:
            raise ValidationError(f"unexpected token '{token}' in '{text.strip()}'")

    if port is not None and not saw_to:
        raise ValidationError(f"'port' requires 'to any' in '{text.strip()}'")
    if source is None and interface is None:
        raise ValidationError(f"rule needs a source or interface: '{text.strip()}'")
    if interface is not None and source is None and port is None:
        raise ValidationError(f"interface rule needs a port: '{text.strip()}'")
    if port is None:
        _check_portless_source(source, text.strip())
    if port_end is not None and proto is None:
        raise ValidationError(f"port range needs a protocol: '{text.strip()}'")
    return FirewallRule(
        action=action,
        port=port,
        port_end=port_end,
        proto=proto,
        source=source,
        interface=interface,
    )


def port_rule(port: int, proto: str | None = None) -> FirewallRule:
    return FirewallRule(port=_parse_port(str(port)), proto=proto)


def interface_rule(interface: str, port: int, proto: str = "tcp") -> FirewallRule:
    return FirewallRule(interface=interface, port=port, proto=proto)


class FirewallRuleSet:
    """Ordered, de-duplicated allow rules applied after the default policies."""

    def __init__(self) -> None:
        self._rules: list[FirewallRule] = []
        self._mandatory: set[str] = set()
        self.rejected: list[tuple[str, str]] = []

    def __iter__(self) -> Iterator[FirewallRule]:
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule: object) -> bool:
        if isinstance(rule, FirewallRule):
            return any(existing.canonical == rule.canonical for existing in self._rules)
        return False

    def add(self, rule: FirewallRule, *, mandatory: bool = False) -> bool:
        if mandatory:
            self._mandatory.add(rule.canonical)
        if rule in self:
            return False
        self._rules.append(rule)
        return True

    def add_text(self, lines: Iterable[str]) -> list[FirewallRule]:
        """Validate each candidate line; malformed ones are logged and dropped."""

        accepted: list[FirewallRule] = []
        for raw in lines:
            text = raw.strip()
            if not text or text.startswith("#") or text.startswith("```"):
                continue
            try:
                rule = parse_rule(text)
            except ValidationError as exc:
                logger.warning("Dropping firewall rule %r: %s", text, exc)
                self.rejected.append((text, str(exc)))
                continue
            if self.add(rule):
                accepted.append(rule)
        return accepted

    def is_mandatory(self, rule: FirewallRule) -> bool:
        return rule.canonical in self._mandatory

    @property
    def mandatory_rules(self) -> list[FirewallRule]:
        return [rule for rule in self._rules if self.is_mandatory(rule)]

    def render(self, rules: Iterable[FirewallRule] | None = None) -> str:
        """Policies followed by *rules* (every rule in the set by default)."""

        lines = ["# securestack firewall rule set (regenerated on every run)"]
        lines += [" ".join(policy) for policy in DEFAULT_POLICIES]
        for rule in self._rules if rules is None else rules:
            suffix = "  # required" if self.is_mandatory(rule) else ""
            lines.append(f"{rule.canonical}{suffix}")
        return "\n".join(lines) + "\n"


def mandatory_rules(context: "StageContext") -> list[FirewallRule]:
    """Rules every run keeps regardless of advisory output."""

    allocation = context.allocation
    rules: list[FirewallRule] = []
    for assignment in allocation.for_layer("overlay"):
        rules.append(port_rule(assignment.port, "tcp"))
    hidden = allocation.get("onion", "hidden-service")
    if hidden is not None:
        rules.append(port_rule(hidden, "tcp"))
    external = allocation.get("garlic", "external")
    if external is not None:
        rules.append(port_rule(external, "tcp"))
        rules.append(port_rule(external, "udp"))
    rules.append(port_rule(defaults.TAILSCALE_TRANSPORT_PORT, "udp"))
    rules.append(interface_rule(defaults.OVERLAY_INTERFACE, defaults.TOR_CONTROL_PORT))
    rules.append(interface_rule(defaults.OVERLAY_INTERFACE, defaults.I2P_CONSOLE_PORT))
    return rules


FIREWALL_RULES_PROMPT = (
    "Generate UFW firewall rules for common server services including ssh, "
    "http and https. Reply with one rule per line in 'ufw allow' argument form "
    "and nothing else."
)


class FirewallConfigurator(LayerConfigurator):
    """Reset the filter, apply default policies and the merged rule set."""

    layer = "firewall"

    def build_rule_set(self, context: "StageContext") -> tuple[FirewallRuleSet, str]:
        rule_set = FirewallRuleSet()
        for rule in mandatory_rules(context):
            rule_set.add(rule, mandatory=True)
        generated = context.advisor.generate(FIREWALL_RULES_PROMPT) if context.advisor else None
        source = "advisory"
        accepted: list[FirewallRule] = []
        if generated:
            accepted = rule_set.add_text(generated.splitlines())
        if not accepted:
            if generated:
                logger.warning("Advisory rules were all rejected; applying fallback rules")
            else:
                logger.warning("Could not get firewall rules from advisory service; applying fallback rules")
            context.warn("Firewall rules fell back to the static set")
            source = "fallback"
            rule_set.add_text(context.settings.get("fallback_rules", defaults.DEFAULT_SETTINGS["fallback_rules"]))
        return rule_set, source

    def apply(self, context: "StageContext") -> Mapping[str, Any]:
        host = context.host
        host.require(defaults.EXECUTABLES["firewall"], self.layer)
        rule_set, source = self.build_rule_set(context)
        staged = context.temp_file("ufw_rules.txt", rule_set.render())

        def _undo() -> None:
            host.run(["ufw", "--force", "reset"])

        context.record_undo("reset firewall rules", _undo, key="firewall:reset")

        host.run(["ufw", "--force", "reset"])
        for policy in DEFAULT_POLICIES:
            host.run(["ufw", *policy])
        applied: list[FirewallRule] = []
        dropped: list[str] = []
        for rule in rule_set:
            try:
                host.run(["ufw", *rule.to_args()])
            except CommandError as exc:
                if rule_set.is_mandatory(rule):
                    raise ConfigurationError(f"Failed to apply required rule '{rule}': {exc}") from exc
                logger.warning("Failed to add firewall rule %s: %s", rule, exc)
                context.warn(f"Failed to add firewall rule: {rule}")
                dropped.append(rule.canonical)
                continue
            applied.append(rule)
        host.run(["ufw", "--force", "enable"])

        artifact = Path(context.config.paths.firewall_rules_file).parent / RULES_ARTIFACT_NAME
        write_file(context, artifact, rule_set.render(applied), mode=0o640)
        logger.info("Firewall configured with %d rules (%s)", len(applied), source)
        return {
            "rules": [rule.canonical for rule in applied],
            "mandatory": [rule.canonical for rule in rule_set.mandatory_rules],
            "dropped": dropped,
            "rejected": [text for text, _ in rule_set.rejected],
            "source": source,
            "artifact": str(artifact),
            "staged": str(staged),
        }


__all__ = [
    "DEFAULT_POLICIES",
    "FIREWALL_RULES_PROMPT",
    "FirewallConfigurator",
    "FirewallRule",
    "FirewallRuleSet",
    "interface_rule",
    "mandatory_rules",
    "parse_rule",
    "port_rule",
]
