"""Layer configurators applied by the stage orchestrator."""
from __future__ import annotations

from .base import LayerConfigurator
from .firewall import FirewallConfigurator, FirewallRule, FirewallRuleSet, parse_rule
from .garlic import GarlicRoutingConfigurator
from .onion import OnionRoutingConfigurator
from .overlay import OverlayAclConfigurator, OverlayActivationConfigurator

__all__ = [
    "FirewallConfigurator",
    "FirewallRule",
    "FirewallRuleSet",
    "GarlicRoutingConfigurator",
    "LayerConfigurator",
    "OnionRoutingConfigurator",
    "OverlayAclConfigurator",
    "OverlayActivationConfigurator",
    "parse_rule",
]
