"""Collision-free randomized port allocation shared by every layer."""
from __future__ import annotations

import logging
import random
import secrets
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Sequence

from ..config import defaults
from ..errors import AllocationError

logger = logging.getLogger(__name__)

DYNAMIC_RANGE: tuple[int, int] = (1024, 65535)

RESERVED_PORTS: frozenset[int] = frozenset(
    {
        defaults.TOR_SOCKS_PORT,
        defaults.TOR_CONTROL_PORT,
        defaults.I2P_CONSOLE_PORT,
        defaults.I2P_I2CP_PORT,
        defaults.I2P_HTTP_PROXY_PORT,
        defaults.I2P_HTTPS_PROXY_PORT,
        defaults.I2P_BOB_PORT,
        defaults.I2P_SAM_PORT,
        defaults.TAILSCALE_TRANSPORT_PORT,
        # i2p router internals
        7658,
        7659,
        7660,
        # common proxies
        3128,
        8080,
        8118,
    }
)


@dataclass(frozen=True)
class PortAssignment:
    layer: str
    purpose: str
    port: int


class PortAllocation:
    """The run's set of allocated ports.

    No two assignments share a port and none falls in the reserved set.
    ``lock`` guards every mutation.
    """

    def __init__(self, reserved: Iterable[int] = RESERVED_PORTS) -> None:
        self.reserved = frozenset(reserved)
        self.lock = threading.RLock()
        self._assignments: list[PortAssignment] = []
        self._ports: set[int] = set()

    def __iter__(self) -> Iterator[PortAssignment]:
        with self.lock:
            return iter(list(self._assignments))

    def __len__(self) -> int:
        return len(self._assignments)

    def __contains__(self, port: object) -> bool:
        return port in self._ports

    @property
    def ports(self) -> frozenset[int]:
        with self.lock:
            return frozenset(self._ports)

    def add(self, layer: str, purpose: str, port: int) -> PortAssignment:
        with self.lock:
            if port in self.reserved:
                raise AllocationError(f"Port {port} is reserved for a fixed layer service")
            if port in self._ports:
                raise AllocationError(f"Port {port} is already allocated")
            assignment = PortAssignment(layer=layer, purpose=purpose, port=port)
            self._assignments.append(assignment)
            self._ports.add(port)
            return assignment

    def get(self, layer: str, purpose: str) -> int | None:
        for assignment in self:
            if assignment.layer == layer and assignment.purpose == purpose:
                return assignment.port
        return None

    def for_layer(self, layer: str) -> list[PortAssignment]:
        return [assignment for assignment in self if assignment.layer == layer]

    def as_dict(self) -> list[dict[str, object]]:
        return [
            {"layer": a.layer, "purpose": a.purpose, "port": a.port} for a in self
        ]


class PortAllocator:
    """Draw distinct ports from the dynamic range using a secure random source."""

    def __init__(
        self,
        allocation: PortAllocation | None = None,
        *,
        rng: random.Random | None = None,
        port_range: tuple[int, int] = DYNAMIC_RANGE,
        probe: Callable[[int], bool] | None = None,
        max_draws: int = 64,
    ) -> None:
        low, high = port_range
        if low > high:
            raise ValueError("port range is empty")
        self.allocation = allocation or PortAllocation()
        self.low = low
        self.high = high
        self._rng = rng or secrets.SystemRandom()
        self._probe = probe
        self._max_draws = max_draws
        self._issued: set[int] = set()

    def _usable(self, port: int) -> bool:
        if port in self.allocation.reserved or port in self._issued or port in self.allocation:
            return False
        if self._probe is not None and not self._probe(port):
            return False
        return True

    def _free_ports(self) -> list[int]:
        return [port for port in range(self.low, self.high + 1) if self._usable(port)]

    def allocate(self, n: int) -> tuple[int, ...]:
        """Return *n* distinct ports never handed out before in this run."""

        if n < 0:
            raise ValueError("cannot allocate a negative number of ports")
        with self.allocation.lock:
            chosen: list[int] = []
            draws = 0
            while len(chosen) < n and draws < self._max_draws * max(n, 1):
                draws += 1
                port = self._rng.randint(self.low, self.high)
                if port in chosen or not self._usable(port):
                    continue
                chosen.append(port)
            if len(chosen) < n:
                remaining = [port for port in self._free_ports() if port not in chosen]
                missing = n - len(chosen)
                if len(remaining) < missing:
                    raise AllocationError(
                        f"Port range {self.low}-{self.high} exhausted: "
                        f"needed {n}, {len(chosen) + len(remaining)} available"
                    )
                chosen.extend(self._rng.sample(remaining, missing))
            self._issued.update(chosen)
            return tuple(chosen)

    def claim(self, layer: str, purposes: Sequence[str]) -> dict[str, int]:
        """Allocate one port per purpose and record them for *layer*.

        Purposes already recorded for *layer* keep their port, so a stage
        restarted after remediation sees the same numbers.
        """

        with self.allocation.lock:
            claimed = {
                purpose: port
                for purpose in purposes
                if (port := self.allocation.get(layer, purpose)) is not None
            }
            fresh = [purpose for purpose in purposes if purpose not in claimed]
            ports = self.allocate(len(fresh))
            for purpose, port in zip(fresh, ports):
                self.allocation.add(layer, purpose, port)
                claimed[purpose] = port
        claimed = {purpose: claimed[purpose] for purpose in purposes}
        logger.debug("Allocated ports for %s: %s", layer, claimed)
        return claimed


__all__ = [
    "DYNAMIC_RANGE",
    "PortAllocation",
    "PortAllocator",
    "PortAssignment",
    "RESERVED_PORTS",
]
