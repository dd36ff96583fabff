from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Iterable

from .runtime import InstanceTarget, RuntimeState
from .topology import IngressPolicy


class NoHealthyInstances(Exception):
    pass


class TrafficClass(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"
    LOAD_BALANCER = "load-balancer"


def classify_client(host: str | None, lb_ranges: Iterable[str] = ()) -> TrafficClass:
    """Decide which traffic class a client address belongs to.

    Load-balancer source ranges are checked first; private and loopback
    addresses are internal; everything else, including unparseable hosts,
    is external.
    """
    try:
        addr = ipaddress.ip_address((host or "").strip())
    except ValueError:
        return TrafficClass.EXTERNAL
    for cidr in lb_ranges:
        if addr in ipaddress.ip_network(cidr, strict=False):
            return TrafficClass.LOAD_BALANCER
    if addr.is_private or addr.is_loopback:
        return TrafficClass.INTERNAL
    return TrafficClass.EXTERNAL


def admits(policy: IngressPolicy, traffic: TrafficClass) -> bool:
    if policy == IngressPolicy.ALL:
        return True
    if policy == IngressPolicy.INTERNAL_ONLY:
        return traffic == TrafficClass.INTERNAL
    # Internal callers can always reach a load-balancer-only unit.
    return traffic in {TrafficClass.LOAD_BALANCER, TrafficClass.INTERNAL}


def select_instance(unit: str, runtime: RuntimeState) -> InstanceTarget:
    """Round-robin across the healthy instance groups of the serving revision."""
    targets = runtime.get_targets(unit)
    if not targets:
        raise NoHealthyInstances(f"No healthy instances for unit '{unit}'.")
    idx = runtime.next_index(f"unit:{unit}", len(targets))
    return targets[idx]


def invocation_allowed(public: bool, traffic: TrafficClass) -> bool:
    """Whether an unauthenticated caller may invoke the unit.

    Without the public invoker binding, callers from outside the private
    network are refused; the ingress policy is checked separately.
    """
    return public or traffic != TrafficClass.EXTERNAL
