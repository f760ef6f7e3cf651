"""iproute2 routing backend: kernel routes, policy rules and routing tables."""
import logging
import re
from typing import Optional

from ..config_engine.schema import (
    Artifact,
    PolicyRule,
    StaticRouteIntent,
    SystemRoute,
)
from .base import Backend

logger = logging.getLogger(__name__)

WAN_TABLE_BASE = 100
WAN_TABLE_ENTRY = re.compile(r"^\s*(\d+)\s+(wan\d+)\s*$")

# Routes installed by the kernel for connected subnets, not by an operator
KERNEL_PROTOCOLS = ("kernel", "boot")


def wan_table_name(index: int) -> str:
    return f"wan{index}"


class IprouteBackend(Backend):
    """Build ``ip route`` / ``ip rule`` argv and parse their output."""

    name = "iproute2"

    def route_argv(self, verb: str, route: StaticRouteIntent) -> list[str]:
        return ["ip", "route", verb, *route.ip_args()]

    def policy_argv(self, verb: str, rule: PolicyRule) -> list[str]:
        return ["ip", "rule", verb, *rule.ip_args()]

    def multipath_argv(self, nexthops: list[tuple[str, str, int]]) -> list[str]:
        """One default route with a weighted next-hop per (gateway, device, weight)."""
        argv = ["ip", "route", "replace", "default"]
        for gateway, device, weight in nexthops:
            argv += ["nexthop", "via", gateway, "dev", device, "weight", str(weight)]
        return argv

    def table_default_argv(self, gateway: str, device: str, table: int) -> list[str]:
        return ["ip", "route", "replace", "default", "via", gateway, "dev", device,
                "table", str(table)]

    # --- Parsing ---

    def parse_routes(self, text: str) -> list[SystemRoute]:
        """Parse ``ip route show`` output.

        Multipath next-hop continuation lines are folded into their route;
        the first next-hop supplies its gateway and device.
        """
        routes: list[SystemRoute] = []

        for line in text.splitlines():
            if not line.strip():
                continue
            parts = line.split()

            if line[0].isspace():
                if parts[0] == "nexthop" and routes:
                    route = routes[-1]
                    hop = dict(zip(parts[1::2], parts[2::2]))
                    route.gateway = route.gateway or hop.get("via")
                    route.interface = route.interface or hop.get("dev")
                continue

            # Route type prefixes (unreachable, blackhole...) precede the destination
            if parts[0] in ("unicast", "local", "broadcast", "unreachable", "blackhole",
                            "prohibit", "throw"):
                parts = parts[1:]
                if not parts:
                    continue

            route = SystemRoute(destination=parts[0])
            i = 1
            while i < len(parts):
                key = parts[i]
                value = parts[i + 1] if i + 1 < len(parts) else None
                if key == "via":
                    route.gateway = value
                elif key == "dev":
                    route.interface = value
                elif key == "metric" and value and value.isdigit():
                    route.metric = int(value)
                elif key == "proto":
                    route.protocol = value
                elif key == "scope":
                    route.scope = value
                elif key in ("linkdown", "onlink", "dead", "pervasive", "offload"):
                    i += 1
                    continue
                i += 2
            routes.append(route)

        return routes

    def list_routes(self, *selector: str) -> list[SystemRoute]:
        """``ip route show [selector...]``; an unreadable table yields no routes."""
        result = self.executor.run(["ip", "route", "show", *selector])
        if not result.success:
            logger.warning(f"'{result.command}' failed: {result.stderr.strip()}")
            return []
        return self.parse_routes(result.stdout)

    def default_route(self) -> Optional[SystemRoute]:
        for route in self.list_routes("default"):
            if route.destination == "default":
                return route
        return None

    def resolve_gateway(self, device: str) -> Optional[str]:
        """Gateway reachable through ``device``: its default route, else any via."""
        routes = self.list_routes("dev", device)
        for route in routes:
            if route.destination == "default" and route.gateway:
                return route.gateway
        for route in routes:
            if route.gateway:
                return route.gateway
        return None

    def ip_forward_enabled(self) -> bool:
        text = self.executor.read_file(self.paths.ip_forward)
        return bool(text) and text.strip() == "1"

    # --- Routing tables ---

    def render_rt_tables(self, names: list[str], existing: Optional[str] = None) -> Artifact:
        """``rt_tables`` with one ``100+i wanN`` entry per WAN, keeping other entries."""
        kept = [
            line for line in (existing or "").splitlines()
            if not WAN_TABLE_ENTRY.match(line)
        ]
        while kept and not kept[-1].strip():
            kept.pop()
        if not kept:
            kept = [
                "#",
                "# reserved values",
                "#",
                "255\tlocal",
                "254\tmain",
                "253\tdefault",
                "0\tunspec",
            ]
        lines = kept + [""] + [
            f"{WAN_TABLE_BASE + i}\t{wan_table_name(i)}" for i in range(len(names))
        ]
        return Artifact(files={self.paths.rt_tables: "\n".join(lines) + "\n"})

    def wan_tables(self) -> dict[str, int]:
        """``wanN`` table names declared in ``rt_tables``."""
        text = self._read(self.paths.rt_tables) or ""
        tables = {}
        for line in text.splitlines():
            match = WAN_TABLE_ENTRY.match(line)
            if match:
                tables[match.group(2)] = int(match.group(1))
        return tables
