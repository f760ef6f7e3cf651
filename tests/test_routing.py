"""Tests for the iproute2 backend and the RoutingManager."""
from pathlib import Path

import pytest

from netsmith.backends import IprouteBackend, NetplanBackend
from netsmith.config_engine.schema import (
    AddressMode,
    ConnectionType,
    FailoverSettings,
    MultiWANConfiguration,
    NetworkInterfaceIntent,
    PolicyRule,
    StaticRouteIntent,
    UPnPConfiguration,
    WANConfiguration,
    WANInterface,
)
from netsmith.errors import FeatureNotImplemented, ValidationFailed
from netsmith.managers import InterfaceManager, RoutingManager

ROUTES = """\
default via 203.0.113.1 dev eth0 proto dhcp metric 100
192.168.1.0/24 dev eth1 proto kernel scope link src 192.168.1.1
unreachable 10.99.0.0/16
"""

MULTIPATH = """\
default proto static metric 10
\tnexthop via 203.0.113.1 dev eth0 weight 1
\tnexthop via 198.51.100.1 dev eth2 weight 3
"""


def office_route():
    return StaticRouteIntent(destination="10.20.0.0/16", gateway="192.168.1.254", metric=10)


def two_wans(**kwargs):
    return MultiWANConfiguration(
        enabled=True,
        interfaces=[WANInterface(name="eth0", weight=1), WANInterface(name="eth2", weight=3)],
        **kwargs,
    )


class TestIprouteBackend:
    """Tests for ip route parsing and argv construction."""

    @pytest.fixture
    def backend(self, executor, settings):
        return IprouteBackend(executor, settings.paths)

    def test_parse_routes(self, backend):
        default, connected, unreachable = backend.parse_routes(ROUTES)

        assert default.destination == "default"
        assert default.gateway == "203.0.113.1"
        assert default.interface == "eth0"
        assert default.metric == 100
        assert default.protocol == "dhcp"
        assert connected.protocol == "kernel"
        assert connected.scope == "link"
        assert connected.gateway is None
        assert unreachable.destination == "10.99.0.0/16"

    def test_parse_multipath_folds_nexthops(self, backend):
        """Continuation lines give the route its first next-hop."""
        routes = backend.parse_routes(MULTIPATH)

        assert len(routes) == 1
        assert routes[0].gateway == "203.0.113.1"
        assert routes[0].interface == "eth0"
        assert routes[0].metric == 10

    def test_multipath_argv(self, backend):
        argv = backend.multipath_argv([("203.0.113.1", "eth0", 1), ("198.51.100.1", "eth2", 3)])

        assert argv == [
            "ip", "route", "replace", "default",
            "nexthop", "via", "203.0.113.1", "dev", "eth0", "weight", "1",
            "nexthop", "via", "198.51.100.1", "dev", "eth2", "weight", "3",
        ]

    def test_policy_argv(self, backend):
        argv = backend.policy_argv("add", PolicyRule(table=100, source="192.168.1.0/24"))

        assert argv == ["ip", "rule", "add", "from", "192.168.1.0/24", "table", "100"]

    def test_list_routes_failure_is_empty(self, backend, executor):
        executor.script(["ip", "route", "show"], returncode=2, stderr="Cannot open netlink socket")

        assert backend.list_routes() == []

    def test_resolve_gateway_prefers_default(self, backend, executor):
        executor.script(
            ["ip", "route", "show", "dev", "eth2"],
            stdout="198.51.100.0/24 via 198.51.100.9\ndefault via 198.51.100.1\n",
        )

        assert backend.resolve_gateway("eth2") == "198.51.100.1"

    def test_render_rt_tables_on_empty_file(self, backend, settings):
        text = backend.render_rt_tables(["eth0", "eth2"]).files[settings.paths.rt_tables]

        assert "255\tlocal\n254\tmain\n" in text
        assert text.endswith("\n100\twan0\n101\twan1\n")

    def test_render_rt_tables_keeps_other_entries(self, backend):
        """Stale wanN entries are replaced; operator tables survive."""
        text = backend.render_rt_tables(["eth0"], "1\tvpn\n200\twan5\n").text

        assert text == "1\tvpn\n\n100\twan0\n"

    def test_ip_forward(self, backend, settings):
        assert not backend.ip_forward_enabled()

        path = Path(settings.paths.ip_forward)
        path.parent.mkdir(parents=True)
        path.write_text("1\n")

        assert backend.ip_forward_enabled()


class TestRoutingManager:
    """Tests for the RoutingManager."""

    @pytest.fixture
    def manager(self, executor, settings, store, applier):
        interfaces = InterfaceManager(store, NetplanBackend(executor, settings.paths), applier)
        return RoutingManager(store, IprouteBackend(executor, settings.paths), interfaces, applier)

    @pytest.fixture
    def lan(self, store):
        store.save_interface(NetworkInterfaceIntent(
            name="eth1", mode=AddressMode.STATIC, address="192.168.1.1", netmask="255.255.255.0"
        ))

    def test_add_static_route(self, manager, executor, settings, lan):
        """The route goes live, then into the netplan file without a reload."""
        result = manager.add_static_route(office_route())

        assert result.success
        assert result.live_applied
        assert result.commands_executed[0] == "ip route replace 10.20.0.0/16 via 192.168.1.254 metric 10"
        assert "10.20.0.0/16" in Path(settings.paths.netplan_file).read_text()
        assert executor.ran("netplan", "generate")
        assert not executor.ran("netplan", "apply")

    def test_add_static_route_rejected_by_kernel(self, manager, executor, settings, store, lan):
        executor.script(["ip", "route", "replace"], returncode=2, stderr="Error: Nexthop has invalid gateway.")

        result = manager.add_static_route(office_route())

        assert not result.success
        assert not result.live_applied
        assert "invalid gateway" in result.stderr
        assert not Path(settings.paths.netplan_file).exists()
        assert len(store.list_routes()) == 1

    def test_add_static_route_live_but_not_persisted(self, manager, executor, lan):
        executor.script(["netplan", "generate"], returncode=1, stderr="Error in network definition")

        result = manager.add_static_route(office_route())

        assert not result.success
        assert result.live_applied
        assert result.error.startswith("route 10.20.0.0/16 is live but not persisted")

    def test_invalid_route_not_stored(self, manager, store):
        with pytest.raises(ValidationFailed):
            manager.add_static_route(StaticRouteIntent(destination="10.20.0.0/99", gateway="192.168.1.254"))

        assert store.list_routes() == []

    def test_remove_missing_route(self, manager):
        with pytest.raises(KeyError):
            manager.remove_static_route("10.20.0.0/16")

    def test_remove_route_absent_from_kernel(self, manager, executor, store, lan):
        """A route already gone from the kernel is still removed from intent."""
        store.save_route(office_route())
        executor.script(["ip", "route", "del"], returncode=2, stderr="RTNETLINK answers: No such process")

        result = manager.remove_static_route("10.20.0.0/16")

        assert result.success
        assert "route 10.20.0.0/16 was not in the kernel table" in result.warnings
        assert store.list_routes() == []

    def test_set_default_gateway(self, manager, executor):
        result = manager.set_default_gateway("203.0.113.1", "eth0")

        assert result.success
        assert executor.ran("ip", "route", "replace", "default", "via", "203.0.113.1", "dev", "eth0")

    def test_routing_status(self, manager, executor, settings):
        executor.script(["ip", "route", "show"], stdout=ROUTES)
        path = Path(settings.paths.ip_forward)
        path.parent.mkdir(parents=True)
        path.write_text("1\n")

        status = manager.routing_status()

        assert status["default_gateway"] == "203.0.113.1"
        assert status["default_interface"] == "eth0"
        assert status["total_routes"] == 3
        assert status["ip_forward"] is True
        assert status["multiwan_enabled"] is False

    def test_get_wan_from_default_route(self, manager, executor):
        """Without stored WAN settings the default route describes the uplink."""
        executor.script(["ip", "route", "show", "default"], stdout=ROUTES.splitlines()[0] + "\n")

        wan = manager.get_wan()

        assert wan.interface == "eth0"
        assert wan.connection_type == ConnectionType.DHCP
        assert wan.gateway == "203.0.113.1"

    def test_get_wan_without_default_route(self, manager):
        assert manager.get_wan() is None

    def test_set_static_wan(self, manager, store):
        wan = WANConfiguration(
            interface="eth0", connection_type=ConnectionType.STATIC, ip="203.0.113.2",
            netmask="255.255.255.0", gateway="203.0.113.1", dns1="1.1.1.1",
        )

        manager.set_wan(wan, apply=False)

        intent = store.get_interface("eth0")
        assert intent.mode == AddressMode.STATIC
        assert intent.gateway == "203.0.113.1"
        assert intent.dns == ["1.1.1.1"]
        assert store.get_wan() == wan

    def test_pppoe_wan_not_implemented(self, manager, store):
        with pytest.raises(FeatureNotImplemented):
            manager.set_wan(WANConfiguration(interface="ppp0", connection_type=ConnectionType.PPPOE))

        assert store.get_wan() is None

    def test_load_balancing(self, manager, executor, store, settings):
        """Weights flow through to the multipath next-hops."""
        store.save_interface(NetworkInterfaceIntent(
            name="eth0", mode=AddressMode.STATIC, address="203.0.113.2",
            netmask="255.255.255.0", gateway="203.0.113.1",
        ))
        executor.script(["ip", "route", "show", "dev", "eth2"], stdout="default via 198.51.100.1\n")

        result = manager.configure_multiwan(two_wans())

        assert result.success
        assert result.live_applied
        assert executor.ran(
            "ip", "route", "replace", "default",
            "nexthop", "via", "203.0.113.1", "dev", "eth0", "weight", "1",
            "nexthop", "via", "198.51.100.1", "dev", "eth2", "weight", "3",
        )
        assert executor.ran("ip", "route", "replace", "default", "via", "203.0.113.1", "dev", "eth0", "table", "100")
        assert executor.ran("ip", "route", "replace", "default", "via", "198.51.100.1", "dev", "eth2", "table", "101")
        assert Path(settings.paths.rt_tables).read_text().endswith("100\twan0\n101\twan1\n")

    def test_unresolvable_wan_excluded(self, manager, executor):
        """A WAN without a gateway is left out; the rest still balance."""
        executor.script(["ip", "route", "show", "dev", "eth0"], stdout="default via 203.0.113.1\n")

        result = manager.configure_multiwan(two_wans())

        assert result.success
        assert result.warnings == ["No gateway found for WAN eth2; excluded from load balancing"]
        assert executor.ran("ip", "route", "replace", "default", "nexthop", "via", "203.0.113.1")
        assert not any("198.51.100.1" in c for c in executor.commands())

    def test_excluded_wan_keeps_table_numbers(self, manager, executor, settings):
        """The second WAN stays on table 101 when the first is left out."""
        executor.script(["ip", "route", "show", "dev", "eth2"], stdout="default via 198.51.100.1\n")

        result = manager.configure_multiwan(two_wans())

        assert result.success
        assert executor.ran("ip", "route", "replace", "default", "via", "198.51.100.1", "dev", "eth2", "table", "101")
        assert not executor.ran("ip", "route", "replace", "default", "via", "198.51.100.1", "dev", "eth2", "table", "100")
        assert Path(settings.paths.rt_tables).read_text().endswith("100\twan0\n101\twan1\n")

    def test_no_resolvable_wan_fails(self, manager, executor):
        result = manager.configure_multiwan(two_wans())

        assert not result.success
        assert result.error == "no WAN interface has a resolvable gateway"
        assert not executor.ran("ip", "route", "replace")

    def test_load_balancing_dry_run(self, manager, executor, settings):
        executor.script(["ip", "route", "show", "dev"], stdout="default via 203.0.113.1\n")

        result = manager.apply_load_balancing(two_wans(), dry_run=True)

        assert result.success
        assert not result.live_applied
        assert any(c.startswith("[DRY-RUN] ip route replace default nexthop") for c in result.commands_executed)
        assert not executor.ran("ip", "route", "replace")
        assert not Path(settings.paths.rt_tables).exists()

    def test_disabled_multiwan_only_stored(self, manager, store, executor):
        config = MultiWANConfiguration(enabled=False, interfaces=[WANInterface(name="eth0")])

        assert manager.configure_multiwan(config) is None
        assert store.get_multiwan() == config
        assert not executor.ran("ip", "route", "replace")

    def test_failover_not_implemented(self, manager, store):
        with pytest.raises(FeatureNotImplemented):
            manager.configure_multiwan(two_wans(failover=FailoverSettings(enabled=True)))

        assert not store.get_multiwan().enabled

    def test_upnp(self, manager):
        """Only a disabled UPnP configuration can be stored."""
        with pytest.raises(FeatureNotImplemented):
            manager.set_upnp(UPnPConfiguration(enabled=True))
        with pytest.raises(FeatureNotImplemented):
            manager.set_upnp(UPnPConfiguration(traffic_shaping=True))

        manager.set_upnp(UPnPConfiguration(interfaces=["eth1"]))

        assert manager.get_upnp().interfaces == ["eth1"]
