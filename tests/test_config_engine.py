"""Tests for the Config Engine: parser, validator and diff."""
import pytest

from netsmith.config_engine import (
    AddressMode,
    ChangeType,
    ConfigParser,
    ConfigValidator,
    DHCPConfiguration,
    DHCPMode,
    DHCPPoolIntent,
    DHCPReservationIntent,
    DiffEngine,
    FirewallRuleIntent,
    InterfaceType,
    NetworkInterfaceIntent,
    ParseError,
    RuleAction,
    StaticRouteIntent,
    summarize_diff,
)
from netsmith.config_engine.schema import (
    ConnectionType,
    MultiWANConfiguration,
    WANConfiguration,
    WANInterface,
)


def lan(address="192.168.1.1", netmask="255.255.255.0", name="eth1"):
    return NetworkInterfaceIntent(
        name=name, mode=AddressMode.STATIC, address=address, netmask=netmask
    )


class TestConfigParser:
    """Tests for the ConfigParser."""

    def test_parse_empty_document(self):
        """An empty document yields an empty DesiredState."""
        result = ConfigParser().parse({})

        assert result.interfaces == []
        assert result.firewall_rules == []
        assert result.dhcp is None
        assert result.wan is None

    def test_parse_interfaces_keyed_by_name(self):
        """Interfaces may be given as a mapping keyed by name."""
        result = ConfigParser().parse({
            "interfaces": {
                "eth0": {"mode": "dhcp"},
                "eth1": {"address": "192.168.1.1/24", "dns": "1.1.1.1, 9.9.9.9"},
            }
        })

        eth0, eth1 = result.interfaces
        assert eth0.name == "eth0"
        assert eth0.mode == AddressMode.DHCP
        assert eth1.mode == AddressMode.STATIC
        assert eth1.address == "192.168.1.1"
        assert eth1.netmask == "24"
        assert eth1.dns == ["1.1.1.1", "9.9.9.9"]

    def test_parse_interfaces_as_list(self):
        """Interfaces may be given as a list with a name field."""
        result = ConfigParser().parse({
            "interfaces": [{"name": "br0", "type": "bridge", "ports": ["eth1", "eth2"]}]
        })

        assert result.interfaces[0].type == InterfaceType.BRIDGE
        assert result.interfaces[0].bridge_ports == ["eth1", "eth2"]

    def test_vlan_link_and_id_from_name(self):
        """A VLAN named eth0.10 gets link eth0 and id 10."""
        intent = ConfigParser().parse_interface({"name": "eth0.10", "type": "vlan"})

        assert intent.link == "eth0"
        assert intent.vlan_id == 10

    def test_method_alias(self):
        """ifupdown-style 'method' is accepted for the address mode."""
        intent = ConfigParser().parse_interface({
            "name": "eth1", "method": "static", "address": "10.0.0.1", "netmask": "255.0.0.0"
        })

        assert intent.mode == AddressMode.STATIC

    def test_invalid_type_raises(self):
        """An unknown interface type is a ParseError."""
        with pytest.raises(ParseError, match="Invalid type"):
            ConfigParser().parse_interface({"name": "eth0", "type": "token-ring"})

    def test_missing_interface_name_raises(self):
        """An interface without a name is rejected."""
        with pytest.raises(ParseError, match="interface name"):
            ConfigParser().parse({"interfaces": [{"mode": "dhcp"}]})

    def test_parse_firewall_rules(self):
        """Rules are parsed with chain upper-cased and protocol lower-cased."""
        result = ConfigParser().parse({
            "firewall": {"rules": [
                {"chain": "input", "action": "ACCEPT", "protocol": "TCP", "port": 22},
            ]}
        })

        rule = result.firewall_rules[0]
        assert rule.chain == "INPUT"
        assert rule.action == RuleAction.ACCEPT
        assert rule.protocol == "tcp"
        assert rule.port == "22"
        assert rule.position == 0

    def test_firewall_as_list(self):
        """The firewall section may be a bare list of rules."""
        result = ConfigParser().parse({
            "firewall": [{"chain": "POSTROUTING", "action": "masquerade"}]
        })

        assert result.firewall_rules[0].action == RuleAction.MASQUERADE
        assert result.firewall_rules[0].table == "nat"

    def test_rule_without_action_raises(self):
        """A rule must name an action."""
        with pytest.raises(ParseError, match="action"):
            ConfigParser().parse_rule({"chain": "INPUT"})

    def test_parse_dhcp(self):
        """DHCP pools take a domain from options and reservations lower-case MACs."""
        config = ConfigParser().parse_dhcp({
            "mode": "server",
            "pools": [{
                "interface": "eth1",
                "start": "192.168.1.100",
                "end": "192.168.1.200",
                "options": {"routers": "192.168.1.1", "domain-name": "lan"},
            }],
            "reservations": [{"mac": "AA:BB:CC:DD:EE:FF", "ip": "192.168.1.50"}],
        })

        assert config.mode == DHCPMode.SERVER
        assert config.pools[0].domain == "lan"
        assert "domain-name" not in config.pools[0].options
        assert config.pools[0].lease_time == "24h"
        assert config.reservations[0].mac == "aa:bb:cc:dd:ee:ff"

    def test_parse_multiwan(self):
        """Multi-WAN entries default weight and priority to 1."""
        config = ConfigParser().parse_multiwan({
            "enabled": True,
            "interfaces": [{"name": "eth0", "weight": 3}, {"name": "eth2"}],
        })

        assert config.enabled is True
        assert [(w.name, w.weight) for w in config.interfaces] == [("eth0", 3), ("eth2", 1)]
        assert config.failover.enabled is False
        assert config.failover.ping_target == "8.8.8.8"

    def test_parse_wan(self):
        """WAN connection type is parsed case-insensitively."""
        wan = ConfigParser().parse_wan({"interface": "eth0", "connection_type": "STATIC"})

        assert wan.connection_type == ConnectionType.STATIC

    def test_non_mapping_document_raises(self):
        """The top level of a document must be a mapping."""
        with pytest.raises(ParseError):
            ConfigParser().parse(["interfaces"])


class TestConfigValidator:
    """Tests for the ConfigValidator."""

    def test_valid_static_interface(self):
        """A complete static interface validates cleanly."""
        result = ConfigValidator().validate_interface(lan())

        assert result.valid
        assert result.errors == []

    def test_static_without_address(self):
        """Static mode needs an address and netmask."""
        intent = NetworkInterfaceIntent(name="eth1", mode=AddressMode.STATIC)

        result = ConfigValidator().validate_interface(intent)

        assert not result.valid
        assert "requires address and netmask" in result.errors[0]

    def test_invalid_name(self):
        """Interface names longer than 15 characters are rejected."""
        result = ConfigValidator().validate_interface(NetworkInterfaceIntent(name="x" * 16))

        assert not result.valid

    def test_gateway_outside_subnet_warns(self):
        """A gateway outside the interface subnet is a warning only."""
        intent = lan()
        intent.gateway = "10.0.0.1"

        result = ConfigValidator().validate_interface(intent)

        assert result.valid
        assert "outside" in result.warnings[0]

    def test_vlan_requires_id_and_link(self):
        """A VLAN without id or parent link is invalid."""
        intent = NetworkInterfaceIntent(name="vlan10", type=InterfaceType.VLAN)

        result = ConfigValidator().validate_interface(intent)

        assert len(result.errors) == 2

    def test_duplicate_interface_names(self):
        """Two intents with the same name are rejected."""
        result = ConfigValidator().validate_interfaces([lan(), lan(address="192.168.2.1")])

        assert not result.valid
        assert "Duplicate interface name: eth1" in result.errors

    def test_shared_subnet_warns(self):
        """Overlapping subnets are reported but allowed."""
        result = ConfigValidator().validate_interfaces([
            lan(), lan(address="192.168.1.2", name="eth2"),
        ])

        assert result.valid
        assert any("share subnet" in w for w in result.warnings)

    def test_unknown_chain(self):
        """Rules must target a known chain."""
        rule = FirewallRuleIntent(chain="BOGUS", action=RuleAction.ACCEPT)

        result = ConfigValidator().validate_rule(rule)

        assert not result.valid
        assert "Unknown chain" in result.errors[0]

    def test_custom_chains(self):
        """Chains configured in settings are accepted."""
        validator = ConfigValidator(known_chains={"INPUT", "LAN_IN"})
        rule = FirewallRuleIntent(chain="LAN_IN", action=RuleAction.DROP)

        assert validator.validate_rule(rule).valid

    def test_masquerade_only_in_postrouting(self):
        """NAT actions are restricted to their chains."""
        rule = FirewallRuleIntent(chain="INPUT", action=RuleAction.MASQUERADE)

        result = ConfigValidator().validate_rule(rule)

        assert not result.valid

    def test_accept_not_allowed_in_prerouting(self):
        """Filter verdicts cannot go into nat-only chains."""
        rule = FirewallRuleIntent(chain="PREROUTING", action=RuleAction.ACCEPT)

        assert not ConfigValidator().validate_rule(rule).valid

    def test_dnat_requires_target(self):
        """DNAT without a target address is invalid."""
        rule = FirewallRuleIntent(chain="PREROUTING", action=RuleAction.DNAT, protocol="tcp", port="80")

        result = ConfigValidator().validate_rule(rule)

        assert "requires a target address" in result.errors[0]

    def test_port_requires_tcp_or_udp(self):
        """A port without tcp/udp is invalid."""
        rule = FirewallRuleIntent(chain="INPUT", action=RuleAction.ACCEPT, protocol="icmp", port="22")

        assert not ConfigValidator().validate_rule(rule).valid

    def test_inverted_port_range(self):
        """Port ranges must be ascending."""
        rule = FirewallRuleIntent(chain="INPUT", action=RuleAction.ACCEPT, protocol="tcp", port="9000:8000")

        result = ConfigValidator().validate_rule(rule)

        assert "invalid port range" in result.errors[0]

    def test_duplicate_positions_in_chain(self):
        """Two rules may not share a position in the same chain."""
        rules = [
            FirewallRuleIntent(chain="INPUT", action=RuleAction.ACCEPT, position=1),
            FirewallRuleIntent(chain="INPUT", action=RuleAction.DROP, position=1),
        ]

        result = ConfigValidator().validate_rules(rules)

        assert not result.valid
        assert "Duplicate position 1" in result.errors[0]

    def test_same_position_in_filter_and_nat_output(self):
        """OUTPUT in filter and nat are separate chains."""
        rules = [
            FirewallRuleIntent(chain="OUTPUT", action=RuleAction.ACCEPT, position=1),
            FirewallRuleIntent(chain="OUTPUT", action=RuleAction.DNAT, target="10.0.0.5", position=1),
        ]

        assert ConfigValidator().validate_rules(rules).valid

    def test_pool_outside_subnet(self):
        """A pool range must fall inside the interface subnet."""
        pool = DHCPPoolIntent(interface="eth1", start="10.0.0.100", end="10.0.0.200")

        result = ConfigValidator().validate_pool(pool, [lan()])

        assert not result.valid
        assert "outside 192.168.1.0/24" in result.errors[0]

    def test_inverted_pool_range(self):
        """Pool start must not be after end."""
        pool = DHCPPoolIntent(interface="eth1", start="192.168.1.200", end="192.168.1.100")

        result = ConfigValidator().validate_pool(pool, [lan()])

        assert "is after end" in result.errors[0]

    def test_pool_on_unknown_interface_warns(self):
        """A pool on an interface without intent is a warning."""
        pool = DHCPPoolIntent(interface="eth9", start="192.168.1.100", end="192.168.1.200")

        result = ConfigValidator().validate_pool(pool, [lan()])

        assert result.valid
        assert "not configured" in result.warnings[0]

    def test_reservation_inside_pool_is_warning(self):
        """A reservation inside a dynamic range warns but validates."""
        config = DHCPConfiguration(
            mode=DHCPMode.SERVER,
            pools=[DHCPPoolIntent(interface="eth1", start="192.168.1.100", end="192.168.1.200")],
            reservations=[DHCPReservationIntent(mac="aa:bb:cc:dd:ee:ff", ip="192.168.1.150")],
        )

        result = ConfigValidator().validate_dhcp(config, [lan()])

        assert result.valid
        assert any("dynamic range" in w for w in result.warnings)

    def test_duplicate_reserved_ip(self):
        """One IP reserved for two MACs is rejected."""
        config = DHCPConfiguration(reservations=[
            DHCPReservationIntent(mac="aa:bb:cc:dd:ee:01", ip="192.168.1.10"),
            DHCPReservationIntent(mac="aa:bb:cc:dd:ee:02", ip="192.168.1.10"),
        ])

        result = ConfigValidator().validate_dhcp(config)

        assert "reserved for more than one MAC" in result.errors[0]

    def test_invalid_mac(self):
        """Reservation MACs must be six colon-separated octets."""
        result = ConfigValidator().validate_reservation(
            DHCPReservationIntent(mac="aabb.ccdd.eeff", ip="192.168.1.10")
        )

        assert not result.valid

    def test_relay_requires_target(self):
        """Relay mode needs an upstream server address."""
        result = ConfigValidator().validate_dhcp(DHCPConfiguration(mode=DHCPMode.RELAY))

        assert not result.valid

    def test_route_requires_gateway_or_interface(self):
        """A route with neither gateway nor interface is invalid."""
        result = ConfigValidator().validate_route(StaticRouteIntent(destination="10.0.0.0/8"))

        assert not result.valid

    def test_static_wan_requires_address(self):
        """Static WAN needs ip and netmask."""
        wan = WANConfiguration(interface="eth0", connection_type=ConnectionType.STATIC)

        assert not ConfigValidator().validate_wan(wan).valid

    def test_multiwan_weight_range(self):
        """Weights must be between 1 and 256."""
        config = MultiWANConfiguration(enabled=True, interfaces=[
            WANInterface(name="eth0", weight=0), WANInterface(name="eth2"),
        ])

        result = ConfigValidator().validate_multiwan(config)

        assert "weight must be between 1 and 256" in result.errors[0]


class TestDiffEngine:
    """Tests for the DiffEngine."""

    def test_interface_create_modify_delete(self):
        """Interfaces are matched by name."""
        desired = [lan(), NetworkInterfaceIntent(name="eth2")]
        current = [lan(address="192.168.1.254"), NetworkInterfaceIntent(name="eth3")]

        diff = DiffEngine().interfaces(desired, current)

        kinds = {c.key: c.change_type for c in diff.changes}
        assert kinds == {
            "eth1": ChangeType.MODIFY,
            "eth2": ChangeType.CREATE,
            "eth3": ChangeType.DELETE,
        }
        modified = next(c for c in diff.changes if c.key == "eth1")
        assert modified.fields == ["address"]

    def test_netmask_forms_compare_equal(self):
        """A dotted netmask equals its prefix length."""
        diff = DiffEngine().interfaces([lan(netmask="24")], [lan()])

        assert diff.no_change

    def test_loopback_ignored(self):
        """lo on the host is never reported as a deletion."""
        diff = DiffEngine().interfaces([], [NetworkInterfaceIntent(name="lo")])

        assert diff.no_change

    def test_disabled_rules_skipped(self):
        """Disabled rules are not expected in live state."""
        rule = FirewallRuleIntent(chain="INPUT", action=RuleAction.ACCEPT, enabled=False)

        assert DiffEngine().rules([rule], []).no_change

    def test_rule_comment_and_position_ignored(self):
        """Live rules match intent regardless of comment and position."""
        desired = FirewallRuleIntent(
            chain="INPUT", action=RuleAction.ACCEPT, protocol="tcp", port="22",
            comment="ssh", position=3,
        )
        live = FirewallRuleIntent(
            chain="INPUT", action=RuleAction.ACCEPT, protocol="tcp", port="22", position=1,
        )

        assert DiffEngine().rules([desired], [live]).no_change

    def test_dhcp_mode_change_listed_first(self):
        """A mode change leads the DHCP diff."""
        diff = DiffEngine().dhcp(
            DHCPConfiguration(mode=DHCPMode.SERVER),
            DHCPConfiguration(mode=DHCPMode.DISABLED),
        )

        assert diff.changes[0].key == "mode"

    def test_summarize_no_change(self):
        """Empty diffs have a fixed summary."""
        summary = summarize_diff(DiffEngine().routes([], []))

        assert summary == "No changes needed - live state matches declared intent"

    def test_summarize_lists_fields(self):
        """Modified fields are shown old -> new."""
        diff = DiffEngine().interfaces([lan()], [lan(address="192.168.1.254")])

        summary = summarize_diff(diff)

        assert "[~] Modify interface eth1" in summary
        assert "address: '192.168.1.254' -> '192.168.1.1'" in summary
