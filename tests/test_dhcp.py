"""Tests for the DHCP backends and the DHCPManager."""
from datetime import datetime, timezone
from pathlib import Path

import pytest

from netsmith.backends import Detector, DnsmasqBackend, IscDhcpBackend, RelayBackend
from netsmith.backends.dnsmasq import BLOCK_BEGIN, BLOCK_END
from netsmith.backends.isc_syntax import parse_statements
from netsmith.backends.iscdhcp import lease_duration, lease_seconds
from netsmith.config.settings import Settings
from netsmith.config_engine.schema import (
    AddressMode,
    DHCPConfiguration,
    DHCPMode,
    DHCPPoolIntent,
    DHCPReservationIntent,
    NetworkInterfaceIntent,
)
from netsmith.errors import BackendUnavailable, ParseFailure, ValidationFailed
from netsmith.managers import DHCPManager

from conftest import FakeExecutor

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def lan():
    return NetworkInterfaceIntent(
        name="eth1", mode=AddressMode.STATIC, address="192.168.1.1", netmask="255.255.255.0"
    )


def server_config():
    return DHCPConfiguration(
        mode=DHCPMode.SERVER,
        pools=[DHCPPoolIntent(
            interface="eth1",
            start="192.168.1.100",
            end="192.168.1.200",
            lease_time="12h",
            domain="lan",
            options={"routers": "192.168.1.1", "dns": "1.1.1.1, 9.9.9.9"},
        )],
        reservations=[
            DHCPReservationIntent(mac="aa:bb:cc:dd:ee:01", ip="192.168.1.10", hostname="nas"),
            DHCPReservationIntent(mac="aa:bb:cc:dd:ee:02", ip="192.168.1.11"),
        ],
    )


def write(path, text):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    Path(path).write_text(text)


class TestDnsmasqBackend:
    """Tests for the dnsmasq block renderer and lease parser."""

    @pytest.fixture
    def backend(self, executor, settings):
        return DnsmasqBackend(executor, settings.paths)

    def test_render_block(self, backend):
        text = backend.render(server_config()).text

        assert text.splitlines() == [
            BLOCK_BEGIN,
            "interface=eth1",
            "dhcp-range=192.168.1.100,192.168.1.200,12h",
            "dhcp-option=option:router,192.168.1.1",
            "dhcp-option=option:dns-server,1.1.1.1,9.9.9.9",
            "dhcp-option=option:domain-name,lan",
            "dhcp-authoritative",
            "dhcp-host=aa:bb:cc:dd:ee:01,192.168.1.10,nas",
            "dhcp-host=aa:bb:cc:dd:ee:02,192.168.1.11",
            BLOCK_END,
        ]

    def test_render_preserves_foreign_lines(self, backend):
        """DNS settings outside the block survive; stray DHCP directives do not."""
        existing = (
            "# local resolver\n"
            "domain-needed\n"
            "server=1.1.1.1\n"
            "dhcp-range=10.0.0.10,10.0.0.20\n"
            f"{BLOCK_BEGIN}\ninterface=eth9\n{BLOCK_END}\n"
        )

        text = backend.render(server_config(), existing).text

        assert text.startswith("# local resolver\ndomain-needed\nserver=1.1.1.1\n\n" + BLOCK_BEGIN)
        assert "10.0.0.10" not in text
        assert "eth9" not in text

    def test_render_disabled_strips_block(self, backend):
        existing = f"server=1.1.1.1\n\n{BLOCK_BEGIN}\ninterface=eth1\n{BLOCK_END}\n"

        text = backend.render(DHCPConfiguration(mode=DHCPMode.DISABLED), existing).text

        assert text == "server=1.1.1.1\n"

    def test_multiple_pools_are_tagged(self, backend):
        config = server_config()
        config.pools.append(DHCPPoolIntent(interface="eth2", start="192.168.2.100", end="192.168.2.200"))

        text = backend.render(config).text

        assert "dhcp-range=set:eth1,192.168.1.100,192.168.1.200,12h" in text
        assert "dhcp-option=tag:eth2,option:router" not in text
        assert "dhcp-range=set:eth2,192.168.2.100,192.168.2.200,24h" in text

    def test_parse_round_trip(self, backend):
        state = backend.parse(backend.render(server_config()).text)

        pool = state.config.pools[0]
        assert state.config.mode == DHCPMode.SERVER
        assert pool.interface == "eth1"
        assert pool.lease_time == "12h"
        assert pool.domain == "lan"
        assert pool.options == {"routers": "192.168.1.1", "dns": "1.1.1.1,9.9.9.9"}
        assert pool.authoritative
        assert state.config.reservations == server_config().reservations

    def test_parse_round_trip_with_foreign_interface(self, backend):
        """An interface= line outside the managed block does not claim a managed pool."""
        text = backend.render(server_config(), "interface=lo\nno-resolv\n").text

        state = backend.parse(text)

        assert [p.interface for p in state.config.pools] == ["eth1"]

    def test_parse_untagged_ranges_without_block(self, backend):
        text = (
            "interface=eth1,eth2\n"
            "dhcp-range=10.0.1.10,10.0.1.50\n"
            "dhcp-range=10.0.2.10,10.0.2.50,infinite\n"
        )

        pools = backend.parse(text).config.pools

        assert [(p.interface, p.start) for p in pools] == [("eth1", "10.0.1.10"), ("eth2", "10.0.2.10")]
        assert pools[1].lease_time == "infinite"

    def test_parse_foreign_tags(self, backend):
        text = (
            "dhcp-range=tag:guest,192.168.9.10,192.168.9.90,30m\n"
            "dhcp-range=set:lan,192.168.1.10,192.168.1.90\n"
            "dhcp-option=tag:guest,option:router,192.168.9.1\n"
            "dhcp-option=6,9.9.9.9\n"
        )

        guest, lan_pool = backend.parse(text).config.pools

        assert guest.interface == "guest"
        assert guest.options == {"routers": "192.168.9.1", "dns": "9.9.9.9"}
        assert lan_pool.interface == "lan"
        assert lan_pool.options == {"dns": "9.9.9.9"}

    def test_parse_numeric_options_and_default_lease(self, backend):
        state = backend.parse("interface=eth1\ndhcp-range=10.0.0.10,10.0.0.50\ndhcp-option=3,10.0.0.1\n")

        pool = state.config.pools[0]
        assert pool.lease_time == "1h"
        assert pool.options == {"routers": "10.0.0.1"}
        assert not pool.authoritative

    def test_parse_bad_range_warns(self, backend):
        state = backend.parse("dhcp-range=eth1,static\n")

        assert state.config.mode == DHCPMode.DISABLED
        assert "unreadable dhcp-range" in state.warnings[0]

    def test_parse_leases(self, backend):
        text = (
            "1717246800 aa:bb:cc:dd:ee:01 192.168.1.10 nas 01:aa:bb:cc:dd:ee:01\n"
            "0 AA:BB:CC:DD:EE:02 192.168.1.11 * *\n"
            "1717200000 aa:bb:cc:dd:ee:03 192.168.1.12 phone *\n"
            "duid 00:01:00:01:2c:4f:5e:6a\n"
            "garbage\n"
        )

        leases = backend.parse_leases(text, now=NOW)

        assert len(leases) == 3
        assert leases[0].hostname == "nas"
        assert leases[0].active
        assert leases[1].expires_at is None
        assert leases[1].hostname is None
        assert leases[1].mac == "aa:bb:cc:dd:ee:02"
        assert leases[1].active
        assert not leases[2].active

    def test_release_is_sighup(self, backend):
        assert backend.release_command("192.168.1.10") == ["killall", "-HUP", "dnsmasq"]


class TestIscSyntax:
    """Tests for the ISC brace-syntax tokenizer."""

    def test_nested_blocks(self):
        statements, warnings = parse_statements(
            'subnet 10.0.0.0 netmask 255.0.0.0 {\n'
            '  option domain-name "example lan"; # trailing comment\n'
            '  pool { range 10.0.0.5 10.0.0.9; }\n'
            '}\n'
        )

        subnet = statements[0]
        assert subnet.words == ["subnet", "10.0.0.0", "netmask", "255.0.0.0"]
        assert subnet.first("option", "domain-name").words[2] == "example lan"
        assert subnet.first("pool").first("range").words == ["range", "10.0.0.5", "10.0.0.9"]
        assert warnings == []

    def test_comma_lists(self):
        statements, _ = parse_statements("option domain-name-servers 1.1.1.1, 9.9.9.9;")

        assert statements[0].words == ["option", "domain-name-servers", "1.1.1.1", "9.9.9.9"]

    def test_unbalanced_braces(self):
        with pytest.raises(ParseFailure, match="unbalanced braces"):
            parse_statements("subnet 10.0.0.0 netmask 255.0.0.0 {\n")

    def test_unexpected_close(self):
        with pytest.raises(ParseFailure, match="unexpected"):
            parse_statements("}\n")

    def test_missing_semicolon_warns(self):
        statements, warnings = parse_statements("host a { fixed-address 10.0.0.5 }")

        assert statements[0].first("fixed-address") is not None
        assert "missing ';'" in warnings[0]


class TestIscDhcpBackend:
    """Tests for dhcpd.conf rendering, parsing and leases."""

    @pytest.fixture
    def backend(self, executor, settings):
        return IscDhcpBackend(executor, settings.paths)

    def test_lease_conversions(self):
        assert lease_seconds("12h") == 43200
        assert lease_seconds("3600") == 3600
        assert lease_duration(43200) == "12h"
        assert lease_duration(90) == "90s"

    def test_render(self, backend, settings):
        artifact = backend.render(server_config(), interfaces=[lan()])

        text = artifact.files[settings.paths.dhcpd_conf]
        assert "default-lease-time 86400;\nmax-lease-time 172800;\nauthoritative;\n" in text
        assert (
            "subnet 192.168.1.0 netmask 255.255.255.0 {\n"
            "    range 192.168.1.100 192.168.1.200;\n"
            "    option routers 192.168.1.1;\n"
            "    option domain-name-servers 1.1.1.1, 9.9.9.9;\n"
            '    option domain-name "lan";\n'
            "    default-lease-time 43200;\n"
            "}\n"
        ) in text
        assert "host nas {\n    hardware ethernet aa:bb:cc:dd:ee:01;\n    fixed-address 192.168.1.10;\n}" in text
        assert "host netsmith-aabbccddee02 {" in text
        assert artifact.files[settings.paths.dhcpd_defaults] == 'INTERFACESv4="eth1"\nINTERFACESv6=""\n'

    def test_subnet_from_live_address(self, backend, executor):
        """Without interface intent the subnet comes from ``ip addr``."""
        executor.script(
            ["ip", "-o", "-4", "addr", "show", "dev", "eth1"],
            stdout="3: eth1    inet 192.168.0.1/16 brd 192.168.255.255 scope global eth1\n",
        )

        text = backend.render(server_config()).text

        assert "subnet 192.168.0.0 netmask 255.255.0.0 {" in text

    def test_subnet_fallback_warns(self, backend, executor):
        executor.script(["ip", "-o"], returncode=1, stderr="Device not found")

        artifact = backend.render(server_config())

        assert "subnet 192.168.1.0 netmask 255.255.255.0 {" in artifact.text
        assert "assuming 192.168.1.0/24" in artifact.warnings[0]

    def test_parse_round_trip(self, backend):
        state = backend.parse(backend.render(server_config(), interfaces=[lan()]).files[backend.config_path], ["eth1"])

        config = state.config
        assert config.mode == DHCPMode.SERVER
        assert config.pools[0].interface == "eth1"
        assert config.pools[0].lease_time == "12h"
        assert config.pools[0].domain == "lan"
        assert config.pools[0].options == {"routers": "192.168.1.1", "dns": "1.1.1.1,9.9.9.9"}
        assert config.reservations == server_config().reservations

    def test_parse_shared_network_and_dynamic_bootp(self, backend):
        text = (
            "shared-network lan {\n"
            "  subnet 10.1.0.0 netmask 255.255.0.0 {\n"
            "    range dynamic-bootp 10.1.0.10 10.1.0.20;\n"
            "  }\n"
            "}\n"
        )

        pool = backend.parse(text).config.pools[0]

        assert (pool.start, pool.end) == ("10.1.0.10", "10.1.0.20")
        assert pool.lease_time == "12h"
        assert not pool.authoritative

    def test_parse_single_address_range(self, backend):
        text = "subnet 10.0.0.0 netmask 255.255.255.0 {\n  range dynamic-bootp 10.0.0.5;\n}\n"

        pool = backend.parse(text).config.pools[0]

        assert (pool.start, pool.end) == ("10.0.0.5", "10.0.0.5")

    def test_parse_malformed_range_warns(self, backend):
        """A garbled range is skipped with a warning; later ranges still count."""
        text = (
            "subnet 10.0.0.0 netmask 255.255.255.0 {\n"
            "  range 10.0.0.10 ten;\n"
            "  pool {\n"
            "    range 10.0.0.50 10.0.0.60;\n"
            "  }\n"
            "}\n"
            "subnet 10.9.0.0 netmask 255.255.255.0 {\n"
            "  range;\n"
            "}\n"
        )

        state = backend.parse(text)

        assert [(p.start, p.end) for p in state.config.pools] == [("10.0.0.50", "10.0.0.60")]
        assert "line 2: unreadable range skipped" in state.warnings
        assert any("subnet without a range" in w for w in state.warnings)

    def test_read_state_uses_defaults_file(self, backend, settings):
        write(settings.paths.dhcpd_conf, backend.render(server_config(), interfaces=[lan()]).files[settings.paths.dhcpd_conf])
        write(settings.paths.dhcpd_defaults, 'INTERFACESv4="eth1"\n')

        state = backend.read_state()

        assert state.config.pools[0].interface == "eth1"

    LEASES = (
        "lease 192.168.1.150 {\n"
        "  starts 5 2024/05/31 12:00:00;\n"
        "  ends 6 2024/06/01 13:00:00;\n"
        "  binding state active;\n"
        "  hardware ethernet AA:BB:CC:DD:EE:05;\n"
        '  client-hostname "laptop";\n'
        "}\n"
        "lease 192.168.1.151 {\n"
        "  ends never;\n"
        "  hardware ethernet aa:bb:cc:dd:ee:06;\n"
        "}\n"
        "lease 192.168.1.150 {\n"
        "  ends 6 2024/06/01 11:00:00;\n"
        "  binding state free;\n"
        "  hardware ethernet aa:bb:cc:dd:ee:05;\n"
        "}\n"
    )

    def test_parse_leases_last_block_wins(self, backend):
        leases = {l.ip: l for l in backend.parse_leases(self.LEASES, now=NOW)}

        assert set(leases) == {"192.168.1.150", "192.168.1.151"}
        assert not leases["192.168.1.150"].active
        assert leases["192.168.1.150"].hostname is None
        assert leases["192.168.1.151"].expires_at is None
        assert leases["192.168.1.151"].active

    def test_parse_leases_expiry(self, backend):
        leases = backend.parse_leases(self.LEASES.split("lease 192.168.1.151")[0], now=NOW)

        assert leases[0].expires_at == datetime(2024, 6, 1, 13, 0, tzinfo=timezone.utc)
        assert leases[0].hostname == "laptop"
        assert leases[0].mac == "aa:bb:cc:dd:ee:05"
        assert leases[0].active

    def test_release_artifact(self, backend, settings):
        write(settings.paths.dhcpd_leases, self.LEASES)

        artifact = backend.release_artifact("192.168.1.150")

        remaining = artifact.files[settings.paths.dhcpd_leases]
        assert "192.168.1.150" not in remaining
        assert "lease 192.168.1.151 {" in remaining

    def test_release_artifact_unknown_ip(self, backend, settings):
        write(settings.paths.dhcpd_leases, self.LEASES)

        assert backend.release_artifact("192.168.1.99") is None


class TestRelayBackend:
    """Tests for the relay defaults file."""

    @pytest.fixture
    def backend(self, executor, settings):
        return RelayBackend(executor, settings.paths)

    def test_render_and_parse(self, backend):
        config = DHCPConfiguration(mode=DHCPMode.RELAY, relay_target="10.0.0.2", relay_interfaces=["eth1", "eth2"])

        text = backend.render(config).text
        state = backend.parse(text)

        assert 'SERVERS="10.0.0.2"\nINTERFACES="eth1 eth2"\nOPTIONS=""\n' in text
        assert state.config.mode == DHCPMode.RELAY
        assert state.config.relay_interfaces == ["eth1", "eth2"]

    def test_interfaces_default_to_pools(self, backend):
        config = server_config()
        config.mode = DHCPMode.RELAY
        config.relay_target = "10.0.0.2"

        assert 'INTERFACES="eth1"' in backend.render(config).text


class TestDHCPManager:
    """Tests for the DHCPManager."""

    @pytest.fixture
    def manager(self, executor, settings, store, applier):
        store.save_interface(lan())
        return DHCPManager(store, Detector(executor, settings), executor, applier, settings)

    def test_server_mode_uses_dnsmasq_first(self, manager, executor, settings):
        executor.tools.update({"dnsmasq", "dhcpd"})

        result = manager.set_configuration(server_config())

        assert result.success
        assert result.backend == "dnsmasq"
        assert "dhcp-range=192.168.1.100" in open(settings.paths.dnsmasq_conf).read()
        assert executor.ran("systemctl", "restart", "dnsmasq")

    def test_server_mode_falls_back_to_dhcpd(self, manager, executor, settings):
        executor.tools.add("dhcpd")

        result = manager.set_configuration(server_config())

        assert result.backend == "isc_dhcpd"
        assert open(settings.paths.dhcpd_defaults).read().startswith('INTERFACESv4="eth1"')

    def test_no_server_installed(self, manager, store):
        """Server mode without a server is refused before anything is stored."""
        with pytest.raises(BackendUnavailable):
            manager.set_configuration(server_config())

        assert store.get_dhcp_configuration().mode == DHCPMode.DISABLED

    def test_invalid_configuration_not_stored(self, manager, store, executor):
        executor.tools.add("dnsmasq")
        config = server_config()
        config.pools[0].start = "10.9.9.9"

        with pytest.raises(ValidationFailed):
            manager.set_configuration(config)

        assert store.get_dhcp_configuration().pools == []

    def test_duplicate_pool_interface_rejected(self, manager, store, executor):
        """Two pools on one interface fail validation before anything is stored."""
        executor.tools.add("dnsmasq")
        config = server_config()
        config.pools.append(DHCPPoolIntent(interface="eth1", start="192.168.1.20", end="192.168.1.30"))

        with pytest.raises(ValidationFailed, match="Duplicate pool for interface eth1"):
            manager.set_configuration(config)

        assert store.get_dhcp_configuration().pools == []

    def test_add_reservation_replaces_in_place(self, manager, executor):
        executor.tools.add("dnsmasq")
        manager.set_configuration(server_config(), apply=False)

        manager.add_reservation(DHCPReservationIntent(mac="aa:bb:cc:dd:ee:01", ip="192.168.1.20"), apply=False)

        assert [(r.mac, r.ip) for r in manager.list_reservations()] == [
            ("aa:bb:cc:dd:ee:01", "192.168.1.20"),
            ("aa:bb:cc:dd:ee:02", "192.168.1.11"),
        ]

    def test_add_reservation_rejects_taken_ip(self, manager, executor):
        executor.tools.add("dnsmasq")
        manager.set_configuration(server_config(), apply=False)

        with pytest.raises(ValidationFailed, match="more than one MAC"):
            manager.add_reservation(DHCPReservationIntent(mac="aa:bb:cc:dd:ee:09", ip="192.168.1.10"))

    def test_remove_missing_reservation(self, manager):
        with pytest.raises(KeyError):
            manager.remove_reservation("aa:bb:cc:dd:ee:99")

    def test_disable_strips_dnsmasq_block(self, manager, executor, settings, store):
        write(settings.paths.dnsmasq_conf, f"server=1.1.1.1\n\n{BLOCK_BEGIN}\ninterface=eth1\ndhcp-range=192.168.1.100,192.168.1.200,12h\n{BLOCK_END}\n")

        result = manager.set_configuration(DHCPConfiguration(mode=DHCPMode.DISABLED))

        assert result.success
        assert open(settings.paths.dnsmasq_conf).read() == "server=1.1.1.1\n"
        assert executor.ran("systemctl", "stop", "isc-dhcp-server")
        assert executor.ran("systemctl", "disable", "isc-dhcp-relay")

    def test_disable_dry_run_runs_nothing(self, manager, executor, store):
        store.save_dhcp_configuration(DHCPConfiguration(mode=DHCPMode.DISABLED))

        result = manager.apply(dry_run=True)

        assert "[DRY-RUN] systemctl stop isc-dhcp-server" in result.commands_executed
        assert not executor.ran("systemctl")

    def test_relay_mode(self, manager, executor, settings):
        config = DHCPConfiguration(mode=DHCPMode.RELAY, relay_target="10.0.0.2", relay_interfaces=["eth1"])

        result = manager.set_configuration(config)

        assert result.backend == "relay"
        assert 'SERVERS="10.0.0.2"' in open(settings.paths.relay_defaults).read()
        assert executor.ran("systemctl", "restart", "isc-dhcp-relay")

    def test_leases_empty_when_disabled(self, manager):
        assert manager.get_leases() == []

    def test_leases_from_running_dnsmasq(self, manager, executor, settings):
        executor.script(["pgrep", "-x", "dnsmasq"])
        write(settings.paths.dnsmasq_conf, "dhcp-range=192.168.1.100,192.168.1.200\n")
        write(settings.paths.dnsmasq_leases, "0 aa:bb:cc:dd:ee:01 192.168.1.100 nas *\n")

        leases = manager.get_leases()

        assert [(l.ip, l.hostname) for l in leases] == [("192.168.1.100", "nas")]

    def test_release_without_server(self, manager):
        with pytest.raises(BackendUnavailable):
            manager.release_lease("192.168.1.100")

    def test_release_dnsmasq_sends_sighup(self, manager, executor, settings):
        executor.script(["pgrep", "-x", "dnsmasq"])
        write(settings.paths.dnsmasq_conf, "dhcp-range=192.168.1.100,192.168.1.200\n")

        result = manager.release_lease("192.168.1.100")

        assert result.success
        assert executor.ran("killall", "-HUP", "dnsmasq")

    def test_release_dhcpd_rewrites_leases(self, manager, executor, settings):
        executor.script(["pgrep", "-x", "dhcpd"])
        write(settings.paths.dhcpd_conf, "")
        write(settings.paths.dhcpd_leases, TestIscDhcpBackend.LEASES)

        result = manager.release_lease("192.168.1.151")

        assert result.success
        assert "192.168.1.151" not in open(settings.paths.dhcpd_leases).read()
        assert executor.ran("systemctl", "restart", "isc-dhcp-server")

    def test_release_unknown_dhcpd_lease(self, manager, executor, settings):
        executor.script(["pgrep", "-x", "dhcpd"])
        write(settings.paths.dhcpd_leases, TestIscDhcpBackend.LEASES)

        result = manager.release_lease("192.168.1.99")

        assert not result.success
        assert result.error == "no lease for 192.168.1.99"

    def test_pinned_backend_skips_detection(self, store, applier, tmp_path):
        executor = FakeExecutor()
        settings = Settings.for_root(tmp_path / "root", dhcp_backend="isc_dhcpd")
        manager = DHCPManager(store, Detector(executor, settings), executor, applier, settings)

        assert manager.server_backend().name == "isc_dhcpd"
