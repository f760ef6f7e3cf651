"""iptables firewall backend."""
import logging
import re
import shlex
from typing import Optional

from ..config_engine.schema import (
    Artifact,
    FirewallChain,
    FirewallRuleIntent,
    FirewallState,
    RuleAction,
)
from ..errors import ParseFailure
from ..utils.executor import CommandResult
from .base import FirewallBackend

logger = logging.getLogger(__name__)

TARGETS = {
    "ACCEPT": RuleAction.ACCEPT,
    "DROP": RuleAction.DROP,
    "REJECT": RuleAction.REJECT,
    "MASQUERADE": RuleAction.MASQUERADE,
    "SNAT": RuleAction.SNAT,
    "DNAT": RuleAction.DNAT,
}
ACTION_TARGETS = {action: target for target, action in TARGETS.items()}

# Numeric protocols printed by newer iptables-nft listings
PROTOCOL_NUMBERS = {"1": "icmp", "6": "tcp", "17": "udp", "0": "all"}

BUILTIN_CHAINS = {
    "filter": {"INPUT", "FORWARD", "OUTPUT"},
    "nat": {"PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"},
}

ANY_NETWORK = "0.0.0.0/0"
CHAIN_HEADER = re.compile(r"^Chain (\S+) \((?:policy (\w+)|\d+ references?)")
DPORT = re.compile(r"\b(?:tcp|udp) dpts?:(\S+)")
NAT_TO = re.compile(r"\bto:(\S+)")
COMMENT = re.compile(r"/\* (.*?) \*/")


def _host(value: Optional[str]) -> Optional[str]:
    if value is None or value == ANY_NETWORK:
        return None
    return value


class IptablesBackend(FirewallBackend):
    """Render an ``iptables-restore`` document; parse ``-L -n`` listings and saves."""

    name = "iptables"

    def __init__(self, executor, paths=None, chains: Optional[dict[str, list[str]]] = None):
        super().__init__(executor, paths)
        self.chains = chains or {
            "filter": ["INPUT", "FORWARD", "OUTPUT"],
            "nat": ["PREROUTING", "POSTROUTING", "OUTPUT"],
        }

    @property
    def config_path(self) -> str:
        return self.paths.iptables_rules

    def list_command(self, table: str = "filter") -> list[str]:
        return ["iptables", "-t", table, "-L", "-n"]

    # --- Synthesis ---

    def rule_args(self, rule: FirewallRuleIntent) -> list[str]:
        """Arguments after ``-A CHAIN``: matches in canonical order, then the target."""
        args: list[str] = []
        protocol = rule.protocol if rule.protocol not in (None, "all") else None
        if protocol:
            args += ["-p", protocol]
        if rule.source:
            args += ["-s", rule.source]
        if rule.destination:
            args += ["-d", rule.destination]
        if rule.port and protocol in ("tcp", "udp"):
            args += ["-m", protocol, "--dport", rule.port]
        if rule.comment:
            args += ["-m", "comment", "--comment", rule.comment]

        args += ["-j", ACTION_TARGETS[rule.action]]
        if rule.action == RuleAction.SNAT:
            args += ["--to-source", rule.target or ""]
        elif rule.action == RuleAction.DNAT:
            args += ["--to-destination", rule.target or ""]
        return args

    def rule_argv(self, rule: FirewallRuleIntent, operation: str = "-A") -> list[str]:
        """Full argv for applying one rule to the live kernel table."""
        return ["iptables", "-t", rule.table, operation, rule.chain] + self.rule_args(rule)

    def render(self, rules: list[FirewallRuleIntent]) -> Artifact:
        lines = ["# Generated by netsmith. Local changes will be overwritten."]
        enabled = [r for r in rules if r.enabled]

        for table, chains in self.chains.items():
            lines.append(f"*{table}")
            for chain in chains:
                policy = "ACCEPT" if chain in BUILTIN_CHAINS.get(table, ()) else "-"
                lines.append(f":{chain} {policy} [0:0]")

            order = {chain: i for i, chain in enumerate(chains)}
            table_rules = sorted(
                (r for r in enabled if r.table == table),
                key=lambda r: (order.get(r.chain, len(order)), r.chain, r.position),
            )
            for rule in table_rules:
                lines.append(shlex.join(["-A", rule.chain] + self.rule_args(rule)))
            lines.append("COMMIT")

        return Artifact(files={self.config_path: "\n".join(lines) + "\n"})

    # --- Parsing ---

    def parse(self, text: str, table: str = "filter") -> FirewallState:
        """Parse ``iptables-save`` output, or an ``iptables -L -n`` listing of ``table``."""
        lines = [l for l in text.splitlines() if l.strip()]
        if any(l.startswith("*") or l.startswith("-A ") for l in lines):
            state = self._parse_save(lines)
        else:
            state = self._parse_listing(lines, table)

        for message in state.warnings:
            logger.warning(f"[iptables] {message}")
        return state

    def _parse_listing(self, lines: list[str], table: str) -> FirewallState:
        state = FirewallState()
        chain: Optional[FirewallChain] = None
        has_opt = True
        position = 0

        for line in lines:
            match = CHAIN_HEADER.match(line)
            if match:
                chain = FirewallChain(name=match.group(1), policy=match.group(2), table=table)
                state.chains.append(chain)
                position = 0
                continue
            if line.startswith("target"):
                has_opt = "opt" in line.split()
                continue
            if chain is None:
                state.warnings.append(f"line outside any chain: '{line}'")
                continue

            parts = line.split()
            width = 5 if has_opt else 4
            if len(parts) < width:
                state.warnings.append(f"short rule line in {chain.name}: '{line}'")
                continue

            action = TARGETS.get(parts[0])
            if action is None:
                state.warnings.append(f"unsupported target '{parts[0]}' in {chain.name}")
                continue

            source, destination = parts[width - 2], parts[width - 1]
            extras = " ".join(parts[width:])
            protocol = PROTOCOL_NUMBERS.get(parts[1], parts[1])

            rule = FirewallRuleIntent(
                chain=chain.name,
                action=action,
                protocol=None if protocol == "all" else protocol,
                source=_host(source),
                destination=_host(destination),
            )
            dport = DPORT.search(extras)
            if dport:
                rule.port = dport.group(1)
            target = NAT_TO.search(extras)
            if target and action in (RuleAction.SNAT, RuleAction.DNAT):
                rule.target = target.group(1)
            comment = COMMENT.search(extras)
            if comment:
                rule.comment = comment.group(1)

            position += 1
            rule.position = position
            state.rules.append(rule)

        return state

    def _parse_save(self, lines: list[str]) -> FirewallState:
        state = FirewallState()
        table = "filter"
        positions: dict[tuple[str, str], int] = {}

        for line in lines:
            line = line.strip()
            if line.startswith("#") or line == "COMMIT":
                continue
            if line.startswith("*"):
                table = line[1:]
                continue
            if line.startswith(":"):
                name, _, rest = line[1:].partition(" ")
                policy = rest.split()[0] if rest else None
                state.chains.append(FirewallChain(
                    name=name,
                    policy=None if policy == "-" else policy,
                    table=table,
                ))
                continue
            if not line.startswith("-A "):
                state.warnings.append(f"unrecognised line '{line}'")
                continue

            try:
                tokens = shlex.split(line)
            except ValueError:
                state.warnings.append(f"unbalanced quotes: '{line}'")
                continue

            rule = self._parse_args(tokens[1], tokens[2:])
            if rule is None:
                state.warnings.append(f"unsupported rule '{line}'")
                continue
            key = (table, rule.chain)
            positions[key] = positions.get(key, 0) + 1
            rule.position = positions[key]
            state.rules.append(rule)

        return state

    def _parse_args(self, chain: str, args: list[str]) -> Optional[FirewallRuleIntent]:
        fields: dict = {}
        action = None
        i = 0
        while i < len(args):
            flag = args[i]
            value = args[i + 1] if i + 1 < len(args) else None
            if value is None:
                return None
            if flag in ("-p", "--protocol"):
                fields["protocol"] = value
            elif flag in ("-s", "--source"):
                fields["source"] = value.removesuffix("/32") if "/" in value else value
            elif flag in ("-d", "--destination"):
                fields["destination"] = value.removesuffix("/32") if "/" in value else value
            elif flag in ("--dport", "--destination-port"):
                fields["port"] = value
            elif flag == "-m":
                pass  # match module names carry no intent fields
            elif flag == "--comment":
                fields["comment"] = value
            elif flag in ("-j", "--jump"):
                action = TARGETS.get(value)
                if action is None:
                    return None
            elif flag in ("--to-source", "--to-destination"):
                fields["target"] = value
            else:
                return None
            i += 2

        if action is None:
            return None
        return FirewallRuleIntent(chain=chain, action=action, **fields)

    def read_state(self) -> FirewallState:
        """List every managed table and merge the results."""
        merged = FirewallState()
        for table in self.chains:
            result = self.executor.run(self.list_command(table))
            if not result.success:
                raise ParseFailure(result.command, result.stderr.strip() or "listing failed")
            state = self.parse(result.stdout, table=table)
            merged.rules.extend(state.rules)
            merged.chains.extend(state.chains)
            merged.warnings.extend(state.warnings)
        return merged

    # --- Apply hooks ---

    def check(self, artifact: Artifact) -> Optional[CommandResult]:
        return self.executor.run(["iptables-restore", "--test", self.config_path])

    def reload_commands(self) -> list[list[str]]:
        return [["iptables-restore", self.config_path]]
