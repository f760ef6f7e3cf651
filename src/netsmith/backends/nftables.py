"""nftables firewall backend."""
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
from ..utils.executor import CommandResult
from .base import FirewallBackend

logger = logging.getLogger(__name__)

# (hook, priority) for base chains; other chain names are created as regular chains
BASE_CHAINS = {
    ("filter", "INPUT"): ("filter", "input", 0),
    ("filter", "FORWARD"): ("filter", "forward", 0),
    ("filter", "OUTPUT"): ("filter", "output", 0),
    ("nat", "PREROUTING"): ("nat", "prerouting", -100),
    ("nat", "POSTROUTING"): ("nat", "postrouting", 100),
    ("nat", "OUTPUT"): ("nat", "output", -100),
}

VERDICTS = {"accept", "drop", "reject", "masquerade"}
POLICY = re.compile(r"policy\s+(\w+)\s*;")
ADD_CHAIN = re.compile(r"^add chain (?:ip|inet) (\w+) (\S+)")


def _port_nft(port: str) -> str:
    return port.replace(":", "-")


def _port_intent(port: str) -> str:
    return port.replace("-", ":")


class NftablesBackend(FirewallBackend):
    """Render an ``nft -f`` script; parse ``nft list ruleset`` or the script itself."""

    name = "nftables"

    def __init__(self, executor, paths=None, chains: Optional[dict[str, list[str]]] = None):
        super().__init__(executor, paths)
        self.chains = chains or {
            "filter": ["INPUT", "FORWARD", "OUTPUT"],
            "nat": ["PREROUTING", "POSTROUTING", "OUTPUT"],
        }

    @property
    def config_path(self) -> str:
        return self.paths.nftables_conf

    def list_command(self) -> list[str]:
        return ["nft", "list", "ruleset"]

    # --- Synthesis ---

    def rule_clauses(self, rule: FirewallRuleIntent) -> list[str]:
        """Match clauses then the action keyword, in canonical order."""
        clauses: list[str] = []
        protocol = rule.protocol if rule.protocol not in (None, "all") else None
        if protocol:
            clauses += ["ip", "protocol", protocol]
        if rule.source:
            clauses += ["ip", "saddr", rule.source]
        if rule.destination:
            clauses += ["ip", "daddr", rule.destination]
        if rule.port and protocol in ("tcp", "udp"):
            clauses += [protocol, "dport", _port_nft(rule.port)]

        if rule.action == RuleAction.SNAT:
            clauses += ["snat", "to", rule.target or ""]
        elif rule.action == RuleAction.DNAT:
            clauses += ["dnat", "to", rule.target or ""]
        else:
            clauses.append(rule.action.value)

        if rule.comment:
            clauses += ["comment", '"' + rule.comment.replace('"', "'") + '"']
        return clauses

    def render(self, rules: list[FirewallRuleIntent]) -> Artifact:
        lines = [
            "#!/usr/sbin/nft -f",
            "# Generated by netsmith. Local changes will be overwritten.",
            "flush ruleset",
            "",
        ]

        for table, chains in self.chains.items():
            lines.append(f"add table ip {table}")
            for chain in chains:
                base = BASE_CHAINS.get((table, chain))
                if base:
                    kind, hook, priority = base
                    lines.append(
                        f"add chain ip {table} {chain} "
                        f"{{ type {kind} hook {hook} priority {priority}; policy accept; }}"
                    )
                else:
                    lines.append(f"add chain ip {table} {chain}")
        lines.append("")

        for rule in self._ordered(rules):
            lines.append(
                f"add rule ip {rule.table} {rule.chain} " + " ".join(self.rule_clauses(rule))
            )

        return Artifact(files={self.config_path: "\n".join(lines) + "\n"})

    def _ordered(self, rules: list[FirewallRuleIntent]) -> list[FirewallRuleIntent]:
        order = {
            (table, chain): i
            for i, (table, chain) in enumerate(
                (t, c) for t, chains in self.chains.items() for c in chains
            )
        }
        enabled = [r for r in rules if r.enabled]
        return sorted(
            enabled,
            key=lambda r: (order.get((r.table, r.chain), len(order)), r.chain, r.position),
        )

    # --- Parsing ---

    def parse_clauses(self, chain: str, tokens: list[str]) -> Optional[FirewallRuleIntent]:
        """Turn rule tokens into an intent; None when a clause is not understood."""
        fields: dict = {}
        action = None
        i = 0
        n = len(tokens)

        while i < n:
            token = tokens[i]
            nxt = tokens[i + 1] if i + 1 < n else None

            if token == "ip" and nxt in ("protocol", "saddr", "daddr") and i + 2 < n:
                key = {"protocol": "protocol", "saddr": "source", "daddr": "destination"}[nxt]
                fields[key] = tokens[i + 2]
                i += 3
            elif token == "meta" and nxt == "l4proto" and i + 2 < n:
                fields["protocol"] = tokens[i + 2]
                i += 3
            elif token in ("tcp", "udp") and nxt == "dport" and i + 2 < n:
                fields["protocol"] = token
                fields["port"] = _port_intent(tokens[i + 2])
                i += 3
            elif token == "counter":
                i += 1
            elif token in ("packets", "bytes") and nxt is not None:
                i += 2
            elif token in VERDICTS:
                action = RuleAction(token)
                i += 1
                # "reject with icmp type ..." carries no intent fields
                while i < n and tokens[i] != "comment":
                    i += 1
            elif token in ("snat", "dnat"):
                j = i + 1
                if j < n and tokens[j] == "ip":
                    j += 1
                if j + 1 < n and tokens[j] == "to":
                    action = RuleAction(token)
                    fields["target"] = tokens[j + 1]
                    i = j + 2
                else:
                    return None
            elif token == "comment" and nxt is not None:
                fields["comment"] = nxt
                i += 2
            else:
                return None

        if action is None:
            return None
        return FirewallRuleIntent(chain=chain, action=action, **fields)

    def parse(self, text: str) -> FirewallState:
        """Parse either ``nft list ruleset`` output or an ``add rule`` script."""
        state = FirewallState()
        positions: dict[tuple[str, str], int] = {}
        table: Optional[str] = None
        chain: Optional[FirewallChain] = None

        def add_rule(chain_name: str, tokens: list[str], line: str) -> None:
            rule = self.parse_clauses(chain_name, tokens)
            if rule is None:
                state.warnings.append(f"unrecognised rule in {chain_name}: '{line}'")
                return
            key = (rule.table, chain_name)
            positions[key] = positions.get(key, 0) + 1
            rule.position = positions[key]
            state.rules.append(rule)

        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or line == "flush ruleset":
                continue

            try:
                tokens = shlex.split(line)
            except ValueError:
                state.warnings.append(f"unbalanced quotes: '{line}'")
                continue

            # Script form
            if tokens[:2] == ["add", "table"]:
                continue
            match = ADD_CHAIN.match(line)
            if match:
                policy = POLICY.search(line)
                state.chains.append(FirewallChain(
                    name=match.group(2),
                    policy=policy.group(1) if policy else None,
                    table=match.group(1),
                ))
                continue
            if tokens[:2] == ["add", "rule"] and len(tokens) >= 5:
                add_rule(tokens[4], tokens[5:], line)
                continue

            # Listing form
            if tokens[0] == "table" and len(tokens) >= 3:
                table = tokens[2]
                continue
            if tokens[0] == "chain" and len(tokens) >= 2:
                chain = FirewallChain(name=tokens[1], table=table or "filter")
                state.chains.append(chain)
                continue
            if tokens[0] == "}":
                if chain is not None:
                    chain = None
                else:
                    table = None
                continue
            if tokens[0] == "type" and chain is not None:
                policy = POLICY.search(line)
                if policy:
                    chain.policy = policy.group(1)
                continue
            if tokens[0] in ("set", "map", "elements", "flags"):
                continue
            if chain is not None:
                add_rule(chain.name, tokens, line)
                continue

            state.warnings.append(f"unrecognised line '{line}'")

        for message in state.warnings:
            logger.warning(f"[nftables] {message}")
        return state

    # --- Apply hooks ---

    def check(self, artifact: Artifact) -> Optional[CommandResult]:
        return self.executor.run(["nft", "-c", "-f", self.config_path])

    def reload_commands(self) -> list[list[str]]:
        return [["nft", "-f", self.config_path]]
