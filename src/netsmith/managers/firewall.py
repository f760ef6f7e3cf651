"""Firewall Rule Engine.

Keeps rule positions a strict 1..n order within each chain, then renders the
whole ruleset through the active firewall backend.
"""
import logging
from typing import Optional

from ..backends.base import FirewallBackend
from ..config_engine.diff import DiffEngine, file_diff, summarize_diff
from ..config_engine.executor import Applier
from ..config_engine.schema import ApplyResult, Artifact, FirewallRuleIntent, FirewallState
from ..config_engine.validator import ConfigValidator
from ..store import IntentStore

logger = logging.getLogger(__name__)


def _insert_at(rules: list[FirewallRuleIntent], rule: FirewallRuleIntent, position: int) -> list[int]:
    """Rule ids after inserting ``rule`` at 1-based ``position`` (0 or past the end appends)."""
    ids = [r.id for r in rules if r.id != rule.id]
    index = len(ids) if position <= 0 or position > len(ids) else position - 1
    ids.insert(index, rule.id)
    return ids


class FirewallRuleEngine:
    """CRUD and ordering for firewall rule intents."""

    def __init__(
        self,
        store: IntentStore,
        backend: FirewallBackend,
        applier: Applier,
        validator: Optional[ConfigValidator] = None,
    ):
        self.store = store
        self.backend = backend
        self.applier = applier
        self.validator = validator or ConfigValidator()
        self.diff_engine = DiffEngine()

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def list_rules(self) -> list[FirewallRuleIntent]:
        return self.store.list_rules()

    def get_rule(self, rule_id: int) -> Optional[FirewallRuleIntent]:
        return self.store.get_rule(rule_id)

    def _require(self, rule_id: int) -> FirewallRuleIntent:
        rule = self.store.get_rule(rule_id)
        if rule is None:
            raise KeyError(f"Firewall rule not found: {rule_id}")
        return rule

    def _renumber(self, ids: list[int]) -> None:
        self.store.set_positions({rule_id: i for i, rule_id in enumerate(ids, start=1)})

    def _validate(self, rule: FirewallRuleIntent) -> None:
        validation = self.validator.validate_rule(rule)
        validation.raise_if_invalid()
        for warning in validation.warnings:
            logger.warning(warning)

    def create_rule(self, rule: FirewallRuleIntent, apply: bool = True) -> FirewallRuleIntent:
        """
        Validate and persist a new rule, then apply the ruleset.

        Position 0 (or past the end) appends to the chain; otherwise the rule
        is inserted there and later rules shift down.

        Returns:
            The stored rule with ``id`` and final ``position`` set

        Raises:
            ValidationFailed: If the rule is invalid
            ApplyFailed: If the backend rejects the new ruleset
        """
        rule.id = None
        self._validate(rule)

        chain = self.store.chain_rules(rule.table, rule.chain)
        requested = rule.position
        # Park past the end, then move into place
        rule.position = len(chain) + 1
        rule = self.store.save_rule(rule)
        ids = _insert_at(chain, rule, requested)
        self._renumber(ids)
        rule.position = ids.index(rule.id) + 1
        logger.info(f"Created rule {rule.id} at {rule.chain}:{rule.position}")

        if apply:
            self.apply().raise_for_status()
        return rule

    def update_rule(self, rule: FirewallRuleIntent, apply: bool = True) -> FirewallRuleIntent:
        """Replace a stored rule; a changed chain or position reorders both chains."""
        if rule.id is None:
            raise ValueError("update_rule requires a rule id")
        old = self._require(rule.id)
        self._validate(rule)

        requested = rule.position or old.position
        target_chain = self.store.chain_rules(rule.table, rule.chain)
        # Park outside every chain's range while the chains are renumbered
        rule.position = -rule.id
        self.store.save_rule(rule)

        ids = _insert_at(target_chain, rule, requested)
        self._renumber(ids)
        if (old.table, old.chain) != (rule.table, rule.chain):
            remaining = self.store.chain_rules(old.table, old.chain)
            self._renumber([r.id for r in remaining])
        rule.position = ids.index(rule.id) + 1

        if apply:
            self.apply().raise_for_status()
        return rule

    def delete_rule(self, rule_id: int, apply: bool = True) -> None:
        rule = self._require(rule_id)
        self.store.delete_rule(rule_id)
        remaining = self.store.chain_rules(rule.table, rule.chain)
        self._renumber([r.id for r in remaining])
        logger.info(f"Deleted rule {rule_id} from {rule.chain}")

        if apply:
            self.apply().raise_for_status()

    def move_rule(self, rule_id: int, position: int, apply: bool = True) -> FirewallRuleIntent:
        """Move a rule within its chain, renumbering the chain 1..n."""
        rule = self._require(rule_id)
        chain = self.store.chain_rules(rule.table, rule.chain)
        ids = _insert_at(chain, rule, position)
        self._renumber(ids)
        rule.position = ids.index(rule_id) + 1
        logger.info(f"Moved rule {rule_id} to {rule.chain}:{rule.position}")

        if apply:
            self.apply().raise_for_status()
        return rule

    def live_state(self) -> FirewallState:
        return self.backend.read_state()

    def render(self) -> Artifact:
        rules = self.store.list_rules()
        self.validator.validate_rules(rules).raise_if_invalid()
        return self.backend.render(rules)

    def apply(self, dry_run: bool = False) -> ApplyResult:
        return self.applier.apply(self.backend, self.render(), dry_run=dry_run, operation="firewall")

    def preview(self) -> str:
        artifact = self.render()
        live = self.live_state()
        diff = self.diff_engine.rules(self.store.list_rules(), live.rules)
        path = self.backend.config_path
        diff.file_diffs[path] = file_diff(
            path, self.backend.executor.read_file(path), artifact.files[path]
        )
        summary = summarize_diff(diff)
        if live.warnings:
            summary += "\n\nWarnings:\n" + "\n".join(f"  - {w}" for w in live.warnings)
        return summary
