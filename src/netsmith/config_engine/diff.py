"""Diff engine for calculating changes between declared intent and live state.

Works at two levels: item changes (interfaces, rules, pools, reservations,
routes) keyed by their identity, and unified text diffs of rendered files.
"""
import difflib
from typing import Any, Callable, Iterable, Optional

from .schema import (
    ChangeType,
    DHCPConfiguration,
    DiffResult,
    FirewallRuleIntent,
    ItemChange,
    NetworkInterfaceIntent,
    StaticRouteIntent,
    netmask_to_prefix,
    to_dict,
)

# Interface fields every backend can round-trip
INTERFACE_FIELDS = ("type", "enabled", "mode", "address", "netmask", "gateway", "dns", "mtu")


def _normalise_interface(intent: NetworkInterfaceIntent) -> dict[str, Any]:
    data = to_dict(intent)
    if intent.netmask:
        data["netmask"] = netmask_to_prefix(intent.netmask)
    return {k: data[k] for k in INTERFACE_FIELDS}


def file_diff(path: str, current: Optional[str], desired: str) -> str:
    """Unified diff of one file, empty when identical."""
    return "".join(difflib.unified_diff(
        (current or "").splitlines(keepends=True),
        desired.splitlines(keepends=True),
        fromfile=f"{path} (on disk)",
        tofile=f"{path} (rendered)",
    ))


class DiffEngine:
    """Calculate differences between declared and live state."""

    def _diff_keyed(
        self,
        category: str,
        desired: Iterable[Any],
        current: Iterable[Any],
        key: Callable[[Any], str],
        view: Callable[[Any], dict],
    ) -> list[ItemChange]:
        desired_map = {key(item): item for item in desired}
        current_map = {key(item): item for item in current}
        changes = []

        for item_key, item in desired_map.items():
            existing = current_map.get(item_key)
            if existing is None:
                changes.append(ItemChange(
                    category=category,
                    key=item_key,
                    change_type=ChangeType.CREATE,
                    desired=view(item),
                ))
                continue

            want, have = view(item), view(existing)
            changed = [name for name in want if want[name] != have.get(name)]
            if changed:
                changes.append(ItemChange(
                    category=category,
                    key=item_key,
                    change_type=ChangeType.MODIFY,
                    current=have,
                    desired=want,
                    fields=changed,
                ))

        for item_key, item in current_map.items():
            if item_key not in desired_map:
                changes.append(ItemChange(
                    category=category,
                    key=item_key,
                    change_type=ChangeType.DELETE,
                    current=view(item),
                ))

        return changes

    def interfaces(
        self,
        desired: list[NetworkInterfaceIntent],
        current: list[NetworkInterfaceIntent],
    ) -> DiffResult:
        """Diff interfaces by name; loopback is never managed."""
        current = [i for i in current if i.name != "lo"]
        return DiffResult(changes=self._diff_keyed(
            "interface", desired, current,
            key=lambda i: i.name,
            view=_normalise_interface,
        ))

    def rules(
        self,
        desired: list[FirewallRuleIntent],
        current: list[FirewallRuleIntent],
    ) -> DiffResult:
        """
        Diff firewall rules by their match and action.

        Disabled intents are absent from live state, so they are skipped.
        """
        def rule_key(rule: FirewallRuleIntent) -> str:
            parts = [p for p in rule.match_key() if p]
            return " ".join(str(p) for p in parts)

        def rule_view(rule: FirewallRuleIntent) -> dict:
            data = to_dict(rule)
            data.pop("id", None)
            data.pop("comment", None)
            data.pop("position", None)
            return data

        return DiffResult(changes=self._diff_keyed(
            "rule", [r for r in desired if r.enabled], current,
            key=rule_key,
            view=rule_view,
        ))

    def dhcp(self, desired: DHCPConfiguration, current: DHCPConfiguration) -> DiffResult:
        """Diff pools by interface and reservations by MAC."""
        changes = self._diff_keyed(
            "pool", desired.pools, current.pools,
            key=lambda p: p.interface,
            view=lambda p: {
                "start": p.start,
                "end": p.end,
                "lease_time": p.lease_time,
                "domain": p.domain,
            },
        )
        changes += self._diff_keyed(
            "reservation",
            [r for r in desired.reservations if r.enabled],
            current.reservations,
            key=lambda r: r.mac,
            view=lambda r: {"ip": r.ip, "hostname": r.hostname},
        )
        if desired.mode != current.mode:
            changes.insert(0, ItemChange(
                category="dhcp",
                key="mode",
                change_type=ChangeType.MODIFY,
                current={"mode": current.mode.value},
                desired={"mode": desired.mode.value},
                fields=["mode"],
            ))
        return DiffResult(changes=changes)

    def routes(
        self,
        desired: list[StaticRouteIntent],
        current: list[StaticRouteIntent],
    ) -> DiffResult:
        return DiffResult(changes=self._diff_keyed(
            "route", desired, current,
            key=lambda r: r.destination,
            view=to_dict,
        ))


def summarize_diff(diff: DiffResult) -> str:
    """
    Create a human-readable summary of a diff.

    Useful for dry-run output and logging.
    """
    if diff.no_change:
        return "No changes needed - live state matches declared intent"

    lines = []
    if diff.changes:
        lines.append(f"Changes to apply ({diff.total_changes} total):")
        lines.append("")

    markers = {
        ChangeType.CREATE: "[+]",
        ChangeType.DELETE: "[-]",
        ChangeType.MODIFY: "[~]",
    }
    for change in diff.changes:
        marker = markers.get(change.change_type, "[ ]")
        verb = change.change_type.value.capitalize()
        lines.append(f"  {marker} {verb} {change.category} {change.key}")
        for name in change.fields:
            old = (change.current or {}).get(name)
            new = (change.desired or {}).get(name)
            lines.append(f"      {name}: {old!r} -> {new!r}")

    for path, text in diff.file_diffs.items():
        if not text:
            continue
        if lines:
            lines.append("")
        lines.append(text.rstrip("\n"))

    return "\n".join(lines)
