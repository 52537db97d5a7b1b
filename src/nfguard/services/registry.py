"""Tracking of the custom chains nfguard has created.

A key is present exactly while the chain is believed to exist and to be
linked from its parent chain. The registry does no locking of its own:
it is only touched by the Reconciler while it holds its lock.
"""

from nfguard.services.rules import ChainKey, Rule


class SystemChainRegistry:
    """In-memory map of ChainKey to the rule that created the chain."""

    def __init__(self) -> None:
        self._chains: dict[ChainKey, Rule] = {}

    def register(self, key: ChainKey, rule: Rule) -> None:
        self._chains[key] = rule

    def unregister(self, key: ChainKey) -> None:
        self._chains.pop(key, None)

    def contains(self, key: ChainKey) -> bool:
        return key in self._chains

    def all(self) -> list[tuple[ChainKey, Rule]]:
        """Snapshot of the entries, safe to iterate while unregistering."""
        return list(self._chains.items())

    def __contains__(self, key: object) -> bool:
        return key in self._chains

    def __len__(self) -> int:
        return len(self._chains)
