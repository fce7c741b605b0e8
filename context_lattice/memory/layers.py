"""
Layered context store: the three tiers of the window plus their budget.

All mutations go through this class so each layer's token_count stays the
exact sum of its entries. The persistent layer is only touched by explicit
caller actions (the window manager never evicts from it).
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import ContextValidationError
from .models import ContextLayer, ContextMessage, LayerName, TokenBudget
from .tokens import TokenEstimator

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class LayeredContextStore:
    """
    Holds immediate / summarized / persistent layers.

    Args:
        budget: TokenBudget for the window
        estimator: TokenEstimator used to size entries lacking a token count
        clock: Callable returning the current datetime
    """

    def __init__(
        self,
        budget: TokenBudget,
        estimator: Optional[TokenEstimator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.budget = budget
        self.estimator = estimator or TokenEstimator()
        self.clock = clock or datetime.now
        now = self.clock()
        self.layers: Dict[LayerName, ContextLayer] = {
            name: ContextLayer(name=name, last_updated=now) for name in LayerName
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def layer(self, name) -> ContextLayer:
        return self.layers[LayerName(name)]

    def entries(self, name=None) -> List[ContextMessage]:
        """Entries of one layer, or all layers (persistent, summarized, immediate)."""
        if name is not None:
            return list(self.layer(name).entries)
        return (
            list(self.layers[LayerName.PERSISTENT].entries)
            + list(self.layers[LayerName.SUMMARIZED].entries)
            + list(self.layers[LayerName.IMMEDIATE].entries)
        )

    def total_tokens(self) -> int:
        return sum(layer.token_count for layer in self.layers.values())

    def layer_tokens(self, name) -> int:
        return self.layer(name).token_count

    def over_budget(self, name=None) -> bool:
        if name is None:
            return self.total_tokens() > self.budget.total
        return self.layer_tokens(name) > self.budget.for_layer(LayerName(name))

    def usage(self) -> Dict[str, Dict[str, Any]]:
        return {
            name.value: {
                "entries": len(layer),
                "tokens": layer.token_count,
                "budget": self.budget.for_layer(name),
                "last_updated": layer.last_updated.isoformat(),
            }
            for name, layer in self.layers.items()
        }

    def __len__(self) -> int:
        return sum(len(layer) for layer in self.layers.values())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _sized(self, entry: ContextMessage) -> ContextMessage:
        if entry.token_count is None:
            entry.token_count = self.estimator.estimate(entry.content)
        return entry

    def _touch(self, name: LayerName) -> None:
        self.layers[name].recompute(self.clock())

    def append(self, name, entry: ContextMessage) -> ContextMessage:
        name = LayerName(name)
        self.layers[name].entries.append(self._sized(entry))
        self._touch(name)
        return entry

    def extend(self, name, entries: Iterable[ContextMessage]) -> None:
        name = LayerName(name)
        self.layers[name].entries.extend(self._sized(e) for e in entries)
        self._touch(name)

    def merge(self, name, entries: Iterable[ContextMessage]) -> None:
        """Insert entries keeping the layer in chronological order (stable for equal timestamps)."""
        name = LayerName(name)
        combined = self.layers[name].entries + [self._sized(e) for e in entries]
        self.layers[name].entries = sorted(combined, key=lambda e: e.timestamp)
        self._touch(name)

    def remove(self, name, entry: ContextMessage) -> bool:
        """Remove one entry by identity. Returns False if it is not in the layer."""
        name = LayerName(name)
        layer = self.layers[name]
        for index, candidate in enumerate(layer.entries):
            if candidate is entry:
                del layer.entries[index]
                self._touch(name)
                return True
        return False

    def remove_many(self, name, entries: Iterable[ContextMessage]) -> int:
        name = LayerName(name)
        doomed = {id(e) for e in entries}
        layer = self.layers[name]
        before = len(layer.entries)
        layer.entries = [e for e in layer.entries if id(e) not in doomed]
        self._touch(name)
        return before - len(layer.entries)

    def replace(self, name, entries: Iterable[ContextMessage]) -> None:
        name = LayerName(name)
        self.layers[name].entries = [self._sized(e) for e in entries]
        self._touch(name)

    def clear(self, name=None) -> None:
        names = [LayerName(name)] if name is not None else list(LayerName)
        for layer_name in names:
            self.layers[layer_name].entries = []
            self._touch(layer_name)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "layers": {
                name.value: [entry.to_dict() for entry in layer.entries]
                for name, layer in self.layers.items()
            },
        }

    def load_snapshot(self, snapshot: Any) -> None:
        """
        Replace all layers from a snapshot.

        Accepts the layered format or a legacy flat message list (loaded into immediate).
        """
        if isinstance(snapshot, list):
            layers = {LayerName.IMMEDIATE.value: snapshot}
        elif isinstance(snapshot, dict) and isinstance(snapshot.get("layers"), dict):
            layers = snapshot["layers"]
        else:
            raise ContextValidationError("Unrecognized context snapshot format")

        loaded = {}
        for name in LayerName:
            raw_entries = layers.get(name.value) or []
            if not isinstance(raw_entries, list):
                raise ContextValidationError(f"Layer '{name.value}' must be a list")
            loaded[name] = [ContextMessage.from_dict(item) for item in raw_entries]

        for name, entries in loaded.items():
            self.replace(name, entries)
        logger.debug(f"Loaded snapshot with {len(self)} entries")

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Any,
        budget: TokenBudget,
        estimator: Optional[TokenEstimator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> 'LayeredContextStore':
        store = cls(budget, estimator, clock)
        store.load_snapshot(snapshot)
        return store

    def check_invariants(self) -> None:
        """Raise AssertionError if any layer's token_count drifted from its entries."""
        for name, layer in self.layers.items():
            actual = sum(entry.token_count or 0 for entry in layer.entries)
            if actual != layer.token_count:
                raise AssertionError(
                    f"Layer {name.value} token_count {layer.token_count} != sum of entries {actual}"
                )
