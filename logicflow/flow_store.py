"""
The execution store: per-entity result cache and opaque instance side table.

One store is owned by each running program (see ProjectRunner) and handed to
evaluation through the Context, so independent programs never share results.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


@dataclass
class ExecutionEntry:
    """A cached result for one statement/operation id."""
    data: Any = None
    is_pending: bool = False
    should_cache_result: bool = False


class ExecutionStore:
    """Result cache keyed by stable entity id, plus the instance side table."""

    def __init__(self):
        self.results: Dict[str, ExecutionEntry] = {}
        self.instances: Dict[str, Any] = {}
        self.generation: int = 0
        self._subscribers: List[Callable[[str], None]] = []

    # --- Results ---

    def get_result(self, entity_id: Optional[str]) -> Optional[ExecutionEntry]:
        if entity_id is None:
            return None
        return self.results.get(entity_id)

    def set_result(self, entity_id: str, data: Any, *, should_cache_result: bool = False,
                   generation: Optional[int] = None) -> bool:
        """Store a result. Writes from a superseded generation are dropped."""
        if generation is not None and generation < self.generation:
            return False
        self.results[entity_id] = ExecutionEntry(data=data, should_cache_result=should_cache_result)
        self._notify(entity_id)
        return True

    def set_pending(self, entity_id: str, is_pending: bool):
        entry = self.results.get(entity_id)
        if entry is None:
            entry = self.results[entity_id] = ExecutionEntry()
        entry.is_pending = is_pending
        self._notify(entity_id)

    def remove(self, entity_id: str):
        self.results.pop(entity_id, None)

    def remove_all(self):
        """Drop every result except the ones flagged cacheable (network calls)."""
        self.results = {k: v for k, v in self.results.items() if v.should_cache_result}

    def next_generation(self) -> int:
        """Start a new evaluation pass; older in-flight writes become stale."""
        self.generation += 1
        return self.generation

    # --- Instances ---

    def get_instance(self, instance_id: Optional[str]) -> Any:
        if instance_id is None:
            return None
        return self.instances.get(instance_id)

    def set_instance(self, instance_id: str, instance: Any):
        self.instances[instance_id] = instance

    def remove_instance(self, instance_id: str):
        self.instances.pop(instance_id, None)

    # --- Subscriptions ---

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return _unsubscribe

    def _notify(self, entity_id: str):
        for callback in list(self._subscribers):
            callback(entity_id)

    def __repr__(self) -> str:
        return f"<ExecutionStore results={len(self.results)} instances={len(self.instances)} gen={self.generation}>"
