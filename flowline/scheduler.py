# scheduler

import hashlib
import json


from   collections import OrderedDict
from   typing      import List, Optional, Sequence, Tuple


from   .cycles     import SchedulingError, check_cycles
from   .graph      import effective_active, induced_edges, is_kind
from   .loops      import expand_loops
from   .schema     import DEFAULT_SCHEDULER_CACHE_SIZE, BaseNode, Edge, NodeKind, ScheduledStep
from   .toposort   import kahn_order
from   .utils      import log_print


def content_key(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> str:
	"""SHA-256 over the canonical JSON of the full graph content"""
	payload = {
		"nodes" : [node.model_dump(mode="json", by_alias=True, exclude={"position"}) for node in nodes],
		"edges" : [edge.model_dump(mode="json", by_alias=True) for edge in edges],
	}
	text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
	return hashlib.sha256(text.encode("utf-8")).hexdigest()


def order_acyclic(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> List[ScheduledStep]:
	check_cycles(nodes, edges)

	ordered, remaining = kahn_order([node.id for node in nodes], edges)
	if remaining:
		raise SchedulingError("Could not order workflow", {node_id: "Node could not be scheduled" for node_id in remaining})

	return [ScheduledStep(node_id=node_id) for node_id in ordered]


class Scheduler:
	"""
	Pure, memoised execution ordering.
	Inactive nodes (and everything downstream of them) are dropped first, then the
	remaining subgraph is ordered with Kahn, or handed to loop expansion when it
	contains a loop-start.
	"""

	def __init__(self, cache_size: int = DEFAULT_SCHEDULER_CACHE_SIZE):
		self._cache      : "OrderedDict[str, Tuple[ScheduledStep, ...]]" = OrderedDict()
		self._cache_size : int                                           = cache_size
		self.hits        : int                                           = 0
		self.misses      : int                                           = 0


	def schedule(self, nodes: Sequence[BaseNode], edges: Sequence[Edge], iterate: bool = True) -> Tuple[ScheduledStep, ...]:
		key = f"{int(iterate)}:{content_key(nodes, edges)}"
		if key in self._cache:
			self.hits += 1
			self._cache.move_to_end(key)
			return self._cache[key]

		self.misses += 1
		steps = tuple(self._compute(nodes, edges, iterate))

		self._cache[key] = steps
		if len(self._cache) > self._cache_size:
			self._cache.popitem(last=False)
		return steps


	def order(self, nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> List[str]:
		"""Node ids in execution order with each loop body listed once"""
		return [step.node_id for step in self.schedule(nodes, edges, iterate=False)]


	def clear(self):
		self._cache.clear()
		self.hits   = 0
		self.misses = 0


	def _compute(self, nodes: Sequence[BaseNode], edges: Sequence[Edge], iterate: bool) -> List[ScheduledStep]:
		active       = effective_active(nodes, edges)
		active_edges = induced_edges([node.id for node in active], edges)

		if any(is_kind(node, NodeKind.LOOP_START) for node in active):
			steps = expand_loops(active, active_edges, iterate=iterate)
		else:
			steps = order_acyclic(active, active_edges)

		log_print(f"Scheduled {len(steps)} step(s) from {len(active)}/{len(nodes)} active node(s)", level="debug")
		return steps


_default_scheduler: Optional[Scheduler] = None


def schedule(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> Tuple[ScheduledStep, ...]:
	"""Module level shortcut over a shared scheduler instance"""
	global _default_scheduler
	if _default_scheduler is None:
		_default_scheduler = Scheduler()
	return _default_scheduler.schedule(nodes, edges)
