# toposort

import heapq


from   collections import defaultdict
from   typing      import Dict, List, Sequence, Tuple


from   .schema     import Edge


def kahn_order(node_ids: Sequence[str], edges: Sequence[Edge]) -> Tuple[List[str], List[str]]:
	"""
	Kahn's algorithm with a deterministic tie-break.

	Ready nodes are taken by (position of the node's earliest outgoing edge in
	the edge list, node insertion position); nodes without outgoing edges sort
	after every node that has one. Neighbours are relaxed in edge insertion order.
	Edges touching nodes outside node_ids are ignored.

	Returns (ordered, remaining); remaining is non-empty only when the nodes
	left over sit on or behind a cycle.
	"""
	position  : Dict[str, int]       = {node_id: i for i, node_id in enumerate(node_ids)}
	in_degree : Dict[str, int]       = {node_id: 0 for node_id in node_ids}
	outgoing  : Dict[str, List[str]] = defaultdict(list)
	first_out : Dict[str, int]       = {}

	for i, edge in enumerate(edges):
		if edge.source not in position or edge.target not in position:
			continue
		first_out.setdefault(edge.source, i)
		outgoing [edge.source].append(edge.target)
		in_degree[edge.target] += 1

	no_edge = len(edges)

	def priority(node_id: str) -> Tuple[int, int]:
		return (first_out.get(node_id, no_edge), position[node_id])

	ready = [(priority(node_id), node_id) for node_id in node_ids if in_degree[node_id] == 0]
	heapq.heapify(ready)

	ordered : List[str] = []
	while ready:
		_, node_id = heapq.heappop(ready)
		ordered.append(node_id)
		for target in outgoing[node_id]:
			in_degree[target] -= 1
			if in_degree[target] == 0:
				heapq.heappush(ready, (priority(target), target))

	emitted   = set(ordered)
	remaining = [node_id for node_id in node_ids if node_id not in emitted]
	return ordered, remaining
