# cycles

from   functools import lru_cache
from   typing    import Dict, List, Sequence, Tuple


from   .graph    import WorkflowError
from   .schema   import BaseNode, Edge, NodeKind


class SchedulingError(WorkflowError):
	pass


class MalformedCycleError(SchedulingError):
	pass


@lru_cache(maxsize=128)
def _tarjan(node_ids: Tuple[str, ...], edge_pairs: Tuple[Tuple[str, str], ...]) -> Tuple[Tuple[str, ...], ...]:
	adjacency = {node_id: [] for node_id in node_ids}
	for source, target in edge_pairs:
		if source in adjacency and target in adjacency:
			adjacency[source].append(target)

	counter    = 0
	indices    : Dict[str, int] = {}
	low_links  : Dict[str, int] = {}
	stack      : List[str]      = []
	on_stack   = set()
	components : List[Tuple[str, ...]] = []

	for root in node_ids:
		if root in indices:
			continue

		indices[root] = low_links[root] = counter
		counter += 1
		stack.append(root)
		on_stack.add(root)
		work = [(root, iter(adjacency[root]))]

		while work:
			node, neighbours = work[-1]
			descended = False
			for neighbour in neighbours:
				if neighbour not in indices:
					indices[neighbour] = low_links[neighbour] = counter
					counter += 1
					stack.append(neighbour)
					on_stack.add(neighbour)
					work.append((neighbour, iter(adjacency[neighbour])))
					descended = True
					break
				if neighbour in on_stack:
					low_links[node] = min(low_links[node], indices[neighbour])
			if descended:
				continue

			work.pop()
			if work:
				parent = work[-1][0]
				low_links[parent] = min(low_links[parent], low_links[node])

			if low_links[node] == indices[node]:
				component = []
				while True:
					member = stack.pop()
					on_stack.discard(member)
					component.append(member)
					if member == node:
						break
				component.reverse()
				components.append(tuple(component))

	return tuple(components)


def strongly_connected_components(node_ids: Sequence[str], edges: Sequence[Edge]) -> List[List[str]]:
	"""
	Tarjan's algorithm, iterative so deep chains do not hit the recursion limit.
	Components come out in emission order (reverse topological): a component is
	emitted only after every component it reaches. Roots are visited in node order
	and neighbours in edge insertion order, so the result is deterministic.
	Results are cached by the structural (node ids, edge pairs) key.
	"""
	pairs = tuple((edge.source, edge.target) for edge in edges)
	return [list(component) for component in _tarjan(tuple(node_ids), pairs)]


def has_self_loop(node_id: str, edges: Sequence[Edge]) -> bool:
	return any(edge.source == node_id and edge.target == node_id for edge in edges)


def nontrivial_components(node_ids: Sequence[str], edges: Sequence[Edge]) -> List[List[str]]:
	"""Components that form an actual cycle: more than one node, or a single node with a self edge"""
	result = []
	for component in strongly_connected_components(node_ids, edges):
		if len(component) > 1 or has_self_loop(component[0], edges):
			result.append(component)
	return result


def check_cycles(nodes: Sequence[BaseNode], edges: Sequence[Edge]):
	"""Raise MalformedCycleError for any cycle that is not anchored by a loop-start/loop-end pair"""
	kinds  = {node.id: node.type for node in nodes}
	errors : Dict[str, str] = {}

	for component in nontrivial_components(list(kinds), edges):
		members = {kinds[node_id] for node_id in component}
		if NodeKind.LOOP_START.value in members and NodeKind.LOOP_END.value in members:
			continue
		for node_id in component:
			errors[node_id] = "Node is part of a cycle that is not a loop (add a Loop Start and Loop End)"

	if errors:
		raise MalformedCycleError("Workflow contains a cycle outside of a loop", errors)

