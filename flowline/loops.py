# loops

from   pydantic    import BaseModel, Field
from   typing      import Dict, List, Sequence, Set


from   .cycles     import SchedulingError, check_cycles
from   .graph      import is_kind, outgoing_map, walk_loop
from   .schema     import BaseNode, Edge, NodeKind, ScheduledStep
from   .toposort   import kahn_order


class LoopStructureError(SchedulingError):
	pass


class LoopRegion(BaseModel):
	"""A loop-start, its paired loop-end and the body between them"""
	start_id      : str
	end_id        : str
	body          : List[str] = Field(default_factory=list)  # node order, not execution order
	iterations    : int
	loop_variable : str

	@property
	def members(self) -> Set[str]:
		return {self.start_id, self.end_id, *self.body}


def _add_error(errors: Dict[str, str], node_id: str, message: str):
	errors[node_id] = f"{errors[node_id]}; {message}" if node_id in errors else message


def find_loop_regions(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> List[LoopRegion]:
	"""
	Pair every loop-start with the loop-end it reaches and collect the body.
	Nested or overlapping loops are rejected. All problems are gathered into
	one LoopStructureError keyed by node id; several problems on one node are
	joined with "; ".
	"""
	kinds    = {node.id: node.type for node in nodes}
	order    = {node.id: i for i, node in enumerate(nodes)}
	outgoing = outgoing_map(nodes, edges)

	errors  : Dict[str, str]       = {}
	regions : List[LoopRegion]     = []
	owner   : Dict[str, str]       = {}

	for node in nodes:
		if not is_kind(node, NodeKind.LOOP_START):
			continue

		iterations = node.data.iterations
		if iterations is None or iterations < 1:
			_add_error(errors, node.id, f"Loop iterations must be at least 1 (got {iterations})")

		ends, body, starts = walk_loop(node.id, outgoing, kinds)
		if starts:
			_add_error(errors, node.id, "Nested loops are not supported")
			continue
		if not ends:
			_add_error(errors, node.id, "Loop Start has no matching Loop End")
			continue
		if len(ends) > 1:
			_add_error(errors, node.id, "Loop body reaches more than one Loop End; nested loops are not supported")
			continue

		end_id = ends[0]
		if end_id in owner:
			_add_error(errors, node.id, f"Loop End '{end_id}' is already paired with Loop Start '{owner[end_id]}'")
			continue
		owner[end_id] = node.id

		regions.append(LoopRegion(
			start_id      = node.id,
			end_id        = end_id,
			body          = sorted(body, key=order.get),
			iterations    = iterations if iterations is not None else 0,
			loop_variable = node.data.loop_variable,
		))

	for node in nodes:
		if is_kind(node, NodeKind.LOOP_END) and node.id not in owner and node.id not in errors:
			errors[node.id] = "Loop End has no matching Loop Start"

	claimed : Dict[str, str] = {}
	for region in regions:
		for node_id in region.body:
			if node_id in claimed:
				_add_error(errors, node_id, f"Node belongs to two loops ('{claimed[node_id]}' and '{region.start_id}')")
			else:
				claimed[node_id] = region.start_id

	if errors:
		raise LoopStructureError("Invalid loop structure", errors)

	return regions


def back_edge_ids(regions: Sequence[LoopRegion], edges: Sequence[Edge]) -> Set[str]:
	"""Edges that close a loop: from inside a region back into its own loop-start"""
	result = set()
	for region in regions:
		members = region.members
		for edge in edges:
			if edge.target == region.start_id and edge.source in members:
				result.add(edge.id)
	return result


def _region_order(region: LoopRegion, edges: Sequence[Edge]) -> List[str]:
	"""Loop-start, body in Kahn order, loop-end; raises when the body itself cycles"""
	ordered, remaining = kahn_order([region.start_id, *region.body, region.end_id], edges)
	if remaining:
		raise LoopStructureError(
			"Loop body contains a cycle",
			{node_id: "Node is part of a cycle inside a loop body" for node_id in remaining},
		)
	body = set(region.body)
	return [region.start_id] + [node_id for node_id in ordered if node_id in body] + [region.end_id]


def expand_loops(nodes: Sequence[BaseNode], edges: Sequence[Edge], iterate: bool = True) -> List[ScheduledStep]:
	"""
	Linearise a graph that contains loop regions.

	Each region is contracted to a single vertex, the contracted graph is ordered
	with Kahn, and every region is spliced back in as `iterations` passes of
	[loop-start, body, loop-end]. The loop variable is 0-indexed: pass k binds
	loop_variable = k. With iterate=False a single pass is produced.
	"""
	check_cycles(nodes, edges)
	regions = find_loop_regions(nodes, edges)

	backs   = back_edge_ids(regions, edges)
	forward = [edge for edge in edges if edge.id not in backs]

	rep : Dict[str, str] = {}
	for region in regions:
		for node_id in region.members:
			rep[node_id] = region.start_id

	condensed_ids : List[str] = []
	for node in nodes:
		node_id = rep.get(node.id, node.id)
		if node_id not in condensed_ids:
			condensed_ids.append(node_id)

	condensed_edges : List[Edge] = []
	for edge in forward:
		source = rep.get(edge.source, edge.source)
		target = rep.get(edge.target, edge.target)
		if source != target:
			condensed_edges.append(Edge(id=edge.id, source=source, target=target))

	ordered, remaining = kahn_order(condensed_ids, condensed_edges)
	if remaining:
		raise LoopStructureError(
			"Loop depends on nodes that run after it",
			{node_id: "Node is on a cycle that passes through a loop from outside" for node_id in remaining},
		)

	by_start = {region.start_id: region for region in regions}
	steps    : List[ScheduledStep] = []

	for node_id in ordered:
		region = by_start.get(node_id)
		if region is None:
			steps.append(ScheduledStep(node_id=node_id))
			continue

		sequence = _region_order(region, forward)
		passes   = region.iterations if iterate else 1
		for iteration in range(passes):
			bindings = {region.loop_variable: iteration}
			for member in sequence:
				steps.append(ScheduledStep(
					node_id   = member,
					loop_id   = region.start_id,
					iteration = iteration,
					bindings  = bindings,
				))

	return steps
