# graph

from   collections import defaultdict, deque
from   typing      import Dict, Iterable, List, Optional, Sequence, Set, Tuple


from   .schema     import WORKFLOW_VERSION, BaseNode, Edge, NodeKind, Workflow, generate_id


class WorkflowError(Exception):
	"""Base error carrying an optional node id -> message map"""

	def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
		super().__init__(message)
		self.errors : Dict[str, str] = dict(errors or {})


class GraphError(WorkflowError):
	pass


def outgoing_map(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> Dict[str, List[str]]:
	"""Outgoing neighbours per node in edge insertion order, restricted to known nodes"""
	known    = {node.id for node in nodes}
	outgoing = defaultdict(list)
	for edge in edges:
		if edge.source in known and edge.target in known:
			outgoing[edge.source].append(edge.target)
	return outgoing


def walk_loop(start_id: str, outgoing: Dict[str, List[str]], kinds: Dict[str, str]) -> Tuple[List[str], List[str], List[str]]:
	"""
	Breadth-first walk from a loop-start in edge order.
	Loop-end nodes are collected but never walked through.
	Returns (loop ends reached in order, body nodes, other loop-starts reached).
	"""
	ends    : List[str] = []
	starts  : List[str] = []
	visited : Set[str]  = {start_id}
	body    : List[str] = []
	queue   = deque([start_id])

	while queue:
		current = queue.popleft()
		for target in outgoing[current]:
			if target in visited:
				continue
			visited.add(target)
			kind = kinds[target]
			if kind == NodeKind.LOOP_END.value:
				ends.append(target)
			elif kind == NodeKind.LOOP_START.value:
				starts.append(target)
			else:
				body.append(target)
				queue.append(target)

	return ends, body, starts


def downstream_closure(start_ids: Iterable[str], edges: Sequence[Edge]) -> Set[str]:
	"""Every node reachable from start_ids over outgoing edges (start nodes excluded unless on a cycle)"""
	outgoing = defaultdict(list)
	for edge in edges:
		outgoing[edge.source].append(edge.target)

	visited : Set[str] = set()
	queue   = deque(start_ids)
	while queue:
		current = queue.popleft()
		for target in outgoing[current]:
			if target not in visited:
				visited.add(target)
				queue.append(target)
	return visited


def inactive_node_ids(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> Set[str]:
	"""
	Explicitly inactive nodes plus everything downstream of them.
	A loop whose body or loop-end is inactive goes inactive as a whole, from its
	loop-start on, whether or not the graph carries the closing back edge.
	"""
	explicit = [node.id for node in nodes if node.data.active is False]
	inactive = set(explicit) | downstream_closure(explicit, edges)
	if not inactive:
		return inactive

	kinds    = {node.id: node.type for node in nodes}
	outgoing = outgoing_map(nodes, edges)
	changed  = True
	while changed:
		changed = False
		for node in nodes:
			if node.id in inactive or not is_kind(node, NodeKind.LOOP_START):
				continue
			ends, body, _ = walk_loop(node.id, outgoing, kinds)
			if inactive.intersection(ends) or inactive.intersection(body):
				inactive |= {node.id} | downstream_closure([node.id], edges)
				changed = True
	return inactive


def effective_active(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> List[BaseNode]:
	deactivated = inactive_node_ids(nodes, edges)
	return [node for node in nodes if node.data.active is not False and node.id not in deactivated]


def induced_edges(node_ids: Iterable[str], edges: Sequence[Edge]) -> List[Edge]:
	keep = set(node_ids)
	return [edge for edge in edges if edge.source in keep and edge.target in keep]


def dangling_edges(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> List[Edge]:
	known = {node.id for node in nodes}
	return [edge for edge in edges if edge.source not in known or edge.target not in known]


def is_kind(node: BaseNode, kind: NodeKind) -> bool:
	return node.type == kind.value


class WorkflowGraph:
	"""
	Node and edge store for one workflow session.
	Nodes and edges keep insertion order; edge position is the tie-break index used by the scheduler.
	Structural mutation only: cycles are checked by the cycle analyzer, never here.
	"""

	def __init__(self, nodes: Optional[Sequence[BaseNode]] = None, edges: Optional[Sequence[Edge]] = None):
		self._nodes : Dict[str, BaseNode] = {}
		self._edges : List[Edge]          = []
		for node in nodes or []:
			self.add_node(node)
		# Loaded edges are kept verbatim; dangling ones are reported at validation time
		self._edges.extend(edges or [])


	@classmethod
	def from_workflow(cls, workflow: Workflow) -> "WorkflowGraph":
		return cls(workflow.nodes, workflow.edges)


	def to_workflow(self, version: str = WORKFLOW_VERSION) -> Workflow:
		return Workflow(nodes=self.nodes, edges=self.edges, version=version)


	@property
	def nodes(self) -> List[BaseNode]:
		return list(self._nodes.values())


	@property
	def edges(self) -> List[Edge]:
		return list(self._edges)


	def get_node(self, node_id: str) -> Optional[BaseNode]:
		return self._nodes.get(node_id)


	def add_node(self, node: BaseNode) -> BaseNode:
		if node.id in self._nodes:
			raise GraphError(f"Node '{node.id}' already exists")
		self._nodes[node.id] = node
		return node


	def update_node(self, node: BaseNode) -> BaseNode:
		if node.id not in self._nodes:
			raise GraphError(f"Node '{node.id}' not found")
		self._nodes[node.id] = node
		return node


	def remove_node(self, node_id: str) -> bool:
		if node_id not in self._nodes:
			return False
		del self._nodes[node_id]
		self.remove_edges_touching(node_id)
		return True


	def add_edge(self, source: str, target: str, source_handle: Optional[str] = None, edge_id: Optional[str] = None) -> Edge:
		missing = [node_id for node_id in (source, target) if node_id not in self._nodes]
		if missing:
			raise GraphError(f"Edge endpoint(s) not found: {', '.join(missing)}")
		edge = Edge(id=edge_id or generate_id(), source=source, target=target, source_handle=source_handle)
		self._edges.append(edge)
		return edge


	def remove_edge(self, edge_id: str) -> bool:
		count = len(self._edges)
		self._edges = [edge for edge in self._edges if edge.id != edge_id]
		return len(self._edges) != count


	def remove_edges_touching(self, node_id: str) -> int:
		count = len(self._edges)
		self._edges = [edge for edge in self._edges if edge.source != node_id and edge.target != node_id]
		return count - len(self._edges)


	def downstream_of(self, node_id: str) -> Set[str]:
		return downstream_closure([node_id], self._edges)


	def dangling_edges(self) -> List[Edge]:
		return dangling_edges(self.nodes, self._edges)


	def inactive_node_ids(self) -> Set[str]:
		return inactive_node_ids(self.nodes, self._edges)


	def clear(self):
		self._nodes = {}
		self._edges = []
