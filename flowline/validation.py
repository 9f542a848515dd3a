# validation

from   typing    import Dict, Sequence


from   .cycles   import MalformedCycleError, check_cycles
from   .graph    import WorkflowError, dangling_edges, effective_active, induced_edges, is_kind
from   .loops    import LoopStructureError, find_loop_regions
from   .schema   import BaseNode, Edge, NodeKind


class WorkflowValidationError(WorkflowError):
	pass


_REQUIRED_CONTENT = {
	NodeKind.SHELL   .value : "Command field is required",
	NodeKind.LLM     .value : "Prompt field is required",
	NodeKind.IF_ELSE .value : "Condition field is required",
}


def _check_node(node: BaseNode) -> str:
	message = _REQUIRED_CONTENT.get(node.type)
	if message and not (node.data.content or "").strip():
		return message
	if node.type in (NodeKind.ACCUMULATOR.value, NodeKind.VARIABLE.value) and not (node.data.variable_name or "").strip():
		return "Variable name is required"
	if is_kind(node, NodeKind.LOOP_START):
		iterations = node.data.iterations
		if iterations is None or iterations < 1:
			return f"Loop iterations must be at least 1 (got {iterations})"
	return ""


def validate_workflow(nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> Dict[str, str]:
	"""
	Pre-flight check of a workflow.
	Returns a node id -> message map, empty when the workflow may run.
	Only effectively active nodes are checked; dangling edges are reported under the edge id.
	"""
	errors : Dict[str, str] = {}

	for edge in dangling_edges(nodes, edges):
		errors[edge.id] = f"Edge '{edge.id}' references a missing node ({edge.source} -> {edge.target})"

	active       = effective_active(nodes, edges)
	active_edges = induced_edges([node.id for node in active], edges)

	for node in active:
		message = _check_node(node)
		if message:
			errors[node.id] = message

	try:
		check_cycles(active, active_edges)
		if any(is_kind(node, NodeKind.LOOP_START) for node in active):
			find_loop_regions(active, active_edges)
	except (MalformedCycleError, LoopStructureError) as e:
		for node_id, message in e.errors.items():
			errors.setdefault(node_id, message)

	return errors


def ensure_valid(nodes: Sequence[BaseNode], edges: Sequence[Edge]):
	errors = validate_workflow(nodes, edges)
	if errors:
		raise WorkflowValidationError(f"Workflow has {len(errors)} validation error(s)", errors)
