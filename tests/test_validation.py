import pytest

from flowline.validation import WorkflowValidationError, ensure_valid, validate_workflow

from helpers import accumulator, edge, if_else, llm, loop_end, loop_start, shell, text, variable


def test_valid_workflow_has_no_errors():
	nodes = [shell("a", "git diff"), llm("b", "Summarise ${1}"), shell("c", "echo done")]
	edges = [edge("a", "b"), edge("b", "c")]
	assert validate_workflow(nodes, edges) == {}


@pytest.mark.parametrize("node, message", [
	(shell("n", "   "),       "Command field is required"),
	(llm("n", ""),            "Prompt field is required"),
	(if_else("n", ""),        "Condition field is required"),
	(variable("n", ""),       "Variable name is required"),
	(accumulator("n", " "),   "Variable name is required"),
])
def test_required_fields(node, message):
	assert validate_workflow([node], []) == {"n": message}


def test_inactive_nodes_are_not_checked():
	nodes = [shell("a", "", active=False), llm("b", ""), text("c")]
	edges = [edge("a", "b")]
	assert validate_workflow(nodes, edges) == {}


@pytest.mark.parametrize("back_edge", [False, True])
def test_inactive_loop_body_is_not_an_error(back_edge):
	nodes = [loop_start("s", iterations=2), text("a", active=False), loop_end("e"), text("other")]
	edges = [edge("s", "a"), edge("a", "e")] + ([edge("e", "s")] if back_edge else [])
	assert validate_workflow(nodes, edges) == {}


def test_dangling_edge_is_keyed_by_edge_id():
	nodes  = [text("a")]
	errors = validate_workflow(nodes, [edge("a", "ghost")])
	assert list(errors) == ["a->ghost"]
	assert "missing node" in errors["a->ghost"]


def test_cycle_errors_are_merged():
	nodes  = [text("a"), text("b"), shell("c", "")]
	edges  = [edge("a", "b"), edge("b", "a")]
	errors = validate_workflow(nodes, edges)
	assert set(errors) == {"a", "b", "c"}
	assert errors["c"] == "Command field is required"


def test_loop_errors_are_merged():
	nodes  = [loop_start("s", iterations=0), llm("b", "go")]
	edges  = [edge("s", "b")]
	errors = validate_workflow(nodes, edges)
	assert "at least 1" in errors["s"]


def test_well_formed_loop_passes():
	nodes = [loop_start("s", iterations=2), llm("b", "go ${i}"), loop_end("e")]
	edges = [edge("s", "b"), edge("b", "e"), edge("e", "s")]
	assert validate_workflow(nodes, edges) == {}


def test_ensure_valid_raises_with_errors():
	with pytest.raises(WorkflowValidationError) as exc:
		ensure_valid([llm("n", "")], [])
	assert exc.value.errors == {"n": "Prompt field is required"}
