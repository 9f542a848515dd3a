import pytest

from flowline.cycles import MalformedCycleError
from flowline.loops import LoopStructureError, back_edge_ids, expand_loops, find_loop_regions

from helpers import edge, llm, loop_end, loop_start, text


def test_body_repeats_once_per_iteration():
	nodes = [loop_start("s", iterations=3, loop_variable="k"), llm("b", "go ${k}"), text("c", "x"), loop_end("e")]
	edges = [edge("s", "b"), edge("b", "c"), edge("c", "e"), edge("e", "s")]

	steps = expand_loops(nodes, edges)
	assert [step.node_id for step in steps] == ["s", "b", "c", "e"] * 3

	body = [step for step in steps if step.node_id == "b"]
	assert [step.bindings["k"] for step in body] == [0, 1, 2]
	assert [step.iteration for step in body] == [0, 1, 2]
	assert {step.loop_id for step in steps} == {"s"}


def test_single_pass_without_iteration():
	nodes = [loop_start("s", iterations=4), llm("b", "go"), loop_end("e")]
	edges = [edge("s", "b"), edge("b", "e")]
	assert [step.node_id for step in expand_loops(nodes, edges, iterate=False)] == ["s", "b", "e"]


def test_nodes_around_a_loop_keep_their_place():
	nodes = [text("pre"), loop_start("s", iterations=2), llm("b", "go"), loop_end("e"), text("post")]
	edges = [edge("pre", "s"), edge("s", "b"), edge("b", "e"), edge("e", "post")]
	order = [step.node_id for step in expand_loops(nodes, edges)]
	assert order == ["pre", "s", "b", "e", "s", "b", "e", "post"]


def test_region_pairs_start_and_end():
	nodes = [loop_start("s", iterations=2), llm("b", "go"), text("c"), loop_end("e")]
	edges = [edge("s", "b"), edge("s", "c"), edge("b", "e"), edge("c", "e"), edge("e", "s")]

	regions = find_loop_regions(nodes, edges)
	assert len(regions) == 1
	region = regions[0]
	assert (region.start_id, region.end_id, region.body) == ("s", "e", ["b", "c"])
	assert back_edge_ids(regions, edges) == {"e->s"}


def test_missing_loop_end():
	nodes = [loop_start("s"), llm("b", "go")]
	edges = [edge("s", "b")]
	with pytest.raises(LoopStructureError) as exc:
		find_loop_regions(nodes, edges)
	assert exc.value.errors == {"s": "Loop Start has no matching Loop End"}


def test_orphan_loop_end():
	nodes = [text("a"), loop_end("e")]
	edges = [edge("a", "e")]
	with pytest.raises(LoopStructureError) as exc:
		find_loop_regions(nodes, edges)
	assert exc.value.errors == {"e": "Loop End has no matching Loop Start"}


def test_nested_loops_are_rejected():
	nodes = [loop_start("outer"), loop_start("inner"), llm("b", "go"), loop_end("inner_end"), loop_end("outer_end")]
	edges = [
		edge("outer", "inner"), edge("inner", "b"), edge("b", "inner_end"),
		edge("inner_end", "outer_end"),
	]
	with pytest.raises(LoopStructureError) as exc:
		find_loop_regions(nodes, edges)
	assert exc.value.errors["outer"] == "Nested loops are not supported"


def test_iterations_below_one_are_rejected():
	nodes = [loop_start("s", iterations=0), llm("b", "go"), loop_end("e")]
	edges = [edge("s", "b"), edge("b", "e")]
	with pytest.raises(LoopStructureError) as exc:
		expand_loops(nodes, edges)
	assert "at least 1" in exc.value.errors["s"]


def test_every_problem_on_a_loop_start_is_kept():
	nodes = [loop_start("s", iterations=0), llm("b", "go")]
	edges = [edge("s", "b")]
	with pytest.raises(LoopStructureError) as exc:
		find_loop_regions(nodes, edges)
	assert exc.value.errors == {"s": "Loop iterations must be at least 1 (got 0); Loop Start has no matching Loop End"}


def test_shared_body_node_is_rejected():
	nodes = [loop_start("s1"), loop_start("s2"), text("shared"), loop_end("e1"), loop_end("e2")]
	edges = [edge("s1", "shared"), edge("s2", "shared"), edge("shared", "e1"), edge("shared", "e2")]
	with pytest.raises(LoopStructureError):
		find_loop_regions(nodes, edges)


def test_two_independent_loops():
	nodes = [
		loop_start("s1", iterations=2), llm("b1", "one"), loop_end("e1"),
		loop_start("s2", iterations=1), llm("b2", "two"), loop_end("e2"),
	]
	edges = [
		edge("s1", "b1"), edge("b1", "e1"), edge("e1", "s1"),
		edge("s2", "b2"), edge("b2", "e2"), edge("e2", "s2"),
		edge("e1", "s2"),
	]
	order = [step.node_id for step in expand_loops(nodes, edges)]
	assert order == ["s1", "b1", "e1", "s1", "b1", "e1", "s2", "b2", "e2"]


def test_cycle_outside_loop_markers_still_rejected():
	nodes = [loop_start("s"), llm("b", "go"), loop_end("e"), text("x"), text("y")]
	edges = [edge("s", "b"), edge("b", "e"), edge("x", "y"), edge("y", "x")]
	with pytest.raises(MalformedCycleError):
		expand_loops(nodes, edges)
