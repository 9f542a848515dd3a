import pytest

from flowline.cycles import (
	MalformedCycleError,
	check_cycles,
	nontrivial_components,
	strongly_connected_components,
)

from helpers import edge, llm, loop_end, loop_start, text


def _two_anchored_loops():
	nodes = [
		loop_start("s1"), llm("b1", "one"), loop_end("e1"),
		loop_start("s2"), llm("b2", "two"), loop_end("e2"),
		text("t1"), text("t2"),
	]
	edges = [
		edge("s1", "b1"), edge("b1", "e1"), edge("e1", "s1"),
		edge("s2", "b2"), edge("b2", "e2"), edge("e2", "s2"),
		edge("t1", "t2"),
	]
	return nodes, edges


def test_two_disjoint_loops_give_two_components():
	nodes, edges = _two_anchored_loops()
	components   = nontrivial_components([node.id for node in nodes], edges)

	assert len(components) == 2
	assert sorted(map(frozenset, components), key=sorted) == [
		frozenset({"b1", "e1", "s1"}),
		frozenset({"b2", "e2", "s2"}),
	]
	check_cycles(nodes, edges)


def test_trivial_nodes_are_singletons():
	nodes, edges = _two_anchored_loops()
	components   = strongly_connected_components([node.id for node in nodes], edges)
	singletons   = [c for c in components if len(c) == 1]
	assert sorted(c[0] for c in singletons) == ["t1", "t2"]


def test_components_come_out_in_reverse_topological_order():
	edges = [edge("a", "b"), edge("b", "c")]
	assert strongly_connected_components(["a", "b", "c"], edges) == [["c"], ["b"], ["a"]]


def test_self_loop_is_a_cycle():
	nodes = [text("a")]
	edges = [edge("a", "a")]
	assert nontrivial_components(["a"], edges) == [["a"]]
	with pytest.raises(MalformedCycleError) as exc:
		check_cycles(nodes, edges)
	assert set(exc.value.errors) == {"a"}


def test_cycle_without_loop_markers_is_rejected():
	nodes = [text("a"), text("b"), text("c"), text("d")]
	edges = [edge("a", "b"), edge("b", "c"), edge("c", "a"), edge("c", "d")]
	with pytest.raises(MalformedCycleError) as exc:
		check_cycles(nodes, edges)
	assert set(exc.value.errors) == {"a", "b", "c"}


def test_cycle_with_only_loop_start_is_rejected():
	nodes = [loop_start("s"), text("a")]
	edges = [edge("s", "a"), edge("a", "s")]
	with pytest.raises(MalformedCycleError):
		check_cycles(nodes, edges)


def test_deep_chain_does_not_recurse():
	ids   = [f"n{i}" for i in range(5000)]
	edges = [edge(ids[i], ids[i + 1]) for i in range(len(ids) - 1)]
	components = strongly_connected_components(ids, edges)
	assert len(components) == len(ids)
	assert components[0] == [ids[-1]]


def test_edges_to_unknown_nodes_are_ignored():
	edges = [edge("a", "ghost"), edge("ghost", "a")]
	assert nontrivial_components(["a"], edges) == []
