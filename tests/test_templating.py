from flowline.templating import (
	normalize_output,
	parent_outputs,
	render_template,
	sanitize_for_shell,
	template_variables,
)

from helpers import edge


def test_positional_placeholders_are_one_based():
	assert render_template("${1} and ${2}", ["first", "second"]) == "first and second"


def test_out_of_range_placeholder_is_empty():
	assert render_template("[${3}]", ["only"]) == "[]"


def test_named_placeholder_uses_bindings():
	assert render_template("echo ${i}", [], {"i": 0}) == "echo 0"


def test_unknown_name_is_left_alone():
	assert render_template("cd ${HOME} && ls", [], {"i": 1}) == "cd ${HOME} && ls"


def test_substituted_text_is_not_expanded_again():
	assert render_template("${1}", ["${i}"], {"i": 5}) == "${i}"


def test_empty_template():
	assert render_template("", ["x"]) == ""


def test_normalize_output():
	assert normalize_output("  line one\r\nline two \n") == "line one\nline two"
	assert normalize_output(None) == ""


def test_parent_outputs_follow_edge_order():
	edges   = [edge("b", "t"), edge("a", "t"), edge("a", "other")]
	results = {"a": "A\r\n", "b": " B "}
	assert parent_outputs("t", edges, results) == ["B", "A"]
	assert parent_outputs("t", edges, results, skip_edges={"b->t"}) == ["A"]


def test_parent_without_result_gives_empty_string():
	assert parent_outputs("t", [edge("a", "t")], {}) == [""]


def test_sanitize_for_shell():
	assert sanitize_for_shell('say "hi" $USER `id` \\ \'x\'') == 'say \\"hi\\" \\$USER \\`id\\` \\\\ \\\'x\\\''


def test_template_variables_later_scope_wins():
	assert template_variables({"a": 1, "b": 1}, None, {"b": 2}) == {"a": 1, "b": 2}
