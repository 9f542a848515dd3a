import asyncio
import os

import pytest

from flowline.graph import WorkflowError
from flowline.nodes import (
	NodeAbortedError,
	NodeBackend,
	WFAccumulatorNode,
	WFBaseNode,
	WFIfElseNode,
	WFLLMNode,
	WFShellNode,
	WFTextNode,
	check_command,
	create_node,
	expand_home,
	run_subprocess,
)

from helpers import (
	RecordingBackend,
	accumulator,
	context,
	if_else,
	llm,
	loop_start,
	output,
	search,
	shell,
	text,
	variable,
)


async def test_text_node_renders_inputs_and_bindings():
	node   = create_node(text("t", "  ${1} #${n}  "))
	result = await node.execute(context(["hello"], {"n": 2}))
	assert isinstance(node, WFTextNode)
	assert result.success and result.content == "hello #2"


async def test_output_node_joins_inputs():
	result = await create_node(output("o")).execute(context(["a", "b"]))
	assert result.content == "a\nb"


async def test_loop_start_exposes_its_binding():
	result = await create_node(loop_start("s", loop_variable="k")).execute(context(variables={"k": 1}))
	assert result.content == "1"


async def test_variable_prefers_inputs_over_initial_value():
	node = create_node(variable("v", "greeting", "hi ${who}"))

	result = await node.execute(context(variables={"who": "there"}))
	assert result.variables == {"greeting": "hi there"}

	result = await node.execute(context(["from parent"]))
	assert result.variables == {"greeting": "from parent"}


async def test_accumulator_appends_lines():
	node = create_node(accumulator("acc", "log", "start"))
	assert isinstance(node, WFAccumulatorNode)

	first  = await node.execute(context(["one"]))
	second = await node.execute(context(["two"], first.variables))
	assert first.content == "start\none"
	assert second.variables == {"log": "start\none\ntwo"}


@pytest.mark.parametrize("condition, handle", [
	("input == 'yes'",          "true"),
	("input | length > 10",     "false"),
	("count >= 3",              "true"),
])
async def test_if_else_picks_handle(condition, handle):
	node   = create_node(if_else("c", condition))
	result = await node.execute(context(["yes"], {"count": 3}))
	assert isinstance(node, WFIfElseNode)
	assert result.success and result.next_target == handle
	assert result.content == "yes"


async def test_if_else_invalid_condition():
	result = await create_node(if_else("c", "input ==")).execute(context(["x"]))
	assert not result.success
	assert result.error.startswith("Invalid condition")


async def test_if_else_blocks_unsafe_attributes():
	result = await create_node(if_else("c", "input.__class__()")).execute(context(["x"]))
	assert not result.success


async def test_llm_node_passes_options():
	seen = {}

	def run_llm(prompt, options):
		seen.update(options, prompt=prompt)
		return "answer"

	node   = create_node(llm("l", "Explain ${1}", temperature=0.5, maxTokens=42), NodeBackend(run_llm=run_llm))
	result = await node.execute(context(["tabs"]))
	assert isinstance(node, WFLLMNode)
	assert result.content == "answer"
	assert seen == {"prompt": "Explain tabs", "temperature": 0.5, "max_tokens": 42, "fast": True, "model": None}


async def test_llm_node_without_prompt():
	result = await create_node(llm("l", "${1}"), RecordingBackend().backend()).execute(context())
	assert not result.success
	assert result.error == "No prompt specified for LLM node l with l"


async def test_llm_node_without_backend():
	result = await create_node(llm("l", "hi")).execute(context())
	assert not result.success
	assert "not configured" in result.error


async def test_llm_node_timeout():
	async def slow(prompt, options):
		await asyncio.sleep(1)
		return "late"

	node   = create_node(llm("l", "hi"), NodeBackend(run_llm=slow), llm_timeout=0.01)
	result = await node.execute(context())
	assert not result.success
	assert result.error == "LLM request timed out"


async def test_search_context_node():
	recorder = RecordingBackend()
	result   = await create_node(search("s"), recorder.backend()).execute(context(["where"]))
	assert result.content == "context:where"
	assert recorder.calls == [("search", "where")]


async def test_shell_node_escapes_parent_output():
	recorder = RecordingBackend()
	node     = create_node(shell("sh", 'echo "${1}"'), recorder.backend())
	result   = await node.execute(context(['a"b $HOME']))
	assert isinstance(node, WFShellNode)
	assert recorder.prompts("shell") == ['echo "a\\"b \\$HOME"']
	assert result.content.startswith("out:")


async def test_shell_node_escapes_bindings():
	recorder = RecordingBackend()
	payload  = 'a"; touch /tmp/x; echo "'
	node     = create_node(shell("sh", 'echo "${1}" "${name}" ${i}'), recorder.backend())
	await node.execute(context([payload], {"name": payload, "i": 2}))
	escaped  = 'a\\"; touch /tmp/x; echo \\"'
	assert recorder.prompts("shell") == [f'echo "{escaped}" "{escaped}" 2']


async def test_shell_node_prefers_approved_command():
	recorder = RecordingBackend()
	ctx      = context()
	ctx.command = "echo approved"
	await create_node(shell("sh", "echo original"), recorder.backend()).execute(ctx)
	assert recorder.prompts("shell") == ["echo approved"]


async def test_shell_node_rejects_forbidden_command():
	recorder = RecordingBackend()
	with pytest.raises(WorkflowError):
		await create_node(shell("sh", "sudo ls"), recorder.backend()).execute(context())
	assert recorder.calls == []


def test_check_command_only_looks_at_first_word():
	check_command("echo rm")
	with pytest.raises(WorkflowError) as exc:
		check_command("rm -rf /tmp/x")
	assert str(exc.value) == "Command 'rm' is not allowed in workflows"


def test_expand_home():
	home = os.path.expanduser("~")
	assert expand_home("ls ~/docs") == f"ls {home}{os.sep}docs"
	assert expand_home("echo a~/b") == "echo a~/b"


async def test_run_subprocess_returns_stdout():
	assert await run_subprocess("echo hello") == "hello"


async def test_run_subprocess_reports_exit_code():
	with pytest.raises(WorkflowError) as exc:
		await run_subprocess("echo broken >&2; exit 3")
	assert str(exc.value) == "Command failed with exit code 3: broken"


async def test_run_subprocess_stops_on_abort():
	abort_event = asyncio.Event()
	asyncio.get_running_loop().call_later(0.05, abort_event.set)
	with pytest.raises(NodeAbortedError):
		await run_subprocess("sleep 5", abort_event)


def test_unknown_kind_falls_back_to_base_executor():
	node = text("t")
	node.type = "mystery"
	assert type(create_node(node)) is WFBaseNode
