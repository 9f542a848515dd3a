# nodes

import asyncio
import inspect
import os
import re


from   jinja2.sandbox import SandboxedEnvironment
from   pydantic       import BaseModel
from   typing         import Any, Callable, Dict, List, Optional


from   .graph         import WorkflowError
from   .schema        import DEFAULT_WORKFLOW_LLM_TIMEOUT, IF_ELSE_FALSE_HANDLE, IF_ELSE_TRUE_HANDLE, BaseNode, NodeKind
from   .templating    import render_template, sanitize_for_shell


FORBIDDEN_COMMANDS = frozenset({
	"rm", "chmod", "shutdown", "history", "user", "sudo", "su", "passwd",
	"chown", "chgrp", "kill", "reboot", "poweroff", "init", "systemctl",
	"journalctl", "dmesg", "lsblk", "lsmod", "modprobe", "insmod", "rmmod",
	"lsusb", "lspci",
})

HOME_PATTERN = re.compile(r"(^|\s)~/")


class NodeAbortedError(WorkflowError):
	pass


class NodeExecutionContext:
	def __init__(self):
		self.inputs      : List[str]               = []
		self.variables   : Dict[str, Any]          = {}
		self.node_config : Optional[BaseNode]      = None
		self.command     : Optional[str]           = None  # approved shell command overriding the rendered one
		self.abort_event : Optional[asyncio.Event] = None


class NodeExecutionResult:
	def __init__(self):
		self.content     : str            = ""
		self.success     : bool           = True
		self.error       : Optional[str]  = None
		self.next_target : Optional[str]  = None
		self.variables   : Dict[str, Any] = {}


class NodeBackend(BaseModel):
	"""Host supplied capabilities; each callable may be sync or async"""
	run_llm        : Optional[Callable] = None  # (prompt, options) -> str
	search_context : Optional[Callable] = None  # (query, local_remote) -> str
	run_shell      : Optional[Callable] = None  # (command, abort_event) -> str, replaces the subprocess runner

	class Config:
		arbitrary_types_allowed = True


async def _call(fn: Callable, *args, **kwargs) -> Any:
	result = fn(*args, **kwargs)
	if inspect.isawaitable(result):
		result = await result
	return result


def _joined(context: NodeExecutionContext) -> str:
	return "\n".join(context.inputs)


class WFBaseNode:
	def __init__(self, config: BaseNode, backend: Optional[NodeBackend] = None, **kwargs):
		self.config  = config
		self.backend = backend or NodeBackend()

	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = NodeExecutionResult()
		return result

	def render(self, context: NodeExecutionContext, template: Optional[str] = None, inputs: Optional[List[str]] = None) -> str:
		if template is None:
			template = self.config.data.content
		return render_template(template, context.inputs if inputs is None else inputs, context.variables)


class WFTextNode(WFBaseNode):
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		result.content = self.render(context).strip()
		return result


class WFPreviewNode(WFBaseNode):
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		result.content = _joined(context).strip()
		return result


class WFOutputNode(WFBaseNode):
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		result.content = _joined(context)
		return result


class WFLoopStartNode(WFBaseNode):
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		name   = self.config.data.loop_variable
		result.content = str(context.variables.get(name, ""))
		return result


class WFLoopEndNode(WFBaseNode):
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		result.content = _joined(context)
		return result


class WFVariableNode(WFBaseNode):
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		data   = self.config.data
		if context.inputs:
			value = _joined(context)
		else:
			value = self.render(context, data.initial_value)
		result.content   = value
		result.variables = {data.variable_name: value}
		return result


class WFAccumulatorNode(WFBaseNode):
	"""Appends its input to a run-wide binding, one entry per line"""
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result   = await super().execute(context)
		data     = self.config.data
		current  = context.variables.get(data.variable_name)
		if current is None:
			current = self.render(context, data.initial_value)
		addition = self.render(context) if data.content else _joined(context)
		value    = f"{current}\n{addition}" if current else addition
		result.content   = value
		result.variables = {data.variable_name: value}
		return result


class WFIfElseNode(WFBaseNode):
	_environment = SandboxedEnvironment()

	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)

		try:
			expression = self._environment.compile_expression(self.config.data.content)
			scope      = dict(context.variables)
			scope.update(input=_joined(context), inputs=list(context.inputs))
			taken      = bool(expression(**scope))

			result.content     = _joined(context)
			result.next_target = IF_ELSE_TRUE_HANDLE if taken else IF_ELSE_FALSE_HANDLE

		except Exception as e:
			result.success = False
			result.error   = f"Invalid condition: {e}"

		return result


class WFSearchContextNode(WFBaseNode):
	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		if self.backend.search_context is None:
			result.success = False
			result.error   = "Search context backend is not configured"
			return result
		query = self.render(context) if self.config.data.content else _joined(context)
		found = await _call(self.backend.search_context, query, self.config.data.local_remote)
		result.content = found or ""
		return result


class WFLLMNode(WFBaseNode):
	def __init__(self, config: BaseNode, backend: Optional[NodeBackend] = None, **kwargs):
		super().__init__(config, backend, **kwargs)
		self.timeout = kwargs.get("llm_timeout", DEFAULT_WORKFLOW_LLM_TIMEOUT)

	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result = await super().execute(context)
		data   = self.config.data

		prompt = self.render(context).strip()
		if not prompt:
			result.success = False
			result.error   = f"No prompt specified for LLM node {self.config.id} with {data.title}"
			return result

		if self.backend.run_llm is None:
			result.success = False
			result.error   = "LLM backend is not configured"
			return result

		options = {
			"temperature" : data.temperature,
			"max_tokens"  : data.max_tokens,
			"fast"        : data.fast,
			"model"       : data.model,
		}

		try:
			reply = await asyncio.wait_for(_call(self.backend.run_llm, prompt, options), timeout=self.timeout)
			result.content = reply or ""
		except asyncio.TimeoutError:
			result.success = False
			result.error   = "LLM request timed out"

		return result


def expand_home(command: str) -> str:
	home = os.path.expanduser("~")
	return HOME_PATTERN.sub(lambda m: f"{m.group(1)}{home}{os.sep}", command)


def check_command(command: str):
	words = command.split()
	if words and words[0] in FORBIDDEN_COMMANDS:
		raise WorkflowError(f"Command '{words[0]}' is not allowed in workflows")


async def run_subprocess(command: str, abort_event: Optional[asyncio.Event] = None) -> str:
	"""Run a shell command, killing it when abort_event fires"""
	process = await asyncio.create_subprocess_shell(
		command,
		stdout = asyncio.subprocess.PIPE,
		stderr = asyncio.subprocess.PIPE,
	)
	communicate = asyncio.ensure_future(process.communicate())
	waiters     = {communicate}
	aborted     = None
	if abort_event is not None:
		aborted = asyncio.ensure_future(abort_event.wait())
		waiters.add(aborted)

	try:
		done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
		if communicate not in done:
			process.kill()
			await communicate
			raise NodeAbortedError("Workflow execution aborted")
	finally:
		if process.returncode is None:
			process.kill()
		if aborted is not None:
			aborted.cancel()

	stdout, stderr = communicate.result()
	if process.returncode != 0:
		detail = (stderr or stdout or b"").decode(errors="replace").strip()
		raise WorkflowError(f"Command failed with exit code {process.returncode}: {detail}")
	return stdout.decode(errors="replace").strip()


class WFShellNode(WFBaseNode):
	def render_command(self, context: NodeExecutionContext) -> str:
		if context.command is not None:
			return context.command
		inputs    = [sanitize_for_shell(text) for text in context.inputs]
		variables = {name: sanitize_for_shell(str(value)) for name, value in context.variables.items()}
		return render_template(self.config.data.content, inputs, variables).strip()

	async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
		result  = await super().execute(context)
		command = expand_home(self.render_command(context))
		check_command(command)

		if self.backend.run_shell is not None:
			output = await _call(self.backend.run_shell, command, context.abort_event)
		else:
			output = await run_subprocess(command, context.abort_event)

		result.content = output or ""
		return result


_NODE_TYPES = {
	NodeKind.SHELL          .value : WFShellNode,
	NodeKind.LLM            .value : WFLLMNode,
	NodeKind.PREVIEW        .value : WFPreviewNode,
	NodeKind.TEXT           .value : WFTextNode,
	NodeKind.SEARCH_CONTEXT .value : WFSearchContextNode,
	NodeKind.OUTPUT         .value : WFOutputNode,
	NodeKind.LOOP_START     .value : WFLoopStartNode,
	NodeKind.LOOP_END       .value : WFLoopEndNode,
	NodeKind.ACCUMULATOR    .value : WFAccumulatorNode,
	NodeKind.VARIABLE       .value : WFVariableNode,
	NodeKind.IF_ELSE        .value : WFIfElseNode,
}


def create_node(node: BaseNode, backend: Optional[NodeBackend] = None, **kwargs) -> WFBaseNode:
	node_class = _NODE_TYPES.get(node.type, WFBaseNode)
	return node_class(node, backend, **kwargs)
