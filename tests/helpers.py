"""Graph builders and a recording node backend shared by the test modules."""

import asyncio
from typing import Dict, List, Optional, Tuple

from flowline.nodes import NodeBackend, NodeExecutionContext
from flowline.schema import (
	AccumulatorNode,
	AccumulatorNodeData,
	BaseNodeData,
	Edge,
	IfElseNode,
	LLMNode,
	LLMNodeData,
	LoopEndNode,
	LoopStartNode,
	LoopStartNodeData,
	OutputNode,
	SearchContextNode,
	ShellNode,
	ShellNodeData,
	TextNode,
	VariableNode,
	VariableNodeData,
)


def shell(node_id: str, command: str, **data) -> ShellNode:
	return ShellNode(id=node_id, data=ShellNodeData(title=node_id, content=command, **data))


def llm(node_id: str, prompt: str, **data) -> LLMNode:
	return LLMNode(id=node_id, data=LLMNodeData(title=node_id, content=prompt, **data))


def text(node_id: str, content: str = "", **data) -> TextNode:
	return TextNode(id=node_id, data=BaseNodeData(title=node_id, content=content, **data))


def output(node_id: str, **data) -> OutputNode:
	return OutputNode(id=node_id, data=BaseNodeData(title=node_id, **data))


def search(node_id: str, query: str = "", **data) -> SearchContextNode:
	return SearchContextNode(id=node_id, data={"title": node_id, "content": query, **data})


def loop_start(node_id: str, iterations: int = 1, loop_variable: str = "i", **data) -> LoopStartNode:
	return LoopStartNode(id=node_id, data=LoopStartNodeData(title=node_id, iterations=iterations, loop_variable=loop_variable, **data))


def loop_end(node_id: str, **data) -> LoopEndNode:
	return LoopEndNode(id=node_id, data=BaseNodeData(title=node_id, **data))


def if_else(node_id: str, condition: str, **data) -> IfElseNode:
	return IfElseNode(id=node_id, data=BaseNodeData(title=node_id, content=condition, **data))


def variable(node_id: str, name: str, initial: str = "", **data) -> VariableNode:
	return VariableNode(id=node_id, data=VariableNodeData(title=node_id, variable_name=name, initial_value=initial, **data))


def accumulator(node_id: str, name: str, initial: str = "", **data) -> AccumulatorNode:
	return AccumulatorNode(id=node_id, data=AccumulatorNodeData(title=node_id, variable_name=name, initial_value=initial, **data))


def edge(source: str, target: str, handle: Optional[str] = None) -> Edge:
	edge_id = f"{source}->{target}" if handle is None else f"{source}:{handle}->{target}"
	return Edge(id=edge_id, source=source, target=target, source_handle=handle)


def context(inputs: Optional[List[str]] = None, variables: Optional[Dict] = None) -> NodeExecutionContext:
	ctx = NodeExecutionContext()
	ctx.inputs    = list(inputs or [])
	ctx.variables = dict(variables or {})
	return ctx


class RecordingBackend:
	"""Fake executors that record every call; gates let a test hold a node in flight"""

	def __init__(self, fail_commands: Tuple[str, ...] = (), llm_gate: Optional[asyncio.Event] = None, shell_delay: float = 0.0):
		self.calls         : List[Tuple[str, str]] = []
		self.fail_commands = fail_commands
		self.llm_gate      = llm_gate
		self.shell_delay   = shell_delay

	async def run_shell(self, command, abort_event=None):
		self.calls.append(("shell", command))
		if self.shell_delay:
			await asyncio.sleep(self.shell_delay)
		if command in self.fail_commands:
			raise RuntimeError(f"{command} failed")
		return f"out:{command}"

	async def run_llm(self, prompt, options):
		self.calls.append(("llm", prompt))
		if self.llm_gate is not None:
			await self.llm_gate.wait()
		return f"reply:{prompt}"

	def search_context(self, query, local_remote):
		self.calls.append(("search", query))
		return f"context:{query}"

	def backend(self) -> NodeBackend:
		return NodeBackend(run_shell=self.run_shell, run_llm=self.run_llm, search_context=self.search_context)

	def prompts(self, kind: str) -> List[str]:
		return [value for call_kind, value in self.calls if call_kind == kind]


async def wait_until(predicate, timeout: float = 2.0):
	async def poll():
		while not predicate():
			await asyncio.sleep(0.005)
	await asyncio.wait_for(poll(), timeout)
