# engine

import asyncio
import uuid


from   collections import defaultdict
from   datetime    import datetime
from   enum        import Enum
from   pydantic    import BaseModel
from   typing      import Any, Dict, List, Optional, Sequence, Set


from   .cycles     import SchedulingError
from   .event_bus  import EventType, EventBus
from   .graph      import WorkflowError, WorkflowGraph, effective_active, induced_edges, is_kind
from   .loops      import back_edge_ids, find_loop_regions
from   .nodes      import NodeBackend, NodeExecutionContext, NodeExecutionResult, WFBaseNode, create_node
from   .scheduler  import Scheduler
from   .schema     import IF_ELSE_FALSE_HANDLE, IF_ELSE_TRUE_HANDLE, BaseNode, Edge, NodeKind, ScheduledStep, WorkflowExecutionOptions
from   .templating import parent_outputs, template_variables
from   .utils      import estimate_token_count, log_print
from   .validation import WorkflowValidationError, validate_workflow


class RunStatus(str, Enum):
	"""Status of a whole execution run"""
	IDLE      = "idle"
	RUNNING   = "running"
	COMPLETED = "completed"
	ABORTED   = "aborted"


class NodeStatus(str, Enum):
	"""Status of a single node within a run"""
	IDLE        = "idle"
	RUNNING     = "running"
	COMPLETED   = "completed"
	ERROR       = "error"
	INTERRUPTED = "interrupted"


# Reported on the status channel while a shell node waits for confirmation; not a node state
PENDING_APPROVAL : str = "pending_approval"

TERMINAL_NODE_STATUSES = (NodeStatus.COMPLETED, NodeStatus.ERROR, NodeStatus.INTERRUPTED)


class WorkflowBusyError(WorkflowError):
	pass


class ExecutionRun(BaseModel):
	"""State of one execute-to-completion (or abort) cycle"""
	execution_id : Optional[str]         = None
	status       : RunStatus             = RunStatus.IDLE
	node_status  : Dict[str, NodeStatus] = {}
	node_result  : Dict[str, str]        = {}
	skipped      : Dict[str, str]        = {}   # node id -> "blocked" | "branch_not_taken"
	variables    : Dict[str, Any]        = {}
	steps        : int                   = 0
	start_time   : Optional[str]         = None
	end_time     : Optional[str]         = None
	error        : Optional[str]         = None


class WorkflowEngine:
	"""Sequential executor driving one workflow session"""

	def __init__(self,
		event_bus : EventBus,
		backend   : Optional[NodeBackend]              = None,
		options   : Optional[WorkflowExecutionOptions] = None,
		scheduler : Optional[Scheduler]                = None,
	):
		self.event_bus         : EventBus                      = event_bus
		self.backend           : NodeBackend                   = backend or NodeBackend()
		self.options           : WorkflowExecutionOptions      = options or WorkflowExecutionOptions()
		self.scheduler         : Scheduler                     = scheduler or Scheduler()
		self.graph             : WorkflowGraph                 = WorkflowGraph()
		self.run               : ExecutionRun                  = ExecutionRun()
		self.pending_approvals : Dict[str, asyncio.Future]     = {}
		self._reported         : Dict[str, asyncio.Future]     = {}  # in-flight node id -> recorded outcome
		self._task             : Optional[asyncio.Task]        = None
		self._abort_event      : Optional[asyncio.Event]       = None


	# =========================================================================
	# GRAPH COMMANDS
	# =========================================================================

	def load(self, nodes: Sequence[BaseNode], edges: Sequence[Edge]) -> WorkflowGraph:
		self.graph = WorkflowGraph(nodes, edges)
		return self.graph


	def add_node(self, node: BaseNode) -> BaseNode:
		return self.graph.add_node(node)


	def update_node(self, node: BaseNode) -> BaseNode:
		return self.graph.update_node(node)


	def remove_node(self, node_id: str) -> bool:
		return self.graph.remove_node(node_id)


	def add_edge(self, source: str, target: str, source_handle: Optional[str] = None) -> Edge:
		return self.graph.add_edge(source, target, source_handle)


	def remove_edge(self, edge_id: str) -> bool:
		return self.graph.remove_edge(edge_id)


	def get_state(self) -> Dict[str, Any]:
		return self.run.model_dump(mode="json")


	@property
	def is_running(self) -> bool:
		return self.run.status == RunStatus.RUNNING


	# =========================================================================
	# RUN LIFECYCLE
	# =========================================================================

	async def start(self,
		nodes   : Optional[Sequence[BaseNode]]       = None,
		edges   : Optional[Sequence[Edge]]           = None,
		options : Optional[WorkflowExecutionOptions] = None,
	) -> str:
		"""Validate, schedule and launch a run in the background; returns the execution id"""
		if self.is_running:
			raise WorkflowBusyError("A workflow is already running")

		if nodes is not None:
			self.load(nodes, edges or [])
		if options is not None:
			self.options = options

		nodes  = self.graph.nodes
		edges  = self.graph.edges
		errors = validate_workflow(nodes, edges)
		steps  : Sequence[ScheduledStep] = ()
		if not errors:
			try:
				steps = self.scheduler.schedule(nodes, edges)
			except SchedulingError as e:
				errors = e.errors or {"workflow": str(e)}

		if errors:
			log_print(f"Workflow validation failed: {errors}", level="warning")
			await self.event_bus.emit(
				event_type = EventType.VALIDATION_FAILED,
				data       = {"errors": errors},
			)
			raise WorkflowValidationError(f"Workflow has {len(errors)} validation error(s)", errors)

		scheduled = list(dict.fromkeys(step.node_id for step in steps))
		run = ExecutionRun(
			execution_id = str(uuid.uuid4()),
			status       = RunStatus.RUNNING,
			node_status  = {node_id: NodeStatus.IDLE for node_id in scheduled},
			steps        = len(steps),
			start_time   = datetime.now().isoformat(),
		)
		self.run          = run
		self._abort_event = asyncio.Event()

		await self.event_bus.emit(
			event_type   = EventType.EXECUTION_STARTED,
			execution_id = run.execution_id,
			data         = {"executionId": run.execution_id, "steps": len(steps)},
		)

		self._task = asyncio.create_task(self._execute_workflow(run, list(steps), nodes, edges, self._abort_event))
		return run.execution_id


	async def execute(self,
		nodes   : Optional[Sequence[BaseNode]]       = None,
		edges   : Optional[Sequence[Edge]]           = None,
		options : Optional[WorkflowExecutionOptions] = None,
	) -> ExecutionRun:
		"""Start a run and wait until it reaches a terminal state"""
		await self.start(nodes, edges, options)
		return await self.wait()


	async def wait(self) -> ExecutionRun:
		task = self._task
		if task is not None and task is not asyncio.current_task():
			await asyncio.gather(task, return_exceptions=True)
		return self.run


	async def abort(self) -> ExecutionRun:
		"""
		Stop the current run: the in-flight node becomes interrupted, nothing else
		is dispatched and completed nodes keep their results.
		"""
		run = self.run
		if run.status != RunStatus.RUNNING:
			return run

		run.status   = RunStatus.ABORTED
		run.end_time = datetime.now().isoformat()
		if self._abort_event is not None:
			self._abort_event.set()

		for node_id, future in list(self.pending_approvals.items()):
			if not future.done():
				future.cancel()
		self.pending_approvals.clear()

		for node_id, status in list(run.node_status.items()):
			if status == NodeStatus.RUNNING:
				run.node_status[node_id] = NodeStatus.INTERRUPTED
				await self._emit_status(run, node_id, NodeStatus.INTERRUPTED, "Workflow execution aborted")

		log_print(f"Execution {run.execution_id} aborted")
		return run


	async def clear(self) -> ExecutionRun:
		"""Drop the current run entirely and return to idle"""
		await self.abort()
		task = self._task
		if task is not None and task is not asyncio.current_task() and not task.done():
			task.cancel()
			await asyncio.gather(task, return_exceptions=True)
		self._task        = None
		self._abort_event = None
		self.run          = ExecutionRun()
		return self.run


	async def on_node_result(self, node_id: str, status: NodeStatus, result: Optional[str] = None) -> bool:
		"""
		Record a node outcome. Callbacks for nodes that are not currently running
		(duplicates, late results after an abort) are ignored. An accepted outcome
		settles the node: its executor is cancelled and the driver continues from
		the recorded status.
		"""
		return await self._record_result(self.run, node_id, NodeStatus(status), result)


	async def calculate_tokens(self, text: str, node_id: str) -> int:
		count = estimate_token_count(text)
		self.run.node_result[f"{node_id}_tokens"] = str(count)
		await self.event_bus.emit(
			event_type   = EventType.TOKEN_COUNT,
			execution_id = self.run.execution_id,
			node_id      = node_id,
			data         = {"nodeId": node_id, "count": count},
		)
		return count


	async def approve_node(self, node_id: str, command: Optional[str] = None) -> bool:
		"""Release a shell node waiting for approval, optionally with an edited command"""
		future = self.pending_approvals.get(node_id)
		if future is None or future.done():
			return False
		future.set_result(command)
		return True


	# =========================================================================
	# DRIVER
	# =========================================================================

	async def _execute_workflow(self,
		run         : ExecutionRun,
		steps       : List[ScheduledStep],
		nodes       : List[BaseNode],
		edges       : List[Edge],
		abort_event : asyncio.Event,
	):
		"""Dispatch scheduled steps one at a time"""
		try:
			node_map     = {node.id: node for node in nodes}
			active       = effective_active(nodes, edges)
			active_edges = induced_edges([node.id for node in active], edges)
			backs        = self._back_edges(active, active_edges)

			inbound  : Dict[str, List[Edge]] = defaultdict(list)
			outbound : Dict[str, List[Edge]] = defaultdict(list)
			for edge in active_edges:
				inbound [edge.target].append(edge)
				outbound[edge.source].append(edge)

			instances : Dict[str, WFBaseNode] = {}
			for node_id in run.node_status:
				instances[node_id] = create_node(node_map[node_id], self.backend, llm_timeout=self.options.llm_timeout)

			failed     : Set[str] = set()  # errored, or blocked behind an error
			dead_edges : Set[str] = set()  # edges from skipped nodes and untaken branches

			for step in steps:
				if abort_event.is_set():
					break

				node_id = step.node_id
				live_in = [edge for edge in inbound[node_id] if edge.id not in backs]

				if any(edge.source in failed for edge in live_in):
					failed.add(node_id)
					await self._skip(run, node_id, "blocked", step)
					continue

				if live_in and all(edge.id in dead_edges for edge in live_in):
					dead_edges.update(edge.id for edge in outbound[node_id])
					await self._skip(run, node_id, "branch_not_taken", step)
					continue

				run.skipped.pop(node_id, None)
				failed.discard(node_id)

				context = NodeExecutionContext()
				context.inputs      = parent_outputs(node_id, active_edges, run.node_result, dead_edges)
				context.variables   = template_variables(run.variables, step.bindings)
				context.node_config = node_map[node_id]
				context.abort_event = abort_event

				result = await self._dispatch(run, step, instances[node_id], context, abort_event)
				if result is None:
					break

				if run.node_status.get(node_id) != NodeStatus.COMPLETED:
					failed.add(node_id)
					continue

				run.variables.update(result.variables)
				for edge in outbound[node_id]:
					if result.next_target is not None and edge.source_handle in (IF_ELSE_TRUE_HANDLE, IF_ELSE_FALSE_HANDLE) and edge.source_handle != result.next_target:
						dead_edges.add(edge.id)
					else:
						dead_edges.discard(edge.id)

		except Exception as e:
			log_print(f"Execution {run.execution_id} failed: {e}", level="error")
			run.error = str(e)
			for node_id, status in list(run.node_status.items()):
				if status == NodeStatus.RUNNING:
					run.node_status[node_id] = NodeStatus.ERROR
					run.node_result[node_id] = str(e)

		finally:
			if run.status == RunStatus.RUNNING:
				run.status   = RunStatus.ABORTED if abort_event.is_set() else RunStatus.COMPLETED
				run.end_time = datetime.now().isoformat()
			await self.event_bus.emit(
				event_type   = EventType.EXECUTION_COMPLETED,
				execution_id = run.execution_id,
				data         = {"executionId": run.execution_id, "status": run.status.value, "error": run.error},
			)


	def _back_edges(self, nodes: List[BaseNode], edges: List[Edge]) -> Set[str]:
		if not any(is_kind(node, NodeKind.LOOP_START) for node in nodes):
			return set()
		return back_edge_ids(find_loop_regions(nodes, edges), edges)


	async def _dispatch(self,
		run         : ExecutionRun,
		step        : ScheduledStep,
		node        : WFBaseNode,
		context     : NodeExecutionContext,
		abort_event : asyncio.Event,
	) -> Optional[NodeExecutionResult]:
		"""Run one node; returns None when the run was aborted while it was in flight"""
		node_id = step.node_id

		run.node_status[node_id] = NodeStatus.RUNNING
		await self._emit_status(run, node_id, NodeStatus.RUNNING, step=step)

		if self.options.node_delay:
			await asyncio.sleep(self.options.node_delay)

		if abort_event.is_set():
			return None

		execution = asyncio.ensure_future(self._execute_node(node, context))
		aborted   = asyncio.ensure_future(abort_event.wait())
		reported  = asyncio.get_running_loop().create_future()
		self._reported[node_id] = reported
		try:
			await asyncio.wait({execution, aborted, reported}, return_when=asyncio.FIRST_COMPLETED)
		finally:
			self._reported.pop(node_id, None)
			aborted.cancel()

		if not execution.done():
			execution.cancel()
			await asyncio.gather(execution, return_exceptions=True)

		if abort_event.is_set():
			return None
		if reported.done():
			return self._recorded_result(run, node_id)
		if execution.cancelled():
			return None
		result = execution.result()

		if result.success:
			await self._record_result(run, node_id, NodeStatus.COMPLETED, result.content)
		else:
			log_print(f"Node {node_id} failed: {result.error}", level="warning")
			await self._record_result(run, node_id, NodeStatus.ERROR, result.error or "Unknown error")
		return result


	async def _execute_node(self, node: WFBaseNode, context: NodeExecutionContext) -> NodeExecutionResult:
		"""Approval, timeout and exception wrapping around a node executor"""
		config  = node.config
		timeout = self.options.node_timeout

		try:
			if is_kind(config, NodeKind.SHELL) and config.data.needs_user_approval:
				context.command = await self._await_approval(config.id, node.render_command(context))

			if timeout:
				return await asyncio.wait_for(node.execute(context), timeout=timeout)
			return await node.execute(context)

		except asyncio.TimeoutError:
			result = NodeExecutionResult()
			result.success = False
			result.error   = f"Node timed out after {timeout}s"
			return result

		except Exception as e:
			result = NodeExecutionResult()
			result.success = False
			result.error   = str(e)
			return result


	async def _await_approval(self, node_id: str, command: str) -> str:
		future = asyncio.get_running_loop().create_future()
		self.pending_approvals[node_id] = future

		await self._emit_status(self.run, node_id, PENDING_APPROVAL, command)

		timeout = self.options.approval_timeout
		try:
			approved = await asyncio.wait_for(future, timeout=timeout)
		except asyncio.TimeoutError:
			raise WorkflowError(f"Approval timeout after {timeout}s")
		finally:
			self.pending_approvals.pop(node_id, None)

		return command if approved is None else approved


	async def _record_result(self, run: ExecutionRun, node_id: str, status: NodeStatus, result: Optional[str]) -> bool:
		if run.node_status.get(node_id) != NodeStatus.RUNNING:
			log_print(f"Ignoring {status.value} result for node {node_id}: node is not running", level="debug")
			return False
		if status not in TERMINAL_NODE_STATUSES:
			raise ValueError(f"'{status.value}' is not a terminal node status")

		run.node_status[node_id] = status
		if result is not None:
			run.node_result[node_id] = result

		reported = self._reported.get(node_id)
		if reported is not None and not reported.done():
			reported.set_result(status)

		await self._emit_status(run, node_id, status, result)
		return True


	def _recorded_result(self, run: ExecutionRun, node_id: str) -> NodeExecutionResult:
		"""Result view of an outcome reported through on_node_result"""
		result = NodeExecutionResult()
		result.success = run.node_status.get(node_id) == NodeStatus.COMPLETED
		if result.success:
			result.content = run.node_result.get(node_id, "")
		else:
			result.error   = run.node_result.get(node_id)
		return result


	async def _skip(self, run: ExecutionRun, node_id: str, reason: str, step: ScheduledStep):
		run.skipped[node_id] = reason
		await self.event_bus.emit(
			event_type   = EventType.NODE_SKIPPED,
			execution_id = run.execution_id,
			node_id      = node_id,
			data         = {"nodeId": node_id, "reason": reason, "iteration": step.iteration},
		)


	async def _emit_status(self, run: ExecutionRun, node_id: str, status: Any, result: Optional[str] = None, step: Optional[ScheduledStep] = None):
		data = {
			"nodeId" : node_id,
			"status" : getattr(status, "value", status),
			"result" : result,
		}
		if step is not None and step.loop_id is not None:
			data["loopId"]    = step.loop_id
			data["iteration"] = step.iteration
		await self.event_bus.emit(
			event_type   = EventType.NODE_EXECUTION_STATUS,
			execution_id = run.execution_id,
			node_id      = node_id,
			data         = data,
		)
