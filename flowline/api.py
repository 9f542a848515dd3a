# api

import json


from   fastapi    import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from   pydantic   import BaseModel, Field, TypeAdapter, ValidationError
from   typing     import Annotated, Any, Dict, List, Literal, Optional, Union


from   .engine    import WorkflowBusyError, WorkflowEngine
from   .event_bus import EventType, EventBus
from   .graph     import GraphError, WorkflowError
from   .manager   import DEFAULT_WORKFLOW_NAME, WorkflowManager
from   .cycles    import SchedulingError
from   .schema    import WORKFLOW_VERSION, Edge, Workflow, WorkflowExecutionOptions, WorkflowNode
from   .utils     import get_now_str, log_print
from   .validation import WorkflowValidationError, validate_workflow


class _Command(BaseModel):
	class Config:
		populate_by_name = True


class ExecuteWorkflowCommand(_Command):
	type    : Literal["execute_workflow"]        = "execute_workflow"
	nodes   : List[WorkflowNode]                 = Field(default_factory=list)
	edges   : List[Edge]                         = Field(default_factory=list)
	options : Optional[WorkflowExecutionOptions] = None


class AbortWorkflowCommand(_Command):
	type : Literal["abort_workflow"] = "abort_workflow"


class ClearWorkflowCommand(_Command):
	type : Literal["clear_workflow"] = "clear_workflow"


class SaveWorkflowCommand(_Command):
	type    : Literal["save_workflow"] = "save_workflow"
	nodes   : List[WorkflowNode]       = Field(default_factory=list)
	edges   : List[Edge]               = Field(default_factory=list)
	version : str                      = WORKFLOW_VERSION
	name    : Optional[str]            = None


class LoadWorkflowCommand(_Command):
	type : Literal["load_workflow"] = "load_workflow"
	name : str                      = DEFAULT_WORKFLOW_NAME


class CalculateTokensCommand(_Command):
	type    : Literal["calculate_tokens"] = "calculate_tokens"
	text    : str                         = ""
	node_id : str                         = Field(alias="nodeId")


class NodeApprovedCommand(_Command):
	type             : Literal["node_approved"] = "node_approved"
	node_id          : str                      = Field(alias="nodeId")
	modified_command : Optional[str]            = Field(default=None, alias="modifiedCommand")


class AddNodeCommand(_Command):
	type : Literal["add_node"] = "add_node"
	node : WorkflowNode


class UpdateNodeCommand(_Command):
	type : Literal["update_node"] = "update_node"
	node : WorkflowNode


class RemoveNodeCommand(_Command):
	type    : Literal["remove_node"] = "remove_node"
	node_id : str                    = Field(alias="nodeId")


class AddEdgeCommand(_Command):
	type          : Literal["add_edge"] = "add_edge"
	source        : str
	target        : str
	source_handle : Optional[str]       = Field(default=None, alias="sourceHandle")


class RemoveEdgeCommand(_Command):
	type    : Literal["remove_edge"] = "remove_edge"
	edge_id : str                    = Field(alias="edgeId")


class GetCustomNodesCommand(_Command):
	type : Literal["get_custom_nodes"] = "get_custom_nodes"


class SaveCustomNodeCommand(_Command):
	type : Literal["save_customNode"] = "save_customNode"
	node : Dict[str, Any]


class DeleteCustomNodeCommand(_Command):
	type       : Literal["delete_customNode"] = "delete_customNode"
	node_title : str                          = Field(alias="nodeTitle")


class RenameCustomNodeCommand(_Command):
	type           : Literal["rename_customNode"] = "rename_customNode"
	old_node_title : str                          = Field(alias="oldNodeTitle")
	new_node_title : str                          = Field(alias="newNodeTitle")


Command = Annotated[Union[
	ExecuteWorkflowCommand,
	AbortWorkflowCommand,
	ClearWorkflowCommand,
	SaveWorkflowCommand,
	LoadWorkflowCommand,
	CalculateTokensCommand,
	NodeApprovedCommand,
	AddNodeCommand,
	UpdateNodeCommand,
	RemoveNodeCommand,
	AddEdgeCommand,
	RemoveEdgeCommand,
	GetCustomNodesCommand,
	SaveCustomNodeCommand,
	DeleteCustomNodeCommand,
	RenameCustomNodeCommand,
], Field(discriminator="type")]


_COMMAND_ADAPTER = TypeAdapter(Command)


def parse_command(payload: Dict[str, Any]) -> Any:
	return _COMMAND_ADAPTER.validate_python(payload)


async def dispatch_command(command: Any, engine: WorkflowEngine, manager: WorkflowManager) -> Dict[str, Any]:
	"""Apply one inbound command; results are also reported through the event bus"""
	if isinstance(command, ExecuteWorkflowCommand):
		execution_id = await engine.start(command.nodes, command.edges, command.options)
		return {"status": "started", "executionId": execution_id}

	if isinstance(command, AbortWorkflowCommand):
		run = await engine.abort()
		return {"status": run.status.value}

	if isinstance(command, ClearWorkflowCommand):
		run = await engine.clear()
		return {"status": run.status.value}

	if isinstance(command, SaveWorkflowCommand):
		workflow = Workflow(nodes=command.nodes, edges=command.edges, version=command.version)
		name     = await manager.save(workflow, command.name)
		return {"status": "saved", "name": name}

	if isinstance(command, LoadWorkflowCommand):
		workflow = await manager.load(command.name)
		engine.load(workflow.nodes, workflow.edges)
		return {"status": "loaded", "workflow": workflow.dump()}

	if isinstance(command, CalculateTokensCommand):
		count = await engine.calculate_tokens(command.text, command.node_id)
		return {"nodeId": command.node_id, "count": count}

	if isinstance(command, NodeApprovedCommand):
		approved = await engine.approve_node(command.node_id, command.modified_command)
		return {"nodeId": command.node_id, "status": "approved" if approved else "ignored"}

	if isinstance(command, AddNodeCommand):
		node = engine.add_node(command.node)
		return {"status": "added", "nodeId": node.id}

	if isinstance(command, UpdateNodeCommand):
		node = engine.update_node(command.node)
		return {"status": "updated", "nodeId": node.id}

	if isinstance(command, RemoveNodeCommand):
		removed = engine.remove_node(command.node_id)
		return {"status": "removed" if removed else "ignored", "nodeId": command.node_id}

	if isinstance(command, AddEdgeCommand):
		edge = engine.add_edge(command.source, command.target, command.source_handle)
		return {"status": "added", "edgeId": edge.id}

	if isinstance(command, RemoveEdgeCommand):
		removed = engine.remove_edge(command.edge_id)
		return {"status": "removed" if removed else "ignored", "edgeId": command.edge_id}

	if isinstance(command, GetCustomNodesCommand):
		nodes = await manager.list_custom_nodes()
		return {"nodes": nodes}

	if isinstance(command, SaveCustomNodeCommand):
		title = await manager.save_custom_node(command.node)
		return {"status": "saved", "title": title}

	if isinstance(command, DeleteCustomNodeCommand):
		deleted = await manager.delete_custom_node(command.node_title)
		return {"status": "deleted" if deleted else "not_found", "title": command.node_title}

	if isinstance(command, RenameCustomNodeCommand):
		renamed = await manager.rename_custom_node(command.old_node_title, command.new_node_title)
		return {"status": "renamed" if renamed else "not_found", "title": command.new_node_title}

	raise ValueError(f"Unsupported command: {type(command).__name__}")


def _to_http_error(error: Exception) -> HTTPException:
	if isinstance(error, ValidationError):
		return HTTPException(status_code=422, detail=json.loads(error.json(include_url=False)))
	if isinstance(error, WorkflowValidationError):
		return HTTPException(status_code=422, detail={"message": str(error), "errors": error.errors})
	if isinstance(error, WorkflowBusyError):
		return HTTPException(status_code=409, detail=str(error))
	if isinstance(error, FileNotFoundError):
		return HTTPException(status_code=404, detail=str(error))
	if isinstance(error, (GraphError, SchedulingError, WorkflowError, ValueError)):
		return HTTPException(status_code=400, detail=str(error))
	return HTTPException(status_code=500, detail=str(error))


class ScheduleRequest(BaseModel):
	nodes   : List[WorkflowNode] = Field(default_factory=list)
	edges   : List[Edge]         = Field(default_factory=list)
	iterate : bool               = True


def setup_api(server: Any, app: FastAPI, event_bus: EventBus, manager: WorkflowManager, engine: WorkflowEngine):

	@app.post("/shutdown")
	async def shutdown_server():
		nonlocal engine, server
		await engine.clear()
		if server and server.should_exit is False:
			server.should_exit = True
		result = {
			"status"  : "none",
			"message" : "Server shut down",
		}
		return result


	@app.post("/ping")
	async def ping():
		result = {
			"message"   : "pong",
			"timestamp" : get_now_str(),
		}
		return result


	@app.post("/state")
	async def execution_state():
		nonlocal engine
		result = {
			"state"    : engine.get_state(),
			"workflow" : engine.graph.to_workflow().dump(),
		}
		return result


	@app.post("/validate")
	async def validate(request: ScheduleRequest):
		errors = validate_workflow(request.nodes, request.edges)
		result = {
			"valid"  : not errors,
			"errors" : errors,
		}
		return result


	@app.post("/schedule")
	async def schedule(request: ScheduleRequest):
		nonlocal engine
		try:
			steps  = engine.scheduler.schedule(request.nodes, request.edges, iterate=request.iterate)
			result = {
				"order" : [step.node_id for step in steps],
				"steps" : [step.model_dump() for step in steps],
			}
			return result
		except WorkflowError as e:
			log_print(f"Error scheduling workflow: {e}")
			raise HTTPException(status_code=400, detail={"message": str(e), "errors": e.errors})


	@app.post("/list")
	async def list_workflows():
		nonlocal manager
		names  = await manager.list()
		result = {
			"names": names,
		}
		return result


	@app.post("/message")
	async def message(payload: Dict[str, Any]):
		nonlocal engine, manager
		try:
			command = parse_command(payload)
			return await dispatch_command(command, engine, manager)
		except Exception as e:
			log_print(f"Error handling '{payload.get('type')}' message: {e}")
			raise _to_http_error(e)


	@app.websocket("/workflow")
	async def workflow_channel(websocket: WebSocket):
		nonlocal event_bus, engine, manager
		await event_bus.add_websocket_client(websocket)
		try:
			while True:
				text = await websocket.receive_text()
				try:
					payload = json.loads(text)
					command = parse_command(payload)
					reply   = await dispatch_command(command, engine, manager)
					await websocket.send_text(json.dumps({"type": "reply", "command": command.type, "data": reply}))
				except WorkflowValidationError as e:
					# already reported through validation_failed
					log_print(f"Rejected workflow: {e}")
				except (ValidationError, WorkflowError, FileNotFoundError, ValueError) as e:
					log_print(f"WebSocket command error: {e}")
					await event_bus.emit(
						event_type = EventType.ERROR,
						error      = str(e),
						data       = {"message": str(e)},
					)
		except WebSocketDisconnect:
			log_print("WebSocket client disconnected")
		except Exception as e:
			log_print(f"WebSocket error: {e}", level="error")
		event_bus.remove_websocket_client(websocket)
