# event_bus

import json


from   datetime import datetime
from   enum     import Enum
from   fastapi  import WebSocket
from   inspect  import iscoroutinefunction
from   pydantic import BaseModel
from   typing   import Any, Callable, Dict, List, Optional, Set


from   .utils   import log_print


def _set_default_json(obj):
	if isinstance(obj, set):
		return list(obj)
	raise TypeError


class EventType(str, Enum):
	# System events
	ERROR                 = "error"

	# Document events
	WORKFLOW_LOADED       = "workflow_loaded"
	WORKFLOW_SAVED        = "workflow_saved"
	CUSTOM_NODES          = "provide_custom_nodes"

	# Execution events
	EXECUTION_STARTED     = "execution_started"
	EXECUTION_COMPLETED   = "execution_completed"
	VALIDATION_FAILED     = "validation_failed"

	# Node events
	NODE_EXECUTION_STATUS = "node_execution_status"
	NODE_SKIPPED          = "node_skipped"
	TOKEN_COUNT           = "token_count"


class WorkflowEvent(BaseModel):
	event_id     : str
	event_type   : EventType
	timestamp    : str
	execution_id : Optional[str]            = None
	node_id      : Optional[str]            = None
	data         : Optional[Dict[str, Any]] = None
	error        : Optional[str]            = None

	def to_message(self) -> Dict[str, Any]:
		"""Wire shape sent to UI clients"""
		return {
			"type"      : self.event_type.value,
			"data"      : self.data or {},
			"event_id"  : self.event_id,
			"timestamp" : self.timestamp,
		}


class EventBus:
	"""
	Central event bus for workflow events.
	Supports both local subscribers and WebSocket clients.
	"""

	def __init__(self, max_history: int = 1000):
		self._subscribers       : Dict[EventType, List[Callable]] = {}
		self._websocket_clients : Set[WebSocket]                  = set()
		self._event_history     : List[WorkflowEvent]             = []
		self._max_history       : int                             = max_history
		self._event_counter     : int                             = 0


	def subscribe(self, event_type: EventType, callback: Callable):
		"""Subscribe to specific event type"""
		if event_type not in self._subscribers:
			self._subscribers[event_type] = []
		self._subscribers[event_type].append(callback)


	async def publish(self, event: WorkflowEvent):
		"""Publish event to all subscribers and WebSocket clients"""
		self._event_history.append(event)
		if len(self._event_history) > self._max_history:
			self._event_history.pop(0)

		for callback in list(self._subscribers.get(event.event_type, [])):
			try:
				if iscoroutinefunction(callback):
					await callback(event)
				else:
					callback(event)
			except Exception as e:
				log_print(f"Error in event subscriber: {e}", level="error")

		await self._broadcast_to_websockets(event)


	async def _broadcast_to_websockets(self, event: WorkflowEvent):
		"""Broadcast event to all connected WebSocket clients"""
		if not self._websocket_clients:
			return

		message = json.dumps(event.to_message(), default=_set_default_json)

		dead_clients = set()
		for client in self._websocket_clients:
			try:
				await client.send_text(message)
			except Exception:
				dead_clients.add(client)

		self._websocket_clients -= dead_clients


	async def add_websocket_client(self, websocket: WebSocket, history: int = 50):
		"""Add WebSocket client to receive events"""
		await websocket.accept()
		self._websocket_clients.add(websocket)

		if self._event_history and history > 0:
			history_message = json.dumps({
				"type"   : "event_history",
				"events" : [e.to_message() for e in self._event_history[-history:]],
			}, default=_set_default_json)
			await websocket.send_text(history_message)


	def remove_websocket_client(self, websocket: WebSocket):
		"""Remove WebSocket client"""
		self._websocket_clients.discard(websocket)


	def _generate_event_id(self) -> str:
		self._event_counter += 1
		timestamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
		return f"evt_{timestamp}_{self._event_counter}"


	async def emit(self,
		event_type   : EventType,
		execution_id : Optional[str]            = None,
		node_id      : Optional[str]            = None,
		data         : Optional[Dict[str, Any]] = None,
		error        : Optional[str]            = None
	) -> WorkflowEvent:
		"""Helper to create and publish event"""
		event = WorkflowEvent(
			event_id     = self._generate_event_id(),
			event_type   = event_type,
			timestamp    = datetime.now().isoformat(),
			execution_id = execution_id,
			node_id      = node_id,
			data         = data,
			error        = error
		)
		await self.publish(event)
		return event


_global_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
	"""Get or create global event bus instance"""
	global _global_event_bus
	if _global_event_bus is None:
		_global_event_bus = EventBus()
	return _global_event_bus


def reset_event_bus():
	"""Reset global event bus (useful for testing)"""
	global _global_event_bus
	_global_event_bus = None
