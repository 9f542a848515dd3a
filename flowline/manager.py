# manager

import copy
import json


from   pathlib   import Path
from   pydantic  import TypeAdapter
from   typing    import Any, Dict, List, Optional, Tuple


from   .event_bus import EventType, EventBus
from   .schema    import DEFAULT_LLM_MAX_TOKENS, DEFAULT_LLM_TEMPERATURE, WORKFLOW_LEGACY_VERSION, WORKFLOW_VERSION, NodeKind, Workflow, WorkflowNode
from   .utils     import log_print, sanitize_filename


DEFAULT_STORAGE_DIR   : str = ".flowline"
DEFAULT_WORKFLOW_NAME : str = "workflow"

_NODE_ADAPTER = TypeAdapter(WorkflowNode)


def version_tuple(version: Optional[str]) -> Tuple[int, ...]:
	parts = []
	for piece in str(version or "0").split("."):
		digits = "".join(ch for ch in piece if ch.isdigit())
		parts.append(int(digits) if digits else 0)
	return tuple(parts)


def migrate_workflow_data(data: Dict[str, Any]) -> Dict[str, Any]:
	"""
	Bring a stored document up to the current layout.
	Documents without a version, or at 1.0.0 and older, keep shell commands in
	data.command and prompts in data.prompt; both move into data.content.
	Unknown fields are carried over untouched.
	"""
	version = data.get("version")
	if version and version_tuple(version) > version_tuple(WORKFLOW_LEGACY_VERSION):
		return data

	log_print(f"Migrating workflow data from version {version or 'unversioned'}")
	migrated = copy.deepcopy(data)
	nodes    = []
	for node in migrated.get("nodes", []):
		legacy = node.get("data", {})
		base   = {**legacy, "title": legacy.get("title", ""), "active": legacy.get("active", True)}
		kind   = node.get("type")

		if kind == NodeKind.SHELL.value:
			base["content"] = legacy.get("command") or legacy.get("content") or ""
			base.pop("command", None)
		elif kind == NodeKind.LLM.value:
			base["content"]     = legacy.get("prompt") or legacy.get("content") or ""
			base["temperature"] = legacy.get("temperature") or DEFAULT_LLM_TEMPERATURE
			base["fast"]        = legacy.get("fast", True)
			base["maxTokens"]   = legacy.get("maxTokens") or DEFAULT_LLM_MAX_TOKENS
			base.pop("prompt", None)
		else:
			base["content"] = legacy.get("content") or ""

		nodes.append({**node, "data": base})

	migrated["nodes"]   = nodes
	migrated["edges"]   = migrated.get("edges", [])
	migrated["version"] = WORKFLOW_LEGACY_VERSION
	return migrated


class WorkflowManager:
	"""Versioned workflow documents and the custom node library on disk"""

	def __init__(self, event_bus: EventBus, storage_dir: str = DEFAULT_STORAGE_DIR):
		self._event_bus     : EventBus = event_bus
		self._storage_dir   : Path     = Path(storage_dir)
		self._workflows_dir : Path     = self._storage_dir / "workflows"
		self._nodes_dir     : Path     = self._storage_dir / "nodes"


	def _workflow_path(self, name: str) -> Path:
		return self._workflows_dir / f"{sanitize_filename(name)}.json"


	def _find_node_file(self, title: str) -> Optional[Path]:
		if not self._nodes_dir.exists():
			return None
		prefix = sanitize_filename(title)
		for path in sorted(self._nodes_dir.glob("*.json")):
			if path.stem == prefix:
				return path
		return None


	async def save(self, workflow: Workflow, name: Optional[str] = None) -> str:
		name = sanitize_filename(name or DEFAULT_WORKFLOW_NAME)
		self._workflows_dir.mkdir(parents=True, exist_ok=True)

		document = workflow.dump()
		document["version"] = WORKFLOW_VERSION
		self._workflow_path(name).write_text(json.dumps(document, indent=2), encoding="utf-8")

		await self._event_bus.emit(
			event_type = EventType.WORKFLOW_SAVED,
			data       = {"name": name},
		)
		return name


	async def load(self, name: str) -> Workflow:
		path = self._workflow_path(name)
		if not path.exists():
			raise FileNotFoundError(f"Workflow '{name}' not found")

		raw      = json.loads(path.read_text(encoding="utf-8"))
		workflow = Workflow.model_validate(migrate_workflow_data(raw))

		await self._event_bus.emit(
			event_type = EventType.WORKFLOW_LOADED,
			data       = {"name": path.stem, **workflow.dump()},
		)
		return workflow


	async def list(self) -> List[str]:
		if not self._workflows_dir.exists():
			return []
		return sorted(path.stem for path in self._workflows_dir.glob("*.json"))


	async def remove(self, name: str) -> bool:
		path = self._workflow_path(name)
		if not path.exists():
			return False
		path.unlink()
		return True


	# =========================================================================
	# CUSTOM NODES
	# =========================================================================

	async def save_custom_node(self, node: Dict[str, Any]) -> str:
		"""Store a reusable node under its sanitised title; the node id is not kept"""
		parsed = _NODE_ADAPTER.validate_python(node)
		title  = parsed.data.title
		if not title:
			raise ValueError("Custom node needs a title")

		self._nodes_dir.mkdir(parents=True, exist_ok=True)
		payload = parsed.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
		path    = self._nodes_dir / f"{sanitize_filename(title)}.json"
		path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

		await self.list_custom_nodes()
		return title


	async def list_custom_nodes(self) -> List[Dict[str, Any]]:
		nodes = []
		if self._nodes_dir.exists():
			for path in sorted(self._nodes_dir.glob("*.json")):
				try:
					nodes.append(json.loads(path.read_text(encoding="utf-8")))
				except ValueError as e:
					log_print(f"Failed to load custom node '{path.name}': {e}", level="warning")

		await self._event_bus.emit(
			event_type = EventType.CUSTOM_NODES,
			data       = {"nodes": nodes},
		)
		return nodes


	async def delete_custom_node(self, title: str) -> bool:
		path = self._find_node_file(title)
		if path is None:
			return False
		path.unlink()
		await self.list_custom_nodes()
		return True


	async def rename_custom_node(self, old_title: str, new_title: str) -> bool:
		path = self._find_node_file(old_title)
		if path is None:
			return False

		node = json.loads(path.read_text(encoding="utf-8"))
		node.setdefault("data", {})["title"] = new_title
		path.unlink()
		(self._nodes_dir / f"{sanitize_filename(new_title)}.json").write_text(json.dumps(node, indent=2), encoding="utf-8")

		await self.list_custom_nodes()
		return True
