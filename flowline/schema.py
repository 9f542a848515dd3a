# schema

from __future__ import annotations


from   enum     import Enum
from   pydantic import BaseModel, Field
from   typing   import Annotated, Any, Dict, List, Literal, Optional, Union
from   uuid     import uuid4


WORKFLOW_VERSION        : str = "1.1.0"
WORKFLOW_LEGACY_VERSION : str = "1.0.0"


def generate_id():
	return str(uuid4())


class NodeKind(str, Enum):
	SHELL          = "cli"
	LLM            = "llm"
	PREVIEW        = "preview"
	TEXT           = "text-format"
	SEARCH_CONTEXT = "search-context"
	OUTPUT         = "cody-output"
	LOOP_START     = "loop-start"
	LOOP_END       = "loop-end"
	ACCUMULATOR    = "accumulator"
	VARIABLE       = "variable"
	IF_ELSE        = "if-else"


# =============================================================================
# NODE DATA
# =============================================================================

class BaseNodeData(BaseModel):
	"""Fields shared by every node kind. Unknown keys are kept as opaque passthrough."""
	title   : str            = ""
	active  : Optional[bool] = True
	content : str            = ""

	class Config:
		extra            = "allow"
		populate_by_name = True


class ShellNodeData(BaseNodeData):
	needs_user_approval : bool = Field(default=False, alias="needsUserApproval", description="Pause for confirmation before running the command")


DEFAULT_LLM_TEMPERATURE : float = 0.0
DEFAULT_LLM_MAX_TOKENS  : int   = 1000


class LLMNodeData(BaseNodeData):
	temperature : float         = Field(default=DEFAULT_LLM_TEMPERATURE)
	max_tokens  : int           = Field(default=DEFAULT_LLM_MAX_TOKENS, alias="maxTokens")
	fast        : bool          = True
	model       : Optional[str] = None


class SearchContextNodeData(BaseNodeData):
	local_remote : bool = False


DEFAULT_LOOP_ITERATIONS : int = 1
DEFAULT_LOOP_VARIABLE   : str = "i"


class LoopStartNodeData(BaseNodeData):
	iterations    : int = Field(default=DEFAULT_LOOP_ITERATIONS, description="Number of passes over the loop body")
	loop_variable : str = Field(default=DEFAULT_LOOP_VARIABLE,   alias="loopVariable", description="Binding exposed to body nodes, 0 on the first pass")


class VariableNodeData(BaseNodeData):
	variable_name : str = Field(default="", alias="variableName")
	initial_value : str = Field(default="", alias="initialValue")


class AccumulatorNodeData(VariableNodeData):
	pass


# =============================================================================
# NODES
# =============================================================================

class BaseNode(BaseModel):
	id       : str                      = Field(default_factory=generate_id)
	data     : BaseNodeData             = Field(default_factory=BaseNodeData)
	position : Optional[Dict[str, Any]] = None

	class Config:
		extra            = "allow"
		populate_by_name = True

	@property
	def kind(self) -> NodeKind:
		return NodeKind(self.type)

	@property
	def title(self) -> str:
		return self.data.title or self.id


class ShellNode(BaseNode):
	type : Literal["cli"]  = "cli"
	data : ShellNodeData   = Field(default_factory=ShellNodeData)


class LLMNode(BaseNode):
	type : Literal["llm"]  = "llm"
	data : LLMNodeData     = Field(default_factory=LLMNodeData)


class PreviewNode(BaseNode):
	type : Literal["preview"] = "preview"


class TextNode(BaseNode):
	type : Literal["text-format"] = "text-format"


class SearchContextNode(BaseNode):
	type : Literal["search-context"] = "search-context"
	data : SearchContextNodeData     = Field(default_factory=SearchContextNodeData)


class OutputNode(BaseNode):
	type : Literal["cody-output"] = "cody-output"


class LoopStartNode(BaseNode):
	type : Literal["loop-start"] = "loop-start"
	data : LoopStartNodeData     = Field(default_factory=LoopStartNodeData)


class LoopEndNode(BaseNode):
	type : Literal["loop-end"] = "loop-end"


class AccumulatorNode(BaseNode):
	type : Literal["accumulator"] = "accumulator"
	data : AccumulatorNodeData    = Field(default_factory=AccumulatorNodeData)


class VariableNode(BaseNode):
	type : Literal["variable"] = "variable"
	data : VariableNodeData    = Field(default_factory=VariableNodeData)


class IfElseNode(BaseNode):
	"""Condition expression lives in data.content; outgoing edges pick a branch by sourceHandle"""
	type : Literal["if-else"] = "if-else"


WorkflowNode = Annotated[Union[
	ShellNode,
	LLMNode,
	PreviewNode,
	TextNode,
	SearchContextNode,
	OutputNode,
	LoopStartNode,
	LoopEndNode,
	AccumulatorNode,
	VariableNode,
	IfElseNode,
], Field(discriminator="type")]


IF_ELSE_TRUE_HANDLE  : str = "true"
IF_ELSE_FALSE_HANDLE : str = "false"


class Edge(BaseModel):
	id            : str           = Field(default_factory=generate_id)
	source        : str
	target        : str
	source_handle : Optional[str] = Field(default=None, alias="sourceHandle")

	class Config:
		extra            = "allow"
		populate_by_name = True


class Workflow(BaseModel):
	nodes   : List[WorkflowNode] = Field(default_factory=list)
	edges   : List[Edge]         = Field(default_factory=list)
	version : str                = WORKFLOW_VERSION

	def dump(self) -> Dict[str, Any]:
		return self.model_dump(by_alias=True, exclude_none=True)


class ScheduledStep(BaseModel):
	"""One dispatch slot of an execution sequence"""
	node_id   : str
	loop_id   : Optional[str]  = None
	iteration : Optional[int]  = None
	bindings  : Dict[str, Any] = Field(default_factory=dict)

	class Config:
		frozen = True


# =============================================================================
# EXECUTION OPTIONS
# =============================================================================

DEFAULT_WORKFLOW_NODE_DELAY       : float           = 0.0
DEFAULT_WORKFLOW_NODE_TIMEOUT     : Optional[float] = None
DEFAULT_WORKFLOW_APPROVAL_TIMEOUT : float           = 300.0
DEFAULT_WORKFLOW_LLM_TIMEOUT      : float           = 30.0
DEFAULT_SCHEDULER_CACHE_SIZE      : int             = 64


class WorkflowExecutionOptions(BaseModel):
	node_delay       : Optional[float] = Field(default=DEFAULT_WORKFLOW_NODE_DELAY,       description="Seconds to pause before each node is dispatched")
	node_timeout     : Optional[float] = Field(default=DEFAULT_WORKFLOW_NODE_TIMEOUT,     description="Upper bound in seconds for a single node executor call, unbounded when unset")
	approval_timeout : Optional[float] = Field(default=DEFAULT_WORKFLOW_APPROVAL_TIMEOUT, description="Maximum seconds a shell node waits for user approval")
	llm_timeout      : Optional[float] = Field(default=DEFAULT_WORKFLOW_LLM_TIMEOUT,      description="Maximum seconds an LLM node waits for the backend")
