# flowline

from   .cycles     import MalformedCycleError, SchedulingError, check_cycles, strongly_connected_components
from   .engine     import ExecutionRun, NodeStatus, RunStatus, WorkflowBusyError, WorkflowEngine
from   .event_bus  import EventBus, EventType, WorkflowEvent, get_event_bus, reset_event_bus
from   .graph      import GraphError, WorkflowError, WorkflowGraph
from   .loops      import LoopRegion, LoopStructureError, expand_loops, find_loop_regions
from   .manager    import WorkflowManager, migrate_workflow_data
from   .nodes      import NodeBackend, create_node
from   .scheduler  import Scheduler, schedule
from   .schema     import Edge, NodeKind, ScheduledStep, Workflow, WorkflowExecutionOptions, WorkflowNode
from   .validation import WorkflowValidationError, validate_workflow
