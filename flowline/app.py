# app

import argparse
import asyncio
import os
import uvicorn


from   dotenv     import load_dotenv
from   fastapi    import FastAPI
from   typing     import Any, Optional, Tuple


from   .api       import setup_api
from   .engine    import WorkflowEngine
from   .event_bus import EventBus, get_event_bus
from   .manager   import DEFAULT_STORAGE_DIR, WorkflowManager
from   .nodes     import NodeBackend
from   .schema    import WorkflowExecutionOptions
from   .utils     import add_middleware, log_print, setup_logging


load_dotenv()


DEFAULT_APP_HOST        : str   = os.getenv("FLOWLINE_HOST", "0.0.0.0")
DEFAULT_APP_PORT        : int   = int(os.getenv("FLOWLINE_PORT", "8000"))
DEFAULT_APP_STORAGE_DIR : str   = os.getenv("FLOWLINE_STORAGE_DIR", DEFAULT_STORAGE_DIR)
DEFAULT_APP_LOG_LEVEL   : str   = os.getenv("FLOWLINE_LOG_LEVEL", "INFO")
DEFAULT_APP_NODE_DELAY  : float = float(os.getenv("FLOWLINE_NODE_DELAY", "0"))


def _asyncio_exception_handler(loop, context):
	# browsers closing a connection mid-response
	if isinstance(context.get("exception"), ConnectionResetError):
		return
	loop.default_exception_handler(context)


def create_app(
	event_bus   : Optional[EventBus]                 = None,
	storage_dir : str                                = DEFAULT_APP_STORAGE_DIR,
	backend     : Optional[NodeBackend]              = None,
	options     : Optional[WorkflowExecutionOptions] = None,
	server      : Any                                = None,
) -> Tuple[FastAPI, WorkflowEngine, WorkflowManager]:
	event_bus = event_bus or get_event_bus()
	manager   = WorkflowManager (event_bus, storage_dir)
	engine    = WorkflowEngine  (event_bus, backend=backend, options=options)

	app: FastAPI = FastAPI(title="Flowline")
	add_middleware(app)
	setup_api(server, app, event_bus, manager, engine)

	return app, engine, manager


async def run_server(args: Any):
	log_print("Server starting...")

	asyncio.get_event_loop().set_exception_handler(_asyncio_exception_handler)

	event_bus : EventBus        = get_event_bus   ()
	manager   : WorkflowManager = WorkflowManager (event_bus, args.storage_dir)
	engine    : WorkflowEngine  = WorkflowEngine  (event_bus, options=WorkflowExecutionOptions(node_delay=args.node_delay))

	app: FastAPI = FastAPI(title="Flowline")
	add_middleware(app)

	config = uvicorn.Config(app, host=args.host, port=args.port, log_level=args.log_level.lower())
	server = uvicorn.Server(config)

	setup_api(server, app, event_bus, manager, engine)

	await server .serve ()
	await engine .clear ()

	log_print("Server shut down.")


def main():
	parser = argparse.ArgumentParser(description="Flowline workflow server")
	parser .add_argument("--host",        type=str,   default=DEFAULT_APP_HOST,        help="Listening address for the control server")
	parser .add_argument("--port",        type=int,   default=DEFAULT_APP_PORT,        help="Listening port for the control server")
	parser .add_argument("--storage-dir", type=str,   default=DEFAULT_APP_STORAGE_DIR, help="Directory holding saved workflows and custom nodes")
	parser .add_argument("--log-level",   type=str,   default=DEFAULT_APP_LOG_LEVEL,   help="Logging level")
	parser .add_argument("--node-delay",  type=float, default=DEFAULT_APP_NODE_DELAY,  help="Seconds to pause before each node runs")
	args   = parser.parse_args()

	setup_logging(args.log_level)
	asyncio.run(run_server(args))


if __name__ == "__main__":
	main()
