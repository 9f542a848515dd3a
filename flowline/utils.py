# utils

import logging
import math
import re


from   datetime import datetime
from   fastapi  import FastAPI
from   fastapi.middleware.cors import CORSMiddleware
from   typing   import Any


_logger = logging.getLogger("flowline")


def log_print(*args: Any, level: str = "info"):
	message = " ".join(str(arg) for arg in args)
	getattr(_logger, level, _logger.info)(message)


def setup_logging(level: str = "INFO"):
	logging.basicConfig(
		level  = getattr(logging, level.upper(), logging.INFO),
		format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
	)


def get_now_str() -> str:
	return datetime.now().isoformat()


def estimate_token_count(text: str) -> int:
	"""Word count or a quarter of the character count, whichever is larger"""
	if not text:
		return 0
	normalized = text.strip()
	wordish    = len(re.findall(r"\S+", normalized))
	chars      = math.ceil(len(normalized) / 4)
	return max(wordish, chars)


def sanitize_filename(name: str) -> str:
	return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


def add_middleware(app: FastAPI):
	app.add_middleware(
		CORSMiddleware,
		allow_origins     = ["*"],
		allow_credentials = False,
		allow_methods     = ["*"],
		allow_headers     = ["*"],
	)
