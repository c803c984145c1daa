"""
Stdio tool server.

Reads one JSON request per line from stdin and writes one JSON response per
line to stdout:

    -> {"id": 1, "tool": "run", "args": {"command": "echo hello"}}
    <- {"id": 1, "result": "{\\n  \\"success\\": true, ..."}

``id`` is optional and echoed back when present. Malformed lines get
``{"error": "Invalid request: ..."}`` and the loop keeps going. Requests run
concurrently, so responses can come back out of order. Logs go to
~/.bashkeeper/logs/bashkeeper.log and stderr; stdout carries only responses.

On SIGINT/SIGTERM and at interpreter exit every background process still
registered is sent SIGTERM.
"""

import atexit
import json
import logging
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional, TextIO

from bashkeeper_cli.config import get_log_dir, load_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

MAX_CONCURRENT_REQUESTS = 8

_shutdown_installed = False


def setup_logging(config: Dict[str, Any]) -> None:
    """Rotating file log plus stderr, at the configured level."""
    level_name = str(config.get("logging", {}).get("level", "INFO")).upper()
    level = getattr(logging, level_name, None)
    unknown_level = not isinstance(level, int)
    if unknown_level:
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    log_dir = get_log_dir()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "bashkeeper.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        print(f"Warning: file logging disabled ({e})", file=sys.stderr)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(max(level, logging.WARNING))
    root.addHandler(stderr_handler)

    if unknown_level:
        logger.warning("Unknown log level %r, using INFO", level_name)


def install_shutdown_handlers() -> None:
    """Drain background processes on SIGINT/SIGTERM and at exit."""
    global _shutdown_installed
    if _shutdown_installed:
        return
    _shutdown_installed = True

    from tools.terminal_tool import shutdown

    atexit.register(shutdown)

    def _on_signal(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        shutdown()
        raise SystemExit(128 + signum)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _on_signal)
        except ValueError:
            # Not on the main thread
            logger.debug("Could not install handler for %s", sig)


def handle_request(line: str) -> Optional[Dict[str, Any]]:
    """Turn one request line into a response object. Blank lines yield None."""
    from model_tools import handle_function_call

    line = line.strip()
    if not line:
        return None

    try:
        request = json.loads(line)
    except json.JSONDecodeError as e:
        return {"error": f"Invalid request: {e}"}

    if not isinstance(request, dict):
        return {"error": "Invalid request: expected a JSON object"}
    tool = request.get("tool")
    if not isinstance(tool, str) or not tool:
        return {"error": "Invalid request: missing 'tool'"}
    args = request.get("args") or {}
    if not isinstance(args, dict):
        return {"error": "Invalid request: 'args' must be an object"}

    response: Dict[str, Any] = {}
    if "id" in request:
        response["id"] = request["id"]
    response["result"] = handle_function_call(tool, args)
    return response


def serve(input_stream: TextIO = None, output_stream: TextIO = None,
          max_workers: int = MAX_CONCURRENT_REQUESTS) -> int:
    """
    Serve requests until EOF. Returns the number of requests answered.

    Each line is handed to a worker thread, so a long ``run`` does not hold
    up ``list_background`` or ``kill_background``. Responses are written
    whole, one per line, in completion order; callers match them by ``id``.
    Returns only after every request read has been answered.
    """
    input_stream = input_stream or sys.stdin
    output_stream = output_stream or sys.stdout
    write_lock = threading.Lock()
    answered = 0

    def _write(response: Dict[str, Any]):
        nonlocal answered
        data = json.dumps(response, ensure_ascii=False) + "\n"
        with write_lock:
            output_stream.write(data)
            output_stream.flush()
            answered += 1

    def _answer(line: str):
        try:
            response = handle_request(line)
        except Exception as e:
            logger.exception("Request failed: %s", line.strip()[:200])
            response = {"error": f"Internal error: {e}"}
        if response is not None:
            _write(response)

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="request") as pool:
        for line in input_stream:
            if line.strip():
                pool.submit(_answer, line)
    return answered


def run_server() -> None:
    """Entry point for ``bashkeeper serve``."""
    config = load_config()
    setup_logging(config)

    from tools.terminal_tool import configure

    runtime = configure(config)
    install_shutdown_handlers()
    logger.info(
        "Serving tools on stdio (max output %d bytes, overflow dir %s)",
        runtime.policy.max_size, runtime.directory.effective,
    )
    answered = serve()
    logger.info("stdin closed after %d request(s)", answered)
