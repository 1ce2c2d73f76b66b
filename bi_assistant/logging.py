import os
import logging
import sys
import time
import uuid
import structlog

# Configure structlog for structured JSON logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
)

def get_logger(name: str = "bi_assistant"):
    """Get a configured structured logger"""
    return structlog.get_logger(name)

def new_trace_id() -> str:
    return uuid.uuid4().hex

class TraceMiddleware:
    """Middleware to add trace_id to all logs for a request"""

    def __init__(self, app):
        self.app = app
        self.logger = get_logger("middleware")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        trace_id = None
        for key, value in scope.get("headers", []):
            if key.decode("latin1").lower() == "x-trace-id":
                trace_id = value.decode("latin1")
                break

        if not trace_id:
            trace_id = new_trace_id()

        structlog.contextvars.bind_contextvars(trace_id=trace_id)

        path = scope.get("path", "")
        method = scope.get("method", "")

        self.logger.info("request_start", path=path, method=method)

        start_time = time.time()

        try:
            await self.app(scope, receive, send)
        except Exception as e:
            self.logger.error(
                "request_error",
                path=path,
                method=method,
                error=str(e),
                duration=time.time() - start_time,
            )
            raise
        finally:
            self.logger.info(
                "request_end",
                path=path,
                method=method,
                duration=time.time() - start_time,
            )
            structlog.contextvars.clear_contextvars()

def init_logging():
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(message)s",
        stream=sys.stdout,
    )
