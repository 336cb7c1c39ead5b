"""HTTP boundary for the git tool.

Routes:
- POST /tools/git  run one operation: {operation, args, working_directory}
                   -> {content, is_error}
- GET  /tools      tool definition for protocol adapters
- GET  /health     liveness

Each request is served on its own thread (werkzeug ``threaded=True``), so a
long-running git process never blocks unrelated calls.
"""

import json
import logging
import os
from typing import List, Optional

from flask import Flask, Response, jsonify, request
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from git_proxy.logging_config import flask_request_middleware
from git_proxy.models import Operation, OperationRequest
from git_proxy.pipeline import GitPipeline

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

API_BIND = os.environ.get("GIT_PROXY_BIND", "127.0.0.1")
API_PORT = int(os.environ.get("GIT_PROXY_PORT", "8084"))

MAX_REQUEST_BODY = 256 * 1024  # 256KB
MAX_ARGS_COUNT = 256
MAX_ARG_LENGTH = 8 * 1024  # 8KB

TOOL_NAME = "git"
TOOL_DESCRIPTION = (
    "Run a remote git operation (clone, fetch, pull, push, ls-remote) "
    "using the host's existing credentials."
)


class GitToolCall(BaseModel):
    """Inbound tool call body."""

    model_config = ConfigDict(extra="forbid")

    operation: str = Field(max_length=64)
    """Git operation name."""

    args: List[str] = Field(default_factory=list, max_length=MAX_ARGS_COUNT)
    """Arguments following the operation."""

    working_directory: str = Field(max_length=4096)
    """Absolute directory git runs in."""

    @field_validator("args")
    @classmethod
    def _check_arg_lengths(cls, value: List[str]) -> List[str]:
        for arg in value:
            if len(arg) > MAX_ARG_LENGTH:
                raise ValueError(f"argument exceeds {MAX_ARG_LENGTH} characters")
            if "\x00" in arg:
                raise ValueError("argument contains a NUL byte")
        return value

    def to_request(self) -> OperationRequest:
        return OperationRequest(
            operation=self.operation,
            args=list(self.args),
            working_directory=self.working_directory,
        )


def tool_definition() -> dict:
    return {
        "name": TOOL_NAME,
        "description": TOOL_DESCRIPTION,
        "input_schema": {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": [op.value for op in Operation],
                },
                "args": {"type": "array", "items": {"type": "string"}},
                "working_directory": {"type": "string"},
            },
            "required": ["operation", "working_directory"],
        },
    }


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"Invalid field '{location}': {first.get('msg', 'invalid value')}"


def create_app(pipeline: Optional[GitPipeline] = None) -> Flask:
    """Create the Flask application serving the git tool."""
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_REQUEST_BODY
    flask_request_middleware(app)

    if pipeline is None:
        pipeline = GitPipeline()

    def _make_error(message: str, status: int) -> Response:
        return Response(
            json.dumps({"error": message}),
            status=status,
            content_type="application/json",
        )

    @app.route("/tools/git", methods=["POST"])
    def git_tool():
        raw = request.get_json(silent=True)
        if not isinstance(raw, dict):
            return _make_error("Request body must be a JSON object", 400)

        try:
            call = GitToolCall.model_validate(raw)
        except ValidationError as exc:
            return _make_error(_describe_validation_error(exc), 400)

        result = pipeline.handle(call.to_request())
        return jsonify(result.to_dict())

    @app.route("/tools", methods=["GET"])
    def list_tools():
        return jsonify({"tools": [tool_definition()]})

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    @app.errorhandler(404)
    def not_found(e):
        return _make_error("Not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _make_error("Method not allowed", 405)

    @app.errorhandler(413)
    def request_too_large(e):
        return _make_error(f"Request body too large (max {MAX_REQUEST_BODY} bytes)", 413)

    app.pipeline = pipeline
    return app


def run_server(
    app: Flask,
    host: str = API_BIND,
    port: int = API_PORT,
) -> None:
    """Serve ``app`` until interrupted."""
    from werkzeug.serving import make_server

    logger.info("Starting git proxy on %s:%d", host, port)
    server = make_server(host, port, app, threaded=True)
    try:
        server.serve_forever()
    finally:
        server.server_close()
