"""Command dispatch layer between the presentation layer and the executors.

Handlers take plain JSON-serializable payloads and produce plain results.
dispatch() never raises for expected failures: it returns
``{"ok": False, "error": "<message>"}`` with a displayable string.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from api_relay.config_loader import CandidateResolver, ConfigError, load_secure_config
from api_relay.errors import ExecutionError
from api_relay.executor import ClientFactory, RequestExecutor, UploadExecutor
from api_relay.models import FileUploadDescriptor, RequestDescriptor


CommandHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class CommandError(Exception):
    """Raised by handlers for payload problems."""


class CommandDispatcher:
    """Registry of named async command handlers.

    Usage:
        dispatcher = build_dispatcher(logger=host_logger)
        result = await dispatcher.dispatch("proxy_openai_request", {"request": {...}})
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._logger = logger or logging.getLogger(__name__)

    def register(self, name: str, handler: CommandHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Command '{name}' is already registered")
        self._handlers[name] = handler

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, name: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            self._logger.warning("Unknown command: %s", name)
            return {"ok": False, "error": f"Unknown command: {name}"}

        self._logger.debug("Dispatching command %s", name)
        try:
            data = await handler(payload or {})
        except (ExecutionError, ConfigError, CommandError) as e:
            self._logger.debug("Command %s failed: %s", name, e)
            return {"ok": False, "error": str(e)}
        return {"ok": True, "data": data}


def _descriptor_payload(payload: dict[str, Any]) -> Any:
    if not isinstance(payload, dict):
        raise CommandError(
            f"Command payload must be an object, got {type(payload).__name__}"
        )
    if "request" not in payload:
        raise CommandError("Missing 'request' in command payload")
    return payload["request"]


def _invalid_payload(e: ValidationError) -> CommandError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in e.errors()
    )
    return CommandError(f"Invalid request: {problems}")


def build_dispatcher(
    logger: logging.Logger | None = None,
    client_factory: ClientFactory | None = None,
    secure_config_resolvers: tuple[CandidateResolver, ...] | None = None,
) -> CommandDispatcher:
    """Create a dispatcher with the proxy, upload and secure-config commands."""
    dispatcher = CommandDispatcher(logger=logger)
    request_executor = RequestExecutor(logger=logger, client_factory=client_factory)
    upload_executor = UploadExecutor(logger=logger, client_factory=client_factory)

    async def proxy_openai_request(payload: dict[str, Any]) -> dict[str, Any]:
        try:
            descriptor = RequestDescriptor.model_validate(_descriptor_payload(payload))
        except ValidationError as e:
            raise _invalid_payload(e) from e
        envelope = await request_executor.execute(descriptor)
        return envelope.model_dump()

    async def upload_file_to_openai(payload: dict[str, Any]) -> dict[str, Any]:
        try:
            descriptor = FileUploadDescriptor.model_validate(_descriptor_payload(payload))
        except ValidationError as e:
            raise _invalid_payload(e) from e
        envelope = await upload_executor.upload(descriptor)
        return envelope.model_dump()

    async def load_secure_config_command(payload: dict[str, Any]) -> dict[str, Any]:
        if secure_config_resolvers is None:
            result = load_secure_config()
        else:
            result = load_secure_config(secure_config_resolvers)
        return result.model_dump(by_alias=True, exclude_none=False)

    dispatcher.register("proxy_openai_request", proxy_openai_request)
    dispatcher.register("upload_file_to_openai", upload_file_to_openai)
    dispatcher.register("load_secure_config", load_secure_config_command)
    return dispatcher
