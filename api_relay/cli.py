"""CLI entry point for api-relay.

Handles argument parsing and dispatches to request, upload or secure-config
mode. This is a thin host around the executors: it owns logging setup and
shutdown, builds descriptors from flags and settings, and prints envelopes
as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from api_relay.config_loader import ConfigError, load_secure_config, load_settings
from api_relay.errors import ExecutionError
from api_relay.executor import RequestExecutor, SUPPORTED_METHODS, UploadExecutor
from api_relay.logging_setup import configure_logging, shutdown_logging
from api_relay.models import (
    FileUploadDescriptor,
    ProxyConfig,
    RelaySettings,
    RequestDescriptor,
    ResponseEnvelope,
)


API_KEY_ENV_VAR = "OPENAI_API_KEY"
DEFAULT_PURPOSE = "assistants"


def parse_header(value: str) -> tuple[str, str]:
    """Parse NAME:VALUE format.

    Returns:
        Tuple of (name, value). Value may be empty; surrounding spaces are stripped.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    if ":" not in value:
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected NAME:VALUE (e.g., 'OpenAI-Organization:org-123')"
        )
    name, header_value = value.split(":", 1)
    name = name.strip()
    if not name:
        raise argparse.ArgumentTypeError(f"Invalid header '{value}'. Header name cannot be empty.")
    return (name, header_value.strip())


def parse_json_value(value: str) -> Any:
    """Parse a JSON literal given on the command line."""
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"Invalid JSON body: {e}")


@dataclass
class ConnectionArgs:
    """Connection flags shared by request and upload modes."""

    config: Path | None
    base_url: str | None
    api_key: str | None
    headers: dict[str, str]
    http_proxy: str | None
    https_proxy: str | None
    log_level: str | None


@dataclass
class RequestArgs:
    """Parsed arguments for request mode."""

    connection: ConnectionArgs
    method: str
    path: str
    body: Any
    body_file: Path | None


@dataclass
class UploadArgs:
    """Parsed arguments for upload mode."""

    connection: ConnectionArgs
    file: Path
    file_name: str | None
    purpose: str


@dataclass
class SecureConfigArgs:
    """Parsed arguments for secure-config mode."""

    log_level: str | None


def _add_connection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to settings file (YAML)",
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=None,
        dest="base_url",
        help="API base URL (overrides settings)",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=None,
        dest="api_key",
        help=f"Bearer token (overrides settings; falls back to ${API_KEY_ENV_VAR})",
    )
    parser.add_argument(
        "--header",
        type=parse_header,
        action="append",
        default=[],
        metavar="NAME:VALUE",
        dest="header",
        help="Additional request header (can be repeated)",
    )
    parser.add_argument(
        "--http-proxy",
        type=str,
        default=None,
        dest="http_proxy",
        help="Forward proxy for http:// targets",
    )
    parser.add_argument(
        "--https-proxy",
        type=str,
        default=None,
        dest="https_proxy",
        help="Forward proxy for https:// targets",
    )
    _add_log_level_argument(parser)


def _add_log_level_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        dest="log_level",
        help="Logging level (overrides settings)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with request, upload and secure-config subcommands."""
    parser = argparse.ArgumentParser(
        prog="api-relay",
        description="Send requests to an OpenAI-compatible API, optionally through forward proxies.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Execution mode")

    # Request subcommand
    request_parser = subparsers.add_parser(
        "request",
        help="Send one JSON request and print the response envelope",
    )
    request_parser.add_argument(
        "--method",
        type=str,
        required=True,
        help=f"HTTP method ({', '.join(sorted(SUPPORTED_METHODS))})",
    )
    request_parser.add_argument(
        "--path",
        type=str,
        required=True,
        help="Path joined onto the base URL, e.g. /chat/completions",
    )
    body_group = request_parser.add_mutually_exclusive_group()
    body_group.add_argument(
        "--body",
        type=parse_json_value,
        default=None,
        help="JSON request body",
    )
    body_group.add_argument(
        "--body-file",
        type=Path,
        default=None,
        dest="body_file",
        help="Path to a file containing the JSON request body",
    )
    _add_connection_arguments(request_parser)

    # Upload subcommand
    upload_parser = subparsers.add_parser(
        "upload",
        help="Upload a file to <base-url>/files and print the response envelope",
    )
    upload_parser.add_argument(
        "--file",
        type=Path,
        required=True,
        help="Path to the file to upload",
    )
    upload_parser.add_argument(
        "--file-name",
        type=str,
        default=None,
        dest="file_name",
        help="File name sent in the form (default: name of --file)",
    )
    upload_parser.add_argument(
        "--purpose",
        type=str,
        default=DEFAULT_PURPOSE,
        help=f"Upload purpose (default: {DEFAULT_PURPOSE})",
    )
    _add_connection_arguments(upload_parser)

    # Secure-config subcommand
    secure_parser = subparsers.add_parser(
        "secure-config",
        help="Locate and print the secure config (config.pkg)",
    )
    _add_log_level_argument(secure_parser)

    return parser


def parse_connection_args(namespace: argparse.Namespace) -> ConnectionArgs:
    """Convert connection flags to ConnectionArgs. Repeated headers: last value wins."""
    return ConnectionArgs(
        config=namespace.config,
        base_url=namespace.base_url,
        api_key=namespace.api_key,
        headers=dict(namespace.header or []),
        http_proxy=namespace.http_proxy,
        https_proxy=namespace.https_proxy,
        log_level=namespace.log_level,
    )


def parse_args(args: list[str] | None = None) -> RequestArgs | UploadArgs | SecureConfigArgs:
    """Parse command-line arguments and return typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.command == "request":
        return RequestArgs(
            connection=parse_connection_args(namespace),
            method=namespace.method,
            path=namespace.path,
            body=namespace.body,
            body_file=namespace.body_file,
        )
    elif namespace.command == "upload":
        return UploadArgs(
            connection=parse_connection_args(namespace),
            file=namespace.file,
            file_name=namespace.file_name,
            purpose=namespace.purpose,
        )
    elif namespace.command == "secure-config":
        return SecureConfigArgs(log_level=namespace.log_level)
    else:
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")


def resolve_settings(connection: ConnectionArgs) -> RelaySettings:
    """Merge the settings file (if any) with command-line overrides.

    Raises:
        ConfigError: If the settings file is invalid or no API key is available.
    """
    settings = load_settings(connection.config) if connection.config else RelaySettings()

    updates: dict[str, Any] = {}
    if connection.base_url:
        updates["base_url"] = connection.base_url
    if connection.api_key:
        updates["api_key"] = connection.api_key
    elif not settings.api_key and os.environ.get(API_KEY_ENV_VAR):
        updates["api_key"] = os.environ[API_KEY_ENV_VAR]
    if connection.headers:
        updates["additional_headers"] = {**(settings.additional_headers or {}), **connection.headers}
    if connection.http_proxy is not None or connection.https_proxy is not None:
        current = settings.proxy or ProxyConfig()
        updates["proxy"] = ProxyConfig(
            http_proxy=connection.http_proxy if connection.http_proxy is not None else current.http_proxy,
            https_proxy=connection.https_proxy if connection.https_proxy is not None else current.https_proxy,
        )
    if connection.log_level:
        updates["log_level"] = connection.log_level

    resolved = settings.model_copy(update=updates)
    if not resolved.api_key:
        raise ConfigError(
            f"No API key: pass --api-key, set api_key in the settings file, or set ${API_KEY_ENV_VAR}"
        )
    return resolved


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        parsed = parse_args(argv)

        if isinstance(parsed, RequestArgs):
            return run_request(parsed)
        elif isinstance(parsed, UploadArgs):
            return run_upload(parsed)
        else:
            return run_secure_config(parsed)

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def _print_envelope(envelope: ResponseEnvelope) -> None:
    print(json.dumps(envelope.model_dump(), indent=2, ensure_ascii=False))


def _start_logging(settings: RelaySettings) -> None:
    configure_logging(
        settings.log_level, Path(settings.log_file) if settings.log_file else None
    )


def run_request(args: RequestArgs) -> int:
    """Run request mode."""
    try:
        settings = resolve_settings(args.connection)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    body = args.body
    if args.body_file is not None:
        try:
            body = json.loads(args.body_file.read_text(encoding="utf-8-sig"))
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error reading body file: {e}", file=sys.stderr)
            return 1

    descriptor = RequestDescriptor(
        base_url=settings.base_url,
        api_key=settings.api_key,
        method=args.method,
        path=args.path,
        body=body,
        additional_headers=settings.additional_headers,
        proxy_config=settings.proxy,
    )

    _start_logging(settings)
    try:
        envelope = asyncio.run(RequestExecutor().execute(descriptor))
    except ExecutionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        shutdown_logging()

    _print_envelope(envelope)
    return 0


def run_upload(args: UploadArgs) -> int:
    """Run upload mode."""
    try:
        settings = resolve_settings(args.connection)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    try:
        file_bytes = args.file.read_bytes()
    except OSError as e:
        print(f"Error reading file: {e}", file=sys.stderr)
        return 1

    descriptor = FileUploadDescriptor(
        base_url=settings.base_url,
        api_key=settings.api_key,
        file_data=base64.b64encode(file_bytes).decode("ascii"),
        file_name=args.file_name or args.file.name,
        purpose=args.purpose,
        additional_headers=settings.additional_headers,
        proxy_config=settings.proxy,
    )

    _start_logging(settings)
    try:
        envelope = asyncio.run(UploadExecutor().upload(descriptor))
    except ExecutionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        shutdown_logging()

    _print_envelope(envelope)
    return 0


def run_secure_config(args: SecureConfigArgs) -> int:
    """Run secure-config mode."""
    configure_logging(args.log_level or "WARNING")
    try:
        result = load_secure_config()
    except ConfigError as e:
        print(f"Error loading secure config: {e}", file=sys.stderr)
        return 1
    finally:
        shutdown_logging()

    print(json.dumps(result.model_dump(by_alias=True), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
