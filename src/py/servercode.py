#!/usr/bin/env python3
# --
# File: servercode.py
#
# `servercode` deploys and manages the server code (uploadable backend
# scripts) of an application hosted on a remote platform. Every command maps
# to a single request against the application's `server-code` resources.
#
# ## Usage
#
# >   servercode [OPTIONS] COMMAND [ARGS...]
#
# ## Endpoints
#
# >   POST   /apps/{app}/server-code                          - deploy
# >   POST   /apps/{app}/server-code/versions/{version}/{entry} - invoke
# >   GET    /apps/{app}/server-code/versions                 - list
# >   GET    /apps/{app}/server-code/versions/{version}       - get
# >   PUT    /apps/{app}/server-code/versions/current         - activate
# >   DELETE /apps/{app}/server-code/versions/{version}       - delete
#
# ## Configuration
#
# >   [~/.servercode.toml] - Optional `endpoint`, `app_id`, `token`, `timeout`
# >   SERVERCODE_*         - Environment overrides
# >   --endpoint, ...      - Command-line overrides (last wins)

import argparse
import dataclasses
import json
import os
import sys
import tomllib
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, NoReturn, Optional

import requests

# -----------------------------------------------------------------------------
#
# GLOBALS AND CONFIGURATION
#
# -----------------------------------------------------------------------------

SERVERCODE_VERSION = "1.0.0"
SERVERCODE_DEFAULT_ENDPOINT = "https://api.example.com"
SERVERCODE_CONFIG_FILE = Path.home() / ".servercode.toml"
SERVERCODE_NO_COLOR = os.environ.get("SERVERCODE_NO_COLOR", "") == "1"

# Version path segment the platform resolves to the active version
SERVERCODE_CURRENT = "current"

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Global runtime state (output only, never request configuration)
_verbose = False
_no_color = SERVERCODE_NO_COLOR

# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------


class ServerCodeError(Exception):
	"""Base class for all servercode errors."""

	pass


class ServerCodeConfigError(ServerCodeError):
	"""Raised when the configuration is missing or invalid."""

	pass


class ServerCodeHTTPError(ServerCodeError):
	"""Raised when a request fails or the server answers with a non-2xx status."""

	def __init__(
		self,
		method: str,
		path: str,
		status: Optional[int] = None,
		detail: str = "",
	):
		self.method = method
		self.path = path
		self.status = status
		self.detail = detail
		if status is None:
			message = f"{method} {path} failed: {detail}"
		else:
			message = f"{method} {path} returned HTTP {status}"
			if detail:
				message += f": {detail}"
		super().__init__(message)


class ServerCodeDecodeError(ServerCodeError):
	"""Raised when a response body does not have the expected JSON shape."""

	pass


@dataclasses.dataclass
class Config:
	"""Resolved connection settings, passed explicitly to every operation."""

	endpoint: str = SERVERCODE_DEFAULT_ENDPOINT
	app_id: str = ""
	token: str = ""
	timeout: Optional[int] = None  # seconds, None waits indefinitely

	def headers(self, content_type: Optional[str] = None) -> dict[str, str]:
		"""Request headers with authorization and optional content type."""
		headers = {}
		if self.token:
			headers["Authorization"] = f"Bearer {self.token}"
		if content_type:
			headers["Content-Type"] = content_type
		return headers

	def base_path(self) -> str:
		if not self.app_id:
			raise ServerCodeConfigError(
				"No application id configured (use --app-id or SERVERCODE_APP_ID)"
			)
		return f"/apps/{self.app_id}/server-code"


@dataclasses.dataclass(frozen=True)
class Version:
	"""A server code version as reported by the platform."""

	version_id: str
	created_at: int  # ms since epoch
	modified_at: int  # ms since epoch
	active: bool

	@property
	def status(self) -> str:
		return "active" if self.active else "inactive"

	def to_dict(self) -> dict[str, Any]:
		"""Wire representation, as returned by the versions endpoint."""
		return {
			"versionID": self.version_id,
			"createdAt": self.created_at,
			"modifiedAt": self.modified_at,
			"current": self.active,
		}


# -----------------------------------------------------------------------------
#
# UTILITIES
#
# -----------------------------------------------------------------------------


def servercode_util_verbose(message: str) -> None:
	"""Print message only in verbose mode."""
	if _verbose:
		print(f"[verbose] {message}", file=sys.stderr)


def servercode_util_error(message: str) -> None:
	"""Print error message to stderr."""
	color = "" if _no_color else "\033[31m"
	reset = "" if _no_color else "\033[0m"
	print(f"{color}error:{reset} {message}", file=sys.stderr)


def servercode_util_warn(message: str) -> None:
	"""Print warning message to stderr."""
	color = "" if _no_color else "\033[33m"
	reset = "" if _no_color else "\033[0m"
	print(f"{color}warning:{reset} {message}", file=sys.stderr)


def servercode_util_color(text: str, color: str) -> str:
	"""Colorize text if colors are enabled and stdout is a terminal."""
	if _no_color or not sys.stdout.isatty():
		return text
	colors = {
		"red": "\033[31m",
		"green": "\033[32m",
		"yellow": "\033[33m",
		"bold": "\033[1m",
		"reset": "\033[0m",
	}
	return f"{colors.get(color, '')}{text}{colors.get('reset', '')}"


def servercode_util_output_raw(data: bytes) -> None:
	"""Write a response body to stdout as-is, followed by a newline."""
	stream = sys.stdout
	stream.flush()
	buffer = getattr(stream, "buffer", None)
	if buffer is None:
		stream.write(data.decode("utf-8", errors="replace") + "\n")
		stream.flush()
	else:
		buffer.write(data + b"\n")
		buffer.flush()


def servercode_util_stdin_is_interactive() -> bool:
	"""Tell whether standard input is a terminal rather than a pipe or file."""
	return sys.stdin is not None and sys.stdin.isatty()


def servercode_util_format_time(timestamp_ms: int) -> str:
	"""Format a millisecond epoch timestamp in local time."""
	return datetime.fromtimestamp(timestamp_ms / 1000).strftime(TIME_FORMAT)


def servercode_util_mask(secret: str) -> str:
	if not secret:
		return "(unset)"
	if len(secret) <= 8:
		return "****"
	return f"****{secret[-4:]}"


def servercode_util_decode_object(data: bytes, what: str) -> dict[str, Any]:
	"""Parse a response body that must be a JSON object."""
	try:
		value = json.loads(data)
	except ValueError as e:
		raise ServerCodeDecodeError(f"Invalid JSON in {what} response: {e}") from e
	if not isinstance(value, dict):
		raise ServerCodeDecodeError(
			f"Expected a JSON object in {what} response, got {type(value).__name__}"
		)
	return value


# -----------------------------------------------------------------------------
#
# CONFIGURATION LOADING
#
# -----------------------------------------------------------------------------


def servercode_config_parse_timeout(value: Any) -> int:
	try:
		timeout = int(value)
	except (TypeError, ValueError):
		raise ServerCodeConfigError(f"Invalid timeout: {value!r}") from None
	if timeout <= 0:
		raise ServerCodeConfigError(f"Timeout must be positive: {value!r}")
	return timeout


def servercode_config_file_path(path: Optional[str] = None) -> Path:
	"""Config file from --config, then SERVERCODE_CONFIG, then the default."""
	if path:
		return Path(path).expanduser()
	env_path = os.environ.get("SERVERCODE_CONFIG", "")
	if env_path:
		return Path(env_path).expanduser()
	return SERVERCODE_CONFIG_FILE


def servercode_config_from_dict(data: dict, config: Config) -> Config:
	"""Apply TOML data to config object.

	Keys may be at the top level or under a `[servercode]` table, the
	latter taking precedence.
	"""
	merged = {k: v for k, v in data.items() if not isinstance(v, dict)}
	section = data.get("servercode")
	if isinstance(section, dict):
		merged.update(section)

	if "endpoint" in merged:
		config.endpoint = str(merged["endpoint"])
	if "app_id" in merged:
		config.app_id = str(merged["app_id"])
	if "token" in merged:
		config.token = str(merged["token"])
	if "timeout" in merged:
		config.timeout = servercode_config_parse_timeout(merged["timeout"])
	return config


def servercode_config_from_env(config: Config) -> Config:
	"""Apply SERVERCODE_* environment overrides to config."""
	if os.environ.get("SERVERCODE_ENDPOINT"):
		config.endpoint = os.environ["SERVERCODE_ENDPOINT"]
	if os.environ.get("SERVERCODE_APP_ID"):
		config.app_id = os.environ["SERVERCODE_APP_ID"]
	if os.environ.get("SERVERCODE_TOKEN"):
		config.token = os.environ["SERVERCODE_TOKEN"]
	if os.environ.get("SERVERCODE_TIMEOUT"):
		config.timeout = servercode_config_parse_timeout(
			os.environ["SERVERCODE_TIMEOUT"]
		)
	return config


def servercode_config_load(
	path: Optional[str] = None,
	overrides: Optional[dict[str, Any]] = None,
) -> Config:
	"""Load and merge config: defaults + TOML file + env vars + overrides."""
	config = Config()

	conf_path = servercode_config_file_path(path)
	if conf_path.exists():
		try:
			with open(conf_path, "rb") as f:
				data = tomllib.load(f)
		except tomllib.TOMLDecodeError as e:
			raise ServerCodeConfigError(f"Failed to parse {conf_path}: {e}") from e
		config = servercode_config_from_dict(data, config)
		servercode_util_verbose(f"Loaded configuration from {conf_path}")
	elif path:
		raise ServerCodeConfigError(f"Config file not found: {conf_path}")

	config = servercode_config_from_env(config)

	for key, value in (overrides or {}).items():
		if value is None:
			continue
		if key == "timeout":
			value = servercode_config_parse_timeout(value)
		setattr(config, key, value)

	return config


# -----------------------------------------------------------------------------
#
# TRANSPORT
#
# -----------------------------------------------------------------------------


def servercode_http_request(
	config: Config,
	method: str,
	path: str,
	content_type: Optional[str] = None,
	body: Optional[bytes] = None,
) -> bytes:
	"""Issue one request against the platform and return the response body."""
	url = config.endpoint.rstrip("/") + path
	servercode_util_verbose(f"{method} {url}")
	try:
		response = requests.request(
			method,
			url,
			headers=config.headers(content_type),
			data=body,
			timeout=config.timeout,
		)
	except requests.RequestException as e:
		raise ServerCodeHTTPError(method, path, detail=str(e)) from e

	servercode_util_verbose(f"{method} {url} -> {response.status_code}")
	if not 200 <= response.status_code < 300:
		raise ServerCodeHTTPError(
			method, path, response.status_code, response.text.strip()
		)
	return response.content


# -----------------------------------------------------------------------------
#
# VERSIONS
#
# -----------------------------------------------------------------------------


def servercode_version_timestamp(data: dict, key: str, version_id: str) -> int:
	"""Read an optional integer millisecond timestamp from a version entry."""
	value = data.get(key)
	if value is None:
		return 0
	if isinstance(value, bool) or not isinstance(value, int):
		raise ServerCodeDecodeError(f"Invalid {key} in {version_id}: {value!r}")
	return value


def servercode_version_from_dict(data: Any) -> Version:
	"""Build a Version from one entry of the versions listing."""
	if not isinstance(data, dict):
		raise ServerCodeDecodeError(f"Invalid version entry: {data!r}")
	version_id = data.get("versionID")
	if not isinstance(version_id, str):
		raise ServerCodeDecodeError(f"Version entry without versionID: {data!r}")
	active = data.get("current")
	if active is None:
		active = False
	elif not isinstance(active, bool):
		raise ServerCodeDecodeError(f"Invalid current flag in {version_id}: {active!r}")
	return Version(
		version_id=version_id,
		created_at=servercode_version_timestamp(data, "createdAt", version_id),
		modified_at=servercode_version_timestamp(data, "modifiedAt", version_id),
		active=active,
	)


def servercode_versions_sort(versions: list[Version]) -> list[Version]:
	"""Sort by creation time, oldest first. Ties keep server order."""
	return sorted(versions, key=lambda v: v.created_at)


def servercode_versions_find_active(versions: list[Version]) -> Optional[str]:
	"""Return the id of the first active version, in the order given."""
	for version in versions:
		if version.active:
			return version.version_id
	return None


# -----------------------------------------------------------------------------
#
# OPERATIONS
#
# -----------------------------------------------------------------------------


def servercode_deploy(config: Config, code_path: str, activate: bool = False) -> str:
	"""Upload a script as a new version and return its id."""
	code = Path(code_path).read_bytes()
	data = servercode_http_request(
		config, "POST", config.base_path(), "application/javascript", code
	)
	result = servercode_util_decode_object(data, "deploy")
	version = result.get("versionID")
	if not isinstance(version, str) or not version:
		raise ServerCodeDecodeError(f"Deploy response without versionID: {result!r}")
	print(f"versionID: {version}")
	if activate:
		servercode_activate(config, version)
	return version


def servercode_invoke(
	config: Config,
	entry: str,
	version: str = SERVERCODE_CURRENT,
	stdin: Optional[BinaryIO] = None,
	interactive: Optional[bool] = None,
) -> bytes:
	"""Call an entry point of a version.

	The JSON payload is read from `stdin` when input is piped; an interactive
	terminal, or a process without standard input, sends an empty object
	instead.
	"""
	path = f"{config.base_path()}/versions/{version}/{entry}"
	if interactive is None:
		interactive = servercode_util_stdin_is_interactive()
	if stdin is None and not interactive and sys.stdin is not None:
		stdin = sys.stdin.buffer
	if interactive or stdin is None:
		body = b"{}"
	else:
		body = stdin.read()
	data = servercode_http_request(config, "POST", path, "application/json", body)
	servercode_util_output_raw(data)
	return data


def servercode_list_versions(config: Config) -> list[Version]:
	"""Fetch all versions, in server order."""
	data = servercode_http_request(config, "GET", f"{config.base_path()}/versions")
	result = servercode_util_decode_object(data, "list")
	entries = result.get("versions")
	if entries is None:
		return []
	if not isinstance(entries, list):
		raise ServerCodeDecodeError(
			f"Expected a list of versions, got {type(entries).__name__}"
		)
	return [servercode_version_from_dict(entry) for entry in entries]


def servercode_print_versions(
	versions: list[Version],
	quiet: bool = False,
	active_only: bool = False,
	json_format: bool = False,
) -> list[Version]:
	"""Print versions oldest first and return the ones printed."""
	shown = [
		v for v in servercode_versions_sort(versions) if v.active or not active_only
	]
	if json_format:
		print(json.dumps([v.to_dict() for v in shown], indent=2))
		return shown
	for v in shown:
		if quiet:
			print(v.version_id)
		else:
			status = v.status
			if v.active:
				status = servercode_util_color(status, "green")
			print(
				f"{v.version_id}\t{servercode_util_format_time(v.created_at)}\t{status}"
			)
	return shown


def servercode_get(config: Config, version: Optional[str] = None) -> bytes:
	"""Fetch the source of a version, the active one when none is given."""
	if not version:
		# First active entry in server order, not the sorted listing order
		version = servercode_versions_find_active(servercode_list_versions(config))
		if version is None:
			servercode_util_warn("No active version found")
			version = ""
	data = servercode_http_request(
		config, "GET", f"{config.base_path()}/versions/{version}"
	)
	servercode_util_output_raw(data)
	return data


def servercode_activate(config: Config, version: str) -> None:
	"""Make a version the one serving live invocations."""
	servercode_http_request(
		config,
		"PUT",
		f"{config.base_path()}/versions/{SERVERCODE_CURRENT}",
		"text/plain",
		version.encode("utf-8"),
	)
	servercode_util_verbose(f"Activated version {version}")


def servercode_delete(config: Config, version: str) -> bytes:
	data = servercode_http_request(
		config, "DELETE", f"{config.base_path()}/versions/{version}"
	)
	servercode_util_output_raw(data)
	return data


# -----------------------------------------------------------------------------
#
# CLI IMPLEMENTATION
#
# -----------------------------------------------------------------------------


class ServerCodeArgumentParser(argparse.ArgumentParser):
	"""ArgumentParser with improved error messages."""

	def error(self, message: str) -> NoReturn:
		"""Print error with available commands."""
		self.print_usage(sys.stderr)

		commands = ["list", "deploy", "get", "invoke", "activate", "delete", "config"]

		sys.stderr.write(f"\n{self.prog}: error: {message}\n")
		sys.stderr.write(f"\nAvailable commands: {', '.join(commands)}\n")
		sys.stderr.write(
			f"Run '{self.prog} COMMAND --help' for command-specific help.\n"
		)
		sys.exit(2)


def servercode_build_parser() -> argparse.ArgumentParser:
	"""Build argument parser with all subcommands."""
	parser = ServerCodeArgumentParser(
		prog="servercode",
		description="Deploy and manage the server code of a hosted application",
	)

	# Global options
	parser.add_argument(
		"-c",
		"--config",
		help=f"Configuration file (default: {SERVERCODE_CONFIG_FILE})",
	)
	parser.add_argument("--endpoint", help="Platform API base URL")
	parser.add_argument("--app-id", help="Application identifier")
	parser.add_argument("--token", help="Authorization token")
	parser.add_argument(
		"-T",
		"--timeout",
		help="Request timeout in seconds (default: none)",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
	parser.add_argument(
		"--no-color", action="store_true", help="Disable colored output"
	)
	parser.add_argument("--version", action="store_true", help="Show version")

	subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

	# list
	p_list = subparsers.add_parser("list", help="List versions of server code")
	p_list.add_argument(
		"-q", "--quiet", action="store_true", help="Print only version ids"
	)
	p_list.add_argument(
		"-a",
		"--active",
		dest="active_only",
		action="store_true",
		help="Print only the active version",
	)
	p_list.add_argument("--json", action="store_true", help="Output as JSON")

	# deploy
	p_deploy = subparsers.add_parser("deploy", help="Deploy a server code file")
	p_deploy.add_argument("file", help="Server code file to upload")
	p_deploy.add_argument(
		"--activate", action="store_true", help="Activate after deploying"
	)

	# get
	p_get = subparsers.add_parser("get", help="Print the source of a version")
	p_get.add_argument(
		"version", nargs="?", help="Version id (default: the active version)"
	)

	# invoke
	p_invoke = subparsers.add_parser(
		"invoke",
		help="Invoke an entry point of server code",
		description="Invoke an entry point. The JSON payload is read from "
		"standard input when it is piped, otherwise {} is sent.",
	)
	p_invoke.add_argument("entry", help="Entry point name")
	p_invoke.add_argument(
		"version",
		nargs="?",
		default=SERVERCODE_CURRENT,
		help=f"Version id (default: {SERVERCODE_CURRENT})",
	)

	# activate
	p_activate = subparsers.add_parser("activate", help="Activate a version")
	p_activate.add_argument("version", help="Version id")

	# delete
	p_delete = subparsers.add_parser("delete", help="Delete a version")
	p_delete.add_argument("version", help="Version id")

	# config
	subparsers.add_parser("config", help="Show the resolved configuration")

	return parser


def servercode_config_from_args(args: argparse.Namespace) -> Config:
	"""Resolve configuration, applying global command-line overrides last."""
	return servercode_config_load(
		args.config,
		overrides={
			"endpoint": args.endpoint,
			"app_id": args.app_id,
			"token": args.token,
			"timeout": args.timeout,
		},
	)


def servercode_cmd_handler_list(args: argparse.Namespace) -> int:
	"""Handle 'list' command."""
	try:
		config = servercode_config_from_args(args)
		versions = servercode_list_versions(config)
		servercode_print_versions(
			versions,
			quiet=args.quiet,
			active_only=args.active_only,
			json_format=args.json,
		)
		return 0
	except Exception as e:
		servercode_util_error(str(e))
		return 1


def servercode_cmd_handler_deploy(args: argparse.Namespace) -> int:
	"""Handle 'deploy' command."""
	try:
		config = servercode_config_from_args(args)
		servercode_deploy(config, args.file, activate=args.activate)
		return 0
	except Exception as e:
		servercode_util_error(str(e))
		return 1


def servercode_cmd_handler_get(args: argparse.Namespace) -> int:
	"""Handle 'get' command."""
	try:
		config = servercode_config_from_args(args)
		servercode_get(config, args.version)
		return 0
	except Exception as e:
		servercode_util_error(str(e))
		return 1


def servercode_cmd_handler_invoke(args: argparse.Namespace) -> int:
	"""Handle 'invoke' command."""
	try:
		config = servercode_config_from_args(args)
		servercode_invoke(config, args.entry, args.version)
		return 0
	except Exception as e:
		servercode_util_error(str(e))
		return 1


def servercode_cmd_handler_activate(args: argparse.Namespace) -> int:
	"""Handle 'activate' command."""
	try:
		config = servercode_config_from_args(args)
		servercode_activate(config, args.version)
		return 0
	except Exception as e:
		servercode_util_error(str(e))
		return 1


def servercode_cmd_handler_delete(args: argparse.Namespace) -> int:
	"""Handle 'delete' command."""
	try:
		config = servercode_config_from_args(args)
		servercode_delete(config, args.version)
		return 0
	except Exception as e:
		servercode_util_error(str(e))
		return 1


def servercode_cmd_handler_config(args: argparse.Namespace) -> int:
	"""Handle 'config' command."""
	try:
		config = servercode_config_from_args(args)
		print(f"CONFIG   = {servercode_config_file_path(args.config)}")
		print(f"ENDPOINT = {config.endpoint}")
		print(f"APP_ID   = {config.app_id or '(unset)'}")
		print(f"TOKEN    = {servercode_util_mask(config.token)}")
		print(f"TIMEOUT  = {config.timeout or '(none)'}")
		return 0
	except Exception as e:
		servercode_util_error(str(e))
		return 1


# --- Main Entry Point ---


def servercode_main(argv: Optional[list[str]] = None) -> int:
	"""Main entry point."""
	global _verbose, _no_color

	parser = servercode_build_parser()
	args = parser.parse_args(argv)

	if args.version:
		print(f"servercode {SERVERCODE_VERSION}")
		return 0

	_verbose = args.verbose
	_no_color = args.no_color or SERVERCODE_NO_COLOR

	if not args.command:
		parser.print_help()
		return 0

	handlers = {
		"list": servercode_cmd_handler_list,
		"deploy": servercode_cmd_handler_deploy,
		"get": servercode_cmd_handler_get,
		"invoke": servercode_cmd_handler_invoke,
		"activate": servercode_cmd_handler_activate,
		"delete": servercode_cmd_handler_delete,
		"config": servercode_cmd_handler_config,
	}

	handler = handlers.get(args.command)
	if not handler:
		servercode_util_error(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(servercode_main())

# EOF
