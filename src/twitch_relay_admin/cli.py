"""Admin CLI for managing relay client keys over the HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

import httpx

from twitch_relay.config import ConfigError, LoadedConfig, load_config

EXIT_SUCCESS = 0
EXIT_USAGE = 2
EXIT_AUTH = 10
EXIT_NETWORK = 20
EXIT_SERVER = 30


class CLIError(Exception):
    """Custom exception to control the exit code from the CLI."""

    def __init__(self, message: str, exit_code: int = EXIT_USAGE) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(frozen=True)
class ConnectionSettings:
    """Resolved connection metadata for the admin client."""

    base_url: str
    admin_key: str


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="relayctl", description="Relay admin client.")
    parser.add_argument(
        "--config",
        help="Path to relay config YAML (falls back to RELAY_CONFIG).",
    )
    parser.add_argument(
        "--base-url",
        help="Relay server base URL (falls back to RELAY_BASE_URL or config.server.base_url).",
    )
    parser.add_argument(
        "--admin-key",
        help="Admin key (falls back to RELAY_ADMIN_KEY or the config admin key).",
    )
    parser.add_argument(
        "--timeout",
        type=_parse_positive_float,
        default=10.0,
        help="Request timeout in seconds (default 10).",
    )
    json_group = parser.add_mutually_exclusive_group()
    json_group.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output JSON (default).",
    )
    json_group.add_argument(
        "--no-json",
        dest="json_output",
        action="store_false",
        help="Disable JSON output in favor of human-readable summaries.",
    )
    parser.set_defaults(json_output=True)
    parser.add_argument(
        "--pretty",
        action="store_true",
        help="Pretty-print JSON output.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress informational logging on stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    _build_add_parser(subparsers)
    _build_remove_parser(subparsers)
    _build_list_parser(subparsers)
    return parser.parse_args(argv)


def _build_add_parser(subparsers: argparse._SubParsersAction) -> None:  # type: ignore[arg-type]
    parser = subparsers.add_parser("add", help="Issue a client key for a Twitch channel.")
    parser.add_argument(
        "--channel",
        required=True,
        help="Twitch channel (login name) the key is bound to.",
    )
    parser.set_defaults(command="add")


def _build_remove_parser(subparsers: argparse._SubParsersAction) -> None:  # type: ignore[arg-type]
    parser = subparsers.add_parser(
        "remove", help="Revoke client keys (all or nothing)."
    )
    parser.add_argument("keys", nargs="+", help="Client keys to revoke.")
    parser.set_defaults(command="remove")


def _build_list_parser(subparsers: argparse._SubParsersAction) -> None:  # type: ignore[arg-type]
    parser = subparsers.add_parser("list", help="List client keys and connection state.")
    parser.set_defaults(command="list")


def _parse_positive_float(value: str) -> float:
    try:
        timeout = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("timeout must be a number") from exc
    if timeout <= 0:
        raise argparse.ArgumentTypeError("timeout must be positive")
    return timeout


def resolve_connection(
    args: argparse.Namespace,
    *,
    config_loader: Callable[[str], LoadedConfig] | None = None,
) -> ConnectionSettings:
    """Determine base URL and admin key from args, env, or config."""

    if config_loader is None:
        config_loader = load_config

    config_path = args.config or os.getenv("RELAY_CONFIG")
    loaded = None
    if config_path:
        try:
            loaded = config_loader(config_path)
        except ConfigError as exc:
            raise CLIError(f"Failed to load config: {exc}") from exc

    base_url = args.base_url or os.getenv("RELAY_BASE_URL")
    admin_key = args.admin_key or os.getenv("RELAY_ADMIN_KEY")

    if loaded:
        base_url = base_url or loaded.data.server.base_url
        if not admin_key:
            try:
                admin_key = loaded.data.admin.resolved_api_key()
            except ConfigError as exc:
                raise CLIError(str(exc)) from exc

    base_url = (base_url or "http://127.0.0.1:8080").rstrip("/")
    if not base_url:
        raise CLIError("Base URL cannot be empty")
    if not admin_key:
        raise CLIError("Admin key is required (--admin-key, RELAY_ADMIN_KEY, or config admin key)")

    return ConnectionSettings(base_url=base_url, admin_key=admin_key)


def _log(message: str, *, quiet: bool) -> None:
    if not quiet:
        print(message, file=sys.stderr)


def _handle_response_error(response: httpx.Response) -> int:
    status = response.status_code
    detail = _extract_error_detail(response)
    msg = f"Request failed ({status}): {detail}"
    print(msg, file=sys.stderr)
    if status in (401, 403):
        return EXIT_AUTH
    if 500 <= status < 600:
        return EXIT_SERVER
    return EXIT_USAGE


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, Mapping):
            return data.get("description") or json.dumps(data)
        return str(data)
    except ValueError:
        return response.text.strip() or response.reason_phrase


def _print_json(value: object, pretty: bool) -> None:
    dump = json.dumps(value, indent=2 if pretty else None)
    sys.stdout.write(dump + "\n")


def _print_human_clients(clients: list[Mapping[str, object]]) -> None:
    if not clients:
        print("No client keys issued.")
        return
    for client in clients:
        marker = "connected" if client.get("connected") else "offline"
        print(f"- {client.get('key')}: {client.get('channel')} ({marker})")


def _fetch_clients(client: httpx.Client, settings: ConnectionSettings) -> httpx.Response:
    return client.get("/clients", params={"admin_key": settings.admin_key})


def _run_command(
    args: argparse.Namespace,
    settings: ConnectionSettings,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> int:
    try:
        with httpx.Client(
            base_url=settings.base_url, timeout=args.timeout, transport=transport
        ) as client:
            if args.command == "add":
                # The issue call answers with an empty object, so the new key is
                # found by diffing the listing around it.
                response = _fetch_clients(client, settings)
                if not response.is_success:
                    return _handle_response_error(response)
                known = {entry.get("key") for entry in response.json().get("clients", [])}
                _log(f"Issuing client key for {args.channel}...", quiet=args.quiet)
                response = client.get(
                    "/addClient",
                    params={"admin_key": settings.admin_key, "twitch_channel": args.channel},
                )
                if not response.is_success:
                    return _handle_response_error(response)
                response = _fetch_clients(client, settings)
                if not response.is_success:
                    return _handle_response_error(response)
                issued = [
                    entry
                    for entry in response.json().get("clients", [])
                    if entry.get("key") not in known
                ]
                if args.json_output:
                    _print_json(issued, args.pretty)
                else:
                    _print_human_clients(issued)
                return EXIT_SUCCESS

            if args.command == "remove":
                _log(f"Revoking {len(args.keys)} client key(s)...", quiet=args.quiet)
                response = client.get(
                    "/removeClients",
                    params=[("admin_key", settings.admin_key)]
                    + [("clients", key) for key in args.keys],
                )
                if response.is_success:
                    if args.json_output:
                        _print_json(response.json(), args.pretty)
                    else:
                        print(f"Revoked {len(args.keys)} client key(s)")
                    return EXIT_SUCCESS
                return _handle_response_error(response)

            if args.command == "list":
                response = _fetch_clients(client, settings)
                if response.is_success:
                    clients = response.json().get("clients", [])
                    if args.json_output:
                        _print_json(clients, args.pretty)
                    else:
                        _print_human_clients(clients)
                    return EXIT_SUCCESS
                return _handle_response_error(response)

            print("Unknown command.", file=sys.stderr)
            return EXIT_USAGE
    except httpx.RequestError as exc:
        print(f"Request error: {exc}", file=sys.stderr)
        return EXIT_NETWORK


def _run(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = resolve_connection(args)
    except CLIError as exc:
        print(exc, file=sys.stderr)
        return exc.exit_code
    return _run_command(args, settings)


def main(argv: Iterable[str] | None = None) -> None:
    raise SystemExit(_run(argv))


if __name__ == "__main__":
    main()
