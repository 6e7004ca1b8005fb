"""CLI entry point for reqengine.

Sends one request and prints the normalized response:

    reqengine GET https://example.com/ --param q=search --header X-Trace=1
    reqengine POST https://example.com/upload --file doc=./a.pdf --data k=v --json-output
    reqengine GET https://example.com/ --options request.yaml --raw
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from reqengine.client import Engine
from reqengine.errors import EngineError, TransportError
from reqengine.models import NormalizedResponse
from reqengine.options import parse_options, read_options_file


def non_negative_float(value: str) -> float:
    """Parse a timeout in seconds; 0 disables it.

    Raises:
        argparse.ArgumentTypeError: If value is not a number or is negative.
    """
    try:
        result = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid number '{value}'.")
    if result < 0:
        raise argparse.ArgumentTypeError(f"Value must not be negative, got {result}.")
    return result


def key_value(value: str) -> tuple[str, str]:
    """Parse KEY=VALUE. The value may be empty or contain '='.

    Raises:
        argparse.ArgumentTypeError: If there is no '=' or the key is empty.
    """
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Invalid format '{value}'. Expected KEY=VALUE")
    return (key, val)


def scheme_proxy(value: str) -> tuple[str, str]:
    """Parse SCHEME=PROXY_URL (e.g. 'https=http://127.0.0.1:8080')."""
    scheme, proxy = key_value(value)
    if scheme not in ("http", "https"):
        raise argparse.ArgumentTypeError(f"Invalid scheme '{scheme}'. Expected http or https")
    return (scheme, proxy)


def credentials(value: str) -> list[str]:
    """Parse USER:PASSWORD. The password may contain ':'."""
    user, sep, password = value.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"Invalid format '{value}'. Expected USER:PASSWORD")
    return [user, password]


@dataclass
class RequestArgs:
    """Parsed arguments for one request."""

    method: str
    url: str
    options_file: Path | None
    options: dict[str, Any]
    output: str
    verbose: bool


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="reqengine",
        description="Send one HTTP request and print the normalized response.",
    )
    parser.add_argument("method", help="HTTP method (GET, POST, PUT, ...)")
    parser.add_argument("url", help="Absolute target URL")

    parser.add_argument(
        "--options",
        type=Path,
        default=None,
        metavar="FILE",
        help="YAML option file (${ENV_VAR} substitution); flags below override its keys",
    )

    body = parser.add_argument_group("body (first present wins: raw, json, xml, files, data)")
    body.add_argument("--raw-data", default=None, metavar="TEXT", help="Verbatim request body")
    body.add_argument("--json", dest="json_body", default=None, metavar="TEXT", help="Pre-serialized JSON body")
    body.add_argument("--xml", default=None, metavar="TEXT", help="Pre-serialized XML body")
    body.add_argument(
        "--file",
        type=key_value,
        action="append",
        default=[],
        metavar="FIELD=PATH",
        help="Upload a file (can be repeated)",
    )
    body.add_argument(
        "--data",
        type=key_value,
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Form field (can be repeated)",
    )

    request = parser.add_argument_group("request")
    request.add_argument(
        "--param", type=key_value, action="append", default=[], metavar="KEY=VALUE", help="Query parameter"
    )
    request.add_argument("--raw-query", default=None, metavar="QUERY", help="Verbatim query string")
    request.add_argument(
        "--header", type=key_value, action="append", default=[], metavar="NAME=VALUE", help="Request header"
    )
    request.add_argument(
        "--cookie", type=key_value, action="append", default=[], metavar="NAME=VALUE", help="Request cookie"
    )
    request.add_argument("--host", default=None, help="Host header override")
    request.add_argument("--auth", type=credentials, default=None, metavar="USER:PASSWORD", help="Basic auth")
    request.add_argument("--ajax", action="store_true", help="Send X-Requested-With: XMLHttpRequest")

    transport = parser.add_argument_group("transport")
    transport.add_argument(
        "--proxy", type=scheme_proxy, action="append", default=[], metavar="SCHEME=URL", help="Per-scheme proxy"
    )
    transport.add_argument(
        "--timeout", type=non_negative_float, default=None, help="Total timeout in seconds (default: 30, 0 disables)"
    )
    transport.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    transport.add_argument("--no-compress", action="store_true", help="Request identity encoding")
    transport.add_argument("--no-redirect", action="store_true", help="Return 3xx responses instead of following")

    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "--raw", dest="output", action="store_const", const="raw", help="Print request and response wire text"
    )
    output.add_argument(
        "--json-output", dest="output", action="store_const", const="json", help="Print the response as JSON"
    )
    parser.set_defaults(output="summary")

    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    return parser


def _option_overrides(namespace: argparse.Namespace) -> dict[str, Any]:
    """Option-mapping keys set on the command line."""
    overrides: dict[str, Any] = {}
    if namespace.raw_data is not None:
        overrides["raw_data"] = namespace.raw_data
    if namespace.json_body is not None:
        overrides["json"] = namespace.json_body
    if namespace.xml is not None:
        overrides["xml"] = namespace.xml
    if namespace.file:
        overrides["files"] = [{"field": field, "path": path} for field, path in namespace.file]
    if namespace.data is not None:
        overrides["data"] = dict(namespace.data)
    if namespace.param:
        overrides["params"] = dict(namespace.param)
    if namespace.raw_query is not None:
        overrides["raw_query"] = namespace.raw_query
    if namespace.header:
        overrides["headers"] = dict(namespace.header)
    if namespace.cookie:
        overrides["cookies"] = dict(namespace.cookie)
    if namespace.host is not None:
        overrides["host"] = namespace.host
    if namespace.auth is not None:
        overrides["auth"] = namespace.auth
    if namespace.ajax:
        overrides["ajax"] = True
    if namespace.proxy:
        overrides["proxies"] = dict(namespace.proxy)
    if namespace.timeout is not None:
        overrides["timeout"] = namespace.timeout
    if namespace.insecure:
        overrides["verify"] = False
    if namespace.no_compress:
        overrides["compress"] = False
    if namespace.no_redirect:
        overrides["redirect"] = False
    return overrides


def parse_args(args: list[str] | None = None) -> RequestArgs:
    """Parse command-line arguments and return the typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    namespace = build_parser().parse_args(args)
    return RequestArgs(
        method=namespace.method.upper(),
        url=namespace.url,
        options_file=namespace.options,
        options=_option_overrides(namespace),
        output=namespace.output,
        verbose=namespace.verbose,
    )


def format_summary(response: NormalizedResponse) -> str:
    """Status line, headers, blank line, body text; redirect hops listed first."""
    lines = [f"-> {hop.status_code} {hop.url}" for hop in response.history]
    lines.append(f"{response.proto} {response.status_code} {response.url}")
    if response.raw_headers:
        lines.append(response.raw_headers.replace("\r\n", "\n"))
    lines.append("")
    lines.append(response.text)
    return "\n".join(lines)


def format_raw(response: NormalizedResponse) -> str:
    """The reconstructed request, then the response head and body."""
    head = f"{response.proto} {response.status_code}\r\n"
    if response.raw_headers:
        head += response.raw_headers + "\r\n"
    return response.request.raw + "\r\n\r\n" + head + "\r\n" + response.text


def run_request(args: RequestArgs) -> int:
    """Send the request and print it. Returns the exit code."""
    try:
        raw: dict[str, Any] = {}
        if args.options_file is not None:
            raw = read_options_file(args.options_file)
        raw.update(args.options)
        options = parse_options(raw)

        with Engine() as engine:
            response = engine.execute(args.method, args.url, options)
    except TransportError as e:
        print(f"Error: {e}", file=sys.stderr)
        for hop in e.history:
            print(f"  after {hop.status_code} {hop.url}", file=sys.stderr)
        return 1
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.output == "json":
        print(response.model_dump_json(indent=2))
    elif args.output == "raw":
        print(format_raw(response))
    else:
        print(format_summary(response))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        args = parse_args(argv)
        if args.verbose:
            logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format="%(name)s: %(message)s")
        return run_request(args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
