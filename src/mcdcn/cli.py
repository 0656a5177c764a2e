"""
mcd-cn command line entry point.

    mcd-cn <tool-name> [--param value] [--param=value] [--flag] [--json]

Every --key becomes a string tool argument; --json switches the output to the
raw result. Arguments are parsed by hand because tool parameters are not
known in advance.
"""

import json
import logging
import sys
from dataclasses import dataclass, field

from . import __version__
from .config import ConfigError, load_token, resolve_server_url, resolve_log_level
from .mcp import MCPError, create_http_client
from .render import render_human_output
from .utils import JSON_INDENT, write_output

logger = logging.getLogger('mcdcn')

TOOLS = {
    "campaign-calender": "Monthly marketing activity calendar (past/current/future).",
    "available-coupons": "List coupons available to claim.",
    "auto-bind-coupons": "Auto-claim all available coupons.",
    "my-coupons": "List coupons already in your account.",
    "now-time-info": "Fetch current server time details.",
}

NO_HUMAN_OUTPUT = "No human-readable output. Re-run with --json for raw output."

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


class ArgumentError(Exception): pass


@dataclass
class ParsedArgs:
    tool: str
    params: dict = field(default_factory=dict)
    output_json: bool = False


def parse_bool(value):
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(value)


def _json_flag(value):
    try:
        return parse_bool(value)
    except ValueError:
        raise ArgumentError(f"invalid value for --json: {value}") from None


def parse_args(args):
    tool = args[0].strip() if args else ""
    if not tool or tool.startswith("-"):
        raise ArgumentError("missing tool name")

    params = {}
    output_json = False

    def add_param(key, value):
        if key in params:
            raise ArgumentError(f"duplicate parameter: --{key}")
        params[key] = value

    i = 1
    while i < len(args):
        arg = args[i]
        i += 1
        if not arg.startswith("--") or len(arg) == 2:
            raise ArgumentError(f"unexpected argument: {arg}")

        key = arg[2:]
        if "=" in key:
            key, value = key.split("=", 1)
            if not value:
                raise ArgumentError(f"missing value for --{key}")
            if key == "json":
                output_json = _json_flag(value)
            else:
                add_param(key, value)
            continue

        has_value = i < len(args) and not args[i].startswith("--")
        if key == "json":
            if has_value:
                output_json = _json_flag(args[i])
                i += 1
            else:
                output_json = True
            continue

        if has_value:
            add_param(key, args[i])
            i += 1
        else:
            add_param(key, "true")

    return ParsedArgs(tool=tool, params=params, output_json=output_json)


def usage():
    tool_lines = "\n".join(f"  - {name}: {desc}" for name, desc in sorted(TOOLS.items()))
    return f"""Usage:
  mcd-cn <tool-name> [--param value] [--param=value] [--flag] [--json]
  mcd-cn version

Examples:
  mcd-cn campaign-calender
  mcd-cn campaign-calender --specifiedDate 2025-12-09
  mcd-cn available-coupons
  mcd-cn available-coupons --json

Notes:
  - Set MCDCN_MCP_TOKEN or provide it in .env.
  - Use --json for full JSON output (scripts).
  - Override MCP URL with MCDCN_MCP_URL.

Tools:
{tool_lines}
"""


def _is_help(arg):
    return arg.lower() in ("-h", "--help", "help")


def _is_version(arg):
    return arg.lower() in ("-v", "--version", "version")


def run(args, stdout=None, stderr=None):
    """Run the CLI and return the process exit code."""
    stdout = sys.stdout if stdout is None else stdout
    stderr = sys.stderr if stderr is None else stderr

    if not args or _is_help(args[0]):
        write_output(usage(), stdout)
        return 0

    if _is_version(args[0]):
        write_output(__version__, stdout)
        return 0

    try:
        parsed = parse_args(args)
    except ArgumentError as e:
        write_output(f"parse arguments: {e}\n\n{usage()}", stderr)
        return 1

    try:
        token = load_token()
        server_url = resolve_server_url()
    except ConfigError as e:
        write_output(f"load auth token: {e}", stderr)
        return 1

    failure = f'call tool "{parsed.tool}" via {server_url}'
    try:
        client = create_http_client(server_url, token)
    except ValueError as e:
        # Unusable MCDCN_MCP_URL
        write_output(f"{failure}: {e}", stderr)
        return 1

    try:
        with client:
            result = client.call_tool(parsed.tool, parsed.params)
    except MCPError as e:
        logger.debug("Tool call failed", exc_info=True)
        write_output(f"{failure}: {e}", stderr)
        return 1

    if result is None:
        return 0

    if parsed.output_json:
        write_output(json.dumps(result, indent=JSON_INDENT, ensure_ascii=False), stdout)
        return 0

    output = render_human_output(parsed.tool, result)
    write_output(output if output else NO_HUMAN_OUTPUT, stdout)
    return 0


def main(argv=None):
    """CLI entry point for mcd-cn."""
    try:
        level = resolve_log_level()
    except ConfigError:
        # load_token reports the unreadable .env
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    sys.exit(run(sys.argv[1:] if argv is None else argv))


if __name__ == "__main__":
    main()
