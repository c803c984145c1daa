#!/usr/bin/env python3
"""
Bashkeeper CLI - Main entry point.

Usage:
    bashkeeper serve                     # Serve tool calls as JSON lines on stdio
    bashkeeper run "ls -la"              # Run one command and print the result
    bashkeeper run "make" --cwd src --timeout 60000
    bashkeeper tools                     # List available tools
    bashkeeper config                    # Show configuration
    bashkeeper config set KEY VALUE      # Set a configuration value
    bashkeeper config path               # Print config file path
    bashkeeper version                   # Show version
"""

import argparse
import json
import logging
import sys

from bashkeeper_cli import __version__

logger = logging.getLogger(__name__)


def cmd_serve(args):
    """Serve tool calls on stdin/stdout."""
    from bashkeeper_cli.serve import run_server
    run_server()


def cmd_run(args):
    """Run a single command through the `run` tool and print the JSON result."""
    from model_tools import handle_function_call

    tool_args = {"command": args.command_line}
    if args.cwd:
        tool_args["cwd"] = args.cwd
    if args.timeout is not None:
        tool_args["timeout"] = args.timeout

    result = handle_function_call("run", tool_args)
    print(result)
    try:
        succeeded = json.loads(result).get("success", False)
    except json.JSONDecodeError:
        # Response itself was truncated
        succeeded = '"success": true' in result
    if not succeeded:
        sys.exit(1)


def cmd_tools(args):
    """List registered tools."""
    from rich.console import Console
    from rich.table import Table

    from model_tools import get_tool_definitions, get_toolset_for_tool

    console = Console()
    definitions = get_tool_definitions()
    if not definitions:
        console.print("[dim]No tools available.[/]")
        return

    table = Table(title=f"Tools ({len(definitions)} available)")
    table.add_column("Name", style="bold cyan")
    table.add_column("Toolset", style="dim")
    table.add_column("Arguments")
    table.add_column("Description", max_width=60)
    for definition in definitions:
        schema = definition["function"]
        params = schema.get("parameters", {})
        required = set(params.get("required", []))
        arg_names = [
            name if name in required else f"{name}?"
            for name in params.get("properties", {})
        ]
        table.add_row(
            schema["name"],
            get_toolset_for_tool(schema["name"]),
            ", ".join(arg_names) or "-",
            schema.get("description", ""),
        )
    console.print(table)


def cmd_config(args):
    from bashkeeper_cli.config import config_command
    config_command(args)


def cmd_version(args):
    print(f"Bashkeeper v{__version__}")


def main():
    """Main entry point for bashkeeper CLI."""
    parser = argparse.ArgumentParser(
        prog="bashkeeper",
        description="Bashkeeper - shell command tools with bounded output and background processes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    bashkeeper serve                         Serve tools over stdio
    bashkeeper run "echo hello"              Run one command
    bashkeeper tools                         List tools
    bashkeeper config set run.timeout_ms 60000

For more help on a command:
    bashkeeper <command> --help
"""
    )

    parser.add_argument(
        "--version", "-V",
        action="store_true",
        help="Show version and exit"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # =========================================================================
    # serve command
    # =========================================================================
    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve tool calls as JSON lines on stdin/stdout",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # =========================================================================
    # run command
    # =========================================================================
    run_parser = subparsers.add_parser(
        "run",
        help="Run a shell command and print the result",
    )
    run_parser.add_argument("command_line", metavar="command", help="Shell command to execute")
    run_parser.add_argument("--cwd", help="Working directory")
    run_parser.add_argument("--timeout", type=int, help="Timeout in milliseconds (default: run.timeout_ms)")
    run_parser.set_defaults(func=cmd_run)

    # =========================================================================
    # tools command
    # =========================================================================
    tools_parser = subparsers.add_parser("tools", help="List available tools")
    tools_parser.set_defaults(func=cmd_tools)

    # =========================================================================
    # config command
    # =========================================================================
    config_parser = subparsers.add_parser(
        "config",
        help="View and edit configuration",
        description="Manage Bashkeeper configuration"
    )
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_set = config_subparsers.add_parser("set", help="Set a configuration value")
    config_set.add_argument("key", nargs="?", help="Configuration key (e.g., output.max_output_size)")
    config_set.add_argument("value", nargs="?", help="Value to set")
    config_subparsers.add_parser("path", help="Print config file path")
    config_parser.set_defaults(func=cmd_config)

    # =========================================================================
    # version command
    # =========================================================================
    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args()

    if args.version:
        cmd_version(args)
        return

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
