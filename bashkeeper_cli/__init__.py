"""
Bashkeeper CLI - configuration, the stdio tool server and one-shot commands.

Provides subcommands for:
- bashkeeper serve   - Serve tool calls as JSON lines on stdin/stdout
- bashkeeper run     - Run one command through the `run` tool
- bashkeeper tools   - List the available tools
- bashkeeper config  - Show or change configuration
"""

__version__ = "0.1.0"
