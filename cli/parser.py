"""Command parser for CLI input."""

import shlex

from cli.models import (
    CommandRequest,
    DeleteCommand,
    GetCommand,
    ListCommand,
    PutCommand,
    ReconcileCommand,
    VersionsCommand,
)


class ParseError(Exception):
    """Raised when command parsing fails."""

    pass


def parse_command(input_line: str) -> CommandRequest:
    """Parse user input into a CommandRequest object.

    Args:
        input_line: Raw user input from REPL

    Returns:
        CommandRequest object (one of Put/Get/Delete/List/Versions/Reconcile)

    Raises:
        ParseError: If command syntax is invalid
    """
    if not input_line.strip():
        raise ParseError("Empty command")

    try:
        tokens = shlex.split(input_line)
    except ValueError as e:
        raise ParseError(f"Invalid syntax: {e}")

    if not tokens:
        raise ParseError("Empty command")

    command_name = tokens[0]

    if command_name == "put":
        return _parse_put(tokens[1:])
    elif command_name == "get":
        return GetCommand(key=_single_key("get", tokens[1:]))
    elif command_name == "delete":
        return DeleteCommand(key=_single_key("delete", tokens[1:]))
    elif command_name == "list":
        return _parse_no_args("list", tokens[1:], ListCommand)
    elif command_name == "versions":
        return _parse_versions(tokens[1:])
    elif command_name == "reconcile":
        return _parse_no_args("reconcile", tokens[1:], ReconcileCommand)
    else:
        raise ParseError(f"Unknown command: {command_name}")


def _parse_put(args: list[str]) -> PutCommand:
    """Parse 'put <key> <value>' command.

    Extra words after the key are joined with spaces, so unquoted values work.
    An empty value must be quoted ("").
    """
    if len(args) < 2:
        raise ParseError("put requires 2 arguments: <key> <value>")

    key = args[0]
    _check_key(key)
    return PutCommand(key=key, value=" ".join(args[1:]))


def _parse_versions(args: list[str]) -> VersionsCommand:
    """Parse 'versions [key]' command."""
    if len(args) > 1:
        raise ParseError("versions takes at most 1 argument: [key]")
    if not args:
        return VersionsCommand()
    _check_key(args[0])
    return VersionsCommand(key=args[0])


def _single_key(command_name: str, args: list[str]) -> str:
    if len(args) != 1:
        raise ParseError(f"{command_name} requires exactly 1 argument: <key>")
    _check_key(args[0])
    return args[0]


def _parse_no_args(command_name: str, args: list[str], command_cls):
    if args:
        raise ParseError(f"{command_name} takes no arguments")
    return command_cls()


def _check_key(key: str) -> None:
    if not key:
        raise ParseError("Key must not be empty")
    if "/" in key:
        raise ParseError(f"Key must not contain '/': {key}")
