"""REPL with prompt_toolkit for user interaction."""

import os
import sys
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory

from cli.commands import (
    get_client,
    handle_delete,
    handle_get,
    handle_list,
    handle_put,
    handle_reconcile,
    handle_versions,
)
from cli.completer import KVCompleter
from cli.constants import (
    HELP_TEXT,
    LOGO,
    PROMPT_TEXT,
    STYLE,
    WELCOME_HELP,
    WELCOME_TITLE,
)
from cli.models import (
    DeleteCommand,
    GetCommand,
    ListCommand,
    PutCommand,
    ReconcileCommand,
    VersionsCommand,
)
from cli.parser import ParseError, parse_command
from cli.syncd_client import SyncdClient


def clear_screen() -> None:
    """Clear the terminal screen (cross-platform)."""
    if sys.platform == "win32":
        os.system("cls")
    else:
        os.system("clear")


def show_logo() -> None:
    """Display kvsync logo with ANSI colors."""
    print(LOGO)


def dispatch_command(cmd_obj, client=None) -> str:
    """Dispatch parsed command to appropriate handler."""
    if isinstance(cmd_obj, PutCommand):
        return handle_put(cmd_obj, client)
    elif isinstance(cmd_obj, GetCommand):
        return handle_get(cmd_obj, client)
    elif isinstance(cmd_obj, DeleteCommand):
        return handle_delete(cmd_obj, client)
    elif isinstance(cmd_obj, ListCommand):
        return handle_list(cmd_obj, client)
    elif isinstance(cmd_obj, VersionsCommand):
        return handle_versions(cmd_obj, client)
    elif isinstance(cmd_obj, ReconcileCommand):
        return handle_reconcile(cmd_obj, client)
    else:
        return f"Unknown command type: {type(cmd_obj)}"


def repl_loop(client: Optional[SyncdClient] = None) -> None:
    """Start interactive REPL with prompt_toolkit."""
    client = client or get_client()
    completer = KVCompleter(key_provider=client.keys)
    history = InMemoryHistory()
    session: PromptSession = PromptSession(
        completer=completer, history=history, style=STYLE
    )

    clear_screen()
    show_logo()
    print(WELCOME_TITLE)
    print(f"Connected to {client.config.get_base_url()}")
    print(WELCOME_HELP)

    try:
        while True:
            try:
                user_input = session.prompt([("class:prompt", PROMPT_TEXT)])

                if not user_input.strip():
                    continue

                if user_input.strip() == "exit":
                    print("Goodbye!")
                    break

                if user_input.strip() == "help":
                    print(HELP_TEXT)
                    continue

                if user_input.strip() == "clear":
                    clear_screen()
                    show_logo()
                    print(WELCOME_TITLE)
                    print(WELCOME_HELP)
                    continue

                cmd_obj = parse_command(user_input)
                result = dispatch_command(cmd_obj, client)
                print(result)

            except ParseError as e:
                print(f"Error: {e}")
            except KeyboardInterrupt:
                continue
            except EOFError:
                print("\nGoodbye!")
                break
    finally:
        client.close()
