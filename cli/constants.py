"""CLI constants and configuration."""

from prompt_toolkit.styles import Style

COMMANDS = ["put", "get", "delete", "list", "versions", "reconcile", "clear", "exit", "help"]

# Commands whose first argument is an existing key
KEY_COMMANDS = ("get", "delete", "versions", "put")

STYLE = Style.from_dict(
    {
        "prompt": "#2AA198 bold",
        "command": "#0088ff bold",
    }
)

TEAL = "\033[38;2;42;161;152m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
RESET = "\033[0m"

LOGO = f"""{TEAL}
 ██╗  ██╗██╗   ██╗███████╗██╗   ██╗███╗   ██╗ ██████╗
 ██║ ██╔╝██║   ██║██╔════╝╚██╗ ██╔╝████╗  ██║██╔════╝
 █████╔╝ ██║   ██║███████╗ ╚████╔╝ ██╔██╗ ██║██║
 ██╔═██╗ ╚██╗ ██╔╝╚════██║  ╚██╔╝  ██║╚██╗██║██║
 ██║  ██╗ ╚████╔╝ ███████║   ██║   ██║ ╚████║╚██████╗
 ╚═╝  ╚═╝  ╚═══╝  ╚══════╝   ╚═╝   ╚═╝  ╚═══╝ ╚═════╝
{RESET}"""

WELCOME_TITLE = "kvctl - multi-site LWW key-value store"
WELCOME_HELP = "Type 'help' for commands or 'exit' to quit.\n"

PROMPT_TEXT = "kvctl> "

HELP_TEXT = """Available commands:
  put <key> <value>        Write a value at this site and replicate it
  get <key>                Show the local entry for a key
  delete <key>             Delete a key (writes a tombstone) and replicate it
  list                     List every entry in the bucket, tombstones included
  versions [key]           Show accepted LWW versions (all keys or one)
  reconcile                Run one reconciliation cycle against the peer site now
  clear                    Clear screen and redisplay welcome message
  help                     Show this help
  exit                     Exit REPL

Quote values containing spaces.
Examples:
  put feature.flag on
  put greeting "hello world"
  get greeting
  delete feature.flag
  versions greeting
  reconcile"""

VALUE_PREVIEW_LENGTH = 60
