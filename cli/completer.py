"""Custom completer for kvctl with key autocompletion."""

import time
from typing import Callable, Iterable, List, Optional

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from cli.constants import COMMANDS, KEY_COMMANDS

KEY_CACHE_SECONDS = 5.0


class KVCompleter(Completer):
    """
    Custom completer that provides:
    - Command name completion for the first token
    - Key completion for the first argument of get, delete, put and versions
    """

    def __init__(
        self,
        key_provider: Optional[Callable[[], List[str]]] = None,
        cache_seconds: float = KEY_CACHE_SECONDS
    ):
        """
        Args:
            key_provider: Returns the bucket's keys; None disables key completion
            cache_seconds: How long fetched keys are reused before asking again
        """
        self.key_provider = key_provider
        self.cache_seconds = cache_seconds
        self._cached_keys: List[str] = []
        self._cached_at: Optional[float] = None

    def get_completions(
        self, document: Document, complete_event
    ) -> Iterable[Completion]:
        """
        Generate completions based on cursor position and context.
        """
        text = document.text_before_cursor
        tokens = text.split()

        is_typing_new_token = text.endswith(" ") or not tokens

        if not tokens or (len(tokens) == 1 and not is_typing_new_token):
            yield from self._complete_commands(tokens[0] if tokens else "")
            return

        command = tokens[0].lower()
        if command not in KEY_COMMANDS:
            return

        argument_index = len(tokens) - 1 if not is_typing_new_token else len(tokens)
        if argument_index != 1:
            return

        current_word = "" if is_typing_new_token else tokens[-1]
        yield from self._complete_keys(current_word)

    def _complete_commands(self, partial: str) -> Iterable[Completion]:
        """Complete command names matching the partial input."""
        partial_lower = partial.lower()
        for cmd in COMMANDS:
            if cmd.startswith(partial_lower):
                yield Completion(cmd, start_position=-len(partial))

    def _complete_keys(self, partial: str) -> Iterable[Completion]:
        """Complete key names matching the partial input."""
        for key in self._keys():
            if key.startswith(partial):
                yield Completion(key, start_position=-len(partial))

    def _keys(self) -> List[str]:
        if self.key_provider is None:
            return []

        now = time.monotonic()
        if self._cached_at is None or now - self._cached_at > self.cache_seconds:
            self._cached_keys = sorted(self.key_provider())
            self._cached_at = now
        return self._cached_keys
