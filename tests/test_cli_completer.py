"""Tests for KVCompleter."""

import pytest
from unittest.mock import MagicMock, patch

from prompt_toolkit.document import Document

from cli.completer import KVCompleter
from cli.constants import COMMANDS


@pytest.fixture
def key_provider():
    """Key source returning a fixed set of keys."""
    return MagicMock(return_value=["app.mode", "app.color", "db.url"])


@pytest.fixture
def completer(key_provider):
    """Create a KVCompleter instance backed by the fixed keys."""
    return KVCompleter(key_provider=key_provider)


def get_completions_list(completer, text):
    """Helper to get list of completion texts from completer."""
    doc = Document(text, len(text))
    return [c.text for c in completer.get_completions(doc, None)]


class TestCommandCompletion:
    """Tests for command name completion."""

    def test_empty_input_shows_all_commands(self, completer):
        """Empty input should suggest all commands."""
        completions = get_completions_list(completer, "")
        for cmd in COMMANDS:
            assert cmd in completions

    def test_partial_command_filters(self, completer):
        """Partial command should filter to matching commands."""
        completions = get_completions_list(completer, "re")
        assert completions == ["reconcile"]

    def test_command_completion_case_insensitive(self, completer):
        """Command completion should be case insensitive."""
        completions = get_completions_list(completer, "GE")
        assert "get" in completions


class TestKeyCompletion:
    """Tests for key completion after key commands."""

    def test_get_shows_all_keys(self, completer):
        """After 'get ', every key is suggested in sorted order."""
        completions = get_completions_list(completer, "get ")
        assert completions == ["app.color", "app.mode", "db.url"]

    def test_partial_key_filters(self, completer):
        """Partial key should filter to matching keys."""
        completions = get_completions_list(completer, "delete app.")
        assert completions == ["app.color", "app.mode"]

    def test_put_completes_key_but_not_value(self, completer):
        """Only the first argument of put is a key."""
        assert "db.url" in get_completions_list(completer, "put d")
        assert get_completions_list(completer, "put db.url ") == []

    def test_non_key_command_no_key_completion(self, completer):
        """Commands without a key argument get no completions."""
        assert get_completions_list(completer, "list ") == []
        assert get_completions_list(completer, "reconcile ") == []

    def test_keys_are_cached(self, completer, key_provider):
        """Keys are fetched once within the cache window."""
        get_completions_list(completer, "get ")
        get_completions_list(completer, "get a")

        key_provider.assert_called_once()

    def test_cache_expires(self, key_provider):
        """Keys are fetched again after the cache window."""
        completer = KVCompleter(key_provider=key_provider, cache_seconds=5)

        with patch("cli.completer.time") as mock_time:
            mock_time.monotonic.side_effect = [100.0, 106.0]
            get_completions_list(completer, "get ")
            get_completions_list(completer, "get ")

        assert key_provider.call_count == 2

    def test_without_provider(self):
        """No key provider means no key completions."""
        assert get_completions_list(KVCompleter(), "get ") == []
