import pytest

from ember.terminal import decode_key, get_terminal_size


class TestDecodeKey:
    """Tests for key name decoding."""

    @pytest.mark.parametrize("data,name", [
        ("\x1b[A", "up"),
        ("\x1b[B", "down"),
        ("\x1b[C", "right"),
        ("\x1bOD", "left"),
        ("\x1b[Z", "shift+tab"),
        ("\x1b[3~", "delete"),
        ("\x1b", "esc"),
        ("\x1b[99~", "esc"),
        ("\r", "enter"),
        ("\t", "tab"),
        ("\x7f", "backspace"),
        ("\x03", "ctrl+c"),
        ("q", "q"),
        ("暗", "暗"),
    ])
    def test_decode(self, data, name):
        """Test mapping raw input to key names."""
        assert decode_key(data) == name


class TestTerminalSize:
    """Tests for terminal size lookup."""

    def test_positive_size(self):
        """Test that a size is always returned."""
        rows, cols = get_terminal_size()
        assert rows > 0
        assert cols > 0
