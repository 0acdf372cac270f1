from __future__ import annotations

import pytest

from gensui.engine.errors import NameValidationError
from gensui.engine.names import MAX_NAME_LENGTH, default_name, validate_name


@pytest.mark.parametrize("name", [
    "worker-1",
    "fix_login",
    "ABC123",
    "修正-バグ",
    "ひらがな_テスト",
])
def test_valid_names(name) -> None:
    assert validate_name(name) == name


def test_surrounding_whitespace_is_stripped() -> None:
    assert validate_name("  alpha ") == "alpha"


@pytest.mark.parametrize("name,fragment", [
    ("", "empty"),
    ("   ", "empty"),
    ("has space", "invalid characters"),
    ("slash/name", "invalid characters"),
    ("dot.name", "invalid characters"),
    ("x" * (MAX_NAME_LENGTH + 1), "maximum length"),
])
def test_invalid_names(name, fragment) -> None:
    with pytest.raises(NameValidationError) as exc_info:
        validate_name(name)
    assert fragment in exc_info.value.reason


def test_default_name() -> None:
    assert default_name(7) == "worker-7"
