"""
Tests for the allow-listed command catalog and parameter rendering
"""

import json

import pytest

from btw.commands import (
    CommandCatalog,
    CommandSpec,
    ParameterSpec,
    ParameterType,
    load_catalog,
    render_command,
    validate_parameter,
    words_to_int,
)
from btw.errors import CatalogError, ParameterError, UnsafeParameterError


def echo_command(param_type="string", **extra):
    return CommandSpec.model_validate({
        "id": "say",
        "examples": ["say {text}"],
        "parameters": {"text": {"type": param_type, **extra}},
        "shell_command_template": "echo {text}",
    })


class TestPackagedCatalog:
    def test_loads(self, catalog):
        assert len(catalog) >= 10
        assert "lock_screen" in catalog
        assert catalog["system_shutdown"].dangerous
        assert not catalog["lock_screen"].dangerous

    def test_order_preserved(self, catalog):
        assert catalog.ids[0] == "lock_screen"
        assert [c.id for c in catalog] == catalog.ids

    def test_missing_user_file_falls_back(self, tmp_path):
        catalog = load_catalog(tmp_path / "nope.json")
        assert "lock_screen" in catalog


class TestCatalogValidation:
    def test_duplicate_ids_rejected(self):
        entry = {"id": "a", "examples": ["a"], "shell_command_template": "true"}
        with pytest.raises(CatalogError):
            CommandCatalog.from_data({"commands": [entry, entry]})

    def test_undeclared_placeholder_rejected(self):
        entry = {"id": "a", "examples": ["a"], "shell_command_template": "echo {x}"}
        with pytest.raises(CatalogError):
            CommandCatalog.from_data([entry])

    def test_example_slot_must_be_declared(self):
        entry = {
            "id": "a",
            "examples": ["do {y}"],
            "parameters": {"x": "integer"},
            "shell_command_template": "echo {x}",
        }
        with pytest.raises(CatalogError):
            CommandCatalog.from_data([entry])

    def test_repeated_example_slot_rejected(self):
        entry = {
            "id": "a",
            "examples": ["{x} and {x}"],
            "parameters": {"x": "word"},
            "shell_command_template": "echo {x}",
        }
        with pytest.raises(CatalogError, match="repeats a slot"):
            CommandCatalog.from_data([entry])

    def test_enum_needs_choices(self):
        entry = {
            "id": "a",
            "examples": ["pick {x}"],
            "parameters": {"x": {"type": "enum"}},
            "shell_command_template": "echo {x}",
        }
        with pytest.raises(CatalogError):
            CommandCatalog.from_data([entry])

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "commands.json"
        path.write_text("{not json")
        with pytest.raises(CatalogError):
            CommandCatalog.load(path)

    def test_shorthand_parameter_type(self, tmp_path):
        path = tmp_path / "commands.json"
        path.write_text(json.dumps({"commands": [{
            "id": "vol",
            "examples": ["volume {level}"],
            "parameters": {"level": "integer"},
            "shell_command_template": "pactl set-sink-volume @DEFAULT_SINK@ {level}%",
        }]}))
        catalog = CommandCatalog.load(path)
        assert catalog["vol"].parameters["level"].type is ParameterType.INTEGER

    def test_specs_are_immutable(self, catalog):
        with pytest.raises(Exception):
            catalog["lock_screen"].dangerous = True


class TestParameters:
    @pytest.mark.parametrize("value", [
        "hello; rm -rf ~",
        "$(reboot)",
        "`id`",
        "a && b",
        "a | b",
        "x > /etc/passwd",
        "it's",
    ])
    def test_metacharacters_rejected(self, value):
        command = echo_command()
        with pytest.raises(UnsafeParameterError):
            render_command(command, {"text": value})

    def test_plain_string_quoted(self):
        command = echo_command()
        assert render_command(command, {"text": "hello world"}) == "echo 'hello world'"

    def test_safe_string_quoted_not_rejected(self):
        command = echo_command("safe_string")
        rendered = render_command(command, {"text": "a; b"})
        assert rendered == "echo 'a; b'"

    def test_integer_bounds(self):
        spec = ParameterSpec(type=ParameterType.INTEGER, minimum=0, maximum=150)
        assert validate_parameter("level", spec, "40") == "40"
        with pytest.raises(ParameterError):
            validate_parameter("level", spec, "200")
        with pytest.raises(ParameterError):
            validate_parameter("level", spec, "loud")

    def test_integer_from_words(self):
        spec = ParameterSpec(type=ParameterType.INTEGER)
        assert validate_parameter("level", spec, "forty five") == "45"

    def test_enum_canonicalized(self):
        spec = ParameterSpec(type=ParameterType.ENUM, choices=("Firefox", "code"))
        assert validate_parameter("app", spec, "firefox") == "Firefox"
        with pytest.raises(ParameterError):
            validate_parameter("app", spec, "rm")

    def test_word_type(self):
        spec = ParameterSpec(type=ParameterType.WORD)
        assert validate_parameter("name", spec, "eth0") == "eth0"
        with pytest.raises(UnsafeParameterError):
            validate_parameter("name", spec, "two words")

    def test_missing_required(self, catalog):
        with pytest.raises(ParameterError):
            render_command(catalog["set_volume"], {})

    def test_render_volume(self, catalog):
        rendered = render_command(catalog["set_volume"], {"level": "forty"})
        assert rendered == "pactl set-sink-volume @DEFAULT_SINK@ 40%"


class TestWordsToInt:
    @pytest.mark.parametrize("text,expected", [
        ("five", 5),
        ("twenty five", 25),
        ("one hundred", 100),
        ("one hundred and twenty", 120),
        ("seventy-five", 75),
        ("loud", None),
        ("", None),
    ])
    def test_values(self, text, expected):
        assert words_to_int(text) == expected
