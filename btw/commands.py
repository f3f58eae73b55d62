"""
Allow-listed command catalog.

Commands are declared in commands.json and loaded once at startup into an
immutable, ordered CommandCatalog. Nothing outside the catalog is ever
executed.

Example entry:
    {
        "id": "set_volume",
        "category": "audio",
        "description": "Set output volume",
        "examples": ["set volume to {level}", "volume {level}"],
        "dangerous": false,
        "parameters": {"level": {"type": "integer", "minimum": 0, "maximum": 150}},
        "shell_command_template": "pactl set-sink-volume @DEFAULT_SINK@ {level}%"
    }
"""

import json
import logging
import re
import shlex
import string
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import CatalogError, ParameterError, UnsafeParameterError
from .normalization import is_slot, normalize_example, normalize_text, slot_name

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "commands.json"

# Characters that change meaning inside a POSIX shell command line
SHELL_METACHARACTERS = frozenset(";&|$`<>(){}[]*?!~#\\'\"\n\r\t")

_WORD_RE = re.compile(r"[\w.\-]+")

_NUMBER_WORDS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19,
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}


def words_to_int(text: str) -> Optional[int]:
    """'one hundred twenty five' -> 125. Returns None if not a number phrase."""
    tokens = text.replace("-", " ").split()
    if not tokens:
        return None
    total = 0
    current = 0
    for token in tokens:
        if token == "and":
            continue
        if token in _NUMBER_WORDS:
            current += _NUMBER_WORDS[token]
        elif token == "hundred":
            current = max(current, 1) * 100
        elif token == "thousand":
            total += max(current, 1) * 1000
            current = 0
        else:
            return None
    return total + current


class ParameterType(str, Enum):
    STRING = "string"
    WORD = "word"
    INTEGER = "integer"
    NUMBER = "number"
    ENUM = "enum"
    SAFE_STRING = "safe_string"


class ParameterSpec(BaseModel):
    """Type and constraints for one template placeholder."""

    model_config = ConfigDict(frozen=True)

    type: ParameterType = ParameterType.STRING
    required: bool = True
    description: str = ""
    choices: Optional[Tuple[str, ...]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    pattern: Optional[str] = None

    @model_validator(mode="after")
    def _check_constraints(self):
        if self.type is ParameterType.ENUM and not self.choices:
            raise ValueError("enum parameters need 'choices'")
        if self.pattern is not None:
            re.compile(self.pattern)
        return self


class CommandSpec(BaseModel):
    """One allow-listed command."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    category: str = "general"
    description: str = ""
    examples: Tuple[str, ...] = Field(..., min_length=1)
    dangerous: bool = False
    parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)
    shell_command_template: str = Field(..., min_length=1)

    @field_validator("parameters", mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        # Allow {"level": "integer"} as shorthand for {"level": {"type": "integer"}}
        if isinstance(value, dict):
            return {
                name: {"type": spec} if isinstance(spec, str) else spec
                for name, spec in value.items()
            }
        return value

    @model_validator(mode="after")
    def _check_placeholders(self):
        declared = set(self.parameters)
        used = set(self.placeholders)
        undeclared = used - declared
        if undeclared:
            raise ValueError(f"template placeholders not declared: {sorted(undeclared)}")
        for example in self.examples:
            names = [slot_name(t) for t in normalize_example(example) if is_slot(t)]
            slots = set(names)
            if len(slots) != len(names):
                raise ValueError(f"example '{example}' repeats a slot")
            if slots - declared:
                raise ValueError(f"example '{example}' uses undeclared slots: {sorted(slots - declared)}")
        return self

    @property
    def placeholders(self) -> List[str]:
        names = []
        for _, field_name, _, _ in string.Formatter().parse(self.shell_command_template):
            if field_name is None:
                continue
            if not field_name.isidentifier():
                raise ValueError(f"invalid placeholder '{{{field_name}}}'")
            if field_name not in names:
                names.append(field_name)
        return names

    @property
    def required_parameters(self) -> List[str]:
        return [name for name in self.placeholders if self.parameters[name].required]


def validate_parameter(name: str, spec: ParameterSpec, raw: Any) -> str:
    """
    Check one value against its declared type. Returns the canonical string.

    Raises UnsafeParameterError for shell metacharacters in untyped strings
    and ParameterError for anything else that does not fit.
    """
    value = str(raw).strip()
    if not value:
        raise ParameterError(f"Missing value for '{name}'")

    if spec.type is ParameterType.INTEGER:
        number = words_to_int(value.lower())
        if number is None:
            try:
                number = int(value)
            except ValueError:
                raise ParameterError(f"'{name}' must be a whole number, got '{value}'")
        _check_bounds(name, spec, number)
        value = str(number)

    elif spec.type is ParameterType.NUMBER:
        try:
            number_f = float(value)
        except ValueError:
            raise ParameterError(f"'{name}' must be a number, got '{value}'")
        _check_bounds(name, spec, number_f)
        value = repr(number_f) if not number_f.is_integer() else str(int(number_f))

    elif spec.type is ParameterType.ENUM:
        folded = normalize_text(value)
        choices = {normalize_text(c): c for c in spec.choices or ()}
        if folded not in choices:
            raise ParameterError(f"'{name}' must be one of {', '.join(spec.choices or ())}")
        value = choices[folded]

    elif spec.type is ParameterType.WORD:
        if not _WORD_RE.fullmatch(value):
            raise UnsafeParameterError(f"'{name}' must be a single word, got '{value}'")

    elif spec.type is ParameterType.STRING:
        bad = sorted(set(value) & SHELL_METACHARACTERS)
        if bad:
            raise UnsafeParameterError(
                f"Refusing '{name}': contains shell characters {''.join(bad)!r}"
            )

    elif spec.type is ParameterType.SAFE_STRING:
        if "\x00" in value:
            raise UnsafeParameterError(f"'{name}' contains a NUL byte")

    if spec.pattern is not None and not re.fullmatch(spec.pattern, value):
        raise ParameterError(f"'{name}' does not match the expected format")

    return value


def _check_bounds(name: str, spec: ParameterSpec, number: Union[int, float]) -> None:
    if spec.minimum is not None and number < spec.minimum:
        raise ParameterError(f"'{name}' must be at least {spec.minimum:g}")
    if spec.maximum is not None and number > spec.maximum:
        raise ParameterError(f"'{name}' must be at most {spec.maximum:g}")


def validate_parameters(command: CommandSpec, params: Mapping[str, str]) -> Dict[str, str]:
    validated: Dict[str, str] = {}
    for name in command.placeholders:
        spec = command.parameters[name]
        raw = params.get(name)
        if raw is None or not str(raw).strip():
            if spec.required:
                raise ParameterError(f"Missing value for '{name}'")
            continue
        validated[name] = validate_parameter(name, spec, raw)
    return validated


def render_command(command: CommandSpec, params: Mapping[str, str]) -> str:
    """
    Build the shell command line for a catalog entry.

    Values are validated first, then shell-quoted; the template itself is
    trusted catalog text.
    """
    validated = validate_parameters(command, params)
    quoted = {name: "" for name in command.placeholders}
    quoted.update({name: shlex.quote(value) for name, value in validated.items()})
    return command.shell_command_template.format(**quoted)


class CommandCatalog:
    """Ordered, read-only collection of CommandSpec keyed by id."""

    def __init__(self, commands: Iterable[CommandSpec]):
        ordered = tuple(commands)
        by_id: Dict[str, CommandSpec] = {}
        for command in ordered:
            if command.id in by_id:
                raise CatalogError(f"Duplicate command id '{command.id}'")
            by_id[command.id] = command
        self._commands = ordered
        self._by_id = MappingProxyType(by_id)

    def __iter__(self) -> Iterator[CommandSpec]:
        return iter(self._commands)

    def __len__(self) -> int:
        return len(self._commands)

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._by_id

    def __getitem__(self, command_id: str) -> CommandSpec:
        return self._by_id[command_id]

    def get(self, command_id: str) -> Optional[CommandSpec]:
        return self._by_id.get(command_id)

    @property
    def ids(self) -> List[str]:
        return [c.id for c in self._commands]

    @classmethod
    def from_data(cls, data: Any, source: str = "<data>") -> "CommandCatalog":
        entries = data.get("commands") if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise CatalogError(f"{source}: expected a list of commands")
        commands = []
        for index, entry in enumerate(entries):
            try:
                commands.append(CommandSpec.model_validate(entry))
            except ValidationError as exc:
                raise CatalogError(f"{source}: command #{index}: {exc}") from exc
        return cls(commands)

    @classmethod
    def from_json(cls, text: str, source: str = "<json>") -> "CommandCatalog":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CatalogError(f"{source}: invalid JSON: {exc}") from exc
        return cls.from_data(data, source)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "CommandCatalog":
        path = Path(path).expanduser()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CatalogError(f"Cannot read commands file {path}: {exc}") from exc
        catalog = cls.from_json(text, str(path))
        logger.info("Loaded %d commands from %s", len(catalog), path)
        return catalog


def load_catalog(path: Optional[Union[str, Path]] = None) -> CommandCatalog:
    """Load the user's catalog, or the packaged default when none is given."""
    if path is None or not Path(path).expanduser().exists():
        if path is not None:
            logger.warning("Commands file %s not found, using packaged defaults", path)
        path = DEFAULT_CATALOG_PATH
    return CommandCatalog.load(path)
