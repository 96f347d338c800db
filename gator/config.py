"""User configuration file and command dispatch."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

from gator.queries import Queries

CONFIG_FILE_NAME = ".gatorconfig.json"

PathLike = Union[str, Path]


class UnknownCommandError(LookupError):
    """Raised when no handler is registered under a command's name."""


@dataclass
class Config:
    """Database connection settings and the logged-in user."""

    db_url: str = ""
    current_user_name: str = ""

    def to_json(self) -> str:
        """Serialise to the config file's format; an empty user name is left out."""
        data = {"db_url": self.db_url}
        if self.current_user_name:
            data["current_user_name"] = self.current_user_name
        return json.dumps(data, indent=1, ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "Config":
        """Build a config from JSON text; unknown keys are ignored."""
        data = json.loads(text)
        config = cls()
        if data is None:
            return config
        if not isinstance(data, dict):
            raise ValueError("config must be a JSON object")
        for key, value in data.items():
            name = key.casefold()
            if name not in ("db_url", "current_user_name") or value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"config field {key!r} must be a string")
            setattr(config, name, value)
        return config

    def set_user(self, user: str, path: Optional[PathLike] = None) -> None:
        """Make the given user current and save the config."""
        self.current_user_name = user
        write_config(self, path)


@dataclass
class State:
    """What every command handler works with."""

    config: Config
    db: Queries


@dataclass
class Command:
    """A command name and its arguments."""

    name: str
    args: list[str] = field(default_factory=list)


Handler = Callable[[State, Command], Any]


@dataclass
class Commands:
    """Registry of command handlers by name."""

    handlers: dict[str, Handler] = field(default_factory=dict)

    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    def run(self, state: State, command: Command) -> Any:
        """Run the handler registered for the command."""
        try:
            handler = self.handlers[command.name]
        except KeyError:
            raise UnknownCommandError(f"unknown command: {command.name}") from None
        return handler(state, command)


def config_file_path() -> Path:
    """Location of the config file in the user's home directory."""
    return Path.home() / CONFIG_FILE_NAME


def read_config(path: Optional[PathLike] = None) -> Config:
    """Load the config; a missing or unreadable file gives an empty config."""
    try:
        target = Path(path) if path is not None else config_file_path()
        text = target.read_text(encoding="utf-8")
    except (OSError, RuntimeError):
        return Config()
    return Config.from_json(text)


def write_config(config: Config, path: Optional[PathLike] = None) -> None:
    """Save the config as indented JSON."""
    target = Path(path) if path is not None else config_file_path()
    target.write_text(config.to_json(), encoding="utf-8")