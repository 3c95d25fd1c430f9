"""The ``.jot/config.toml`` file: locating it, reading it, and ``jot init``.

Reads return plain dicts for the settings model. ``init_config`` edits the
file as a tomlkit document, so comments and sections it does not set survive
a ``jot init --force``.
"""

from __future__ import annotations

import shutil
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import TOMLKitError
from tomlkit.items import AbstractTable
from tomlkit.toml_document import TOMLDocument

from .errors import ConfigError

CONFIG_DIR = ".jot"
CONFIG_FILE = "config.toml"
BACKUP_SUFFIX = ".toml.bak"


class ConfigExistsError(ConfigError):
    """``jot init`` found a config and was not told to replace it."""


@dataclass(frozen=True, slots=True)
class InitResult:
    path: Path
    backup: Path | None = None


def get_config_path(root: Path) -> Path:
    return root / CONFIG_DIR / CONFIG_FILE


def find_config_root(start_path: Path | None = None) -> Path | None:
    """Walk up from start_path to the directory holding .jot/config.toml."""
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    while True:
        if get_config_path(current).exists():
            return current
        if current == current.parent:
            return None
        current = current.parent


def load_config_file(path: Path) -> dict[str, Any]:
    """Parse a config file.

    Raises:
        ConfigError: the file cannot be read or is not valid TOML.
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e


def _load_document(path: Path) -> TOMLDocument:
    try:
        return tomlkit.parse(path.read_text())
    except (OSError, TOMLKitError) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e


def _set(doc: TOMLDocument, section: str, key: str, value: Any) -> None:
    table = doc.get(section)
    if table is None:
        table = tomlkit.table()
        table[key] = value
        doc[section] = table
        return
    if not isinstance(table, AbstractTable):
        raise ConfigError(f"[{section}] in the config is not a table")
    table[key] = value


def init_config(
    root: Path,
    *,
    bot_token: str,
    store_path: Path | None = None,
    force: bool = False,
) -> InitResult:
    """Write the bot token (and optionally the store path) into root's config.

    An existing file is refused unless ``force``; then it is copied to
    ``config.toml.bak`` and only the given keys are replaced.

    Raises:
        ConfigExistsError: the file exists and ``force`` is False.
        ConfigError: the existing file cannot be parsed.
    """
    path = get_config_path(root)
    backup = None
    if path.exists():
        if not force:
            raise ConfigExistsError(f"config already exists at {path}")
        doc = _load_document(path)
        backup = path.with_suffix(BACKUP_SUFFIX)
        shutil.copy2(path, backup)
    else:
        doc = tomlkit.document()

    _set(doc, "telegram", "bot_token", bot_token)
    if store_path is not None:
        _set(doc, "store", "path", str(store_path))

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(tomlkit.dumps(doc))
    return InitResult(path=path, backup=backup)
