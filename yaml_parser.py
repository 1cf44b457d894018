# yaml_parser.py
"""Loading of reader archetype definitions from YAML or JSON files."""

import json
import os
from typing import Any

import structlog
import yaml
from config import settings
from core.exceptions import UnsupportedInputError
from pydantic import ValidationError

from models import Archetype

logger = structlog.get_logger(__name__)


def normalize_keys_recursive(data: Any) -> Any:
    """
    Recursively normalizes human-readable keys ("Pain Points") to snake_case.
    Keys without spaces are left untouched so camelCase exports from the
    persona editor still match the model aliases.
    """
    if isinstance(data, dict):
        new_dict = {}
        for key, value in data.items():
            key_str = str(key).strip()
            if " " in key_str:
                key_str = key_str.lower().replace(" ", "_")
            new_dict[key_str] = normalize_keys_recursive(value)
        return new_dict
    elif isinstance(data, list):
        return [normalize_keys_recursive(item) for item in data]
    else:
        return data


def load_yaml_file(filepath: str, normalize_keys: bool = True) -> dict[str, Any] | None:
    """
    Loads and parses a YAML file.

    Args:
        filepath: Path to the YAML file.
        normalize_keys: Whether to recursively normalize dictionary keys.

    Returns:
        A dictionary representing the YAML content, or None if an error occurs.
    """
    if not filepath.endswith((".yaml", ".yml")):
        logger.error(f"File specified is not a YAML file: {filepath}")
        return None
    try:
        with open(filepath, encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning(f"YAML file '{filepath}' not found.")
        return None
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file {filepath}: {e}", exc_info=True)
        return None

    if content is None:  # Empty file
        return {}
    if not isinstance(content, dict):
        logger.error(
            f"YAML file {filepath} must have a dictionary as its root element. Parsed type: {type(content)}"
        )
        return None

    if normalize_keys:
        return normalize_keys_recursive(content)
    return content


def _load_json_file(filepath: str) -> Any:
    try:
        with open(filepath, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        logger.warning(f"JSON file '{filepath}' not found.")
        return None
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing JSON file {filepath}: {e}")
        return None


def parse_archetypes(records: Any, source: str = "<memory>") -> list[Archetype]:
    """Validate a list of archetype records (or ``{"archetypes": [...]}``)."""
    if isinstance(records, dict):
        records = records.get("archetypes")
    if not isinstance(records, list):
        raise UnsupportedInputError(f"No archetype list found in {source}")

    archetypes: list[Archetype] = []
    seen: set[str] = set()
    for position, record in enumerate(records):
        try:
            archetype = Archetype.model_validate(normalize_keys_recursive(record))
        except ValidationError as e:
            raise UnsupportedInputError(
                f"Archetype #{position + 1} in {source} is invalid: {e}"
            ) from e
        if archetype.id in seen:
            raise UnsupportedInputError(
                f"Duplicate archetype id '{archetype.id}' in {source}"
            )
        seen.add(archetype.id)
        archetypes.append(archetype)
    return archetypes


def load_archetypes(filepath: str) -> list[Archetype]:
    """Load archetypes from a ``.yaml``/``.yml`` or ``.json`` file.

    Raises:
        UnsupportedInputError: unknown extension, unreadable file or invalid records.
    """
    extension = os.path.splitext(filepath)[1].lower()
    if extension in (".yaml", ".yml"):
        content: Any = load_yaml_file(filepath, normalize_keys=False)
    elif extension == ".json":
        content = _load_json_file(filepath)
    else:
        raise UnsupportedInputError(
            f"Archetype file must be YAML or JSON, got '{extension or filepath}'"
        )
    if content is None:
        raise UnsupportedInputError(f"Could not read archetypes from {filepath}")

    archetypes = parse_archetypes(content, source=filepath)
    logger.info(f"Loaded {len(archetypes)} archetypes from {filepath}")
    return archetypes


def default_archetypes() -> list[Archetype]:
    """The bundled reader panel."""
    return load_archetypes(settings.DEFAULT_ARCHETYPES_FILE)
