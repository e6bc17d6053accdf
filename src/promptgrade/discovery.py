# src/promptgrade/discovery.py
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from .models import EvaluateOptions, Prompt, Scenario, TestCase, TestSuite, sha256
from .providers import load_provider
from .scripts import FILE_PREFIX, strip_file_prefix

DEFAULT_CONFIG_PATH = Path("promptgradeconfig.yaml")
PROMPT_DELIMITER = re.compile(r"^-{3,}\s*$", re.MULTILINE)


def _deep_merge(source: dict, destination: dict) -> dict:
    """Recursively merge dictionaries, with values from 'source' overwriting 'destination'."""
    for key, value in source.items():
        if (
            isinstance(value, dict)
            and key in destination
            and isinstance(destination[key], dict)
        ):
            destination[key] = _deep_merge(value, destination[key])
        else:
            destination[key] = value
    return destination


def _resolve_path(value: str, base_dir: Path) -> Path:
    path = Path(strip_file_prefix(value))
    return path if path.is_absolute() else base_dir / path


def _load_yaml_file(path: Path) -> Any:
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML in {path}: {e}") from e


def read_config(path: Optional[Path] = None) -> Dict[str, Any]:
    path = path or DEFAULT_CONFIG_PATH
    if not path.is_file():
        raise FileNotFoundError(f"Config file '{path}' not found.")
    data = _load_yaml_file(path) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file '{path}' must contain a mapping.")
    return data


# --- Prompts ---


def _prompts_from_file(path: Path) -> List[Prompt]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return [Prompt(raw=text, display=path.name, id=sha256(text))]
    parts = [part.strip() for part in PROMPT_DELIMITER.split(text)]
    return [Prompt(raw=part, id=sha256(part)) for part in parts if part]


def load_prompts(entries: Any, base_dir: Path) -> List[Prompt]:
    """Prompts from inline text, `file://` paths or existing relative files.

    A mapping is read as `{path or text: display label}`. Text files may hold
    several prompts separated by lines of `---`.
    """
    if isinstance(entries, str):
        entries = [entries]
    labels: Dict[str, Optional[str]] = {}
    if isinstance(entries, dict):
        labels = {str(key): value for key, value in entries.items()}
    else:
        labels = {str(entry): None for entry in entries or []}

    prompts: List[Prompt] = []
    for entry, label in labels.items():
        path = _resolve_path(entry, base_dir)
        if entry.startswith(FILE_PREFIX) or (
            "\n" not in entry and len(entry) < 255 and path.is_file()
        ):
            if not path.is_file():
                raise FileNotFoundError(f"Prompt file not found: {path}")
            loaded = _prompts_from_file(path)
        else:
            loaded = [Prompt(raw=entry, id=sha256(entry))]
        if label:
            loaded = [p.model_copy(update={"display": label}) for p in loaded]
        prompts.extend(loaded)
    return prompts


# --- Tests ---


def _load_tests(value: Any, base_dir: Path) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, str):
        loaded = _load_yaml_file(_resolve_path(value, base_dir)) or []
        if not isinstance(loaded, list):
            raise ValueError(f"Tests file '{value}' must contain a list of tests.")
        return loaded
    return list(value)


def build_test_suite(config: Dict[str, Any], base_dir: Path) -> TestSuite:
    """Turn a parsed config mapping into a TestSuite with loaded providers."""
    if not config.get("prompts"):
        raise ValueError("Config is missing a `prompts` definition.")
    if not config.get("providers"):
        raise ValueError("Config is missing a `providers` definition.")

    providers = config["providers"]
    if isinstance(providers, (str, dict)):
        providers = [providers]

    try:
        default_test = config.get("defaultTest")
        scenarios = config.get("scenarios")
        return TestSuite(
            description=config.get("description"),
            prompts=load_prompts(config["prompts"], base_dir),
            providers=[load_provider(p) for p in providers],
            tests=[TestCase(**t) for t in _load_tests(config.get("tests"), base_dir)],
            default_test=TestCase(**default_test) if default_test else None,
            scenarios=[Scenario(**s) for s in scenarios] if scenarios else None,
            provider_prompt_map=config.get("providerPromptMap"),
        )
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def load_test_suite(path: Optional[Path] = None) -> TestSuite:
    path = path or DEFAULT_CONFIG_PATH
    return build_test_suite(read_config(path), path.parent)


def load_evaluate_options(
    config: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None
) -> EvaluateOptions:
    """`evaluateOptions` from the config file, with non-None overrides applied."""
    settings = _deep_merge(
        {to_camel(k): v for k, v in (overrides or {}).items() if v is not None},
        dict(config.get("evaluateOptions") or {}),
    )
    try:
        return EvaluateOptions(**settings)
    except ValidationError as e:
        raise ValueError(f"Invalid evaluateOptions: {e}") from e
