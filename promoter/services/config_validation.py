"""
JSON schema validation of step configuration.
"""
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from promoter.core.errors import ConfigurationError


def config_problems(schema: Dict[str, Any], config: Dict[str, Any]) -> List[str]:
    """Return every schema violation in config as "<dotted.path>: <message>"."""
    validator = Draft202012Validator(schema)
    problems = []
    for err in sorted(validator.iter_errors(config), key=lambda e: list(map(str, e.absolute_path))):
        path = ".".join(str(p) for p in err.absolute_path) or "(root)"
        problems.append(f"{path}: {err.message}")
    return problems


def validate_config(kind: str, schema: Dict[str, Any], config: Dict[str, Any]) -> None:
    """Validate a step's config against the schema of its kind.

    Raises:
        ConfigurationError: If the config does not satisfy the schema
    """
    problems = config_problems(schema, config)
    if problems:
        raise ConfigurationError(
            f"invalid {kind} config: {'; '.join(problems)}"
        )
