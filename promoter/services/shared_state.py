"""
Shared state carried between the steps of a promotion.

State maps step aliases to the structured output of that step. Only JSON
values are allowed so that state can be persisted between reconciliation
passes; copies never share mutable containers.
"""
import json
from typing import Any, Dict, Optional


def copy_state(state: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return an independent deep copy of state.

    Raises:
        TypeError: If state holds a value that is not JSON-serializable
    """
    if not state:
        return {}
    return json.loads(json.dumps(state))


def copy_value(value: Any) -> Any:
    """Deep copy a single JSON value.

    Raises:
        TypeError: If value is not JSON-serializable
    """
    if value is None:
        return None
    return json.loads(json.dumps(value))


def get_step_output(state: Dict[str, Any], alias: str, key: str) -> Optional[Any]:
    """Look up a single key of the output a step recorded under its alias."""
    output = state.get(alias)
    if not isinstance(output, dict):
        return None
    return output.get(key)
