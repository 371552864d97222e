"""
Label selector rendering for list calls against the Kubernetes API.
"""
from promoter.core.errors import ConfigurationError
from promoter.schemas.argocd import ArgoCDAppSelector

OPERATOR_IN = "In"
OPERATOR_NOT_IN = "NotIn"
OPERATOR_EXISTS = "Exists"
OPERATOR_DOES_NOT_EXIST = "DoesNotExist"


def build_label_selector(selector: ArgoCDAppSelector) -> str:
    """Render a selector in the Kubernetes labelSelector query syntax.

    Raises:
        ConfigurationError: If the selector is empty or malformed
    """
    if not selector.match_labels and not selector.match_expressions:
        raise ConfigurationError("selector must have at least one match criterion")

    requirements = [
        f"{key}={value}" for key, value in sorted(selector.match_labels.items())
    ]
    for expr in selector.match_expressions:
        if expr.operator in (OPERATOR_IN, OPERATOR_NOT_IN):
            if not expr.values:
                raise ConfigurationError(
                    f"invalid matchExpression: values must be non-empty for operator {expr.operator}"
                )
            op = "in" if expr.operator == OPERATOR_IN else "notin"
            requirements.append(f"{expr.key} {op} ({','.join(expr.values)})")
        elif expr.operator in (OPERATOR_EXISTS, OPERATOR_DOES_NOT_EXIST):
            if expr.values:
                raise ConfigurationError(
                    f"invalid matchExpression: values must be empty for operator {expr.operator}"
                )
            prefix = "" if expr.operator == OPERATOR_EXISTS else "!"
            requirements.append(f"{prefix}{expr.key}")
        else:
            raise ConfigurationError(f"invalid operator: {expr.operator}")
    return ",".join(requirements)
