"""Parameter value resolution."""

from typing import Any, Dict, Optional

from stackweave.template.models import Template
from stackweave.utils.errors import TemplateError

PSEUDO_PARAMETERS = ("AWS::StackName", "AWS::Region")


def resolve_parameters(
    template: Template,
    supplied: Optional[Dict[str, Any]] = None,
    stack_name: Optional[str] = None,
    region: Optional[str] = None
) -> Dict[str, Any]:
    """
    Combine supplied parameter values with template defaults.

    Args:
        template: Parsed template
        supplied: Caller-provided values (override defaults)
        stack_name: Value for AWS::StackName
        region: Value for AWS::Region

    Returns:
        Parameter name to value, pseudo parameters included

    Raises:
        TemplateError: If a value is missing, undeclared or not allowed
    """
    supplied = dict(supplied or {})
    undeclared = sorted(set(supplied) - set(template.parameters))
    if undeclared:
        raise TemplateError(f"Unknown parameter(s): {', '.join(undeclared)}")

    values: Dict[str, Any] = {}
    missing = []
    for name, declaration in template.parameters.items():
        if name in supplied:
            value = supplied[name]
        elif declaration.has_default:
            value = declaration.default
        else:
            missing.append(name)
            continue

        if declaration.allowed_values and value not in declaration.allowed_values:
            raise TemplateError(
                f"Parameter '{name}' value '{value}' is not one of "
                f"{', '.join(str(v) for v in declaration.allowed_values)}"
            )
        if declaration.type == "CommaDelimitedList" and isinstance(value, str):
            value = [item.strip() for item in value.split(",")]
        values[name] = value

    if missing:
        raise TemplateError(
            f"No value for parameter(s): {', '.join(missing)}",
            suggestions=["Pass values with --parameter Name=Value"]
        )

    if stack_name is not None:
        values["AWS::StackName"] = stack_name
    if region is not None:
        values["AWS::Region"] = region
    return values
