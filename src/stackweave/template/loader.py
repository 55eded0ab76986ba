"""Template loader for CloudFormation-style YAML documents."""

import hashlib
import re
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from stackweave.template.models import (
    OutputDeclaration,
    ParameterDeclaration,
    ResourceDeclaration,
    Template,
)
from stackweave.template.references import Base64, GetAtt, ImportValue, Ref, Sub, canonical_json
from stackweave.utils.errors import TemplateError
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)

LOGICAL_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")

# Short-form YAML tags and the long-form function they stand for
SHORT_TAGS = {
    "Ref": "Ref",
    "GetAtt": "Fn::GetAtt",
    "ImportValue": "Fn::ImportValue",
    "Sub": "Fn::Sub",
    "Base64": "Fn::Base64",
}


class TemplateYAMLLoader(yaml.SafeLoader):
    """SafeLoader that understands the short intrinsic tags."""


def _construct_node(loader: yaml.SafeLoader, node: yaml.Node) -> Any:
    if isinstance(node, yaml.ScalarNode):
        return loader.construct_scalar(node)
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    return loader.construct_mapping(node, deep=True)


def _intrinsic_constructor(function: str):
    def construct(loader: yaml.SafeLoader, node: yaml.Node) -> Dict[str, Any]:
        value = _construct_node(loader, node)
        if function == "Fn::GetAtt" and isinstance(value, str):
            value = value.split(".", 1)
        return {function: value}
    return construct


for _tag, _function in SHORT_TAGS.items():
    TemplateYAMLLoader.add_constructor(f"!{_tag}", _intrinsic_constructor(_function))


def parse_expression(value: Any, path: str = "") -> Any:
    """Convert long-form intrinsic functions in a value to expression objects.

    Args:
        value: Raw YAML value
        path: Location in the template, for error messages

    Returns:
        The value with every intrinsic replaced by its expression type

    Raises:
        TemplateError: If an intrinsic is malformed or unsupported
    """
    if isinstance(value, dict):
        if len(value) == 1:
            key = next(iter(value))
            if key == "Ref" or key.startswith("Fn::"):
                return _parse_intrinsic(key, value[key], path)
        return {key: parse_expression(item, f"{path}.{key}") for key, item in value.items()}
    if isinstance(value, list):
        return [parse_expression(item, f"{path}[{i}]") for i, item in enumerate(value)]
    return value


def _parse_intrinsic(function: str, argument: Any, path: str) -> Any:
    if function == "Ref":
        if not isinstance(argument, str):
            raise TemplateError(f"Ref at {path} must name a resource or parameter")
        return Ref(argument)

    if function == "Fn::GetAtt":
        if isinstance(argument, str):
            argument = argument.split(".", 1)
        if (
            not isinstance(argument, list)
            or len(argument) != 2
            or not all(isinstance(part, str) and part for part in argument)
        ):
            raise TemplateError(f"Fn::GetAtt at {path} must be 'Resource.Attribute'")
        return GetAtt(argument[0], argument[1])

    if function == "Fn::ImportValue":
        name = parse_expression(argument, path)
        if not isinstance(name, (str, Sub, Ref)):
            raise TemplateError(f"Fn::ImportValue at {path} must be an export name")
        return ImportValue(name)

    if function == "Fn::Sub":
        if isinstance(argument, str):
            return Sub(argument)
        if (
            isinstance(argument, list)
            and len(argument) == 2
            and isinstance(argument[0], str)
            and isinstance(argument[1], dict)
        ):
            variables = {
                key: parse_expression(item, f"{path}.{key}") for key, item in argument[1].items()
            }
            return Sub(argument[0], variables)
        raise TemplateError(f"Fn::Sub at {path} must be a string or [string, variables]")

    if function == "Fn::Base64":
        return Base64(parse_expression(argument, path))

    raise TemplateError(
        f"Unsupported intrinsic function '{function}' at {path}",
        suggestions=[f"Supported functions: {', '.join(sorted(SHORT_TAGS.values()))}"]
    )


def _as_list(value: Union[str, List[str], None], path: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise TemplateError(f"{path} must be a string or a list of strings")


def template_hash(document: Dict[str, Any]) -> str:
    """Content hash of a raw template document."""
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


def parse_template(document: Any) -> Template:
    """
    Build a typed Template from a raw document.

    Args:
        document: Template mapping with long-form intrinsics

    Returns:
        Template object

    Raises:
        TemplateError: If the document is structurally invalid
    """
    if not isinstance(document, dict):
        raise TemplateError("Template must be a mapping")
    if "Conditions" in document:
        raise TemplateError("Template conditions are not supported")

    resources = document.get("Resources")
    if not isinstance(resources, dict) or not resources:
        raise TemplateError("Template must declare at least one resource under 'Resources'")

    template = Template(
        description=document.get("Description"),
        template_hash=template_hash(document),
    )

    for name, body in (document.get("Parameters") or {}).items():
        if not isinstance(body, dict):
            raise TemplateError(f"Parameter '{name}' must be a mapping")
        template.parameters[name] = ParameterDeclaration(
            name=name,
            type=body.get("Type", "String"),
            default=body.get("Default"),
            allowed_values=body.get("AllowedValues"),
            description=body.get("Description"),
        )

    for logical_id, body in resources.items():
        path = f"Resources.{logical_id}"
        if not LOGICAL_ID_PATTERN.match(str(logical_id)):
            raise TemplateError(f"Invalid logical ID '{logical_id}': must be alphanumeric")
        if not isinstance(body, dict) or not isinstance(body.get("Type"), str):
            raise TemplateError(f"{path} must be a mapping with a 'Type'")
        if "Condition" in body:
            raise TemplateError(f"{path}: resource conditions are not supported")

        properties = body.get("Properties") or {}
        if not isinstance(properties, dict):
            raise TemplateError(f"{path}.Properties must be a mapping")

        template.resources[logical_id] = ResourceDeclaration(
            logical_id=logical_id,
            kind=body["Type"],
            properties=parse_expression(properties, f"{path}.Properties"),
            depends_on=_as_list(body.get("DependsOn"), f"{path}.DependsOn"),
        )

    for name, body in (document.get("Outputs") or {}).items():
        path = f"Outputs.{name}"
        if not isinstance(body, dict) or "Value" not in body:
            raise TemplateError(f"{path} must be a mapping with a 'Value'")

        export_name = None
        export = body.get("Export")
        if export is not None:
            if not isinstance(export, dict) or "Name" not in export:
                raise TemplateError(f"{path}.Export must be a mapping with a 'Name'")
            export_name = parse_expression(export["Name"], f"{path}.Export.Name")

        template.outputs[name] = OutputDeclaration(
            name=name,
            value=parse_expression(body["Value"], f"{path}.Value"),
            export_name=export_name,
            description=body.get("Description"),
        )

    logger.debug(
        f"Parsed template with {len(template.parameters)} parameters, "
        f"{len(template.resources)} resources, {len(template.outputs)} outputs"
    )
    return template


def load_template_string(text: str) -> Template:
    """Parse a template from YAML (or JSON) text."""
    try:
        document = yaml.load(text, Loader=TemplateYAMLLoader)
    except yaml.YAMLError as e:
        raise TemplateError(f"Failed to parse template YAML: {e}")
    return parse_template(document)


def load_template(path: Union[str, Path]) -> Template:
    """
    Load a template file.

    Args:
        path: Path to a YAML or JSON template

    Returns:
        Template object

    Raises:
        TemplateError: If the file is missing or invalid
    """
    path = Path(path)
    if not path.exists():
        raise TemplateError(f"Template file not found: {path}")

    with open(path, "r") as f:
        text = f.read()

    logger.info(f"Loading template {path}")
    return load_template_string(text)
