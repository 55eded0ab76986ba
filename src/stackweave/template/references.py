"""Reference expressions used in template property bags.

A property bag is plain data (dicts, lists, scalars) in which any value may
be one of the expression types below. Expressions are resolved against the
State Store at plan time and again, strictly, just before the provider call.
"""

import base64
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, Set, Union

from stackweave.utils.errors import UnresolvedReferenceError

SUB_PATTERN = re.compile(r"\$\{([^}]*)\}")


class _KnownAfterApply:
    """Placeholder for a value that only exists once a resource is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<known after apply>"

    def __reduce__(self):
        return (_KnownAfterApply, ())


KNOWN_AFTER_APPLY = _KnownAfterApply()


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    """Physical ID of a resource, or the value of a parameter."""
    target: str


@dataclass(frozen=True)
class GetAtt:
    """Provider-reported attribute of a resource."""
    resource: str
    attribute: str


@dataclass(frozen=True)
class ImportValue:
    """Value exported by another stack."""
    export_name: Any


@dataclass(frozen=True)
class Sub:
    """String with ${Name} and ${Resource.Attribute} placeholders."""
    template: str
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Base64:
    value: Any


Expression = Union[Literal, Ref, GetAtt, ImportValue, Sub, Base64]


def sub_placeholders(expression: Sub) -> Iterator[Union[Ref, GetAtt]]:
    """Yield the references named by a Sub string's placeholders."""
    for match in SUB_PATTERN.finditer(expression.template):
        name = match.group(1).strip()
        if not name or name.startswith("!") or name in expression.variables:
            continue
        if "." in name:
            resource, attribute = name.split(".", 1)
            yield GetAtt(resource, attribute)
        else:
            yield Ref(name)


def iter_references(value: Any) -> Iterator[Union[Ref, GetAtt, ImportValue]]:
    """Walk a property value and yield every Ref, GetAtt and ImportValue in it."""
    if isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)
    elif isinstance(value, (Ref, GetAtt)):
        yield value
    elif isinstance(value, ImportValue):
        yield value
        yield from iter_references(value.export_name)
    elif isinstance(value, Sub):
        yield from sub_placeholders(value)
        yield from iter_references(value.variables)
    elif isinstance(value, Base64):
        yield from iter_references(value.value)
    elif isinstance(value, Literal):
        yield from iter_references(value.value)


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still holds KNOWN_AFTER_APPLY anywhere."""
    if value is KNOWN_AFTER_APPLY:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


def to_json(value: Any) -> Any:
    """Convert a property value to JSON-compatible data in long intrinsic form."""
    if isinstance(value, dict):
        return {key: to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(item) for item in value]
    if isinstance(value, Literal):
        return to_json(value.value)
    if isinstance(value, Ref):
        return {"Ref": value.target}
    if isinstance(value, GetAtt):
        return {"Fn::GetAtt": [value.resource, value.attribute]}
    if isinstance(value, ImportValue):
        return {"Fn::ImportValue": to_json(value.export_name)}
    if isinstance(value, Sub):
        if value.variables:
            return {"Fn::Sub": [value.template, to_json(value.variables)]}
        return {"Fn::Sub": value.template}
    if isinstance(value, Base64):
        return {"Fn::Base64": to_json(value.value)}
    if value is KNOWN_AFTER_APPLY:
        return repr(value)
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(to_json(value), sort_keys=True, separators=(",", ":"), default=str)


class Resolver:
    """Resolves reference expressions to concrete values.

    Args:
        parameters: Parameter values, pseudo parameters included
        lookup: Returns the StateRecord for a logical ID, or None
        exports: Export name to value
        unknown_refs: Resources whose physical ID is not known yet
        unknown_attrs: Resources whose attributes are not known yet
        strict: Raise instead of yielding KNOWN_AFTER_APPLY
    """

    def __init__(
        self,
        parameters: Dict[str, Any],
        lookup: Callable[[str], Any],
        exports: Optional[Dict[str, Any]] = None,
        unknown_refs: Optional[Set[str]] = None,
        unknown_attrs: Optional[Set[str]] = None,
        strict: bool = False
    ):
        self.parameters = parameters
        self.lookup = lookup
        self.exports = exports or {}
        self.unknown_refs = unknown_refs if unknown_refs is not None else set()
        self.unknown_attrs = unknown_attrs if unknown_attrs is not None else set()
        self.strict = strict

    def resolve(self, value: Any, source: Optional[str] = None) -> Any:
        """Resolve every expression in a property value.

        Args:
            value: Property value, possibly nested
            source: Logical ID of the resource being resolved, for error messages

        Returns:
            The value with expressions replaced, or KNOWN_AFTER_APPLY where
            a referenced value does not exist yet

        Raises:
            UnresolvedReferenceError: If a reference cannot be satisfied
        """
        if isinstance(value, dict):
            return {key: self.resolve(item, source) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item, source) for item in value]
        if isinstance(value, Literal):
            return self.resolve(value.value, source)
        if isinstance(value, Ref):
            return self._resolve_ref(value.target, source)
        if isinstance(value, GetAtt):
            return self._resolve_getatt(value.resource, value.attribute, source)
        if isinstance(value, ImportValue):
            return self._resolve_import(value, source)
        if isinstance(value, Sub):
            return self._resolve_sub(value, source)
        if isinstance(value, Base64):
            inner = self.resolve(value.value, source)
            if contains_unknown(inner):
                return KNOWN_AFTER_APPLY
            return base64.b64encode(str(inner).encode("utf-8")).decode("ascii")
        return value

    def _unknown(self, message: str, source: Optional[str], target: str) -> Any:
        if self.strict:
            raise UnresolvedReferenceError(message, source=source, target=target)
        return KNOWN_AFTER_APPLY

    def _resolve_ref(self, target: str, source: Optional[str]) -> Any:
        if target in self.parameters:
            return self.parameters[target]
        if target in self.unknown_refs:
            return self._unknown(f"Resource '{target}' has not been applied yet", source, target)

        record = self.lookup(target)
        if record is None:
            return self._unknown(f"Resource '{target}' has no recorded state", source, target)
        return record.physical_id

    def _resolve_getatt(self, resource: str, attribute: str, source: Optional[str]) -> Any:
        if resource in self.unknown_refs or resource in self.unknown_attrs:
            return self._unknown(
                f"Attribute {resource}.{attribute} is not known until {resource} is applied",
                source,
                resource
            )

        record = self.lookup(resource)
        if record is None:
            return self._unknown(f"Resource '{resource}' has no recorded state", source, resource)
        if attribute not in record.outputs:
            raise UnresolvedReferenceError(
                f"Resource '{resource}' does not report attribute '{attribute}'",
                source=source,
                target=resource
            )
        return record.outputs[attribute]

    def _resolve_import(self, expression: ImportValue, source: Optional[str]) -> Any:
        name = self.resolve(expression.export_name, source)
        if contains_unknown(name):
            return KNOWN_AFTER_APPLY
        if name not in self.exports:
            raise UnresolvedReferenceError(
                f"No stack exports '{name}'",
                source=source,
                target=f"import:{name}"
            )
        return self.exports[name]

    def _resolve_sub(self, expression: Sub, source: Optional[str]) -> Any:
        variables = {key: self.resolve(item, source) for key, item in expression.variables.items()}
        unknown = False

        def replace(match):
            nonlocal unknown
            name = match.group(1).strip()
            if name.startswith("!"):
                return "${" + name[1:] + "}"
            if name in variables:
                value = variables[name]
            elif "." in name:
                resource, attribute = name.split(".", 1)
                value = self._resolve_getatt(resource, attribute, source)
            else:
                value = self._resolve_ref(name, source)
            if contains_unknown(value):
                unknown = True
                return ""
            return str(value)

        result = SUB_PATTERN.sub(replace, expression.template)
        return KNOWN_AFTER_APPLY if unknown else result
