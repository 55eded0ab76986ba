"""Template parsing and reference expressions."""

from .loader import load_template, load_template_string, parse_template
from .models import OutputDeclaration, ParameterDeclaration, ResourceDeclaration, Template
from .parameters import PSEUDO_PARAMETERS, resolve_parameters
from .references import (
    KNOWN_AFTER_APPLY,
    Base64,
    GetAtt,
    ImportValue,
    Literal,
    Ref,
    Resolver,
    Sub,
    contains_unknown,
    iter_references,
)

__all__ = [
    "load_template",
    "load_template_string",
    "parse_template",
    "Template",
    "ParameterDeclaration",
    "ResourceDeclaration",
    "OutputDeclaration",
    "PSEUDO_PARAMETERS",
    "resolve_parameters",
    "KNOWN_AFTER_APPLY",
    "Literal",
    "Ref",
    "GetAtt",
    "ImportValue",
    "Sub",
    "Base64",
    "Resolver",
    "contains_unknown",
    "iter_references",
]
