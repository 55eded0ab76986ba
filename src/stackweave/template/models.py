"""Typed template declarations produced by the template loader."""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stackweave.template.references import canonical_json


@dataclass
class ParameterDeclaration:
    """Template parameter."""

    name: str
    type: str = "String"
    default: Any = None
    allowed_values: Optional[List[Any]] = None
    description: Optional[str] = None

    @property
    def has_default(self) -> bool:
        return self.default is not None


@dataclass
class ResourceDeclaration:
    """Resource declaration with properties in expression form."""

    logical_id: str
    kind: str
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)

    def declaration_hash(self) -> str:
        """Hash of the declaration as written (before resolution)."""
        document = {
            "Type": self.kind,
            "Properties": self.properties,
            "DependsOn": sorted(self.depends_on),
        }
        return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


@dataclass
class OutputDeclaration:
    """Stack output, optionally exported for other stacks."""

    name: str
    value: Any
    export_name: Any = None
    description: Optional[str] = None


@dataclass
class Template:
    """Parsed template document."""

    description: Optional[str] = None
    parameters: Dict[str, ParameterDeclaration] = field(default_factory=dict)
    resources: Dict[str, ResourceDeclaration] = field(default_factory=dict)
    outputs: Dict[str, OutputDeclaration] = field(default_factory=dict)
    template_hash: str = ""

    def get_resource(self, logical_id: str) -> Optional[ResourceDeclaration]:
        return self.resources.get(logical_id)
