"""Migration template models: templates, steps and their ETL specifications."""

import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from ..errors import StructuralError


class TemplateCategory(str, Enum):
    PAYROLL = "payroll"
    TIME = "time"
    CUSTOM = "custom"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class LoadOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"


class TransformKind(str, Enum):
    """Built-in value transformations for field mappings."""
    DIRECT = "direct"
    BOOLEAN = "boolean"
    NUMBER = "number"
    DATE = "date"
    PICKLIST = "picklist"
    TRUNCATE = "truncate"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    DEFAULT = "default"


def _frozen(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class FieldMapping:
    """Copy one source field to one target field, optionally transformed."""
    source_field: str
    target_field: str
    transform: TransformKind = TransformKind.DIRECT
    options: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    required: bool = False
    default_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "transform": self.transform.value,
            "options": dict(self.options),
            "required": self.required,
            "default_value": self.default_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        return cls(
            source_field=data["source_field"],
            target_field=data["target_field"],
            transform=TransformKind(data.get("transform", "direct")),
            options=_frozen(data.get("options")),
            required=data.get("required", False),
            default_value=data.get("default_value"),
        )


@dataclass(frozen=True)
class LookupMapping:
    """
    Resolve a reference to a parent record migrated by an earlier step.

    The source row carries the parent's source id in `source_field`; the
    parent's target id is looked up in the session's id map for `step` and
    written to `target_field`.
    """
    source_field: str
    target_field: str
    step: str
    required: bool = True
    fallback_value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "step": self.step,
            "required": self.required,
            "fallback_value": self.fallback_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LookupMapping":
        return cls(
            source_field=data["source_field"],
            target_field=data["target_field"],
            step=data["step"],
            required=data.get("required", True),
            fallback_value=data.get("fallback_value"),
        )


@dataclass(frozen=True)
class TransformRules:
    """Field mappings and lookup resolution for one step."""
    field_mappings: Tuple[FieldMapping, ...] = ()
    lookups: Tuple[LookupMapping, ...] = ()
    external_id_target_field: Optional[str] = None  # Receives the source record id

    @property
    def source_fields(self) -> Tuple[str, ...]:
        names = [m.source_field for m in self.field_mappings]
        names.extend(l.source_field for l in self.lookups)
        return tuple(dict.fromkeys(names))

    @property
    def target_fields(self) -> Tuple[str, ...]:
        names = [m.target_field for m in self.field_mappings]
        names.extend(l.target_field for l in self.lookups)
        if self.external_id_target_field:
            names.append(self.external_id_target_field)
        return tuple(dict.fromkeys(names))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "lookups": [l.to_dict() for l in self.lookups],
            "external_id_target_field": self.external_id_target_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformRules":
        return cls(
            field_mappings=tuple(FieldMapping.from_dict(m) for m in data.get("field_mappings", [])),
            lookups=tuple(LookupMapping.from_dict(l) for l in data.get("lookups", [])),
            external_id_target_field=data.get("external_id_target_field"),
        )


@dataclass(frozen=True)
class ExtractSpec:
    """What to read from the source organisation for one step."""
    object_type: str
    fields: Tuple[str, ...] = ("Id",)
    filters: Tuple[str, ...] = ()  # Raw conditions, AND-ed together
    order_by: Optional[str] = None
    selection_field: str = "Id"
    selection_object: Optional[str] = None

    @property
    def selection_key(self) -> str:
        """Object type whose caller-selected ids restrict this step."""
        return self.selection_object or self.object_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "fields": list(self.fields),
            "filters": list(self.filters),
            "order_by": self.order_by,
            "selection_field": self.selection_field,
            "selection_object": self.selection_object,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractSpec":
        fields_ = list(data.get("fields", []))
        if "Id" not in fields_:
            fields_.insert(0, "Id")
        return cls(
            object_type=data["object_type"],
            fields=tuple(fields_),
            filters=tuple(data.get("filters", [])),
            order_by=data.get("order_by"),
            selection_field=data.get("selection_field", "Id"),
            selection_object=data.get("selection_object"),
        )


@dataclass(frozen=True)
class LoadSpec:
    """How transformed records are written to the target organisation."""
    object_type: str
    operation: LoadOperation = LoadOperation.INSERT
    batch_size: int = 200
    external_id_field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "operation": self.operation.value,
            "batch_size": self.batch_size,
            "external_id_field": self.external_id_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadSpec":
        return cls(
            object_type=data["object_type"],
            operation=LoadOperation(data.get("operation", "insert")),
            batch_size=data.get("batch_size", 200),
            external_id_field=data.get("external_id_field"),
        )


@dataclass(frozen=True)
class Step:
    """One object type's extract/transform/load unit within a template."""
    name: str
    order: int
    extract: ExtractSpec
    load: LoadSpec
    transform: TransformRules = field(default_factory=TransformRules)
    depends_on: FrozenSet[str] = frozenset()
    description: str = ""

    @property
    def object_type(self) -> str:
        """Target object type written by this step."""
        return self.load.object_type

    @property
    def has_external_id(self) -> bool:
        return bool(self.load.external_id_field or self.transform.external_id_target_field)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "order": self.order,
            "description": self.description,
            "depends_on": sorted(self.depends_on),
            "extract": self.extract.to_dict(),
            "transform": self.transform.to_dict(),
            "load": self.load.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            name=data["name"],
            order=data.get("order", 0),
            description=data.get("description", ""),
            depends_on=frozenset(data.get("depends_on", [])),
            extract=ExtractSpec.from_dict(data["extract"]),
            transform=TransformRules.from_dict(data.get("transform", {})),
            load=LoadSpec.from_dict(data["load"]),
        )


@dataclass(frozen=True)
class TemplateMetadata:
    author: str = ""
    complexity: Complexity = Complexity.SIMPLE
    estimated_duration_minutes: int = 0
    required_permissions: Tuple[str, ...] = ()
    supported_api_versions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "author": self.author,
            "complexity": self.complexity.value,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "required_permissions": list(self.required_permissions),
            "supported_api_versions": list(self.supported_api_versions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateMetadata":
        return cls(
            author=data.get("author", ""),
            complexity=Complexity(data.get("complexity", "simple")),
            estimated_duration_minutes=data.get("estimated_duration_minutes", 0),
            required_permissions=tuple(data.get("required_permissions", [])),
            supported_api_versions=tuple(data.get("supported_api_versions", [])),
        )


@dataclass(frozen=True)
class Template:
    """A versioned, declarative migration plan made of ordered steps."""
    id: str
    name: str
    version: str
    steps: Tuple[Step, ...]
    category: TemplateCategory = TemplateCategory.CUSTOM
    description: str = ""
    metadata: TemplateMetadata = field(default_factory=TemplateMetadata)

    @property
    def step_names(self) -> Tuple[str, ...]:
        return tuple(step.name for step in self.steps)

    def get_step(self, name: str) -> Optional[Step]:
        """Get a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def summary(self) -> Dict[str, Any]:
        """Short description used by catalog listings."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "category": self.category.value,
            "description": self.description,
            "complexity": self.metadata.complexity.value,
            "estimated_duration_minutes": self.metadata.estimated_duration_minutes,
            "step_count": len(self.steps),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "category": self.category.value,
            "description": self.description,
            "metadata": self.metadata.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        """
        Create from dictionary representation.

        Raises:
            StructuralError: if a required key is missing or an enum value is unknown
        """
        try:
            return cls(
                id=data["id"],
                name=data["name"],
                version=str(data.get("version", "1.0.0")),
                category=TemplateCategory(data.get("category", "custom")),
                description=data.get("description", ""),
                metadata=TemplateMetadata.from_dict(data.get("metadata", {})),
                steps=_sorted_steps(Step.from_dict(s) for s in data.get("steps", [])),
            )
        except KeyError as e:
            raise StructuralError(f"Template definition is missing required key {e}") from e
        except (TypeError, ValueError) as e:
            raise StructuralError(f"Template definition is invalid: {e}") from e

    @classmethod
    def from_json_file(cls, file_path: str) -> "Template":
        """Load a template from a JSON file."""
        with open(file_path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)


def _sorted_steps(steps: Iterable[Step]) -> Tuple[Step, ...]:
    return tuple(sorted(steps, key=lambda s: s.order))
