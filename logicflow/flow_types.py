"""
Defines the structural type model for logicflow programs.

Every value in a program is paired with one of the DataType variants below.
Types are plain immutable value objects; they are compared structurally by
`is_type_compatible`, never by identity.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple

ERROR_KINDS = ("reference_error", "type_error", "runtime_error", "custom_error")

# Display names used for default error reasons and signatures.
ERROR_TYPE_NAMES: Dict[str, str] = {
    "reference_error": "Reference Error",
    "type_error": "Type Error",
    "runtime_error": "Runtime Error",
    "custom_error": "Error",
}


# =================================================================
# Type variants
# =================================================================

class DataType:
    """Base class for all type variants. Subclasses set `kind`."""
    kind: ClassVar[str] = ""


@dataclass(frozen=True)
class UnknownType(DataType):
    kind: ClassVar[str] = "unknown"


@dataclass(frozen=True)
class NeverType(DataType):
    kind: ClassVar[str] = "never"


@dataclass(frozen=True)
class UndefinedType(DataType):
    kind: ClassVar[str] = "undefined"


@dataclass(frozen=True)
class StringType(DataType):
    kind: ClassVar[str] = "string"


@dataclass(frozen=True)
class NumberType(DataType):
    kind: ClassVar[str] = "number"


@dataclass(frozen=True)
class BooleanType(DataType):
    kind: ClassVar[str] = "boolean"


@dataclass(frozen=True)
class ArrayType(DataType):
    element_type: DataType = field(default_factory=UndefinedType)
    kind: ClassVar[str] = "array"


@dataclass(frozen=True)
class TupleType(DataType):
    elements: Tuple[DataType, ...] = ()
    kind: ClassVar[str] = "tuple"


@dataclass(frozen=True)
class ObjectType(DataType):
    """An object with named properties.

    `required` of None means every declared property is required.
    """
    properties: Dict[str, DataType] = field(default_factory=dict)
    required: Optional[Tuple[str, ...]] = None
    kind: ClassVar[str] = "object"

    def required_keys(self) -> Tuple[str, ...]:
        if self.required is None:
            return tuple(self.properties.keys())
        return self.required


@dataclass(frozen=True)
class DictionaryType(DataType):
    element_type: DataType = field(default_factory=UndefinedType)
    kind: ClassVar[str] = "dictionary"


@dataclass(frozen=True)
class UnionType(DataType):
    types: Tuple[DataType, ...] = ()
    active_index: Optional[int] = None
    kind: ClassVar[str] = "union"


@dataclass(frozen=True)
class Parameter:
    """A single declared parameter of an operation type."""
    type: DataType
    name: Optional[str] = None
    is_optional: bool = False


@dataclass(frozen=True)
class OperationType(DataType):
    parameters: Tuple[Parameter, ...] = ()
    result: DataType = field(default_factory=UndefinedType)
    kind: ClassVar[str] = "operation"


@dataclass(frozen=True)
class ConditionType(DataType):
    result: DataType = field(default_factory=UndefinedType)
    kind: ClassVar[str] = "condition"


@dataclass(frozen=True)
class ReferenceType(DataType):
    data_type: DataType = field(default_factory=UnknownType)
    kind: ClassVar[str] = "reference"


@dataclass(frozen=True)
class ErrorType(DataType):
    error_type: str = "custom_error"
    kind: ClassVar[str] = "error"

    def __post_init__(self):
        if self.error_type not in ERROR_KINDS:
            raise ValueError(f"Unknown error type: {self.error_type!r}")


@dataclass(frozen=True)
class InstanceType(DataType):
    """An opaque host object (Date, URL, HttpClient...) kept in a side table."""
    class_name: str = "Object"
    constructor_args: Tuple[DataType, ...] = ()
    kind: ClassVar[str] = "instance"


TYPE_CLASSES: Dict[str, type] = {
    cls.kind: cls for cls in (
        UnknownType, NeverType, UndefinedType, StringType, NumberType, BooleanType,
        ArrayType, TupleType, ObjectType, DictionaryType, UnionType, OperationType,
        ConditionType, ReferenceType, ErrorType, InstanceType,
    )
}


# =================================================================
# Compatibility
# =================================================================

def _parameters_compatible(first: Tuple[Parameter, ...], second: Tuple[Parameter, ...]) -> bool:
    for index, param in enumerate(first):
        if index >= len(second):
            if param.is_optional:
                continue
            return False
        if not is_type_compatible(param.type, second[index].type):
            return False
    return True


def is_type_compatible(first: DataType, second: DataType) -> bool:
    """Structural compatibility test between two types."""
    if first.kind == "unknown" or second.kind == "unknown":
        return True

    if isinstance(first, OperationType) and isinstance(second, OperationType):
        if not is_type_compatible(first.result, second.result):
            return False
        return (_parameters_compatible(first.parameters, second.parameters)
                and _parameters_compatible(second.parameters, first.parameters))

    if isinstance(first, ArrayType) and isinstance(second, ArrayType):
        return is_type_compatible(first.element_type, second.element_type)

    if isinstance(first, TupleType) and isinstance(second, TupleType):
        # Subset test: every element of first must match some element of second.
        return all(
            any(is_type_compatible(a, b) for b in second.elements)
            for a in first.elements
        )

    if isinstance(first, ObjectType) and isinstance(second, ObjectType):
        first_required = first.required_keys()
        second_required = second.required_keys()
        for key, second_prop in second.properties.items():
            first_prop = first.properties.get(key)
            if first_prop is None:
                if key in second_required:
                    return False
                continue
            if not is_type_compatible(first_prop, second_prop):
                return False
        return all(key in second.properties for key in first_required)

    if isinstance(first, DictionaryType) and isinstance(second, DictionaryType):
        return is_type_compatible(first.element_type, second.element_type)

    if isinstance(first, UnionType) and isinstance(second, UnionType):
        if len(first.types) != len(second.types):
            return False
        return (
            all(any(is_type_compatible(a, b) for b in second.types) for a in first.types)
            and all(any(is_type_compatible(a, b) for a in first.types) for b in second.types)
        )
    if isinstance(second, UnionType):
        return any(is_type_compatible(first, t) for t in second.types)

    if isinstance(first, ReferenceType) and isinstance(second, ReferenceType):
        return is_type_compatible(first.data_type, second.data_type)
    if isinstance(first, ReferenceType):
        return is_type_compatible(first.data_type, second)
    if isinstance(second, ReferenceType):
        return is_type_compatible(first, second.data_type)

    if isinstance(first, InstanceType) and isinstance(second, InstanceType):
        return first.class_name == second.class_name

    return first.kind == second.kind


def resolve_union_type(types: List[Optional[DataType]], force_union: bool = False,
                       active_index: Optional[int] = None) -> DataType:
    """Flatten, dedupe and collapse a list of types into a single type."""
    flattened: List[DataType] = []
    for t in types:
        if t is None:
            continue
        if isinstance(t, UnionType):
            flattened.extend(t.types)
        else:
            flattened.append(t)

    unique: List[DataType] = []
    for t in flattened:
        if not any(is_type_compatible(u, t) and is_type_compatible(t, u) for u in unique):
            unique.append(t)

    if not unique:
        return NeverType()
    if len(unique) == 1 and not force_union:
        return unique[0]
    return UnionType(tuple(unique), active_index if active_index is not None else 0)


def with_undefined(t: DataType) -> DataType:
    """Widen a type to also accept `undefined` (optional parameters)."""
    return resolve_union_type([t, UndefinedType()])


# =================================================================
# Signatures
# =================================================================

def get_type_signature(t: DataType, max_depth: int = 5) -> str:
    """Human readable structural signature, truncated at `max_depth`."""
    if max_depth <= 0:
        return "..."
    match t:
        case ErrorType(error_type=error_type):
            return ERROR_TYPE_NAMES.get(error_type, "Unknown Error")
        case ArrayType(element_type=element_type):
            return f"array<{get_type_signature(element_type, max_depth - 1)}>"
        case TupleType(elements=elements):
            return "[" + ", ".join(get_type_signature(e, max_depth - 1) for e in elements) + "]"
        case ObjectType():
            max_entries = 3
            entries = list(t.properties.items())
            required = t.required_keys()
            props = ", ".join(
                f"{key}{'' if key in required else '?'}: {get_type_signature(value, max_depth - 1)}"
                for key, value in entries[:max_entries]
            )
            more = ", ..." if len(entries) > max_entries else ""
            return f"{{ {props}{more} }}"
        case DictionaryType(element_type=element_type):
            return f"dictionary<{get_type_signature(element_type, max_depth - 1)}>"
        case UnionType(types=types):
            resolved = resolve_union_type(list(types), True)
            return " | ".join(get_type_signature(m, max_depth - 1) for m in resolved.types)
        case OperationType(parameters=parameters, result=result):
            params = ", ".join(
                f"{p.name or '_'}{'?' if p.is_optional else ''}: {get_type_signature(p.type, max_depth - 1)}"
                for p in parameters
            )
            return f"({params}) => {get_type_signature(result, max_depth - 1)}"
        case ConditionType(result=result):
            return get_type_signature(result, max_depth - 1)
        case ReferenceType(data_type=data_type):
            return get_type_signature(data_type, max_depth - 1)
        case InstanceType(class_name=class_name):
            return class_name
        case _:
            return t.kind or "unknown"


# =================================================================
# Plain-dict conversion (used by the serializer)
# =================================================================

def type_to_dict(t: DataType) -> Dict[str, Any]:
    match t:
        case ArrayType(element_type=e) | DictionaryType(element_type=e):
            return {"kind": t.kind, "elementType": type_to_dict(e)}
        case TupleType(elements=elements):
            return {"kind": "tuple", "elements": [type_to_dict(e) for e in elements]}
        case ObjectType():
            out: Dict[str, Any] = {
                "kind": "object",
                "properties": {"_map_": [[k, type_to_dict(v)] for k, v in t.properties.items()]},
            }
            if t.required is not None:
                out["required"] = list(t.required)
            return out
        case UnionType(types=types, active_index=active_index):
            out = {"kind": "union", "types": [type_to_dict(m) for m in types]}
            if active_index is not None:
                out["activeIndex"] = active_index
            return out
        case OperationType(parameters=parameters, result=result):
            params = []
            for p in parameters:
                entry: Dict[str, Any] = {"type": type_to_dict(p.type)}
                if p.name is not None:
                    entry["name"] = p.name
                if p.is_optional:
                    entry["isOptional"] = True
                params.append(entry)
            return {"kind": "operation", "parameters": params, "result": type_to_dict(result)}
        case ConditionType(result=result):
            return {"kind": "condition", "result": type_to_dict(result)}
        case ReferenceType(data_type=data_type):
            return {"kind": "reference", "dataType": type_to_dict(data_type)}
        case ErrorType(error_type=error_type):
            return {"kind": "error", "errorType": error_type}
        case InstanceType(class_name=class_name, constructor_args=args):
            return {"kind": "instance", "className": class_name,
                    "constructorArgs": [type_to_dict(a) for a in args]}
        case _:
            return {"kind": t.kind}


def _properties_from(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict) and "_map_" in raw:
        return {k: v for k, v in raw["_map_"]}
    return dict(raw or {})


def type_from_dict(raw: Dict[str, Any]) -> DataType:
    kind = raw.get("kind")
    if kind not in TYPE_CLASSES:
        raise ValueError(f"Unknown type kind: {kind!r}")
    match kind:
        case "array":
            return ArrayType(type_from_dict(raw["elementType"]))
        case "dictionary":
            return DictionaryType(type_from_dict(raw["elementType"]))
        case "tuple":
            return TupleType(tuple(type_from_dict(e) for e in raw.get("elements", [])))
        case "object":
            props = {k: type_from_dict(v) for k, v in _properties_from(raw.get("properties")).items()}
            required = raw.get("required")
            return ObjectType(props, tuple(required) if required is not None else None)
        case "union":
            return UnionType(tuple(type_from_dict(m) for m in raw.get("types", [])), raw.get("activeIndex"))
        case "operation":
            params = tuple(
                Parameter(type_from_dict(p["type"]), p.get("name"), bool(p.get("isOptional")))
                for p in raw.get("parameters", [])
            )
            return OperationType(params, type_from_dict(raw.get("result", {"kind": "undefined"})))
        case "condition":
            return ConditionType(type_from_dict(raw.get("result", {"kind": "undefined"})))
        case "reference":
            return ReferenceType(type_from_dict(raw.get("dataType", {"kind": "unknown"})))
        case "error":
            return ErrorType(raw.get("errorType", "custom_error"))
        case "instance":
            return InstanceType(raw.get("className", "Object"),
                                tuple(type_from_dict(a) for a in raw.get("constructorArgs", [])))
        case _:
            return TYPE_CLASSES[kind]()
