"""
Defines the runtime data model for logicflow programs.

A program is a tree of Statements. Each Statement pairs a Data node (a typed
value) with a pipeline of operation calls. Container values never hold raw
nested values: arrays, tuples, objects and dictionaries hold Statements, so
every nested element has its own id, its own cached result and its own
operation chain.

Nodes are never mutated in place. Edits build new nodes with
`dataclasses.replace`, sharing every unchanged subtree.
"""

import datetime
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from logicflow.flow_store import ExecutionStore
from logicflow.flow_types import (
    DataType, UnknownType, NeverType, UndefinedType, StringType, NumberType, BooleanType,
    ArrayType, TupleType, ObjectType, DictionaryType, UnionType, OperationType, Parameter,
    ConditionType, ReferenceType, ErrorType, InstanceType, ERROR_TYPE_NAMES,
    is_type_compatible, resolve_union_type,
)

if TYPE_CHECKING:
    from logicflow.flow_interpreter import Evaluator


def new_id() -> str:
    return uuid.uuid4().hex


# =================================================================
# Value payloads
# =================================================================

@dataclass(frozen=True)
class OperationValue:
    """A user-defined operation (with statements) or an operation call (name only)."""
    parameters: List['Statement'] = field(default_factory=list)
    statements: List['Statement'] = field(default_factory=list)
    name: Optional[str] = None


@dataclass(frozen=True)
class ConditionValue:
    condition: 'Statement'
    true: 'Statement'
    false: 'Statement'


@dataclass(frozen=True)
class ReferenceValue:
    name: str
    id: Optional[str] = None


@dataclass(frozen=True)
class ErrorValue:
    reason: str


@dataclass(frozen=True)
class InstanceValue:
    """Handle to an opaque host object stored in the ExecutionStore side table."""
    class_name: str
    constructor_args: List['Statement'] = field(default_factory=list)
    instance_id: str = field(default_factory=new_id)


# =================================================================
# Nodes
# =================================================================

@dataclass(frozen=True)
class Data:
    id: str
    type: DataType
    value: Any = None

    @property
    def kind(self) -> str:
        return self.type.kind

    def is_kind(self, *kinds: str) -> bool:
        return self.type.kind in kinds


@dataclass(frozen=True)
class Statement:
    id: str
    data: Data
    operations: List[Data] = field(default_factory=list)
    name: Optional[str] = None
    is_optional: bool = False


# =================================================================
# Context
# =================================================================

@dataclass(frozen=True)
class SkipExecution:
    """Why a sub-tree must not run: an 'unreachable' branch or a propagated 'error'."""
    reason: str
    kind: str


@dataclass
class Variable:
    data: Data
    reference: Optional[ReferenceValue] = None


@dataclass
class Context:
    """The ambient evaluation environment."""
    variables: Dict[str, Variable] = field(default_factory=dict)
    store: ExecutionStore = field(default_factory=ExecutionStore)
    evaluator: Optional['Evaluator'] = None
    expected_type: Optional[DataType] = None
    enforce_expected_type: bool = False
    narrowed_types: Optional[Dict[str, Variable]] = None
    skip_execution: Optional[SkipExecution] = None
    reserved_names: Optional[Set[Tuple[str, str]]] = None
    file_id: Optional[str] = None
    generation: Optional[int] = None

    def derive(self, **changes) -> 'Context':
        """A shallow copy with `changes` applied; variables are copied, not shared."""
        if "variables" not in changes:
            changes["variables"] = dict(self.variables)
        return replace(self, **changes)

    def get_result(self, entity_id: Optional[str]) -> Optional[Data]:
        entry = self.store.get_result(entity_id)
        return entry.data if entry is not None else None

    def set_result(self, entity_id: str, data: Data, should_cache_result: bool = False):
        self.store.set_result(entity_id, data, should_cache_result=should_cache_result,
                              generation=self.generation)


# =================================================================
# Factories
# =================================================================

def create_data(type: Optional[DataType] = None, value: Any = None, id: Optional[str] = None,
                context: Optional[Context] = None) -> Data:
    """Build a Data node; the type is inferred from the value when omitted and
    the value is defaulted from the type when omitted."""
    if type is None:
        type = infer_type_from_value(value, context or Context())
    if value is None and type.kind != "undefined":
        value = create_default_value(type)
    return Data(id=id or new_id(), type=type, value=value)


def create_statement(data: Optional[Data] = None, operations: Optional[List[Data]] = None,
                     name: Optional[str] = None, is_optional: bool = False,
                     id: Optional[str] = None) -> Statement:
    return Statement(
        id=id or new_id(),
        data=data if data is not None else create_data(),
        operations=list(operations or []),
        name=name,
        is_optional=is_optional,
    )


def create_error(error_type: str, reason: str, id: Optional[str] = None) -> Data:
    return Data(id=id or new_id(), type=ErrorType(error_type), value=ErrorValue(reason))


def create_runtime_error(error: Any) -> Data:
    reason = str(error) if isinstance(error, BaseException) else f"{error}"
    if isinstance(error, BaseException) and not reason:
        reason = type(error).__name__
    return create_error("runtime_error", reason)


def create_variable_name(prefix: str, prev: List[Any], index_offset: int = 0) -> str:
    """Next free name like `param`, `param1`, `param2` given the existing names."""
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)?$")
    index = index_offset
    for item in prev:
        name = item if isinstance(item, str) else getattr(item, "name", None)
        if not name:
            continue
        m = pattern.match(name)
        if not m:
            continue
        index = max(index, int(m.group(1)) + 1) if m.group(1) else max(index, 1)
    return f"{prefix}{index or ''}"


def _statement_from_type(t: DataType, name: Optional[str] = None, is_optional: bool = False) -> Statement:
    return create_statement(data=create_data(type=t, value=create_default_value(t)),
                            name=name, is_optional=is_optional)


def create_default_value(t: DataType, include_optional_properties: bool = False) -> Any:
    """Deterministic canonical value for every type variant."""
    match t:
        case StringType():
            return ""
        case NumberType():
            return 0
        case BooleanType():
            return False
        case UnknownType() | NeverType() | UndefinedType() | ReferenceType():
            return None
        case ArrayType(element_type=element_type):
            if element_type.kind in ("unknown", "never"):
                return []
            return [_statement_from_type(element_type)]
        case TupleType(elements=elements):
            return [_statement_from_type(e) for e in elements]
        case ObjectType():
            required = t.required_keys()
            return {
                key: _statement_from_type(prop_type)
                for key, prop_type in t.properties.items()
                if key in required or include_optional_properties
            }
        case DictionaryType(element_type=element_type):
            if element_type.kind in ("unknown", "never"):
                return {}
            return {"key": _statement_from_type(element_type)}
        case UnionType(types=types, active_index=active_index):
            if not types:
                return None
            index = active_index
            if index is None:
                index = next((i for i, m in enumerate(types) if m.kind != "undefined"), 0)
            return create_default_value(types[index] if index < len(types) else types[0],
                                        include_optional_properties)
        case OperationType(parameters=parameters):
            return OperationValue(
                parameters=[_statement_from_type(p.type, p.name, p.is_optional) for p in parameters],
                statements=[],
            )
        case ConditionType():
            return ConditionValue(condition=create_statement(), true=create_statement(),
                                  false=create_statement())
        case ErrorType(error_type=error_type):
            return ErrorValue(ERROR_TYPE_NAMES.get(error_type, "Unknown Error"))
        case InstanceType(class_name=class_name, constructor_args=args):
            return InstanceValue(class_name, [_statement_from_type(a) for a in args])
        case _:
            raise TypeError(f"No default value for type {t!r}")


def create_param_data(param: Parameter) -> Data:
    """Default data for a parameter slot; callbacks get their required params pre-named."""
    if not isinstance(param.type, OperationType):
        return create_data(type=UndefinedType() if param.type.kind == "unknown" else param.type)
    parameters: List[Statement] = []
    for spec in param.type.parameters:
        if spec.is_optional:
            continue
        parameters.append(create_statement(
            name=spec.name or create_variable_name("param", parameters),
            data=create_param_data(Parameter(spec.type)),
            is_optional=spec.is_optional,
        ))
    return create_data(
        type=OperationType(param.type.parameters, UndefinedType()),
        value=OperationValue(parameters=parameters, statements=[]),
    )


# =================================================================
# Inference and resolution
# =================================================================

def get_array_element_type(elements: List[Statement], context: Context) -> DataType:
    if not elements:
        return UnknownType()
    element_types = [get_statement_result(e, context).type for e in elements]
    first = element_types[0]
    if all(is_type_compatible(t, first) for t in element_types):
        return first
    unique: List[DataType] = []
    for t in element_types:
        if not any(is_type_compatible(u, t) for u in unique):
            unique.append(t)
    return resolve_union_type(unique)


def get_operation_result_type(statements: List[Statement], context: Context) -> DataType:
    if not statements:
        return UndefinedType()
    return get_statement_result(statements[-1], context).type


def infer_type_from_value(value: Any, context: Context) -> DataType:
    """Structural inference from a raw value, using children's cached results."""
    if value is None:
        return UndefinedType()
    # bool is a subclass of int, so check it before numbers
    if isinstance(value, bool):
        return BooleanType()
    if isinstance(value, str):
        return StringType()
    if isinstance(value, (int, float)):
        return NumberType()
    if isinstance(value, list):
        if isinstance(context.expected_type, TupleType):
            return TupleType(tuple(get_statement_result(e, context).type for e in value))
        return ArrayType(get_array_element_type(value, context))
    if isinstance(value, dict):
        if isinstance(context.expected_type, ObjectType):
            return ObjectType(
                {k: get_statement_result(s, context).type for k, s in value.items()},
                context.expected_type.required or (),
            )
        return DictionaryType(get_array_element_type(list(value.values()), context))
    if isinstance(value, OperationValue):
        return OperationType(
            tuple(Parameter(p.data.type, p.name, p.is_optional) for p in value.parameters),
            get_operation_result_type(value.statements, context),
        )
    if isinstance(value, ConditionValue):
        true_type = get_statement_result(value.true, context).type
        false_type = get_statement_result(value.false, context).type
        types = [true_type] if is_type_compatible(true_type, false_type) else [true_type, false_type]
        return ConditionType(resolve_union_type(types))
    if isinstance(value, ReferenceValue):
        variable = context.variables.get(value.name)
        return ReferenceType(variable.data.type if variable else UnknownType())
    if isinstance(value, ErrorValue):
        return ErrorType("custom_error")
    if isinstance(value, InstanceValue):
        return InstanceType(value.class_name)
    return UnknownType()


def get_union_active_type(union: UnionType, value: Any, context: Context) -> DataType:
    if union.active_index is not None and union.types:
        if 0 <= union.active_index < len(union.types):
            return union.types[union.active_index]
        return union.types[0]
    inferred = infer_type_from_value(value, context)
    for t in union.types:
        if is_type_compatible(inferred, t):
            return t
    return union.types[0] if union.types else NeverType()


def resolve_reference(data: Data, context: Context) -> Data:
    """Chase references through the variable table; containers resolve their children."""
    if isinstance(data.type, ReferenceType):
        variable = context.variables.get(data.value.name)
        if variable is None:
            return create_error("reference_error", f"'{data.value.name}' not found", id=data.id)
        return resolve_reference(variable.data, context)
    if data.is_kind("array", "tuple"):
        return replace(data, value=[replace(s, data=resolve_reference(s.data, context)) for s in data.value])
    if data.is_kind("object", "dictionary"):
        return replace(data, value={k: replace(s, data=resolve_reference(s.data, context))
                                    for k, s in data.value.items()})
    return data


def get_statement_result(statement: Statement, context: Context, index: Optional[int] = None,
                         prev_entity: bool = False) -> Data:
    """The cached result of a statement (or of the stage before operation `index`)."""
    result = statement.data
    if result.is_kind("error"):
        return replace(result, id=statement.id)
    last_operation = statement.operations[-1] if statement.operations else None
    if index:
        cached = context.get_result(statement.operations[index - 1].id) if index <= len(statement.operations) else None
        result = cached if cached is not None else create_data()
    elif not prev_entity and last_operation is not None:
        cached = context.get_result(last_operation.id)
        result = cached if cached is not None else create_data()
    elif result.is_kind("condition"):
        cached = context.get_result(result.id)
        result = cached if cached is not None else get_condition_result(result.value, context)
    return replace(result, id=statement.id)


def get_condition_result(condition: ConditionValue, context: Context) -> Data:
    condition_result = get_statement_result(condition.condition, context)
    chosen = condition.true if condition_result.value else condition.false
    return get_statement_result(chosen, context)


def create_context_variables(statements: List[Statement], context: Context,
                             operation: Optional[Data] = None,
                             result_of: Optional[Callable[[Statement, Context], Optional[Data]]] = None,
                             ) -> Dict[str, Variable]:
    """
    Bind every named statement's result, in order, over the context's
    variables. `result_of` replaces the cached-result lookup where it knows
    better; returning None falls back to the cache.
    """
    variables = dict(context.variables)
    lookup = context.derive(variables=variables)
    for statement in statements:
        if not statement.name:
            continue
        data = resolve_reference(statement.data, lookup)
        result = result_of(statement, lookup) if result_of is not None else None
        if result is None:
            result = get_statement_result(replace(statement, data=data), lookup)
        if operation is not None and any(
            p.name == statement.name and p.is_optional for p in operation.type.parameters
        ):
            result = replace(result, type=resolve_union_type([result.type, UndefinedType()]))
        variables[statement.name] = Variable(
            data=replace(result, id=statement.id),
            reference=statement.data.value if statement.data.is_kind("reference") else None,
        )
    return variables


# =================================================================
# Raw value bridge
# =================================================================

def get_raw_value(data: Data, context: Context) -> Any:
    """Convert typed data into a plain Python value."""
    match data.type.kind:
        case "never" | "undefined" | "string" | "number" | "boolean" | "unknown":
            return data.value
        case "error":
            return data.value
        case "array" | "tuple":
            return [get_raw_value(get_statement_result(s, context), context) for s in data.value]
        case "object" | "dictionary":
            return {k: get_raw_value(get_statement_result(s, context), context) for k, s in data.value.items()}
        case "union":
            active = get_union_active_type(data.type, data.value, context)
            return get_raw_value(Data(data.id, active, data.value), context)
        case "operation" | "condition":
            return data.type
        case "reference":
            return get_raw_value(resolve_reference(data, context), context)
        case "instance":
            return context.store.get_instance(data.value.instance_id)
        case _:
            return None


def create_data_from_raw_value(raw: Any, context: Context) -> Data:
    """Convert a plain Python value (e.g. a decoded JSON body) into typed data."""
    if isinstance(raw, Data):
        return raw
    if isinstance(raw, BaseException):
        return create_runtime_error(raw)
    if raw is None or isinstance(raw, (bool, str, int, float)):
        return create_data(type=infer_type_from_value(raw, context), value=raw)
    if isinstance(raw, (list, tuple)):
        items = [create_statement(data=create_data_from_raw_value(v, context)) for v in raw]
        element_type = resolve_union_type([s.data.type for s in items]) if items else UnknownType()
        return Data(new_id(), ArrayType(element_type), items)
    if isinstance(raw, dict):
        entries = {str(k): create_statement(data=create_data_from_raw_value(v, context)) for k, v in raw.items()}
        element_type = resolve_union_type([s.data.type for s in entries.values()]) if entries else UnknownType()
        return Data(new_id(), DictionaryType(element_type), entries)
    class_name = "Date" if isinstance(raw, datetime.datetime) else type(raw).__name__
    value = InstanceValue(class_name)
    context.store.set_instance(value.instance_id, raw)
    return Data(new_id(), InstanceType(class_name), value)


# =================================================================
# Project files
# =================================================================

FILE_TYPES = ("operation", "globals", "documentation", "json")


@dataclass(frozen=True)
class ProjectFile:
    """A file of a project. Operation files hold `{"type": OperationType, "value": OperationValue}`."""
    id: str
    name: str
    type: str
    content: Any
    created_at: float = field(default_factory=time.time)
    updated_at: Optional[float] = None
    tags: Optional[List[str]] = None
    documentation: Optional[str] = None


def create_project_file(name: Optional[str] = None, type: str = "operation", content: Any = None,
                        prev: Optional[List[Any]] = None, tags: Optional[List[str]] = None) -> ProjectFile:
    if type not in FILE_TYPES:
        raise ValueError(f"Unknown file type: {type!r}")
    if content is None:
        match type:
            case "operation":
                op_type = OperationType((), UndefinedType())
                content = {"type": op_type, "value": create_default_value(op_type)}
            case "globals" | "json":
                content = {}
            case "documentation":
                content = ""
    return ProjectFile(
        id=new_id(),
        name=name if name is not None else create_variable_name("operation", prev or [], index_offset=1),
        type=type,
        content=content,
        tags=tags,
    )


def create_operation_from_file(file: Optional[ProjectFile]) -> Optional[Data]:
    if file is None or file.type != "operation":
        return None
    return Data(
        id=file.id,
        type=file.content["type"],
        value=replace(file.content["value"], name=file.name),
    )


def create_file_from_operation(operation: Data, base: Optional[ProjectFile] = None) -> ProjectFile:
    content = {"type": operation.type, "value": operation.value}
    if base is not None:
        return replace(base, name=operation.value.name or base.name, content=content)
    return ProjectFile(id=operation.id, name=operation.value.name or "operation",
                       type="operation", content=content)


def create_file_variables(files: List[ProjectFile], current_operation_id: Optional[str] = None) -> Dict[str, Variable]:
    """Every other operation file, exposed as a variable by its file name."""
    variables: Dict[str, Variable] = {}
    for file in files or []:
        operation = create_operation_from_file(file)
        if operation is None or file.id == current_operation_id:
            continue
        variables[file.name] = Variable(data=operation)
    return variables
