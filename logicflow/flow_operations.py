"""
The built-in operation registry.

Each built-in is an OperationListItem: a name, a parameter signature (a list,
or a callable of the receiver's current data), and exactly one of

  - `handler(context, data, *params)`: parameters are evaluated first,
  - `lazy_handler(context, data, *statements)`: parameters arrive unevaluated
    and the handler decides if and when to run them,
  - `statements`: a user-defined operation body.

Families are flat tables; adding a built-in is adding an entry.
"""
import asyncio
import json
import math
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional, Union

import pystache

from logicflow.flow_types import (
    DataType, UnknownType, UndefinedType, StringType, NumberType, BooleanType,
    ArrayType, TupleType, ObjectType, DictionaryType, UnionType, OperationType, Parameter,
    is_type_compatible, resolve_union_type,
)
from logicflow.flow_datatypes import (
    Context, Data, Statement,
    create_data, create_statement, create_error, create_runtime_error,
    create_data_from_raw_value, get_raw_value, get_statement_result, get_union_active_type, new_id,
    resolve_reference,
)
from logicflow.flow_narrowing import update_context_with_narrowed_types

Parameters = Union[List[Parameter], Callable[[Data], List[Parameter]]]


@dataclass
class OperationListItem:
    name: str
    parameters: Parameters
    handler: Optional[Callable[..., Union[Data, Awaitable[Data]]]] = None
    lazy_handler: Optional[Callable[..., Union[Data, Awaitable[Data]]]] = None
    statements: Optional[List[Statement]] = None
    should_cache_result: bool = False
    # A type, or result(data, param_types) -> type, known without running the handler
    result: Union[DataType, Callable[[Data, List[DataType]], DataType], None] = None

    def __repr__(self) -> str:
        mode = "lazy" if self.lazy_handler else "eager" if self.handler else "statements"
        return f"<OperationListItem {self.name!r} {mode}>"


def operation_result_type(item: OperationListItem, data: Data, param_types: List[DataType],
                          context: Context) -> DataType:
    """The type `item` produces for this receiver and these parameter types; unknown when undeclared."""
    if item.result is None:
        return UnknownType()
    if isinstance(item.result, DataType):
        return item.result
    return item.result(resolve_reference(data, context), param_types)


def resolve_parameters(item: OperationListItem, data: Data, context: Context) -> List[Parameter]:
    """The item's signature for this receiver; optional params also accept undefined."""
    data = resolve_reference(data, context)
    params = item.parameters(data) if callable(item.parameters) else item.parameters
    return [
        replace(p, type=resolve_union_type([p.type, UndefinedType()])) if p.is_optional else p
        for p in params
    ]


def operation_to_list_item(operation: Data, name: Optional[str] = None) -> OperationListItem:
    """Expose a user-defined operation value as a registry entry."""
    return OperationListItem(
        name=name or operation.value.name or "",
        parameters=list(operation.type.parameters),
        statements=list(operation.value.statements),
        result=operation.type.result,
    )


def _bool(value: bool) -> Data:
    return create_data(type=BooleanType(), value=bool(value))


def _num(value: Any) -> Data:
    return create_data(type=NumberType(), value=value)


def _str(value: str) -> Data:
    return create_data(type=StringType(), value=value)


def _copy(data: Data) -> Data:
    return Data(new_id(), data.type, data.value)


def _strings(values: List[str]) -> Data:
    return create_data(type=ArrayType(StringType()), value=[create_statement(data=_str(v)) for v in values])


def _execute(context: Context):
    if context.evaluator is None:
        raise RuntimeError("Operation requires an evaluator in its context")
    return context.evaluator


def _element_type(data: Data) -> DataType:
    match data.type:
        case ArrayType(element_type=element_type) | DictionaryType(element_type=element_type):
            return element_type
        case ObjectType(properties=properties) if properties:
            return resolve_union_type(list(properties.values()))
    return UnknownType()


def _item_or_undefined(data: Data, _param_types=None) -> DataType:
    return resolve_union_type([_element_type(data), UndefinedType()])


def _same_type(data: Data, _param_types=None) -> DataType:
    return data.type


# =================================================================
# Unknown (any receiver)
# =================================================================

def _is_equal(context, data, other):
    return _bool(get_raw_value(data, context) == get_raw_value(other, context))


def _to_string(context, data):
    return _str(json.dumps(get_raw_value(data, context), default=str, ensure_ascii=False))


UNKNOWN_OPERATIONS = [
    OperationListItem("isEqual", lambda data: [Parameter(UnknownType()), Parameter(data.type)], _is_equal,
                      result=BooleanType()),
    OperationListItem("toString", [Parameter(UnknownType())], _to_string, result=StringType()),
]


# =================================================================
# Union
# =================================================================

def _is_type_of(context, data, type_data):
    data_type = get_union_active_type(data.type, data.value, context) if isinstance(data.type, UnionType) else data.type
    target = (get_union_active_type(type_data.type, type_data.value, context)
              if isinstance(type_data.type, UnionType) else type_data.type)
    return _bool(is_type_compatible(data_type, target))


UNION_OPERATIONS = [
    OperationListItem(
        "isTypeOf",
        lambda data: [
            Parameter(UnionType(data.type.types if isinstance(data.type, UnionType) else ())),
            Parameter(data.type),
        ],
        _is_type_of,
        result=BooleanType(),
    ),
]


# =================================================================
# Boolean
# =================================================================

async def _and(context, data, true_statement):
    if not data.value:
        return _bool(False)
    branch = update_context_with_narrowed_types(context, data, "and", 0)
    result = await _execute(context).execute_statement(true_statement, branch)
    if result.is_kind("error"):
        return result
    return _bool(result.value)


async def _or(context, data, false_statement):
    if data.value:
        return _bool(True)
    # Runs only after the check failed, so the variables keep their un-narrowed types
    branch = update_context_with_narrowed_types(context, data, "or", 0)
    result = await _execute(context).execute_statement(false_statement, branch)
    if result.is_kind("error"):
        return result
    return _bool(result.value)


def _not(context, data):
    return _bool(not data.value)


async def _then_else(context, data, true_branch, false_branch=None):
    evaluator = _execute(context)
    true_result = await evaluator.execute_statement(
        true_branch, update_context_with_narrowed_types(context, data, "thenElse", 0))
    if false_branch is not None:
        false_result = await evaluator.execute_statement(
            false_branch, update_context_with_narrowed_types(context, data, "thenElse", 1))
    else:
        false_result = create_data(type=UndefinedType())
    result_type = resolve_union_type([true_result.type, false_result.type])
    selected = false_result if not data.value else true_result
    if selected.is_kind("error"):
        return selected
    if isinstance(result_type, UnionType):
        active = next((i for i, t in enumerate(result_type.types) if is_type_compatible(selected.type, t)), 0)
        result_type = replace(result_type, active_index=active)
    return Data(new_id(), result_type, selected.value)


def _then_else_result(_data, param_types):
    branches = list(param_types[:2])
    if len(branches) < 2:
        branches.append(UndefinedType())
    return resolve_union_type(branches)


BOOLEAN_OPERATIONS = [
    OperationListItem("and", [Parameter(BooleanType()), Parameter(UnknownType())], lazy_handler=_and,
                      result=BooleanType()),
    OperationListItem("or", [Parameter(BooleanType()), Parameter(UnknownType())], lazy_handler=_or,
                      result=BooleanType()),
    OperationListItem("not", [Parameter(BooleanType())], _not, result=BooleanType()),
    OperationListItem(
        "thenElse",
        [Parameter(BooleanType()), Parameter(UnknownType()), Parameter(UnknownType(), is_optional=True)],
        lazy_handler=_then_else,
        result=_then_else_result,
    ),
]


# =================================================================
# String
# =================================================================

def _locale_compare(a: str, b: str) -> int:
    ka, kb = (a.casefold(), a), (b.casefold(), b)
    return (ka > kb) - (ka < kb)


def _render(context, data, values):
    raw = get_raw_value(values, context) or {}
    # No HTML escaping: templates render plain text
    renderer = pystache.Renderer(escape=lambda u: u)
    return _str(renderer.render(data.value, raw))


STRING_OPERATIONS = [
    OperationListItem("getLength", [Parameter(StringType())],
                      lambda _, data: _num(len(data.value)), result=NumberType()),
    OperationListItem("concat", [Parameter(StringType()), Parameter(StringType())],
                      lambda _, data, p1: _str(data.value + p1.value), result=StringType()),
    OperationListItem("includes", [Parameter(StringType()), Parameter(StringType())],
                      lambda _, data, p1: _bool(p1.value in data.value), result=BooleanType()),
    OperationListItem("slice", [Parameter(StringType()), Parameter(NumberType()), Parameter(NumberType())],
                      lambda _, data, p1, p2: _str(data.value[int(p1.value):int(p2.value)]),
                      result=StringType()),
    OperationListItem("split", [Parameter(StringType()), Parameter(StringType())],
                      lambda _, data, p1: _strings(data.value.split(p1.value) if p1.value else list(data.value)),
                      result=ArrayType(StringType())),
    OperationListItem("toUpperCase", [Parameter(StringType())],
                      lambda _, data: _str(data.value.upper()), result=StringType()),
    OperationListItem("toLowerCase", [Parameter(StringType())],
                      lambda _, data: _str(data.value.lower()), result=StringType()),
    OperationListItem("localeCompare", [Parameter(StringType()), Parameter(StringType())],
                      lambda _, data, p1: _num(_locale_compare(data.value, p1.value)), result=NumberType()),
    OperationListItem("render", [Parameter(StringType()), Parameter(DictionaryType(UnknownType()))], _render,
                      result=StringType()),
]


# =================================================================
# Number
# =================================================================

def _divide(_, data, p1):
    if p1.value == 0:
        return create_error("runtime_error", "Division by zero")
    return _num(data.value / p1.value)


def _mod(_, data, p1):
    if p1.value == 0:
        return create_error("runtime_error", "Modulo by zero")
    # Remainder takes the sign of the dividend.
    return _num(math.fmod(data.value, p1.value) if isinstance(data.value, float) or isinstance(p1.value, float)
                else int(math.copysign(abs(data.value) % abs(p1.value), data.value)))


def _to_range(_, data, p1):
    reverse = data.value > p1.value
    start, end = (p1.value, data.value) if reverse else (data.value, p1.value)
    count = max(int(end - start), 0)
    values = [end - i if reverse else start + i for i in range(count)]
    return create_data(type=ArrayType(NumberType()), value=[create_statement(data=_num(v)) for v in values])


def _binary(name, fn, result=NumberType()):
    return OperationListItem(name, [Parameter(NumberType()), Parameter(NumberType())], fn, result=result)


NUMBER_OPERATIONS = [
    _binary("add", lambda _, a, b: _num(a.value + b.value)),
    _binary("subtract", lambda _, a, b: _num(a.value - b.value)),
    _binary("multiply", lambda _, a, b: _num(a.value * b.value)),
    _binary("divide", _divide),
    _binary("power", lambda _, a, b: _num(a.value ** b.value)),
    _binary("mod", _mod),
    _binary("lessThan", lambda _, a, b: _bool(a.value < b.value), BooleanType()),
    _binary("lessThanOrEqual", lambda _, a, b: _bool(a.value <= b.value), BooleanType()),
    _binary("greaterThan", lambda _, a, b: _bool(a.value > b.value), BooleanType()),
    _binary("greaterThanOrEqual", lambda _, a, b: _bool(a.value >= b.value), BooleanType()),
    _binary("toRange", _to_range, ArrayType(NumberType())),
]


# =================================================================
# Tuple / Array
# =================================================================

def _array_callback_parameters(data: Data) -> List[Parameter]:
    element_type = data.type.element_type if isinstance(data.type, ArrayType) else UndefinedType()
    return [
        Parameter(ArrayType(UnknownType())),
        Parameter(OperationType(
            (
                Parameter(element_type, "item"),
                Parameter(NumberType(), "index", is_optional=True),
                Parameter(ArrayType(element_type), "arr", is_optional=True),
            ),
            UnknownType(),
        )),
    ]


async def execute_array_operation(data: Data, operation: Data, context: Context) -> List[Data]:
    """Run a callback once per element, all elements at once; failures become runtime errors."""
    evaluator = _execute(context)
    item_op = operation_to_list_item(replace(
        operation,
        type=replace(operation.type, parameters=(Parameter(data.type.element_type),) + tuple(operation.type.parameters)),
    ))

    def _call(index: int, item: Statement):
        item_data = get_statement_result(item, context)
        return evaluator.execute_operation(item_op, data, [
            create_statement(data=_copy(item_data), is_optional=True),
            create_statement(data=_num(index), is_optional=True),
            create_statement(data=data),
        ], context)

    settled = await asyncio.gather(*(_call(i, item) for i, item in enumerate(data.value)),
                                   return_exceptions=True)
    return [create_runtime_error(r) if isinstance(r, BaseException) else r for r in settled]


async def _map(context, data, operation):
    results = await execute_array_operation(data, operation, context)
    return create_data(
        type=ArrayType(resolve_union_type([r.type for r in results]) if results else UnknownType()),
        value=[create_statement(data=r) for r in results],
    )


async def _find(context, data, operation):
    results = await execute_array_operation(data, operation, context)
    for item, result in zip(data.value, results):
        if result.value and not result.is_kind("error"):
            found = get_statement_result(item, context)
            return _copy(found)
    return create_data(type=UndefinedType())


async def _filter(context, data, operation):
    results = await execute_array_operation(data, operation, context)
    kept = [item for item, result in zip(data.value, results)
            if result.value and not result.is_kind("error")]
    return create_data(type=data.type, value=kept)


async def async_merge_sort(items: List[Any], compare: Callable[[Any, Any], Awaitable[float]]) -> List[Any]:
    """Stable merge sort whose comparator is awaited one call at a time."""
    if len(items) <= 1:
        return list(items)
    mid = len(items) // 2
    left = await async_merge_sort(items[:mid], compare)
    right = await async_merge_sort(items[mid:], compare)
    merged: List[Any] = []
    l = r = 0
    while l < len(left) and r < len(right):
        if await compare(left[l], right[r]) <= 0:
            merged.append(left[l])
            l += 1
        else:
            merged.append(right[r])
            r += 1
    return merged + left[l:] + right[r:]


async def _sort(context, data, operation):
    evaluator = _execute(context)
    comparator = operation_to_list_item(operation)

    async def compare(a: Statement, b: Statement) -> float:
        result = await evaluator.execute_operation(comparator, get_statement_result(a, context), [b], context)
        try:
            return float(result.value or 0)
        except (TypeError, ValueError):
            return 0

    return create_data(type=data.type, value=await async_merge_sort(list(data.value), compare))


def _sort_parameters(data: Data) -> List[Parameter]:
    params = ()
    if isinstance(data.type, ArrayType):
        params = (Parameter(data.type.element_type, "first"), Parameter(data.type.element_type, "second"))
    return [Parameter(ArrayType(UnknownType())), Parameter(OperationType(params, UnknownType()))]


def _get_item(context, data, index):
    try:
        item = data.value[int(index.value)]
    except (IndexError, TypeError, ValueError):
        return create_data(type=UndefinedType())
    value = get_statement_result(item, context)
    return _copy(value)


def _join(context, data, separator):
    parts = []
    for item in data.value:
        value = get_statement_result(item, context).value
        parts.append("" if value is None else str(value).lower() if isinstance(value, bool) else str(value))
    return _str(separator.value.join(parts))


def _sequence_operations(receiver: Parameter) -> List[OperationListItem]:
    return [
        OperationListItem("get", [receiver, Parameter(NumberType())], _get_item, result=_item_or_undefined),
        OperationListItem("getLength", [receiver], lambda _, data: _num(len(data.value)), result=NumberType()),
        OperationListItem("join", [receiver, Parameter(StringType())], _join, result=StringType()),
    ]


def _array_concat(_, data, other):
    return create_data(
        type=ArrayType(resolve_union_type([data.type.element_type, other.type.element_type])),
        value=list(data.value) + list(other.value),
    )


def _concat_result(data, param_types):
    other = param_types[0] if param_types else UnknownType()
    other_element = other.element_type if isinstance(other, ArrayType) else UnknownType()
    return ArrayType(resolve_union_type([_element_type(data), other_element]))


def _map_result(_data, param_types):
    callback = param_types[0] if param_types else UnknownType()
    return ArrayType(callback.result if isinstance(callback, OperationType) else UnknownType())


TUPLE_OPERATIONS = _sequence_operations(Parameter(TupleType()))

ARRAY_OPERATIONS = _sequence_operations(Parameter(ArrayType(UnknownType()))) + [
    OperationListItem("concat", [Parameter(ArrayType(UnknownType())), Parameter(ArrayType(UnknownType()))],
                      _array_concat, result=_concat_result),
    OperationListItem("map", _array_callback_parameters, _map, result=_map_result),
    OperationListItem("find", _array_callback_parameters, _find, result=_item_or_undefined),
    OperationListItem("filter", _array_callback_parameters, _filter, result=_same_type),
    OperationListItem("sort", _sort_parameters, _sort, result=_same_type),
]


# =================================================================
# Object / Dictionary
# =================================================================

def _get_entry(context, data, key):
    item = data.value.get(key.value)
    if item is None:
        return create_data(type=UndefinedType())
    value = get_statement_result(item, context)
    return _copy(value)


def _values(context, data):
    if isinstance(data.type, ObjectType):
        element_type = resolve_union_type(list(data.type.properties.values()))
    else:
        element_type = data.type.element_type
    items = []
    for item in data.value.values():
        result = get_statement_result(item, context)
        items.append(create_statement(data=_copy(result)))
    return create_data(type=ArrayType(element_type), value=items)


def _entries(context, data):
    pairs = []
    value_types: List[DataType] = []
    for key, item in data.value.items():
        result = get_statement_result(item, context)
        value_types.append(result.type)
        pairs.append(create_statement(data=create_data(
            type=TupleType((StringType(), result.type)),
            value=[create_statement(data=_str(key)), create_statement(data=result)],
        )))
    return create_data(type=ArrayType(TupleType((StringType(), resolve_union_type(value_types)))), value=pairs)


def _mapping_operations(receiver: Parameter) -> List[OperationListItem]:
    return [
        OperationListItem("get", [receiver, Parameter(StringType())], _get_entry, result=_item_or_undefined),
        OperationListItem("has", [receiver, Parameter(StringType())],
                          lambda _, data, key: _bool(key.value in data.value), result=BooleanType()),
        OperationListItem("keys", [receiver], lambda _, data: _strings(list(data.value.keys())),
                          result=ArrayType(StringType())),
        OperationListItem("values", [receiver], _values, result=lambda data, _: ArrayType(_element_type(data))),
        OperationListItem("entries", [receiver], _entries,
                          result=lambda data, _: ArrayType(TupleType((StringType(), _element_type(data))))),
    ]


def _merged(_, data, other):
    return create_data(
        type=DictionaryType(resolve_union_type([data.type.element_type, other.type.element_type])),
        value={**data.value, **other.value},
    )


def _merged_result(data, param_types):
    other = param_types[0] if param_types else UnknownType()
    other_element = other.element_type if isinstance(other, DictionaryType) else UnknownType()
    return DictionaryType(resolve_union_type([_element_type(data), other_element]))


OBJECT_OPERATIONS = _mapping_operations(Parameter(ObjectType()))

DICTIONARY_OPERATIONS = _mapping_operations(Parameter(DictionaryType(UnknownType()))) + [
    OperationListItem("merged", [Parameter(DictionaryType(UnknownType())), Parameter(DictionaryType(UnknownType()))],
                      _merged, result=_merged_result),
]


# =================================================================
# Operation
# =================================================================

def _call_parameters(data: Data) -> List[Parameter]:
    params = tuple(data.type.parameters) if isinstance(data.type, OperationType) else ()
    return [Parameter(OperationType(params, UnknownType()))] + list(params)


async def _call(context, data, *params):
    host_callback = context.store.get_instance(f"{data.id}-operation")
    if callable(host_callback):
        raw_args = [get_raw_value(p, context) for p in params]
        result = host_callback(*raw_args)
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            result = await result
        return create_data_from_raw_value(result, context)
    if not params:
        params = (create_data(type=UndefinedType()),)
    return await _execute(context).execute_operation(
        operation_to_list_item(data, "call"),
        params[0],
        [create_statement(data=p) for p in params[1:]],
        context,
    )


OPERATION_OPERATIONS = [
    OperationListItem("call", _call_parameters, _call,
                      result=lambda data, _: data.type.result if isinstance(data.type, OperationType) else UnknownType()),
]


def builtin_operations() -> List[OperationListItem]:
    """Every built-in, in dispatch order."""
    from logicflow.flow_instances import INSTANCE_OPERATIONS
    return (
        STRING_OPERATIONS
        + NUMBER_OPERATIONS
        + BOOLEAN_OPERATIONS
        + TUPLE_OPERATIONS
        + ARRAY_OPERATIONS
        + OBJECT_OPERATIONS
        + DICTIONARY_OPERATIONS
        + OPERATION_OPERATIONS
        + UNION_OPERATIONS
        + INSTANCE_OPERATIONS
        + UNKNOWN_OPERATIONS
    )
