import pytest

from logicflow.flow_types import (
    UnknownType, UndefinedType, StringType, NumberType, BooleanType, ArrayType, DictionaryType,
    OperationType, Parameter, ReferenceType,
)
from logicflow.flow_datatypes import (
    Context, Data, OperationValue, ReferenceValue,
    create_data, create_statement, new_id,
)
from logicflow.flow_interpreter import Evaluator
from logicflow.flow_operations import async_merge_sort, builtin_operations, operation_to_list_item


def lit(value, *operations):
    return create_statement(data=create_data(value=value), operations=list(operations))


def ref(name, *operations):
    return create_statement(data=create_data(type=ReferenceType(), value=ReferenceValue(name)),
                            operations=list(operations))


def call(name, *params):
    return Data(new_id(), OperationType((), UnknownType()), OperationValue(parameters=list(params), name=name))


def callback(param_names, *statements, param_type=NumberType()):
    params = [create_statement(data=create_data(type=param_type), name=n) for n in param_names]
    op_type = OperationType(tuple(Parameter(param_type, n) for n in param_names), UnknownType())
    return create_statement(data=create_data(type=op_type,
                                             value=OperationValue(parameters=params, statements=list(statements))))


async def run(statement, context=None):
    evaluator = Evaluator()
    return await evaluator.execute_statement(statement, context or Context(evaluator=evaluator))


def values(result):
    return [s.data.value for s in result.value]


@pytest.mark.asyncio
@pytest.mark.parametrize("statement, expected", [
    (lit("hello", call("getLength")), 5),
    (lit("hello", call("includes", lit("ell"))), True),
    (lit("hello", call("slice", lit(1), lit(3))), "el"),
    (lit("Hello", call("toUpperCase")), "HELLO"),
    (lit("Hello", call("toLowerCase")), "hello"),
    (lit("a", call("localeCompare", lit("b"))), -1),
    (lit("b", call("localeCompare", lit("a"))), 1),
    (lit("a", call("localeCompare", lit("a"))), 0),
])
async def test_string_operations(statement, expected):
    assert (await run(statement)).value == expected


@pytest.mark.asyncio
async def test_split_returns_string_array():
    result = await run(lit("a,b,c", call("split", lit(","))))
    assert result.type == ArrayType(StringType())
    assert values(result) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_render_fills_mustache_template():
    result = await run(lit("Hello {{name}}!", call("render", lit({"name": lit("Ann")}))))
    assert result.value == "Hello Ann!"

    unescaped = await run(lit("{{tag}}", call("render", lit({"tag": lit("<b>&</b>")}))))
    assert unescaped.value == "<b>&</b>"


@pytest.mark.asyncio
@pytest.mark.parametrize("op, a, b, expected", [
    ("add", 2, 3, 5),
    ("subtract", 2, 3, -1),
    ("multiply", 4, 2.5, 10),
    ("divide", 9, 3, 3),
    ("power", 2, 10, 1024),
    ("mod", 7, 3, 1),
    ("mod", -7, 3, -1),
    ("lessThan", 1, 2, True),
    ("lessThanOrEqual", 2, 2, True),
    ("greaterThan", 1, 2, False),
    ("greaterThanOrEqual", 3, 2, True),
])
async def test_number_operations(op, a, b, expected):
    assert (await run(lit(a, call(op, lit(b))))).value == expected


@pytest.mark.asyncio
async def test_to_range_ascending_excludes_end():
    assert values(await run(lit(1, call("toRange", lit(4))))) == [1, 2, 3]
    assert values(await run(lit(3, call("toRange", lit(3))))) == []


@pytest.mark.asyncio
async def test_boolean_operations():
    assert (await run(lit(True, call("not")))).value is False
    assert (await run(lit(True, call("and", lit(False))))).value is False
    assert (await run(lit(False, call("or", lit(True))))).value is True


@pytest.mark.asyncio
async def test_and_short_circuits_without_running_right_side():
    # The right side would fail with a type error if it were evaluated
    result = await run(lit(False, call("and", lit("x", call("divide", lit(1))))))
    assert result.value is False


@pytest.mark.asyncio
async def test_then_else_without_false_branch_yields_undefined():
    result = await run(lit(False, call("thenElse", lit("yes"))))
    assert result.value is None
    assert result.type.kind == "union"


@pytest.mark.asyncio
async def test_is_equal_compares_raw_values():
    assert (await run(lit("a", call("isEqual", lit("a"))))).value is True
    assert (await run(lit([lit(1)], call("isEqual", lit([lit(1)]))))).value is True
    assert (await run(lit(1, call("isEqual", lit(2))))).value is False


@pytest.mark.asyncio
async def test_to_string_uses_json():
    assert (await run(lit("a", call("toString")))).value == '"a"'
    assert (await run(lit([lit(1), lit(2)], call("toString")))).value == "[1, 2]"


@pytest.mark.asyncio
async def test_array_get_and_length():
    array = [lit(10), lit(20)]
    assert (await run(lit(array, call("get", lit(1))))).value == 20
    missing = await run(lit(array, call("get", lit(5))))
    assert missing.type == UndefinedType()
    assert (await run(lit(array, call("getLength")))).value == 2


@pytest.mark.asyncio
async def test_join_stringifies_elements():
    result = await run(lit([lit(1), lit(True), lit("x")], call("join", lit("-"))))
    assert result.value == "1-true-x"


@pytest.mark.asyncio
async def test_map_changes_element_type():
    mapper = callback(["item"], ref("item", call("greaterThan", lit(1))))
    result = await run(lit([lit(1), lit(2), lit(3)], call("map", mapper)))
    assert result.type == ArrayType(BooleanType())
    assert values(result) == [False, True, True]


@pytest.mark.asyncio
async def test_find_returns_matching_element():
    finder = callback(["item"], ref("item", call("greaterThan", lit(1))))
    result = await run(lit([lit(1), lit(5), lit(7)], call("find", finder)))
    assert result.value == 5

    none_found = callback(["item"], ref("item", call("greaterThan", lit(100))))
    assert (await run(lit([lit(1)], call("find", none_found)))).type == UndefinedType()



@pytest.mark.asyncio
async def test_failing_element_does_not_fail_the_others():
    inverse = callback(["item"], lit(1, call("divide", ref("item"))))
    result = await run(lit([lit(1), lit(0), lit(2)], call("map", inverse)))
    assert result.type.element_type.kind == "union"
    assert {t.kind for t in result.type.element_type.types} == {"number", "error"}
    first, failed, last = [s.data for s in result.value]
    assert (first.value, last.value) == (1.0, 0.5)
    assert failed.is_kind("error")
    assert failed.type.error_type == "runtime_error"
    assert failed.value.reason == "Division by zero"

    above = callback(["item"], lit(1, call("divide", ref("item")), call("greaterThan", lit(0.4))))
    kept = await run(lit([lit(1), lit(0), lit(2)], call("filter", above)))
    assert values(kept) == [1, 2]
    assert (await run(lit([lit(0), lit(2)], call("find", above)))).value == 2


@pytest.mark.asyncio
async def test_sort_with_comparator_is_stable():
    comparator = callback(["first", "second"], ref("first", call("subtract", ref("second"))))
    result = await run(lit([lit(3), lit(1), lit(2), lit(1)], call("sort", comparator)))
    assert values(result) == [1, 1, 2, 3]


@pytest.mark.asyncio
async def test_array_concat():
    result = await run(lit([lit(1)], call("concat", lit([lit("a")]))))
    assert values(result) == [1, "a"]
    assert result.type.element_type.kind == "union"


@pytest.mark.asyncio
async def test_dictionary_operations():
    entries = {"a": lit(1), "b": lit(2)}
    assert (await run(lit(entries, call("get", lit("b"))))).value == 2
    assert (await run(lit(entries, call("get", lit("z"))))).type == UndefinedType()
    assert (await run(lit(entries, call("has", lit("a"))))).value is True
    assert values(await run(lit(entries, call("keys")))) == ["a", "b"]
    assert values(await run(lit(entries, call("values")))) == [1, 2]

    pairs = await run(lit(entries, call("entries")))
    assert [[s.data.value for s in pair.data.value] for pair in pairs.value] == [["a", 1], ["b", 2]]

    merged = await run(lit(entries, call("merged", lit({"b": lit(3), "c": lit(4)}))))
    assert merged.type == DictionaryType(NumberType())
    assert {k: s.data.value for k, s in merged.value.items()} == {"a": 1, "b": 3, "c": 4}


@pytest.mark.asyncio
async def test_call_runs_user_operation():
    evaluator = Evaluator()
    context = Context(evaluator=evaluator)
    double = callback(["x"], ref("x", call("multiply", lit(2))))
    result = await evaluator.execute_statement(create_statement(data=double.data, operations=[call("call", lit(4))]),
                                               context)
    assert result.value == 8


@pytest.mark.asyncio
async def test_call_prefers_host_callback():
    evaluator = Evaluator()
    context = Context(evaluator=evaluator)
    operation = callback(["x"]).data
    context.store.set_instance(f"{operation.id}-operation", lambda x: {"doubled": x * 2})
    result = await evaluator.execute_statement(create_statement(data=operation, operations=[call("call", lit(4))]),
                                               context)
    assert result.type == DictionaryType(NumberType())
    assert result.value["doubled"].data.value == 8


@pytest.mark.asyncio
async def test_async_merge_sort_awaits_comparator():
    async def compare(a, b):
        return a - b
    assert await async_merge_sort([5, 3, 9, 1], compare) == [1, 3, 5, 9]
    assert await async_merge_sort([], compare) == []


def test_operation_to_list_item_exposes_signature():
    operation = callback(["x"], ref("x")).data
    item = operation_to_list_item(operation, "double")
    assert item.name == "double"
    assert [p.name for p in item.parameters] == ["x"]
    assert item.statements == operation.value.statements


def test_every_builtin_has_exactly_one_implementation():
    ops = builtin_operations()
    for op in ops:
        assert sum(x is not None for x in (op.handler, op.lazy_handler, op.statements)) == 1, op
    assert {"thenElse", "map", "render", "call", "getMonth"} <= {op.name for op in ops}
