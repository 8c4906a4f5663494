from dataclasses import replace

import pytest

from logicflow.flow_types import UnknownType, StringType, NumberType, ArrayType, OperationType, Parameter, ReferenceType
from logicflow.flow_datatypes import (
    Context, Data, OperationValue, ReferenceValue,
    create_data, create_statement, create_project_file, new_id,
)
from logicflow.flow_interpreter import Evaluator
from logicflow.flow_update import (
    apply_statement_change, update_files, update_operation_value, update_statement, update_statements,
)


def lit(value, *operations, name=None):
    return create_statement(data=create_data(value=value), operations=list(operations), name=name)


def ref(name, *operations, id=None):
    return create_statement(data=create_data(type=ReferenceType(), value=ReferenceValue(name, id)),
                            operations=list(operations))


def call(name, *params):
    return Data(new_id(), OperationType((), UnknownType()), OperationValue(parameters=list(params), name=name))


def operation(parameters, statements):
    op_type = OperationType(tuple(Parameter(p.data.type, p.name) for p in parameters), UnknownType())
    return create_data(type=op_type, value=OperationValue(parameters=list(parameters), statements=list(statements)))


@pytest.fixture
def context():
    return Context(evaluator=Evaluator())


@pytest.mark.asyncio
async def test_update_without_changes_returns_the_same_nodes(context):
    a = lit(1, call("add", lit(2)), name="a")
    b = ref("a", call("multiply", lit(3)), id=a.id)
    op = operation([], [a, b])
    await context.evaluator.set_operation_results(op, context)

    value = update_operation_value(op, context)
    assert value is op.value
    assert update_operation_value(replace(op, value=value), context) == op.value


def test_references_are_bound_by_name_and_then_kept(context):
    a = lit(1, name="a")
    statements = update_statements([a, ref("a")], context)
    assert statements[0] is a
    assert statements[1].data.value == ReferenceValue("a", a.id)

    again = update_statements(statements, context)
    assert again[1] is statements[1]


def test_references_follow_renames_by_id(context):
    a = lit(1, name="renamed")
    b = ref("original", id=a.id)
    updated = update_statements([a, b], context)
    assert updated[1].data.value.name == "renamed"


def test_missing_required_parameters_are_synthesized(context):
    statement = lit(5, call("add"))
    updated = update_statement(statement, context)
    params = updated.operations[0].value.parameters
    assert len(params) == 1
    assert params[0].data.type == NumberType()
    assert params[0].data.value == 0
    assert updated.operations[0].id == statement.operations[0].id


def test_incompatible_parameter_is_replaced_with_default(context):
    statement = lit(5, call("add", lit("x")))
    updated = update_statement(statement, context)
    param = updated.operations[0].value.parameters[0]
    assert param.data.type == NumberType() and param.data.value == 0


def test_callback_is_rebuilt_when_element_type_changes(context):
    numbers_callback = create_statement(data=operation([lit(0, name="item")], []))
    statement = lit([lit("a"), lit("b")], call("map", numbers_callback))
    updated = update_statement(statement, context)
    callback = updated.operations[0].value.parameters[0].data
    assert callback is not numbers_callback.data
    assert callback.value.parameters[0].name == "item"
    assert callback.value.parameters[0].data.type == StringType()


@pytest.mark.asyncio
async def test_callback_follows_element_type_through_earlier_operations(context):
    numbers_callback = create_statement(data=operation([lit(0, name="item")], [ref("item")]))
    concat, mapper = call("concat", lit([lit(3)])), call("map", numbers_callback)
    statement = lit([lit(1), lit(2)], concat, mapper)
    await context.evaluator.execute_statement(statement, context)
    assert context.get_result(concat.id).type == ArrayType(NumberType())

    strings_concat = replace(concat, value=replace(concat.value, parameters=[lit([lit("c")])]))
    changed = replace(statement, data=create_data(value=[lit("a"), lit("b")]), operations=[strings_concat, mapper])
    updated = update_statements([statement], context, changed_statement=changed)[0]

    callback = updated.operations[1].value.parameters[0].data
    assert callback.value.parameters[0].name == "item"
    assert callback.value.parameters[0].data.type == StringType()


@pytest.mark.asyncio
async def test_chained_variable_takes_the_edited_type(context):
    numbers_callback = create_statement(data=operation([lit(0, name="item")], [ref("item")]))
    concat = call("concat", lit([lit(2)]))
    items = lit([lit(1)], concat, name="items")
    mapped = ref("items", call("map", numbers_callback))
    await context.evaluator.set_operation_results(operation([], [items, mapped]), context)

    strings_concat = replace(concat, value=replace(concat.value, parameters=[lit([lit("b")])]))
    changed = replace(items, data=create_data(value=[lit("a")]), operations=[strings_concat])
    updated = update_statements([items, mapped], context, changed_statement=changed)

    assert updated[1].data.value.id == items.id
    callback = updated[1].operations[0].value.parameters[0].data
    assert callback.value.parameters[0].data.type == StringType()


@pytest.mark.asyncio
async def test_apply_statement_change_folds_result_through_the_chain(context):
    body = lit([lit(1)], call("concat", lit([lit(2)])))
    op = operation([], [body])
    await context.evaluator.set_operation_results(op, context)

    concat = body.operations[0]
    strings_concat = replace(concat, value=replace(concat.value, parameters=[lit([lit("b")])]))
    changed = apply_statement_change(op, replace(body, data=create_data(value=[lit("a")]), operations=[strings_concat]),
                                     context)
    assert changed.type.result == ArrayType(StringType())


def test_statements_before_the_change_are_untouched(context):
    first, second, third = lit(1, name="a"), lit(2, name="b"), ref("b", call("add", lit(1)))
    changed = replace(second, data=create_data(value="two"))
    updated = update_statements([first, second, third], context, changed_statement=changed)
    assert updated[0] is first
    assert updated[1].data.value == "two"
    assert updated[2].data.value.id == second.id

    removed = update_statements([first, second, third], context, changed_statement=second, remove_statement=True)
    assert [s.id for s in removed] == [first.id, third.id]


def test_apply_statement_change_reassembles_the_type(context):
    x = lit(0, name="x")
    body = ref("x", call("add", lit(1)), id=x.id)
    op = operation([x], [body])

    changed = apply_statement_change(op, replace(body, data=create_data(value="hi"), operations=[]), context)
    assert changed.value.parameters[0] is x
    assert changed.type.result == StringType()
    assert changed.type.parameters[0].name == "x"

    removed = apply_statement_change(op, body, context, remove=True)
    assert removed.value.statements == []
    assert removed.type.result == op.type.result


def test_update_files_propagates_renames_and_keeps_unrelated_files():
    target = create_project_file(name="double")
    caller_op = OperationType((), UnknownType())
    caller = create_project_file(name="caller", content={
        "type": caller_op,
        "value": OperationValue(parameters=[], statements=[ref("double", id=target.id)]),
    })
    notes = create_project_file(name="notes", type="documentation", content="hello")
    history = []

    renamed = replace(target, name="twice")
    files = update_files([target, caller, notes], renamed, push_history=lambda *entry: history.append(entry))

    assert files[0] is renamed
    assert files[2] is notes
    assert files[1].content["value"].statements[0].data.value.name == "twice"
    assert files[1].updated_at is not None
    assert history == [(target.id, target.content)]

    # A second pass with nothing changed keeps every file
    assert all(a is b for a, b in zip(update_files(files), files))
