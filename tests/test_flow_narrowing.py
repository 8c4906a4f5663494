from logicflow.flow_types import (
    NeverType, StringType, NumberType, BooleanType, ObjectType, UnionType, UnknownType,
)
from logicflow.flow_datatypes import Context, Variable, create_data, SkipExecution
from logicflow.flow_narrowing import (
    narrow_type, get_inverse_types, merge_narrowed_types, get_skip_execution,
    update_context_with_narrowed_types,
)


def _var(t, value=None):
    return Variable(data=create_data(type=t, value=value))


def test_narrow_union_to_matching_members():
    original = UnionType((StringType(), NumberType(), BooleanType()))
    assert narrow_type(original, StringType()) == StringType()
    assert narrow_type(original, UnionType((NumberType(), BooleanType()))) == UnionType((NumberType(), BooleanType()), 0)
    assert narrow_type(original, ObjectType({"a": StringType()})) is None


def test_narrow_unknown_takes_the_target():
    assert narrow_type(UnknownType(), NumberType()) == NumberType()


def test_narrow_objects_by_property_subset():
    a = ObjectType({"kind": StringType(), "size": NumberType()})
    b = ObjectType({"name": StringType()})
    narrowed = narrow_type(UnionType((a, b)), ObjectType({"size": NumberType()}))
    assert narrowed == a


def test_narrowed_and_inverse_partition_the_union():
    members = (StringType(), NumberType(), BooleanType())
    variables = {"x": _var(UnionType(members), "hi")}
    narrowed = {"x": _var(narrow_type(variables["x"].data.type, StringType()))}
    inverse = get_inverse_types(variables, narrowed)

    narrowed_members = {narrowed["x"].data.type.kind}
    inverse_members = {t.kind for t in inverse["x"].data.type.types}
    assert narrowed_members.isdisjoint(inverse_members)
    assert narrowed_members | inverse_members == {m.kind for m in members}


def test_inverse_of_fully_matched_non_union_keeps_original():
    variables = {"x": _var(StringType(), "a")}
    inverse = get_inverse_types(variables, {"x": _var(StringType())})
    # the excluded type is `never`, which is not written back
    assert inverse["x"] is variables["x"]


def test_merge_drops_never_and_ignores_or():
    original = {"x": _var(UnionType((StringType(), NumberType()))), "y": _var(StringType(), "b")}
    narrowed = {"x": _var(StringType()), "y": _var(NeverType())}
    merged = merge_narrowed_types(original, narrowed)
    assert merged["x"].data.type == StringType()
    assert "y" not in merged
    assert merge_narrowed_types(original, narrowed, "or") is original


def test_skip_execution_rules():
    context = Context()
    false = create_data(value=False)
    true = create_data(value=True)
    assert get_skip_execution(context, false, "thenElse", 0).kind == "unreachable"
    assert get_skip_execution(context, false, "thenElse", 1) is None
    assert get_skip_execution(context, true, "thenElse", 1).kind == "unreachable"
    assert get_skip_execution(context, true, "or", 0).kind == "unreachable"
    assert get_skip_execution(context, false, "and", 0).kind == "unreachable"
    assert get_skip_execution(context, true, "and", 0) is None
    # no operation name: only errors and ancestors matter
    assert get_skip_execution(context, false) is None


def test_skip_execution_inherits_from_ancestor():
    skip = SkipExecution(reason="Unreachable branch", kind="unreachable")
    context = Context(skip_execution=skip)
    assert get_skip_execution(context, create_data(value=1), "add") is skip


def test_branch_context_uses_inverse_for_false_branch():
    context = Context(
        variables={"x": _var(UnionType((StringType(), NumberType())), "s")},
        narrowed_types={"x": _var(StringType())},
    )
    condition = create_data(value=True)
    true_branch = update_context_with_narrowed_types(context, condition, "thenElse", 0)
    false_branch = update_context_with_narrowed_types(context, condition, "thenElse", 1)
    assert true_branch.variables["x"].data.type == StringType()
    assert true_branch.skip_execution is None
    assert false_branch.variables["x"].data.type == NumberType()
    assert false_branch.skip_execution.kind == "unreachable"
    # the parent scope is untouched
    assert context.variables["x"].data.type == UnionType((StringType(), NumberType()))
