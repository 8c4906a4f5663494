"""
Type narrowing across boolean checks, and the skip-execution predicate.

When a statement chains a boolean check onto a referenced variable
(`x |isTypeOf string |thenElse ...`), the variable's type is refined inside
the branch that runs when the check holds, and its complement is used in the
other branch. Narrowed types live in `Context.narrowed_types` until a branch
scope is entered, where they are merged into `Context.variables`.
"""
from dataclasses import replace
from typing import Dict, Optional

from logicflow.flow_types import (
    DataType, NeverType, ObjectType, UnionType,
    is_type_compatible, resolve_union_type,
)
from logicflow.flow_datatypes import (
    Context, Data, SkipExecution, Variable,
    get_union_active_type, resolve_reference,
)

Variables = Dict[str, Variable]


def _with_type(variable: Variable, t: DataType) -> Variable:
    return Variable(data=replace(variable.data, type=t), reference=variable.reference)


def get_inverse_types(original_types: Variables, narrowed_types: Variables) -> Variables:
    """The complement of each narrowed variable, for the branch where the check failed."""
    result = dict(original_types)
    for key, narrowed in narrowed_types.items():
        variable = original_types.get(key)
        if variable is None:
            continue
        excluded: DataType = variable.data.type
        if isinstance(variable.data.type, UnionType):
            remaining = [t for t in variable.data.type.types
                         if not is_type_compatible(t, narrowed.data.type)]
            excluded = resolve_union_type(remaining) if remaining else NeverType()
        elif is_type_compatible(variable.data.type, narrowed.data.type):
            excluded = NeverType()
        if excluded.kind != "never":
            result[key] = _with_type(variable, excluded)
    return result


def object_type_match(source: DataType, target: DataType) -> bool:
    """Property-subset match used when narrowing against an object shape."""
    if not isinstance(target, ObjectType):
        return is_type_compatible(source, target)
    if not isinstance(source, ObjectType):
        return False
    for key, target_type in target.properties.items():
        source_type = source.properties.get(key)
        if source_type is None or not is_type_compatible(source_type, target_type):
            return False
    return True


def narrow_type(original_type: DataType, target_type: DataType) -> Optional[DataType]:
    if target_type.kind == "never":
        return NeverType()
    if original_type.kind == "unknown":
        return target_type
    if isinstance(original_type, UnionType):
        if isinstance(target_type, ObjectType):
            matching = [t for t in original_type.types if object_type_match(t, target_type)]
        else:
            matching = [t for t in original_type.types if is_type_compatible(t, target_type)]
        if not matching:
            return None
        return resolve_union_type(matching)
    if isinstance(original_type, ObjectType) and isinstance(target_type, ObjectType):
        return original_type if object_type_match(original_type, target_type) else None
    return original_type


def apply_type_narrowing(context: Context, narrowed_types: Variables, data: Data,
                         operation: Optional[Data]) -> Variables:
    """Fold one chained operation into the narrowed-type map."""
    if operation is None:
        return narrowed_types
    narrowed_types = dict(narrowed_types)
    name = operation.value.name
    params = operation.value.parameters
    param = params[0] if params else None
    narrowed: Optional[DataType] = None
    reference_name: Optional[str] = None

    if name in ("isTypeOf", "isEqual") and param is not None and data.is_kind("reference"):
        reference_name = data.value.name
        reference = context.variables.get(reference_name)
        if reference is not None:
            param_data = resolve_reference(param.data, context)
            if isinstance(param_data.type, UnionType):
                target = get_union_active_type(param_data.type, param_data.value, context)
            else:
                target = param_data.type
            narrowed = narrow_type(reference.data.type, target)

    if (name in ("or", "and") and param is not None
            and param.data.is_kind("reference") and param.operations):
        base = context.variables if name == "or" else narrowed_types
        inner = apply_type_narrowing(context, dict(base), param.data, param.operations[0])
        reference_name = param.data.value.name
        types = [v.data.type for v in (narrowed_types.get(reference_name), inner.get(reference_name)) if v]
        if types:
            narrowed = resolve_union_type(types)

    if name == "not":
        narrowed_types = get_inverse_types(context.variables, narrowed_types)

    if reference_name:
        variable = context.variables.get(reference_name)
        if variable is not None:
            narrowed_types[reference_name] = _with_type(variable, narrowed or NeverType())

    return narrowed_types


def merge_narrowed_types(original_types: Variables, narrowed_types: Variables,
                         operation_name: Optional[str] = None) -> Variables:
    if operation_name == "or":
        return original_types
    merged = dict(original_types)
    for key, value in narrowed_types.items():
        if value.data.type.kind == "never":
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def get_skip_execution(context: Context, data: Data, operation_name: Optional[str] = None,
                       param_index: Optional[int] = None) -> Optional[SkipExecution]:
    """Is evaluating this sub-tree meaningless? Ancestor skip, error, or a dead branch."""
    if context.skip_execution is not None:
        return context.skip_execution
    data = resolve_reference(data, context)
    if data.is_kind("error"):
        return SkipExecution(reason=data.value.reason, kind="error")
    if not operation_name:
        return None
    if param_index is not None and data.is_kind("boolean"):
        if operation_name == "thenElse" and data.value == (param_index != 0):
            return SkipExecution(reason="Unreachable branch", kind="unreachable")
        if operation_name in ("or", "and") and data.value == (operation_name == "or"):
            return SkipExecution(reason=f"{operation_name} operation is unreachable", kind="unreachable")
    return None


def update_context_with_narrowed_types(context: Context, data: Data, operation_name: Optional[str] = None,
                                       param_index: Optional[int] = None) -> Context:
    """The context for a branch: narrowed (or inverse) types merged into variables."""
    narrowed_types = context.narrowed_types or {}
    if operation_name == "thenElse" and param_index == 1:
        variables = get_inverse_types(context.variables, narrowed_types)
    else:
        variables = merge_narrowed_types(context.variables, narrowed_types, operation_name)
    return context.derive(
        variables=dict(variables),
        narrowed_types=None,
        skip_execution=get_skip_execution(context, data, operation_name, param_index),
    )
