"""
The incremental updater.

After an edit, a statement list is re-walked left to right. Statements before
the edited one are carried through untouched. From the edited one on, each
statement is rebuilt: references are re-bound against the variables declared
so far, and every chained call's parameters are re-validated against the
operation's current signature.

Nothing here runs an operation handler. Each chained call's result type is
folded forward from its receiver through the registry's declared result
types; a cached result is reused only while its type still fits. Where
neither is known the existing node is kept.
"""
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from logicflow.flow_types import (
    DataType, UnknownType, OperationType, Parameter,
    is_type_compatible,
)
from logicflow.flow_datatypes import (
    Context, Data, OperationValue, ConditionValue, ProjectFile, ReferenceValue, Statement, Variable,
    create_statement, create_param_data, create_context_variables, create_default_value,
    create_file_from_operation, create_file_variables, create_operation_from_file,
    get_statement_result, get_union_active_type, new_id, resolve_reference,
)
from logicflow.flow_narrowing import (
    apply_type_narrowing, get_skip_execution, update_context_with_narrowed_types,
)
from logicflow.flow_operations import operation_result_type, resolve_parameters

_default_evaluator = None


def _evaluator(context: Context):
    global _default_evaluator
    if context.evaluator is not None:
        return context.evaluator
    if _default_evaluator is None:
        from logicflow.flow_interpreter import Evaluator
        _default_evaluator = Evaluator()
    return _default_evaluator


def _stage_result(receiver: Optional[Data], operation: Data, param_types: List[DataType],
                  context: Context) -> Optional[Data]:
    """
    One chained call's result as far as it is known without running it. The
    cached result stands while its type still fits what the operation now
    produces from `receiver`; otherwise only the type is known.
    """
    if receiver is None:
        return None
    item = _evaluator(context).find_operation(receiver, operation.value.name, context)
    if item is None:
        return None
    cached = context.get_result(operation.id)
    result_type = operation_result_type(item, receiver, param_types, context)
    if result_type.kind == "unknown" or (cached is not None and is_type_compatible(cached.type, result_type)):
        return cached
    # A boolean's value is left open so no branch is ruled out
    value = None if result_type.kind == "boolean" else create_default_value(result_type)
    return Data(new_id(), result_type, value)


def _known_result(statement: Statement, context: Context) -> Optional[Data]:
    """The statement's result if it can be known without executing anything."""
    data = resolve_reference(statement.data, context)
    result = get_statement_result(replace(statement, data=data), context, prev_entity=True)
    for operation in statement.operations:
        param_types = [_known_type(p, context) for p in operation.value.parameters]
        result = _stage_result(result, operation, param_types, context)
    return None if result is None else replace(result, id=statement.id)


def _known_type(statement: Statement, context: Context) -> DataType:
    result = _known_result(statement, context)
    return UnknownType() if result is None else result.type


def _variables(statements: List[Statement], context: Context, operation: Optional[Data] = None):
    return create_context_variables(statements, context, operation, result_of=_known_result)


# =================================================================
# Statements
# =================================================================

def _find_reference(reference: ReferenceValue, variables: Dict[str, Variable]) -> Optional[ReferenceValue]:
    if reference.id is not None:
        for name, variable in variables.items():
            if variable.data.id == reference.id:
                return reference if name == reference.name else replace(reference, name=name)
    variable = variables.get(reference.name)
    if variable is not None:
        return reference if variable.data.id == reference.id else replace(reference, id=variable.data.id)
    return None


def update_data_value(data: Data, context: Context) -> Data:
    match data.kind:
        case "reference":
            found = _find_reference(data.value, context.variables)
            value = found if found is not None else data.value
        case "array" | "tuple":
            value = update_statements(data.value, context)
        case "object" | "dictionary":
            value = {key: update_statement(s, context) for key, s in data.value.items()}
        case "operation":
            value = update_operation_value(data, context)
        case "union":
            active = get_union_active_type(data.type, data.value, context)
            value = update_data_value(replace(data, type=active), context).value
        case "condition":
            value = ConditionValue(
                condition=update_statement(data.value.condition, context),
                true=update_statement(data.value.true, context),
                false=update_statement(data.value.false, context),
            )
        case _:
            return data
    return data if value == data.value else replace(data, value=value)


def update_operation_calls(statement: Statement, context: Context) -> List[Data]:
    """
    Re-validate each chained call's parameters against its current signature.
    Receivers are folded forward from the statement's own data, so retyping
    the data retypes every later stage.
    """
    evaluator = _evaluator(context)
    narrowed_types: Dict[str, Variable] = {}
    operations: List[Data] = []
    receiver: Optional[Data] = get_statement_result(statement, context, prev_entity=True)
    if not statement.data.is_kind("condition"):
        receiver = statement.data

    for operation in statement.operations:
        name = operation.value.name
        if receiver is not None:
            narrowed_types = apply_type_narrowing(context, narrowed_types, receiver, operation)
        narrowed_context = context.derive(narrowed_types=narrowed_types)

        item = evaluator.find_operation(receiver, name, context) if receiver is not None else None
        skip = get_skip_execution(context, receiver, name) if receiver is not None else None
        expected: List[Parameter] = resolve_parameters(item, receiver, context)[1:] if item else []

        parameters: List[Statement] = []
        param_types: List[DataType] = []
        for param_index, existing in enumerate(operation.value.parameters):
            param_context = update_context_with_narrowed_types(narrowed_context, receiver, name, param_index) \
                if receiver is not None else context
            updated = update_statement(existing, param_context)
            result = _known_result(updated, param_context)
            if skip is None and param_index < len(expected):
                if result is not None and not is_type_compatible(result.type, expected[param_index].type):
                    param = expected[param_index]
                    updated = create_statement(data=create_param_data(param), is_optional=param.is_optional)
                    result = updated.data
            parameters.append(updated)
            param_types.append(UnknownType() if result is None else result.type)

        for param in expected[len(parameters):]:
            if param.is_optional:
                break
            parameters.append(create_statement(data=create_param_data(param), is_optional=param.is_optional))
            param_types.append(parameters[-1].data.type)

        if parameters != operation.value.parameters:
            operation = replace(operation, value=replace(operation.value, parameters=parameters))
        operations.append(operation)
        receiver = _stage_result(receiver, operation, param_types, context)
    return operations


def update_statement(statement: Statement, context: Context) -> Statement:
    data = update_data_value(statement.data, context)
    rebuilt = replace(statement, data=data) if data is not statement.data else statement
    operations = update_operation_calls(rebuilt, context)
    if operations == statement.operations and data is statement.data:
        return statement
    return replace(rebuilt, operations=operations)


def update_statements(statements: List[Statement], context: Context,
                      changed_statement: Optional[Statement] = None, remove_statement: bool = False,
                      operation: Optional[Data] = None) -> List[Statement]:
    """
    Fold over `statements`, rebuilding from `changed_statement` onward (or all
    of them when nothing changed). `operation` is the enclosing operation, used
    to widen its optional parameters with `undefined`.
    """
    found = False
    updated: List[Statement] = []
    for current in statements:
        to_process = current
        if changed_statement is not None and current.id == changed_statement.id:
            found = True
            if remove_statement:
                continue
            to_process = changed_statement
        if changed_statement is not None and not found:
            updated.append(current)
            continue
        variables = _variables(updated, context, operation)
        scoped = context.derive(variables=variables)
        scoped = scoped.derive(skip_execution=get_skip_execution(scoped, to_process.data))
        updated.append(update_statement(to_process, scoped))
    return updated


# =================================================================
# Operations and files
# =================================================================

def update_operation_value(operation: Data, context: Context) -> OperationValue:
    value: OperationValue = operation.value
    combined = update_statements(list(value.parameters) + list(value.statements), context, operation=operation)
    count = len(value.parameters)
    parameters, statements = combined[:count], combined[count:]
    if parameters == value.parameters and statements == value.statements:
        return value
    return replace(value, parameters=parameters, statements=statements)


def _operation_type(value: OperationValue, previous: OperationType, context: Context) -> OperationType:
    parameters = tuple(Parameter(p.data.type, p.name, p.is_optional) for p in value.parameters)
    result_type: DataType = previous.result
    if value.statements:
        body_context = context.derive(variables=_variables(value.parameters, context))
        known = _known_result(value.statements[-1], body_context)
        if known is not None:
            result_type = known.type
    return OperationType(parameters, result_type)


def apply_statement_change(operation: Data, statement: Statement, context: Context,
                           remove: bool = False) -> Data:
    """Apply an edit to one statement (or parameter) of `operation` and reassemble its type."""
    value: OperationValue = operation.value
    combined = update_statements(list(value.parameters) + list(value.statements), context,
                                 changed_statement=statement, remove_statement=remove, operation=operation)
    param_ids = {p.id for p in value.parameters}
    parameters = [s for s in combined if s.id in param_ids]
    statements = [s for s in combined if s.id not in param_ids]
    new_value = replace(value, parameters=parameters, statements=statements)
    return replace(operation, type=_operation_type(new_value, operation.type, context), value=new_value)


def update_files(files: List[ProjectFile], changed_file: Optional[ProjectFile] = None,
                 push_history: Optional[Callable[[str, object], None]] = None,
                 context: Optional[Context] = None) -> List[ProjectFile]:
    """
    Propagate a file change project-wide. Every other operation file is
    updated against the new file set; unchanged files come back as the same
    objects.
    """
    base = context or Context()
    current = [changed_file if changed_file is not None and f.id == changed_file.id else f for f in files]
    result: List[ProjectFile] = []
    for file in files:
        if changed_file is not None and file.id == changed_file.id:
            if push_history is not None:
                push_history(file.id, file.content)
            result.append(changed_file)
            continue
        operation = create_operation_from_file(file)
        if operation is None:
            result.append(file)
            continue
        file_context = base.derive(variables=create_file_variables(current, file.id))
        value = update_operation_value(operation, file_context)
        if value is operation.value:
            result.append(file)
            continue
        updated = replace(operation, type=_operation_type(value, operation.type, file_context), value=value)
        result.append(replace(create_file_from_operation(updated, base=file), updated_at=time.time()))
    return result
