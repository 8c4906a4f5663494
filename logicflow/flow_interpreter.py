"""
The core logicflow interpreter: the Evaluator.

Evaluation walks a statement: resolve its data, evaluate nested structure so
every child has a cached result, then fold the value through the chained
operation calls. Every failure is returned as error data; nothing raised by an
operation handler escapes the evaluator.
"""
import asyncio
import os
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple, Union

from logicflow.flow_types import (
    OperationType, UnionType, UndefinedType,
    is_type_compatible, resolve_union_type,
)
from logicflow.flow_datatypes import (
    Context, Data, OperationValue, Statement, Variable,
    create_data, create_statement, create_error, create_runtime_error, create_param_data,
    create_context_variables, get_statement_result, get_union_active_type, resolve_reference, new_id,
)
from logicflow.flow_narrowing import apply_type_narrowing, get_skip_execution
from logicflow.flow_operations import (
    OperationListItem, builtin_operations, operation_to_list_item, resolve_parameters,
)

GroupedOperations = List[Tuple[str, List[OperationListItem]]]


class Evaluator:
    def __init__(self, operations: Optional[List[OperationListItem]] = None):
        self.operations: List[OperationListItem] = (
            list(operations) if operations is not None else builtin_operations()
        )

    def _dbg(self, *parts):
        if os.environ.get("LOGICFLOW_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def _bind(self, context: Context) -> Context:
        if context.evaluator is self:
            return context
        return context.derive(evaluator=self)

    # --- Operation lookup ---

    def data_supports_operation(self, data: Data, item: OperationListItem, context: Context) -> bool:
        """Is `item` applicable to `data`? Decided by the item's first parameter."""
        if data.is_kind("never"):
            return False
        params = resolve_parameters(item, data, context)
        first = params[0].type if params else UndefinedType()
        if data.is_kind("instance") and first.kind == "instance":
            return first.class_name == data.type.class_name
        if isinstance(data.type, UnionType) and first.kind != "union":
            return all(t.kind == first.kind for t in data.type.types)
        return data.kind == first.kind or first.kind == "unknown"

    def get_filtered_operations(self, data: Data, context: Context,
                                grouped: bool = False) -> Union[List[OperationListItem], GroupedOperations]:
        """Built-in and in-scope user-defined operations that `data` can chain into."""
        data = resolve_reference(data, context)
        built_in = [op for op in self.operations if self.data_supports_operation(data, op, context)]
        user_defined = []
        for name, variable in context.variables.items():
            if not name or not variable.data.is_kind("operation"):
                continue
            item = operation_to_list_item(variable.data, name)
            if self.data_supports_operation(data, item, context):
                user_defined.append(item)
        if grouped:
            return [("Built-in", built_in), ("User-defined", user_defined)]
        return built_in + user_defined

    def find_operation(self, data: Data, name: Optional[str], context: Context) -> Optional[OperationListItem]:
        for item in self.get_filtered_operations(data, context):
            if item.name == name:
                return item
        return None

    def get_skip_execution(self, context: Context, data: Data, operation_name: Optional[str] = None,
                           param_index: Optional[int] = None):
        return get_skip_execution(context, data, operation_name, param_index)

    async def create_operation_call(self, data: Data, context: Context, name: Optional[str] = None,
                                    parameters: Optional[List[Statement]] = None,
                                    operation_id: Optional[str] = None) -> Data:
        """
        Build an operation-call node for `data`: the named operation (or the
        first applicable one), its required parameters defaulted, and any
        compatible `parameters` from a previous call kept in place.
        """
        context = self._bind(context)
        data = resolve_reference(data, context)
        operations = self.get_filtered_operations(data, context)
        if not operations:
            raise ValueError(f"No operation applies to '{data.kind}' data")
        item = next((op for op in operations if op.name == name), operations[0])
        resolved = resolve_parameters(item, data, context)

        new_parameters: List[Statement] = []
        for index, param in enumerate(p for p in resolved[1:] if not p.is_optional):
            new_param = create_statement(data=create_param_data(param), is_optional=param.is_optional)
            prev = parameters[index] if parameters and index < len(parameters) else None
            if prev is not None and is_type_compatible(new_param.data.type, get_statement_result(prev, context).type):
                new_parameters.append(prev)
            else:
                new_parameters.append(new_param)

        operation_id = operation_id or new_id()
        if item.should_cache_result:
            result = create_data(type=UndefinedType())
        else:
            result = await self.execute_operation(item, data, new_parameters, context)
            context.set_result(operation_id, replace(result, id=operation_id))

        self._dbg("create_operation_call", item.name, "->", result.kind)
        return Data(
            id=operation_id,
            type=OperationType(tuple(resolved), result.type),
            value=OperationValue(parameters=new_parameters, statements=[], name=item.name),
        )

    # --- Execution ---

    async def store_data_instance(self, data: Data, context: Context) -> Optional[Data]:
        """Construct the host object behind instance data if the store lacks it."""
        if not data.is_kind("instance"):
            return None
        from logicflow.flow_instances import create_instance
        if context.store.get_instance(data.value.instance_id) is not None:
            return None
        args = await asyncio.gather(*(self.execute_statement(a, context) for a in data.value.constructor_args))
        for arg in args:
            if arg.is_kind("error"):
                return arg
        try:
            instance = create_instance(data.value.class_name, list(args), context)
        except Exception as e:
            self._dbg("store_data_instance", data.value.class_name, "failed", repr(e))
            return create_runtime_error(e)
        context.store.set_instance(data.value.instance_id, instance)
        return None

    async def execute_data_value(self, data: Data, context: Context) -> None:
        """Evaluate nested structure so every child statement has a cached result."""
        context = self._bind(context)
        match data.kind:
            case "array" | "tuple":
                await asyncio.gather(*(self.execute_statement(s, context) for s in data.value),
                                     return_exceptions=True)
            case "object" | "dictionary":
                await asyncio.gather(*(self.execute_statement(s, context) for s in data.value.values()),
                                     return_exceptions=True)
            case "operation":
                await self.set_operation_results(data, context)
            case "union":
                active = get_union_active_type(data.type, data.value, context)
                await self.execute_data_value(replace(data, type=active), context)
            case "condition":
                await asyncio.gather(
                    self.execute_statement(data.value.condition, context),
                    self.execute_statement(data.value.true, context),
                    self.execute_statement(data.value.false, context),
                    return_exceptions=True,
                )
            case "instance":
                await self.store_data_instance(data, context)

    async def execute_statement(self, statement: Statement, context: Context) -> Data:
        context = self._bind(context)
        current = resolve_reference(statement.data, context)
        if current.is_kind("error"):
            return current

        if current.is_kind("condition"):
            condition = current.value
            condition_result = await self.execute_statement(condition.condition, context)
            if condition_result.is_kind("error"):
                return condition_result
            chosen = condition.true if condition_result.value else condition.false
            current = await self.execute_statement(chosen, context)
            context.set_result(statement.data.id, current)
            if current.is_kind("error"):
                return current

        await self.execute_data_value(statement.data, context)
        if current.is_kind("instance"):
            failure = await self.store_data_instance(current, context)
            if failure is not None:
                return failure

        narrowed_types: Dict[str, Variable] = {}
        # References stay unresolved here so narrowing can see the variable name.
        result = statement.data if statement.data.is_kind("reference") else current

        for operation in statement.operations:
            if result.is_kind("error"):
                context.set_result(operation.id, result)
                continue

            name = operation.value.name
            narrowed_types = apply_type_narrowing(context, narrowed_types, result, operation)
            op_context = context.derive(
                narrowed_types=narrowed_types,
                skip_execution=get_skip_execution(context, result, name),
            )

            item = self.find_operation(result, name, op_context)
            if item is None:
                kind = resolve_reference(result, op_context).kind
                self._dbg("execute_statement", "no operation", name, "for", kind)
                operation_result = create_error("type_error", f"Cannot chain '{name}' after '{kind}' type")
            else:
                existing = context.get_result(operation.id)
                should_execute = (not item.should_cache_result
                                  or (operation.type.result.kind != "undefined" and existing is None))
                if should_execute:
                    if op_context.skip_execution is not None:
                        self._dbg("skip", name, op_context.skip_execution.kind)
                        operation_result = create_data(type=operation.type.result)
                    else:
                        operation_result = await self.execute_operation(
                            item, result, operation.value.parameters, op_context)
                elif existing is not None:
                    operation_result = existing
                else:
                    # Cached operation not yet run: placeholder until it is triggered.
                    operation_result = create_data(type=UndefinedType())

            context.store.set_result(
                operation.id, operation_result,
                should_cache_result=bool(item and item.should_cache_result),
                generation=context.generation,
            )
            result = operation_result

        return resolve_reference(result, context)

    async def run_cached_operation(self, statement: Statement, operation: Data, context: Context) -> Data:
        """Explicitly run an operation flagged `should_cache_result` (a network call)."""
        context = self._bind(context)
        index = next(i for i, op in enumerate(statement.operations) if op.id == operation.id)
        failure = None
        if index == 0:
            receiver = resolve_reference(statement.data, context)
            failure = await self.store_data_instance(receiver, context)
        else:
            receiver = context.get_result(statement.operations[index - 1].id) or create_data(type=UndefinedType())
        item = self.find_operation(receiver, operation.value.name, context)
        if failure is not None:
            result = failure
        elif item is None:
            result = create_error("type_error", f"Cannot chain '{operation.value.name}' after '{receiver.kind}' type")
        else:
            result = await self.execute_operation(item, receiver, operation.value.parameters, context)
        context.store.set_result(operation.id, result, should_cache_result=True, generation=context.generation)
        return result

    async def set_operation_results(self, operation: Data, context: Context) -> None:
        """Evaluate an operation's body with its declared parameters bound, caching every result."""
        context = self._bind(context)
        body_context = context.derive(
            variables=create_context_variables(operation.value.parameters, context, operation))
        await asyncio.gather(*(self.store_data_instance(p.data, context) for p in operation.value.parameters),
                             return_exceptions=True)
        for statement in operation.value.statements:
            result = await self.execute_statement(statement, body_context)
            if not result.is_kind("error") and statement.name:
                body_context.variables[statement.name] = Variable(data=result)

    async def execute_operation(self, item: OperationListItem, data: Data, parameters: List[Statement],
                                context: Context) -> Data:
        context = self._bind(context)
        if context.skip_execution is not None:
            return create_data()
        data = resolve_reference(data, context)
        if data.is_kind("error") and not self.data_supports_operation(data, item, context):
            return data

        if item.lazy_handler is not None:
            try:
                return await _settle(item.lazy_handler(context, data, *parameters))
            except Exception as e:
                self._dbg("lazy handler", item.name, "raised", repr(e))
                return create_runtime_error(e)

        resolved = resolve_parameters(item, data, context)

        async def _evaluate(index: int, param) -> Data:
            if index < len(parameters):
                return await self.execute_statement(parameters[index], context)
            return Data(new_id(), resolve_union_type([param.type, UndefinedType()]), None)

        settled = await asyncio.gather(*(_evaluate(i, p) for i, p in enumerate(resolved[1:])),
                                       return_exceptions=True)
        values: List[Data] = [create_runtime_error(r) if isinstance(r, BaseException) else r for r in settled]

        for index, param in enumerate(resolved[1:]):
            if values[index].is_kind("error") or not is_type_compatible(values[index].type, param.type):
                return create_error("type_error", f"Parameter #{index + 1} should be of type '{param.type.kind}'")

        if item.handler is not None:
            try:
                return await _settle(item.handler(context, data, *values))
            except Exception as e:
                self._dbg("handler", item.name, "raised", repr(e))
                return create_runtime_error(e)

        if item.statements:
            return await self._execute_body(item, resolved, [data, *values], context)

        return create_data()

    async def _execute_body(self, item: OperationListItem, resolved, inputs: List[Data], context: Context) -> Data:
        """Run a user-defined operation: bind parameters, then statements in order."""
        body_context = context.derive(narrowed_types=None, skip_execution=None)
        for param, value in zip(resolved, inputs):
            if not param.name:
                continue
            bound = resolve_reference(value, context)
            if param.type.kind != "unknown":
                param_type = replace(param.type, active_index=None) if isinstance(param.type, UnionType) else param.type
                bound = replace(bound, type=param_type)
            body_context.variables[param.name] = Variable(
                data=bound,
                reference=value.value if value.is_kind("reference") else None,
            )
        last = create_data()
        for statement in item.statements:
            last = await self.execute_statement(statement, body_context)
            if last.is_kind("error"):
                return last
            if statement.name:
                body_context.variables[statement.name] = Variable(data=last)
        return last


async def _settle(result: Any) -> Any:
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        return await result
    return result
