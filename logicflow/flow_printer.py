"""
A pretty-printer for logicflow programs and values.
"""
import json

from logicflow.flow_datatypes import (
    Context, Data, Statement, ProjectFile, get_condition_result,
)


class Printer:
    """Formats statements and data into compact, source-like text."""

    def __init__(self, indent_width=2, context: Context = None):
        self._indent_char = " " * indent_width
        self._context = context
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        if isinstance(obj, Statement):
            return self._pformat_statement(obj, level)
        if isinstance(obj, ProjectFile):
            return self._pformat_file(obj, level)
        if isinstance(obj, Data):
            handler = self._handlers.get(obj.kind, self._pformat_unknown)
            return handler(obj, level)
        return repr(obj)

    def _create_handlers(self):
        return {
            "string": self._pformat_str,
            "number": self._pformat_number,
            "boolean": self._pformat_bool,
            "undefined": self._pformat_undefined,
            "never": self._pformat_undefined,
            "unknown": self._pformat_unknown,
            "array": self._pformat_list,
            "tuple": self._pformat_list,
            "object": self._pformat_dict,
            "dictionary": self._pformat_dict,
            "union": self._pformat_union,
            "operation": self._pformat_operation,
            "condition": self._pformat_condition,
            "reference": self._pformat_reference,
            "error": self._pformat_error,
            "instance": self._pformat_instance,
        }

    def _pformat_str(self, data, level):
        return json.dumps(data.value, ensure_ascii=False)

    def _pformat_number(self, data, level):
        value = data.value
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)

    def _pformat_bool(self, data, level):
        return 'true' if data.value else 'false'

    def _pformat_undefined(self, data, level):
        return 'undefined'

    def _pformat_unknown(self, data, level):
        return repr(data.value)

    def _pformat_element(self, statement, level):
        # Elements with a cached result print the value, not the chain
        if self._context is not None and statement.operations:
            cached = self._context.get_result(statement.operations[-1].id)
            if cached is not None:
                return self.pformat(cached, level)
        return self.pformat(statement, level)

    def _pformat_list(self, data, level):
        return "[" + ", ".join(self._pformat_element(s, level) for s in data.value) + "]"

    def _pformat_dict(self, data, level):
        if not data.value:
            return "{}"
        entries = ", ".join(f"{key}: {self._pformat_element(s, level)}" for key, s in data.value.items())
        return f"{{ {entries} }}"

    def _pformat_union(self, data, level):
        value = data.value
        if isinstance(value, list):
            return "[" + ", ".join(self._pformat_element(s, level) for s in value) + "]"
        if isinstance(value, dict):
            return "{ " + ", ".join(f"{k}: {self._pformat_element(s, level)}" for k, s in value.items()) + " }"
        if isinstance(value, str):
            return json.dumps(value, ensure_ascii=False)
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if value is None:
            return 'undefined'
        return str(value)

    def _pformat_operation(self, data, level):
        value = data.value
        params = ", ".join(p.name or "_" for p in value.parameters)
        if not value.statements:
            return f"({params}) => {{}}"
        inner_indent = self._indent_char * (level + 1)
        outer_indent = self._indent_char * level
        lines = [inner_indent + self.pformat(s, level + 1) for s in value.statements]
        return f"({params}) => {{\n" + "\n".join(lines) + f"\n{outer_indent}}}"

    def _pformat_condition(self, data, level):
        if self._context is not None:
            return self.pformat(get_condition_result(data.value, self._context), level)
        value = data.value
        return (f"{self.pformat(value.condition, level)} ? "
                f"{self.pformat(value.true, level)} : {self.pformat(value.false, level)}")

    def _pformat_reference(self, data, level):
        return data.value.name

    def _pformat_error(self, data, level):
        return data.value.reason

    def _pformat_instance(self, data, level):
        args = ", ".join(self.pformat(a, level) for a in data.value.constructor_args)
        return f"{data.value.class_name}({args})"

    def _pformat_statement(self, statement, level):
        text = self.pformat(statement.data, level)
        for operation in statement.operations:
            args = [text] + [self.pformat(p, level) for p in operation.value.parameters]
            text = f"_.{operation.value.name}({', '.join(args)})"
        if statement.name:
            return f"{statement.name} = {text}"
        return text

    def _pformat_file(self, file, level):
        if file.type == "operation":
            return f"{file.name} = {self._pformat_operation(Data(file.id, file.content['type'], file.content['value']), level)}"
        return f"{file.name} = {json.dumps(file.content, ensure_ascii=False, default=str)}"
