"""
The runtime facade: a project of files, one execution store, one evaluator.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Literal, Optional, Tuple

from logicflow.flow_types import ERROR_TYPE_NAMES, UndefinedType
from logicflow.flow_store import ExecutionStore
from logicflow.flow_datatypes import (
    Context, Data, Statement, ProjectFile,
    create_data, create_data_from_raw_value, create_statement, create_file_variables,
    create_operation_from_file, get_raw_value,
)
from logicflow.flow_interpreter import Evaluator
from logicflow.flow_operations import operation_to_list_item
from logicflow.flow_serialize import dump_project, load_project
from logicflow.flow_update import update_files


@dataclass
class ExecutionResult:
    """The structured result of running an operation or statement."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    data: Optional[Data] = None

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error_message or "Unknown error")


def _project_format(path: Path) -> str:
    return "yaml" if path.suffix.lower() in (".yaml", ".yml") else "json"


class ProjectRunner:
    """Loads, edits and runs the operation files of a project."""

    def __init__(self, files: Optional[List[ProjectFile]] = None, evaluator: Optional[Evaluator] = None,
                 store: Optional[ExecutionStore] = None):
        self.files: List[ProjectFile] = list(files or [])
        self.evaluator = evaluator or Evaluator()
        self.store = store or ExecutionStore()
        self.history: List[Tuple[str, Any]] = []

    def context(self, file_id: Optional[str] = None) -> Context:
        return Context(
            variables=create_file_variables(self.files, file_id),
            store=self.store,
            evaluator=self.evaluator,
            generation=self.store.generation,
        )

    def get_file(self, name: str) -> ProjectFile:
        for file in self.files:
            if file.name == name or file.id == name:
                return file
        raise KeyError(name)

    def operation_names(self) -> List[str]:
        return [f.name for f in self.files if f.type == "operation"]

    def _to_result(self, data: Data, context: Context) -> ExecutionResult:
        if data.is_kind("error"):
            name = ERROR_TYPE_NAMES.get(data.type.error_type, "Error")
            return ExecutionResult('error', value=data.value.reason,
                                   error_message=f"{name}: {data.value.reason}", data=data)
        return ExecutionResult('success', value=get_raw_value(data, context), data=data)

    async def run_file(self, name: str, arguments: Optional[List[Any]] = None) -> ExecutionResult:
        """
        Run the operation file `name`. `arguments` are plain values (or Data)
        for its parameters; without them the file's own parameter values are used.
        """
        try:
            file = self.get_file(name)
        except KeyError:
            return ExecutionResult('error', error_message=f"Reference Error: '{name}' not found")
        operation = create_operation_from_file(file)
        if operation is None:
            return ExecutionResult('error', error_message=f"Type Error: '{name}' is not an operation file")

        context = self.context(file.id).derive(generation=self.store.next_generation())
        if arguments is not None:
            inputs = [create_data_from_raw_value(a, context) for a in arguments]
        else:
            inputs = [p.data for p in operation.value.parameters]
        receiver = inputs[0] if inputs else create_data(type=UndefinedType())
        parameters = [create_statement(data=d) for d in inputs[1:]]

        result = await self.evaluator.execute_operation(operation_to_list_item(operation), receiver,
                                                        parameters, context)
        return self._to_result(result, context)

    async def evaluate_statement(self, statement: Statement, file_name: Optional[str] = None) -> ExecutionResult:
        """Evaluate one statement with the project's operation files in scope."""
        file_id = self.get_file(file_name).id if file_name else None
        context = self.context(file_id).derive(generation=self.store.next_generation())
        result = await self.evaluator.execute_statement(statement, context)
        return self._to_result(result, context)

    def _push_history(self, file_id: str, content: Any):
        self.history.append((file_id, content))

    def apply_change(self, changed_file: ProjectFile) -> List[ProjectFile]:
        """Replace a file, propagate the change to every other file, drop stale results."""
        if all(f.id != changed_file.id for f in self.files):
            self.files.append(changed_file)
        self.files = update_files(self.files, changed_file, push_history=self._push_history,
                                  context=self.context())
        self.store.remove_all()
        self.store.next_generation()
        return self.files

    def load(self, path) -> List[ProjectFile]:
        path = Path(path)
        self.files = load_project(path.read_text(encoding="utf-8"), fmt=_project_format(path))
        self.store.remove_all()
        return self.files

    def save(self, path) -> Path:
        path = Path(path)
        path.write_text(dump_project(self.files, fmt=_project_format(path)), encoding="utf-8")
        return path
