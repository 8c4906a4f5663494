from dataclasses import replace

import pytest

from logicflow.flow_types import UnknownType, NumberType, OperationType, Parameter, ReferenceType
from logicflow.flow_datatypes import (
    Data, OperationValue, ReferenceValue,
    create_data, create_statement, create_project_file, new_id,
)
from logicflow.flow_runtime import ExecutionResult, ProjectRunner
from flow import main


def lit(value, *operations, name=None):
    return create_statement(data=create_data(value=value), operations=list(operations), name=name)


def ref(name, *operations, id=None):
    return create_statement(data=create_data(type=ReferenceType(), value=ReferenceValue(name, id)),
                            operations=list(operations))


def call(name, *params):
    return Data(new_id(), OperationType((), UnknownType()), OperationValue(parameters=list(params), name=name))


def operation_file(name, parameters, statements, result=UnknownType()):
    op_type = OperationType(tuple(Parameter(p.data.type, p.name) for p in parameters), result)
    return create_project_file(name=name, content={
        "type": op_type,
        "value": OperationValue(parameters=list(parameters), statements=list(statements)),
    })


@pytest.fixture
def files():
    double = operation_file("double", [lit(0, name="x")], [ref("x", call("multiply", lit(2)))], NumberType())
    quad = operation_file("quad", [lit(0, name="x")], [ref("x", call("double"), call("double"))])
    main_file = operation_file("main", [], [ref("double", call("call", lit(5)), id=double.id)])
    broken = operation_file("broken", [], [lit(1, call("divide", lit(0)))])
    notes = create_project_file(name="notes", type="documentation", content="Doubles things.")
    return [double, quad, main_file, broken, notes]


@pytest.fixture
def runner(files):
    return ProjectRunner(files)


@pytest.mark.asyncio
async def test_run_file_with_arguments_and_defaults(runner):
    result = await runner.run_file("double", [21])
    assert result.status == 'success'
    assert result.value == 42

    assert (await runner.run_file("double")).value == 0


@pytest.mark.asyncio
async def test_run_file_runs_the_body_once_with_the_given_arguments(runner, files, monkeypatch):
    executed = []
    execute_statement = runner.evaluator.execute_statement

    async def counting(statement, context):
        executed.append(statement.id)
        return await execute_statement(statement, context)

    monkeypatch.setattr(runner.evaluator, "execute_statement", counting)
    body = files[0].content["value"].statements[0]
    assert (await runner.run_file("double", [21])).value == 42
    assert executed.count(body.id) == 1
    assert runner.store.get_result(body.operations[0].id).data.value == 42


@pytest.mark.asyncio
async def test_operation_files_call_each_other(runner):
    assert (await runner.run_file("quad", [3])).value == 12
    assert (await runner.run_file("main")).value == 10


@pytest.mark.asyncio
async def test_errors_become_error_results(runner):
    result = await runner.run_file("broken")
    assert result.status == 'error'
    assert result.format_error() == "Runtime Error: Division by zero"

    missing = await runner.run_file("nope")
    assert missing.error_message == "Reference Error: 'nope' not found"

    not_operation = await runner.run_file("notes")
    assert not_operation.status == 'error'


def test_format_error_is_empty_on_success():
    assert ExecutionResult('success', value=1).format_error() == ""


@pytest.mark.asyncio
async def test_evaluate_statement_sees_operation_files(runner):
    result = await runner.evaluate_statement(lit(4, call("double")))
    assert result.value == 8


@pytest.mark.asyncio
async def test_apply_change_renames_references_and_records_history(runner, files):
    double = files[0]
    runner.apply_change(replace(double, name="twice"))
    assert runner.operation_names() == ["twice", "quad", "main", "broken"]
    assert runner.history == [(double.id, double.content)]
    assert (await runner.run_file("main")).value == 10


@pytest.mark.asyncio
@pytest.mark.parametrize("suffix", [".json", ".yaml"])
async def test_save_and_load_round_trip(runner, files, tmp_path, suffix):
    path = runner.save(tmp_path / f"project{suffix}")
    loaded = ProjectRunner()
    assert loaded.load(path) == files
    assert (await loaded.run_file("quad", [5])).value == 20


# --- Command line ---

@pytest.mark.asyncio
async def test_cli_runs_an_operation(runner, tmp_path, capsys):
    path = runner.save(tmp_path / "project.json")
    await main([str(path), "double", "21"])
    assert capsys.readouterr().out.strip() == "42"


@pytest.mark.asyncio
async def test_cli_lists_operations(runner, tmp_path, capsys):
    path = runner.save(tmp_path / "project.yaml")
    await main([str(path)])
    assert capsys.readouterr().out.split() == ["double", "quad", "main", "broken"]


@pytest.mark.asyncio
async def test_cli_reports_errors_with_exit_status(runner, tmp_path, capsys):
    path = runner.save(tmp_path / "project.json")
    with pytest.raises(SystemExit) as exc:
        await main([str(path), "broken"])
    assert exc.value.code == 1
    assert "Division by zero" in capsys.readouterr().err

    with pytest.raises(SystemExit) as exc:
        await main([str(tmp_path / "missing.json")])
    assert exc.value.code == 1

    with pytest.raises(SystemExit) as exc:
        await main([])
    assert exc.value.code == 2
