from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from xml.parsers.expat import ExpatError
import collections.abc

import yaml
import xmltodict

from logicflow.flow_types import type_to_dict, type_from_dict
from logicflow.flow_datatypes import (
    Context, Data, Statement, ProjectFile,
    OperationValue, ConditionValue, ReferenceValue, ErrorValue, InstanceValue,
    get_raw_value, get_statement_result,
)

MAP_KEY = "_map_"


# --------------------------
# Wire formats
# --------------------------

def _charset(content_type: Optional[str]) -> str:
    m = re.search(r'charset\s*=\s*"?([^\s;"]+)', content_type or "", re.IGNORECASE)
    return m.group(1) if m else 'utf-8'


def _decode(body: bytes | bytearray | str, content_type: Optional[str]) -> str:
    if isinstance(body, str):
        return body
    try:
        return bytes(body).decode(_charset(content_type), errors='replace')
    except LookupError:
        return bytes(body).decode('utf-8', errors='replace')


def _plain(value: Any, context: Optional[Context] = None) -> Any:
    """Typed program values and xmltodict mappings as plain lists, dicts and scalars."""
    if isinstance(value, Statement):
        context = context or Context()
        value = get_statement_result(value, context)
    if isinstance(value, Data):
        return _plain(get_raw_value(value, context or Context()), context)
    if isinstance(value, (list, tuple)):
        return [_plain(v, context) for v in value]
    if isinstance(value, collections.abc.Mapping):
        return {k: _plain(v, context) for k, v in value.items()}
    return value


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        # Declared JSON, YAML-like content
        return yaml.safe_load(text)


def _dump_xml(value: Any, pretty: bool) -> str:
    root = value if isinstance(value, dict) and len(value) == 1 else {"root": value}
    return xmltodict.unparse(root, pretty=pretty)


@dataclass(frozen=True)
class WireFormat:
    content_type: str
    markers: Tuple[str, ...]
    load: Callable[[str], Any]
    dump: Callable[[Any, bool], str]


WIRE_FORMATS: Dict[str, WireFormat] = {
    'json': WireFormat('application/json', ('json',), _load_json,
                       lambda v, pretty: json.dumps(v, ensure_ascii=False, indent=2 if pretty else None)),
    'yaml': WireFormat('application/yaml', ('yaml',), yaml.safe_load,
                       lambda v, _: yaml.safe_dump(v, sort_keys=False, allow_unicode=True)),
    'xml': WireFormat('application/xml', ('xml', 'html'), lambda text: _plain(xmltodict.parse(text)), _dump_xml),
}


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    The wire format named by a Content-Type header, else sniffed from the
    first character of `data_hint`. None when neither says anything.
    """
    ct = (content_type or "").lower()
    for name, wire in WIRE_FORMATS.items():
        if any(marker in ct for marker in wire.markers):
            return name
    hint = (data_hint or "").lstrip()[:1]
    if hint in ('{', '['):
        return 'json'
    if hint == '<':
        return 'xml'
    return None


def content_type_for(fmt: str) -> str:
    return WIRE_FORMATS[fmt].content_type


def deserialize(data: bytes | bytearray | str, *, content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """Decode a response body. Bodies in no known format, or that fail to parse, come back as text."""
    text = _decode(data, content_type)
    wire = WIRE_FORMATS.get(fmt or detect_format(content_type, text) or "")
    if wire is None:
        return text
    try:
        return wire.load(text)
    except (ValueError, yaml.YAMLError, ExpatError):
        return text


def serialize(value: Any, *, fmt: str, context: Optional[Context] = None, pretty: bool = True) -> str:
    """
    Encode a request body. `value` may be plain Python or typed data; typed
    data is read through `context` so references and cached results resolve.
    """
    wire = WIRE_FORMATS.get((fmt or '').lower())
    if wire is None:
        raise ValueError(f"Unsupported serialization format: {fmt!r}")
    return wire.dump(_plain(value, context), pretty)


# --------------------------
# Program trees
# --------------------------

def value_to_dict(value: Any) -> Any:
    match value:
        case list():
            return [statement_to_dict(s) for s in value]
        case dict():
            return {MAP_KEY: [[k, statement_to_dict(s)] for k, s in value.items()]}
        case OperationValue(parameters=parameters, statements=statements, name=name):
            out = {"parameters": [statement_to_dict(s) for s in parameters],
                   "statements": [statement_to_dict(s) for s in statements]}
            if name is not None:
                out["name"] = name
            return out
        case ConditionValue(condition=condition, true=true, false=false):
            return {"condition": statement_to_dict(condition),
                    "true": statement_to_dict(true),
                    "false": statement_to_dict(false)}
        case ReferenceValue(name=name, id=ref_id):
            return {"name": name, "id": ref_id}
        case ErrorValue(reason=reason):
            return {"reason": reason}
        case InstanceValue(class_name=class_name, constructor_args=args, instance_id=instance_id):
            return {"className": class_name,
                    "constructorArgs": [statement_to_dict(s) for s in args],
                    "instanceId": instance_id}
        case _:
            return value


def value_from_dict(raw: Any) -> Any:
    if isinstance(raw, list):
        return [statement_from_dict(s) for s in raw]
    if not isinstance(raw, dict):
        return raw
    if MAP_KEY in raw:
        return {k: statement_from_dict(s) for k, s in raw[MAP_KEY]}
    if "statements" in raw:
        return OperationValue(
            parameters=[statement_from_dict(s) for s in raw.get("parameters", [])],
            statements=[statement_from_dict(s) for s in raw["statements"]],
            name=raw.get("name"),
        )
    if "condition" in raw:
        return ConditionValue(statement_from_dict(raw["condition"]),
                              statement_from_dict(raw["true"]),
                              statement_from_dict(raw["false"]))
    if "className" in raw:
        return InstanceValue(raw["className"],
                             [statement_from_dict(s) for s in raw.get("constructorArgs", [])],
                             raw["instanceId"])
    if "reason" in raw:
        return ErrorValue(raw["reason"])
    if "name" in raw:
        return ReferenceValue(raw["name"], raw.get("id"))
    raise ValueError(f"Unrecognized value shape: {sorted(raw)}")


def data_to_dict(data: Data) -> Dict[str, Any]:
    return {"id": data.id, "type": type_to_dict(data.type), "value": value_to_dict(data.value)}


def data_from_dict(raw: Dict[str, Any]) -> Data:
    return Data(id=raw["id"], type=type_from_dict(raw["type"]), value=value_from_dict(raw.get("value")))


def statement_to_dict(statement: Statement) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": statement.id,
        "data": data_to_dict(statement.data),
        "operations": [data_to_dict(o) for o in statement.operations],
    }
    if statement.name is not None:
        out["name"] = statement.name
    if statement.is_optional:
        out["isOptional"] = True
    return out


def statement_from_dict(raw: Dict[str, Any]) -> Statement:
    return Statement(
        id=raw["id"],
        data=data_from_dict(raw["data"]),
        operations=[data_from_dict(o) for o in raw.get("operations", [])],
        name=raw.get("name"),
        is_optional=bool(raw.get("isOptional", False)),
    )


def file_to_dict(file: ProjectFile) -> Dict[str, Any]:
    content = file.content
    if file.type == "operation":
        content = {"type": type_to_dict(content["type"]), "value": value_to_dict(content["value"])}
    out = {"id": file.id, "name": file.name, "type": file.type, "content": content,
           "createdAt": file.created_at}
    for key, value in (("updatedAt", file.updated_at), ("tags", file.tags),
                       ("documentation", file.documentation)):
        if value is not None:
            out[key] = value
    return out


def file_from_dict(raw: Dict[str, Any]) -> ProjectFile:
    try:
        content = raw["content"]
        if raw["type"] == "operation":
            content = {"type": type_from_dict(content["type"]), "value": value_from_dict(content["value"])}
        return ProjectFile(
            id=raw["id"],
            name=raw["name"],
            type=raw["type"],
            content=content,
            created_at=raw.get("createdAt", 0),
            updated_at=raw.get("updatedAt"),
            tags=raw.get("tags"),
            documentation=raw.get("documentation"),
        )
    except KeyError as e:
        raise ValueError(f"Malformed project file, missing {e}") from e


def dump_project(files: List[ProjectFile], *, fmt: str = "json", name: Optional[str] = None) -> str:
    """Project files as JSON or YAML text; object entries keep insertion order."""
    payload: Dict[str, Any] = {"files": [file_to_dict(f) for f in files]}
    if name is not None:
        payload = {"name": name, **payload}
    if fmt == "json":
        return json.dumps(payload, ensure_ascii=False, indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(payload, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported project format: {fmt!r}")


def load_project(text: str, *, fmt: str = "json") -> List[ProjectFile]:
    if fmt == "json":
        payload = json.loads(text)
    elif fmt == "yaml":
        payload = yaml.safe_load(text)
    else:
        raise ValueError(f"Unsupported project format: {fmt!r}")
    if isinstance(payload, list):
        payload = {"files": payload}
    if not isinstance(payload, dict) or "files" not in payload:
        raise ValueError("Project must be a mapping with a 'files' list")
    return [file_from_dict(f) for f in payload["files"]]


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "content_type_for",
    "dump_project",
    "load_project",
    "data_to_dict",
    "data_from_dict",
    "statement_to_dict",
    "statement_from_dict",
]
