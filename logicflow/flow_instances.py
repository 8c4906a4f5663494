"""
Instance classes and their operations.

Host objects (dates, URLs, HTTP clients and responses) cannot be represented
as typed data. An instance Data node holds only a handle; the object itself
lives in the ExecutionStore's instance side table under that handle.
"""
import datetime
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from logicflow.flow_types import (
    DataType, UnknownType, StringType, NumberType, DictionaryType, InstanceType, Parameter,
)
from logicflow.flow_datatypes import (
    Context, Data, InstanceValue,
    create_data, create_runtime_error, create_data_from_raw_value, get_raw_value, new_id,
)
from logicflow.flow_http import HttpClient, HttpResponse
from logicflow.flow_serialize import content_type_for, detect_format, serialize
from logicflow.flow_operations import OperationListItem, Parameters


# =================================================================
# Classes
# =================================================================

def _parse_date(value: Any = None) -> datetime.datetime:
    if value in (None, ""):
        return datetime.datetime.now(datetime.timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.datetime.fromtimestamp(value / 1000, datetime.timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def _parse_url(value: Any = None) -> httpx.URL:
    url = httpx.URL(str(value or ""))
    if not url.scheme or not url.host:
        raise ValueError(f"Invalid URL: {value!r}")
    return url


@dataclass(frozen=True)
class InstanceClass:
    name: str
    constructor: Callable[..., Any]
    constructor_args: Tuple[DataType, ...] = ()
    python_type: Optional[type] = None


INSTANCE_TYPES: Dict[str, InstanceClass] = {
    "Date": InstanceClass("Date", _parse_date, (StringType(),), datetime.datetime),
    "URL": InstanceClass("URL", _parse_url, (StringType(),), httpx.URL),
    "HttpClient": InstanceClass("HttpClient", lambda url="": HttpClient(base_url=str(url or "")),
                                (StringType(),), HttpClient),
    "HttpResponse": InstanceClass("HttpResponse", lambda status=0: HttpResponse(int(status or 0)),
                                  (), HttpResponse),
}


def create_instance(class_name: str, args: List[Data], context: Context) -> Any:
    """Construct the host object for `class_name` from evaluated constructor args."""
    instance_class = INSTANCE_TYPES.get(class_name)
    if instance_class is None:
        raise KeyError(f"Unknown instance class: {class_name}")
    raw_args = [get_raw_value(arg, context) for arg in args]
    return instance_class.constructor(*raw_args)


def instance_class_name(obj: Any) -> Optional[str]:
    for instance_class in INSTANCE_TYPES.values():
        if instance_class.python_type is not None and isinstance(obj, instance_class.python_type):
            return instance_class.name
    return None


def wrap_instance(obj: Any, context: Context, class_name: Optional[str] = None) -> Data:
    """Store `obj` under a fresh handle and return instance data pointing at it."""
    class_name = class_name or instance_class_name(obj)
    if class_name is None:
        return create_data_from_raw_value(obj, context)
    instance_id = new_id()
    context.store.set_instance(instance_id, obj)
    return create_data(type=InstanceType(class_name, INSTANCE_TYPES[class_name].constructor_args),
                       value=InstanceValue(class_name, [], instance_id))


def _instance_type(class_name: str) -> InstanceType:
    return InstanceType(class_name, INSTANCE_TYPES[class_name].constructor_args)


def create_instance_operation(class_name: str, name: str, method: Callable[..., Any],
                              parameters: Parameters = (), should_cache_result: bool = False,
                              result_type: Optional[DataType] = None) -> OperationListItem:
    """
    Wrap `method(instance, context, *raw_args)` as an operation on instances of
    `class_name`. Host objects in the result become new instance data, other
    results are converted back into typed data.
    """
    def _parameters(data: Data) -> List[Parameter]:
        extra = parameters(data) if callable(parameters) else list(parameters)
        return [Parameter(InstanceType(class_name))] + extra

    async def _handler(context: Context, data: Data, *args: Data) -> Data:
        instance = get_raw_value(data, context)
        if instance is None:
            return create_runtime_error(f"{class_name} instance not found")
        result = method(instance, context, *[get_raw_value(a, context) for a in args])
        if inspect.isawaitable(result):
            result = await result
        if instance_class_name(result) is not None:
            return wrap_instance(result, context)
        return create_data_from_raw_value(result, context)

    return OperationListItem(name, _parameters, _handler, should_cache_result=should_cache_result, result=result_type)


# =================================================================
# Date
# =================================================================

def _date_op(name: str, fn: Callable[[datetime.datetime], Any],
             result_type: DataType = NumberType()) -> OperationListItem:
    return create_instance_operation("Date", name, lambda d, _: fn(d), result_type=result_type)


DATE_OPERATIONS = [
    _date_op("getFullYear", lambda d: d.year),
    _date_op("getMonth", lambda d: d.month - 1),
    _date_op("getDate", lambda d: d.day),
    _date_op("getTime", lambda d: int(d.timestamp() * 1000)),
    _date_op("getHours", lambda d: d.hour),
    _date_op("getMinutes", lambda d: d.minute),
    _date_op("getSeconds", lambda d: d.second),
    _date_op("toISOString", lambda d: d.astimezone(datetime.timezone.utc)
             .isoformat(timespec="milliseconds").replace("+00:00", "Z"), StringType()),
    _date_op("toDateString", lambda d: d.strftime("%a %b %d %Y"), StringType()),
]


# =================================================================
# URL
# =================================================================

def _url_port(url: httpx.URL) -> str:
    return "" if url.port is None else str(url.port)


def _url_origin(url: httpx.URL) -> str:
    port = f":{url.port}" if url.port is not None else ""
    return f"{url.scheme}://{url.host}{port}"


def _url_op(name: str, fn: Callable[[httpx.URL], str]) -> OperationListItem:
    return create_instance_operation("URL", name, lambda u, _: fn(u), result_type=StringType())


URL_OPERATIONS = [
    _url_op("getHref", str),
    _url_op("getOrigin", _url_origin),
    _url_op("getProtocol", lambda u: f"{u.scheme}:"),
    _url_op("getHostname", lambda u: u.host),
    _url_op("getPort", _url_port),
    _url_op("getPathname", lambda u: u.path or "/"),
    _url_op("getSearch", lambda u: f"?{u.query.decode()}" if u.query else ""),
    _url_op("getHash", lambda u: f"#{u.fragment}" if u.fragment else ""),
    _url_op("toString", str),
]


# =================================================================
# HTTP client and response
# =================================================================

def _send(method: str) -> Callable[..., Any]:
    def _call(client: HttpClient, _context: Context, body: Any = None):
        if method in ("get", "delete"):
            return getattr(client, method)()
        if body is None or isinstance(body, str):
            return getattr(client, method)(body)
        # Structured bodies follow the declared Content-Type, JSON when none is set
        fmt = detect_format(client.header_map.get("Content-Type"))
        if fmt is None:
            fmt, client = "json", client.content(content_type_for("json"))
        return getattr(client, method)(serialize(body, fmt=fmt, pretty=False))
    return _call


_STRING = [Parameter(StringType())]
_BODY = [Parameter(UnknownType(), "body", is_optional=True)]


def _client_op(name: str, method: Callable[..., Any], parameters: Parameters = ()) -> OperationListItem:
    return create_instance_operation("HttpClient", name, method, parameters,
                                     result_type=_instance_type("HttpClient"))


def _request_op(name: str, parameters: Parameters = ()) -> OperationListItem:
    return create_instance_operation("HttpClient", name, _send(name), parameters, should_cache_result=True,
                                     result_type=_instance_type("HttpResponse"))


HTTP_CLIENT_OPERATIONS = [
    _client_op("url", lambda c, _, path: c.url(path), _STRING),
    _client_op("headers", lambda c, _, h: c.headers(h or {}), [Parameter(DictionaryType(StringType()))]),
    _client_op("accept", lambda c, _, ct: c.accept(ct), _STRING),
    _client_op("content", lambda c, _, ct: c.content(ct), _STRING),
    _client_op("auth", lambda c, _, value: c.auth(value), _STRING),
    _client_op("query", lambda c, _, q: c.query(q or {}), [Parameter(DictionaryType(UnknownType()))]),
    _request_op("get"),
    _request_op("delete"),
    _request_op("post", _BODY),
    _request_op("put", _BODY),
]

HTTP_RESPONSE_OPERATIONS = [
    create_instance_operation("HttpResponse", "status", lambda r, _: r.status, result_type=NumberType()),
    create_instance_operation("HttpResponse", "text", lambda r, _: r.text(), result_type=StringType()),
    create_instance_operation("HttpResponse", "json", lambda r, _: r.json()),
    create_instance_operation("HttpResponse", "headers", lambda r, _: dict(r.headers),
                              result_type=DictionaryType(StringType())),
]


INSTANCE_OPERATIONS = DATE_OPERATIONS + URL_OPERATIONS + HTTP_CLIENT_OPERATIONS + HTTP_RESPONSE_OPERATIONS
