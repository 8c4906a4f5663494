import asyncio
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any

import httpx

from logicflow.flow_serialize import deserialize


@dataclass
class HttpResponse:
    """A settled HTTP response, kept in the instance side table."""
    status: int
    content: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return deserialize(self.content, content_type=self.content_type or "application/json")


async def http_request(method: str, url: str, *, config: Optional[Dict] = None, data: Optional[str] = None) -> HttpResponse:
    """
    Core HTTP helper.

    Config keys: `timeout`, `retries`, `backoff`, `headers`, `params` and
    `raise-for-status` (default true: non-2xx responses raise after retries).
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))
    params = dict(cfg.pop('params', {}))
    raise_for_status = bool(cfg.pop('raise-for-status', True))

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                body = (data.encode('utf-8') if isinstance(data, str) else data) if data is not None else None
                if body is not None:
                    headers = {**headers}
                    headers.setdefault("Content-Type", "text/plain; charset=utf-8")
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    params=params,
                    content=body,
                )
                # Lower-case header keys for consistent lookups
                headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
                if raise_for_status and not 200 <= resp.status_code < 300:
                    preview = (resp.text or "")[:200]
                    raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")
                return HttpResponse(int(resp.status_code), resp.content, headers_map)
            except Exception as e:
                last_exc = e
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise last_exc


@dataclass(frozen=True)
class HttpClient:
    """
    An immutable request builder. Every configuring method returns a new
    client, so a chain of operations never mutates an earlier stage.
    """
    base_url: str = ""
    header_map: Dict[str, str] = field(default_factory=dict)
    query_map: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=lambda: {"raise-for-status": False})

    def url(self, path: str, replace_url: bool = False) -> 'HttpClient':
        return replace(self, base_url=path if replace_url else self.base_url + path)

    def headers(self, headers: Dict[str, Any]) -> 'HttpClient':
        return replace(self, header_map={**self.header_map, **{k: str(v) for k, v in headers.items()}})

    def accept(self, content_type: str) -> 'HttpClient':
        return self.headers({"Accept": content_type})

    def content(self, content_type: str) -> 'HttpClient':
        return self.headers({"Content-Type": content_type})

    def auth(self, value: str) -> 'HttpClient':
        return self.headers({"Authorization": value})

    def query(self, params: Dict[str, Any]) -> 'HttpClient':
        return replace(self, query_map={**self.query_map, **params})

    def _config(self) -> Dict[str, Any]:
        return {**self.config, "headers": dict(self.header_map), "params": dict(self.query_map)}

    async def get(self) -> HttpResponse:
        return await http_request('GET', self.base_url, config=self._config())

    async def delete(self) -> HttpResponse:
        return await http_request('DELETE', self.base_url, config=self._config())

    async def post(self, data: Optional[str] = None) -> HttpResponse:
        return await http_request('POST', self.base_url, config=self._config(), data=data)

    async def put(self, data: Optional[str] = None) -> HttpResponse:
        return await http_request('PUT', self.base_url, config=self._config(), data=data)
