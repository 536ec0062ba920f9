"""Send one HTTP request described by the job and report on the response.

Job params: ``method``, ``url``, ``headers`` (one ``Name: value`` per line),
``data``, ``timeout`` (seconds, 0 for none), ``follow``, ``ssl_cert_bypass``,
``download``, ``success_match``, ``error_match``. URL, headers and data
accept ``[placeholder]`` tokens resolved against the job record.
"""

from __future__ import annotations

import html
import json
import logging
import mimetypes
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import unquote, urlsplit

import httpx

from satellite.errors import describe_error
from satellite.perf import Perf
from satellite.plugins.base import PluginContext, PluginError, safe_job_id
from satellite.protocol.contracts import FileRef, HtmlReport, Job, Table, Update

logger = logging.getLogger(__name__)

_URL_SHAPE = re.compile(r"^https?://\S+$", re.IGNORECASE)
_PLACEHOLDER = re.compile(r"\[([^\[\]]+)\]")
_HEADER_LINE = re.compile(r"^([^:]+):\s*(.+)$")
_TEXTUAL_TYPE = re.compile(r"(text|javascript|json|css|html)", re.IGNORECASE)
_JSON_TYPE = re.compile(r"(application|text)/json", re.IGNORECASE)
_DISPOSITION_QUOTED = re.compile(r'filename="(.+?)"')
_DISPOSITION_BARE = re.compile(r"filename=([^;]+)")
_HAS_EXTENSION = re.compile(r"\.\w+$")
_BODYLESS_METHODS = frozenset({"GET", "HEAD"})


@dataclass(frozen=True, slots=True)
class HttpRequestSpec:
    """Validated request parameters for one job."""

    method: str
    url: str
    headers: list[tuple[str, str]]
    content: bytes | None
    timeout: float | None
    follow: bool
    verify: bool
    download_path: Path | None
    success_match: re.Pattern[str]
    error_match: re.Pattern[str] | None
    success_pattern: str
    error_pattern: str


class HttpPlugin:
    """HTTP client plugin."""

    name = "http"
    handles_termination = False

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def run(self, job: Job, context: PluginContext) -> Update:
        spec = build_request(job, context)
        succeeded = False
        try:
            update = await self._send(spec, context)
            succeeded = update.succeeded
            return update
        finally:
            if spec.download_path is not None and not succeeded:
                spec.download_path.unlink(missing_ok=True)

    async def _send(self, spec: HttpRequestSpec, context: PluginContext) -> Update:
        settings = context.settings.http
        perf = Perf()
        perf.begin("total")
        client = httpx.AsyncClient(
            verify=spec.verify,
            follow_redirects=spec.follow,
            max_redirects=settings.max_redirects,
            timeout=httpx.Timeout(spec.timeout),
            transport=self._transport,
            headers={"User-Agent": settings.user_agent},
        )
        async with client:
            try:
                perf.begin("wait")
                async with client.stream(
                    spec.method,
                    spec.url,
                    headers=spec.headers,
                    content=spec.content,
                ) as response:
                    perf.end("wait")
                    with perf.timer("receive"):
                        body = await _receive(response, spec, context, perf)
            except (httpx.HTTPError, httpx.InvalidURL) as error:
                perf.end("total")
                logger.warning("HTTP request to %s failed: %s", spec.url, error)
                description = describe_error(error)
                context.log(f"\n{description}")
                return Update.completion(1, description, perf=perf.metrics())
        perf.end("total")
        return _build_update(response, body, spec, context, perf)


def build_request(job: Job, context: PluginContext) -> HttpRequestSpec:
    """Validate params and resolve placeholders; no network activity happens here."""

    params = job.params
    raw_url = params.get("url")
    if not isinstance(raw_url, str) or not _URL_SHAPE.match(raw_url):
        raise PluginError(f"Malformed URL: {raw_url or '(n/a)'}")

    success_pattern = str(params.get("success_match") or "")
    error_pattern = str(params.get("error_match") or "")
    success_match = _compile(success_pattern or ".*", "success_match")
    error_match = _compile(error_pattern, "error_match") if error_pattern else None

    raw_timeout = params.get("timeout") or 0
    try:
        timeout = float(raw_timeout)
    except (TypeError, ValueError) as error:
        raise PluginError(f"Invalid timeout: {raw_timeout}") from error

    method = str(params.get("method") or "GET").upper()
    url = substitute_placeholders(raw_url, job.record)
    context.log(f"Sending HTTP {method} to URL:\n{url}")

    headers: list[tuple[str, str]] = []
    raw_headers = params.get("headers")
    if isinstance(raw_headers, str) and raw_headers.strip():
        header_text = substitute_placeholders(raw_headers, job.record)
        context.log(f"\nRequest Headers:\n{header_text.strip()}")
        headers = parse_headers(header_text)
        for name, value in headers:
            # httpx encodes header names and values as ASCII.
            try:
                name.encode("ascii")
                value.encode("ascii")
            except UnicodeEncodeError as error:
                raise PluginError(f"Invalid header: {name}") from error

    content = None
    if method not in _BODYLESS_METHODS:
        data = substitute_placeholders(str(params.get("data") or ""), job.record)
        context.log(f"\nPOST Data:\n{data.strip()}")
        content = data.encode("utf-8")

    download_path = None
    if params.get("download"):
        download_path = Path(job.cwd) / f"{safe_job_id(job.id)}-download.bin"

    return HttpRequestSpec(
        method=method,
        url=url,
        headers=headers,
        content=content,
        timeout=timeout if timeout > 0 else None,
        follow=bool(params.get("follow")),
        verify=not params.get("ssl_cert_bypass"),
        download_path=download_path,
        success_match=success_match,
        error_match=error_match,
        success_pattern=success_pattern,
        error_pattern=error_pattern,
    )


def substitute_placeholders(text: str, values: Mapping[str, Any]) -> str:
    """Replace ``[key]`` / ``[a/b]`` / ``[a.b]`` tokens; unknown tokens stay as-is."""

    def _replace(match: re.Match[str]) -> str:
        value = _lookup(values, match.group(1))
        if value is None or isinstance(value, (dict, list)):
            return match.group(0)
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    return _PLACEHOLDER.sub(_replace, text)


def _lookup(values: Mapping[str, Any], path: str) -> Any:
    current: Any = values
    for part in re.split(r"[/.]", path.strip()):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def parse_headers(text: str) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    for line in text.replace("\r\n", "\n").strip().split("\n"):
        match = _HEADER_LINE.match(line.strip())
        if match:
            headers.append((match.group(1).strip(), match.group(2).strip()))
    return headers


def infer_filename(url: str, headers: httpx.Headers) -> str:
    """Name for a downloaded body: URL basename, overridden by Content-Disposition."""

    filename = unquote(PurePosixPath(urlsplit(url).path).name) or "output"
    disposition = headers.get("content-disposition", "")
    match = _DISPOSITION_QUOTED.search(disposition) or _DISPOSITION_BARE.search(disposition)
    if match and match.group(1).strip():
        filename = match.group(1).strip()
    if not _HAS_EXTENSION.search(filename):
        filename += default_extension(headers.get("content-type", ""))
    return filename


def default_extension(content_type: str) -> str:
    mime = content_type.split(";")[0].strip().lower()
    if not mime:
        return ".bin"
    extension = mimetypes.guess_extension(mime)
    if extension:
        return extension
    subtype = mime.rsplit("/", 1)[-1]
    if re.fullmatch(r"[\w.+-]+", subtype):
        return "." + subtype
    return ".bin"


def _compile(pattern: str, param: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as error:
        raise PluginError(f"Invalid {param} pattern: {error}") from error


async def _receive(
    response: httpx.Response,
    spec: HttpRequestSpec,
    context: PluginContext,
    perf: Perf,
) -> bytes:
    try:
        expected = int(response.headers.get("content-length", "0") or 0)
    except ValueError:
        expected = 0

    received = 0
    chunks: list[bytes] = []
    download = None
    if spec.download_path is not None:
        try:
            download = spec.download_path.open("wb")
        except OSError as error:
            raise PluginError(f"Failed to open download file: {describe_error(error)}") from error
    try:
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if download is not None:
                download.write(chunk)
            else:
                chunks.append(chunk)
            if expected:
                context.progress(received / expected)
    finally:
        if download is not None:
            download.close()
    perf.count("bytes_received", received)
    return b"".join(chunks)


def _decode(body: bytes, response: httpx.Response) -> str:
    try:
        return body.decode(response.charset_encoding or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def _build_update(
    response: httpx.Response,
    body: bytes,
    spec: HttpRequestSpec,
    context: PluginContext,
    perf: Perf,
) -> Update:
    status = response.status_code
    failure: tuple[int, str] | None = None
    if status < 200 or status >= 400:
        failure = (status, f"HTTP {status} {response.reason_phrase}".strip())

    text = "" if spec.download_path is not None else _decode(body, response)
    if failure is None:
        if spec.error_match is not None and spec.error_match.search(text):
            failure = (1, f"Response contains error match: {spec.error_pattern}")
        elif not spec.success_match.search(text):
            failure = (1, f"Response missing success match: {spec.success_pattern}")

    if failure is not None:
        update = Update.completion(failure[0], failure[1])
    else:
        update = Update.completion(0, f"Success (HTTP {status} {response.reason_phrase})".strip())
    context.log(f"\n{update.description}")

    rows: list[list[Any]] = []
    context.log("\nResponse Headers:")
    for raw_name, raw_value in response.headers.raw:
        name = raw_name.decode("latin-1")
        value = raw_value.decode("latin-1")
        rows.append([name, value])
        context.log(f"{name}: {value}")
    update.table = Table(
        title="HTTP Response Headers",
        header=["Header Name", "Header Value"],
        rows=sorted(rows, key=lambda row: row[0].lower()),
    )

    if failure is None:
        update.data = {
            "statusCode": status,
            "statusMessage": response.reason_phrase,
            "headers": dict(response.headers),
        }
        if spec.download_path is not None:
            update.files = [
                FileRef(
                    path=str(spec.download_path),
                    filename=infer_filename(spec.url, response.headers),
                    delete=True,
                ),
            ]

    content_type = response.headers.get("content-type", "")
    if text and _TEXTUAL_TYPE.search(content_type):
        context.log(f"\nRaw Response Content:\n{text.strip()}")
        preview = text[: context.settings.http.preview_chars]
        update.html = HtmlReport(
            title="Raw Response Content",
            content="<pre>" + html.escape(preview.strip(), quote=False) + "</pre>",
        )
        if update.data is not None and _JSON_TYPE.search(content_type):
            _attach_json(update.data, body, context)

    update.perf = perf.metrics()
    context.log(f"\nPerformance Metrics: {perf.summarize()}")
    return update


def _attach_json(data: dict[str, Any], body: bytes, context: PluginContext) -> None:
    if len(body) >= context.settings.http.json_parse_max_bytes:
        return
    try:
        data["json"] = json.loads(body)
    except ValueError as error:
        logger.warning("Failed to parse JSON response: %s", error)
        context.log(
            f"\nWARNING: Failed to parse JSON response: {error} "
            "(could not include JSON in job data)",
        )
