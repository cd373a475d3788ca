"""
HTTP request executor: sends a request snapshot and summarises the response.
The store only ever sees the summary, attached as the request's last response.
"""
import time

import httpx

from reqhive import tree
from reqhive.store import CollectionStore, RequestSnapshot

DEFAULT_TIMEOUT = 30.0


def _build_content(snapshot: RequestSnapshot, headers: list[tuple[str, str]]) -> bytes | None:
    if not snapshot.body or not snapshot.method.carries_body:
        return None
    if snapshot.body_kind is tree.BodyKind.JSON and 'content-type' not in {k.lower() for k, _ in headers}:
        headers.append(('Content-Type', 'application/json'))
    return snapshot.body.encode('utf-8')


async def execute_request(
    snapshot: RequestSnapshot,
    *,
    ssl_verify: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tree.ResponseSummary:
    """
    Send the request described by *snapshot*.
    Disabled headers are skipped, duplicate names are sent as-is. Transport
    failures come back as a summary with status 0 and the error text.
    """
    headers = snapshot.enabled_headers
    content = _build_content(snapshot, headers)

    started = time.perf_counter()
    try:
        async with httpx.AsyncClient(verify=ssl_verify, transport=transport) as client:
            response = await client.request(
                snapshot.method.value, snapshot.url,
                headers=headers,
                content=content,
                timeout=timeout,
            )
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return tree.ResponseSummary(
            status=0,
            size=0,
            elapsed_ms=(time.perf_counter() - started) * 1000,
            error=str(e) or type(e).__name__,
        )

    body = response.content
    return tree.ResponseSummary(
        status=response.status_code,
        size=len(body),
        elapsed_ms=(time.perf_counter() - started) * 1000,
        headers=tuple(response.headers.multi_items()),
        body=body,
    )


async def send_request(
    store: CollectionStore,
    request_id: str,
    *,
    ssl_verify: bool = True,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tree.ResponseSummary:
    snapshot = store.snapshot_request(request_id)
    summary = await execute_request(snapshot, ssl_verify=ssl_verify, timeout=timeout, transport=transport)
    store.attach_response(request_id, summary)
    return summary
