"""Scope-leak check for the contact-center inbox list.

The browser fetches ``messaging.inboxList`` on its own while the contact
center loads; the harness only observes that response. For the "my" view the
backend declares how many threads belong to the caller (``meta.myCount``);
returning any other number of rows means threads outside the caller's scope
leaked into the response.
"""

from dataclasses import dataclass

from errors import AssertionViolation, EnvelopeParseError


INBOX_LIST_ENDPOINT = "/api/trpc/messaging.inboxList"


@dataclass
class InboxPayload:
    rows: list
    my_count: int | None


@dataclass
class ScopeCheck:
    rows: int
    my_count: int | None
    strict: bool


def is_inbox_list_response(response) -> bool:
    return INBOX_LIST_ENDPOINT in response.url and response.request.method == "GET"


def _require_mapping(value, path: str) -> dict:
    if not isinstance(value, dict):
        raise EnvelopeParseError(f"Expected object at {path}, got {type(value).__name__}")
    return value


def parse_inbox_envelope(body) -> InboxPayload:
    """Extract rows/meta from a tRPC response.

    Accepts the batched form ``[{"result": {"data": {"json": ...}}}]`` and the
    single form ``{"result": {"data": {"json": ...}}}``.
    """
    if isinstance(body, list):
        if not body:
            raise EnvelopeParseError("Empty batch response")
        entry, path = body[0], "$[0]"
    else:
        entry, path = body, "$"
    entry = _require_mapping(entry, path)
    for key in ("result", "data", "json"):
        path = f"{path}.{key}"
        if key not in entry:
            raise EnvelopeParseError(f"Missing {path} in inboxList response")
        entry = entry[key]
        if key != "json":
            entry = _require_mapping(entry, path)
    payload = _require_mapping(entry, path)

    rows = payload.get("rows")
    if not isinstance(rows, list):
        raise EnvelopeParseError(f"Expected list at {path}.rows, got {type(rows).__name__}")
    meta = payload.get("meta")
    if meta is None:
        meta = {}
    meta = _require_mapping(meta, f"{path}.meta")
    my_count = meta.get("myCount")
    # bool is an int subclass; a boolean count is not a count
    if isinstance(my_count, bool) or not isinstance(my_count, int):
        my_count = None
    return InboxPayload(rows=rows, my_count=my_count)


def check_scope(payload: InboxPayload) -> ScopeCheck:
    if payload.my_count is None:
        return ScopeCheck(rows=len(payload.rows), my_count=None, strict=False)
    if len(payload.rows) != payload.my_count:
        raise AssertionViolation(
            f"inboxList leak: {len(payload.rows)} rows returned but meta.myCount={payload.my_count}",
            diagnostics={"rows": len(payload.rows), "myCount": payload.my_count},
        )
    return ScopeCheck(rows=len(payload.rows), my_count=payload.my_count, strict=True)


async def check_response(response, verbose: bool = False) -> ScopeCheck:
    try:
        body = await response.json()
    except ValueError as e:
        raise EnvelopeParseError(f"inboxList response is not JSON: {e}") from e
    result = check_scope(parse_inbox_envelope(body))
    if not result.strict:
        print(f"⚠️ inboxList meta.myCount absent; strict leak check skipped ({result.rows} rows)")
    elif verbose:
        print(f"✓ inboxList rows={result.rows} match meta.myCount")
    return result
