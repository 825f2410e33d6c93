"""Wire codec for the provider's messages endpoint.

Request bodies are serialized with json. Responses are read with a small
key/value string extractor rather than a full JSON parse: the fields we
need (response text, stream deltas, error messages) live in fixed, small
shapes, and stream fragments have to be decoded one SSE line at a time.
"""

import json
import string

DATA_PREFIX = "data:"
END_OF_STREAM = "[DONE]"
CONTENT_DELTA = "content_block_delta"
ERROR_EVENT = "error"

_WHITESPACE = " \t\r\n"
_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}


def build_payload(
    model: str, max_tokens: int, system: str, turns, *, stream: bool = False
) -> str:
    """Serialize a messages request.

    json escapes quotes, backslashes and every control character
    (\\n, \\r, \\t as short escapes, the rest as \\u00XX).
    """
    body: dict = {"model": model, "max_tokens": max_tokens}
    if stream:
        body["stream"] = True
    body["system"] = system
    body["messages"] = [{"role": t.role, "content": t.content} for t in turns]
    return json.dumps(body, ensure_ascii=False)


def _hex4(text: str, pos: int) -> int | None:
    chunk = text[pos : pos + 4]
    if len(chunk) != 4 or any(c not in string.hexdigits for c in chunk):
        return None
    return int(chunk, 16)


def _read_string(text: str, pos: int) -> str | None:
    """Decode a JSON string body starting just after its opening quote.

    Returns None when the closing quote is missing (truncated input).
    """
    out: list[str] = []
    end = len(text)
    while pos < end:
        ch = text[pos]
        if ch == '"':
            return "".join(out)
        if ch != "\\":
            out.append(ch)
            pos += 1
            continue
        if pos + 1 >= end:
            return None
        esc = text[pos + 1]
        if esc != "u":
            out.append(_SIMPLE_ESCAPES.get(esc, "\\" + esc))
            pos += 2
            continue
        code = _hex4(text, pos + 2)
        if code is None:
            if pos + 6 > end:
                return None
            out.append("\\u")
            pos += 2
            continue
        pos += 6
        # Surrogate pair
        if 0xD800 <= code < 0xDC00 and text[pos : pos + 2] == "\\u":
            low = _hex4(text, pos + 2)
            if low is not None and 0xDC00 <= low < 0xE000:
                code = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
                pos += 6
        out.append(chr(code))
    return None


def find_json_string(text: str, key: str, start: int = 0) -> str | None:
    """Return the first string value stored under ``"key":`` at or after start.

    Matches whose value is not a string (objects, numbers, arrays) are
    skipped and the scan continues. Returns None when nothing matches or
    the matched string is cut off.
    """
    needle = f'"{key}"'
    end = len(text)
    pos = start
    while True:
        found = text.find(needle, pos)
        if found < 0:
            return None
        p = found + len(needle)
        while p < end and text[p] in _WHITESPACE:
            p += 1
        if p >= end or text[p] != ":":
            pos = found + 1
            continue
        p += 1
        while p < end and text[p] in _WHITESPACE:
            p += 1
        if p >= end or text[p] != '"':
            pos = found + 1
            continue
        return _read_string(text, p + 1)


def extract_response_text(body: str) -> str | None:
    """First ``text`` field nested under the response's ``content`` array."""
    anchor = body.find('"content"')
    if anchor < 0:
        return None
    return find_json_string(body, "text", anchor)


def extract_error_message(body: str) -> str | None:
    """Error responses look like ``{"error": {"message": "..."}}``."""
    return find_json_string(body, "message")


class SseParser:
    """Incremental server-sent-events decoder for content deltas.

    Bytes may be fed at any boundary; lines are only decoded once their
    terminating newline has arrived, so multi-byte characters split across
    chunks come out intact. Anything after the end-of-stream line is
    ignored.
    """

    def __init__(self):
        self._buffer = bytearray()
        self.done = False
        self.error: str | None = None

    def feed(self, data: bytes) -> list[str]:
        """Consume a chunk and return the text deltas it completed."""
        self._buffer += data
        deltas: list[str] = []
        while True:
            nl = self._buffer.find(b"\n")
            if nl < 0:
                break
            line = bytes(self._buffer[:nl])
            del self._buffer[: nl + 1]
            self._handle_line(line, deltas)
        return deltas

    def close(self) -> list[str]:
        """Flush a final line that arrived without a trailing newline."""
        deltas: list[str] = []
        if self._buffer:
            line = bytes(self._buffer)
            self._buffer.clear()
            self._handle_line(line, deltas)
        return deltas

    def _handle_line(self, raw: bytes, deltas: list[str]) -> None:
        if self.done:
            return
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        line = raw.decode("utf-8", errors="replace")
        if not line.startswith(DATA_PREFIX):
            return
        payload = line[len(DATA_PREFIX) :]
        if payload.startswith(" "):
            payload = payload[1:]
        if payload.strip() == END_OF_STREAM:
            self.done = True
            return
        kind = find_json_string(payload, "type")
        if kind == CONTENT_DELTA:
            text = find_json_string(payload, "text")
            if text:
                deltas.append(text)
        elif kind == ERROR_EVENT:
            self.error = find_json_string(payload, "message") or "stream error"
