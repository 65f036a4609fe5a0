# services/sanitizer.py
"""
Repair of near-JSON LLM output.

REPAIRS is an ordered list of pure str -> str transforms. Each one is
idempotent and, unless it has to look at values, leaves the contents of
double-quoted strings alone. `sanitize()` applies them in order and then tries
progressively looser parse strategies:

    direct       json.loads on the repaired text
    activities   bracket-match the "activities" array and parse only that
    objects      parse each {...} element of the array on its own and drop
                 the ones that still fail
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import ParseError
from request_context import get_request_id

log = logging.getLogger("pipeline")

Repair = Callable[[str], str]

_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"')
_FENCE_RE = re.compile(r"```[A-Za-z]*")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WS_RE = re.compile(r"\s+")

_NUMERIC_KEY = r'"[A-Za-z_]*(?:price|Price|amount|Amount|cost|Cost|duration|Duration|rating|Rating|reviews|Reviews)[A-Za-z_]*"'
_NUM = r"(\d+(?:\.\d+)?)"
_QUOTED_RANGE_RE = re.compile(
    r"(" + _NUMERIC_KEY + r"\s*:\s*)\"\s*[$€£¥]?\s*" + _NUM + r"\s*(?:-|–|to)\s*[$€£¥]?\s*" + _NUM + r"\s*\""
)
_BARE_RANGE_RE = re.compile(r"(:\s*)" + _NUM + r"\s*(?:-|–)\s*" + _NUM + r"(?=\s*[,}\]])")
_LITERAL_RE = re.compile(r"(?<![\w$])(-?Infinity|NaN|undefined)(?![\w$])")
_CURRENCY_RE = re.compile(r"(:\s*)[$€£¥]\s*(?=\d)")
_SINGLE_QUOTED_RE = re.compile(r"'([^'\"]*)'")
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$-]*)(\s*:)")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_DUPLICATE_COMMA_RE = re.compile(r",(\s*,)+")
_LEADING_COMMA_RE = re.compile(r"([\[{]\s*),")
_ADJACENT_OBJECTS_RE = re.compile(r"}\s*{")
_ADJACENT_ARRAYS_RE = re.compile(r"]\s*\[")
_ACTIVITIES_KEY_RE = re.compile(r"""["']?activities["']?\s*:""")
_VALUE_END_RE = re.compile(r"(?:[}\]\d]|true|false|null)\s+$")

_ROOT_WRAPPERS = {"itinerary", "plan", "data", "result", "response"}
_ANCHOR_FIELDS = ("name", "title", "day", "dayNumber", "day_number")

# ---------- segment helpers ----------

def _segments(text: str) -> List[Tuple[bool, str]]:
    """Split into (is_string, chunk) pieces along double-quoted strings."""
    out: List[Tuple[bool, str]] = []
    pos = 0
    for m in _STRING_RE.finditer(text):
        if m.start() > pos:
            out.append((False, text[pos:m.start()]))
        out.append((True, m.group(0)))
        pos = m.end()
    if pos < len(text):
        out.append((False, text[pos:]))
    return out

def _outside_strings(fn: Repair) -> Repair:
    def apply(text: str) -> str:
        return "".join(chunk if is_str else fn(chunk) for is_str, chunk in _segments(text))
    apply.__name__ = fn.__name__
    apply.__doc__ = fn.__doc__
    return apply

def _match_bracket(text: str, start: int) -> int:
    """Index of the bracket closing text[start], skipping strings; -1 if unterminated."""
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_str = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
    return -1

def _fmt_num(x: float) -> str:
    return json.dumps(round(x, 4))

# ---------- repairs, in application order ----------

def strip_fences_and_controls(text: str) -> str:
    return _CONTROL_RE.sub("", _FENCE_RE.sub("", text))

def normalize_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()

def _top_level_regions(text: str) -> List[str]:
    """Every outermost {...} or [...] region, left to right; an unterminated one runs to the end."""
    regions: List[str] = []
    pos = 0
    while True:
        starts = [i for i in (text.find("{", pos), text.find("[", pos)) if i >= 0]
        if not starts:
            return regions
        start = min(starts)
        end = _match_bracket(text, start)
        if end < 0:
            regions.append(text[start:])
            return regions
        regions.append(text[start:end + 1])
        pos = end + 1

def trim_to_json(text: str) -> str:
    """
    Drop prose around the JSON value.

    Bracketed prose ("{as requested}") has no key separator and is skipped. The
    region naming "activities" wins; several bare objects one after another are
    joined into one array so none of them is lost.
    """
    regions = _top_level_regions(text)
    if not regions:
        return text
    for region in regions:
        if _ACTIVITIES_KEY_RE.search(region):
            return region
    members = [r for r in regions if ":" in r]
    objects = [r for r in members if r.startswith("{")]
    if len(objects) > 1 and len(objects) == len(members):
        return "[" + ",".join(objects) + "]"
    for region in members or regions:
        if "{" in region:
            return region
    return regions[0]

@_outside_strings
def replace_js_literals(text: str) -> str:
    return _LITERAL_RE.sub(lambda m: "null" if m.group(1) == "undefined" else "0", text)

@_outside_strings
def strip_currency_symbols(text: str) -> str:
    return _CURRENCY_RE.sub(r"\1", text)

def average_numeric_ranges(text: str) -> str:
    """Quoted or bare ranges under numeric keys become their average: "35-40" -> 37.5."""
    text = _QUOTED_RANGE_RE.sub(
        lambda m: m.group(1) + _fmt_num((float(m.group(2)) + float(m.group(3))) / 2), text
    )
    return _outside_strings(
        lambda chunk: _BARE_RANGE_RE.sub(
            lambda m: m.group(1) + _fmt_num((float(m.group(2)) + float(m.group(3))) / 2), chunk
        )
    )(text)

def normalize_smart_quotes(text: str) -> str:
    """Curly quotes delimit strings outside JSON strings and become apostrophes inside them."""
    out = []
    for is_str, chunk in _segments(text):
        if is_str:
            out.append(chunk.replace("“", "'").replace("”", "'"))
        else:
            out.append(chunk.replace("“", '"').replace("”", '"'))
    return "".join(out).replace("‘", "'").replace("’", "'")

@_outside_strings
def single_to_double_quotes(text: str) -> str:
    return _SINGLE_QUOTED_RE.sub(r'"\1"', text)

@_outside_strings
def quote_unquoted_keys(text: str) -> str:
    return _UNQUOTED_KEY_RE.sub(r'\1"\2"\3', text)

@_outside_strings
def fix_commas(text: str) -> str:
    prev = None
    while prev != text:
        prev = text
        text = _DUPLICATE_COMMA_RE.sub(",", text)
        text = _TRAILING_COMMA_RE.sub(r"\1", text)
        text = _LEADING_COMMA_RE.sub(r"\1", text)
        text = _ADJACENT_OBJECTS_RE.sub("},{", text)
        text = _ADJACENT_ARRAYS_RE.sub("],[", text)
    return text

def insert_missing_commas(text: str) -> str:
    """A value followed only by whitespace and then a string is missing its comma."""
    segs = _segments(text)
    out = []
    for i, (is_str, chunk) in enumerate(segs):
        nxt_is_str = i + 1 < len(segs) and segs[i + 1][0]
        if not is_str and nxt_is_str:
            prev_is_str = i > 0 and segs[i - 1][0]
            if (prev_is_str and not chunk.strip()) or _VALUE_END_RE.search(chunk):
                chunk = chunk.rstrip() + ", "
        out.append(chunk)
    return "".join(out)

REPAIRS: List[Repair] = [
    strip_fences_and_controls,
    normalize_whitespace,
    trim_to_json,
    replace_js_literals,
    strip_currency_symbols,
    average_numeric_ranges,
    normalize_smart_quotes,
    single_to_double_quotes,
    quote_unquoted_keys,
    fix_commas,
    insert_missing_commas,
]

def repair(raw: str) -> str:
    text = raw or ""
    for step in REPAIRS:
        text = step(text)
    return text

# ---------- parse strategies ----------

@dataclass(frozen=True)
class ParsedActivities:
    activities: List[Dict[str, Any]]
    dropped: List[int] = field(default_factory=list)
    strategy: str = "direct"
    payload: Any = None

    def to_json(self) -> str:
        return json.dumps({"activities": self.activities}, ensure_ascii=False)

def _loads(text: str) -> Any:
    return json.loads(text, parse_constant=lambda _c: 0)

def unwrap_root(candidate: Any) -> Any:
    while isinstance(candidate, dict) and len(candidate) == 1:
        k = next(iter(candidate.keys()))
        if k not in _ROOT_WRAPPERS:
            break
        candidate = candidate[k]
    return candidate

def _activity_items(payload: Any) -> Optional[List[Any]]:
    """The list of activity-like items in a parsed payload, or None if it has none."""
    payload = unwrap_root(payload)
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("activities"), list):
        return payload["activities"]
    days = payload.get("days") or payload.get("schedule")
    if isinstance(days, list) and any(isinstance(d, dict) and isinstance(d.get("activities"), list) for d in days):
        flat: List[Any] = []
        for d in days:
            if not isinstance(d, dict):
                continue
            day_no = d.get("dayNumber", d.get("day_number", d.get("day")))
            for a in d.get("activities") or []:
                if isinstance(a, dict) and day_no is not None and not any(k in a for k in ("dayNumber", "day_number", "day")):
                    a = {**a, "dayNumber": day_no}
                flat.append(a)
        return flat
    if any(k in payload for k in ("name", "title")):
        return [payload]
    return None

def _split_items(items: List[Any]) -> Tuple[List[Dict[str, Any]], List[int]]:
    kept, dropped = [], []
    for i, item in enumerate(items):
        if isinstance(item, dict):
            kept.append(item)
        else:
            dropped.append(i)
    return kept, dropped

def _array_start(text: str) -> int:
    m = re.search(r'"activities"\s*:\s*\[', text)
    if m:
        return m.end() - 1
    return text.find("[")

def _parse_activities_array(text: str) -> Optional[List[Any]]:
    start = _array_start(text)
    if start < 0:
        return None
    end = _match_bracket(text, start)
    if end < 0:
        return None
    try:
        items = _loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None
    return items if isinstance(items, list) else None

def _parse_objects(text: str) -> Tuple[List[Dict[str, Any]], List[int]]:
    start = _array_start(text)
    pos = start + 1 if start >= 0 else 0
    kept: List[Dict[str, Any]] = []
    dropped: List[int] = []
    index = 0
    while True:
        open_at = text.find("{", pos)
        if open_at < 0:
            break
        close_at = _match_bracket(text, open_at)
        if close_at < 0:
            dropped.append(index)
            break
        chunk = text[open_at:close_at + 1]
        try:
            obj = _loads(chunk)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict) and any(k in obj for k in _ANCHOR_FIELDS):
            kept.append(obj)
        else:
            dropped.append(index)
        index += 1
        pos = close_at + 1
    return kept, dropped

def sanitize(raw: str) -> ParsedActivities:
    """Recover activity objects from LLM text; ParseError when nothing is recoverable."""
    rid = get_request_id()
    text = repair(raw)

    payload: Any = None
    try:
        payload = _loads(text)
    except json.JSONDecodeError:
        payload = None
    items = _activity_items(payload) if payload is not None else None
    if items is not None:
        kept, dropped = _split_items(items)
        if kept:
            return _done(ParsedActivities(kept, dropped, "direct", payload), rid)

    items = _parse_activities_array(text)
    if items is not None:
        kept, dropped = _split_items(items)
        if kept:
            return _done(ParsedActivities(kept, dropped, "activities", {"activities": items}), rid)

    kept, dropped = _parse_objects(text)
    if kept:
        return _done(ParsedActivities(kept, dropped, "objects", {"activities": kept}), rid)

    log.error("No activity JSON recoverable from LLM output", extra={"request_id": rid, "raw_length": len(raw or ""), "dropped": len(dropped)})
    raise ParseError("No activity JSON could be recovered from the LLM response", dropped=dropped)

def _done(result: ParsedActivities, rid: str) -> ParsedActivities:
    if result.dropped:
        log.warning("Sanitizer dropped unparseable activities", extra={
            "request_id": rid,
            "strategy": result.strategy,
            "kept": len(result.activities),
            "dropped_indices": result.dropped,
        })
    else:
        log.info("Sanitizer parsed activities", extra={"request_id": rid, "strategy": result.strategy, "count": len(result.activities)})
    return result

def loads_lenient(raw: str) -> Any:
    """Repair and parse any JSON payload (schedules, cost estimates)."""
    text = repair(raw)
    try:
        return unwrap_root(_loads(text))
    except json.JSONDecodeError:
        pass
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    for start in sorted(starts):
        end = _match_bracket(text, start)
        if end < 0:
            continue
        try:
            return unwrap_root(_loads(text[start:end + 1]))
        except json.JSONDecodeError:
            continue
    raise ParseError("LLM response is not valid JSON")
