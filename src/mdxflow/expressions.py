"""Expression evaluation for workflow documents.

Expressions are the JavaScript-like snippets found inside ``{...}`` in a
workflow: prop values, prose interpolations and If conditions. They are
compiled by a small recursive-descent parser into closures and evaluated
against a scope (``{**inputs, **outputs}``) plus a fixed set of built-ins.

Nothing in here reaches host Python: only built-ins and allow-listed string
and list methods can be called, and attribute access is plain dict/list/str
lookup.

Evaluation is fail-soft. Any error (unknown identifier, syntax error, calling
a non-function, reading a property of ``undefined``) makes ``evaluate``
return ``None``, so an interpolation that references a not-yet-produced
output renders as an empty string instead of aborting the run.

Examples:
    evaluate("score > 0.8", {"score": 0.9})                       # True
    evaluate("items.map(x => x.name)", {"items": [{"name": "a"}]})  # ["a"]
    interpolate("Score: {score * 100}%", {"score": 0.85})          # "Score: 85%"
"""

import json
import logging
import math
import random
import re
import time
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, NamedTuple
from urllib.parse import quote, unquote

from mdxflow.lexing import find_matching_brace, skip_string
from mdxflow.models import Expression

logger = logging.getLogger(__name__)

Scope = dict[str, Any]
Compiled = Callable[[Scope], Any]


class _EvalError(Exception):
    """Internal failure; never escapes ``evaluate``."""


# Value semantics


def truthy(value: Any) -> bool:
    """JavaScript truthiness: empty lists and dicts are truthy."""
    if value is None or value is False:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


_NUMERIC_RE = re.compile(r"[+-]?(?:\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)")


def to_number(value: Any) -> int | float:
    """JavaScript ``Number(value)``."""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        if _NUMERIC_RE.fullmatch(text):
            number = float(text)
            if number.is_integer() and "." not in text and "e" not in text.lower():
                return int(text)
            return number
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
        if re.fullmatch(r"0[xX][0-9a-fA-F]+", text):
            return int(text, 16)
        return math.nan
    if isinstance(value, list):
        if not value:
            return 0
        if len(value) == 1:
            return to_number(js_str(value[0]))
    return math.nan


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    text = repr(value)
    if "e" in text:
        mantissa, exponent = text.split("e")
        text = f"{mantissa}e{int(exponent):+d}"
    return text


def js_str(value: Any) -> str:
    """JavaScript ``String(value)``."""
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return ",".join("" if item is None else js_str(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return "function"


def json_safe(value: Any) -> Any:
    """Convert a value to what ``JSON.stringify`` would serialise.

    Integral floats become ints, NaN and infinities become ``None`` and
    functions are dropped from objects.
    """
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, list):
        return [None if _is_callable(item) else json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items() if not _is_callable(v)}
    if _is_callable(value):
        return None
    return value


def to_display_string(value: Any) -> str:
    """Stringify a value for prose: ``None`` is empty, containers are JSON."""
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(json_safe(value), separators=(",", ":"), ensure_ascii=False)
    return js_str(value)


def js_typeof(value: Any) -> str:
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if _is_callable(value):
        return "function"
    return "object"


def strict_equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if isinstance(a, (list, dict)) or isinstance(b, (list, dict)):
        return a is b
    return type(a) is type(b) and a == b


def loose_equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool):
        return loose_equals(int(a), b)
    if isinstance(b, bool):
        return loose_equals(a, int(b))
    number_a = isinstance(a, (int, float))
    number_b = isinstance(b, (int, float))
    if number_a and isinstance(b, str):
        return a == to_number(b)
    if number_b and isinstance(a, str):
        return to_number(a) == b
    return strict_equals(a, b)


def _same_value_zero(a: Any, b: Any) -> bool:
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    return strict_equals(a, b)


def _add(a: Any, b: Any) -> Any:
    if isinstance(a, (str, list, dict)) or isinstance(b, (str, list, dict)):
        return js_str(a) + js_str(b)
    return to_number(a) + to_number(b)


def _divide(a: Any, b: Any) -> int | float:
    x, y = to_number(a), to_number(b)
    if y == 0:
        if x == 0 or math.isnan(x):
            return math.nan
        sign = math.copysign(1.0, y) * math.copysign(1.0, x)
        return math.inf if sign > 0 else -math.inf
    if isinstance(x, int) and isinstance(y, int) and x % y == 0:
        return x // y
    return x / y


def _modulo(a: Any, b: Any) -> int | float:
    x, y = to_number(a), to_number(b)
    if y == 0 or math.isnan(x) or math.isnan(y) or math.isinf(x):
        return math.nan
    if math.isinf(y):
        return x
    result = math.fmod(x, y)
    if isinstance(x, int) and isinstance(y, int):
        return int(result)
    return result


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        x, y = a, b
    else:
        x, y = to_number(a), to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _to_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    number = to_number(value)
    if math.isnan(number):
        return 0
    if math.isinf(number):
        return 2**31 if number > 0 else -(2**31)
    return int(number)


# Callables


class _Builtin(NamedTuple):
    name: str
    fn: Callable[..., Any]


class _BoundMethod(NamedTuple):
    receiver: Any
    name: str
    fn: Callable[..., Any]


class _Lambda(NamedTuple):
    params: tuple[str, ...]
    body: Compiled
    env: Scope

    def invoke(self, args: list[Any]) -> Any:
        bound = dict(self.env)
        for index, param in enumerate(self.params):
            bound[param] = args[index] if index < len(args) else None
        return self.body(bound)


def _is_callable(value: Any) -> bool:
    return isinstance(value, (_Builtin, _BoundMethod, _Lambda))


def call_function(callee: Any, args: list[Any]) -> Any:
    if isinstance(callee, _Builtin):
        return callee.fn(*args)
    if isinstance(callee, _BoundMethod):
        return callee.fn(callee.receiver, *args)
    if isinstance(callee, _Lambda):
        return callee.invoke(args)
    raise _EvalError(f"{js_typeof(callee)} is not a function")


# String methods


def _str_slice(s: str, start: Any = None, end: Any = None, *_: Any) -> str:
    return s[_to_int(start) : (None if end is None else _to_int(end))]


def _str_split(s: str, sep: Any = None, limit: Any = None, *_: Any) -> list[str]:
    if sep is None:
        parts = [s]
    elif js_str(sep) == "":
        parts = list(s)
    else:
        parts = s.split(js_str(sep))
    return parts if limit is None else parts[: _to_int(limit)]


def _str_replace(s: str, search: Any = None, replacement: Any = None, *_: Any) -> str:
    needle = js_str(search)
    index = s.find(needle)
    if index == -1:
        return s
    if _is_callable(replacement):
        text = js_str(call_function(replacement, [needle, index, s]))
    else:
        text = js_str(replacement)
    return s[:index] + text + s[index + len(needle) :]


def _pad(s: str, length: Any, fill: Any, at_start: bool) -> str:
    target = _to_int(length)
    filler = " " if fill is None else js_str(fill)
    if target <= len(s) or not filler:
        return s
    needed = target - len(s)
    padding = (filler * (needed // len(filler) + 1))[:needed]
    return padding + s if at_start else s + padding


STRING_METHODS: dict[str, Callable[..., Any]] = {
    "toUpperCase": lambda s, *_: s.upper(),
    "toLowerCase": lambda s, *_: s.lower(),
    "trim": lambda s, *_: s.strip(),
    "includes": lambda s, search=None, pos=None, *_: js_str(search) in s[_to_int(pos) :],
    "startsWith": lambda s, search=None, pos=None, *_: s.startswith(js_str(search), max(_to_int(pos), 0)),
    "endsWith": lambda s, search=None, *_: s.endswith(js_str(search)),
    "split": _str_split,
    "slice": _str_slice,
    "replace": _str_replace,
    "indexOf": lambda s, search=None, pos=None, *_: s.find(js_str(search), _to_int(pos)),
    "padStart": lambda s, length=0, fill=None, *_: _pad(s, length, fill, True),
    "padEnd": lambda s, length=0, fill=None, *_: _pad(s, length, fill, False),
    "repeat": lambda s, count=0, *_: s * max(_to_int(count), 0),
}


# List methods


def _callback(fn: Any, items: list[Any]) -> Callable[[int, Any], Any]:
    return lambda index, item: call_function(fn, [item, index, items])


def _list_find(items: list[Any], fn: Any = None, *_: Any) -> Any:
    check = _callback(fn, items)
    for index, item in enumerate(items):
        if truthy(check(index, item)):
            return item
    return None


def _list_index_of(items: list[Any], value: Any = None, *_: Any) -> int:
    for index, item in enumerate(items):
        if strict_equals(item, value):
            return index
    return -1


def _list_concat(items: list[Any], *others: Any) -> list[Any]:
    result = list(items)
    for other in others:
        if isinstance(other, list):
            result.extend(other)
        else:
            result.append(other)
    return result


def _list_join(items: list[Any], sep: Any = None, *_: Any) -> str:
    separator = "," if sep is None else js_str(sep)
    return separator.join("" if item is None else js_str(item) for item in items)


LIST_METHODS: dict[str, Callable[..., Any]] = {
    "map": lambda items, fn=None, *_: [
        _callback(fn, items)(i, item) for i, item in enumerate(items)
    ],
    "filter": lambda items, fn=None, *_: [
        item for i, item in enumerate(items) if truthy(_callback(fn, items)(i, item))
    ],
    "find": _list_find,
    "some": lambda items, fn=None, *_: any(
        truthy(_callback(fn, items)(i, item)) for i, item in enumerate(items)
    ),
    "every": lambda items, fn=None, *_: all(
        truthy(_callback(fn, items)(i, item)) for i, item in enumerate(items)
    ),
    "join": _list_join,
    "slice": lambda items, start=None, end=None, *_: items[
        _to_int(start) : (None if end is None else _to_int(end))
    ],
    "includes": lambda items, value=None, *_: any(_same_value_zero(i, value) for i in items),
    "indexOf": _list_index_of,
    "concat": _list_concat,
    "reverse": lambda items, *_: items[::-1],
}


def get_member(obj: Any, key: Any) -> Any:
    """Property lookup with JavaScript-like results for missing keys."""
    if obj is None:
        raise _EvalError(f"Cannot read properties of undefined (reading '{js_str(key)}')")
    if isinstance(key, float) and key.is_integer():
        key = int(key)
    if isinstance(obj, dict):
        return obj.get(key if isinstance(key, str) else js_str(key))
    if isinstance(obj, (list, str)):
        if isinstance(key, int) and not isinstance(key, bool):
            return obj[key] if 0 <= key < len(obj) else None
        name = js_str(key)
        if name == "length":
            return len(obj)
        if name.isdigit():
            index = int(name)
            return obj[index] if index < len(obj) else None
        methods = LIST_METHODS if isinstance(obj, list) else STRING_METHODS
        if name in methods:
            return _BoundMethod(obj, name, methods[name])
        return None
    return None


# Built-ins


def _json_stringify(value: Any = None, _replacer: Any = None, indent: Any = None, *_: Any) -> str:
    safe = json_safe(value)
    if isinstance(indent, (int, float)) and not isinstance(indent, bool) and indent > 0:
        return json.dumps(safe, indent=min(int(indent), 10), ensure_ascii=False)
    if isinstance(indent, str) and indent:
        return json.dumps(safe, indent=indent[:10], ensure_ascii=False)
    return json.dumps(safe, separators=(",", ":"), ensure_ascii=False)


def _json_parse(text: Any = None, *_: Any) -> Any:
    return json.loads(js_str(text))


def _math(fn: Callable[..., Any]) -> Callable[..., Any]:
    def wrapper(*args: Any) -> Any:
        numbers = [to_number(a) for a in args]
        if any(math.isnan(n) for n in numbers):
            return math.nan
        return fn(*numbers)

    return wrapper


def _round(x: float) -> int | float:
    return x if math.isinf(x) else math.floor(x + 0.5)


def _floor(x: float) -> int | float:
    return x if math.isinf(x) else math.floor(x)


def _ceil(x: float) -> int | float:
    return x if math.isinf(x) else math.ceil(x)


def _trunc(x: float) -> int | float:
    return x if math.isinf(x) else math.trunc(x)


def _sqrt(x: float) -> float:
    if x < 0:
        return math.nan
    root = math.sqrt(x)
    return int(root) if root.is_integer() else root


def _pow(x: float, y: float) -> int | float:
    if isinstance(x, int) and isinstance(y, int) and y >= 0:
        return x**y
    return math.pow(x, y)


def _sign(x: float) -> int:
    return (x > 0) - (x < 0)


_INT_PREFIX_RE = re.compile(r"\s*([+-]?)(0[xX])?([0-9a-zA-Z]*)")
_FLOAT_PREFIX_RE = re.compile(r"\s*([+-]?(?:Infinity|\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?))")


def _parse_int(value: Any = None, radix: Any = None, *_: Any) -> int | float:
    match = _INT_PREFIX_RE.match(js_str(value))
    sign, hex_prefix, digits = match.groups()
    base = _to_int(radix) if radix is not None else (16 if hex_prefix else 10)
    if base == 0:
        base = 10
    if not 2 <= base <= 36:
        return math.nan
    valid = ""
    for ch in digits:
        if int(ch, 36) >= base:
            break
        valid += ch
    if not valid:
        return math.nan
    number = int(valid, base)
    return -number if sign == "-" else number


def _parse_float(value: Any = None, *_: Any) -> int | float:
    match = _FLOAT_PREFIX_RE.match(js_str(value))
    if not match:
        return math.nan
    return to_number(match.group(1))


def _object_keys(value: Any = None, *_: Any) -> list[str]:
    if isinstance(value, dict):
        return [str(k) for k in value]
    if isinstance(value, (list, str)):
        return [str(i) for i in range(len(value))]
    return []


def _object_values(value: Any = None, *_: Any) -> list[Any]:
    if isinstance(value, dict):
        return list(value.values())
    if isinstance(value, (list, str)):
        return list(value)
    return []


def _object_entries(value: Any = None, *_: Any) -> list[list[Any]]:
    return [[k, v] for k, v in zip(_object_keys(value), _object_values(value))]


def _builtins(names: dict[str, Callable[..., Any]]) -> dict[str, Any]:
    return {name: _Builtin(name, fn) for name, fn in names.items()}


BUILTINS: dict[str, Any] = {
    "JSON": _builtins({"stringify": _json_stringify, "parse": _json_parse}),
    "Math": {
        **_builtins(
            {
                "floor": _math(_floor),
                "ceil": _math(_ceil),
                "round": _math(_round),
                "abs": _math(abs),
                "min": _math(lambda *xs: min(xs) if xs else math.inf),
                "max": _math(lambda *xs: max(xs) if xs else -math.inf),
                "pow": _math(_pow),
                "sqrt": _math(_sqrt),
                "trunc": _math(_trunc),
                "sign": _math(_sign),
                "random": lambda *_: random.random(),
            }
        ),
        "PI": math.pi,
        "E": math.e,
    },
    "Date": _builtins(
        {
            "now": lambda *_: int(time.time() * 1000),
            "iso": lambda *_: datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        }
    ),
    "Array": _builtins({"isArray": lambda value=None, *_: isinstance(value, list)}),
    "Object": _builtins(
        {"keys": _object_keys, "values": _object_values, "entries": _object_entries}
    ),
    **_builtins(
        {
            "String": lambda value="", *_: js_str(value),
            "Number": lambda value=0, *_: to_number(value),
            "Boolean": lambda value=None, *_: truthy(value),
            "parseInt": _parse_int,
            "parseFloat": _parse_float,
            "isNaN": lambda value=None, *_: math.isnan(to_number(value)),
            "isFinite": lambda value=None, *_: math.isfinite(to_number(value)),
            "encodeURIComponent": lambda value=None, *_: quote(js_str(value), safe="-_.!~*'()"),
            "decodeURIComponent": lambda value=None, *_: unquote(js_str(value)),
        }
    ),
    "NaN": math.nan,
    "Infinity": math.inf,
    "undefined": None,
}


# Tokenizer


class Token(NamedTuple):
    kind: str  # num, str, template, ident, punct, eof
    value: Any
    pos: int


_PUNCTUATORS = (
    "===", "!==", "...",
    "=>", "==", "!=", "<=", ">=", "&&", "||", "??", "?.",
    "+", "-", "*", "/", "%", "<", ">", "!", "?", ":", ".", ",",
    "(", ")", "[", "]", "{", "}",
)  # fmt: skip

_NUMBER_RE = re.compile(r"0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_IDENT_RE = re.compile(r"(?:[^\W\d]|\$)[\w$]*")
_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", re.DOTALL)
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0", "\n": ""}


def _unescape(text: str) -> str:
    def replace(match: re.Match) -> str:
        code = match.group(1)
        if len(code) > 1:
            return chr(int(code[1:], 16))
        return _ESCAPES.get(code, code)

    return _ESCAPE_RE.sub(replace, text)


def _number_literal(text: str) -> int | float:
    if text[:2] in ("0x", "0X"):
        return int(text, 16)
    if "." in text or "e" in text or "E" in text:
        return float(text)
    return int(text)


def tokenize(source: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    n = len(source)
    while i < n:
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        if ch.isdigit() or (ch == "." and i + 1 < n and source[i + 1].isdigit()):
            match = _NUMBER_RE.match(source, i)
            if match is None:
                raise _EvalError(f"Invalid number at {i}")
            tokens.append(Token("num", _number_literal(match.group()), i))
            i = match.end()
            continue
        if ch in "'\"`":
            close = skip_string(source, i)
            if close == -1:
                raise _EvalError("Unterminated string literal")
            body = source[i + 1 : close]
            if ch == "`":
                tokens.append(Token("template", body, i))
            else:
                tokens.append(Token("str", _unescape(body), i))
            i = close + 1
            continue
        if ch.isalpha() or ch in "_$":
            match = _IDENT_RE.match(source, i)
            if match is None:
                raise _EvalError(f"Invalid identifier at {i}")
            tokens.append(Token("ident", match.group(), i))
            i = match.end()
            continue
        for punct in _PUNCTUATORS:
            if source.startswith(punct, i):
                # `a?.5:b` is a ternary, not optional chaining
                if punct == "?." and i + 2 < n and source[i + 2].isdigit():
                    continue
                tokens.append(Token("punct", punct, i))
                i += len(punct)
                break
        else:
            raise _EvalError(f"Unexpected character {ch!r} at {i}")
    tokens.append(Token("eof", None, n))
    return tokens


# Parser

_BINARY_PRECEDENCE = {
    "??": 1,
    "||": 2,
    "&&": 3,
    "==": 4, "!=": 4, "===": 4, "!==": 4,
    "<": 5, "<=": 5, ">": 5, ">=": 5,
    "+": 6, "-": 6,
    "*": 7, "/": 7, "%": 7,
}  # fmt: skip

_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "+": _add,
    "-": lambda a, b: to_number(a) - to_number(b),
    "*": lambda a, b: to_number(a) * to_number(b),
    "/": _divide,
    "%": _modulo,
    "==": loose_equals,
    "!=": lambda a, b: not loose_equals(a, b),
    "===": strict_equals,
    "!==": lambda a, b: not strict_equals(a, b),
    "<": lambda a, b: _compare("<", a, b),
    "<=": lambda a, b: _compare("<=", a, b),
    ">": lambda a, b: _compare(">", a, b),
    ">=": lambda a, b: _compare(">=", a, b),
}

_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}


def _const(value: Any) -> Compiled:
    return lambda env: value


def _lookup(name: str) -> Compiled:
    def run(env: Scope) -> Any:
        if name in env:
            return env[name]
        if name in BUILTINS:
            return BUILTINS[name]
        raise _EvalError(f"{name} is not defined")

    return run


class _Parser:
    """Compiles one expression source into a closure over the scope."""

    def __init__(self, source: str) -> None:
        self.tokens = tokenize(source)
        self.pos = 0

    def parse(self) -> Compiled:
        compiled = self.expression()
        if self.peek().kind != "eof":
            raise _EvalError(f"Unexpected token {self.peek().value!r}")
        return compiled

    # Token helpers

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.peek()
        self.pos = min(self.pos + 1, len(self.tokens) - 1)
        return token

    def at(self, value: str) -> bool:
        token = self.peek()
        return token.kind == "punct" and token.value == value

    def accept(self, value: str) -> bool:
        if self.at(value):
            self.advance()
            return True
        return False

    def expect(self, value: str) -> None:
        if not self.accept(value):
            raise _EvalError(f"Expected {value!r}, got {self.peek().value!r}")

    def identifier(self) -> str:
        token = self.advance()
        if token.kind != "ident":
            raise _EvalError(f"Expected identifier, got {token.value!r}")
        return token.value

    # Grammar

    def expression(self) -> Compiled:
        if self._arrow_ahead():
            return self.arrow()
        condition = self.binary(1)
        if not self.accept("?"):
            return condition
        when_true = self.expression()
        self.expect(":")
        when_false = self.expression()
        return lambda env: when_true(env) if truthy(condition(env)) else when_false(env)

    def _arrow_ahead(self) -> bool:
        token = self.peek()
        if token.kind == "ident":
            nxt = self.peek(1)
            return nxt.kind == "punct" and nxt.value == "=>"
        if not self.at("("):
            return False
        depth = 0
        offset = 0
        while True:
            tok = self.peek(offset)
            if tok.kind == "eof":
                return False
            if tok.kind == "punct" and tok.value == "(":
                depth += 1
            elif tok.kind == "punct" and tok.value == ")":
                depth -= 1
                if depth == 0:
                    after = self.peek(offset + 1)
                    return after.kind == "punct" and after.value == "=>"
            offset += 1

    def arrow(self) -> Compiled:
        params: list[str] = []
        if self.accept("("):
            while not self.accept(")"):
                params.append(self.identifier())
                if not self.at(")"):
                    self.expect(",")
        else:
            params.append(self.identifier())
        self.expect("=>")
        if self.at("{"):
            raise _EvalError("Block-bodied arrow functions are not supported")
        body = self.expression()
        names = tuple(params)
        return lambda env: _Lambda(names, body, env)

    def binary(self, min_precedence: int) -> Compiled:
        left = self.unary()
        while True:
            token = self.peek()
            precedence = _BINARY_PRECEDENCE.get(token.value) if token.kind == "punct" else None
            if precedence is None or precedence < min_precedence:
                return left
            op = self.advance().value
            right = self.binary(precedence + 1)
            left = self._combine(op, left, right)

    @staticmethod
    def _combine(op: str, left: Compiled, right: Compiled) -> Compiled:
        if op in ("&&", "||", "??"):

            def short_circuit(env: Scope) -> Any:
                value = left(env)
                if op == "&&":
                    return right(env) if truthy(value) else value
                if op == "||":
                    return value if truthy(value) else right(env)
                return right(env) if value is None else value

            return short_circuit
        fn = _ARITHMETIC[op]
        return lambda env: fn(left(env), right(env))

    def unary(self) -> Compiled:
        if self.accept("!"):
            operand = self.unary()
            return lambda env: not truthy(operand(env))
        if self.accept("-"):
            operand = self.unary()
            return lambda env: -to_number(operand(env))
        if self.accept("+"):
            operand = self.unary()
            return lambda env: to_number(operand(env))
        token = self.peek()
        if token.kind == "ident" and token.value == "typeof":
            self.advance()
            operand = self.unary()

            def run(env: Scope) -> str:
                try:
                    return js_typeof(operand(env))
                except _EvalError:
                    return "undefined"

            return run
        return self.postfix()

    def postfix(self) -> Compiled:
        base = self.primary()
        ops: list[tuple[str, Any, bool]] = []
        while True:
            if self.accept("."):
                ops.append(("member", self.identifier(), False))
            elif self.accept("?."):
                if self.at("("):
                    ops.append(("call", self.arguments(), True))
                elif self.accept("["):
                    ops.append(("index", self.expression(), True))
                    self.expect("]")
                else:
                    ops.append(("member", self.identifier(), True))
            elif self.accept("["):
                ops.append(("index", self.expression(), False))
                self.expect("]")
            elif self.at("("):
                ops.append(("call", self.arguments(), False))
            else:
                break
        if not ops:
            return base

        def run(env: Scope) -> Any:
            value = base(env)
            for op, arg, optional in ops:
                if optional and value is None:
                    return None
                if op == "member":
                    value = get_member(value, arg)
                elif op == "index":
                    value = get_member(value, arg(env))
                else:
                    value = call_function(value, _spread(arg, env))
            return value

        return run

    def arguments(self) -> list[tuple[Compiled, bool]]:
        self.expect("(")
        return self._elements(")")

    def _elements(self, closing: str) -> list[tuple[Compiled, bool]]:
        items: list[tuple[Compiled, bool]] = []
        while not self.accept(closing):
            spread = self.accept("...")
            items.append((self.expression(), spread))
            if not self.at(closing):
                self.expect(",")
        return items

    def primary(self) -> Compiled:
        token = self.advance()
        if token.kind in ("num", "str"):
            return _const(token.value)
        if token.kind == "template":
            return self._template(token.value)
        if token.kind == "ident":
            if token.value in _LITERALS:
                return _const(_LITERALS[token.value])
            return _lookup(token.value)
        if token.kind == "punct":
            if token.value == "(":
                inner = self.expression()
                self.expect(")")
                return inner
            if token.value == "[":
                elements = self._elements("]")
                return lambda env: _spread(elements, env)
            if token.value == "{":
                return self._object()
        raise _EvalError(f"Unexpected token {token.value!r}")

    def _object(self) -> Compiled:
        entries: list[tuple[Compiled | None, Compiled]] = []
        while not self.accept("}"):
            if self.accept("..."):
                entries.append((None, self.expression()))
            else:
                token = self.advance()
                if token.kind == "ident":
                    key: Compiled = _const(token.value)
                    if not self.at(":"):
                        entries.append((key, _lookup(token.value)))
                        if not self.at("}"):
                            self.expect(",")
                        continue
                elif token.kind in ("str", "num"):
                    key = _const(js_str(token.value))
                elif token.kind == "punct" and token.value == "[":
                    computed = self.expression()
                    self.expect("]")
                    key = lambda env, computed=computed: js_str(computed(env))  # noqa: E731
                else:
                    raise _EvalError(f"Unexpected object key {token.value!r}")
                self.expect(":")
                entries.append((key, self.expression()))
            if not self.at("}"):
                self.expect(",")

        def run(env: Scope) -> dict[str, Any]:
            result: dict[str, Any] = {}
            for key, value in entries:
                if key is None:
                    spread = value(env)
                    if isinstance(spread, dict):
                        result.update(spread)
                else:
                    result[key(env)] = value(env)
            return result

        return run

    @staticmethod
    def _template(body: str) -> Compiled:
        parts: list[Compiled] = []
        literal = ""
        i = 0
        while i < len(body):
            ch = body[i]
            if ch == "\\" and i + 1 < len(body):
                literal += body[i : i + 2]
                i += 2
                continue
            if ch == "$" and body.startswith("${", i):
                close = find_matching_brace(body, i + 1)
                if close == -1:
                    raise _EvalError("Unterminated template expression")
                parts.append(_const(_unescape(literal)))
                literal = ""
                parts.append(_Parser(body[i + 2 : close]).parse())
                i = close + 1
                continue
            literal += ch
            i += 1
        parts.append(_const(_unescape(literal)))
        return lambda env: "".join(js_str(part(env)) for part in parts)


def _spread(elements: list[tuple[Compiled, bool]], env: Scope) -> list[Any]:
    values: list[Any] = []
    for compiled, spread in elements:
        value = compiled(env)
        if spread:
            if isinstance(value, (list, str)):
                values.extend(value)
            else:
                raise _EvalError("Spread of a non-iterable value")
        else:
            values.append(value)
    return values


@lru_cache(maxsize=512)
def _compile(source: str) -> Compiled:
    return _Parser(source).parse()


# Public API


def evaluate(text: str | None, scope: Scope) -> Any:
    """Evaluate an expression against ``scope``; any failure yields ``None``."""
    source = (text or "").strip()
    if not source:
        return None
    try:
        return _compile(source)(scope)
    except Exception as e:
        logger.debug("Expression %r evaluated to undefined: %s", source, e)
        return None


def evaluate_condition(text: str | None, scope: Scope) -> bool:
    return truthy(evaluate(text, scope))


def resolve_expression(expr: Expression, scope: Scope) -> Any:
    """Static expressions return their raw text; dynamic ones are evaluated."""
    if expr.is_static:
        return expr.raw
    return evaluate(expr.raw, scope)


def interpolate(template: str, scope: Scope) -> str:
    """Replace each ``{expr}`` in ``template`` with its display string.

    ``{/* ... */}`` comments are removed and an unmatched ``{`` is kept as
    literal text.
    """
    segments: list[str] = []
    i = 0
    while i < len(template):
        brace = template.find("{", i)
        if brace == -1:
            segments.append(template[i:])
            break
        segments.append(template[i:brace])
        if template.startswith("{/*", brace):
            comment_end = template.find("*/}", brace + 3)
            if comment_end != -1:
                i = comment_end + 3
                continue
        close = find_matching_brace(template, brace)
        if close == -1:
            segments.append("{")
            i = brace + 1
            continue
        segments.append(to_display_string(evaluate(template[brace + 1 : close], scope)))
        i = close + 1
    return "".join(segments)
