"""Brace scanning shared by the markup parser and string interpolation."""

QUOTES = "\"'`"


def skip_string(text: str, start: int, end: int | None = None) -> int:
    """Return the index of the quote that closes the literal opened at ``start``.

    Backslash escapes are honoured and ``${...}`` spans inside template
    literals are skipped whole. Returns -1 when the literal is unterminated.
    """
    limit = len(text) if end is None else end
    quote = text[start]
    i = start + 1
    while i < limit:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i
        if quote == "`" and ch == "$" and i + 1 < limit and text[i + 1] == "{":
            close = find_matching_brace(text, i + 1, limit)
            if close == -1:
                return -1
            i = close + 1
            continue
        i += 1
    return -1


def find_matching_brace(text: str, start: int, end: int | None = None) -> int:
    """Find the ``}`` matching the ``{`` at ``start``.

    Nested braces are counted, and string and template literal contents are
    skipped. Returns -1 when no match exists before ``end``.
    """
    limit = len(text) if end is None else end
    depth = 0
    i = start
    while i < limit:
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        elif ch in QUOTES:
            close = skip_string(text, i, limit)
            if close == -1:
                return -1
            i = close
        i += 1
    return -1


def split_top_level(text: str, separator: str = ",") -> list[str]:
    """Split on ``separator`` where it is not nested in brackets or strings."""
    parts: list[str] = []
    depth = 0
    current_start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in "{([":
            depth += 1
        elif ch in "})]":
            depth -= 1
        elif ch in QUOTES:
            close = skip_string(text, i)
            i = len(text) if close == -1 else close + 1
            continue
        elif ch == separator and depth == 0:
            parts.append(text[current_start:i])
            current_start = i + 1
        i += 1
    tail = text[current_start:]
    if tail.strip():
        parts.append(tail)
    return parts


def line_at(text: str, pos: int) -> int:
    """1-based line number of ``pos`` in ``text``."""
    return text.count("\n", 0, pos) + 1
