"""Split dump scripts into statements and summarise their contents."""

from __future__ import annotations

import re
from typing import Dict, Iterator, List

from .dump import ERROR_MARKER, TABLE_MARKER
from .models import DumpAnalysis, TableAnalysis

_INSERT_RE = re.compile(r'^\s*INSERT\s+INTO\s+("(?:[^"]|"")+"|[\w.]+)', re.IGNORECASE)
_CREATE_RE = re.compile(
    r'^\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?("(?:[^"]|"")+"|[\w.]+)', re.IGNORECASE
)
_VALUES_RE = re.compile(r"\bVALUES\b", re.IGNORECASE)


def _unquote(identifier: str) -> str:
    if identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1].replace('""', '"')
    return identifier


def iter_statements(script: str) -> Iterator[str]:
    """Yield each ``;``-terminated statement with comments removed.

    Semicolons inside single-quoted strings (``''`` escapes a quote), quoted
    identifiers and comments do not end a statement. A trailing statement
    without a terminator is yielded as well.
    """
    buf: List[str] = []
    i = 0
    n = len(script)
    while i < n:
        ch = script[i]
        if ch == "'" or ch == '"':
            end = i + 1
            while end < n:
                if script[end] == ch:
                    if end + 1 < n and script[end + 1] == ch:
                        end += 2
                        continue
                    break
                end += 1
            buf.append(script[i:end + 1])
            i = end + 1
        elif ch == "-" and script.startswith("--", i):
            end = script.find("\n", i)
            i = n if end == -1 else end
        elif ch == "/" and script.startswith("/*", i):
            end = script.find("*/", i + 2)
            i = n if end == -1 else end + 2
        elif ch == ";":
            statement = "".join(buf).strip()
            if statement:
                yield statement
            buf = []
            i += 1
        else:
            buf.append(ch)
            i += 1

    tail = "".join(buf).strip()
    if tail:
        yield tail


def split_statements(script: str) -> List[str]:
    return list(iter_statements(script))


def count_value_tuples(statement: str) -> int:
    """Count top-level row tuples in the ``VALUES`` clause of an INSERT."""
    match = _VALUES_RE.search(statement)
    if not match:
        return 1

    count = 0
    depth = 0
    quote = None
    section = statement[match.end():]
    i = 0
    while i < len(section):
        ch = section[i]
        if quote:
            if ch == quote:
                if section.startswith(quote * 2, i):
                    i += 2
                    continue
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
            if depth == 1:
                count += 1
        elif ch == ")":
            depth -= 1
        i += 1
    return count or 1


def analyze_dump(script: str) -> DumpAnalysis:
    """Report tables and record counts in a dump without executing it."""
    analysis = DumpAnalysis()
    records: Dict[str, int] = {}

    for statement in iter_statements(script):
        insert = _INSERT_RE.match(statement)
        if insert:
            name = _unquote(insert.group(1))
            records[name] = records.get(name, 0) + count_value_tuples(statement)
            continue
        create = _CREATE_RE.match(statement)
        if create:
            records.setdefault(_unquote(create.group(1)), 0)

    current_table = None
    for line in script.splitlines():
        if line.startswith(TABLE_MARKER):
            current_table = line[len(TABLE_MARKER):].strip()
        elif line.startswith(ERROR_MARKER):
            reason = line[len(ERROR_MARKER):].strip()
            analysis.warnings.append(f"Table {current_table or '?'} was not captured: {reason}")

    analysis.table_details = [TableAnalysis(name=name, records=count) for name, count in records.items()]
    analysis.total_tables = len(analysis.table_details)
    analysis.total_records = sum(records.values())
    if not any(records.values()):
        analysis.warnings.insert(0, "No INSERT statements found in backup")
    return analysis
