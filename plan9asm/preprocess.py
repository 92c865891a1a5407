"""A small preprocessor for Plan 9 assembly sources.

It strips ``//`` and ``/* */`` comments, ignores ``#include``, evaluates
``#ifdef``/``#ifndef``/``#if``/``#elif``/``#else``/``#endif`` against the
macros defined so far, records ``#define`` (object-like and function-like,
with ``\\`` continuation lines) and expands macro uses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from .operands import split_top_level_csv

_MAX_EXPANSION_DEPTH = 16


class PreprocessError(ValueError):
    """Raised when a source file cannot be preprocessed."""


@dataclass(frozen=True)
class Macro:
    """A ``#define``: its body and, for function-like macros, its parameters."""

    body: str
    params: tuple[str, ...] = ()


@dataclass
class _IfState:
    outer_active: bool
    cond: bool
    in_else: bool = False


def _is_ident_start(ch: str) -> bool:
    return "a" <= ch <= "z" or "A" <= ch <= "Z" or ch == "_"


def _is_ident_part(ch: str) -> bool:
    return _is_ident_start(ch) or "0" <= ch <= "9"


def _scan_lines(src: str) -> list[str]:
    lines = src.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _strip_block_comments(line: str, in_block: bool) -> tuple[str, bool]:
    while True:
        if in_block:
            end = line.find("*/")
            if end >= 0:
                line = line[end + 2 :]
                in_block = False
                continue
            return "", True
        start = line.find("/*")
        if start < 0:
            return line, False
        end = line.find("*/", start + 2)
        if end >= 0:
            line = line[:start] + line[end + 2 :]
            continue
        return line[:start], True


def _find_close_paren(text: str, start: int, depth: int) -> int:
    """Index of the ``)`` that brings ``depth`` to zero, scanning from ``start``."""
    for k in range(start, len(text)):
        ch = text[k]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return k
    return -1


def parse_macro_define(rest: str) -> tuple[str, tuple[str, ...], str]:
    """Split the text after ``#define`` into ``(name, params, body)``."""
    rest = rest.strip()
    if not rest:
        raise PreprocessError("empty define")
    i = 0
    while i < len(rest) and _is_ident_part(rest[i]):
        i += 1
    if i == 0 or not _is_ident_start(rest[0]):
        raise PreprocessError("invalid define name")
    name = rest[:i]
    if i < len(rest) and rest[i] == "(":
        j = _find_close_paren(rest, i + 1, 1)
        if j < 0:
            raise PreprocessError("unterminated macro params")
        params: list[str] = []
        param_text = rest[i + 1 : j].strip()
        if param_text:
            for p in param_text.split(","):
                p = p.strip()
                if not p:
                    raise PreprocessError("empty macro param")
                params.append(p)
        return name, tuple(params), rest[j + 1 :].strip()
    return name, (), rest[i:].strip()


def parse_macro_call(line: str, name: str, want_args: int) -> Optional[list[str]]:
    """Parse ``line`` as the whole-statement call ``name(args...)``.

    Returns the stripped arguments, or None when the line is not such a call
    with exactly ``want_args`` arguments.
    """
    if not line.startswith(name + "("):
        return None
    start = len(name)
    j = _find_close_paren(line, start, 0)
    if j < 0:
        return None
    tail = line[j + 1 :].strip()
    if tail not in ("", ";"):
        return None
    arg_text = line[start + 1 : j].strip()
    if not arg_text:
        return [] if want_args == 0 else None
    parts = split_top_level_csv(arg_text)
    if len(parts) != want_args:
        return None
    return [p.strip() for p in parts]


def replace_macro_params(body: str, params: Sequence[str], args: Sequence[str]) -> str:
    """Substitute whole-identifier occurrences of ``params`` in ``body`` by ``args``."""
    if not params or len(params) != len(args):
        return body
    mapping = dict(zip(params, args))
    return _replace_idents(body, mapping.get)


def _replace_idents(text: str, lookup) -> str:
    out: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if _is_ident_start(ch):
            j = i + 1
            while j < len(text) and _is_ident_part(text[j]):
                j += 1
            ident = text[i:j]
            rep = lookup(ident)
            out.append(ident if rep is None else rep)
            i = j
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _expand_inline_macro_calls(line: str, name: str, macro: Macro) -> tuple[str, bool]:
    if not macro.params or not line:
        return line, False
    out: list[str] = []
    changed = False
    needle = name + "("
    i = 0
    while i < len(line):
        j = line.find(needle, i)
        if j < 0:
            out.append(line[i:])
            break
        if j > 0 and _is_ident_part(line[j - 1]):
            out.append(line[i : j + 1])
            i = j + 1
            continue
        open_ = j + len(name)
        k = _find_close_paren(line, open_, 0)
        if k < 0:
            out.append(line[i:])
            return "".join(out), changed
        arg_text = line[open_ + 1 : k].strip()
        args = [p.strip() for p in split_top_level_csv(arg_text)] if arg_text else []
        if len(args) != len(macro.params):
            out.append(line[i : j + 1])
            i = j + 1
            continue
        out.append(line[i:j])
        out.append(replace_macro_params(macro.body, macro.params, args))
        changed = True
        i = k + 1
    return "".join(out), changed


def _expand_ident_macros(
    line: str, macros: Mapping[str, Macro], names: Sequence[str]
) -> tuple[str, bool]:
    changed = False
    for name in names:
        macro = macros[name]
        if macro.params:
            continue
        body = macro.body.strip()
        if not body or body == name:
            continue
        pattern = re.compile(r"(?<![A-Za-z0-9_])" + re.escape(name) + r"(?![A-Za-z0-9_])")
        new_line, count = pattern.subn(lambda _m: body, line)
        if count:
            line = new_line
            changed = True
    return line, changed


def _object_body(macros: Mapping[str, Macro], ident: str) -> Optional[str]:
    macro = macros.get(ident)
    if macro is None or macro.params or not macro.body.strip():
        return None
    return macro.body.strip()


def _expand_imm_expr_macros(line: str, macros: Mapping[str, Macro]) -> str:
    out: list[str] = []
    cur = 0
    while cur < len(line):
        i = line.find("$(", cur)
        if i < 0:
            out.append(line[cur:])
            break
        out.append(line[cur:i])
        j = _find_close_paren(line, i + 2, 1)
        if j < 0:
            out.append(line[i:])
            break
        expr = line[i + 2 : j]
        out.append("$(" + _replace_idents(expr, lambda n: _object_body(macros, n)) + ")")
        cur = j + 1
    return "".join(out)


def _sorted_names(macros: Mapping[str, Macro]) -> list[str]:
    # Longer names first so that a name is not shadowed by one of its prefixes.
    return sorted(macros, key=lambda n: (-len(n), n))


def _expand_body(body: str, macros, names, depth: int) -> list[str]:
    out: list[str] = []
    for chunk in body.split("\n"):
        out.extend(_expand(chunk.strip(), macros, names, depth + 1))
    return out


def _expand(line: str, macros: Mapping[str, Macro], names: Sequence[str], depth: int) -> list[str]:
    if depth >= _MAX_EXPANSION_DEPTH:
        return [line]
    trimmed = line.strip()
    if not trimmed:
        return [""]
    for name in names:
        macro = macros[name]
        if not macro.params:
            continue
        args = parse_macro_call(trimmed, name, len(macro.params))
        if args is None:
            continue
        body = replace_macro_params(macro.body, macro.params, args)
        return _expand_body(body, macros, names, depth)
    whole = macros.get(trimmed)
    if whole is not None and not whole.params:
        return _expand_body(whole.body, macros, names, depth)

    inline_changed = False
    for name in names:
        macro = macros[name]
        if not macro.params:
            continue
        line, changed = _expand_inline_macro_calls(line, name, macro)
        inline_changed = inline_changed or changed
    if inline_changed:
        return _expand(line, macros, names, depth + 1)

    new_line, changed = _expand_ident_macros(line, macros, names)
    if changed:
        return _expand(new_line, macros, names, depth + 1)

    for name in names:
        macro = macros[name]
        if macro.params:
            continue
        body = macro.body.strip()
        if body:
            line = line.replace("$" + name, "$" + body)
    return [_expand_imm_expr_macros(line, macros)]


def expand_line(line: str, macros: Mapping[str, Macro]) -> list[str]:
    """Expand macro uses in one statement line; may yield several lines."""
    return _expand(line, macros, _sorted_names(macros), 0)


class _Preprocessor:
    def __init__(self) -> None:
        self.macros: dict[str, Macro] = {}
        self.lines: list[str] = []
        self.active = True
        self.if_stack: list[_IfState] = []
        self.def_name = ""
        self.def_params: tuple[str, ...] = ()
        self.def_body: list[str] = []
        self.def_cont = False

    def is_defined(self, name: str) -> bool:
        return name in self.macros

    def eval_if_expr(self, expr: str) -> bool:
        e = expr.strip()
        if not e:
            return False
        neg = False
        while e.startswith("!"):
            neg = not neg
            e = e[1:].strip()
        if e.startswith("defined(") and e.endswith(")"):
            value = self.is_defined(e[len("defined(") : -1].strip())
        elif e.startswith("defined ") or e.startswith("defined\t"):
            name = e.removeprefix("defined ").removeprefix("defined\t").strip()
            value = self.is_defined(name)
        else:
            value = self.is_defined(e)
        return not value if neg else value

    def flush_define(self) -> None:
        if not self.def_cont:
            return
        name = self.def_name.strip()
        if not name:
            raise PreprocessError("invalid #define with empty name")
        self.macros[name] = Macro(body="".join(self.def_body).strip(), params=self.def_params)
        self.def_name = ""
        self.def_params = ()
        self.def_body = []
        self.def_cont = False

    def push_if(self, cond: bool) -> None:
        self.if_stack.append(_IfState(outer_active=self.active, cond=cond))
        self.active = self.active and cond

    def continue_define(self, line: str) -> None:
        cont = line.strip()
        if not self.active:
            if not cont.endswith("\\"):
                self.flush_define()
            return
        if cont.endswith("\\"):
            self.def_body.append("\n" + cont[:-1].strip())
            return
        self.def_body.append("\n" + cont)
        self.flush_define()

    def directive(self, trim: str, line: str, lineno: int) -> bool:
        """Handle a preprocessor directive; return False for ordinary lines."""
        if trim.startswith("#include"):
            return True
        if trim.startswith("#ifdef") or trim.startswith("#ifndef"):
            keyword = "#ifdef" if trim.startswith("#ifdef") else "#ifndef"
            name = trim[len(keyword) :].strip()
            if not name:
                raise PreprocessError(f"line {lineno}: invalid {keyword}: {line!r}")
            defined = self.is_defined(name)
            self.push_if(defined if keyword == "#ifdef" else not defined)
            return True
        if trim.startswith("#if"):
            self.push_if(self.eval_if_expr(trim[len("#if") :]))
            return True
        if trim.startswith("#elif"):
            if not self.if_stack:
                raise PreprocessError(f"line {lineno}: stray #elif")
            top = self.if_stack[-1]
            if top.in_else:
                raise PreprocessError(f"line {lineno}: #elif after #else")
            if top.cond:
                self.active = False
                return True
            top.cond = self.eval_if_expr(trim[len("#elif") :])
            self.active = top.outer_active and top.cond
            return True
        if trim.startswith("#else"):
            if not self.if_stack:
                raise PreprocessError(f"line {lineno}: stray #else")
            top = self.if_stack[-1]
            if top.in_else:
                raise PreprocessError(f"line {lineno}: duplicate #else")
            top.in_else = True
            self.active = top.outer_active and not top.cond
            return True
        if trim.startswith("#endif"):
            if not self.if_stack:
                raise PreprocessError(f"line {lineno}: stray #endif")
            self.active = self.if_stack.pop().outer_active
            return True
        if trim.startswith("#define"):
            if not self.active:
                return True
            try:
                name, params, body = parse_macro_define(trim[len("#define") :])
            except PreprocessError as exc:
                raise PreprocessError(f"line {lineno}: invalid #define: {line!r}") from exc
            self.def_name = name
            self.def_params = params
            self.def_cont = True
            if body.endswith("\\"):
                self.def_body.append(body[:-1].strip())
                return True
            self.def_body.append(body)
            self.flush_define()
            return True
        return False

    def feed(self, src: str) -> None:
        in_block = False
        for lineno, line in enumerate(_scan_lines(src), start=1):
            line, in_block = _strip_block_comments(line, in_block)
            idx = line.find("//")
            if idx >= 0:
                line = line[:idx]
            line = line.rstrip(" \t")
            try:
                if not line.strip():
                    self.flush_define()
                    continue
                if self.def_cont:
                    self.continue_define(line)
                    continue
            except PreprocessError as exc:
                raise PreprocessError(f"line {lineno}: {exc}") from exc
            trim = line.strip()
            if self.directive(trim, line, lineno):
                continue
            if self.active:
                self.lines.append(trim)
        if self.def_cont:
            self.flush_define()
        if self.if_stack:
            raise PreprocessError("unterminated #if block")

    def output(self) -> str:
        names = _sorted_names(self.macros)
        return "".join(
            expanded + "\n"
            for line in self.lines
            for expanded in _expand(line, self.macros, names, 0)
        )


def preprocess(src: str) -> str:
    """Preprocess assembly source and return the statement lines, newline-terminated."""
    pp = _Preprocessor()
    pp.feed(src)
    return pp.output()