"""A small text-template engine with a curated function map.

Templates use ``{{ ... }}`` actions with dot-separated field access,
pipelines (``{{ .Params.Name | upper }}``), function calls, and the
``if``/``else``/``range``/``with``/``end`` control structures. Rendering
is strict: referencing a missing map key is an error.
"""

from __future__ import annotations

import base64
import json
import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Callable

__all__ = ["TemplateError", "Engine"]

# Functions that could leak information about the environment the
# controller runs in; they are removed from the default function map.
_UNSAFE_FUNCS = ("env", "expandenv", "base", "dir", "clean", "ext", "isAbs")

_ACTION_RE = re.compile(r"\{\{(-\s)?(.*?)(\s-)?\}\}", re.DOTALL)
_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<str>"(?:\\.|[^"\\])*")
      | (?P<raw>`[^`]*`)
      | (?P<num>-?\d+(?:\.\d+)?)
      | (?P<var>\$\w*(?:\.\w+)*)
      | (?P<field>(?:\.\w+)+|\.)
      | (?P<ident>[A-Za-z_]\w*)
      | (?P<punct>[()|])
    )""",
    re.VERBOSE,
)


class TemplateError(Exception):
    """Raised when a template cannot be parsed or rendered."""


class _ExecError(Exception):
    pass


class _ParseError(Exception):
    pass


# ---------------------------------------------------------------- formatting

def _fmt(value: Any) -> str:
    if value is None:
        return "<no value>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_fmt(v) for v in value) + "]"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "map[" + " ".join(f"{_fmt(k)}:{_fmt(v)}" for k, v in items) + "]"
    return str(value)


def _sprint(*args: Any) -> str:
    out = []
    for i, arg in enumerate(args):
        if i and not isinstance(arg, str) and not isinstance(args[i - 1], str):
            out.append(" ")
        out.append(_fmt(arg))
    return "".join(out)


def _printf(fmt: str, *args: Any) -> str:
    converted = re.sub(r"%[vq]", lambda m: "%r" if m.group() == "%q" else "%s", fmt)
    prepared = tuple(
        a if isinstance(a, (int, float)) and not isinstance(a, bool) else _fmt(a)
        for a in args
    )
    return converted % prepared


# ---------------------------------------------------------------- functions

def _indent(spaces: int, text: str) -> str:
    pad = " " * spaces
    return pad + text.replace("\n", "\n" + pad)


def _index(collection: Any, *keys: Any) -> Any:
    for key in keys:
        collection = collection[key]
    return collection


def _and(*args: Any) -> Any:
    for arg in args:
        if not arg:
            return arg
    return args[-1]


def _or(*args: Any) -> Any:
    for arg in args:
        if arg:
            return arg
    return args[-1]


def _dict(*pairs: Any) -> dict:
    return {str(pairs[i]): pairs[i + 1] if i + 1 < len(pairs) else "" for i in range(0, len(pairs), 2)}


def _go_div(a: int, b: int) -> int:
    return int(a / b)


def _default_funcs() -> dict[str, Callable[..., Any]]:
    return {
        # built-ins
        "and": _and,
        "or": _or,
        "not": lambda v: not v,
        "len": len,
        "index": _index,
        "print": _sprint,
        "printf": _printf,
        "println": lambda *a: " ".join(_fmt(x) for x in a) + "\n",
        "eq": lambda a, *bs: any(a == b for b in bs),
        "ne": lambda a, b: a != b,
        "lt": lambda a, b: a < b,
        "le": lambda a, b: a <= b,
        "gt": lambda a, b: a > b,
        "ge": lambda a, b: a >= b,
        # strings
        "upper": lambda s: str(s).upper(),
        "lower": lambda s: str(s).lower(),
        "title": lambda s: str(s).title(),
        "trim": lambda s: str(s).strip(),
        "trimPrefix": lambda p, s: s[len(p):] if s.startswith(p) else s,
        "trimSuffix": lambda p, s: s[: -len(p)] if p and s.endswith(p) else s,
        "replace": lambda old, new, s: s.replace(old, new),
        "contains": lambda sub, s: sub in s,
        "hasPrefix": lambda p, s: s.startswith(p),
        "hasSuffix": lambda p, s: s.endswith(p),
        "repeat": lambda n, s: s * n,
        "trunc": lambda n, s: s[:n],
        "quote": lambda *a: " ".join(json.dumps(_fmt(x)) for x in a),
        "squote": lambda *a: " ".join(f"'{_fmt(x)}'" for x in a),
        "indent": _indent,
        "nindent": lambda n, s: "\n" + _indent(n, s),
        "toString": _fmt,
        "join": lambda sep, items: sep.join(_fmt(i) for i in items),
        "splitList": lambda sep, s: s.split(sep),
        "b64enc": lambda s: base64.b64encode(str(s).encode()).decode(),
        "b64dec": lambda s: base64.b64decode(str(s).encode()).decode(),
        "toJson": lambda v: json.dumps(v, separators=(",", ":")),
        # defaults and collections
        "default": lambda d, *given: given[0] if given and given[0] else d,
        "empty": lambda v: not v,
        "list": lambda *a: list(a),
        "dict": _dict,
        # arithmetic
        "add": lambda *a: sum(a),
        "add1": lambda a: a + 1,
        "sub": lambda a, b: a - b,
        "mul": lambda *a: _product(a),
        "div": _go_div,
        "mod": lambda a, b: a % b,
        "max": max,
        "min": min,
        # environment and paths
        "env": os.getenv,
        "expandenv": os.path.expandvars,
        "base": posixpath.basename,
        "dir": posixpath.dirname,
        "clean": posixpath.normpath,
        "ext": lambda p: posixpath.splitext(p)[1],
        "isAbs": posixpath.isabs,
    }


def _product(values: tuple) -> Any:
    result = 1
    for v in values:
        result *= v
    return result


# ---------------------------------------------------------------- syntax tree

@dataclass
class _Literal:
    value: Any


@dataclass
class _Field:
    names: list[str]
    from_root: bool = False


@dataclass
class _Func:
    name: str


@dataclass
class _Pipeline:
    commands: list[list[Any]]


@dataclass
class _Text:
    text: str


@dataclass
class _Action:
    pipe: _Pipeline


@dataclass
class _Block:
    kind: str
    pipe: _Pipeline
    body: list = field(default_factory=list)
    orelse: list = field(default_factory=list)


# ---------------------------------------------------------------- parsing

class _Parser:
    def __init__(self, source: str, funcs: dict[str, Callable[..., Any]]):
        self._funcs = funcs
        self._items = self._lex(source)
        self._pos = 0

    @staticmethod
    def _lex(source: str) -> list[tuple[str, str]]:
        items: list[tuple[str, str]] = []
        last = 0
        trim_next = False
        for match in _ACTION_RE.finditer(source):
            text = source[last:match.start()]
            if trim_next:
                text = text.lstrip()
            if match.group(1):
                text = text.rstrip()
            if text:
                items.append(("text", text))
            body = match.group(2).strip()
            if not (body.startswith("/*") and body.endswith("*/")):
                items.append(("action", body))
            trim_next = bool(match.group(3))
            last = match.end()
        tail = source[last:]
        if "{{" in tail:
            raise _ParseError("unclosed action")
        if trim_next:
            tail = tail.lstrip()
        if tail:
            items.append(("text", tail))
        return items

    def parse(self) -> list:
        nodes, stop = self._parse_list()
        if stop is not None:
            raise _ParseError(f"unexpected {{{{{stop[0]}}}}}")
        return nodes

    def _parse_list(self) -> tuple[list, tuple[str, str] | None]:
        nodes: list = []
        while self._pos < len(self._items):
            kind, body = self._items[self._pos]
            self._pos += 1
            if kind == "text":
                nodes.append(_Text(body))
                continue
            keyword, _, rest = body.partition(" ")
            rest = rest.strip()
            if keyword in ("end", "else"):
                return nodes, (keyword, rest)
            if keyword in ("if", "range", "with"):
                nodes.append(self._parse_block(keyword, rest))
            elif keyword in ("define", "template", "block"):
                raise _ParseError(f"unsupported action {keyword!r}")
            else:
                nodes.append(_Action(self._parse_pipeline(body)))
        return nodes, None

    def _parse_block(self, kind: str, expr: str) -> _Block:
        if not expr:
            raise _ParseError(f"missing value for {kind}")
        block = _Block(kind, self._parse_pipeline(expr))
        block.body, stop = self._parse_list()
        if stop is None:
            raise _ParseError(f"unexpected EOF in {kind}")
        keyword, rest = stop
        if keyword == "else":
            if rest.startswith("if ") or rest.startswith("with "):
                inner_kind, _, inner_expr = rest.partition(" ")
                block.orelse = [self._parse_block(inner_kind, inner_expr.strip())]
                return block
            block.orelse, stop = self._parse_list()
            if stop is None or stop[0] != "end":
                raise _ParseError(f"expected end in {kind}")
        return block

    def _tokenize(self, expr: str) -> list[tuple[str, str]]:
        tokens = []
        pos = 0
        while pos < len(expr):
            if expr[pos:].strip() == "":
                break
            match = _TOKEN_RE.match(expr, pos)
            if not match or match.end() == pos:
                raise _ParseError(f"unexpected {expr[pos:].strip()!r} in command")
            kind = match.lastgroup
            tokens.append((kind, match.group(kind)))
            pos = match.end()
        return tokens

    def _parse_pipeline(self, expr: str) -> _Pipeline:
        tokens = self._tokenize(expr)
        pipe, rest = self._pipeline_from(tokens)
        if rest:
            raise _ParseError(f"unexpected {rest[0][1]!r} in operand")
        return pipe

    def _pipeline_from(self, tokens: list) -> tuple[_Pipeline, list]:
        commands: list[list[Any]] = [[]]
        while tokens:
            kind, text = tokens[0]
            if kind == "punct" and text == ")":
                break
            tokens = tokens[1:]
            if kind == "punct" and text == "|":
                if not commands[-1]:
                    raise _ParseError("missing command before '|'")
                commands.append([])
            elif kind == "punct" and text == "(":
                sub, tokens = self._pipeline_from(tokens)
                if not tokens or tokens[0][1] != ")":
                    raise _ParseError("unclosed left paren")
                tokens = tokens[1:]
                commands[-1].append(sub)
            else:
                commands[-1].append(self._operand(kind, text))
        if not commands[-1]:
            raise _ParseError("missing value for command")
        return _Pipeline(commands), tokens

    def _operand(self, kind: str, text: str) -> Any:
        if kind == "str":
            try:
                return _Literal(json.loads(text))
            except ValueError as exc:
                raise _ParseError(f"bad string {text}") from exc
        if kind == "raw":
            return _Literal(text[1:-1])
        if kind == "num":
            return _Literal(float(text) if "." in text else int(text))
        if kind == "field":
            return _Field([n for n in text.split(".") if n])
        if kind == "var":
            head, *names = text.split(".")
            if head != "$":
                raise _ParseError(f"undefined variable {head!r}")
            return _Field(names, from_root=True)
        if text in ("true", "false"):
            return _Literal(text == "true")
        if text == "nil":
            return _Literal(None)
        if text not in self._funcs:
            raise _ParseError(f'function "{text}" not defined')
        return _Func(text)


# ---------------------------------------------------------------- execution

class _Executor:
    def __init__(self, funcs: dict[str, Callable[..., Any]], root: Any):
        self._funcs = funcs
        self._root = root

    def run(self, nodes: list, dot: Any, out: list[str]) -> None:
        for node in nodes:
            if isinstance(node, _Text):
                out.append(node.text)
            elif isinstance(node, _Action):
                out.append(_fmt(self._pipeline(node.pipe, dot)))
            else:
                self._block(node, dot, out)

    def _block(self, block: _Block, dot: Any, out: list[str]) -> None:
        value = self._pipeline(block.pipe, dot)
        if block.kind == "if":
            self.run(block.body if value else block.orelse, dot, out)
        elif block.kind == "with":
            if value:
                self.run(block.body, value, out)
            else:
                self.run(block.orelse, dot, out)
        else:
            if value is None:
                items: list = []
            elif isinstance(value, dict):
                items = [value[k] for k in sorted(value)]
            elif isinstance(value, int) and not isinstance(value, bool):
                items = list(range(value))
            else:
                try:
                    items = list(value)
                except TypeError as exc:
                    raise _ExecError(f"range can't iterate over {_fmt(value)}") from exc
            if not items:
                self.run(block.orelse, dot, out)
            for item in items:
                self.run(block.body, item, out)

    def _pipeline(self, pipe: _Pipeline, dot: Any) -> Any:
        value: Any = None
        for i, command in enumerate(pipe.commands):
            value = self._command(command, dot, value, piped=i > 0)
        return value

    def _command(self, command: list, dot: Any, previous: Any, piped: bool) -> Any:
        head, *rest = command
        if isinstance(head, _Func):
            args = [self._operand(op, dot) for op in rest]
            if piped:
                args.append(previous)
            try:
                return self._funcs[head.name](*args)
            except _ExecError:
                raise
            except Exception as exc:
                raise _ExecError(f"error calling {head.name}: {exc}") from exc
        if rest or piped:
            raise _ExecError(f"can't give argument to non-function {_fmt(head)}")
        return self._operand(head, dot)

    def _operand(self, op: Any, dot: Any) -> Any:
        if isinstance(op, _Literal):
            return op.value
        if isinstance(op, _Pipeline):
            return self._pipeline(op, dot)
        if isinstance(op, _Func):
            return self._command([op], dot, None, piped=False)
        value = self._root if op.from_root else dot
        for name in op.names:
            value = self._field(value, name)
        return value

    @staticmethod
    def _field(value: Any, name: str) -> Any:
        if isinstance(value, dict):
            if name not in value:
                raise _ExecError(f'map has no entry for key "{name}"')
            return value[name]
        if value is None:
            raise _ExecError(f"nil pointer evaluating .{name}")
        try:
            return getattr(value, name)
        except AttributeError as exc:
            raise _ExecError(f"can't evaluate field {name}") from exc


class Engine:
    """Renders templates strictly with a function map stripped of environment access."""

    def __init__(self) -> None:
        funcs = _default_funcs()
        for name in _UNSAFE_FUNCS:
            funcs.pop(name, None)
        self.func_map: dict[str, Callable[..., Any]] = funcs

    def render(self, tpl: str, vals: Any) -> str:
        """Render ``tpl`` against ``vals``; missing keys raise TemplateError."""
        try:
            nodes = _Parser(tpl, self.func_map).parse()
        except _ParseError as exc:
            raise TemplateError(f"error parsing template: {exc}") from exc
        out: list[str] = []
        try:
            _Executor(self.func_map, vals).run(nodes, vals, out)
        except _ExecError as exc:
            raise TemplateError(f"error rendering template: {exc}") from exc
        return "".join(out)