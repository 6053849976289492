# conditions.py
"""
Run-condition expressions.

Grammar:

    expr     := or_expr
    or_expr  := and_expr (("||" | "or") and_expr)*
    and_expr := not_expr (("&&" | "and") not_expr)*
    not_expr := ("!" | "not") not_expr | cmp
    cmp      := atom (("==" | "!=") atom)?
    atom     := "(" expr ")" | call | ref | STRING | "true" | "false"
    call     := always() | success() | failure() | cancelled()
              | all_success(needs) | any_failure(needs)
    ref      := flags.NAME | context.FIELD
              | needs.JOB.result | needs.JOB.outputs.NAME

Expressions are parsed once, when the graph is built, so a malformed
condition fails the run before anything is dispatched.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Mapping, Optional, Sequence, Set, Union

from .errors import ConfigurationError, SchedulerInvariantError
from .model import CONTEXT_FIELDS, JobStatus, RunContext

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>&&|\|\||==|!=|!|\(|\)|,)
      | (?P<str>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    )""",
    re.VERBOSE,
)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}

_NO_ARG_CALLS = ("always", "success", "failure", "cancelled")
_NEEDS_ARG_CALLS = ("all_success", "any_failure")


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Union[str, bool]


@dataclass(frozen=True)
class FlagRef:
    name: str


@dataclass(frozen=True)
class ContextRef:
    field: str


@dataclass(frozen=True)
class NeedResult:
    job: str


@dataclass(frozen=True)
class NeedOutput:
    job: str
    name: str


@dataclass(frozen=True)
class Call:
    name: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "&&" | "||"
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Compare:
    op: str  # "==" | "!="
    left: "Node"
    right: "Node"


Node = Union[Literal, FlagRef, ContextRef, NeedResult, NeedOutput, Call, Not, BoolOp, Compare]


# ---------------------------------------------------------------------
# Tokenizer / parser
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class _Token:
    kind: str  # op | str | name
    text: str
    pos: int


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m or m.end() == pos:
            raise ValueError(f"unexpected character {source[pos:].lstrip()[:1]!r} at {pos}")
        if m.group("op"):
            tokens.append(_Token("op", m.group("op"), m.start("op")))
        elif m.group("str"):
            tokens.append(_Token("str", _unquote(m.group("str")), m.start("str")))
        else:
            name = m.group("name")
            if name in _KEYWORD_OPS:
                tokens.append(_Token("op", _KEYWORD_OPS[name], m.start("name")))
            else:
                tokens.append(_Token("name", name, m.start("name")))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, tokens: List[_Token]):
        self.tokens = tokens
        self.i = 0

    def peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self) -> _Token:
        tok = self.peek()
        if tok is None:
            raise ValueError("unexpected end of expression")
        self.i += 1
        return tok

    def accept(self, op: str) -> bool:
        tok = self.peek()
        if tok is not None and tok.kind == "op" and tok.text == op:
            self.i += 1
            return True
        return False

    def expect(self, op: str) -> None:
        if not self.accept(op):
            tok = self.peek()
            found = tok.text if tok else "end of expression"
            raise ValueError(f"expected {op!r}, found {found!r}")

    def parse(self) -> Node:
        node = self.or_expr()
        tok = self.peek()
        if tok is not None:
            raise ValueError(f"unexpected {tok.text!r} at {tok.pos}")
        return node

    def or_expr(self) -> Node:
        node = self.and_expr()
        while self.accept("||"):
            node = BoolOp("||", node, self.and_expr())
        return node

    def and_expr(self) -> Node:
        node = self.not_expr()
        while self.accept("&&"):
            node = BoolOp("&&", node, self.not_expr())
        return node

    def not_expr(self) -> Node:
        if self.accept("!"):
            return Not(self.not_expr())
        return self.cmp()

    def cmp(self) -> Node:
        node = self.atom()
        for op in ("==", "!="):
            if self.accept(op):
                return Compare(op, node, self.atom())
        return node

    def atom(self) -> Node:
        if self.accept("("):
            node = self.or_expr()
            self.expect(")")
            return node

        tok = self.take()
        if tok.kind == "str":
            return Literal(tok.text)
        if tok.kind != "name":
            raise ValueError(f"unexpected {tok.text!r} at {tok.pos}")

        if tok.text == "true":
            return Literal(True)
        if tok.text == "false":
            return Literal(False)

        if self.accept("("):
            return self.call(tok)
        return self.ref(tok)

    def call(self, tok: _Token) -> Node:
        name = tok.text
        if name in _NO_ARG_CALLS:
            self.expect(")")
            return Call(name)
        if name in _NEEDS_ARG_CALLS:
            arg = self.take()
            if arg.kind != "name" or arg.text != "needs":
                raise ValueError(f"{name}() takes exactly one argument: needs")
            self.expect(")")
            return Call(name)
        raise ValueError(f"unknown function {name!r}")

    def ref(self, tok: _Token) -> Node:
        parts = tok.text.split(".")
        head = parts[0]
        if head == "flags" and len(parts) == 2:
            return FlagRef(parts[1])
        if head == "context" and len(parts) == 2:
            if parts[1] not in CONTEXT_FIELDS:
                raise ValueError(
                    f"unknown context field {parts[1]!r} (expected one of {list(CONTEXT_FIELDS)})"
                )
            return ContextRef(parts[1])
        if head == "needs":
            if len(parts) == 3 and parts[2] == "result":
                return NeedResult(parts[1])
            if len(parts) == 4 and parts[2] == "outputs":
                return NeedOutput(parts[1], parts[3])
        raise ValueError(f"unknown reference {tok.text!r}")


def _walk(node: Node):
    yield node
    if isinstance(node, Not):
        yield from _walk(node.operand)
    elif isinstance(node, (BoolOp, Compare)):
        yield from _walk(node.left)
        yield from _walk(node.right)


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Condition:
    source: str
    ast: Node
    referenced_jobs: FrozenSet[str] = field(default_factory=frozenset)
    referenced_flags: FrozenSet[str] = field(default_factory=frozenset)

    def cannot_hold(self, scope: "Scope") -> bool:
        """
        True when the condition is already false whatever the still-unfinished
        needs end up as. Non-terminal statuses in `scope.needs` count as
        unknown; flags and context are fixed for the run. Fail-fast cancels
        pending jobs for which this holds.
        """
        return _maybe_truthy(_maybe_value(self.ast, scope)) is False


def parse_condition(
    source: str,
    *,
    needs: Sequence[str] = (),
    categories: Optional[Sequence[str]] = None,
    job: str | None = None,
) -> Condition:
    """
    Parse and validate a condition.

    `needs.<job>` must name one of `needs`; `flags.<name>` must be a declared
    category when `categories` is given.
    """
    text = (source or "").strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2].strip()
    if not text:
        raise ConfigurationError("Empty condition expression", job=job)

    try:
        ast = _Parser(_tokenize(text)).parse()
    except ValueError as e:
        raise ConfigurationError(
            f"Malformed condition: {e}",
            job=job,
            details={"condition": source},
        ) from e

    jobs: Set[str] = set()
    flags: Set[str] = set()
    for node in _walk(ast):
        if isinstance(node, (NeedResult, NeedOutput)):
            jobs.add(node.job)
        elif isinstance(node, FlagRef):
            flags.add(node.name)

    unknown_jobs = sorted(jobs - set(needs))
    if unknown_jobs:
        raise ConfigurationError(
            f"Condition references jobs that are not in needs: {unknown_jobs}",
            job=job,
            details={"condition": source, "needs": list(needs)},
        )
    if categories is not None:
        unknown_flags = sorted(flags - set(categories))
        if unknown_flags:
            raise ConfigurationError(
                f"Condition references undeclared categories: {unknown_flags}",
                job=job,
                details={"condition": source, "categories": sorted(categories)},
            )

    return Condition(
        source=source,
        ast=ast,
        referenced_jobs=frozenset(jobs),
        referenced_flags=frozenset(flags),
    )


@dataclass(frozen=True)
class Scope:
    """
    Everything a condition can see.

    `needs` maps each direct dependency to its status; `output` reads a
    published output and returns None when it does not exist.
    """
    flags: Mapping[str, bool]
    context: RunContext
    needs: Mapping[str, JobStatus]
    output: Callable[[str, str], Optional[str]] = lambda job, name: None


def _as_text(value: Union[str, bool]) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _truthy(value: Union[str, bool]) -> bool:
    if isinstance(value, bool):
        return value
    return value != ""


def _value(node: Node, scope: Scope) -> Union[str, bool]:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, FlagRef):
        return bool(scope.flags.get(node.name, False))
    if isinstance(node, ContextRef):
        return scope.context.get(node.field)
    if isinstance(node, NeedResult):
        return scope.needs[node.job].value
    if isinstance(node, NeedOutput):
        found = scope.output(node.job, node.name)
        return "" if found is None else str(found)
    if isinstance(node, Call):
        statuses = list(scope.needs.values())
        if node.name == "always":
            return True
        if node.name in ("all_success", "success"):
            return all(s in (JobStatus.SUCCESS, JobStatus.SKIPPED) for s in statuses)
        if node.name in ("any_failure", "failure"):
            return any(s is JobStatus.FAILURE for s in statuses)
        if node.name == "cancelled":
            return any(s is JobStatus.CANCELLED for s in statuses)
    if isinstance(node, Not):
        return not _truthy(_value(node.operand, scope))
    if isinstance(node, BoolOp):
        left = _truthy(_value(node.left, scope))
        if node.op == "&&":
            return left and _truthy(_value(node.right, scope))
        return left or _truthy(_value(node.right, scope))
    if isinstance(node, Compare):
        equal = _as_text(_value(node.left, scope)) == _as_text(_value(node.right, scope))
        return equal if node.op == "==" else not equal
    raise SchedulerInvariantError(f"Unknown condition node: {node!r}")


def evaluate(condition: Condition, scope: Scope, *, job: str | None = None) -> bool:
    """
    Evaluate a parsed condition.

    Every direct dependency must already be terminal; the scheduler only
    evaluates candidates, so anything else is an internal fault.
    """
    pending = sorted(name for name, status in scope.needs.items() if not status.terminal)
    if pending:
        raise SchedulerInvariantError(
            f"Condition evaluated before dependencies finished: {pending}",
            job=job,
        )
    return _truthy(_value(condition.ast, scope))


# ---------------------------------------------------------------------
# Partial evaluation (fail-fast)
# ---------------------------------------------------------------------

def _maybe_truthy(value: Union[str, bool, None]) -> Optional[bool]:
    return None if value is None else _truthy(value)


def _maybe_value(node: Node, scope: Scope) -> Union[str, bool, None]:
    """Like _value, but a non-terminal need is unknown and yields None."""
    if isinstance(node, (Literal, FlagRef, ContextRef)):
        return _value(node, scope)
    if isinstance(node, (NeedResult, NeedOutput)):
        if not scope.needs[node.job].terminal:
            return None
        return _value(node, scope)
    if isinstance(node, Call):
        statuses = list(scope.needs.values())
        unknown = any(not s.terminal for s in statuses)
        if node.name == "always":
            return True
        if node.name in ("all_success", "success"):
            if any(s in (JobStatus.FAILURE, JobStatus.CANCELLED) for s in statuses):
                return False
            return None if unknown else True
        if node.name in ("any_failure", "failure"):
            if any(s is JobStatus.FAILURE for s in statuses):
                return True
            return None if unknown else False
        if node.name == "cancelled":
            if any(s is JobStatus.CANCELLED for s in statuses):
                return True
            return None if unknown else False
    if isinstance(node, Not):
        operand = _maybe_truthy(_maybe_value(node.operand, scope))
        return None if operand is None else not operand
    if isinstance(node, BoolOp):
        left = _maybe_truthy(_maybe_value(node.left, scope))
        right = _maybe_truthy(_maybe_value(node.right, scope))
        if node.op == "&&":
            if left is False or right is False:
                return False
            return None if left is None or right is None else True
        if left is True or right is True:
            return True
        return None if left is None or right is None else False
    if isinstance(node, Compare):
        left = _maybe_value(node.left, scope)
        right = _maybe_value(node.right, scope)
        if left is None or right is None:
            return None
        equal = _as_text(left) == _as_text(right)
        return equal if node.op == "==" else not equal
    raise SchedulerInvariantError(f"Unknown condition node: {node!r}")
