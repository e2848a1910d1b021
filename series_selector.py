from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Pattern

METRIC_NAME_LABEL = "__name__"

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_MATCH_OP = re.compile(r"=~|!~|!=|=")
_STRING = re.compile(r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\'|`[^`]*`')
_SPACE = re.compile(r"\s*")


class SelectorError(Exception):
    pass


def is_valid_label_name(name: str) -> bool:
    return _LABEL_NAME.fullmatch(name) is not None


@dataclass(frozen=True)
class Matcher:
    name: str
    op: str
    value: str
    _regex: Optional[Pattern[str]] = field(default=None, compare=False, repr=False)

    @classmethod
    def create(cls, name: str, op: str, value: str) -> "Matcher":
        regex = None
        if op in ("=~", "!~"):
            try:
                regex = re.compile(value)
            except re.error as exc:
                raise SelectorError(f"invalid regular expression {value!r} for label {name!r}: {exc}") from exc
        return cls(name, op, value, regex)

    def matches(self, value: str) -> bool:
        if self.op == "=":
            return value == self.value
        if self.op == "!=":
            return value != self.value
        hit = self._regex.fullmatch(value) is not None
        return hit if self.op == "=~" else not hit

    def __str__(self) -> str:
        return f"{self.name}{self.op}{_quote(self.value)}"


@dataclass(frozen=True)
class Selector:
    """A series selector such as ``http_requests_total{job="api", code=~"5.."}``."""

    matchers: tuple

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(m.matches(labels.get(m.name, "")) for m in self.matchers)

    def validate_for_query(self) -> None:
        # A selector that matches the empty label set would select every series.
        if not any(not m.matches("") for m in self.matchers):
            raise SelectorError("vector selector must contain at least one non-empty matcher")


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'


def _unquote(token: str) -> str:
    if token.startswith("`"):
        return token[1:-1]
    try:
        value = ast.literal_eval(token)
    except (SyntaxError, ValueError) as exc:
        raise SelectorError(f"invalid string literal {token}") from exc
    if not isinstance(value, str):
        raise SelectorError(f"invalid string literal {token}")
    return value


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, msg: str) -> SelectorError:
        return SelectorError(f"{msg} at position {self.pos} in {self.text!r}")

    def skip_space(self) -> None:
        self.pos = _SPACE.match(self.text, self.pos).end()

    def expect(self, pattern: Pattern[str], what: str) -> str:
        self.skip_space()
        m = pattern.match(self.text, self.pos)
        if not m:
            raise self.error(f"expected {what}")
        self.pos = m.end()
        return m.group(0)

    def peek(self, char: str) -> bool:
        self.skip_space()
        return self.text.startswith(char, self.pos)

    def parse(self) -> Selector:
        matchers: List[Matcher] = []
        self.skip_space()
        if not self.peek("{"):
            name = self.expect(_METRIC_NAME, "metric name")
            matchers.append(Matcher.create(METRIC_NAME_LABEL, "=", name))
        if self.peek("{"):
            self.pos += 1
            while not self.peek("}"):
                label = self.expect(_LABEL_NAME, "label name")
                op = self.expect(_MATCH_OP, "match operator")
                value = _unquote(self.expect(_STRING, "quoted label value"))
                matchers.append(Matcher.create(label, op, value))
                if self.peek(","):
                    self.pos += 1
                elif not self.peek("}"):
                    raise self.error("expected ',' or '}'")
            self.pos += 1
        self.skip_space()
        if self.pos != len(self.text):
            raise self.error("unexpected trailing characters")
        if not matchers:
            raise self.error("empty selector")
        return Selector(tuple(matchers))


def parse_selector(text: str) -> Selector:
    if not text or not text.strip():
        raise SelectorError("empty selector")
    return _Parser(text).parse()


def parse_series(text: str) -> Dict[str, str]:
    """Parse a fixture series description into its label set."""

    selector = parse_selector(text)
    labels: Dict[str, str] = {}
    for m in selector.matchers:
        if m.op != "=":
            raise SelectorError(f"series {text!r} may only use '=' matchers, got {m}")
        if m.name in labels:
            raise SelectorError(f"series {text!r} sets label {m.name!r} twice")
        labels[m.name] = m.value
    # Prometheus drops empty labels from a label set.
    return {k: v for k, v in labels.items() if v != ""}


def labels_key(labels: Mapping[str, str]) -> tuple:
    return tuple(sorted(labels.items()))


def format_labels(labels: Mapping[str, str]) -> str:
    name = labels.get(METRIC_NAME_LABEL, "")
    rest = ", ".join(f"{k}={_quote(v)}" for k, v in sorted(labels.items()) if k != METRIC_NAME_LABEL)
    return f"{name}{{{rest}}}" if rest or not name else name
