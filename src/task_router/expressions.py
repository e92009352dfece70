"""
Sandboxed boolean expression language for custom routing criteria.

Rules may carry a free-text condition such as::

    metadata.tier == 'enterprise' and (urgency >= 0.7 or 'outage' in categories)

Expressions are tokenized and parsed by a small recursive-descent parser
into a tree of nodes. Nothing is handed to ``eval``: the only operations
available are boolean logic, comparisons, membership and string tests over
values looked up from the request context.

Grammar:
    expr    := or
    or      := and ("or" and)*
    and     := not ("and" not)*
    not     := "not" not | cmp
    cmp     := value (op value)?
    op      := == != < <= > >= in "not in" contains startswith endswith matches
    value   := STRING | NUMBER | true | false | null | list | path | "(" expr ")"
    list    := "[" (value ("," value)*)? "]"
    path    := IDENT ("." IDENT)*
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

import re2


MAX_EXPRESSION_LENGTH = 1000
MAX_NESTING_DEPTH = 32
MAX_REGEX_LENGTH = 200


class ExpressionError(Exception):
    """Raised when an expression cannot be parsed or evaluated."""
    pass


_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("OP", r"==|!=|<=|>=|<|>"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("LBRACKET", r"\["),
    ("RBRACKET", r"\]"),
    ("COMMA", r","),
    ("DOT", r"\."),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_WORD_OPERATORS = {"in", "contains", "startswith", "endswith", "matches"}
_KEYWORDS = {"and", "or", "not", "true", "false", "null"} | _WORD_OPERATORS


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    position: int


def tokenize(source: str) -> List[Token]:
    """Split an expression into tokens, rejecting any character outside the grammar."""
    tokens = []
    position = 0
    while position < len(source):
        match = _TOKEN_RE.match(source, position)
        if match is None:
            raise ExpressionError(f"Unexpected character {source[position]!r} at position {position}")
        kind = match.lastgroup
        text = match.group()
        if kind != "WS":
            if kind == "IDENT" and text in _KEYWORDS:
                kind = "KEYWORD"
            tokens.append(Token(kind, text, position))
        position = match.end()
    tokens.append(Token("EOF", "", len(source)))
    return tokens


# Node types. Each node is a callable taking the context and returning a value.
Node = Callable[[Dict[str, Any]], Any]


def _literal(value: Any) -> Node:
    return lambda context: value


def _path(parts: Tuple[str, ...]) -> Node:
    def lookup(context: Dict[str, Any]) -> Any:
        current: Any = context
        for part in parts:
            if isinstance(current, dict):
                current = current.get(part)
            else:
                return None
            if current is None:
                return None
        return current
    return lookup


def _list(items: List[Node]) -> Node:
    return lambda context: [item(context) for item in items]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _ordered(op: str, left: Any, right: Any) -> bool:
    if not ((_is_number(left) and _is_number(right)) or (isinstance(left, str) and isinstance(right, str))):
        raise ExpressionError(f"Cannot compare {type(left).__name__} {op} {type(right).__name__}")
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _membership(needle: Any, haystack: Any) -> bool:
    if haystack is None:
        return False
    if isinstance(haystack, str):
        if not isinstance(needle, str):
            raise ExpressionError("Only strings can be tested for membership in a string")
        return needle.lower() in haystack.lower()
    if isinstance(haystack, (list, dict)):
        if isinstance(needle, str):
            return needle.lower() in [str(item).lower() for item in haystack]
        return needle in haystack
    raise ExpressionError(f"Cannot test membership in {type(haystack).__name__}")


@lru_cache(maxsize=256)
def _regex(pattern: str):
    """
    Compile a ``matches`` pattern with RE2, whose matching time is linear in the input.

    Backreferences and lookaround are not available.
    """
    if len(pattern) > MAX_REGEX_LENGTH:
        raise ExpressionError(f"Regular expression longer than {MAX_REGEX_LENGTH} characters")
    try:
        return re2.compile(pattern)
    except re2.error as e:
        raise ExpressionError(f"Invalid regular expression {pattern!r}: {e}")


def _string_test(op: str, left: Any, right: Any) -> bool:
    if left is None:
        return False
    if not isinstance(left, str) or not isinstance(right, str):
        raise ExpressionError(f"'{op}' requires string operands")
    if op == "startswith":
        return left.lower().startswith(right.lower())
    if op == "endswith":
        return left.lower().endswith(right.lower())
    return _regex(right).search(left) is not None


def _compare(op: str, left_node: Node, right_node: Node) -> Node:
    def evaluate(context: Dict[str, Any]) -> bool:
        left = left_node(context)
        right = right_node(context)
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op in ("<", "<=", ">", ">="):
            return _ordered(op, left, right)
        if op == "in":
            return _membership(left, right)
        if op == "not in":
            return not _membership(left, right)
        if op == "contains":
            return _membership(right, left)
        return _string_test(op, left, right)
    return evaluate


class _Parser:
    """Recursive-descent parser producing node callables."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _expect(self, kind: str, value: Optional[str] = None) -> Token:
        token = self.current
        if token.kind != kind or (value is not None and token.value != value):
            expected = value or kind
            raise ExpressionError(f"Expected {expected} at position {token.position}, found {token.value or 'end of input'!r}")
        return self._advance()

    def _is_keyword(self, value: str) -> bool:
        return self.current.kind == "KEYWORD" and self.current.value == value

    def _enter(self):
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise ExpressionError(f"Expression nesting exceeds {MAX_NESTING_DEPTH} levels")

    def _leave(self):
        self.depth -= 1

    def parse(self) -> Node:
        node = self._parse_or()
        if self.current.kind != "EOF":
            raise ExpressionError(f"Unexpected {self.current.value!r} at position {self.current.position}")
        return node

    def _parse_or(self) -> Node:
        operands = [self._parse_and()]
        while self._is_keyword("or"):
            self._advance()
            operands.append(self._parse_and())
        if len(operands) == 1:
            return operands[0]
        return lambda context: any(bool(operand(context)) for operand in operands)

    def _parse_and(self) -> Node:
        operands = [self._parse_not()]
        while self._is_keyword("and"):
            self._advance()
            operands.append(self._parse_not())
        if len(operands) == 1:
            return operands[0]
        return lambda context: all(bool(operand(context)) for operand in operands)

    def _parse_not(self) -> Node:
        if self._is_keyword("not"):
            self._advance()
            self._enter()
            operand = self._parse_not()
            self._leave()
            return lambda context: not bool(operand(context))
        return self._parse_comparison()

    def _parse_comparison(self) -> Node:
        left = self._parse_value()
        token = self.current
        if token.kind == "OP":
            self._advance()
            return _compare(token.value, left, self._parse_value())
        if token.kind == "KEYWORD" and token.value in _WORD_OPERATORS:
            self._advance()
            operand = self.current
            right = self._parse_value()
            if token.value == "matches" and operand.kind == "STRING":
                # Literal patterns are checked when the rule is saved
                _regex(right({}))
            return _compare(token.value, left, right)
        if self._is_keyword("not") and self.tokens[self.index + 1].value == "in":
            self._advance()
            self._advance()
            return _compare("not in", left, self._parse_value())
        return left

    def _parse_value(self) -> Node:
        token = self.current
        if token.kind == "NUMBER":
            self._advance()
            return _literal(float(token.value) if "." in token.value else int(token.value))
        if token.kind == "STRING":
            self._advance()
            body = token.value[1:-1]
            return _literal(re.sub(r"\\(.)", r"\1", body))
        if token.kind == "KEYWORD" and token.value in ("true", "false", "null"):
            self._advance()
            return _literal({"true": True, "false": False, "null": None}[token.value])
        if token.kind == "LPAREN":
            self._advance()
            self._enter()
            node = self._parse_or()
            self._leave()
            self._expect("RPAREN")
            return node
        if token.kind == "LBRACKET":
            return self._parse_list()
        if token.kind == "IDENT":
            parts = [self._advance().value]
            while self.current.kind == "DOT":
                self._advance()
                parts.append(self._expect("IDENT").value)
            return _path(tuple(parts))
        raise ExpressionError(f"Unexpected {token.value or 'end of input'!r} at position {token.position}")

    def _parse_list(self) -> Node:
        self._expect("LBRACKET")
        self._enter()
        items: List[Node] = []
        if self.current.kind != "RBRACKET":
            items.append(self._parse_value())
            while self.current.kind == "COMMA":
                self._advance()
                items.append(self._parse_value())
        self._expect("RBRACKET")
        self._leave()
        return _list(items)


class CompiledExpression:
    """A parsed expression ready to evaluate against request contexts."""

    def __init__(self, source: str, root: Node):
        self.source = source
        self._root = root

    def evaluate(self, context: Dict[str, Any]) -> bool:
        """
        Evaluate the expression.

        Args:
            context: Mapping of top-level names to values

        Returns:
            bool: Truthiness of the expression result

        Raises:
            ExpressionError: On type errors during evaluation
        """
        try:
            return bool(self._root(context))
        except ExpressionError:
            raise
        except (TypeError, ValueError, RecursionError) as e:
            raise ExpressionError(f"Evaluation failed: {e}")

    def __repr__(self) -> str:
        return f"CompiledExpression({self.source!r})"


@lru_cache(maxsize=512)
def compile_expression(source: str) -> CompiledExpression:
    """
    Parse an expression, caching the result per source string.

    Raises:
        ExpressionError: If the source is empty, too long, or not in the grammar
    """
    if not source or not source.strip():
        raise ExpressionError("Expression is empty")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression longer than {MAX_EXPRESSION_LENGTH} characters")
    root = _Parser(tokenize(source)).parse()
    return CompiledExpression(source.strip(), root)


def evaluate_expression(source: str, context: Dict[str, Any]) -> bool:
    """Compile (cached) and evaluate in one call."""
    return compile_expression(source).evaluate(context)
