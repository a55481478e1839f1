"""
Query Parser - Validate and decompose read-queries before any network call.

Grammar (keywords are case-insensitive):

    SELECT <select-list> FROM <Entity>
        [WHERE <condition>]
        [ORDER BY | ORDERBY <field> [ASC|DESC] {, <field> [ASC|DESC]}]
        [STARTPOSITION <n>]
        [MAXRESULTS <n>]

A small tokenizer feeds a recursive-descent parser. SELECT and FROM are
checked before WHERE is considered, and the FROM entity must be on the
allow-list. Pagination clauses found in the raw text are kept on the
parsed result but to_query() regenerates them, so the client can page on
the caller's behalf.
"""

import re
from dataclasses import dataclass
from typing import Optional

from ledgersheet.errors import ValidationError

ALLOWED_ENTITIES = {
    name.lower(): name
    for name in (
        "Account", "Attachable", "Bill", "BillPayment", "Budget", "Class",
        "CompanyInfo", "CreditMemo", "Customer", "Department", "Deposit",
        "Employee", "Estimate", "Invoice", "Item", "JournalEntry", "Payment",
        "PaymentMethod", "Preferences", "Purchase", "PurchaseOrder",
        "RefundReceipt", "SalesReceipt", "TaxAgency", "TaxCode", "TaxRate",
        "Term", "TimeActivity", "Transfer", "Vendor", "VendorCredit",
    )
}

CLAUSE_KEYWORDS = {"WHERE", "ORDER", "ORDERBY", "STARTPOSITION", "MAXRESULTS"}
MAX_PAGE_SIZE = 1000

_TOKEN_SPEC = [
    ("SPACE", r"\s+"),
    ("STRING", r"'(?:[^'\\]|\\.|'')*'"),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_.]*"),
    ("OP", r"<=|>=|!=|<>|=|<|>"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("COMMA", r","),
    ("STAR", r"\*"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_COUNT_RE = re.compile(r"^count\s*\(\s*\*\s*\)$", re.IGNORECASE)


class QuerySyntaxError(ValueError):
    """Raised by the tokenizer and parser; surfaced as an invalid ParsedQuery."""
    pass


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    start: int
    end: int

    @property
    def keyword(self) -> Optional[str]:
        return self.value.upper() if self.kind == "IDENT" else None


def tokenize(text: str) -> list[Token]:
    """Split query text into tokens, dropping whitespace."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise QuerySyntaxError(f"Unexpected character {text[pos]!r} at position {pos}")
        kind = match.lastgroup or ""
        if kind != "SPACE":
            tokens.append(Token(kind, match.group(), match.start(), match.end()))
        pos = match.end()
    return tokens


@dataclass(frozen=True)
class ParsedQuery:
    """
    Result of parsing a read-query.

    When valid is False only error and text are meaningful.
    """
    valid: bool
    text: str
    select: str = ""
    entity: str = ""
    where: Optional[str] = None
    order_by: Optional[str] = None
    start_position: Optional[int] = None
    max_results: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_count(self) -> bool:
        return bool(_COUNT_RE.match(self.select))

    def require(self) -> "ParsedQuery":
        """Return self if valid, else raise ValidationError."""
        if not self.valid:
            raise ValidationError(f"Invalid query: {self.error}")
        return self

    def to_query(
        self,
        start_position: Optional[int] = None,
        max_results: Optional[int] = None,
    ) -> str:
        """
        Rebuild the query text with generated pagination clauses.

        Pagination present in the raw query text is dropped; only the
        arguments given here are emitted.
        """
        self.require()
        parts = [f"SELECT {self.select} FROM {self.entity}"]
        if self.where:
            parts.append(f"WHERE {self.where}")
        if self.order_by:
            parts.append(f"ORDERBY {self.order_by}")
        if start_position is not None:
            parts.append(f"STARTPOSITION {int(start_position)}")
        if max_results is not None:
            parts.append(f"MAXRESULTS {int(max_results)}")
        return " ".join(parts)


class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def next(self) -> Optional[Token]:
        token = self.peek()
        if token is not None:
            self.pos += 1
        return token

    def at_keyword(self, *keywords: str) -> bool:
        token = self.peek()
        return token is not None and token.keyword in keywords

    def expect_keyword(self, keyword: str, message: str) -> Token:
        if not self.at_keyword(keyword):
            raise QuerySyntaxError(message)
        return self.next()  # type: ignore[return-value]

    def expect_int(self, clause: str) -> int:
        token = self.next()
        if token is None or token.kind != "NUMBER" or "." in token.value:
            raise QuerySyntaxError(f"{clause} requires a whole number")
        return int(token.value)

    def span(self, start: Token, end: Token) -> str:
        return self.text[start.start:end.end].strip()

    def parse(self) -> ParsedQuery:
        if not self.tokens:
            raise QuerySyntaxError("Query is empty")

        self.expect_keyword("SELECT", "Query must start with SELECT")
        select = self.parse_select()

        self.expect_keyword("FROM", "Missing FROM clause")
        entity_token = self.next()
        if entity_token is None or entity_token.kind != "IDENT" or entity_token.keyword in CLAUSE_KEYWORDS:
            raise QuerySyntaxError("Missing entity after FROM")
        entity = ALLOWED_ENTITIES.get(entity_token.value.lower())
        if entity is None:
            raise QuerySyntaxError(f"Unsupported entity '{entity_token.value}'")

        where = self.parse_where()
        order_by = self.parse_order_by()
        start_position, max_results = self.parse_pagination()

        leftover = self.peek()
        if leftover is not None:
            raise QuerySyntaxError(f"Unexpected token '{leftover.value}'")

        return ParsedQuery(
            valid=True,
            text=self.text,
            select=select,
            entity=entity,
            where=where,
            order_by=order_by,
            start_position=start_position,
            max_results=max_results,
        )

    def parse_select(self) -> str:
        first = self.peek()
        last = None
        depth = 0
        while self.peek() is not None:
            token = self.peek()
            if depth == 0 and token.keyword == "FROM":
                break
            if token.kind == "LPAREN":
                depth += 1
            elif token.kind == "RPAREN":
                depth -= 1
            last = self.next()
        if first is None or last is None or first.keyword == "FROM":
            raise QuerySyntaxError("SELECT list is empty")
        if self.peek() is None:
            raise QuerySyntaxError("Missing FROM clause")

        select = self.span(first, last)
        if select == "*" or _COUNT_RE.match(select):
            return "COUNT(*)" if _COUNT_RE.match(select) else "*"

        fields = [f.strip() for f in select.split(",")]
        for name in fields:
            if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_.]*", name):
                raise QuerySyntaxError(f"Unsupported SELECT field '{name}'")
        return ", ".join(fields)

    def parse_where(self) -> Optional[str]:
        if not self.at_keyword("WHERE"):
            return None
        self.next()
        first = self.peek()
        last = None
        while self.peek() is not None and not self.at_keyword("ORDER", "ORDERBY", "STARTPOSITION", "MAXRESULTS"):
            last = self.next()
        if first is None or last is None:
            raise QuerySyntaxError("WHERE clause is empty")
        return self.span(first, last)

    def parse_order_by(self) -> Optional[str]:
        if self.at_keyword("ORDERBY"):
            self.next()
        elif self.at_keyword("ORDER"):
            self.next()
            self.expect_keyword("BY", "ORDER must be followed by BY")
        else:
            return None

        terms = []
        while True:
            field_token = self.next()
            if field_token is None or field_token.kind != "IDENT" or field_token.keyword in CLAUSE_KEYWORDS:
                raise QuerySyntaxError("ORDER BY requires a field name")
            term = field_token.value
            if self.at_keyword("ASC", "DESC"):
                term = f"{term} {self.next().value.upper()}"  # type: ignore[union-attr]
            terms.append(term)
            token = self.peek()
            if token is None or token.kind != "COMMA":
                break
            self.next()
        return ", ".join(terms)

    def parse_pagination(self) -> tuple[Optional[int], Optional[int]]:
        start_position = None
        max_results = None
        while self.at_keyword("STARTPOSITION", "MAXRESULTS"):
            keyword = self.next().keyword  # type: ignore[union-attr]
            value = self.expect_int(keyword)
            if keyword == "STARTPOSITION":
                if start_position is not None:
                    raise QuerySyntaxError("STARTPOSITION given twice")
                if value < 1:
                    raise QuerySyntaxError("STARTPOSITION must be >= 1")
                start_position = value
            else:
                if max_results is not None:
                    raise QuerySyntaxError("MAXRESULTS given twice")
                if not 1 <= value <= MAX_PAGE_SIZE:
                    raise QuerySyntaxError(f"MAXRESULTS must be between 1 and {MAX_PAGE_SIZE}")
                max_results = value
        return start_position, max_results


def parse_query(text: Optional[str]) -> ParsedQuery:
    """
    Parse a read-query.

    Never raises for malformed input; returns a ParsedQuery with
    valid=False and an error message instead.
    """
    text = (text or "").strip().rstrip(";").strip()
    try:
        return _Parser(text).parse()
    except QuerySyntaxError as e:
        return ParsedQuery(valid=False, text=text, error=str(e))
