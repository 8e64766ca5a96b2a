"""Metadata filter predicates.

A predicate is a small tagged union of frozen dataclasses. It can be built
from the MongoDB-style query objects used by hosted vector stores
(``{"nested.id": {"$gt": 2}}``), from a short natural-language clause
(``nested.id > 2``), serialised back with ``to_dict`` and evaluated against
a chunk's metadata mapping.
"""
import functools
import operator
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple, Union

from metarag.errors import FilterError

COMPARISON_OPERATORS = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}
LOWER_BOUNDS = ("$gt", "$gte")
UPPER_BOUNDS = ("$lt", "$lte")
FIELD_OPERATORS = set(COMPARISON_OPERATORS) | {"$in", "$nin", "$regex", "$options", "$exists", "$not"}

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][\w-]*(\.[A-Za-z_0-9][\w-]*)*$")
_MISSING = object()


@dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Range:
    field: str
    lower: Any
    upper: Any
    include_lower: bool = True
    include_upper: bool = True


@dataclass(frozen=True)
class Regex:
    field: str
    pattern: str
    flags: str = ""


@dataclass(frozen=True)
class Membership:
    field: str
    values: Tuple[Any, ...]
    negate: bool = False


@dataclass(frozen=True)
class Exists:
    field: str
    present: bool = True


@dataclass(frozen=True)
class And:
    operands: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Or:
    operands: Tuple["Predicate", ...]


@dataclass(frozen=True)
class Not:
    operand: "Predicate"


Predicate = Union[Comparison, Range, Regex, Membership, Exists, And, Or, Not]
FIELD_PREDICATES = (Comparison, Range, Regex, Membership, Exists)


# --------------------------------------------------------------------------
# MongoDB-style query objects
# --------------------------------------------------------------------------


def parse_filter(query: Optional[Mapping[str, Any]]) -> Optional[Predicate]:
    """Build a predicate from a MongoDB-style query object.

    Returns None for an empty or missing query.

    Raises:
        FilterError: On unknown operators or malformed operands
    """
    if query is None:
        return None
    if not isinstance(query, Mapping):
        raise FilterError(f"Filter must be a mapping, got {type(query).__name__}")
    if not query:
        return None
    return _parse_document(query)


def _parse_document(query: Mapping[str, Any]) -> Predicate:
    clauses: List[Predicate] = []
    for key, value in query.items():
        if key in ("$and", "$or"):
            if not isinstance(value, (list, tuple)) or not value:
                raise FilterError(f"{key} requires a non-empty list of conditions")
            operands = tuple(_parse_condition(item, key) for item in value)
            clauses.append(And(operands) if key == "$and" else Or(operands))
        elif key == "$not":
            clauses.append(Not(_parse_condition(value, key)))
        elif key.startswith("$"):
            raise FilterError(f"Unknown logical operator: {key}")
        else:
            clauses.append(_parse_field(key, value))
    return clauses[0] if len(clauses) == 1 else And(tuple(clauses))


def _parse_condition(item: Any, parent: str) -> Predicate:
    if not isinstance(item, Mapping) or not item:
        raise FilterError(f"{parent} operands must be non-empty mappings")
    return _parse_document(item)


def _parse_field(field: str, spec: Any) -> Predicate:
    if not (isinstance(spec, Mapping) and any(str(k).startswith("$") for k in spec)):
        return Comparison(field, "$eq", _freeze(spec))

    unknown = [op for op in spec if op not in FIELD_OPERATORS]
    if unknown:
        raise FilterError(f"Unknown operator(s) for {field!r}: {', '.join(map(str, unknown))}")
    if "$options" in spec and "$regex" not in spec:
        raise FilterError(f"$options without $regex for {field!r}")

    lower = [op for op in LOWER_BOUNDS if op in spec]
    upper = [op for op in UPPER_BOUNDS if op in spec]
    clauses: List[Predicate] = []
    if len(lower) == 1 and len(upper) == 1:
        clauses.append(
            Range(
                field,
                spec[lower[0]],
                spec[upper[0]],
                include_lower=lower[0] == "$gte",
                include_upper=upper[0] == "$lte",
            )
        )
        handled = {lower[0], upper[0]}
    else:
        handled = set()

    for op, value in spec.items():
        if op in handled or op == "$options":
            continue
        if op in COMPARISON_OPERATORS:
            clauses.append(Comparison(field, op, _freeze(value)))
        elif op in ("$in", "$nin"):
            if not isinstance(value, (list, tuple)):
                raise FilterError(f"{op} for {field!r} requires a list")
            clauses.append(Membership(field, tuple(_freeze(v) for v in value), negate=op == "$nin"))
        elif op == "$regex":
            clauses.append(Regex(field, value, spec.get("$options", "")))
        elif op == "$exists":
            if not isinstance(value, bool):
                raise FilterError(f"$exists for {field!r} requires true or false")
            clauses.append(Exists(field, value))
        elif op == "$not":
            if not isinstance(value, Mapping) or not value:
                raise FilterError(f"$not for {field!r} requires an operator mapping")
            clauses.append(Not(_parse_field(field, value)))

    return clauses[0] if len(clauses) == 1 else And(tuple(clauses))


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def to_dict(predicate: Optional[Predicate]) -> dict:
    """Serialise a predicate back to a MongoDB-style query object."""
    if predicate is None:
        return {}
    if isinstance(predicate, Comparison):
        return {predicate.field: {predicate.op: _thaw(predicate.value)}}
    if isinstance(predicate, Range):
        low = "$gte" if predicate.include_lower else "$gt"
        high = "$lte" if predicate.include_upper else "$lt"
        return {predicate.field: {low: predicate.lower, high: predicate.upper}}
    if isinstance(predicate, Regex):
        spec = {"$regex": predicate.pattern}
        if predicate.flags:
            spec["$options"] = predicate.flags
        return {predicate.field: spec}
    if isinstance(predicate, Membership):
        op = "$nin" if predicate.negate else "$in"
        return {predicate.field: {op: [_thaw(v) for v in predicate.values]}}
    if isinstance(predicate, Exists):
        return {predicate.field: {"$exists": predicate.present}}
    if isinstance(predicate, And):
        return {"$and": [to_dict(p) for p in predicate.operands]}
    if isinstance(predicate, Or):
        return {"$or": [to_dict(p) for p in predicate.operands]}
    if isinstance(predicate, Not):
        return {"$not": to_dict(predicate.operand)}
    raise FilterError(f"Not a filter predicate: {predicate!r}")


# --------------------------------------------------------------------------
# Validation
# --------------------------------------------------------------------------


def field_references(predicate: Optional[Predicate]) -> Set[str]:
    """All metadata fields a predicate refers to."""
    if predicate is None:
        return set()
    if isinstance(predicate, FIELD_PREDICATES):
        return {predicate.field}
    if isinstance(predicate, (And, Or)):
        fields: Set[str] = set()
        for operand in predicate.operands:
            fields |= field_references(operand)
        return fields
    if isinstance(predicate, Not):
        return field_references(predicate.operand)
    return set()


def validate_filter(
    predicate: Optional[Predicate], known_fields: Optional[Iterable[str]] = None
) -> None:
    """Check a predicate is well-formed.

    Logical nodes must have operands, field names must be dotted
    identifiers, regexes must compile and comparison operators must be
    known. With ``known_fields``, every referenced field must be in it.

    Raises:
        FilterError: Listing every problem found
    """
    problems: List[str] = []
    _check(predicate, problems)
    if known_fields is not None:
        known = set(known_fields)
        unknown = sorted(f for f in field_references(predicate) if f not in known)
        if unknown:
            problems.append(f"unknown field(s): {', '.join(unknown)}")
    if problems:
        raise FilterError("Invalid filter: " + "; ".join(problems))


def _check(predicate: Any, problems: List[str]) -> None:
    if predicate is None:
        return
    if isinstance(predicate, FIELD_PREDICATES):
        if not isinstance(predicate.field, str) or not _FIELD_PATTERN.match(predicate.field):
            problems.append(f"invalid field name {predicate.field!r}")
    if isinstance(predicate, Comparison):
        if predicate.op not in COMPARISON_OPERATORS:
            problems.append(f"unknown comparison operator {predicate.op!r}")
        if isinstance(predicate.value, Mapping):
            problems.append(f"comparison value for {predicate.field!r} must not be a mapping")
    elif isinstance(predicate, Range):
        if predicate.lower is None or predicate.upper is None:
            problems.append(f"range on {predicate.field!r} needs both bounds")
    elif isinstance(predicate, Regex):
        if not isinstance(predicate.pattern, str):
            problems.append(f"regex for {predicate.field!r} must be a string")
        elif not isinstance(predicate.flags, str):
            problems.append(f"regex options for {predicate.field!r} must be a string")
        else:
            try:
                compile_regex(predicate.pattern, predicate.flags)
            except (re.error, FilterError) as e:
                problems.append(f"bad regex for {predicate.field!r}: {e}")
    elif isinstance(predicate, Membership):
        if not isinstance(predicate.values, tuple):
            problems.append(f"membership values for {predicate.field!r} must be a sequence")
    elif isinstance(predicate, (And, Or)):
        name = "$and" if isinstance(predicate, And) else "$or"
        if not predicate.operands:
            problems.append(f"{name} has no operands")
        for operand in predicate.operands:
            _check(operand, problems)
    elif isinstance(predicate, Not):
        if predicate.operand is None:
            problems.append("$not has no operand")
        _check(predicate.operand, problems)
    elif not isinstance(predicate, FIELD_PREDICATES):
        problems.append(f"not a predicate: {predicate!r}")


def _regex_flags(options: str) -> int:
    flags = 0
    for option in options or "":
        if option == "i":
            flags |= re.IGNORECASE
        elif option == "m":
            flags |= re.MULTILINE
        elif option == "s":
            flags |= re.DOTALL
        elif option == "x":
            flags |= re.VERBOSE
        else:
            raise FilterError(f"unsupported regex option {option!r}")
    return flags


@functools.lru_cache(maxsize=256)
def compile_regex(pattern: str, options: str = "") -> "re.Pattern":
    """Compile a ``$regex`` pattern with Mongo-style ``$options``, cached."""
    return re.compile(pattern, _regex_flags(options))


# --------------------------------------------------------------------------
# Evaluation
# --------------------------------------------------------------------------


def resolve_path(metadata: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted path; returns a sentinel when absent."""
    if path in metadata:
        return metadata[path]
    current: Any = metadata
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _compare(op: str, left: Any, right: Any) -> bool:
    # Booleans only compare with booleans (True must not equal 1)
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    try:
        return bool(COMPARISON_OPERATORS[op](left, right))
    except TypeError:
        return False


def _values(found: Any) -> List[Any]:
    return list(found) if isinstance(found, (list, tuple)) else [found]


def evaluate(predicate: Optional[Predicate], metadata: Mapping[str, Any]) -> bool:
    """True if the metadata satisfies the predicate (None matches all).

    Array-valued fields match ``$eq``, ``$in`` and ``$regex`` when any
    element does. Missing fields and incomparable types never match.
    """
    if predicate is None:
        return True
    if isinstance(predicate, And):
        return all(evaluate(p, metadata) for p in predicate.operands)
    if isinstance(predicate, Or):
        return any(evaluate(p, metadata) for p in predicate.operands)
    if isinstance(predicate, Not):
        return not evaluate(predicate.operand, metadata)

    found = resolve_path(metadata, predicate.field)
    if isinstance(predicate, Exists):
        return (found is not _MISSING) == predicate.present
    if found is _MISSING:
        return isinstance(predicate, Comparison) and predicate.op == "$ne" or (
            isinstance(predicate, Membership) and predicate.negate
        )

    if isinstance(predicate, Comparison):
        value = _thaw(predicate.value)
        if predicate.op == "$eq":
            return _compare("$eq", found, value) or any(_compare("$eq", v, value) for v in _values(found))
        if predicate.op == "$ne":
            return not _compare("$eq", found, value) and not any(
                _compare("$eq", v, value) for v in _values(found)
            )
        return any(_compare(predicate.op, v, value) for v in _values(found))
    if isinstance(predicate, Range):
        low = "$gte" if predicate.include_lower else "$gt"
        high = "$lte" if predicate.include_upper else "$lt"
        return any(
            _compare(low, v, predicate.lower) and _compare(high, v, predicate.upper)
            for v in _values(found)
        )
    if isinstance(predicate, Membership):
        hit = any(_compare("$eq", v, m) for v in _values(found) for m in predicate.values)
        return not hit if predicate.negate else hit
    if isinstance(predicate, Regex):
        pattern = compile_regex(predicate.pattern, predicate.flags)
        return any(isinstance(v, str) and pattern.search(v) for v in _values(found))
    raise FilterError(f"Not a filter predicate: {predicate!r}")


def metadata_paths(metadata: Mapping[str, Any], prefix: str = "") -> Set[str]:
    """Dotted paths of every leaf in a (nested) metadata mapping."""
    paths: Set[str] = set()
    for key, value in metadata.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping) and value:
            paths |= metadata_paths(value, prefix=f"{path}.")
        else:
            paths.add(path)
    return paths


# --------------------------------------------------------------------------
# Natural-language clauses
# --------------------------------------------------------------------------

_VALUE = r"""(?P<value>"[^"]*"|'[^']*'|\[[^\]]*\]|[^\s,;?!]+)"""
_SYMBOLIC_OPS = r">=|<=|!=|==|=|>|<"
_KEYWORD_OPS = r"not\s+in|in|regex|matches|contains"
_PHRASE_OPS = (
    r"is\s+not|is\s+greater\s+than|greater\s+than|is\s+less\s+than|less\s+than|"
    r"is\s+at\s+least|at\s+least|is\s+at\s+most|at\s+most|is\s+equal\s+to|equals|is"
)
_PHRASES = {
    "is not": "$ne",
    "is greater than": "$gt",
    "greater than": "$gt",
    "is less than": "$lt",
    "less than": "$lt",
    "is at least": "$gte",
    "at least": "$gte",
    "is at most": "$lte",
    "at most": "$lte",
    "is equal to": "$eq",
    "equals": "$eq",
    "is": "$eq",
}
_SYMBOLS = {">": "$gt", ">=": "$gte", "<": "$lt", "<=": "$lte", "=": "$eq", "==": "$eq", "!=": "$ne"}
_IDENT = r"(?<![\w.-])(?P<field>[A-Za-z_][\w-]*(?:\.[A-Za-z_0-9][\w-]*)*)"
_BETWEEN = re.compile(
    _IDENT + r"\s+between\s+(?P<low>[^\s,]+)\s+and\s+(?P<high>[^\s,;?!]+)", re.IGNORECASE
)
_CONNECTOR = re.compile(r"\b(and|or)\b", re.IGNORECASE)


def _clause_pattern(with_phrases: bool) -> "re.Pattern":
    if with_phrases:
        ops = f"{_SYMBOLIC_OPS}|\\b(?:{_KEYWORD_OPS}|{_PHRASE_OPS})\\b"
    else:
        ops = f"{_SYMBOLIC_OPS}|\\bregex\\b"
    return re.compile(_IDENT + rf"\s*(?P<op>{ops})\s*" + _VALUE, re.IGNORECASE)


_CLAUSE_STRICT = _clause_pattern(with_phrases=False)
_CLAUSE_PHRASES = _clause_pattern(with_phrases=True)


def parse_scalar(raw: str) -> Any:
    """Interpret a literal from a query: quoted string, number, bool or word."""
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        return raw[1:-1]
    # Sentence-final period ("id > 2.")
    raw = raw.rstrip(".") or raw
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "none"):
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def _parse_list(raw: str) -> Tuple[Any, ...]:
    inner = raw.strip()
    if inner.startswith("[") and inner.endswith("]"):
        inner = inner[1:-1]
    return tuple(parse_scalar(item) for item in inner.split(",") if item.strip())


def _is_literal(raw: str) -> bool:
    """Quoted strings, lists, numbers, booleans and null; not bare words."""
    raw = raw.strip()
    if raw[:1] in ("\"", "'", "["):
        return True
    return not isinstance(parse_scalar(raw), str)


def _clause_predicate(field: str, op: str, raw: str) -> Optional[Predicate]:
    """Predicate for one clause, or None when the clause reads as prose.

    Word operators (``is``, ``greater than``, ``in`` ...) appear in ordinary
    questions ("which source is most reliable"), so they only count when
    the value is a literal.
    """
    op = " ".join(op.lower().split())
    if op in _SYMBOLS:
        return Comparison(field, _SYMBOLS[op], parse_scalar(raw))
    if op in ("regex", "matches"):
        return Regex(field, str(parse_scalar(raw)))
    if op == "contains":
        return Regex(field, re.escape(str(parse_scalar(raw))), "i")
    if not _is_literal(raw):
        return None
    if op in _PHRASES:
        return Comparison(field, _PHRASES[op], parse_scalar(raw))
    return Membership(field, _parse_list(raw), negate=op == "not in")


def parse_filter_expression(
    text: str,
    known_fields: Optional[Iterable[str]] = None,
    phrase_fields: Optional[Iterable[str]] = None,
) -> Optional[Predicate]:
    """Translate the filter clauses in free text into a predicate.

    Recognises ``field op value`` clauses joined by ``and`` / ``or`` (``and``
    binds tighter). With ``known_fields`` only those fields are accepted and
    keyword operators (``in``, ``contains``, ``is``, ``greater than`` ...)
    are allowed; without a schema only symbolic operators and ``regex`` are.
    ``phrase_fields`` narrows the fields keyword operators may apply to
    (default: all of ``known_fields``). Returns None when the text holds no
    recognisable clause.
    """
    known = set(known_fields) if known_fields is not None else None
    phrased = set(phrase_fields) if phrase_fields is not None else known
    pattern = _CLAUSE_PHRASES if known else _CLAUSE_STRICT

    found: List[Tuple[int, int, Predicate]] = []
    taken: List[Tuple[int, int]] = []

    def accept(match, predicate, fields):
        if predicate is None:
            return
        if fields is not None and match.group("field") not in fields:
            return
        if any(match.start() < end and start < match.end() for start, end in taken):
            return
        taken.append((match.start(), match.end()))
        found.append((match.start(), match.end(), predicate))

    for match in _BETWEEN.finditer(text):
        low, high = match.group("low"), match.group("high")
        if _is_literal(low) and _is_literal(high):
            accept(match, Range(match.group("field"), parse_scalar(low), parse_scalar(high)), phrased)

    position = 0
    while True:
        match = pattern.search(text, position)
        if match is None:
            break
        op = " ".join(match.group("op").lower().split())
        fields = known if op in _SYMBOLS or op == "regex" else phrased
        before = len(found)
        accept(match, _clause_predicate(match.group("field"), op, match.group("value")), fields)
        # Retry one character later so a rejected word does not hide a clause
        position = match.end() if len(found) > before else match.start() + 1

    if not found:
        return None

    found.sort(key=lambda item: item[0])
    groups: List[List[Predicate]] = [[found[0][2]]]
    for (_, prev_end, _), (start, _, predicate) in zip(found, found[1:]):
        connectors = _CONNECTOR.findall(text[prev_end:start])
        if connectors and connectors[-1].lower() == "or":
            groups.append([predicate])
        else:
            groups[-1].append(predicate)

    terms = [group[0] if len(group) == 1 else And(tuple(group)) for group in groups]
    return terms[0] if len(terms) == 1 else Or(tuple(terms))
