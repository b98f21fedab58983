"""LuaLS declaration generator for mlua bindings.

Generates Lua Language Server definition files (``---@meta``) from the
annotated Rust declarations exported through ``mlua_bindgen``. The input is a
set of XML manifests holding the declaration records produced by the
annotation collector; the output is one deterministic stub file.

Usage:
    mlua-stubgen --input bindings.xml --output types/bindings.d.lua
"""

import argparse
import os
import re
import stat
import tempfile
import textwrap
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, NamedTuple

DEFAULT_OUTPUT_PATH = Path("types") / "bindings.d.lua"
DEFAULT_PREFIX = "Lua"

STRICTNESS_STRICT = "strict"
STRICTNESS_LENIENT = "lenient"
VALID_STRICTNESS = (STRICTNESS_LENIENT, STRICTNESS_STRICT)

ENUM_OVERRIDES_FOLLOW = "follow"
ENUM_OVERRIDES_REJECT = "reject"
VALID_ENUM_OVERRIDES = (ENUM_OVERRIDES_FOLLOW, ENUM_OVERRIDES_REJECT)


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    inputs: tuple[Path, ...]
    output_path: Path
    strictness: str = STRICTNESS_LENIENT
    prefix: str = DEFAULT_PREFIX
    renames: tuple[tuple[str, str], ...] = ()
    enum_overrides: str = ENUM_OVERRIDES_FOLLOW
    jobs: int = 1


VALID_ERROR_CODES = {
    "MISSING_INPUT",
    "PATH_NOT_FOUND",
    "INVALID_RENAME",
    "DUPLICATE_RENAME",
    "INVALID_PREFIX",
    "INVALID_JOBS",
}
_LUA_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RENAME_KEY_RE = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_]*\.)?[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(path: Path, flag: str) -> Path:
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        "Provide an existing declaration manifest for this flag.",
    )


def parse_rename(raw: str) -> tuple[str, str]:
    """Split a ``NAME=NEW`` or ``module.NAME=NEW`` override into its parts."""
    key, sep, new_name = raw.partition("=")
    key = key.strip()
    new_name = new_name.strip()
    if not sep or not _RENAME_KEY_RE.match(key) or not _LUA_NAME_RE.match(new_name):
        raise ConfigError(
            "INVALID_RENAME",
            f"Invalid --rename value: {raw!r}",
            "Use --rename NAME=NEW or --rename module.NAME=NEW with Lua identifiers.",
        )
    return key, new_name


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate LuaLS declaration files for mlua bindings"
    )

    parser.add_argument("--input", action="append", nargs="+", type=Path, default=None)
    parser.add_argument("--output", type=Path, default=DEFAULT_OUTPUT_PATH)
    parser.add_argument(
        "--strictness", choices=VALID_STRICTNESS, default=STRICTNESS_LENIENT
    )
    parser.add_argument("--prefix", type=str, default=DEFAULT_PREFIX)
    parser.add_argument("--rename", action="append", default=None)
    parser.add_argument(
        "--enum-overrides", choices=VALID_ENUM_OVERRIDES, default=ENUM_OVERRIDES_FOLLOW
    )
    parser.add_argument("--jobs", type=int, default=1)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_inputs(raw_inputs: object) -> tuple[Path, ...]:
    if raw_inputs is None:
        return tuple()
    if not isinstance(raw_inputs, list):
        raise ConfigError(
            "MISSING_INPUT",
            f"Invalid --input value type: {type(raw_inputs).__name__}",
            "Pass manifests as --input path/to/bindings.xml.",
        )

    normalized: list[Path] = []
    for entry in raw_inputs:
        if isinstance(entry, list):
            normalized.extend(Path(item) for item in entry)
        else:
            normalized.append(Path(entry))
    return tuple(normalized)


def validate_config(args: argparse.Namespace) -> GenerateConfig:
    inputs = normalize_inputs(args.input)
    if not inputs:
        raise ConfigError(
            "MISSING_INPUT",
            "At least one --input manifest is required.",
            "Pass --input with the declaration manifest written by the collector.",
        )
    inputs = tuple(validate_path_exists(path, "--input") for path in inputs)

    if args.prefix and not _LUA_NAME_RE.match(args.prefix):
        raise ConfigError(
            "INVALID_PREFIX",
            f"Invalid --prefix token: {args.prefix!r}",
            "Use an identifier such as Lua, or an empty string to disable stripping.",
        )

    if args.jobs < 1:
        raise ConfigError(
            "INVALID_JOBS",
            f"--jobs must be at least 1, got {args.jobs}",
            "Use --jobs 1 for sequential extraction.",
        )

    renames: dict[str, str] = {}
    for raw in args.rename or ():
        key, new_name = parse_rename(raw)
        if key in renames:
            raise ConfigError(
                "DUPLICATE_RENAME",
                f"{key} is renamed more than once ({renames[key]}, {new_name})",
                "Keep a single --rename entry per declaration.",
            )
        renames[key] = new_name

    return GenerateConfig(
        inputs=inputs,
        output_path=args.output,
        strictness=args.strictness,
        prefix=args.prefix,
        renames=tuple(renames.items()),
        enum_overrides=args.enum_overrides,
        jobs=args.jobs,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


# ===--- Diagnostics ---=== #

MALFORMED_MARKER = "MalformedMarker"
NESTED_MODULE_FORBIDDEN = "NestedModuleForbidden"
INCLUSION_CYCLE = "InclusionCycle"
UNRESOLVED_INCLUSION = "UnresolvedInclusion"
MAIN_MODULE = "MainModule"
UNREACHABLE_MODULE = "UnreachableModule"
PREFIX_COLLISION = "PrefixCollision"
DUPLICATE_SCOPE_NAME = "DuplicateScopeName"
DUPLICATE_GLOBAL_TYPE_NAME = "DuplicateGlobalTypeName"
UNSUPPORTED_TYPE = "UnsupportedType"
IO_FAILURE = "IOFailure"

DIAGNOSTIC_KINDS = {
    MALFORMED_MARKER,
    NESTED_MODULE_FORBIDDEN,
    INCLUSION_CYCLE,
    UNRESOLVED_INCLUSION,
    MAIN_MODULE,
    UNREACHABLE_MODULE,
    PREFIX_COLLISION,
    DUPLICATE_SCOPE_NAME,
    DUPLICATE_GLOBAL_TYPE_NAME,
    UNSUPPORTED_TYPE,
    IO_FAILURE,
}

SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"


class SourceLocation(NamedTuple):
    path: str
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if not self.line:
            return self.path
        if not self.column:
            return f"{self.path}:{self.line}"
        return f"{self.path}:{self.line}:{self.column}"


@dataclass(frozen=True)
class Diagnostic:
    """One problem found while generating declarations.

    Attributes:
        kind: One of DIAGNOSTIC_KINDS.
        severity: SEVERITY_WARNING (the offending item is skipped) or
            SEVERITY_ERROR (emission is blocked).
        message: Human-readable explanation.
        locations: Every site involved; conflicts list both declarations.
    """

    kind: str
    severity: str
    message: str
    locations: tuple[SourceLocation, ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in DIAGNOSTIC_KINDS:
            raise ValueError(f"Unknown diagnostic kind: {self.kind}")
        if self.severity not in (SEVERITY_WARNING, SEVERITY_ERROR):
            raise ValueError(f"Unknown diagnostic severity: {self.severity}")

    @property
    def is_fatal(self) -> bool:
        return self.severity == SEVERITY_ERROR


class GenerationError(Exception):
    """Raised when a run ends with at least one fatal diagnostic.

    Carries the complete batch (warnings included) so the caller can report
    every problem at once.
    """

    def __init__(self, diagnostics: Iterable[Diagnostic]):
        self.diagnostics = tuple(diagnostics)
        fatal = [d for d in self.diagnostics if d.is_fatal]
        super().__init__(f"Generation failed with {len(fatal)} error(s)")

    @property
    def errors(self) -> tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.is_fatal)


def has_fatal(diagnostics: Iterable[Diagnostic]) -> bool:
    return any(d.is_fatal for d in diagnostics)


def format_diagnostic(diagnostic: Diagnostic) -> str:
    """Render as ``severity[Kind] first-site: message (also: other sites)``."""
    text = f"{diagnostic.severity}[{diagnostic.kind}]"
    if diagnostic.locations:
        text += f" {diagnostic.locations[0]}"
    text += f": {diagnostic.message}"
    if len(diagnostic.locations) > 1:
        others = ", ".join(str(loc) for loc in diagnostic.locations[1:])
        text += f" (also: {others})"
    return text


# ===--- Type references ---=== #


@dataclass(frozen=True)
class PrimitiveRef:
    """A host type with a fixed Lua spelling (``integer``, ``string``...)."""

    kind: str


@dataclass(frozen=True)
class NamedRef:
    """Reference to an exported record or enum by its raw host name.

    Resolved to the exported name only once every name in the run is final.
    """

    name: str


@dataclass(frozen=True)
class OptionalRef:
    inner: "TypeRef"


@dataclass(frozen=True)
class ArrayRef:
    inner: "TypeRef"


@dataclass(frozen=True)
class MappingRef:
    key: "TypeRef"
    value: "TypeRef"


@dataclass(frozen=True)
class UnionRef:
    options: tuple["TypeRef", ...]


@dataclass(frozen=True)
class TupleRef:
    items: tuple["TypeRef", ...]


@dataclass(frozen=True)
class SelfRef:
    pass


@dataclass(frozen=True)
class UnitRef:
    pass


@dataclass(frozen=True)
class UnsupportedRef:
    reason: str


TypeRef = (
    PrimitiveRef
    | NamedRef
    | OptionalRef
    | ArrayRef
    | MappingRef
    | UnionRef
    | TupleRef
    | SelfRef
    | UnitRef
    | UnsupportedRef
)

SELF = SelfRef()
UNIT = UnitRef()


# ===--- Constants ---=== #

HOST_PRIMITIVES: dict[str, str] = {
    "i8": "integer",
    "i16": "integer",
    "i32": "integer",
    "i64": "integer",
    "i128": "integer",
    "isize": "integer",
    "u8": "integer",
    "u16": "integer",
    "u32": "integer",
    "u64": "integer",
    "u128": "integer",
    "usize": "integer",
    "Integer": "integer",
    "f32": "number",
    "f64": "number",
    "Number": "number",
    "bool": "boolean",
    "char": "string",
    "str": "string",
    "String": "string",
    "CStr": "string",
    "CString": "string",
    "OsStr": "string",
    "OsString": "string",
    "Path": "string",
    "PathBuf": "string",
    "BStr": "string",
    "BString": "string",
    "Table": "table",
    "Function": "function",
    "Thread": "thread",
    "AnyUserData": "userdata",
    "LightUserData": "lightuserdata",
    "Value": "any",
}
"""Closed host-to-Lua table for types that need no further resolution.

Keys are the last path segment of the host type (``mlua::Table`` and
``Table`` both map to ``table``)."""

HOST_SEQUENCES = {"Vec", "VecDeque", "LinkedList", "SmallVec", "Variadic"}
HOST_MAPPINGS = {"HashMap", "BTreeMap", "IndexMap"}
HOST_WRAPPERS = {"Box", "Rc", "Arc", "Cow", "UserDataRef", "UserDataRefMut"}
HOST_RESULTS = {"Result", "LuaResult"}
CALLABLE_TRAITS = {"Fn", "FnMut", "FnOnce"}

LUA_RESERVED = {
    "and",
    "break",
    "do",
    "else",
    "elseif",
    "end",
    "false",
    "for",
    "function",
    "goto",
    "if",
    "in",
    "local",
    "nil",
    "not",
    "or",
    "repeat",
    "return",
    "then",
    "true",
    "until",
    "while",
}

KIND_FUNCTION = "function"
KIND_IMPL = "impl"
KIND_ENUM = "enum"
KIND_MODULE = "module"
KIND_INCLUDE = "include"

TAG_GET = "get"
TAG_SET = "set"
TAG_METHOD = "method"
TAG_METHOD_MUT = "method_mut"
TAG_FUNC = "func"
TAG_META = "meta"
TAG_IGNORE = "ignore"
TAG_RENAME = "rename"
TAG_MAIN = "main"

MEMBER_MARKERS = (TAG_GET, TAG_SET, TAG_METHOD, TAG_METHOD_MUT, TAG_FUNC, TAG_META)
DECLARATION_TAGS = frozenset({TAG_IGNORE, TAG_RENAME})
MEMBER_TAGS = frozenset(MEMBER_MARKERS) | {TAG_IGNORE}
MUTABLE_MARKERS = {TAG_SET, TAG_METHOD_MUT}

LUA_OPERATORS = {
    "__add": "add",
    "__sub": "sub",
    "__mul": "mul",
    "__div": "div",
    "__mod": "mod",
    "__pow": "pow",
    "__idiv": "idiv",
    "__band": "band",
    "__bor": "bor",
    "__bxor": "bxor",
    "__shl": "shl",
    "__shr": "shr",
    "__concat": "concat",
    "__unm": "unm",
    "__bnot": "bnot",
    "__len": "len",
    "__call": "call",
}
"""Metamethods LuaLS can announce with ``---@operator``."""

UNARY_OPERATORS = frozenset({"unm", "bnot", "len"})

LUA_METAMETHODS = frozenset(LUA_OPERATORS) | {
    "__eq",
    "__lt",
    "__le",
    "__index",
    "__newindex",
    "__tostring",
    "__pairs",
    "__close",
    "__iter",
    "__type",
}

MODULE_SUFFIX = "_module"


# ===--- Host signature parsing ---=== #


class MarkerError(ValueError):
    """An annotated item does not have the shape its marker requires."""


class SignatureError(MarkerError):
    """Raw signature text could not be parsed."""


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    | (?P<lifetime>'[A-Za-z_][A-Za-z0-9_]*)
    | (?P<string>"(?:[^"\\]|\\.)*")
    | (?P<number>-?(?:0[xX][0-9A-Fa-f_]+|0[oO][0-7_]+|0[bB][01_]+|[0-9][0-9_]*)
        (?:[iu](?:8|16|32|64|128|size))?)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<punct>::|->|=>|[&<>()\[\],;:=*!{}\#+.?/])
    """,
    re.VERBOSE,
)

_INT_SUFFIX_RE = re.compile(r"[iu](?:8|16|32|64|128|size)$")


class Token(NamedTuple):
    kind: str
    text: str


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise SignatureError(f"unexpected character {text[pos]!r} at offset {pos}")
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group()))
        pos = match.end()
    return tokens


def parse_int_literal(text: str) -> int:
    """Parse a Rust integer literal (``-3``, ``0x10``, ``1_000u32``)."""
    cleaned = _INT_SUFFIX_RE.sub("", text).replace("_", "")
    digits = cleaned.lstrip("-")
    base = 10
    if digits[:2].lower() in ("0x", "0o", "0b"):
        base = 0
    try:
        return int(cleaned, base)
    except ValueError as err:
        raise SignatureError(f"invalid integer literal {text!r}") from err


@dataclass(frozen=True)
class ParsedParam:
    """One parameter of a host function signature.

    Attributes:
        name: Binding name (``_`` when ignored).
        type: Parsed type with any outer reference stripped.
        spelling: Host spelling of the type, for diagnostics.
        is_receiver: ``Self`` taken by reference (``&self`` and ``self: &Self``
            included); by-value ``self`` is not a receiver.
        is_mut: The parameter is taken by ``&mut``.
        is_context: The parameter is the mlua context (``&Lua`` or ``_``).
    """

    name: str
    type: TypeRef
    spelling: str
    is_receiver: bool = False
    is_mut: bool = False
    is_context: bool = False


@dataclass(frozen=True)
class ParsedFunction:
    name: str
    generics: tuple[str, ...]
    params: tuple[ParsedParam, ...]
    returns: TypeRef
    return_spelling: str
    fallible: bool


@dataclass(frozen=True)
class ParsedVariant:
    name: str
    value: int | None
    has_payload: bool


@dataclass(frozen=True)
class ParsedEnum:
    name: str
    variants: tuple[ParsedVariant, ...]


class _SignatureParser:
    def __init__(self, text: str, generics: Iterable[str] = ()):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0
        self.generics = set(generics)

    # -- token helpers --

    def peek(self, offset: int = 0) -> str | None:
        index = self.pos + offset
        if index < len(self.tokens):
            return self.tokens[index].text
        return None

    def at(self, text: str, offset: int = 0) -> bool:
        return self.peek(offset) == text

    def accept(self, text: str) -> bool:
        if self.at(text):
            self.pos += 1
            return True
        return False

    def expect(self, text: str) -> None:
        if not self.accept(text):
            found = self.peek()
            raise SignatureError(
                f"expected {text!r}, found {found!r}" if found else f"expected {text!r}"
            )

    def expect_ident(self) -> str:
        if self.pos >= len(self.tokens) or self.tokens[self.pos].kind != "ident":
            raise SignatureError(f"expected an identifier, found {self.peek()!r}")
        text = self.tokens[self.pos].text
        self.pos += 1
        return text

    def at_kind(self, kind: str) -> bool:
        return self.pos < len(self.tokens) and self.tokens[self.pos].kind == kind

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def spelling(self, start: int) -> str:
        parts: list[str] = []
        for token in self.tokens[start : self.pos]:
            if parts and token.kind in ("ident", "lifetime") and parts[-1][-1:].isalnum():
                parts.append(" ")
            parts.append(token.text)
        return "".join(parts)

    def skip_group(self, opener: str, closer: str) -> None:
        self.expect(opener)
        depth = 1
        while depth:
            if self.at_end():
                raise SignatureError(f"unbalanced {opener!r}")
            if self.at(opener):
                depth += 1
            elif self.at(closer):
                depth -= 1
            self.pos += 1

    def skip_attributes(self) -> None:
        while self.at("#"):
            self.pos += 1
            self.accept("!")
            self.skip_group("[", "]")

    def skip_visibility(self) -> None:
        if self.accept("pub") and self.at("("):
            self.skip_group("(", ")")

    def skip_qualifiers(self) -> None:
        while True:
            if self.accept("const") or self.accept("async") or self.accept("unsafe"):
                continue
            if self.accept("default"):
                continue
            if self.accept("extern"):
                if self.at_kind("string"):
                    self.pos += 1
                continue
            return

    # -- grammar --

    def parse_generic_params(self) -> tuple[str, ...]:
        if not self.accept("<"):
            return ()
        names: list[str] = []
        depth = 1
        expecting_param = True
        while depth:
            if self.at_end():
                raise SignatureError("unbalanced generic parameter list")
            token = self.tokens[self.pos]
            if token.text == "<":
                depth += 1
            elif token.text == ">":
                depth -= 1
            elif token.text == "," and depth == 1:
                expecting_param = True
                self.pos += 1
                continue
            elif depth == 1 and expecting_param:
                if token.text == "const":
                    # Const generics never name a type.
                    self.pos += 1
                elif token.kind == "ident":
                    names.append(token.text)
                expecting_param = False
            self.pos += 1
        return tuple(names)

    def skip_where_clause(self) -> None:
        if self.accept("where"):
            while not self.at_end() and not self.at("{") and not self.at(";"):
                self.pos += 1

    def parse_type(self, *, in_return: bool = False) -> tuple[TypeRef, bool]:
        """Parse one host type. Returns the type and whether it was a Result."""
        if self.accept("&"):
            if self.at_kind("lifetime"):
                self.pos += 1
            self.accept("mut")
            return self.parse_type(in_return=in_return)

        if self.accept("*"):
            if not self.accept("const"):
                self.accept("mut")
            self.parse_type()
            return UnsupportedRef("raw pointers have no Lua representation"), False

        if self.accept("("):
            if self.accept(")"):
                return UNIT, False
            items = [self.parse_type()[0]]
            trailing_comma = False
            while self.accept(","):
                if self.at(")"):
                    trailing_comma = True
                    break
                items.append(self.parse_type()[0])
            self.expect(")")
            if len(items) == 1 and not trailing_comma:
                return items[0], False
            return TupleRef(tuple(items)), False

        if self.accept("["):
            inner, _ = self.parse_type()
            if self.accept(";"):
                depth = 0
                while not (depth == 0 and self.at("]")):
                    if self.at_end():
                        raise SignatureError("unterminated array type")
                    if self.at("[") or self.at("("):
                        depth += 1
                    elif self.at(")") or self.at("]"):
                        depth -= 1
                    self.pos += 1
            self.expect("]")
            return ArrayRef(inner), False

        if self.accept("!"):
            return UNIT, False

        if self.at("impl") or self.at("dyn"):
            keyword = self.peek()
            self.pos += 1
            callable_bound = self.peek() in CALLABLE_TRAITS
            self.parse_bounds()
            if callable_bound:
                return PrimitiveRef("function"), False
            return UnsupportedRef(f"`{keyword}` trait types are not exported"), False

        if self.at("fn") or self.peek() in CALLABLE_TRAITS:
            self.skip_callable()
            return PrimitiveRef("function"), False

        return self.parse_path_type(in_return=in_return)

    def skip_callable(self) -> None:
        self.pos += 1
        self.skip_group("(", ")")
        if self.accept("->"):
            self.parse_type()

    def parse_bound(self) -> None:
        if self.at_kind("lifetime"):
            self.pos += 1
        elif self.peek() in CALLABLE_TRAITS:
            self.skip_callable()
        else:
            self.parse_path_segments()

    def parse_bounds(self) -> None:
        self.parse_bound()
        while self.accept("+"):
            self.parse_bound()

    def parse_generic_args(self) -> tuple[TypeRef, ...]:
        self.expect("<")
        args: list[TypeRef] = []
        while not self.accept(">"):
            if self.at_end():
                raise SignatureError("unbalanced generic argument list")
            if self.at_kind("lifetime"):
                self.pos += 1
            elif self.at_kind("ident") and self.at("=", 1):
                # Associated type binding (`Item = T`).
                self.pos += 2
                self.parse_type()
            else:
                args.append(self.parse_type()[0])
            if not self.accept(","):
                self.expect(">")
                break
        return tuple(args)

    def parse_path_segments(self) -> list[tuple[str, tuple[TypeRef, ...]]]:
        self.accept("::")
        segments: list[tuple[str, tuple[TypeRef, ...]]] = []
        while True:
            name = self.expect_ident()
            args: tuple[TypeRef, ...] = ()
            if self.at("<"):
                args = self.parse_generic_args()
            elif self.at("::") and self.at("<", 1):
                self.pos += 1
                args = self.parse_generic_args()
            segments.append((name, args))
            if not (self.at("::") and not self.at("<", 1)):
                return segments
            self.pos += 1

    def parse_path_type(self, *, in_return: bool) -> tuple[TypeRef, bool]:
        segments = self.parse_path_segments()
        name, args = segments[-1]

        if name == "Self" and len(segments) == 1:
            return SELF, False
        if name == "_" and len(segments) == 1:
            return UnsupportedRef("inferred `_` types cannot be exported"), False
        if name in self.generics and len(segments) == 1:
            return UnsupportedRef(f"generic parameter `{name}`"), False

        if name in HOST_RESULTS and in_return:
            if not args:
                return UnsupportedRef(f"`{name}` without a value type"), True
            return args[0], True

        if name == "Option":
            if len(args) != 1:
                return UnsupportedRef("`Option` takes exactly one type argument"), False
            if isinstance(args[0], OptionalRef):
                return UnsupportedRef("nested `Option` types cannot be expressed"), False
            return OptionalRef(args[0]), False

        if name == "Either":
            if len(args) != 2:
                return UnsupportedRef("`Either` takes exactly two type arguments"), False
            return UnionRef(args), False

        if name in HOST_SEQUENCES:
            if len(args) != 1:
                return UnsupportedRef(f"`{name}` takes exactly one type argument"), False
            return ArrayRef(args[0]), False

        if name in HOST_MAPPINGS:
            if not args:
                return PrimitiveRef("table"), False
            if len(args) != 2:
                return UnsupportedRef(f"`{name}` takes a key and a value type"), False
            return MappingRef(args[0], args[1]), False

        if name in HOST_WRAPPERS and args:
            return args[0], False

        if name in HOST_PRIMITIVES and not args:
            return PrimitiveRef(HOST_PRIMITIVES[name]), False

        if args:
            return UnsupportedRef(f"generic type `{name}<...>`"), False
        return NamedRef(name), False

    def at_receiver_ref(self) -> bool:
        if not self.at("&"):
            return False
        offset = 1
        if self.peek(offset) and self.tokens[self.pos + offset].kind == "lifetime":
            offset += 1
        if self.at("mut", offset):
            offset += 1
        return self.at("self", offset)

    def parse_param(self) -> ParsedParam:
        start = self.pos
        if self.at_receiver_ref():
            self.pos += 1
            if self.at_kind("lifetime"):
                self.pos += 1
            is_mut = self.accept("mut")
            self.expect("self")
            return ParsedParam(
                "self", SELF, self.spelling(start), is_receiver=True, is_mut=is_mut
            )
        if self.at("self") or (self.at("mut") and self.at("self", 1)):
            self.accept("mut")
            self.pos += 1
            if not self.accept(":"):
                # By-value `self` moves the userdata out of Lua.
                return ParsedParam("self", SELF, self.spelling(start))
            by_ref = self.at("&")
            is_mut = by_ref and (self.at("mut", 1) or self.at("mut", 2))
            type_ref, _ = self.parse_type()
            return ParsedParam(
                "self",
                type_ref,
                self.spelling(start),
                is_receiver=by_ref and type_ref == SELF,
                is_mut=is_mut,
            )

        self.accept("mut")
        name = self.expect_ident()
        self.expect(":")
        type_start = self.pos
        by_ref = self.at("&")
        # `&mut T` or `&'a mut T`
        is_mut = by_ref and (self.at("mut", 1) or self.at("mut", 2))
        type_ref, _ = self.parse_type()
        spelling = self.spelling(type_start)
        return ParsedParam(
            name,
            type_ref,
            spelling,
            is_receiver=by_ref and type_ref == SELF,
            is_mut=is_mut,
            is_context=_is_context_spelling(spelling),
        )

    def expect_end(self) -> None:
        self.accept(";")
        if self.at("{"):
            # Item bodies are not part of the declaration.
            return
        if not self.at_end():
            raise SignatureError(f"unexpected trailing {self.peek()!r}")


_CONTEXT_RE = re.compile(
    r"^(?:&(?:'[A-Za-z_][A-Za-z0-9_]*\s*)?)?(?:[A-Za-z_][A-Za-z0-9_]*::)*Lua$"
)


def _is_context_spelling(spelling: str) -> bool:
    return spelling == "_" or bool(_CONTEXT_RE.match(spelling))


def parse_function_signature(text: str, generics: Iterable[str] = ()) -> ParsedFunction:
    """Parse ``[pub] fn name<T>(params) -> Ret``.

    ``generics`` names type parameters declared by an enclosing ``impl``;
    they are Unsupported wherever they appear, like the function's own.
    """
    parser = _SignatureParser(text, generics)
    parser.skip_attributes()
    parser.skip_visibility()
    parser.skip_qualifiers()
    parser.expect("fn")
    name = parser.expect_ident()
    own_generics = parser.parse_generic_params()
    parser.generics.update(own_generics)

    parser.expect("(")
    params: list[ParsedParam] = []
    while not parser.accept(")"):
        params.append(parser.parse_param())
        if not parser.accept(","):
            parser.expect(")")
            break

    returns: TypeRef = UNIT
    return_spelling = "()"
    fallible = False
    if parser.accept("->"):
        start = parser.pos
        returns, fallible = parser.parse_type(in_return=True)
        return_spelling = parser.spelling(start)
    parser.skip_where_clause()
    parser.expect_end()

    return ParsedFunction(
        name=name,
        generics=tuple(sorted(parser.generics)),
        params=tuple(params),
        returns=returns,
        return_spelling=return_spelling,
        fallible=fallible,
    )


def parse_impl_header(text: str) -> tuple[str, tuple[str, ...]]:
    """Parse ``impl<T> Name<T>`` and return the record name and generics."""
    parser = _SignatureParser(text)
    parser.skip_attributes()
    parser.accept("unsafe")
    parser.expect("impl")
    generics = parser.parse_generic_params()
    segments = parser.parse_path_segments()
    if parser.accept("for"):
        # `impl Trait for Type` names the record after `for`.
        segments = parser.parse_path_segments()
    parser.skip_where_clause()
    parser.expect_end()
    return segments[-1][0], generics


def parse_enum_definition(text: str) -> ParsedEnum:
    """Parse ``[pub] enum Name { A, B = 3, C }``."""
    parser = _SignatureParser(text)
    parser.skip_attributes()
    parser.skip_visibility()
    parser.expect("enum")
    name = parser.expect_ident()
    if parser.at("<"):
        raise SignatureError(f"generic enum `{name}` cannot be exported")
    parser.expect("{")
    variants: list[ParsedVariant] = []
    while not parser.accept("}"):
        parser.skip_attributes()
        variant = parser.expect_ident()
        has_payload = False
        if parser.at("("):
            parser.skip_group("(", ")")
            has_payload = True
        elif parser.at("{"):
            parser.skip_group("{", "}")
            has_payload = True
        value = None
        if parser.accept("="):
            if not parser.at_kind("number"):
                raise SignatureError(
                    f"discriminant of `{variant}` must be an integer literal"
                )
            value = parse_int_literal(parser.tokens[parser.pos].text)
            parser.pos += 1
        variants.append(ParsedVariant(variant, value, has_payload))
        if not parser.accept(","):
            parser.expect("}")
            break
    if not parser.at_end():
        raise SignatureError(f"unexpected trailing {parser.peek()!r}")
    return ParsedEnum(name, tuple(variants))


def parse_module_header(text: str) -> str:
    parser = _SignatureParser(text)
    parser.skip_attributes()
    parser.skip_visibility()
    parser.expect("mod")
    name = parser.expect_ident()
    parser.expect_end()
    return name


def parse_inclusion_path(text: str) -> str:
    """Return the target module identity of ``crate::inner_module``."""
    parser = _SignatureParser(text)
    segments = parser.parse_path_segments()
    if not parser.at_end():
        raise SignatureError(f"unexpected trailing {parser.peek()!r}")
    name = segments[-1][0]
    if name.endswith(MODULE_SUFFIX) and len(name) > len(MODULE_SUFFIX):
        name = name[: -len(MODULE_SUFFIX)]
    return name


# ===--- Declaration records ---=== #


class SubTag(NamedTuple):
    name: str
    value: str | None = None


@dataclass(frozen=True)
class DeclarationRecord:
    """One annotated item as written by the annotation collector.

    Attributes:
        kind: Primary tag (``function``, ``impl``, ``enum``, ``module`` or
            ``include``).
        raw_signature: Host source text of the item header.
        doc_text: Dedented doc comment, empty when absent.
        sub_tags: Secondary markers in source order.
        location: Where the item starts.
        children: Body records of ``impl`` and ``module`` items.
    """

    kind: str
    raw_signature: str
    doc_text: str = ""
    sub_tags: tuple[SubTag, ...] = ()
    location: SourceLocation = SourceLocation("<memory>")
    children: tuple["DeclarationRecord", ...] = ()

    def has_tag(self, name: str) -> bool:
        return any(tag.name == name for tag in self.sub_tags)

    def tag_value(self, name: str) -> str | None:
        for tag in self.sub_tags:
            if tag.name == name:
                return tag.value
        return None


@dataclass(frozen=True)
class SourceUnit:
    path: str
    records: tuple[DeclarationRecord, ...]


def _io_failure(path: Path | str, message: str) -> GenerationError:
    return GenerationError(
        [
            Diagnostic(
                IO_FAILURE,
                SEVERITY_ERROR,
                message,
                (SourceLocation(str(path)),),
            )
        ]
    )


def _int_attribute(element: ET.Element, name: str, manifest: Path) -> int:
    raw = element.get(name, "0")
    try:
        value = int(raw)
    except ValueError:
        raise _io_failure(
            manifest, f"<{element.tag}> has a non-integer {name}={raw!r}"
        ) from None
    if value < 0:
        raise _io_failure(manifest, f"<{element.tag}> has a negative {name}={raw!r}")
    return value


def _normalize_doc(text: str | None) -> str:
    if not text:
        return ""
    return textwrap.dedent(text.strip("\n")).strip()


def _record_from_element(
    element: ET.Element, unit_path: str, manifest: Path
) -> DeclarationRecord:
    kind = element.get("kind")
    if not kind:
        raise _io_failure(manifest, f"<decl> in {unit_path} is missing its kind")

    signature = element.find("signature")
    if signature is None or not (signature.text or "").strip():
        raise _io_failure(
            manifest, f"<decl kind={kind!r}> in {unit_path} has no <signature>"
        )

    tags: list[SubTag] = []
    for tag in element.findall("tag"):
        name = tag.get("name")
        if not name:
            raise _io_failure(manifest, f"<tag> in {unit_path} is missing its name")
        tags.append(SubTag(name, tag.get("value")))

    location = SourceLocation(
        unit_path,
        _int_attribute(element, "line", manifest),
        _int_attribute(element, "column", manifest),
    )
    children = tuple(
        _record_from_element(child, unit_path, manifest)
        for child in element.findall("decl")
    )
    return DeclarationRecord(
        kind=kind,
        raw_signature=" ".join(signature.text.split()),
        doc_text=_normalize_doc(element.findtext("doc")),
        sub_tags=tuple(tags),
        location=location,
        children=children,
    )


def load_units(path: Path) -> list[SourceUnit]:
    """Read one declaration manifest.

    Args:
        path: XML file whose root is ``<declarations>`` (holding ``<unit>``
            elements) or a single ``<unit>``.

    Returns:
        The source units in manifest order.

    Raises:
        GenerationError: With one IOFailure diagnostic when the manifest
            cannot be read or does not have the expected shape.
    """
    try:
        root = ET.parse(path).getroot()
    except OSError as err:
        raise _io_failure(path, f"cannot read manifest: {err.strerror or err}") from err
    except ET.ParseError as err:
        raise _io_failure(path, f"malformed manifest: {err}") from err

    if root.tag == "unit":
        unit_elements = [root]
    elif root.tag == "declarations":
        unit_elements = root.findall("unit")
    else:
        raise _io_failure(
            path, f"unexpected root element <{root.tag}>, expected <declarations>"
        )

    units: list[SourceUnit] = []
    for element in unit_elements:
        unit_path = element.get("path") or str(path)
        records = tuple(
            _record_from_element(child, unit_path, path)
            for child in element.findall("decl")
        )
        units.append(SourceUnit(unit_path, records))
    return units


# ===--- Declaration model ---=== #

RECEIVER_IMMUTABLE = "immutable"
RECEIVER_MUTABLE = "mutable"
RECEIVER_NONE = "none"
RECEIVER_META = "meta"


@dataclass(frozen=True)
class Param:
    name: str
    type: TypeRef
    spelling: str = ""


@dataclass(frozen=True)
class FunctionSignature:
    """Script-visible shape of a host function.

    Attributes:
        params: User parameters in order; the context and receiver
            arguments required by mlua are already removed.
        returns: Return type; UNIT when the function returns nothing.
        fallible: The host function returns a ``Result`` and may raise a
            runtime error instead of returning.
    """

    params: tuple[Param, ...] = ()
    returns: TypeRef = UNIT
    fallible: bool = False


@dataclass(frozen=True)
class FunctionDecl:
    kind: ClassVar[str] = KIND_FUNCTION

    name: str
    signature: FunctionSignature
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")
    rename: str | None = None


@dataclass(frozen=True)
class Field:
    name: str
    type: TypeRef
    has_getter: bool
    has_setter: bool
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")
    rename: str | None = None


@dataclass(frozen=True)
class Method:
    name: str
    receiver: str
    signature: FunctionSignature
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")
    rename: str | None = None

    @property
    def is_constructor(self) -> bool:
        return self.receiver == RECEIVER_NONE

    @property
    def is_metamethod(self) -> bool:
        return self.receiver == RECEIVER_META


@dataclass(frozen=True)
class RecordDecl:
    kind: ClassVar[str] = KIND_IMPL

    name: str
    fields: tuple[Field, ...] = ()
    methods: tuple[Method, ...] = ()
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")
    rename: str | None = None

    @property
    def instance_methods(self) -> tuple[Method, ...]:
        return tuple(
            m for m in self.methods if not (m.is_constructor or m.is_metamethod)
        )

    @property
    def constructors(self) -> tuple[Method, ...]:
        return tuple(m for m in self.methods if m.is_constructor)

    @property
    def metamethods(self) -> tuple[Method, ...]:
        return tuple(m for m in self.methods if m.is_metamethod)


@dataclass(frozen=True)
class EnumDecl:
    kind: ClassVar[str] = KIND_ENUM

    name: str
    variants: tuple[tuple[str, int], ...] = ()
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")
    rename: str | None = None


@dataclass(frozen=True)
class Inclusion:
    """Reference from a module to another module by identity.

    ``position`` is the number of the including module's own declarations
    that precede the inclusion point.
    """

    target: str
    position: int
    location: SourceLocation = SourceLocation("<memory>")


@dataclass(frozen=True)
class ModuleDecl:
    kind: ClassVar[str] = KIND_MODULE

    name: str
    declarations: tuple["Declaration", ...] = ()
    inclusions: tuple[Inclusion, ...] = ()
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")
    rename: str | None = None
    is_main: bool = False


Declaration = FunctionDecl | RecordDecl | EnumDecl | ModuleDecl


# ===--- Model builder ---=== #


@dataclass(frozen=True)
class BuildOptions:
    enum_overrides: str = ENUM_OVERRIDES_FOLLOW


@dataclass
class BuildResult:
    declarations: list[Declaration]
    diagnostics: list[Diagnostic]


def _malformed(
    diagnostics: list[Diagnostic], message: str, *locations: SourceLocation
) -> None:
    diagnostics.append(Diagnostic(MALFORMED_MARKER, SEVERITY_WARNING, message, locations))


def _check_tags(
    record: DeclarationRecord,
    allowed: Iterable[str],
    diagnostics: list[Diagnostic],
) -> bool:
    allowed = set(allowed)
    for tag in record.sub_tags:
        if tag.name not in allowed:
            _malformed(
                diagnostics,
                f"unknown marker `{tag.name}` on {record.kind} item; item skipped",
                record.location,
            )
            return False
    rename = record.tag_value(TAG_RENAME)
    if record.has_tag(TAG_RENAME) and not (rename and _LUA_NAME_RE.match(rename)):
        _malformed(
            diagnostics,
            f"`rename` needs a Lua identifier value, got {rename!r}; item skipped",
            record.location,
        )
        return False
    return True


def _user_params(params: Sequence[ParsedParam], offset: int) -> tuple[Param, ...]:
    """Drop the first ``offset`` required arguments and name the rest."""
    result: list[Param] = []
    for index, param in enumerate(params[offset:], start=1):
        name = param.name
        if name == "_":
            name = f"arg{index}"
        result.append(Param(name, param.type, param.spelling))
    return tuple(result)


def _signature_of(parsed: ParsedFunction, offset: int) -> FunctionSignature:
    return FunctionSignature(
        params=_user_params(parsed.params, offset),
        returns=parsed.returns,
        fallible=parsed.fallible,
    )


def _parse_signature(
    record: DeclarationRecord,
    diagnostics: list[Diagnostic],
    generics: Iterable[str] = (),
) -> ParsedFunction | None:
    try:
        return parse_function_signature(record.raw_signature, generics)
    except SignatureError as err:
        _malformed(
            diagnostics,
            f"cannot parse function signature ({err}); item skipped",
            record.location,
        )
        return None


def _check_context(parsed: ParsedFunction, marker: str) -> None:
    if not parsed.params or not parsed.params[0].is_context:
        raise MarkerError(
            f"`{marker}` item `{parsed.name}` must take the Lua context (`&Lua`) "
            "as its first parameter"
        )


def build_function(
    record: DeclarationRecord, diagnostics: list[Diagnostic]
) -> FunctionDecl | None:
    parsed = _parse_signature(record, diagnostics)
    if parsed is None:
        return None
    try:
        _check_context(parsed, KIND_FUNCTION)
        if any(p.is_receiver for p in parsed.params[1:]):
            raise MarkerError(f"free function `{parsed.name}` cannot take a receiver")
    except MarkerError as err:
        _malformed(diagnostics, f"{err}; item skipped", record.location)
        return None
    return FunctionDecl(
        name=parsed.name,
        signature=_signature_of(parsed, 1),
        doc=record.doc_text,
        location=record.location,
        rename=record.tag_value(TAG_RENAME),
    )


def _member_marker(
    member: DeclarationRecord, diagnostics: list[Diagnostic]
) -> str | None:
    markers = [tag.name for tag in member.sub_tags if tag.name in MEMBER_MARKERS]
    if len(markers) > 1:
        _malformed(
            diagnostics,
            f"member has conflicting markers {', '.join(markers)}; item skipped",
            member.location,
        )
        return None
    if not markers:
        return None
    return markers[0]


def _check_member_shape(parsed: ParsedFunction, marker: str) -> None:
    if any(p.is_receiver for p in parsed.params[:1]):
        raise MarkerError(
            f"`{marker}` member `{parsed.name}` takes its receiver before the context"
        )
    _check_context(parsed, marker)
    if marker == TAG_FUNC:
        if any(p.is_receiver for p in parsed.params[1:]):
            raise MarkerError(f"`func` member `{parsed.name}` cannot take a receiver")
        return
    if marker == TAG_META:
        if parsed.name not in LUA_METAMETHODS:
            raise MarkerError(f"`{parsed.name}` is not a Lua metamethod")
        # Operands arrive as typed arguments; `this: &Self` is one of them.
        if any(p.name == "self" for p in parsed.params[1:]):
            raise MarkerError(f"metamethod `{parsed.name}` cannot take `self`")
        return

    if len(parsed.params) < 2:
        raise MarkerError(
            f"`{marker}` member `{parsed.name}` needs the Lua context and a receiver"
        )
    receiver = parsed.params[1]
    wants_mut = marker in MUTABLE_MARKERS
    expected = "&mut Self" if wants_mut else "&Self"
    if not receiver.is_receiver or receiver.is_mut != wants_mut:
        raise MarkerError(
            f"`{marker}` member `{parsed.name}` must take `{expected}` as its "
            f"second parameter, got `{receiver.spelling}`"
        )
    if any(p.is_receiver for p in parsed.params[2:]):
        raise MarkerError(f"`{marker}` member `{parsed.name}` takes two receivers")

    if marker == TAG_GET:
        if len(parsed.params) != 2:
            raise MarkerError(f"getter `{parsed.name}` cannot take extra parameters")
        if isinstance(parsed.returns, UnitRef):
            raise MarkerError(f"getter `{parsed.name}` must return a value")
    elif marker == TAG_SET:
        if len(parsed.params) != 3:
            raise MarkerError(f"setter `{parsed.name}` must take exactly one value")
        if not isinstance(parsed.returns, UnitRef):
            raise MarkerError(
                f"setter `{parsed.name}` must return `()`, got `{parsed.return_spelling}`"
            )


class _Accessor(NamedTuple):
    type: TypeRef
    record: DeclarationRecord


def build_record(
    record: DeclarationRecord, diagnostics: list[Diagnostic]
) -> RecordDecl | None:
    """Model an ``impl`` block and its marked members.

    Getters and setters sharing a name merge into one Field; a pair whose
    types disagree is reported and left out. Unmarked members are plain
    host helpers and are not exported.
    """
    try:
        name, generics = parse_impl_header(record.raw_signature)
    except SignatureError as err:
        _malformed(
            diagnostics, f"cannot parse impl header ({err}); item skipped", record.location
        )
        return None

    getters: dict[str, _Accessor] = {}
    setters: dict[str, _Accessor] = {}
    field_order: list[str] = []
    methods: list[Method] = []
    metamethods: dict[str, SourceLocation] = {}

    for member in record.children:
        if member.kind != KIND_FUNCTION:
            _malformed(
                diagnostics,
                f"`{member.kind}` items are not allowed inside impl `{name}`; "
                "item skipped",
                member.location,
            )
            continue
        if not _check_tags(member, MEMBER_TAGS | {TAG_RENAME}, diagnostics):
            continue
        if member.has_tag(TAG_IGNORE):
            continue
        marker = _member_marker(member, diagnostics)
        if marker is None:
            continue
        parsed = _parse_signature(member, diagnostics, generics)
        if parsed is None:
            continue
        try:
            _check_member_shape(parsed, marker)
        except MarkerError as err:
            _malformed(diagnostics, f"{err}; item skipped", member.location)
            continue

        if marker in (TAG_GET, TAG_SET):
            accessors = getters if marker == TAG_GET else setters
            value_type = parsed.returns if marker == TAG_GET else parsed.params[2].type
            if parsed.name in accessors:
                role = "getter" if marker == TAG_GET else "setter"
                _malformed(
                    diagnostics,
                    f"duplicate {role} for field `{name}.{parsed.name}`; "
                    "later definition skipped",
                    member.location,
                    accessors[parsed.name].record.location,
                )
                continue
            accessors[parsed.name] = _Accessor(value_type, member)
            if parsed.name not in field_order:
                field_order.append(parsed.name)
            continue

        if marker == TAG_META:
            if member.has_tag(TAG_RENAME):
                _malformed(
                    diagnostics,
                    f"metamethod `{name}.{parsed.name}` cannot be renamed; item skipped",
                    member.location,
                )
                continue
            if parsed.name in metamethods:
                _malformed(
                    diagnostics,
                    f"duplicate metamethod `{name}.{parsed.name}`; "
                    "later definition skipped",
                    member.location,
                    metamethods[parsed.name],
                )
                continue
            metamethods[parsed.name] = member.location
            receiver, offset = RECEIVER_META, 1
        elif marker == TAG_FUNC:
            receiver, offset = RECEIVER_NONE, 1
        elif marker == TAG_METHOD_MUT:
            receiver, offset = RECEIVER_MUTABLE, 2
        else:
            receiver, offset = RECEIVER_IMMUTABLE, 2
        methods.append(
            Method(
                name=parsed.name,
                receiver=receiver,
                signature=_signature_of(parsed, offset),
                doc=member.doc_text,
                location=member.location,
                rename=member.tag_value(TAG_RENAME),
            )
        )

    fields: list[Field] = []
    for field_name in field_order:
        getter = getters.get(field_name)
        setter = setters.get(field_name)
        if getter and setter and getter.type != setter.type:
            _malformed(
                diagnostics,
                f"getter and setter of `{name}.{field_name}` disagree on the field "
                f"type (`{_spell(getter.type)}` vs `{_spell(setter.type)}`); "
                "field skipped",
                getter.record.location,
                setter.record.location,
            )
            continue
        present = [accessor for accessor in (getter, setter) if accessor]
        renames = [a.record.tag_value(TAG_RENAME) for a in present]
        docs = [a.record.doc_text for a in present]
        fields.append(
            Field(
                name=field_name,
                type=present[0].type,
                has_getter=getter is not None,
                has_setter=setter is not None,
                doc=next((doc for doc in docs if doc), ""),
                location=present[0].record.location,
                rename=next((rename for rename in renames if rename), None),
            )
        )

    return RecordDecl(
        name=name,
        fields=tuple(fields),
        methods=tuple(methods),
        doc=record.doc_text,
        location=record.location,
        rename=record.tag_value(TAG_RENAME),
    )


def _spell(type_ref: TypeRef) -> str:
    """Short host-agnostic spelling of a TypeRef for messages."""
    if isinstance(type_ref, PrimitiveRef):
        return type_ref.kind
    if isinstance(type_ref, NamedRef):
        return type_ref.name
    if isinstance(type_ref, OptionalRef):
        return f"{_spell(type_ref.inner)}?"
    if isinstance(type_ref, ArrayRef):
        return f"{_spell(type_ref.inner)}[]"
    if isinstance(type_ref, MappingRef):
        return f"table<{_spell(type_ref.key)}, {_spell(type_ref.value)}>"
    if isinstance(type_ref, UnionRef):
        return "|".join(_spell(option) for option in type_ref.options)
    if isinstance(type_ref, TupleRef):
        return "(" + ", ".join(_spell(item) for item in type_ref.items) + ")"
    if isinstance(type_ref, SelfRef):
        return "Self"
    if isinstance(type_ref, UnitRef):
        return "()"
    return "unsupported"


def build_enum(
    record: DeclarationRecord,
    options: BuildOptions,
    diagnostics: list[Diagnostic],
) -> EnumDecl | None:
    try:
        parsed = parse_enum_definition(record.raw_signature)
    except SignatureError as err:
        _malformed(
            diagnostics, f"cannot parse enum ({err}); item skipped", record.location
        )
        return None

    variants: list[tuple[str, int]] = []
    seen_values: dict[int, str] = {}
    seen_names: set[str] = set()
    next_value = 0
    for variant in parsed.variants:
        problem = None
        if variant.has_payload:
            problem = f"variant `{variant.name}` carries data"
        elif variant.value is not None and options.enum_overrides == ENUM_OVERRIDES_REJECT:
            problem = f"variant `{variant.name}` overrides its discriminant"
        elif variant.name in seen_names:
            problem = f"variant `{variant.name}` is declared twice"
        if problem is None:
            value = next_value if variant.value is None else variant.value
            if value in seen_values:
                problem = (
                    f"variants `{seen_values[value]}` and `{variant.name}` share "
                    f"discriminant {value}"
                )
        if problem is not None:
            _malformed(
                diagnostics,
                f"enum `{parsed.name}` cannot be exported: {problem}",
                record.location,
            )
            return None
        variants.append((variant.name, value))
        seen_values[value] = variant.name
        seen_names.add(variant.name)
        next_value = value + 1

    return EnumDecl(
        name=parsed.name,
        variants=tuple(variants),
        doc=record.doc_text,
        location=record.location,
        rename=record.tag_value(TAG_RENAME),
    )


def build_module(
    record: DeclarationRecord,
    options: BuildOptions,
    diagnostics: list[Diagnostic],
) -> ModuleDecl | None:
    try:
        name = parse_module_header(record.raw_signature)
    except SignatureError as err:
        _malformed(
            diagnostics, f"cannot parse module header ({err}); item skipped", record.location
        )
        return None

    declarations: list[Declaration] = []
    inclusions: list[Inclusion] = []
    for child in record.children:
        if child.kind == KIND_MODULE:
            diagnostics.append(
                Diagnostic(
                    NESTED_MODULE_FORBIDDEN,
                    SEVERITY_ERROR,
                    f"module declared inside module `{name}`; declare it at the top "
                    "level and include it instead",
                    (child.location, record.location),
                )
            )
            continue
        if child.kind == KIND_INCLUDE:
            if not _check_tags(child, (), diagnostics):
                continue
            try:
                target = parse_inclusion_path(child.raw_signature)
            except SignatureError as err:
                _malformed(
                    diagnostics,
                    f"cannot parse inclusion path ({err}); item skipped",
                    child.location,
                )
                continue
            inclusions.append(Inclusion(target, len(declarations), child.location))
            continue
        declaration = build_declaration(child, options, diagnostics)
        if declaration is not None:
            declarations.append(declaration)

    return ModuleDecl(
        name=name,
        declarations=tuple(declarations),
        inclusions=tuple(inclusions),
        doc=record.doc_text,
        location=record.location,
        rename=record.tag_value(TAG_RENAME),
        is_main=record.has_tag(TAG_MAIN),
    )


def build_declaration(
    record: DeclarationRecord,
    options: BuildOptions,
    diagnostics: list[Diagnostic],
) -> Declaration | None:
    """Classify one record by its primary tag and model it.

    Returns None when the item is ignored or malformed; the reason, if any,
    is appended to ``diagnostics``.
    """
    if record.kind == KIND_INCLUDE:
        _malformed(
            diagnostics,
            "inclusions are only allowed inside a module; item skipped",
            record.location,
        )
        return None
    if record.kind not in (KIND_FUNCTION, KIND_IMPL, KIND_ENUM, KIND_MODULE):
        _malformed(
            diagnostics,
            f"unknown declaration kind `{record.kind}`; item skipped",
            record.location,
        )
        return None
    allowed = set(DECLARATION_TAGS)
    if record.kind == KIND_MODULE:
        allowed.add(TAG_MAIN)
    if not _check_tags(record, allowed, diagnostics):
        return None
    if record.has_tag(TAG_IGNORE):
        return None

    if record.kind == KIND_FUNCTION:
        return build_function(record, diagnostics)
    if record.kind == KIND_IMPL:
        return build_record(record, diagnostics)
    if record.kind == KIND_ENUM:
        return build_enum(record, options, diagnostics)
    return build_module(record, options, diagnostics)


def build_declarations(
    records: Iterable[DeclarationRecord], options: BuildOptions | None = None
) -> BuildResult:
    options = options or BuildOptions()
    diagnostics: list[Diagnostic] = []
    declarations: list[Declaration] = []
    for record in records:
        declaration = build_declaration(record, options, diagnostics)
        if declaration is not None:
            declarations.append(declaration)
    return BuildResult(declarations, diagnostics)


# ===--- Naming transformer ---=== #


@dataclass(frozen=True)
class NamingRules:
    """Prefix stripping and configured renames for one run.

    Attributes:
        prefix: Token stripped from the front of raw names; empty disables
            stripping.
        renames: ``NAME`` or ``scope.NAME`` keys mapped to the exported name.
    """

    prefix: str = DEFAULT_PREFIX
    renames: Mapping[str, str] = field(default_factory=dict)

    def explicit_rename(
        self, raw: str, scope: str | None, declared: str | None = None
    ) -> str | None:
        """Qualified configuration wins over bare configuration over the tag."""
        if scope is not None:
            qualified = self.renames.get(f"{scope}.{raw}")
            if qualified:
                return qualified
        return self.renames.get(raw) or declared


def strip_prefix(raw: str, prefix: str) -> str | None:
    """Return ``raw`` without ``prefix``, or None when it cannot be stripped."""
    if not prefix or not raw.startswith(prefix):
        return None
    rest = raw[len(prefix) :]
    if not _LUA_NAME_RE.match(rest) or rest in LUA_RESERVED:
        return None
    return rest


def transform_name(
    raw: str,
    prefix: str,
    rename: str | None = None,
    taken: Iterable[str] = (),
) -> str:
    if rename:
        return rename
    candidate = strip_prefix(raw, prefix)
    if candidate is None or candidate in taken:
        return raw
    return candidate


class NameRequest(NamedTuple):
    raw: str
    rename: str | None
    location: SourceLocation


def transform_scope(
    requests: Sequence[NameRequest], prefix: str, scope_label: str
) -> tuple[list[str], list[Diagnostic]]:
    """Compute the exported names of every entry sharing one output scope.

    Explicit renames and raw names that cannot be stripped are reserved up
    front, so a stripped name never takes a spot another entry needs.
    Entries whose stripped name is taken keep their raw name and get a
    PrefixCollision warning naming both sites.
    """
    sites: dict[str, SourceLocation] = {}
    for request in requests:
        if request.rename:
            sites.setdefault(request.rename, request.location)
        elif strip_prefix(request.raw, prefix) is None:
            sites.setdefault(request.raw, request.location)

    finals: list[str] = []
    diagnostics: list[Diagnostic] = []
    for request in requests:
        final = transform_name(request.raw, prefix, request.rename, sites)
        candidate = strip_prefix(request.raw, prefix)
        if not request.rename and final == request.raw and candidate is not None:
            diagnostics.append(
                Diagnostic(
                    PREFIX_COLLISION,
                    SEVERITY_WARNING,
                    f"`{request.raw}` keeps its prefix in {scope_label}: "
                    f"`{candidate}` is already taken",
                    (request.location, sites[candidate]),
                )
            )
        sites.setdefault(final, request.location)
        finals.append(final)
    return finals, diagnostics


# ===--- Type mapper ---=== #


@dataclass(frozen=True)
class TypeContext:
    """What the mapper needs to know about the place a type appears.

    Attributes:
        type_names: Raw record/enum name to every exported name it may
            refer to. More than one entry means the reference is ambiguous.
        self_name: Exported name of the enclosing record, if any.
        strictness: STRICTNESS_LENIENT or STRICTNESS_STRICT.
    """

    type_names: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    self_name: str | None = None
    strictness: str = STRICTNESS_LENIENT


@dataclass(frozen=True)
class MappedType:
    text: str
    diagnostics: tuple[Diagnostic, ...] = ()


def _needs_parens(type_ref: TypeRef) -> bool:
    return isinstance(type_ref, (UnionRef, OptionalRef))


def _render_type(type_ref: TypeRef, ctx: TypeContext, problems: list[str]) -> str:
    if isinstance(type_ref, PrimitiveRef):
        return type_ref.kind

    if isinstance(type_ref, NamedRef):
        candidates = ctx.type_names.get(type_ref.name, ())
        if len(candidates) == 1:
            return candidates[0]
        if candidates:
            problems.append(
                f"`{type_ref.name}` is ambiguous ({', '.join(candidates)})"
            )
        else:
            problems.append(f"`{type_ref.name}` is not an exported record or enum")
        return "any"

    if isinstance(type_ref, OptionalRef):
        if isinstance(type_ref.inner, OptionalRef):
            problems.append("nested optional types cannot be expressed")
            return "any"
        inner = _render_type(type_ref.inner, ctx, problems)
        if isinstance(type_ref.inner, UnionRef):
            return f"({inner})?"
        return f"{inner}?"

    if isinstance(type_ref, ArrayRef):
        inner = _render_type(type_ref.inner, ctx, problems)
        if _needs_parens(type_ref.inner):
            return f"({inner})[]"
        return f"{inner}[]"

    if isinstance(type_ref, MappingRef):
        key = _render_type(type_ref.key, ctx, problems)
        value = _render_type(type_ref.value, ctx, problems)
        return f"table<{key}, {value}>"

    if isinstance(type_ref, UnionRef):
        return "|".join(_render_type(option, ctx, problems) for option in type_ref.options)

    if isinstance(type_ref, SelfRef):
        if ctx.self_name is None:
            problems.append("`Self` used outside of a record")
            return "any"
        return ctx.self_name

    if isinstance(type_ref, UnitRef):
        return "nil"

    if isinstance(type_ref, TupleRef):
        problems.append("tuples are only supported as return values")
        return "any"

    problems.append(type_ref.reason)
    return "any"


def _unsupported(
    problems: Sequence[str], ctx: TypeContext, location: SourceLocation, subject: str
) -> tuple[Diagnostic, ...]:
    strict = ctx.strictness == STRICTNESS_STRICT
    severity = SEVERITY_ERROR if strict else SEVERITY_WARNING
    suffix = "" if strict else "; mapped to `any`"
    return tuple(
        Diagnostic(UNSUPPORTED_TYPE, severity, f"{subject}: {problem}{suffix}", (location,))
        for problem in problems
    )


def map_type(
    type_ref: TypeRef, ctx: TypeContext, location: SourceLocation, subject: str
) -> MappedType:
    """Spell one TypeRef in LuaLS annotation syntax.

    Unsupported parts become ``any``; each one yields an UnsupportedType
    diagnostic that is a warning under lenient strictness and fatal under
    strict strictness.
    """
    problems: list[str] = []
    text = _render_type(type_ref, ctx, problems)
    return MappedType(text, _unsupported(problems, ctx, location, subject))


def map_returns(
    type_ref: TypeRef, ctx: TypeContext, location: SourceLocation, subject: str
) -> tuple[tuple[str, ...], tuple[Diagnostic, ...]]:
    """Map a return type to one entry per returned value (none for unit)."""
    if isinstance(type_ref, UnitRef):
        return (), ()
    items = type_ref.items if isinstance(type_ref, TupleRef) else (type_ref,)
    texts: list[str] = []
    diagnostics: list[Diagnostic] = []
    for index, item in enumerate(items, start=1):
        label = subject if len(items) == 1 else f"{subject} (value {index})"
        mapped = map_type(item, ctx, location, label)
        texts.append(mapped.text)
        diagnostics.extend(mapped.diagnostics)
    return tuple(texts), tuple(diagnostics)


# ===--- Module graph resolver ---=== #


@dataclass(frozen=True)
class ResolveSettings:
    naming: NamingRules = field(default_factory=NamingRules)
    strictness: str = STRICTNESS_LENIENT


@dataclass(frozen=True)
class ResolvedFunction:
    name: str
    params: tuple[tuple[str, str], ...] = ()
    returns: tuple[str, ...] = ()
    fallible: bool = False
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")


@dataclass(frozen=True)
class ResolvedField:
    name: str
    type: str
    has_getter: bool = True
    has_setter: bool = False
    doc: str = ""


@dataclass(frozen=True)
class ResolvedMethod:
    name: str
    params: tuple[tuple[str, str], ...] = ()
    returns: tuple[str, ...] = ()
    fallible: bool = False
    mutable: bool = False
    doc: str = ""


@dataclass(frozen=True)
class ResolvedRecord:
    name: str
    fields: tuple[ResolvedField, ...] = ()
    methods: tuple[ResolvedMethod, ...] = ()
    constructors: tuple[ResolvedFunction, ...] = ()
    metamethods: tuple[ResolvedFunction, ...] = ()
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")


@dataclass(frozen=True)
class ResolvedEnum:
    name: str
    variants: tuple[tuple[str, int], ...] = ()
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")


@dataclass(frozen=True)
class ResolvedModule:
    name: str
    members: tuple["ResolvedEntry", ...] = ()
    doc: str = ""
    location: SourceLocation = SourceLocation("<memory>")


ResolvedEntry = ResolvedFunction | ResolvedRecord | ResolvedEnum | ResolvedModule


@dataclass(frozen=True)
class ResolvedTree:
    """Validated, name-final view of one run, ready for emission.

    Attributes:
        entries: Top-level entries in source order; root modules appear as
            ResolvedModule entries with their inclusions expanded in place.
        diagnostics: Warnings collected during resolution.
    """

    entries: tuple[ResolvedEntry, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()


ScopeEntry = Declaration | Inclusion


def module_entries(module: ModuleDecl) -> list[ScopeEntry]:
    """Interleave a module's declarations with its inclusion points."""
    entries: list[ScopeEntry] = []
    pending = sorted(module.inclusions, key=lambda inclusion: inclusion.position)
    index = 0
    for position, declaration in enumerate(module.declarations):
        while index < len(pending) and pending[index].position <= position:
            entries.append(pending[index])
            index += 1
        entries.append(declaration)
    entries.extend(pending[index:])
    return entries


class ModuleGraphResolver:
    """Checks the whole model and computes the final exported tree.

    One resolver handles one run. Every check runs before the resolver
    gives up, so a failing run reports its whole batch of fatal diagnostics
    at once.
    """

    def __init__(self, settings: ResolveSettings | None = None):
        self.settings = settings or ResolveSettings()
        self.diagnostics: list[Diagnostic] = []
        self.modules: dict[str, ModuleDecl] = {}
        self.exported: dict[int, str] = {}
        self.resolved: dict[int, ResolvedEntry] = {}
        self.assembled: dict[str, ResolvedModule] = {}

    @property
    def rules(self) -> NamingRules:
        return self.settings.naming

    def error(self, kind: str, message: str, *locations: SourceLocation) -> None:
        self.diagnostics.append(Diagnostic(kind, SEVERITY_ERROR, message, locations))

    # -- inclusion graph --

    def collect_modules(self, declarations: Sequence[Declaration]) -> None:
        for declaration in declarations:
            if not isinstance(declaration, ModuleDecl):
                continue
            first = self.modules.get(declaration.name)
            if first is not None:
                self.error(
                    DUPLICATE_SCOPE_NAME,
                    f"module `{declaration.name}` is declared more than once",
                    declaration.location,
                    first.location,
                )
                continue
            self.modules[declaration.name] = declaration

    def check_inclusions(self) -> None:
        self.detect_cycles()
        for module in self.modules.values():
            for inclusion in module.inclusions:
                if inclusion.target not in self.modules:
                    self.error(
                        UNRESOLVED_INCLUSION,
                        f"module `{module.name}` includes unknown module "
                        f"`{inclusion.target}`",
                        inclusion.location,
                    )

    def detect_cycles(self) -> None:
        """Depth-first search; every back edge is reported with its path."""
        in_progress, done = 1, 2
        state: dict[str, int] = {}
        path: list[str] = []

        def visit(name: str) -> None:
            state[name] = in_progress
            path.append(name)
            for inclusion in self.modules[name].inclusions:
                target = inclusion.target
                if target not in self.modules:
                    continue
                if state.get(target) == in_progress:
                    cycle = path[path.index(target) :] + [target]
                    self.error(
                        INCLUSION_CYCLE,
                        f"inclusion cycle {' -> '.join(cycle)}",
                        inclusion.location,
                    )
                elif target not in state:
                    visit(target)
            path.pop()
            state[name] = done

        for name in self.modules:
            if name not in state:
                visit(name)

    def root_modules(self) -> list[str]:
        """Modules emitted at the top level, in declaration order.

        Without a `main` module every module that nothing includes is a
        root. A single `main` module is the only root; the other unincluded
        modules are unreachable and left out with a warning.
        """
        included = {
            inclusion.target
            for module in self.modules.values()
            for inclusion in module.inclusions
        }
        roots = [name for name in self.modules if name not in included]
        mains = [module for module in self.modules.values() if module.is_main]
        if not mains:
            return roots
        if len(mains) > 1:
            self.error(
                MAIN_MODULE,
                "more than one main module: "
                + ", ".join(f"`{module.name}`" for module in mains),
                *(module.location for module in mains),
            )
            return roots
        (main,) = mains
        if main.name in included:
            self.error(
                MAIN_MODULE,
                f"main module `{main.name}` cannot be included by another module",
                main.location,
            )
            return roots
        for name in roots:
            if name != main.name:
                self.diagnostics.append(
                    Diagnostic(
                        UNREACHABLE_MODULE,
                        SEVERITY_WARNING,
                        f"module `{name}` is not reachable from main module "
                        f"`{main.name}`; left out",
                        (self.modules[name].location,),
                    )
                )
        return [main.name]

    # -- names --

    def assign_names(
        self,
        items: Sequence[object | None],
        requests: Sequence[NameRequest],
        label: str,
    ) -> None:
        finals, diagnostics = transform_scope(requests, self.rules.prefix, label)
        self.diagnostics.extend(diagnostics)
        seen: dict[str, SourceLocation] = {}
        for item, request, final in zip(items, requests, finals):
            if final in seen:
                self.error(
                    DUPLICATE_SCOPE_NAME,
                    f"`{final}` is declared more than once in {label}",
                    request.location,
                    seen[final],
                )
            else:
                seen[final] = request.location
            if item is not None:
                self.exported[id(item)] = final

    def name_modules(self) -> None:
        modules = list(self.modules.values())
        requests = [
            NameRequest(
                module.name,
                self.rules.explicit_rename(module.name, None, module.rename),
                module.location,
            )
            for module in modules
        ]
        self.assign_names(modules, requests, "the module namespace")

    def name_scope(
        self, entries: Sequence[ScopeEntry], scope: str | None, label: str
    ) -> None:
        items: list[object | None] = []
        requests: list[NameRequest] = []
        for entry in entries:
            if isinstance(entry, Inclusion):
                target = self.modules.get(entry.target)
                exported = entry.target
                if target is not None:
                    exported = self.exported[id(target)]
                items.append(None)
                requests.append(NameRequest(entry.target, exported, entry.location))
            elif isinstance(entry, ModuleDecl):
                items.append(None)
                requests.append(
                    NameRequest(entry.name, self.exported[id(entry)], entry.location)
                )
            else:
                items.append(entry)
                requests.append(
                    NameRequest(
                        entry.name,
                        self.rules.explicit_rename(entry.name, scope, entry.rename),
                        entry.location,
                    )
                )
        self.assign_names(items, requests, label)
        for entry in entries:
            if isinstance(entry, RecordDecl):
                self.name_record(entry)

    def name_record(self, record: RecordDecl) -> None:
        for members, label in (
            ((*record.fields, *record.instance_methods), "the members of"),
            (record.constructors, "the constructors of"),
        ):
            requests = [
                NameRequest(
                    member.name,
                    self.rules.explicit_rename(member.name, record.name, member.rename),
                    member.location,
                )
                for member in members
            ]
            self.assign_names(members, requests, f"{label} `{record.name}`")

    def check_global_types(self, scopes: Sequence[tuple[str, list[ScopeEntry]]]) -> None:
        seen: dict[str, tuple[RecordDecl | EnumDecl, str]] = {}
        for label, entries in scopes:
            for entry in entries:
                if not isinstance(entry, (RecordDecl, EnumDecl)):
                    continue
                name = self.exported[id(entry)]
                if name not in seen:
                    seen[name] = (entry, label)
                    continue
                first, first_label = seen[name]
                if first_label == label:
                    # Already reported as a duplicate within the scope.
                    continue
                self.error(
                    DUPLICATE_GLOBAL_TYPE_NAME,
                    f"type `{name}` is exported from both {first_label} and {label}",
                    entry.location,
                    first.location,
                )

    def type_names(
        self, scopes: Sequence[tuple[str, list[ScopeEntry]]]
    ) -> dict[str, tuple[str, ...]]:
        names: dict[str, list[str]] = {}
        for _, entries in scopes:
            for entry in entries:
                if isinstance(entry, (RecordDecl, EnumDecl)):
                    candidates = names.setdefault(entry.name, [])
                    exported = self.exported[id(entry)]
                    if exported not in candidates:
                        candidates.append(exported)
        return {raw: tuple(exported) for raw, exported in names.items()}

    # -- types --

    def map_signature(
        self,
        signature: FunctionSignature,
        ctx: TypeContext,
        location: SourceLocation,
        owner: str,
    ) -> tuple[tuple[tuple[str, str], ...], tuple[str, ...]]:
        params: list[tuple[str, str]] = []
        for param in signature.params:
            mapped = map_type(
                param.type, ctx, location, f"parameter `{param.name}` of `{owner}`"
            )
            self.diagnostics.extend(mapped.diagnostics)
            params.append((param.name, mapped.text))
        returns, diagnostics = map_returns(
            signature.returns, ctx, location, f"return value of `{owner}`"
        )
        self.diagnostics.extend(diagnostics)
        return tuple(params), returns

    def resolve_function(self, function: FunctionDecl, ctx: TypeContext) -> ResolvedFunction:
        name = self.exported[id(function)]
        params, returns = self.map_signature(
            function.signature, ctx, function.location, name
        )
        return ResolvedFunction(
            name=name,
            params=params,
            returns=returns,
            fallible=function.signature.fallible,
            doc=function.doc,
            location=function.location,
        )

    def resolve_record(self, record: RecordDecl, ctx: TypeContext) -> ResolvedRecord:
        name = self.exported[id(record)]
        ctx = TypeContext(ctx.type_names, name, ctx.strictness)

        fields: list[ResolvedField] = []
        for item in record.fields:
            field_name = self.exported[id(item)]
            mapped = map_type(item.type, ctx, item.location, f"field `{name}.{field_name}`")
            self.diagnostics.extend(mapped.diagnostics)
            fields.append(
                ResolvedField(
                    field_name, mapped.text, item.has_getter, item.has_setter, item.doc
                )
            )

        methods: list[ResolvedMethod] = []
        constructors: list[ResolvedFunction] = []
        metamethods: list[ResolvedFunction] = []
        for method in record.methods:
            # Metamethod names are fixed by Lua.
            if method.is_metamethod:
                method_name = method.name
            else:
                method_name = self.exported[id(method)]
            params, returns = self.map_signature(
                method.signature, ctx, method.location, f"{name}.{method_name}"
            )
            if method.is_constructor or method.is_metamethod:
                target = constructors if method.is_constructor else metamethods
                target.append(
                    ResolvedFunction(
                        method_name,
                        params,
                        returns,
                        method.signature.fallible,
                        method.doc,
                        method.location,
                    )
                )
            else:
                methods.append(
                    ResolvedMethod(
                        method_name,
                        params,
                        returns,
                        method.signature.fallible,
                        method.receiver == RECEIVER_MUTABLE,
                        method.doc,
                    )
                )

        return ResolvedRecord(
            name=name,
            fields=tuple(fields),
            methods=tuple(methods),
            constructors=tuple(constructors),
            metamethods=tuple(metamethods),
            doc=record.doc,
            location=record.location,
        )

    def resolve_entries(self, entries: Sequence[ScopeEntry], ctx: TypeContext) -> None:
        for entry in entries:
            if isinstance(entry, FunctionDecl):
                self.resolved[id(entry)] = self.resolve_function(entry, ctx)
            elif isinstance(entry, RecordDecl):
                self.resolved[id(entry)] = self.resolve_record(entry, ctx)
            elif isinstance(entry, EnumDecl):
                self.resolved[id(entry)] = ResolvedEnum(
                    self.exported[id(entry)], entry.variants, entry.doc, entry.location
                )

    # -- assembly --

    def assemble_module(self, module: ModuleDecl) -> ResolvedModule:
        cached = self.assembled.get(module.name)
        if cached is None:
            cached = ResolvedModule(
                name=self.exported[id(module)],
                members=self.assemble_entries(module_entries(module)),
                doc=module.doc,
                location=module.location,
            )
            self.assembled[module.name] = cached
        return cached

    def assemble_entries(self, entries: Sequence[ScopeEntry]) -> tuple[ResolvedEntry, ...]:
        assembled: list[ResolvedEntry] = []
        for entry in entries:
            if isinstance(entry, Inclusion):
                assembled.append(self.assemble_module(self.modules[entry.target]))
            elif isinstance(entry, ModuleDecl):
                assembled.append(self.assemble_module(entry))
            else:
                assembled.append(self.resolved[id(entry)])
        return tuple(assembled)

    # -- driver --

    def resolve(self, declarations: Sequence[Declaration]) -> ResolvedTree:
        self.collect_modules(declarations)
        self.check_inclusions()
        roots = self.root_modules()

        top_level = [
            declaration
            for declaration in declarations
            if not isinstance(declaration, ModuleDecl)
            or (
                declaration.name in roots
                and self.modules.get(declaration.name) is declaration
            )
        ]
        scopes: list[tuple[str, list[ScopeEntry]]] = [("the top level", top_level)]
        scope_keys: list[str | None] = [None]
        for module in self.modules.values():
            scopes.append((f"module `{module.name}`", module_entries(module)))
            scope_keys.append(module.name)

        self.name_modules()
        for (label, entries), key in zip(scopes, scope_keys):
            self.name_scope(entries, key, label)
        self.check_global_types(scopes)

        ctx = TypeContext(self.type_names(scopes), None, self.settings.strictness)
        for _, entries in scopes:
            self.resolve_entries(entries, ctx)

        if has_fatal(self.diagnostics):
            raise GenerationError(self.diagnostics)
        return ResolvedTree(self.assemble_entries(top_level), tuple(self.diagnostics))


def resolve_model(
    declarations: Sequence[Declaration], settings: ResolveSettings | None = None
) -> ResolvedTree:
    """Validate the model and compute the tree the emitter renders.

    Raises:
        GenerationError: With the whole diagnostic batch when any inclusion,
            naming or (under strict strictness) type problem is fatal.
    """
    return ModuleGraphResolver(settings).resolve(declarations)


# ===--- Declaration emitter ---=== #

INDENT = "    "
STUB_HEADER = (
    "---@meta",
    "-- Lua declarations for mlua bindings.",
    "-- Generated by mlua-stubgen. Do not edit by hand.",
)


def lua_param_name(name: str) -> str:
    return f"{name}_" if name in LUA_RESERVED else name


def lua_key(name: str, nested: bool) -> str:
    """Left-hand side that assigns ``name`` in a table or in the globals."""
    if name not in LUA_RESERVED:
        return name
    return f'["{name}"]' if nested else f'_G["{name}"]'


def doc_lines(doc: str, indent: str = "") -> list[str]:
    return [f"{indent}--- {line}".rstrip() for line in doc.splitlines()]


def _summary_line(doc: str) -> str:
    lines = doc.strip().splitlines()
    return lines[0].strip() if lines else ""


def _fun_type(
    params: Sequence[tuple[str, str]],
    returns: Sequence[str],
    self_name: str | None = None,
) -> str:
    parts = [f"self: {self_name}"] if self_name else []
    parts.extend(f"{lua_param_name(name)}: {type_text}" for name, type_text in params)
    text = f"fun({', '.join(parts)})"
    if returns:
        text += ": " + ", ".join(returns)
    return text


def emit_class(record: ResolvedRecord) -> list[str]:
    lines = doc_lines(record.doc)
    lines.append(f"---@class {record.name}")
    for item in record.fields:
        notes = []
        if not item.has_setter:
            notes.append("(read-only)")
        elif not item.has_getter:
            notes.append("(write-only)")
        summary = _summary_line(item.doc)
        if summary:
            notes.append(summary)
        line = f"---@field {item.name} {item.type}"
        if notes:
            line += " " + " ".join(notes)
        lines.append(line)
    for method in record.methods:
        fun_type = _fun_type(method.params, method.returns, record.name)
        line = f"---@field {method.name} {fun_type}"
        notes = []
        if method.fallible:
            notes.append("(may raise)")
        summary = _summary_line(method.doc)
        if summary:
            notes.append(summary)
        if notes:
            line += " " + " ".join(notes)
        lines.append(line)
    lines.extend(emit_metamethod(meta) for meta in record.metamethods)
    return lines


def emit_metamethod(meta: ResolvedFunction) -> str:
    """One class line for a metamethod.

    Operators with a single result use ``---@operator``, where the userdata
    is the implicit left operand. Everything else is a ``---@field`` whose
    function type lists every operand.
    """
    operator = LUA_OPERATORS.get(meta.name)
    operands = [type_text for _, type_text in meta.params]
    if operator and len(meta.returns) == 1:
        result = meta.returns[0]
        if operator in UNARY_OPERATORS or (operator == "call" and len(operands) <= 1):
            return f"---@operator {operator}: {result}"
        if operator == "call":
            return f"---@operator call({', '.join(operands[1:])}): {result}"
        if len(operands) == 2:
            return f"---@operator {operator}({operands[1]}): {result}"
    line = f"---@field {meta.name} {_fun_type(meta.params, meta.returns)}"
    if meta.fallible:
        line += " (may raise)"
    return line


def emit_function(function: ResolvedFunction, indent: str, nested: bool) -> list[str]:
    lines = doc_lines(function.doc, indent)
    if function.fallible:
        lines.append(f"{indent}--- Raises a Lua error on failure.")
    for name, type_text in function.params:
        lines.append(f"{indent}---@param {lua_param_name(name)} {type_text}")
    for type_text in function.returns:
        lines.append(f"{indent}---@return {type_text}")

    args = ", ".join(lua_param_name(name) for name, _ in function.params)
    if nested:
        lines.append(f"{indent}{lua_key(function.name, True)} = function({args}) end,")
    elif function.name in LUA_RESERVED:
        lines.append(f"{indent}{lua_key(function.name, False)} = function({args}) end")
    else:
        lines.append(f"{indent}function {function.name}({args}) end")
    return lines


def emit_enum(enum: ResolvedEnum, indent: str, nested: bool) -> list[str]:
    lines = doc_lines(enum.doc, indent)
    lines.append(f"{indent}---@enum {enum.name}")
    body = ", ".join(f"{lua_key(name, True)} = {value}" for name, value in enum.variants)
    table = f"{{ {body} }}" if body else "{}"
    lines.append(f"{indent}{lua_key(enum.name, nested)} = {table}{',' if nested else ''}")
    return lines


def _emit_table(
    name: str,
    doc: str,
    blocks: Sequence[list[str]],
    indent: str,
    nested: bool,
) -> list[str]:
    lines = doc_lines(doc, indent)
    key = lua_key(name, nested)
    closer = "}," if nested else "}"
    if not blocks:
        lines.append(f"{indent}{key} = {{{closer}")
        return lines
    lines.append(f"{indent}{key} = {{")
    for index, block in enumerate(blocks):
        if index:
            lines.append("")
        lines.extend(block)
    lines.append(f"{indent}{closer}")
    return lines


def emit_record_table(record: ResolvedRecord, indent: str, nested: bool) -> list[str]:
    inner = indent + INDENT
    blocks = [emit_function(ctor, inner, True) for ctor in record.constructors]
    return _emit_table(record.name, "", blocks, indent, nested)


def emit_module(module: ResolvedModule, indent: str, nested: bool) -> list[str]:
    inner = indent + INDENT
    blocks = [
        block
        for block in (emit_entry(member, inner, True) for member in module.members)
        if block
    ]
    return _emit_table(module.name, module.doc, blocks, indent, nested)


def emit_entry(entry: ResolvedEntry, indent: str = "", nested: bool = False) -> list[str]:
    if isinstance(entry, ResolvedFunction):
        return emit_function(entry, indent, nested)
    if isinstance(entry, ResolvedEnum):
        return emit_enum(entry, indent, nested)
    if isinstance(entry, ResolvedModule):
        return emit_module(entry, indent, nested)
    if entry.constructors:
        return emit_record_table(entry, indent, nested)
    # Records without constructors exist only as a class announcement.
    return []


def collect_records(entries: Iterable[ResolvedEntry]) -> list[ResolvedRecord]:
    """Records in tree order, each once even when its module is included twice."""
    records: list[ResolvedRecord] = []
    seen: set[str] = set()

    def walk(items: Iterable[ResolvedEntry]) -> None:
        for item in items:
            if isinstance(item, ResolvedRecord) and item.name not in seen:
                seen.add(item.name)
                records.append(item)
            elif isinstance(item, ResolvedModule):
                walk(item.members)

    walk(entries)
    return records


def emit_declarations(tree: ResolvedTree) -> str:
    """Render the resolved tree as one LuaLS definition file.

    Pure function of ``tree``: the same tree always renders to the same
    text.
    """
    blocks: list[list[str]] = [list(STUB_HEADER)]
    blocks.extend(emit_class(record) for record in collect_records(tree.entries))
    blocks.extend(block for block in (emit_entry(entry) for entry in tree.entries) if block)
    return "\n\n".join("\n".join(block) for block in blocks) + "\n"


# ===--- Stub writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing the generated definition file.

    Attributes:
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    path: Path
    line_count: int
    byte_count: int


def _stub_mode(output_path: Path) -> int:
    """Permission bits for the new file: the existing target's, else umask defaults."""
    try:
        return stat.S_IMODE(output_path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_stub_atomic(output_path: Path, content: str) -> FileWriteResult:
    """Replace ``output_path`` with ``content`` in one step.

    The text goes to a temporary file in the destination directory which is
    then renamed over the target, so readers see either the previous file or
    the complete new one. The temporary file never outlives the call.

    Raises:
        OSError: Propagated when the directory, temporary file or rename
            fails.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    mode = _stub_mode(output_path)
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent
    )
    replaced = False
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(temp_name, mode)
        os.replace(temp_name, output_path)
        replaced = True
    finally:
        if not replaced and os.path.exists(temp_name):
            os.unlink(temp_name)
    return FileWriteResult(
        path=output_path.resolve(),
        line_count=content.count("\n"),
        byte_count=len(data),
    )


# ===--- Pipeline stages ---=== #


@dataclass(frozen=True)
class ExtractedModel:
    """Merged output of loading and building every input manifest.

    Attributes:
        declarations: Top-level declarations of all inputs, in input order.
        diagnostics: Non-fatal builder diagnostics, in input order.
        unit_count: Number of source units read.
    """

    declarations: tuple[Declaration, ...]
    diagnostics: tuple[Diagnostic, ...]
    unit_count: int


def extract_file(path: Path, options: BuildOptions) -> tuple[int, BuildResult]:
    units = load_units(path)
    records = [record for unit in units for record in unit.records]
    return len(units), build_declarations(records, options)


def extract_model(
    paths: Sequence[Path], options: BuildOptions | None = None, jobs: int = 1
) -> ExtractedModel:
    """Load and build every manifest, on a thread pool when ``jobs > 1``.

    Results are merged in input order regardless of completion order.

    Raises:
        GenerationError: When a manifest cannot be read (IOFailure) or a
            builder diagnostic is fatal (NestedModuleForbidden). Either way
            resolution never starts.
    """
    options = options or BuildOptions()
    outcomes: list[tuple[int, BuildResult] | GenerationError] = []
    if jobs > 1 and len(paths) > 1:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            futures = [pool.submit(extract_file, path, options) for path in paths]
            for future in futures:
                try:
                    outcomes.append(future.result())
                except GenerationError as err:
                    outcomes.append(err)
    else:
        for path in paths:
            try:
                outcomes.append(extract_file(path, options))
            except GenerationError as err:
                outcomes.append(err)

    declarations: list[Declaration] = []
    diagnostics: list[Diagnostic] = []
    unit_count = 0
    for outcome in outcomes:
        if isinstance(outcome, GenerationError):
            diagnostics.extend(outcome.diagnostics)
            continue
        units, result = outcome
        unit_count += units
        declarations.extend(result.declarations)
        diagnostics.extend(result.diagnostics)

    if has_fatal(diagnostics):
        raise GenerationError(diagnostics)
    return ExtractedModel(tuple(declarations), tuple(diagnostics), unit_count)


def generate_stub(
    declarations: Sequence[Declaration], settings: ResolveSettings | None = None
) -> tuple[str, ResolvedTree]:
    """Resolve a built model and render it; no filesystem access."""
    tree = resolve_model(declarations, settings)
    return emit_declarations(tree), tree


def count_declarations(declarations: Iterable[Declaration]) -> dict[str, int]:
    counts = {KIND_FUNCTION: 0, KIND_IMPL: 0, KIND_ENUM: 0, KIND_MODULE: 0}
    for declaration in declarations:
        counts[declaration.kind] += 1
        if isinstance(declaration, ModuleDecl):
            for kind, count in count_declarations(declaration.declarations).items():
                counts[kind] += count
    return counts


def run_generate(config: GenerateConfig) -> FileWriteResult:
    """Execute the complete generation pipeline for a GenerateConfig.

    Stages: load + build (per input) -> resolve -> emit -> atomic write.
    Nothing is written unless every stage succeeds.

    Args:
        config: Validated GenerateConfig from build_config.

    Returns:
        FileWriteResult describing the written definition file.

    Raises:
        GenerationError: With the whole diagnostic batch on any fatal
            diagnostic, including IOFailure for unreadable inputs and for
            a failed write.
    """
    for path in config.inputs:
        print(f"Reading: {path}")
    extracted = extract_model(
        config.inputs, BuildOptions(config.enum_overrides), config.jobs
    )
    counts = count_declarations(extracted.declarations)
    print(
        f"  Extracted: {counts[KIND_FUNCTION]} functions, {counts[KIND_IMPL]} records, "
        f"{counts[KIND_ENUM]} enums, {counts[KIND_MODULE]} modules "
        f"from {extracted.unit_count} units"
    )

    settings = ResolveSettings(
        naming=NamingRules(config.prefix, dict(config.renames)),
        strictness=config.strictness,
    )
    try:
        content, tree = generate_stub(extracted.declarations, settings)
    except GenerationError as err:
        raise GenerationError([*extracted.diagnostics, *err.diagnostics]) from err
    print(f"  Resolved: {len(tree.entries)} top-level entries")

    try:
        result = write_stub_atomic(config.output_path, content)
    except OSError as err:
        raise GenerationError(
            [
                *extracted.diagnostics,
                *tree.diagnostics,
                Diagnostic(
                    IO_FAILURE,
                    SEVERITY_ERROR,
                    f"cannot write output: {err.strerror or err}",
                    (SourceLocation(str(config.output_path)),),
                ),
            ]
        ) from err
    print(f"  Written: {result.line_count} lines to {result.path}")

    summary = build_generation_summary(
        config, counts, (*extracted.diagnostics, *tree.diagnostics), result
    )
    print_generation_summary(summary)
    return result


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationCounts:
    functions: int
    records: int
    enums: int
    modules: int


@dataclass(frozen=True)
class GenerationSummary:
    """Complete, immutable data for the post-generation console report.

    Attributes:
        sources: Input manifests in command-line order.
        output_path: Written file, as reported by the writer.
        strictness: Strictness the run used.
        counts: Declarations exported, by kind.
        warnings: Non-fatal diagnostics, in pipeline order.
        file: Write result of the definition file.
    """

    sources: tuple[str, ...]
    output_path: str
    strictness: str
    counts: GenerationCounts
    warnings: tuple[Diagnostic, ...]
    file: FileWriteResult


def build_generation_summary(
    config: GenerateConfig,
    counts: Mapping[str, int],
    warnings: Sequence[Diagnostic],
    write_result: FileWriteResult,
) -> GenerationSummary:
    return GenerationSummary(
        sources=tuple(str(path) for path in config.inputs),
        output_path=str(write_result.path),
        strictness=config.strictness,
        counts=GenerationCounts(
            functions=counts.get(KIND_FUNCTION, 0),
            records=counts.get(KIND_IMPL, 0),
            enums=counts.get(KIND_ENUM, 0),
            modules=counts.get(KIND_MODULE, 0),
        ),
        warnings=tuple(warnings),
        file=write_result,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render the summary as a multi-section console string.

    Returns a string with exactly one trailing newline.
    """
    lines: list[str] = ["Lua declarations generated:", ""]
    lines.append(f"  Sources:    {', '.join(summary.sources)}")
    lines.append(f"  Output:     {summary.output_path}")
    lines.append(f"  Strictness: {summary.strictness}")
    lines.append("")
    lines.append("  Declarations:")
    for label, count in (
        ("Functions:", summary.counts.functions),
        ("Records:", summary.counts.records),
        ("Enums:", summary.counts.enums),
        ("Modules:", summary.counts.modules),
    ):
        lines.append(f"    {label:<11}{count:>6}")
    lines.append("")
    lines.append(f"  Warnings: {len(summary.warnings)}")
    for warning in summary.warnings:
        lines.append(f"    {format_diagnostic(warning)}")
    lines.append("")
    lines.append(
        f"  Total: {summary.file.line_count:,} lines, {summary.file.byte_count:,} bytes"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def main():
    try:
        config = build_config()
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        run_generate(config)
    except GenerationError as err:
        print(f"Generation failed with {len(err.errors)} error(s):")
        for diagnostic in err.diagnostics:
            print(f"  {format_diagnostic(diagnostic)}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
