from collections.abc import Callable

import pytest

import stubgen
from stubgen import PrimitiveRef


def _kinds(diagnostics) -> list[str]:
    return [diagnostic.kind for diagnostic in diagnostics]


@pytest.fixture
def vector_impl(make_record: Callable[..., stubgen.DeclarationRecord]):
    def _vector_impl(*members: stubgen.DeclarationRecord) -> stubgen.DeclarationRecord:
        return make_record("impl", "impl Vector3", doc="A 3D vector.", children=members)

    return _vector_impl


def test_build_function_drops_context_and_names_placeholders(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(
        make_record(
            "function",
            "pub fn add(_: &mlua::Lua, a: f32, _: f32) -> f32",
            doc="Adds two numbers.",
        )
    )

    assert result.diagnostics == []
    (function,) = result.declarations
    assert isinstance(function, stubgen.FunctionDecl)
    assert function.name == "add"
    assert [p.name for p in function.signature.params] == ["a", "arg2"]
    assert function.signature.returns == PrimitiveRef("number")
    assert function.doc == "Adds two numbers."


def test_build_function_without_context_is_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("function", "fn add(a: f32, b: f32) -> f32"))

    assert result.declarations == []
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]
    assert not result.diagnostics[0].is_fatal


def test_build_function_unparseable_signature_skips_only_that_item(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(
        make_record("function", "fn broken(_: &Lua, x: i32", line=3),
        make_record("function", "fn fine(_: &Lua)", line=9),
    )

    assert [d.name for d in result.declarations] == ["fine"]
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]
    assert result.diagnostics[0].locations[0].line == 3


def test_getter_and_setter_merge_into_one_field(
    make_record: Callable[..., stubgen.DeclarationRecord], build, vector_impl
) -> None:
    record = vector_impl(
        make_record("function", "fn x(_: &Lua, this: &Self) -> f32", tags=("get",)),
        make_record(
            "function", "fn x(_: &Lua, this: &mut Self, value: f32)", tags=("set",)
        ),
    )

    result = build(record)

    assert result.diagnostics == []
    (decl,) = result.declarations
    (field,) = decl.fields
    assert field.name == "x"
    assert field.type == PrimitiveRef("number")
    assert field.has_getter and field.has_setter


def test_getter_and_setter_type_mismatch_drops_field(
    make_record: Callable[..., stubgen.DeclarationRecord], build, vector_impl
) -> None:
    record = vector_impl(
        make_record("function", "fn x(_: &Lua, this: &Self) -> f32", tags=("get",), line=2),
        make_record(
            "function",
            "fn x(_: &Lua, this: &mut Self, value: bool)",
            tags=("set",),
            line=5,
        ),
        make_record("function", "fn y(_: &Lua, &self) -> f32", tags=("get",), line=8),
    )

    result = build(record)

    (decl,) = result.declarations
    assert [field.name for field in decl.fields] == ["y"]
    (diagnostic,) = result.diagnostics
    assert diagnostic.kind == stubgen.MALFORMED_MARKER
    assert [loc.line for loc in diagnostic.locations] == [2, 5]


def test_getter_only_field_is_read_only(
    make_record: Callable[..., stubgen.DeclarationRecord], build, vector_impl
) -> None:
    record = vector_impl(
        make_record("function", "fn len(_: &Lua, &self) -> f64", tags=("get",)),
    )

    (decl,) = build(record).declarations
    assert decl.fields[0].has_getter
    assert not decl.fields[0].has_setter


@pytest.mark.parametrize(
    ("signature", "tag"),
    [
        ("fn x(_: &Lua, this: &mut Self) -> f32", "get"),
        ("fn x(_: &Lua, this: &Self)", "get"),
        ("fn x(_: &Lua, this: &Self, extra: i32) -> f32", "get"),
        ("fn x(_: &Lua, this: &Self, value: f32)", "set"),
        ("fn x(_: &Lua, this: &mut Self, value: f32) -> bool", "set"),
        ("fn x(_: &Lua, this: &mut Self) -> f32", "method"),
        ("fn x(_: &Lua, this: &Self) -> f32", "method_mut"),
        ("fn x(_: &Lua) -> f32", "method"),
        ("fn x(this: &Self, _: &Lua) -> f32", "method"),
        ("fn x(_: &Lua, this: &Self) -> Self", "func"),
        ("fn x(_: &Lua, self) -> f32", "method"),
        ("fn x(_: &Lua, self: Self) -> f32", "get"),
    ],
)
def test_member_shape_violations_are_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord],
    build,
    vector_impl,
    signature: str,
    tag: str,
) -> None:
    result = build(vector_impl(make_record("function", signature, tags=(tag,))))

    (decl,) = result.declarations
    assert decl.fields == () and decl.methods == ()
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_methods_and_constructors_keep_receiver_kind(
    make_record: Callable[..., stubgen.DeclarationRecord], build, vector_impl
) -> None:
    record = vector_impl(
        make_record(
            "function", "fn new(_: &Lua, x: f32, y: f32, z: f32) -> Self", tags=("func",)
        ),
        make_record("function", "fn length(_: &Lua, this: &Self) -> f32", tags=("method",)),
        make_record(
            "function",
            "fn scale(_: &Lua, self: &mut Self, by: f32) -> mlua::Result<()>",
            tags=("method_mut",),
        ),
        make_record("function", "fn helper(&self) -> f32"),
    )

    (decl,) = build(record).declarations

    assert [(m.name, m.receiver) for m in decl.methods] == [
        ("new", stubgen.RECEIVER_NONE),
        ("length", stubgen.RECEIVER_IMMUTABLE),
        ("scale", stubgen.RECEIVER_MUTABLE),
    ]
    assert [p.name for p in decl.methods[0].signature.params] == ["x", "y", "z"]
    assert decl.methods[0].signature.returns == stubgen.SELF
    assert decl.methods[2].signature.fallible
    assert [m.name for m in decl.constructors] == ["new"]


def test_duplicate_getter_is_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build, vector_impl
) -> None:
    record = vector_impl(
        make_record("function", "fn x(_: &Lua, &self) -> f32", tags=("get",), line=2),
        make_record("function", "fn x(_: &Lua, &self) -> f64", tags=("get",), line=4),
    )

    result = build(record)

    (decl,) = result.declarations
    assert len(decl.fields) == 1
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_conflicting_member_markers_are_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build, vector_impl
) -> None:
    record = vector_impl(
        make_record("function", "fn x(_: &Lua, &self) -> f32", tags=("get", "method")),
    )

    assert _kinds(build(record).diagnostics) == [stubgen.MALFORMED_MARKER]


def test_meta_members_become_metamethods(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    record = make_record(
        "impl",
        "impl ResId",
        children=(
            make_record("function", "fn id(_: &Lua, this: &Self) -> u32", tags=("get",)),
            make_record(
                "function", "fn __add(_: &mlua::Lua, a: Self, b: Self) -> Self", tags=("meta",)
            ),
            make_record(
                "function", "fn __tostring(_: &Lua, this: &Self) -> String", tags=("meta",)
            ),
        ),
    )

    result = build(record)

    (decl,) = result.declarations
    assert result.diagnostics == []
    assert [m.name for m in decl.metamethods] == ["__add", "__tostring"]
    assert decl.instance_methods == () and decl.constructors == ()
    assert [p.name for p in decl.metamethods[0].signature.params] == ["a", "b"]
    assert decl.metamethods[0].signature.returns == stubgen.SELF


@pytest.mark.parametrize(
    "signature",
    [
        "fn __frobnicate(_: &Lua, a: Self) -> bool",
        "fn __eq(_: &Lua, &self, other: Self) -> bool",
        "fn __len(this: Self) -> usize",
    ],
)
def test_meta_shape_violations_are_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build, signature: str
) -> None:
    record = make_record(
        "impl", "impl ResId", children=(make_record("function", signature, tags=("meta",)),)
    )

    result = build(record)

    assert result.declarations[0].metamethods == ()
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_renamed_metamethod_is_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    member = make_record(
        "function",
        "fn __len(_: &Lua, this: &Self) -> usize",
        tags=("meta", ("rename", "size")),
    )

    result = build(make_record("impl", "impl ResId", children=(member,)))

    assert result.declarations[0].metamethods == ()
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_duplicate_metamethod_is_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    record = make_record(
        "impl",
        "impl ResId",
        children=(
            make_record(
                "function", "fn __eq(_: &Lua, a: Self, b: Self) -> bool", tags=("meta",)
            ),
            make_record(
                "function", "fn __eq(_: &Lua, a: Self, b: u32) -> bool", tags=("meta",)
            ),
        ),
    )

    result = build(record)

    assert len(result.declarations[0].metamethods) == 1
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_enum_discriminants_count_from_zero(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("enum", "enum Colors { Red, Green, Blue }"))

    (decl,) = result.declarations
    assert decl.variants == (("Red", 0), ("Green", 1), ("Blue", 2))


def test_enum_overrides_are_followed_by_default(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("enum", "enum Level { Low, Mid = 10, High }"))

    (decl,) = result.declarations
    assert decl.variants == (("Low", 0), ("Mid", 10), ("High", 11))


def test_enum_overrides_can_be_rejected(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(
        make_record("enum", "enum Level { Low, Mid = 10, High }"),
        enum_overrides=stubgen.ENUM_OVERRIDES_REJECT,
    )

    assert result.declarations == []
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_enum_duplicate_discriminant_excludes_enum(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("enum", "enum Level { Low = 1, Mid = 0, High }"))

    assert result.declarations == []
    assert "share discriminant 1" in result.diagnostics[0].message


def test_enum_payload_variant_excludes_enum(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("enum", "enum Shape { Circle(f32), Square }"))

    assert result.declarations == []
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_unknown_tag_and_kind_are_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(
        make_record("function", "fn a(_: &Lua)", tags=("frobnicate",)),
        make_record("struct", "struct B;"),
        make_record("function", "fn c(_: &Lua)"),
    )

    assert [d.name for d in result.declarations] == ["c"]
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER] * 2


def test_ignore_tag_drops_item_silently(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("function", "fn hidden(_: &Lua)", tags=("ignore",)))

    assert result.declarations == []
    assert result.diagnostics == []


def test_rename_tag_is_recorded(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("function", "fn a(_: &Lua)", tags=(("rename", "alpha"),)))

    assert result.declarations[0].rename == "alpha"


def test_rename_tag_requires_identifier(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("function", "fn a(_: &Lua)", tags=(("rename", "1x"),)))

    assert result.declarations == []
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_main_tag_is_only_allowed_on_modules(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(
        make_record("module", "mod game", tags=("main",)),
        make_record("function", "fn f(_: &Lua)", tags=("main",)),
    )

    (game,) = result.declarations
    assert game.is_main
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]


def test_module_collects_declarations_and_inclusion_points(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    module = make_record(
        "module",
        "pub mod math",
        children=(
            make_record("function", "fn add(_: &Lua, a: f32, b: f32) -> f32"),
            make_record("include", "crate::physics_module"),
            make_record("enum", "enum Axis { X, Y, Z }"),
        ),
    )

    (decl,) = build(module).declarations

    assert isinstance(decl, stubgen.ModuleDecl)
    assert [d.name for d in decl.declarations] == ["add", "Axis"]
    assert decl.inclusions == (
        stubgen.Inclusion("physics", 1, stubgen.SourceLocation("src/lib.rs", 1, 1)),
    )


def test_nested_module_is_fatal_but_siblings_are_modeled(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    module = make_record(
        "module",
        "mod outer",
        children=(
            make_record("function", "fn before(_: &Lua)"),
            make_record("module", "mod inner", line=4),
            make_record("function", "fn after(_: &Lua)"),
        ),
    )

    result = build(module)

    (decl,) = result.declarations
    assert [d.name for d in decl.declarations] == ["before", "after"]
    assert _kinds(result.diagnostics) == [stubgen.NESTED_MODULE_FORBIDDEN]
    assert result.diagnostics[0].is_fatal
    assert result.diagnostics[0].locations[0].line == 4


def test_inclusion_outside_module_is_malformed(
    make_record: Callable[..., stubgen.DeclarationRecord], build
) -> None:
    result = build(make_record("include", "other_module"))

    assert result.declarations == []
    assert _kinds(result.diagnostics) == [stubgen.MALFORMED_MARKER]
