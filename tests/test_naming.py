import pytest

import stubgen

LOC_A = stubgen.SourceLocation("src/a.rs", 1, 1)
LOC_B = stubgen.SourceLocation("src/b.rs", 2, 1)


@pytest.mark.parametrize(
    ("raw", "prefix", "expected"),
    [
        ("LuaImportant", "Lua", "Important"),
        ("Important", "Lua", "Important"),
        ("Lua", "Lua", "Lua"),
        ("Lua3D", "Lua", "Lua3D"),
        ("Luaend", "Lua", "Luaend"),
        ("LuaImportant", "", "LuaImportant"),
        ("GdVector", "Gd", "Vector"),
    ],
)
def test_transform_name_strips_prefix_when_possible(
    raw: str, prefix: str, expected: str
) -> None:
    assert stubgen.transform_name(raw, prefix) == expected


def test_transform_name_explicit_rename_wins() -> None:
    assert stubgen.transform_name("LuaImportant", "Lua", rename="Crucial") == "Crucial"


def test_transform_name_keeps_raw_name_when_stripped_name_is_taken() -> None:
    assert stubgen.transform_name("LuaImportant", "Lua", taken={"Important"}) == (
        "LuaImportant"
    )


def test_transform_scope_reports_prefix_collision_with_both_sites() -> None:
    finals, diagnostics = stubgen.transform_scope(
        [
            stubgen.NameRequest("LuaImportant", None, LOC_A),
            stubgen.NameRequest("Important", None, LOC_B),
        ],
        "Lua",
        "the top level",
    )

    assert finals == ["LuaImportant", "Important"]
    (diagnostic,) = diagnostics
    assert diagnostic.kind == stubgen.PREFIX_COLLISION
    assert not diagnostic.is_fatal
    assert diagnostic.locations == (LOC_A, LOC_B)


def test_transform_scope_reserves_explicit_renames() -> None:
    finals, diagnostics = stubgen.transform_scope(
        [
            stubgen.NameRequest("LuaPoint", None, LOC_A),
            stubgen.NameRequest("Other", "Point", LOC_B),
        ],
        "Lua",
        "module `geo`",
    )

    assert finals == ["LuaPoint", "Point"]
    assert [d.kind for d in diagnostics] == [stubgen.PREFIX_COLLISION]
    assert "module `geo`" in diagnostics[0].message


def test_transform_scope_strips_independent_names() -> None:
    finals, diagnostics = stubgen.transform_scope(
        [
            stubgen.NameRequest("LuaA", None, LOC_A),
            stubgen.NameRequest("LuaB", None, LOC_B),
        ],
        "Lua",
        "the top level",
    )

    assert finals == ["A", "B"]
    assert diagnostics == []


def test_naming_rules_rename_precedence() -> None:
    rules = stubgen.NamingRules(
        "Lua", {"math.LuaAdd": "plus", "LuaAdd": "add_all", "LuaSub": "minus"}
    )

    assert rules.explicit_rename("LuaAdd", "math", "tagged") == "plus"
    assert rules.explicit_rename("LuaAdd", "physics", "tagged") == "add_all"
    assert rules.explicit_rename("LuaAdd", None, None) == "add_all"
    assert rules.explicit_rename("LuaMul", "math", "tagged") == "tagged"
    assert rules.explicit_rename("LuaMul", "math", None) is None
