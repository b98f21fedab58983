import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import stubgen  # noqa: E402


@pytest.fixture
def manifest_path(tmp_path: Path) -> Path:
    path = tmp_path / "bindings.xml"
    path.write_text("<declarations />\n", encoding="utf-8")
    return path


@pytest.fixture
def missing_path(tmp_path: Path) -> Path:
    return tmp_path / "missing.xml"


@pytest.fixture
def make_args(manifest_path: Path, tmp_path: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "input": [[manifest_path]],
            "output": tmp_path / "types" / "bindings.d.lua",
            "strictness": stubgen.STRICTNESS_LENIENT,
            "prefix": stubgen.DEFAULT_PREFIX,
            "rename": None,
            "enum_overrides": stubgen.ENUM_OVERRIDES_FOLLOW,
            "jobs": 1,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_record() -> Callable[..., stubgen.DeclarationRecord]:
    def _make_record(
        kind: str,
        signature: str,
        *,
        doc: str = "",
        tags: tuple[str | tuple[str, str], ...] = (),
        line: int = 1,
        path: str = "src/lib.rs",
        children: tuple[stubgen.DeclarationRecord, ...] = (),
    ) -> stubgen.DeclarationRecord:
        sub_tags = tuple(
            stubgen.SubTag(tag) if isinstance(tag, str) else stubgen.SubTag(*tag)
            for tag in tags
        )
        return stubgen.DeclarationRecord(
            kind=kind,
            raw_signature=signature,
            doc_text=doc,
            sub_tags=sub_tags,
            location=stubgen.SourceLocation(path, line, 1),
            children=children,
        )

    return _make_record


@pytest.fixture
def build() -> Callable[..., stubgen.BuildResult]:
    def _build(*records: stubgen.DeclarationRecord, **options: str) -> stubgen.BuildResult:
        return stubgen.build_declarations(records, stubgen.BuildOptions(**options))

    return _build


@pytest.fixture
def render() -> Callable[..., str]:
    """Build, resolve and emit records in one step."""

    def _render(
        *records: stubgen.DeclarationRecord,
        prefix: str = stubgen.DEFAULT_PREFIX,
        renames: dict[str, str] | None = None,
        strictness: str = stubgen.STRICTNESS_LENIENT,
    ) -> str:
        result = stubgen.build_declarations(records)
        settings = stubgen.ResolveSettings(
            naming=stubgen.NamingRules(prefix, renames or {}),
            strictness=strictness,
        )
        text, _tree = stubgen.generate_stub(result.declarations, settings)
        return text

    return _render


@pytest.fixture
def write_manifest(tmp_path: Path) -> Callable[..., Path]:
    def _write_manifest(body: str, name: str = "bindings.xml") -> Path:
        path = tmp_path / name
        path.write_text(body, encoding="utf-8")
        return path

    return _write_manifest
