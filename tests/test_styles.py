from __future__ import annotations

import pytest

from iiifsite.styles import compile_once, is_style_source


def write_styles(root):
    (root / "_tokens.scss").write_text("$accent: #2563eb;\n", encoding="utf-8")
    source = root / "index.scss"
    source.write_text("@import 'tokens';\n.card { a { color: $accent; } }\n", encoding="utf-8")
    return source


def test_compiles_to_nested_output_dir(tmp_path):
    source = write_styles(tmp_path)
    output = tmp_path / "out" / "css" / "index.css"

    assert compile_once(source, output) is True
    css = output.read_text(encoding="utf-8")
    assert ".card a" in css
    assert "#2563eb" in css


def test_repeated_compiles_are_identical(tmp_path):
    source = write_styles(tmp_path)
    output = tmp_path / "index.css"
    compile_once(source, output)
    first = output.read_bytes()
    compile_once(source, output)
    assert output.read_bytes() == first


def test_compile_error_is_a_warning_not_an_exception(tmp_path, capsys):
    source = tmp_path / "index.scss"
    source.write_text(".broken { color: $undefined-variable; }\n", encoding="utf-8")
    output = tmp_path / "index.css"

    assert compile_once(source, output) is False
    assert not output.exists()
    assert "styles compile failed" in capsys.readouterr().err


def test_missing_source_is_a_warning(tmp_path, capsys):
    assert compile_once(tmp_path / "nope.scss", tmp_path / "nope.css") is False
    assert "[ui][warn]" in capsys.readouterr().err


@pytest.mark.parametrize("name,expected", [
    ("index.scss", True),
    ("_partial.sass", True),
    ("THEME.SCSS", True),
    ("index.css", False),
    ("index.scss.map", False),
    ("", False),
    (None, False),
])
def test_is_style_source(name, expected):
    assert is_style_source(name) is expected
