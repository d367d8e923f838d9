"""Compile the UI Sass sources into a single stylesheet."""

import re
from pathlib import Path

import sass

from .log import describe, log, warn

STYLE_SOURCE_RE = re.compile(r'\.s[ac]ss$', re.IGNORECASE)


def is_style_source(name) -> bool:
    """True for .scss/.sass files; ignores the generated .css output."""
    return bool(name) and bool(STYLE_SOURCE_RE.search(str(name)))


def compile_once(source: Path, output: Path) -> bool:
    """
    Compile source to output.

    Never raises: a broken stylesheet must not abort an otherwise good
    asset build, so failures are reported as warnings and False is returned.
    """
    source = Path(source)
    output = Path(output)
    try:
        css = sass.compile(filename=str(source), output_style='expanded')
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(css or '', encoding='utf-8')
    except (sass.CompileError, OSError, ValueError) as e:
        warn(f"styles compile failed: {describe(e)}", scope="ui")
        return False
    log(f"wrote {_display(output)}", scope="ui")
    return True


def _display(path: Path) -> str:
    try:
        return str(path.resolve().relative_to(Path.cwd()))
    except ValueError:
        return str(path)
