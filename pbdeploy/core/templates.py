"""Rendering of the remote configuration files shipped under pbdeploy/stubs"""

from pathlib import Path

from jinja2 import Template, StrictUndefined

STUBS_DIR = Path(__file__).resolve().parent.parent / "stubs"


def load_stub(relative_path: str) -> str:
    """
    Read a template stub.

    Raises:
        FileNotFoundError: If the stub doesn't exist
    """
    stub_file = STUBS_DIR / relative_path
    if not stub_file.exists():
        raise FileNotFoundError(f"Template stub not found: {stub_file}")
    return stub_file.read_text(encoding="utf-8")


def render_stub(relative_path: str, **context) -> str:
    """Render a stub with jinja2; missing variables are errors."""
    template = Template(
        load_stub(relative_path),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )
    return template.render(**context)
