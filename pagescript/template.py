"""Starter script written for new projects."""

from importlib import resources
from pathlib import Path

SCRIPT_TEMPLATE: str = resources.files(__package__).joinpath("template.tmpl").read_text(encoding="utf-8")


def write_template(path: str | Path) -> Path:
    """Write the starter script to ``path``.

    Raises:
        FileExistsError: If ``path`` already exists
    """
    path = Path(path)
    with path.open("x", encoding="utf-8") as f:
        f.write(SCRIPT_TEMPLATE)
    return path
