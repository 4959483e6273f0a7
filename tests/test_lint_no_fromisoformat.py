"""Source hygiene checks over application code (``tests/`` is exempt).

* ``datetime.fromisoformat(`` is forbidden; use ``common.datetime.parse_iso8601``.
* bare ``except:`` clauses are forbidden.
"""
from __future__ import annotations

import pathlib
import re

import pytest

ROOT = pathlib.Path(__file__).resolve().parent.parent
_SKIP = ("tests", "site-packages", "dist-packages", ".venv", "build")

BARE_EXCEPT = re.compile(r"^\s*except\s*:", re.MULTILINE)


def _project_sources():
    for path in ROOT.rglob("*.py"):
        if any(part in path.relative_to(ROOT).parts for part in _SKIP):
            continue
        try:
            yield path, path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            continue


@pytest.mark.parametrize(
    "name,check,hint",
    [
        ("fromisoformat", lambda text: "fromisoformat(" in text, "use common.datetime.parse_iso8601"),
        ("bare except", lambda text: BARE_EXCEPT.search(text) is not None, "catch a specific exception"),
    ],
)
def test_source_hygiene(name, check, hint):
    offenders = [str(path.relative_to(ROOT)) for path, text in _project_sources() if check(text)]
    assert not offenders, f"{name} is forbidden ({hint}). Found in: {', '.join(offenders)}"
