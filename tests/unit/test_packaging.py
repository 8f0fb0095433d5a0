"""
Unit tests for the package metadata
"""

import ast
import re
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[2]
LOCAL_PACKAGES = {"common", "imagery"}
# import name -> distribution name, where they differ
DIST_NAMES = {"PIL": "pillow", "yaml": "pyyaml"}


def _declared_dependencies():
    text = (ROOT / "pyproject.toml").read_text(encoding="utf-8")
    block = re.search(r"^dependencies = \[(.*?)^\]", text, re.S | re.M).group(1)
    return {m.lower() for m in re.findall(r'"([A-Za-z0-9_.-]+)', block)}


def _runtime_imports():
    names = set()
    for pkg in LOCAL_PACKAGES:
        for path in (ROOT / pkg).rglob("*.py"):
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
            for node in ast.walk(tree):
                if isinstance(node, ast.Import):
                    names.update(alias.name.split(".")[0] for alias in node.names)
                elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
                    names.add(node.module.split(".")[0])
    return {n for n in names if n not in sys.stdlib_module_names and n not in LOCAL_PACKAGES}


class TestDependencies:
    """Every third-party import of the runtime packages is declared"""

    def test_runtime_imports_declared(self):
        declared = _declared_dependencies()
        missing = {n for n in _runtime_imports() if DIST_NAMES.get(n, n).lower() not in declared}
        assert not missing

    def test_web_stack_declared_directly(self):
        declared = _declared_dependencies()
        assert {"fastapi", "starlette", "pydantic", "uvicorn"} <= declared
