"""Load workflow definitions from modules or files for CLI commands."""

from __future__ import annotations

import importlib
import importlib.util
import sys
from pathlib import Path
from types import ModuleType
from typing import List

from sagaflow.contracts import WorkflowDefinition


def _import_module(target: str) -> ModuleType:
    path = Path(target)
    if path.suffix == ".py" or path.exists():
        path = path.expanduser().resolve()
        if not path.exists():
            raise FileNotFoundError(target)
        module_name = f"sagaflow_user_{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load definitions from {target}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        spec.loader.exec_module(module)
        return module
    return importlib.import_module(target)


def load_definitions(target: str) -> List[WorkflowDefinition]:
    """Return every module-level ``WorkflowDefinition`` in ``target``.

    ``target`` is a dotted module name or a path to a Python file.
    Definitions keep the order in which the module defines them.
    """
    module = _import_module(target)
    found: List[WorkflowDefinition] = []
    seen: set[str] = set()
    for value in vars(module).values():
        if isinstance(value, WorkflowDefinition) and value.definition_id not in seen:
            seen.add(value.definition_id)
            found.append(value)
    return found
