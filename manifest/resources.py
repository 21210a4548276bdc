from __future__ import annotations
import json
from pathlib import Path
from typing import List

from .models import Value


def resource_path(*parts: str) -> Path:
    # Works in dev and in PyInstaller
    import sys
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        base = Path(sys._MEIPASS) / "manifest"  # type: ignore[attr-defined]
    else:
        base = Path(__file__).resolve().parent
    return base.joinpath(*parts)


def values_library() -> List[Value]:
    """Built-in values offered on first launch, each with a fresh id, all inactive."""
    p = resource_path("assets", "values_library.json")
    entries = json.loads(p.read_text(encoding="utf-8"))
    return [Value(name=e["name"], definition=e["definition"]) for e in entries]
