from __future__ import annotations

from typing import Dict, Type

from ..core.models import Language
from ..settings import Settings
from .base import LanguageAdapter
from .cpp_runner import CppAdapter
from .node_runner import JavaScriptAdapter
from .python_runner import PythonAdapter

# Closed set: adding a language means a Language member plus an adapter here.
ADAPTERS: Dict[Language, Type[LanguageAdapter]] = {
    Language.PYTHON: PythonAdapter,
    Language.CPP: CppAdapter,
    Language.JAVASCRIPT: JavaScriptAdapter,
}


def check_closed(adapters: Dict[Language, Type[LanguageAdapter]]) -> None:
    missing = set(Language) - set(adapters)
    if missing:
        raise RuntimeError(f"no adapter for: {sorted(lang.value for lang in missing)}")


check_closed(ADAPTERS)


def build_adapters(settings: Settings) -> Dict[Language, LanguageAdapter]:
    return {lang: cls(settings) for lang, cls in ADAPTERS.items()}
