from typing import List

from ..core.models import Language
from .base import LanguageAdapter


class PythonAdapter(LanguageAdapter):
    language = Language.PYTHON
    source_name = "main.py"

    def command(self, target: str) -> List[str]:
        # -I: ignore PYTHON* env and user site; -u: keep output that precedes a kill
        return [self.resolve(self.settings.python_bin), "-I", "-u", target]
