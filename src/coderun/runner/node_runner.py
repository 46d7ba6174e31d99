from typing import List

from ..core.models import Language
from .base import LanguageAdapter


class JavaScriptAdapter(LanguageAdapter):
    """
    Node.js, no compile phase. No permission flags are passed: the process
    gets exactly what the sandbox grants and nothing more.
    """

    language = Language.JAVASCRIPT
    source_name = "main.js"

    def command(self, target: str) -> List[str]:
        return [
            self.resolve(self.settings.node_bin),
            f"--max-old-space-size={self.settings.node_heap_mb}",
            target,
        ]
