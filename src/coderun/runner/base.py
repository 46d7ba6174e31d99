from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar, List

from ..core.models import Language, RawOutput
from ..settings import Limits, Settings

if TYPE_CHECKING:
    from ..executor.sandbox import Sandbox


class LanguageAdapter(ABC):
    """
    prepare -> compile -> execute, all inside one Sandbox.

    Interpreted languages keep the identity compile(); diagnostics from the
    interpreter or compiler are passed through verbatim on the two streams.
    """

    language: ClassVar[Language]
    source_name: ClassVar[str]

    def __init__(self, settings: Settings):
        self.settings = settings

    @staticmethod
    def resolve(binary: str) -> str:
        # absolute path: the sandbox env only carries a minimal PATH
        return shutil.which(binary) or binary

    def prepare(self, sandbox: Sandbox, source: str) -> str:
        sandbox.write_file(self.source_name, source)
        return self.source_name

    async def compile(self, sandbox: Sandbox, source_file: str) -> str:
        return source_file

    @abstractmethod
    def command(self, target: str) -> List[str]:
        raise NotImplementedError

    async def execute(self, sandbox: Sandbox, target: str, stdin: str, limits: Limits) -> RawOutput:
        return await sandbox.run(self.command(target), limits=limits, stdin=stdin.encode("utf-8"))
