from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .cli import main
    from .kernel import AssistantKernel, KernelConfig

__all__ = ["AssistantKernel", "KernelConfig", "main"]


def __getattr__(name: str):  # pragma: no cover
    # Lazy exports so `import boss.util` does not pull in the whole kernel.
    if name in {"AssistantKernel", "KernelConfig"}:
        from .kernel import AssistantKernel, KernelConfig

        return {"AssistantKernel": AssistantKernel, "KernelConfig": KernelConfig}[name]
    if name == "main":
        from .cli import main

        return main
    raise AttributeError(name)
