from __future__ import annotations

from coursegen.domain.models import ProcessResult, WorkItemClaim
from coursegen.workers.handlers import advance, generate
from coursegen.workers.handlers.deps import WorkerDeps
from coursegen.workers.loop import ProcessHandler


def build_process_handler(role: str, deps: WorkerDeps) -> ProcessHandler:
    async def _advance(claim: WorkItemClaim) -> ProcessResult:
        return await advance.process_claim(deps, claim=claim)

    async def _generate(claim: WorkItemClaim) -> ProcessResult:
        return await generate.process_claim(deps, claim=claim)

    handlers: dict[str, ProcessHandler] = {
        "worker-advance": _advance,
        "worker-generate": _generate,
    }
    handler = handlers.get(role)
    if handler is None:
        raise ValueError(f"No worker handler for role '{role}'")
    return handler
