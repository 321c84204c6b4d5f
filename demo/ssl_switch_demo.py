#!/usr/bin/env python3
"""
converge walkthrough against the simulated control plane.

1. apply demo/converge.json with SSL on
2. re-apply unchanged (zero mutations)
3. switch SSL off: certificate and HTTPS proxy go away, HTTP proxy comes in
4. run the pipeline for a push, which deploys a new image
5. destroy everything in reverse create order
"""

import asyncio
import tempfile
from pathlib import Path

from converge.composition_root import create_container
from converge.application.dtos.run_dtos import PushEventRequest
from converge.infrastructure.adapters.simulated_control_plane import (
    SimulatedControlPlaneAdapter,
)
from converge.infrastructure.config import ConvergeConfig, StateConfig
from converge.infrastructure.declarations_loader import load_declarations
from converge.infrastructure.logging import configure_logging

DECLARATIONS = Path(__file__).with_name("converge.json")


def show(title, result, provider):
    counts = ", ".join(f"{k}={v}" for k, v in result.counts().items() if v)
    print(f"== {title}: {counts or 'nothing to do'} ({provider.mutations} mutations so far)")
    for output in result.outputs:
        print(f"   {output.name} = {output.display()}")


async def run(workdir: Path) -> None:
    provider = SimulatedControlPlaneAdapter(project="converge-demo")
    config = ConvergeConfig(state=StateConfig(path=str(workdir / "demo.db")))
    container = create_container(config, provider=provider)
    declarations = load_declarations(str(DECLARATIONS))

    try:
        result = await container.apply.execute(declarations, {"enable_ssl": "true"})
        show("apply (ssl)", result, provider)
        print(f"   batches: {[list(b) for b in result.plan.create_batches]}")

        result = await container.apply.execute(declarations, {"enable_ssl": "true"})
        show("re-apply", result, provider)

        plan = await container.plan.execute(declarations, {"enable_ssl": "false"})
        print(f"== plan (no ssl): {plan}")
        result = await container.apply.execute(declarations, {"enable_ssl": "false"})
        show("apply (no ssl)", result, provider)

        request = PushEventRequest(
            revision="3f1c2a9d8e7b6a5c4d3e2f1a0b9c8d7e6f5a4b3c",
            branch="main",
            repository="example/app",
        )
        pipeline = container.pipeline_for(declarations, {"enable_ssl": "false"})
        outcome = await pipeline.execute(declarations, request, {"enable_ssl": "false"})
        print(f"== pipeline: {', '.join(f'{k}={v.name}' for k, v in outcome.statuses.items())}")
        print(f"   deployed image: {provider.objects()['app_service']['image']}")

        result = await container.destroy.execute()
        show("destroy", result, provider)
        print(f"   order: {result.deleted}")
    finally:
        container.close()


if __name__ == "__main__":
    configure_logging(level="WARNING")
    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(run(Path(tmp)))
