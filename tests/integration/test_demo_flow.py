"""End-to-end flow over demo/converge.json against the in-memory simulated provider.

Applies the load-balanced site with SSL, flips the SSL switch off, then runs
the push pipeline whose deploy step rolls a new image onto the service.
"""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from converge.application.dtos.run_dtos import PushEventRequest
from converge.application.orchestration.pipeline_executor import PipelineExecutor
from converge.application.use_cases.apply_infrastructure import ApplyInfrastructure
from converge.application.use_cases.deploy_resource import DeployResource
from converge.application.use_cases.plan_infrastructure import PlanInfrastructure
from converge.application.use_cases.run_pipeline import RunPipeline
from converge.domain.entities.build_step import StepStatus
from converge.domain.value_objects.step_outcome import StepOutcome
from converge.infrastructure.declarations_loader import load_declarations

DEMO = Path(__file__).parents[2] / "demo" / "converge.json"
REVISION = "0123456789abcdef0123456789abcdef01234567"
DIGEST = "sha256:" + "cd" * 32


@pytest.fixture
def demo():
    return load_declarations(str(DEMO))


@pytest.fixture
def apply(executor):
    return ApplyInfrastructure(executor)


class TestDemoSite:
    @pytest.mark.asyncio
    async def test_ssl_site(self, demo, apply, provider):
        result = await apply.execute(demo)

        assert set(result.created) == {
            "app_service",
            "backend",
            "url_map",
            "certificate",
            "https_proxy",
            "address",
            "forwarding_rule",
            "dns_record",
        }
        objects = provider.objects()
        assert "http_proxy" not in objects
        rule = objects["forwarding_rule"]
        assert rule["target"] == objects["https_proxy"]["self_link"]
        assert rule["port_range"] == "443"
        assert objects["dns_record"]["rrdatas"] == [objects["address"]["address"]]

        outputs = {o.name: o for o in result.outputs}
        assert outputs["url"].value == "https://app.example.com"
        assert outputs["api_key"].display() == "(sensitive)"

    @pytest.mark.asyncio
    async def test_switch_ssl_off(self, demo, apply, provider, state_store):
        await apply.execute(demo)
        first_run = len(provider.calls)
        plan = await PlanInfrastructure(state_store).execute(demo, {"enable_ssl": False})
        assert plan.has_changes

        result = await apply.execute(demo, {"enable_ssl": False})

        assert set(result.deleted) == {"https_proxy", "certificate"}
        assert set(result.created) == {"http_proxy"}
        assert set(result.updated) == {"forwarding_rule"}
        objects = provider.objects()
        assert objects["forwarding_rule"]["target"] == objects["http_proxy"]["self_link"]
        assert objects["forwarding_rule"]["port_range"] == "80"
        assert {o.name: o.value for o in result.outputs}["url"] == "http://app.example.com"
        mutations = [
            c for c in provider.calls[first_run:] if c[0] in ("create", "update", "delete")
        ]
        assert [c[0] for c in mutations] == ["create", "update", "delete", "delete"]
        assert mutations[1] == ("update", "forwarding_rule", "forwarding_rule")
        assert mutations[2] == ("delete", "target_https_proxy", "https_proxy")

    @pytest.mark.asyncio
    async def test_reapply_is_a_no_op(self, demo, apply, provider):
        await apply.execute(demo)
        mutations = provider.mutations
        result = await apply.execute(demo)
        assert not result.changed
        assert provider.mutations == mutations


class TestDemoPipeline:
    @pytest.mark.asyncio
    async def test_push_deploys_built_image(self, demo, apply, executor, provider):
        await apply.execute(demo)

        runner = AsyncMock()
        runner.run = AsyncMock(return_value=StepOutcome(0, stdout=f"building\n{DIGEST}\n"))
        pipeline = RunPipeline(
            PipelineExecutor({"command": runner}, deployer=DeployResource(executor, demo))
        )
        result = await pipeline.execute(
            demo, PushEventRequest(revision=REVISION, repository="acme/app")
        )

        assert result.success
        assert result.statuses["deploy"] == StepStatus.SUCCEEDED
        assert result.artifacts["build"]["digest"] == DIGEST
        image = f"registry.example.com/demo/app:0123456@{DIGEST}"
        assert provider.objects()["app_service"]["image"] == image

        # image is in ignore_changes, so a full apply keeps the deployed value
        again = await apply.execute(demo)
        assert "app_service" not in again.updated
        assert provider.objects()["app_service"]["image"] == image
