"""Tests for the in-memory simulated control plane."""

import json

import pytest

from converge.domain.errors import (
    NodeApplyError,
    ResourceAlreadyExistsError,
    TransientAPIError,
)
from converge.infrastructure.adapters.simulated_control_plane import (
    SimulatedControlPlaneAdapter,
)


class TestCrud:
    @pytest.mark.asyncio
    async def test_create_returns_computed_fields(self):
        adapter = SimulatedControlPlaneAdapter(project="demo")

        remote = await adapter.create("global_address", "ip", {"description": "lb"})

        assert remote["id"] == "1000001"
        assert "/projects/demo/regions/us-central1/" in remote["self_link"]
        assert remote["address"] == "34.120.0.2"
        assert remote["description"] == "lb"
        assert remote["generation"] == 1

    @pytest.mark.asyncio
    async def test_ids_are_sequential(self):
        adapter = SimulatedControlPlaneAdapter()
        first = await adapter.create("thing", "a", {})
        second = await adapter.create("thing", "b", {})
        assert (first["id"], second["id"]) == ("1000001", "1000002")

    @pytest.mark.asyncio
    async def test_duplicate_create(self):
        adapter = SimulatedControlPlaneAdapter()
        await adapter.create("thing", "a", {})
        with pytest.raises(ResourceAlreadyExistsError):
            await adapter.create("thing", "a", {})

    @pytest.mark.asyncio
    async def test_update_keeps_computed_and_drops_removed_keys(self):
        adapter = SimulatedControlPlaneAdapter()
        created = await adapter.create("cloud_run_service", "api", {"image": "v1", "cpu": 1})

        updated = await adapter.update("cloud_run_service", "api", {"image": "v2"})

        assert updated["id"] == created["id"]
        assert updated["url"] == created["url"]
        assert updated["image"] == "v2"
        assert "cpu" not in updated
        assert updated["generation"] == 2
        assert "update_time" in updated

    @pytest.mark.asyncio
    async def test_update_missing(self):
        adapter = SimulatedControlPlaneAdapter()
        with pytest.raises(NodeApplyError) as exc:
            await adapter.update("thing", "ghost", {})
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_read_and_delete(self):
        adapter = SimulatedControlPlaneAdapter()
        await adapter.create("thing", "a", {"k": "v"})

        assert (await adapter.read("thing", "a"))["k"] == "v"
        await adapter.delete("thing", "a")
        assert await adapter.read("thing", "a") is None
        await adapter.delete("thing", "a")

    @pytest.mark.asyncio
    async def test_mutations_count_only_writes(self):
        adapter = SimulatedControlPlaneAdapter()
        await adapter.create("thing", "a", {})
        await adapter.read("thing", "a")
        await adapter.delete("thing", "a")
        assert adapter.mutations == 2


class TestFaults:
    @pytest.mark.asyncio
    async def test_transient_fault_consumed(self):
        adapter = SimulatedControlPlaneAdapter()
        adapter.inject_failure("create", name="a", kind="transient", times=1)

        with pytest.raises(TransientAPIError) as exc:
            await adapter.create("thing", "a", {})
        assert exc.value.status_code == 503
        assert (await adapter.create("thing", "a", {}))["id"]

    @pytest.mark.asyncio
    async def test_fatal_fault_only_matches_type(self):
        adapter = SimulatedControlPlaneAdapter()
        adapter.inject_failure("create", resource_type="bucket", kind="fatal", times=-1)

        await adapter.create("thing", "a", {})
        for name in ("b1", "b2"):
            with pytest.raises(NodeApplyError):
                await adapter.create("bucket", name, {})

    def test_unknown_fault_kind(self):
        with pytest.raises(ValueError):
            SimulatedControlPlaneAdapter().inject_failure(kind="flaky")


class TestRegistryFile:
    @pytest.mark.asyncio
    async def test_objects_survive_a_new_adapter(self, tmp_path):
        path = tmp_path / "sim.json"
        first = SimulatedControlPlaneAdapter(registry_path=str(path))
        await first.create("thing", "a", {"k": "v"})
        await first.create("thing", "b", {})
        await first.delete("thing", "b")

        second = SimulatedControlPlaneAdapter(registry_path=str(path))

        assert set(second.objects()) == {"a"}
        assert second.objects()["a"]["k"] == "v"
        assert (await second.create("thing", "c", {}))["id"] == "1000003"
        updated = await second.update("thing", "a", {"k": "w"})
        assert updated["self_link"] == first.objects()["a"]["self_link"]

    @pytest.mark.asyncio
    async def test_file_layout(self, tmp_path):
        path = tmp_path / "sim.json"
        adapter = SimulatedControlPlaneAdapter(registry_path=str(path))
        adapter.seed("thing", "a", {"k": "v"})

        data = json.loads(path.read_text())
        assert data["sequence"] == 1
        assert data["objects"]["thing/a"]["_declared"] == ["k"]

    def test_in_memory_without_path(self, tmp_path):
        adapter = SimulatedControlPlaneAdapter()
        adapter.seed("thing", "a", {})
        assert list(tmp_path.iterdir()) == []
