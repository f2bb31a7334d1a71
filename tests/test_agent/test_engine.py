"""Tests for the ReconciliationController."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from berth.agent.engine import (
    ContainerState,
    ReconciliationController,
    enforce_naming,
    prefixed_name,
)
from berth.errors import ConfigConflictError, ContainerRuntimeError
from berth.models.config import OwnerConfig
from berth.models.container import ContainerConfig
from berth.models.runtime import ContainerInfo, ContainerStats, VolumeInfo


PREFIX = "iob_berth_0"


def make_provider():
    """Provider mock that reports an empty runtime with every image present."""
    provider = AsyncMock()
    provider.find_container.return_value = None
    provider.has_image.return_value = True
    provider.has_network.return_value = True
    provider.has_volume.return_value = False
    provider.list_volumes.return_value = []
    provider.list_containers.return_value = []
    provider.update_image.return_value = False
    provider.inspect_container.return_value = None
    provider.container_stats.return_value = None
    return provider


def make_config(name="web", **fields):
    return ContainerConfig(name=name, image=fields.pop("image", "nginx:1.25"), **fields)


def running(name, status="running"):
    return ContainerInfo(id="abc123", name=name, status=status)


@pytest.fixture
def provider():
    return make_provider()


class TestNaming:
    """Test enforced naming of owned resources."""

    def test_prefixed_name(self):
        """Names get the prefix once; true and empty give the bare prefix."""
        assert prefixed_name("web", PREFIX) == f"{PREFIX}_web"
        assert prefixed_name(f"{PREFIX}_web", PREFIX) == f"{PREFIX}_web"
        assert prefixed_name(True, PREFIX) == PREFIX
        assert prefixed_name("true", PREFIX) == PREFIX
        assert prefixed_name("", PREFIX) == PREFIX

    def test_enforce_naming(self):
        """Names, volumes, networks and labels are rewritten."""
        config = make_config(
            image="redis",
            mounts=[
                {"type": "volume", "source": "data", "target": "/data", "iob_backup": True},
                {"type": "bind", "source": "./conf", "target": "/conf"},
            ],
            networks=[{"name": "backend"}, {"name": "iobroker"}, {"name": "bridge"}],
            labels={"app": "web"},
        )
        enforced = enforce_naming(config, PREFIX, "berth.0", "/opt/app")

        assert enforced.name == f"{PREFIX}_web"
        assert enforced.image == "redis:latest"
        assert enforced.mounts[0].source == f"{PREFIX}_data"
        assert enforced.mounts[1].source == "/opt/app/conf"
        assert [n.name for n in enforced.networks] == [f"{PREFIX}_backend", "iobroker", "bridge"]
        assert enforced.labels == {
            "app": "web",
            "iobroker": "berth.0",
            "iob_backup": f"{PREFIX}_data",
        }

    def test_enforce_naming_is_pure_and_idempotent(self):
        """The input is untouched and a second pass changes nothing."""
        config = make_config(network_mode="true", mounts=[{"source": "data", "target": "/d"}])
        once = enforce_naming(config, PREFIX, "berth.0")
        twice = enforce_naming(once, PREFIX, "berth.0")

        assert config.name == "web"
        assert config.labels is None
        assert once.network_mode == PREFIX
        assert twice == once

    def test_container_network_mode_kept(self):
        """container:* network modes are not rewritten."""
        enforced = enforce_naming(make_config(network_mode="container:db"), PREFIX, "berth.0")
        assert enforced.network_mode == "container:db"

    def test_digest_image_untouched(self):
        """Digest references get no tag."""
        image = "nginx@sha256:" + "0" * 64
        assert enforce_naming(make_config(image=image), PREFIX, "berth.0").image == image


class TestControllerConfigs:
    """Test the managed config set."""

    def test_duplicate_names_rejected(self, provider):
        """Two configs resolving to one name conflict."""
        with pytest.raises(ConfigConflictError):
            ReconciliationController(provider, [make_config("web"), make_config(f"{PREFIX}_web")])

    def test_disabled_state_recorded(self, provider):
        """Disabled configs are known but marked disabled."""
        controller = ReconciliationController(provider, [make_config(iob_enabled=False)])
        assert controller.get_config("web").name == f"{PREFIX}_web"
        assert controller.prefix == PREFIX


@pytest.mark.asyncio
class TestReconciliation:
    """Test the reconciliation pass."""

    async def test_absent_container_is_created(self, provider):
        """A missing container is created and started."""
        controller = ReconciliationController(provider, [make_config()])

        states = await controller.reconcile_all()

        assert states == {f"{PREFIX}_web": ContainerState.MATCHING}
        created = provider.create_container.call_args.args[0]
        assert created.name == f"{PREFIX}_web"
        assert created.labels["iobroker"] == "berth.0"
        provider.start_container.assert_awaited_once_with(f"{PREFIX}_web")
        assert controller.last_reconciliation is not None

    async def test_missing_image_is_pulled(self, provider):
        """An image that is not present locally is pulled first."""
        provider.has_image.side_effect = [False, True]
        controller = ReconciliationController(provider, [make_config()])

        await controller.reconcile_all()

        provider.pull_image.assert_awaited_once_with("nginx:1.25")
        provider.create_container.assert_awaited_once()

    async def test_image_still_missing_is_an_error(self, provider):
        """A pull that does not produce the image fails that container."""
        provider.has_image.return_value = False
        controller = ReconciliationController(provider, [make_config()])

        states = await controller.reconcile_all()

        assert states[f"{PREFIX}_web"] == ContainerState.ERROR
        provider.create_container.assert_not_awaited()

    async def test_failure_does_not_stop_the_pass(self, provider):
        """One failing container leaves the others reconciled."""
        provider.create_container.side_effect = [ContainerRuntimeError("boom"), "id"]
        controller = ReconciliationController(provider, [make_config("a"), make_config("b")])

        states = await controller.reconcile_all()

        assert states[f"{PREFIX}_a"] == ContainerState.ERROR
        assert states[f"{PREFIX}_b"] == ContainerState.MATCHING

    async def test_disabled_container_skipped(self, provider):
        """Disabled containers are not touched."""
        controller = ReconciliationController(provider, [make_config(iob_enabled=False)])

        states = await controller.reconcile_all()

        assert states[f"{PREFIX}_web"] == ContainerState.DISABLED
        provider.find_container.assert_not_awaited()
        provider.create_container.assert_not_awaited()

    async def test_drifted_container_is_recreated(self, provider):
        """A changed config stops, removes and recreates the container."""
        provider.find_container.return_value = running(f"{PREFIX}_web")
        controller = ReconciliationController(provider, [make_config()])
        controller.diff = AsyncMock(return_value=["image"])

        await controller.reconcile_all()

        provider.stop_container.assert_awaited_once_with(f"{PREFIX}_web")
        provider.remove_container.assert_awaited_once_with(f"{PREFIX}_web")
        provider.create_container.assert_awaited_once()
        provider.start_container.assert_awaited_once_with(f"{PREFIX}_web")

    async def test_matching_stopped_container_is_started(self, provider):
        """An up-to-date container that is not running gets started."""
        provider.find_container.return_value = running(f"{PREFIX}_web", status="exited")
        controller = ReconciliationController(provider, [make_config()])
        controller.diff = AsyncMock(return_value=[])

        await controller.reconcile_all()

        provider.create_container.assert_not_awaited()
        provider.remove_container.assert_not_awaited()
        provider.start_container.assert_awaited_once_with(f"{PREFIX}_web")

    async def test_matching_running_container_untouched(self, provider):
        """Nothing happens for a running, matching container."""
        provider.find_container.return_value = running(f"{PREFIX}_web")
        controller = ReconciliationController(provider, [make_config()])
        controller.diff = AsyncMock(return_value=[])

        await controller.reconcile_all()

        provider.start_container.assert_not_awaited()
        provider.create_container.assert_not_awaited()

    async def test_auto_update_replaces_container(self, provider):
        """A newer image removes the old container before recreating it."""
        provider.find_container.return_value = running(f"{PREFIX}_web")
        provider.update_image.return_value = True
        controller = ReconciliationController(
            provider, [make_config(iob_auto_image_update=True)]
        )

        await controller.reconcile_all()

        provider.remove_container.assert_awaited_once_with(f"{PREFIX}_web", force=True)
        provider.create_container.assert_awaited_once()

    async def test_networks_created_once_per_pass(self, provider):
        """A shared custom network is checked and created once."""
        provider.has_network.return_value = False
        configs = [
            make_config("a", networks=[{"name": "backend"}]),
            make_config("b", networks=[{"name": "backend"}]),
        ]
        controller = ReconciliationController(provider, configs)

        await controller.reconcile_all()

        provider.create_network.assert_awaited_once_with(f"{PREFIX}_backend")

    async def test_new_volume_is_seeded(self, provider):
        """A volume created with a copy source is filled from it."""
        controller = ReconciliationController(provider, [make_config(mounts=[{
            "source": "data",
            "target": "/data",
            "iob_auto_copy_from": "/opt/seed",
        }])])

        await controller.reconcile_all()

        provider.create_volume.assert_awaited_once_with(f"{PREFIX}_data")
        provider.copy_to_volume.assert_awaited_once_with(f"{PREFIX}_data", "/opt/seed")

    async def test_existing_volume_not_seeded(self, provider):
        """Existing volumes are only seeded when forced."""
        provider.list_volumes.return_value = [VolumeInfo(name=f"{PREFIX}_data")]
        controller = ReconciliationController(provider, [make_config(mounts=[{
            "source": "data",
            "target": "/data",
            "iob_auto_copy_from": "/opt/seed",
        }])])

        await controller.reconcile_all()

        provider.create_volume.assert_not_awaited()
        provider.copy_to_volume.assert_not_awaited()

    async def test_monitor_started_for_monitored_containers(self, provider):
        """A successful monitored container starts the monitor."""
        controller = ReconciliationController(
            provider, [make_config(iob_monitoring_enabled=True)], monitor_interval=3600
        )

        await controller.reconcile_all()

        assert controller.monitoring
        await controller.stop_monitor()
        assert not controller.monitoring


@pytest.mark.asyncio
class TestContainerManagement:
    """Test add, modify and remove."""

    async def test_add_container(self, provider):
        """Added containers are enforced and reconciled."""
        controller = ReconciliationController(provider)

        state = await controller.add_container(make_config())

        assert state == ContainerState.MATCHING
        assert controller.get_config("web") is not None
        provider.create_container.assert_awaited_once()

    async def test_add_duplicate(self, provider):
        """Adding an existing container conflicts."""
        controller = ReconciliationController(provider, [make_config()])
        with pytest.raises(ConfigConflictError):
            await controller.add_container(make_config())

    async def test_add_disabled(self, provider):
        """Disabled containers are ignored on add."""
        controller = ReconciliationController(provider)
        assert await controller.add_container(make_config(iob_enabled=False)) is None
        assert controller.configs == []

    async def test_modify_container(self, provider):
        """Changes are merged into the declared config."""
        controller = ReconciliationController(
            provider, [make_config(environment={"A": "1", "B": "2"})]
        )

        state = await controller.modify_container("web", {"environment": {"B": "3"}})

        assert state == ContainerState.MATCHING
        assert controller.get_config("web").environment == {"A": "1", "B": "3"}

    async def test_modify_unknown(self, provider):
        """Modifying an unknown container fails."""
        controller = ReconciliationController(provider)
        with pytest.raises(ValueError):
            await controller.modify_container("web", {"image": "nginx:2"})

    async def test_remove_container(self, provider):
        """Removal forgets the config and removes runtime resources."""
        provider.find_container.return_value = running(f"{PREFIX}_web")
        provider.has_volume.return_value = True
        controller = ReconciliationController(provider, [make_config()])

        await controller.remove_container("web")

        assert controller.configs == []
        provider.remove_container.assert_awaited_once_with(f"{PREFIX}_web", force=True)
        provider.remove_network.assert_awaited_once_with(f"{PREFIX}_web")
        provider.remove_volume.assert_awaited_once_with(f"{PREFIX}_web")

    async def test_remove_keeps_resources_in_use(self, provider):
        """A refused network removal does not fail the removal."""
        provider.remove_network.side_effect = ContainerRuntimeError("in use")
        controller = ReconciliationController(provider, [make_config()])

        await controller.remove_container("web")

        assert controller.configs == []

    async def test_remove_unknown(self, provider):
        """Removing an unknown container fails."""
        controller = ReconciliationController(provider)
        with pytest.raises(ValueError):
            await controller.remove_container("web")

    async def test_update_configs_drops_unmanaged(self, provider):
        """Containers no longer declared leave the managed set."""
        controller = ReconciliationController(provider, [make_config("a"), make_config("b")])

        await controller.update_configs([make_config("a")])

        assert [c.name for c in controller.configs] == [f"{PREFIX}_a"]
        provider.remove_container.assert_not_awaited()


@pytest.mark.asyncio
class TestMonitoring:
    """Test monitoring, status and shutdown."""

    async def test_monitor_tick_restarts_stopped(self, provider):
        """Stopped monitored containers are restarted and sampled."""
        provider.list_containers.return_value = [running(f"{PREFIX}_web", status="exited")]
        provider.container_stats.return_value = ContainerStats(cpu=1.5, mem_used=1024)
        controller = ReconciliationController(provider, [make_config(iob_monitoring_enabled=True)])

        await controller.monitor_tick()

        provider.start_container.assert_awaited_once_with(f"{PREFIX}_web")
        stats = controller.get_stats()[f"{PREFIX}_web"]
        assert stats.cpu == 1.5
        assert stats.status == "running"

    async def test_monitor_tick_start_failure(self, provider):
        """A failed restart records the status and moves on."""
        provider.start_container.side_effect = ContainerRuntimeError("no")
        controller = ReconciliationController(provider, [make_config(iob_monitoring_enabled=True)])

        await controller.monitor_tick()

        assert controller.get_stats()[f"{PREFIX}_web"].status == "unknown"
        provider.container_stats.assert_not_awaited()

    async def test_monitor_tick_skips_unmonitored(self, provider):
        """Containers without monitoring are ignored."""
        controller = ReconciliationController(provider, [make_config()])

        await controller.monitor_tick()

        provider.start_container.assert_not_awaited()
        assert controller.get_stats() == {}

    async def test_container_status(self, provider):
        """Status reports existence and the computed state."""
        controller = ReconciliationController(provider, [make_config()])

        status = await controller.get_container_status("web")

        assert status["name"] == f"{PREFIX}_web"
        assert status["exists"] is False
        assert status["state"] == "absent"
        assert await controller.get_container_status("missing") is None

    async def test_all_statuses_survive_errors(self, provider):
        """A runtime error is reported per container."""
        provider.find_container.side_effect = ContainerRuntimeError("down")
        controller = ReconciliationController(provider, [make_config()])

        statuses = await controller.get_all_container_statuses()

        assert statuses[f"{PREFIX}_web"]["state"] == "error"

    async def test_shutdown_stops_flagged_containers(self, provider):
        """Only running containers flagged to stop on unload are stopped."""
        provider.find_container.return_value = running("x")
        controller = ReconciliationController(
            provider,
            [make_config("a"), make_config("b", iob_stop_on_unload=False)],
            owner=OwnerConfig(),
        )

        await controller.shutdown()

        provider.stop_container.assert_awaited_once_with(f"{PREFIX}_a")


def slow_create(name_suffix):
    """Create side effect that blocks on the named container until released."""
    started = asyncio.Event()
    release = asyncio.Event()

    async def create(config):
        if config.name.endswith(name_suffix):
            started.set()
            await release.wait()
        return "id"

    return create, started, release


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
class TestConcurrentOperations:
    """Test operations that overlap a running pass."""

    async def test_remove_during_pass(self, provider):
        """A removal waits for the container's work and the pass carries on."""
        create, started, release = slow_create("_a")
        provider.create_container.side_effect = create
        controller = ReconciliationController(provider, [make_config("a"), make_config("b")])

        pass_task = asyncio.create_task(controller.reconcile_all())
        await started.wait()
        remove_task = asyncio.create_task(controller.remove_container("a"))
        await settle()

        assert not remove_task.done()
        assert controller.get_config("a") is not None

        release.set()
        states = await pass_task
        await remove_task

        created = [call.args[0].name for call in provider.create_container.call_args_list]
        assert created == [f"{PREFIX}_a", f"{PREFIX}_b"]
        assert states[f"{PREFIX}_b"] == ContainerState.MATCHING
        assert [c.name for c in controller.configs] == [f"{PREFIX}_b"]
        assert f"{PREFIX}_a" not in (await controller.get_all_container_statuses())

    async def test_removed_container_not_reconciled(self, provider):
        """A container removed before the pass reaches it is skipped."""
        create, started, release = slow_create("_a")
        provider.create_container.side_effect = create
        controller = ReconciliationController(provider, [make_config("a"), make_config("b")])

        pass_task = asyncio.create_task(controller.reconcile_all())
        await started.wait()
        await controller.remove_container("b")
        release.set()
        states = await pass_task

        created = [call.args[0].name for call in provider.create_container.call_args_list]
        assert created == [f"{PREFIX}_a"]
        assert f"{PREFIX}_b" not in states
        assert states[f"{PREFIX}_a"] == ContainerState.MATCHING

    async def test_modify_during_pass_keeps_new_config(self, provider):
        """A pass working on the old config does not record state for the new one."""
        create, started, release = slow_create("_a")
        provider.create_container.side_effect = create
        controller = ReconciliationController(provider, [make_config("a")])

        pass_task = asyncio.create_task(controller.reconcile_all())
        await started.wait()
        modify_task = asyncio.create_task(
            controller.modify_container("a", {"environment": {"A": "1"}})
        )
        await settle()
        assert not modify_task.done()

        release.set()
        await pass_task
        state = await modify_task

        assert state == ContainerState.MATCHING
        assert controller.get_config("a").environment == {"A": "1"}

    async def test_monitor_waits_for_pass(self, provider):
        """The monitor does not touch a container while a pass holds it."""
        create, started, release = slow_create("_web")
        provider.create_container.side_effect = create
        controller = ReconciliationController(provider, [make_config(iob_monitoring_enabled=True)])

        pass_task = asyncio.create_task(controller.reconcile_all())
        await started.wait()
        tick_task = asyncio.create_task(controller.monitor_tick())
        await settle()

        assert not tick_task.done()
        provider.start_container.assert_not_awaited()

        release.set()
        await pass_task
        await tick_task
        await controller.stop_monitor()

        assert controller.get_stats()[f"{PREFIX}_web"].status == "running"
