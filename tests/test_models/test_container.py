"""Tests for container models."""

import pytest
from pydantic import ValidationError

from berth.models.container import ContainerConfig, strip_owner_fields
from berth.models.runtime import ContainerInfo, ImageInfo


class TestContainerConfig:
    """Test ContainerConfig model."""

    def test_minimal(self):
        """Name and image are enough; owner flags get their defaults."""
        config = ContainerConfig(name="web", image="nginx")

        assert config.iob_enabled is True
        assert config.iob_stop_on_unload is True
        assert config.iob_auto_image_update is False
        assert config.iob_monitoring_enabled is False

    def test_required_fields(self):
        """Empty names and images are invalid."""
        with pytest.raises(ValidationError):
            ContainerConfig(name="", image="nginx")
        with pytest.raises(ValidationError):
            ContainerConfig(name="web")

    def test_unknown_fields_rejected(self):
        """Typos in field names fail validation."""
        with pytest.raises(ValidationError):
            ContainerConfig(name="web", image="nginx", enviroment={"A": "1"})

    def test_numeric_user(self):
        """Numeric users are stored as strings."""
        assert ContainerConfig(name="web", image="nginx", user=1000).user == "1000"

    def test_runtime_dict(self):
        """Owner-control fields are removed, owner-looking data keys are kept."""
        config = ContainerConfig.model_validate({
            "name": "web",
            "image": "nginx",
            "labels": {"iob_backup": "iob_data"},
            "mounts": [{"source": "iob_data", "target": "/data", "iob_backup": True}],
        })

        data = config.runtime_dict()

        assert "iob_enabled" not in data
        assert data["labels"] == {"iob_backup": "iob_data"}
        assert data["mounts"] == [{"type": "volume", "source": "iob_data", "target": "/data"}]


class TestStripOwnerFields:
    """Test strip_owner_fields."""

    def test_nested(self):
        """Prefixed keys are removed at every level except free-form maps."""
        data = {
            "iob_enabled": True,
            "mounts": [{"target": "/a", "iob_copy_volume": "./seed"}],
            "environment": {"iob_token": "x"},
        }
        assert strip_owner_fields(data) == {
            "mounts": [{"target": "/a"}],
            "environment": {"iob_token": "x"},
        }


class TestRuntimeRecords:
    """Test runtime record helpers."""

    def test_running_states(self):
        """Running and restarting count as running."""
        assert ContainerInfo(id="1", name="a", status="running").is_running
        assert ContainerInfo(id="1", name="a", status="restarting").is_running
        assert not ContainerInfo(id="1", name="a", status="exited").is_running

    def test_image_reference(self):
        """References join repository and tag."""
        assert ImageInfo(repository="nginx", id="sha256:1").reference == "nginx:latest"
