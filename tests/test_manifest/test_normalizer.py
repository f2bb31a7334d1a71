"""Tests for manifest normalization."""

import pytest

from berth.errors import ManifestError, ParseError
from berth.manifest.normalizer import (
    load_manifest,
    normalize_healthcheck,
    normalize_string_map,
)
from berth.models.manifest import ComposePort, ComposeVolume


MANIFEST = """
version: "3.8"
x-common: &common
  restart: unless-stopped
services:
  influx:
    image: influxdb:2
    environment:
      - DOCKER_INFLUXDB_INIT_MODE=setup
      - EMPTY
    labels:
      - iobEnabled=true
      - com.example=x
    ports:
      - "8086:8086"
      - target: 9000
        published: 9001
    volumes:
      - flux_data:/var/lib/influxdb2
      - type: bind
        source: ./conf
        target: /etc/influxdb2
        read_only: true
    depends_on: db
    healthcheck:
      test: curl -f http://localhost:8086/health
      interval: 30s
      retries: 3
    x-note: keep me
  db:
    image: postgres:16
    environment:
      POSTGRES_DB: flux
      PORT: 5432
      DEBUG: false
    build:
      context: ./db
      args:
        FLAG: true
networks:
  backend:
volumes:
  flux_data: null
"""


class TestLoadManifest:
    """Test whole-document loading."""

    def test_loads_yaml_text(self):
        """Text input is parsed and every service normalized."""
        manifest = load_manifest(MANIFEST)

        assert manifest.version == "3.8"
        assert list(manifest.services) == ["influx", "db"]
        influx = manifest.services["influx"]
        assert influx.environment == {"DOCKER_INFLUXDB_INIT_MODE": "setup", "EMPTY": ""}
        assert influx.depends_on == ["db"]

    def test_labels_keep_list_form(self):
        """A list of labels stays a list."""
        manifest = load_manifest(MANIFEST)
        assert manifest.services["influx"].labels == ["iobEnabled=true", "com.example=x"]

    def test_ports_and_volumes(self):
        """Shorthand strings pass through, long forms are validated."""
        influx = load_manifest(MANIFEST).services["influx"]

        assert influx.ports[0] == "8086:8086"
        assert isinstance(influx.ports[1], ComposePort)
        assert influx.ports[1].target == 9000
        assert influx.ports[1].protocol == "tcp"

        assert influx.volumes[0] == "flux_data:/var/lib/influxdb2"
        bind = influx.volumes[1]
        assert isinstance(bind, ComposeVolume)
        assert bind.type == "bind"
        assert bind.read_only is True
        assert bind.tmpfs is None

    def test_map_values_are_stringified(self):
        """Mapping environments get string values."""
        db = load_manifest(MANIFEST).services["db"]
        assert db.environment == {"POSTGRES_DB": "flux", "PORT": "5432", "DEBUG": "false"}
        assert db.build.context == "./db"
        assert db.build.args == {"FLAG": "1"}

    def test_healthcheck(self):
        """A test string is kept, durations are stringified."""
        check = load_manifest(MANIFEST).services["influx"].healthcheck
        assert check.test == "curl -f http://localhost:8086/health"
        assert check.interval == "30s"
        assert check.retries == 3

    def test_extensions_preserved(self):
        """x- keys survive at service and document level."""
        manifest = load_manifest(MANIFEST)
        assert manifest.extensions["x-common"] == {"restart": "unless-stopped"}
        assert manifest.services["influx"].extensions == {"x-note": "keep me"}

    def test_top_level_resources_pass_through(self):
        """Entries with null bodies are meaningful and kept."""
        manifest = load_manifest(MANIFEST)
        assert manifest.networks == {"backend": None}
        assert manifest.volumes == {"flux_data": None}

    def test_accepts_parsed_mapping(self):
        """Already-parsed documents are accepted."""
        manifest = load_manifest({"services": {"web": {"image": "nginx"}}})
        assert manifest.services["web"].image == "nginx"

    def test_docker_api_key(self):
        """The top-level iobDockerApi key is kept."""
        manifest = load_manifest({
            "iobDockerApi": {"host": "10.0.0.5", "port": 2376},
            "services": {"web": {"image": "nginx"}},
        })
        assert manifest.docker_api == {"host": "10.0.0.5", "port": 2376}

    def test_empty_values_are_pruned(self):
        """The deep clean removes empty placeholders."""
        manifest = load_manifest({
            "services": {"web": {"image": "nginx", "environment": {}, "labels": [], "cap_add": []}}
        })
        web = manifest.services["web"]
        assert web.environment is None
        assert web.labels is None
        assert web.cap_add is None


class TestManifestErrors:
    """Test malformed documents."""

    def test_missing_services(self):
        """A document without services is rejected."""
        with pytest.raises(ParseError, match="missing `services`"):
            load_manifest({"version": "3"})

    def test_services_not_mapping(self):
        """Services must be a mapping."""
        with pytest.raises(ParseError, match="must be an object"):
            load_manifest({"services": ["web"]})

    def test_service_not_mapping(self):
        """Each service must be a mapping."""
        with pytest.raises(ParseError, match="service web must be an object"):
            load_manifest({"services": {"web": "nginx"}})

    def test_unparseable_text(self):
        """Broken YAML is a parse error."""
        with pytest.raises(ParseError):
            load_manifest("services: [unclosed")

    def test_scalar_document(self):
        """A scalar document cannot be a manifest."""
        with pytest.raises(ManifestError):
            load_manifest("just text")

    def test_port_target_must_be_numeric(self):
        """Long-form ports need a numeric target."""
        with pytest.raises(ParseError, match="port target"):
            load_manifest({"services": {"web": {"image": "nginx", "ports": [{"target": "http"}]}}})


class TestHelpers:
    """Test normalization helpers."""

    def test_string_map_later_entries_win(self):
        """Duplicate keys keep the last value."""
        assert normalize_string_map(["A=1", "A=2", "B=x=y"]) == {"A": "2", "B": "x=y"}

    def test_string_map_rejects_scalars(self):
        """Scalars are not maps."""
        with pytest.raises(ParseError):
            normalize_string_map("A=1")

    def test_healthcheck_requires_test(self):
        """Without a test there is no healthcheck."""
        assert normalize_healthcheck({"interval": "10s"}) is None

    def test_healthcheck_test_default(self):
        """A test that is neither list nor string becomes NONE."""
        assert normalize_healthcheck({"test": None})["test"] == ["NONE"]
