"""Tests for rebuilding configs from inspect data."""

from berth.providers.inspect import inspect_to_config


INSPECT = {
    "Id": "0123456789ab" + "c" * 52,
    "Name": "/iob_web",
    "Config": {
        "Image": "nginx:1.25",
        "Cmd": ["nginx", "-g", "daemon off;"],
        "Env": ["A=1", "EMPTY=", "URL=http://x?a=b"],
        "Labels": {"iobroker": "berth.0"},
        "User": "",
        "Tty": False,
        "Healthcheck": {"Test": ["CMD-SHELL", "true"], "Interval": 30_000_000_000, "Retries": 3},
        "StopSignal": "SIGINT",
        "StopTimeout": 15,
    },
    "HostConfig": {
        "PortBindings": {
            "80/tcp": [{"HostIp": "", "HostPort": "8080"}],
            "53/udp": [{"HostIp": "127.0.0.1", "HostPort": "5353"}],
        },
        "RestartPolicy": {"Name": "", "MaximumRetryCount": 0},
        "NetworkMode": "default",
        "LogConfig": {"Type": "json-file", "Config": {"max-size": "10m"}},
        "SecurityOpt": ["no-new-privileges", "label=disable"],
        "CapAdd": ["NET_ADMIN"],
        "NanoCpus": 500_000_000,
        "Memory": 0,
        "Tmpfs": {"/run": "size=1024"},
        "Devices": [{"PathOnHost": "/dev/ttyUSB0", "PathInContainer": "/dev/ttyUSB0",
                     "CgroupPermissions": "rwm"}],
        "ReadonlyRootfs": False,
    },
    "Mounts": [
        {"Type": "volume", "Name": "iob_data", "Source": "/var/lib/docker/volumes/iob_data/_data",
         "Destination": "/data", "RW": False},
        {"Type": "volume", "Name": "e" * 64, "Destination": "/cache", "RW": True},
        {"Type": "bind", "Source": "/srv/conf", "Destination": "/conf", "RW": True},
    ],
    "NetworkSettings": {"Networks": {
        "iob_backend": {"Aliases": ["iob_web", "0123456789ab", "web"],
                        "IPAMConfig": {"IPv4Address": "172.20.0.5"}},
    }},
}


class TestInspectToConfig:
    """Test inspect_to_config."""

    def test_basic_fields(self):
        """Names, image, command and environment are rebuilt."""
        config = inspect_to_config(INSPECT)

        assert config.name == "iob_web"
        assert config.image == "nginx:1.25"
        assert config.command == ["nginx", "-g", "daemon off;"]
        assert config.environment == {"A": "1", "URL": "http://x?a=b"}
        assert config.labels == {"iobroker": "berth.0"}
        assert config.user is None
        assert config.tty is False

    def test_ports_and_mounts(self):
        """Port bindings and named mounts are rebuilt; anonymous volumes are dropped."""
        config = inspect_to_config(INSPECT)

        assert {(p.container_port, p.host_port, p.host_ip, p.protocol) for p in config.ports} == {
            (80, 8080, None, "tcp"),
            (53, 5353, "127.0.0.1", "udp"),
        }
        assert [(m.type, m.source, m.target, m.read_only) for m in config.mounts] == [
            ("volume", "iob_data", "/data", True),
            ("bind", "/srv/conf", "/conf", False),
        ]
        assert config.tmpfs[0].target == "/run"
        assert config.devices[0].permissions == "rwm"

    def test_host_settings(self):
        """Restart, logging, security and resources are rebuilt."""
        config = inspect_to_config(INSPECT)

        assert config.restart.policy == "no"
        assert config.network_mode == "bridge"
        assert config.logging.options == {"max-size": "10m"}
        assert config.security.no_new_privileges is True
        assert config.security.security_opt == ["label=disable"]
        assert config.resources.cpus == 0.5
        assert config.resources.memory is None
        assert config.healthcheck.interval == 30000
        assert config.stop.grace_period_sec == 15

    def test_implicit_aliases_dropped(self):
        """Aliases the engine adds by itself are not reported."""
        config = inspect_to_config(INSPECT)

        network = config.networks[0]
        assert network.name == "iob_backend"
        assert network.aliases == ["web"]
        assert network.ipv4_address == "172.20.0.5"

    def test_minimal(self):
        """Sparse inspect data still produces a config."""
        config = inspect_to_config({"Name": "/x", "Config": {"Image": "busybox"}})
        assert config.name == "x"
        assert config.restart.policy == "no"
