"""Random but realistic payloads for generated objects and node annotations.

All randomness comes from the ``random.Random`` handed to ``SyntheticContent``
so a seeded generator reproduces names, payloads and annotation values.
"""

from __future__ import annotations

import base64
import json
import random
import string
from typing import Sequence

import yaml

NAME_ALPHABET = string.ascii_lowercase + string.digits

LOG_LEVELS: Sequence[str] = ("INFO", "DEBUG", "WARN")
ENVIRONMENTS: Sequence[str] = ("production", "staging", "development")
TOPOLOGY_VERSIONS: Sequence[str] = ("2.0", "2.1", "2.2")
MCD_STATES: Sequence[str] = ("Done", "Working", "Degraded")
MCD_REASONS: Sequence[str] = ("Updating", "Rebooting", "ConfigChange")


class SyntheticContent:
    """Generate payloads from a seedable random source."""

    def __init__(self, rng: random.Random) -> None:
        self.random = rng

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------
    def random_string(self, length: int) -> str:
        return "".join(self.random.choice(NAME_ALPHABET) for _ in range(length))

    def random_hash(self) -> str:
        return self.random_string(32)

    def random_uuid(self) -> str:
        return "%08x-%04x-%04x-%04x-%012x" % (
            self.random.getrandbits(32),
            self.random.getrandbits(16),
            self.random.getrandbits(16),
            self.random.getrandbits(16),
            self.random.getrandbits(48),
        )

    def password(self, length: int = 32) -> str:
        raw = self.random.randbytes(length)
        return base64.urlsafe_b64encode(raw).decode("ascii")[:length]

    def api_key(self) -> str:
        return base64.urlsafe_b64encode(self.random.randbytes(32)).decode("ascii")

    # ------------------------------------------------------------------
    # ConfigMap / Secret payloads
    # ------------------------------------------------------------------
    def app_properties(self) -> str:
        lines = [
            "# Application Configuration",
            "app.name=load-generator-app",
            f"app.version=1.0.{self.random.randint(0, 99)}",
            "app.debug=false",
            "app.port=8080",
            f"app.threads={self.random.randint(1, 10)}",
            "app.memory.max=512m",
            "database.url=jdbc:postgresql://db:5432/app",
            f"database.pool.size={self.random.randint(5, 24)}",
        ]
        return "\n".join(lines)

    def config_yaml(self) -> str:
        document = {
            "apiVersion": "v1",
            "kind": "Config",
            "metadata": {"name": "app-config"},
            "spec": {
                "replicas": self.random.randint(1, 5),
                "resources": {
                    "requests": {
                        "cpu": f"{self.random.randint(100, 599)}m",
                        "memory": f"{self.random.randint(128, 639)}Mi",
                    }
                },
                "environment": [
                    {"name": "LOG_LEVEL", "value": self.random.choice(LOG_LEVELS)},
                    {"name": "INSTANCE_ID", "value": self.random_string(8)},
                ],
            },
        }
        return yaml.safe_dump(document, sort_keys=False)

    def settings_json(self) -> str:
        document = {
            "app": {
                "name": "load-generator",
                "version": f"1.0.{self.random.randint(0, 99)}",
                "environment": self.random.choice(ENVIRONMENTS),
            },
            "features": {
                "enableMetrics": True,
                "enableTracing": self.random.random() < 0.5,
                "cacheSize": self.random.randint(100, 1099),
            },
            "networking": {
                "timeout": self.random.randint(5, 34),
                "retries": self.random.randint(1, 5),
            },
        }
        return json.dumps(document, indent=2)

    def secret_config(self) -> str:
        document = {
            "apiVersion": "v1",
            "secret": {
                "database": {
                    "username": f"user_{self.random_string(6)}",
                    "password": self.password(16),
                    "host": "db.internal",
                    "port": 5432,
                },
                "api": {
                    "key": self.api_key(),
                    "endpoint": "https://api.example.com",
                },
            },
        }
        return yaml.safe_dump(document, sort_keys=False)

    # ------------------------------------------------------------------
    # Node annotation values
    # ------------------------------------------------------------------
    def ip(self) -> str:
        return f"10.0.{self.random.randint(0, 255)}.{self.random.randint(0, 255)}"

    def subnet(self) -> str:
        return f"10.{128 + self.random.randint(0, 127)}.{self.random.randint(0, 255) & 0xFE}.0"

    def transit_ip(self) -> str:
        return f"100.88.0.{self.random.randint(0, 255)}"

    def mac_address(self) -> str:
        return ":".join(f"{self.random.randint(0, 255):02x}" for _ in range(6))

    def l3_gateway_config(self, node_name: str) -> str:
        ip = self.ip()
        config = {
            "default": {
                "mode": "shared",
                "bridge-id": "br-ex",
                "interface-id": f"br-ex_{node_name}",
                "mac-address": self.mac_address(),
                "ip-addresses": [f"{ip}/19"],
                "ip-address": f"{ip}/19",
                "next-hops": ["10.0.0.1"],
                "next-hop": "10.0.0.1",
                "node-port-enable": "true",
                "vlan-id": "0",
            }
        }
        return json.dumps(config, separators=(",", ":"))

    def egress_ip_config(self) -> str:
        config = [
            {
                "interface": f"eni-{self.random.getrandbits(48):012x}",
                "ifaddr": {"ipv4": f"{self.ip()}/19"},
                "capacity": {
                    "ipv4": 10 + self.random.randint(0, 19),
                    "ipv6": 10 + self.random.randint(0, 19),
                },
            }
        ]
        return json.dumps(config, separators=(",", ":"))

    def csi_node_id(self) -> str:
        return json.dumps({"ebs.csi.aws.com": f"i-{self.random.getrandbits(64):016x}"}, separators=(",", ":"))

    def machine_reference(self, node_name: str) -> str:
        suffix = node_name[-6:]
        return f"openshift-machine-api/ci-op-{self.random_string(6)}-worker-us-west-2a-{suffix}"

    def rendered_config(self, prefix: str = "rendered-worker") -> str:
        return f"{prefix}-{self.random_hash()}"

    def mcd_state(self) -> str:
        return self.random.choice(MCD_STATES)

    def mcd_reason(self) -> str:
        if self.random.random() < 0.8:
            return ""
        return self.random.choice(MCD_REASONS)

    def topology_version(self) -> str:
        return self.random.choice(TOPOLOGY_VERSIONS)

    def resource_version(self) -> str:
        return str(2_900_000 + self.random.randint(0, 99_999))


__all__ = ["NAME_ALPHABET", "SyntheticContent"]
