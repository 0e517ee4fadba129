"""
Resource provisioning operations behind the console endpoints.

Each operation validates its required fields before touching the network,
then issues one call through OpenStackClient and returns the upstream JSON
unchanged. Multi-step network creation runs as a ProvisioningPipeline.
"""

from __future__ import annotations

import base64
import logging
import re
import threading
from typing import Any, Dict, Iterable, List, Optional

from errors import NotFoundError, ValidationError
from keystone_session import get_session_manager
from openstack_client import OpenStackClient
from pipeline import PipelineStep, ProvisioningPipeline, FailureHook, log_failure, rollback_completed

logger = logging.getLogger("osconsole.provisioning")

UUID_RE = re.compile(r"^[0-9a-fA-F-]{36}$")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def _missing(value: Any) -> bool:
    return value is None or value == "" or value == []


def require(body: Dict[str, Any], key: str, label: Optional[str] = None) -> Any:
    value = body.get(key)
    if _missing(value):
        raise ValidationError(key, f"{label or key} is required")
    return value


def resolve_by_name(items: Iterable[Dict[str, Any]], name: str, kind: str) -> str:
    """Linear scan for the first item called ``name``; returns its id."""
    for item in items:
        if item.get("name") == name:
            return item["id"]
    raise NotFoundError(f"{kind} not found: {name}")


def normalize_names(names: Any) -> List[str]:
    if _missing(names):
        return []
    if isinstance(names, str):
        return [names]
    return [str(n) for n in names]


def resolve_security_group_ids(groups: Iterable[Dict[str, Any]], names: List[str]) -> List[str]:
    """
    Map security group names to ids. Values that already look like UUIDs are
    kept as-is. The result is de-duplicated in first-seen order.
    """
    if not names:
        raise ValidationError("sg_names", "Security group names array is required")
    groups = list(groups)
    ids: List[str] = []
    for name in names:
        sg_id = name if UUID_RE.match(name) else resolve_by_name(groups, name, "Security group")
        if sg_id not in ids:
            ids.append(sg_id)
    return ids


def build_fixed_ips(
    fixed_ips: Any,
    subnet_id: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Build the Neutron ``fixed_ips`` list for a port."""
    if isinstance(fixed_ips, list) and fixed_ips:
        out = []
        for ip in fixed_ips:
            if not isinstance(ip, dict) or _missing(ip.get("subnet_id")):
                raise ValidationError("fixed_ips[].subnet_id")
            entry = {"subnet_id": ip["subnet_id"]}
            if ip.get("ip_address"):
                entry["ip_address"] = ip["ip_address"]
            out.append(entry)
        return out
    if subnet_id:
        entry = {"subnet_id": subnet_id}
        if ip_address:
            entry["ip_address"] = ip_address
        return [entry]
    return []


def _as_refs(values: Any, key: str) -> Any:
    # Nova wants [{"name": ...}] / [{"uuid": ...}]; accept bare strings too
    if not isinstance(values, list):
        return values
    return [{key: v} if isinstance(v, str) else v for v in values]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ProvisioningService:
    def __init__(self, client: OpenStackClient) -> None:
        self.client = client
        self.settings = client.settings
        # Default network for subnet creation when the request omits it
        self.last_network_id: Optional[str] = None

    # ---------------------------
    # Neutron
    # ---------------------------
    def create_network(self, body: Dict[str, Any]) -> Dict[str, Any]:
        name = require(body, "name", "Network name")
        admin_state_up = body.get("admin_state_up", True)

        resp = self.client.create_network({"name": name, "admin_state_up": admin_state_up})
        self.last_network_id = (resp.get("network") or {}).get("id") or None
        logger.info("Created network %s id=%s", name, self.last_network_id)
        return resp

    def create_subnet(self, body: Dict[str, Any]) -> Dict[str, Any]:
        name = require(body, "name", "Subnet name")
        cidr = require(body, "cidr", "CIDR")
        network_id = body.get("network_id") or self.last_network_id
        if _missing(network_id):
            raise ValidationError("network_id", "Network ID is required")

        resp = self.client.create_subnet({
            "name": name,
            "cidr": cidr,
            "ip_version": body.get("ip_version") or 4,
            "network_id": network_id,
        })
        logger.info("Created subnet %s (%s) on network %s", name, cidr, network_id)
        return resp

    def security_group_ids(self, names: List[str]) -> List[str]:
        if not names:
            raise ValidationError("sg_names", "Security group names array is required")
        if all(UUID_RE.match(n) for n in names):
            return resolve_security_group_ids([], names)
        groups = self.client.list_security_groups().get("security_groups", [])
        return resolve_security_group_ids(groups, names)

    def create_port(self, body: Dict[str, Any]) -> Dict[str, Any]:
        network_id = require(body, "network_id", "Network ID")
        fixed_ips = build_fixed_ips(body.get("fixed_ips"), body.get("subnet_id"), body.get("ip_address"))
        port_security_enabled = bool(body.get("port_security_enabled", False))
        names = normalize_names(body.get("sg_names"))

        port: Dict[str, Any] = {
            "admin_state_up": body.get("admin_state_up", True),
            "port_security_enabled": port_security_enabled,
            "network_id": network_id,
        }
        # Security groups only apply when port security is on
        if port_security_enabled and names:
            port["security_groups"] = self.security_group_ids(names)
        if fixed_ips:
            port["fixed_ips"] = fixed_ips

        resp = self.client.create_port(port)
        logger.info("Created port id=%s on network %s", (resp.get("port") or {}).get("id"), network_id)
        return resp

    def list_security_groups(self) -> Dict[str, Any]:
        return self.client.list_security_groups()

    def create_network_stack(self, body: Dict[str, Any], on_failure: Optional[FailureHook] = None) -> Dict[str, Any]:
        """Create network -> subnet -> port, each step feeding the next."""
        network = body.get("network") or {}
        subnet = body.get("subnet") or {}
        port = body.get("port") or {}
        require(network, "name", "network.name")
        require(subnet, "name", "subnet.name")
        require(subnet, "cidr", "subnet.cidr")
        if any(not isinstance(ip, dict) for ip in port.get("fixed_ips") or []):
            raise ValidationError("port.fixed_ips", "port.fixed_ips entries must be objects")
        if on_failure is None:
            on_failure = rollback_completed if self.settings.rollback_on_failure else log_failure

        def _network(ctx: Dict[str, Any]) -> Dict[str, Any]:
            resp = self.client.create_network({"name": network["name"], "admin_state_up": True})
            net = resp.get("network") or {}
            if net.get("id"):
                self.last_network_id = net["id"]
            return net

        def _subnet(ctx: Dict[str, Any]) -> Dict[str, Any]:
            resp = self.client.create_subnet({
                "name": subnet["name"],
                "cidr": subnet["cidr"],
                "ip_version": subnet.get("ip_version") or 4,
                "network_id": ctx["ids"]["network_id"],
            })
            return resp.get("subnet") or {}

        def _port(ctx: Dict[str, Any]) -> Dict[str, Any]:
            subnet_id = ctx["ids"]["subnet_id"]
            requested = port.get("fixed_ips")
            fixed_ips = []
            if isinstance(requested, list) and requested:
                # Entries without a subnet land on the subnet just created
                for ip in requested:
                    entry = {"subnet_id": ip.get("subnet_id") or subnet_id}
                    if ip.get("ip_address"):
                        entry["ip_address"] = ip["ip_address"]
                    fixed_ips.append(entry)
            else:
                fixed_ips = [{"subnet_id": subnet_id}]
            resp = self.client.create_port({
                "admin_state_up": True,
                "port_security_enabled": False,
                "security_groups": [],
                "network_id": ctx["ids"]["network_id"],
                "fixed_ips": fixed_ips,
            })
            return resp.get("port") or {}

        pipeline = ProvisioningPipeline(
            steps=[
                PipelineStep("network", _network, lambda r: self.client.delete_network(r["id"])),
                PipelineStep("subnet", _subnet, lambda r: self.client.delete_subnet(r["id"])),
                PipelineStep("port", _port, lambda r: self.client.delete_port(r["id"])),
            ],
            on_failure=on_failure,
        )
        ctx = pipeline.run()
        logger.info("Created network stack ids=%s", ctx["ids"])
        return {
            "network": ctx["network"],
            "subnet": ctx["subnet"],
            "port": ctx["port"],
            "ids": ctx["ids"],
        }

    # ---------------------------
    # Glance / Nova
    # ---------------------------
    def list_images(self, limit: Optional[int] = 50, name: Optional[str] = None,
                    visibility: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if limit:
            params["limit"] = limit
        if name:
            params["name"] = name
        if visibility:
            params["visibility"] = visibility
        return self.client.list_images(params)

    def list_flavors(self) -> Dict[str, Any]:
        return self.client.list_flavors()

    def list_keypairs(self) -> Dict[str, Any]:
        return self.client.list_keypairs()

    def compute_options(self) -> Dict[str, Any]:
        """Trimmed images and flavors for the instance form."""
        images = self.client.list_images({"limit": 200}).get("images", [])
        flavors = self.client.list_flavors(detail=True).get("flavors", [])
        return {
            "images": [
                {k: img.get(k) for k in ("id", "name", "visibility", "status")} for img in images
            ],
            "flavors": [
                {k: fl.get(k) for k in ("id", "name", "vcpus", "ram", "disk")} for fl in flavors
            ],
        }

    def resolve_image_id(self, image_ref: Optional[str] = None, image_name: Optional[str] = None) -> str:
        if image_ref:
            return image_ref
        if not image_name:
            raise ValidationError("imageRef", "imageName or imageRef is required")
        images = self.client.list_images({"name": image_name}).get("images", [])
        return resolve_by_name(images, image_name, "Image")

    def resolve_flavor_id(self, flavor_ref: Optional[str] = None, flavor_name: Optional[str] = None) -> str:
        if flavor_ref:
            return flavor_ref
        if not flavor_name:
            raise ValidationError("flavorRef", "flavorName or flavorRef is required")
        flavors = self.client.list_flavors(detail=True).get("flavors", [])
        return resolve_by_name(flavors, flavor_name, "Flavor")

    def _user_data(self, server: Dict[str, Any]) -> Optional[str]:
        if server.get("user_data"):
            return server["user_data"]
        if not self.settings.server_cloud_config:
            return None
        return base64.b64encode(self.settings.server_cloud_config.encode("utf-8")).decode("ascii")

    def create_instance(self, body: Dict[str, Any]) -> Dict[str, Any]:
        server = body.get("server") or {}
        name = require(server, "name", "server.name")
        if not server.get("imageRef") and not server.get("imageName"):
            raise ValidationError("imageRef", "imageName or imageRef is required")
        if not server.get("flavorRef") and not server.get("flavorName"):
            raise ValidationError("flavorRef", "flavorName or flavorRef is required")

        image_id = self.resolve_image_id(server.get("imageRef"), server.get("imageName"))
        flavor_id = self.resolve_flavor_id(server.get("flavorRef"), server.get("flavorName"))

        payload: Dict[str, Any] = {
            "name": name,
            "imageRef": image_id,
            "flavorRef": flavor_id,
        }
        if server.get("security_groups") is not None:
            payload["security_groups"] = _as_refs(server["security_groups"], "name")
        if server.get("networks") is not None:
            payload["networks"] = _as_refs(server["networks"], "uuid")
        if server.get("key_name"):
            payload["key_name"] = server["key_name"]
        user_data = self._user_data(server)
        if user_data:
            payload["user_data"] = user_data

        resp = self.client.create_server({"server": payload})
        logger.info("Created server %s id=%s", name, (resp.get("server") or {}).get("id"))
        return resp


# A single provisioning service for the FastAPI app
_service: Optional[ProvisioningService] = None
_service_lock = threading.Lock()


def get_provisioning() -> ProvisioningService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = ProvisioningService(OpenStackClient(get_session_manager()))
    return _service
