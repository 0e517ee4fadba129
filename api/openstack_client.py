import logging
from typing import Any, Dict, Optional

import requests

from errors import ConsoleError, NetworkError, UpstreamError
from keystone_session import Session, SessionManager
from settings import ConsoleSettings

logger = logging.getLogger("osconsole.client")

# Version prefix appended to catalog URLs that are unversioned
_SERVICE_PREFIX = {
    "network": "/v2.0",
    "image": "/v2",
    "compute": "",
}


class OpenStackClient:
    """
    Thin REST wrapper over Neutron, Glance and Nova.

    Every call goes through SessionManager.ensure_valid(), so the token it
    sends is never inside the expiry skew window.
    """

    def __init__(
        self,
        sessions: SessionManager,
        settings: Optional[ConsoleSettings] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.sessions = sessions
        self.settings = settings or sessions.settings
        self.http = http or requests.Session()
        self.http.verify = self.settings.verify_tls

    # ---------------------------
    # Endpoint discovery
    # ---------------------------
    def _override(self, service_type: str) -> Optional[str]:
        return {
            "network": self.settings.network_url,
            "image": self.settings.image_url,
            "compute": self.settings.compute_url,
        }.get(service_type)

    def endpoint(self, session: Session, service_type: str) -> str:
        base = self._override(service_type) or session.endpoint(service_type, self.settings.interface)
        if not base:
            raise ConsoleError(f"No {self.settings.interface} endpoint for {service_type}")
        prefix = _SERVICE_PREFIX.get(service_type, "")
        if prefix and not base.endswith(prefix):
            base = f"{base}{prefix}"
        return base

    # ---------------------------
    # HTTP
    # ---------------------------
    @staticmethod
    def _decode(r: requests.Response) -> Any:
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError:
            return r.text

    def _request(
        self,
        service_type: str,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = self.sessions.ensure_valid()
        url = f"{self.endpoint(session, service_type)}{path}"
        headers = {"X-Auth-Token": session.token, "Accept": "application/json"}
        if json is not None:
            headers["Content-Type"] = "application/json"

        timeout = self.settings.request_timeout
        try:
            r = self.http.request(method, url, headers=headers, params=params, json=json, timeout=timeout)
        except requests.Timeout as e:
            logger.error("%s %s timed out after %ss", method, url, timeout)
            raise NetworkError(f"{method} {url} timed out after {timeout}s") from e
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, url, e)
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if not 200 <= r.status_code < 300:
            body = self._decode(r)
            logger.warning("%s %s returned HTTP %s", method, url, r.status_code)
            raise UpstreamError(r.status_code, body, f"{method} {path} returned HTTP {r.status_code}")

        data = self._decode(r)
        return data if isinstance(data, dict) else {}

    def _delete(self, service_type: str, path: str) -> None:
        try:
            self._request(service_type, "DELETE", path)
        except UpstreamError as e:
            # 404 -> already deleted, treat as success
            if e.status != 404:
                raise

    # ---------------------------
    # Networks (Neutron)
    # ---------------------------
    def create_network(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("network", "POST", "/networks", json={"network": body})

    def delete_network(self, network_id: str) -> None:
        self._delete("network", f"/networks/{network_id}")

    def create_subnet(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("network", "POST", "/subnets", json={"subnet": body})

    def delete_subnet(self, subnet_id: str) -> None:
        self._delete("network", f"/subnets/{subnet_id}")

    def create_port(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("network", "POST", "/ports", json={"port": body})

    def delete_port(self, port_id: str) -> None:
        self._delete("network", f"/ports/{port_id}")

    def list_security_groups(self) -> Dict[str, Any]:
        return self._request("network", "GET", "/security-groups")

    # ---------------------------
    # Images (Glance)
    # ---------------------------
    def list_images(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("image", "GET", "/images", params=params or None)

    # ---------------------------
    # Compute (Nova)
    # ---------------------------
    def list_flavors(self, detail: bool = False) -> Dict[str, Any]:
        path = "/flavors/detail" if detail else "/flavors"
        return self._request("compute", "GET", path)

    def list_keypairs(self) -> Dict[str, Any]:
        return self._request("compute", "GET", "/os-keypairs")

    def create_server(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("compute", "POST", "/servers", json=payload)
