"""
Console API Routes
==================
HTTP surface used by the console frontend. Every handler except /signin
works against the shared Keystone session; errors raised below are turned
into JSON responses by the exception handlers registered in main.py.

Handlers are plain functions, so FastAPI runs them on its threadpool and the
blocking upstream calls never stall the event loop.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, validator
from slowapi import Limiter
from slowapi.util import get_remote_address

from errors import ValidationError
from keystone_session import SessionManager, get_session_manager
from provisioning import ProvisioningService, get_provisioning

logger = logging.getLogger("osconsole.routes")

router = APIRouter(tags=["console"])

limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------
# Required fields are checked by the provisioning layer (ValidationError,
# HTTP 400), not by pydantic.

class SignInRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class CreateNetworkRequest(BaseModel):
    name: Optional[str] = None
    admin_state_up: Optional[bool] = None


class CreateSubnetRequest(BaseModel):
    name: Optional[str] = None
    cidr: Optional[str] = None
    ip_version: Optional[int] = None
    network_id: Optional[str] = None


class CreatePortRequest(BaseModel):
    network_id: Optional[str] = None
    sg_names: Optional[List[str]] = None
    fixed_ips: Optional[List[Dict[str, Any]]] = None
    subnet_id: Optional[str] = None
    ip_address: Optional[str] = None
    port_security_enabled: Optional[bool] = None
    admin_state_up: Optional[bool] = None

    @validator("sg_names", pre=True)
    def single_name_to_list(cls, v):
        if isinstance(v, str):
            return [v] if v else []
        return v


class NetworkStackRequest(BaseModel):
    network: Optional[Dict[str, Any]] = None
    subnet: Optional[Dict[str, Any]] = None
    port: Optional[Dict[str, Any]] = None


class CreateServerRequest(BaseModel):
    server: Optional[Dict[str, Any]] = None


def _payload(body: BaseModel) -> Dict[str, Any]:
    return body.dict(exclude_none=True)


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------

@router.post("/signin")
@limiter.limit("10/minute")
def signin(
    request: Request,
    body: SignInRequest,
    sessions: SessionManager = Depends(get_session_manager),
):
    """Exchange credentials for a project-scoped token and cache it."""
    if not body.username:
        raise ValidationError("username")
    if not body.password:
        raise ValidationError("password")
    session = sessions.login(body.username, body.password)
    logger.info("Signed in as %s", body.username)
    return session.to_signin_payload()


# ---------------------------------------------------------------------------
# Networking
# ---------------------------------------------------------------------------

@router.post("/networks")
def create_network(body: CreateNetworkRequest, svc: ProvisioningService = Depends(get_provisioning)):
    return svc.create_network(_payload(body))


@router.post("/subnets")
def create_subnet(body: CreateSubnetRequest, svc: ProvisioningService = Depends(get_provisioning)):
    return svc.create_subnet(_payload(body))


@router.post("/ports")
def create_port(body: CreatePortRequest, svc: ProvisioningService = Depends(get_provisioning)):
    return svc.create_port(_payload(body))


@router.post("/network/full")
def create_network_stack(body: NetworkStackRequest, svc: ProvisioningService = Depends(get_provisioning)):
    """Create a network, a subnet on it and a port on that subnet."""
    return svc.create_network_stack(_payload(body))


@router.get("/security-groups")
def list_security_groups(svc: ProvisioningService = Depends(get_provisioning)):
    return svc.list_security_groups()


# ---------------------------------------------------------------------------
# Images / Compute
# ---------------------------------------------------------------------------

@router.get("/images")
def list_images(
    limit: Optional[int] = Query(50, ge=1),
    name: Optional[str] = None,
    visibility: Optional[str] = None,
    svc: ProvisioningService = Depends(get_provisioning),
):
    return svc.list_images(limit=limit, name=name, visibility=visibility)


@router.get("/flavors")
def list_flavors(svc: ProvisioningService = Depends(get_provisioning)):
    return svc.list_flavors()


@router.get("/keypairs")
def list_keypairs(svc: ProvisioningService = Depends(get_provisioning)):
    return svc.list_keypairs()


@router.get("/compute/options")
def compute_options(svc: ProvisioningService = Depends(get_provisioning)):
    """Images and flavors trimmed down for the instance form."""
    return svc.compute_options()


@router.post("/servers")
def create_server(body: CreateServerRequest, svc: ProvisioningService = Depends(get_provisioning)):
    return svc.create_instance(_payload(body))
