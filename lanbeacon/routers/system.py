from fastapi import APIRouter, HTTPException
import platform

from lanbeacon.errors import ResolutionError
from lanbeacon.services import network

router = APIRouter()

# Set by the application's startup hook when discovery is enabled
scheduler = None


@router.get("/network")
def get_network():
    interfaces = [
        {
            "name": itf.name,
            "ip": itf.ip,
            "netmask": itf.netmask,
            "broadcast": itf.broadcast,
        }
        for itf in network.list_ipv4_interfaces()
    ]

    try:
        itf = network.resolve_local_interface()
        resolved = {
            "interface": itf.name,
            "ip": itf.ip,
            "broadcast_target": itf.broadcast_target,
        }
        error = None
    except ResolutionError as e:
        resolved = None
        error = str(e)

    return {
        "hostname": platform.node(),
        "interfaces": interfaces,
        "resolved": resolved,
        "error": error,
    }


@router.get("/discovery")
def get_discovery_status():
    if scheduler is None:
        raise HTTPException(status_code=404, detail="Discovery is disabled")
    return scheduler.status()
