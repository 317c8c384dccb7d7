import logging
import os
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from lanbeacon.errors import ConfigError

logger = logging.getLogger("lanbeacon")

VERSION = "0.1.0"

DEFAULT_DISCOVERY_PORT = 8888
DEFAULT_INTERVAL = 30.0
DEMO_SHARED_KEY = "SECRETKEY123"

# Environment configuration
DISCOVERY_ENABLED = os.environ.get("DISCOVERY_ENABLED", "true").lower() == "true"
DISCOVERY_PORT = os.environ.get("DISCOVERY_PORT", str(DEFAULT_DISCOVERY_PORT))
DISCOVERY_SHARED_KEY = os.environ.get("DISCOVERY_SHARED_KEY")
DISCOVERY_SERVICE_NAME = os.environ.get("DISCOVERY_SERVICE_NAME", "lanbeacon-server")
DISCOVERY_MODE = os.environ.get("DISCOVERY_MODE", "periodic")
DISCOVERY_INTERVAL = os.environ.get("DISCOVERY_INTERVAL", str(DEFAULT_INTERVAL))
DISCOVERY_COUNT = os.environ.get("DISCOVERY_COUNT", "5")
DISCOVERY_BROADCAST_ADDRESS = os.environ.get("DISCOVERY_BROADCAST_ADDRESS") or None
DISCOVERY_ADVERTISE_IP = os.environ.get("DISCOVERY_ADVERTISE_IP") or None
DISCOVERY_RESPOND_TO_REQUESTS = os.environ.get("DISCOVERY_RESPOND_TO_REQUESTS", "false").lower() == "true"
ALLOW_INSECURE_DEFAULT = os.environ.get("ALLOW_INSECURE_DEFAULT", "true").lower() == "true"
HTTP_PORT = int(os.environ.get("HTTP_PORT", "3000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info")


class Periodic(BaseModel):
    """Broadcast every ``interval`` seconds until stopped."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["periodic"] = "periodic"
    interval: float = Field(DEFAULT_INTERVAL, gt=0)


class OnRequest(BaseModel):
    """Never broadcast; answer each discovery request with a unicast announcement."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["on_request"] = "on_request"


class Limited(BaseModel):
    """Broadcast every ``interval`` seconds, ``count`` times in total."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["limited"] = "limited"
    interval: float = Field(DEFAULT_INTERVAL, gt=0)
    count: int = Field(..., ge=1)


AnnouncementMode = Annotated[Union[Periodic, OnRequest, Limited], Field(discriminator="kind")]


def periodic(interval: float = DEFAULT_INTERVAL) -> Periodic:
    return Periodic(interval=interval)


def on_request() -> OnRequest:
    return OnRequest()


def limited(interval: float, count: int) -> Limited:
    return Limited(interval=interval, count=count)


class SessionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    shared_key: str = Field(..., min_length=1)
    service_name: str
    mode: AnnouncementMode = Field(default_factory=Periodic)
    # UDP port announcements and requests travel on
    port: int = Field(DEFAULT_DISCOVERY_PORT, ge=1, le=65535)
    # Port of the hosting application, published in each announcement
    advertise_port: int = Field(..., ge=1, le=65535)
    advertise_ip: Optional[str] = None
    broadcast_address: Optional[str] = None
    bind_address: str = "0.0.0.0"
    respond_to_requests: bool = False
    version: Optional[str] = None
    capabilities: Optional[List[str]] = None

    @property
    def listens(self) -> bool:
        return isinstance(self.mode, OnRequest) or self.respond_to_requests

    @property
    def broadcasts(self) -> bool:
        return not isinstance(self.mode, OnRequest)


def _number(name: str, raw: str, cast):
    try:
        return cast(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def parse_mode(name: str, interval=DEFAULT_INTERVAL, count=None):
    """Build an AnnouncementMode from its textual name."""
    key = (name or "").strip().lower().replace("-", "_")
    try:
        if key == "periodic":
            return Periodic(interval=interval)
        if key in ("on_request", "onrequest"):
            return OnRequest()
        if key == "limited":
            if count is None:
                raise ConfigError("limited mode needs a count")
            return Limited(interval=interval, count=count)
    except ValidationError as e:
        raise ConfigError(f"Invalid {key} mode: {e}")
    raise ConfigError(f"Unknown announcement mode: {name!r}")


def get_shared_key() -> str:
    if DISCOVERY_SHARED_KEY:
        return DISCOVERY_SHARED_KEY

    if ALLOW_INSECURE_DEFAULT:
        logger.warning("!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!")
        logger.warning(f"WARNING: Using insecure default discovery key: '{DEMO_SHARED_KEY}'")
        logger.warning("Set DISCOVERY_SHARED_KEY to a private value")
        logger.warning("!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!")
        return DEMO_SHARED_KEY

    raise ConfigError(
        "No DISCOVERY_SHARED_KEY set. To use the demo key (NOT RECOMMENDED), set ALLOW_INSECURE_DEFAULT=true"
    )


def load_session_config(advertise_port: Optional[int] = None) -> SessionConfig:
    """SessionConfig from the environment, advertising ``advertise_port`` (default HTTP_PORT)."""
    mode = parse_mode(
        DISCOVERY_MODE,
        interval=_number("DISCOVERY_INTERVAL", DISCOVERY_INTERVAL, float),
        count=_number("DISCOVERY_COUNT", DISCOVERY_COUNT, int),
    )
    try:
        return SessionConfig(
            shared_key=get_shared_key(),
            service_name=DISCOVERY_SERVICE_NAME,
            mode=mode,
            port=_number("DISCOVERY_PORT", DISCOVERY_PORT, int),
            advertise_port=advertise_port or HTTP_PORT,
            advertise_ip=DISCOVERY_ADVERTISE_IP,
            broadcast_address=DISCOVERY_BROADCAST_ADDRESS,
            respond_to_requests=DISCOVERY_RESPOND_TO_REQUESTS,
            version=VERSION,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid discovery configuration: {e}")
