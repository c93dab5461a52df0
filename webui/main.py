import re
import logging
import ipaddress
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from shared.errors import (
    CaretakerError, CredentialError, DomainNotFoundError, DuplicateRuleError,
    NotManagedError, RemoteError, UnsupportedBackendError,
)
from shared.k8s import ResourceGateway
from webui.grants import apply_request

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("caretaker-webui")
logger.setLevel(logging.INFO)


class _AccessLogFilter(logging.Filter):
    def filter(self, record):
        return "GET /healthz" not in record.getMessage()


logging.getLogger("uvicorn.access").addFilter(_AccessLogFilter())

# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------
_DOMAIN_RE = re.compile(r'^(?=.{1,253}$)[a-zA-Z0-9*]([a-zA-Z0-9\-]{0,62})(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,62}))*$')


def _valid_domain(s: str) -> bool:
    return bool(s and _DOMAIN_RE.match(s))


def _valid_range(s: str) -> bool:
    try:
        ipaddress.ip_network(s, strict=True)
    except ValueError:
        return False
    return "/" in s


class WhitelistRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: str
    # "ipaddress" is the field name older clients send.
    address: str = Field(alias="ipaddress")


_STATUS_BY_ERROR = [
    (DomainNotFoundError, 404),
    (UnsupportedBackendError, 422),
    (NotManagedError, 403),
    (DuplicateRuleError, 409),
    (CredentialError, 503),
    (RemoteError, 502),
]


def _status_for(err: CaretakerError) -> int:
    for kind, status in _STATUS_BY_ERROR:
        if isinstance(err, kind):
            return status
    return 500

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        app.state.gateway = ResourceGateway.from_environment()
        logger.info("🚀 caretaker webui started")
    except CredentialError as e:
        # Keep serving: requests get a 503 until the pod is restarted with credentials.
        app.state.gateway = None
        logger.error(f"💥 caretaker webui started without cluster access: {e}")
    yield


app = FastAPI(title="caretaker", docs_url=None, redoc_url=None, lifespan=lifespan)


def get_gateway(request: Request) -> ResourceGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise CredentialError("cluster client not initialised")
    return gateway


@app.exception_handler(CaretakerError)
async def _caretaker_error(request: Request, exc: CaretakerError):
    return JSONResponse({"ok": False, "error": str(exc)}, status_code=_status_for(exc))


def _describe_validation_error(err: dict) -> str:
    field = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
    return f"{field}: {err.get('msg', 'invalid')}"


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    problems = "; ".join(_describe_validation_error(err) for err in exc.errors())
    return JSONResponse({"ok": False, "error": f"Invalid request: {problems}"}, status_code=422)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.post("/")
def whitelist(body: WhitelistRequest, gateway: ResourceGateway = Depends(get_gateway)):
    received_at = datetime.now(timezone.utc).isoformat()
    logger.info(f"📡 Request received at {received_at}: domain={body.domain} address={body.address}")
    if not _valid_domain(body.domain):
        return JSONResponse({"ok": False, "error": f"Invalid domain: {body.domain}"}, status_code=400)
    if not _valid_range(body.address):
        return JSONResponse(
            {"ok": False, "error": f"Invalid address range (expected CIDR, e.g. 10.0.0.1/32): {body.address}"},
            status_code=400,
        )
    deadline = apply_request(gateway, body.domain, body.address)
    return {"ok": True, "deadline": deadline, "message": "Change successfully applied!"}
