from __future__ import annotations
import os, sys, time, asyncio, logging, hashlib
from pathlib import Path
from typing import Dict, Any, List, Optional
from contextlib import asynccontextmanager
from collections import defaultdict

from fastapi import FastAPI, Body, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import RedirectResponse, Response, PlainTextResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field, field_validator, ConfigDict

# ====== Path / Constants ======
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from prf.calibration.table import CALIBRATION_VERSION  # noqa: E402
from prf.engine.context import RiskEngineContext  # noqa: E402
from prf.engine.pipeline import RiskPipeline  # noqa: E402
from prf.features.config import FEATURE_VERSION  # noqa: E402
from prf.schemas import ObservedEvent, PageContent, RiskAssessment  # noqa: E402
from prf.utils.settings import EngineSettings  # noqa: E402

APP_VERSION = "1.0.0"

API_KEY_EXPECTED = os.getenv("PRF_API_KEY")  # empty: no protection
RATE_LIMIT_WINDOW_SEC = int(os.getenv("PRF_RATE_WINDOW", "60"))
RATE_LIMIT_MAX = int(os.getenv("PRF_RATE_MAX", "600"))  # calls per window per IP
PROTECTED_PREFIXES = ("/assess", "/tabs", "/admin")

# ====== Logging ======
logging.basicConfig(
    level=os.getenv("PRF_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("PRF_API")

# ====== JSON backend ======
try:
    from fastapi.responses import ORJSONResponse as BaseJSONResponse  # type: ignore
    import orjson  # noqa: F401
    JSON_BACKEND = "orjson"
except Exception:
    from fastapi.responses import JSONResponse as BaseJSONResponse  # type: ignore
    JSON_BACKEND = "json"

# ====== Engine state ======
ENGINE: Optional[RiskEngineContext] = None
PIPELINE: Optional[RiskPipeline] = None
_REPORT_TASK: Optional[asyncio.Task] = None


def _alert_sink(tab_id: str, assessment: RiskAssessment) -> None:
    log.warning(
        "Phishing warning for tab %s: %s (score %d, %s)",
        tab_id, assessment.url, assessment.combined_score, assessment.strategy.value,
    )


def _build_engine() -> None:
    global ENGINE, PIPELINE, LAST_RELOAD_TS
    settings = EngineSettings.from_env()
    ENGINE = RiskEngineContext.from_settings(settings, alert_sink=_alert_sink)
    PIPELINE = RiskPipeline(ENGINE)
    LAST_RELOAD_TS = int(time.time() * 1000)


def _pipeline() -> RiskPipeline:
    if PIPELINE is None:
        _build_engine()
    return PIPELINE  # type: ignore[return-value]


def _engine() -> RiskEngineContext:
    _pipeline()
    return ENGINE  # type: ignore[return-value]


# ====== Rate Limit State ======
_calls: Dict[str, list[float]] = defaultdict(list)

def _rate_limit(ip: str) -> bool:
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW_SEC
    bucket = _calls[ip]
    while bucket and bucket[0] < window_start:
        bucket.pop(0)
    if len(bucket) >= RATE_LIMIT_MAX:
        return False
    bucket.append(now)
    return True

# ====== Schemas ======
def _check_url(v: str) -> str:
    v = (v or "").strip()
    if not v.lower().startswith(("http://", "https://")) or len(v) < 10:
        raise HTTPException(status_code=400, detail="url must be an absolute http(s) URL")
    return v

class AssessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    page: Optional[PageContent] = None
    events: List[ObservedEvent] = Field(default_factory=list)
    interactions: List[ObservedEvent] = Field(default_factory=list)

    @field_validator("url")
    @classmethod
    def _clean(cls, v: str) -> str:
        return v.strip()

class NavigateRequest(BaseModel):
    url: str

class ScanRequest(BaseModel):
    url: str
    page: Optional[PageContent] = None

class EventsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    events: List[ObservedEvent] = Field(default_factory=list)
    navigation_token: Optional[int] = Field(None, alias="navigationToken")

class HealthResponse(BaseModel):
    status: str
    model_loaded: bool
    oracle_enabled: bool
    backend: str
    version: str
    feature_version: str
    calibration_version: str
    rate_limit_max: int
    rate_limit_window_sec: int
    model_config = ConfigDict(protected_namespaces=())

class MetricsResponse(BaseModel):
    uptime_seconds: float
    total_requests: int
    assess_requests: int
    scan_requests: int
    open_tabs: int
    alerts_sent: int
    cache: Dict[str, int]
    version: str
    backend: str
    last_reload_ts: Optional[int] = None
    model_loaded: bool
    model_config = ConfigDict(protected_namespaces=())

# ====== Global Metrics ======
START_TIME = time.time()
TOTAL_REQUESTS = 0
ASSESS_REQUESTS = 0
SCAN_REQUESTS = 0
LAST_RELOAD_TS: Optional[int] = None

# ====== Lifespan ======
async def _behavior_report_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            n = _pipeline().report_all()
            if n:
                log.debug("Periodic behavior report: %d tab(s)", n)
        except Exception as e:
            log.error("Periodic behavior report failed: %s", e)

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _REPORT_TASK
    t0 = time.time()
    _build_engine()
    interval = ENGINE.settings.behavior_report_interval
    if interval > 0:
        _REPORT_TASK = asyncio.create_task(_behavior_report_loop(interval))
    log.info(
        "Engine ready (model=%s, oracle=%s, policy=%s) in %.0f ms",
        ENGINE.classifier.available, ENGINE.oracle is not None,
        ENGINE.settings.oracle_failure_policy.value, (time.time() - t0) * 1000,
    )
    yield
    if _REPORT_TASK is not None:
        _REPORT_TASK.cancel()
        try:
            await _REPORT_TASK
        except asyncio.CancelledError:
            pass
        _REPORT_TASK = None
    await ENGINE.close()
    log.info("Shutting down.")

# ====== App Init ======
app = FastAPI(
    title="Phish Risk Fusion",
    version=APP_VERSION,
    default_response_class=BaseJSONResponse,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS
allow_origins = EngineSettings.from_env().allow_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# GZip
app.add_middleware(GZipMiddleware, minimum_size=1024)

# ====== Error Handlers ======
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return BaseJSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "detail": [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()],
            "path": request.url.path,
            "timestamp": int(time.time() * 1000),
        },
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return BaseJSONResponse(
        status_code=exc.status_code,
        content={
            "error": "http_exception",
            "detail": exc.detail,
            "path": request.url.path,
            "timestamp": int(time.time() * 1000),
        },
    )

# ====== Middleware ======
@app.middleware("http")
async def global_mw(request: Request, call_next):
    global TOTAL_REQUESTS, ASSESS_REQUESTS, SCAN_REQUESTS
    start = time.time()
    path = request.url.path
    TOTAL_REQUESTS += 1
    if path.startswith("/assess"):
        ASSESS_REQUESTS += 1
    elif path.startswith("/tabs") and path.endswith("/scan"):
        SCAN_REQUESTS += 1

    headers_extra = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }

    client_ip = request.client.host if request.client else "unknown"
    if path.startswith(("/assess", "/tabs")) and RATE_LIMIT_MAX > 0:
        if not _rate_limit(client_ip):
            return BaseJSONResponse(
                status_code=429,
                content={
                    "error": "rate_limited",
                    "detail": f"Too many requests (max {RATE_LIMIT_MAX}/{RATE_LIMIT_WINDOW_SEC}s)",
                    "path": path,
                    "timestamp": int(time.time() * 1000),
                },
            )

    if API_KEY_EXPECTED and path.startswith(PROTECTED_PREFIXES):
        key = request.headers.get("x-api-key")
        if key != API_KEY_EXPECTED:
            return BaseJSONResponse(
                status_code=401,
                content={
                    "error": "unauthorized",
                    "detail": "Invalid or missing x-api-key",
                    "path": path,
                    "timestamp": int(time.time() * 1000),
                },
            )

    resp: Response = await call_next(request)

    if path.startswith(("/assess", "/tabs", "/health", "/metrics")):
        resp.headers["Cache-Control"] = "no-store"

    if path.startswith("/assess") and resp.media_type == "application/json":
        body = getattr(resp, "body", None)
        if body:
            resp.headers["ETag"] = hashlib.sha1(body).hexdigest()

    for k, v in headers_extra.items():
        resp.headers.setdefault(k, v)

    duration_ms = (time.time() - start) * 1000
    resp.headers["X-Request-Latency-ms"] = f"{duration_ms:.1f}"
    return resp

# ====== Helpers ======
def _dump(assessment: Optional[RiskAssessment]) -> Optional[Dict[str, Any]]:
    return assessment.model_dump(mode="json", by_alias=True) if assessment is not None else None

def _require_tab(tab_id: str):
    state = _engine().tabs.get(tab_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"unknown tab {tab_id}")
    return state

# ====== Routes ======
@app.get("/", include_in_schema=False)
def root():
    return RedirectResponse("/docs")

@app.get("/health", response_model=HealthResponse, tags=["system"])
def health():
    engine = _engine()
    return {
        "status": "active",
        "model_loaded": engine.classifier.available,
        "oracle_enabled": engine.oracle is not None,
        "backend": JSON_BACKEND,
        "version": APP_VERSION,
        "feature_version": FEATURE_VERSION,
        "calibration_version": engine.calibration.version,
        "rate_limit_max": RATE_LIMIT_MAX,
        "rate_limit_window_sec": RATE_LIMIT_WINDOW_SEC,
    }

@app.get("/metrics", response_model=MetricsResponse, tags=["system"])
def metrics():
    engine = _engine()
    return {
        "uptime_seconds": round(time.time() - START_TIME, 1),
        "total_requests": TOTAL_REQUESTS,
        "assess_requests": ASSESS_REQUESTS,
        "scan_requests": SCAN_REQUESTS,
        "open_tabs": len(engine.tabs),
        "alerts_sent": engine.tabs.alerts_sent,
        "cache": engine.cache.stats(),
        "version": APP_VERSION,
        "backend": JSON_BACKEND,
        "last_reload_ts": LAST_RELOAD_TS,
        "model_loaded": engine.classifier.available,
    }

@app.post("/assess", tags=["assessment"])
async def assess(payload: AssessRequest = Body(...)):
    url = _check_url(payload.url)
    assessment = await _pipeline().assess_once(url, payload.page, payload.events, payload.interactions)
    return _dump(assessment)

@app.post("/tabs/{tab_id}/navigate", tags=["tabs"])
def navigate(tab_id: str, payload: NavigateRequest = Body(...)):
    url = _check_url(payload.url)
    token, cached = _pipeline().navigate(tab_id, url)
    return {"tabId": tab_id, "navigationToken": token, "cached": _dump(cached), **_engine().tabs.status(tab_id)}

@app.post("/tabs/{tab_id}/scan", tags=["tabs"])
async def scan(tab_id: str, payload: ScanRequest = Body(...)):
    url = _check_url(payload.url)
    assessment = await _pipeline().scan(tab_id, url, payload.page)
    if assessment is None:
        raise HTTPException(status_code=409, detail="tab navigated away before the scan finished")
    return {"assessment": _dump(assessment), **_engine().tabs.status(tab_id)}

@app.post("/tabs/{tab_id}/events", tags=["tabs"])
def behavior_events(tab_id: str, payload: EventsRequest = Body(...)):
    _require_tab(tab_id)
    assessment = _pipeline().ingest_behavior(tab_id, payload.events, payload.navigation_token)
    if assessment is None:
        raise HTTPException(status_code=409, detail="stale navigation token")
    return {"assessment": _dump(assessment), **_engine().tabs.status(tab_id)}

@app.post("/tabs/{tab_id}/interactions", tags=["tabs"])
def interaction_events(tab_id: str, payload: EventsRequest = Body(...)):
    _require_tab(tab_id)
    assessment = _pipeline().ingest_interactions(tab_id, payload.events, payload.navigation_token)
    if assessment is None:
        raise HTTPException(status_code=409, detail="stale navigation token")
    return {"assessment": _dump(assessment), **_engine().tabs.status(tab_id)}

@app.get("/tabs/{tab_id}", tags=["tabs"])
def tab_status(tab_id: str):
    return _engine().tabs.status(tab_id)

@app.delete("/tabs/{tab_id}", tags=["tabs"])
def close_tab(tab_id: str):
    return {"tabId": tab_id, "closed": _engine().tabs.close_tab(tab_id)}

# Manual artifact reload (x-api-key checked by the middleware when set)
@app.post("/admin/reload", tags=["admin"])
def admin_reload():
    global LAST_RELOAD_TS
    loaded = _engine().reload_model()
    LAST_RELOAD_TS = int(time.time() * 1000)
    return {"status": "reloaded", "timestamp": LAST_RELOAD_TS, "model_loaded": loaded}

@app.post("/admin/reset", tags=["admin"])
def admin_reset():
    _engine().reset()
    return {"status": "reset", "timestamp": int(time.time() * 1000)}

# Simple ping
@app.get("/ping", tags=["system"])
def ping():
    return PlainTextResponse("pong", headers={"Cache-Control": "no-store"})

# ====== Local run ======
if __name__ == "__main__":
    import uvicorn
    host = os.getenv("PRF_HOST", "127.0.0.1")
    port = int(os.getenv("PRF_PORT", "8081"))
    log.info("Starting: http://%s:%d/ (calibration %s)", host, port, CALIBRATION_VERSION)
    print(f"\nDocs:  http://{host}:{port}/docs")
    print(f"API:   http://{host}:{port}/assess\n")
    uvicorn.run("app.main:app", host=host, port=port, reload=True, reload_dirs=[str(ROOT_DIR)])
