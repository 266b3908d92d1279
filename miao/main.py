"""
miao FastAPI application.

Exposes the control API used by the dashboard: engine start/stop/restart and
status, configuration generation, subscription and manual node management,
rule-set compilation and connectivity history. On startup the configuration is
generated and the engine started; a background monitor records connectivity
while the engine runs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from .composer import ConfigComposer
from .config import config
from .errors import (
    AlreadyRunningError,
    CompileError,
    ConfigWriteError,
    ConnectivityError,
    EngineError,
    FetchError,
    MiaoError,
    NotFoundError,
    OperationInProgressError,
    ProcessExitedEarlyError,
    SpawnError,
    ValidationError,
)
from .fsutil import file_stat, tail
from .health import ConnectivityProbe, HealthMonitor
from .models import checks, engine_events, initialize_db
from .process import EngineSupervisor, SubprocessRunner, process_metrics
from .rules import RuleSetBuilder
from .settings import SettingsStore
from .subscription import SubscriptionFetcher

# Configure logging with rotation
log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Rotating file handler (auto-compaction)
file_handler = RotatingFileHandler(
    config.miao_log,
    maxBytes=config.log_max_bytes,
    backupCount=config.log_backup_count,
)
file_handler.setFormatter(log_formatter)

# Console handler
console_handler = logging.StreamHandler()
console_handler.setFormatter(log_formatter)

# Configure root logger
logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler],
)
logger = logging.getLogger(__name__)

# Initialize database
initialize_db()

# Components
store = SettingsStore(config.settings_path)
settings = store.load()

fetcher = SubscriptionFetcher(user_agent=config.user_agent, timeout=config.fetch_timeout)
composer = ConfigComposer(store, fetcher)
probe = ConnectivityProbe(config.probe_url, config.probe_timeout)
supervisor = EngineSupervisor(
    SubprocessRunner(config.logs_dir / "engine.log"),
    probe,
    home=settings.home,
    grace_seconds=config.start_grace_seconds,
    probe_timeout=config.probe_timeout + 1,
    events=engine_events,
)
rule_builder = RuleSetBuilder(
    settings.home,
    settings.direct_txt,
    compile_timeout=config.compile_timeout,
    fetch_timeout=config.fetch_timeout,
)
health_monitor = HealthMonitor(
    supervisor,
    probe,
    checks,
    interval=config.health_interval,
    retention_logs=[checks, engine_events],
    retention_days=config.log_retention_days,
)

ERROR_STATUS = {
    AlreadyRunningError: 409,
    OperationInProgressError: 409,
    ConnectivityError: 502,
    FetchError: 502,
    ProcessExitedEarlyError: 500,
    SpawnError: 500,
    CompileError: 500,
    ConfigWriteError: 500,
    NotFoundError: 404,
    ValidationError: 400,
}


def _http_error(error: MiaoError) -> HTTPException:
    """Map a miao error to the HTTP status the dashboard expects."""
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting miao...")

    try:
        await composer.generate()
    except MiaoError as e:
        logger.error(f"Failed to generate config: {e}")

    if config.autostart:
        try:
            await supervisor.start()
        except EngineError as e:
            logger.error(f"Failed to start engine: {e}")

    await health_monitor.start()

    refresh_task = None
    if config.refresh_interval > 0:
        refresh_task = asyncio.create_task(refresh_loop())

    yield

    # Shutdown
    logger.info("Shutting down miao...")
    if refresh_task:
        refresh_task.cancel()
    await health_monitor.stop()
    await supervisor.stop()


async def refresh_loop():
    """Background task regenerating the config from subscriptions.

    The running engine keeps its current config until it is restarted.
    """
    while True:
        await asyncio.sleep(config.refresh_interval)
        try:
            await composer.generate()
        except MiaoError as e:
            logger.error(f"Error in subscription refresh: {e}")


app = FastAPI(
    title="miao",
    description="sing-box supervisor and configuration generator",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models for API
class SubRequest(BaseModel):
    url: str = Field(..., description="Subscription URL")


class NodeCreate(BaseModel):
    tag: str = Field(..., description="Unique node name")
    protocol: str = Field(..., description="hysteria2, anytls or shadowsocks")
    server: Optional[str] = Field(None, description="Server host")
    server_port: Optional[int] = Field(None, description="Server port")
    password: Optional[str] = Field(None, description="Password")
    method: Optional[str] = Field(None, description="Shadowsocks cipher")
    sni: Optional[str] = Field(None, description="TLS server name")
    insecure: Optional[bool] = Field(None, description="Skip TLS certificate verification")


class NodeDelete(BaseModel):
    tag: str


class ConnectivityRequest(BaseModel):
    url: str = Field(..., description="URL to request through the engine")


# Status
@app.get("/api/status")
async def get_status():
    """Engine state snapshot with resource usage."""
    status = supervisor.status()
    status["metrics"] = process_metrics(status["pid"]) if status["running"] else None
    status["config_generated_at"] = (
        composer.last_generated.isoformat() if composer.last_generated else None
    )
    return status


# Engine control
@app.post("/api/service/start")
async def start_service():
    """Start the engine and verify connectivity through it."""
    try:
        status = await supervisor.start()
    except EngineError as e:
        raise _http_error(e)
    return {"status": "started", **status}


@app.post("/api/service/stop")
async def stop_service():
    """Stop the engine (no-op if it is not running)."""
    status = await supervisor.stop()
    return {"status": "stopped", **status}


@app.post("/api/service/restart")
async def restart_service():
    """Stop then start the engine."""
    try:
        status = await supervisor.restart()
    except EngineError as e:
        raise _http_error(e)
    return {"status": "restarted", **status}


# Configuration
@app.get("/api/config")
async def get_config():
    """The generated engine configuration and its file metadata."""
    try:
        return composer.read_current()
    except NotFoundError as e:
        raise _http_error(e)


@app.post("/api/config/generate")
async def generate_config():
    """Fetch subscriptions and regenerate the configuration.

    Failed subscriptions are reported per URL; they never fail the request.
    """
    try:
        return await composer.generate()
    except MiaoError as e:
        raise _http_error(e)


# Subscriptions
@app.get("/api/subs")
async def list_subs():
    """Configured subscriptions with the status of their last fetch."""
    return fetcher.statuses(store.settings.subs)


@app.post("/api/subs")
async def add_sub(data: SubRequest):
    """Add a subscription URL. Takes effect on the next generation."""
    try:
        url = store.add_sub(data.url)
    except ValidationError as e:
        raise _http_error(e)
    return {"status": "added", "url": url}


@app.delete("/api/subs")
async def delete_sub(data: SubRequest = Body(...)):
    """Remove a subscription URL. Its nodes stay in config.json until the next generation."""
    try:
        store.remove_sub(data.url)
    except NotFoundError as e:
        raise _http_error(e)
    fetcher.forget(data.url)
    return {"status": "deleted", "url": data.url}


@app.post("/api/subs/refresh")
async def refresh_subs():
    """Re-fetch every subscription and regenerate the configuration."""
    try:
        return await composer.generate()
    except MiaoError as e:
        raise _http_error(e)


# Manual nodes
@app.get("/api/nodes")
async def list_nodes():
    """Manual nodes and the nodes of the last successful subscription fetches."""
    return [node.to_dict() for node in composer.known_nodes()]


@app.post("/api/nodes")
async def add_node(data: NodeCreate):
    """Declare a manual node."""
    record = {k: v for k, v in data.model_dump().items() if v is not None}
    try:
        node = store.add_node(record)
    except ValidationError as e:
        raise _http_error(e)
    return {"status": "added", "node": node.to_dict()}


@app.delete("/api/nodes")
async def delete_node(data: NodeDelete = Body(...)):
    """Remove a manual node."""
    try:
        store.remove_node(data.tag)
    except NotFoundError as e:
        raise _http_error(e)
    return {"status": "deleted", "tag": data.tag}


# Rule-set
@app.post("/api/rule/generate")
async def generate_rule():
    """Download the direct domain list and compile the rule-set."""
    try:
        return await rule_builder.build()
    except MiaoError as e:
        raise _http_error(e)


@app.get("/api/rule")
async def get_rule():
    """Metadata of the compiled rule-set and its backup."""
    result = {"building": rule_builder.busy, "artifact": None, "backup": None}
    if rule_builder.artifact_path.exists():
        result["artifact"] = file_stat(rule_builder.artifact_path)
    if rule_builder.backup_path.exists():
        result["backup"] = file_stat(rule_builder.backup_path)
    return result


# Connectivity history
@app.get("/api/checks")
async def list_checks(limit: int = Query(10, ge=1, le=1000)):
    """Most recent connectivity checks."""
    return checks.last(limit)


@app.get("/api/engine/events")
async def list_engine_events(limit: int = Query(10, ge=1, le=1000)):
    """Most recent engine start/stop/crash events."""
    return engine_events.last(limit)


@app.post("/api/net-checks/manual")
async def manual_net_check():
    """Probe connectivity now and record the result."""
    result = await health_monitor.check_now()
    if not result.success:
        raise HTTPException(status_code=503, detail=result.error or "connectivity check failed")
    return result.to_dict()


@app.post("/api/connectivity")
async def test_connectivity(data: ConnectivityRequest):
    """Measure latency to an arbitrary URL through the engine."""
    result = await probe.check(data.url)
    return result.to_dict()


# Logs
@app.get("/api/engine/logs")
async def get_engine_logs(lines: int = Query(50, ge=1, le=1000)):
    """Tail of the engine's own log (box.log)."""
    log_path = supervisor.home / "box.log"
    try:
        tail_lines, total = tail(log_path, lines)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="engine log not found")
    return {"lines": tail_lines, "total": total}


@app.get("/api/logs")
async def get_miao_logs(lines: int = Query(100, ge=1, le=1000)):
    """Get recent miao log entries."""
    try:
        tail_lines, total = tail(config.miao_log, lines)
    except FileNotFoundError:
        return {"lines": [], "total": 0}
    return {"lines": tail_lines, "total": total}


# Dashboard static files (mounted last so /api routes take precedence)
static_dir = Path(__file__).parent / "static"
if static_dir.exists():
    app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
